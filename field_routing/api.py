"""
FastAPI application for field team routing.
Provides REST API endpoints for optimization, progress, weather and analytics.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .errors import RoutingError
from .service import RouteOptimizationService
from .schemas import (
    OptimizeRequest, AssignRouteRequest, ProgressUpdateRequest, RouteMetricsRequest,
    ValidateRouteRequest, ReoptimizeRequest, WeatherImpactRequest, WeatherAdjustRequest,
    TaskCreate, TaskUpdate, TeamCreate, TeamUpdate, HealthResponse,
)


logger = logging.getLogger(__name__)


def ok(data: Any) -> dict:
    """Tagged success body."""
    return {"success": True, "data": jsonable_encoder(data)}


def get_service(request: Request) -> RouteOptimizationService:
    """Dependency to get the service instance."""
    return request.app.state.service


def create_app(service: Optional[RouteOptimizationService] = None) -> FastAPI:
    """Create and configure FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = RouteOptimizationService()
        logger.info("Field routing API started")
        yield
        await app.state.service.close()
        logger.info("Field routing API stopped")

    app = FastAPI(
        title="Field Routing Engine",
        description="Route optimization, progress tracking and analytics for field teams",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.service = service

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RoutingError)
    async def routing_error_handler(request: Request, exc: RoutingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()})
        return JSONResponse(status_code=400, content={"success": False, "error": {
            "code": "invalid_request",
            "message": f"Invalid fields: {', '.join(f for f in fields if f) or 'request'}",
        }})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} crashed")
        return JSONResponse(status_code=500, content={"success": False, "error": {
            "code": "internal_error", "message": "Internal server error",
        }})

    @app.get("/health", response_model=HealthResponse)
    async def health_check(svc: RouteOptimizationService = Depends(get_service)):
        """Health check endpoint."""
        return HealthResponse(**svc.health_check())

    prefix = "/businesses/{business_id}"

    # Routes
    @app.post(prefix + "/routes/optimize")
    async def optimize_routes(business_id: str, request: OptimizeRequest,
                              svc: RouteOptimizationService = Depends(get_service)):
        """
        Assign tasks to teams for a date, a month or an explicit task list.
        Returns planned routes, unassigned tasks with reasons and warnings.
        """
        return ok(await svc.optimize_routes(business_id, request))

    @app.get(prefix + "/routes")
    async def get_routes(business_id: str, date: Optional[str] = None, month: Optional[str] = None,
                         svc: RouteOptimizationService = Depends(get_service)):
        """Get stored routes for a date or month."""
        return ok(await svc.get_optimized_routes(business_id, date, month))

    @app.get(prefix + "/routes/stats")
    async def get_route_stats(business_id: str, date: Optional[str] = None, month: Optional[str] = None,
                              svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.get_route_stats(business_id, date, month))

    @app.post(prefix + "/routes/metrics")
    async def route_metrics(business_id: str, request: RouteMetricsRequest,
                            svc: RouteOptimizationService = Depends(get_service)):
        """Preview the sequence and totals of a task set for one team."""
        return ok(await svc.calculate_route_metrics(business_id, request))

    @app.post(prefix + "/routes/validate")
    async def validate_route(business_id: str, request: ValidateRouteRequest,
                             svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.validate_route_constraints(business_id, request))

    @app.post(prefix + "/routes/{route_id}/assign")
    async def assign_route(business_id: str, route_id: int, request: AssignRouteRequest,
                           svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.assign_route_to_team(business_id, route_id, request.team_id))

    @app.post(prefix + "/routes/{route_id}/progress")
    async def update_progress(business_id: str, route_id: int, request: ProgressUpdateRequest,
                              svc: RouteOptimizationService = Depends(get_service)):
        """Report a stop status change from the field."""
        return ok(await svc.update_route_progress(business_id, route_id, request))

    @app.get(prefix + "/routes/{route_id}/progress")
    async def get_progress(business_id: str, route_id: int,
                           svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.get_route_progress(business_id, route_id))

    @app.post(prefix + "/routes/{route_id}/reoptimize")
    async def reoptimize_route(business_id: str, route_id: int, request: Optional[ReoptimizeRequest] = None,
                               svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.reoptimize_route(business_id, route_id, request))

    # Weather
    @app.post(prefix + "/weather/impact")
    async def weather_impact(business_id: str, request: WeatherImpactRequest,
                             svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.get_weather_impact(business_id, request))

    @app.post(prefix + "/weather/adjust-route")
    async def weather_adjust(business_id: str, request: WeatherAdjustRequest,
                             svc: RouteOptimizationService = Depends(get_service)):
        """Accumulated weather delays along a coordinate sequence."""
        return ok(await svc.adjust_route_for_weather(business_id, request))

    @app.get(prefix + "/weather/alerts")
    async def weather_alerts(business_id: str, severity: Optional[str] = None, alert_type: Optional[str] = None,
                             svc: RouteOptimizationService = Depends(get_service)):
        return ok(await svc.get_weather_alerts(business_id, severity, alert_type))

    # Analytics
    @app.get(prefix + "/analytics/report")
    async def analytics_report(business_id: str, report_type: str = Query(default="weekly"),
                               start_date: Optional[str] = None, end_date: Optional[str] = None,
                               svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.generate_route_report(business_id, report_type, start_date, end_date))

    @app.get(prefix + "/analytics/performance")
    async def analytics_performance(business_id: str, timeframe: str = "30d",
                                    svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.get_performance_metrics(business_id, timeframe))

    @app.get(prefix + "/analytics/cost-savings")
    async def analytics_cost_savings(business_id: str, timeframe: str = "30d",
                                     svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.calculate_cost_savings(business_id, timeframe))

    @app.get(prefix + "/analytics/trends")
    async def analytics_trends(business_id: str, timeframe: str = "90d",
                               svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.get_efficiency_trends(business_id, timeframe))

    @app.get(prefix + "/analytics/export")
    async def analytics_export(business_id: str, format: str = "csv", timeframe: str = "30d",
                               svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.export_analytics(business_id, format, timeframe))

    # Registry
    @app.post(prefix + "/tasks", status_code=201)
    async def create_task(business_id: str, request: TaskCreate,
                          svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.create_task(business_id, request))

    @app.patch(prefix + "/tasks/{task_id}")
    async def update_task(business_id: str, task_id: int, request: TaskUpdate,
                          svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.update_task(business_id, task_id, request))

    @app.post(prefix + "/teams", status_code=201)
    async def create_team(business_id: str, request: TeamCreate,
                          svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.create_team(business_id, request))

    @app.patch(prefix + "/teams/{team_id}")
    async def update_team(business_id: str, team_id: int, request: TeamUpdate,
                          svc: RouteOptimizationService = Depends(get_service)):
        return ok(svc.update_team(business_id, team_id, request))

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
