"""
Command-line interface for field team routing.
Provides commands for seeding, optimization, progress, weather and analytics.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import click
import yaml

from .errors import RoutingError
from .service import RouteOptimizationService
from .schemas import (
    OptimizeRequest, OptimizationParameters, ProgressUpdateRequest, RouteMetricsRequest,
    ValidateRouteRequest, WeatherImpactRequest, TaskCreate, TeamCreate,
)


logger = logging.getLogger(__name__)


@click.group()
@click.option('--config', default='config/params.yaml', help='Configuration file path')
@click.option('--business', '-b', default='acme-field', help='Business id to operate on')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx, config: str, business: str, verbose: bool):
    """Field Routing Engine CLI."""
    # Store options in context
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['business_id'] = business
    ctx.obj['verbose'] = verbose


def _service(ctx) -> RouteOptimizationService:
    service = RouteOptimizationService(ctx.obj['config_path'])
    if ctx.obj['verbose']:
        logging.getLogger().setLevel(logging.DEBUG)
    return service


def _run(ctx, action):
    """Run ``action(service)`` inside an event loop and close the service."""

    async def _wrapped():
        service = _service(ctx)
        try:
            return await action(service)
        except RoutingError as e:
            logger.error(f"{e.code}: {e.message}")
            raise click.ClickException(e.message)
        finally:
            await service.close()

    return asyncio.run(_wrapped())


def _params(max_time: Optional[int], traffic: bool, weather: bool, fuel: bool) -> Optional[OptimizationParameters]:
    if max_time is None and not (traffic or weather or fuel):
        return None
    values = {"consider_traffic": traffic, "consider_weather": weather}
    if max_time is not None:
        values["max_route_time"] = max_time
    if fuel:
        values["prioritize_fuel"] = True
        values["prioritize_time"] = False
    return OptimizationParameters(**values)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@main.command()
@click.argument('seed_file', type=click.Path(exists=True), default='data/seed.yaml')
@click.option('--date', default=None, help='Date for tasks without one (YYYY-MM-DD, default: today)')
@click.pass_context
def seed(ctx, seed_file: str, date: str):
    """Load a business with teams and tasks from a YAML or JSON file."""

    async def _seed(service: RouteOptimizationService):
        path = Path(seed_file)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f) if path.suffix.lower() == '.json' else yaml.safe_load(f)

        business = data["business"]
        business_id = business.get("id", ctx.obj['business_id'])
        service.ensure_business(business_id, business["name"], business.get("planning"))

        day = date or datetime.now().strftime('%Y-%m-%d')
        teams = [service.create_team(business_id, TeamCreate(**row)) for row in data.get("teams", [])]
        tasks = []
        for row in data.get("tasks", []):
            row = dict(row)
            row.setdefault("scheduled_date", day)
            tasks.append(service.create_task(business_id, TaskCreate(**row)))

        click.echo(f"Seeded business {business_id}:")
        click.echo(f"  Teams created: {len(teams)}")
        click.echo(f"  Tasks created: {len(tasks)}")

    _run(ctx, _seed)


@main.command()
@click.option('--date', default=None, help='Date to optimize (YYYY-MM-DD)')
@click.option('--month', default=None, help='Month to optimize (YYYY-MM)')
@click.option('--task', 'task_ids', multiple=True, type=int, help='Explicit task id (repeatable)')
@click.option('--team', 'team_ids', multiple=True, type=int, help='Restrict to team id (repeatable)')
@click.option('--max-time', type=int, help='Maximum working minutes per route')
@click.option('--traffic', is_flag=True, help='Consider traffic')
@click.option('--weather', is_flag=True, help='Consider weather delays')
@click.option('--fuel', is_flag=True, help='Prioritize fuel over time')
@click.option('--policy', type=click.Choice(['degrade', 'strict']), help='Override providers.fallback_policy')
@click.pass_context
def optimize(ctx, date: str, month: str, task_ids: List[int], team_ids: List[int],
             max_time: int, traffic: bool, weather: bool, fuel: bool, policy: str):
    """Run route optimization for a date, month or task list."""

    async def _optimize(service: RouteOptimizationService):
        # Apply CLI config overrides (precedence: CLI > YAML)
        if policy:
            service.apply_overrides({"providers.fallback_policy": policy})

        request = OptimizeRequest(
            date=date,
            month=month,
            task_ids=list(task_ids),
            team_ids=list(team_ids),
            params=_params(max_time, traffic, weather, fuel),
        )
        click.echo(f"Optimizing routes for {date or month or 'selected tasks'}...")
        result = await service.optimize_routes(ctx.obj['business_id'], request)

        # Display results
        summary = result.summary
        click.echo(f"\nOptimization completed (run {summary.run_id}):")
        click.echo(f"  Total routes: {summary.routes_generated}")
        click.echo(f"  Tasks assigned: {summary.tasks_assigned}")
        click.echo(f"  Tasks unassigned: {summary.tasks_unassigned}")
        click.echo(f"  Total distance: {summary.total_distance_km:.1f} km")
        click.echo(f"  Distance reduction: {summary.distance_reduction_pct:.1f}%")
        click.echo(f"  Time reduction: {summary.time_reduction_pct:.1f}%")
        click.echo(f"  Computation time: {summary.computation_time_seconds:.2f}s")

        # Route details
        for route in result.routes:
            click.echo(f"\n  Route {route.id} - {route.team_name} ({route.route_date}):")
            click.echo(f"    Stops: {' -> '.join(str(s.task_id) for s in route.stops)}")
            click.echo(f"    Distance: {route.total_distance_km:.1f} km")
            click.echo(f"    Total time: {route.total_time_minutes:.1f} min")
            click.echo(f"    Score: {route.optimization_score:.1f}")
            if route.weather_delay_minutes > 0:
                click.echo(f"    Weather delay: {route.weather_delay_minutes:.0f} min ({route.weather_reason})")

        if result.unassigned_tasks:
            click.echo(f"\n  Unassigned tasks:")
            for u in result.unassigned_tasks:
                click.echo(f"    Task {u.task_id}: {u.reason}")
        for warning in result.warnings:
            click.echo(f"  Warning: {warning}")

    _run(ctx, _optimize)


@main.command()
@click.option('--date', default=None, help='Date (YYYY-MM-DD)')
@click.option('--month', default=None, help='Month (YYYY-MM)')
@click.option('--stats', is_flag=True, help='Show aggregate statistics instead of routes')
@click.pass_context
def routes(ctx, date: str, month: str, stats: bool):
    """Show stored routes or their statistics."""

    async def _routes(service: RouteOptimizationService):
        business_id = ctx.obj['business_id']
        if stats:
            _echo_json((await service.get_route_stats(business_id, date, month)).model_dump())
            return
        for route in await service.get_optimized_routes(business_id, date, month):
            click.echo(f"Route {route.id} [{route.status}] {route.team_name} on {route.route_date}: "
                       f"{len(route.stops)} stops, {route.total_distance_km:.1f} km, "
                       f"{route.total_time_minutes:.0f} min")

    _run(ctx, _routes)


@main.command()
@click.argument('route_id', type=int)
@click.option('--task', 'task_id', type=int, help='Task id to report on')
@click.option('--status', type=click.Choice(['started', 'arrived', 'paused', 'completed']),
              help='New stop status')
@click.option('--lat', type=float, help='Reported latitude')
@click.option('--lng', type=float, help='Reported longitude')
@click.pass_context
def progress(ctx, route_id: int, task_id: int, status: str, lat: float, lng: float):
    """Report stop progress, or show route progress when no status is given."""

    async def _progress(service: RouteOptimizationService):
        business_id = ctx.obj['business_id']
        if status:
            if task_id is None:
                raise click.UsageError("--task is required with --status")
            location = {"lat": lat, "lng": lng} if lat is not None and lng is not None else None
            result = await service.update_route_progress(
                business_id, route_id, ProgressUpdateRequest(task_id=task_id, status=status, location=location)
            )
            click.echo(f"Route {route_id}: task {task_id} {result.stop_status}, "
                       f"{result.completed_stops}/{result.total_stops} done, route {result.route_status}")
            return
        _echo_json((await service.get_route_progress(business_id, route_id)).model_dump())

    _run(ctx, _progress)


@main.command()
@click.option('--team', 'team_id', required=True, type=int, help='Team id')
@click.option('--task', 'task_ids', required=True, multiple=True, type=int, help='Task id (repeatable)')
@click.option('--date', default=None, help='Planning date (YYYY-MM-DD)')
@click.pass_context
def metrics(ctx, team_id: int, task_ids: List[int], date: str):
    """Preview route metrics for a task set."""

    async def _metrics(service: RouteOptimizationService):
        result = await service.calculate_route_metrics(
            ctx.obj['business_id'], RouteMetricsRequest(team_id=team_id, task_ids=list(task_ids), date=date)
        )
        _echo_json(result.model_dump())

    _run(ctx, _metrics)


@main.command()
@click.option('--team', 'team_id', required=True, type=int, help='Team id')
@click.option('--task', 'task_ids', required=True, multiple=True, type=int, help='Task id (repeatable)')
@click.option('--max-time', type=int, help='Maximum working minutes')
@click.option('--max-distance', type=float, help='Maximum distance in km')
@click.pass_context
def validate(ctx, team_id: int, task_ids: List[int], max_time: int, max_distance: float):
    """Check a hypothetical assignment against every constraint."""

    async def _validate(service: RouteOptimizationService):
        result = await service.validate_route_constraints(
            ctx.obj['business_id'],
            ValidateRouteRequest(team_id=team_id, task_ids=list(task_ids),
                                 max_time=max_time, max_distance=max_distance),
        )
        if result.valid:
            click.echo("Valid: no constraint violations")
        else:
            click.echo(f"Invalid: {', '.join(result.violations)}")
            for detail in result.details:
                click.echo(f"  - [{detail['severity']}] {detail['message']}")

    _run(ctx, _validate)


@main.command()
@click.argument('route_id', type=int)
@click.pass_context
def reoptimize(ctx, route_id: int):
    """Re-sequence the pending stops of a route."""

    async def _reoptimize(service: RouteOptimizationService):
        route = await service.reoptimize_route(ctx.obj['business_id'], route_id)
        click.echo(f"Route {route.id} re-sequenced: {' -> '.join(str(s.task_id) for s in route.stops)}")
        click.echo(f"  Distance: {route.total_distance_km:.1f} km, total time {route.total_time_minutes:.0f} min")

    _run(ctx, _reoptimize)


@main.command()
@click.option('--lat', type=float, help='Latitude for an impact lookup')
@click.option('--lng', type=float, help='Longitude for an impact lookup')
@click.option('--date', default=None, help='Forecast date (YYYY-MM-DD)')
@click.option('--alerts', is_flag=True, help='List alerts for the business instead')
@click.option('--severity', default=None, help='Alert severity filter')
@click.pass_context
def weather(ctx, lat: float, lng: float, date: str, alerts: bool, severity: str):
    """Weather impact for a point, or current alerts for the business."""

    async def _weather(service: RouteOptimizationService):
        business_id = ctx.obj['business_id']
        if alerts:
            found = await service.get_weather_alerts(business_id, severity=severity)
            if not found:
                click.echo("No weather alerts.")
            for alert in found:
                click.echo(f"[{alert.severity}] {alert.title}: {alert.message}")
            return
        if lat is None or lng is None:
            raise click.UsageError("--lat and --lng are required unless --alerts is given")
        impact = await service.get_weather_impact(
            business_id, WeatherImpactRequest(coordinates={"lat": lat, "lng": lng}, date=date)
        )
        _echo_json(impact.model_dump())

    _run(ctx, _weather)


@main.command()
@click.option('--type', 'report_type', type=click.Choice(['daily', 'weekly', 'monthly', 'custom']),
              default='weekly', help='Report type')
@click.option('--start', 'start_date', default=None, help='Start date for custom reports')
@click.option('--end', 'end_date', default=None, help='End date (default: today)')
@click.option('--savings', is_flag=True, help='Show cost savings instead')
@click.option('--trends', is_flag=True, help='Show efficiency trends instead')
@click.option('--timeframe', default=None, help='Timeframe for savings/trends (7d, 30d, ...)')
@click.pass_context
def report(ctx, report_type: str, start_date: str, end_date: str, savings: bool, trends: bool, timeframe: str):
    """Generate a route report, cost savings or efficiency trends."""

    async def _report(service: RouteOptimizationService):
        business_id = ctx.obj['business_id']
        if savings:
            _echo_json(service.calculate_cost_savings(business_id, timeframe or "30d"))
        elif trends:
            _echo_json(service.get_efficiency_trends(business_id, timeframe or "90d"))
        else:
            _echo_json(service.generate_route_report(business_id, report_type, start_date, end_date))

    _run(ctx, _report)


@main.command()
@click.option('--format', 'export_format', type=click.Choice(['csv', 'json', 'outline']), default='csv')
@click.option('--timeframe', default='30d', help='Timeframe (7d, 30d, 60d, 90d, 180d)')
@click.option('--output', help='Output file (default: print to console)')
@click.pass_context
def export(ctx, export_format: str, timeframe: str, output: str):
    """Export analytics data."""

    async def _export(service: RouteOptimizationService):
        result = service.export_analytics(ctx.obj['business_id'], export_format, timeframe)
        data = result["data"]
        text = data if isinstance(data, str) else json.dumps(data, indent=2, default=str)
        if output:
            with open(output, 'w') as f:
                f.write(text)
            click.echo(f"Export saved to {output}")
        else:
            click.echo(text)

    _run(ctx, _export)


@main.command()
@click.option('--host', default='0.0.0.0', help='Bind address')
@click.option('--port', default=8000, type=int, help='Port')
@click.option('--reload', is_flag=True, help='Reload on code changes')
@click.pass_context
def serve(ctx, host: str, port: int, reload: bool):
    """Start the FastAPI server."""
    import uvicorn

    click.echo("Starting Field Routing API server...")
    click.echo(f"API documentation: http://localhost:{port}/docs")
    try:
        uvicorn.run("field_routing.api:app", host=host, port=port, reload=reload)
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
