"""Inspect and maintain the site database from the command line."""
import asyncio
import sys
from datetime import timedelta
from typing import List, Optional
from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from .config import Config
from .infrastructure.client import DatabaseClient
from .models import HealthStatus, MaintenanceResult, utc_now

_HEALTH_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.WARNING: "yellow",
    HealthStatus.CRITICAL: "red",
}

_SEVERITY_STYLES = {
    "low": "green",
    "medium": "yellow",
    "high": "red",
    "critical": "bold red",
}

USAGE = [
    ("health", "Show the current health report"),
    ("dashboard [hours]", "Show the performance dashboard"),
    ("errors", "Show error statistics and critical errors"),
    ("alerts", "Check alert thresholds"),
    ("maintain daily|weekly|monthly", "Run a maintenance tier"),
    ("report <days> [json|csv]", "Print a performance report"),
    ("serve", "Serve the health endpoints"),
]


def show_health(client: DatabaseClient, console: Console):
    """Display the health report."""
    report = client.get_health_report()
    style = _HEALTH_STYLES[report.overall_health]
    metrics = report.metrics

    body = f"[{style}]Status: {report.overall_health.value.upper()}[/]\n\n"
    if metrics:
        body += (
            f"[green]Size:[/] {metrics['database_size_mb']:.2f} MB\n"
            f"[green]Tables:[/] {metrics['table_count']}  "
            f"[green]Indexes:[/] {metrics['index_count']}\n"
            f"[green]Avg Query Time (1h):[/] {metrics['avg_query_time_ms']:.2f} ms\n"
            f"[green]Slow Queries (1h):[/] {metrics['slow_query_count']}\n"
            f"[green]Cache Hit Rate (1h):[/] {metrics['cache_hit_rate']:.1f}%\n"
        )
    console.print(Panel.fit(body, title="Database Health"))

    for issue in report.issues:
        console.print(f"[yellow]Issue:[/] {issue}")
    for recommendation in report.recommendations:
        console.print(f"[cyan]Recommendation:[/] {recommendation}")


def show_dashboard(client: DatabaseClient, console: Console, hours: int = 24):
    """Display overview, slowest queries and table breakdown."""
    dashboard = client.get_performance_dashboard(hours)
    overview = dashboard['overview']

    console.print(Panel.fit(
        f"[green]Total Queries:[/] {overview['total_queries']}\n"
        f"[green]Avg Query Time:[/] {overview['avg_query_time_ms']:.2f} ms\n"
        f"[green]Slow Queries:[/] {overview['slow_queries']}\n"
        f"[green]Cache Hit Rate:[/] {overview['cache_hit_rate']:.1f}%\n"
        f"[green]Error Rate:[/] {overview['error_rate']:.2f}%\n",
        title=f"Performance (last {hours}h)"
    ))

    slow = Table(title="Slowest Queries", show_header=True)
    slow.add_column("Hash", style="cyan")
    slow.add_column("Type", style="magenta")
    slow.add_column("Table", style="blue")
    slow.add_column("Runs", justify="right")
    slow.add_column("Avg ms", justify="right", style="yellow")
    slow.add_column("Max ms", justify="right", style="red")
    for row in dashboard['top_slow_queries']:
        slow.add_row(
            row['query_hash'][:8],
            row['query_type'],
            row['table_name'] or "",
            str(row['executions']),
            f"{row['avg_time_ms']:.2f}",
            f"{row['max_time_ms']:.2f}",
        )
    console.print(slow)

    tables = Table(title="Tables", show_header=True)
    tables.add_column("Table", style="cyan")
    tables.add_column("Queries", justify="right")
    tables.add_column("Writes", justify="right")
    tables.add_column("Avg ms", justify="right", style="yellow")
    for row in dashboard['tables']:
        tables.add_row(
            row['table_name'],
            str(row['queries']),
            str(row['writes']),
            f"{row['avg_time_ms']:.2f}",
        )
    console.print(tables)


def show_errors(client: DatabaseClient, console: Console):
    """Display error statistics."""
    stats = client.recovery.get_error_statistics()
    console.print(Panel.fit(
        f"[green]Errors (24h):[/] {stats['total_errors']}\n"
        f"[green]Resolved:[/] {stats['resolved_errors']}\n"
        f"[green]Recovery Rate:[/] {stats['recovery_rate']:.1f}%\n",
        title="Errors"
    ))

    critical = client.get_critical_errors()
    if not critical:
        console.print("[green]No unresolved critical errors[/]")
        return

    table = Table(title="Critical Errors", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Category", style="magenta")
    table.add_column("Message", style="red")
    table.add_column("Attempts", justify="right")
    for error in critical:
        table.add_row(error.id, error.category.value, error.message[:80], str(error.recovery_attempts))
    console.print(table)


def show_alerts(client: DatabaseClient, console: Console):
    """Display threshold alerts."""
    result = client.check_alerts()
    if not result['alerts']:
        console.print("[green]No alerts[/]")
        return

    table = Table(title=f"Alerts (overall: {result['severity']})", show_header=True)
    table.add_column("Type", style="cyan")
    table.add_column("Severity")
    table.add_column("Message")
    table.add_column("Threshold", justify="right")
    table.add_column("Current", justify="right", style="yellow")
    for alert in result['alerts']:
        style = _SEVERITY_STYLES[alert.severity.value]
        table.add_row(
            alert.type,
            f"[{style}]{alert.severity.value}[/]",
            alert.message,
            f"{alert.threshold:g}",
            f"{alert.current_value:.2f}",
        )
    console.print(table)


def show_maintenance(results: List[MaintenanceResult], console: Console, tier: str):
    """Display the results of a maintenance tier."""
    table = Table(title=f"{tier.capitalize()} Maintenance", show_header=True)
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    table.add_column("Duration", justify="right", style="yellow")
    table.add_column("Error", style="red")
    for result in results:
        table.add_row(
            result.task_name,
            "[green]ok[/]" if result.success else "[red]failed[/]",
            str(result.records_affected),
            f"{result.duration_ms:.1f} ms",
            result.error or "",
        )
    console.print(table)

    succeeded = sum(1 for r in results if r.success)
    console.print(f"{succeeded}/{len(results)} tasks succeeded")


async def serve(client: DatabaseClient, config: Config):
    """Run the health endpoints until interrupted."""
    from .monitoring.alerts import AlertManager
    from .monitoring.health_monitor import HealthMonitor

    alert_manager = None
    if config.alerts.email_enabled or config.alerts.slack_enabled:
        alert_manager = AlertManager(config.alerts)
        await alert_manager.initialize()
        client.alert_manager = alert_manager
        client.recovery.alert_callback = alert_manager.alert_critical_error

    monitor = HealthMonitor(client, port=config.health.port, alert_manager=alert_manager)
    await monitor.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await monitor.cleanup()
        if alert_manager:
            await alert_manager.cleanup()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv
    console = Console()

    if not argv:
        console.print("[yellow]Usage:[/]")
        for command, description in USAGE:
            console.print(f"  sitedb {command:<32} - {description}")
        return 1

    config = Config()
    logger.add(
        "logs/sitedb_{time}.log",
        rotation="1 day",
        retention="7 days",
        level=config.log_level
    )

    command = argv[0]
    client = DatabaseClient.from_config(config)
    try:
        if command == "health":
            show_health(client, console)
        elif command == "dashboard":
            show_dashboard(client, console, int(argv[1]) if len(argv) > 1 else 24)
        elif command == "errors":
            show_errors(client, console)
        elif command == "alerts":
            show_alerts(client, console)
        elif command == "maintain" and len(argv) > 1 and argv[1] in ("daily", "weekly", "monthly"):
            tier = argv[1]
            results = getattr(client, f"run_{tier}")()
            show_maintenance(results, console, tier)
        elif command == "report" and len(argv) > 1:
            end = utc_now()
            start = end - timedelta(days=int(argv[1]))
            fmt = argv[2] if len(argv) > 2 else "json"
            console.print(client.analytics.generate_performance_report(start, end, fmt), markup=False)
        elif command == "serve":
            try:
                asyncio.run(serve(client, config))
            except KeyboardInterrupt:
                logger.info("Health monitor stopped")
        else:
            console.print("[red]Invalid command[/]")
            return 1
    finally:
        client.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
