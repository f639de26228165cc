#!/usr/bin/env python3
"""infrawatch - CLI Entry Point."""
import functools
import json
import signal
import sys
import time
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from __version__ import __version__
from utils.errors import ConfigError, InfrawatchError

console = Console()

SEVERITY_STYLE = {"info": "cyan", "warning": "yellow", "error": "red", "critical": "bold red"}
STATUS_STYLE = {"active": "red", "acknowledged": "yellow", "resolved": "green"}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from config import load_config, rules_path
    from utils.context import RuntimeContext
    from alerts.store import AlertStore
    from alerts.rule_store import RuleStore, YamlRuleSource
    from alerts.engine import AlertEngine
    from alerts.service import AlertService
    from monitor.sources import SourceRegistry
    from monitor.scheduler import EvaluationScheduler
    from notifications.fanout import NotificationFanout
    from notifications.channels import ConsoleChannel, CounterChannel, FileChannel

    config = load_config(config_path)
    if verbose:
        config["logging"]["level"] = "DEBUG"
    context = RuntimeContext(config).start()

    store = AlertStore(config["database"]["path"], context=context)
    store.connect()

    rules = RuleStore(YamlRuleSource(rules_path(config)), context=context)
    rules.load()

    fanout = NotificationFanout(context=context)
    counters = CounterChannel()
    fanout.subscribe(counters, name="counters")
    notif = config["notifications"]
    if notif.get("file", {}).get("enabled", True):
        fanout.subscribe(FileChannel(notif["file"].get("path", "data/events.jsonl")), name="file")
    # Console only if running interactively
    if notif.get("console", {}).get("enabled", True) and sys.stdout.isatty():
        fanout.subscribe(ConsoleChannel(console), name="console")

    engine = AlertEngine(store, fanout=fanout, context=context)
    registry = SourceRegistry.from_config(config)
    scheduler = EvaluationScheduler(rules, registry, engine, context=context)
    service = AlertService(store, fanout=fanout, context=context)

    return {
        "config": config, "context": context, "store": store, "rules": rules,
        "fanout": fanout, "counters": counters, "engine": engine, "registry": registry,
        "scheduler": scheduler, "service": service,
    }


def _shutdown(c):
    c["scheduler"].stop()
    c["fanout"].close()
    c["registry"].close()
    c["store"].close()
    c["context"].close()


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="infrawatch")
@click.pass_context
def cli(ctx, config_path, verbose):
    """infrawatch - Rule-driven infrastructure alerting."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
        ctx.call_on_close(lambda: _shutdown(ctx.obj.pop("_components")))
    return ctx.obj["_components"]


def _fail(message):
    console.print(f"[red]✗ {escape(str(message))}[/red]", highlight=False, soft_wrap=True)
    sys.exit(1)


def domain_errors(f):
    """Report domain errors as a red message and exit code 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except InfrawatchError as e:
            _fail(str(e))
    return wrapper


def _ts(dt):
    return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else "-"


def _styled(value, styles):
    style = styles.get(value, "")
    return f"[{style}]{value}[/{style}]" if style else value


# ──────────────────────────────────────────────────────
# RUN
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--once", is_flag=True, help="Evaluate every rule once and exit")
@click.pass_context
@domain_errors
def run(ctx, once):
    """Evaluate rules on their intervals until interrupted."""
    c = _get_components(ctx)
    scheduler = c["scheduler"]

    if once:
        results = scheduler.evaluate_all()
        table = Table(title="Evaluation", show_header=True)
        table.add_column("Rule", style="dim")
        table.add_column("Result")
        table.add_column("Samples", justify="right")
        table.add_column("Changes", justify="right")
        for r in results:
            outcome = "[green]ok[/green]" if r.ok else f"[red]{escape(str(r.error))}[/red]"
            changes = sum(1 for t in r.transitions if t.changed)
            table.add_row(r.rule_id, outcome, str(r.samples), str(changes))
        console.print(table)
        return

    if hasattr(signal, "SIGHUP"):
        def _reload(signum, frame):
            try:
                c["rules"].reload()
            except ConfigError:
                console.print("[yellow]Rule reload rejected, previous rules still active[/yellow]")
        signal.signal(signal.SIGHUP, _reload)

    scheduler.start()
    console.print(f"[bold]infrawatch[/bold] evaluating {len(c['rules'].get_enabled_rules())} rules. "
                  "Ctrl+C to stop.")
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping...")


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Rule set commands."""


@rules.command("validate")
@click.argument("path", required=False)
@click.pass_context
@domain_errors
def rules_validate(ctx, path):
    """Validate a rule file without loading it."""
    from config import load_config, rules_path
    from alerts.rule_store import YamlRuleSource, parse_rules

    if path is None:
        path = rules_path(load_config(ctx.obj.get("config_path")))
    parsed = parse_rules(YamlRuleSource(path).read())
    enabled = sum(r.enabled for r in parsed)
    console.print(f"[green]✓[/green] {path}: {len(parsed)} rules ({enabled} enabled)")


@rules.command("list")
@click.pass_context
@domain_errors
def rules_list(ctx):
    """List the active rules."""
    c = _get_components(ctx)
    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Source")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Every")
    table.add_column("Enabled")
    for r in c["rules"].get_all_rules():
        table.add_row(r.id, r.name, r.type.value, str(r.threshold),
                      _styled(r.severity.value, SEVERITY_STYLE), f"{r.evaluation_interval_seconds}s",
                      "[green]✓[/green]" if r.enabled else "[red]✗[/red]")
    console.print(table)


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert commands."""


@alerts.command("list")
@click.option("--severity", type=click.Choice(["info", "warning", "error", "critical"]))
@click.option("--type", "type_", type=click.Choice(["prometheus", "azure", "gcp"]))
@click.option("--status", type=click.Choice(["active", "acknowledged", "resolved"]))
@click.option("--limit", default=50, type=int)
@click.option("--offset", default=0, type=int)
@click.pass_context
@domain_errors
def alerts_list(ctx, severity, type_, status, limit, offset):
    """List alerts, newest first."""
    c = _get_components(ctx)
    page = c["service"].list_alerts(severity=severity, type=type_, status=status, limit=limit, offset=offset)
    if not page.alerts:
        console.print("[dim]No alerts[/dim]")
        return
    table = Table(title=f"Alerts ({len(page.alerts)} of {page.total})", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Created", style="dim")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Rule")
    table.add_column("Resource")
    table.add_column("Value", justify="right")
    for a in page.alerts:
        table.add_row(a.id[:8], _ts(a.created_at), _styled(a.severity.value, SEVERITY_STYLE),
                      _styled(a.status.value, STATUS_STYLE), a.rule_id, a.resource_id, f"{a.value:g}")
    console.print(table)


@alerts.command("show")
@click.argument("alert_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
@domain_errors
def alerts_show(ctx, alert_id, as_json):
    """Show one alert with its history."""
    c = _get_components(ctx)
    alert = c["service"].get_alert(alert_id)
    if as_json:
        click.echo(json.dumps(alert.to_dict(), indent=2))
        return
    console.print(f"[bold]{alert.name}[/bold] ({alert.id})")
    console.print(f"  {alert.description}")
    console.print(f"  Severity: {_styled(alert.severity.value, SEVERITY_STYLE)}  "
                  f"Status: {_styled(alert.status.value, STATUS_STYLE)}")
    console.print(f"  Resource: {alert.resource_type}/{alert.resource_id}  "
                  f"Value: {alert.value:g} (threshold {alert.threshold:g})")
    if alert.acknowledged_by:
        console.print(f"  Acknowledged by {alert.acknowledged_by} at {_ts(alert.acknowledged_at)}"
                      + (f": {alert.comment}" if alert.comment else ""))
    if alert.resolved_by:
        console.print(f"  Resolved by {alert.resolved_by} at {_ts(alert.resolved_at)}: {alert.resolution}")
        if alert.root_cause:
            console.print(f"  Root cause: {alert.root_cause}")

    table = Table(title="History", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Status")
    table.add_column("Value", justify="right")
    for h in alert.history:
        table.add_row(_ts(h.timestamp), _styled(h.status.value, STATUS_STYLE), f"{h.value:g}")
    console.print(table)


@alerts.command("ack")
@click.argument("alert_id")
@click.option("--by", "actor", required=True, help="Who is acknowledging")
@click.option("--comment", default=None)
@click.pass_context
@domain_errors
def alerts_ack(ctx, alert_id, actor, comment):
    """Acknowledge an active alert."""
    c = _get_components(ctx)
    alert = c["service"].acknowledge_alert(alert_id, comment=comment, actor=actor)
    console.print(f"[green]✓[/green] Alert {alert.id} acknowledged by {alert.acknowledged_by}")


@alerts.command("resolve")
@click.argument("alert_id")
@click.option("--by", "actor", required=True, help="Who is resolving")
@click.option("--resolution", required=True)
@click.option("--root-cause", default=None)
@click.pass_context
@domain_errors
def alerts_resolve(ctx, alert_id, actor, resolution, root_cause):
    """Resolve an open alert."""
    c = _get_components(ctx)
    alert = c["service"].resolve_alert(alert_id, resolution=resolution, root_cause=root_cause, actor=actor)
    console.print(f"[green]✓[/green] Alert {alert.id} resolved by {alert.resolved_by}")


# ──────────────────────────────────────────────────────
# INSIGHTS
# ──────────────────────────────────────────────────────
@cli.group()
def insights():
    """Insight commands."""


@insights.command("list")
@click.option("--type", "type_", type=click.Choice(["anomaly", "trend", "recommendation"]))
@click.option("--resource", default=None, help="Resource id")
@click.option("--limit", default=50, type=int)
@click.option("--offset", default=0, type=int)
@click.pass_context
@domain_errors
def insights_list(ctx, type_, resource, limit, offset):
    """List insights, newest first."""
    c = _get_components(ctx)
    page = c["service"].list_insights(type=type_, resource_id=resource, limit=limit, offset=offset)
    if not page.insights:
        console.print("[dim]No insights[/dim]")
        return
    table = Table(title=f"Insights ({len(page.insights)} of {page.total})", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Created", style="dim")
    table.add_column("Type")
    table.add_column("Resource")
    table.add_column("Confidence", justify="right")
    table.add_column("Alerts", justify="right")
    table.add_column("Description")
    for i in page.insights:
        table.add_row(i.id[:8], _ts(i.created_at), i.type.value, i.resource_id, f"{i.confidence:.0%}",
                      str(len(i.related_alerts)), i.description[:60])
    console.print(table)


@insights.command("show")
@click.argument("insight_id")
@click.pass_context
@domain_errors
def insights_show(ctx, insight_id):
    """Show one insight."""
    c = _get_components(ctx)
    click.echo(json.dumps(c["service"].get_insight(insight_id).to_dict(), indent=2))


# ──────────────────────────────────────────────────────
# EVALUATE / STATS
# ──────────────────────────────────────────────────────
@cli.command()
@click.argument("rule_id")
@click.argument("resource_id")
@click.argument("value", type=float)
@click.option("--dry-run", is_flag=True, help="Show the decision without storing it")
@click.pass_context
@domain_errors
def evaluate(ctx, rule_id, resource_id, value, dry_run):
    """Apply one value for a rule and resource by hand."""
    c = _get_components(ctx)
    rule = c["rules"].get(rule_id)
    if rule is None:
        _fail(f"Unknown rule: {rule_id}")

    if dry_run:
        decision = c["engine"].preview(rule, resource_id, value)
        console.print(f"{rule_id} on {resource_id} = {value:g}: would [bold]{decision.action.value}[/bold]")
        return

    transition = c["engine"].process(rule, resource_id, value)
    c["fanout"].flush()
    if transition.alert is None:
        console.print(f"[dim]{rule_id} on {resource_id} = {value:g}: no alert[/dim]")
        return
    console.print(f"{rule_id} on {resource_id} = {value:g}: [bold]{transition.action.value}[/bold] "
                  f"alert {transition.alert.id} ({_styled(transition.alert.status.value, STATUS_STYLE)})")


@cli.command()
@click.pass_context
@domain_errors
def stats(ctx):
    """Open alert counts and overall health."""
    c = _get_components(ctx)
    summary = c["service"].summary()
    health_style = {"healthy": "green", "warning": "yellow", "critical": "bold red"}
    console.print(f"System health: {_styled(summary['system_health'], health_style)}")
    console.print(f"Open alerts: {summary['open_total']}  Total alerts: {summary['total_alerts']}  "
                  f"Insights: {summary['total_insights']}")

    table = Table(title="Open by severity", show_header=True)
    table.add_column("Severity")
    table.add_column("Count", justify="right")
    for sev in ("critical", "error", "warning", "info"):
        count = summary["open_by_severity"].get(sev, 0)
        if count:
            table.add_row(_styled(sev, SEVERITY_STYLE), str(count))
    console.print(table)


@cli.command()
@click.pass_context
@domain_errors
def sources(ctx):
    """Check that configured data sources are reachable."""
    c = _get_components(ctx)
    health = c["registry"].health_check()
    if not health:
        console.print("[dim]No data sources configured[/dim]")
    for name, info in health.items():
        status = "[green]✓[/green]" if info["reachable"] else "[red]✗[/red]"
        console.print(f"  {status} {name} ({info['latency_ms']}ms)")


if __name__ == "__main__":
    cli()
