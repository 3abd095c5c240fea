"""
Main CLI entry point for Production Flow Orchestrator

Provides command-line interface for step catalogue checks, webhook signing
and operations, rule simulation and unit progression.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, Any, List

import click
import yaml

from ..core.config import OrchestratorConfig, load_config, load_step_catalog
from ..core.exceptions import ProductionFlowError, ConfigurationError
from ..core.orchestrator import ProductionOrchestrator
from ..models.automation import AutomationRule
from ..services.automation_engine import AutomationRuleEngine
from ..utils.database import DatabaseManager
from ..utils.memory_store import InMemoryDatabase
from ..utils.signing import signature_header
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose):
    """Production Flow Orchestrator CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    ctx.obj['config_path'] = config
    ctx.obj['database_url'] = database_url
    ctx.obj['log_level'] = log_level
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def steps(ctx):
    """Step catalogue commands"""
    pass


@cli.group()
@click.pass_context
def webhook(ctx):
    """Outgoing webhook commands"""
    pass


@cli.group()
@click.pass_context
def rules(ctx):
    """Automation rule commands"""
    pass


@cli.group()
@click.pass_context
def unit(ctx):
    """Unit progression commands"""
    pass


def _echo_json(data: Any):
    click.echo(json.dumps(data, indent=2, default=str))


def _run(coro, action: str):
    """Run a command coroutine, reporting orchestrator errors as a failed exit."""
    try:
        return asyncio.run(coro)
    except ProductionFlowError as e:
        click.echo(f"Error {action}: {e.message}", err=True)
        sys.exit(1)


def _get_config(ctx) -> OrchestratorConfig:
    config = load_config(ctx.obj.get('config_path'))
    if ctx.obj.get('database_url'):
        config.database_url = ctx.obj['database_url']
    if ctx.obj.get('log_level'):
        config.log_level = ctx.obj['log_level'].upper()
    setup_logger("production_flow_orchestrator", level=config.log_level,
                 structured=config.structured_logging and not ctx.obj.get('verbose'),
                 log_file=config.log_file)
    return config


def _create_store(config: OrchestratorConfig):
    """Build the persistence backend for commands that need stored state."""
    if not config.database_url:
        raise ConfigurationError("database_url", "set --database-url, PFO_DATABASE_URL or database_url in the config file")
    return DatabaseManager(config.database_url, pool_size=config.pool_size)


async def _initialize_orchestrator(ctx) -> ProductionOrchestrator:
    """Create and start an orchestrator for one command."""
    config = _get_config(ctx)
    orchestrator = ProductionOrchestrator(_create_store(config), config)
    await orchestrator.start()
    return orchestrator


def _read_structured(path: str) -> Any:
    """Read a YAML or JSON document."""
    try:
        with open(path, encoding='utf-8') as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(path, f"invalid document: {e}")


def _load_catalog(path: str, action: str):
    try:
        return load_step_catalog(path)
    except ProductionFlowError as e:
        click.echo(f"Error {action}: {e.message}", err=True)
        sys.exit(1)


# Step catalogue commands
@steps.command('validate')
@click.argument('catalog', type=click.Path(exists=True))
@click.pass_context
def validate_steps(ctx, catalog):
    """Validate a YAML step catalogue"""

    graphs = _load_catalog(catalog, "validating step catalogue")

    click.echo(f"Step catalogue {catalog} is valid")
    for product_type, graph in sorted(graphs.items()):
        conditional = sum(1 for d in graph if d.is_conditional)
        blocking = sum(1 for d in graph if d.blocks_on_failure)
        click.echo(f"  {product_type}: {len(graph)} steps "
                   f"({conditional} conditional, {blocking} blocking)")


@steps.command('show')
@click.argument('catalog', type=click.Path(exists=True))
@click.argument('product_type')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
def show_steps(ctx, catalog, product_type, as_json):
    """Show the step graph of one product type"""

    graphs = _load_catalog(catalog, "loading step catalogue")
    graph = graphs.get(product_type)
    if graph is None:
        click.echo(f"Product type {product_type} not found in {catalog}", err=True)
        sys.exit(1)

    if as_json:
        _echo_json(graph.to_dict())
        return
    _display_steps_table(graph)


# Webhook commands
@webhook.command('sign')
@click.option('--secret', required=True, help='Webhook secret')
@click.option('--body', help='Body to sign')
@click.option('--body-file', type=click.Path(exists=True), help='File holding the exact body bytes')
@click.pass_context
def sign_body(ctx, secret, body, body_file):
    """Print the X-Signature header for a request body"""

    if body_file:
        data = Path(body_file).read_bytes()
    elif body is not None:
        data = body.encode('utf-8')
    else:
        data = click.get_binary_stream('stdin').read()

    click.echo(signature_header(secret, data))


@webhook.command('send')
@click.argument('webhook_id')
@click.pass_context
def send_webhook(ctx, webhook_id):
    """Send a test notification to an outgoing webhook"""

    async def _send():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.send_test_webhook(webhook_id)
        finally:
            await orchestrator.stop()

    result = _run(_send(), "sending test webhook")
    _echo_json(result.to_dict())
    if not result.success:
        sys.exit(1)


@webhook.command('enable')
@click.argument('webhook_id')
@click.pass_context
def enable_webhook(ctx, webhook_id):
    """Re-enable a webhook and reset its failure count"""

    async def _enable():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.enable_webhook(webhook_id)
        finally:
            await orchestrator.stop()

    config = _run(_enable(), "enabling webhook")
    click.echo(f"Webhook {config.webhook_id} ({config.name}) enabled")


# Rule commands
def _load_rules(path: str, source_id: str) -> List[AutomationRule]:
    data = _read_structured(path)
    if isinstance(data, dict):
        data = data.get('rules', [])
    if not isinstance(data, list):
        raise ConfigurationError(path, "rules file must hold a list of rules")

    loaded = []
    for row in data:
        row = dict(row)
        row.setdefault('source_id', source_id)
        try:
            loaded.append(AutomationRule.from_dict(row))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(path, f"invalid rule {row.get('name', '<unnamed>')}: {e}")
    return loaded


@rules.command('simulate')
@click.argument('rules_file', type=click.Path(exists=True))
@click.option('--payload', 'payload_json', help='Sample payload as a JSON string')
@click.option('--payload-file', type=click.Path(exists=True), help='Sample payload file (JSON or YAML)')
@click.option('--source-id', default='simulation', help='Trigger source the rules belong to')
@click.option('--event-type', default='test', help='Event type of the sample trigger')
@click.pass_context
def simulate_rules(ctx, rules_file, payload_json, payload_file, source_id, event_type):
    """Dry-run rules against a sample payload"""

    async def _simulate():
        rule_list = _load_rules(rules_file, source_id)
        if payload_file:
            payload = _read_structured(payload_file) or {}
        elif payload_json:
            try:
                payload = json.loads(payload_json)
            except ValueError as e:
                raise ConfigurationError("payload", f"invalid JSON: {e}")
        else:
            payload = {}
        engine = AutomationRuleEngine(InMemoryDatabase())
        return engine.simulate(rule_list, payload, source_id=source_id, event_type=event_type)

    simulations = _run(_simulate(), "simulating rules")
    _echo_json([s.to_dict() for s in simulations])


# Unit commands
@unit.command('advance')
@click.argument('unit_ref')
@click.pass_context
def advance_unit(ctx, unit_ref):
    """Advance a unit (id or serial number) to its next step"""

    async def _advance():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.advance_unit(unit_ref)
        finally:
            await orchestrator.stop()

    result = _run(_advance(), "advancing unit")
    if ctx.obj['verbose']:
        _echo_json(result.to_dict())
        return
    click.echo(f"Unit {result.unit.serial_number}: {result.action}")
    click.echo(f"Current step: {result.unit.current_step}")
    click.echo(f"Status: {result.unit.status.value}")
    if result.skipped:
        click.echo(f"Skipped steps: {', '.join(str(s) for s in result.skipped)}")


@unit.command('status')
@click.argument('unit_ref')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
def unit_status(ctx, unit_ref, as_json):
    """Show a unit and its execution history"""

    async def _status():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.get_unit_status(unit_ref)
        finally:
            await orchestrator.stop()

    status = _run(_status(), "getting unit status")
    if as_json:
        _echo_json(status)
        return
    _display_unit_status(status)


@cli.command('health')
@click.pass_context
def system_health(ctx):
    """Show system health status"""

    async def _health():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.get_system_health()
        finally:
            await orchestrator.stop()

    _echo_json(_run(_health(), "getting system health"))


def _display_steps_table(graph):
    """Display a step graph as a table"""
    click.echo(f"Product type: {graph.product_type}")
    click.echo(f"{'Step':<6} {'Order':<6} {'Title':<32} {'Blocks':<7} {'Condition':<14} {'Restart':<7}")
    click.echo("-" * 78)
    for definition in graph:
        condition = ""
        if definition.is_conditional:
            condition = f"{definition.conditional_on_step}={definition.conditional_value}"
        restart = definition.restart_from_step if definition.restart_from_step is not None else ""
        click.echo(f"{definition.step_number:<6} {definition.sort_order:<6} {definition.title[:32]:<32} "
                   f"{'yes' if definition.blocks_on_failure else 'no':<7} {condition:<14} {restart!s:<7}")


def _display_unit_status(status: Dict[str, Any]):
    """Display a unit and its executions"""
    unit_info = status['unit']
    click.echo(f"Serial: {unit_info['serial_number']}")
    click.echo(f"Product type: {unit_info['product_type']}")
    click.echo(f"Status: {unit_info['status']}")
    click.echo(f"Current step: {unit_info['current_step']}")
    click.echo()

    click.echo(f"{'Seq':<5} {'Step':<6} {'Status':<12} {'Validation':<11} {'Value':<16} {'Superseded'}")
    click.echo("-" * 64)
    for execution in status['executions']:
        click.echo(f"{execution['sequence']:<5} {execution['step_number']:<6} {execution['status']:<12} "
                   f"{execution['validation_status'] or '':<11} {str(execution['value_recorded'] or '')[:16]:<16} "
                   f"{'yes' if execution['superseded_by'] else ''}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
