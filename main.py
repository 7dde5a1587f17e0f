#!/usr/bin/env python3
"""
YieldKeeper - Unattended vault capital allocation
Main CLI entry point
"""

import sys

import click
from rich.console import Console
from rich.table import Table

from yieldkeeper import __version__
from yieldkeeper.allocation.models import MAX_WITHDRAW, Policy
from yieldkeeper.config import RebalancerSettings, load_config
from yieldkeeper.exceptions import YieldKeeperError
from yieldkeeper.utils import get_logger, setup_logging

# Initialize console
console = Console()

DEFAULT_CONFIG = "config/config.yaml"


@click.group()
@click.version_option(version=__version__)
@click.option('--config', 'config_path', type=str, default=DEFAULT_CONFIG, help='Path to config.yaml')
@click.pass_context
def cli(ctx, config_path):
    """
    YieldKeeper - Unattended vault capital allocation

    Moves vault funds between yield strategies: equal-weight or
    single-winner yield policy, liquidity aware, on a schedule, on
    deposits or on demand.

    \b
    Quick start:
        yieldkeeper strategies          # List configured strategies
        yieldkeeper plan                # Show the next rebalance (no transactions)
        yieldkeeper run                 # Start all loops + health server
    """
    if ctx.obj is None:
        ctx.obj = {}

    try:
        config = load_config(config_path)
        settings = RebalancerSettings.from_config(config)
    except (FileNotFoundError, ValueError, YieldKeeperError) as e:
        console.print(f"[red]Failed to load configuration:[/red] {e}")
        sys.exit(1)

    setup_logging(
        log_file=config.get('logging.file', 'logs/yieldkeeper.log'),
        log_level=config.get('logging.level', 'INFO'),
        max_bytes=config.get('logging.max_bytes', 10485760),
        backup_count=config.get('logging.backup_count', 5),
        module_levels=config.get('logging.module_levels')
    )

    ctx.obj['config_path'] = config_path
    ctx.obj['config'] = config
    ctx.obj['settings'] = settings
    ctx.obj['logger'] = get_logger('yieldkeeper.cli')


# ==============================================================================
# RUN
# ==============================================================================

@cli.command()
@click.pass_context
def run(ctx):
    """
    Start the rebalance worker, sibling loops and the health server

    Live mode is controlled by system.dry_run in the config (DRY_RUN env)
    so that the worker process sees the same setting.
    """
    from yieldkeeper.app import YieldKeeperApp

    settings = ctx.obj['settings']

    mode = "[red]LIVE[/red]" if not settings.dry_run else "[yellow]DRY RUN[/yellow]"
    console.print(f"\n[bold cyan]YieldKeeper v{__version__}[/bold cyan] - mode: {mode}\n")

    try:
        YieldKeeperApp(settings, ctx.obj['config_path']).run()
    except YieldKeeperError as e:
        console.print(f"[red]Startup failed:[/red] {e}")
        sys.exit(1)


# ==============================================================================
# PLAN
# ==============================================================================

def _format_amount(amount: int) -> str:
    return "MAX" if amount == MAX_WITHDRAW else f"{amount:,}"


@cli.command()
@click.option('--policy', type=click.Choice(['yield', 'equal_weight']), default=None,
              help='Override rebalance.policy for this plan')
@click.pass_context
def plan(ctx, policy):
    """Compute the target allocation and planned operations (no transactions)"""
    from yieldkeeper.app import plan_once
    from yieldkeeper.executor.connection import ConnectionManager
    from yieldkeeper.strategies.registry import load_strategy_registry

    settings = ctx.obj['settings']

    try:
        registry = load_strategy_registry(settings.strategies_file, settings.vault.asset_symbol)
        connection = ConnectionManager.from_settings(settings)
        current, target, operations = plan_once(
            settings, connection, registry, Policy(policy) if policy else None
        )
    except YieldKeeperError as e:
        console.print(f"[red]Planning failed:[/red] {e}")
        sys.exit(1)

    header = f"Target allocation (policy={target.policy.value}"
    if target.fallback_reason:
        header += f", fallback={target.fallback_reason.value}"
    if target.winner_id:
        header += f", winner={target.winner_id}"
    header += ")"

    table = Table(title=header)
    table.add_column("Strategy", style="cyan")
    table.add_column("Type")
    table.add_column("Current", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Delta", justify="right")

    for cur, tgt in zip(current.entries, target.entries):
        delta = tgt.value - cur.value
        color = "green" if delta > 0 else "red" if delta < 0 else "white"
        table.add_row(
            cur.strategy_id,
            cur.strategy_type,
            f"{cur.value:,}",
            f"{tgt.value:,}",
            f"[{color}]{delta:+,}[/{color}]",
        )
    console.print(table)

    if not operations:
        console.print("\n[green]Allocation already at target, nothing to do[/green]")
        return

    ops_table = Table(title="Planned operations")
    ops_table.add_column("#", justify="right")
    ops_table.add_column("Operation")
    ops_table.add_column("Strategy", style="cyan")
    ops_table.add_column("Amount", justify="right")
    for i, op in enumerate(operations, 1):
        ops_table.add_row(str(i), op.kind.value, op.strategy_id, _format_amount(op.amount))
    console.print(ops_table)


# ==============================================================================
# STRATEGIES
# ==============================================================================

@cli.command()
@click.pass_context
def strategies(ctx):
    """List the strategy registry"""
    from yieldkeeper.strategies.registry import StrategyKind, load_strategy_registry

    settings = ctx.obj['settings']
    try:
        registry = load_strategy_registry(settings.strategies_file, settings.vault.asset_symbol)
    except YieldKeeperError as e:
        console.print(f"[red]Failed to load strategies:[/red] {e}")
        sys.exit(1)

    table = Table(title=f"Strategies ({len(registry)})")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Address")
    table.add_column("Position account")
    table.add_column("Liquidity account")

    for s in registry:
        kind = s.kind_name if isinstance(s.kind, StrategyKind) else f"[red]{s.kind_name} (unknown)[/red]"
        table.add_row(s.id, kind, s.address, s.position_account or "-", s.liquidity_account or "-")
    console.print(table)


if __name__ == '__main__':
    cli()
