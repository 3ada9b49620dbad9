#!/usr/bin/env python3
"""
IAM Control CLI - Command Line Interface for the IAM Engine.

Provides commands for validating configuration, previewing the plan,
applying it through a provisioner and reviewing the security audit report.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..audit import build_audit_report
from ..connectors import get_provisioner
from ..engine import StateManager, Validator, flatten_memberships
from ..exceptions import ConfigurationError, IAMEngineError, ValidationError
from ..exporter import export_resolved
from ..ingestion import load_config
from ..models import AuditReport, ReconcileReport
from ..workflows import ReconcileWorkflow

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()


class IAMController:
    """Loads configuration and builds the components each command needs."""

    def __init__(self, config_path: str, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        self.settings, self.model = load_config(config_path, overrides)
        self.state_manager = StateManager(self.settings.state_file)

    def workflow(self, mock: bool = True, provisioner_config: Optional[Dict[str, Any]] = None) -> ReconcileWorkflow:
        config = dict(provisioner_config or {})
        config.setdefault("organization_id", self.settings.organization_id)
        provisioner = get_provisioner(config, mock=mock)
        if not mock:
            return ReconcileWorkflow(provisioner, self.settings, state_manager=self.state_manager)

        # Dry runs start from the applied state but never write to it
        state_manager = self.state_manager.in_memory_copy()
        for entry in state_manager.all_entries():
            provisioner.adopt(entry.ref.kind, entry.ref.key, entry.identifier, entry.fields)
        return ReconcileWorkflow(provisioner, self.settings, state_manager=state_manager)


@click.group()
@click.option('--config', '-c', 'config_path', required=True, type=click.Path(exists=True),
              help='Path to the YAML configuration file')
@click.option('--state-file', help='Override the applied-state file')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_path, state_file, verbose):
    """IAM Engine Control CLI - declarative IAM reconciliation"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj['controller'] = IAMController(config_path, {"state_file": state_file})
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(2)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the configuration and report every violation."""
    controller = ctx.obj['controller']

    violations = Validator(controller.settings).validate(controller.model)
    if not violations:
        console.print("[green]✓ Configuration is valid[/green]")
        return

    display_violations(violations)
    sys.exit(1)


@cli.command()
@click.pass_context
def plan(ctx):
    """Show what an apply would create, update, replace or delete."""
    controller = ctx.obj['controller']

    try:
        result = controller.workflow().plan(controller.model)
    except ValidationError as e:
        display_violations(e.violations)
        sys.exit(1)
    except IAMEngineError as e:
        console.print(f"[red]Planning failed: {e}[/red]")
        sys.exit(1)

    table = Table(title="Plan")
    table.add_column("Node", style="cyan")
    table.add_column("Action", style="magenta")
    for row in result.describe():
        table.add_row(row["node"], row["action"])
    console.print(table)

    summary = ", ".join(f"{count} to {action}" for action, count in result.summary().items())
    console.print(f"[blue]Plan: {summary}[/blue]")


@cli.command()
@click.option('--mock/--real', default=True, help='Use the in-memory provisioner (default) or the Scaleway API')
@click.option('--secret-key', envvar='SCW_SECRET_KEY', help='Scaleway secret key (real mode)')
@click.option('--parallelism', type=int, help='Override the maximum concurrent dispatches')
@click.option('--output', type=click.Path(), help='Write the resolved public view as JSON')
@click.pass_context
def apply(ctx, mock, secret_key, parallelism, output):
    """Provision the configuration in dependency order."""
    controller = ctx.obj['controller']
    if parallelism:
        controller.settings.max_parallelism = parallelism

    try:
        workflow = controller.workflow(mock=mock, provisioner_config={"secret_key": secret_key})
    except ValueError as e:
        console.print(f"[red]Cannot initialize provisioner: {e}[/red]")
        sys.exit(2)

    report = workflow.execute(controller.model)
    display_reconcile_report(report)
    if mock:
        console.print("[yellow]Mock provisioner: applied state was not updated[/yellow]")

    if output and report.outcomes:
        export = export_resolved(controller.model)
        with open(output, 'w', encoding='utf-8') as f:
            json.dump(export.public, f, indent=2, default=str)
        console.print(f"[blue]Resolved model written to {output}[/blue]")

    if not report.success:
        sys.exit(1)


@cli.command()
@click.pass_context
def audit(ctx):
    """Show the security audit report for the applied state."""
    controller = ctx.obj['controller']

    controller.model.set_memberships(flatten_memberships(controller.model.groups))
    hydrated = controller.state_manager.hydrate(controller.model)
    if not hydrated:
        console.print("[yellow]No applied state found; nothing to audit[/yellow]")
        return

    display_audit_report(build_audit_report(controller.model))


def display_violations(violations):
    """Display validation violations in a table."""
    table = Table(title=f"Validation Violations ({len(violations)})")
    table.add_column("Entity", style="cyan")
    table.add_column("Field", style="yellow")
    table.add_column("Kind", style="magenta")
    table.add_column("Message", style="red")

    for violation in violations:
        table.add_row(
            f"{violation.entity_kind.value}.{violation.key}",
            violation.field,
            violation.kind.value,
            violation.message,
        )

    console.print(table)


def display_reconcile_report(report: ReconcileReport):
    """Display reconcile results in a formatted way."""
    if report.violations:
        display_violations(report.violations)

    if report.success:
        console.print("[green]✓ Reconcile completed successfully[/green]")
    else:
        console.print(f"[red]✗ Reconcile failed: {report.error or 'see node results'}[/red]")

    for diagnostic in report.diagnostics:
        console.print(f"[yellow]! {diagnostic}[/yellow]")

    if report.outcomes:
        table = Table(title="Node Results")
        table.add_column("Node", style="cyan")
        table.add_column("Action", style="green")
        table.add_column("Status", style="magenta")
        table.add_column("Detail", style="red")

        for name, outcome in report.outcomes.items():
            detail = outcome.error or (f"blocked by {outcome.blocked_by}" if outcome.blocked_by else "")
            table.add_row(
                name,
                outcome.action.value if outcome.action else "",
                outcome.status.value,
                detail,
            )
        console.print(table)

    if report.audit:
        display_audit_report(report.audit)


def display_audit_report(audit_report: AuditReport):
    """Display the audit report."""
    table = Table(title="Resolved Entities")
    table.add_column("Class", style="cyan")
    table.add_column("Count", style="magenta")
    for kind, count in audit_report.counts.items():
        table.add_row(kind, str(count))
    console.print(table)

    lines = [
        f"API keys without expiration: {', '.join(audit_report.api_keys_without_expiration) or 'none'}",
        f"Disabled SSH keys: {', '.join(audit_report.ssh_keys_disabled) or 'none'}",
        f"Active SSH keys: {', '.join(audit_report.ssh_keys_active) or 'none'}",
    ]
    console.print(Panel.fit("\n".join(lines), title="Security Posture"))


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == '__main__':
    main()
