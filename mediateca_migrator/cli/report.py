"""Operator CLI for policies, migration reports and resuming executions."""
import json

import click

from mediateca_migrator.exceptions import MigratorError, TaskExecutionError
from mediateca_migrator.models.base import session_scope
from mediateca_migrator.models.repository import MigrationRepository
from mediateca_migrator.pipeline import state_machine
from mediateca_migrator.pipeline.report import build_report
from mediateca_migrator.schemas.migration import MigrationReport
from mediateca_migrator.schemas.policy import load_policy_file
from mediateca_migrator.tasks.migration import run_execution
from mediateca_migrator.utils.config import get_settings

SEVERITY_ICONS = {"error": "❌", "warning": "⚠️ ", "info": "ℹ️ "}


def print_report(report: MigrationReport) -> None:
    """Print a migration report as a text tree."""
    click.echo("\n" + "=" * 70)
    click.echo(f"MIGRATION REPORT #{report.migration_id}: {report.title}")
    click.echo("=" * 70)

    progress = report.progress
    click.echo("\n📊 STATUS")
    click.echo("-" * 70)
    click.echo(f"  Status:       {report.status}{' (final)' if report.final else ''}")
    click.echo(f"  Progress:     {progress.percentage}%")
    click.echo(f"  Events:       {progress.processed_events}/{progress.total_events} processed")
    click.echo(f"  Successful:   {progress.successful_events}")
    click.echo(f"  Failed:       {progress.failed_events}")
    click.echo(f"  Skipped:      {progress.skipped_events}")

    click.echo("\n📁 PLAN")
    click.echo("-" * 70)
    for event in report.events:
        click.echo(f"  {event.event_code}  {event.title or ''}".rstrip())
        if not event.folders:
            click.echo("    (no files)")
        for folder in event.folders:
            click.echo(f"    {folder.folder}")
            for item in folder.files:
                marker = "" if item.decided else " [undecided]"
                click.echo(f"      - {item.filename} [{item.action}]{marker}")
        for issue in event.issues:
            icon = SEVERITY_ICONS.get(issue.severity, "")
            resolved = " (resolved)" if issue.resolved else ""
            click.echo(f"    {icon} {issue.category}: {issue.message}{resolved}")

    if report.issues:
        click.echo("\n⚠️  RUN ISSUES")
        click.echo("-" * 70)
        for issue in report.issues:
            click.echo(f"  {SEVERITY_ICONS.get(issue.severity, '')} {issue.category}: {issue.message}")

    if report.dedup:
        click.echo("\n🔁 DEDUPLICATION")
        click.echo("-" * 70)
        for entry in report.dedup:
            collections = ", ".join(f"{name}={count}" for name, count in sorted(entry.collections.items()))
            click.echo(f"  {entry.event_code}: canonical={entry.canonical} ({collections})")
            if entry.tie_break:
                click.echo(f"      tie broken by {entry.tie_break}")
            if entry.legacy_tracks:
                click.echo(f"      legacy: {len(entry.legacy_tracks)}")
            if entry.duplicate_tracks:
                click.echo(f"      duplicates: {len(entry.duplicate_tracks)}")

    click.echo("\n" + "=" * 70 + "\n")


@click.group()
def cli() -> None:
    """Mediateca migration operator tools."""


@cli.command("validate-policy")
@click.argument("policy_path", type=click.Path(exists=True, dir_okay=False))
def validate_policy(policy_path: str) -> None:
    """Validate a migration policy YAML document."""
    try:
        policy = load_policy_file(policy_path)
    except MigratorError as exc:
        click.echo(f"❌ {exc}", err=True)
        raise SystemExit(1)

    click.echo(f"✅ Policy {policy_path} is valid")
    click.echo(f"  Storage:     {policy.storage.strategy.value} ({policy.storage.folder_pattern})")
    click.echo(f"  Legacy:      {policy.tracks.legacy_strategy.value}")
    click.echo(f"  Mismatch:    {policy.tracks.mismatch_strategy.value}")
    click.echo(f"  No audio:    {policy.content.no_audio_strategy.value}")
    click.echo(f"  Unmapped:    {policy.mapping.unmapped_strategy.value}")
    click.echo(f"  Min success: {policy.validation.min_success_rate:.0%}")
    click.echo(f"  Rollback:    {policy.rollback.on_failure.value}")


@cli.command("report")
@click.argument("migration_id", type=int)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output the report as JSON instead of formatted text",
)
def report(migration_id: int, output_json: bool) -> None:
    """Print the plan, issues and counters of a migration."""
    try:
        with session_scope() as session:
            run = MigrationRepository(session).get_run(migration_id)
            migration_report = build_report(session, run)
    except MigratorError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)

    if output_json:
        click.echo(json.dumps(migration_report.model_dump(mode="json"), indent=2))
    else:
        print_report(migration_report)


@cli.command("resume")
@click.argument("migration_id", type=int)
def resume(migration_id: int) -> None:
    """
    Resume a failed or abandoned execution in this process.

    The run continues from its last checkpoint; events already completed are
    not migrated again.
    """
    try:
        with session_scope() as session:
            run = MigrationRepository(session).get_run(migration_id)
            token = state_machine.resume_execution(
                session,
                run,
                lease_seconds=get_settings().execution_lease_seconds,
            )
    except MigratorError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)

    click.echo(f"Resuming migration {migration_id}...")
    try:
        result = run_execution(migration_id, token)
    except TaskExecutionError as exc:
        click.echo(f"❌ Execution failed: {exc}", err=True)
        raise SystemExit(1)
    click.echo(f"✅ Migration {migration_id} finished with status {result['status']}")


if __name__ == "__main__":
    cli()
