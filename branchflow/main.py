"""CLI entry point for the branch orchestration engine."""

import asyncio
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
import structlog

from branchflow.config.settings import EngineSettings
from branchflow.engine.audit import AuditMetricsRecorder
from branchflow.engine.naming import BranchNameGenerator
from branchflow.engine.policy import MergePolicyEngine
from branchflow.engine.routing import TaskTypeRoutingTable
from branchflow.enums import OperationType, ProtectionLevel
from branchflow.exceptions import BranchflowError, ConfigurationError
from branchflow.models.domain import AuditFilter, ExecutionSignals, Task, WorkflowOptions
from branchflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

_OPERATIONS = [operation.value for operation in OperationType]


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _as_utc(moment: datetime | None) -> datetime | None:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def _audit_filter(since: datetime | None, until: datetime | None, operation: str | None) -> AuditFilter:
    return AuditFilter(
        start_date=_as_utc(since),
        end_date=_as_utc(until),
        operation_type=OperationType(operation) if operation else None,
    )


def _recorder(settings: EngineSettings) -> AuditMetricsRecorder:
    if settings.audit.log_path is None:
        raise ConfigurationError("No audit log configured; set audit.log_path or BRANCHFLOW_AUDIT__LOG_PATH")
    if not Path(settings.audit.log_path).exists():
        raise ConfigurationError(f"Audit log not found: {settings.audit.log_path}")
    return AuditMetricsRecorder.from_config(settings.audit)


def _run(ctx: click.Context, command: str, func: Any) -> None:
    """Run a command body, mapping engine errors onto exit code 1."""
    try:
        func(ctx.obj["settings"])
    except BranchflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)


def _time_window_options(func: Any) -> Any:
    func = click.option(
        "--operation", type=click.Choice(_OPERATIONS), default=None, help="Only this operation type"
    )(func)
    func = click.option("--until", type=click.DateTime(), default=None, help="Latest entry time (UTC)")(func)
    func = click.option("--since", type=click.DateTime(), default=None, help="Earliest entry time (UTC)")(func)
    return func


@click.group()
@click.option("--config", default=None, help="Path to YAML configuration file")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """branchflow: policy-driven branch and merge orchestration."""
    configure_logging(log_level)

    try:
        settings = EngineSettings.from_yaml(config) if config else EngineSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("task_type")
@click.option("--title", default="Untitled task", help="Task title used in the branch name")
@click.option("--id", "task_id", default="0", help="Task identifier")
@click.option("--merge-target", default=None, help="Override the merge target")
@click.option(
    "--protection",
    type=click.Choice([level.value for level in ProtectionLevel]),
    default=None,
    help="Override the protection level",
)
@click.option("--confidence", type=float, default=None, help="Execution confidence score (0..1)")
@click.pass_context
def classify(
    ctx: click.Context,
    task_type: str,
    title: str,
    task_id: str,
    merge_target: str | None,
    protection: str | None,
    confidence: float | None,
) -> None:
    """Show the strategy, branch name and merge policy for a task type."""

    def body(settings: EngineSettings) -> None:
        routing = TaskTypeRoutingTable.from_settings(settings)
        policy = MergePolicyEngine(settings.policy, settings.branches.targets)
        builder = WorkflowOptions.builder()
        if merge_target:
            builder.merge_target(merge_target)
        if protection:
            builder.branch_protection(protection)
        options = builder.build()

        task = Task(id=task_id, title=title, type=task_type)
        strategy = policy.resolve_strategy(routing.resolve(task_type), options)
        signals = ExecutionSignals(confidence_score=confidence)
        resolved = asyncio.run(policy.evaluate(strategy, options, signals, task=task))
        _echo_json(
            {
                "task_type": task_type,
                "strategy": strategy.to_dict(),
                "branch_name": BranchNameGenerator().base_name(strategy, task, datetime.now(UTC)),
                "policy": {
                    "auto_merge_allowed": resolved.auto_merge_allowed,
                    "reviewers_required": resolved.reviewers_required,
                    "reason": resolved.reason,
                },
            }
        )

    _run(ctx, "classify", body)


@cli.command()
@click.pass_context
def routes(ctx: click.Context) -> None:
    """List the routing table."""

    def body(settings: EngineSettings) -> None:
        table = TaskTypeRoutingTable.from_settings(settings)
        click.echo(f"{'TASK TYPE':<20} {'PREFIX':<14} {'BASE':<12} {'TARGET':<12} PROTECTION")
        for task_type, strategy in [*table, ("(default)", table.default)]:
            click.echo(
                f"{task_type:<20} {strategy.name_prefix:<14} {strategy.base_branch:<12} "
                f"{strategy.merge_target:<12} {strategy.protection_level.value}"
            )

    _run(ctx, "routes", body)


@cli.command()
@_time_window_options
@click.option("--limit", type=int, default=None, help="Maximum number of entries")
@click.pass_context
def audit(
    ctx: click.Context,
    since: datetime | None,
    until: datetime | None,
    operation: str | None,
    limit: int | None,
) -> None:
    """Print audit entries, newest first."""

    def body(settings: EngineSettings) -> None:
        recorder = _recorder(settings)
        entries = asyncio.run(
            recorder.query(_audit_filter(since, until, operation), limit=limit, newest_first=True)
        )
        _echo_json([entry.to_dict() for entry in entries])

    _run(ctx, "audit", body)


@cli.command()
@_time_window_options
@click.pass_context
def metrics(ctx: click.Context, since: datetime | None, until: datetime | None, operation: str | None) -> None:
    """Print execution metrics derived from the audit log."""

    def body(settings: EngineSettings) -> None:
        snapshot = asyncio.run(_recorder(settings).metrics(_audit_filter(since, until, operation)))
        _echo_json(snapshot.to_dict())

    _run(ctx, "metrics", body)


@cli.command()
@_time_window_options
@click.pass_context
def statistics(ctx: click.Context, since: datetime | None, until: datetime | None, operation: str | None) -> None:
    """Print audit entry counts by operation type and outcome."""

    def body(settings: EngineSettings) -> None:
        stats = asyncio.run(_recorder(settings).statistics(_audit_filter(since, until, operation)))
        _echo_json(stats)

    _run(ctx, "statistics", body)


if __name__ == "__main__":
    cli()
