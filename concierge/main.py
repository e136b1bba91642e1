"""Concierge entry point: inspect, cancel and audit persisted plans."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import click

from concierge.config import Settings, load_settings
from concierge.planner.approvals import SqliteApprovalStore
from concierge.planner.executor import PlanExecutor
from concierge.planner.models import PlanningError, StructuredPlan
from concierge.planner.repository import SqlitePlanRepository
from concierge.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

T = TypeVar("T")


class Concierge:
    """Owns the sqlite stores and an executor wired to them."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        data_dir = settings.get_data_dir()
        self.plans = SqlitePlanRepository(data_dir / "plans.db")
        self.approvals = SqliteApprovalStore(data_dir / "approvals.db")
        # No tools are registered here; the CLI only reads, cancels and analyses.
        self.executor = PlanExecutor(self.plans, {}, self.approvals, settings.executor)

    async def start(self) -> None:
        await self.plans.start()
        await self.approvals.start()

    async def stop(self) -> None:
        await self.approvals.stop()
        await self.plans.stop()


async def _with_app(settings: Settings, fn: Callable[[Concierge], Awaitable[T]]) -> T:
    app = Concierge(settings)
    await app.start()
    try:
        return await fn(app)
    finally:
        await app.stop()


def _run(ctx: click.Context, fn: Callable[[Concierge], Awaitable[T]]) -> T:
    try:
        return asyncio.run(_with_app(ctx.obj, fn))
    except PlanningError as e:
        raise click.ClickException(f"{e.code.value}: {e}") from e


def _format_summary(plan: StructuredPlan) -> str:
    done = sum(1 for s in plan.steps if s.status.is_terminal)
    return f"{plan.id}  {plan.status.value:<9}  {done}/{len(plan.steps)}  {plan.goal}"


def _format_detail(plan: StructuredPlan) -> str:
    lines = [
        f"Plan {plan.id} ({plan.status.value})",
        f"Goal: {plan.goal}",
        f"User: {plan.user_id}",
        f"Current step: {plan.current_step_index}",
    ]
    for step in plan.steps:
        line = f"  [{step.index}] {step.status.value:<9} {step.tool_name}"
        if step.description:
            line += f" - {step.description}"
        if step.error:
            line += f" (error: {step.error})"
        elif step.skip_reason:
            line += f" ({step.skip_reason})"
        elif step.approval_id and step.status.value == "pending":
            line += f" (awaiting approval {step.approval_id})"
        lines.append(line)
    return "\n".join(lines)


def _echo_plans(plans: list[StructuredPlan]) -> None:
    if not plans:
        click.echo("No plans.")
        return
    for plan in plans:
        click.echo(_format_summary(plan))


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Inspect and manage Concierge plans."""
    settings = load_settings(config_path)
    if log_level:
        settings.log_level = log_level
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    ctx.obj = settings


@cli.command()
@click.argument("user_id")
@click.pass_context
def pending(ctx: click.Context, user_id: str) -> None:
    """List paused and not-yet-started plans for USER_ID."""
    _echo_plans(_run(ctx, lambda app: app.executor.get_pending_plans(user_id)))


@cli.command()
@click.argument("user_id")
@click.pass_context
def interrupted(ctx: click.Context, user_id: str) -> None:
    """List plans left running, e.g. after a crash."""
    _echo_plans(_run(ctx, lambda app: app.executor.get_interrupted_plans(user_id)))


@cli.command()
@click.argument("plan_id")
@click.pass_context
def show(ctx: click.Context, plan_id: str) -> None:
    """Show a plan and the state of each step."""

    async def _get(app: Concierge) -> Any:
        return await app.plans.get_by_id(plan_id)

    plan = _run(ctx, _get)
    if plan is None:
        raise click.ClickException(f"Plan {plan_id} not found")
    click.echo(_format_detail(plan))


@cli.command()
@click.argument("plan_id")
@click.option(
    "--by", "cancelled_by", type=click.Choice(["user", "system"]), default="user",
    show_default=True, help="Who is cancelling the plan",
)
@click.pass_context
def cancel(ctx: click.Context, plan_id: str, cancelled_by: str) -> None:
    """Cancel PLAN_ID, skipping its remaining steps."""
    plan = _run(ctx, lambda app: app.executor.cancel_plan(plan_id, cancelled_by))  # type: ignore[arg-type]
    log.info("plan_cancelled_from_cli", plan_id=plan_id)
    click.echo(f"Cancelled plan {plan.id}")
    click.echo(_format_detail(plan))


@cli.command("rollback-report")
@click.argument("plan_id")
@click.pass_context
def rollback_report(ctx: click.Context, plan_id: str) -> None:
    """List which completed steps of PLAN_ID could be undone."""
    analysis = _run(ctx, lambda app: app.executor.analyze_rollback(plan_id))
    click.echo(f"Rollback effort: {analysis.effort}")
    for step in analysis.rollbackable_steps:
        click.echo(f"  [{step.index}] {step.tool_name} -> {step.action.tool_name}")
    for blocked in analysis.non_rollbackable_steps:
        click.echo(f"  [{blocked.index}] {blocked.tool_name}: {blocked.reason}")
    if not analysis.rollbackable_steps and not analysis.non_rollbackable_steps:
        click.echo("No completed steps.")


if __name__ == "__main__":
    cli()
