"""Main CLI for agent orchestrator."""

import asyncio
from pathlib import Path

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..agents.claude_code import ClaudeCodeAdapter
from ..agents.gemini import GeminiAdapter
from ..agents.registry import AgentRegistry
from ..core.config import load_config
from ..core.runner import TaskRunner
from ..core.task import TaskStatus, create_task
from ..core.task_state import TaskStateMachine
from ..core.task_store import FileTaskStore
from ..core.usage_gate import UsageLimitGate
from ..errors.exceptions import OrchestratorError
from ..errors.translator import ErrorTranslator
from ..health.checker import CheckStatus, HealthChecker
from ..utils.rich_logging import setup_rich_logging

console = Console()
translator = ErrorTranslator()

STATUS_STYLES = {
    TaskStatus.QUEUED.value: "cyan",
    TaskStatus.RUNNING.value: "bold blue",
    TaskStatus.AWAITING_AGENT.value: "blue",
    TaskStatus.NEEDS_REVIEW.value: "yellow",
    TaskStatus.COMPLETED.value: "green",
    TaskStatus.FAILED.value: "red",
    TaskStatus.REJECTED.value: "magenta",
    TaskStatus.CANCELLED.value: "dim",
    TaskStatus.PAUSED.value: "bright_black",
    TaskStatus.BACKLOG.value: "white",
}

CHECK_ICONS = {
    CheckStatus.PASSED: "[green]✓[/]",
    CheckStatus.FAILED: "[red]✗[/]",
    CheckStatus.WARNING: "[yellow]![/]",
    CheckStatus.SKIPPED: "[dim]-[/]",
}


def _state_machine(ctx) -> TaskStateMachine:
    config = ctx.obj["config"]
    store = FileTaskStore(ctx.obj["workspace"] / config.tasks.store_dir)
    return TaskStateMachine(store)


def _usage_gate(ctx) -> UsageLimitGate:
    return UsageLimitGate(ctx.obj["workspace"] / ctx.obj["config"].tasks.usage_state_file)


def _show_error(error: Exception) -> None:
    console.print(translator.format_for_cli(translator.translate(error)))


@click.group()
@click.option("--workspace", "-w", default=".", help="Workspace directory")
@click.option("--config", "-c", "config_path", default="agent-orchestrator.yaml", help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, workspace, config_path, verbose):
    """Agent Orchestrator - run coding-agent CLIs as tracked tasks."""
    ctx.ensure_object(dict)
    workspace = Path(workspace)
    config_file = Path(config_path)
    if not config_file.is_absolute():
        config_file = workspace / config_file

    try:
        config = load_config(config_file)
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        _show_error(e)
        ctx.exit(1)

    log_level = "DEBUG" if verbose else config.log_level
    ctx.obj["workspace"] = workspace
    ctx.obj["config_path"] = config_file
    ctx.obj["config"] = config
    ctx.obj["registry"] = AgentRegistry.from_config(config)
    ctx.obj["logger"] = setup_rich_logging(
        "orchestrator", workspace, log_level, log_dir=workspace / config.tasks.log_dir
    )


@cli.command()
@click.option("--probe", is_flag=True, help="Also send a tiny prompt to check auth and quota")
@click.pass_context
def doctor(ctx, probe):
    """Check agent CLIs and configuration."""
    checker = HealthChecker(ctx.obj["registry"], ctx.obj["config"], ctx.obj["config_path"])
    results = asyncio.run(checker.run_all_checks(probe=probe))

    table = Table(title="Health Check")
    table.add_column("")
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Fix")
    for result in results:
        table.add_row(CHECK_ICONS[result.status], result.name, result.message, result.fix_action or "")
    console.print(table)

    if any(r.status == CheckStatus.FAILED for r in results):
        ctx.exit(1)


@cli.command()
@click.option("--agent", "-a", help="Agent id (default: all agents)")
@click.option("--resolve", "alias", help="Resolve an alias (e.g. opus) to a model id")
@click.option("--refresh", is_flag=True, help="Fetch the current model list from the vendor API")
@click.pass_context
def models(ctx, agent, alias, refresh):
    """List known models with their tier aliases."""
    registry: AgentRegistry = ctx.obj["registry"]
    adapters = [registry.get(agent)] if agent else registry.all()
    if agent and adapters[0] is None:
        console.print(f"[red]Unknown agent: {agent}[/]")
        ctx.exit(1)

    if refresh:
        async def _refresh():
            for adapter in adapters:
                adapter.clear_models_cache()
                await adapter.refresh_models()

        asyncio.run(_refresh())

    if alias:
        for adapter in adapters:
            console.print(f"{adapter.id}: [bold]{alias}[/] -> [cyan]{adapter.resolve_model_alias(alias)}[/]")
        return

    for adapter in adapters:
        table = Table(title=adapter.name)
        table.add_column("Model")
        table.add_column("Tier")
        table.add_column("Version")
        table.add_column("Alias")
        table.add_column("")
        for model in adapter.get_available_models():
            flags = []
            if model.is_default:
                flags.append("[green]default[/]")
            if model.is_legacy:
                flags.append("[dim]legacy[/]")
            table.add_row(model.id, model.tier or "", model.version or "", model.alias or "", " ".join(flags))
        console.print(table)

    commit = ctx.obj["config"].commit_message
    commit_adapter = registry.get(commit.agent)
    if commit_adapter is not None:
        console.print(
            f"\nCommit messages: [bold]{commit.model}[/] -> "
            f"[cyan]{commit_adapter.resolve_model_alias(commit.model)}[/] ({commit_adapter.name})"
        )


@cli.command()
@click.argument("prompt", required=False)
@click.option("--project", "-p", default="default", help="Project id")
@click.option("--task-id", "-t", help="Run an existing queued task instead of creating one")
@click.option("--agent", "-a", help="Agent id")
@click.option("--model", "-m", help="Model id or alias")
@click.option("--context", "context_files", multiple=True, help="Extra context directory (repeatable)")
@click.option("--thinking", is_flag=True, help="Enable extended thinking (Claude Code)")
@click.option("--check-usage", is_flag=True, help="Probe quota before starting")
@click.pass_context
def run(ctx, prompt, project, task_id, agent, model, context_files, thinking, check_usage):
    """Run one task iteration with an agent."""
    if not prompt and not task_id:
        console.print("[red]Give a PROMPT or --task-id[/]")
        ctx.exit(1)

    config = ctx.obj["config"]
    state = _state_machine(ctx)
    runner = TaskRunner(
        state,
        ctx.obj["registry"],
        workspace=ctx.obj["workspace"].resolve(),
        max_duration_seconds=config.tasks.max_duration_seconds,
        check_usage_first=check_usage,
        context_logger=ctx.obj["logger"],
        usage_gate=_usage_gate(ctx),
        kill_grace_seconds=config.tasks.kill_grace_seconds,
    )

    async def _run():
        nonlocal task_id
        if not task_id:
            task = create_task(
                project,
                prompt,
                agent_id=agent,
                model=model,
                context_files=list(context_files),
                thinking=thinking,
            )
            await state.store.save_task(task)
            task_id = task.id
            console.print(f"[green]✓[/] Created task [bold]{task_id}[/]")
        return await runner.run_task(project, task_id)

    try:
        outcome = asyncio.run(_run())
    except OrchestratorError as e:
        _show_error(e)
        ctx.exit(1)

    task = outcome.task
    if task is None:
        console.print("[red]Task disappeared from the store[/]")
        ctx.exit(1)

    if outcome.blocked_by is not None:
        block = outcome.blocked_by
        if block.resume_at is not None:
            console.print(f"[yellow]{block.agent_id} is paused by a usage limit until {block.resume_at.isoformat()}[/]")
        else:
            console.print(
                f"[yellow]{block.agent_id} is paused by a usage limit; "
                f"resume with: agent-orchestrator limits --clear {block.agent_id}[/]"
            )

    style = STATUS_STYLES.get(task.status, "")
    console.print(f"Task [bold]{task.id}[/] is now [{style}]{task.status}[/] ({task.runtime_ms / 1000:.1f}s total)")
    if task.error_message:
        friendly = translator.translate_kind(outcome.classification.kind, task.error_message)
        if friendly is not None:
            console.print(translator.format_for_cli(friendly))
        else:
            console.print(f"[red]{task.error_message}[/]")
    if task.needs_continuation:
        console.print(f"[yellow]Work looks incomplete ({task.continuation_reason}):[/] {task.continuation_details}")
        for step in task.suggested_next_steps:
            console.print(f"  • {step}")
    if not outcome.succeeded:
        ctx.exit(1)


@cli.command("retry-prompt")
@click.argument("task_id")
@click.option("--project", "-p", default="default", help="Project id")
@click.option("--iteration", "-i", type=int, help="Iteration to mine (default: current)")
@click.option("--requeue", is_flag=True, help="Start a new iteration with the generated prompt")
@click.pass_context
def retry_prompt(ctx, task_id, project, iteration, requeue):
    """Build a continuation prompt from an iteration's log."""
    state = _state_machine(ctx)

    async def _retry():
        context = await state.generate_retry_context(project, task_id, iteration)
        if context is None or not requeue:
            return context, None
        result = await state.start_new_iteration(project, task_id, context.prompt)
        return context, result

    context, result = asyncio.run(_retry())
    if context is None:
        console.print(f"[red]Task not found: {task_id}[/]")
        ctx.exit(1)

    console.print(f"[dim]{context.summary}[/]\n")
    console.print(context.prompt, markup=False)
    if result is not None:
        if result.ok:
            console.print(f"\n[green]✓[/] Requeued as iteration {result.task.current_iteration}")
        else:
            console.print(f"\n[red]Could not requeue: {result.reason}[/]")
            ctx.exit(1)


@cli.command()
@click.argument("task_id")
@click.option("--project", "-p", default="default", help="Project id")
@click.option("--accept/--reject", default=True, help="Accept or reject the reviewed work")
@click.pass_context
def review(ctx, task_id, project, accept):
    """Accept or reject a task waiting for review."""
    state = _state_machine(ctx)
    action = state.accept_task if accept else state.reject_task
    result = asyncio.run(action(project, task_id))
    if not result.ok:
        console.print(f"[red]{result.reason}[/]")
        ctx.exit(1)
    console.print(f"[green]✓[/] Task {task_id} is now {result.task.status}")


@cli.command()
@click.argument("agent_id")
@click.option("--project-path", help="Directory to open the agent in")
@click.pass_context
def reauth(ctx, agent_id, project_path):
    """Open an agent's reauthentication flow."""
    adapter = ctx.obj["registry"].get(agent_id)
    if adapter is None:
        console.print(f"[red]Unknown agent: {agent_id}[/]")
        ctx.exit(1)
    result = asyncio.run(adapter.trigger_reauth(project_path))
    if result.success:
        console.print(f"[green]✓[/] Opened a terminal for {adapter.name}; finish logging in there")
    else:
        console.print(f"[yellow]{result.error}[/]")
        ctx.exit(1)


@cli.command()
@click.option("--project", "-p", default="default", help="Project id")
@click.option("--status", "-s", type=click.Choice([s.value for s in TaskStatus]), help="Only this status")
@click.pass_context
def tasks(ctx, project, status):
    """List tasks of a project."""
    state = _state_machine(ctx)
    items = asyncio.run(state.store.list_tasks(project))
    if status:
        items = [t for t in items if t.status == status]

    if not items:
        console.print("[dim]No tasks[/]")
        return

    table = Table(title=f"Tasks ({project})")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Iter")
    table.add_column("Runtime")
    table.add_column("Prompt")
    for task in items:
        style = STATUS_STYLES.get(task.status, "")
        table.add_row(
            task.id,
            f"[{style}]{task.status}[/]" if style else task.status,
            str(task.current_iteration),
            f"{task.live_runtime_ms() / 1000:.1f}s",
            (task.title or task.prompt)[:60],
        )
    console.print(table)


@cli.command()
@click.option("--clear", "clear_agent", help="Lift the block on this agent id")
@click.option("--clear-all", is_flag=True, help="Lift every block")
@click.pass_context
def limits(ctx, clear_agent, clear_all):
    """Show or lift usage-limit blocks that pause scheduling."""
    gate = _usage_gate(ctx)
    if clear_agent or clear_all:
        cleared = gate.clear(None if clear_all else clear_agent)
        if not cleared:
            console.print("[dim]Nothing to clear[/]")
            return
        for agent_id in cleared:
            console.print(f"[green]✓[/] Scheduling resumed for {agent_id}")
        return

    blocks = gate.blocks()
    if not blocks:
        console.print("[dim]No agent is blocked[/]")
        return

    table = Table(title="Usage limits")
    table.add_column("Agent")
    table.add_column("Resumes")
    table.add_column("Task")
    table.add_column("Message")
    for block in blocks:
        table.add_row(
            block.agent_id,
            block.resume_at.isoformat() if block.resume_at else "[red]when cleared[/]",
            block.triggered_by_task_id or "",
            (block.message or "")[:80],
        )
    console.print(table)


@cli.command()
@click.option("--agent", "-a", default="claude-code", help="Agent id")
@click.pass_context
def usage(ctx, agent):
    """Show quota usage reported by the vendor, or local rate-limit counts."""
    adapter = ctx.obj["registry"].get(agent)
    if adapter is None:
        console.print(f"[red]Unknown agent: {agent}[/]")
        ctx.exit(1)

    if isinstance(adapter, ClaudeCodeAdapter):
        report = asyncio.run(adapter.get_usage_percentage())
        if not report.available:
            console.print("[dim]Usage information unavailable (not logged in or API unreachable)[/]")
            return
        for label, window in (("5-hour", report.five_hour), ("7-day", report.seven_day)):
            if window is None:
                continue
            resets = f", resets {window.resets_at.isoformat()}" if window.resets_at else ""
            console.print(f"{label}: [bold]{window.utilization:.0f}%[/] used{resets}")
        return

    if isinstance(adapter, GeminiAdapter):
        status = adapter.get_rate_limit_status()
        console.print(f"Tier: [bold]{status.tier}[/]")
        console.print(
            f"This minute: {status.requests_this_minute}/{status.rpm_limit} ({status.rpm_percentage:.0f}%)"
        )
        console.print(f"Today: {status.requests_today}/{status.rpd_limit} ({status.rpd_percentage:.0f}%)")
        return

    console.print(f"[dim]{adapter.name} does not report usage[/]")


if __name__ == "__main__":
    cli()
