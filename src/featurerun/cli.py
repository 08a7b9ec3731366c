from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from featurerun.config import ConfigError, FeatureRunConfig, load_config
from featurerun.engine import ExecutionEngine
from featurerun.logs import configure_logging
from featurerun.orchestrator import PhaseOrchestrator, RunOutcome, RunStatus
from featurerun.prompts import DefaultPromptRenderer, TemplateDirRenderer
from featurerun.state import (
    FeatureState,
    FeatureStatus,
    FeatureStore,
    GitInfo,
    InterruptReason,
    LedgerError,
    load_state,
)

logger = logging.getLogger(__name__)

EngineFactory = Callable[[FeatureRunConfig, Path], ExecutionEngine]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    store: FeatureStore
    config: FeatureRunConfig
    engine_factory: EngineFactory


def _log_engine_event(event: dict[str, Any]) -> None:
    if event.get("event") == "engine_result":
        logger.info(
            "Phase %s finished: success=%s turns=%s cost=$%.4f",
            event.get("phase"),
            event.get("success"),
            event.get("turns"),
            float(event.get("cost_usd") or 0.0),
        )


def default_engine_factory(config: FeatureRunConfig, repo_root: Path) -> ExecutionEngine:
    return ExecutionEngine(config.agent, event_hook=_log_engine_event)


def _runtime(ctx: click.Context) -> Runtime:
    return ctx.obj["runtime"]


def _require_initialized(runtime: Runtime) -> None:
    try:
        runtime.store.require_initialized()
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_progress(event: dict[str, Any]) -> None:
    kind = event.get("event")
    if kind == "phase_started":
        click.echo(f"[{event['number']}/{event['total']}] {event['phase']} ...")
    elif kind == "phase_completed":
        click.echo(
            f"    done in {float(event['duration_seconds']):.1f}s "
            f"({event['turns']} turns, ${float(event['cost_usd']):.4f})"
        )
    elif kind == "phase_failed":
        click.echo(f"    failed: {event['error']}", err=True)


def _echo_outcome(outcome: RunOutcome) -> None:
    if outcome.status is RunStatus.DRY_RUN:
        click.echo(f"Dry run for {outcome.feature}; phases to execute:")
        for planned in outcome.planned:
            click.echo(f"  {planned.index + 1}. {planned.name}: {planned.description}")
        return
    if outcome.status is RunStatus.ALREADY_COMPLETED:
        click.echo(f"Feature {outcome.feature} is already completed.")
        return
    if outcome.status is RunStatus.IN_PROGRESS:
        click.echo(
            f"Feature {outcome.feature} is already in progress. "
            "Use --resume to continue or 'featurerun interrupt' to reset it."
        )
        return

    stats = outcome.total_stats
    click.echo(f"Feature {outcome.feature}: {outcome.status.value}")
    click.echo(f"Phases executed: {len(outcome.executed)}/{len(outcome.planned)}")
    click.echo(
        f"Total: {stats.turns} turns, {stats.input_tokens} input tokens, "
        f"{stats.output_tokens} output tokens, ${stats.cost_usd:.4f}"
    )


def _git_info(
    runtime: Runtime,
    branch: str | None,
    base_branch: str | None,
    base_commit: str | None,
    worktree: Path | None,
) -> GitInfo | None:
    if branch is None:
        if base_branch or base_commit or worktree:
            raise click.UsageError("--base-branch, --base-commit and --worktree need --branch.")
        return None
    if not base_branch or not base_commit:
        raise click.UsageError("--branch needs --base-branch and --base-commit.")
    return GitInfo(
        worktree_path=str((worktree or runtime.repo_root).resolve()),
        branch=branch,
        base_branch=base_branch,
        base_commit=base_commit,
    )


def _phase_progress(state: FeatureState) -> str:
    total = len(state.phases)
    return f"{min(state.current_phase, total)}/{total}"


@click.group()
@click.option(
    "--repo",
    "repo_value",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Repository root holding the .featurerun workspace.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, repo_value: Path, verbose: bool) -> None:
    """Run features through configured agent phases."""
    ctx.ensure_object(dict)
    repo_root = repo_value.resolve()
    store = FeatureStore.for_repo(repo_root)
    try:
        config = load_config(store.config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_file = None
    if config.logging.file:
        log_file = Path(config.logging.file)
        if not log_file.is_absolute():
            log_file = store.root / log_file
    try:
        configure_logging("DEBUG" if verbose else config.logging.level, log_file)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    ctx.obj["runtime"] = Runtime(
        repo_root=repo_root,
        store=store,
        config=config,
        engine_factory=ctx.obj.get("engine_factory", default_engine_factory),
    )


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Reinitialize an existing workspace.")
@click.pass_context
def init_command(ctx: click.Context, force: bool) -> None:
    runtime = _runtime(ctx)
    try:
        runtime.store.initialize(force=force, config=runtime.config)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized featurerun in {runtime.repo_root}")
    click.echo(f"Config: {runtime.store.config_path}")
    click.echo(f"Phases: {', '.join(runtime.config.phase_names())}")


@cli.command("plan")
@click.argument("slug")
@click.option("--description", "-d", default=None, help="Short description for the design doc.")
@click.pass_context
def plan_command(ctx: click.Context, slug: str, description: str | None) -> None:
    runtime = _runtime(ctx)
    _require_initialized(runtime)
    try:
        state = runtime.store.create_feature(slug, description)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    feature_dir = runtime.store.feature_dir(state)
    click.echo(f"Created feature: {state.feature.dir_name}")
    click.echo(f"Design: {feature_dir / 'specs' / 'design.md'}")
    click.echo(f"Run it with: featurerun run {state.feature.slug}")


@cli.command("run")
@click.argument("feature")
@click.option("--resume", is_flag=True, default=False, help="Continue an interrupted run.")
@click.option("--dry-run", is_flag=True, default=False, help="Show the phases without running.")
@click.option("--branch", default=None, help="Feature branch to record in the ledger.")
@click.option("--base-branch", default=None, help="Branch the feature branch starts from.")
@click.option("--base-commit", default=None, help="Commit the feature branch starts from.")
@click.option(
    "--worktree",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Worktree holding the feature branch. Defaults to the repository root.",
)
@click.pass_context
def run_command(
    ctx: click.Context,
    feature: str,
    resume: bool,
    dry_run: bool,
    branch: str | None,
    base_branch: str | None,
    base_commit: str | None,
    worktree: Path | None,
) -> None:
    runtime = _runtime(ctx)
    _require_initialized(runtime)
    git_info = _git_info(runtime, branch, base_branch, base_commit, worktree)
    try:
        feature_dir = runtime.store.find(feature)
        state = load_state(feature_dir)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    renderer = TemplateDirRenderer(
        runtime.store.root / runtime.config.orchestrator.prompts_dir,
        fallback=DefaultPromptRenderer(),
    )
    orchestrator = PhaseOrchestrator(
        runtime.engine_factory(runtime.config, runtime.repo_root),
        runtime.config,
        repo_root=runtime.repo_root,
        renderer=renderer,
        event_hook=_echo_progress,
    )
    try:
        outcome = asyncio.run(
            orchestrator.run(
                state, feature_dir, resume=resume, dry_run=dry_run, git_info=git_info
            )
        )
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_outcome(outcome)
    if not outcome.ok:
        raise click.ClickException(outcome.error or f"Feature {outcome.feature} failed.")


@cli.command("list")
@click.pass_context
def list_command(ctx: click.Context) -> None:
    runtime = _runtime(ctx)
    _require_initialized(runtime)
    features = runtime.store.list_features()
    if not features:
        click.echo("No features found.")
        return

    click.echo(f"{'FEATURE':<32} {'STATUS':<12} {'PHASE':<7} UPDATED")
    for dir_name, state in features:
        click.echo(
            f"{dir_name:<32} {state.status.value:<12} {_phase_progress(state):<7} "
            f"{state.feature.updated_at}"
        )


@cli.command("status")
@click.argument("feature", required=False)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw ledger.")
@click.pass_context
def status_command(ctx: click.Context, feature: str | None, as_json: bool) -> None:
    runtime = _runtime(ctx)
    _require_initialized(runtime)

    if feature is None:
        summary = runtime.store.summary()
        if as_json:
            click.echo(json.dumps(summary, indent=2))
            return
        for key, count in summary.items():
            click.echo(f"{key:<12} {count}")
        return

    try:
        state = runtime.store.load(feature)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        return

    click.echo(f"Feature: {state.feature.dir_name}")
    click.echo(f"Status: {state.status.value}")
    click.echo(f"Phase: {_phase_progress(state)}")
    for phase in state.phases:
        line = f"  {phase.name:<14} {phase.status.value}"
        if phase.stats is not None:
            line += f" ({phase.stats.turns} turns, ${phase.stats.cost_usd:.4f})"
        click.echo(line)
    stats = state.total_stats
    click.echo(f"Total: {stats.turns} turns, ${stats.cost_usd:.4f}")
    if state.pull_request is not None and state.pull_request.url:
        click.echo(f"Pull request: {state.pull_request.url}")
    if state.error:
        click.echo(f"Error: {state.error}")
    if state.resume.can_resume:
        click.echo(f"Resumable from: {state.resume.next_phase or '-'}")


@cli.command("interrupt")
@click.argument("feature")
@click.option(
    "--reason",
    type=click.Choice([reason.value for reason in InterruptReason]),
    default=InterruptReason.USER_CANCELLED.value,
    show_default=True,
)
@click.pass_context
def interrupt_command(ctx: click.Context, feature: str, reason: str) -> None:
    runtime = _runtime(ctx)
    _require_initialized(runtime)
    try:
        feature_dir = runtime.store.find(feature)
        state = load_state(feature_dir)
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    if state.status is FeatureStatus.COMPLETED:
        raise click.ClickException(f"Feature {state.feature.dir_name} is already completed.")
    if state.resume.can_resume:
        click.echo(f"Feature {state.feature.dir_name} is already resumable.")
        return

    state.mark_for_resume(InterruptReason(reason))
    runtime.store.save(state)
    click.echo(f"Marked {state.feature.dir_name} resumable at {state.resume.next_phase or '-'}")


def main() -> None:
    cli(obj={})
