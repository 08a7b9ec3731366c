from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from featurerun.config import FeatureRunConfig, PhaseConfig
from featurerun.engine import (
    AgentReportedFailureError,
    EngineError,
    ExecutionContext,
    ExecutionEngine,
    ExecutionRequest,
    ExecutionResult,
)
from featurerun.prompts import DefaultPromptRenderer, PromptError, PromptRenderer
from featurerun.state.ledger import save_state
from featurerun.state.models import (
    ExecutionStats,
    FeatureState,
    FeatureStatus,
    GitInfo,
    InterruptReason,
    PhaseStatus,
    PullRequestInfo,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."
PULL_REQUEST_PHASE = "pr"
PULL_REQUEST_URL_PATTERN = re.compile(r"https://[\w.-]+/[\w.-]+/[\w.-]+/pull/(\d+)")

OrchestratorEventHook = Callable[[dict[str, Any]], None]


def truncate_output(output: str, max_chars: int) -> str:
    text = output.strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def extract_pull_request(output: str) -> PullRequestInfo | None:
    matches = list(PULL_REQUEST_URL_PATTERN.finditer(output))
    if not matches:
        return None
    match = matches[-1]
    return PullRequestInfo(
        url=match.group(0),
        number=int(match.group(1)),
        created_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
    )


class RunStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_COMPLETED = "alreadyCompleted"
    IN_PROGRESS = "inProgress"
    DRY_RUN = "dryRun"


@dataclass(slots=True)
class PlannedPhase:
    index: int
    name: str
    description: str


@dataclass(slots=True)
class RunOutcome:
    status: RunStatus
    feature: str
    start_phase: int = 0
    planned: list[PlannedPhase] = field(default_factory=list)
    executed: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    error: str | None = None
    total_stats: ExecutionStats = field(default_factory=ExecutionStats)

    @property
    def ok(self) -> bool:
        return self.status is not RunStatus.FAILED


class PhaseOrchestrator:
    """Drives the configured phases of one feature through the engine.

    The ledger is written before every engine call and after every phase
    result, so an interrupted process leaves the last attempted phase visible
    as in progress.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        config: FeatureRunConfig,
        *,
        repo_root: Path,
        renderer: PromptRenderer | None = None,
        event_hook: OrchestratorEventHook | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.repo_root = repo_root.resolve()
        self.renderer = renderer or DefaultPromptRenderer()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _persist(state: FeatureState, feature_dir: Path) -> None:
        save_state(state, feature_dir)

    def _resume_index(self, state: FeatureState) -> int:
        index = max(0, min(state.current_phase, len(self.config.phases)))
        while index < len(self.config.phases):
            phase = state.phase(self.config.phases[index].name)
            if phase is None or phase.status is not PhaseStatus.COMPLETED:
                break
            index += 1
        return index

    def plan(self, start: int) -> list[PlannedPhase]:
        return [
            PlannedPhase(index=index, name=phase.name, description=phase.description)
            for index, phase in enumerate(self.config.phases)
            if index >= start
        ]

    def _design_doc(self, feature_dir: Path) -> str:
        path = feature_dir / self.config.orchestrator.design_doc
        try:
            return str(path.resolve().relative_to(self.repo_root))
        except ValueError:
            return str(path)

    def build_request(
        self,
        state: FeatureState,
        phase: PhaseConfig,
        index: int,
        feature_dir: Path,
    ) -> ExecutionRequest:
        design_doc = self._design_doc(feature_dir)
        prompt = self.renderer.render(
            phase.name,
            {
                "phase": phase.name,
                "phase_number": index + 1,
                "phase_count": len(self.config.phases),
                "description": phase.description,
                "feature_id": state.feature.id,
                "feature_slug": state.feature.slug,
                "design_doc": design_doc,
                "repo_path": str(self.repo_root),
            },
        )
        return ExecutionRequest(
            user_prompt=prompt,
            system_prompt=phase.system_prompt,
            allowed_tools=list(phase.tools),
            disallowed_tools=list(phase.disallowed_tools),
            context=ExecutionContext(
                repo_path=self.repo_root,
                feature_id=state.feature.id,
                feature_slug=state.feature.slug,
                phase_name=phase.name,
                metadata={"design_doc": design_doc},
            ),
            timeout_seconds=phase.timeout_seconds,
        )

    def _record_failure(
        self,
        state: FeatureState,
        feature_dir: Path,
        outcome: RunOutcome,
        phase: PhaseConfig,
        error: Exception,
        *,
        stats: ExecutionStats | None = None,
        timeout_seconds: float | None = None,
    ) -> RunOutcome:
        message = f"Phase '{phase.name}' failed: {error}"
        reason = InterruptReason.ERROR
        if isinstance(error, EngineError) and error.kind.is_timeout:
            reason = InterruptReason.TIMEOUT
        state.update_phase(
            phase.name,
            PhaseStatus.FAILED,
            stats=stats,
            output_summary=truncate_output(str(error), self.config.orchestrator.summary_max_chars),
            timeout_seconds=timeout_seconds,
        )
        state.fail(message, reason=reason)
        self._persist(state, feature_dir)
        logger.error("%s: %s", state.feature.dir_name, message)
        self._emit({"event": "phase_failed", "phase": phase.name, "error": str(error)})

        outcome.status = RunStatus.FAILED
        outcome.failed_phase = phase.name
        outcome.error = message
        outcome.total_stats = state.total_stats.copy()
        return outcome

    async def run(
        self,
        state: FeatureState,
        feature_dir: Path,
        *,
        resume: bool = False,
        dry_run: bool = False,
        git_info: GitInfo | None = None,
    ) -> RunOutcome:
        label = state.feature.dir_name
        if state.status is FeatureStatus.COMPLETED:
            logger.info("Feature %s already completed", label)
            return RunOutcome(
                status=RunStatus.ALREADY_COMPLETED,
                feature=label,
                start_phase=len(self.config.phases),
                total_stats=state.total_stats.copy(),
            )

        if resume and state.resume.can_resume:
            start = self._resume_index(state)
            logger.info("Resuming %s from phase index %d", label, start)
        elif state.status is FeatureStatus.IN_PROGRESS:
            logger.warning("Feature %s is in progress; use resume to continue", label)
            return RunOutcome(
                status=RunStatus.IN_PROGRESS,
                feature=label,
                start_phase=state.current_phase,
                total_stats=state.total_stats.copy(),
            )
        else:
            start = 0

        outcome = RunOutcome(
            status=RunStatus.DRY_RUN,
            feature=label,
            start_phase=start,
            planned=self.plan(start),
        )
        if dry_run:
            outcome.total_stats = state.total_stats.copy()
            return outcome

        state.start_execution()
        state.ensure_phases(self.config.phase_names())
        if git_info is not None:
            state.git = git_info
        self._persist(state, feature_dir)

        pull_request: PullRequestInfo | None = None
        for planned in outcome.planned:
            phase = self.config.phases[planned.index]
            state.current_phase = planned.index
            state.update_phase(phase.name, PhaseStatus.IN_PROGRESS)
            self._persist(state, feature_dir)
            self._emit(
                {
                    "event": "phase_started",
                    "phase": phase.name,
                    "number": planned.index + 1,
                    "total": len(self.config.phases),
                }
            )

            try:
                request = self.build_request(state, phase, planned.index, feature_dir)
                result: ExecutionResult = await self.engine.execute(request)
            except (EngineError, PromptError) as exc:
                return self._record_failure(
                    state,
                    feature_dir,
                    outcome,
                    phase,
                    exc,
                    timeout_seconds=self.engine.effective_timeout_for(phase.timeout_seconds),
                )
            except (KeyboardInterrupt, asyncio.CancelledError):
                state.mark_for_resume(InterruptReason.USER_CANCELLED)
                self._persist(state, feature_dir)
                logger.warning("Run of %s interrupted during phase %s", label, phase.name)
                raise

            if not result.success:
                return self._record_failure(
                    state,
                    feature_dir,
                    outcome,
                    phase,
                    AgentReportedFailureError(
                        "agent reported an error result", phase=phase.name
                    ),
                    stats=result.stats,
                    timeout_seconds=result.timeout_seconds,
                )

            state.update_phase(
                phase.name,
                PhaseStatus.COMPLETED,
                stats=result.stats,
                output_summary=truncate_output(
                    result.output, self.config.orchestrator.summary_max_chars
                ),
                timeout_seconds=result.timeout_seconds,
            )
            self._persist(state, feature_dir)
            outcome.executed.append(phase.name)
            if phase.name == PULL_REQUEST_PHASE:
                pull_request = extract_pull_request(result.output) or pull_request
            self._emit(
                {
                    "event": "phase_completed",
                    "phase": phase.name,
                    "turns": result.stats.turns,
                    "cost_usd": result.stats.cost_usd,
                    "duration_seconds": result.duration_seconds,
                }
            )

        state.complete(pull_request or state.pull_request)
        self._persist(state, feature_dir)
        logger.info("Feature %s completed", label)
        outcome.status = RunStatus.COMPLETED
        outcome.total_stats = state.total_stats.copy()
        return outcome
