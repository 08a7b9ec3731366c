from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

LEDGER_VERSION = "0.1.0"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _timestamp(value: Any) -> str | None:
    # Hand-edited ledgers may carry unquoted timestamps that YAML parses itself.
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.isoformat()
    if isinstance(value, str):
        return value
    raise TypeError(f"Expected a timestamp, got {type(value).__name__}")


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _prune(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class FeatureStatus(StrEnum):
    PLANNED = "planned"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {PhaseStatus.COMPLETED, PhaseStatus.FAILED}


class InterruptReason(StrEnum):
    USER_CANCELLED = "userCancelled"
    TIMEOUT = "timeout"
    ERROR = "error"
    SYSTEM_SHUTDOWN = "systemShutdown"


@dataclass(slots=True)
class ExecutionStats:
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def __post_init__(self) -> None:
        if self.cost_usd < 0:
            raise ValueError(f"cost_usd must be non-negative, got {self.cost_usd}")

    def add(self, other: ExecutionStats) -> None:
        self.turns += other.turns
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cost_usd += other.cost_usd

    def copy(self) -> ExecutionStats:
        return ExecutionStats(
            turns=self.turns,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cost_usd=self.cost_usd,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "turns": self.turns,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "costUsd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionStats:
        return cls(
            turns=int(data.get("turns", 0)),
            input_tokens=int(data.get("inputTokens", 0)),
            output_tokens=int(data.get("outputTokens", 0)),
            cost_usd=float(data.get("costUsd", 0.0)),
        )


@dataclass(slots=True)
class FeatureInfo:
    id: str
    slug: str
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @property
    def dir_name(self) -> str:
        return f"{self.id}_{self.slug}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureInfo:
        return cls(
            id=str(data["id"]),
            slug=str(data["slug"]),
            created_at=_timestamp(data["createdAt"]) or "",
            updated_at=_timestamp(data["updatedAt"]) or "",
        )


@dataclass(slots=True)
class GitInfo:
    worktree_path: str
    branch: str
    base_branch: str
    base_commit: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "worktreePath": self.worktree_path,
            "branch": self.branch,
            "baseBranch": self.base_branch,
            "baseCommit": self.base_commit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GitInfo:
        return cls(
            worktree_path=str(data["worktreePath"]),
            branch=str(data["branch"]),
            base_branch=str(data["baseBranch"]),
            base_commit=str(data["baseCommit"]),
        )


@dataclass(slots=True)
class PullRequestInfo:
    url: str | None = None
    number: int | None = None
    title: str | None = None
    created_at: str | None = None
    merged: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = _prune(
            {
                "url": self.url,
                "number": self.number,
                "title": self.title,
                "createdAt": self.created_at,
            }
        )
        payload["merged"] = self.merged
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullRequestInfo:
        number = data.get("number")
        return cls(
            url=_optional_str(data.get("url")),
            number=None if number is None else int(number),
            title=_optional_str(data.get("title")),
            created_at=_timestamp(data.get("createdAt")),
            merged=bool(data.get("merged", False)),
        )


@dataclass(slots=True)
class ExecutionTiming:
    start_time: str | None = None
    end_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _prune({"startTime": self.start_time, "endTime": self.end_time})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionTiming:
        return cls(
            start_time=_timestamp(data.get("startTime")),
            end_time=_timestamp(data.get("endTime")),
        )


@dataclass(slots=True)
class ResumeInfo:
    can_resume: bool = False
    last_completed_phase: str | None = None
    next_phase: str | None = None
    interrupted_at: str | None = None
    interrupt_reason: InterruptReason | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"canResume": self.can_resume}
        payload.update(
            _prune(
                {
                    "lastCompletedPhase": self.last_completed_phase,
                    "nextPhase": self.next_phase,
                    "interruptedAt": self.interrupted_at,
                    "interruptReason": (
                        self.interrupt_reason.value if self.interrupt_reason else None
                    ),
                }
            )
        )
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResumeInfo:
        reason = data.get("interruptReason")
        return cls(
            can_resume=bool(data.get("canResume", False)),
            last_completed_phase=_optional_str(data.get("lastCompletedPhase")),
            next_phase=_optional_str(data.get("nextPhase")),
            interrupted_at=_timestamp(data.get("interruptedAt")),
            interrupt_reason=None if reason is None else InterruptReason(reason),
        )


@dataclass(slots=True)
class PhaseState:
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    commit_sha: str | None = None
    output_summary: str | None = None
    stats: ExecutionStats | None = None
    timeout_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "status": self.status.value}
        payload.update(
            _prune(
                {
                    "startedAt": self.started_at,
                    "completedAt": self.completed_at,
                    "commitSha": self.commit_sha,
                    "outputSummary": self.output_summary,
                    "stats": self.stats.to_dict() if self.stats else None,
                    "timeoutSeconds": self.timeout_seconds,
                }
            )
        )
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        stats = data.get("stats")
        timeout = data.get("timeoutSeconds")
        return cls(
            name=str(data["name"]),
            status=PhaseStatus(data["status"]),
            started_at=_timestamp(data.get("startedAt")),
            completed_at=_timestamp(data.get("completedAt")),
            commit_sha=_optional_str(data.get("commitSha")),
            output_summary=_optional_str(data.get("outputSummary")),
            stats=None if stats is None else ExecutionStats.from_dict(stats),
            timeout_seconds=None if timeout is None else float(timeout),
        )


@dataclass(slots=True)
class FeatureState:
    """Durable execution ledger for one feature.

    The object is mutated in memory by the methods below; callers persist it
    with :func:`featurerun.state.ledger.save_state` after every change that
    has to survive a crash.
    """

    feature: FeatureInfo
    version: str = LEDGER_VERSION
    status: FeatureStatus = FeatureStatus.PLANNED
    current_phase: int = 0
    git: GitInfo | None = None
    phases: list[PhaseState] = field(default_factory=list)
    total_stats: ExecutionStats = field(default_factory=ExecutionStats)
    execution: ExecutionTiming = field(default_factory=ExecutionTiming)
    pull_request: PullRequestInfo | None = None
    resume: ResumeInfo = field(default_factory=ResumeInfo)
    error: str | None = None

    @classmethod
    def new(cls, feature_id: str, feature_slug: str) -> FeatureState:
        now = _utcnow_iso()
        return cls(
            feature=FeatureInfo(id=feature_id, slug=feature_slug, created_at=now, updated_at=now)
        )

    def _touch(self) -> str:
        now = _utcnow_iso()
        self.feature.updated_at = now
        return now

    def phase(self, name: str) -> PhaseState | None:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def ensure_phases(self, names: list[str]) -> None:
        """Append every missing phase as pending, preserving the given order."""
        added = False
        for name in names:
            if self.phase(name) is None:
                self.phases.append(PhaseState(name=name))
                added = True
        if added:
            self._touch()

    def update_phase(
        self,
        name: str,
        status: PhaseStatus,
        stats: ExecutionStats | None = None,
        output_summary: str | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> PhaseState:
        """Record a phase transition.

        ``started_at`` is written on the first move into in-progress only.
        Re-entering in-progress after a terminal status starts a new attempt:
        the previous completion time, stats and summary are cleared.
        Stats are accepted on terminal statuses only; they replace the phase's
        stats and are added to ``total_stats``, so callers pass them once per
        attempt.
        """
        if stats is not None and not status.terminal:
            raise ValueError(f"Stats can only be recorded on a terminal status, got {status}")

        now = self._touch()
        phase = self.phase(name)
        if phase is None:
            phase = PhaseState(name=name, status=PhaseStatus.PENDING)
            self.phases.append(phase)

        if status is PhaseStatus.IN_PROGRESS:
            if phase.started_at is None:
                phase.started_at = now
            if phase.status.terminal:
                phase.completed_at = None
                phase.stats = None
                phase.output_summary = None
        elif status.terminal and phase.completed_at is None:
            phase.completed_at = now

        phase.status = status
        if output_summary is not None:
            phase.output_summary = output_summary
        if timeout_seconds is not None:
            phase.timeout_seconds = timeout_seconds
        if stats is not None:
            phase.stats = stats.copy()
            self.total_stats.add(stats)
        return phase

    def set_phase_commit(self, name: str, commit_sha: str) -> None:
        phase = self.phase(name)
        if phase is not None:
            phase.commit_sha = commit_sha
            self._touch()

    def mark_for_resume(self, reason: InterruptReason) -> None:
        now = self._touch()
        self.resume.can_resume = True
        self.resume.interrupted_at = now
        self.resume.interrupt_reason = reason

        completed = [phase.name for phase in self.phases if phase.status is PhaseStatus.COMPLETED]
        self.resume.last_completed_phase = completed[-1] if completed else None
        if 0 <= self.current_phase < len(self.phases):
            self.resume.next_phase = self.phases[self.current_phase].name
        else:
            self.resume.next_phase = None

    def start_execution(self) -> None:
        now = self._touch()
        self.status = FeatureStatus.IN_PROGRESS
        if self.execution.start_time is None:
            self.execution.start_time = now
        self.execution.end_time = None
        self.error = None

    def complete(self, pr_info: PullRequestInfo | None = None) -> None:
        now = self._touch()
        self.status = FeatureStatus.COMPLETED
        self.current_phase = len(self.phases)
        self.execution.end_time = now
        self.pull_request = pr_info
        self.resume.can_resume = False
        self.resume.next_phase = None

    def fail(self, error: str, reason: InterruptReason = InterruptReason.ERROR) -> None:
        now = self._touch()
        self.status = FeatureStatus.FAILED
        self.error = error
        self.execution.end_time = now
        self.mark_for_resume(reason)

    def pending_phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases[self.current_phase :]]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "feature": self.feature.to_dict(),
            "status": self.status.value,
            "currentPhase": self.current_phase,
        }
        if self.git is not None:
            payload["git"] = self.git.to_dict()
        payload["phases"] = [phase.to_dict() for phase in self.phases]
        payload["totalStats"] = self.total_stats.to_dict()
        payload["execution"] = self.execution.to_dict()
        if self.pull_request is not None:
            payload["pullRequest"] = self.pull_request.to_dict()
        payload["resume"] = self.resume.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureState:
        git = data.get("git")
        pull_request = data.get("pullRequest")
        error = data.get("error")
        phases = data.get("phases") or []
        if not isinstance(phases, list):
            raise TypeError("phases must be a list")
        return cls(
            feature=FeatureInfo.from_dict(data["feature"]),
            version=str(data.get("version", LEDGER_VERSION)),
            status=FeatureStatus(data["status"]),
            current_phase=int(data.get("currentPhase", 0)),
            git=None if git is None else GitInfo.from_dict(git),
            phases=[PhaseState.from_dict(item) for item in phases],
            total_stats=ExecutionStats.from_dict(data.get("totalStats") or {}),
            execution=ExecutionTiming.from_dict(data.get("execution") or {}),
            pull_request=None if pull_request is None else PullRequestInfo.from_dict(pull_request),
            resume=ResumeInfo.from_dict(data.get("resume") or {}),
            error=None if error is None else str(error),
        )
