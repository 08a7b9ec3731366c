from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from featurerun.state.models import ExecutionStats


class EngineErrorKind(StrEnum):
    CONNECT_TIMEOUT = "connectTimeout"
    CONNECT_FAILED = "connectFailed"
    SEND_FAILED = "sendFailed"
    RECEIVE_TIMEOUT = "receiveTimeout"
    RECEIVE_ERROR = "receiveError"
    AGENT_REPORTED_FAILURE = "agentReportedFailure"

    @property
    def is_timeout(self) -> bool:
        return self in {EngineErrorKind.CONNECT_TIMEOUT, EngineErrorKind.RECEIVE_TIMEOUT}


class EngineError(RuntimeError):
    """Raised when one agent session fails. The engine never retries."""

    kind: EngineErrorKind = EngineErrorKind.RECEIVE_ERROR

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase
        self.retriable = False


class ConnectTimeoutError(EngineError):
    kind = EngineErrorKind.CONNECT_TIMEOUT


class ConnectFailedError(EngineError):
    kind = EngineErrorKind.CONNECT_FAILED


class SendFailedError(EngineError):
    kind = EngineErrorKind.SEND_FAILED


class ReceiveTimeoutError(EngineError):
    kind = EngineErrorKind.RECEIVE_TIMEOUT


class ReceiveError(EngineError):
    kind = EngineErrorKind.RECEIVE_ERROR


class AgentReportedFailureError(EngineError):
    """The transport succeeded but the agent flagged its own run as an error."""

    kind = EngineErrorKind.AGENT_REPORTED_FAILURE


class TransportError(RuntimeError):
    """Raised by agent transports for connect, send and stream failures."""


@dataclass(slots=True)
class TextFragment:
    text: str


@dataclass(slots=True)
class TerminalSummary:
    turns: int = 0
    cost_usd: float | None = None
    is_error: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class OtherEvent:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


AgentEvent = TextFragment | TerminalSummary | OtherEvent


@dataclass(slots=True)
class ExecutionContext:
    repo_path: Path = field(default_factory=lambda: Path("."))
    feature_id: str = ""
    feature_slug: str = ""
    phase_name: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionRequest:
    user_prompt: str
    system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    output: str
    stats: ExecutionStats
    duration_seconds: float
    timeout_seconds: float


class AgentTransport(ABC):
    """One connect/query/stream/disconnect session against an agent."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the session."""

    @abstractmethod
    async def send(self, prompt: str) -> None:
        """Send the user prompt."""

    @abstractmethod
    def stream_events(self) -> AsyncIterator[AgentEvent]:
        """Yield events until the agent finishes or the stream closes."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the session. Safe to call after a failed connect."""
