from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from featurerun.config import AgentConfig
from featurerun.engine.base import (
    AgentReportedFailureError,
    AgentTransport,
    ConnectFailedError,
    ConnectTimeoutError,
    EngineError,
    ExecutionContext,
    ExecutionRequest,
    ExecutionResult,
    ReceiveError,
    ReceiveTimeoutError,
    SendFailedError,
    TerminalSummary,
    TextFragment,
)
from featurerun.engine.claude import ClaudeCodeTransport
from featurerun.state.models import ExecutionStats

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ExecutionRequest, AgentConfig], AgentTransport]
EngineEventHook = Callable[[dict[str, Any]], None]


class EngineState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    QUERYING = "querying"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class Phase:
    name: str
    description: str
    system_prompt: str | None = None
    tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    timeout_seconds: float | None = None

    def to_request(self) -> ExecutionRequest:
        context = self.context
        if context.phase_name is None:
            context = replace(context, phase_name=self.name)
        return ExecutionRequest(
            user_prompt=(
                f"Phase: {self.name}\nDescription: {self.description}\n\nExecute this phase."
            ),
            system_prompt=self.system_prompt,
            allowed_tools=list(self.tools),
            disallowed_tools=list(self.disallowed_tools),
            context=context,
            timeout_seconds=self.timeout_seconds,
        )


@dataclass(slots=True)
class PhaseBatchResult:
    results: list[ExecutionResult]
    error: EngineError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def default_transport_factory(request: ExecutionRequest, config: AgentConfig) -> AgentTransport:
    return ClaudeCodeTransport.from_request(request, config)


class ExecutionEngine:
    """Runs exactly one bounded agent session per request.

    The engine holds no per-call state, so one instance can serve several
    features concurrently. Errors are raised, never retried.
    """

    def __init__(
        self,
        config: AgentConfig,
        transport_factory: TransportFactory | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.config = config
        self.transport_factory = transport_factory or default_transport_factory
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _transition(self, state: EngineState, phase: str | None) -> None:
        logger.debug("Engine state -> %s (phase=%s)", state.value, phase)
        self._emit({"event": "engine_state", "state": state.value, "phase": phase})

    def effective_timeout_for(self, timeout_seconds: float | None) -> float:
        if timeout_seconds is not None and timeout_seconds > 0:
            return float(timeout_seconds)
        return float(self.config.timeout_seconds)

    def effective_timeout(self, request: ExecutionRequest) -> float:
        return self.effective_timeout_for(request.timeout_seconds)

    async def _connect(self, transport: AgentTransport, deadline: float, phase: str | None) -> None:
        try:
            await asyncio.wait_for(transport.connect(), timeout=deadline)
        except TimeoutError as exc:
            raise ConnectTimeoutError(
                f"Agent connect timed out after {deadline:.1f}s", phase=phase
            ) from exc
        except EngineError:
            raise
        except Exception as exc:
            raise ConnectFailedError(f"Failed to connect: {exc}", phase=phase) from exc

    async def _send(
        self, transport: AgentTransport, prompt: str, deadline: float, phase: str | None
    ) -> None:
        try:
            await asyncio.wait_for(transport.send(prompt), timeout=deadline)
        except TimeoutError as exc:
            raise SendFailedError(
                f"Sending query timed out after {deadline:.1f}s", phase=phase
            ) from exc
        except Exception as exc:
            raise SendFailedError(f"Failed to send query: {exc}", phase=phase) from exc

    async def _collect(
        self, transport: AgentTransport, timeout: float, phase: str | None
    ) -> tuple[str, TerminalSummary | None]:
        chunks: list[str] = []
        terminal: list[TerminalSummary] = []

        async def _consume() -> None:
            events = transport.stream_events()
            try:
                async for event in events:
                    if isinstance(event, TextFragment):
                        chunks.append(event.text)
                    elif isinstance(event, TerminalSummary):
                        terminal.append(event)
                        break
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

        try:
            await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise ReceiveTimeoutError(f"Agent timeout after {timeout:.1f}s", phase=phase) from exc
        except EngineError:
            raise
        except Exception as exc:
            raise ReceiveError(f"Error receiving message: {exc}", phase=phase) from exc
        return "".join(chunks), (terminal[0] if terminal else None)

    async def _disconnect(self, transport: AgentTransport, phase: str | None) -> None:
        try:
            await transport.disconnect()
        except Exception as exc:
            logger.warning("Ignoring disconnect failure (phase=%s): %s", phase, exc)
            self._emit({"event": "engine_disconnect_failed", "phase": phase, "error": str(exc)})
        self._transition(EngineState.DISCONNECTED, phase)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        phase = request.context.phase_name
        timeout = self.effective_timeout(request)
        connect_deadline = min(float(self.config.connect_timeout_seconds), timeout)
        started = time.monotonic()

        self._transition(EngineState.IDLE, phase)
        transport = self.transport_factory(request, self.config)
        try:
            self._transition(EngineState.CONNECTING, phase)
            await self._connect(transport, connect_deadline, phase)
            self._transition(EngineState.QUERYING, phase)
            await self._send(transport, request.user_prompt, timeout, phase)
            self._transition(EngineState.STREAMING, phase)
            output, summary = await self._collect(transport, timeout, phase)
        except EngineError as exc:
            terminal_state = EngineState.TIMED_OUT if exc.kind.is_timeout else EngineState.FAILED
            self._transition(terminal_state, phase)
            raise
        else:
            success = summary is None or not summary.is_error
            self._transition(
                EngineState.COMPLETED if success else EngineState.FAILED,
                phase,
            )
        finally:
            await self._disconnect(transport, phase)

        if summary is None:
            logger.warning("Agent stream ended without a result summary (phase=%s)", phase)
            stats = ExecutionStats()
        else:
            stats = ExecutionStats(
                turns=summary.turns,
                input_tokens=summary.input_tokens,
                output_tokens=summary.output_tokens,
                cost_usd=summary.cost_usd or 0.0,
            )
        duration = time.monotonic() - started
        self._emit(
            {
                "event": "engine_result",
                "phase": phase,
                "success": success,
                "turns": stats.turns,
                "cost_usd": stats.cost_usd,
                "duration_seconds": duration,
            }
        )
        return ExecutionResult(
            success=success,
            output=output,
            stats=stats,
            duration_seconds=duration,
            timeout_seconds=timeout,
        )

    async def execute_phases(self, phases: list[Phase]) -> PhaseBatchResult:
        results: list[ExecutionResult] = []
        for index, phase in enumerate(phases, start=1):
            logger.info("Executing phase %d/%d: %s", index, len(phases), phase.name)
            try:
                result = await self.execute(phase.to_request())
            except EngineError as exc:
                exc.phase = exc.phase or phase.name
                logger.error("Phase %s failed: %s", phase.name, exc)
                return PhaseBatchResult(results=results, error=exc)
            if not result.success:
                logger.error("Phase %s failed", phase.name)
                return PhaseBatchResult(
                    results=results,
                    error=AgentReportedFailureError(f"Phase {phase.name} failed", phase=phase.name),
                )
            results.append(result)
        return PhaseBatchResult(results=results)
