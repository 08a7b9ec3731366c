from featurerun.engine.base import (
    AgentEvent,
    AgentReportedFailureError,
    AgentTransport,
    ConnectFailedError,
    ConnectTimeoutError,
    EngineError,
    EngineErrorKind,
    ExecutionContext,
    ExecutionRequest,
    ExecutionResult,
    OtherEvent,
    ReceiveError,
    ReceiveTimeoutError,
    SendFailedError,
    TerminalSummary,
    TextFragment,
    TransportError,
)
from featurerun.engine.claude import ClaudeCodeTransport
from featurerun.engine.engine import (
    EngineState,
    ExecutionEngine,
    Phase,
    PhaseBatchResult,
    default_transport_factory,
)

__all__ = [
    "AgentEvent",
    "AgentReportedFailureError",
    "AgentTransport",
    "ClaudeCodeTransport",
    "ConnectFailedError",
    "ConnectTimeoutError",
    "EngineError",
    "EngineErrorKind",
    "EngineState",
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionRequest",
    "ExecutionResult",
    "OtherEvent",
    "Phase",
    "PhaseBatchResult",
    "ReceiveError",
    "ReceiveTimeoutError",
    "SendFailedError",
    "TerminalSummary",
    "TextFragment",
    "TransportError",
    "default_transport_factory",
]
