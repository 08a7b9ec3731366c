from featurerun.state.ledger import (
    LedgerError,
    LedgerNotFoundError,
    LedgerSerializationError,
    find_feature,
    load_state,
    next_feature_id,
    normalize_slug,
    save_state,
)
from featurerun.state.models import (
    ExecutionStats,
    ExecutionTiming,
    FeatureInfo,
    FeatureState,
    FeatureStatus,
    GitInfo,
    InterruptReason,
    PhaseState,
    PhaseStatus,
    PullRequestInfo,
    ResumeInfo,
)
from featurerun.state.store import FeatureStore

__all__ = [
    "ExecutionStats",
    "ExecutionTiming",
    "FeatureInfo",
    "FeatureState",
    "FeatureStatus",
    "FeatureStore",
    "GitInfo",
    "InterruptReason",
    "LedgerError",
    "LedgerNotFoundError",
    "LedgerSerializationError",
    "PhaseState",
    "PhaseStatus",
    "PullRequestInfo",
    "ResumeInfo",
    "find_feature",
    "load_state",
    "next_feature_id",
    "normalize_slug",
    "save_state",
]
