"""Session engine for driving an agent CLI subprocess."""
from .models import (
    AskRequest,
    AskStatus,
    QueryOutcome,
    QueryPhase,
    QueryResult,
    SavedSession,
    Session,
    StatusKind,
    StopCause,
    StopResult,
    TokenUsage,
)
from .config import EngineConfig
from .errors import (
    AgentCrashedError,
    CliNotFoundError,
    CliStartError,
    QueryFailedError,
    QueryInProgressError,
    RelayError,
    WorkingDirectoryError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "SessionEngine",
    "MessageDispatcher",
    "RetryPolicy",
    # Models
    "AskRequest",
    "AskStatus",
    "QueryOutcome",
    "QueryPhase",
    "QueryResult",
    "SavedSession",
    "Session",
    "StatusKind",
    "StopCause",
    "StopResult",
    "TokenUsage",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    # Errors
    "AgentCrashedError",
    "CliNotFoundError",
    "CliStartError",
    "QueryFailedError",
    "QueryInProgressError",
    "RelayError",
    "WorkingDirectoryError",
]


def __getattr__(name: str):
    if name == "SessionEngine":
        from .engine import SessionEngine
        return SessionEngine
    if name == "MessageDispatcher":
        from .dispatch import MessageDispatcher
        return MessageDispatcher
    if name == "RetryPolicy":
        from .dispatch import RetryPolicy
        return RetryPolicy
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
