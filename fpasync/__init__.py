from fpasync.fpasync_driver import AsyncEvaluator, evaluate_async, load_resource
from fpasync.fpasync_adapters import ExternalCallAdapter, ReferenceResolveAdapter, ValueSetMembershipAdapter
from fpasync.fpasync_config import Settings
from fpasync.fpasync_outcome import (
    AdapterFailure,
    EvaluationFailed,
    EvaluationResult,
    ExternalCallFailed,
    Issue,
    IterationLimitReached,
    OperationOutcomeError,
)
from fpasync.fpasync_registry import PendingCallRegistry, RegistryError

__all__ = [
    "AsyncEvaluator",
    "evaluate_async",
    "load_resource",
    "ExternalCallAdapter",
    "ReferenceResolveAdapter",
    "ValueSetMembershipAdapter",
    "Settings",
    "AdapterFailure",
    "EvaluationFailed",
    "EvaluationResult",
    "ExternalCallFailed",
    "Issue",
    "IterationLimitReached",
    "OperationOutcomeError",
    "PendingCallRegistry",
    "RegistryError",
]
