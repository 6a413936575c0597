# fpasync_driver.py

import asyncio
import sys
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fpasync.fpasync_adapters import ExternalCallAdapter, ReferenceResolveAdapter, ValueSetMembershipAdapter
from fpasync.fpasync_config import DEFAULT_MAX_ITERATIONS, Settings, debug_enabled
from fpasync.fpasync_datatypes import PendingCall
from fpasync.fpasync_evaluator import FhirpathEvaluator, SyncEvaluator
from fpasync.fpasync_functions import standard_functions
from fpasync.fpasync_intercept import PassState, build_function_table
from fpasync.fpasync_outcome import (
    AdapterFailure, EvaluationFailed, EvaluationResult, ExternalCallFailed, IterationLimitReached,
    OperationOutcomeError, create_operation_outcome, iteration_limit_issue,
)
from fpasync.fpasync_registry import PendingCallRegistry
from fpasync.fpasync_serialize import DecodeError, deserialize

PLACEHOLDER_RESOURCE = {'resourceType': 'Patient'}


class State(Enum):
    EVALUATE = 'evaluate'
    RESOLVE = 'resolve'
    DONE = 'done'
    FAILED = 'failed'


def load_resource(data: Any) -> Any:
    """Accept a decoded resource or its JSON/YAML text."""
    if data is None or (isinstance(data, (str, bytes)) and not data.strip()):
        return dict(PLACEHOLDER_RESOURCE)
    if not isinstance(data, (str, bytes, bytearray)):
        return data
    try:
        value = deserialize(data, strict=True)
    except DecodeError as e:
        raise create_operation_outcome('fatal', 'exception', str(e)) from e
    if not isinstance(value, (dict, list)):
        raise create_operation_outcome('fatal', 'exception', "resource text did not decode to a JSON object")
    return value


class AsyncEvaluator:
    """
    Drives a synchronous evaluator to a fixpoint.

    Each top-level evaluation gets its own registry. A pass that registers
    pending calls is followed by a resolve phase that runs every not-started
    call concurrently and waits for all of them; then the expression is
    evaluated again from scratch. The loop ends when a pass registers nothing
    new, when a call fails, or after `max_iterations` passes.
    """

    def __init__(self,
                 adapters: Iterable[ExternalCallAdapter] = (),
                 *,
                 evaluator: Optional[SyncEvaluator] = None,
                 functions: Optional[Dict[str, Any]] = None,
                 max_iterations: int = DEFAULT_MAX_ITERATIONS,
                 max_concurrency: Optional[int] = None,
                 allow_partial: bool = False,
                 debug: Optional[bool] = None):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.adapters: List[ExternalCallAdapter] = list(adapters)
        self.evaluator = evaluator or FhirpathEvaluator()
        self.functions = standard_functions() if functions is None else dict(functions)
        self.max_iterations = max_iterations
        self.max_concurrency = max_concurrency
        self.allow_partial = allow_partial
        self.debug = debug_enabled() if debug is None else debug

    @classmethod
    def from_settings(cls,
                      settings: Optional[Settings] = None,
                      *,
                      resources: Any = None,
                      evaluator: Optional[SyncEvaluator] = None,
                      allow_partial: bool = False) -> 'AsyncEvaluator':
        settings = settings or Settings()
        http_config = settings.http_config()
        adapters: List[ExternalCallAdapter] = [
            ReferenceResolveAdapter(settings.fhir_server, resources, http_config=http_config),
        ]
        if settings.terminology_server:
            adapters.append(ValueSetMembershipAdapter(settings.terminology_server, http_config=http_config))
        return cls(
            adapters,
            evaluator=evaluator,
            max_iterations=settings.max_iterations,
            max_concurrency=settings.max_concurrency,
            allow_partial=allow_partial,
            debug=settings.debug or debug_enabled(),
        )

    def _dbg(self, *parts):
        if self.debug:
            print("[DBG]", *parts, file=sys.stderr)

    async def run(self, data: Any, expression: str, environment: Optional[Dict[str, Any]] = None, model: Any = None) -> EvaluationResult:
        """Evaluate to a structured result; never raises for evaluation failures."""
        registry = PendingCallRegistry()
        pass_state = PassState()
        functions = build_function_table(self.adapters, registry, pass_state, extra=self.functions, trace=self._dbg)
        env = dict(environment or {})
        env['resource'] = data
        env['rootResource'] = data
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        state = State.EVALUATE
        passes = 0
        value: List[Any] = []
        error: Optional[OperationOutcomeError] = None

        while True:
            match state:
                case State.EVALUATE:
                    passes += 1
                    pass_state.reset()
                    self._dbg("performing iteration:", passes)
                    try:
                        value = self.evaluator.evaluate(data, expression, env, functions, model)
                    except OperationOutcomeError as e:
                        error = pass_state.failure or e
                        state = State.FAILED
                        continue
                    except Exception as e:
                        error = pass_state.failure or EvaluationFailed(f"{type(e).__name__}: {e}")
                        state = State.FAILED
                        continue

                    failures = registry.failures()
                    if pass_state.failure is not None:
                        error = pass_state.failure
                        state = State.FAILED
                    elif failures:
                        # The pass no longer reached the failed call; still surface it
                        error = ExternalCallFailed(failures)
                        state = State.FAILED
                    elif not pass_state.incomplete:
                        state = State.DONE
                    elif passes >= self.max_iterations:
                        return self._bounded(value, passes, registry, pass_state)
                    else:
                        state = State.RESOLVE

                case State.RESOLVE:
                    await self._resolve_pending(registry, semaphore)
                    state = State.EVALUATE

                case State.DONE:
                    if passes > 1:
                        self._dbg("iterations", passes)
                    return EvaluationResult('success', list(value), [], passes, registry.completed_count())

                case State.FAILED:
                    self._dbg("evaluation failed:", error.format())
                    return EvaluationResult('error', [], list(error.issues), passes, registry.completed_count(), error)

    def _bounded(self, value: List[Any], passes: int, registry: PendingCallRegistry, pass_state: PassState) -> EvaluationResult:
        pending = sorted(pass_state.awaiting)
        self._dbg("iteration limit reached with pending calls:", pending)
        if self.allow_partial:
            issue = iteration_limit_issue(passes, pending, 'warning')
            return EvaluationResult('incomplete', list(value), [issue], passes, registry.completed_count())
        error = IterationLimitReached(passes, pending)
        return EvaluationResult('incomplete', [], list(error.issues), passes, registry.completed_count(), error)

    async def _resolve_pending(self, registry: PendingCallRegistry, semaphore: Optional[asyncio.Semaphore]):
        records = [registry.mark_in_flight(fp) for fp in registry.pending_fingerprints()]
        # Barrier: every call in the batch finishes, successfully or not, before the next pass
        await asyncio.gather(*(self._resolve_one(registry, r, semaphore) for r in records))

    async def _resolve_one(self, registry: PendingCallRegistry, record: PendingCall, semaphore: Optional[asyncio.Semaphore]):
        self._dbg("performing async request for:", record.fingerprint)
        try:
            if semaphore is None:
                result = await record.adapter.resolve(record.arguments)
            else:
                async with semaphore:
                    result = await record.adapter.resolve(record.arguments)
        except AdapterFailure as e:
            failure = e
        except Exception as e:
            failure = AdapterFailure(f"{type(e).__name__}: {e}")
        else:
            registry.complete(record.fingerprint, result)
            return
        self._dbg("request failed for:", record.fingerprint, failure)
        registry.complete(record.fingerprint, failure=failure)

    async def evaluate(self, data: Any, expression: str, environment: Optional[Dict[str, Any]] = None, model: Any = None) -> List[Any]:
        """Evaluate and return the values, raising OperationOutcomeError on failure."""
        result = await self.run(data, expression, environment, model)
        if result.error is not None:
            raise result.error
        return result.value


async def evaluate_async(data: Any,
                         expression: str,
                         environment: Optional[Dict[str, Any]] = None,
                         model: Any = None,
                         *,
                         settings: Optional[Settings] = None,
                         resources: Any = None,
                         allow_partial: bool = False) -> List[Any]:
    """
    Evaluate `expression` against `data`, resolving resolve()/memberOf() calls
    out of band. Raises OperationOutcomeError with structured issues on failure.
    """
    settings = settings or Settings.from_env()
    resource = load_resource(data)
    driver = AsyncEvaluator.from_settings(settings, resources=resources, allow_partial=allow_partial)
    return await driver.evaluate(resource, expression, environment, model or settings.model)


__all__ = [
    "AsyncEvaluator",
    "State",
    "evaluate_async",
    "load_resource",
]
