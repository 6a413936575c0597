"""
Function interception layer.

The evaluator calls these handlers synchronously with the already-evaluated
input collection plus literal arguments. A handler never blocks: it either
returns a memoized answer, raises a recorded failure, or registers the call as
pending and contributes nothing so the rest of the expression keeps evaluating.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fpasync.fpasync_adapters import ExternalCallAdapter
from fpasync.fpasync_datatypes import Fingerprint, PendingCall
from fpasync.fpasync_outcome import ExternalCallFailed
from fpasync.fpasync_registry import PendingCallRegistry


class PassState:
    """What the handlers observed during one synchronous pass."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.awaiting: Set[Fingerprint] = set()
        self.failure: Optional[ExternalCallFailed] = None
        self.calls = 0

    @property
    def incomplete(self) -> bool:
        return bool(self.awaiting)


def _elements(inputs: Any) -> Iterable[Any]:
    if inputs is None:
        return ()
    if isinstance(inputs, (list, tuple)):
        return inputs
    return (inputs,)


class InterceptedFunction:
    """Evaluator-visible handler backed by an external call adapter."""

    def __init__(self,
                 adapter: ExternalCallAdapter,
                 registry: PendingCallRegistry,
                 pass_state: PassState,
                 trace: Optional[Callable[..., None]] = None):
        self.adapter = adapter
        self.registry = registry
        self.pass_state = pass_state
        self._trace = trace or (lambda *parts: None)

    @property
    def name(self) -> str:
        return self.adapter.name

    @property
    def arity(self) -> Dict[int, List[str]]:
        return self.adapter.arity

    def __call__(self, inputs: Any, *args: Any) -> List[Any]:
        out = []
        for value in _elements(inputs):
            result = self.apply(value, *args)
            if result is not None:
                out.append(result)
        return out

    def apply(self, value: Any, *args: Any) -> Any:
        """Handle one input element; None means 'no value for this element'."""
        self.pass_state.calls += 1
        arguments = self.adapter.parse(value, *args)
        if arguments is None:
            return None
        fingerprint = self.adapter.fingerprint(arguments)

        record = self.registry.lookup(fingerprint)
        if record is not None and record.completed:
            if record.failure is not None:
                failure = ExternalCallFailed({fingerprint: record.failure})
                self.pass_state.failure = failure
                raise failure
            self._trace("using cached result for", fingerprint)
            return record.result

        self.registry.register_if_absent(
            fingerprint, lambda: PendingCall(fingerprint, self.adapter, arguments),
        )
        if fingerprint not in self.pass_state.awaiting:
            self._trace("requires evaluation for", fingerprint)
        self.pass_state.awaiting.add(fingerprint)
        return None

    def __repr__(self) -> str:
        return f"<InterceptedFunction {self.name}>"


def build_function_table(adapters: Iterable[ExternalCallAdapter],
                         registry: PendingCallRegistry,
                         pass_state: PassState,
                         *,
                         extra: Optional[Dict[str, Any]] = None,
                         trace: Optional[Callable[..., None]] = None) -> Dict[str, Any]:
    """
    Name -> handler mapping for one evaluation. Every handler is callable as
    handler(inputs, *args) and exposes `.arity`.
    """
    table: Dict[str, Any] = dict(extra or {})
    for adapter in adapters:
        if adapter.name in table:
            raise ValueError(f"function {adapter.name!r} is registered twice")
        table[adapter.name] = InterceptedFunction(adapter, registry, pass_state, trace)
    return table
