"""
Defines the core data types for fpasync.

This module holds the pending-call record kept by the registry and the tagged
argument variants that external call adapters accept.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union, TYPE_CHECKING
import collections.abc

if TYPE_CHECKING:
    from fpasync.fpasync_adapters import ExternalCallAdapter
    from fpasync.fpasync_outcome import AdapterFailure

Fingerprint = str


class CallState(Enum):
    NOT_STARTED = 'not-started'
    IN_FLIGHT = 'in-flight'
    COMPLETED = 'completed'


@dataclass
class PendingCall:
    """One external call, keyed by fingerprint within a single registry."""
    fingerprint: Fingerprint
    adapter: 'ExternalCallAdapter'
    arguments: Any
    state: CallState = CallState.NOT_STARTED
    result: Any = None
    failure: Optional['AdapterFailure'] = None

    @property
    def completed(self) -> bool:
        return self.state is CallState.COMPLETED

    @property
    def succeeded(self) -> bool:
        return self.completed and self.failure is None


# =================================================================
# Code argument variants accepted by memberOf
# =================================================================

@dataclass(frozen=True)
class CodeValue:
    """A bare code string, e.g. 'M'."""
    code: str

    def key(self) -> str:
        return self.code


@dataclass(frozen=True)
class CodingValue:
    """A single code within a code system."""
    code: str
    system: Optional[str] = None
    version: Optional[str] = None
    display: Optional[str] = None

    def key(self) -> str:
        return f"{self.system or ''}|{self.code}"

    def to_fhir(self) -> dict:
        out = {'code': self.code}
        if self.system:
            out['system'] = self.system
        if self.version:
            out['version'] = self.version
        if self.display:
            out['display'] = self.display
        return out


@dataclass(frozen=True)
class ConceptValue:
    """A CodeableConcept: several codings, any of which may be a member."""
    codings: Tuple[CodingValue, ...] = field(default_factory=tuple)
    text: Optional[str] = None

    def key(self) -> str:
        return ",".join(c.key() for c in self.codings)

    def to_fhir(self) -> dict:
        out: dict = {'coding': [c.to_fhir() for c in self.codings]}
        if self.text:
            out['text'] = self.text
        return out


CodeArgument = Union[CodeValue, CodingValue, ConceptValue]


def plain(value: Any) -> Any:
    """Unwrap evaluator node objects (anything exposing `.data`) to plain JSON values."""
    match value:
        case str() | bool() | int() | float() | None:
            return value
        case collections.abc.Mapping() | list():
            return value
    data = getattr(value, 'data', None)
    if data is not None:
        return data
    return value


def _as_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _coding_from(raw: collections.abc.Mapping) -> Optional[CodingValue]:
    code = _as_text(raw.get('code'))
    if code is None:
        return None
    return CodingValue(
        code=code,
        system=_as_text(raw.get('system')),
        version=_as_text(raw.get('version')),
        display=_as_text(raw.get('display')),
    )


def classify_code(value: Any) -> Optional[CodeArgument]:
    """Map an evaluator value onto one of the three accepted shapes, or None."""
    match plain(value):
        case str() as code if code:
            return CodeValue(code)
        case {'coding': list() as codings} as concept:
            parsed = [_coding_from(c) for c in codings if isinstance(c, collections.abc.Mapping)]
            usable = tuple(c for c in parsed if c is not None)
            if not usable:
                return None
            return ConceptValue(usable, _as_text(concept.get('text')))
        case {'code': _} as coding:
            return _coding_from(coding)
        case _:
            return None


__all__ = [
    "Fingerprint",
    "CallState",
    "PendingCall",
    "CodeValue",
    "CodingValue",
    "ConceptValue",
    "CodeArgument",
    "classify_code",
    "plain",
]
