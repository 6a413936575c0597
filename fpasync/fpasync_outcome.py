"""
Structured diagnostics for fpasync.

Failures surface to callers as `OperationOutcomeError`, which carries a list of
`Issue` values and can render itself as a FHIR OperationOutcome resource.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SEVERITIES = ('fatal', 'error', 'warning', 'information')


@dataclass
class Issue:
    """One entry of an OperationOutcome."""
    severity: str
    code: str
    diagnostics: str
    expression: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'severity': self.severity,
            'code': self.code,
            'diagnostics': self.diagnostics,
        }
        if self.expression:
            out['expression'] = list(self.expression)
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Issue':
        text = raw.get('diagnostics')
        if not text:
            details = raw.get('details') or {}
            text = details.get('text') or ''
        severity = raw.get('severity')
        return cls(
            severity=severity if severity in SEVERITIES else 'error',
            code=raw.get('code') or 'exception',
            diagnostics=str(text),
            expression=raw.get('expression'),
        )


def create_operation_outcome(severity: str, code: str, message: str) -> 'OperationOutcomeError':
    return OperationOutcomeError([Issue(severity, code, message)])


def issues_from_resource(resource: Any) -> List[Issue]:
    """Extract issues from a decoded OperationOutcome body; empty for anything else."""
    if not isinstance(resource, dict) or resource.get('resourceType') != 'OperationOutcome':
        return []
    return [Issue.from_dict(i) for i in resource.get('issue') or [] if isinstance(i, dict)]


class OperationOutcomeError(Exception):
    """An error that carries OperationOutcome issues."""

    def __init__(self, issues: List[Issue]):
        self.issues = list(issues)
        super().__init__(self.format())

    def format(self) -> str:
        return "\n".join(f"{i.severity}: {i.code}: {i.diagnostics}" for i in self.issues)

    def to_resource(self) -> Dict[str, Any]:
        return {
            'resourceType': 'OperationOutcome',
            'issue': [i.to_dict() for i in self.issues],
        }


class EvaluationFailed(OperationOutcomeError):
    """The expression could not be parsed or evaluated at all."""

    def __init__(self, message: str):
        super().__init__([Issue('fatal', 'exception', message)])


class ExternalCallFailed(OperationOutcomeError):
    """One or more external calls failed; each issue names its fingerprint."""

    def __init__(self, failures: Dict[str, 'AdapterFailure']):
        self.fingerprints = list(failures)
        issues = []
        for fingerprint, failure in failures.items():
            for issue in failure.issues:
                issues.append(Issue(
                    issue.severity,
                    issue.code,
                    f"{issue.diagnostics} (call: {fingerprint})",
                    issue.expression,
                ))
        super().__init__(issues)


class IterationLimitReached(OperationOutcomeError):
    """Pending calls were still being discovered when the pass limit ran out."""

    def __init__(self, passes: int, pending: List[str]):
        self.passes = passes
        self.pending = list(pending)
        super().__init__([iteration_limit_issue(passes, pending, 'error')])


def iteration_limit_issue(passes: int, pending: List[str], severity: str) -> Issue:
    shown = ", ".join(pending[:5])
    if len(pending) > 5:
        shown += f", ... ({len(pending)} total)"
    return Issue(
        severity,
        'incomplete',
        f"Evaluation still had unresolved external calls after {passes} passes: {shown}",
    )


class AdapterFailure(Exception):
    """Raised by an adapter's resolve step; stored on the pending-call record."""

    def __init__(self, message: str, *, code: str = 'exception', issues: Optional[List[Issue]] = None):
        super().__init__(message)
        self.issues: List[Issue] = issues or [Issue('fatal', code, message)]


@dataclass
class EvaluationResult:
    """The structured result of one top-level evaluation."""
    status: str  # 'success' | 'incomplete' | 'error'
    value: List[Any] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    passes: int = 0
    calls_resolved: int = 0
    error: Optional[OperationOutcomeError] = None

    def format_error(self) -> str:
        if self.status == 'success' or not self.issues:
            return ""
        return "\n".join(f"{i.severity}: {i.code}: {i.diagnostics}" for i in self.issues)


__all__ = [
    "Issue",
    "OperationOutcomeError",
    "EvaluationFailed",
    "ExternalCallFailed",
    "IterationLimitReached",
    "AdapterFailure",
    "EvaluationResult",
    "create_operation_outcome",
    "issues_from_resource",
    "iteration_limit_issue",
]
