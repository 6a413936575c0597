"""
External call adapters.

An adapter turns the arguments of one interceptable function into a
fingerprint (used for de-duplication and memoization) and, later and out of
band, into a result. `parse` and `fingerprint_of` are synchronous and total;
`resolve` is the only coroutine and the only place that does I/O.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import collections.abc
import json

import httpx

from fpasync import fpasync_http
from fpasync.fpasync_datatypes import (
    CodeArgument, CodeValue, CodingValue, ConceptValue, Fingerprint, classify_code, plain,
)
from fpasync.fpasync_outcome import AdapterFailure, issues_from_resource


class ExternalCallAdapter(ABC):
    """Capability behind one interceptable function."""

    #: function name as seen by the expression language
    name: str = ''
    #: declared arity, in the evaluator's {argc: [param types]} form
    arity: Dict[int, List[str]] = {0: []}

    @abstractmethod
    def parse(self, value: Any, *args: Any) -> Any:
        """Return the typed call arguments, or None when the call is malformed."""

    @abstractmethod
    def fingerprint(self, arguments: Any) -> Fingerprint:
        """Canonical identity of already-parsed arguments."""

    @abstractmethod
    async def resolve(self, arguments: Any) -> Any:
        """Perform the external computation. Raise AdapterFailure on failure."""

    def fingerprint_of(self, value: Any, *args: Any) -> Optional[Fingerprint]:
        arguments = self.parse(value, *args)
        if arguments is None:
            return None
        return self.fingerprint(arguments)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


def _transport_failure(what: str, exc: Exception) -> AdapterFailure:
    return AdapterFailure(f"{what} failed: {type(exc).__name__}: {exc}", code='transient')


def _status_failure(what: str, status: int, value: Any) -> AdapterFailure:
    issues = issues_from_resource(value)
    if issues:
        return AdapterFailure(f"{what} returned HTTP {status}", issues=issues)
    return AdapterFailure(f"{what} returned HTTP {status}")


# ===================================================================
# resolve()
# ===================================================================

@dataclass(frozen=True)
class ReferenceArgs:
    reference: str
    url: Optional[str] = None


def _is_absolute(reference: str) -> bool:
    return reference.startswith('http://') or reference.startswith('https://')


class ReferenceResolveAdapter(ExternalCallAdapter):
    """
    Resolves a reference string (or a Reference object's `reference`) to the
    resource it points at.

    Known resources are looked up in `resources` first; anything else is fetched
    with a GET when an absolute URL can be formed. References that cannot be
    located resolve to None rather than failing.
    """

    name = 'resolve'
    arity = {0: []}

    def __init__(self,
                 fhir_server: Optional[str] = None,
                 resources: Union[Mapping[str, Any], Iterable[Any], None] = None,
                 *,
                 http_config: Optional[Dict[str, Any]] = None):
        self.fhir_server = fhir_server.rstrip('/') if fhir_server else None
        self.http_config = dict(http_config or {})
        self.resources: Dict[str, Any] = {}
        match resources:
            case None:
                pass
            case collections.abc.Mapping():
                self.resources.update(resources)
            case _:
                for resource in resources:
                    self.add_resource(resource)

    def add_resource(self, resource: Mapping[str, Any]) -> None:
        """Index a resource by `Type/id` (and by absolute URL when a base is configured)."""
        rtype = resource.get('resourceType')
        rid = resource.get('id')
        if not rtype or not rid:
            raise ValueError("resource needs both resourceType and id to be referenced")
        relative = f"{rtype}/{rid}"
        self.resources[relative] = resource
        if self.fhir_server:
            self.resources[f"{self.fhir_server}/{relative}"] = resource

    def parse(self, value: Any, *args: Any) -> Optional[ReferenceArgs]:
        match plain(value):
            case str() as ref:
                reference = ref.strip()
            case {'reference': str() as ref}:
                reference = ref.strip()
            case _:
                return None
        # Contained references are local to the resource and never fetched
        if not reference or reference.startswith('#'):
            return None
        if _is_absolute(reference):
            return ReferenceArgs(reference, reference)
        if self.fhir_server and not reference.startswith('urn:'):
            return ReferenceArgs(reference, f"{self.fhir_server}/{reference.lstrip('/')}")
        return ReferenceArgs(reference)

    def fingerprint(self, arguments: ReferenceArgs) -> Fingerprint:
        return arguments.url or arguments.reference

    async def resolve(self, arguments: ReferenceArgs) -> Any:
        for key in (arguments.reference, arguments.url):
            if key and key in self.resources:
                return self.resources[key]
        if arguments.url is None:
            return None

        what = f"GET {arguments.url}"
        cfg = {**self.http_config, 'response-mode': 'lite'}
        try:
            status, value, _ = await fpasync_http.http_get(arguments.url, cfg)
        except httpx.HTTPError as e:
            raise _transport_failure(what, e) from e
        if status in (404, 410):
            return None
        if not 200 <= status < 300:
            raise _status_failure(what, status, value)
        if not isinstance(value, dict) or 'resourceType' not in value:
            raise AdapterFailure(f"{what} did not return a FHIR resource", code='invalid')
        return value


# ===================================================================
# memberOf(valueSet)
# ===================================================================

@dataclass(frozen=True)
class MembershipArgs:
    code: CodeArgument
    value_set: str


class ValueSetMembershipAdapter(ExternalCallAdapter):
    """
    Checks value-set membership with the terminology server's
    ValueSet/$validate-code operation. Codes and single codings are sent as a
    GET query; codeable concepts are POSTed as a Parameters resource.
    """

    name = 'memberOf'
    arity = {1: ['String']}

    def __init__(self, terminology_server: str, *, http_config: Optional[Dict[str, Any]] = None):
        if not terminology_server:
            raise ValueError("a terminology server URL is required")
        self.terminology_server = terminology_server.rstrip('/')
        self.http_config = dict(http_config or {})

    @property
    def endpoint(self) -> str:
        return f"{self.terminology_server}/ValueSet/$validate-code"

    def parse(self, value: Any, *args: Any) -> Optional[MembershipArgs]:
        if len(args) != 1:
            return None
        value_set = plain(args[0])
        if not isinstance(value_set, str) or not value_set.strip():
            return None
        code = classify_code(value)
        if code is None:
            return None
        return MembershipArgs(code, value_set.strip())

    def fingerprint(self, arguments: MembershipArgs) -> Fingerprint:
        return f"{arguments.code.key()} - {arguments.value_set}"

    def request_for(self, arguments: MembershipArgs) -> tuple:
        """Return (method, params, body) for the argument shape."""
        params: Dict[str, str] = {'url': arguments.value_set}
        match arguments.code:
            case CodeValue(code=code):
                params['code'] = code
                return 'GET', params, None
            case CodingValue(code=code, system=system, version=version):
                if system:
                    params['system'] = system
                params['code'] = code
                if version:
                    params['version'] = version
                return 'GET', params, None
            case ConceptValue() as concept:
                body = {
                    'resourceType': 'Parameters',
                    'parameter': [
                        {'name': 'url', 'valueUri': arguments.value_set},
                        {'name': 'codeableConcept', 'valueCodeableConcept': concept.to_fhir()},
                    ],
                }
                return 'POST', {}, json.dumps(body)
        raise TypeError(f"unsupported code argument {arguments.code!r}")

    async def resolve(self, arguments: MembershipArgs) -> bool:
        method, params, body = self.request_for(arguments)
        what = f"$validate-code for {self.fingerprint(arguments)}"
        cfg = {**self.http_config, 'response-mode': 'lite'}
        if params:
            cfg['params'] = {**cfg.get('params', {}), **params}
        try:
            if method == 'GET':
                status, value, _ = await fpasync_http.http_get(self.endpoint, cfg)
            else:
                status, value, _ = await fpasync_http.http_post(self.endpoint, body, cfg)
        except httpx.HTTPError as e:
            raise _transport_failure(what, e) from e

        if not 200 <= status < 300:
            raise _status_failure(what, status, value)
        issues = issues_from_resource(value)
        if issues:
            raise AdapterFailure(f"{what} returned an OperationOutcome", issues=issues)
        return self._result_flag(what, value)

    @staticmethod
    def _result_flag(what: str, value: Any) -> bool:
        if isinstance(value, dict) and value.get('resourceType') == 'Parameters':
            for param in value.get('parameter') or []:
                if param.get('name') == 'result' and isinstance(param.get('valueBoolean'), bool):
                    return param['valueBoolean']
        raise AdapterFailure(f"{what} returned no boolean result", code='invalid')


__all__ = [
    "ExternalCallAdapter",
    "ReferenceResolveAdapter",
    "ReferenceArgs",
    "ValueSetMembershipAdapter",
    "MembershipArgs",
]
