import json

import httpx
import pytest

from fpasync.fpasync_adapters import MembershipArgs, ReferenceArgs, ReferenceResolveAdapter, ValueSetMembershipAdapter
from fpasync.fpasync_datatypes import CodeValue, CodingValue, ConceptValue
from fpasync.fpasync_outcome import AdapterFailure

TX = "https://tx.example.org/r4"


def parameters(result):
    return {"resourceType": "Parameters", "parameter": [{"name": "result", "valueBoolean": result}]}


def outcome(code, text):
    return {"resourceType": "OperationOutcome", "issue": [{"severity": "error", "code": code, "diagnostics": text}]}


# -----------------------------------------------------------------
# memberOf
# -----------------------------------------------------------------

@pytest.mark.parametrize("value, expected", [
    ("M", "M - VS1"),
    ({"code": "M", "system": "SYS"}, "SYS|M - VS1"),
    ({"code": "M"}, "|M - VS1"),
    ({"coding": [{"code": "M", "system": "SYS"}, {"code": "N", "system": "SYS2"}]}, "SYS|M,SYS2|N - VS1"),
    ({"coding": [{"system": "SYS"}, {"code": "N", "system": "SYS2"}]}, "SYS2|N - VS1"),
])
def test_membership_fingerprint_per_shape(value, expected):
    adapter = ValueSetMembershipAdapter(TX)
    assert adapter.fingerprint_of(value, "VS1") == expected


@pytest.mark.parametrize("value", [
    "",
    None,
    42,
    {},
    {"system": "SYS"},
    {"coding": []},
    {"coding": [{"system": "SYS"}]},
    ["M"],
])
def test_membership_malformed_values_have_no_fingerprint(value):
    assert ValueSetMembershipAdapter(TX).fingerprint_of(value, "VS1") is None


def test_membership_requires_a_value_set():
    adapter = ValueSetMembershipAdapter(TX)
    assert adapter.fingerprint_of("M", "") is None
    assert adapter.fingerprint_of("M", None) is None
    assert adapter.fingerprint_of("M") is None


def test_membership_fingerprint_is_independent_of_object_identity():
    adapter = ValueSetMembershipAdapter(TX)
    a = {"code": "M", "system": "SYS", "display": "Male"}
    b = dict(a)
    assert adapter.fingerprint_of(a, "VS1") == adapter.fingerprint_of(b, "VS1")


def test_membership_needs_a_server():
    with pytest.raises(ValueError):
        ValueSetMembershipAdapter("")


def test_membership_request_encoding_per_shape():
    adapter = ValueSetMembershipAdapter(TX + "/")
    assert adapter.endpoint == f"{TX}/ValueSet/$validate-code"

    method, params, body = adapter.request_for(MembershipArgs(CodeValue("M"), "VS1"))
    assert (method, params, body) == ("GET", {"url": "VS1", "code": "M"}, None)

    method, params, body = adapter.request_for(MembershipArgs(CodingValue("M", "SYS", "2.0"), "VS1"))
    assert method == "GET"
    assert params == {"url": "VS1", "system": "SYS", "code": "M", "version": "2.0"}

    concept = ConceptValue((CodingValue("M", "SYS"), CodingValue("N", "SYS2")), text="sex")
    method, params, body = adapter.request_for(MembershipArgs(concept, "VS1"))
    assert method == "POST"
    assert params == {}
    sent = json.loads(body)
    assert sent["resourceType"] == "Parameters"
    assert sent["parameter"][0] == {"name": "url", "valueUri": "VS1"}
    assert sent["parameter"][1]["valueCodeableConcept"] == {
        "coding": [{"code": "M", "system": "SYS"}, {"code": "N", "system": "SYS2"}],
        "text": "sex",
    }


@pytest.mark.asyncio
async def test_membership_resolve_get_returns_result_flag(monkeypatch):
    seen = []

    async def fake_http_get(url, config=None):
        seen.append((url, config))
        return (200, parameters(True), {})

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ValueSetMembershipAdapter(TX, http_config={"timeout": 1.0, "params": {"_format": "json"}})
    args = adapter.parse({"code": "M", "system": "SYS"}, "VS1")

    assert await adapter.resolve(args) is True
    url, cfg = seen[0]
    assert url == f"{TX}/ValueSet/$validate-code"
    assert cfg["response-mode"] == "lite"
    assert cfg["timeout"] == 1.0
    assert cfg["params"] == {"_format": "json", "url": "VS1", "system": "SYS", "code": "M"}


@pytest.mark.asyncio
async def test_membership_resolve_concept_posts_parameters(monkeypatch):
    posted = []

    async def fake_http_post(url, data, config=None):
        posted.append(json.loads(data))
        return (200, parameters(False), {})

    monkeypatch.setattr("fpasync.fpasync_http.http_post", fake_http_post)
    adapter = ValueSetMembershipAdapter(TX)
    args = adapter.parse({"coding": [{"code": "M", "system": "SYS"}]}, "VS1")

    assert await adapter.resolve(args) is False
    assert posted[0]["parameter"][1]["name"] == "codeableConcept"


@pytest.mark.asyncio
async def test_membership_outcome_body_is_a_failure(monkeypatch):
    async def fake_http_get(url, config=None):
        return (200, outcome("not-found", "ValueSet VS1 unknown"), {})

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ValueSetMembershipAdapter(TX)
    with pytest.raises(AdapterFailure) as exc:
        await adapter.resolve(adapter.parse("M", "VS1"))
    assert exc.value.issues[0].code == "not-found"
    assert exc.value.issues[0].diagnostics == "ValueSet VS1 unknown"


@pytest.mark.asyncio
async def test_membership_non_2xx_keeps_server_issues(monkeypatch):
    async def fake_http_get(url, config=None):
        return (422, outcome("invalid", "bad code"), {})

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ValueSetMembershipAdapter(TX)
    with pytest.raises(AdapterFailure) as exc:
        await adapter.resolve(adapter.parse("M", "VS1"))
    assert "HTTP 422" in str(exc.value)
    assert exc.value.issues[0].code == "invalid"


@pytest.mark.asyncio
async def test_membership_missing_result_is_invalid(monkeypatch):
    async def fake_http_get(url, config=None):
        return (200, {"resourceType": "Parameters", "parameter": [{"name": "message", "valueString": "?"}]}, {})

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ValueSetMembershipAdapter(TX)
    with pytest.raises(AdapterFailure) as exc:
        await adapter.resolve(adapter.parse("M", "VS1"))
    assert exc.value.issues[0].code == "invalid"


@pytest.mark.asyncio
async def test_membership_transport_error_is_a_failure(monkeypatch):
    async def fake_http_get(url, config=None):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ValueSetMembershipAdapter(TX)
    with pytest.raises(AdapterFailure) as exc:
        await adapter.resolve(adapter.parse("M", "VS1"))
    assert exc.value.issues[0].code == "transient"
    assert "connection refused" in str(exc.value)


# -----------------------------------------------------------------
# resolve()
# -----------------------------------------------------------------

def test_reference_fingerprint_for_string_and_reference_object():
    adapter = ReferenceResolveAdapter()
    assert adapter.fingerprint_of("http://example/Organization/1") == "http://example/Organization/1"
    assert adapter.fingerprint_of({"reference": "Organization/1", "display": "Acme"}) == "Organization/1"
    assert adapter.fingerprint_of("  Organization/1 ") == "Organization/1"


@pytest.mark.parametrize("value", ["", "#contained", {"display": "no ref"}, {"reference": 3}, 12, None])
def test_reference_malformed_has_no_fingerprint(value):
    assert ReferenceResolveAdapter().fingerprint_of(value) is None


def test_reference_relative_is_absolutized_against_base():
    adapter = ReferenceResolveAdapter("http://fhir.example/base/")
    assert adapter.parse("Organization/1") == ReferenceArgs("Organization/1", "http://fhir.example/base/Organization/1")
    assert adapter.fingerprint_of("Organization/1") == adapter.fingerprint_of("http://fhir.example/base/Organization/1")
    assert adapter.parse("urn:uuid:1234") == ReferenceArgs("urn:uuid:1234")


@pytest.mark.asyncio
async def test_reference_known_resources_are_used_without_http(monkeypatch):
    async def fake_http_get(url, config=None):
        raise AssertionError("should not fetch")

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    org = {"resourceType": "Organization", "id": "1", "name": "Acme"}
    adapter = ReferenceResolveAdapter("http://fhir.example", [org])
    assert await adapter.resolve(adapter.parse("Organization/1")) == org
    assert await adapter.resolve(adapter.parse("http://fhir.example/Organization/1")) == org


def test_add_resource_requires_type_and_id():
    with pytest.raises(ValueError):
        ReferenceResolveAdapter().add_resource({"resourceType": "Organization"})


@pytest.mark.asyncio
async def test_reference_without_base_is_not_found():
    adapter = ReferenceResolveAdapter(resources={"Organization/2": {"resourceType": "Organization"}})
    assert await adapter.resolve(adapter.parse("Organization/1")) is None


@pytest.mark.asyncio
async def test_reference_unknown_absolute_url_resolves_to_not_found(monkeypatch):
    async def fake_http_get(url, config=None):
        assert url == "http://example/Organization/1"
        return (404, outcome("not-found", "no such resource"), {})

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ReferenceResolveAdapter()
    assert await adapter.resolve(adapter.parse("http://example/Organization/1")) is None


@pytest.mark.asyncio
async def test_reference_fetch_returns_resource(monkeypatch):
    org = {"resourceType": "Organization", "id": "1"}

    async def fake_http_get(url, config=None):
        return (200, org, {"content-type": "application/fhir+json"})

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ReferenceResolveAdapter("http://fhir.example")
    assert await adapter.resolve(adapter.parse({"reference": "Organization/1"})) == org


@pytest.mark.asyncio
async def test_reference_server_error_and_non_resource_body_fail(monkeypatch):
    responses = iter([(500, "oops", {}), (200, "<html>not json</html>", {})])

    async def fake_http_get(url, config=None):
        return next(responses)

    monkeypatch.setattr("fpasync.fpasync_http.http_get", fake_http_get)
    adapter = ReferenceResolveAdapter()
    args = adapter.parse("http://example/Organization/1")
    with pytest.raises(AdapterFailure, match="HTTP 500"):
        await adapter.resolve(args)
    with pytest.raises(AdapterFailure) as exc:
        await adapter.resolve(args)
    assert exc.value.issues[0].code == "invalid"
