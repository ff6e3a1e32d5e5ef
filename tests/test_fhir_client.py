"""
test_fhir_client.py
-------------------
FHIR Conditional Upsert Service — Test Suite for fhir_client.py
---------------------------------------------------------------
Tests for FhirServerClient against an in-process ``httpx.MockTransport``.
No network calls are made.

Tests cover:
    - search: params forwarded in order, Bundle entries → wrappers
    - search: included / other-type entries are not matches
    - create / upsert: request shape, If-Match header, Created vs Updated
    - minimal write responses (weak or strong ETag, Location, Last-Modified)
    - responses without a store-issued version are rejected, never defaulted
    - searches ask for strict parameter handling
    - error status mapping (404, 409, 412, 5xx, transport failure, other)
    - bearer token header; use before connect() is an error

Run:
    pytest tests/test_fhir_client.py -v --tb=short

Project: FHIR Conditional Upsert Service
"""

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conditional_upsert import ConditionalUpsertEngine
from etag import WeakETag
from exceptions import (
    FhirApiError,
    InvalidServerResponseError,
    ResourceConflictError,
    ResourceNotFoundError,
    ResourceVersionConflictError,
    ServiceUnavailableError,
)
from fhir_client import FhirServerClient
from resources import Resource, SaveOutcomeType

BASE_URL = "https://fhir.test/r4"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _patient_json(resource_id="p1", version="3"):
    return {
        "resourceType": "Patient",
        "id": resource_id,
        "meta": {"versionId": version, "lastUpdated": "2024-05-01T10:00:00Z"},
        "name": [{"family": "Smith"}],
    }


def _call(handler, coro_factory, token=None):
    """Run ``coro_factory(client)`` against a client whose transport is *handler*."""
    async def scenario():
        async with FhirServerClient(
            BASE_URL, token=token, transport=httpx.MockTransport(handler)
        ) as client:
            return await coro_factory(client)

    return asyncio.run(scenario())


def _outcome(status, diagnostics):
    return httpx.Response(
        status,
        json={
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "code": "conflict", "diagnostics": diagnostics}],
        },
    )


# ── Search ────────────────────────────────────────────────────────────────────

class TestSearch:

    def test_params_forwarded_in_order(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["params"] = list(request.url.params.multi_items())
            return httpx.Response(200, json={"resourceType": "Bundle", "type": "searchset"})

        params = [("identifier", "sys|1"), ("_tag", "x"), ("identifier", "sys|2")]
        result = _call(handler, lambda c: c.search("Patient", params))

        assert seen["method"] == "GET"
        assert seen["path"] == "/r4/Patient"
        assert seen["params"] == params
        assert result.results == []

    def test_bundle_entries_become_wrappers(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "resourceType": "Bundle",
                    "entry": [
                        {"resource": _patient_json("p1", "3"), "search": {"mode": "match"}},
                        {"resource": _patient_json("p2", "1")},
                    ],
                    "link": [{"relation": "next", "url": f"{BASE_URL}/Patient?page=2"}],
                },
            )

        result = _call(handler, lambda c: c.search("Patient", [("name", "Smith")]))

        assert [w.resource_id for w in result.results] == ["p1", "p2"]
        assert result.results[0].etag == WeakETag.from_version_id("3")
        assert "meta" not in result.results[0].resource.body
        assert result.continuation_token == f"{BASE_URL}/Patient?page=2"

    def test_included_and_foreign_entries_skipped(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "resourceType": "Bundle",
                    "entry": [
                        {"resource": _patient_json("p1"), "search": {"mode": "match"}},
                        {"resource": _patient_json("p9"), "search": {"mode": "include"}},
                        {
                            "resource": {"resourceType": "OperationOutcome", "issue": []},
                            "search": {"mode": "outcome"},
                        },
                    ],
                },
            )

        result = _call(handler, lambda c: c.search("Patient", [("name", "Smith")]))
        assert [w.resource_id for w in result.results] == ["p1"]

    def test_match_without_version_never_reaches_a_write(self):
        seen = []

        def handler(request):
            seen.append(request.method)
            return httpx.Response(
                200,
                json={"resourceType": "Bundle", "entry": [{"resource": {"resourceType": "Patient", "id": "abc"}}]},
            )

        async def scenario(client):
            engine = ConditionalUpsertEngine(client, client)
            return await engine.execute(Resource(resource_type="Patient"), [("name", "Smith")])

        with pytest.raises(InvalidServerResponseError) as exc_info:
            _call(handler, scenario)

        assert exc_info.value.resource_id == "abc"
        assert seen == ["GET"]

    def test_search_requests_strict_handling(self):
        seen = {}

        def handler(request):
            seen["prefer"] = request.headers.get("Prefer")
            return httpx.Response(200, json={"resourceType": "Bundle"})

        _call(handler, lambda c: c.search("Patient", [("name", "x")]))
        assert seen["prefer"] == "handling=strict"

    def test_strict_rejection_surfaces_as_api_error(self):
        def handler(request):
            return httpx.Response(400, text="Unknown search parameter '_foo'")

        with pytest.raises(FhirApiError) as exc_info:
            _call(handler, lambda c: c.search("Patient", [("_foo", "x")]))
        assert exc_info.value.status_code == 400


# ── Writes ────────────────────────────────────────────────────────────────────

class TestWrites:

    def test_create_posts_resource(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=_patient_json("new-id", "1"))

        resource = Resource(resource_type="Patient", id="new-id", body={"name": [{"family": "Smith"}]})
        result = _call(handler, lambda c: c.create(resource))

        assert seen["method"] == "POST"
        assert seen["path"] == "/r4/Patient"
        assert seen["body"]["resourceType"] == "Patient"
        assert seen["body"]["id"] == "new-id"
        assert result.outcome == SaveOutcomeType.CREATED
        assert result.wrapper.version == "1"

    def test_upsert_sends_if_match(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["if_match"] = request.headers.get("If-Match")
            return httpx.Response(200, json=_patient_json("p1", "4"))

        resource = Resource(resource_type="Patient", id="p1")
        result = _call(handler, lambda c: c.upsert(resource, WeakETag.from_version_id("3")))

        assert seen["method"] == "PUT"
        assert seen["path"] == "/r4/Patient/p1"
        assert seen["if_match"] == 'W/"3"'
        assert result.outcome == SaveOutcomeType.UPDATED
        assert result.wrapper.etag == WeakETag.from_version_id("4")

    def test_upsert_without_version_has_no_if_match(self):
        seen = {}

        def handler(request):
            seen["if_match"] = request.headers.get("If-Match")
            return httpx.Response(201, json=_patient_json("p1", "1"))

        resource = Resource(resource_type="Patient", id="p1")
        result = _call(handler, lambda c: c.upsert(resource, None))

        assert seen["if_match"] is None
        assert result.outcome == SaveOutcomeType.CREATED

    def test_minimal_response_uses_headers(self):
        def handler(request):
            return httpx.Response(
                201,
                headers={
                    "ETag": 'W/"1"',
                    "Location": f"{BASE_URL}/Patient/srv-7/_history/1",
                },
            )

        resource = Resource(resource_type="Patient", body={"active": True})
        result = _call(handler, lambda c: c.create(resource))

        assert result.wrapper.resource_id == "srv-7"
        assert result.wrapper.version == "1"
        assert result.wrapper.resource.body == {"active": True}

    def test_minimal_response_accepts_strong_etag_and_http_date(self):
        def handler(request):
            return httpx.Response(
                200,
                headers={
                    "ETag": '"5"',
                    "Location": f"{BASE_URL}/Patient/p1/_history/5",
                    "Last-Modified": "Wed, 01 May 2024 10:00:00 GMT",
                },
            )

        resource = Resource(resource_type="Patient", id="p1")
        result = _call(handler, lambda c: c.upsert(resource, WeakETag.from_version_id("4")))

        assert result.wrapper.version == "5"
        assert result.wrapper.last_modified == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_body_without_version_uses_etag_header(self):
        def handler(request):
            return httpx.Response(
                200,
                headers={"ETag": 'W/"8"'},
                json={"resourceType": "Patient", "id": "p1"},
            )

        resource = Resource(resource_type="Patient", id="p1")
        result = _call(handler, lambda c: c.upsert(resource, None))
        assert result.wrapper.version == "8"

    def test_write_response_without_version_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"resourceType": "Patient", "id": "p1"})

        resource = Resource(resource_type="Patient", id="p1")
        with pytest.raises(InvalidServerResponseError) as exc_info:
            _call(handler, lambda c: c.upsert(resource, None))
        assert exc_info.value.status_code == 502

    def test_unusable_etag_is_server_error(self):
        def handler(request):
            return httpx.Response(201, headers={"ETag": "v-5"})

        with pytest.raises(InvalidServerResponseError):
            _call(handler, lambda c: c.create(Resource(resource_type="Patient", id="p1")))

    def test_empty_response_without_etag_rejected(self):
        def handler(request):
            return httpx.Response(201)

        with pytest.raises(InvalidServerResponseError):
            _call(handler, lambda c: c.create(Resource(resource_type="Patient", id="p1")))

    def test_upsert_requires_id(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(ValueError):
            _call(handler, lambda c: c.upsert(Resource(resource_type="Patient"), None))


# ── Error mapping ─────────────────────────────────────────────────────────────

class TestErrors:

    @pytest.mark.parametrize(
        "status, error_cls",
        [
            (404, ResourceNotFoundError),
            (410, ResourceNotFoundError),
            (409, ResourceConflictError),
            (412, ResourceVersionConflictError),
        ],
    )
    def test_status_mapped_to_store_error(self, status, error_cls):
        def handler(request):
            return _outcome(status, "server says no")

        resource = Resource(resource_type="Patient", id="p1")
        with pytest.raises(error_cls) as exc_info:
            _call(handler, lambda c: c.upsert(resource, WeakETag.from_version_id("1")))

        assert "server says no" in str(exc_info.value)
        assert exc_info.value.resource_type == "Patient"
        assert exc_info.value.resource_id == "p1"

    def test_server_error_is_unavailable(self):
        def handler(request):
            return httpx.Response(503, text="maintenance")

        with pytest.raises(ServiceUnavailableError):
            _call(handler, lambda c: c.search("Patient", [("name", "x")]))

    def test_transport_failure_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ServiceUnavailableError):
            _call(handler, lambda c: c.search("Patient", [("name", "x")]))

    def test_other_status_is_api_error(self):
        def handler(request):
            return httpx.Response(422, text="unprocessable")

        with pytest.raises(FhirApiError) as exc_info:
            _call(handler, lambda c: c.create(Resource(resource_type="Patient")))
        assert exc_info.value.status_code == 422


# ── Auth / lifecycle ──────────────────────────────────────────────────────────

def test_bearer_token_sent():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["accept"] = request.headers.get("Accept")
        return httpx.Response(200, json={"resourceType": "Bundle"})

    _call(handler, lambda c: c.search("Patient", [("name", "x")]), token="secret")
    assert seen["auth"] == "Bearer secret"
    assert seen["accept"] == "application/fhir+json"


def test_request_before_connect_raises():
    client = FhirServerClient(BASE_URL)
    with pytest.raises(RuntimeError):
        asyncio.run(client.search("Patient", [("name", "x")]))


def test_base_url_required():
    with pytest.raises(ValueError):
        FhirServerClient("")
