"""
test_resources.py
-----------------
FHIR Conditional Upsert Service — Test Suite for resources.py and etag.py
-------------------------------------------------------------------------
Tests for the pydantic data contracts and the weak entity tag.

Tests cover:
    - Resource.from_fhir drops server-owned elements and validates input
    - Resource.with_id returns an independent copy
    - ResourceWrapper.to_fhir stamps meta.versionId / lastUpdated
    - WeakETag equality, header form and parsing

Run:
    pytest tests/test_resources.py -v --tb=short

Project: FHIR Conditional Upsert Service
"""

import os
import sys
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from etag import WeakETag
from exceptions import BadRequestError
from resources import Resource, ResourceWrapper


# ── Resource ──────────────────────────────────────────────────────────────────

class TestResource:

    def test_from_fhir_splits_identity_from_body(self):
        resource = Resource.from_fhir(
            {
                "resourceType": "Patient",
                "id": "p1",
                "meta": {"versionId": "7"},
                "gender": "female",
            }
        )
        assert resource.resource_type == "Patient"
        assert resource.id == "p1"
        assert resource.body == {"gender": "female"}

    def test_from_fhir_empty_id_is_absent(self):
        assert Resource.from_fhir({"resourceType": "Patient", "id": ""}).id is None

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"gender": "female"},
            {"resourceType": ""},
            {"resourceType": "Patient", "id": 12},
        ],
    )
    def test_from_fhir_rejects_invalid_input(self, data):
        with pytest.raises(BadRequestError):
            Resource.from_fhir(data)

    def test_blank_resource_type_rejected(self):
        with pytest.raises(ValidationError):
            Resource(resource_type="  ")

    def test_to_fhir(self):
        resource = Resource(resource_type="Patient", id="p1", body={"active": True})
        assert resource.to_fhir() == {"resourceType": "Patient", "id": "p1", "active": True}

    def test_with_id_copies(self):
        original = Resource(resource_type="Patient", body={"name": [{"family": "Smith"}]})
        copy = original.with_id("p1")

        copy.body["name"][0]["family"] = "Jones"
        assert copy.id == "p1"
        assert original.id is None
        assert original.body["name"][0]["family"] == "Smith"


# ── ResourceWrapper ───────────────────────────────────────────────────────────

def test_wrapper_to_fhir_stamps_meta():
    modified = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    wrapper = ResourceWrapper(
        resource=Resource(resource_type="Patient", id="p1", body={"active": True}),
        version="4",
        last_modified=modified,
    )
    data = wrapper.to_fhir()

    assert list(data)[:3] == ["resourceType", "id", "meta"]
    assert data["meta"] == {"versionId": "4", "lastUpdated": modified.isoformat()}
    assert data["active"] is True
    assert wrapper.etag == WeakETag.from_version_id("4")
    assert wrapper.resource_id == "p1"


# ── WeakETag ──────────────────────────────────────────────────────────────────

class TestWeakETag:

    def test_equality_by_version(self):
        assert WeakETag.from_version_id("1") == WeakETag.from_version_id("1")
        assert WeakETag.from_version_id("1") != WeakETag.from_version_id("2")

    def test_header_form(self):
        assert str(WeakETag.from_version_id("abc")) == 'W/"abc"'

    def test_parse_header_form(self):
        assert WeakETag.from_weak_etag(' W/"17" ') == WeakETag.from_version_id("17")

    @pytest.mark.parametrize("raw", ['"17"', "W/17", 'W/""', ""])
    def test_parse_rejects_other_forms(self, raw):
        with pytest.raises(BadRequestError):
            WeakETag.from_weak_etag(raw)

    def test_empty_version_rejected(self):
        with pytest.raises(ValidationError):
            WeakETag.from_version_id("")

    def test_immutable(self):
        tag = WeakETag.from_version_id("1")
        with pytest.raises(ValidationError):
            tag.version_id = "2"
