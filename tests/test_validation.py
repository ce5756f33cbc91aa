from __future__ import annotations

from datetime import UTC, datetime

import pytest

from conftest import make_candidate
from report_intake.errors import ViolationRejectedError
from report_intake.validation import candidate_errors, ensure_storable, validate_candidates

NOW = datetime(2024, 6, 1, tzinfo=UTC)


def test_valid_candidate_gets_defaults():
    candidate = make_candidate()
    candidate.pop("perpetrator_affiliation")
    outcome = validate_candidates([candidate], now=NOW)

    assert outcome.invalid == []
    assert outcome.valid[0]["verified"] is False
    assert outcome.valid[0]["perpetrator_affiliation"] == "unknown"
    assert "verified" not in candidate


def test_missing_required_fields_are_reported():
    errors = candidate_errors({"type": "AIRSTRIKE"}, now=NOW)
    assert "'date' is a required property" in errors
    assert "'location' is a required property" in errors
    assert "'description' is a required property" in errors
    assert "'certainty_level' is a required property" in errors


@pytest.mark.parametrize(
    ("overrides", "fragment"),
    [
        ({"type": "RAID"}, "type:"),
        ({"certainty_level": "rumoured"}, "certainty_level:"),
        ({"casualties": -1}, "casualties:"),
        ({"perpetrator_affiliation": "aliens"}, "perpetrator_affiliation:"),
        ({"description": {"en": "short"}}, "description.en:"),
        ({"victims": [{"age": 130}]}, "victims.0.age:"),
        ({"media_links": ["not a url"]}, "media_links.0:"),
        ({"tags": [{"en": "x" * 51}]}, "tags.0.en:"),
        ({"date": "2099-01-01"}, "date: Incident date cannot be in the future"),
        ({"date": "03/03/2024"}, "date: Incident date must be a valid ISO date"),
        ({"reported_date": "2099-01-01"}, "reported_date: Reported date cannot be in the future"),
    ],
)
def test_rule_violations_are_reported_by_field(overrides, fragment):
    errors = candidate_errors(make_candidate(**overrides), now=NOW)
    assert any(fragment in err for err in errors), errors


def test_location_name_is_optional_for_validation():
    candidate = make_candidate(location={"administrative_division": {"en": "Idlib"}})
    assert candidate_errors(candidate, now=NOW) == []


def test_empty_source_url_is_allowed():
    candidate = make_candidate(source_url={"en": ""})
    assert candidate_errors(candidate, now=NOW) == []


def test_partition_is_deterministic_and_keeps_original_candidate():
    bad = make_candidate(type="RAID", casualties=-2)
    candidates = [make_candidate(), bad, "not an object"]
    first = validate_candidates(candidates, now=NOW)
    second = validate_candidates(candidates, now=NOW)

    assert first == second
    assert len(first.valid) == 1
    assert len(first.invalid) == 2
    assert first.invalid[0]["violation"] == bad
    assert first.invalid[0]["error"].startswith("casualties:")
    assert first.invalid[1] == {"violation": "not an object", "error": "Violation must be an object"}


def test_ensure_storable_requires_coordinates_and_creator():
    candidate = make_candidate()
    with pytest.raises(ViolationRejectedError) as excinfo:
        ensure_storable(candidate, now=NOW)
    assert "location.coordinates: Coordinates are required" in excinfo.value.message
    assert "created_by: Creator is required" in excinfo.value.message

    candidate["location"]["coordinates"] = [37.161, 36.202]
    candidate["created_by"] = "user_1"
    ensure_storable(candidate, now=NOW)


def test_ensure_storable_rejects_out_of_range_coordinates():
    candidate = make_candidate(created_by="user_1")
    candidate["location"]["coordinates"] = [200.0, 36.2]
    with pytest.raises(ViolationRejectedError, match="valid longitude/latitude ranges"):
        ensure_storable(candidate, now=NOW)
