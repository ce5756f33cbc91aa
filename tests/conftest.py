import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from report_intake.geocoding import GeocodeResult
from report_intake.job_store import JobStore, job_store
from report_intake.repositories import InMemoryJobsRepository, InMemoryViolationsRepository
from report_intake.runtime import queue_backend, report_queue

REPORT_TEXT = (
    "On 3 March 2024 an airstrike hit a residential building in the Salah al-Din neighborhood "
    "of Aleppo, killing four civilians and injuring seven others according to local medics."
)


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("INTAKE_REQUIRE_TRUESTACK", raising=False)
    job_store.reset()
    report_queue.reset()
    if hasattr(queue_backend, "reset"):
        queue_backend.reset()
    yield


@pytest.fixture
def memory_store() -> JobStore:
    return JobStore(repository=InMemoryJobsRepository())


@pytest.fixture
def violations_repo() -> InMemoryViolationsRepository:
    return InMemoryViolationsRepository()


def make_candidate(**overrides) -> dict:
    candidate = {
        "type": "AIRSTRIKE",
        "date": "2024-03-03",
        "location": {
            "name": {"en": "Salah al-Din", "ar": "صلاح الدين"},
            "administrative_division": {"en": "Aleppo", "ar": "حلب"},
        },
        "description": {"en": "Airstrike on a residential building killing four civilians."},
        "certainty_level": "confirmed",
        "casualties": 4,
        "injured_count": 7,
        "perpetrator_affiliation": "assad_regime",
    }
    candidate.update(overrides)
    return candidate


class FakeExtractor:
    def __init__(self, candidates=None, *, error: Exception | None = None):
        self.candidates = candidates if candidates is not None else []
        self.error = error
        self.calls: list[tuple[str, object]] = []

    def extract(self, report_text, source_url=None):
        self.calls.append((report_text, source_url))
        if self.error is not None:
            raise self.error
        return [dict(c) if isinstance(c, dict) else c for c in self.candidates]


class FakeGeocoder:
    """Answers by place name; unknown names give no result."""

    def __init__(self, answers: dict[str, list[GeocodeResult]] | None = None, *, error: Exception | None = None):
        self.answers = answers or {}
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    def geocode(self, place, admin="", language="en"):
        self.calls.append((place, admin, language))
        if self.error is not None:
            raise self.error
        return list(self.answers.get(place, []))


def aleppo(quality: float = 0.9, *, lat: float = 36.202, lon: float = 37.161) -> GeocodeResult:
    return GeocodeResult(latitude=lat, longitude=lon, country="Syria", city="Aleppo", state="Aleppo", quality=quality)
