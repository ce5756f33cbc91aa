from report_intake.repositories.geocoding_cache import (
    InMemoryGeocodingCacheRepository,
    PostgresGeocodingCacheRepository,
)
from report_intake.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository
from report_intake.repositories.violations import InMemoryViolationsRepository, PostgresViolationsRepository

__all__ = [
    "InMemoryGeocodingCacheRepository",
    "PostgresGeocodingCacheRepository",
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
    "InMemoryViolationsRepository",
    "PostgresViolationsRepository",
]
