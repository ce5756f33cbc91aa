"""
Location resolution: place names to coordinates.

GoogleGeocoder queries the Google Geocoding API with a short list of query
strategies and keeps the first in-region hit. CachedGeocoder puts a
geocoding cache repository in front of it, keyed per (place, admin, language).
resolve_location picks between the Arabic and English lookups of a candidate.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from report_intake.errors import ApiError, ConfigurationError, LocationResolutionError, StoreUnavailableError
from report_intake.runtime_profile import env_float

logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
GOOGLE_PLACES_URL = "https://maps.googleapis.com/maps/api/place"
PLACES_QUALITY = 0.9


@dataclass(frozen=True)
class RegionBounds:
    north: float
    south: float
    east: float
    west: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.south <= latitude <= self.north and self.west <= longitude <= self.east


SYRIA_BOUNDS = RegionBounds(north=37.319831, south=32.310939, east=42.385029, west=35.727222)


@dataclass
class GeocodeResult:
    latitude: float
    longitude: float
    formatted_address: str = ""
    country: str = ""
    city: str = ""
    state: str = ""
    street: str = ""
    quality: float = 0.5
    from_cache: bool = False
    source: str = "geocoding_api"
    api_calls_used: int = 1

    @property
    def coordinates(self) -> list[float]:
        return [self.longitude, self.latitude]

    def to_cache_results(self) -> dict[str, Any]:
        return {
            "coordinates": self.coordinates,
            "formatted_address": self.formatted_address,
            "country": self.country or "Syria",
            "city": self.city,
            "state": self.state,
            "quality": self.quality,
        }

    @classmethod
    def from_cache_results(cls, results: Mapping[str, Any]) -> GeocodeResult:
        lon, lat = results["coordinates"]
        return cls(
            latitude=float(lat),
            longitude=float(lon),
            formatted_address=str(results.get("formatted_address", "")),
            country=str(results.get("country", "")),
            city=str(results.get("city", "")),
            state=str(results.get("state", "")),
            quality=float(results.get("quality", 0.5)),
            from_cache=True,
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


_NEIGHBORHOOD_WORDS = (
    re.compile(r"\bneighborhood\b", re.IGNORECASE),
    re.compile(r"\bحي\b"),
)
_SPACES = re.compile(r"\s+")


def clean_location_name(name: str) -> str:
    cleaned = name or ""
    for pattern in _NEIGHBORHOOD_WORDS:
        cleaned = pattern.sub("", cleaned)
    return _SPACES.sub(" ", cleaned).strip()


def cache_key(place: str, admin: str, language: str) -> str:
    raw = f"{clean_location_name(place).lower().strip()}_{(admin or '').lower().strip()}_{language}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def quality_score(result: GeocodeResult, query: str, *, region: str = "Syria") -> float:
    score = 0.5
    if result.formatted_address and query in result.formatted_address:
        score += 0.3
    if result.country in {region, "SY"}:
        score += 0.2
    if result.city and result.state:
        score += 0.1
    if result.street:
        score += 0.1
    return min(score, 1.0)


def _component(components: list[dict[str, Any]], kind: str, name_type: str = "long_name") -> str:
    for comp in components:
        if kind in comp.get("types", []):
            return str(comp.get(name_type, ""))
    return ""


def _in_country(components: list[dict[str, Any]], *, region: str, code: str) -> bool:
    for comp in components:
        if "country" in comp.get("types", []):
            if comp.get("short_name") == code or comp.get("long_name") == region:
                return True
    return False


class GoogleGeocoder:
    """Google Geocoding API client restricted to a single country, with a Places API last resort."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = GOOGLE_GEOCODE_URL,
        places_base_url: str = GOOGLE_PLACES_URL,
        timeout_s: float = 10.0,
        region: str = "Syria",
        region_code: str = "SY",
        bounds: RegionBounds = SYRIA_BOUNDS,
        session: Any = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url
        self.places_base_url = places_base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.region = region
        self.region_code = region_code
        self.bounds = bounds
        self._session = session

    def _http(self) -> Any:
        if self._session is None:
            import requests

            self._session = requests.Session()
        return self._session

    def _get_json(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        import requests

        try:
            response = self._http().get(url, params=params, timeout=self.timeout_s)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            raise ApiError(
                code="GEOCODER_TIMEOUT",
                message=f"Geocoding request timed out: {e}",
                error_class="transient",
                retryable=True,
                http_status=504,
            ) from e
        except requests.exceptions.RequestException as e:
            raise ApiError(
                code="GEOCODER_REQUEST_FAILED",
                message=f"Geocoding request failed: {e}",
                error_class="transient",
                retryable=True,
                http_status=502,
            ) from e

    def _to_result(self, item: Mapping[str, Any], **extra: Any) -> GeocodeResult:
        components = item.get("address_components", [])
        location = item.get("geometry", {}).get("location", {})
        return GeocodeResult(
            latitude=float(location.get("lat")),
            longitude=float(location.get("lng")),
            formatted_address=str(item.get("formatted_address", "")),
            country=_component(components, "country"),
            city=_component(components, "locality") or _component(components, "administrative_area_level_2"),
            state=_component(components, "administrative_area_level_1"),
            street=_component(components, "route") or _component(components, "street_number"),
            **extra,
        )

    def _query(self, address: str) -> list[GeocodeResult]:
        data = self._get_json(self.base_url, {"address": address, "key": self.api_key})
        status = data.get("status")
        if status != "OK":
            if status not in {"ZERO_RESULTS", None}:
                logger.warning("Geocoding API returned status %s for %r: %s", status, address, data.get("error_message", ""))
            return []

        items = data.get("results", [])
        in_country = [
            item
            for item in items
            if _in_country(item.get("address_components", []), region=self.region, code=self.region_code)
        ]
        # Without any in-country hit, every result goes on to the bounds check.
        return [self._to_result(item) for item in (in_country or items)]

    def places_search(self, query: str) -> list[GeocodeResult]:
        """Find-place then place-details lookup; one in-region result or nothing."""
        b = self.bounds
        found = self._get_json(
            f"{self.places_base_url}/findplacefromtext/json",
            {
                "input": query,
                "inputtype": "textquery",
                "fields": "place_id,name,formatted_address",
                "locationbias": f"rectangle:{b.south},{b.west}|{b.north},{b.east}",
                "key": self.api_key,
            },
        )
        candidates = found.get("candidates") or []
        if found.get("status") != "OK" or not candidates:
            logger.warning("Places API found nothing for %r (status %s)", query, found.get("status"))
            return []

        place_id = str(candidates[0].get("place_id", ""))
        details = self._get_json(
            f"{self.places_base_url}/details/json",
            {
                "place_id": place_id,
                "fields": "formatted_address,geometry,name,address_component",
                "key": self.api_key,
            },
        )
        if details.get("status") != "OK" or not details.get("result"):
            logger.warning("Places API details failed for place_id %s (status %s)", place_id, details.get("status"))
            return []

        result = self._to_result(details["result"], quality=PLACES_QUALITY, source="places_api")
        if not self.bounds.contains(result.latitude, result.longitude):
            logger.info("Discarding out-of-region place for %r: %s", query, result.coordinates)
            return []
        logger.info("Google Places search successful for %s: %s (%s)", query, result.coordinates, result.formatted_address)
        return [result]

    def strategies(self, place: str, admin: str) -> list[str]:
        cleaned = clean_location_name(place)
        return [
            f"{cleaned}{', ' + admin if admin else ''}, {self.region}",
            f"{cleaned}, {self.region}",
        ]

    def geocode(self, place: str, admin: str = "") -> list[GeocodeResult]:
        if not self.api_key:
            raise ConfigurationError("Geocoding API key is not configured. Please check your environment variables.")

        queries = self.strategies(place, admin)
        api_calls = 0
        for query in queries:
            api_calls += 1
            try:
                results = self._query(query)
            except ApiError as exc:
                logger.warning("Geocoding strategy failed for %r: %s", query, exc.message)
                continue
            if not results:
                continue
            top = results[0]
            if self.bounds.contains(top.latitude, top.longitude):
                top.quality = quality_score(top, query, region=self.region)
                top.api_calls_used = api_calls
                logger.info("Geocoding successful with %d API calls: %s", api_calls, top.coordinates)
                return results
            logger.info("Discarding out-of-region result for %r: %s", query, top.coordinates)

        logger.info("Falling back to Places API for: %s", queries[0])
        api_calls += 2
        try:
            places = self.places_search(queries[0])
        except ApiError as exc:
            logger.error("Places API also failed for %r: %s", place, exc.message)
            return []
        if places:
            places[0].api_calls_used = api_calls
            logger.info("Places API successful with %d total API calls", api_calls)
        return places


class CachedGeocoder:
    def __init__(self, geocoder: Any, cache_repository: Any) -> None:
        self.geocoder = geocoder
        self.cache_repository = cache_repository

    def geocode(self, place: str, admin: str = "", language: str = "en") -> list[GeocodeResult]:
        if not place:
            raise ValueError("Place name is required for geocoding")

        key = cache_key(place, admin, language)
        try:
            cached = self.cache_repository.get(cache_key=key)
            if cached is not None:
                self.cache_repository.record_hit(cache_key=key)
                logger.info("Cache hit for %r (%s)", place, language)
                return [GeocodeResult.from_cache_results(cached["results"])]
        except (StoreUnavailableError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Cache lookup failed for %r: %s", place, exc)

        logger.info("Cache miss for %r (%s); querying geocoder", place, language)
        results = self.geocoder.geocode(place, admin)
        if results:
            try:
                self.cache_repository.put(
                    cache_key=key,
                    search_terms={"place_name": place, "admin_division": admin, "language": language},
                    results=results[0].to_cache_results(),
                    source=results[0].source,
                    api_calls_used=results[0].api_calls_used,
                )
            except StoreUnavailableError as exc:
                logger.warning("Failed to cache geocoding result for %r: %s", place, exc)
        return results


def _text(value: Any, lang: str) -> str:
    if isinstance(value, Mapping):
        return str(value.get(lang) or "").strip()
    return ""


def select_best(ar: list[GeocodeResult], en: list[GeocodeResult]) -> GeocodeResult | None:
    """Arabic wins when both sides have a result of equal quality."""
    if ar and en:
        return ar[0] if ar[0].quality >= en[0].quality else en[0]
    if ar:
        return ar[0]
    if en:
        return en[0]
    return None


def resolve_location(location: Any, *, geocoder: Any) -> list[float]:
    """Return ``[longitude, latitude]`` for a candidate's location or raise LocationResolutionError."""
    name = location.get("name") if isinstance(location, Mapping) else None
    name_ar, name_en = _text(name, "ar"), _text(name, "en")
    if not name_ar and not name_en:
        raise LocationResolutionError("Location name is required.")

    admin = location.get("administrative_division")
    ar_results: list[GeocodeResult] = []
    en_results: list[GeocodeResult] = []
    if name_ar:
        ar_results = geocoder.geocode(name_ar, _text(admin, "ar"), "ar")
    if name_en:
        en_results = geocoder.geocode(name_en, _text(admin, "en"), "en")

    best = select_best(ar_results, en_results)
    if best is None:
        raise LocationResolutionError(
            f"Could not find valid coordinates for location. Tried both Arabic ({name_ar}) "
            f"and English ({name_en}) names. Please verify the location names."
        )
    if ar_results and en_results:
        logger.info(
            "Selected %s geocode result (quality ar=%.2f en=%.2f)",
            "Arabic" if best is ar_results[0] else "English",
            ar_results[0].quality,
            en_results[0].quality,
        )
    return best.coordinates


def create_geocoder_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    cache_repository: Any,
) -> CachedGeocoder:
    env = os.environ if environ is None else environ
    google = GoogleGeocoder(
        env.get("GOOGLE_API_KEY", ""),
        base_url=env.get("GEOCODER_BASE_URL", "").strip() or GOOGLE_GEOCODE_URL,
        places_base_url=env.get("GEOCODER_PLACES_BASE_URL", "").strip() or GOOGLE_PLACES_URL,
        timeout_s=env_float(env, "GEOCODER_TIMEOUT_S", default=10.0),
        region=env.get("GEOCODER_REGION", "").strip() or "Syria",
    )
    return CachedGeocoder(google, cache_repository)
