"""
Classification Rules

Each rule inspects a raw incident event and either returns a match or None.
Rules are ordered by the classifier; the first match wins. A malformed field
only disables the check that reads it: the rule keeps evaluating its other
fields, reports the bad ones on its match, or raises ClassificationError
naming them when nothing matched so the classifier can record them.
"""

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from incident_pipeline.core.config.constants import (
    REASON_HIGH_PRIORITY_ZONE,
    REASON_SAFETY_FLAG,
    REASON_SAFETY_KEYWORD,
    REASON_VIOLENCE_KEYWORD,
    TAG_BACKGROUND_ENRICHMENT,
    Tier,
)
from incident_pipeline.core.config.settings import HighPriorityZone
from incident_pipeline.core.exceptions import ClassificationError

EARTH_RADIUS_M = 6_371_000.0

TEXT_FIELDS = ("title", "description", "type", "category")
_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no", ""}


@dataclass(frozen=True)
class RuleMatch:
    tier: Tier
    priority: int
    reason: str
    tags: tuple[str, ...] = ()
    malformed: tuple[str, ...] = ()


class ClassificationRule(Protocol):
    name: str

    def evaluate(self, event: Mapping[str, Any]) -> RuleMatch | None:
        ...


# ============================================================================
# Field extraction
# ============================================================================


def extract_flag(event: Mapping[str, Any], *keys: str) -> tuple[str, bool] | None:
    """First present boolean flag among ``keys`` as ``(key, value)``."""
    for key in keys:
        if key not in event or event[key] is None:
            continue
        value = event[key]
        if isinstance(value, bool):
            return key, value
        if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
            return key, value.strip().lower() in _TRUE_STRINGS
        raise ClassificationError(
            f"Field '{key}' is not a boolean",
            details={"field": key, "type": type(value).__name__},
        )
    return None


def extract_text(event: Mapping[str, Any], malformed: list[str] | None = None) -> str:
    """
    Lower-cased concatenation of the free-text fields.

    A non-text value raises ClassificationError, unless ``malformed`` is
    given: then the field is skipped and its name appended there.
    """
    parts = []
    for key in TEXT_FIELDS:
        value = event.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            if malformed is not None:
                malformed.append(key)
                continue
            raise ClassificationError(
                f"Field '{key}' is not text",
                details={"field": key, "type": type(value).__name__},
            )
        parts.append(value)
    return " ".join(parts).lower()


def extract_location(event: Mapping[str, Any]) -> tuple[float, float] | None:
    """
    ``(latitude, longitude)`` from the event, or None when absent.

    Accepts ``{"coordinates": [lng, lat]}`` (GeoJSON order) or
    ``{"lat"/"latitude": .., "lng"/"lon"/"longitude": ..}``.
    """
    location = event.get("location")
    if location is None:
        return None
    if not isinstance(location, Mapping):
        raise ClassificationError("Field 'location' is not an object", details={"field": "location"})

    try:
        if "coordinates" in location:
            coords = location["coordinates"]
            if isinstance(coords, (str, bytes)) or len(coords) != 2:
                raise ValueError("coordinates must be a [longitude, latitude] pair")
            lng, lat = float(coords[0]), float(coords[1])
        else:
            lat = float(location.get("lat", location.get("latitude")))
            lng = float(location.get("lng", location.get("lon", location.get("longitude"))))
    except (TypeError, ValueError) as e:
        raise ClassificationError.from_exception(e, "Field 'location' is malformed", field="location")

    if not (-90 <= lat <= 90 and -180 <= lng <= 180) or math.isnan(lat) or math.isnan(lng):
        raise ClassificationError(
            "Field 'location' is out of range",
            details={"field": "location", "lat": lat, "lng": lng},
        )
    return lat, lng


def malformed_fields_error(fields: list[str]) -> ClassificationError:
    """Error naming every field a rule had to skip."""
    return ClassificationError(
        f"Malformed fields: {', '.join(fields)}",
        details={"field": fields[0], "fields": list(fields)},
    )


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


# ============================================================================
# Rules
# ============================================================================


class SafetyFlagRule:
    """Explicit safety flag, critical urgency or emergency priority on the event."""

    name = "safety-flag"

    FLAG_KEYS = ("genderSensitive", "gender_sensitive")

    def evaluate(self, event: Mapping[str, Any]) -> RuleMatch | None:
        malformed: list[str] = []
        signal = None
        for key in self.FLAG_KEYS:
            try:
                flag = extract_flag(event, key)
            except ClassificationError:
                malformed.append(key)
                continue
            if flag is not None and flag[1]:
                signal = key
                break

        if signal is None:
            urgency = event.get("urgency")
            priority = event.get("priority")
            if isinstance(urgency, str) and urgency.strip().lower() == "critical":
                signal = "urgency"
            elif isinstance(priority, str) and priority.strip().lower() == "emergency":
                signal = "priority"

        if signal is not None:
            return RuleMatch(Tier.EMERGENCY, 1, f"{REASON_SAFETY_FLAG}:{signal}", malformed=tuple(malformed))
        if malformed:
            raise malformed_fields_error(malformed)
        return None


class KeywordRule:
    """Substring match of configured keywords against the event's text fields."""

    def __init__(
        self,
        name: str,
        keywords: Iterable[str],
        tier: Tier,
        priority: int,
        reason: str,
        tags: tuple[str, ...] = (),
    ):
        self.name = name
        self._keywords = tuple(k.lower() for k in keywords if k)
        self._tier = tier
        self._priority = priority
        self._reason = reason
        self._tags = tags

    def evaluate(self, event: Mapping[str, Any]) -> RuleMatch | None:
        malformed: list[str] = []
        text = extract_text(event, malformed)
        for keyword in self._keywords:
            if text and keyword in text:
                return RuleMatch(
                    self._tier,
                    self._priority,
                    f"{self._reason}:{keyword}",
                    self._tags,
                    malformed=tuple(malformed),
                )
        if malformed:
            raise malformed_fields_error(malformed)
        return None


class GeoZoneRule:
    """Event location inside any configured high-priority circle."""

    name = "high-priority-zone"

    def __init__(self, zones: Iterable[HighPriorityZone]):
        self._zones = tuple(zones)

    def evaluate(self, event: Mapping[str, Any]) -> RuleMatch | None:
        if not self._zones:
            return None
        location = extract_location(event)
        if location is None:
            return None
        lat, lng = location
        for zone in self._zones:
            if haversine_m(lat, lng, zone.latitude, zone.longitude) <= zone.radius_m:
                return RuleMatch(Tier.EMERGENCY, 1, f"{REASON_HIGH_PRIORITY_ZONE}:{zone.name}")
        return None


def default_rules(
    violence_keywords: Iterable[str],
    safety_keywords: Iterable[str],
    zones: Iterable[HighPriorityZone],
) -> list[ClassificationRule]:
    """The standard cascade: flag, violence keywords, zones, safety keywords."""
    return [
        SafetyFlagRule(),
        KeywordRule("violence-keyword", violence_keywords, Tier.EMERGENCY, 1, REASON_VIOLENCE_KEYWORD),
        GeoZoneRule(zones),
        KeywordRule(
            "safety-keyword",
            safety_keywords,
            Tier.STANDARD,
            2,
            REASON_SAFETY_KEYWORD,
            tags=(TAG_BACKGROUND_ENRICHMENT,),
        ),
    ]
