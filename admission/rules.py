"""
Incident Admission Service - Versioned Rule and Scoring Tables

The triage rule table, keyword sets, feature tables and facility scoring
constants are configuration data, not code. They ship as JSON under
``admission/data`` and can be replaced per deployment through settings
(``TRIAGE_RULES_PATH``, ``FACILITY_SCORING_PATH``) or, for triage rules, by
``Repository.load_rules()``.

Rule table format::

    {
      "version": "2024.06.1",
      "rules": [
        {"name": "shooting_unconscious", "tier": "Critical", "priority": 10,
         "equals": {"incident_type": "shooting", "patient_status": "unconscious"},
         "description_contains": ["..."]}
      ],
      "keywords": {"Critical": [...], "High": [...], "Moderate": [...]},
      ...
    }

A rule matches when every ``equals`` predicate holds (case-insensitive) and,
if ``description_contains`` is given, at least one keyword occurs in the
description.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .config import UrgencyTier
from .models import FacilityRecord, GeoPoint, Submission

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_RULES_PATH = DATA_DIR / "triage_rules.json"
DEFAULT_SCORING_PATH = DATA_DIR / "facility_scoring.json"
DEFAULT_FACILITIES_PATH = DATA_DIR / "facilities.json"

# Rule predicates may name these submission fields.
RULE_FIELDS = {
    "incident_type": "incident_type",
    "patient_status": "patient_status",
    "age_range": "age_range",
    "transport_mode": "transport_mode",
    "transportation_mode": "transport_mode",
}


def normalize(value: Optional[str]) -> str:
    """Lower-case and collapse whitespace."""
    return " ".join((value or "").lower().split())


def keyword_pattern(term: str) -> re.Pattern:
    """Compile a case-insensitive substring pattern for ``term`` ('burn' matches 'burns')."""
    return re.compile(re.escape(term.strip()), re.IGNORECASE)


def _read_json(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


# =============================================================================
# TRIAGE RULES
# =============================================================================

@dataclass(frozen=True)
class TriageRule:
    name: str
    tier: UrgencyTier
    priority: int = 0
    equals: Tuple[Tuple[str, str], ...] = ()
    description_contains: Tuple[str, ...] = ()
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriageRule":
        equals = []
        for field_name, expected in (data.get("equals") or {}).items():
            if field_name not in RULE_FIELDS:
                raise ValueError(
                    f"Rule {data.get('name')!r} uses unsupported field {field_name!r}"
                )
            equals.append((RULE_FIELDS[field_name], normalize(str(expected))))

        keywords = data.get("description_contains") or ()
        if isinstance(keywords, str):
            keywords = (keywords,)

        if not equals and not keywords:
            raise ValueError(f"Rule {data.get('name')!r} has no predicates")

        return cls(
            name=str(data["name"]),
            tier=UrgencyTier.parse(data["tier"]),
            priority=int(data.get("priority", 0)),
            equals=tuple(sorted(equals)),
            description_contains=tuple(str(k) for k in keywords),
            active=bool(data.get("active", True)),
        )

    def matched_keyword(self, description: str) -> Optional[str]:
        for keyword in self.description_contains:
            if keyword_pattern(keyword).search(description):
                return keyword
        return None

    def matches(self, submission: Submission) -> bool:
        for field_name, expected in self.equals:
            if normalize(getattr(submission, field_name)) != expected:
                return False
        if self.description_contains:
            return self.matched_keyword(submission.description or "") is not None
        return True


@dataclass(frozen=True)
class FeatureTable:
    """Categorical feature lookup with a neutral default for unknown values."""
    default: float
    values: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureTable":
        return cls(
            default=float(data.get("default", 0)),
            values={normalize(k): float(v) for k, v in (data.get("values") or {}).items()},
        )

    def lookup(self, key: Optional[str]) -> float:
        return self.values.get(normalize(key), self.default)


@dataclass(frozen=True)
class HourWindow:
    start_hour: int
    end_hour: int
    value: float

    def contains(self, hour: int) -> bool:
        # Inclusive on both ends; windows may wrap past midnight.
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        return hour >= self.start_hour or hour <= self.end_hour


@dataclass(frozen=True)
class TextUrgencyLevel:
    value: float
    patterns: Tuple[re.Pattern, ...]


@dataclass(frozen=True)
class Threshold:
    min_score: float
    tier: UrgencyTier
    confidence: float


@dataclass(frozen=True)
class RuleBook:
    """Everything the TriageClassifier needs, loaded from one versioned table."""
    version: str
    rules: Tuple[TriageRule, ...]
    keywords: Tuple[Tuple[UrgencyTier, Tuple[str, ...]], ...]
    text_urgency_levels: Tuple[TextUrgencyLevel, ...]
    text_urgency_empty: float
    text_urgency_default: float
    incident_severity: FeatureTable
    consciousness: FeatureTable
    age_risk: FeatureTable
    transport_urgency: FeatureTable
    time_risk_default: float
    time_risk_windows: Tuple[HourWindow, ...]
    feature_weights: Dict[str, float]
    thresholds: Tuple[Threshold, ...]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleBook":
        weights = {k: float(v) for k, v in data["feature_weights"].items()}
        total = sum(weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Feature weights must sum to 1.0, got {total:.4f}")

        keyword_sets = []
        for tier in (UrgencyTier.CRITICAL, UrgencyTier.HIGH, UrgencyTier.MODERATE):
            terms = (data.get("keywords") or {}).get(tier.value, [])
            keyword_sets.append((tier, tuple(terms)))

        text = data.get("text_urgency") or {}
        levels = tuple(
            TextUrgencyLevel(
                value=float(level["value"]),
                patterns=tuple(keyword_pattern(t) for t in level.get("terms", [])),
            )
            for level in text.get("levels", [])
        )

        time_risk = data.get("time_risk") or {}
        thresholds = sorted(
            (
                Threshold(
                    min_score=float(t["min_score"]),
                    tier=UrgencyTier.parse(t["tier"]),
                    confidence=float(t["confidence"]),
                )
                for t in data["thresholds"]
            ),
            key=lambda t: -t.min_score,
        )

        return cls(
            version=str(data.get("version", "unversioned")),
            rules=order_rules(TriageRule.from_dict(r) for r in data.get("rules", [])),
            keywords=tuple(keyword_sets),
            text_urgency_levels=levels,
            text_urgency_empty=float(text.get("empty", 2)),
            text_urgency_default=float(text.get("default", 3)),
            incident_severity=FeatureTable.from_dict(data.get("incident_severity") or {}),
            consciousness=FeatureTable.from_dict(data.get("consciousness") or {}),
            age_risk=FeatureTable.from_dict(data.get("age_risk") or {}),
            transport_urgency=FeatureTable.from_dict(data.get("transport_urgency") or {}),
            time_risk_default=float(time_risk.get("default", 3)),
            time_risk_windows=tuple(
                HourWindow(int(w["start_hour"]), int(w["end_hour"]), float(w["value"]))
                for w in time_risk.get("windows", [])
            ),
            feature_weights=weights,
            thresholds=tuple(thresholds),
        )

    def with_rules(self, rules: Iterable[TriageRule]) -> "RuleBook":
        """Copy of this book with its rule list replaced (e.g. from the repository)."""
        return replace(self, rules=order_rules(rules))

    def time_risk(self, hour: int) -> float:
        for window in self.time_risk_windows:
            if window.contains(hour):
                return window.value
        return self.time_risk_default


def order_rules(rules: Iterable[TriageRule]) -> Tuple[TriageRule, ...]:
    """Active rules, highest priority first, name as the deterministic tie-break."""
    return tuple(sorted((r for r in rules if r.active), key=lambda r: (-r.priority, r.name)))


def load_rule_book(path: Optional[Union[str, Path]] = None) -> RuleBook:
    path = Path(path) if path else DEFAULT_RULES_PATH
    book = RuleBook.from_dict(_read_json(path))
    logger.info(
        "Triage rule table loaded",
        extra={"version": book.version, "rules": len(book.rules), "path": str(path)},
    )
    return book


# =============================================================================
# FACILITY SCORING TABLES
# =============================================================================

@dataclass(frozen=True)
class RegionArea:
    name: str
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float
    preferred_name_keywords: Tuple[str, ...]
    bonus: float

    def contains(self, point: GeoPoint) -> bool:
        return (
            self.min_lat <= point.latitude <= self.max_lat
            and self.min_lng <= point.longitude <= self.max_lng
        )

    def prefers(self, facility: FacilityRecord) -> bool:
        name = facility.name.lower()
        return any(keyword.lower() in name for keyword in self.preferred_name_keywords)


@dataclass(frozen=True)
class ScoringTables:
    version: str
    base_score: float
    distance_max_bonus: float
    distance_per_km: float
    travel_max_bonus: float
    travel_per_minute: float
    specialty_per_match: float
    default_needs: Tuple[str, ...]
    specialty_needs: Dict[str, Tuple[str, ...]]
    tier_capabilities: Dict[UrgencyTier, Tuple[str, float]]
    violent_incidents: Tuple[str, ...]
    trauma_specialty: str
    trauma_bonus: float
    capacity_bands: Tuple[Tuple[float, float], ...]
    age_affinity: Tuple[Tuple[str, str, float], ...]
    transport_speeds_kmh: Dict[str, float]
    default_speed_kmh: float
    regions: Tuple[RegionArea, ...]
    outside_min_capacity: Optional[int]
    outside_bonus: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoringTables":
        specialty = data.get("specialty") or {}
        speeds = dict(data.get("transport_speeds_kmh") or {})
        default_speed = float(speeds.pop("default", 30))
        regions = data.get("regions") or {}
        outside = regions.get("outside_areas") or {}

        return cls(
            version=str(data.get("version", "unversioned")),
            base_score=float(data.get("base_score", 100)),
            distance_max_bonus=float(data["distance"]["max_bonus"]),
            distance_per_km=float(data["distance"]["per_km"]),
            travel_max_bonus=float(data["travel_time"]["max_bonus"]),
            travel_per_minute=float(data["travel_time"]["per_minute"]),
            specialty_per_match=float(specialty.get("per_match", 20)),
            default_needs=tuple(specialty.get("default_needs", ["Emergency"])),
            specialty_needs={
                normalize(k): tuple(v) for k, v in (specialty.get("needs") or {}).items()
            },
            tier_capabilities={
                UrgencyTier.parse(tier): (str(cap["specialty"]), float(cap["bonus"]))
                for tier, cap in (specialty.get("tier_capabilities") or {}).items()
            },
            violent_incidents=tuple(normalize(i) for i in specialty.get("violent_incidents", [])),
            trauma_specialty=str(specialty.get("trauma_specialty", "Trauma")),
            trauma_bonus=float(specialty.get("trauma_bonus", 0)),
            capacity_bands=tuple(
                sorted(
                    ((float(b["below"]), float(b["bonus"])) for b in data.get("capacity_bands", [])),
                    key=lambda band: band[0],
                )
            ),
            age_affinity=tuple(
                (normalize(a["age_range"]), str(a["specialty"]), float(a["bonus"]))
                for a in data.get("age_affinity", [])
            ),
            transport_speeds_kmh={normalize(k): float(v) for k, v in speeds.items()},
            default_speed_kmh=default_speed,
            regions=tuple(
                RegionArea(
                    name=str(area["name"]),
                    min_lat=float(area["bounds"]["min_lat"]),
                    max_lat=float(area["bounds"]["max_lat"]),
                    min_lng=float(area["bounds"]["min_lng"]),
                    max_lng=float(area["bounds"]["max_lng"]),
                    preferred_name_keywords=tuple(area.get("preferred_name_keywords", [])),
                    bonus=float(area.get("bonus", 0)),
                )
                for area in regions.get("areas", [])
            ),
            outside_min_capacity=(
                int(outside["min_capacity"]) if "min_capacity" in outside else None
            ),
            outside_bonus=float(outside.get("bonus", 0)),
        )

    def speed_for(self, transport_mode: Optional[str]) -> float:
        return self.transport_speeds_kmh.get(normalize(transport_mode), self.default_speed_kmh)


def load_scoring_tables(path: Optional[Union[str, Path]] = None) -> ScoringTables:
    path = Path(path) if path else DEFAULT_SCORING_PATH
    tables = ScoringTables.from_dict(_read_json(path))
    logger.info(
        "Facility scoring tables loaded",
        extra={"version": tables.version, "regions": len(tables.regions), "path": str(path)},
    )
    return tables


def load_facility_seed(path: Optional[Union[str, Path]] = None) -> List[FacilityRecord]:
    """Bundled facility list used to seed the in-memory repository."""
    path = Path(path) if path else DEFAULT_FACILITIES_PATH
    data = _read_json(path)
    return [FacilityRecord.from_dict(item) for item in data.get("facilities", [])]
