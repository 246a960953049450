"""
Incident Admission Service - Facility Scorer

Ranks candidate facilities for a submission.

    composite = base
              + distance     max(0, 50 - 2 * km)
              + travel_time  max(0, 30 - minutes)
              + specialty    per covered need, tier capability, trauma
              + capacity     utilisation bands
              + age_affinity paediatric / geriatric match
              + regional     named-area preference (data-driven)

Ranking is largest score first with facility id as the tie-break, so equal
inputs and an equal directory snapshot always give the same order.
Submissions without a coordinate skip every location term and come back in
facility-id order flagged ``location_status = unknown``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .config import UrgencyTier
from .errors import NoFacilityAvailable, ValidationError
from .facilities import FacilityDirectory
from .geo import haversine_km, haversine_km_many, travel_time_minutes
from .models import FacilityRecord, GeoPoint, LocationStatus, RankedFacility, Submission
from .rules import ScoringTables, normalize

logger = logging.getLogger(__name__)


class FacilityScorer:

    def __init__(self, directory: FacilityDirectory, tables: ScoringTables):
        self.directory = directory
        self.tables = tables

    def rank(self, submission: Submission, tier: UrgencyTier) -> List[RankedFacility]:
        facilities = self.directory.active()
        if not facilities:
            raise NoFacilityAvailable("No active facility in the directory")

        location = submission.location
        if location is None:
            ranked = [
                self._ranked(submission, tier, facility, rank, None)
                for rank, facility in enumerate(facilities, 1)
            ]
            logger.info(
                f"No location for {submission.submission_id}; {len(ranked)} facilities in default order",
                extra={"submission_id": submission.submission_id},
            )
            return ranked

        distances = haversine_km_many(
            location,
            [f.location.latitude for f in facilities],
            [f.location.longitude for f in facilities],
        )
        scored = [
            self._ranked(submission, tier, facility, 0, float(distance))
            for facility, distance in zip(facilities, distances)
        ]
        scored.sort(key=lambda r: (-r.score, r.facility_id))
        ranked = [replace(r, rank=rank) for rank, r in enumerate(scored, 1)]

        top = ranked[0]
        logger.info(
            f"Ranked {len(ranked)} facilities for {submission.submission_id}; top {top.facility_id} ({top.score})",
            extra={"submission_id": submission.submission_id, "top_facility": top.facility_id},
        )
        return ranked

    def score_facility(
        self,
        submission: Submission,
        tier: UrgencyTier,
        facility_id: str,
    ) -> RankedFacility:
        """Score one staff-chosen facility; raises FacilityNotFound if unknown."""
        facility = self.directory.get(facility_id)
        if not facility.active:
            logger.warning(
                f"Facility {facility_id} is inactive but was chosen explicitly",
                extra={"submission_id": submission.submission_id, "facility_id": facility_id},
            )
        distance = (
            haversine_km(submission.location, facility.location)
            if submission.location is not None
            else None
        )
        return self._ranked(submission, tier, facility, 1, distance)

    def facilities_within(
        self,
        location: GeoPoint,
        radius_km: float = 50.0,
        include_inactive: bool = False,
    ) -> List[Tuple[FacilityRecord, float]]:
        """Facilities no further than ``radius_km`` from ``location``, nearest first."""
        if not isinstance(radius_km, (int, float)) or not math.isfinite(radius_km) or radius_km <= 0:
            raise ValidationError(f"Radius must be a positive number of kilometres, got {radius_km!r}")
        if not (-90.0 <= location.latitude <= 90.0 and -180.0 <= location.longitude <= 180.0):
            raise ValidationError(f"Location out of range: {location.latitude}, {location.longitude}")

        facilities = self.directory.all() if include_inactive else self.directory.active()
        if not facilities:
            return []
        distances = haversine_km_many(
            location,
            [f.location.latitude for f in facilities],
            [f.location.longitude for f in facilities],
        )
        nearby = [
            (facility, round(float(distance), 3))
            for facility, distance in zip(facilities, distances)
            if distance <= radius_km
        ]
        nearby.sort(key=lambda pair: (pair[1], pair[0].facility_id))
        logger.debug(
            f"{len(nearby)} facilities within {radius_km} km of ({location.latitude}, {location.longitude})",
            extra={"radius_km": radius_km, "found": len(nearby)},
        )
        return nearby

    # =========================================================================
    # TERMS
    # =========================================================================

    def _ranked(
        self,
        submission: Submission,
        tier: UrgencyTier,
        facility: FacilityRecord,
        rank: int,
        distance_km: Optional[float],
    ) -> RankedFacility:
        t = self.tables
        breakdown: Dict[str, float] = {"base": t.base_score}
        travel = None

        if distance_km is not None:
            speed = t.speed_for(submission.transport_mode)
            travel = travel_time_minutes(distance_km, speed, submission.submitted_at)
            breakdown["distance"] = max(0.0, t.distance_max_bonus - t.distance_per_km * distance_km)
            breakdown["travel_time"] = max(0.0, t.travel_max_bonus - t.travel_per_minute * travel)

        breakdown["specialty"] = self.specialty_term(submission, tier, facility)
        breakdown["capacity"] = self.capacity_term(facility)
        breakdown["age_affinity"] = self.age_affinity_term(submission, facility)
        if distance_km is not None:
            breakdown["regional"] = self.regional_term(submission, facility)

        breakdown = {k: round(v, 2) for k, v in breakdown.items()}
        score = round(sum(breakdown.values()), 2)

        if distance_km is None:
            status = LocationStatus.UNKNOWN
            reason = f"{facility.name}: no incident location, default order"
        else:
            status = LocationStatus.KNOWN
            reason = f"{facility.name}: {distance_km:.1f} km, ~{travel:.0f} min, score {score:.1f}"

        return RankedFacility(
            facility=facility,
            score=score,
            rank=rank,
            location_status=status,
            distance_km=round(distance_km, 3) if distance_km is not None else None,
            travel_minutes=round(travel, 1) if travel is not None else None,
            breakdown=breakdown,
            reason=reason,
        )

    def specialty_term(self, submission: Submission, tier: UrgencyTier, facility: FacilityRecord) -> float:
        t = self.tables
        incident = normalize(submission.incident_type)
        needs = t.specialty_needs.get(incident, t.default_needs)

        term = t.specialty_per_match * sum(1 for need in needs if facility.has_specialty(need))

        capability = t.tier_capabilities.get(tier)
        if capability is not None and facility.has_specialty(capability[0]):
            term += capability[1]
        if incident in t.violent_incidents and facility.has_specialty(t.trauma_specialty):
            term += t.trauma_bonus
        return term

    def capacity_term(self, facility: FacilityRecord) -> float:
        utilization = facility.utilization
        for below, bonus in self.tables.capacity_bands:
            if utilization < below:
                return bonus
        return 0.0

    def age_affinity_term(self, submission: Submission, facility: FacilityRecord) -> float:
        age_range = normalize(submission.age_range)
        return sum(
            bonus
            for bracket, specialty, bonus in self.tables.age_affinity
            if bracket == age_range and facility.has_specialty(specialty)
        )

    def regional_term(self, submission: Submission, facility: FacilityRecord) -> float:
        """Named-area preference; the first area containing the incident decides."""
        location = submission.location
        if location is None:
            return 0.0
        for area in self.tables.regions:
            if area.contains(location):
                return area.bonus if area.prefers(facility) else 0.0

        min_capacity = self.tables.outside_min_capacity
        if min_capacity is not None and facility.capacity > min_capacity:
            return self.tables.outside_bonus
        return 0.0
