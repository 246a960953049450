"""
Incident Admission Service - Configuration Module

This module centralizes all environment-based configuration for the admission
pipeline. Configuration is externalized through environment variables (and an
optional ``.env`` file) so the same build runs in every deployment.

================================================================================
URGENCY TIERS OVERVIEW
================================================================================

Every submission is assigned one of four ordinal urgency tiers:

    CRITICAL
    ────────
    Immediately life-threatening. Unconscious, cardiac arrest, gunshot.
    Max tolerable wait: 0 minutes

    HIGH
    ────
    High-risk presentations. Chest pain, difficulty breathing, fractures.
    Max tolerable wait: 5 minutes

    MODERATE
    ────────
    Stable but needs attention. Lacerations, sprains, fever.
    Max tolerable wait: 30 minutes

    LOW
    ───
    Minor complaints. Bruises, minor cuts, cold symptoms.
    Max tolerable wait: 60 minutes

Queues are ordered tier-first: no score term may move a lower tier ahead of
a higher one.

================================================================================
"""

from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="incident-admission-service",
        description="Unique identifier for this service"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this service"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # REPOSITORY / EXTERNAL CALLS
    # ==========================================================================
    repository_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        le=30.0,
        description="Upper bound for any single repository call"
    )
    notification_timeout_seconds: float = Field(
        default=3.0,
        gt=0.0,
        le=30.0,
        description="Upper bound for a notification delivery attempt"
    )
    external_call_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Worker threads used for bounded repository/notification calls"
    )

    # ==========================================================================
    # FACILITY DIRECTORY
    # ==========================================================================
    facility_refresh_interval_seconds: int = Field(
        default=300,
        ge=5,
        description="How often the facility snapshot is reloaded from the repository"
    )
    default_facility_id: Optional[str] = Field(
        default=None,
        description="Facility used when ranking finds no candidate (None disables the fallback)"
    )

    # ==========================================================================
    # CONFIGURATION DATA
    # ==========================================================================
    triage_rules_path: Optional[str] = Field(
        default=None,
        description="Override path for the triage rule table (JSON)"
    )
    facility_scoring_path: Optional[str] = Field(
        default=None,
        description="Override path for the facility scoring tables (JSON)"
    )
    facility_seed_path: Optional[str] = Field(
        default=None,
        description="Override path for the facility seed used by the in-memory repository"
    )

    # ==========================================================================
    # QUEUE CONFIGURATION
    # ==========================================================================
    average_treatment_minutes: int = Field(
        default=25,
        ge=1,
        le=240,
        description="Treatment time assumed when a facility does not report one"
    )
    default_available_clinicians: int = Field(
        default=2,
        ge=1,
        le=100,
        description="Clinicians assumed on shift when a facility does not report them"
    )
    default_travel_minutes: float = Field(
        default=15.0,
        ge=0.0,
        description="Travel time assumed when no route estimate is available"
    )
    fairness_bonus: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Constant priority nudge that keeps waiting submissions from starving"
    )
    tie_break_span: float = Field(
        default=0.1,
        ge=0.0,
        lt=1.0,
        description="Exclusive upper bound of the deterministic tie-break term"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8010,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers (the queue owner must stay single-process)"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()


# ==========================================================================
# URGENCY TIER CONSTANTS
# ==========================================================================
class UrgencyTier(str, Enum):
    """Ordinal clinical priority class (Critical > High > Moderate > Low)."""

    CRITICAL = "Critical"
    HIGH = "High"
    MODERATE = "Moderate"
    LOW = "Low"

    @property
    def rank(self) -> int:
        """Higher is more urgent."""
        return _TIER_RANKS[self]

    @property
    def max_wait_minutes(self) -> int:
        return MAX_WAIT_MINUTES[self]

    @property
    def base_priority(self) -> float:
        return BASE_PRIORITY[self]

    @classmethod
    def parse(cls, value: str) -> "UrgencyTier":
        """Case-insensitive lookup that also accepts the legacy 'severe' label."""
        key = (value or "").strip().lower()
        if key == "severe":
            return cls.CRITICAL
        for tier in cls:
            if tier.value.lower() == key:
                return tier
        raise ValueError(f"Unknown urgency tier: {value!r}")


_TIER_RANKS: Dict[UrgencyTier, int] = {
    UrgencyTier.CRITICAL: 4,
    UrgencyTier.HIGH: 3,
    UrgencyTier.MODERATE: 2,
    UrgencyTier.LOW: 1,
}

MAX_WAIT_MINUTES: Dict[UrgencyTier, int] = {
    UrgencyTier.CRITICAL: 0,
    UrgencyTier.HIGH: 5,
    UrgencyTier.MODERATE: 30,
    UrgencyTier.LOW: 60,
}

BASE_PRIORITY: Dict[UrgencyTier, float] = {
    UrgencyTier.CRITICAL: 10.0,
    UrgencyTier.HIGH: 7.0,
    UrgencyTier.MODERATE: 4.0,
    UrgencyTier.LOW: 2.0,
}


# ==========================================================================
# ADMISSION PRIORITY BOOSTS
# ==========================================================================
# Keys are normalized: lower case, whitespace collapsed to underscores.
STATUS_BOOSTS: Dict[str, float] = {
    "unconscious": 4.0,
    "bleeding": 3.0,
    "difficulty_breathing": 4.0,
    "chest_pain": 4.0,
    "fracture": 1.0,
}

INCIDENT_BOOSTS: Dict[str, float] = {
    "shooting": 5.0,
    "stabbing": 5.0,
    "burn": 3.0,
    "burns": 3.0,
    "motor-vehicle-accident": 3.0,
    "fall": 1.0,
}

VULNERABLE_AGE_BOOST = 2.0
AMBULANCE_BOOST = 2.0

# Travel urgency: closer patients can be seen sooner.
TRAVEL_URGENCY_CEILING = 5.0
TRAVEL_URGENCY_FLOOR = 0.5
