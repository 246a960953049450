"""
Incident Admission Service

Intakes emergency-incident submissions, classifies their urgency, selects a
treatment facility and maintains a live priority-ordered queue per facility.

Components:
-----------
- config: Environment-based configuration and urgency tier constants
- rules: Versioned triage rule and facility scoring tables (JSON data)
- classifier: TriageClassifier (rules, keyword scan, weighted score fallback)
- facilities: FacilityDirectory snapshot with scheduled refresh
- scorer: FacilityScorer ranking facilities for a submission
- coordinator: QueueCoordinator owning the per-facility queues
- pipeline: AdmissionPipeline orchestrating classify → rank → admit
- api: FastAPI application

Usage:
------
    # As API server
    python -m uvicorn admission.api:app --host 0.0.0.0 --port 8010

    # As a library
    from admission import AdmissionPipeline, Submission
    pipeline = AdmissionPipeline.from_settings()
    outcome = pipeline.submit(Submission(submission_id="case-1", incident_type="fall"))

Author: Hospital AI Platform Team
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"

from .config import UrgencyTier, settings
from .models import GeoPoint, Submission
from .pipeline import AdmissionPipeline

__all__ = [
    "settings",
    "UrgencyTier",
    "GeoPoint",
    "Submission",
    "AdmissionPipeline",
    "__version__",
]
