"""Exception taxonomy for the admission pipeline."""

from __future__ import annotations

from typing import Optional


class AdmissionError(Exception):
    """Base class for all admission pipeline errors."""


class ValidationError(AdmissionError):
    """Raised when a submission is malformed and cannot enter the pipeline."""


class ClassificationDegraded(AdmissionError):
    """Primary classification could not complete; a degraded result was used."""


class NoFacilityAvailable(AdmissionError):
    """No active facility could be ranked for a submission."""


class FacilityNotFound(AdmissionError, LookupError):
    """Raised when a facility id is unknown to the directory."""

    def __init__(self, facility_id: str):
        super().__init__(f"Facility not found: {facility_id}")
        self.facility_id = facility_id


class EntryNotFound(AdmissionError, LookupError):
    """Raised when a submission has no active queue entry."""

    def __init__(self, submission_id: str):
        super().__init__(f"No active queue entry for submission: {submission_id}")
        self.submission_id = submission_id


class QueueInvariantViolation(AdmissionError):
    """A recomputed queue failed its ordering or position invariants."""


class AdmissionFailed(AdmissionError):
    """
    The queue mutation failed after one retry.

    The submission is preserved in ``Pending`` state for manual intervention.
    """

    def __init__(self, submission_id: str, cause: Optional[BaseException] = None):
        message = f"Admission failed for submission {submission_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.submission_id = submission_id
        self.cause = cause


class MoveRejected(AdmissionError):
    """A manual queue move would break tier ordering or leave the queue."""


class DuplicateAdmission(AdmissionError):
    """The submission already holds an active entry at another facility."""

    def __init__(self, submission_id: str, facility_id: str):
        super().__init__(
            f"Submission {submission_id} is already queued at facility {facility_id}"
        )
        self.submission_id = submission_id
        self.facility_id = facility_id


class SubmissionRetracted(AdmissionError):
    """The submission was retracted before its admission was committed."""

    def __init__(self, submission_id: str):
        super().__init__(f"Submission was retracted: {submission_id}")
        self.submission_id = submission_id
