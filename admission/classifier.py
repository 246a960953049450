"""
Incident Admission Service - Triage Classifier

Maps a submission to an urgency tier, a confidence and an explanation.

================================================================================
CLASSIFICATION CASCADE
================================================================================

    ┌──────────────────────┐
    │ 1. Rule table        │  conjunction of field equalities + description
    │    (priority order)  │  keywords; first match wins, confidence 1.0
    └──────────┬───────────┘
               │ no match
               ▼
    ┌──────────────────────┐
    │ 2. Keyword scan      │  Critical > High > Moderate keyword sets;
    │                      │  first hit wins, confidence 1.0
    └──────────┬───────────┘
               │ no match
               ▼
    ┌──────────────────────┐
    │ 3. Weighted score    │  six features, weights sum to 1.0, clamped to
    │                      │  [0, 10], mapped through tier thresholds
    └──────────┬───────────┘
               │ any internal failure
               ▼
    ┌──────────────────────┐
    │ 4. Degraded fallback │  status + incident category only, confidence 0.5
    └──────────────────────┘

Results are deterministic: time-of-day risk uses the submission's own arrival
timestamp, never the wall clock.

Staff overrides never edit a result in place. Each override produces a new
TriageResult version and is written to the audit log.

================================================================================
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from typing import Dict, List, Optional, Tuple, Union

from .config import UrgencyTier
from .errors import ClassificationDegraded, ValidationError
from .models import Submission, TriageMethod, TriageResult
from .repository import BoundedCaller, Repository
from .rules import RuleBook, TriageRule, keyword_pattern, load_rule_book, normalize

logger = logging.getLogger(__name__)

DEGRADED_CONFIDENCE = 0.5
DEGRADED_HIGH_STATUSES = frozenset({"unconscious", "unresponsive"})
DEGRADED_HIGH_INCIDENTS = frozenset({"shooting", "stabbing"})

FEATURE_LABELS: Dict[str, str] = {
    "incident_severity": "Incident severity",
    "consciousness": "Consciousness / status",
    "age_risk": "Age bracket risk",
    "transport_urgency": "Transport urgency",
    "time_risk": "Time-of-day risk",
    "text_urgency": "Description urgency",
}


class TriageClassifier:
    """
    Deterministic rule-first urgency classifier.

    Usage:
        classifier = TriageClassifier(load_rule_book())
        result = classifier.classify(submission)
        if result.method == TriageMethod.RULE_MATCH:
            print(result.rule_name)
    """

    def __init__(
        self,
        rule_book: RuleBook,
        repository: Optional[Repository] = None,
        caller: Optional[BoundedCaller] = None,
        rules_path: Optional[str] = None,
    ):
        self.repository = repository
        self.caller = caller
        self.rules_path = rules_path
        self._stats_lock = threading.Lock()
        self._method_counts: Counter = Counter()
        self._install(rule_book)

    def _install(self, book: RuleBook) -> None:
        """Swap in a rule book together with its compiled keyword patterns."""
        compiled: List[Tuple[UrgencyTier, List[Tuple[str, re.Pattern]]]] = []
        for tier, terms in book.keywords:
            compiled.append((tier, [(term, keyword_pattern(term)) for term in terms]))
        self._state = (book, compiled)

    @property
    def rule_book(self) -> RuleBook:
        return self._state[0]

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================

    def classify(self, submission: Submission) -> TriageResult:
        """Classify a submission. Never raises."""
        try:
            result = self._classify(submission)
        except Exception as e:
            logger.warning(
                f"Classification degraded for {getattr(submission, 'submission_id', '?')}: {e}",
                extra={"submission_id": getattr(submission, "submission_id", None), "error": str(e)},
            )
            result = self.degraded(submission, str(e))

        with self._stats_lock:
            self._method_counts[result.method.value] += 1
        return result

    def _classify(self, submission: Submission) -> TriageResult:
        book, keyword_sets = self._state
        description = submission.description or ""

        # 1. Rule table
        for rule in book.rules:
            if rule.matches(submission):
                return TriageResult(
                    submission_id=submission.submission_id,
                    tier=rule.tier,
                    confidence=1.0,
                    method=TriageMethod.RULE_MATCH,
                    explanation=self._explain_rule(rule, description),
                    max_wait_minutes=rule.tier.max_wait_minutes,
                    rule_name=rule.name,
                )

        # 2. Keyword scan, most urgent set first
        if description.strip():
            for tier, patterns in keyword_sets:
                for term, pattern in patterns:
                    if pattern.search(description):
                        return TriageResult(
                            submission_id=submission.submission_id,
                            tier=tier,
                            confidence=1.0,
                            method=TriageMethod.RULE_MATCH,
                            explanation=(f"Description mentions '{term}' ({tier.value} keyword)",),
                            max_wait_minutes=tier.max_wait_minutes,
                            rule_name=f"keyword:{tier.value}",
                        )

        # 3. Weighted score
        return self._score(submission, book)

    def _explain_rule(self, rule: TriageRule, description: str) -> Tuple[str, ...]:
        reasons = [f"Matched rule '{rule.name}' (priority {rule.priority})"]
        reasons.extend(f"{name} is '{value}'" for name, value in rule.equals)
        keyword = rule.matched_keyword(description) if rule.description_contains else None
        if keyword:
            reasons.append(f"Description mentions '{keyword}'")
        return tuple(reasons)

    def extract_features(self, submission: Submission, book: Optional[RuleBook] = None) -> Dict[str, float]:
        book = book or self.rule_book
        return {
            "incident_severity": book.incident_severity.lookup(submission.incident_type),
            "consciousness": book.consciousness.lookup(submission.patient_status),
            "age_risk": book.age_risk.lookup(submission.age_range),
            "transport_urgency": book.transport_urgency.lookup(submission.transport_mode),
            "time_risk": book.time_risk(submission.submitted_at.hour),
            "text_urgency": self._text_urgency(submission.description, book),
        }

    @staticmethod
    def _text_urgency(description: Optional[str], book: RuleBook) -> float:
        if not (description or "").strip():
            return book.text_urgency_empty
        for level in book.text_urgency_levels:
            if any(pattern.search(description) for pattern in level.patterns):
                return level.value
        return book.text_urgency_default

    def _score(self, submission: Submission, book: RuleBook) -> TriageResult:
        features = self.extract_features(submission, book)
        contributions = {
            name: features[name] * weight for name, weight in book.feature_weights.items()
        }
        score = round(min(10.0, max(0.0, sum(contributions.values()))), 2)

        threshold = next((t for t in book.thresholds if score >= t.min_score), None)
        if threshold is None:
            raise ClassificationDegraded(f"No threshold covers score {score}")

        # Top three contributors, name as tie-break
        top = sorted(contributions.items(), key=lambda kv: (-kv[1], kv[0]))[:3]
        explanation = [f"Weighted risk score {score:.2f} -> {threshold.tier.value}"]
        explanation.extend(
            f"{FEATURE_LABELS.get(name, name)}: {features[name]:g} x {book.feature_weights[name]:.2f}"
            for name, _ in top
        )

        return TriageResult(
            submission_id=submission.submission_id,
            tier=threshold.tier,
            confidence=threshold.confidence,
            method=TriageMethod.SCORED_FALLBACK,
            explanation=tuple(explanation),
            max_wait_minutes=threshold.tier.max_wait_minutes,
            score=score,
            features=features,
        )

    @staticmethod
    def degraded(submission: Submission, reason: str = "") -> TriageResult:
        """Conservative result from status and incident category alone."""
        status = normalize(str(getattr(submission, "patient_status", "") or ""))
        incident = normalize(str(getattr(submission, "incident_type", "") or ""))

        if status in DEGRADED_HIGH_STATUSES:
            tier, why = UrgencyTier.HIGH, f"Patient status '{status}'"
        elif incident in DEGRADED_HIGH_INCIDENTS:
            tier, why = UrgencyTier.HIGH, f"Violent incident '{incident}'"
        else:
            tier, why = UrgencyTier.MODERATE, "No high-risk status or incident"

        explanation = [f"Degraded classification: {why}"]
        if reason:
            explanation.append(f"Primary classification unavailable: {reason}")

        return TriageResult(
            submission_id=str(getattr(submission, "submission_id", "") or ""),
            tier=tier,
            confidence=DEGRADED_CONFIDENCE,
            method=TriageMethod.DEGRADED_FALLBACK,
            explanation=tuple(explanation),
            max_wait_minutes=tier.max_wait_minutes,
        )

    # =========================================================================
    # OVERRIDES
    # =========================================================================

    def override(
        self,
        current: TriageResult,
        tier: Union[UrgencyTier, str],
        actor: str,
        reason: str,
    ) -> TriageResult:
        """Supersede ``current`` with a staff-assigned tier as version n+1."""
        if not (actor or "").strip():
            raise ValidationError("Override requires an actor")
        if not (reason or "").strip():
            raise ValidationError("Override requires a reason")
        if not isinstance(tier, UrgencyTier):
            try:
                tier = UrgencyTier.parse(tier)
            except ValueError as e:
                raise ValidationError(str(e)) from e

        result = TriageResult(
            submission_id=current.submission_id,
            tier=tier,
            confidence=1.0,
            method=TriageMethod.STAFF_OVERRIDE,
            explanation=(
                f"Overridden by {actor}: {reason}",
                f"Previous tier {current.tier.value} via {current.method.value} (v{current.version})",
            ),
            max_wait_minutes=tier.max_wait_minutes,
            version=current.version + 1,
            actor=actor,
            reason=reason,
        )

        logger.warning(
            f"TRIAGE OVERRIDE: {current.submission_id} {current.tier.value} -> {tier.value} by {actor}",
            extra={
                "submission_id": current.submission_id,
                "previous_tier": current.tier.value,
                "new_tier": tier.value,
                "version": result.version,
                "actor": actor,
                "reason": reason,
            },
        )
        with self._stats_lock:
            self._method_counts[TriageMethod.STAFF_OVERRIDE.value] += 1
        return result

    # =========================================================================
    # RULE TABLE MAINTENANCE
    # =========================================================================

    def refresh_rules(self) -> bool:
        """
        Reload the rule table and apply repository rule overrides.

        On any failure the previous table stays in force.
        """
        try:
            book = load_rule_book(self.rules_path)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to reload triage rule table: {e}", extra={"path": self.rules_path})
            return False

        if self.repository is not None and self.caller is not None:
            rules = self.caller.call(self.repository.load_rules, fallback=None, operation="load_rules")
            if rules is None:
                logger.warning("Repository rules unavailable; keeping previous rule table")
                return False
            if rules:
                book = book.with_rules(rules)

        self._install(book)
        logger.info(
            f"Triage rules refreshed: version {book.version}, {len(book.rules)} active rules",
            extra={"version": book.version, "rules": len(book.rules)},
        )
        return True

    def stats(self) -> Dict[str, object]:
        book = self.rule_book
        with self._stats_lock:
            counts = dict(self._method_counts)
        return {
            "rule_table_version": book.version,
            "active_rules": len(book.rules),
            "classifications_by_method": counts,
        }
