"""
Triage classifier tests.

Run with: pytest admission/tests/test_classifier.py -v
"""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from admission.classifier import TriageClassifier
from admission.config import UrgencyTier
from admission.errors import ValidationError
from admission.models import TriageMethod
from admission.repository import InMemoryRepository
from admission.rules import DEFAULT_RULES_PATH, RuleBook, TriageRule, load_rule_book


class TestRuleMatch:

    def test_cardiac_arrest_example(self, classifier, make_submission):
        """'unconscious, cardiac arrest' + heart-attack is Critical via the rule table."""
        result = classifier.classify(make_submission(
            description="unconscious, cardiac arrest",
            incident_type="heart-attack",
        ))

        assert result.tier == UrgencyTier.CRITICAL
        assert result.method == TriageMethod.RULE_MATCH
        assert result.confidence == 1.0
        assert result.rule_name == "cardiac_arrest"
        assert result.max_wait_minutes == 0
        assert any("cardiac arrest" in line for line in result.explanation)

    def test_highest_priority_rule_wins(self, classifier, make_submission):
        result = classifier.classify(make_submission(
            incident_type="shooting",
            patient_status="unconscious",
        ))
        assert result.rule_name == "shooting_unconscious"
        assert result.tier == UrgencyTier.CRITICAL

    def test_field_equality_is_case_insensitive(self, classifier, make_submission):
        result = classifier.classify(make_submission(incident_type="Shooting"))
        assert result.rule_name == "shooting"
        assert result.tier == UrgencyTier.HIGH

    def test_conjunction_requires_every_field(self, classifier, make_submission):
        result = classifier.classify(make_submission(
            incident_type="motor-vehicle-accident",
            age_range="51+",
            transport_mode="taxi",
        ))
        assert result.rule_name != "elderly_vehicle_accident_by_ambulance"

        result = classifier.classify(make_submission(
            incident_type="motor-vehicle-accident",
            age_range="51+",
            transport_mode="ambulance",
        ))
        assert result.rule_name == "elderly_vehicle_accident_by_ambulance"
        assert result.tier == UrgencyTier.HIGH

    def test_inactive_rules_are_skipped(self, rule_book, make_submission):
        retired = TriageRule(
            name="retired_burn_rule",
            tier=UrgencyTier.HIGH,
            priority=6,
            equals=(("incident_type", "burn"),),
            active=False,
        )
        book = rule_book.with_rules(list(rule_book.rules) + [retired])
        assert "retired_burn_rule" not in [r.name for r in book.rules]

        result = TriageClassifier(book).classify(make_submission(incident_type="burn"))
        assert result.rule_name != "retired_burn_rule"
        assert result.method == TriageMethod.SCORED_FALLBACK

    def test_bundled_table_has_only_active_rules(self):
        data = json.loads(DEFAULT_RULES_PATH.read_text(encoding="utf-8"))
        assert all(rule.get("active", True) for rule in data["rules"])

    def test_rules_sorted_by_priority_then_name(self, rule_book):
        keys = [(-r.priority, r.name) for r in rule_book.rules]
        assert keys == sorted(keys)


class TestKeywordScan:

    def test_high_keyword(self, classifier, make_submission):
        result = classifier.classify(make_submission(
            description="Patient reports chest pain since this morning",
            incident_type="other",
        ))
        assert result.tier == UrgencyTier.HIGH
        assert result.method == TriageMethod.RULE_MATCH
        assert result.rule_name == "keyword:High"
        assert result.confidence == 1.0

    def test_critical_set_checked_before_moderate(self, classifier, make_submission):
        result = classifier.classify(make_submission(
            description="minor cut on the arm but bleeding heavily",
            incident_type="other",
        ))
        assert result.tier == UrgencyTier.CRITICAL
        assert result.rule_name == "keyword:Critical"

    def test_moderate_keyword(self, classifier, make_submission):
        result = classifier.classify(make_submission(description="mild headache", incident_type="other"))
        assert result.tier == UrgencyTier.MODERATE
        assert result.rule_name == "keyword:Moderate"

    def test_keywords_match_inflected_forms(self, classifier, make_submission):
        result = classifier.classify(make_submission(
            description="several burns on both arms",
            incident_type="other",
        ))
        assert result.tier == UrgencyTier.HIGH
        assert result.method == TriageMethod.RULE_MATCH
        assert result.rule_name == "keyword:High"
        assert result.explanation == ("Description mentions 'burn' (High keyword)",)

    @pytest.mark.parametrize("description", [
        "sprained ankle",
        "bruises on both legs",
        "HEADACHES since Monday",
    ])
    def test_plural_and_suffixed_moderate_keywords(self, classifier, make_submission, description):
        result = classifier.classify(make_submission(description=description, incident_type="other"))
        assert result.tier == UrgencyTier.MODERATE
        assert result.rule_name == "keyword:Moderate"


class TestScoredFallback:

    def test_empty_description_scores_with_neutral_text_urgency(self, classifier, make_submission):
        result = classifier.classify(make_submission(description=""))

        # fall 5, status default 3, age 5, self-carry 3, noon 3, empty text 2
        assert result.method == TriageMethod.SCORED_FALLBACK
        assert result.features["text_urgency"] == 2
        assert result.score == pytest.approx(3.65)
        assert result.tier == UrgencyTier.LOW
        assert result.confidence == 0.75
        # header plus the top three contributors
        assert len(result.explanation) == 4

    def test_high_risk_features_reach_high(self, classifier, make_submission):
        result = classifier.classify(make_submission(
            description="massive blood loss",
            incident_type="stabbing",
            patient_status="critical",
            age_range="51+",
            transport_mode="ambulance",
            submitted_at=datetime(2024, 6, 12, 23, 0),
        ))
        assert result.method == TriageMethod.SCORED_FALLBACK
        assert result.score == pytest.approx(7.5)
        assert result.tier == UrgencyTier.HIGH
        assert result.confidence == 0.85

    def test_unknown_incident_category_is_neutral(self, classifier, make_submission):
        result = classifier.classify(make_submission(incident_type="alien-abduction"))
        assert result.features["incident_severity"] == 4
        assert result.method == TriageMethod.SCORED_FALLBACK

    def test_time_risk_uses_arrival_time(self, classifier, make_submission):
        noon = classifier.classify(make_submission(submission_id="s", submitted_at=datetime(2024, 6, 12, 12)))
        night = classifier.classify(make_submission(submission_id="s", submitted_at=datetime(2024, 6, 12, 2)))
        assert noon.features["time_risk"] == 3
        assert night.features["time_risk"] == 6
        assert night.score > noon.score

    def test_score_is_clamped(self, classifier, make_submission):
        result = classifier.classify(make_submission())
        assert 0.0 <= result.score <= 10.0


class TestDeterminism:

    def test_identical_input_identical_result(self, classifier, make_submission):
        submission = make_submission(description="twisted ankle, sprain", incident_type="fall")
        first = classifier.classify(submission)
        second = classifier.classify(submission)
        assert first == second
        assert first.features == second.features


class TestDegradedFallback:

    @pytest.mark.parametrize("status,incident,expected", [
        ("unconscious", "fall", UrgencyTier.HIGH),
        ("conscious", "stabbing", UrgencyTier.HIGH),
        ("conscious", "fall", UrgencyTier.MODERATE),
    ])
    def test_internal_failure_degrades(self, classifier, make_submission, status, incident, expected):
        with patch.object(classifier, "_classify", side_effect=RuntimeError("rule table corrupt")):
            result = classifier.classify(make_submission(patient_status=status, incident_type=incident))

        assert result.method == TriageMethod.DEGRADED_FALLBACK
        assert result.is_degraded
        assert result.tier == expected
        assert result.confidence == 0.5
        assert any("rule table corrupt" in line for line in result.explanation)

    def test_degraded_never_raises_on_odd_input(self):
        result = TriageClassifier.degraded(object(), "no submission")
        assert result.tier == UrgencyTier.MODERATE


class TestOverride:

    def test_override_creates_new_version(self, classifier, make_submission):
        original = classifier.classify(make_submission(description="mild headache", incident_type="other"))
        overridden = classifier.override(original, "Critical", actor="dr.brown", reason="New ECG findings")

        assert overridden.version == original.version + 1
        assert overridden.tier == UrgencyTier.CRITICAL
        assert overridden.method == TriageMethod.STAFF_OVERRIDE
        assert overridden.actor == "dr.brown"
        assert overridden.reason == "New ECG findings"
        assert original.tier == UrgencyTier.MODERATE

    def test_override_requires_actor_and_reason(self, classifier, make_submission):
        original = classifier.classify(make_submission())
        with pytest.raises(ValidationError):
            classifier.override(original, UrgencyTier.HIGH, actor="", reason="because")
        with pytest.raises(ValidationError):
            classifier.override(original, UrgencyTier.HIGH, actor="nurse.lee", reason=" ")

    def test_override_rejects_unknown_tier(self, classifier, make_submission):
        original = classifier.classify(make_submission())
        with pytest.raises(ValidationError):
            classifier.override(original, "Urgentish", actor="nurse.lee", reason="typo")


class TestRuleTable:

    def test_repository_rules_replace_bundled_rules(self, caller, make_submission):
        repository = InMemoryRepository(
            facilities=[],
            rules=[TriageRule(
                name="any_fall",
                tier=UrgencyTier.HIGH,
                priority=20,
                equals=(("incident_type", "fall"),),
            )],
        )
        classifier = TriageClassifier(load_rule_book(), repository=repository, caller=caller)

        assert classifier.refresh_rules()
        result = classifier.classify(make_submission(incident_type="fall"))
        assert result.rule_name == "any_fall"
        assert classifier.stats()["active_rules"] == 1

    def test_repository_failure_keeps_previous_table(self, caller, rule_book):
        repository = MagicMock()
        repository.load_rules.side_effect = ConnectionError("database down")
        classifier = TriageClassifier(rule_book, repository=repository, caller=caller)

        assert classifier.refresh_rules() is False
        assert classifier.rule_book is rule_book

    def test_weights_must_sum_to_one(self):
        with open(DEFAULT_RULES_PATH, encoding="utf-8") as fh:
            data = json.load(fh)
        data["feature_weights"]["text_urgency"] = 0.5
        with pytest.raises(ValueError):
            RuleBook.from_dict(data)

    def test_unsupported_rule_field_is_rejected(self):
        with pytest.raises(ValueError):
            TriageRule.from_dict({"name": "bad", "tier": "High", "equals": {"blood_type": "O"}})

    def test_stats_report_version(self, classifier, make_submission):
        classifier.classify(make_submission())
        stats = classifier.stats()
        assert stats["rule_table_version"] == "2024.06.1"
        assert stats["classifications_by_method"]["scored-fallback"] == 1
