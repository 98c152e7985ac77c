"""Compliance policy constants.

Every threshold and penalty the trail builder and evaluator apply lives here.
None of them has a documented regulatory citation; they are operational
policy, so they are configurable through Settings rather than hard-coded.
"""

from dataclasses import dataclass

from lims_custody_engine.settings import Settings

# Quality category lower bounds on the overall score, best first
QUALITY_CATEGORY_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (90.0, "excellent"),
    (75.0, "good"),
    (60.0, "average"),
)


@dataclass(frozen=True)
class CompliancePolicy:
    """Thresholds and penalties used for trail derivation and evaluation.

    Attributes:
        gap_threshold_minutes: Handoff interval above which a gap is recorded.
        high_severity_gap_minutes: Gap duration above which severity is high.
        max_high_violations: High violations tolerated before non-compliance.
        broken_integrity_penalty: Handling deduction for broken integrity.
        questionable_integrity_penalty: Handling deduction for questionable integrity.
        failure_event_penalty: Handling deduction per failed event.
        long_gap_timeliness_penalty: Timeliness deduction for a long gap.
        malformed_record_penalty: Documentation deduction per skipped record.
    """

    gap_threshold_minutes: float = 30.0
    high_severity_gap_minutes: float = 120.0
    max_high_violations: int = 2
    broken_integrity_penalty: int = 30
    questionable_integrity_penalty: int = 15
    failure_event_penalty: int = 10
    long_gap_timeliness_penalty: int = 25
    malformed_record_penalty: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompliancePolicy":
        """Build the policy from service settings."""
        return cls(
            gap_threshold_minutes=settings.gap_threshold_minutes,
            high_severity_gap_minutes=settings.high_severity_gap_minutes,
            max_high_violations=settings.max_high_violations,
            broken_integrity_penalty=settings.broken_integrity_penalty,
            questionable_integrity_penalty=settings.questionable_integrity_penalty,
            failure_event_penalty=settings.failure_event_penalty,
            long_gap_timeliness_penalty=settings.long_gap_timeliness_penalty,
            malformed_record_penalty=settings.malformed_record_penalty,
        )


def quality_category(overall_score: float) -> str:
    """Map an overall quality score to its benchmark category."""
    for lower_bound, category in QUALITY_CATEGORY_THRESHOLDS:
        if overall_score >= lower_bound:
            return category
    return "poor"
