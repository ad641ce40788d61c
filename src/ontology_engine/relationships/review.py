"""
Review policy: scoring plus the auto-accept / auto-reject / ask-a-human bands
"""
from __future__ import annotations

from typing import Optional

from ..config import RelationshipConfig
from ..models import (
    CandidateStatus,
    DetectionMethod,
    RejectionReason,
    RelationshipCandidate,
    UserDecision,
    clamp_confidence,
)
from ..utils import OntologyMetrics, ValidationError, get_logger, utc_now

logger = get_logger(__name__)

JOIN_WEIGHT = 0.5
VALUE_WEIGHT = 0.3
NAME_WEIGHT = 0.2


def score_candidate(candidate: RelationshipCandidate) -> float:
    """Weighted evidence; declared foreign keys are certain"""
    if candidate.detection_method == DetectionMethod.FOREIGN_KEY:
        return 1.0
    score = (
        JOIN_WEIGHT * (candidate.join_match_rate or 0.0)
        + VALUE_WEIGHT * (candidate.value_match_rate or 0.0)
        + NAME_WEIGHT * (candidate.name_similarity or 0.0)
    )
    return clamp_confidence(score)


class ReviewPolicy:
    """
    Decides a candidate's status from its rejection reason and confidence

    Usage:
        policy = ReviewPolicy(config)
        policy.apply(candidate, rejection=None)
    """

    def __init__(self, config: Optional[RelationshipConfig] = None):
        self.config = config or RelationshipConfig()

    def apply(self, candidate: RelationshipCandidate,
              rejection: Optional[RejectionReason] = None,
              rescore: bool = True) -> bool:
        """
        Set status, is_required and confidence in place.

        Returns False without touching anything when a user has already decided.
        """
        if candidate.is_user_decided:
            return False

        candidate.rejection_reason = rejection
        if candidate.detection_method == DetectionMethod.FOREIGN_KEY and rejection is None:
            candidate.set_confidence(1.0)
            candidate.status = CandidateStatus.ACCEPTED
            candidate.is_required = False
        elif rejection is not None:
            if rescore:
                candidate.set_confidence(score_candidate(candidate))
            candidate.status = CandidateStatus.REJECTED
            candidate.is_required = False
            OntologyMetrics.record_rejection(rejection.value)
        else:
            if rescore:
                candidate.set_confidence(score_candidate(candidate))
            if candidate.confidence >= self.config.high_confidence_threshold:
                candidate.status = CandidateStatus.ACCEPTED
                candidate.is_required = False
            elif candidate.confidence <= self.config.low_confidence_threshold:
                candidate.status = CandidateStatus.REJECTED
                candidate.is_required = False
                candidate.rejection_reason = RejectionReason.LOW_CONFIDENCE
                OntologyMetrics.record_rejection(RejectionReason.LOW_CONFIDENCE.value)
            else:
                candidate.status = CandidateStatus.PENDING
                candidate.is_required = True

        candidate.updated_at = utc_now()
        OntologyMetrics.record_candidate(candidate.detection_method.value, candidate.status.value)
        return True


def apply_user_decision(candidate: RelationshipCandidate, decision: str) -> RelationshipCandidate:
    """Record a human decision; the candidate is frozen against automatic review afterwards"""
    try:
        user_decision = UserDecision(str(decision).strip().lower())
    except ValueError:
        raise ValidationError(
            f"invalid decision {decision!r}: must be 'accepted' or 'rejected'",
            field_name="decision",
        )

    candidate.user_decision = user_decision
    candidate.status = (
        CandidateStatus.ACCEPTED if user_decision == UserDecision.ACCEPTED else CandidateStatus.REJECTED
    )
    candidate.is_required = False
    candidate.updated_at = utc_now()
    logger.info(
        "Recorded user decision",
        extra={"extra_fields": {"candidate": candidate.pair_key, "decision": user_decision.value}}
    )
    return candidate
