"""Review Submission Gate.

Preconditions are checked in a fixed order and the first failure wins:

1. the requester holds REVIEWER or AREA_CHAIR
2. the assignment exists, is the requester's, and is for the given proposal
3. the proposal's submission deadline (when one is set) has passed
4. the assignment's own due date (if any) has not passed
5. no review exists yet for (proposal, reviewer)

The review and its per-criterion scores are committed together. The unique
constraint on (proposal_id, reviewer_id) settles concurrent duplicates.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from openproposal.auth import Identity
from openproposal.deadlines import is_past, review_window_open
from openproposal.errors import (
    DeadlinePassed, DuplicateSubmission, InsufficientPermissions, NotFound, PrematureSubmission,
    ValidationFailed,
)
from openproposal.models import AssignmentStatus, Review, ReviewAssignment, ReviewScore
from openproposal.roles import can_review
from openproposal.schemas import ReviewCreate

log = logging.getLogger(__name__)


def check_submission(
    session: Session, requester: Identity, payload: ReviewCreate, now: datetime,
) -> ReviewAssignment:
    """Run the ordered preconditions; return the matching assignment."""
    if not can_review(requester.roles):
        raise InsufficientPermissions("Access denied")

    assignment = session.execute(
        select(ReviewAssignment).where(
            ReviewAssignment.id == payload.assignment_id,
            ReviewAssignment.reviewer_id == requester.id,
            ReviewAssignment.proposal_id == payload.proposal_id,
        )
    ).scalars().first()
    if assignment is None:
        raise NotFound("Review assignment not found")

    if not review_window_open(assignment.proposal.call, now):
        raise PrematureSubmission()

    if is_past(assignment.due_date, now):
        raise DeadlinePassed()

    existing = session.execute(
        select(Review.id).where(
            Review.proposal_id == payload.proposal_id,
            Review.reviewer_id == requester.id,
        )
    ).first()
    if existing is not None:
        raise DuplicateSubmission()

    return assignment


def _build_scores(assignment: ReviewAssignment, payload: ReviewCreate) -> list[ReviewScore]:
    criteria = {c.id: c for c in assignment.proposal.call.criteria}
    scores = []
    for item in payload.scores:
        criterion = criteria.get(item.criterion_id)
        if criterion is None:
            raise ValidationFailed(f"Unknown review criterion {item.criterion_id} for this call")
        if item.score > criterion.max_score:
            raise ValidationFailed(
                f"Score for '{criterion.name}' exceeds its maximum of {criterion.max_score}"
            )
        scores.append(ReviewScore(criterion_id=criterion.id, score=item.score, comments=item.comments))
    return scores


def submit_review(
    session: Session, requester: Identity, payload: ReviewCreate, now: datetime,
) -> Review:
    """Gate, then persist the review with all of its scores in one commit."""
    assignment = check_submission(session, requester, payload, now)
    scores = _build_scores(assignment, payload)

    review = Review(
        proposal_id=payload.proposal_id,
        reviewer_id=requester.id,
        assignment_id=assignment.id,
        overall_score=payload.overall_score,
        summary=payload.summary,
        strengths=payload.strengths,
        weaknesses=payload.weaknesses,
        comments_to_authors=payload.comments_to_authors,
        comments_to_committee=payload.comments_to_committee,
        budget_comments=payload.budget_comments,
        recommendation=payload.recommendation.value,
        is_confidential=payload.is_confidential,
        is_complete=True,
        submitted_at=now,
        scores=scores,
    )
    session.add(review)
    assignment.status = AssignmentStatus.COMPLETED.value
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        log.info("Concurrent duplicate review for proposal %s by reviewer %s",
                 payload.proposal_id, requester.id)
        raise DuplicateSubmission() from exc
    session.refresh(review)
    log.info("Review %s submitted for proposal %s", review.id, review.proposal_id)
    return review
