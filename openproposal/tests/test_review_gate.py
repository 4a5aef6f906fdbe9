"""Ordered preconditions and atomic persistence of review submissions."""
from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from openproposal.errors import (
    DeadlinePassed, DuplicateSubmission, InsufficientPermissions, NotFound, PrematureSubmission,
    ValidationFailed,
)
from openproposal.models import AssignmentStatus, Review, ReviewAssignment, ReviewCriterion, ReviewScore
from openproposal.review_gate import check_submission, submit_review
from openproposal.schemas import ReviewCreate
from openproposal.tests.factories import (
    AFTER_DEADLINE, BEFORE_DEADLINE, identity_for, make_assignment, make_call, make_proposal,
    make_review, review_payload,
)


@pytest.fixture()
def assigned(session, people):
    call = make_call(session)
    proposal = make_proposal(session, call, people["pi"])
    assignment = make_assignment(session, proposal, people["reviewer"])
    return call, proposal, assignment


def _payload(assignment: ReviewAssignment, **overrides) -> ReviewCreate:
    return ReviewCreate(**review_payload(assignment, **overrides))


def _review_count(session) -> int:
    return session.execute(select(func.count(Review.id))).scalar()


class TestPreconditionOrder:
    def test_role_checked_first(self, session, people, assigned):
        _, _, assignment = assigned
        # Wrong role, wrong assignment and premature all at once: role wins.
        payload = _payload(assignment, assignment_id=999)
        with pytest.raises(InsufficientPermissions):
            check_submission(session, identity_for(people["pi"]), payload, BEFORE_DEADLINE)

    def test_missing_assignment(self, session, people, assigned):
        _, _, assignment = assigned
        with pytest.raises(NotFound):
            check_submission(session, identity_for(people["reviewer"]),
                             _payload(assignment, assignment_id=999), BEFORE_DEADLINE)

    def test_assignment_of_someone_else(self, session, people, assigned):
        _, _, assignment = assigned
        with pytest.raises(NotFound):
            check_submission(session, identity_for(people["reviewer2"]), _payload(assignment), AFTER_DEADLINE)

    def test_assignment_for_other_proposal(self, session, people, assigned):
        call, _, assignment = assigned
        other = make_proposal(session, call, people["outsider"])
        with pytest.raises(NotFound):
            check_submission(session, identity_for(people["reviewer"]),
                             _payload(assignment, proposal_id=other.id), AFTER_DEADLINE)

    def test_premature_before_due_date_check(self, session, people, assigned):
        _, _, assignment = assigned
        assignment.due_date = datetime(2025, 4, 1, tzinfo=UTC)
        session.commit()
        with pytest.raises(PrematureSubmission):
            check_submission(session, identity_for(people["reviewer"]), _payload(assignment), BEFORE_DEADLINE)

    def test_due_date_passed(self, session, people, assigned):
        _, _, assignment = assigned
        assignment.due_date = datetime(2025, 6, 15, tzinfo=UTC)
        session.commit()
        with pytest.raises(DeadlinePassed):
            check_submission(session, identity_for(people["reviewer"]), _payload(assignment), AFTER_DEADLINE)

    def test_due_date_inclusive(self, session, people, assigned):
        _, _, assignment = assigned
        assignment.due_date = AFTER_DEADLINE
        session.commit()
        found = check_submission(session, identity_for(people["reviewer"]), _payload(assignment), AFTER_DEADLINE)
        assert found.id == assignment.id

    def test_duplicate(self, session, people, assigned):
        _, _, assignment = assigned
        make_review(session, assignment)
        with pytest.raises(DuplicateSubmission):
            check_submission(session, identity_for(people["reviewer"]), _payload(assignment), AFTER_DEADLINE)


class TestPremature:
    @pytest.mark.parametrize("key", ["reviewer", "chair"])
    def test_any_reviewing_role(self, session, people, key):
        call = make_call(session)
        proposal = make_proposal(session, call, people["pi"])
        assignment = make_assignment(session, proposal, people[key])
        with pytest.raises(PrematureSubmission):
            submit_review(session, identity_for(people[key]), _payload(assignment), BEFORE_DEADLINE)
        assert _review_count(session) == 0

    def test_close_date_used_without_full_deadline(self, session, people):
        call = make_call(session, full_proposal_deadline=None, close_date=datetime(2025, 6, 1, tzinfo=UTC))
        proposal = make_proposal(session, call, people["pi"])
        assignment = make_assignment(session, proposal, people["reviewer"])
        with pytest.raises(PrematureSubmission):
            check_submission(session, identity_for(people["reviewer"]), _payload(assignment), BEFORE_DEADLINE)

    def test_open_ended_call_accepts_reviews(self, session, people):
        call = make_call(session, full_proposal_deadline=None, review_deadline=None)
        proposal = make_proposal(session, call, people["pi"])
        assignment = make_assignment(session, proposal, people["reviewer"])
        review = submit_review(session, identity_for(people["reviewer"]), _payload(assignment), BEFORE_DEADLINE)
        assert review.assignment_id == assignment.id


class TestSubmitReview:
    def test_persists_review_and_scores(self, session, people, assigned):
        call, proposal, assignment = assigned
        excellence, impact = call.criteria
        payload = _payload(assignment, scores=[
            {"criterion_id": excellence.id, "score": 9, "comments": "Strong"},
            {"criterion_id": impact.id, "score": 4},
        ])
        review = submit_review(session, identity_for(people["reviewer"]), payload, AFTER_DEADLINE)
        assert review.id is not None
        assert review.is_complete is True
        assert review.assignment_id == assignment.id
        assert {s.criterion_id: s.score for s in review.scores} == {excellence.id: 9, impact.id: 4}
        session.refresh(assignment)
        assert assignment.status == AssignmentStatus.COMPLETED.value

    def test_second_submission_rejected(self, session, people, assigned):
        _, _, assignment = assigned
        reviewer = identity_for(people["reviewer"])
        submit_review(session, reviewer, _payload(assignment), AFTER_DEADLINE)
        with pytest.raises(DuplicateSubmission):
            submit_review(session, reviewer, _payload(assignment), AFTER_DEADLINE)
        assert _review_count(session) == 1

    def test_concurrent_duplicate_resolved_by_constraint(self, SessionLocal, session, people, assigned):
        _, _, assignment = assigned
        reviewer = identity_for(people["reviewer"])
        racer = SessionLocal()
        try:
            # Both requests pass the gate before either one writes.
            stale = racer.get(ReviewAssignment, assignment.id)
            submit_review(session, reviewer, _payload(assignment), AFTER_DEADLINE)
            with patch("openproposal.review_gate.check_submission", return_value=stale):
                with pytest.raises(DuplicateSubmission):
                    submit_review(racer, reviewer, _payload(assignment), AFTER_DEADLINE)
        finally:
            racer.close()
        assert _review_count(session) == 1

    def test_unknown_criterion_writes_nothing(self, session, people, assigned):
        _, _, assignment = assigned
        payload = _payload(assignment, scores=[{"criterion_id": 999, "score": 5}])
        with pytest.raises(ValidationFailed):
            submit_review(session, identity_for(people["reviewer"]), payload, AFTER_DEADLINE)
        assert _review_count(session) == 0
        assert session.execute(select(func.count(ReviewScore.id))).scalar() == 0

    def test_score_above_criterion_maximum(self, session, people, assigned):
        call, _, assignment = assigned
        impact = call.criteria[1]
        payload = _payload(assignment, scores=[{"criterion_id": impact.id, "score": 7}])
        with pytest.raises(ValidationFailed, match="maximum"):
            submit_review(session, identity_for(people["reviewer"]), payload, AFTER_DEADLINE)
        assert _review_count(session) == 0

    def test_duplicate_criterion_rejected_by_schema(self, assigned):
        _, _, assignment = assigned
        with pytest.raises(ValueError):
            _payload(assignment, scores=[{"criterion_id": 1, "score": 5}, {"criterion_id": 1, "score": 6}])

    def test_score_within_wide_criterion(self, session, people, assigned):
        call, _, assignment = assigned
        wide = ReviewCriterion(name="Feasibility", max_score=20)
        call.criteria.append(wide)
        session.commit()
        payload = _payload(assignment, scores=[{"criterion_id": wide.id, "score": 15}])
        review = submit_review(session, identity_for(people["reviewer"]), payload, AFTER_DEADLINE)
        assert [s.score for s in review.scores] == [15]

    def test_score_above_wide_criterion(self, session, people, assigned):
        call, _, assignment = assigned
        wide = ReviewCriterion(name="Feasibility", max_score=20)
        call.criteria.append(wide)
        session.commit()
        payload = _payload(assignment, scores=[{"criterion_id": wide.id, "score": 25}])
        with pytest.raises(ValidationFailed, match="maximum"):
            submit_review(session, identity_for(people["reviewer"]), payload, AFTER_DEADLINE)
