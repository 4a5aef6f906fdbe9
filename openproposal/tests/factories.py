"""Row factories and fixed dates shared by the test modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from openproposal.auth import Identity, issue_token
from openproposal.config import get_settings
from openproposal.models import (
    Call, CallStatus, Proposal, ProposalStatus, Review, ReviewAssignment, ReviewCriterion, User,
)
from openproposal.roles import Role, parse_roles

DEADLINE = datetime(2025, 6, 1, tzinfo=UTC)
BEFORE_DEADLINE = datetime(2025, 5, 1, tzinfo=UTC)
AFTER_DEADLINE = datetime(2025, 7, 1, tzinfo=UTC)
RESULTS_DAY = datetime(2025, 8, 1, tzinfo=UTC)


def make_user(session: Session, email: str, *roles: Role, name: str = "") -> User:
    user = User(email=email, name=name or email.split("@")[0].title(),
                roles_json=json.dumps([r.value for r in roles]))
    session.add(user)
    session.commit()
    return user


def identity_for(user: User) -> Identity:
    return Identity(id=user.id, email=user.email, name=user.name, roles=parse_roles(user.roles_json))


def auth_header(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(identity_for(user), get_settings())}"}


def make_call(session: Session, **overrides) -> Call:
    fields = dict(
        title="Climate Resilience 2025", description="Adaptation research",
        status=CallStatus.OPEN.value, is_public=True, results_public=False,
        full_proposal_deadline=DEADLINE, review_deadline=datetime(2025, 7, 15, tzinfo=UTC),
    )
    fields.update(overrides)
    call = Call(**fields)
    call.criteria = [ReviewCriterion(name="Excellence", max_score=10),
                     ReviewCriterion(name="Impact", max_score=5)]
    session.add(call)
    session.commit()
    return call


def make_proposal(session: Session, call: Call, pi: User, **overrides) -> Proposal:
    fields = dict(
        call_id=call.id, principal_investigator_id=pi.id, title="Flood sensing networks",
        abstract="Low-cost sensors", keywords_json='["floods"]',
        status=ProposalStatus.SUBMITTED.value, submitted_at=datetime(2025, 5, 20, tzinfo=UTC),
    )
    fields.update(overrides)
    proposal = Proposal(**fields)
    session.add(proposal)
    session.commit()
    return proposal


def make_assignment(session: Session, proposal: Proposal, reviewer: User, **overrides) -> ReviewAssignment:
    assignment = ReviewAssignment(proposal_id=proposal.id, reviewer_id=reviewer.id, **overrides)
    session.add(assignment)
    session.commit()
    return assignment


def make_review(session: Session, assignment: ReviewAssignment, **overrides) -> Review:
    fields = dict(
        proposal_id=assignment.proposal_id, reviewer_id=assignment.reviewer_id,
        assignment_id=assignment.id, overall_score=8, summary="Solid",
        strengths="Clear aims", weaknesses="Budget", comments_to_committee="Fund it",
        recommendation="ACCEPT", is_complete=True, is_confidential=False,
        submitted_at=datetime(2025, 7, 5, tzinfo=UTC),
    )
    fields.update(overrides)
    review = Review(**fields)
    session.add(review)
    session.commit()
    return review


def review_payload(assignment: ReviewAssignment, **overrides) -> dict:
    body = {
        "proposal_id": assignment.proposal_id, "assignment_id": assignment.id,
        "overall_score": 7, "summary": "Promising", "strengths": "Team",
        "weaknesses": "Scope", "recommendation": "MINOR_REVISION",
    }
    body.update(overrides)
    return body

