"""Shared business logic behind the OpenProposal API."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from openproposal.auth import Identity
from openproposal.deadlines import submission_window_closed
from openproposal.errors import Conflict, DeadlinePassed, InsufficientPermissions, NotFound, ValidationFailed
from openproposal.models import (
    AuditLog, Call, CallStatus, Collaborator, Proposal, ProposalComment, ProposalStatus, Review,
    ReviewAssignment, ReviewCriterion, ReviewVisibility, User,
)
from openproposal.roles import Tier, can_author, can_review, classify, parse_roles
from openproposal.schemas import (
    AssignmentCreate, CallCreate, CollaboratorCreate, CommentCreate, DeadlinesUpdate, ProposalCreate,
    ProposalUpdate, UserCreate, submission_problem,
)
from openproposal.utils import as_utc, isoformat, json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

DEADLINE_FIELDS = (
    "open_date", "close_date", "intent_deadline", "full_proposal_deadline", "review_deadline",
)

PROPOSAL_DETAIL_FIELDS = (
    "description", "methodology", "expected_outcomes", "ethics_statement", "risk_assessment",
)

PUBLIC_REVIEW_FIELDS = (
    "id", "overall_score", "summary", "strengths", "weaknesses",
    "comments_to_authors", "recommendation",
)

INTERNAL_REVIEW_FIELDS = (
    "proposal_id", "reviewer_id", "assignment_id", "comments_to_committee",
    "budget_comments", "is_complete", "is_confidential",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def user_summary(user: User) -> dict:
    return {
        "id": user.id, "email": user.email, "name": user.name,
        "roles": sorted(r.value for r in parse_roles(user.roles_json)),
    }


def criterion_summary(c: ReviewCriterion) -> dict:
    return {"id": c.id, "name": c.name, "description": c.description,
            "max_score": c.max_score, "weight": c.weight}


def call_summary(call: Call, *, include_policy: bool = False) -> dict:
    """Call fields shared by every view. ``review_visibility`` only with *include_policy*."""
    data = {
        "id": call.id, "title": call.title, "description": call.description,
        "status": call.status, "is_public": call.is_public,
        "results_public": call.results_public,
        **{f: isoformat(getattr(call, f)) for f in DEADLINE_FIELDS},
        "total_budget": call.total_budget, "currency": call.currency,
        "proposal_count": len(call.proposals),
        "criteria": [criterion_summary(c) for c in call.criteria],
    }
    if include_policy:
        data["review_visibility"] = call.review_visibility
    return data


def proposal_summary(proposal: Proposal) -> dict:
    pi = proposal.principal_investigator
    return {
        "id": proposal.id, "call_id": proposal.call_id,
        "title": proposal.title, "abstract": proposal.abstract,
        "keywords": json_parse(proposal.keywords_json, []),
        "status": proposal.status,
        "submitted_at": isoformat(proposal.submitted_at),
        "duration_months": proposal.duration_months,
        "total_budget": proposal.total_budget, "currency": proposal.currency,
        "principal_investigator": {"id": pi.id, "name": pi.name} if pi else None,
        "collaborators": [
            {"user_id": c.user_id, "name": c.user.name if c.user else "", "role": c.role}
            for c in proposal.collaborators
        ],
    }


def proposal_detail(proposal: Proposal) -> dict:
    data = proposal_summary(proposal)
    data.update({f: getattr(proposal, f) for f in PROPOSAL_DETAIL_FIELDS})
    data["call"] = {"id": proposal.call.id, "title": proposal.call.title, "status": proposal.call.status}
    data["created_at"] = isoformat(proposal.created_at)
    data["updated_at"] = isoformat(proposal.updated_at)
    return data


def score_summary(review: Review) -> list[dict]:
    return [
        {"criterion_id": s.criterion_id,
         "criterion_name": s.criterion.name if s.criterion else "",
         "max_score": s.criterion.max_score if s.criterion else None,
         "score": s.score, "comments": s.comments}
        for s in review.scores
    ]


def review_public(review: Review) -> dict:
    """Review fields safe for authors and the public. Never committee comments."""
    data = {f: getattr(review, f) for f in PUBLIC_REVIEW_FIELDS}
    data["submitted_at"] = isoformat(review.submitted_at)
    data["scores"] = score_summary(review)
    return data


def review_full(review: Review) -> dict:
    data = review_public(review)
    data.update({f: getattr(review, f) for f in INTERNAL_REVIEW_FIELDS})
    return data


def assignment_summary(assignment: ReviewAssignment) -> dict:
    """Assignment metadata without review content."""
    reviewer = assignment.reviewer
    return {
        "id": assignment.id, "proposal_id": assignment.proposal_id,
        "reviewer_id": assignment.reviewer_id,
        "reviewer_name": reviewer.name if reviewer else "",
        "assigned_at": isoformat(assignment.assigned_at),
        "due_date": isoformat(assignment.due_date),
        "status": assignment.status,
        "has_review": assignment.review is not None,
    }


def comment_summary(comment: ProposalComment) -> dict:
    author = comment.author
    return {
        "id": comment.id, "proposal_id": comment.proposal_id,
        "author": {"id": author.id, "name": author.name} if author else None,
        "content": comment.content, "section": comment.section,
        "is_internal": comment.is_internal, "created_at": isoformat(comment.created_at),
    }


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    """Fetch a single entity by primary key, or None."""
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = get_entity(session, model, entity_id)
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def record_audit(
    session: Session, action: str, entity_type: str, entity_id: int,
    user_id: int | None, details: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        action=action, entity_type=entity_type, entity_id=entity_id,
        user_id=user_id, details_json=json.dumps(details or {}, default=str),
    )
    session.add(entry)
    return entry


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def list_users(session: Session) -> list[dict]:
    users = session.execute(select(User).order_by(User.id)).scalars().all()
    return [user_summary(u) for u in users]


def create_user(session: Session, body: UserCreate) -> User:
    user = User(
        email=body.email, name=body.name,
        roles_json=json.dumps(sorted({r.value for r in body.roles})),
    )
    session.add(user)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict(f"User '{body.email}' already exists") from exc
    return user


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


def list_calls(
    session: Session, *, admin: bool, status: str | None = None, limit: int = 10, offset: int = 0,
) -> tuple[list[dict], int]:
    """Non-admins only see public calls. Ordered by close date, undated calls last."""
    query = select(Call)
    count_query = select(func.count(Call.id))
    if not admin:
        query = query.where(Call.is_public.is_(True))
        count_query = count_query.where(Call.is_public.is_(True))
    if status:
        query = query.where(Call.status == status.upper())
        count_query = count_query.where(Call.status == status.upper())
    query = query.order_by(Call.close_date.is_(None), Call.close_date, Call.id).offset(offset).limit(limit)
    calls = session.execute(query).scalars().all()
    total = session.execute(count_query).scalar() or 0
    return [call_summary(c, include_policy=admin) for c in calls], total


def list_public_results(session: Session) -> list[dict]:
    calls = session.execute(
        select(Call).where(Call.is_public.is_(True), Call.results_public.is_(True))
        .order_by(Call.id.desc())
    ).scalars().all()
    return [call_summary(c) for c in calls]


def create_call(session: Session, actor: Identity, body: CallCreate) -> Call:
    if body.results_public and not body.is_public:
        raise ValidationFailed("Results cannot be public for a non-public call")
    call = Call(
        title=body.title, description=body.description, status=body.status.value,
        is_public=body.is_public, results_public=body.results_public,
        review_visibility=body.review_visibility.value,
        total_budget=body.total_budget, currency=body.currency,
        created_by_id=actor.id,
        **{f: as_utc(getattr(body, f)) for f in DEADLINE_FIELDS},
    )
    call.criteria = [
        ReviewCriterion(name=c.name, description=c.description, max_score=c.max_score, weight=c.weight)
        for c in body.criteria
    ]
    session.add(call)
    session.flush()
    record_audit(session, "CREATE_CALL", "CallForProposal", call.id, actor.id, {"title": call.title})
    session.commit()
    log.info("Call %s created by user %s", call.id, actor.id)
    return call


def update_deadlines(session: Session, actor: Identity, call: Call, body: DeadlinesUpdate) -> Call:
    before = {f: isoformat(getattr(call, f)) for f in DEADLINE_FIELDS}
    for f in DEADLINE_FIELDS:
        setattr(call, f, as_utc(getattr(body, f)))
    record_audit(session, "UPDATE_CALL_DEADLINES", "CallForProposal", call.id, actor.id, {"before": before})
    session.commit()
    return call


def set_results_public(session: Session, actor: Identity, call: Call, results_public: bool) -> Call:
    if results_public and not call.is_public:
        raise ValidationFailed("Results cannot be published for a non-public call")
    call.results_public = results_public
    action = "PUBLISH_RESULTS" if results_public else "UNPUBLISH_RESULTS"
    record_audit(session, action, "CallForProposal", call.id, actor.id)
    session.commit()
    log.info("Call %s results_public=%s by user %s", call.id, results_public, actor.id)
    return call


def set_review_release(session: Session, actor: Identity, call: Call, action: str) -> Call:
    """``release`` shares completed reviews with authors; ``hide`` withdraws them."""
    call.review_visibility = (
        ReviewVisibility.PRIVATE_TO_AUTHORS.value if action == "release"
        else ReviewVisibility.PRIVATE.value
    )
    record_audit(session, f"{action.upper()}_REVIEWS", "CallForProposal", call.id, actor.id)
    session.commit()
    return call


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


def list_own_proposals(session: Session, user_id: int) -> list[dict]:
    """Proposals where the user is PI or collaborator, regardless of deadlines."""
    proposals = session.execute(
        select(Proposal)
        .where(or_(
            Proposal.principal_investigator_id == user_id,
            Proposal.collaborators.any(Collaborator.user_id == user_id),
        ))
        .order_by(Proposal.updated_at.desc(), Proposal.id.desc())
    ).scalars().all()
    items = []
    for p in proposals:
        item = proposal_summary(p)
        item["call"] = {"id": p.call.id, "title": p.call.title,
                        "close_date": isoformat(p.call.close_date)}
        item["review_count"] = len(p.reviews)
        items.append(item)
    return items


def create_proposal(session: Session, identity: Identity, body: ProposalCreate, now: datetime) -> Proposal:
    if not can_author(identity.roles):
        raise InsufficientPermissions("Only Principal Investigators can create proposals")

    if body.call_id is not None:
        call = get_or_404(session, Call, body.call_id, "Call")
    else:
        call = session.execute(
            select(Call).where(Call.status == CallStatus.OPEN.value).order_by(Call.id)
        ).scalars().first()
        if call is None:
            raise ValidationFailed("No open calls for proposals available")
    if call.status != CallStatus.OPEN.value:
        raise ValidationFailed("Call is not open for proposals")

    submitting = body.status == ProposalStatus.SUBMITTED.value
    if submitting and submission_window_closed(call, now):
        raise DeadlinePassed("Proposal submission deadline has passed")

    proposal = Proposal(
        call_id=call.id, principal_investigator_id=identity.id,
        title=body.title, abstract=body.abstract,
        keywords_json=json.dumps([k.strip() for k in body.keywords if k.strip()]),
        description=body.description, methodology=body.methodology,
        expected_outcomes=body.expected_outcomes, ethics_statement=body.ethics_statement,
        risk_assessment=body.risk_assessment, duration_months=body.duration_months,
        total_budget=body.total_budget, currency=body.currency,
        status=body.status, submitted_at=now if submitting else None,
    )
    session.add(proposal)
    session.commit()
    session.refresh(proposal)
    return proposal


_OWNER_STATUSES = (ProposalStatus.DRAFT.value, ProposalStatus.SUBMITTED.value)


def update_proposal(
    session: Session, identity: Identity, proposal: Proposal, body: ProposalUpdate, now: datetime,
) -> str | None:
    """Apply a partial update; return the previous status when the status changed.

    The PI edits content while the proposal is a draft and may submit it.
    Admins may move it to any status.
    """
    is_owner = proposal.principal_investigator_id == identity.id
    admin = classify(identity.roles) is Tier.ADMIN
    if not (is_owner or admin):
        raise InsufficientPermissions("Access denied")

    changes = body.content_changes()
    if changes:
        if not is_owner:
            raise InsufficientPermissions("Only the principal investigator can edit proposal content")
        if proposal.status != ProposalStatus.DRAFT.value:
            raise ValidationFailed("Only draft proposals can be edited")
        keywords = changes.pop("keywords", None)
        if keywords is not None:
            proposal.keywords_json = json.dumps([k.strip() for k in keywords if k.strip()])
        for name, value in changes.items():
            setattr(proposal, name, value)

    previous, target = proposal.status, body.status
    changed = target is not None and target != previous
    if changed:
        if not admin:
            if target not in _OWNER_STATUSES:
                raise InsufficientPermissions("Only administrators can change proposal to this status")
            if target == ProposalStatus.DRAFT.value:
                raise ValidationFailed("A submitted proposal cannot return to draft")
        if target == ProposalStatus.SUBMITTED.value and previous == ProposalStatus.DRAFT.value:
            if submission_window_closed(proposal.call, now):
                raise DeadlinePassed("Proposal submission deadline has passed")
            problem = submission_problem(proposal)
            if problem:
                raise ValidationFailed(problem)
            proposal.submitted_at = now
        proposal.status = target
        record_audit(session, "UPDATE_PROPOSAL_STATUS", "Proposal", proposal.id, identity.id,
                     {"from": previous, "to": target})

    session.commit()
    session.refresh(proposal)
    if changed:
        log.info("Proposal %s moved %s -> %s by user %s", proposal.id, previous, target, identity.id)
        return previous
    return None


def add_collaborator(
    session: Session, identity: Identity, proposal: Proposal, body: CollaboratorCreate,
) -> Collaborator:
    if proposal.principal_investigator_id != identity.id:
        raise InsufficientPermissions("Only the principal investigator can add collaborators")
    if body.user_id == proposal.principal_investigator_id:
        raise ValidationFailed("The principal investigator cannot be a collaborator")
    get_or_404(session, User, body.user_id, "User")
    collab = Collaborator(proposal_id=proposal.id, user_id=body.user_id, role=body.role)
    session.add(collab)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict("User is already a collaborator") from exc
    session.refresh(proposal)
    return collab


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


def add_comment(
    session: Session, identity: Identity, proposal: Proposal, body: CommentCreate, *, internal: bool,
) -> ProposalComment:
    comment = ProposalComment(
        proposal_id=proposal.id, author_id=identity.id, content=body.content,
        section=body.section, is_internal=internal,
    )
    session.add(comment)
    session.commit()
    session.refresh(comment)
    return comment


# ---------------------------------------------------------------------------
# Review assignments
# ---------------------------------------------------------------------------


def assign_reviewer(
    session: Session, actor: Identity, proposal: Proposal, body: AssignmentCreate,
) -> ReviewAssignment:
    reviewer = get_or_404(session, User, body.reviewer_id, "Reviewer")
    if not can_review(parse_roles(reviewer.roles_json)):
        raise ValidationFailed("User does not hold a reviewer role")
    if reviewer.id == proposal.principal_investigator_id or any(
        c.user_id == reviewer.id for c in proposal.collaborators
    ):
        raise ValidationFailed("Reviewer is an author of this proposal")
    assignment = ReviewAssignment(
        proposal_id=proposal.id, reviewer_id=reviewer.id, due_date=as_utc(body.due_date),
    )
    session.add(assignment)
    try:
        session.flush()
        record_audit(session, "ASSIGN_REVIEWER", "Proposal", proposal.id, actor.id,
                     {"reviewer_id": reviewer.id})
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict("Reviewer is already assigned to this proposal") from exc
    session.refresh(assignment)
    return assignment


def list_assignments(session: Session, reviewer_id: int) -> list[dict]:
    """The reviewer's assignments, newest first, keyed by assignment id."""
    assignments = session.execute(
        select(ReviewAssignment)
        .where(ReviewAssignment.reviewer_id == reviewer_id)
        .order_by(ReviewAssignment.assigned_at.desc(), ReviewAssignment.id.desc())
    ).scalars().all()
    items = []
    for a in assignments:
        p = a.proposal
        items.append({
            **assignment_summary(a),
            "proposal": {
                "id": p.id, "title": p.title, "abstract": p.abstract, "status": p.status,
                "submitted_at": isoformat(p.submitted_at),
                "call": {"id": p.call.id, "title": p.call.title,
                         "close_date": isoformat(p.call.close_date)},
            },
            "review": review_full(a.review) if a.review else None,
        })
    return items
