"""Visibility resolution: which proposals and reviews a requester may see.

Rules for a call view, applied in order:

1. Before the full-proposal deadline no proposals are listed, whatever the
   tier. Authors reach their own work through ``GET /api/proposals``.
2. After the deadline but before results are public, ADMIN and REVIEWER tiers
   see every submitted proposal, an AUTHOR only their own, PUBLIC nothing.
   Every ``reviews`` list is empty.
3. Once results are public all submitted proposals are listed and carry only
   complete, non-confidential reviews, for every tier.
4. Only the ADMIN tier receives ``review_visibility`` and assignment metadata.

A non-public call is 404 except to ADMIN and to reviewers assigned within it.

Everything here is read-only and deterministic for a given (call, requester,
now).
"""
from __future__ import annotations

from datetime import datetime, UTC
from typing import Iterable

from openproposal.auth import Identity
from openproposal.deadlines import deadline_status, review_window_open
from openproposal.errors import InsufficientPermissions, NotFound
from openproposal.models import (
    DECIDED_STATUSES, Call, Proposal, ProposalStatus, Review, ReviewAssignment, ReviewVisibility,
)
from openproposal.roles import Role, Tier, classify, is_participant
from openproposal.services import (
    assignment_summary, call_summary, comment_summary, proposal_detail, proposal_summary, review_full,
    review_public,
)
from openproposal.utils import as_utc


def _requester(identity: Identity | None) -> tuple[frozenset, int | None]:
    if identity is None:
        return frozenset(), None
    return identity.roles, identity.id


def filter_public_reviews(reviews: Iterable[Review]) -> list[Review]:
    """Complete, non-confidential reviews. Idempotent."""
    return [r for r in reviews if r.is_complete and not r.is_confidential]


_EPOCH = datetime.min.replace(tzinfo=UTC)


def _by_submission(reviews: list[Review]) -> list[Review]:
    return sorted(reviews, key=lambda r: as_utc(r.submitted_at) or _EPOCH, reverse=True)


def _reviews_in(call: Call, roles: frozenset, user_id: int | None) -> bool:
    """True for a REVIEWER holding an assignment on any proposal of *call*."""
    if Role.REVIEWER not in roles:
        return False
    return any(a.reviewer_id == user_id for p in call.proposals for a in p.assignments)


def resolve_call(call: Call, identity: Identity | None, now: datetime) -> dict:
    roles, user_id = _requester(identity)
    call_tier = classify(roles)
    if not call.is_public and not (call_tier is Tier.ADMIN or _reviews_in(call, roles, user_id)):
        raise NotFound("Call not found")

    status = deadline_status(call, now)
    payload = call_summary(call, include_policy=call_tier is Tier.ADMIN)
    payload["deadline_status"] = status.to_dict()

    proposals: list[dict] = []
    if status.submission_deadline_over:
        for proposal in call.proposals:
            if proposal.status == ProposalStatus.DRAFT.value:
                continue
            tier = classify(roles, user_id, proposal)
            if not status.results_public and tier < Tier.AUTHOR:
                continue
            item = proposal_summary(proposal)
            if status.results_public:
                item["reviews"] = [review_public(r) for r in _by_submission(filter_public_reviews(proposal.reviews))]
            else:
                item["reviews"] = []
            if tier is Tier.ADMIN:
                item["assignments"] = [assignment_summary(a) for a in proposal.assignments]
            proposals.append(item)
    payload["proposals"] = proposals
    return payload


# ---------------------------------------------------------------------------
# Public results pages
# ---------------------------------------------------------------------------


def _results_published(call: Call) -> bool:
    return bool(call.is_public and call.results_public)


def resolve_public_call(call: Call) -> dict:
    if not _results_published(call):
        raise NotFound("Public call not found")
    payload = call_summary(call)
    payload["proposals"] = [
        {**proposal_summary(p),
         "reviews": [review_public(r) for r in _by_submission(filter_public_reviews(p.reviews))]}
        for p in call.proposals if p.status in DECIDED_STATUSES
    ]
    return payload


def resolve_public_proposal(proposal: Proposal) -> dict:
    if not _results_published(proposal.call):
        raise NotFound("Proposal not found or not publicly available")
    payload = proposal_detail(proposal)
    payload["reviews"] = [review_public(r) for r in _by_submission(filter_public_reviews(proposal.reviews))]
    return payload


# ---------------------------------------------------------------------------
# Authenticated proposal and review views
# ---------------------------------------------------------------------------


def reviews_released_to_authors(call: Call) -> bool:
    return bool(call.results_public) or call.review_visibility != ReviewVisibility.PRIVATE.value


def resolve_author_reviews(proposal: Proposal) -> list[dict]:
    if not reviews_released_to_authors(proposal.call):
        return []
    return [review_public(r) for r in _by_submission(filter_public_reviews(proposal.reviews))]


def _assignment_for(proposal: Proposal, user_id: int | None) -> ReviewAssignment | None:
    return next((a for a in proposal.assignments if a.reviewer_id == user_id), None)


def proposal_access(proposal: Proposal, identity: Identity, now: datetime) -> Tier:
    """The tier *identity* acts in on *proposal*, or InsufficientPermissions.

    Authors keep access even when they also hold REVIEWER. Assigned reviewers
    only gain access once the review window is open.
    """
    if classify(identity.roles) is Tier.ADMIN:
        return Tier.ADMIN
    if is_participant(identity.id, proposal):
        return Tier.AUTHOR
    if Role.REVIEWER in identity.roles and _assignment_for(proposal, identity.id) is not None:
        if not review_window_open(proposal.call, now):
            raise InsufficientPermissions("Proposal is not available for review before the submission deadline")
        return Tier.REVIEWER
    raise InsufficientPermissions("Access denied")


def resolve_proposal(proposal: Proposal, identity: Identity, now: datetime) -> dict:
    """Proposal detail for an author, an assigned reviewer, or an admin.

    Reviewers see their own review only.
    """
    tier = proposal_access(proposal, identity, now)
    payload = proposal_detail(proposal)

    if tier is Tier.ADMIN:
        payload["reviews"] = [review_full(r) for r in proposal.reviews]
        payload["assignments"] = [assignment_summary(a) for a in proposal.assignments]
    elif tier is Tier.AUTHOR:
        payload["reviews"] = resolve_author_reviews(proposal)
    else:
        assignment = _assignment_for(proposal, identity.id)
        payload["reviews"] = [review_full(assignment.review)] if assignment.review else []
        payload["assignment"] = assignment_summary(assignment)
    return payload


def resolve_comments(proposal: Proposal, identity: Identity, now: datetime) -> list[dict]:
    """Newest first. Internal comments are withheld from the proposal's authors."""
    tier = proposal_access(proposal, identity, now)
    comments = sorted(proposal.comments, key=lambda c: (as_utc(c.created_at) or _EPOCH, c.id), reverse=True)
    return [comment_summary(c) for c in comments if tier is not Tier.AUTHOR or not c.is_internal]


def resolve_assignment(assignment: ReviewAssignment, identity: Identity) -> dict:
    """One assignment with its review, for its reviewer, an admin, or (once released) the authors."""
    proposal = assignment.proposal
    payload = assignment_summary(assignment)
    payload["proposal"] = {"id": proposal.id, "title": proposal.title, "status": proposal.status,
                           "call_id": proposal.call_id}
    review = assignment.review

    if assignment.reviewer_id == identity.id or classify(identity.roles) is Tier.ADMIN:
        payload["review"] = review_full(review) if review else None
        return payload

    if is_participant(identity.id, proposal):
        visible = (
            review is not None
            and reviews_released_to_authors(proposal.call)
            and filter_public_reviews([review])
        )
        payload["review"] = review_public(review) if visible else None
        return payload

    raise InsufficientPermissions("Access denied")
