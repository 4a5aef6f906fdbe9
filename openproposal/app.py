from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Generator

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from openproposal import notifications, services, visibility
from openproposal.auth import Identity, optional_identity, require_identity
from openproposal.config import configure_logging, get_settings
from openproposal.db import init_db, session_generator
from openproposal.errors import InsufficientPermissions, NotFound, OpenProposalError, RateLimited
from openproposal.models import Call, Proposal, ProposalStatus, ReviewAssignment
from openproposal.ratelimit import InMemoryRateLimiter, client_key
from openproposal.review_gate import submit_review
from openproposal.roles import ASSIGNMENT_VIEW_ROLES, Tier, classify
from openproposal.schemas import (
    AssignmentCreate,
    CallCreate,
    CollaboratorCreate,
    CommentCreate,
    DeadlinesUpdate,
    ProposalCreate,
    ProposalUpdate,
    ReviewCreate,
    ReviewReleaseAction,
    UserCreate,
    VisibilityUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db(settings.database_url)
    app.state.settings = settings
    app.state.rate_limiter = InMemoryRateLimiter()
    yield


app = FastAPI(
    title="OpenProposal",
    version="0.1.0",
    description=(
        "Grant-proposal lifecycle API: calls for proposals, submissions, peer review "
        "and result publication. All endpoints return JSON. Authenticated endpoints "
        "expect a bearer token issued by the auth service."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Calls", "description": "Browse calls and their visibility-resolved proposals."},
        {"name": "Public", "description": "Published results. No authentication required."},
        {"name": "Proposals", "description": "Create and inspect your own proposals."},
        {"name": "Reviews", "description": "Review assignments and review submission."},
        {"name": "Admin", "description": "Call administration, reviewer assignment and result publication."},
    ],
)


# ---------------------------------------------------------------------------
# Error handling & middleware
# ---------------------------------------------------------------------------


@app.exception_handler(OpenProposalError)
async def handle_domain_error(request: Request, exc: OpenProposalError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "validation_failed", "detail": "Invalid input data",
         "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "internal_error", "detail": "Internal server error"}, status_code=500)


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    settings = getattr(request.app.state, "settings", None) or get_settings()
    limiter = getattr(request.app.state, "rate_limiter", None)
    if settings.rate_limit_enabled and limiter is not None and request.url.path.startswith("/api/"):
        key = client_key(request)
        if not limiter.try_acquire(key, settings.rate_limit_requests, settings.rate_limit_window_seconds):
            log.warning("Rate limit exceeded for %s", key)
            err = RateLimited()
            return JSONResponse(err.to_dict(), status_code=err.status_code)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_now() -> datetime:
    return datetime.now(UTC)


def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if classify(identity.roles) is not Tier.ADMIN:
        raise InsufficientPermissions("Insufficient permissions")
    return identity


# ---------------------------------------------------------------------------
# Routes: Calls
# ---------------------------------------------------------------------------


@app.get("/api/calls", tags=["Calls"], summary="List calls (admins also see non-public calls)")
async def list_calls(
    status: str | None = Query(None, description="Filter by call status, e.g. OPEN"),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity | None = Depends(optional_identity),
    session: Session = Depends(db_session),
):
    admin = identity is not None and classify(identity.roles) is Tier.ADMIN
    calls, total = services.list_calls(session, admin=admin, status=status, limit=limit, offset=offset)
    return {
        "calls": calls,
        "pagination": {"total": total, "limit": limit, "offset": offset,
                       "has_more": offset + limit < total},
    }


@app.post("/api/calls", status_code=201, tags=["Calls", "Admin"], summary="Create a call for proposals")
async def create_call(
    body: CallCreate,
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
):
    call = services.create_call(session, identity, body)
    return services.call_summary(call, include_policy=True)


@app.get("/api/calls/{call_id}", tags=["Calls"],
         summary="Get a call with proposals and reviews filtered by deadlines and requester tier")
async def get_call(
    call_id: int,
    identity: Identity | None = Depends(optional_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
):
    call = services.get_or_404(session, Call, call_id, "Call")
    return visibility.resolve_call(call, identity, now)


# ---------------------------------------------------------------------------
# Routes: Public results
# ---------------------------------------------------------------------------


@app.get("/api/public/calls", tags=["Public"], summary="List calls whose results are published")
async def list_public_calls(session: Session = Depends(db_session)):
    return services.list_public_results(session)


@app.get("/api/public/calls/{call_id}", tags=["Public"], summary="Published results of one call")
async def get_public_call(call_id: int, session: Session = Depends(db_session)):
    call = services.get_or_404(session, Call, call_id, "Public call")
    return visibility.resolve_public_call(call)


@app.get("/api/public/proposals/{proposal_id}", tags=["Public"],
         summary="Public view of a proposal from a call with published results")
async def get_public_proposal(proposal_id: int, session: Session = Depends(db_session)):
    proposal = services.get_entity(session, Proposal, proposal_id)
    if proposal is None:
        raise NotFound("Proposal not found or not publicly available")
    return visibility.resolve_public_proposal(proposal)


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.get("/api/proposals", tags=["Proposals"], summary="Proposals where you are PI or collaborator")
async def list_my_proposals(
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
):
    return services.list_own_proposals(session, identity.id)


@app.post("/api/proposals", status_code=201, tags=["Proposals"], summary="Create a draft or submitted proposal")
async def create_proposal(
    body: ProposalCreate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
    notifier: notifications.Notifier = Depends(notifications.get_notifier),
):
    proposal = services.create_proposal(session, identity, body, now)
    if proposal.status == ProposalStatus.SUBMITTED.value:
        notifications.schedule(background_tasks, notifier, notifications.proposal_submitted_notice, proposal)
    return services.proposal_detail(proposal)


@app.get("/api/proposals/{proposal_id}", tags=["Proposals"],
         summary="Proposal detail for its authors, assigned reviewers and admins")
async def get_proposal(
    proposal_id: int,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
):
    proposal = services.get_or_404(session, Proposal, proposal_id, "Proposal")
    return visibility.resolve_proposal(proposal, identity, now)


@app.put("/api/proposals/{proposal_id}", tags=["Proposals"],
         summary="Edit a draft, submit it, or (admins) move it through review")
async def update_proposal(
    proposal_id: int,
    body: ProposalUpdate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
    notifier: notifications.Notifier = Depends(notifications.get_notifier),
):
    proposal = services.get_or_404(session, Proposal, proposal_id, "Proposal")
    previous = services.update_proposal(session, identity, proposal, body, now)
    if previous is not None:
        notifications.schedule(background_tasks, notifier, notifications.proposal_status_notice, proposal, previous)
    return services.proposal_detail(proposal)


@app.get("/api/proposals/{proposal_id}/comments", tags=["Proposals"], summary="Comment thread of a proposal")
async def list_comments(
    proposal_id: int,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
):
    proposal = services.get_or_404(session, Proposal, proposal_id, "Proposal")
    return visibility.resolve_comments(proposal, identity, now)


@app.post("/api/proposals/{proposal_id}/comments", status_code=201, tags=["Proposals"],
          summary="Comment on a proposal")
async def add_comment(
    proposal_id: int,
    body: CommentCreate,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
):
    proposal = services.get_or_404(session, Proposal, proposal_id, "Proposal")
    tier = visibility.proposal_access(proposal, identity, now)
    comment = services.add_comment(
        session, identity, proposal, body, internal=body.is_internal and tier is not Tier.AUTHOR,
    )
    return services.comment_summary(comment)


@app.post("/api/proposals/{proposal_id}/collaborators", status_code=201, tags=["Proposals"],
          summary="Add a collaborator to your proposal")
async def add_collaborator(
    proposal_id: int,
    body: CollaboratorCreate,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
):
    proposal = services.get_or_404(session, Proposal, proposal_id, "Proposal")
    services.add_collaborator(session, identity, proposal, body)
    return services.proposal_summary(proposal)


# ---------------------------------------------------------------------------
# Routes: Reviews
# ---------------------------------------------------------------------------


@app.get("/api/reviews", tags=["Reviews"], summary="Your review assignments and their review state")
async def list_reviews(
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
):
    if ASSIGNMENT_VIEW_ROLES.isdisjoint(identity.roles):
        raise InsufficientPermissions("Access denied")
    return services.list_assignments(session, identity.id)


@app.post("/api/reviews", status_code=201, tags=["Reviews"], summary="Submit a review for an assignment")
async def create_review(
    body: ReviewCreate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
    now: datetime = Depends(get_now),
    notifier: notifications.Notifier = Depends(notifications.get_notifier),
):
    review = submit_review(session, identity, body, now)
    notifications.schedule(background_tasks, notifier, notifications.review_submitted_notice, review)
    return services.review_full(review)


@app.get("/api/reviews/{assignment_id}", tags=["Reviews"], summary="One review assignment with its review")
async def get_review(
    assignment_id: int,
    identity: Identity = Depends(require_identity),
    session: Session = Depends(db_session),
):
    assignment = services.get_or_404(session, ReviewAssignment, assignment_id, "Review")
    return visibility.resolve_assignment(assignment, identity)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/users", tags=["Admin"], summary="List users")
async def list_users(
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
):
    return services.list_users(session)


@app.post("/api/admin/users", status_code=201, tags=["Admin"], summary="Register a user with roles")
async def create_user(
    body: UserCreate,
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
):
    return services.user_summary(services.create_user(session, body))


@app.post("/api/admin/proposals/{proposal_id}/assignments", status_code=201, tags=["Admin"],
          summary="Assign a reviewer to a proposal")
async def assign_reviewer(
    proposal_id: int,
    body: AssignmentCreate,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
    notifier: notifications.Notifier = Depends(notifications.get_notifier),
):
    proposal = services.get_or_404(session, Proposal, proposal_id, "Proposal")
    assignment = services.assign_reviewer(session, identity, proposal, body)
    notifications.schedule(
        background_tasks, notifier, notifications.review_assigned_notice,
        assignment.reviewer, proposal, assignment.due_date,
    )
    return services.assignment_summary(assignment)


@app.patch("/api/admin/calls/{call_id}/visibility", tags=["Admin"], summary="Publish or withdraw call results")
async def update_visibility(
    call_id: int,
    body: VisibilityUpdate,
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
):
    call = services.get_or_404(session, Call, call_id, "Call")
    services.set_results_public(session, identity, call, body.results_public)
    return services.call_summary(call, include_policy=True)


@app.put("/api/admin/calls/{call_id}/deadlines", tags=["Admin"], summary="Replace a call's deadlines")
async def update_deadlines(
    call_id: int,
    body: DeadlinesUpdate,
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
):
    call = services.get_or_404(session, Call, call_id, "Call")
    services.update_deadlines(session, identity, call, body)
    return {"message": "Deadlines updated successfully",
            "call": services.call_summary(call, include_policy=True)}


@app.post("/api/admin/calls/{call_id}/reviews", tags=["Admin"], summary="Release reviews to authors or hide them")
async def release_reviews(
    call_id: int,
    body: ReviewReleaseAction,
    identity: Identity = Depends(require_admin),
    session: Session = Depends(db_session),
):
    call = services.get_or_404(session, Call, call_id, "Call")
    services.set_review_release(session, identity, call, body.action)
    verb = "released" if body.action == "release" else "hidden"
    return {"message": f"Reviews {verb} successfully",
            "call": services.call_summary(call, include_policy=True)}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("openproposal.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
