"""Pydantic request schemas for the OpenProposal API."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from openproposal.models import CallStatus, ProposalStatus, Recommendation, ReviewVisibility
from openproposal.roles import Role
from openproposal.utils import as_utc, json_parse


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


class CriterionCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    max_score: int = Field(10, ge=1, le=100)
    weight: float = Field(1.0, gt=0)


class _DeadlineFields(BaseModel):
    open_date: datetime | None = None
    close_date: datetime | None = None
    intent_deadline: datetime | None = None
    full_proposal_deadline: datetime | None = None
    review_deadline: datetime | None = None

    @model_validator(mode="after")
    def deadlines_in_order(self):
        open_date, close_date = as_utc(self.open_date), as_utc(self.close_date)
        full, review = as_utc(self.full_proposal_deadline), as_utc(self.review_deadline)
        if open_date and close_date and close_date < open_date:
            raise ValueError("close_date must not be before open_date")
        if full and review and review < full:
            raise ValueError("review_deadline must not be before full_proposal_deadline")
        return self


class CallCreate(_DeadlineFields):
    title: str = Field(min_length=1, max_length=300)
    description: str = Field(min_length=1)
    status: CallStatus = CallStatus.DRAFT
    is_public: bool = True
    results_public: bool = False
    review_visibility: ReviewVisibility = ReviewVisibility.PRIVATE
    total_budget: float | None = Field(None, ge=0)
    currency: str = "INR"
    criteria: list[CriterionCreate] = []


class DeadlinesUpdate(_DeadlineFields):
    """Full replacement: omitted deadlines are cleared."""


class VisibilityUpdate(BaseModel):
    results_public: bool


class ReviewReleaseAction(BaseModel):
    action: Literal["release", "hide"]


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

_REQUIRED_ON_SUBMIT = (
    "title", "abstract", "description", "methodology", "expected_outcomes",
    "ethics_statement", "risk_assessment", "currency",
)

ProposalStatusName = Literal[
    "DRAFT", "SUBMITTED", "UNDER_REVIEW", "ACCEPTED", "REJECTED", "WITHDRAWN",
]


def submission_problem(source) -> str | None:
    """Why *source* (a request body or a Proposal row) cannot be submitted, or None."""
    missing = [f for f in _REQUIRED_ON_SUBMIT if not (getattr(source, f) or "").strip()]
    if missing:
        return f"Required for submission: {', '.join(missing)}"
    keywords = getattr(source, "keywords", None)
    if keywords is None:
        keywords = json_parse(getattr(source, "keywords_json", None), [])
    if not any(str(k).strip() for k in keywords):
        return "At least one keyword is required"
    if (source.duration_months or 0) < 1:
        return "Duration must be at least 1 month"
    return None


class ProposalCreate(BaseModel):
    call_id: int | None = None
    title: str = ""
    abstract: str = ""
    keywords: list[str] = []
    duration_months: int = Field(12, ge=0, le=60)
    total_budget: float = Field(0.0, ge=0, le=10_000_000)
    currency: str = "INR"
    description: str = ""
    methodology: str = ""
    expected_outcomes: str = ""
    ethics_statement: str = ""
    risk_assessment: str = ""
    status: Literal["DRAFT", "SUBMITTED"] = "DRAFT"

    @model_validator(mode="after")
    def complete_when_submitted(self):
        """Drafts may be partial; a submitted proposal must be complete."""
        if self.status == ProposalStatus.SUBMITTED.value:
            problem = submission_problem(self)
            if problem:
                raise ValueError(problem)
        return self


class ProposalUpdate(BaseModel):
    """Partial update. Content fields are for the PI; most status moves are for admins."""

    title: str | None = None
    abstract: str | None = None
    keywords: list[str] | None = None
    duration_months: int | None = Field(None, ge=0, le=60)
    total_budget: float | None = Field(None, ge=0, le=10_000_000)
    currency: str | None = None
    description: str | None = None
    methodology: str | None = None
    expected_outcomes: str | None = None
    ethics_statement: str | None = None
    risk_assessment: str | None = None
    status: ProposalStatusName | None = None

    def content_changes(self) -> dict:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items()
                if k != "status" and v is not None}


class CollaboratorCreate(BaseModel):
    user_id: int
    role: str = "CO_INVESTIGATOR"


class CommentCreate(BaseModel):
    content: str = Field(min_length=1, max_length=10_000)
    section: str | None = Field(None, max_length=100)
    # Ignored for authors, whose comments are always visible to them.
    is_internal: bool = True


class AssignmentCreate(BaseModel):
    reviewer_id: int
    due_date: datetime | None = None


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


class ScoreCreate(BaseModel):
    criterion_id: int
    # Bounded per criterion by its max_score when the review is stored.
    score: float = Field(ge=0, le=100)
    comments: str = ""


class ReviewCreate(BaseModel):
    proposal_id: int
    assignment_id: int
    overall_score: float = Field(ge=1, le=10)
    summary: str = Field(min_length=1)
    strengths: str = Field(min_length=1)
    weaknesses: str = Field(min_length=1)
    comments_to_authors: str = ""
    comments_to_committee: str = ""
    budget_comments: str = ""
    recommendation: Recommendation
    is_confidential: bool = False
    scores: list[ScoreCreate] = []

    @field_validator("scores")
    @classmethod
    def one_score_per_criterion(cls, v: list[ScoreCreate]) -> list[ScoreCreate]:
        ids = [s.criterion_id for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError("each criterion may be scored only once")
        return v


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    email: EmailStr
    name: str = ""
    roles: list[Role] = []

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()
