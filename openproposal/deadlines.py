"""Deadline gates derived from a call's timestamps.

Every gate is a pure function of ``now`` and the stored deadlines; nothing is
cached or persisted. An unset deadline is never over, and never holds
reviewers back.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime

from openproposal.models import Call
from openproposal.utils import as_utc


@dataclass(frozen=True)
class DeadlineStatus:
    submission_deadline_over: bool
    review_deadline_over: bool
    results_public: bool

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


def is_past(deadline: datetime | None, now: datetime) -> bool:
    deadline = as_utc(deadline)
    if deadline is None:
        return False
    return as_utc(now) > deadline


def deadline_status(call: Call, now: datetime) -> DeadlineStatus:
    return DeadlineStatus(
        submission_deadline_over=is_past(call.full_proposal_deadline, now),
        review_deadline_over=is_past(call.review_deadline, now),
        results_public=bool(call.results_public),
    )


def effective_submission_deadline(call: Call) -> datetime | None:
    """The author-facing deadline: the full-proposal deadline, else the close date."""
    return as_utc(call.full_proposal_deadline or call.close_date)


def submission_window_closed(call: Call, now: datetime) -> bool:
    return is_past(effective_submission_deadline(call), now)


def review_window_open(call: Call, now: datetime) -> bool:
    """Reviewers may act once the submission deadline has passed, or at once if none is set."""
    deadline = effective_submission_deadline(call)
    return deadline is None or is_past(deadline, now)
