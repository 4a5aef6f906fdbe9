from __future__ import annotations

from datetime import UTC, datetime, timedelta

from openproposal.deadlines import (
    deadline_status, effective_submission_deadline, is_past, review_window_open, submission_window_closed,
)
from openproposal.models import Call

JUNE_1 = datetime(2025, 6, 1, tzinfo=UTC)


class TestIsPast:
    def test_unset_is_never_over(self):
        assert not is_past(None, datetime(2999, 1, 1, tzinfo=UTC))

    def test_strictly_after(self):
        assert not is_past(JUNE_1, JUNE_1)
        assert is_past(JUNE_1, JUNE_1 + timedelta(seconds=1))
        assert not is_past(JUNE_1, JUNE_1 - timedelta(seconds=1))

    def test_naive_values_are_utc(self):
        assert is_past(datetime(2025, 6, 1), datetime(2025, 6, 2, tzinfo=UTC))


class TestDeadlineStatus:
    def test_flags(self):
        call = Call(full_proposal_deadline=JUNE_1, review_deadline=datetime(2025, 7, 15, tzinfo=UTC),
                    results_public=False)
        status = deadline_status(call, datetime(2025, 7, 1, tzinfo=UTC))
        assert status.submission_deadline_over is True
        assert status.review_deadline_over is False
        assert status.to_dict() == {
            "submission_deadline_over": True, "review_deadline_over": False, "results_public": False,
        }

    def test_open_ended_call(self):
        status = deadline_status(Call(results_public=False), datetime(2030, 1, 1, tzinfo=UTC))
        assert not status.submission_deadline_over
        assert not status.review_deadline_over


class TestSubmissionWindow:
    def test_full_proposal_deadline_wins(self):
        call = Call(full_proposal_deadline=JUNE_1, close_date=datetime(2025, 9, 1, tzinfo=UTC))
        assert effective_submission_deadline(call) == JUNE_1
        assert submission_window_closed(call, datetime(2025, 7, 1, tzinfo=UTC))

    def test_falls_back_to_close_date(self):
        call = Call(close_date=JUNE_1)
        assert effective_submission_deadline(call) == JUNE_1
        assert not submission_window_closed(call, datetime(2025, 5, 1, tzinfo=UTC))
        assert submission_window_closed(call, datetime(2025, 6, 2, tzinfo=UTC))

    def test_no_deadlines(self):
        assert effective_submission_deadline(Call()) is None
        assert not submission_window_closed(Call(), datetime(2030, 1, 1, tzinfo=UTC))


class TestReviewWindow:
    def test_opens_after_deadline(self):
        call = Call(full_proposal_deadline=JUNE_1)
        assert not review_window_open(call, datetime(2025, 5, 1, tzinfo=UTC))
        assert not review_window_open(call, JUNE_1)
        assert review_window_open(call, datetime(2025, 6, 2, tzinfo=UTC))

    def test_open_ended_call_is_open_at_once(self):
        assert review_window_open(Call(), datetime(2020, 1, 1, tzinfo=UTC))
