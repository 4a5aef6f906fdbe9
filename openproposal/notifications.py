"""Fire-and-forget notifications.

Messages are built while the request's session is still open and handed to
``deliver`` as a background task. Delivery failures are logged and never
reach the caller.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Callable

import httpx
from fastapi import BackgroundTasks, Depends

from openproposal.config import Settings, get_settings
from openproposal.models import Proposal, Review, User

log = logging.getLogger(__name__)

_TIMEOUT = 10.0


@dataclass(frozen=True)
class Notice:
    to: str
    subject: str
    body: str
    kind: str = "generic"


class Notifier:
    def send(self, notice: Notice) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notices to the log instead of sending them."""

    def send(self, notice: Notice) -> None:
        log.info("Notification [%s] to %s: %s", notice.kind, notice.to, notice.subject)


class SmtpNotifier(Notifier):
    def __init__(self, settings: Settings):
        self.settings = settings

    def send(self, notice: Notice) -> None:
        s = self.settings
        msg = EmailMessage()
        msg["From"] = f"{s.from_name} <{s.from_email}>"
        msg["To"] = notice.to
        msg["Subject"] = notice.subject
        msg.set_content(notice.body)
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=_TIMEOUT) as smtp:
            if s.smtp_use_tls:
                smtp.starttls()
            if s.smtp_user and s.smtp_password:
                smtp.login(s.smtp_user, s.smtp_password)
            smtp.send_message(msg)


class WebhookNotifier(Notifier):
    """POSTs each notice as JSON to a configured URL."""

    def __init__(self, url: str):
        self.url = url

    def send(self, notice: Notice) -> None:
        resp = httpx.post(
            self.url, timeout=_TIMEOUT,
            json={"kind": notice.kind, "to": notice.to, "subject": notice.subject, "body": notice.body},
        )
        resp.raise_for_status()


def build_notifier(settings: Settings) -> Notifier:
    backend = settings.notification_backend.lower()
    if backend == "smtp":
        return SmtpNotifier(settings)
    if backend == "webhook":
        if not settings.webhook_url:
            raise ValueError("OPENPROPOSAL_WEBHOOK_URL is required for the webhook backend")
        return WebhookNotifier(settings.webhook_url)
    if backend != "log":
        log.warning("Unknown notification backend %r, falling back to log", backend)
    return LogNotifier()


def get_notifier(settings: Settings = Depends(get_settings)) -> Notifier:
    return build_notifier(settings)


def deliver(notifier: Notifier, notice: Notice) -> None:
    """Send *notice*; any failure is logged and swallowed."""
    try:
        notifier.send(notice)
    except Exception:
        log.exception("Failed to send %s notification to %s", notice.kind, notice.to)


def schedule(tasks: BackgroundTasks, notifier: Notifier, build: Callable[..., Notice], *args) -> None:
    """Build a notice now and queue its delivery after the response is sent."""
    try:
        notice = build(*args)
    except Exception:
        log.exception("Failed to prepare notification via %s", build.__name__)
        return
    tasks.add_task(deliver, notifier, notice)


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def review_submitted_notice(review: Review) -> Notice:
    proposal = review.proposal
    pi = proposal.principal_investigator
    score = f"{review.overall_score:g}/10" if review.overall_score is not None else "n/a"
    body = (
        f"Dear {pi.name or pi.email},\n\n"
        f"A review has been submitted for your proposal \"{proposal.title}\".\n"
        f"Overall score: {score}\n\n"
        "Review details are shared once the program officer releases them.\n"
    )
    return Notice(to=pi.email, subject=f"Review submitted: {proposal.title}", body=body,
                  kind="review_submitted")


def review_assigned_notice(reviewer: User, proposal: Proposal, due_date: datetime | None) -> Notice:
    due = f"Please submit your review by {due_date:%d/%m/%Y}.\n" if due_date else ""
    body = (
        f"Dear {reviewer.name or reviewer.email},\n\n"
        f"You have been assigned to review the proposal \"{proposal.title}\".\n{due}"
    )
    return Notice(to=reviewer.email, subject=f"Review assignment: {proposal.title}", body=body,
                  kind="review_assigned")


def proposal_submitted_notice(proposal: Proposal) -> Notice:
    pi = proposal.principal_investigator
    body = (
        f"Dear {pi.name or pi.email},\n\n"
        f"Your proposal \"{proposal.title}\" was submitted to \"{proposal.call.title}\".\n"
    )
    return Notice(to=pi.email, subject=f"Proposal submitted: {proposal.title}", body=body,
                  kind="proposal_submitted")


def proposal_status_notice(proposal: Proposal, previous: str) -> Notice:
    pi = proposal.principal_investigator
    status = proposal.status.replace("_", " ").lower()
    body = (
        f"Dear {pi.name or pi.email},\n\n"
        f"The status of your proposal \"{proposal.title}\" changed from "
        f"{previous.replace('_', ' ').lower()} to {status}.\n"
    )
    return Notice(to=pi.email, subject=f"Proposal {status}: {proposal.title}", body=body,
                  kind="proposal_status")
