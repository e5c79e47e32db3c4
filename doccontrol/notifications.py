"""Notification dispatchers and queue integration.

Workflow transitions tell people what happened (a document waits for their
signature, was sent back for revision, was approved or finalized).  Messages
are delivered asynchronously through an RQ queue so that a committed
transition never waits on SMTP or a webhook.

:func:`notify_user` enqueues a job; :func:`_send_notification` runs on the
worker, stores the in-app :class:`Notification` row and fans the message out
to the enabled channels.  The worker retries a job up to three times when every
channel fails.

Three notifier implementations are provided:

``EmailNotifier``
    Sends e‑mails using SMTP.

``SlackNotifier``
    Sends a message to a Slack channel using a webhook.

``WebhookNotifier``
    POSTs a JSON payload to a per-user or default URL.

Channels are enabled with environment variables so deployments can pick the
relevant ones without code changes.
"""

from __future__ import annotations

import logging
import os
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Dict, Iterable, Tuple

import requests
from redis import Redis
from rq import Queue, Retry
from sqlalchemy.orm import sessionmaker

from models import Notification, User, UserSetting, engine

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")


# ---------------------------------------------------------------------------
# Queue configuration
# ---------------------------------------------------------------------------

# Configure the notifications queue backed by Redis.  Tests monkeypatch this
# queue so nothing is sent to a real server.
redis_conn = Redis(
    host=os.getenv("REDIS_HOST", "localhost"),
    port=int(os.getenv("REDIS_PORT", "6379")),
    db=int(os.getenv("REDIS_DB", "0")),
    password=os.getenv("REDIS_PASSWORD"),
)
queue: Queue = Queue("notifications", connection=redis_conn)


# ---------------------------------------------------------------------------
# Notifier interfaces
# ---------------------------------------------------------------------------

class Notifier(ABC):
    """Base class for notification backends.

    Sub-classes only need to implement :meth:`send`.  A convenience
    :meth:`prepare_message` helper is provided which performs basic ``str``
    templating and is shared by all notifiers.
    """

    def prepare_message(
        self, subject_template: str, body_template: str, **context: str
    ) -> Tuple[str, str]:
        """Return rendered ``subject`` and ``body`` strings."""

        subject = subject_template.format(**context)
        body = body_template.format(**context)
        return subject, body

    @abstractmethod
    def send(self, user: User, subject: str, body: str) -> None:
        """Send a notification to ``user``."""


class EmailNotifier(Notifier):
    """Send notifications via SMTP."""

    def __init__(self) -> None:
        self.server = os.getenv("SMTP_SERVER", "localhost")
        self.port = int(os.getenv("SMTP_PORT", "25"))
        self.sender = os.getenv("SMTP_SENDER", "noreply@example.com")

    def send(self, user: User, subject: str, body: str) -> None:  # pragma: no cover - network
        if not getattr(user, "email", None):
            return
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = user.email
        msg.set_content(body)
        with smtplib.SMTP(self.server, self.port, timeout=10) as smtp:
            smtp.send_message(msg)


class SlackNotifier(Notifier):
    """Send notifications to Slack via an incoming webhook."""

    def __init__(self, webhook_url: str) -> None:
        self.webhook_url = webhook_url

    def send(self, user: User, subject: str, body: str) -> None:  # pragma: no cover - network
        message = f"{subject}\n{body}"
        resp = requests.post(self.webhook_url, json={"text": message}, timeout=10)
        resp.raise_for_status()


class WebhookNotifier(Notifier):
    """Send notifications to an arbitrary webhook URL."""

    def __init__(self, url: str, user_id: int) -> None:
        self.url = url
        self.user_id = user_id

    def send(self, user: User, subject: str, body: str) -> None:  # pragma: no cover - network
        payload = {"user_id": self.user_id, "subject": subject, "body": body}
        resp = requests.post(self.url, json=payload, timeout=10)
        resp.raise_for_status()


def _enabled(name: str, default: str | None = None) -> bool:
    return os.getenv(name, default) in ("1", "true", "True")


def _load_notifiers() -> Iterable[Tuple[str, Notifier]]:
    """Instantiate enabled notifiers based on environment variables."""

    enabled: Dict[str, Notifier] = {}
    if _enabled("ENABLE_EMAIL_NOTIFIER", "1"):
        enabled["email"] = EmailNotifier()

    if _enabled("ENABLE_SLACK_NOTIFIER"):
        url = os.getenv("SLACK_WEBHOOK_URL")
        if url:
            enabled["slack"] = SlackNotifier(url)

    return enabled.items()


# ---------------------------------------------------------------------------
# Notification job
# ---------------------------------------------------------------------------

def _send_notification(
    user_id: int,
    subject: str,
    body: str,
    kind: str = "INFO",
    link: str | None = None,
    priority: str = "MEDIUM",
) -> None:
    """Job function executed by the worker to deliver a notification."""

    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        user = session.get(User, user_id)
        settings = session.query(UserSetting).filter_by(user_id=user_id).first()

        note = Notification(
            user_id=user_id,
            kind=kind,
            title=subject,
            message=body,
            link=link,
            priority=priority,
        )
        session.add(note)
        session.commit()

        email_enabled = settings.email_enabled if settings else True
        webhook_enabled = settings.webhook_enabled if settings else False
        webhook_url = settings.webhook_url if settings else None
        user_id_val = user.id if user else user_id
    finally:
        session.close()

    if not user:
        return

    notifiers = list(_load_notifiers())

    if webhook_enabled and _enabled("ENABLE_WEBHOOK_NOTIFIER"):
        url = webhook_url or os.getenv("WEBHOOK_URL_DEFAULT")
        if url:
            notifiers.append(("webhook", WebhookNotifier(url, user_id_val)))

    failures: Dict[str, Exception] = {}
    attempted = 0
    for channel, notifier in notifiers:
        if isinstance(notifier, EmailNotifier) and not email_enabled:
            continue
        attempted += 1
        try:
            notifier.send(user, subject, body)
        except Exception as exc:
            failures[channel] = exc
            logger.exception("Notifier %s failed", channel)

    if attempted and len(failures) == attempted:
        # Raise so RQ retry semantics kick in when every channel fails.
        failures_str = ", ".join(f"{ch}: {err}" for ch, err in failures.items())
        raise RuntimeError(f"All notification channels failed: {failures_str}")


def notify_user(
    user_id: int,
    subject: str,
    body: str,
    *,
    kind: str = "INFO",
    link: str | None = None,
    priority: str = "MEDIUM",
) -> None:
    """Enqueue a notification for asynchronous delivery."""

    queue.enqueue(
        _send_notification,
        user_id,
        subject,
        body,
        kind,
        link,
        priority,
        retry=Retry(max=3),
    )


# ---------------------------------------------------------------------------
# Workflow templates
# ---------------------------------------------------------------------------

# key -> (kind, priority, subject template, body template)
_TEMPLATES = {
    "approval_queue": (
        "APPROVAL_REQUIRED",
        "MEDIUM",
        "Document {number} awaiting your signature",
        "Document \"{title}\" ({number}) is waiting for your signature at level {level}.",
    ),
    "revision_needed": (
        "REVISION_NEEDED",
        "HIGH",
        "Document Revision Requested",
        "Your document \"{title}\" requires revision. Reason: {reason}",
    ),
    "admin_rejected": (
        "REVISION_NEEDED",
        "HIGH",
        "Document Rejected by Admin",
        "Your document \"{title}\" was rejected during validation. Reason: {reason}",
    ),
    "document_approved": (
        "DOCUMENT_APPROVED",
        "MEDIUM",
        "Document Approved",
        "Your document \"{title}\" has been approved.",
    ),
    "document_finalized": (
        "DOCUMENT_APPROVED",
        "MEDIUM",
        "Document Finalized",
        "Your document \"{title}\" was finalized as {category}.",
    ),
}


def document_link(document_id: int) -> str:
    return f"{PUBLIC_BASE_URL}/documents/{document_id}"


def render(template_key: str, document_id: int | None = None, **context) -> dict:
    """Render a workflow template into a notification payload."""

    kind, priority, subject_t, body_t = _TEMPLATES[template_key]
    helper = EmailNotifier()  # Use prepare_message helper from base notifier
    subject, body = helper.prepare_message(subject_t, body_t, **context)
    return {
        "kind": kind,
        "priority": priority,
        "title": subject,
        "message": body,
        "link": document_link(document_id) if document_id is not None else None,
    }


def deliver(user_id: int, payload: dict) -> None:
    """Queue a rendered payload for ``user_id``."""

    notify_user(
        user_id,
        payload["title"],
        payload["message"],
        kind=payload.get("kind", "INFO"),
        link=payload.get("link"),
        priority=payload.get("priority", "MEDIUM"),
    )
