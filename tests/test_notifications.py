from unittest.mock import MagicMock, patch

import pytest
from rq import Retry

import models
import notifications


def _create_user(make_user, db, *, webhook_url=None, webhook=False):
    user_id = make_user("recipient")
    if webhook:
        db.add(models.UserSetting(user_id=user_id, webhook_enabled=True, webhook_url=webhook_url))
        db.commit()
    return user_id


def test_notify_user_enqueues_job_with_retry(fake_queue):
    notifications.notify_user(7, "Subject", "Body", kind="REVISION_NEEDED", priority="HIGH")
    fake_queue.enqueue.assert_called_once()
    call = fake_queue.enqueue.call_args
    assert call.args == (
        notifications._send_notification,
        7,
        "Subject",
        "Body",
        "REVISION_NEEDED",
        None,
        "HIGH",
    )
    assert isinstance(call.kwargs["retry"], Retry)
    assert call.kwargs["retry"].max == 3


def test_send_notification_stores_in_app_row(make_user, db, monkeypatch):
    user_id = _create_user(make_user, db)
    monkeypatch.setattr(notifications, "_load_notifiers", lambda: [])
    notifications._send_notification(user_id, "Sub", "Body", "APPROVAL_REQUIRED", "/documents/1")
    note = db.query(models.Notification).filter_by(user_id=user_id).one()
    assert note.kind == "APPROVAL_REQUIRED"
    assert note.link == "/documents/1"
    assert note.read is False


def test_one_notifier_failure_does_not_block_others(make_user, db, monkeypatch):
    user_id = _create_user(make_user, db)
    fail_notifier = MagicMock()
    fail_notifier.send.side_effect = Exception("boom")
    success_notifier = MagicMock()
    monkeypatch.setattr(
        notifications,
        "_load_notifiers",
        lambda: [("fail", fail_notifier), ("success", success_notifier)],
    )
    monkeypatch.delenv("ENABLE_WEBHOOK_NOTIFIER", raising=False)

    notifications._send_notification(user_id, "Sub", "Body")

    assert fail_notifier.send.called
    assert success_notifier.send.called


def test_all_notifiers_failing_raises_for_retry(make_user, db, monkeypatch):
    user_id = _create_user(make_user, db)
    n1 = MagicMock()
    n1.send.side_effect = Exception("fail1")
    n2 = MagicMock()
    n2.send.side_effect = Exception("fail2")
    monkeypatch.setattr(notifications, "_load_notifiers", lambda: [("n1", n1), ("n2", n2)])
    monkeypatch.delenv("ENABLE_WEBHOOK_NOTIFIER", raising=False)

    with pytest.raises(RuntimeError, match="All notification channels failed"):
        notifications._send_notification(user_id, "Sub", "Body")


def test_email_disabled_in_settings_skips_email(make_user, db, monkeypatch):
    user_id = _create_user(make_user, db)
    db.add(models.UserSetting(user_id=user_id, email_enabled=False))
    db.commit()
    monkeypatch.setenv("ENABLE_EMAIL_NOTIFIER", "1")
    with patch.object(notifications.EmailNotifier, "send") as mock_send:
        notifications._send_notification(user_id, "Sub", "Body")
    mock_send.assert_not_called()


def test_webhook_uses_user_url(make_user, db, monkeypatch):
    user_id = _create_user(make_user, db, webhook=True, webhook_url="http://example.com/hook")
    monkeypatch.setenv("ENABLE_WEBHOOK_NOTIFIER", "1")
    monkeypatch.setattr(notifications, "_load_notifiers", lambda: [])

    with patch.object(notifications.requests, "post") as mock_post:
        notifications._send_notification(user_id, "Sub", "Body")

    mock_post.assert_called_once_with(
        "http://example.com/hook",
        json={"user_id": user_id, "subject": "Sub", "body": "Body"},
        timeout=10,
    )


def test_webhook_uses_default_url(make_user, db, monkeypatch):
    user_id = _create_user(make_user, db, webhook=True)
    monkeypatch.setenv("ENABLE_WEBHOOK_NOTIFIER", "1")
    monkeypatch.setenv("WEBHOOK_URL_DEFAULT", "http://default/hook")
    monkeypatch.setattr(notifications, "_load_notifiers", lambda: [])

    with patch.object(notifications.requests, "post") as mock_post:
        notifications._send_notification(user_id, "Subject", "Body")

    assert mock_post.call_args.args == ("http://default/hook",)


def test_render_templates():
    payload = notifications.render(
        "revision_needed", 12, title="Cleaning SOP", number="SOP-4", reason="Missing step 3"
    )
    assert payload["kind"] == "REVISION_NEEDED"
    assert payload["priority"] == "HIGH"
    assert "Missing step 3" in payload["message"]
    assert payload["link"].endswith("/documents/12")

    payload = notifications.render("approval_queue", None, title="Cleaning SOP", number="SOP-4", level=2)
    assert payload["title"] == "Document SOP-4 awaiting your signature"
    assert payload["link"] is None


def test_deliver_queues_rendered_payload(fake_queue):
    payload = notifications.render("document_approved", 3, title="T", number="N")
    notifications.deliver(5, payload)
    args = fake_queue.enqueue.call_args.args
    assert args[1:] == (5, payload["title"], payload["message"], "DOCUMENT_APPROVED", payload["link"], "MEDIUM")
