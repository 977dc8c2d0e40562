import json

from sqlalchemy import func
from sqlmodel import select

from core.content_models import InboundEmail
from core.models import UserRole
from core.webhooks import compute_signature, verify_signature

from conftest import WEBHOOK_SECRET

PAYLOAD = {
    "messageId": "<abc123@mail.example.com>",
    "from": "student@example.com",
    "to": ["support@oprep.ng"],
    "subject": "Question about my enrollment",
    "text": "Hello, I paid but cannot see my exams.",
    "timestamp": "2025-05-01T10:00:00Z",
}


def _post(client, payload, signature=None):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    headers["X-Webhook-Signature"] = signature if signature is not None else compute_signature(body, WEBHOOK_SECRET)
    return client.post("/api/webhooks/email-received", content=body, headers=headers)


def _count(db) -> int:
    with db.session() as session:
        return session.exec(select(func.count()).select_from(InboundEmail)).one()


def test_bad_signature_is_rejected_and_writes_nothing(client, db):
    response = _post(client, PAYLOAD, signature="0" * 64)
    assert response.status_code == 401
    assert _count(db) == 0


def test_missing_signature_is_rejected(client, db):
    body = json.dumps(PAYLOAD).encode()
    response = client.post("/api/webhooks/email-received", content=body)
    assert response.status_code == 401
    assert _count(db) == 0


def test_valid_delivery_is_stored_once(client, db):
    first = _post(client, PAYLOAD)
    assert first.status_code == 200
    assert first.json()["message"] == "Email received"

    repeat = _post(client, PAYLOAD)
    assert repeat.status_code == 200
    assert repeat.json()["message"] == "Email already processed"
    assert _count(db) == 1

    with db.session() as session:
        email = session.exec(select(InboundEmail)).one()
    assert email.sender == "student@example.com"
    assert email.recipients == ["support@oprep.ng"]
    assert email.received_at.hour == 10


def test_missing_message_id_is_a_validation_error(client, db):
    response = _post(client, {"from": "a@example.com"})
    assert response.status_code == 400
    assert _count(db) == 0


def test_unconfigured_secret_returns_500(client, settings):
    settings.webhook_secret = ""
    response = _post(client, PAYLOAD, signature="anything")
    assert response.status_code == 500


def test_admin_reads_and_archives_emails(client, make_user):
    _, headers = make_user(role=UserRole.admin)
    _post(client, PAYLOAD)

    inbox = client.get("/api/admin/emails?unread_only=true", headers=headers).json()
    assert len(inbox) == 1
    email_id = inbox[0]["id"]

    assert client.patch(f"/api/admin/emails/{email_id}/read", headers=headers).json()["is_read"] is True
    assert client.get("/api/admin/emails?unread_only=true", headers=headers).json() == []

    archived = client.patch(f"/api/admin/emails/{email_id}/archive", headers=headers).json()
    assert archived["folder"] == "archive"
    assert client.get("/api/admin/emails", headers=headers).json() == []
    assert len(client.get("/api/admin/emails?folder=archive&include_archived=true", headers=headers).json()) == 1


def test_non_ascii_signature_is_rejected(client, db):
    body = json.dumps(PAYLOAD).encode()
    assert not verify_signature(body, "é" * 64, WEBHOOK_SECRET)

    response = client.post(
        "/api/webhooks/email-received", content=body, headers={"X-Webhook-Signature": b"\xe9" * 64}
    )
    assert response.status_code == 401
    assert _count(db) == 0
