"""
Test cases for analytics, visitors, contact form, services catalog and health.
"""
import asyncio
import io
import logging
import os
import platform
import smtplib
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from starlette.datastructures import Headers, UploadFile

from conftest import RecordingMailer, bearer
from lunasphere.base_service import utcnow
from lunasphere.errors import DuplicateSubmission, SpamDetected, ValidationError
from lunasphere.main import cleanup_loop, create_app, run_cleanup, shutdown, startup
from lunasphere.site.catalog import CatalogService
from lunasphere.site.contact import (
    ContactRequest,
    ContactService,
    contains_spam,
    generate_submission_id,
)
from lunasphere.site.mailer import Mailer
from lunasphere.storage.memory import MemoryStorage
from lunasphere.storage.models import VisitorRecord
from lunasphere.storage.sql import SQLStorage

CONTACT = {
    "name": "Jane O'Neil",
    "email": "jane@example.com",
    "phone": "+15551234567",
    "service": "web-development",
    "message": "We would like a new website for our bakery.",
}


# --- Health and API info ---

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["environment"] == "development"
    assert body["version"] == "1.0.0"
    assert body["users"] == 1
    assert body["visitors"] == 0
    assert body["uptime"] >= 0


@pytest.mark.asyncio
async def test_api_info(client):
    response = await client.get("/api")
    assert response.status_code == 200
    assert response.json()["endpoints"]["login"] == "POST /api/login"


@pytest.mark.asyncio
async def test_detailed_health(client):
    response = await client.get("/health/detailed")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["environment"] == "development"
    assert body["system"]["process"]["pid"] == os.getpid()
    assert body["system"]["memory"]["maxRss"].endswith("MB")


@pytest.mark.asyncio
async def test_api_version(client):
    response = await client.get("/api/version")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["name"] == "lunasphere"
    assert body["data"]["version"] == "1.0.0"
    assert body["data"]["python"] == platform.python_version()


@pytest.mark.asyncio
async def test_unknown_api_route_is_json_404(client):
    response = await client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "API endpoint not found",
        "code": "NOT_FOUND",
    }


# --- Analytics and visitors ---

@pytest.mark.asyncio
async def test_page_views_and_unique_visitors(client):
    firefox = {"User-Agent": "Firefox"}
    await client.get("/", headers=firefox)
    await client.get("/about", headers=firefox)
    await client.get("/about", headers=firefox)
    await client.get("/", headers={"User-Agent": "Safari"})
    # Not page views: API calls and static assets.
    await client.get("/styles/site.css", headers=firefox)
    await client.get("/api/roles", headers=firefox)

    response = await client.get("/api/analytics")
    assert response.status_code == 200
    body = response.json()
    assert body["totalVisitors"] == 2
    assert body["pageViews"] == 4
    assert body["registeredUsers"] == 1
    assert body["onlineNow"] == 2

    response = await client.get("/api/visitors")
    visitors = response.json()["visitors"]
    assert len(visitors) == 2
    assert sorted(v["pages"] for v in visitors) == [1, 2]
    assert all(v["online"] for v in visitors)
    for visitor in visitors:
        assert visitor["id"].startswith("visitor_")
        assert "127.0.0.1" not in visitor["id"]
        assert visitor["location"] == "Unknown"


@pytest.mark.asyncio
async def test_visitor_list_is_capped(app):
    analytics = app.state.services.analytics
    for i in range(60):
        await analytics.record_page_view(f"10.0.0.{i}", "bot", "/")
    assert len(await analytics.list_visitors()) == 50
    assert (await analytics.get_analytics())["totalVisitors"] == 60


@pytest.mark.asyncio
async def test_update_analytics_is_admin_only(client, admin_headers):
    response = await client.put("/api/analytics", json={"pageViews": 10})
    assert response.status_code == 401

    response = await client.put(
        "/api/analytics", json={"pageViews": 100, "totalVisitors": 7, "bogus": 1}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json()["analytics"]["pageViews"] == 100

    response = await client.get("/api/analytics")
    assert response.json()["pageViews"] == 100
    assert response.json()["totalVisitors"] == 7

    response = await client.put("/api/analytics", json={"pageViews": -1}, headers=admin_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_cleanup_prunes_stale_visitors_and_tokens(app):
    services = app.state.services
    old = utcnow() - timedelta(hours=25)
    await services.storage.analytics.save_visitor(VisitorRecord(
        id="9.9.9.9_ua", ip="9.9.9.9", user_agent="ua", first_seen=old, last_activity=old, pages=["/"],
    ))
    await services.token_store.remember("stale", "admin", utcnow() - timedelta(seconds=1))

    result = await run_cleanup(services)
    assert result["visitors"] == 1
    assert result["refresh_tokens"] == 1
    assert await services.analytics.visitor_count() == 0


@pytest.mark.asyncio
async def test_cleanup_loop_survives_failures(app, monkeypatch, caplog):
    services = app.state.services
    calls = []

    async def failing_purge():
        calls.append(1)
        raise RuntimeError("database is locked")

    monkeypatch.setattr(services.token_store, "purge_expired", failing_purge)
    task = asyncio.create_task(cleanup_loop(services, 0.01))
    try:
        await asyncio.sleep(0.1)
        assert not task.done()
        assert len(calls) >= 2
        assert "periodic cleanup" in caplog.text
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_shutdown_closes_storage_after_failed_cleanup_task(settings, mailer, caplog):
    storage = MemoryStorage()
    closed = []

    async def close():
        closed.append(True)

    storage.close = close
    application = create_app(settings, storage, mailer)

    async def broken_cleanup():
        raise RuntimeError("no such table: refresh_tokens")

    application.state.cleanup_task = asyncio.create_task(broken_cleanup())
    await asyncio.sleep(0)
    assert application.state.cleanup_task.done()

    await shutdown(application)
    assert closed == [True]
    assert application.state.cleanup_task is None
    assert "no such table: refresh_tokens" in caplog.text


@pytest_asyncio.fixture
async def sql_app(settings, mailer, tmp_path):
    application = create_app(settings, SQLStorage(f"sqlite+aiosqlite:///{tmp_path / 'site.db'}"), mailer)
    await startup(application)
    yield application
    await shutdown(application)


@pytest.mark.asyncio
async def test_database_fault_during_page_tracking_does_not_fail_the_page(sql_app, caplog):
    async with sql_app.state.services.storage.engine.begin() as conn:
        await conn.execute(text("DROP TABLE visitors"))

    transport = ASGITransport(app=sql_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/about")
        assert response.status_code == 404
        assert "visitor tracking for /about" in caplog.text

        response = await client.get("/api/visitors")
        assert response.status_code == 500
        assert response.json()["code"] == "STORAGE_ERROR"


# --- Contact form ---

@pytest.mark.asyncio
async def test_contact_submission(client, mailer, admin_headers):
    response = await client.post("/api/contact", json=CONTACT)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Thank you for your message! We will get back to you soon."
    assert body["data"]["submissionId"].startswith("LUNA_")
    assert "timestamp" in body["data"]

    assert len(mailer.sent) == 1
    assert mailer.sent[0]["to"] == "hello@lunasphere.com"
    assert mailer.sent[0]["subject"] == "New Contact Form Submission - web-development"
    assert "Jane O&#x27;Neil" in mailer.sent[0]["html"]

    response = await client.get("/api/contact", headers=admin_headers)
    assert response.status_code == 200
    stats = response.json()["data"]
    assert stats["totalSubmissions"] == 1
    assert stats["submissionsThisMonth"] == 1
    assert stats["topServices"] == [{"service": "web-development", "count": 1}]


@pytest.mark.asyncio
async def test_contact_stats_require_admin(client):
    response = await client.get("/api/contact")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_contact_duplicate_within_cooldown(client):
    assert (await client.post("/api/contact", json=CONTACT)).status_code == 200
    response = await client.post("/api/contact", json=CONTACT)
    assert response.status_code == 429
    assert response.json()["code"] == "DUPLICATE_SUBMISSION"

    other = dict(CONTACT, email="someone.else@example.com")
    assert (await client.post("/api/contact", json=other)).status_code == 200


@pytest.mark.asyncio
async def test_contact_spam_is_rejected(client, mailer):
    spam = dict(CONTACT, message="Congratulations, you have won! Click here now.")
    response = await client.post("/api/contact", json=spam)
    assert response.status_code == 400
    assert response.json()["code"] == "SPAM_DETECTED"
    assert response.json()["error"] == "Message contains inappropriate content"
    assert mailer.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("field,value", [
    ("name", "J"),
    ("name", "Jane <script>"),
    ("email", "not-an-email"),
    ("phone", "call me maybe"),
    ("service", "astrology"),
    ("message", "too short"),
])
async def test_contact_validation(client, field, value):
    response = await client.post("/api/contact", json=dict(CONTACT, **{field: value}))
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["error"] == "Validation failed"
    assert body["details"]  # development mode


@pytest.mark.asyncio
async def test_contact_missing_fields(client):
    response = await client.post("/api/contact", json={"name": "Jane"})
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_contact_request_normalises_input():
    request = ContactRequest(**dict(CONTACT, name="  Jane  ", phone="  ", message="  " + CONTACT["message"]))
    assert request.name == "Jane"
    assert request.phone is None
    assert request.message == CONTACT["message"]
    with pytest.raises(PydanticValidationError):
        ContactRequest(**dict(CONTACT, message="x" * 2001))


def test_spam_patterns():
    assert contains_spam("Great investment opportunity in BITCOIN")
    assert contains_spam("urgent, please reply")
    assert not contains_spam("We need a mobile app for our shop")


def test_submission_ids_are_unique():
    ids = {generate_submission_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("LUNA_") for i in ids)


@pytest.mark.asyncio
async def test_contact_service_auto_reply_and_cooldown_cleanup():
    mailer = RecordingMailer()
    service = ContactService(
        MemoryStorage().contacts, mailer, recipient="inbox@example.com",
        cooldown_seconds=0, send_auto_reply=True,
    )
    submission = await service.submit(ContactRequest(**CONTACT), "10.0.0.1")
    assert submission.delivered is True
    assert [m["to"] for m in mailer.sent] == ["inbox@example.com", "jane@example.com"]
    assert mailer.sent[1]["subject"] == "Thank you for contacting LunaSphere"
    # A zero cooldown never blocks and expires immediately.
    await service.submit(ContactRequest(**CONTACT), "10.0.0.1")
    assert service.cleanup() == 1


@pytest.mark.asyncio
async def test_contact_service_errors():
    service = ContactService(MemoryStorage().contacts, RecordingMailer(), recipient="inbox@example.com")
    with pytest.raises(SpamDetected):
        await service.submit(ContactRequest(**dict(CONTACT, name="Nigerian Prince")))
    await service.submit(ContactRequest(**CONTACT), "1.2.3.4")
    with pytest.raises(DuplicateSubmission):
        await service.submit(ContactRequest(**dict(CONTACT, email="JANE@example.com")), "1.2.3.4")


# --- Mailer ---

def test_mailer_logs_when_unconfigured(caplog):
    caplog.set_level(logging.INFO, logger="lunasphere.mail")
    assert Mailer().send_sync("someone@example.com", "Hi", "Body text") is True
    assert "mail.logged" in caplog.text
    assert "so***@example.com" in caplog.text
    assert "someone@example.com" not in caplog.text


def test_mailer_reports_smtp_failure(monkeypatch, caplog):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    mailer = Mailer(smtp_host="mail.example.com", from_email="site@example.com")
    assert mailer.send_sync("someone@example.com", "Hi", "Body text") is False
    assert "SMTPConnectError" in caplog.text


# --- Services catalog ---

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.mark.asyncio
async def test_catalog_upload_and_delete(client, admin_headers, settings):
    response = await client.post(
        "/api/services",
        data={"title": "Web Development", "description": "Fast sites", "price": "from $999"},
        files={"image": ("logo.png", PNG, "image/png")},
        headers=admin_headers,
    )
    assert response.status_code == 201, response.text
    service = response.json()["service"]
    assert service["title"] == "Web Development"
    assert service["category"] == "general"
    assert service["price"] == "from $999"
    assert service["createdBy"] == "admin"
    assert service["imageUrl"] == f"/uploads/{service['id']}.png"
    assert (Path(settings.upload_dir) / f"{service['id']}.png").read_bytes() == PNG

    image = await client.get(service["imageUrl"])
    assert image.status_code == 200
    assert image.content == PNG

    listing = (await client.get("/api/services")).json()["services"]
    assert [s["id"] for s in listing] == [service["id"]]

    response = await client.delete(f"/api/services/{service['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert not (Path(settings.upload_dir) / f"{service['id']}.png").exists()
    response = await client.delete(f"/api/services/{service['id']}", headers=admin_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_catalog_rejects_bad_uploads(client, admin_headers):
    response = await client.post(
        "/api/services",
        data={"title": "Docs", "description": "Text"},
        files={"image": ("notes.txt", b"hello", "text/plain")},
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "File type not allowed"

    response = await client.post("/api/services", data={"title": "No description"}, headers=admin_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_catalog_requires_admin(client):
    response = await client.post("/api/services", data={"title": "t", "description": "d"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_catalog_size_limit(tmp_path):
    catalog = CatalogService(MemoryStorage().catalog, upload_dir=str(tmp_path), max_upload_bytes=10)
    image = UploadFile(
        file=io.BytesIO(b"x" * 11),
        filename="big.png",
        headers=Headers({"content-type": "image/png"}),
    )
    with pytest.raises(ValidationError) as exc:
        await catalog.add("Big", "Too big", "admin", image=image)
    assert exc.value.message == "File size exceeds limit"
    assert await catalog.list() == []
