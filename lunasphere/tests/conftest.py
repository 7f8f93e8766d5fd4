import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from lunasphere.config import Settings
from lunasphere.main import create_app, shutdown, startup
from lunasphere.site.mailer import Mailer
from lunasphere.storage.memory import MemoryStorage

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-secret-1"
ACCESS_SECRET = "test-access-secret"
REFRESH_SECRET = "test-refresh-secret"


class RecordingMailer(Mailer):
    """Mailer that keeps messages in memory instead of sending them."""

    def __init__(self):
        super().__init__()
        self.sent = []

    async def send(self, to_email, subject, text_body, html_body=None):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body, "html": html_body})
        return True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        app_env="development",
        storage_backend="memory",
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        bcrypt_rounds=4,
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        upload_dir=str(tmp_path / "uploads"),
        cleanup_interval_seconds=3600,
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest_asyncio.fixture
async def app(settings, mailer):
    # ASGITransport does not run the lifespan, so start and stop explicitly.
    application = create_app(settings, MemoryStorage(), mailer)
    await startup(application)
    yield application
    await shutdown(application)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def login(client):
    """Log a user in; returns the response JSON."""
    async def _login(username, password, expected_status=200):
        response = await client.post("/api/login", json={"username": username, "password": password})
        assert response.status_code == expected_status, response.text
        return response.json()
    return _login


@pytest.fixture
def signup(client):
    async def _signup(username, password="secret-pass", roles=None, headers=None, expected_status=201):
        body = {"username": username, "password": password}
        if roles is not None:
            body["roles"] = roles
        response = await client.post("/api/users", json=body, headers=headers)
        assert response.status_code == expected_status, response.text
        return response.json()
    return _signup


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def admin_tokens(login):
    return (await login(ADMIN_USERNAME, ADMIN_PASSWORD))["tokens"]


@pytest_asyncio.fixture
async def admin_headers(admin_tokens):
    return bearer(admin_tokens["accessToken"])
