"""
Fixtures communes : base SQLite en mémoire, tenants/users/connexions de test,
client HTTP, transport Google simulé (httpx.MockTransport)

Les variables d'environnement sont posées AVANT l'import de gmb_sync
(Settings() est instancié à l'import).
"""
import base64
import os
import tempfile
from datetime import timedelta
from uuid import uuid4

os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["GOOGLE_REDIRECT_URI"] = "http://testserver/auth/google/callback"
os.environ["TOKEN_ENCRYPTION_KEY"] = base64.urlsafe_b64encode(b"0" * 32).decode()
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["DASHBOARD_URL"] = "http://localhost:3000/accounts"
os.environ["LOCAL_DATA_ROOT"] = tempfile.mkdtemp(prefix="gmb-sync-tests-")
os.environ["SYNC_COOLDOWN_BACKEND"] = "database"
os.environ["LOG_JSON"] = "false"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from gmb_sync import models  # noqa: E402
from gmb_sync.database import Base, SessionLocal, engine  # noqa: E402
from gmb_sync.services import sync as sync_service  # noqa: E402
from gmb_sync.services.cache import locations_cache  # noqa: E402
from gmb_sync.services.google_client import GoogleClient  # noqa: E402
from gmb_sync.utils.dates import utcnow  # noqa: E402
from gmb_sync.utils.jwt import create_access_token  # noqa: E402
from gmb_sync.utils.security import encrypt_token  # noqa: E402


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        locations_cache.clear()
        sync_service._running_syncs.clear()


@pytest.fixture
def client(db):
    from gmb_sync.main import app

    return TestClient(app)


def make_tenant(db, name="Tenant"):
    tenant = models.Tenant(name=name)
    db.add(tenant)
    db.flush()
    user = models.User(tenant_id=tenant.id, email=f"user_{uuid4().hex[:8]}@example.com", name=f"{name} User")
    db.add(user)
    db.commit()
    return tenant, user


def make_connection(db, tenant, user=None, **overrides):
    values = dict(
        tenant_id=tenant.id,
        user_id=user.id if user else None,
        account_id=f"accounts/{uuid4().int % 10**10}",
        account_name="Test Business",
        email="owner@example.com",
        access_token=encrypt_token("valid-access-token"),
        refresh_token=encrypt_token("valid-refresh-token"),
        token_expires_at=utcnow() + timedelta(hours=1),
        is_active=True,
        data_retention_days=30,
        delete_on_disconnect=False,
    )
    values.update(overrides)
    connection = models.GmbConnection(**values)
    db.add(connection)
    db.commit()
    return connection


def make_location(db, connection, location_id=None, **overrides):
    values = dict(
        tenant_id=connection.tenant_id,
        connection_id=connection.id,
        location_id=location_id or f"locations/{uuid4().int % 10**10}",
        location_name="Main Street Bakery",
        is_active=True,
        is_archived=False,
        last_synced_at=utcnow(),
    )
    values.update(overrides)
    location = models.GmbLocation(**values)
    db.add(location)
    db.commit()
    return location


def make_review(db, location, **overrides):
    values = dict(
        tenant_id=location.tenant_id,
        location_id=location.id,
        external_review_id=f"review-{uuid4().hex[:10]}",
        reviewer_name="Jane Customer",
        reviewer_profile_photo_url="https://example.com/jane.png",
        rating=5,
        comment="Great bread",
    )
    values.update(overrides)
    review = models.GmbReview(**values)
    db.add(review)
    db.commit()
    return review


def make_question(db, location, **overrides):
    values = dict(
        tenant_id=location.tenant_id,
        location_id=location.id,
        external_question_id=f"{location.location_id}/questions/{uuid4().hex[:10]}",
        author_name="Curious Person",
        question_text="Are you open on Sunday?",
    )
    values.update(overrides)
    question = models.GmbQuestion(**values)
    db.add(question)
    db.commit()
    return question


def make_post(db, location, **overrides):
    values = dict(
        tenant_id=location.tenant_id,
        location_id=location.id,
        external_post_id=f"{location.location_id}/localPosts/{uuid4().hex[:10]}",
        summary="Fresh croissants every morning",
        topic_type="STANDARD",
        state="LIVE",
    )
    values.update(overrides)
    post = models.GmbPost(**values)
    db.add(post)
    db.commit()
    return post


def auth_headers(user):
    token = create_access_token(user_id=user.id, tenant_id=user.tenant_id)
    return {"Authorization": f"Bearer {token}"}


def google_location(index):
    return {
        "name": f"locations/{1000 + index}",
        "title": f"Location {index}",
        "storefrontAddress": {
            "addressLines": [f"{index} Main Street"],
            "locality": "Springfield",
            "postalCode": "12345",
            "regionCode": "US",
        },
        "phoneNumbers": {"primaryPhone": "+1 555 0100"},
        "categories": {"primaryCategory": {"displayName": "Bakery"}},
        "websiteUri": "https://example.com",
        "latlng": {"latitude": 40.0, "longitude": -73.0},
    }


class FakeSleep:
    """Remplace asyncio.sleep : enregistre les délais sans attendre"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_google_client(handler, sleep=None, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleClient(http_client=http_client, sleep=sleep or FakeSleep(), **kwargs)


@pytest.fixture
def tenant_user(db):
    return make_tenant(db, "Tenant A")
