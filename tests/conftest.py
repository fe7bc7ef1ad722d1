import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

for key in ("AIRTABLE_API_KEY", "AIRTABLE_BASE_ID", "REDIS_URL", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN"):
    os.environ.pop(key, None)
os.environ["CRM_FORCE_IN_MEMORY"] = "1"

import pytest
from fastapi.testclient import TestClient

from crm.config import settings
from crm.datastore import Datastore
from crm.errors import AuthError, DependencyError
from crm.locks import KeyStore
from crm.main import create_app
from crm.models import AuthUser

OWNER = "user-owner"
OTHER = "user-other"
ADMIN = "user-admin"

TOKENS = {
    "owner-token": AuthUser(id=OWNER, email="owner@example.com", metadata={"first_name": "Dana", "last_name": "Scout"}),
    "other-token": AuthUser(id=OTHER, email="other@example.com"),
    "admin-token": AuthUser(id=ADMIN, email="admin@example.com"),
}


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeChannel:
    """Records every create() call; numbers in ``fail_for`` raise the given error."""

    def __init__(self):
        self.calls = []
        self.fail_for = {}
        self.status = "queued"

    def create(self, *, to, body, from_number=None, messaging_service_sid=None):
        self.calls.append({"to": to, "body": body, "from": from_number, "msid": messaging_service_sid})
        if to in self.fail_for:
            raise self.fail_for[to]
        return {"id": f"SM{len(self.calls):04d}", "status": self.status, "raw": {}}


class FakeAuthClient:
    def __init__(self, users=None):
        self.users = dict(users or TOKENS)
        self.deleted = []
        self.fail_delete = False
        self.list_calls = []

    def get_user(self, token):
        user = self.users.get(token)
        if user is None:
            raise AuthError("Invalid auth token")
        return user

    def list_users(self, page=1, per_page=2000):
        self.list_calls.append((page, per_page))
        return [
            {"id": u.id, "email": u.email, "created_at": "2026-01-01T00:00:00Z", "last_sign_in_at": None}
            for u in self.users.values()
        ]

    def delete_user(self, user_id):
        if self.fail_delete:
            raise DependencyError("auth provider down")
        self.deleted.append(user_id)


class Seeder:
    def __init__(self, store: Datastore):
        self.store = store

    def stage(self, name, owner=OWNER, sort_order=10, is_locked=False):
        return self.store.stages.insert(
            {"owner_user_id": owner, "name": name, "sort_order": sort_order, "is_locked": is_locked}
        )["id"]

    def template(self, body, owner=OWNER, title="Reminder"):
        return self.store.templates.insert({"owner_user_id": owner, "title": title, "body": body})["id"]

    def recruit(self, first="Ana", last="Lopez", phone="(587) 123-4567", owner=OWNER, stage_id=None, **extra):
        return self.store.recruits.insert(
            {"owner_user_id": owner, "first_name": first, "last_name": last, "phone": phone, "stage_id": stage_id, **extra}
        )["id"]

    def relative_rule(self, stage_id, template_id, offset_minutes, owner=OWNER):
        return self.store.sequences.insert(
            {
                "owner_user_id": owner,
                "stage_id": stage_id,
                "template_id": template_id,
                "schedule_type": "relative",
                "offset_minutes": offset_minutes,
            }
        )["id"]

    def absolute_rule(self, stage_id, template_id, send_date, send_time_local, tz="America/Edmonton", owner=OWNER):
        return self.store.sequences.insert(
            {
                "owner_user_id": owner,
                "stage_id": stage_id,
                "template_id": template_id,
                "schedule_type": "absolute",
                "send_date": send_date,
                "send_time_local": send_time_local,
                "timezone": tz,
            }
        )["id"]

    def profile(self, user_id=OWNER, first="Dana", last="Scout"):
        return self.store.profiles.insert({"id": user_id, "first_name": first, "last_name": last})["id"]

    def follow_up(self, recruit_id, template_id, scheduled_for, owner=OWNER, status="scheduled", stage_id=None, **extra):
        fields = {
            "owner_user_id": owner,
            "recruit_id": recruit_id,
            "template_id": template_id,
            "scheduled_for": scheduled_for,
            "status": status,
            "stage_id": stage_id,
            "attempt_count": 0,
        }
        fields.update(extra)
        return self.store.follow_ups.insert(fields)["id"]


@pytest.fixture
def config():
    settings.cache_clear()
    return replace(
        settings(),
        TWILIO_MESSAGING_SERVICE_SID="MG123",
        TWILIO_FROM_NUMBER="+15550001111",
        CRON_SECRET="cron-secret",
        ADMIN_EMAILS=("admin@example.com",),
        SENDER_NAME="Directions Group",
        FOLLOWUP_BATCH_LIMIT=50,
        FOLLOWUP_MAX_ATTEMPTS=3,
        CLAIM_TTL_SEC=300,
        REDIS_URL=None,
    )


@pytest.fixture
def store(config):
    return Datastore.in_memory(config)


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def auth_client():
    return FakeAuthClient()


@pytest.fixture
def app(store, channel, auth_client, config, clock):
    return create_app(store, channel, auth_client, keys=KeyStore(), config=config, clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


def bearer(token="owner-token"):
    return {"Authorization": f"Bearer {token}"}
