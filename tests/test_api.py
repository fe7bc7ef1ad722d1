import csv
import io
from datetime import timedelta

import pytest

from crm.datastore import eq
from crm.runtime import iso
from crm.sms_sender import ChannelError

from conftest import ADMIN, OTHER, OWNER, bearer


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert data["store"] == "memory"
    assert "time" in data


# --- change-stage ------------------------------------------------------------
def test_change_stage_schedules(client, seed, store):
    interview = seed.stage("Interview")
    seed.relative_rule(interview, seed.template("Hi {{first_name}}"), 60)
    rid = seed.recruit()

    resp = client.post("/api/recruits/change-stage", json={"recruitId": rid, "newStageId": interview}, headers=bearer())

    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["cancelledOld"] is True
    assert resp.json()["created"] == 1


def test_change_stage_terminal(client, seed):
    hired = seed.stage("Hired")
    rid = seed.recruit()
    resp = client.post("/api/recruits/change-stage", json={"recruitId": rid, "newStageId": hired}, headers=bearer())
    assert resp.json()["terminal"] is True
    assert resp.json()["created"] == 0


def test_change_stage_no_sequences(client, seed):
    stage = seed.stage("Screening")
    rid = seed.recruit()
    resp = client.post("/api/recruits/change-stage", json={"recruitId": rid, "newStageId": stage}, headers=bearer())
    assert resp.json()["reason"] == "no sequences"


@pytest.mark.parametrize(
    "payload,headers,status,error",
    [
        ({"recruitId": "r"}, bearer(), 400, "Missing recruitId or newStageId"),
        ({"recruitId": "nope", "newStageId": "nope"}, bearer(), 404, "Recruit not found"),
        ({"recruitId": "r", "newStageId": "s"}, {}, 401, "Missing auth token"),
        ({"recruitId": "r", "newStageId": "s"}, bearer("bogus"), 401, "Invalid auth token"),
    ],
)
def test_change_stage_errors(client, payload, headers, status, error):
    resp = client.post("/api/recruits/change-stage", json=payload, headers=headers)
    assert resp.status_code == status
    assert resp.json()["error"] == error


def test_change_stage_other_owner_forbidden(client, seed):
    stage = seed.stage("Screening")
    rid = seed.recruit()
    resp = client.post("/api/recruits/change-stage", json={"recruitId": rid, "newStageId": stage}, headers=bearer("other-token"))
    assert resp.status_code == 403


# --- send --------------------------------------------------------------------
def test_send_message(client, seed, store, channel):
    rid = seed.recruit(phone="(587) 123-4567")

    resp = client.post("/api/messages/send", json={"recruitId": rid, "body": "  Call me back  "}, headers=bearer())

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "sid": "SM0001"}
    assert channel.calls[0]["to"] == "+15871234567"
    assert channel.calls[0]["msid"] == "MG123"
    row = store.messages.select([eq("recruit_id", rid)])[0]["fields"]
    assert row["direction"] == "outbound"
    assert row["body"] == "Call me back"
    assert row["provider_message_id"] == "SM0001"


@pytest.mark.parametrize(
    "payload_factory,token,status",
    [
        (lambda rid: {"recruitId": rid}, "owner-token", 400),
        (lambda rid: {"recruitId": "missing", "body": "hi"}, "owner-token", 404),
        (lambda rid: {"recruitId": rid, "body": "hi"}, "other-token", 403),
    ],
)
def test_send_message_errors(client, seed, channel, payload_factory, token, status):
    rid = seed.recruit()
    resp = client.post("/api/messages/send", json=payload_factory(rid), headers=bearer(token))
    assert resp.status_code == status
    assert channel.calls == []


def test_send_message_requires_auth(client):
    assert client.post("/api/messages/send", json={"recruitId": "r", "body": "x"}).status_code == 401


def test_send_message_bad_phone(client, seed):
    rid = seed.recruit(phone="")
    resp = client.post("/api/messages/send", json={"recruitId": rid, "body": "hi"}, headers=bearer())
    assert resp.status_code == 400
    assert resp.json()["error"] == "Recruit phone is missing/invalid"


def test_send_message_template_leak_is_422(client, seed, channel):
    rid = seed.recruit()
    resp = client.post("/api/messages/send", json={"recruitId": rid, "body": "Hi {{first_name}}"}, headers=bearer())
    assert resp.status_code == 422
    assert resp.json()["code"] == "UNRENDERED_TEMPLATE_BLOCKED"
    assert channel.calls == []


def test_send_message_provider_error_is_500(client, seed, channel):
    rid = seed.recruit(phone="5871234567")
    channel.fail_for["+15871234567"] = ChannelError("SMS provider HTTP 400: Invalid number", provider_status=400)
    resp = client.post("/api/messages/send", json={"recruitId": rid, "body": "hi"}, headers=bearer())
    assert resp.status_code == 500
    assert "Invalid number" in resp.json()["error"]


# --- cron / run-now ----------------------------------------------------------
def _due_follow_up(seed, clock):
    tpl = seed.template("Hi {{first_name}}")
    rid = seed.recruit(phone="5871234567")
    return seed.follow_up(rid, tpl, iso(clock.now - timedelta(minutes=1)))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"headers": {"Authorization": "Bearer cron-secret"}},
        {"headers": {"x-cron-secret": "cron-secret"}},
        {"params": {"secret": "cron-secret"}},
    ],
)
def test_cron_accepts_secret_locations(client, seed, clock, kwargs):
    _due_follow_up(seed, clock)
    resp = client.get("/api/cron/send-followups", **kwargs)
    assert resp.status_code == 200
    data = resp.json()
    assert data["checked"] == 1
    assert data["sent"] == 1
    assert data["previews"] == []


def test_cron_post_debug(client, seed, clock, store, channel):
    fid = _due_follow_up(seed, clock)
    resp = client.post("/api/cron/send-followups", params={"debug": "1", "secret": "cron-secret"})
    data = resp.json()
    assert data["debug"] is True
    assert len(data["previews"]) == 1
    assert data["previews"][0]["body"] == "Hi Ana"
    assert channel.calls == []
    assert store.follow_ups.get(fid)["fields"]["status"] == "scheduled"


@pytest.mark.parametrize("kwargs", [{}, {"params": {"secret": "wrong"}}, {"headers": {"x-cron-secret": ""}}])
def test_cron_rejects_bad_secret(client, kwargs):
    assert client.get("/api/cron/send-followups", **kwargs).status_code == 401


def test_cron_without_configured_secret_is_500(store, channel, auth_client, config, clock):
    from dataclasses import replace

    from fastapi.testclient import TestClient

    from crm.locks import KeyStore
    from crm.main import create_app

    app = create_app(store, channel, auth_client, keys=KeyStore(), config=replace(config, CRON_SECRET=None), clock=clock)
    resp = TestClient(app).get("/api/cron/send-followups", params={"secret": "anything"})
    assert resp.status_code == 500
    assert resp.json()["error"] == "CRON_SECRET is not configured"


def test_run_now(client, seed, clock):
    _due_follow_up(seed, clock)
    resp = client.post("/api/follow-ups/run-now", headers=bearer())
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["result"]["sent"] == 1
    assert client.post("/api/follow-ups/run-now").status_code == 401


# --- inbox -------------------------------------------------------------------
def test_inbox_unread_counts_and_mark_read(client, seed, store):
    rid = seed.recruit(phone="+15871234567")
    client.post("/api/twilio/inbound", data={"From": "+15871234567", "To": "+15550001111", "Body": "one", "MessageSid": "A"})
    client.post("/api/twilio/inbound", data={"From": "+15871234567", "To": "+15550001111", "Body": "two", "MessageSid": "B"})

    assert client.get("/api/inbox", headers=bearer()).json()["unread"] == {rid: 2}
    assert client.post(f"/api/inbox/{rid}/read", headers=bearer()).status_code == 200
    assert client.get("/api/inbox", headers=bearer()).json()["unread"] == {}
    assert client.post(f"/api/inbox/{rid}/read", headers=bearer("other-token")).status_code == 403


# --- export ------------------------------------------------------------------
def test_export_csv(client, seed, store):
    stage = seed.stage("Interview")
    seed.recruit(first="Old", last="Timer", phone="5870000001", stage_id=stage, created_at="2026-01-01T00:00:00+00:00")
    newest = seed.recruit(first='Quote "Q"', last="Comma, Jr", phone="5870000002", created_at="2026-02-01T00:00:00+00:00")
    seed.recruit(first="Someone", owner=OTHER)

    resp = client.get("/api/recruits/export", headers=bearer())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    disposition = resp.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="recruits-')
    assert disposition.endswith('.csv"')
    rows = list(csv.reader(io.StringIO(resp.text)))
    assert rows[0] == ["id", "first_name", "last_name", "phone", "status", "stage", "created_at"]
    assert len(rows) == 3
    assert rows[1][0] == newest
    assert rows[1][1] == 'Quote "Q"'
    assert rows[1][2] == "Comma, Jr"
    assert rows[2][5] == "Interview"


def test_export_requires_auth(client):
    assert client.get("/api/recruits/export").status_code == 401


# --- stages & sequences --------------------------------------------------------
def test_stage_lifecycle(client, store):
    listing = client.get("/api/stages", headers=bearer()).json()["stages"]
    assert [s["name"] for s in listing] == ["Intake"]
    intake_id = listing[0]["id"]

    a = client.post("/api/stages", json={"name": "Screening"}, headers=bearer()).json()["stage"]
    b = client.post("/api/stages", json={"name": "Interview"}, headers=bearer()).json()["stage"]
    reordered = client.post("/api/stages/reorder", json={"order": [b["id"], a["id"]]}, headers=bearer()).json()["stages"]
    assert [s["name"] for s in reordered] == ["Intake", "Interview", "Screening"]
    assert [s["sort_order"] for s in reordered] == [0, 10, 20]

    assert client.patch(f"/api/stages/{intake_id}", json={"name": "X"}, headers=bearer()).status_code == 400
    assert client.delete(f"/api/stages/{intake_id}", headers=bearer()).status_code == 400
    renamed = client.patch(f"/api/stages/{a['id']}", json={"name": "Phone Screen"}, headers=bearer()).json()
    assert renamed["stage"]["name"] == "Phone Screen"


def test_delete_stage_moves_recruits_to_intake(client, seed, store, clock):
    client.get("/api/stages", headers=bearer())
    stage = client.post("/api/stages", json={"name": "Screening"}, headers=bearer()).json()["stage"]["id"]
    tpl = seed.template("Hi")
    rid = seed.recruit(stage_id=stage)
    fid = seed.follow_up(rid, tpl, iso(clock.now), stage_id=stage)

    resp = client.delete(f"/api/stages/{stage}", headers=bearer())

    assert resp.status_code == 200
    assert resp.json()["moved"] == 1
    intake = [s for s in client.get("/api/stages", headers=bearer()).json()["stages"] if s["is_locked"]][0]
    assert store.recruits.get(rid)["fields"]["stage_id"] == intake["id"]
    assert store.follow_ups.get(fid)["fields"]["status"] == "cancelled"


def test_create_sequence_rules(client, seed):
    stage = seed.stage("Interview")
    tpl = seed.template("Hi")

    ok = client.post(
        f"/api/stages/{stage}/sequences",
        json={"templateId": tpl, "scheduleType": "relative", "offsetMinutes": 1440},
        headers=bearer(),
    )
    assert ok.status_code == 200
    assert ok.json()["sequence"]["offset_minutes"] == 1440

    absolute = client.post(
        f"/api/stages/{stage}/sequences",
        json={"templateId": tpl, "scheduleType": "absolute", "sendDate": "2026-04-01", "sendTimeLocal": "09:00", "timezone": "America/Edmonton"},
        headers=bearer(),
    )
    assert absolute.status_code == 200
    assert absolute.json()["sequence"]["timezone"] == "America/Edmonton"


@pytest.mark.parametrize(
    "body",
    [
        {"scheduleType": "relative", "offsetMinutes": -5},
        {"scheduleType": "relative", "offsetMinutes": 5, "sendDate": "2026-04-01"},
        {"scheduleType": "absolute", "sendDate": "04/01/2026", "sendTimeLocal": "09:00", "timezone": "UTC"},
        {"scheduleType": "absolute", "sendDate": "2026-04-01", "sendTimeLocal": "9am", "timezone": "UTC"},
        {"scheduleType": "absolute", "sendDate": "2026-04-01", "sendTimeLocal": "09:00", "timezone": "Nowhere/Land"},
        {"scheduleType": "weekly"},
    ],
)
def test_create_sequence_rule_validation(client, seed, body):
    stage = seed.stage("Interview")
    tpl = seed.template("Hi")
    resp = client.post(f"/api/stages/{stage}/sequences", json={"templateId": tpl, **body}, headers=bearer())
    assert resp.status_code == 400


def test_create_sequence_rule_foreign_template(client, seed):
    stage = seed.stage("Interview")
    tpl = seed.template("Hi", owner=OTHER)
    resp = client.post(
        f"/api/stages/{stage}/sequences",
        json={"templateId": tpl, "scheduleType": "relative", "offsetMinutes": 1},
        headers=bearer(),
    )
    assert resp.status_code == 404


# --- admin -------------------------------------------------------------------
def test_admin_delete_user(client, seed, store, auth_client, clock):
    stage = seed.stage("Interview", owner=OTHER)
    tpl = seed.template("Hi", owner=OTHER)
    seed.relative_rule(stage, tpl, 5, owner=OTHER)
    rid = seed.recruit(owner=OTHER)
    seed.follow_up(rid, tpl, iso(clock.now), owner=OTHER)
    seed.profile(OTHER)
    keep = seed.recruit(owner=OWNER)

    resp = client.post("/api/admin/delete-user", json={"userId": OTHER}, headers=bearer("admin-token"))

    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert all(step["ok"] for step in data["cleanup"])
    assert auth_client.deleted == [OTHER]
    assert store.recruits.select([eq("owner_user_id", OTHER)]) == []
    assert store.follow_ups.select() == []
    assert store.profiles.select([eq("id", OTHER)]) == []
    assert store.recruits.get(keep) is not None


def test_admin_delete_user_forbidden_for_non_admin(client):
    resp = client.post("/api/admin/delete-user", json={"userId": OTHER}, headers=bearer())
    assert resp.status_code == 403
    assert resp.json()["error"] == "Forbidden (not an admin)"


def test_admin_delete_user_missing_id(client):
    assert client.post("/api/admin/delete-user", json={}, headers=bearer("admin-token")).status_code == 400


def test_admin_delete_continues_after_failed_step(client, seed, store, monkeypatch):
    from crm.errors import DependencyError

    seed.recruit(owner=OTHER)

    def broken(_where):
        raise DependencyError("messages table unavailable")

    monkeypatch.setattr(store.messages, "delete_where", broken)
    resp = client.post("/api/admin/delete-user", json={"userId": OTHER}, headers=bearer("admin-token"))

    data = resp.json()
    assert data["ok"] is True
    failed = [s for s in data["cleanup"] if not s["ok"]]
    assert [s["step"] for s in failed] == ["delete messages"]
    assert store.recruits.select([eq("owner_user_id", OTHER)]) == []


def test_admin_delete_auth_failure_is_500(client, auth_client):
    auth_client.fail_delete = True
    resp = client.post("/api/admin/delete-user", json={"userId": OTHER}, headers=bearer("admin-token"))
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed deleting auth user"
    assert "cleanup" in resp.json()


def test_listing_stages_bootstraps_profile(client, store):
    assert client.get("/api/stages", headers=bearer()).status_code == 200
    rows = store.profiles.select()
    assert len(rows) == 1
    assert rows[0]["fields"]["first_name"] == "Dana"
    assert rows[0]["fields"]["last_name"] == "Scout"


def test_admin_list_users(client, auth_client):
    resp = client.get("/api/admin/list-users", headers=bearer("admin-token"))

    assert resp.status_code == 200
    data = resp.json()
    assert data["meta"] == {"page": 1, "perPage": 2000, "returned": 3}
    assert {u["email"] for u in data["users"]} == {"owner@example.com", "other@example.com", "admin@example.com"}
    assert set(data["users"][0]) == {"id", "email", "created_at", "last_sign_in_at"}
    assert auth_client.list_calls == [(1, 2000)]


def test_admin_list_users_forbidden_for_non_admin(client, auth_client):
    assert client.get("/api/admin/list-users", headers=bearer()).status_code == 403
    assert client.get("/api/admin/list-users").status_code == 401
    assert auth_client.list_calls == []


def test_templates_are_owner_scoped(client):
    first = client.post("/api/templates", json={"title": " Intro ", "body": "Hi {{first_name}}"}, headers=bearer())
    second = client.post("/api/templates", json={"title": "Reminder", "body": "See you soon"}, headers=bearer())
    client.post("/api/templates", json={"title": "Theirs", "body": "x"}, headers=bearer("other-token"))

    assert first.status_code == 200
    assert first.json()["template"]["title"] == "Intro"
    assert [first.json()["template"]["sort_order"], second.json()["template"]["sort_order"]] == [1, 2]

    listing = client.get("/api/templates", headers=bearer()).json()["templates"]
    assert [t["title"] for t in listing] == ["Intro", "Reminder"]

    missing = client.post("/api/templates", json={"body": "no title"}, headers=bearer())
    assert missing.status_code == 400
    assert missing.json() == {"error": "Title is required"}
    assert client.get("/api/templates").status_code == 401


def test_template_created_over_api_backs_a_sequence_rule(client):
    stage = client.post("/api/stages", json={"name": "Interview"}, headers=bearer()).json()["stage"]
    template = client.post("/api/templates", json={"title": "Prep", "body": "Bring ID"}, headers=bearer()).json()["template"]

    resp = client.post(
        f"/api/stages/{stage['id']}/sequences",
        json={"templateId": template["id"], "scheduleType": "relative", "offsetMinutes": 60},
        headers=bearer(),
    )

    assert resp.status_code == 200
    assert resp.json()["sequence"]["template_id"] == template["id"]


def test_delete_template_drops_rules_and_pending_follow_ups(client, seed, store, clock):
    stage = seed.stage("Interview")
    tpl = seed.template("Bring ID")
    seed.relative_rule(stage, tpl, 60)
    rid = seed.recruit(stage_id=stage)
    pending = seed.follow_up(rid, tpl, iso(clock.now), stage_id=stage)
    done = seed.follow_up(rid, tpl, iso(clock.now), stage_id=stage, status="sent")

    assert client.delete(f"/api/templates/{tpl}", headers=bearer("other-token")).status_code == 404
    resp = client.delete(f"/api/templates/{tpl}", headers=bearer())

    assert resp.json() == {"ok": True, "cancelled": 1, "rulesDeleted": 1}
    assert store.templates.get(tpl) is None
    assert store.follow_ups.get(pending)["fields"]["status"] == "cancelled"
    assert store.follow_ups.get(done)["fields"]["status"] == "sent"
