"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Webhooks, batch uploads and the admin API through the TestClient, with
the gamification API mocked.  Background tasks finish before the
TestClient call returns, so their effects can be asserted directly.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import replace

import pytest
from conftest import TEST_SECRETS, make_admin_token, make_config, make_maps
from fastapi.testclient import TestClient

from kudos.engine.signatures import sign_crm_v3
from kudos.services.event_log import LogCategory

CRM_URL = "https://testserver/webhooks/crm"

SHEET = (
    "承認日時,商談ステータス,メーカー名,案件ID,金額,名乗り\n"
    "2025/01/10,承認,Acme,A-1,40000,Alice Sato\n"
    "2025/01/11,承認,Beta,B-1,0,Bob Tanaka\n"
    "2025/01/12,却下,Acme,A-2,10000,Alice Sato\n"
)


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _log(services, category):
    return list(services.pipeline.event_log.read(category))


def _client_with(tmp_path, db_engine, fake_api, secrets):
    from kudos.api.main import create_app
    from kudos.services.bootstrap import build_services

    svc = build_services(make_config(tmp_path), secrets, make_maps(), db_engine, transport=fake_api.transport)
    return TestClient(create_app(svc), raise_server_exceptions=False)


# ===========================================================================
# Health
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# CRM v3 webhook
# ===========================================================================
class TestCrmWebhook:
    BODY = json.dumps([{
        "eventId": 7001,
        "subscriptionType": "object.propertyChange",
        "objectTypeId": "0-48",
        "objectId": 555,
        "propertyName": "hs_call_disposition",
        "propertyValue": "appointment_scheduled",
        "occurredAt": 1736473200000,
    }]).encode()

    def _post(self, client, signature: str, timestamp: str | None = None):
        ts = timestamp or str(int(time.time() * 1000))
        return client.post(
            "/webhooks/crm",
            content=self.BODY,
            headers={
                "content-type": "application/json",
                "x-hubspot-signature-v3": signature,
                "x-hubspot-request-timestamp": ts,
            },
        )

    def test_valid_signature_is_processed(self, client, services):
        ts = str(int(time.time() * 1000))
        sig = sign_crm_v3("crm-secret", "POST", CRM_URL, self.BODY, ts)
        resp = self._post(client, sig, ts)
        assert resp.status_code == 204
        (row,) = _log(services, LogCategory.APPOINTMENTS)
        assert row["outcome"] == "appointment_scheduled"
        assert row["xp"] == 20

    def test_path_only_signature_accepted(self, client, services):
        ts = str(int(time.time() * 1000))
        sig = sign_crm_v3("crm-secret", "POST", "/webhooks/crm", self.BODY, ts)
        assert self._post(client, sig, ts).status_code == 204
        assert len(_log(services, LogCategory.APPOINTMENTS)) == 1

    def test_bad_signature_still_204_but_ignored(self, client, services):
        resp = self._post(client, "bm90LWEtc2lnbmF0dXJl")
        assert resp.status_code == 204
        assert _log(services, LogCategory.APPOINTMENTS) == []

    def test_redelivery_is_deduplicated(self, client, services):
        ts = str(int(time.time() * 1000))
        sig = sign_crm_v3("crm-secret", "POST", CRM_URL, self.BODY, ts)
        self._post(client, sig, ts)
        self._post(client, sig, ts)
        assert len(_log(services, LogCategory.APPOINTMENTS)) == 1


# ===========================================================================
# Telephony webhook
# ===========================================================================
class TestTelephonyWebhook:
    CALL = json.dumps({
        "event": "phone.caller_call_log_completed",
        "payload": {"object": {
            "call_id": "zc-1",
            "user_email": "alice@example.com",
            "direction": "outbound",
            "talk_time": 620,
            "result": "completed",
        }},
    }).encode()

    def test_url_validation_handshake(self, client):
        body = {"event": "endpoint.url_validation", "payload": {"plainToken": "plain-123"}}
        resp = client.post("/webhooks/telephony", json=body)
        assert resp.status_code == 200
        expected = hmac.new(b"tel-secret", b"plain-123", hashlib.sha256).hexdigest()
        assert resp.json() == {"plainToken": "plain-123", "encryptedToken": expected}

    def test_timestamped_signature(self, client, services, fake_api):
        ts = int(time.time())
        mac = hmac.new(b"tel-secret", f"v0:{ts}:".encode() + self.CALL, hashlib.sha256).digest()
        header = f"v0:{ts}:{base64.b64encode(mac).decode()}"
        resp = client.post(
            "/webhooks/telephony", content=self.CALL,
            headers={"content-type": "application/json", "x-zm-signature": header},
        )
        assert resp.json() == {"ok": True, "accepted": True}
        (row,) = _log(services, LogCategory.CALLS)
        assert row["actor"]["email"] == "alice@example.com"
        assert row["xp"] == 5
        assert len(fake_api.created_tasks) == 2

    def test_hex_verification_token_signature(self, client, services):
        digest = hmac.new(b"tel-vtoken", self.CALL, hashlib.sha256).hexdigest()
        resp = client.post(
            "/webhooks/telephony", content=self.CALL,
            headers={"content-type": "application/json", "x-zm-signature": f"v0={digest}"},
        )
        assert resp.status_code == 200
        assert len(_log(services, LogCategory.CALLS)) == 1

    def test_bearer_fallback(self, client, services):
        resp = client.post(
            "/webhooks/telephony", content=self.CALL,
            headers={"content-type": "application/json", **_auth("tel-bearer")},
        )
        assert resp.status_code == 200
        assert len(_log(services, LogCategory.CALLS)) == 1

    def test_rejected_without_credentials(self, client, services, fake_api):
        resp = client.post(
            "/webhooks/telephony", content=self.CALL,
            headers={"content-type": "application/json", "x-zm-signature": "v0=" + "0" * 64},
        )
        assert resp.status_code == 401
        assert resp.json() == {"ok": False, "error": "auth"}
        assert _log(services, LogCategory.CALLS) == []
        assert fake_api.requests == []


# ===========================================================================
# Workflow webhook
# ===========================================================================
class TestWorkflowWebhook:
    BODY = {"eventId": "wf-1", "callId": "c-77", "outcome": "新規アポ",
            "properties": {"hubspot_owner_id": "101"}}

    def test_requires_bearer(self, client):
        assert client.post("/webhooks/workflow", json=self.BODY).status_code == 401
        assert client.post("/webhooks/workflow", json=self.BODY, headers=_auth("nope")).status_code == 401

    def test_appointment_awarded(self, client, services, fake_api):
        resp = client.post("/webhooks/workflow", json=self.BODY, headers=_auth("auth-token"))
        assert resp.json() == {"ok": True}
        (row,) = _log(services, LogCategory.APPOINTMENTS)
        assert row["actor"]["email"] == "alice@example.com"
        assert fake_api.created_tasks[0]["text"].startswith("🎯 New Appointment (Alice Sato)")

    def test_misconfigured_without_auth_token(self, tmp_path, db_engine, fake_api):
        client = _client_with(tmp_path, db_engine, fake_api, replace(TEST_SECRETS, auth_token=""))
        resp = client.post("/webhooks/workflow", json=self.BODY, headers=_auth("anything"))
        assert resp.status_code == 500


# ===========================================================================
# Gamification webhook (daily bonus)
# ===========================================================================
class TestGamificationWebhook:
    URL = "/webhooks/gamification?t=gam-secret&email=Alice@example.com"
    DONE = {"task": {"text": "日報 1/10", "completed": True}}

    def test_daily_bonus_once(self, client, fake_api):
        assert client.post(self.URL, json=self.DONE).json() == {"ok": True, "awarded": True}
        assert client.post(self.URL, json=self.DONE).json() == {"ok": True, "duplicate": True}
        assert len(fake_api.created_tasks) == 1

    def test_delivery_failure_does_not_fail_the_response(self, client, services, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("gamification API down")

        monkeypatch.setattr(services.pipeline, "deliver_daily_bonus", broken)
        assert client.post(self.URL, json=self.DONE).json() == {"ok": True, "awarded": True}
        # the day was claimed before delivery was handed off
        assert client.post(self.URL, json=self.DONE).json() == {"ok": True, "duplicate": True}

    def test_direction_up_counts_as_completed(self, client):
        body = {"direction": "up", "data": {"text": "日報"}}
        assert client.post(self.URL, json=body).json()["awarded"] is True

    def test_other_tasks_skipped(self, client, fake_api):
        body = {"task": {"text": "weekly review", "completed": True}}
        assert client.post(self.URL, json=body).json() == {"ok": True, "skipped": True}
        assert fake_api.requests == []

    def test_unknown_member_is_dry_run(self, client):
        url = "/webhooks/gamification?t=gam-secret&email=carol@example.com"
        assert client.post(url, json=self.DONE).json() == {"ok": True, "dryRun": True}

    def test_bad_token(self, client):
        resp = client.post("/webhooks/gamification?t=wrong&email=a@b.c", json=self.DONE)
        assert resp.status_code == 401

    def test_missing_email(self, client):
        resp = client.post("/webhooks/gamification?token=gam-secret", json=self.DONE)
        assert resp.status_code == 400


# ===========================================================================
# Batch imports
# ===========================================================================
class TestImports:
    def test_requires_token(self, client):
        assert client.post("/api/imports/preview", content=SHEET.encode()).status_code == 401
        assert client.post("/api/imports", content=SHEET.encode(), headers=_auth("wrong")).status_code == 401

    @pytest.mark.parametrize("how", ["bearer", "header", "query"])
    def test_token_locations(self, client, how):
        url, headers = "/api/imports/preview", {}
        if how == "bearer":
            headers = _auth("upload-token")
        elif how == "header":
            headers = {"x-auth-token": "upload-token"}
        else:
            url += "?token=upload-token"
        assert client.post(url, content=SHEET.encode(), headers=headers).status_code == 200

    def test_preview(self, client, fake_api):
        resp = client.post("/api/imports/preview", content=SHEET.encode(), headers=_auth("upload-token"))
        preview = resp.json()["preview"]
        assert (preview["approvals"], preview["sales"], preview["skipped"]) == (2, 1, 1)
        assert fake_api.requests == []

    def test_run_then_replay(self, client, fake_api):
        headers = _auth("upload-token")
        body = ("﻿" + SHEET).encode()
        first = client.post("/api/imports", content=body, headers=headers).json()
        assert first == {"ok": True, "approvals": 2, "sales": 1, "duplicates": 0,
                         "skipped": 1, "errors": 0, "makers": 2}
        sent = len(fake_api.requests)
        second = client.post("/api/imports", content=body, headers=headers).json()
        assert second["duplicates"] == 3 and second["approvals"] == 0
        assert len(fake_api.requests) == sent

    def test_empty_body(self, client):
        assert client.post("/api/imports", content=b"  ", headers=_auth("upload-token")).status_code == 400

    def test_non_utf8_body(self, client):
        body = SHEET.encode("shift_jis")
        assert client.post("/api/imports", content=body, headers=_auth("upload-token")).status_code == 400

    def test_auth_token_used_when_no_upload_tokens(self, tmp_path, db_engine, fake_api):
        client = _client_with(tmp_path, db_engine, fake_api, replace(TEST_SECRETS, import_tokens=()))
        resp = client.post("/api/imports/preview", content=SHEET.encode(), headers=_auth("auth-token"))
        assert resp.status_code == 200


# ===========================================================================
# Admin API
# ===========================================================================
class TestAdminAuth:
    @pytest.mark.parametrize("method,path", [
        ("post", "/api/admin/adjustments"),
        ("get", "/api/admin/ledger"),
        ("get", "/api/admin/labels/default"),
        ("put", "/api/admin/labels/default"),
    ])
    def test_requires_token(self, client, method, path):
        kwargs = {"json": {}} if method in ("post", "put") else {}
        assert getattr(client, method)(path, **kwargs).status_code == 401

    def test_non_admin_forbidden(self, client):
        import jwt

        from kudos.api.deps import JWT_ALGORITHM, JWT_SECRET

        token = jwt.encode({"sub": "1", "is_admin": False}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert client.get("/api/admin/ledger", headers=_auth(token)).status_code == 403


class TestAdminAdjustments:
    def test_apply(self, client, admin_token, fake_api):
        resp = client.post(
            "/api/admin/adjustments",
            json={"userId": "bob@example.com", "deltaXp": 40, "note": "contest"},
            headers=_auth(admin_token),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] and data["applied"] and data["delta_xp"] == 40
        assert "Idempotent-Replay" not in resp.headers
        assert fake_api.created_tasks[0]["text"] == "🛠 Manual adjustment (Bob Tanaka) (+40XP)"

    def test_validation_error(self, client, admin_token):
        resp = client.post(
            "/api/admin/adjustments", json={"deltaXp": 5}, headers=_auth(admin_token)
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "invalid_adjustment"

    def test_replay_header(self, client, admin_token, fake_api):
        body = {"userId": "alice@example.com", "deltaXp": 7, "idempotencyKey": "once"}
        first = client.post("/api/admin/adjustments", json=body, headers=_auth(admin_token))
        second = client.post("/api/admin/adjustments", json=body, headers=_auth(admin_token))
        assert second.headers["Idempotent-Replay"] == "true"
        assert second.json() == first.json()
        assert len(fake_api.created_tasks) == 1

    def test_rate_limited(self, client):
        headers = _auth(make_admin_token(sub="42"))
        for i in range(5):
            body = {"userId": "alice@example.com", "deltaXp": 1, "idempotencyKey": f"r{i}"}
            assert client.post("/api/admin/adjustments", json=body, headers=headers).status_code == 200
        resp = client.post(
            "/api/admin/adjustments", json={"userId": "alice@example.com", "deltaXp": 1}, headers=headers
        )
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        assert resp.json()["detail"]["error"] == "rate_limit_exceeded"

    def test_other_tenant_has_own_bucket(self, client, admin_token):
        headers = _auth(admin_token)
        for i in range(5):
            client.post("/api/admin/adjustments", json={"userId": "u@x.test", "deltaXp": 1}, headers=headers)
        resp = client.post(
            "/api/admin/adjustments?tenant=other", json={"userId": "u@x.test", "deltaXp": 1}, headers=headers
        )
        assert resp.status_code == 200


class TestAdminLedgerAndLabels:
    def test_ledger_lists_entries(self, client, admin_token):
        big = (
            "承認日時,商談ステータス,メーカー名,案件ID,金額,名乗り\n"
            "2025/01/10,承認,Acme,A-1,250000,Alice Sato\n"
        )
        client.post("/api/imports", content=big.encode(), headers=_auth("upload-token"))
        data = client.get("/api/admin/ledger?period=2025-01", headers=_auth(admin_token)).json()
        assert data["step_size"] == 100_000
        (entry,) = data["entries"]
        assert (entry["scope"], entry["dimension_a"], entry["dimension_b"]) == (
            "user", "alice@example.com", "Acme",
        )
        assert entry["steps_awarded"] == 2
        assert client.get("/api/admin/ledger?period=2024-12", headers=_auth(admin_token)).json()["entries"] == []

    def test_labels_round_trip(self, client, admin_token):
        items = {"items": [
            {"title": "Demo booked", "xp": 12, "badge": "📅 Demo"},
            {"title": "Old label", "enabled": False},
        ]}
        put = client.put("/api/admin/labels/acme", json=items, headers=_auth(admin_token))
        assert put.status_code == 200
        got = client.get("/api/admin/labels/acme", headers=_auth(admin_token)).json()
        assert [i["title"] for i in got["items"]] == ["Demo booked", "Old label"]
        assert got["items"][1]["enabled"] is False
