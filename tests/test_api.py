"""
Tests for the app-facing endpoints.

Tests cover:
- POST /api/whatsapp/link-token
- GET /api/whatsapp/transactions and POST .../{id}/confirm
- GET/DELETE /api/whatsapp/status
- Health and metrics endpoints
"""

from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from spenly_whatsapp.utils import utcnow


class TestLinkToken:

    def test_issue_token(self, client):
        response = client.post("/api/whatsapp/link-token", json={"apple_user_id": "user-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["token"]
        assert data["expires_at"].endswith("Z")
        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", ""))
        remaining = expires_at - utcnow()
        assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)

    def test_missing_apple_user_id(self, client):
        response = client.post("/api/whatsapp/link-token", json={})

        assert response.status_code == 400
        assert response.json() == {"detail": "apple_user_id is required"}

    def test_empty_apple_user_id(self, client):
        response = client.post("/api/whatsapp/link-token", json={"apple_user_id": ""})

        assert response.status_code == 400

    def test_get_not_allowed(self, client):
        response = client.get("/api/whatsapp/link-token")

        assert response.status_code == 405

    def test_store_failure_is_500(self, client, monkeypatch):
        def broken_issue(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("connection refused"))

        monkeypatch.setattr("spenly_whatsapp.main.issue_link_token", broken_issue)

        response = client.post("/api/whatsapp/link-token", json={"apple_user_id": "user-1"})

        assert response.status_code == 500
        assert "Failed to create token" in response.json()["detail"]


class TestTransactionsList:

    def test_requires_owner(self, client):
        response = client.get("/api/whatsapp/transactions")

        assert response.status_code == 400
        assert response.json() == {"detail": "apple_user_id is required"}

    def test_empty(self, client):
        response = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1"})

        assert response.status_code == 200
        assert response.json() == {"transactions": [], "count": 0}

    def test_owner_from_header(self, client, linked_phone, send_whatsapp):
        send_whatsapp("Coffee $5.50")

        response = client.get("/api/whatsapp/transactions", headers={"X-Apple-User-ID": "user-1"})

        assert response.json()["count"] == 1

    def test_post_not_allowed(self, client):
        response = client.post("/api/whatsapp/transactions", params={"apple_user_id": "user-1"})

        assert response.status_code == 405

    def test_newest_first_and_stable(self, client, linked_phone, send_whatsapp):
        send_whatsapp("Coffee $5.50")
        send_whatsapp("Lunch $15 12/25")

        first = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1"}).json()
        second = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1"}).json()

        assert [t["vendor"] for t in first["transactions"]] == ["Lunch", "Coffee"]
        assert first == second
        assert first["transactions"][0]["date"].endswith("-12-25")

    def test_limit_bounds(self, client):
        response = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1", "limit": 0})

        assert response.status_code == 422


class TestConfirm:

    def _pending_id(self, client, send_whatsapp):
        send_whatsapp("Coffee $5.50")
        data = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1"}).json()
        return data["transactions"][0]["id"]

    def test_confirm(self, client, linked_phone, send_whatsapp):
        transaction_id = self._pending_id(client, send_whatsapp)

        response = client.post(
            f"/api/whatsapp/transactions/{transaction_id}/confirm",
            params={"apple_user_id": "user-1"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "success"}
        data = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1"}).json()
        assert data["count"] == 0

    def test_confirm_twice(self, client, linked_phone, send_whatsapp):
        transaction_id = self._pending_id(client, send_whatsapp)
        url = f"/api/whatsapp/transactions/{transaction_id}/confirm"
        client.post(url, headers={"X-Apple-User-ID": "user-1"})

        response = client.post(url, headers={"X-Apple-User-ID": "user-1"})

        assert response.status_code == 404
        assert response.json() == {"detail": "Transaction not found or already synced"}

    def test_confirm_other_owner(self, client, linked_phone, send_whatsapp):
        transaction_id = self._pending_id(client, send_whatsapp)

        response = client.post(
            f"/api/whatsapp/transactions/{transaction_id}/confirm",
            params={"apple_user_id": "someone-else"},
        )

        assert response.status_code == 404
        data = client.get("/api/whatsapp/transactions", params={"apple_user_id": "user-1"}).json()
        assert data["count"] == 1

    def test_confirm_requires_owner(self, client):
        response = client.post("/api/whatsapp/transactions/1/confirm")

        assert response.status_code == 400

    def test_confirm_invalid_id(self, client):
        response = client.post("/api/whatsapp/transactions/abc/confirm", params={"apple_user_id": "user-1"})

        assert response.status_code == 422


class TestLinkStatus:

    def test_not_linked(self, client):
        response = client.get("/api/whatsapp/status", params={"apple_user_id": "user-1"})

        assert response.status_code == 200
        assert response.json() == {"linked": False, "whatsapp_number": None, "linked_at": None}

    def test_linked_then_unlinked(self, client, linked_phone):
        status = client.get("/api/whatsapp/status", params={"apple_user_id": "user-1"}).json()
        assert status["linked"] is True
        assert status["linked_at"].endswith("Z")

        response = client.delete("/api/whatsapp/status", params={"apple_user_id": "user-1"})

        assert response.status_code == 200
        assert response.json() == {"message": "Account unlinked successfully"}
        status = client.get("/api/whatsapp/status", params={"apple_user_id": "user-1"}).json()
        assert status["linked"] is False


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_secret(self, make_client):
        client = make_client(TWILIO_WEBHOOK_VERIFY_TOKEN="")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_ready_in_explicit_unsigned_mode(self, make_client):
        client = make_client(TWILIO_WEBHOOK_VERIFY_TOKEN="", ALLOW_UNSIGNED_WEBHOOKS=True)

        assert client.get("/health/ready").status_code == 200


class TestMetrics:

    def test_webhook_outcomes_exposed(self, client, send_whatsapp):
        send_whatsapp("help")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'webhook_requests_total{intent="help",result="help"}' in response.text
        assert "http_requests_total" in response.text
