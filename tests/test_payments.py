"""
Tests for offline receipts, Stripe checkout and the Stripe webhook.

Stripe is never called: checkout sessions come from a fake service injected
through dependency_overrides, and webhooks are posted unsigned (development
mode without STRIPE_WEBHOOK_SECRET).
"""
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest

from app.config import settings
from app.core.exceptions import ValidationError
from app.main import app
from app.services.payment_service import PaymentService
from app.services.sol_service import SolService
from app.services.storage_service import StorageService
from app.services.stripe_service import StripeService, get_stripe_service, to_cents
from tests.conftest import make_user, register_user, login_admin, create_sol, join_sol, upload_receipt


class FakeStripeService(StripeService):
    """Returns canned sessions and refunds instead of calling Stripe"""

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", webhook_secret="", currency="eur")
        self.sessions = []
        self.refunds = []

    async def create_checkout_session(self, amount, participation_id, user_id, sol_name, user_email):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({"amount": amount, "participation_id": participation_id, "user_id": user_id})
        return {"session_id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    async def retrieve_session(self, session_id):
        return SimpleNamespace(id=session_id, status="complete", payment_status="paid")

    async def refund_payment(self, payment_intent_id, amount=None):
        self.refunds.append({"payment_intent": payment_intent_id, "amount": amount})
        return SimpleNamespace(id=f"re_test_{len(self.refunds)}", status="pending")


@pytest.fixture
def fake_stripe(client):
    service = FakeStripeService()
    app.dependency_overrides[get_stripe_service] = lambda: service
    yield service
    app.dependency_overrides.pop(get_stripe_service, None)


@pytest.fixture
def sol_setup(client, member):
    """Sol created by `member` with Jean as participant #2."""
    jean = register_user(client, "jean@example.com", firstname="Jean")
    sol = create_sol(client, member["headers"])
    creator_participation = client.get("/api/sols/my-sols", headers=member["headers"]).json()[0]
    jean_participation = join_sol(client, jean["headers"], sol["id"])
    return {
        "sol": sol,
        "jean": jean,
        "creator_participation_id": creator_participation["participation_id"],
        "jean_participation_id": jean_participation["participation_id"],
    }


def post_event(client, event_type: str, obj: dict):
    return client.post("/api/payments/webhook", json={
        "id": f"evt_{event_type.replace('.', '_')}",
        "type": event_type,
        "data": {"object": obj},
    })


# ============================================
# Offline receipts
# ============================================

class TestUploadReceipt:
    """Tests for POST /api/payments/upload-receipt"""

    def test_upload_creates_uploaded_payment(self, client, sol_setup):
        jean = sol_setup["jean"]

        response = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"])

        assert response.status_code == 201
        payment = response.json()["payment"]
        assert payment["status"] == "uploaded"
        assert payment["method"] == "offline"
        assert payment["tour_number"] == 1
        assert float(payment["amount"]) == 100.0
        assert payment["receipt_path"].endswith(".pdf")

    def test_rejects_unsupported_file_type(self, client, sol_setup):
        jean = sol_setup["jean"]

        response = client.post(
            "/api/payments/upload-receipt",
            data={"participation_id": str(sol_setup["jean_participation_id"])},
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=jean["headers"],
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid file type. Only JPEG, PNG and PDF are allowed."

    def test_rejects_oversized_file(self, client, sol_setup, monkeypatch):
        monkeypatch.setattr(settings, "max_receipt_size", 32)
        jean = sol_setup["jean"]

        response = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"], content=b"%PDF-1.4 " + b"x" * 200)

        assert response.status_code == 400
        assert response.json()["error"].startswith("File size exceeds limit")
        assert client.get("/api/payments/history", headers=jean["headers"]).json() == []

    def test_second_receipt_for_same_tour_conflicts(self, client, sol_setup):
        jean = sol_setup["jean"]
        upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"])

        response = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"])

        assert response.status_code == 409

    def test_cannot_pay_for_someone_else(self, client, sol_setup):
        jean = sol_setup["jean"]

        response = upload_receipt(client, jean["headers"], sol_setup["creator_participation_id"])

        assert response.status_code == 404

    def test_new_receipt_allowed_after_rejection(self, client, admin, sol_setup):
        jean = sol_setup["jean"]
        payment = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"]).json()["payment"]
        client.post(
            f"/api/admin/receipts/{payment['id']}/validate",
            json={"status": "rejected", "notes": "Reçu illisible"},
            headers=admin["headers"],
        )

        response = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"])

        assert response.status_code == 201


class TestPaymentAccess:
    """Tests for payment lookups and receipt downloads"""

    def test_history_and_detail(self, client, sol_setup):
        jean = sol_setup["jean"]
        payment = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"]).json()["payment"]

        history = client.get("/api/payments/history", headers=jean["headers"]).json()
        assert [p["id"] for p in history] == [payment["id"]]
        assert history[0]["sol_name"] == "Sol Famille"

        detail = client.get(f"/api/payments/{payment['id']}", headers=jean["headers"])
        assert detail.status_code == 200
        assert detail.json()["member_email"] == "jean@example.com"

    def test_history_status_filter(self, client, sol_setup):
        jean = sol_setup["jean"]
        upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"])

        response = client.get("/api/payments/history", params={"status": "validated"}, headers=jean["headers"])

        assert response.json() == []

    def test_other_member_cannot_see_payment(self, client, member, sol_setup):
        jean = sol_setup["jean"]
        payment = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"]).json()["payment"]

        assert client.get(f"/api/payments/{payment['id']}", headers=member["headers"]).status_code == 403
        assert client.get(f"/api/payments/{payment['id']}/receipt", headers=member["headers"]).status_code == 403

    def test_owner_downloads_receipt(self, client, sol_setup):
        jean = sol_setup["jean"]
        payment = upload_receipt(
            client, jean["headers"], sol_setup["jean_participation_id"], content=b"%PDF-1.4 jean"
        ).json()["payment"]

        response = client.get(f"/api/payments/{payment['id']}/receipt", headers=jean["headers"])

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 jean"

    def test_admin_downloads_receipt(self, client, admin, sol_setup):
        jean = sol_setup["jean"]
        payment = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"]).json()["payment"]

        response = client.get(f"/api/payments/{payment['id']}/receipt", headers=admin["headers"])

        assert response.status_code == 200


# ============================================
# Stripe checkout
# ============================================

class TestStripeCheckout:
    """Tests for POST /api/payments/stripe/create-session"""

    def test_unconfigured_stripe_returns_503(self, client, sol_setup):
        jean = sol_setup["jean"]

        response = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": sol_setup["jean_participation_id"]},
            headers=jean["headers"],
        )

        assert response.status_code == 503

    def test_create_session_records_pending_payment(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]

        response = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": sol_setup["jean_participation_id"]},
            headers=jean["headers"],
        )

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "cs_test_1"
        assert data["url"].startswith("https://checkout.stripe.com/")
        assert fake_stripe.sessions[0]["amount"] == 100.0  # defaults to the sol amount

        payment = client.get(f"/api/payments/{data['payment_id']}", headers=jean["headers"]).json()
        assert payment["status"] == "pending"
        assert payment["method"] == "stripe"
        assert payment["stripe_session_id"] == "cs_test_1"

    def test_create_session_for_foreign_participation(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]

        response = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": sol_setup["creator_participation_id"]},
            headers=jean["headers"],
        )

        assert response.status_code == 404
        assert fake_stripe.sessions == []

    def test_session_status_for_owner(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        created = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": sol_setup["jean_participation_id"]},
            headers=jean["headers"],
        ).json()

        response = client.get(f"/api/payments/stripe/session/{created['session_id']}", headers=jean["headers"])

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "complete"
        assert data["payment_status"] == "paid"
        assert data["payment"]["id"] == created["payment_id"]

    def test_session_status_hidden_from_other_members(self, client, fake_stripe, member, sol_setup):
        jean = sol_setup["jean"]
        created = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": sol_setup["jean_participation_id"]},
            headers=jean["headers"],
        ).json()

        response = client.get(f"/api/payments/stripe/session/{created['session_id']}", headers=member["headers"])

        assert response.status_code == 404
        assert client.get("/api/payments/stripe/session/cs_unknown", headers=jean["headers"]).status_code == 404


# ============================================
# Stripe webhook
# ============================================

class TestStripeWebhook:
    """Tests for POST /api/payments/webhook"""

    def _checkout(self, client, fake_stripe, member_headers, participation_id):
        response = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": participation_id},
            headers=member_headers,
        )
        return response.json()

    def test_checkout_completed_marks_payment_completed(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        session = self._checkout(client, fake_stripe, jean["headers"], sol_setup["jean_participation_id"])

        response = post_event(client, "checkout.session.completed", {
            "id": session["session_id"],
            "payment_intent": "pi_test_1",
            "amount_total": 10000,
            "metadata": {"participationId": str(sol_setup["jean_participation_id"])},
        })

        assert response.status_code == 200
        assert response.json() == {"received": True}

        payment = client.get(f"/api/payments/{session['payment_id']}", headers=jean["headers"]).json()
        assert payment["status"] == "completed"
        assert payment["stripe_payment_intent_id"] == "pi_test_1"
        assert payment["receipt_path"].startswith("recu-")

        receipt = client.get(f"/api/payments/{session['payment_id']}/receipt", headers=jean["headers"])
        assert receipt.status_code == 200
        assert receipt.content.startswith(b"%PDF")

        participants = client.get(f"/api/sols/{sol_setup['sol']['id']}/participants", headers=jean["headers"]).json()
        jean_row = next(p for p in participants if p["user_id"] == jean["id"])
        assert jean_row["statut_tour"] == "paye"

    def test_checkout_completed_is_idempotent(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        session = self._checkout(client, fake_stripe, jean["headers"], sol_setup["jean_participation_id"])
        event = {"id": session["session_id"], "payment_intent": "pi_test_1", "amount_total": 10000, "metadata": {}}

        post_event(client, "checkout.session.completed", event)
        response = post_event(client, "checkout.session.completed", event)

        assert response.status_code == 200
        history = client.get("/api/payments/history", headers=jean["headers"]).json()
        assert len(history) == 1
        assert history[0]["status"] == "completed"

    def test_checkout_completed_without_known_session_uses_metadata(self, client, sol_setup):
        jean = sol_setup["jean"]

        post_event(client, "checkout.session.completed", {
            "id": "cs_unknown",
            "payment_intent": "pi_test_2",
            "amount_total": 10000,
            "metadata": {"participationId": str(sol_setup["jean_participation_id"])},
        })

        history = client.get("/api/payments/history", headers=jean["headers"]).json()
        assert len(history) == 1
        assert history[0]["status"] == "completed"
        assert float(history[0]["amount"]) == 100.0

    def test_both_stripe_payments_advance_tour(self, client, fake_stripe, member, sol_setup):
        jean = sol_setup["jean"]
        for headers, participation_id, intent in (
            (member["headers"], sol_setup["creator_participation_id"], "pi_a"),
            (jean["headers"], sol_setup["jean_participation_id"], "pi_b"),
        ):
            session = self._checkout(client, fake_stripe, headers, participation_id)
            post_event(client, "checkout.session.completed", {
                "id": session["session_id"], "payment_intent": intent, "amount_total": 10000, "metadata": {},
            })

        sol = client.get(f"/api/sols/{sol_setup['sol']['id']}", headers=member["headers"]).json()
        assert sol["tour_actuel"] == 2

    def test_payment_failed_marks_pending_payment(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        session = self._checkout(client, fake_stripe, jean["headers"], sol_setup["jean_participation_id"])

        post_event(client, "payment_intent.payment_failed", {
            "id": "pi_failed",
            "last_payment_error": {"message": "Your card was declined."},
            "metadata": {"participationId": str(sol_setup["jean_participation_id"])},
        })

        payment = client.get(f"/api/payments/{session['payment_id']}", headers=jean["headers"]).json()
        assert payment["status"] == "failed"
        assert payment["notes"] == "Your card was declined."

    def test_charge_refunded(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        session = self._checkout(client, fake_stripe, jean["headers"], sol_setup["jean_participation_id"])
        post_event(client, "checkout.session.completed", {
            "id": session["session_id"], "payment_intent": "pi_refund", "amount_total": 10000, "metadata": {},
        })

        post_event(client, "charge.refunded", {"id": "ch_1", "payment_intent": "pi_refund", "amount_refunded": 10000})

        payment = client.get(f"/api/payments/{session['payment_id']}", headers=jean["headers"]).json()
        assert payment["status"] == "refunded"
        participants = client.get(f"/api/sols/{sol_setup['sol']['id']}/participants", headers=jean["headers"]).json()
        jean_row = next(p for p in participants if p["user_id"] == jean["id"])
        assert jean_row["statut_tour"] == "en_attente"

    def test_unhandled_event_type_is_acknowledged(self, client):
        response = post_event(client, "customer.created", {"id": "cus_1"})

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_handler_failure_is_rolled_back_but_acknowledged(self, client, sol_setup):
        jean = sol_setup["jean"]

        response = post_event(client, "checkout.session.completed", {
            "id": "cs_broken",
            "metadata": {"participationId": "not-a-number"},
        })

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert client.get("/api/payments/history", headers=jean["headers"]).json() == []

    def test_invalid_json_payload(self, client):
        response = client.post(
            "/api/payments/webhook",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid webhook payload"


class TestStripeRefund:
    """Tests for POST /api/admin/payments/{id}/refund"""

    def _paid_by_card(self, client, jean_headers, participation_id, intent="pi_paid"):
        session = client.post(
            "/api/payments/stripe/create-session",
            json={"participation_id": participation_id},
            headers=jean_headers,
        ).json()
        post_event(client, "checkout.session.completed", {
            "id": session["session_id"], "payment_intent": intent, "amount_total": 10000, "metadata": {},
        })
        return session["payment_id"]

    def test_refund_waits_for_webhook(self, client, admin, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        payment_id = self._paid_by_card(client, jean["headers"], sol_setup["jean_participation_id"])

        response = client.post(f"/api/admin/payments/{payment_id}/refund", json={}, headers=admin["headers"])

        assert response.status_code == 200, response.text
        assert response.json()["refund_id"] == "re_test_1"
        assert fake_stripe.refunds == [{"payment_intent": "pi_paid", "amount": None}]
        assert client.get(f"/api/payments/{payment_id}", headers=jean["headers"]).json()["status"] == "completed"

        post_event(client, "charge.refunded", {"id": "ch_paid", "payment_intent": "pi_paid", "amount_refunded": 10000})

        assert client.get(f"/api/payments/{payment_id}", headers=jean["headers"]).json()["status"] == "refunded"

    def test_partial_refund_above_payment(self, client, admin, fake_stripe, sol_setup):
        payment_id = self._paid_by_card(client, sol_setup["jean"]["headers"], sol_setup["jean_participation_id"])

        response = client.post(
            f"/api/admin/payments/{payment_id}/refund", json={"amount": 150}, headers=admin["headers"],
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Refund amount exceeds the payment amount"
        assert fake_stripe.refunds == []

    def test_offline_payment_cannot_be_refunded(self, client, admin, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        payment = upload_receipt(client, jean["headers"], sol_setup["jean_participation_id"]).json()["payment"]

        response = client.post(f"/api/admin/payments/{payment['id']}/refund", json={}, headers=admin["headers"])

        assert response.status_code == 400
        assert response.json()["error"] == "Only Stripe payments can be refunded"

    def test_members_cannot_refund(self, client, fake_stripe, sol_setup):
        jean = sol_setup["jean"]
        payment_id = self._paid_by_card(client, jean["headers"], sol_setup["jean_participation_id"])

        response = client.post(f"/api/admin/payments/{payment_id}/refund", json={}, headers=jean["headers"])

        assert response.status_code == 403


class TestReceiptStorageCleanup:
    """PaymentService.upload_receipt against an in-memory database"""

    @pytest.mark.asyncio
    async def test_failed_insert_removes_stored_file(self, test_db, tmp_path, monkeypatch):
        async with test_db() as db:
            creator = await make_user(db, "creator@example.com")
            sol = await SolService.create_sol(db, {
                "nom": "Sol Test", "montant_par_periode": 20, "frequence": "mensuel",
            }, creator)
            participation = await SolService.get_participation(db, sol.id, creator.id)
            storage = StorageService(base_dir=str(tmp_path))

            async def failing_flush(*args, **kwargs):
                raise RuntimeError("database unavailable")

            monkeypatch.setattr(db, "flush", failing_flush)

            with pytest.raises(RuntimeError):
                await PaymentService.upload_receipt(
                    db, creator, participation.id, "recu.pdf", b"%PDF-1.4 receipt", "application/pdf", storage
                )

            assert [p for p in tmp_path.rglob("*") if p.is_file()] == []


class TestWebhookSignature:
    """Tests for StripeService.construct_event with a webhook secret"""

    SECRET = "whsec_test_secret"

    def _sign(self, payload: str, timestamp: int = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload}".encode("utf-8")
        signature = hmac.new(self.SECRET.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    def test_valid_signature(self):
        service = StripeService(secret_key="", webhook_secret=self.SECRET)
        payload = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

        event = service.construct_event(payload.encode("utf-8"), self._sign(payload))

        assert event["type"] == "charge.refunded"
        assert event["data"]["object"]["id"] == "ch_1"

    def test_invalid_signature(self):
        service = StripeService(secret_key="", webhook_secret=self.SECRET)
        payload = json.dumps({"id": "evt_1", "type": "charge.refunded"})

        with pytest.raises(ValidationError) as exc_info:
            service.construct_event(payload.encode("utf-8"), "t=1,v1=deadbeef")

        assert exc_info.value.message == "Invalid signature"

    def test_missing_signature_header(self):
        service = StripeService(secret_key="", webhook_secret=self.SECRET)

        with pytest.raises(ValidationError):
            service.construct_event(b"{}", None)

    def test_tampered_payload(self):
        service = StripeService(secret_key="", webhook_secret=self.SECRET)
        payload = json.dumps({"id": "evt_1", "amount": 100})
        header = self._sign(payload)

        with pytest.raises(ValidationError):
            service.construct_event(json.dumps({"id": "evt_1", "amount": 1}).encode("utf-8"), header)


class TestToCents:
    def test_rounds_to_nearest_cent(self):
        assert to_cents(25.5) == 2550
        assert to_cents(19.99) == 1999
        assert to_cents(100) == 10000
