"""
Tests for the admin API: dashboard, payment review, payouts, users and reports.
"""
from datetime import datetime

import pytest

from tests.conftest import register_user, create_sol, join_sol, upload_receipt, ADMIN_EMAIL, DEFAULT_PASSWORD


@pytest.fixture
def uploaded(client, admin, member):
    """Jean joined member's sol and uploaded a receipt for tour 1."""
    jean = register_user(client, "jean@example.com", firstname="Jean")
    sol = create_sol(client, member["headers"])
    participation = join_sol(client, jean["headers"], sol["id"])
    payment = upload_receipt(client, jean["headers"], participation["participation_id"]).json()["payment"]
    return {"jean": jean, "sol": sol, "payment": payment}


class TestDashboard:
    """Tests for GET /api/admin/dashboard-stats"""

    def test_dashboard_counts(self, client, admin, uploaded):
        response = client.get("/api/admin/dashboard-stats", headers=admin["headers"])

        assert response.status_code == 200
        stats = response.json()
        assert stats["total_users"] == 3  # admin, member, jean
        assert stats["active_sols"] == 1
        assert stats["pending_receipts"] == 1
        assert stats["validated_payments"] == 0
        assert stats["total_collected"] == 0

    def test_dashboard_alias(self, client, admin):
        response = client.get("/api/admin/dashboard", headers=admin["headers"])

        assert response.status_code == 200
        assert "active_sols" in response.json()


class TestPaymentReview:
    """Tests for receipt validation and rejection"""

    def test_pending_receipts(self, client, admin, uploaded):
        response = client.get("/api/admin/receipts/pending", headers=admin["headers"])

        assert [p["id"] for p in response.json()] == [uploaded["payment"]["id"]]
        assert response.json()[0]["member_name"] == "Jean Joseph"

    def test_reject_receipt(self, client, admin, uploaded):
        response = client.post(
            f"/api/admin/receipts/{uploaded['payment']['id']}/validate",
            json={"status": "rejected", "notes": "Montant incorrect"},
            headers=admin["headers"],
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Receipt rejected successfully"
        assert data["payment"]["status"] == "rejected"
        assert data["payment"]["notes"] == "Montant incorrect"
        assert data["tour_result"] is None

    def test_validate_marks_participation(self, client, admin, uploaded):
        response = client.post(
            f"/api/admin/receipts/{uploaded['payment']['id']}/validate",
            json={"status": "validated"},
            headers=admin["headers"],
        )

        assert response.status_code == 200
        payment = response.json()["payment"]
        assert payment["status"] == "validated"
        assert payment["validated_by"] == admin["id"]

        participants = client.get(
            f"/api/sols/{uploaded['sol']['id']}/participants", headers=uploaded["jean"]["headers"]
        ).json()
        jean_row = next(p for p in participants if p["user_id"] == uploaded["jean"]["id"])
        assert jean_row["statut_tour"] == "valide"

    def test_bad_review_status(self, client, admin, uploaded):
        response = client.post(
            f"/api/admin/receipts/{uploaded['payment']['id']}/validate",
            json={"status": "maybe"},
            headers=admin["headers"],
        )

        assert response.status_code == 400

    def test_cannot_review_twice(self, client, admin, uploaded):
        url = f"/api/admin/receipts/{uploaded['payment']['id']}/validate"
        client.post(url, json={"status": "validated"}, headers=admin["headers"])

        response = client.post(url, json={"status": "rejected"}, headers=admin["headers"])

        assert response.status_code == 400
        assert response.json()["error"] == "Only uploaded offline receipts can be reviewed"

    def test_put_validate_and_reject(self, client, admin, uploaded):
        response = client.put(
            f"/api/admin/payments/{uploaded['payment']['id']}/reject",
            json={"notes": "Doublon"},
            headers=admin["headers"],
        )
        assert response.status_code == 200
        assert response.json()["payment"]["status"] == "rejected"

        response = client.put(
            f"/api/admin/payments/{uploaded['payment']['id']}/validate",
            json={},
            headers=admin["headers"],
        )
        assert response.status_code == 400

    def test_unknown_payment(self, client, admin):
        response = client.put("/api/admin/payments/999/validate", json={}, headers=admin["headers"])

        assert response.status_code == 404
        assert response.json()["error"] == "Payment not found"

    def test_list_payments_filters(self, client, admin, uploaded):
        response = client.get(
            "/api/admin/payments",
            params={"status": "uploaded", "method": "offline", "sol_id": uploaded["sol"]["id"]},
            headers=admin["headers"],
        )

        assert [p["id"] for p in response.json()] == [uploaded["payment"]["id"]]

    def test_generate_receipt_without_smtp(self, client, admin, uploaded):
        response = client.post(
            "/api/admin/receipts/generate-receipt",
            json={"payment_id": uploaded["payment"]["id"]},
            headers=admin["headers"],
        )

        assert response.status_code == 200
        data = response.json()
        assert data["sent"] is False
        assert data["email"] == "jean@example.com"


class TestPayouts:
    """Tests for /api/admin/transfers"""

    def test_pending_transfers_and_complete(self, client, admin, member, uploaded):
        client.post(
            f"/api/admin/receipts/{uploaded['payment']['id']}/validate",
            json={"status": "validated"},
            headers=admin["headers"],
        )

        pending = client.get("/api/admin/transfers/pending", headers=admin["headers"]).json()
        assert len(pending) == 1
        assert pending[0]["beneficiary_id"] == member["id"]  # ordre 1 receives tour 1

        response = client.post(
            f"/api/admin/transfers/{uploaded['payment']['id']}/complete",
            json={"notes": "Payé en espèces"},
            headers=admin["headers"],
        )
        assert response.status_code == 200
        assert response.json()["payment"]["status"] == "completed"
        assert client.get("/api/admin/transfers/pending", headers=admin["headers"]).json() == []

    def test_complete_requires_validated_payment(self, client, admin, uploaded):
        response = client.post(
            f"/api/admin/transfers/{uploaded['payment']['id']}/complete",
            json={},
            headers=admin["headers"],
        )

        assert response.status_code == 400


class TestUserManagement:
    """Tests for /api/admin/users"""

    def test_list_users_with_sols_count(self, client, admin, uploaded):
        response = client.get("/api/admin/users", params={"search": "jean"}, headers=admin["headers"])

        assert response.status_code == 200
        users = response.json()
        assert [u["email"] for u in users] == ["jean@example.com"]
        assert users[0]["sols_count"] == 1

    def test_users_stats(self, client, admin, member):
        response = client.get("/api/admin/users/stats", headers=admin["headers"])

        data = response.json()
        assert data["total_users"] == 2
        assert data["admins"] == 1
        assert data["members"] == 1

    def test_user_detail(self, client, admin, uploaded):
        response = client.get(f"/api/admin/users/{uploaded['jean']['id']}", headers=admin["headers"])

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["email"] == "jean@example.com"
        assert len(data["participations"]) == 1
        assert [p["id"] for p in data["recent_payments"]] == [uploaded["payment"]["id"]]

    def test_create_admin_user(self, client, admin):
        response = client.post("/api/admin/users", json={
            "firstname": "Sophie",
            "lastname": "Laurent",
            "email": "sophie@example.com",
            "password": DEFAULT_PASSWORD,
            "role": "admin",
        }, headers=admin["headers"])

        assert response.status_code == 201
        assert response.json()["role"] == "admin"

        login = client.post("/api/auth/login", json={"email": "sophie@example.com", "password": DEFAULT_PASSWORD})
        assert login.status_code == 200

    def test_update_user_role(self, client, admin, member):
        response = client.put(f"/api/admin/users/{member['id']}", json={"role": "admin"}, headers=admin["headers"])

        assert response.status_code == 200
        assert response.json()["role"] == "admin"

    def test_cannot_deactivate_self(self, client, admin):
        response = client.patch(
            f"/api/admin/users/{admin['id']}/status",
            json={"is_active": False},
            headers=admin["headers"],
        )

        assert response.status_code == 400
        assert response.json()["error"] == "You cannot deactivate your own account"

    def test_reactivate_user(self, client, admin, member):
        url = f"/api/admin/users/{member['id']}/status"
        client.patch(url, json={"is_active": False}, headers=admin["headers"])

        response = client.patch(url, json={"is_active": True}, headers=admin["headers"])

        assert response.status_code == 200
        assert response.json()["is_active"] is True

    def test_delete_user_in_active_sol(self, client, admin, uploaded):
        response = client.delete(f"/api/admin/users/{uploaded['jean']['id']}", headers=admin["headers"])

        assert response.status_code == 400

    def test_delete_user(self, client, admin):
        luc = register_user(client, "luc@example.com", firstname="Luc")

        response = client.delete(f"/api/admin/users/{luc['id']}", headers=admin["headers"])

        assert response.status_code == 200
        login = client.post("/api/auth/login", json={"email": "luc@example.com", "password": DEFAULT_PASSWORD})
        assert login.status_code == 401

    def test_cannot_delete_self(self, client, admin):
        response = client.delete(f"/api/admin/users/{admin['id']}", headers=admin["headers"])

        assert response.status_code == 400


class TestReportsAndMaintenance:
    """Tests for reports, the tour sweep and the audit log"""

    def test_reports_summary(self, client, admin, uploaded):
        client.post(
            f"/api/admin/receipts/{uploaded['payment']['id']}/validate",
            json={"status": "validated"},
            headers=admin["headers"],
        )

        response = client.get("/api/admin/reports", headers=admin["headers"])

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["count"] == 1
        assert summary["validated_count"] == 1
        assert summary["validated_amount"] == 100.0

    def test_reports_date_range_excludes_payments(self, client, admin, uploaded):
        response = client.get(
            "/api/admin/reports",
            params={"startDate": "2000-01-01T00:00:00", "endDate": "2000-02-01T00:00:00"},
            headers=admin["headers"],
        )

        assert response.json()["summary"]["count"] == 0

    def test_export_report_csv(self, client, admin, uploaded):
        response = client.get("/api/admin/reports/export/csv", headers=admin["headers"])

        assert response.status_code == 200
        today = datetime.now().strftime("%Y-%m-%d")
        assert f"rapport_paiements_{today}.csv" in response.headers["content-disposition"]
        assert "jean@example.com" in response.content.decode("utf-8-sig")

    def test_export_report_unsupported_format(self, client, admin):
        response = client.get("/api/admin/reports/export/xlsx", headers=admin["headers"])

        assert response.status_code == 400

    def test_check_all_tours(self, client, admin, uploaded):
        response = client.post("/api/admin/tours/check-all", headers=admin["headers"])

        assert response.status_code == 200
        assert response.json()["checked"] == 1
        assert response.json()["advanced"] == 0

    def test_audit_logs(self, client, admin, uploaded):
        response = client.get("/api/admin/audit-logs", params={"action": "receipt_uploaded"}, headers=admin["headers"])

        assert response.status_code == 200
        logs = response.json()
        assert len(logs) == 1
        assert logs[0]["user_id"] == uploaded["jean"]["id"]
        assert logs[0]["details"]["paymentId"] == uploaded["payment"]["id"]


class TestMyAccount:
    """Tests for /api/users/me"""

    def test_me_and_stats(self, client, uploaded):
        jean = uploaded["jean"]

        me = client.get("/api/users/me", headers=jean["headers"])
        stats = client.get("/api/users/me/stats", headers=jean["headers"])

        assert me.json()["email"] == "jean@example.com"
        assert stats.status_code == 200
        assert stats.json()["total_sols"] == 1
        assert stats.json()["pending_payments"] == 1

    def test_set_bank_account(self, client, member):
        response = client.put(
            "/api/users/me/bank",
            json={"compte_bancaire": "HT76 0001 2345 6789 0123"},
            headers=member["headers"],
        )

        assert response.status_code == 200
        assert response.json()["compte_bancaire"] == "****0123"

    def test_admin_email_is_reserved(self, client, member):
        response = client.put("/api/users/me", json={"email": ADMIN_EMAIL}, headers=member["headers"])

        assert response.status_code == 409
