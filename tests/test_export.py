"""
Tests for CSV/PDF exports.
"""
import csv
import io
from datetime import datetime, timezone

import pytest

from app.core.exceptions import ValidationError
from app.services.export_service import parse_month, BOM
from app.services.pdf_service import PdfService
from tests.conftest import register_user, create_sol, join_sol, upload_receipt


def read_csv(response) -> list:
    text = response.content.decode("utf-8")
    assert text.startswith(BOM)
    return list(csv.reader(io.StringIO(text[len(BOM):]), delimiter=";"))


@pytest.fixture
def payments(client, admin, member):
    """Member's sol with one validated (member) and one uploaded (Jean) payment."""
    jean = register_user(client, "jean@example.com", firstname="Jean")
    sol = create_sol(client, member["headers"], montant_par_periode=250.5)
    creator_participation = client.get("/api/sols/my-sols", headers=member["headers"]).json()[0]
    jean_participation = join_sol(client, jean["headers"], sol["id"])

    validated = upload_receipt(client, member["headers"], creator_participation["participation_id"]).json()["payment"]
    client.post(
        f"/api/admin/receipts/{validated['id']}/validate",
        json={"status": "validated"},
        headers=admin["headers"],
    )
    uploaded = upload_receipt(client, jean["headers"], jean_participation["participation_id"]).json()["payment"]
    return {"sol": sol, "jean": jean, "validated": validated, "uploaded": uploaded}


class TestExportOptions:
    def test_member_options(self, client, member):
        response = client.get("/api/export/options", headers=member["headers"])

        data = response.json()
        assert data["formats"] == ["csv", "pdf"]
        assert data["can_export_all"] is False
        assert {"value": "validated", "label": "Validé"} in data["statuses"]

    def test_admin_can_export_all(self, client, admin):
        response = client.get("/api/export/options", headers=admin["headers"])

        assert response.json()["can_export_all"] is True


class TestPaymentsCsv:
    """Tests for GET /api/export/payments/csv"""

    def test_admin_exports_every_payment(self, client, admin, payments):
        response = client.get("/api/export/payments/csv", headers=admin["headers"])

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        today = datetime.now().strftime("%Y-%m-%d")
        assert f'filename="paiements_{today}.csv"' in response.headers["content-disposition"]

        rows = read_csv(response)
        assert rows[0][0] == "ID"
        assert rows[0][5].startswith("Montant")
        assert len(rows) == 3
        emails = {row[3] for row in rows[1:]}
        assert emails == {"marie@example.com", "jean@example.com"}
        assert all(row[5] == "250.50" for row in rows[1:])

    def test_member_only_gets_own_payments(self, client, payments):
        jean = payments["jean"]

        # asking for someone else's payments is ignored for members
        response = client.get("/api/export/payments/csv", params={"user_id": 1}, headers=jean["headers"])

        rows = read_csv(response)
        assert len(rows) == 2
        assert rows[1][3] == "jean@example.com"

    def test_status_filter(self, client, admin, payments):
        response = client.get("/api/export/payments/csv", params={"status": "validated"}, headers=admin["headers"])

        rows = read_csv(response)
        assert [int(row[0]) for row in rows[1:]] == [payments["validated"]["id"]]
        assert rows[1][7] == "Validé"
        assert rows[1][10] != ""  # validated by

    def test_pdf_export(self, client, admin, payments):
        response = client.get("/api/export/payments/pdf", headers=admin["headers"])

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF")


class TestSolExports:
    """Tests for the per-sol exports"""

    def test_participants_csv(self, client, member, payments):
        sol_id = payments["sol"]["id"]

        response = client.get(f"/api/export/sols/{sol_id}/participants/csv", headers=member["headers"])

        assert response.status_code == 200
        rows = read_csv(response)
        assert [row[0] for row in rows[1:]] == ["1", "2"]
        creator_row, jean_row = rows[1], rows[2]
        assert creator_row[4] == "Validé"
        assert creator_row[7] == "250.50"  # paid
        assert creator_row[8] == "0.00"  # nothing due
        assert jean_row[7] == "0.00"  # uploaded receipts are not counted yet
        assert jean_row[8] == "250.50"

    def test_participants_csv_forbidden_for_outsiders(self, client, payments):
        outsider = register_user(client, "luc@example.com", firstname="Luc")

        response = client.get(
            f"/api/export/sols/{payments['sol']['id']}/participants/csv", headers=outsider["headers"]
        )

        assert response.status_code == 403

    def test_monthly_report(self, client, member, payments):
        month = datetime.now(timezone.utc).strftime("%Y-%m")

        response = client.get(
            f"/api/export/sols/{payments['sol']['id']}/monthly-report",
            params={"month": month},
            headers=member["headers"],
        )

        assert response.status_code == 200
        assert response.content.startswith(b"%PDF")
        assert f"rapport_sol_{payments['sol']['id']}_{month}.pdf" in response.headers["content-disposition"]

    def test_monthly_report_bad_month(self, client, member, payments):
        response = client.get(
            f"/api/export/sols/{payments['sol']['id']}/monthly-report",
            params={"month": "2024-13"},
            headers=member["headers"],
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid month format. Expected YYYY-MM"

    def test_monthly_report_requires_month(self, client, member, payments):
        response = client.get(f"/api/export/sols/{payments['sol']['id']}/monthly-report", headers=member["headers"])

        assert response.status_code == 400


class TestParseMonth:
    def test_regular_month(self):
        assert parse_month("2024-03") == (datetime(2024, 3, 1), datetime(2024, 4, 1))

    def test_december_rolls_over(self):
        assert parse_month("2024-12") == (datetime(2024, 12, 1), datetime(2025, 1, 1))

    @pytest.mark.parametrize("month", ["", "2024-3", "2024/03", "2024-00", "march"])
    def test_invalid(self, month):
        with pytest.raises(ValidationError):
            parse_month(month)


class TestPdfReceipt:
    def test_receipt_is_a_pdf(self):
        pdf = PdfService.generate_receipt({
            "payment_id": 7,
            "member_name": "Marie Joseph",
            "member_email": "marie@example.com",
            "sol_name": "Sol Famille",
            "amount": 250.5,
            "method": "stripe",
            "date": datetime(2024, 3, 15, 10, 30),
            "ordre": 1,
            "transaction_id": "pi_123",
        })

        assert pdf.startswith(b"%PDF")
