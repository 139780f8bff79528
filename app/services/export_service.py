"""
Export Service - CSV and PDF downloads.

CSV files are written for spreadsheet users: ';' delimiter, UTF-8 with a BOM
(so Excel picks the right encoding), French headers, dd/mm/YYYY dates and
amounts with two decimals.
"""
import asyncio
import csv
import io
import re
from datetime import datetime
from typing import Optional, List
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, case

from app.config import settings
from app.core.exceptions import ValidationError
from app.db.models import (
    User, SolStatus, Participation, Payment, COUNTED_PAYMENT_STATUSES,
)
from app.services.payment_service import PaymentService
from app.services.pdf_service import PdfService, METHOD_LABELS, format_date, status_label
from app.services.sol_service import SolService

logger = logging.getLogger(__name__)

CSV_DELIMITER = ";"
BOM = "\ufeff"
MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")

TOUR_STATUS_LABELS = {
    "en_attente": "En attente",
    "paye": "Payé",
    "valide": "Validé",
    "complete": "Complété",
}

PAYMENT_FILTER_KEYS = ("user_id", "sol_id", "status", "method", "start_date", "end_date")


def _value(v) -> str:
    return v.value if hasattr(v, "value") else str(v or "")


def _amount(value) -> str:
    return f"{float(value or 0):.2f}"


def _write_csv(header: List[str], rows: List[list]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=CSV_DELIMITER, lineterminator="\r\n")
    writer.writerow(header)
    writer.writerows(rows)
    return BOM + buffer.getvalue()


def parse_month(month: str) -> tuple[datetime, datetime]:
    """
    "YYYY-MM" -> [first day of month, first day of next month)

    Raises:
        ValidationError: bad format or month out of range
    """
    if not month or not MONTH_PATTERN.match(month):
        raise ValidationError("Invalid month format. Expected YYYY-MM")
    year, mon = int(month[:4]), int(month[5:])
    if not 1 <= mon <= 12:
        raise ValidationError("Invalid month format. Expected YYYY-MM")
    start = datetime(year, mon, 1)
    end = datetime(year + 1, 1, 1) if mon == 12 else datetime(year, mon + 1, 1)
    return start, end


class ExportService:
    """Build export files"""

    @staticmethod
    async def _payments(db: AsyncSession, filters: dict) -> List[dict]:
        return await PaymentService.search_payments(
            db, **{k: filters.get(k) for k in PAYMENT_FILTER_KEYS}
        )

    @staticmethod
    async def export_payments_csv(db: AsyncSession, filters: Optional[dict] = None) -> str:
        payments = await ExportService._payments(db, filters or {})
        currency = settings.currency_label

        header = [
            "ID", "Date", "Membre", "Email", "Sol", f"Montant ({currency})", "Méthode",
            "Statut", "Tour", "Date validation", "Validé par",
        ]
        rows = [
            [
                p["id"],
                format_date(p["created_at"]),
                p["member_name"],
                p["member_email"],
                p["sol_name"],
                _amount(p["amount"]),
                METHOD_LABELS.get(_value(p["method"]), _value(p["method"])),
                status_label(p["status"]),
                p["tour_number"],
                format_date(p["validated_at"]) if p["validated_at"] else "",
                p["validated_by_name"] or "",
            ]
            for p in payments
        ]
        logger.info(f"📊 Payments CSV export: {len(rows)} row(s)")
        return _write_csv(header, rows)

    @staticmethod
    async def export_payments_pdf(db: AsyncSession, filters: Optional[dict] = None) -> bytes:
        filters = filters or {}
        payments = await ExportService._payments(db, filters)
        # ReportLab layout is CPU bound; keep it off the event loop
        return await asyncio.to_thread(PdfService.generate_payments_report, payments, filters)

    @staticmethod
    async def export_sol_participants_csv(db: AsyncSession, sol_id: int) -> str:
        sol = await SolService.get_sol_or_404(db, sol_id)
        currency = settings.currency_label

        result = await db.execute(
            select(
                Participation,
                User,
                func.count(Payment.id),
                func.coalesce(func.sum(
                    case((Payment.status.in_(COUNTED_PAYMENT_STATUSES), Payment.amount), else_=0)
                ), 0),
            )
            .join(User, User.id == Participation.user_id)
            .outerjoin(Payment, Payment.participation_id == Participation.id)
            .where(Participation.sol_id == sol_id)
            .group_by(Participation.id, User.id)
            .order_by(Participation.ordre)
        )
        rows_data = result.all()

        # tours already due: all of them once the sol is over
        tours_due = len(rows_data) if sol.statut == SolStatus.COMPLETED else (sol.tour_actuel or 1)
        expected = float(sol.montant_par_periode or 0) * tours_due

        header = [
            "Tour", "Membre", "Email", "Téléphone", "Statut", "Date inscription",
            "Nb paiements", f"Total payé ({currency})", f"Montant dû ({currency})",
        ]
        rows = [
            [
                participation.ordre,
                user.full_name,
                user.email,
                user.phone or "",
                TOUR_STATUS_LABELS.get(_value(participation.statut_tour), _value(participation.statut_tour)),
                format_date(participation.created_at),
                payments_count,
                _amount(total_paid),
                _amount(max(expected - float(total_paid or 0), 0)),
            ]
            for participation, user, payments_count, total_paid in rows_data
        ]
        return _write_csv(header, rows)

    @staticmethod
    async def generate_monthly_report(db: AsyncSession, sol_id: int, month: str) -> bytes:
        start, end = parse_month(month)
        sol = await SolService.get_sol_or_404(db, sol_id)

        payments = await PaymentService.search_payments(db, sol_id=sol_id, start_date=start, end_date=end)
        participants = await SolService.get_participants(db, sol_id)
        sol_data = {
            "nom": sol.nom,
            "montant_par_periode": sol.montant_par_periode,
            "frequence": _value(sol.frequence),
            "tour_actuel": sol.tour_actuel,
        }
        return await asyncio.to_thread(
            PdfService.generate_monthly_report, sol_data, month, payments, participants
        )
