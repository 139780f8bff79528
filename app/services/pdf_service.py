"""
PDF rendering with ReportLab.

Everything is built in memory (BytesIO) and returned as bytes; callers decide
whether to stream it, attach it to an email or store it.
"""
from io import BytesIO
from datetime import datetime
from typing import Iterable, Optional
import logging

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from app.config import settings

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "pending": "En attente",
    "uploaded": "Uploadé",
    "validated": "Validé",
    "rejected": "Rejeté",
    "completed": "Complété",
    "transferred": "Transféré",
    "failed": "Échoué",
    "refunded": "Remboursé",
}

METHOD_LABELS = {
    "stripe": "Carte (Stripe)",
    "offline": "Virement / reçu",
}

HEADER_COLOR = colors.HexColor("#2563eb")
GRID_COLOR = colors.HexColor("#d1d5db")
STRIPE_COLOR = colors.HexColor("#f3f4f6")


def _value(v) -> str:
    return v.value if hasattr(v, "value") else str(v or "")


def format_amount(amount) -> str:
    return f"{float(amount or 0):,.2f} {settings.currency_label}".replace(",", " ")


def format_date(value: Optional[datetime], with_time: bool = False) -> str:
    if not value:
        return "-"
    return value.strftime("%d/%m/%Y %H:%M" if with_time else "%d/%m/%Y")


def status_label(status) -> str:
    return STATUS_LABELS.get(_value(status), _value(status))


def _details_table(header: list, rows: list, col_widths: list) -> Table:
    table = Table([header] + rows, colWidths=col_widths, repeatRows=1)
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), HEADER_COLOR),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 8),
        ('GRID', (0, 0), (-1, -1), 0.5, GRID_COLOR),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, STRIPE_COLOR]),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
    ]))
    return table


def _summary_table(rows: list) -> Table:
    table = Table(rows, colWidths=[7 * cm, 6 * cm])
    table.setStyle(TableStyle([
        ('BOX', (0, 0), (-1, -1), 1, HEADER_COLOR),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ]))
    return table


class PdfService:
    """Receipts and reports"""

    @staticmethod
    def generate_receipt(data: dict) -> bytes:
        """
        Payment receipt.

        Args:
            data: payment_id, member_name, member_email, sol_name, amount,
                  method, date, ordre (optional), transaction_id (optional)
        """
        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=A4, title=f"Reçu {data['payment_id']}")
        styles = getSampleStyleSheet()

        elements = [
            Paragraph("<b>REÇU DE PAIEMENT - Sol Numérique</b>", styles["Title"]),
            Spacer(1, 0.8 * cm),
        ]

        rows = [
            ["Numéro de reçu", f"#{data['payment_id']}"],
            ["Membre", data.get("member_name", "")],
            ["Email", data.get("member_email", "")],
            ["Sol", data.get("sol_name", "")],
            ["Montant", format_amount(data.get("amount"))],
            ["Méthode", METHOD_LABELS.get(_value(data.get("method")), _value(data.get("method")))],
            ["Date", format_date(data.get("date"), with_time=True)],
        ]
        if data.get("ordre"):
            rows.append(["Position dans le sol", str(data["ordre"])])
        if data.get("transaction_id"):
            rows.append(["Transaction", data["transaction_id"]])

        table = Table(rows, colWidths=[6 * cm, 10 * cm])
        table.setStyle(TableStyle([
            ('GRID', (0, 0), (-1, -1), 1, colors.grey),
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('BACKGROUND', (0, 0), (0, -1), STRIPE_COLOR),
        ]))
        elements.append(table)
        elements.append(Spacer(1, 1 * cm))
        elements.append(Paragraph(
            f"Document généré le {format_date(datetime.now(), with_time=True)}",
            styles["Italic"],
        ))

        doc.build(elements)
        return buffer.getvalue()

    @staticmethod
    def generate_payments_report(payments: Iterable[dict], filters: Optional[dict] = None) -> bytes:
        """Payments listing: summary box then one row per payment."""
        payments = list(payments)
        filters = filters or {}

        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=landscape(A4), title="Rapport des paiements")
        styles = getSampleStyleSheet()

        elements = [
            Paragraph("<b>Rapport des paiements</b>", styles["Title"]),
            Paragraph(f"Généré le {format_date(datetime.now(), with_time=True)}", styles["Normal"]),
        ]
        active_filters = ", ".join(f"{k}: {v}" for k, v in filters.items() if v not in (None, ""))
        if active_filters:
            elements.append(Paragraph(f"Filtres : {active_filters}", styles["Normal"]))
        elements.append(Spacer(1, 0.5 * cm))

        total = sum(float(p["amount"] or 0) for p in payments)
        validated = [p for p in payments if _value(p["status"]) in ("validated", "completed", "transferred")]
        elements.append(_summary_table([
            ["Nombre de paiements", str(len(payments))],
            ["Montant total", format_amount(total)],
            ["Paiements validés", str(len(validated))],
            ["Montant validé", format_amount(sum(float(p["amount"] or 0) for p in validated))],
        ]))
        elements.append(Spacer(1, 0.7 * cm))

        header = ["ID", "Date", "Membre", "Sol", "Montant", "Méthode", "Statut", "Tour"]
        rows = [
            [
                str(p["id"]),
                format_date(p["created_at"]),
                p["member_name"],
                p["sol_name"],
                format_amount(p["amount"]),
                METHOD_LABELS.get(_value(p["method"]), _value(p["method"])),
                status_label(p["status"]),
                str(p["tour_number"]),
            ]
            for p in payments
        ]
        if rows:
            elements.append(_details_table(
                header, rows,
                [1.5 * cm, 2.5 * cm, 5 * cm, 5 * cm, 3.5 * cm, 3.5 * cm, 2.5 * cm, 1.5 * cm],
            ))
        else:
            elements.append(Paragraph("Aucun paiement pour ces critères.", styles["Normal"]))

        doc.build(elements)
        logger.info(f"📄 Payments report rendered ({len(payments)} rows)")
        return buffer.getvalue()

    @staticmethod
    def generate_monthly_report(sol: dict, month: str, payments: Iterable[dict], participants: Iterable[dict]) -> bytes:
        """
        Monthly report for one sol.

        Args:
            sol: nom, montant_par_periode, frequence, tour_actuel
            month: "YYYY-MM"
            payments: payment rows created in that month
            participants: participant rows (used for the expected amount)
        """
        payments = list(payments)
        participants = list(participants)

        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=A4, title=f"Rapport {sol['nom']} {month}")
        styles = getSampleStyleSheet()

        elements = [
            Paragraph(f"<b>Rapport mensuel - {sol['nom']}</b>", styles["Title"]),
            Paragraph(f"Période : {month}", styles["Heading2"]),
            Spacer(1, 0.5 * cm),
        ]

        collected = sum(float(p["amount"] or 0) for p in payments)
        validated = [p for p in payments if _value(p["status"]) in ("validated", "completed", "transferred")]
        pending = [p for p in payments if _value(p["status"]) in ("pending", "uploaded")]
        expected = float(sol["montant_par_periode"] or 0) * len(participants)

        elements.append(_summary_table([
            ["Nombre de paiements", str(len(payments))],
            ["Montant collecté", format_amount(collected)],
            ["Paiements validés", str(len(validated))],
            ["Paiements en attente", str(len(pending))],
            ["Montant attendu", format_amount(expected)],
            ["Tour actuel", str(sol.get("tour_actuel", "-"))],
        ]))
        elements.append(Spacer(1, 0.7 * cm))

        if payments:
            header = ["Date", "Membre", "Montant", "Méthode", "Statut", "Tour"]
            rows = [
                [
                    format_date(p["created_at"]),
                    p["member_name"],
                    format_amount(p["amount"]),
                    METHOD_LABELS.get(_value(p["method"]), _value(p["method"])),
                    status_label(p["status"]),
                    str(p["tour_number"]),
                ]
                for p in payments
            ]
            elements.append(_details_table(
                header, rows, [2.5 * cm, 5 * cm, 3 * cm, 3 * cm, 2.5 * cm, 1.5 * cm],
            ))
        else:
            elements.append(Paragraph("Aucun paiement enregistré ce mois-ci.", styles["Normal"]))

        doc.build(elements)
        return buffer.getvalue()
