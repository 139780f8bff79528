"""
Email Service - transactional emails rendered from Jinja2 templates.

Templates live in app/templates/emails/*.html and extend base.html.
Sending goes through smtplib in a worker thread. When SMTP_HOST is not set
the message is only logged, which is the normal mode for development and tests.

Email is a side channel: failures are logged and reported as False, never
raised into the business operation that triggered them.
"""
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateError

from app.config import settings

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates" / "emails"

# (filename, content, mime type)
Attachment = tuple[str, bytes, str]


def _format_amount(value) -> str:
    return f"{float(value or 0):,.2f} {settings.currency_label}".replace(",", " ")


class EmailService:
    """Render and send emails"""

    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        # Environment caches compiled templates
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["money"] = _format_amount

    def render(self, template: str, context: dict) -> str:
        return self.env.get_template(f"{template}.html").render(
            app_name="Sol Numérique",
            frontend_url=settings.frontend_url,
            **context,
        )

    async def send_email(
        self,
        to: str,
        subject: str,
        template: str,
        context: dict,
        attachments: Sequence[Attachment] = (),
    ) -> bool:
        """
        Render `template` and send it to `to`.

        Returns:
            True if handed to the SMTP server, False if disabled or failed
        """
        try:
            html = self.render(template, context)
        except TemplateError as e:
            logger.error(f"Failed to render email template '{template}': {e}")
            return False

        if not settings.email_enabled:
            logger.info(f"📧 Email disabled (no SMTP_HOST) - would send '{subject}' to {to}")
            return False

        message = EmailMessage()
        message["From"] = settings.email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content("Ce message nécessite un client compatible HTML.")
        message.add_alternative(html, subtype="html")
        for filename, content, mime_type in attachments:
            maintype, _, subtype = mime_type.partition("/")
            message.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"❌ Failed to send email '{subject}' to {to}: {e}")
            return False

        logger.info(f"📧 Email sent: '{subject}' to {to}")
        return True

    @staticmethod
    def _deliver(message: EmailMessage) -> None:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_password)
            smtp.send_message(message)

    # ============================================
    # Transactional messages
    # ============================================

    async def send_welcome_email(self, user) -> bool:
        return await self.send_email(
            to=user.email,
            subject="Bienvenue sur Sol Numérique !",
            template="welcome",
            context={"user": user},
        )

    async def send_sol_joined_email(self, user, sol, ordre: int) -> bool:
        return await self.send_email(
            to=user.email,
            subject=f'Vous avez rejoint le Sol "{sol.nom}"',
            template="sol_joined",
            context={"user": user, "sol": sol, "ordre": ordre},
        )

    async def send_new_participant_email(self, creator, sol, participant) -> bool:
        return await self.send_email(
            to=creator.email,
            subject=f'Nouveau participant dans "{sol.nom}"',
            template="new_participant",
            context={"creator": creator, "sol": sol, "participant": participant},
        )

    async def send_payment_confirmation(
        self,
        user,
        sol_name: str,
        amount: float,
        transaction_id: Optional[str],
        receipt_pdf: Optional[bytes] = None,
    ) -> bool:
        attachments = [("recu_paiement.pdf", receipt_pdf, "application/pdf")] if receipt_pdf else []
        return await self.send_email(
            to=user.email,
            subject=f'Paiement reçu pour le Sol "{sol_name}"',
            template="payment_confirmation",
            context={"user": user, "sol_name": sol_name, "amount": amount, "transaction_id": transaction_id},
            attachments=attachments,
        )

    async def send_payment_validated_email(self, user, sol_name: str, payment) -> bool:
        return await self.send_email(
            to=user.email,
            subject=f'Votre paiement a été validé pour "{sol_name}"',
            template="payment_validated",
            context={"user": user, "sol_name": sol_name, "payment": payment},
        )

    async def send_payment_failed(self, user, reason: str) -> bool:
        return await self.send_email(
            to=user.email,
            subject="Échec de votre paiement",
            template="payment_failed",
            context={"user": user, "reason": reason},
        )

    async def send_refund_email(self, user, amount: float) -> bool:
        return await self.send_email(
            to=user.email,
            subject="Votre paiement a été remboursé",
            template="refund",
            context={"user": user, "amount": amount},
        )

    async def send_your_turn_email(self, user, sol, tour_number: int, total_amount: float) -> bool:
        return await self.send_email(
            to=user.email,
            subject=f"C'est votre tour de recevoir dans \"{sol.nom}\" !",
            template="your_turn",
            context={"user": user, "sol": sol, "tour_number": tour_number, "total_amount": total_amount},
        )

    async def send_tour_completed_email(self, creator, sol, tour_number: int, beneficiary) -> bool:
        return await self.send_email(
            to=creator.email,
            subject=f'Tour {tour_number} terminé pour "{sol.nom}"',
            template="tour_completed",
            context={"creator": creator, "sol": sol, "tour_number": tour_number, "beneficiary": beneficiary},
        )

    async def send_sol_completed_email(self, user, sol) -> bool:
        return await self.send_email(
            to=user.email,
            subject=f'Le Sol "{sol.nom}" est terminé !',
            template="sol_completed",
            context={"user": user, "sol": sol},
        )

    async def send_receipt_email(self, user, payment, sol_name: str, receipt_pdf: bytes) -> bool:
        return await self.send_email(
            to=user.email,
            subject=f"Reçu de paiement #{payment.id} - {sol_name}",
            template="receipt",
            context={"user": user, "payment": payment, "sol_name": sol_name},
            attachments=[(f"recu_{payment.id}.pdf", receipt_pdf, "application/pdf")],
        )


# Singleton (templates compiled once per process)
_email_service_instance: EmailService | None = None


def get_email_service() -> EmailService:
    global _email_service_instance
    if _email_service_instance is None:
        _email_service_instance = EmailService()
    return _email_service_instance
