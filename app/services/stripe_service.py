"""
Stripe Service - thin async wrapper around the stripe SDK.

The SDK is synchronous, so every network call runs in a worker thread
(asyncio.to_thread) to keep the event loop free. Amounts are passed in
major units (e.g. 25.50) and converted to cents here.
"""
import asyncio
import json
import logging
from typing import Optional

import stripe

from app.config import settings
from app.core.exceptions import ExternalServiceError, ServiceUnavailableError, ValidationError

logger = logging.getLogger(__name__)


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


class StripeService:
    """Checkout sessions, webhook verification and refunds"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.currency = currency or settings.stripe_currency

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise ServiceUnavailableError("Online payments are not configured (STRIPE_SECRET_KEY missing)")

    async def create_checkout_session(
        self,
        amount: float,
        participation_id: int,
        user_id: int,
        sol_name: str,
        user_email: str,
    ) -> dict:
        """
        Create a one-off card Checkout Session for a sol contribution.

        Returns:
            {"session_id": ..., "url": ...}

        Raises:
            ServiceUnavailableError: Stripe not configured
            ExternalServiceError: Stripe API error
        """
        self._require_configured()

        metadata = {
            "participationId": str(participation_id),
            "userId": str(user_id),
            "solName": sol_name,
        }
        params = {
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": f"Paiement Sol - {sol_name}",
                        "description": f"Contribution au sol {sol_name}",
                    },
                    "unit_amount": to_cents(amount),
                },
                "quantity": 1,
            }],
            "mode": "payment",
            "success_url": f"{settings.frontend_url}/payments/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.frontend_url}/payments/cancel",
            "customer_email": user_email,
            "metadata": metadata,
            # copied onto the PaymentIntent so payment_intent.* events can be matched
            "payment_intent_data": {"metadata": metadata},
        }

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, api_key=self.secret_key, **params
            )
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe checkout session error: {e}")
            raise ExternalServiceError("Payment provider error while creating checkout session")

        logger.info(
            f"💳 Stripe checkout session created - session: {session.id}, "
            f"user: {user_id}, participation: {participation_id}, amount: {amount}"
        )
        return {"session_id": session.id, "url": session.url}

    async def retrieve_session(self, session_id: str):
        self._require_configured()
        try:
            return await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id, api_key=self.secret_key
            )
        except stripe.StripeError as e:
            logger.error(f"Error retrieving Stripe session {session_id}: {e}")
            raise ExternalServiceError("Payment provider error while retrieving session")

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> dict:
        """
        Verify and parse a webhook payload.

        In development without STRIPE_WEBHOOK_SECRET the JSON is parsed unverified
        (with a warning). In production the secret is mandatory.

        Raises:
            ValidationError: invalid payload or signature
        """
        if not self.webhook_secret:
            if settings.environment == "production":
                logger.error("STRIPE_WEBHOOK_SECRET not configured - rejecting webhook")
                raise ValidationError("Webhook secret not configured")
            logger.warning("⚠️  STRIPE_WEBHOOK_SECRET not set - accepting unverified webhook (development only)")
            try:
                return json.loads(payload)
            except json.JSONDecodeError:
                raise ValidationError("Invalid webhook payload")

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header or "", self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("❌ Invalid Stripe webhook signature - potential security threat")
            raise ValidationError("Invalid signature")

        # handlers work on plain dicts, not StripeObject
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            raise ValidationError("Invalid webhook payload")

    async def refund_payment(self, payment_intent_id: str, amount: Optional[float] = None):
        """Full refund by default, partial when amount is given."""
        self._require_configured()
        params = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_cents(amount)
        try:
            refund = await asyncio.to_thread(stripe.Refund.create, api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe refund error for {payment_intent_id}: {e}")
            raise ExternalServiceError("Payment provider error while refunding")

        logger.info(f"🔄 Stripe refund created - refund: {refund.id}, intent: {payment_intent_id}")
        return refund


def get_stripe_service() -> StripeService:
    """FastAPI dependency / factory."""
    return StripeService()
