"""
Stripe integration: payment intents and webhook events.

The gateway is a thin object around ``stripe.StripeClient`` so routes can have
it injected (and tests can swap in a fake). Webhook payloads are verified with
the shared signing secret before anything in them is trusted.
"""
import json
import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

import stripe
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from errors import PaymentProviderError, ValidationError, WebhookSignatureError

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "rwf")
STRIPE_TIMEOUT = float(os.getenv("STRIPE_TIMEOUT", "10"))
WEBHOOK_TOLERANCE = 300  # seconds

ORDER_ID_METADATA_KEY = "orderId"


class PaymentIntent(BaseModel):
    id: str
    status: str
    amount: int
    client_secret: Optional[str] = None
    last_payment_error: Optional[str] = None

    @property
    def is_live(self) -> bool:
        """Whether the client can still confirm against this intent."""
        return self.status not in ("canceled", "succeeded")


class StripeGateway:
    def __init__(
        self,
        api_key: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.currency = currency or STRIPE_CURRENCY
        self.client = stripe.StripeClient(
            api_key or STRIPE_SECRET_KEY,
            http_client=stripe.RequestsClient(timeout=timeout or STRIPE_TIMEOUT),
        )

    def create_payment_intent(self, amount: int, order_id: str, idempotency_key: str) -> PaymentIntent:
        if amount <= 0:
            raise ValidationError("Invalid amount")
        try:
            intent = self.client.payment_intents.create(
                params={
                    "amount": amount,
                    "currency": self.currency,
                    "automatic_payment_methods": {"enabled": True},
                    "metadata": {ORDER_ID_METADATA_KEY: order_id},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            logger.error("Stripe rejected payment intent for order %s: %s", order_id, e)
            raise PaymentProviderError(e.user_message or str(e)) from e
        return _to_payment_intent(intent)

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        try:
            intent = self.client.payment_intents.retrieve(intent_id)
        except stripe.StripeError as e:
            logger.error("Could not retrieve payment intent %s: %s", intent_id, e)
            raise PaymentProviderError(e.user_message or str(e)) from e
        return _to_payment_intent(intent)

    def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        try:
            intent = self.client.payment_intents.cancel(intent_id)
        except stripe.StripeError as e:
            logger.error("Could not cancel payment intent %s: %s", intent_id, e)
            raise PaymentProviderError(e.user_message or str(e)) from e
        return _to_payment_intent(intent)


def _to_payment_intent(intent: Any) -> PaymentIntent:
    error = getattr(intent, "last_payment_error", None)
    try:
        return PaymentIntent(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            client_secret=intent.client_secret,
            last_payment_error=getattr(error, "message", None) if error else None,
        )
    except PydanticValidationError as e:
        logger.error("Unexpected payment intent from provider: %s", e)
        raise PaymentProviderError("Unexpected payment intent from provider") from e


# Webhook events

class PaymentEventKind(str, Enum):
    SUCCEEDED = "payment_intent.succeeded"
    FAILED = "payment_intent.payment_failed"
    CANCELED = "payment_intent.canceled"
    IGNORED = "ignored"

    @classmethod
    def from_type(cls, event_type: str) -> "PaymentEventKind":
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.IGNORED
        return kind


class _EventData(BaseModel):
    object: Dict[str, Any]


class _EventEnvelope(BaseModel):
    id: str
    type: str
    data: _EventData


class PaymentEvent(BaseModel):
    id: str
    type: str
    kind: PaymentEventKind
    intent_id: Optional[str] = None
    order_id: Optional[str] = None


def verify_webhook(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> PaymentEvent:
    """Check the Stripe-Signature header and parse the event envelope.

    Raises WebhookSignatureError when the header or secret is missing or the
    signature does not match; nothing in the payload is looked at before that.
    """
    secret = secret or STRIPE_WEBHOOK_SECRET
    if not signature or not secret:
        raise WebhookSignatureError("Missing signature or webhook secret")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, signature, secret, WEBHOOK_TOLERANCE)
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
        raise WebhookSignatureError(str(e)) from e

    try:
        envelope = _EventEnvelope.model_validate(json.loads(body))
    except (ValueError, PydanticValidationError) as e:
        raise ValidationError(f"Malformed event payload: {e}") from e

    kind = PaymentEventKind.from_type(envelope.type)
    obj = envelope.data.object
    metadata = obj.get("metadata") or {}
    return PaymentEvent(
        id=envelope.id,
        type=envelope.type,
        kind=kind,
        intent_id=obj.get("id") if kind is not PaymentEventKind.IGNORED else None,
        order_id=metadata.get(ORDER_ID_METADATA_KEY) or None,
    )
