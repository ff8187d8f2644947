import hashlib
import hmac
import json
import logging
from typing import Optional

from ledger.errors import ConfigError, InvalidSignature, LedgerServiceError

from .engine import GrantEngine

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def _object_at(event: dict, *path: str) -> dict:
    node = event
    for key in path:
        if key not in node:
            return {}
        node = node[key]
        if not isinstance(node, dict):
            raise LedgerServiceError(f"Webhook field {key} must be an object", kind="INVALID_PAYLOAD")
    return node


def _to_int(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise LedgerServiceError(f"Payment note {field} must be an integer, got {value!r}", kind="INVALID_PAYLOAD") from e


class PaymentWebhookHandler:
    """Turns signed payment-gateway notifications into purchase grants.

    The payment id is the idempotency key: a redelivered notification is
    acknowledged without crediting again.
    """

    def __init__(self, engine: GrantEngine, secret: Optional[str]):
        self.engine = engine
        self.secret = secret

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self.secret:
            raise ConfigError("Server configuration error: PAYMENT_WEBHOOK_SECRET is missing")
        expected = sign_payload(raw_body, self.secret)
        if not signature or not hmac.compare_digest(expected, signature):
            logger.error("Invalid webhook signature")
            raise InvalidSignature("Invalid signature")

    def handle(self, raw_body: bytes, signature: Optional[str]) -> dict:
        self.verify(raw_body, signature)
        try:
            event = json.loads(raw_body)
        except json.JSONDecodeError as e:
            raise LedgerServiceError("Webhook body is not valid JSON", kind="INVALID_PAYLOAD") from e

        if not isinstance(event, dict):
            raise LedgerServiceError("Webhook body must be a JSON object", kind="INVALID_PAYLOAD")
        if event.get("event") not in CAPTURE_EVENTS:
            return {"status": "ignored"}

        payment = _object_at(event, "payload", "payment", "entity")
        notes = payment.get("notes") or {}
        if not isinstance(notes, dict):
            raise LedgerServiceError("Payment notes must be an object", kind="INVALID_PAYLOAD")
        account_id = notes.get("userId")
        credits = notes.get("credits")
        if not account_id or not credits or not payment.get("id"):
            logger.error("Missing metadata in payment notes: %s", notes)
            return {"status": "ok", "warning": "Metadata missing"}

        entry = self.engine.purchase(
            account_id=account_id,
            payment_id=payment["id"],
            pack_name=notes.get("packName", "Credit Pack"),
            credits=_to_int(credits, "credits"),
            price=_to_int(notes.get("price") or 0, "price"),
            is_plan=notes.get("type") == "plan",
        )
        if entry is None:
            return {"status": "ok", "duplicate": True}
        return {"status": "ok", "entry_id": entry.id}
