import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Optional

import mercadopago
from mercadopago.config import RequestOptions
import structlog

from errors import GatewayError

logger = structlog.get_logger(__name__)

APPROVED = "approved"
PENDING = "pending"
IN_PROCESS = "in_process"
REJECTED = "rejected"
TRACKED_STATUSES = (PENDING, IN_PROCESS)

REJECTION_MESSAGES = {
    "cc_rejected_bad_filled_card_number": "Invalid card number",
    "cc_rejected_bad_filled_date": "Invalid expiration date",
    "cc_rejected_bad_filled_security_code": "Invalid security code",
    "cc_rejected_blacklist": "Card not authorized",
    "cc_rejected_call_for_authorize": "Payment not authorized. Contact your bank",
    "cc_rejected_card_disabled": "Card disabled",
    "cc_rejected_card_error": "Card error. Try another payment method",
    "cc_rejected_duplicated_payment": "Duplicated payment",
    "cc_rejected_high_risk": "Payment declined for security reasons",
    "cc_rejected_insufficient_amount": "Insufficient balance",
    "cc_rejected_invalid_installments": "Invalid number of installments",
    "cc_rejected_max_attempts": "Attempt limit exceeded",
    "cc_rejected_other_reason": "Payment declined. Try another card",
}
DEFAULT_REJECTION_MESSAGE = "Payment not authorized. Please try again or use another payment method."

UPSTREAM_ERROR_MESSAGES = {
    400: "Invalid payment data",
    401: "Invalid Mercado Pago credentials",
    404: "Payment method not found",
    429: "Too many attempts. Wait a moment",
}
STATEMENT_DESCRIPTOR_MAX = 22


def rejection_message(status_detail: Optional[str]) -> str:
    return REJECTION_MESSAGES.get(status_detail or "", DEFAULT_REJECTION_MESSAGE)


def normalize_payment_method(payment: dict) -> Optional[str]:
    payment_type = payment.get("payment_type_id")
    if payment_type == "bank_transfer":
        return "pix"
    if payment_type in ("credit_card", "debit_card"):
        return payment_type
    return payment.get("payment_method_id")


@dataclass
class PixData:
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None


@dataclass
class GatewayPayment:
    payment_id: str
    status: str
    status_detail: Optional[str] = None
    payer_email: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    external_reference: Optional[str] = None
    pix: Optional[PixData] = None
    raw: Dict = field(default_factory=dict)

    @property
    def is_approved(self) -> bool:
        return self.status == APPROVED

    @property
    def is_tracked(self) -> bool:
        return self.status in TRACKED_STATUSES

    @classmethod
    def from_response(cls, payment: dict) -> "GatewayPayment":
        transaction_data = (payment.get("point_of_interaction") or {}).get("transaction_data") or {}
        pix = None
        if transaction_data.get("qr_code") or transaction_data.get("ticket_url"):
            pix = PixData(
                qr_code=transaction_data.get("qr_code"),
                qr_code_base64=transaction_data.get("qr_code_base64"),
                ticket_url=transaction_data.get("ticket_url"),
            )
        amount = payment.get("transaction_amount")
        return cls(
            payment_id=str(payment.get("id")),
            status=payment.get("status") or "",
            status_detail=payment.get("status_detail"),
            payer_email=(payment.get("payer") or {}).get("email"),
            payment_method=normalize_payment_method(payment),
            transaction_amount=Decimal(str(amount)) if amount is not None else None,
            external_reference=payment.get("external_reference") or None,
            pix=pix,
            raw=payment,
        )


def build_payment_request(payment_data: dict) -> dict:
    payer = payment_data.get("payer") or {}
    request = {
        "transaction_amount": float(payment_data["transaction_amount"]),
        "description": payment_data.get("description") or "Payment",
        "payment_method_id": payment_data.get("payment_method_id"),
        "payer": {
            "email": payer.get("email") or payment_data.get("payer_email"),
            "first_name": payer.get("first_name"),
            "last_name": payer.get("last_name"),
            "identification": payer.get("identification"),
        },
        "external_reference": payment_data.get("external_reference"),
        "statement_descriptor": payment_data.get("statement_descriptor"),
        "notification_url": payment_data.get("notification_url"),
        "metadata": payment_data.get("metadata") or {},
    }
    if payment_data.get("token") and payment_data.get("payment_method_id") != "pix":
        request["token"] = payment_data["token"]
        request["installments"] = payment_data.get("installments") or 1
        if payer.get("address"):
            request["payer"]["address"] = payer["address"]
    if payment_data.get("issuer_id"):
        request["issuer_id"] = payment_data["issuer_id"]
    request["payer"] = {key: value for key, value in request["payer"].items() if value is not None}
    return {key: value for key, value in request.items() if value is not None}


def upstream_error(status: Optional[int], body) -> GatewayError:
    body = body if isinstance(body, dict) else {}
    description = UPSTREAM_ERROR_MESSAGES.get(status) or body.get("message") or "Error processing payment"
    if status == 400:
        causes = body.get("cause") or []
        if causes and isinstance(causes[0], dict) and causes[0].get("description"):
            description = causes[0]["description"]
    return GatewayError(description, upstream_status=status, cause=body or None)


class MercadoPagoGateway:
    """Thin wrapper over the Mercado Pago SDK, one SDK instance per merchant credential."""

    def __init__(self, sdk_factory: Callable = mercadopago.SDK):
        self.sdk_factory = sdk_factory

    def _call(self, operation: str, call) -> dict:
        try:
            result = call()
        except Exception as ex:
            logger.error("gateway_call_failed", operation=operation, error=str(ex), error_type=type(ex).__name__)
            raise GatewayError("Payment gateway unavailable", cause=ex) from ex

        status = result.get("status") if isinstance(result, dict) else None
        body = result.get("response") if isinstance(result, dict) else None
        if status is None or not (200 <= status <= 299) or not isinstance(body, dict):
            error = upstream_error(status, body)
            logger.error(
                "gateway_error_response",
                operation=operation,
                upstream_status=status,
                description=error.description,
            )
            raise error
        return body

    def create_payment(self, access_token: str, payment_data: dict) -> GatewayPayment:
        request = build_payment_request(payment_data)
        sdk = self.sdk_factory(access_token)
        request_options = RequestOptions(
            custom_headers={"x-idempotency-key": str(uuid.uuid4())}
        )
        logger.info(
            "gateway_create_payment",
            amount=request["transaction_amount"],
            method=request.get("payment_method_id"),
            external_reference=request.get("external_reference"),
        )
        body = self._call("create_payment", lambda: sdk.payment().create(request, request_options))
        payment = GatewayPayment.from_response(body)
        logger.info(
            "gateway_payment_created",
            payment_id=payment.payment_id,
            status=payment.status,
            status_detail=payment.status_detail,
        )
        return payment

    def get_payment(self, access_token: str, payment_id) -> GatewayPayment:
        sdk = self.sdk_factory(access_token)
        body = self._call("get_payment", lambda: sdk.payment().get(payment_id))
        return GatewayPayment.from_response(body)
