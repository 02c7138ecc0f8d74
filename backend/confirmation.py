"""Payment confirmation.

Three channels report the outcome of a payment: the synchronous response
to ``submit_payment``, the payer polling ``poll_status`` and the gateway
webhook handled by ``handle_notification``. All of them end in
``apply_gateway_payment``, which only moves a link to ``paid`` through the
lifecycle manager's conditional update, so a link is paid at most once
however many channels report the same approval.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from config import AMOUNT_TOLERANCE, POLL_REFRESH_FROM_GATEWAY, WEBHOOK_URL
from errors import (
    AlreadyPaidError,
    AmountMismatchError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from gateway import REJECTED, STATEMENT_DESCRIPTOR_MAX, GatewayPayment, PixData, rejection_message
from links import LinkLifecycleManager
from models import LinkStatus, Merchant, PaymentLink

logger = structlog.get_logger(__name__)


@dataclass
class ConfirmationResult:
    status: str
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    status_detail: Optional[str] = None
    rejection_reason: Optional[str] = None
    pix: Optional[PixData] = None
    newly_paid: bool = False

    def to_dict(self) -> dict:
        payload = {
            "status": self.status,
            "payment_id": self.payment_id,
            "payment_method": self.payment_method,
            "detail": self.status_detail,
        }
        if self.rejection_reason:
            payload["rejection_reason"] = self.rejection_reason
        if self.pix:
            payload["pix_qr_code"] = self.pix.qr_code
            payload["pix_qr_code_base64"] = self.pix.qr_code_base64
            payload["pix_ticket_url"] = self.pix.ticket_url
        return payload


def notification_payment_id(envelope: Optional[dict], query: Optional[dict] = None) -> Optional[str]:
    """Extract the gateway payment id from a webhook body or its legacy query string form."""
    envelope = envelope if isinstance(envelope, dict) else {}
    query = query or {}

    kind = envelope.get("type") or envelope.get("topic") or query.get("type") or query.get("topic")
    if kind != "payment":
        return None

    data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
    payment_id = data.get("id") or query.get("data.id") or query.get("id")
    if payment_id is None or str(payment_id).strip() == "":
        return None
    return str(payment_id).strip()


class PaymentConfirmationBridge:
    def __init__(
        self,
        db: Session,
        gateway,
        manager: Optional[LinkLifecycleManager] = None,
        webhook_url: Optional[str] = WEBHOOK_URL,
        amount_tolerance: Decimal = AMOUNT_TOLERANCE,
        refresh_on_poll: bool = POLL_REFRESH_FROM_GATEWAY,
    ):
        self.db = db
        self.gateway = gateway
        self.manager = manager or LinkLifecycleManager(db)
        self.webhook_url = webhook_url
        self.amount_tolerance = amount_tolerance
        self.refresh_on_poll = refresh_on_poll

    def _merchant_for(self, link: PaymentLink) -> Merchant:
        merchant = self.db.query(Merchant).filter(Merchant.id == link.merchant_id).first()
        if not merchant:
            raise NotFoundError("Merchant not found")
        return merchant

    def _check_amount(self, link: PaymentLink, reported):
        if reported is None:
            raise ValidationError("transaction_amount is required", field="transaction_amount")
        try:
            reported = Decimal(str(reported))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("transaction_amount must be a number", field="transaction_amount")
        if not reported.is_finite() or abs(reported - Decimal(link.amount)) >= self.amount_tolerance:
            logger.warning(
                "payment_amount_mismatch",
                link_id=link.id,
                expected=str(link.amount),
                reported=str(reported),
            )
            raise AmountMismatchError(
                "Payment amount %s does not match link amount %s" % (reported, link.amount)
            )

    def submit_payment(self, link_id: Optional[str], payment_data: Optional[dict]) -> ConfirmationResult:
        if not link_id or not isinstance(payment_data, dict) or not payment_data:
            raise ValidationError("link_id and payment_data are required")

        link = self.manager.get_link(link_id)
        if link.status == LinkStatus.PAID:
            raise AlreadyPaidError("This payment link has already been paid")
        if link.status != LinkStatus.PENDING:
            raise InvalidStateError("Payment link is %s" % link.status, status=link.status)
        self._check_amount(link, payment_data.get("transaction_amount"))

        merchant = self._merchant_for(link)
        request = dict(payment_data)
        request.update(
            {
                "transaction_amount": Decimal(link.amount),
                "description": link.description,
                "external_reference": link.id,
                "statement_descriptor": merchant.store_name[:STATEMENT_DESCRIPTOR_MAX],
                "notification_url": self.webhook_url,
                "metadata": {"link_id": link.id, "merchant_id": merchant.id},
            }
        )

        payment = self.gateway.create_payment(merchant.access_token, request)
        return self.apply_gateway_payment(link, payment, source="checkout")

    def apply_gateway_payment(self, link: PaymentLink, payment: GatewayPayment, source: str) -> ConfirmationResult:
        result = ConfirmationResult(
            status=payment.status,
            payment_id=payment.payment_id,
            payment_method=payment.payment_method,
            status_detail=payment.status_detail,
            pix=payment.pix,
        )
        log = logger.bind(link_id=link.id, payment_id=payment.payment_id, source=source)

        if payment.is_approved:
            try:
                result.newly_paid = self.manager.mark_paid(
                    link.id,
                    payment.payment_id,
                    payment.payer_email,
                    payment.payment_method,
                    payload=payment.raw or None,
                )
            except InvalidStateError as ex:
                log.warning(
                    "approved_payment_on_closed_link",
                    link_status=ex.status,
                    payer_email=payment.payer_email,
                    amount=str(payment.transaction_amount),
                )
                raise
            log.info("payment_approved", newly_paid=result.newly_paid)
        elif payment.is_tracked:
            self.manager.track_payment(link.id, payment.payment_id, payment.payer_email, payment.payment_method)
            log.info("payment_pending", status=payment.status)
        else:
            if payment.status == REJECTED:
                result.rejection_reason = rejection_message(payment.status_detail)
            log.info("payment_not_approved", status=payment.status, status_detail=payment.status_detail)
        return result

    def poll_status(self, link_id: Optional[str]) -> dict:
        link = self.manager.get_link(link_id)

        if self.refresh_on_poll and link.status == LinkStatus.PENDING and link.payment_id:
            try:
                merchant = self._merchant_for(link)
                payment = self.gateway.get_payment(merchant.access_token, link.payment_id)
                self._apply_verified(link, payment, source="poll")
            except (GatewayError, InvalidStateError) as ex:
                logger.warning("poll_refresh_failed", link_id=link.id, error=ex.description)
            link = self.manager.get_link(link.id)

        return {
            "status": link.status,
            "is_paid": link.status == LinkStatus.PAID,
            "payment_id": link.payment_id,
            "payment_method": link.payment_method,
        }

    def _apply_verified(self, link: PaymentLink, payment: GatewayPayment, source: str) -> Optional[ConfirmationResult]:
        if payment.external_reference and payment.external_reference != link.id:
            logger.warning(
                "payment_reference_mismatch",
                link_id=link.id,
                payment_id=payment.payment_id,
                external_reference=payment.external_reference,
                source=source,
            )
            return None
        return self.apply_gateway_payment(link, payment, source=source)

    def handle_notification(self, envelope: Optional[dict], query: Optional[dict] = None) -> bool:
        """Process one gateway notification. Returns True when it was applied to a link.

        The notification body only names a payment; its status is always
        re-fetched from the gateway with the owning merchant's credentials.
        """
        payment_id = notification_payment_id(envelope, query)
        if not payment_id:
            logger.info("webhook_ignored", reason="not_a_payment_notification")
            return False

        link = self.manager.find_by_payment_id(payment_id)
        if not link:
            logger.info("webhook_ignored", reason="unknown_payment", payment_id=payment_id)
            return False
        link = self.manager.get_link(link.id)
        if link.status == LinkStatus.PAID:
            logger.info("webhook_ignored", reason="already_paid", link_id=link.id, payment_id=payment_id)
            return False
        if link.status != LinkStatus.PENDING:
            logger.warning("webhook_ignored", reason="link_" + link.status, link_id=link.id, payment_id=payment_id)
            return False

        merchant = self._merchant_for(link)
        payment = self.gateway.get_payment(merchant.access_token, payment_id)
        return self._apply_verified(link, payment, source="webhook") is not None
