"""Payment link lifecycle.

``LinkLifecycleManager`` is the only code allowed to change
``PaymentLink.status``. Every status write is a conditional update keyed on
``status = 'pending'``; the database row is the serialization point between
concurrent requests, so zero affected rows means another request already
moved the link out of ``pending``.

    pending -> paid        gateway reports approved
    pending -> cancelled   merchant cancels
    pending -> expired     link older than the expiry window
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import LINK_EXPIRY_DAYS
from errors import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from merchants import link_stats
from models import LinkStatus, Merchant, PaymentLink, PaymentNotification, utc_now

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


@dataclass
class LinkListing:
    links: List[PaymentLink] = field(default_factory=list)
    total: int = 0
    paid: int = 0
    pending: int = 0
    total_received: Decimal = Decimal("0.00")


def parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("amount must be a number", field="amount")
    if not amount.is_finite():
        raise ValidationError("amount must be a number", field="amount")
    amount = amount.quantize(CENTS)
    if amount <= 0:
        raise ValidationError("amount must be greater than zero", field="amount")
    return amount


class LinkLifecycleManager:
    def __init__(
        self,
        db: Session,
        expiry_window: timedelta = timedelta(days=LINK_EXPIRY_DAYS),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.expiry_window = expiry_window
        self.clock = clock

    def _expiry_cutoff(self) -> datetime:
        return self.clock() - self.expiry_window

    def _commit(self, what: str):
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Could not %s" % what, cause=exc) from exc

    def _conditional_update(self, link_id: str, values: dict, *criteria) -> int:
        try:
            return (
                self.db.query(PaymentLink)
                .filter(PaymentLink.id == link_id, PaymentLink.status == LinkStatus.PENDING, *criteria)
                .update(values, synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Could not update payment link", cause=exc) from exc

    def _load(self, link_id: Optional[str]) -> Optional[PaymentLink]:
        if not link_id:
            return None
        link = self.db.query(PaymentLink).filter(PaymentLink.id == link_id).first()
        if link is not None:
            self.db.refresh(link)
        return link

    def create_link(self, merchant_id: Optional[str], description: Optional[str], amount) -> PaymentLink:
        description = (description or "").strip()
        if not description:
            raise ValidationError("description is required", field="description")
        amount = parse_amount(amount)

        merchant = None
        if merchant_id:
            merchant = self.db.query(Merchant).filter(Merchant.id == merchant_id).first()
        if not merchant:
            raise NotFoundError("Merchant not found")

        link = PaymentLink(
            merchant_id=merchant.id,
            description=description,
            amount=amount,
            status=LinkStatus.PENDING,
            created_at=self.clock(),
        )
        self.db.add(link)
        self._commit("create payment link")
        self.db.refresh(link)

        logger.info("link_created", link_id=link.id, merchant_id=merchant.id, amount=str(amount))
        return link

    def get_link(self, link_id: Optional[str]) -> PaymentLink:
        """Read a link, expiring it first when it sat pending past the window."""
        link = self._load(link_id)
        if not link:
            raise NotFoundError("Payment link not found")

        if link.status == LinkStatus.PENDING and link.created_at < self._expiry_cutoff():
            changed = self._conditional_update(
                link.id,
                {PaymentLink.status: LinkStatus.EXPIRED},
                PaymentLink.created_at < self._expiry_cutoff(),
            )
            self._commit("expire payment link")
            if changed:
                logger.info("link_expired", link_id=link.id, merchant_id=link.merchant_id)
            self.db.refresh(link)
        return link

    def cancel_link(self, link_id: Optional[str], requester_merchant_id: Optional[str]):
        link = self.get_link(link_id)
        if link.merchant_id != requester_merchant_id:
            raise PermissionDeniedError("Not allowed to cancel this payment link")
        if link.status == LinkStatus.CANCELLED:
            return
        if link.status == LinkStatus.PAID:
            raise InvalidStateError("A paid payment link cannot be cancelled", status=link.status)

        changed = self._conditional_update(link.id, {PaymentLink.status: LinkStatus.CANCELLED})
        self._commit("cancel payment link")
        if changed:
            logger.info("link_cancelled", link_id=link.id, merchant_id=link.merchant_id)
            return

        self.db.refresh(link)
        if link.status == LinkStatus.CANCELLED:
            return
        raise InvalidStateError("Payment link can no longer be cancelled", status=link.status)

    def list_links(self, merchant_id: Optional[str]) -> LinkListing:
        merchant = None
        if merchant_id:
            merchant = self.db.query(Merchant).filter(Merchant.id == merchant_id).first()
        if not merchant:
            raise NotFoundError("Merchant not found")

        self.expire_stale_links(merchant_id=merchant.id)

        links = (
            self.db.query(PaymentLink)
            .filter(PaymentLink.merchant_id == merchant.id)
            .order_by(PaymentLink.created_at.desc(), PaymentLink.id.desc())
            .all()
        )
        stats = link_stats(self.db, merchant.id)
        return LinkListing(
            links=links,
            total=stats["total"],
            paid=stats["paid"],
            pending=stats["pending"],
            total_received=stats["total_received"],
        )

    def expire_stale_links(self, merchant_id: Optional[str] = None) -> int:
        """Expire every pending link older than the window. Returns the number of rows changed."""
        query = self.db.query(PaymentLink).filter(
            PaymentLink.status == LinkStatus.PENDING,
            PaymentLink.created_at < self._expiry_cutoff(),
        )
        if merchant_id:
            query = query.filter(PaymentLink.merchant_id == merchant_id)
        try:
            changed = query.update({PaymentLink.status: LinkStatus.EXPIRED}, synchronize_session=False)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Could not expire payment links", cause=exc) from exc
        self._commit("expire payment links")
        if changed:
            self.db.expire_all()
            logger.info("links_expired", count=changed, merchant_id=merchant_id)
        return changed

    def find_by_payment_id(self, payment_id) -> Optional[PaymentLink]:
        if payment_id is None or str(payment_id) == "":
            return None
        return (
            self.db.query(PaymentLink)
            .filter(PaymentLink.payment_id == str(payment_id))
            .order_by(PaymentLink.created_at.desc())
            .first()
        )

    def mark_paid(
        self,
        link_id: str,
        payment_id: str,
        payer_email: Optional[str],
        payment_method: Optional[str],
        payload: Optional[dict] = None,
    ) -> bool:
        """Move a pending link to paid and append its audit record.

        Returns False when the link was already paid, so repeated
        confirmations are no-ops. Raises InvalidStateError when the link
        was cancelled or expired in the meantime. A pending link past the
        expiry window is expired here rather than paid, the same outcome
        a read would have produced.
        """
        cutoff = self._expiry_cutoff()
        changed = self._conditional_update(
            link_id,
            {
                PaymentLink.status: LinkStatus.PAID,
                PaymentLink.payment_id: str(payment_id),
                PaymentLink.payer_email: payer_email,
                PaymentLink.payment_method: payment_method,
                PaymentLink.paid_at: self.clock(),
            },
            PaymentLink.created_at >= cutoff,
        )
        if changed:
            self.db.add(
                PaymentNotification(
                    link_id=link_id,
                    gateway_notification_id=str(payment_id),
                    status="approved",
                    payload=payload,
                )
            )
            self._commit("mark payment link as paid")
            logger.info("link_paid", link_id=link_id, payment_id=str(payment_id), payment_method=payment_method)
            return True

        self.db.rollback()
        link = self.get_link(link_id)
        if link.status == LinkStatus.PAID:
            if link.payment_id != str(payment_id):
                logger.warning(
                    "link_already_paid_by_other_payment",
                    link_id=link_id,
                    payment_id=str(payment_id),
                    settled_payment_id=link.payment_id,
                )
            return False
        raise InvalidStateError("Payment link is %s and cannot be paid" % link.status, status=link.status)

    def track_payment(
        self,
        link_id: str,
        payment_id: str,
        payer_email: Optional[str],
        payment_method: Optional[str] = None,
    ) -> bool:
        """Record a pending gateway payment on the link without touching its status."""
        values = {
            PaymentLink.payment_id: str(payment_id),
            PaymentLink.payer_email: payer_email,
        }
        if payment_method:
            values[PaymentLink.payment_method] = payment_method
        changed = self._conditional_update(link_id, values)
        self._commit("track payment")
        if changed:
            logger.info("payment_tracked", link_id=link_id, payment_id=str(payment_id))
        return bool(changed)
