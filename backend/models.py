import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class LinkStatus:
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    ALL = (PENDING, PAID, EXPIRED, CANCELLED)
    TERMINAL = (PAID, EXPIRED, CANCELLED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Merchant(Base):
    __tablename__ = 'merchants'
    id = Column(String(36), primary_key=True, default=new_id)
    store_name = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=False)
    public_key = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class PaymentLink(Base):
    __tablename__ = 'payment_links'
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_links_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'expired', 'cancelled')",
            name="ck_payment_links_status",
        ),
    )
    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey('merchants.id', ondelete='CASCADE'), nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=LinkStatus.PENDING)
    payment_id = Column(String(64), nullable=True)
    payer_email = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    paid_at = Column(DateTime, nullable=True)

Index('ix_payment_links_merchant_id', PaymentLink.merchant_id)
Index('ix_payment_links_status', PaymentLink.status)
Index('ix_payment_links_created_at', PaymentLink.created_at)
Index('ix_payment_links_payment_id', PaymentLink.payment_id)


class PaymentNotification(Base):
    __tablename__ = 'payment_notifications'
    __table_args__ = (
        UniqueConstraint('link_id', 'gateway_notification_id', name='uq_payment_notifications_link_gateway_id'),
    )
    id = Column(String(36), primary_key=True, default=new_id)
    link_id = Column(String(36), ForeignKey('payment_links.id', ondelete='CASCADE'), nullable=False)
    gateway_notification_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

Index('ix_payment_notifications_link_id', PaymentNotification.link_id)
