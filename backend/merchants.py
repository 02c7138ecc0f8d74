from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import NotFoundError, StorageError, ValidationError
from models import LinkStatus, Merchant, PaymentLink

logger = structlog.get_logger(__name__)

MIN_STORE_NAME_LENGTH = 3
MIN_CREDENTIAL_LENGTH = 10
CENTS = Decimal("0.01")


class MerchantRegistry:
    """Merchant setup and read access. Credentials are stored once at setup."""

    def __init__(self, db: Session):
        self.db = db

    def register(self, store_name: Optional[str], access_token: Optional[str], public_key: Optional[str]) -> Merchant:
        store_name = (store_name or "").strip()
        access_token = (access_token or "").strip()
        public_key = (public_key or "").strip()

        if not store_name or not access_token or not public_key:
            raise ValidationError("store_name, access_token and public_key are required")
        if len(store_name) < MIN_STORE_NAME_LENGTH:
            raise ValidationError(
                "store_name must have at least %d characters" % MIN_STORE_NAME_LENGTH, field="store_name"
            )
        if len(access_token) < MIN_CREDENTIAL_LENGTH:
            raise ValidationError("access_token is invalid", field="access_token")
        if len(public_key) < MIN_CREDENTIAL_LENGTH:
            raise ValidationError("public_key is invalid", field="public_key")

        merchant = Merchant(store_name=store_name, access_token=access_token, public_key=public_key)
        try:
            self.db.add(merchant)
            self.db.commit()
            self.db.refresh(merchant)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Could not register merchant", cause=exc) from exc

        logger.info("merchant_registered", merchant_id=merchant.id, store_name=merchant.store_name)
        return merchant

    def get(self, merchant_id: Optional[str]) -> Merchant:
        merchant = None
        if merchant_id:
            merchant = self.db.query(Merchant).filter(Merchant.id == merchant_id).first()
        if not merchant:
            raise NotFoundError("Merchant not found")
        return merchant

    def stats(self, merchant_id: str) -> dict:
        self.get(merchant_id)
        return link_stats(self.db, merchant_id)


def link_stats(db: Session, merchant_id: str) -> dict:
    paid = PaymentLink.status == LinkStatus.PAID
    row = (
        db.query(
            func.count(PaymentLink.id),
            func.coalesce(func.sum(case((paid, 1), else_=0)), 0),
            func.coalesce(func.sum(case((PaymentLink.status == LinkStatus.PENDING, 1), else_=0)), 0),
            func.coalesce(func.sum(case((paid, PaymentLink.amount), else_=0)), 0),
        )
        .filter(PaymentLink.merchant_id == merchant_id)
        .one()
    )
    return {
        "total": int(row[0] or 0),
        "paid": int(row[1] or 0),
        "pending": int(row[2] or 0),
        "total_received": Decimal(str(row[3] or 0)).quantize(CENTS),
    }


def public_profile(merchant: Merchant) -> dict:
    return {
        "id": merchant.id,
        "store_name": merchant.store_name,
        "public_key": merchant.public_key,
        "created_at": merchant.created_at,
    }
