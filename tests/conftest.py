import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WEBHOOK_MODE"] = "inline"
os.environ.pop("WEBHOOK_URL", None)

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import get_db
from errors import GatewayError
from gateway import GatewayPayment, PixData
from links import LinkLifecycleManager
from models import Base, Merchant


def make_payment(
    status,
    payment_id="MP123",
    status_detail=None,
    external_reference=None,
    payment_method="credit_card",
    payer_email="payer@example.com",
    amount=None,
    pix=None,
):
    raw = {"id": payment_id, "status": status, "status_detail": status_detail}
    return GatewayPayment(
        payment_id=str(payment_id),
        status=status,
        status_detail=status_detail,
        payer_email=payer_email,
        payment_method=payment_method,
        transaction_amount=Decimal(str(amount)) if amount is not None else None,
        external_reference=external_reference,
        pix=pix,
        raw=raw,
    )


def make_pix_payment(status="pending", payment_id="MP-PIX-1", external_reference=None):
    return make_payment(
        status,
        payment_id=payment_id,
        status_detail="pending_waiting_transfer",
        external_reference=external_reference,
        payment_method="pix",
        pix=PixData(qr_code="000201010212", qr_code_base64="iVBORw0KGgo=", ticket_url="https://mp.test/ticket"),
    )


class FakeGateway:
    def __init__(self):
        self.created = []
        self.fetched = []
        self.next_payment = None
        self.payments = {}
        self.error = None

    def create_payment(self, access_token, payment_data):
        self.created.append((access_token, payment_data))
        if self.error:
            raise self.error
        self.payments[self.next_payment.payment_id] = self.next_payment
        return self.next_payment

    def get_payment(self, access_token, payment_id):
        self.fetched.append((access_token, str(payment_id)))
        if self.error:
            raise self.error
        if str(payment_id) not in self.payments:
            raise GatewayError("Payment not found", upstream_status=404)
        return self.payments[str(payment_id)]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        "sqlite:///%s" % (tmp_path / "links.db"),
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def merchant(db):
    merchant = Merchant(store_name="Loja Teste", access_token="APP_USR-secret-token", public_key="APP_USR-public-key")
    db.add(merchant)
    db.commit()
    db.refresh(merchant)
    return merchant


@pytest.fixture
def other_merchant(db):
    merchant = Merchant(store_name="Outra Loja", access_token="APP_USR-other-secret", public_key="APP_USR-other-public")
    db.add(merchant)
    db.commit()
    db.refresh(merchant)
    return merchant


@pytest.fixture
def manager(db):
    return LinkLifecycleManager(db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    import main

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
