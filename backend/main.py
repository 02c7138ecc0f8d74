from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from config import API_HOST, API_PORT, CORS_ORIGINS, WEBHOOK_MODE, configure_logging
from confirmation import PaymentConfirmationBridge
from database import get_db, init_db
from errors import AlreadyPaidError, InvalidStateError, PaymentLinkError
from gateway import MercadoPagoGateway
from links import LinkLifecycleManager
from merchants import MerchantRegistry, public_profile
from models import LinkStatus, Merchant, PaymentLink, utc_now
from queue_jobs import enqueue_notification, get_job_queue_status, get_queue

configure_logging()
logger = structlog.get_logger(__name__)

init_db()


class RegisterMerchantReq(BaseModel):
    store_name: Optional[str] = None
    access_token: Optional[str] = None
    public_key: Optional[str] = None


class CreateLinkReq(BaseModel):
    merchant_id: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None


class CancelLinkReq(BaseModel):
    merchant_id: Optional[str] = None


class ProcessPaymentReq(BaseModel):
    link_id: Optional[str] = None
    payment_data: Optional[dict] = None


app = FastAPI(title="Payment Links")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_gateway():
    return MercadoPagoGateway()


@app.exception_handler(PaymentLinkError)
async def payment_link_error_handler(request: Request, exc: PaymentLinkError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.description)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.replace(microsecond=0).isoformat() + "Z"


def money(value) -> float:
    return float(Decimal(value or 0).quantize(Decimal("0.01")))


def link_to_dict(link: PaymentLink):
    return {
        "id": link.id,
        "merchant_id": link.merchant_id,
        "description": link.description,
        "amount": money(link.amount),
        "status": link.status,
        "payment_id": link.payment_id,
        "payer_email": link.payer_email,
        "payment_method": link.payment_method,
        "payment_url": "/pay/%s" % link.id,
        "created_at": iso(link.created_at),
        "paid_at": iso(link.paid_at),
    }


def public_link_to_dict(link: PaymentLink, merchant: Merchant):
    return {
        "id": link.id,
        "description": link.description,
        "amount": money(link.amount),
        "status": link.status,
        "store_name": merchant.store_name,
        "public_key": merchant.public_key,
        "created_at": iso(link.created_at),
    }


def stats_to_dict(stats) -> dict:
    return {
        "total": stats["total"],
        "paid": stats["paid"],
        "pending": stats["pending"],
        "total_received": money(stats["total_received"]),
    }


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db_status = "disconnected"
    redis_status = "disconnected"

    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    try:
        get_queue().connection.ping()
        redis_status = "connected"
    except Exception:
        redis_status = "disconnected"

    return {"status": "healthy", "database": db_status, "redis": redis_status, "timestamp": iso(utc_now())}


@app.post("/api/v1/merchants")
def register_merchant(req: RegisterMerchantReq, db: Session = Depends(get_db)):
    merchant = MerchantRegistry(db).register(req.store_name, req.access_token, req.public_key)
    return JSONResponse(status_code=201, content={"id": merchant.id, "store_name": merchant.store_name})


@app.get("/api/v1/merchants/{merchant_id}")
def get_merchant(merchant_id: str, db: Session = Depends(get_db)):
    profile = public_profile(MerchantRegistry(db).get(merchant_id))
    profile["created_at"] = iso(profile["created_at"])
    return profile


@app.get("/api/v1/merchants/{merchant_id}/stats")
def get_merchant_stats(merchant_id: str, db: Session = Depends(get_db)):
    return stats_to_dict(MerchantRegistry(db).stats(merchant_id))


@app.get("/api/v1/merchants/{merchant_id}/links")
def list_links(merchant_id: str, db: Session = Depends(get_db)):
    merchant = MerchantRegistry(db).get(merchant_id)
    listing = LinkLifecycleManager(db).list_links(merchant.id)
    return {
        "store_name": merchant.store_name,
        "stats": {
            "total": listing.total,
            "paid": listing.paid,
            "pending": listing.pending,
            "total_received": money(listing.total_received),
        },
        "links": [link_to_dict(link) for link in listing.links],
    }


@app.post("/api/v1/links")
def create_link(req: CreateLinkReq, db: Session = Depends(get_db)):
    link = LinkLifecycleManager(db).create_link(req.merchant_id, req.description, req.amount)
    return JSONResponse(status_code=201, content=link_to_dict(link))


@app.get("/api/v1/links/{link_id}")
def get_link(link_id: str, db: Session = Depends(get_db)):
    link = LinkLifecycleManager(db).get_link(link_id)
    merchant = MerchantRegistry(db).get(link.merchant_id)
    return public_link_to_dict(link, merchant)


@app.get("/api/v1/links/{link_id}/public")
def get_checkout_link(link_id: str, db: Session = Depends(get_db)):
    link = LinkLifecycleManager(db).get_link(link_id)
    if link.status == LinkStatus.PAID:
        raise AlreadyPaidError("This payment link has already been paid")
    if link.status != LinkStatus.PENDING:
        raise InvalidStateError("This payment link is %s" % link.status, status=link.status)
    merchant = MerchantRegistry(db).get(link.merchant_id)
    return public_link_to_dict(link, merchant)


@app.post("/api/v1/links/{link_id}/cancel")
def cancel_link(link_id: str, req: CancelLinkReq, db: Session = Depends(get_db)):
    manager = LinkLifecycleManager(db)
    manager.cancel_link(link_id, req.merchant_id)
    return {"id": link_id, "status": LinkStatus.CANCELLED}


@app.get("/api/v1/links/{link_id}/status")
def poll_link_status(link_id: str, db: Session = Depends(get_db), gateway=Depends(get_gateway)):
    return PaymentConfirmationBridge(db, gateway).poll_status(link_id)


@app.post("/api/v1/payments")
def process_payment(req: ProcessPaymentReq, db: Session = Depends(get_db), gateway=Depends(get_gateway)):
    result = PaymentConfirmationBridge(db, gateway).submit_payment(req.link_id, req.payment_data)
    return result.to_dict()


@app.post("/api/v1/webhooks/mercadopago")
async def mercadopago_webhook(request: Request, db: Session = Depends(get_db), gateway=Depends(get_gateway)):
    try:
        envelope = await request.json()
    except ValueError:
        envelope = None
    query = dict(request.query_params)

    try:
        if WEBHOOK_MODE == "queue":
            enqueue_notification(envelope, query)
        else:
            bridge = PaymentConfirmationBridge(db, gateway)
            await run_in_threadpool(bridge.handle_notification, envelope, query)
    except Exception as ex:
        logger.error("webhook_processing_failed", error=str(ex), error_type=type(ex).__name__, exc_info=True)

    return PlainTextResponse("OK", status_code=200)


@app.get("/api/v1/jobs/status")
def jobs_status():
    try:
        return get_job_queue_status()
    except Exception:
        return {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "worker_status": "stopped"}


def run_server():
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    run_server()
