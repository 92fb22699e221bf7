"""Sandbox payment gateway built with FastAPI.

This module emulates the external gateway the orchestrator charges and
refunds through: gateway orders with merchant metadata, charges (the
``declined`` source always fails with 402) and refunds bounded by the
amount still captured. Charge and refund creation honour the
``Idempotency-Key`` header. Persistence is delegated to the
SQLAlchemy-backed repository in ``repo.PaymentsRepo``.
"""

import os
import uuid
import logging
import time
from typing import Annotated, Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import (
    IdempotencyConflict,
    PaymentsRepo,
    canonical_hash,
    charge_as_dict,
    engine,
    get_session,
    init_db,
    reserve_key,
    store_response,
)

app = FastAPI(title="Payments Sandbox")

Currency = constr(pattern=r"^[A-Z]{3}$")

logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


def require_token(authorization: Annotated[Optional[str], Header()] = None):
    """Check the bearer token when ``PAYMENTS_API_TOKEN`` is configured."""
    token = os.getenv("PAYMENTS_API_TOKEN", "")
    if token and authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")


class OrderRequest(BaseModel):
    metadata: dict = Field(default_factory=dict)


class ChargeRequest(BaseModel):
    """Request body for the charge endpoint.

    Attributes:
        amount_cents: Positive amount in minor currency units.
        currency: Three-letter ISO currency code.
        source_id: Card nonce; ``declined`` simulates a declined card.
        reference_id: Merchant reference stored on the gateway order.
        order_id: Existing gateway order to attach the charge to.
    """
    amount_cents: int = Field(gt=0)
    currency: Currency
    source_id: str = Field(min_length=1)
    reference_id: Optional[str] = None
    order_id: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: uuid.UUID
    amount_cents: int = Field(gt=0)
    currency: Currency
    reason: Optional[str] = None


def _run_idempotent(idempotency_key: Optional[str], payload: dict, create: Callable):
    """Run ``create`` at most once per idempotency key.

    ``create`` receives a repository and returns ``(status_code, body)``.
    A retry with the same key and payload replays the stored response; a
    key reused with another payload is a 409.
    """
    with get_session() as s:
        if idempotency_key:
            try:
                rec = reserve_key(s, idempotency_key, canonical_hash(payload))
            except IdempotencyConflict:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if rec is not None:
                return JSONResponse(status_code=rec.status_code, content=rec.response,
                                    headers={"Idempotent-Replay": "true"})

        status_code, body = create(PaymentsRepo(s))
        s.commit()
        if idempotency_key:
            store_response(s, idempotency_key, status_code, body)
        return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.post("/orders", status_code=201, dependencies=[Depends(require_token)])
def create_order(req: OrderRequest):
    """Open a gateway order carrying merchant metadata (guest checkout)."""
    with get_session() as s:
        order = PaymentsRepo(s).create_order(req.metadata)
        s.commit()
        return {"id": order.id, "metadata": order.metadata_}


@app.get("/orders/{order_id}", dependencies=[Depends(require_token)])
def get_order(order_id: str):
    with get_session() as s:
        order = PaymentsRepo(s).get_order(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
        return {"id": order.id, "metadata": order.metadata_ or {}}


@app.post("/orders/{order_id}", dependencies=[Depends(require_token)])
def update_order(order_id: str, req: OrderRequest):
    """Shallow-merge ``metadata`` into the gateway order."""
    with get_session() as s:
        order = PaymentsRepo(s).update_order_metadata(order_id, req.metadata)
        if order is None:
            raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
        s.commit()
        return {"id": order.id, "metadata": order.metadata_}


@app.post("/charges", dependencies=[Depends(require_token)])
def charge(
    req: ChargeRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Charge a payment source with optional idempotency.

    Returns 200 with status ``COMPLETED`` or 402 with status ``FAILED``.
    The first request with an ``Idempotency-Key`` creates the charge; retries
    with the same key and payload get the same response, including a
    stored 402.

    Raises:
        HTTPException: 409 when the idempotency key is reused with a
            different payload.
    """
    def create(repo: PaymentsRepo):
        tx = repo.create_charge(
            amount_cents=req.amount_cents,
            currency=req.currency,
            source_id=req.source_id,
            reference_id=req.reference_id,
            order_id=req.order_id,
        )
        logger.info("charge created", extra={"payment_id": str(tx.id), "status": tx.status})
        return (402 if tx.status == "FAILED" else 200), charge_as_dict(tx)

    return _run_idempotent(idempotency_key, req.model_dump(mode="json"), create)


@app.get("/charges/{payment_id}", dependencies=[Depends(require_token)])
def get_charge(payment_id: uuid.UUID):
    with get_session() as s:
        tx = PaymentsRepo(s).get_charge(payment_id)
        if tx is None:
            raise HTTPException(status_code=404, detail="PAYMENT_NOT_FOUND")
        return charge_as_dict(tx)


@app.post("/refunds", dependencies=[Depends(require_token)])
def refund(
    req: RefundRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Refund part or all of a completed charge.

    Raises:
        HTTPException: 404 for an unknown payment; 422 when the charge did
            not complete, the currency differs, or the amount exceeds what
            remains captured; 409 on an idempotency conflict.
    """
    def create(repo: PaymentsRepo):
        tx = repo.get_charge(req.payment_id)
        if tx is None:
            raise HTTPException(status_code=404, detail="PAYMENT_NOT_FOUND")
        if tx.status != "COMPLETED":
            raise HTTPException(status_code=422, detail="PAYMENT_NOT_COMPLETED")
        if tx.currency != req.currency:
            raise HTTPException(status_code=422, detail="CURRENCY_MISMATCH")
        if req.amount_cents > tx.amount_cents - (tx.refunded_cents or 0):
            raise HTTPException(status_code=422, detail="REFUND_EXCEEDS_CAPTURED")
        rf = repo.refund(tx, req.amount_cents, req.reason)
        logger.info("refund created", extra={"payment_id": str(tx.id), "refund_id": str(rf.id)})
        return 200, {
            "id": str(rf.id),
            "status": rf.status,
            "payment_id": str(tx.id),
            "amount_cents": rf.amount_cents,
            "currency": rf.currency,
        }

    return _run_idempotent(idempotency_key, req.model_dump(mode="json"), create)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
