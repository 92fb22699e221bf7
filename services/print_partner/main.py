"""Sandbox print partner built with FastAPI.

This module emulates the print-on-demand partner's v4 order API: order
creation deduplicated by idempotency key, per-order action availability
driven by the production stage, and the post-submission actions the
orchestrator's compensating flows call. A sandbox-only endpoint advances an
order's stage and delivers the matching CloudEvents callback.
"""

import os
import uuid
import logging
import time
from datetime import datetime, timezone
from typing import Annotated, Callable, List, Literal, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import (
    IdempotencyConflict,
    PartnerOrder,
    PartnerRepo,
    UNAVAILABLE,
    actions_for,
    canonical_hash,
    engine,
    get_session,
    init_db,
    order_as_dict,
)

app = FastAPI(title="Print Partner Sandbox")

Sku = constr(pattern=r"^[A-Z0-9][A-Z0-9_-]{2,63}$")
ShippingMethod = Literal["Budget", "Standard", "Express", "Overnight"]
Stage = Literal["InProgress", "InProduction", "Complete", "Cancelled"]

logger = logging.getLogger("print_partner")
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


def require_api_key(x_api_key: Annotated[Optional[str], Header(alias="X-API-Key")] = None):
    """Check ``X-API-Key`` when ``PARTNER_API_KEY`` is configured."""
    expected = os.getenv("PARTNER_API_KEY", "")
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")


class Address(BaseModel):
    line1: str = Field(min_length=1)
    line2: Optional[str] = None
    postalOrZipCode: str = Field(min_length=1)
    countryCode: constr(pattern=r"^[A-Z]{2}$")
    townOrCity: str = Field(min_length=1)
    stateOrCounty: Optional[str] = None


class Recipient(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    address: Address


class Asset(BaseModel):
    printArea: str = "default"
    url: str = Field(min_length=1)


class Item(BaseModel):
    merchantReference: Optional[str] = None
    sku: Sku
    copies: int = Field(gt=0)
    sizing: str = "fillPrintArea"
    attributes: dict = Field(default_factory=dict)
    assets: List[Asset] = Field(min_length=1)


class CreateOrderRequest(BaseModel):
    """Request body for order creation.

    Attributes:
        idempotencyKey: Optional key; the ``Idempotency-Key`` header wins.
        callbackUrl: Where stage-change CloudEvents are delivered.
    """
    merchantReference: Optional[str] = None
    shippingMethod: ShippingMethod
    idempotencyKey: Optional[str] = None
    recipient: Recipient
    items: List[Item] = Field(min_length=1)
    metadata: dict = Field(default_factory=dict)
    callbackUrl: Optional[str] = None


class RecipientUpdate(BaseModel):
    recipient: Recipient


class ShippingUpdate(BaseModel):
    shippingMethod: ShippingMethod


class MetadataUpdate(BaseModel):
    metadata: dict


class StageUpdate(BaseModel):
    stage: Stage
    shipments: List[dict] = Field(default_factory=list)
    issues: List[dict] = Field(default_factory=list)


router = APIRouter(prefix="/v4.0", dependencies=[Depends(require_api_key)])


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@router.post("/orders")
def create_order(
    req: CreateOrderRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a partner order, at most once per idempotency key.

    A retry with the same key and payload returns the order created by the
    first request with outcome ``AlreadyExists``.

    Raises:
        HTTPException: 409 when the key is reused with a different payload.
    """
    key = idempotency_key or req.idempotencyKey
    body = req.model_dump(mode="json", exclude_none=True)
    with get_session() as s:
        repo = PartnerRepo(s)
        if key:
            try:
                existing = repo.existing_for_key(key, canonical_hash(body))
            except IdempotencyConflict:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if existing is not None:
                return {"outcome": "AlreadyExists", "order": order_as_dict(existing)}
        order = repo.create(body, key)
        logger.info("partner order created", extra={"partner_order_id": order.public_id, "key": key})
        return {"outcome": "Created", "order": order_as_dict(order)}


@router.get("/orders/{order_id}")
def get_order(order_id: str):
    with get_session() as s:
        order = PartnerRepo(s).get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
        return {"outcome": "Ok", "order": order_as_dict(order)}


@router.get("/orders/{order_id}/actions")
def get_actions(order_id: str):
    with get_session() as s:
        order = PartnerRepo(s).get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
        return {"outcome": "Ok", **actions_for(order.stage)}


def _apply_action(order_id: str, action: str, outcome: str, mutate: Callable[[PartnerOrder], None]):
    """Apply ``mutate`` when ``action`` is available for the order's stage.

    Returns 409 with the partner's reason when it is not.
    """
    with get_session() as s:
        order = PartnerRepo(s).get(order_id, for_update=True)
        if order is None:
            raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
        reason = UNAVAILABLE.get(order.stage, {}).get(action)
        if reason:
            return JSONResponse(status_code=409, content={"outcome": "NotAvailable", "reason": reason})
        mutate(order)
        s.commit()
        logger.info("partner action applied", extra={"partner_order_id": order_id, "action": action})
        return {"outcome": outcome, "order": order_as_dict(order)}


@router.post("/orders/{order_id}/actions/cancel")
def cancel(order_id: str):
    def mutate(order):
        order.stage = "Cancelled"
    return _apply_action(order_id, "cancel", "Cancelled", mutate)


@router.post("/orders/{order_id}/actions/updateRecipient")
def update_recipient(order_id: str, req: RecipientUpdate):
    def mutate(order):
        order.recipient = req.recipient.model_dump(exclude_none=True)
    return _apply_action(order_id, "changeRecipientDetails", "Updated", mutate)


@router.post("/orders/{order_id}/actions/updateShippingMethod")
def update_shipping_method(order_id: str, req: ShippingUpdate):
    def mutate(order):
        order.shipping_method = req.shippingMethod
    return _apply_action(order_id, "changeShippingMethod", "Updated", mutate)


@router.post("/orders/{order_id}/actions/updateMetadata")
def update_metadata(order_id: str, req: MetadataUpdate):
    def mutate(order):
        order.metadata_ = {**(order.metadata_ or {}), **req.metadata}
    return _apply_action(order_id, "updateMetadata", "Updated", mutate)


def stage_changed_event(order: PartnerOrder, shipments: list, issues: list) -> dict:
    """CloudEvents envelope for a stage change of ``order``."""
    return {
        "specversion": "1.0",
        "type": f"com.prodigi.order.status.stage.changed#{order.stage}",
        "source": "http://api.prodigi.com/v4.0/Orders/",
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "time": datetime.now(timezone.utc).isoformat(),
        "datacontenttype": "application/json",
        "subject": order.public_id,
        "data": {
            "order": {
                "id": order.public_id,
                "status": {"stage": order.stage, "issues": issues, "details": {}},
                "shipments": shipments,
                "metadata": order.metadata_ or {},
            }
        },
    }


@router.post("/sandbox/orders/{order_id}/stage")
def advance_stage(order_id: str, req: StageUpdate):
    """Move an order to ``stage`` and deliver the callback, if one is set.

    Delivery failures are logged and reported as ``callbackDelivered``
    false; the stage change stands.
    """
    with get_session() as s:
        order = PartnerRepo(s).get(order_id, for_update=True)
        if order is None:
            raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
        order.stage = req.stage
        s.commit()
        body = order_as_dict(order)
        event = stage_changed_event(order, req.shipments, req.issues)
        callback_url = order.callback_url

    delivered = False
    if callback_url:
        try:
            resp = httpx.post(callback_url, json=event, timeout=5.0)
            resp.raise_for_status()
            delivered = True
        except httpx.HTTPError:
            logger.warning("callback delivery failed", extra={"partner_order_id": order_id, "url": callback_url})
    return {"outcome": "Ok", "order": body, "callbackDelivered": delivered}


app.include_router(router)


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
