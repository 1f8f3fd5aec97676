"""Coupon ledger API built with FastAPI.

This module exposes endpoints to check service health, validate and price a
discount code, and move a coupon's usage counter. Validation is performed with
Pydantic models, while persistence is delegated to the SQLAlchemy-backed
repository in ``repo.CouponsRepo``.
"""

import os
import uuid
import logging
import time
from dataclasses import asdict
from datetime import datetime
from typing import Annotated, Callable, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from . import repo
from .repo import CouponRejected, CouponsRepo, UsageKey, canonical_hash, get_session

app = FastAPI(title="Coupons Service")


@app.on_event("startup")
def _startup_db():
    # wait briefly until the DB accepts connections
    deadline = time.time() + 30  # 30s
    while True:
        try:
            with repo.engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    repo.init_db()


logger = logging.getLogger("coupons")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


class ValidateRequest(BaseModel):
    """Request body for the validate endpoint.

    Attributes:
        code: Coupon code, case-insensitive.
        subtotal: Order subtotal in minor currency units.
    """
    code: str = Field(min_length=1, max_length=64)
    subtotal: int = Field(ge=0)


class CouponOut(BaseModel):
    id: int
    code: str
    type: str
    value: int
    minimum_amount: int | None = None
    maximum_discount: int | None = None
    usage_limit: int | None = None
    used_count: int
    is_active: bool
    starts_at: datetime
    expires_at: datetime | None = None


class ValidateResponse(BaseModel):
    """Response body for the validate endpoint.

    Attributes:
        coupon: Snapshot of the coupon that matched.
        discount: Discount granted on the submitted subtotal.
    """
    coupon: CouponOut
    discount: int


class UsageResponse(BaseModel):
    coupon_id: int
    used_count: int


@app.get("/health")
def health():
    """Liveness/health probe endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


@app.post("/coupons/validate", response_model=ValidateResponse)
def validate(req: ValidateRequest):
    """Validate a code for a subtotal and compute its discount.

    Raises:
        HTTPException: 422 with one of ``COUPON_INVALID``, ``COUPON_EXPIRED``,
            ``COUPON_NOT_YET_ACTIVE``, ``COUPON_EXHAUSTED`` or
            ``MINIMUM_AMOUNT_NOT_MET``.
    """
    try:
        coupon, discount = CouponsRepo().validate(req.code, req.subtotal)
    except CouponRejected as e:
        raise HTTPException(status_code=422, detail={"detail": e.code, **e.context})
    return ValidateResponse(coupon=CouponOut(**asdict(coupon)), discount=discount)


def _usage_outcome(action: Callable[[int], int], coupon_id: int) -> tuple[int, dict]:
    try:
        used = action(coupon_id)
    except CouponRejected as e:
        code = 404 if e.code == "NOT_FOUND" else 409
        return code, {"detail": e.code, **e.context}
    return 200, {"coupon_id": coupon_id, "used_count": used}


def _idempotent_usage(
    idempotency_key: Optional[str],
    operation: str,
    coupon_id: int,
    action: Callable[[int], int],
):
    """Apply a usage change at most once per ``Idempotency-Key``.

    The first request with a key records it and stores the outcome; a retry
    with the same key and the same operation returns the stored outcome
    without touching the counter. Reusing a key for a different coupon or
    operation is rejected with 409.
    """
    if not idempotency_key:
        status_code, body = _usage_outcome(action, coupon_id)
        return JSONResponse(body, status_code=status_code)

    payload_hash = canonical_hash({"op": operation, "coupon_id": coupon_id})
    with get_session() as s:
        # Optimistic reservation attempt
        try:
            s.add(UsageKey(key=idempotency_key, request_hash=payload_hash, status_code=0))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(UsageKey).where(UsageKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if not rec:
                raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
            if rec.request_hash != payload_hash:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if rec.status_code:
                if rec.detail:
                    body = {"detail": rec.detail}
                else:
                    body = {"coupon_id": coupon_id, "used_count": rec.used_count}
                return JSONResponse(body, status_code=rec.status_code, headers={"Idempotent-Replay": "true"})
            # recorded but never finalized: apply it now

        status_code, body = _usage_outcome(action, coupon_id)

        rec = s.get(UsageKey, idempotency_key)
        rec.status_code = status_code
        rec.used_count = body.get("used_count")
        rec.detail = None if status_code == 200 else body["detail"]
        s.add(rec)
        s.commit()

    return JSONResponse(body, status_code=status_code)


@app.post("/coupons/{coupon_id}/usage/increment", response_model=UsageResponse)
def increment_usage(
    coupon_id: int,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Consume one usage slot (409 ``COUPON_EXHAUSTED`` when the cap is hit)."""
    return _idempotent_usage(idempotency_key, "increment", coupon_id, CouponsRepo().increment)


@app.post("/coupons/{coupon_id}/usage/decrement", response_model=UsageResponse)
def decrement_usage(
    coupon_id: int,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Return one usage slot; the counter never drops below zero."""
    return _idempotent_usage(idempotency_key, "decrement", coupon_id, CouponsRepo().decrement)


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
