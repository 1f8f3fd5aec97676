"""Inventory ledger API built with FastAPI.

This module exposes endpoints to check service health, look up product
snapshots, and reserve or release stock for a single product. Validation is
performed with Pydantic models, while persistence and the atomic
check-and-decrement are delegated to the SQLAlchemy-backed repository in
``repo.InventoryRepo``.
"""

import os, uuid, logging
from dataclasses import asdict
import time
from typing import List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from . import repo
from .repo import InventoryRepo, ReservationError

app = FastAPI(title="Inventory Service")

# logger JSON
logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


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


class LookupRequest(BaseModel):
    """Request body for the product lookup endpoint.

    Attributes:
        ids: Product ids to fetch; unknown ids are silently omitted.
    """
    ids: List[int] = Field(max_length=500)


class ProductOut(BaseModel):
    id: int
    sku: str | None = None
    name: str
    price: int
    stock_quantity: int
    is_active: bool


class LookupResponse(BaseModel):
    products: List[ProductOut]


class StockChange(BaseModel):
    """Request body for reserve and release.

    Attributes:
        product_id: Product whose stock changes.
        quantity: Positive number of units.
    """
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class ReserveResponse(BaseModel):
    """Response body for the reserve endpoint.

    Attributes:
        reserved: Whether the reservation succeeded.
        stock_quantity: Stock left after the reservation.
    """
    reserved: bool
    stock_quantity: int


class ReleaseResponse(BaseModel):
    released: bool
    stock_quantity: int


@app.get("/health")
def health():
    """Liveness/health probe endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


@app.post("/products/lookup", response_model=LookupResponse)
def lookup(req: LookupRequest):
    """Return catalog snapshots (price, stock, active flag) for ``req.ids``."""
    rows = InventoryRepo().lookup(req.ids)
    return LookupResponse(products=[ProductOut(**asdict(r)) for r in rows])


@app.post("/reserve", response_model=ReserveResponse)
def reserve(req: StockChange, request: Request):
    """Reserve stock for one product.

    Delegates to ``InventoryRepo.reserve`` which performs a conditional
    update, so concurrent reservations cannot oversell.

    Args:
        req: Product id and quantity to reserve.

    Returns:
        ReserveResponse: ``reserved=True`` and the remaining stock.

    Raises:
        HTTPException: 404 when the product does not exist; 422 with
            ``INSUFFICIENT_STOCK`` or ``PRODUCT_INACTIVE`` otherwise.
    """
    try:
        left = InventoryRepo().reserve(req.product_id, req.quantity)
    except ReservationError as e:
        logger.info(
            "reservation rejected",
            extra={
                "request_id": getattr(request.state, "request_id", "-"),
                "product_id": req.product_id,
                "quantity": req.quantity,
                "reason": e.code,
            },
        )
        if e.code == "NOT_FOUND":
            raise HTTPException(status_code=404, detail={"reserved": False, "detail": "NOT_FOUND"})
        raise HTTPException(
            status_code=422,
            detail={"reserved": False, "detail": e.code, "available": e.available},
        )
    return ReserveResponse(reserved=True, stock_quantity=left)


@app.post("/release", response_model=ReleaseResponse)
def release(req: StockChange):
    """Return units to stock (cancellation, full refund, saga compensation)."""
    try:
        level = InventoryRepo().release(req.product_id, req.quantity)
    except ReservationError:
        raise HTTPException(status_code=404, detail={"released": False, "detail": "NOT_FOUND"})
    return ReleaseResponse(released=True, stock_quantity=level)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    # kept on state for local logs
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
