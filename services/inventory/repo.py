"""SQLAlchemy repository for the inventory ledger.

This module owns the ``products`` table: the catalog fields the order engine
reads (price, active flag, name, SKU) and the ``stock_quantity`` column it is
allowed to write. Reservations are a single conditional ``UPDATE`` guarded by
``stock_quantity >= :quantity`` so two concurrent orders can never both pass a
stale read and oversell.

Database connection parameters are read from ``INVENTORY_DATABASE_URL`` or,
when unset, assembled from the ``DB_*`` environment variables.
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import Boolean, Integer, String, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "INVENTORY_DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)


class Base(DeclarativeBase): pass


class Product(Base):
    """SQLAlchemy model for a sellable product and its stock level.

    Attributes:
        id: Integer primary key referenced by order items.
        sku: Optional stock-keeping unit.
        name: Display name, snapshotted into order items at order time.
        price: Unit price in minor currency units.
        stock_quantity: Units available for sale; never negative.
        is_active: Inactive products cannot be reserved or priced.
    """
    __tablename__ = "products"
    id = mapped_column(Integer, primary_key=True)
    sku = mapped_column(String(64), nullable=True)
    name = mapped_column(String(255), nullable=False)
    price = mapped_column(Integer, nullable=False)
    stock_quantity = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)


class ReservationError(Exception):
    """Raised when a reservation cannot be applied.

    ``code`` is one of ``NOT_FOUND``, ``PRODUCT_INACTIVE`` or
    ``INSUFFICIENT_STOCK``; ``available`` carries the stock level observed
    right after the rejected update.
    """

    def __init__(self, code: str, available: int | None = None):
        super().__init__(code)
        self.code = code
        self.available = available


@dataclass(frozen=True)
class ProductRow:
    id: int
    sku: str | None
    name: str
    price: int
    stock_quantity: int
    is_active: bool


def configure_engine(url: str) -> None:
    """Point the repository at another database (used by tests and tooling)."""
    global engine
    engine.dispose()
    engine = create_engine(url, pool_pre_ping=True)


def init_db() -> None:
    Base.metadata.create_all(engine)


def drop_db() -> None:
    Base.metadata.drop_all(engine)


@contextmanager
def get_session():
    """Context manager that yields a SQLAlchemy session.

    The session is automatically closed when exiting the context.

    Yields:
        Session: Active SQLAlchemy session connected to the database.
    """
    with Session(engine) as s:
        yield s


def _row(p: Product) -> ProductRow:
    return ProductRow(
        id=p.id,
        sku=p.sku,
        name=p.name,
        price=p.price,
        stock_quantity=p.stock_quantity,
        is_active=p.is_active,
    )


class InventoryRepo:
    """Repository class for inventory operations.

    Provides catalog lookups, stock upserts for seeding/admin tooling, and the
    two ledger operations used by the order engine: ``reserve`` and
    ``release``.
    """

    def get(self, product_id: int) -> ProductRow | None:
        with get_session() as s:
            obj = s.get(Product, product_id)
            return _row(obj) if obj else None

    def lookup(self, product_ids: list[int]) -> list[ProductRow]:
        """Return the products matching ``product_ids`` (missing ids are skipped)."""
        if not product_ids:
            return []
        with get_session() as s:
            rows = s.execute(select(Product).where(Product.id.in_(product_ids))).scalars().all()
            return [_row(r) for r in rows]

    def upsert(self, product: ProductRow) -> None:
        """Create or overwrite a product row."""
        with get_session() as s:
            s.merge(Product(
                id=product.id,
                sku=product.sku,
                name=product.name,
                price=product.price,
                stock_quantity=product.stock_quantity,
                is_active=product.is_active,
            ))
            s.commit()

    def reserve(self, product_id: int, quantity: int) -> int:
        """Atomically decrement stock for one product.

        The decrement and the availability check are the same statement, so
        the database serializes concurrent reservations on the row.

        Args:
            product_id: Product to reserve.
            quantity: Positive number of units.

        Returns:
            int: Remaining stock after the reservation.

        Raises:
            ReservationError: ``NOT_FOUND``, ``PRODUCT_INACTIVE`` or
                ``INSUFFICIENT_STOCK``; nothing is changed in that case.
        """
        with get_session() as s:
            res = s.execute(
                update(Product)
                .where(
                    Product.id == product_id,
                    Product.is_active.is_(True),
                    Product.stock_quantity >= quantity,
                )
                .values(stock_quantity=Product.stock_quantity - quantity)
            )
            s.commit()
            if res.rowcount == 1:
                return s.execute(
                    select(Product.stock_quantity).where(Product.id == product_id)
                ).scalar_one()

            obj = s.get(Product, product_id)
            if obj is None:
                raise ReservationError("NOT_FOUND")
            if not obj.is_active:
                raise ReservationError("PRODUCT_INACTIVE", obj.stock_quantity)
            raise ReservationError("INSUFFICIENT_STOCK", obj.stock_quantity)

    def release(self, product_id: int, quantity: int) -> int:
        """Return ``quantity`` units to stock and report the new level.

        Raises:
            ReservationError: ``NOT_FOUND`` when the product does not exist.
        """
        with get_session() as s:
            res = s.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(stock_quantity=Product.stock_quantity + quantity)
            )
            s.commit()
            if res.rowcount != 1:
                raise ReservationError("NOT_FOUND")
            return s.execute(
                select(Product.stock_quantity).where(Product.id == product_id)
            ).scalar_one()
