"""Shared fixtures for the ledger services.

Each test gets its own file-backed SQLite database so concurrent writers
(threads) share one store whose writes SQLite serializes.
"""

import os

import pytest

# Import-time engines must not reach for Postgres drivers in tests.
os.environ.setdefault("INVENTORY_DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("COUPONS_DATABASE_URL", "sqlite+pysqlite://")


@pytest.fixture
def inventory_db(tmp_path):
    from services.inventory import repo

    repo.configure_engine(f"sqlite+pysqlite:///{tmp_path / 'inventory.db'}")
    repo.init_db()
    yield repo
    repo.drop_db()
    repo.engine.dispose()


@pytest.fixture
def coupons_db(tmp_path):
    from services.coupons import repo

    repo.configure_engine(f"sqlite+pysqlite:///{tmp_path / 'coupons.db'}")
    repo.init_db()
    yield repo
    repo.drop_db()
    repo.engine.dispose()
