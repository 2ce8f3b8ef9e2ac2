"""Shared fixtures: an in-memory SQLite database with the full schema.

pysqlite's own transaction handling breaks SAVEPOINT; the connect/begin
hooks below hand transaction control back to SQLAlchemy.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ap_recon.models  # noqa: F401  registers every table and the audit listeners
from ap_recon.db.base import Base
from ap_recon.models.goods_receipt import GoodsReceipt
from ap_recon.models.invoice import Invoice
from ap_recon.models.purchase_order import PurchaseOrder

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


# ─── Document factories ───────────────────────────────────────────────────────

@pytest.fixture
def make_po(db, tenant_id):
    def _make(amount: float | None = 1000.0, tenant: uuid.UUID | None = None, **kwargs) -> PurchaseOrder:
        po = PurchaseOrder(
            tenant_id=tenant or tenant_id,
            po_number=kwargs.pop("po_number", f"PO-{uuid.uuid4().hex[:6].upper()}"),
            total_amount=amount,
            **kwargs,
        )
        db.add(po)
        db.flush()
        return po
    return _make


@pytest.fixture
def make_grn(db, tenant_id):
    def _make(amount: float | None = 1000.0, po: PurchaseOrder | None = None,
              tenant: uuid.UUID | None = None, **kwargs) -> GoodsReceipt:
        grn = GoodsReceipt(
            tenant_id=tenant or tenant_id,
            grn_number=kwargs.pop("grn_number", f"GRN-{uuid.uuid4().hex[:6].upper()}"),
            purchase_order_id=po.id if po else None,
            total_amount=amount,
            **kwargs,
        )
        db.add(grn)
        db.flush()
        return grn
    return _make


@pytest.fixture
def make_invoice(db, tenant_id):
    def _make(amount: float | None = 1000.0, tenant: uuid.UUID | None = None, **kwargs) -> Invoice:
        kwargs.setdefault("invoice_number", f"INV-{uuid.uuid4().hex[:6].upper()}")
        kwargs.setdefault("invoice_date", NOW - timedelta(days=1))
        kwargs.setdefault("vendor_id", uuid.uuid4())
        invoice = Invoice(tenant_id=tenant or tenant_id, amount=amount, **kwargs)
        db.add(invoice)
        db.flush()
        return invoice
    return _make


@pytest.fixture
def documents(make_po, make_grn, make_invoice):
    """A PO / goods receipt / invoice triple with the given amounts."""
    def _make(po_amount: float, grn_amount: float, invoice_amount: float):
        po = make_po(po_amount)
        grn = make_grn(grn_amount, po=po)
        invoice = make_invoice(invoice_amount, purchase_order_id=po.id, goods_receipt_id=grn.id)
        return po, grn, invoice
    return _make
