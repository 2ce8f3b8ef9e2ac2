"""HTTP-level tests for the v1 API against the in-memory database."""
import uuid
from datetime import date, timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from ap_recon.core.clock import utcnow
from ap_recon.db.session import get_session
from ap_recon.main import app
from ap_recon.models.goods_receipt import GoodsReceipt
from ap_recon.models.invoice import Invoice
from ap_recon.models.purchase_order import PurchaseOrder


# ─── Fixtures ─────────────────────────────────────────────────────────────────

class SyncBackedSession:
    """Stands in for the request AsyncSession over a real sync Session,
    the same session the services receive from AsyncSession.run_sync."""

    def __init__(self, session):
        self._session = session

    async def run_sync(self, fn, *args, **kwargs):
        return fn(self._session, *args, **kwargs)

    async def commit(self):
        self._session.commit()

    async def rollback(self):
        self._session.rollback()


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_session():
        with session_factory() as session:
            db = SyncBackedSession(session)
            try:
                yield db
            except Exception:
                await db.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def headers(tenant_id) -> dict:
    return {"X-Tenant-Id": str(tenant_id), "X-Actor-Id": "analyst-1", "X-Request-Id": "req-42"}


@pytest.fixture
def seeded(session_factory, tenant_id):
    """Commit a PO / goods receipt / invoice triple and return their ids."""
    def _seed(po_amount: float = 1000, invoice_amount: float = 1000) -> dict:
        with session_factory() as session:
            po = PurchaseOrder(tenant_id=tenant_id, po_number="PO-1", total_amount=po_amount)
            session.add(po)
            session.flush()
            grn = GoodsReceipt(tenant_id=tenant_id, grn_number="GRN-1", purchase_order_id=po.id,
                               total_amount=po_amount)
            session.add(grn)
            session.flush()
            invoice = Invoice(tenant_id=tenant_id, vendor_id=uuid.uuid4(), invoice_number="INV-1",
                              invoice_date=utcnow() - timedelta(days=1), amount=invoice_amount,
                              purchase_order_id=po.id, goods_receipt_id=grn.id)
            session.add(invoice)
            session.commit()
            return {"purchase_order_id": str(po.id), "goods_receipt_id": str(grn.id), "invoice_id": str(invoice.id)}
    return _seed


# ─── Health / headers ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_health_returns_ok():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_missing_tenant_header_is_rejected(client):
    response = await client.get("/api/v1/exceptions/summary")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_malformed_tenant_header_is_rejected(client):
    response = await client.get("/api/v1/exceptions/summary", headers={"X-Tenant-Id": "acme"})
    assert response.status_code == 400


# ─── Matching and audit ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_match_then_verify_audit_chain(client, headers, seeded):
    ids = seeded(1000, 1000)

    response = await client.post("/api/v1/matches", json=ids, headers=headers)
    assert response.status_code == 200
    match = response.json()
    assert match["matching_status"] == "matched"
    assert match["payment_eligible"] is True

    trail = await client.get(f"/api/v1/audit/three_way_match/{match['id']}", headers=headers)
    assert trail.status_code == 200
    [record] = trail.json()
    assert record["action"] == "create_match"
    assert record["actor_id"] == "analyst-1"
    assert record["request_id"] == "req-42"

    verify = await client.get(f"/api/v1/audit/invoice/{ids['invoice_id']}/verify", headers=headers)
    assert verify.json()["valid"] is True
    assert verify.json()["records_checked"] == 1


@pytest.mark.asyncio
async def test_verify_of_another_tenants_chain_is_404(client, headers, seeded):
    ids = seeded()
    await client.post("/api/v1/matches", json=ids, headers=headers)

    outsider = {**headers, "X-Tenant-Id": str(uuid.uuid4())}
    response = await client.get(f"/api/v1/audit/invoice/{ids['invoice_id']}/verify", headers=outsider)
    assert response.status_code == 404
    assert "records_checked" not in response.json()


@pytest.mark.asyncio
async def test_match_with_unknown_document_is_404(client, headers, seeded):
    ids = seeded()
    ids["invoice_id"] = str(uuid.uuid4())
    response = await client.post("/api/v1/matches", json=ids, headers=headers)
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_double_approval_is_409(client, headers, seeded):
    match = (await client.post("/api/v1/matches", json=seeded(), headers=headers)).json()

    first = await client.post(f"/api/v1/matches/{match['id']}/approve", headers=headers)
    assert first.status_code == 200
    assert first.json()["approval_status"] == "approved"

    second = await client.post(f"/api/v1/matches/{match['id']}/approve", headers=headers)
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_reject_requires_reason(client, headers, seeded):
    match = (await client.post("/api/v1/matches", json=seeded(), headers=headers)).json()
    response = await client.post(f"/api/v1/matches/{match['id']}/reject", json={"reason": " "}, headers=headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_audit_search_and_export(client, headers, seeded):
    await client.post("/api/v1/matches", json=seeded(), headers=headers)

    found = await client.get("/api/v1/audit", params={"action": "match"}, headers=headers)
    assert found.status_code == 200
    assert {r["entity_type"] for r in found.json()} == {"purchase_order", "goods_receipt", "invoice"}

    export = await client.get("/api/v1/audit/export", headers=headers)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    lines = export.text.strip().splitlines()
    assert lines[0].startswith("id,entity_type,entity_id,sequence")
    assert len(lines) == 5


# ─── Claims ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_blocked_claim_returns_every_violation(client, headers):
    body = {
        "employee_id": str(uuid.uuid4()),
        "category": "medical",
        "amount": 510,
        "claim_date": date(2026, 3, 14).isoformat(),
    }
    response = await client.post("/api/v1/claims", json=body, headers=headers)
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["passed"] is False
    assert any("$500" in e for e in detail["errors"])
    assert any("receipt" in e for e in detail["errors"])


@pytest.mark.asyncio
async def test_non_numeric_odometer_is_422_not_500(client, headers):
    body = {
        "employee_id": str(uuid.uuid4()),
        "category": "FUEL",
        "amount": 60,
        "claim_date": "2026-03-14",
        "merchant_name": "Fuel Stop",
        "receipt_file_id": "file-2",
        "metadata": {"odometer_start": "12k", "odometer_end": "13k", "odometer_photo_url": "https://x/p.jpg"},
    }
    response = await client.post("/api/v1/claims", json=body, headers=headers)
    assert response.status_code == 422
    assert any("numeric" in e for e in response.json()["detail"]["errors"])


@pytest.mark.asyncio
async def test_auto_approved_claim_is_created(client, headers):
    body = {
        "employee_id": str(uuid.uuid4()),
        "category": "OFFICE_SUPPLIES",
        "amount": 20,
        "claim_date": "2026-03-14",
        "merchant_name": "Paper Co",
        "receipt_file_id": "file-1",
    }
    response = await client.post("/api/v1/claims", json=body, headers=headers)
    assert response.status_code == 201
    data = response.json()
    assert data["claim"]["status"] == "approved"
    assert data["validation"]["auto_approve"] is True


# ─── Exceptions and staleness ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_exception_detect_list_and_resolve(client, headers, seeded):
    ids = seeded(1000, 1300)
    await client.post("/api/v1/matches", json=ids, headers=headers)

    detected = await client.post(f"/api/v1/invoices/{ids['invoice_id']}/exceptions/detect", headers=headers)
    assert detected.status_code == 200
    assert {e["exception_type"] for e in detected.json()} == {"variance_breach", "matching_failure"}

    again = await client.post(f"/api/v1/invoices/{ids['invoice_id']}/exceptions/detect", headers=headers)
    assert again.json() == []

    summary = (await client.get("/api/v1/exceptions/summary", headers=headers)).json()
    assert summary["total_open"] == 2

    target = detected.json()[0]["id"]
    resolved = await client.post(
        f"/api/v1/exceptions/{target}/resolve", json={"notes": "Credit note received"}, headers=headers
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"


@pytest.mark.asyncio
async def test_staleness_scan_on_fresh_invoices_finds_nothing(client, headers, seeded):
    seeded()
    response = await client.post("/api/v1/staleness/detect", headers=headers)
    assert response.status_code == 200
    assert response.json() == []

    summary = (await client.get("/api/v1/staleness/summary", headers=headers)).json()
    assert summary["total"] == 0


@pytest.mark.asyncio
async def test_invoice_status_change(client, headers, seeded):
    ids = seeded()
    response = await client.post(
        f"/api/v1/invoices/{ids['invoice_id']}/status", json={"status": "under_review"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "under_review"

    bad = await client.post(
        f"/api/v1/invoices/{ids['invoice_id']}/status", json={"status": "archived"}, headers=headers
    )
    assert bad.status_code == 422
