"""HTTP-level tests for the payments, disputes, balance and allocation routers."""

import base64
import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.user import UserRole
from tests.conftest import (
    MemoryStorage,
    auth_headers,
    make_contract,
    make_held_contract,
    make_job,
    make_payment,
    make_user,
)


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_acting_user_required(client: AsyncClient) -> None:
    resp = await client.get("/balance")
    assert resp.status_code == 403

    resp = await client.get("/balance", headers={"X-User-Id": "not-a-uuid"})
    assert resp.status_code == 403

    resp = await client.get("/balance", headers={"X-User-Id": str(uuid.uuid4())})
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_gateway_signal_holds_escrow(client: AsyncClient, db_session: AsyncSession) -> None:
    admin = await make_user(db_session, role=UserRole.ADMIN)
    payer = await make_user(db_session)
    worker = await make_user(db_session)
    contract = await make_contract(db_session, payer, worker)
    body = {
        "provider_transaction_id": "mp-route-1",
        "status": "captured",
        "amount": "50000.00",
        "payer_id": str(payer.user_id),
        "recipient_id": str(worker.user_id),
        "contract_id": str(contract.contract_id),
        "platform_fee_percentage": "10",
    }

    resp = await client.post("/payments/signals", json=body, headers=auth_headers(payer))
    assert resp.status_code == 403

    resp = await client.post("/payments/signals", json=body, headers=auth_headers(admin))
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "held_escrow"
    assert Decimal(data["platform_fee"]) == Decimal("5000.00")

    replay = await client.post("/payments/signals", json=body, headers=auth_headers(admin))
    assert replay.json()["payment_id"] == data["payment_id"]


@pytest.mark.asyncio
async def test_bilateral_confirmation(client: AsyncClient, db_session: AsyncSession) -> None:
    payer, worker, _, payment = await make_held_contract(db_session)
    stranger = await make_user(db_session)
    url = f"/payments/{payment.payment_id}"

    resp = await client.post(f"{url}/confirm", headers=auth_headers(payer))
    assert resp.status_code == 200
    assert resp.json()["both_confirmed"] is False

    resp = await client.post(f"{url}/confirm", headers=auth_headers(worker))
    assert resp.json()["both_confirmed"] is True

    resp = await client.get(url, headers=auth_headers(payer))
    assert resp.json()["status"] == "completed"
    assert resp.json()["escrow_released_at"] is not None

    resp = await client.get(url, headers=auth_headers(stranger))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_refund_route(client: AsyncClient, db_session: AsyncSession) -> None:
    payer, worker, _, payment = await make_held_contract(db_session)
    payer_headers, worker_headers = auth_headers(payer), auth_headers(worker)
    url = f"/payments/{payment.payment_id}/refund"

    resp = await client.post(url, json={"reason": "Client asked"}, headers=payer_headers)
    assert resp.status_code == 403

    resp = await client.post(url, json={"reason": "Cannot do it"}, headers=worker_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "refunded"
    assert Decimal(resp.json()["refunded_amount"]) == Decimal("50000.00")

    resp = await client.post(url, json={"reason": "Again"}, headers=worker_headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_unknown_payment(client: AsyncClient, db_session: AsyncSession) -> None:
    user = await make_user(db_session)
    resp = await client.get(f"/payments/{uuid.uuid4()}", headers=auth_headers(user))
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dispute_lifecycle(
    client: AsyncClient, db_session: AsyncSession, storage: MemoryStorage
) -> None:
    payer, worker, contract, _ = await make_held_contract(db_session)
    admin = await make_user(db_session, role=UserRole.ADMIN)
    stranger = await make_user(db_session)
    payer_headers, worker_headers = auth_headers(payer), auth_headers(worker)
    admin_headers, stranger_headers = auth_headers(admin), auth_headers(stranger)

    body = {
        "contract_id": str(contract.contract_id),
        "category": "incomplete_work",
        "reason": "Half the walls",
        "description": "Only two rooms were painted.",
        "evidence": [{
            "file_name": "walls.jpg",
            "content_type": "image/jpeg",
            "content_base64": base64.b64encode(b"jpeg-bytes").decode(),
        }],
    }
    resp = await client.post("/disputes", json=body, headers=payer_headers)
    assert resp.status_code == 201
    dispute = resp.json()
    assert dispute["status"] == "open"
    assert dispute["category"] == "incomplete_work"
    assert list(storage.files.values()) == [b"jpeg-bytes"]

    resp = await client.post("/disputes", json={**body, "evidence": []}, headers=worker_headers)
    assert resp.status_code == 409

    url = f"/disputes/{dispute['dispute_id']}"
    resp = await client.post(f"{url}/messages", json={"text": "I will finish"}, headers=worker_headers)
    assert resp.status_code == 201

    resp = await client.get(url, headers=worker_headers)
    assert resp.status_code == 200
    detail = resp.json()
    assert len(detail["messages"]) == 1
    assert detail["attachments"][0]["file_type"] == "image"
    assert [e["action"] for e in detail["audit_log"]] == ["dispute_created", "message_added"]
    assert detail["requires_urgent_attention"] is False

    resp = await client.get(url, headers=stranger_headers)
    assert resp.status_code == 403

    resp = await client.post(
        f"{url}/resolve", json={"resolution_type": "partial_refund", "text": "Split"},
        headers=admin_headers,
    )
    assert resp.status_code == 422

    resp = await client.post(
        f"{url}/resolve", json={"resolution_type": "full_release", "text": "Mine"},
        headers=worker_headers,
    )
    assert resp.status_code == 403

    resp = await client.post(
        f"{url}/resolve",
        json={"resolution_type": "partial_refund", "text": "Split", "refund_amount": "20000.00"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "resolved_partial"
    assert Decimal(resp.json()["refund_amount"]) == Decimal("20000.00")

    resp = await client.get("/balance", headers=worker_headers)
    assert Decimal(resp.json()["balance"]) == Decimal("30000.00")
    resp = await client.get("/balance", headers=payer_headers)
    assert Decimal(resp.json()["balance"]) == Decimal("20000.00")


@pytest.mark.asyncio
async def test_invalid_evidence_encoding(client: AsyncClient, db_session: AsyncSession) -> None:
    payer, _, contract, _ = await make_held_contract(db_session)
    resp = await client.post(
        "/disputes",
        json={
            "contract_id": str(contract.contract_id),
            "reason": "Broken",
            "description": "See file",
            "evidence": [{"file_name": "x.png", "content_base64": "***"}],
        },
        headers=auth_headers(payer),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_refused_requests_store_no_files(
    client: AsyncClient, db_session: AsyncSession, storage: MemoryStorage
) -> None:
    payer, worker, contract, _ = await make_held_contract(db_session)
    stranger = await make_user(db_session)
    payer_headers, worker_headers = auth_headers(payer), auth_headers(worker)
    stranger_headers = auth_headers(stranger)
    photo = {
        "file_name": "walls.jpg",
        "content_type": "image/jpeg",
        "content_base64": base64.b64encode(b"jpeg-bytes").decode(),
    }
    body = {
        "contract_id": str(contract.contract_id),
        "reason": "Half the walls",
        "description": "Only two rooms were painted.",
        "evidence": [photo],
    }
    resp = await client.post("/disputes", json=body, headers=payer_headers)
    assert resp.status_code == 201
    url = f"/disputes/{resp.json()['dispute_id']}"
    assert len(storage.files) == 1

    resp = await client.post("/disputes", json=body, headers=worker_headers)
    assert resp.status_code == 409
    resp = await client.post("/disputes", json=body, headers=stranger_headers)
    assert resp.status_code == 403
    resp = await client.post(
        f"{url}/evidence", json={"files": [photo]}, headers=stranger_headers
    )
    assert resp.status_code == 403
    resp = await client.post(
        f"{url}/messages", json={"text": "Look", "attachments": [photo]},
        headers=stranger_headers,
    )
    assert resp.status_code == 403

    assert len(storage.files) == 1


@pytest.mark.asyncio
async def test_dispute_administration_is_staff_only(
    client: AsyncClient, db_session: AsyncSession
) -> None:
    payer, _, contract, _ = await make_held_contract(db_session)
    support = await make_user(db_session, role=UserRole.SUPPORT)
    payer_headers, support_headers = auth_headers(payer), auth_headers(support)
    support_id = str(support.user_id)

    resp = await client.post(
        "/disputes",
        json={"contract_id": str(contract.contract_id), "reason": "Late", "description": "Late"},
        headers=payer_headers,
    )
    url = f"/disputes/{resp.json()['dispute_id']}"

    resp = await client.patch(f"{url}/priority", json={"priority": "high"}, headers=payer_headers)
    assert resp.status_code == 403
    resp = await client.get("/disputes/urgent", headers=payer_headers)
    assert resp.status_code == 403

    resp = await client.post(f"{url}/assign", json={"resolver_id": support_id}, headers=support_headers)
    assert resp.status_code == 200
    assert resp.json()["assigned_to"] == support_id

    resp = await client.patch(f"{url}/priority", json={"priority": "urgent"}, headers=support_headers)
    assert resp.json()["priority"] == "urgent"

    resp = await client.get("/disputes/urgent", headers=support_headers)
    assert [d["dispute_id"] for d in resp.json()] == [url.rsplit("/", 1)[1]]

    resp = await client.get("/disputes", headers=payer_headers)
    assert len(resp.json()) == 1


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_withdrawal_flow(client: AsyncClient, db_session: AsyncSession) -> None:
    admin = await make_user(db_session, role=UserRole.ADMIN)
    user = await make_user(db_session)
    admin_headers, user_headers = auth_headers(admin), auth_headers(user)
    user_id = str(user.user_id)

    bonus = {"user_id": user_id, "amount": "5000.00", "description": "Welcome bonus"}
    resp = await client.post("/balance/bonuses", json=bonus, headers=user_headers)
    assert resp.status_code == 403
    resp = await client.post("/balance/bonuses", json=bonus, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.json()["type"] == "bonus"

    withdrawal = {"amount": "2000.00", "destination": "CBU 0000003100010000000001"}
    resp = await client.post("/balance/withdrawals", json=withdrawal, headers=user_headers)
    assert resp.status_code == 201
    entry = resp.json()
    assert entry["status"] == "pending"
    assert Decimal(entry["amount"]) == Decimal("-2000.00")

    resp = await client.post("/balance/withdrawals", json=withdrawal, headers=user_headers)
    assert resp.status_code == 409

    resp = await client.get("/balance", headers=user_headers)
    summary = resp.json()
    assert Decimal(summary["balance"]) == Decimal("3000.00")
    assert Decimal(summary["pending_withdrawals"]) == Decimal("2000.00")
    assert Decimal(summary["totals"]["bonus"]) == Decimal("5000.00")

    settle_url = f"/balance/transactions/{entry['transaction_id']}/settle"
    resp = await client.post(settle_url, json={}, headers=user_headers)
    assert resp.status_code == 403
    resp = await client.post(settle_url, json={}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    resp = await client.get("/balance/transactions", headers=user_headers)
    assert [t["entry_number"] for t in resp.json()] == [2, 1]

    resp = await client.get(f"/balance/users/{user_id}/verify", headers=admin_headers)
    assert resp.json()["ok"] is True
    assert resp.json()["entries_checked"] == 2


@pytest.mark.asyncio
async def test_withdrawal_over_balance(client: AsyncClient, db_session: AsyncSession) -> None:
    user = await make_user(db_session)
    resp = await client.post(
        "/balance/withdrawals",
        json={"amount": "1500.00", "destination": "alias.mp"},
        headers=auth_headers(user),
    )
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Allocations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_allocation_routes(client: AsyncClient, db_session: AsyncSession) -> None:
    owner = await make_user(db_session, name="Client")
    job = await make_job(db_session, owner)
    workers = []
    for amount in (Decimal("18000.00"), Decimal("22000.00")):
        worker = await make_user(db_session, name="Worker")
        contract = await make_contract(db_session, owner, worker, price=amount, job=job)
        await make_payment(
            db_session, contract, amount=Decimal("25000.00"), worker_payment_amount=amount
        )
        workers.append(worker)
    stranger = await make_user(db_session)
    owner_headers = auth_headers(owner)
    w1, w2 = str(workers[0].user_id), str(workers[1].user_id)
    url = f"/jobs/{job.job_id}/allocations"

    resp = await client.get(url, headers=auth_headers(workers[0]))
    assert resp.status_code == 200
    assert Decimal(resp.json()["allocated"]) == Decimal("40000.00")

    resp = await client.get(url, headers=auth_headers(stranger))
    assert resp.status_code == 403

    update = {"allocations": [
        {"worker_id": w1, "amount": "15000.00"},
        {"worker_id": w2, "amount": "25000.00"},
    ]}
    resp = await client.put(url, json=update, headers=owner_headers)
    assert resp.status_code == 200
    amounts = {w["worker_id"]: Decimal(w["amount"]) for w in resp.json()["workers"]}
    assert amounts == {w1: Decimal("15000.00"), w2: Decimal("25000.00")}

    over = {"allocations": [{"worker_id": w1, "amount": "20000.00"}]}
    resp = await client.put(url, json=over, headers=owner_headers)
    assert resp.status_code == 422

    twice = {"allocations": [
        {"worker_id": w1, "amount": "1.00"},
        {"worker_id": w1, "amount": "2.00"},
    ]}
    resp = await client.put(url, json=twice, headers=owner_headers)
    assert resp.status_code == 422

    resp = await client.post(
        f"{url}/{w1}/remove", json={"mode": "pro_rata", "reason": "Left"}, headers=owner_headers
    )
    assert resp.status_code == 200
    data = resp.json()
    assert [w["worker_id"] for w in data["workers"]] == [w2]
    # w2 already holds their full payment, so nothing more can move to them.
    assert Decimal(data["allocated"]) == Decimal("25000.00")
    assert Decimal(data["remaining"]) == Decimal("15000.00")
