"""API endpoint integration tests.

Tests the FastAPI endpoints for payroll runs, worker wallets and webhooks.
"""

import json
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from usdc_payroll.api.app import create_app
from usdc_payroll.calldata import ContractCall, erc20_transfer
from usdc_payroll.chains import SupportedChain
from usdc_payroll.errors import ConfigurationError
from usdc_payroll.models import AuditLog
from usdc_payroll.services.reconciliation import sign_payload
from usdc_payroll.services.worker_rows import WorkerRow

from ..conftest import DESTINATION_ADDRESS, WEBHOOK_SECRET, make_settings
from .conftest import ADMIN_HEADERS

pytestmark = pytest.mark.asyncio

RUN_BODY = {
    "workers": [
        {"name": "Ana Lima", "email": "ana@example.com", "amount": "10.50", "chain": "ethereum"},
        {"name": "Bo Chen", "email": "bo@example.com", "amount": "5.25", "chain": "base"},
    ]
}

CALL_BODY = {
    "chain": "base",
    "to": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    "data": erc20_transfer(DESTINATION_ADDRESS, 1_000_000),
}


async def count_audit_rows(db) -> int:
    async with db.session() as session:
        return await session.scalar(select(func.count()).select_from(AuditLog))


async def post_signed(client: AsyncClient, path: str, payload: dict, secret: str = WEBHOOK_SECRET):
    raw = json.dumps(payload).encode()
    return await client.post(
        path,
        content=raw,
        headers={"Content-Type": "application/json", "X-Circle-Signature": sign_payload(raw, secret)},
    )


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should report the database and gateway."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["gateway"] == "stub"
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestCsvUpload:
    """Test CSV validation endpoints."""

    async def test_upload_valid_csv(self, client: AsyncClient):
        content = b"name,email,amount,chain\nAna Lima,ana@example.com,10.50,ethereum\nBo Chen,bo@example.com,5.25,base\n"

        response = await client.post("/api/payroll/upload", files={"csv": ("payroll.csv", content, "text/csv")})

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "CSV uploaded and validated successfully"
        assert body["data"]["summary"] == {"totalWorkers": 2, "totalAmount": "15.75", "chains": ["base", "ethereum"]}
        assert [w["email"] for w in body["data"]["workers"]] == ["ana@example.com", "bo@example.com"]

    async def test_upload_reports_row_errors(self, client: AsyncClient):
        content = b"name,email,amount,chain\nAna,ana@example.com,-4,ethereum\n"

        response = await client.post("/api/payroll/upload", files={"csv": ("payroll.csv", content, "text/csv")})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["statusCode"] == 400
        assert error["details"] == [
            {"row": 2, "field": "amount", "message": "Amount must be a positive number with at most 6 decimal places"}
        ]

    async def test_upload_rejects_other_files(self, client: AsyncClient):
        response = await client.post(
            "/api/payroll/upload", files={"csv": ("payroll.json", b"{}", "application/json")}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Only CSV files are allowed"

    async def test_template(self, client: AsyncClient):
        response = await client.get("/api/payroll/template")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.text.startswith("name,email,amount,chain")


class TestPayrollRuns:
    """Test payroll run endpoints."""

    async def test_create_run(self, client: AsyncClient):
        """POST /api/payroll/runs should create a PENDING run."""
        response = await client.post("/api/payroll/runs", headers=ADMIN_HEADERS, json=RUN_BODY)

        assert response.status_code == 201, response.text
        body = response.json()
        assert body["message"] == "Payroll run created successfully"
        data = body["data"]
        assert data["status"] == "PENDING"
        assert data["totalAmount"] == "15.75"
        assert data["totalWorkers"] == 2
        assert data["adminId"] == "admin-1"
        assert {i["workerEmail"]: i["amount"] for i in data["items"]} == {
            "ana@example.com": "10.50",
            "bo@example.com": "5.25",
        }

    async def test_create_run_requires_admin(self, client: AsyncClient):
        response = await client.post("/api/payroll/runs", json=RUN_BODY)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "X-Admin-ID header is required"

    async def test_create_run_rejects_invalid_rows(self, client: AsyncClient):
        body = {"workers": [{"name": "Ana", "email": "ana@example.com", "amount": "abc", "chain": "ethereum"}]}

        response = await client.post("/api/payroll/runs", headers=ADMIN_HEADERS, json=body)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "Invalid request data"
        assert error["details"][0]["field"] == "workers.0.amount"

    async def test_create_run_rejects_empty_batch(self, client: AsyncClient):
        response = await client.post("/api/payroll/runs", headers=ADMIN_HEADERS, json={"workers": []})

        assert response.status_code == 400

    async def test_get_unknown_run(self, client: AsyncClient):
        response = await client.get(f"/api/payroll/runs/{uuid4()}")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "PAYROLL_RUN_NOT_FOUND"
        assert error["statusCode"] == 404

    async def test_get_run_with_malformed_id(self, client: AsyncClient):
        response = await client.get("/api/payroll/runs/not-a-uuid")

        assert response.status_code == 400

    async def test_list_runs(self, client: AsyncClient):
        for _ in range(3):
            await client.post("/api/payroll/runs", headers=ADMIN_HEADERS, json=RUN_BODY)

        response = await client.get("/api/payroll/runs", headers=ADMIN_HEADERS, params={"page": 1, "limit": 2})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert len(data["runs"]) == 2
        assert data["runs"][0]["statusCounts"] == {"PENDING": 2}

    async def test_list_runs_limit_is_capped(self, client: AsyncClient):
        response = await client.get("/api/payroll/runs", headers=ADMIN_HEADERS, params={"limit": 500})

        assert response.status_code == 400

    async def test_execute_run(self, client: AsyncClient, app_services, stub):
        """Execution is accepted immediately; items settle once their transactions confirm."""
        stub.auto_confirm = True
        created = await client.post("/api/payroll/runs", headers=ADMIN_HEADERS, json=RUN_BODY)
        run_id = created.json()["data"]["id"]

        response = await client.post(f"/api/payroll/runs/{run_id}/execute")

        assert response.status_code == 200, response.text
        assert response.json()["data"] == {"payrollRunId": run_id, "status": "processing"}
        await app_services.supervisor.join()

        run = (await client.get(f"/api/payroll/runs/{run_id}")).json()["data"]
        assert run["status"] == "COMPLETED"
        assert run["completedAt"] is not None
        assert {i["status"] for i in run["items"]} == {"COMPLETED"}
        assert all(i["transactionHash"] for i in run["items"])

    async def test_execute_twice(self, client: AsyncClient, app_services):
        created = await client.post("/api/payroll/runs", headers=ADMIN_HEADERS, json=RUN_BODY)
        run_id = created.json()["data"]["id"]
        await client.post(f"/api/payroll/runs/{run_id}/execute")
        await app_services.supervisor.join()

        response = await client.post(f"/api/payroll/runs/{run_id}/execute")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE"


class TestWorkerEndpoints:
    """Test worker wallet endpoints."""

    async def test_get_worker(self, client: AsyncClient, worker):
        response = await client.get(f"/api/workers/{worker.id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "alice@example.com"
        assert data["walletAddress"] == worker.wallet_address

    async def test_unknown_worker(self, client: AsyncClient):
        response = await client.get(f"/api/workers/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "WORKER_NOT_FOUND"

    async def test_balance(self, client: AsyncClient, worker):
        response = await client.get(f"/api/workers/{worker.id}/balance")

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["balances"]) == 5
        assert data["total"] == "5000.00"
        assert data["balances"][0]["symbol"] == "USDC"

    async def test_transfer_settles_in_background(self, client: AsyncClient, app_services, stub, worker):
        stub.auto_attest = True

        response = await client.post(
            f"/api/workers/{worker.id}/transfer",
            json={"amount": "25", "destinationChain": "Base", "destinationAddress": DESTINATION_ADDRESS},
        )

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["status"] == "PENDING"
        assert data["sourceChain"] == "ethereum"
        assert data["amount"] == "25.00"
        await app_services.supervisor.join()

        listing = (await client.get(f"/api/workers/{worker.id}/transfers")).json()["data"]
        assert listing["pagination"]["total"] == 1
        assert listing["transfers"][0]["status"] == "COMPLETED"
        assert listing["transfers"][0]["mintTransactionHash"] is not None

    async def test_transfer_insufficient_balance(self, client: AsyncClient, worker):
        response = await client.post(
            f"/api/workers/{worker.id}/transfer",
            json={"amount": "5000", "destinationChain": "base", "destinationAddress": DESTINATION_ADDRESS},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"

    async def test_transfer_rejects_bad_address(self, client: AsyncClient, worker):
        response = await client.post(
            f"/api/workers/{worker.id}/transfer",
            json={"amount": "1", "destinationChain": "base", "destinationAddress": "0x1234"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "destinationAddress"

    async def test_complete_transfer_of_other_worker(self, client: AsyncClient, services, worker):
        transfer = await services.transfers.initiate_transfer(
            worker_id=worker.id,
            source_chain=SupportedChain.ETHEREUM,
            destination_chain=SupportedChain.BASE,
            amount="1",
            destination_address=DESTINATION_ADDRESS,
        )

        response = await client.post(f"/api/workers/{uuid4()}/transfers/{transfer.id}/complete")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "TRANSFER_NOT_FOUND"

    async def test_gasless_transaction(self, client: AsyncClient, stub, worker):
        response = await client.post(
            f"/api/workers/{worker.id}/gasless-transaction",
            json={**CALL_BODY, "policyId": "payroll-policy"},
        )

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["policyId"] == "payroll-policy"
        assert data["transactionId"].startswith("tx_")
        assert stub.calls_to("execute")[0].args["wallet_id"] == worker.wallet_id

    async def test_gasless_transaction_over_gas_limit(self, client: AsyncClient, worker):
        response = await client.post(
            f"/api/workers/{worker.id}/gasless-transaction",
            json={**CALL_BODY, "gasLimit": 600_000},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_usdc_gas_transaction(self, client: AsyncClient, worker):
        response = await client.post(f"/api/workers/{worker.id}/usdc-gas-transaction", json=CALL_BODY)

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["gasFeeInUSDC"] == "7.875"
        assert data["chain"] == "base"
        assert data["status"] == "pending"
        assert data["userOpHash"].startswith("0x")

    async def test_usdc_gas_fee_over_maximum(self, client: AsyncClient, worker):
        response = await client.post(
            f"/api/workers/{worker.id}/usdc-gas-transaction",
            json={**CALL_BODY, "chain": "ethereum", "maxGasFeeUSDC": "1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "FEE_EXCEEDS_MAXIMUM"

    async def test_fee_quote(self, client: AsyncClient, worker):
        response = await client.post(f"/api/workers/{worker.id}/fee-quote", json={**CALL_BODY, "chain": "ethereum"})

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["feeUSDC"] == "7.875"
        assert data["gasLimit"] == 100_000
        assert data["nativePriceUsd"] == "2500"

    async def test_transactions(self, client: AsyncClient, worker):
        await client.post(f"/api/workers/{worker.id}/gasless-transaction", json=CALL_BODY)
        await client.post(f"/api/workers/{worker.id}/usdc-gas-transaction", json=CALL_BODY)

        response = await client.get(f"/api/workers/{worker.id}/transactions")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"]["total"] == 2
        assert {t["type"] for t in data["transactions"]} == {"usdc_gas", "gasless"}


class TestWebhooks:
    """Test signed provider notifications."""

    async def test_payout_completed(self, client: AsyncClient, services, stub, load_items):
        stub.fail_on("create_wallet")
        run = await services.payroll.create_run(
            "admin-1", [WorkerRow(name="Ana", email="ana@example.com", amount="3", chain="base")]
        )
        await services.payroll.execute_run(run.id)
        (item,) = await load_items(run.id)

        response = await post_signed(
            client,
            "/api/webhooks/circle",
            {"eventType": "payouts.completed", "data": {"id": item.payout_id, "transactionHash": "0xpaid"}},
        )

        assert response.status_code == 200, response.text
        assert response.json()["data"] == {"received": True, "applied": True, "reason": None}
        (item,) = await load_items(run.id)
        assert item.status == "COMPLETED"
        assert item.transaction_hash == "0xpaid"

    async def test_bad_signature_is_rejected(self, client: AsyncClient):
        response = await post_signed(
            client,
            "/api/webhooks/circle",
            {"eventType": "payouts.completed", "data": {"id": "pay_1"}},
            secret="wrong-secret",
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"

    async def test_signature_of_another_body_changes_nothing(
        self, client: AsyncClient, services, stub, db, load_items
    ):
        stub.fail_on("create_wallet")
        run = await services.payroll.create_run(
            "admin-1", [WorkerRow(name="Ana", email="ana@example.com", amount="3", chain="base")]
        )
        await services.payroll.execute_run(run.id)
        (item,) = await load_items(run.id)
        audit_rows = await count_audit_rows(db)
        signed = json.dumps({"eventType": "payouts.completed", "data": {"id": "pay_other"}}).encode()
        tampered = json.dumps({"eventType": "payouts.failed", "data": {"id": item.payout_id}}).encode()

        response = await client.post(
            "/api/webhooks/circle",
            content=tampered,
            headers={"Content-Type": "application/json", "X-Circle-Signature": sign_payload(signed, WEBHOOK_SECRET)},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        (item,) = await load_items(run.id)
        assert item.status == "SUBMITTED"
        assert item.error_message is None
        assert await count_audit_rows(db) == audit_rows

    async def test_unsigned_request_is_rejected(self, client: AsyncClient):
        response = await client.post("/api/webhooks/gas-station", json={"transactionId": "tx", "status": "complete"})

        assert response.status_code == 401

    async def test_unknown_payout_is_acknowledged(self, client: AsyncClient):
        response = await post_signed(
            client, "/api/webhooks/circle", {"eventType": "payouts.failed", "data": {"id": "pay_missing"}}
        )

        assert response.status_code == 200
        assert response.json()["data"]["reason"] == "not_found"

    async def test_other_events_are_ignored(self, client: AsyncClient):
        response = await post_signed(client, "/api/webhooks/circle", {"eventType": "wallets.created", "data": {}})

        assert response.status_code == 200
        assert response.json()["data"]["reason"] == "ignored"

    async def test_malformed_payload(self, client: AsyncClient):
        response = await post_signed(client, "/api/webhooks/circle", {"eventType": "payouts.completed", "data": {}})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Malformed webhook payload"

    async def test_attestation_webhook(self, client: AsyncClient, services, worker):
        transfer = await services.transfers.initiate_transfer(
            worker_id=worker.id,
            source_chain=SupportedChain.ETHEREUM,
            destination_chain=SupportedChain.ARBITRUM,
            amount="2",
            destination_address=DESTINATION_ADDRESS,
        )

        response = await post_signed(
            client,
            "/api/webhooks/cctp",
            {"messageHash": transfer.message_hash, "status": "complete", "attestation": "0x" + "ab" * 65},
        )

        assert response.json()["data"]["applied"] is True
        assert (await services.transfers.get_transfer(transfer.id)).status == "ATTESTED"

    async def test_attestation_still_pending(self, client: AsyncClient):
        response = await post_signed(client, "/api/webhooks/cctp", {"messageHash": "0x01", "status": "pending_confirmations"})

        assert response.json()["data"]["reason"] == "in_flight"

    async def test_paymaster_webhook(self, client: AsyncClient, services, worker):
        operation = await services.paymaster.create_fee_abstracted_operation(
            worker_id=worker.id,
            wallet_address=worker.wallet_address,
            chain=SupportedChain.BASE,
            call=ContractCall(to=CALL_BODY["to"], data=CALL_BODY["data"]),
        )
        user_op_hash = operation.user_op_hash

        response = await post_signed(
            client,
            "/api/webhooks/paymaster",
            {"userOpHash": user_op_hash, "status": "success", "gasUsed": 85000, "gasFeeInUSDC": "0.002"},
        )

        assert response.json()["data"]["applied"] is True
        record = await services.paymaster.get_operation(user_op_hash)
        assert record.status == "COMPLETED"
        assert record.gas_used == "85000"
        assert record.gas_fee_usdc == Decimal("0.002")


class TestRateLimits:
    """Test inbound request windows."""

    CSV = b"name,email,amount,chain\nAna Lima,ana@example.com,10.50,ethereum\n"

    async def test_upload_window(self, limited_client: AsyncClient):
        for _ in range(2):
            response = await limited_client.post("/api/payroll/upload", files={"csv": ("p.csv", self.CSV, "text/csv")})
            assert response.status_code == 200, response.text

        response = await limited_client.post("/api/payroll/upload", files={"csv": ("p.csv", self.CSV, "text/csv")})

        assert response.status_code == 429
        assert response.json() == {"error": {
            "message": "Too many file uploads, please try again later",
            "code": "UPLOAD_RATE_LIMIT_EXCEEDED",
            "statusCode": 429,
        }}

    async def test_api_window_covers_every_route(self, limited_client: AsyncClient):
        for _ in range(5):
            assert (await limited_client.get("/api/payroll/template")).status_code == 200

        response = await limited_client.get("/api/payroll/runs", headers=ADMIN_HEADERS)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "RATE_LIMIT_EXCEEDED"
        assert error["message"] == "Too many requests, please try again later"
        assert (await limited_client.get("/health")).status_code == 200

    async def test_webhooks_share_one_window(self, limited_client: AsyncClient):
        event = {"eventType": "payouts.failed", "data": {"id": "pay_missing"}}
        assert (await post_signed(limited_client, "/api/webhooks/circle", event)).status_code == 200
        assert (await post_signed(limited_client, "/api/webhooks/circle", event)).status_code == 200

        response = await post_signed(limited_client, "/api/webhooks/cctp", {"messageHash": "0x01", "status": "pending"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "WEBHOOK_RATE_LIMIT_EXCEEDED"

    async def test_invalid_window_is_rejected(self, database_url: str):
        with pytest.raises(ConfigurationError, match="upload rate limit"):
            create_app(make_settings(database_url, upload_rate_limit="often"))
