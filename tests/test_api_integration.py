"""
Integration tests for the Lending Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from lending_engine.api import create_app

PAYBILL = "600100"


@pytest.fixture
def client(system):
    """Test client over the in-memory system from conftest"""
    with TestClient(create_app(system)) as test_client:
        yield test_client


def headers(tenant):
    return {"X-Tenant-ID": tenant.id}


def c2b_body(trans_id="QA1", amount="120.00", shortcode=PAYBILL, msisdn="254711000001"):
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20260105143000",
        "TransAmount": amount,
        "BusinessShortCode": shortcode,
        "BillRefNumber": "LOAN",
        "MSISDN": msisdn,
        "FirstName": "JANE",
    }


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["workers_running"] is False

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert r.json()["endpoints"]["payments"] == "/payments"


class TestTenantEndpoints:
    """Tenant onboarding"""

    def test_create_tenant_seeds_accounts(self, client):
        r = client.post("/tenants", json={"name": "Gamma Microfinance", "code": "GAMMA"})
        assert r.status_code == 201
        tenant_id = r.json()["id"]

        r = client.get("/ledger/accounts", headers={"X-Tenant-ID": tenant_id})
        assert [a["code"] for a in r.json()["accounts"]] == ["1010", "1200", "2100"]

        r = client.post("/tenants", json={"name": "Gamma Again", "code": "GAMMA"})
        assert r.status_code == 400
        assert "already exists" in r.json()["detail"]

        assert len(client.get("/tenants").json()["tenants"]) == 1

    def test_register_gateway(self, client, tenant):
        r = client.post(f"/tenants/{tenant.id}/gateways", json={"till_number": "500500"})
        assert r.status_code == 201
        assert r.json()["till_number"] == "500500"

        # Paybill already registered by the fixture
        r = client.post(f"/tenants/{tenant.id}/gateways", json={"paybill_number": PAYBILL})
        assert r.status_code == 409

        r = client.post("/tenants/missing/gateways", json={"paybill_number": "700700"})
        assert r.status_code == 404


class TestC2BFlow:
    """M-Pesa callbacks through to applied payments"""

    def test_validation(self, client):
        r = client.post("/payments/c2b/validation", json=c2b_body())
        assert r.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        r = client.post("/payments/c2b/validation", json=c2b_body(amount="0"))
        assert r.json()["ResultCode"] == "C2B00013"

    def test_confirmation_then_drain(self, client, system, tenant, customer, loan):
        r = client.post("/payments/c2b/confirmation", json=c2b_body())
        assert r.status_code == 200
        assert r.json() == {"ResultCode": 0, "ResultDesc": "Received"}

        # Redelivery is acknowledged and ignored
        client.post("/payments/c2b/confirmation", json=c2b_body())
        assert client.get("/jobs").json()["counts"]["queued"] == 1

        r = client.post("/jobs/drain")
        assert r.status_code == 200
        assert r.json()["completed"] == 1

        r = client.get("/payments", headers=headers(tenant), params={"status": "applied"})
        payments = r.json()["payments"]
        assert len(payments) == 1

        r = client.get(f"/payments/{payments[0]['id']}", headers=headers(tenant))
        assert r.status_code == 200
        detail = r.json()
        assert detail["applied_total"] == "120.00"
        assert [rec["installment_number"] for rec in detail["reconciliation"]] == [1, 2]

    def test_invalid_confirmation_still_acknowledged(self, client, system):
        r = client.post("/payments/c2b/confirmation", json=c2b_body(amount="-1"))
        assert r.json()["ResultDesc"] == "Received"
        assert system.events.list_events() == []

    def test_numeric_fields_accepted(self, client, tenant):
        body = c2b_body(trans_id="QA2")
        body["BusinessShortCode"] = 600100
        body["MSISDN"] = 254711000001
        body["TransAmount"] = 50
        client.post("/payments/c2b/confirmation", json=body)

        payments = client.get("/payments", headers=headers(tenant)).json()["payments"]
        assert payments[0]["routing_key"] == PAYBILL


class TestPaymentEndpoints:
    """Generic notifications and payment queries"""

    def test_notification_accepted(self, client, tenant):
        r = client.post("/payments/notifications", json={
            "amount": "75.00", "external_transaction_id": "NT1",
            "routing_key": PAYBILL, "payer_phone": "0711000001"
        })
        assert r.status_code == 202
        data = r.json()
        assert data["status"] == "pending"
        assert data["tenant_id"] == tenant.id
        assert data["job_id"] is not None
        assert data["duplicate"] is False

        r = client.post("/payments/notifications", json={"amount": "75.00", "external_transaction_id": "nt1"})
        assert r.json()["duplicate"] is True

    def test_notification_rejects_non_positive_amount(self, client):
        r = client.post("/payments/notifications", json={"amount": "0"})
        assert r.status_code == 400

    def test_tenant_header_required(self, client, tenant):
        assert client.get("/payments").status_code == 400
        assert client.get("/payments", headers={"X-Tenant-ID": "missing"}).status_code == 404

    def test_unknown_status_filter(self, client, tenant):
        r = client.get("/payments", headers=headers(tenant), params={"status": "bogus"})
        assert r.status_code == 400

    def test_payment_of_other_tenant_hidden(self, client, system, tenant):
        event_id = client.post("/payments/notifications", json={
            "amount": "75.00", "routing_key": PAYBILL
        }).json()["event_id"]
        other = system.tenant_manager.create_tenant("Beta Loans", "BETA")

        assert client.get(f"/payments/{event_id}", headers=headers(tenant)).status_code == 200
        assert client.get(f"/payments/{event_id}", headers=headers(other)).status_code == 404

    def test_bank_statement_import(self, client, tenant, customer, loan):
        r = client.post("/payments/bank-statements", headers=headers(tenant), json={"rows": [
            {"Name": "Jane Wanjiru", "Mobile": "0711000001", "Amount": "120", "Mpesa Ref": "BS1"},
            {"Name": "Jane Wanjiru", "Mobile": "123", "Amount": "120", "Mpesa Ref": "BS2"},
        ]})
        assert r.status_code == 200
        data = r.json()
        assert (data["successful"], data["rejected"]) == (1, 1)
        assert data["details"][0]["message"] == "Reconciled KES 120.00 for Jane Wanjiru"


class TestLedgerEndpoints:
    """Manual and bulk journal entries"""

    def accounts(self, client, tenant):
        r = client.get("/ledger/accounts", headers=headers(tenant))
        return {a["code"]: a["id"] for a in r.json()["accounts"]}

    def test_manual_entry(self, client, tenant):
        ids = self.accounts(client, tenant)
        body = {"reference": "JV-100", "lines": [
            {"account_id": ids["1010"], "debit": "250.00"},
            {"account_id": ids["2100"], "credit": "250.00"},
        ]}

        r = client.post("/ledger/journal-entries", headers=headers(tenant), json=body)
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "written"
        assert data["total"] == "250.00"

        r = client.post("/ledger/journal-entries", headers=headers(tenant), json=body)
        assert r.json()["status"] == "already_exists"
        assert r.json()["entry_id"] == data["entry_id"]

        r = client.get(f"/ledger/journal-entries/{data['entry_id']}", headers=headers(tenant))
        assert r.json()["balanced"] is True
        assert len(r.json()["lines"]) == 2

    def test_imbalanced_entry_rejected(self, client, tenant):
        ids = self.accounts(client, tenant)
        r = client.post("/ledger/journal-entries", headers=headers(tenant), json={"lines": [
            {"account_id": ids["1010"], "debit": "250.00"},
            {"account_id": ids["2100"], "credit": "200.00"},
        ]})
        assert r.status_code == 422
        error = r.json()["detail"]
        assert error["code"] == "IMBALANCED_ENTRY"
        assert "difference=50" in error["message"]

    def test_bulk_upload(self, client, tenant):
        r = client.post("/ledger/journal-entries/bulk", headers=headers(tenant), json={"rows": [
            {"Reference": "B1", "Account Code": "1010", "Debit": "50", "Credit": ""},
            {"Reference": "B1", "Account Code": "1200", "Debit": "", "Credit": "50"},
        ]})
        assert r.status_code == 200
        assert r.json()["posted"] == ["B1"]

        r = client.get("/ledger/journal-entries", headers=headers(tenant),
                       params={"reference_type": "bulk_upload"})
        assert r.json()["count"] == 1

    def test_create_account(self, client, tenant):
        r = client.post("/ledger/accounts", headers=headers(tenant),
                        json={"code": "4000", "name": "Interest Income", "account_type": "revenue"})
        assert r.status_code == 201
        assert r.json()["code"] == "4000"


class TestSuspenseEndpoints:
    """Suspense listing and manual re-match"""

    def test_rematch(self, client, tenant, customer, loan):
        client.post("/payments/c2b/confirmation", json=c2b_body(trans_id="QS1", msisdn="254733000003"))
        client.post("/jobs/drain")

        r = client.get("/suspense", headers=headers(tenant))
        entries = r.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["reason"] == "unmatched_customer"

        r = client.post(f"/suspense/{entries[0]['id']}/rematch", headers=headers(tenant),
                        json={"customer_id": customer.id})
        assert r.status_code == 200
        assert r.json()["outcome"] == "applied"
        assert client.get("/suspense", headers=headers(tenant)).json()["count"] == 0

    def test_rematch_unknown_customer(self, client, tenant):
        client.post("/payments/c2b/confirmation", json=c2b_body(trans_id="QS2", msisdn="254733000003"))
        client.post("/jobs/drain")
        entry_id = client.get("/suspense", headers=headers(tenant)).json()["entries"][0]["id"]

        r = client.post(f"/suspense/{entry_id}/rematch", headers=headers(tenant),
                        json={"customer_id": "missing"})
        assert r.status_code == 404

    def test_unassigned(self, client, tenant):
        client.post("/payments/c2b/confirmation",
                    json=c2b_body(trans_id="QS3", shortcode="999999", msisdn="254799999999"))

        r = client.get("/suspense/unassigned")
        assert r.json()["count"] == 1
        assert r.json()["entries"][0]["reason"] == "unresolved_tenant"


class TestJobEndpoints:
    """Queue administration"""

    def test_list_and_get(self, client, tenant):
        client.post("/payments/notifications", json={"amount": "10", "routing_key": PAYBILL})

        jobs = client.get("/jobs/list", params={"status": "queued"}).json()["jobs"]
        assert len(jobs) == 1
        r = client.get(f"/jobs/{jobs[0]['id']}")
        assert r.json()["status"] == "queued"
        assert client.get("/jobs/missing").status_code == 404

    def test_recover(self, client):
        r = client.post("/jobs/recover")
        assert r.json() == {"events": 0, "requeued": 0, "dead": 0, "enqueued": 0}
