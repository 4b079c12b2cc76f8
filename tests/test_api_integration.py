"""
API integration tests through the FastAPI test client
"""

from fastapi.testclient import TestClient

from ledgerbank.config import LedgerBankConfig
from ledgerbank.api import create_app
from ledgerbank.api.auth import BankingSystem, create_access_token


def auth(user_id, role="user"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


class TestAPIIntegration:
    """End-to-end flows over HTTP with an in-memory store"""

    def setup_method(self):
        self.system = BankingSystem(LedgerBankConfig(database_url="memory://"))
        self.client = TestClient(create_app(self.system))
        self.alice = auth("alice")
        self.bob = auth("bob")
        self.admin = auth("admin-1", "admin")

    def teardown_method(self):
        self.system.close()

    def open_account(self, headers, **body):
        body.setdefault("account_type", "checking")
        response = self.client.post("/api/accounts", json=body, headers=headers)
        assert response.status_code == 201
        return response.json()["data"]["account"]

    def test_health_uses_envelope(self):
        response = self.client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["statusCode"] == 200
        assert body["success"] is True
        assert body["data"]["status"] == "healthy"

    def test_requests_without_token_are_rejected(self):
        response = self.client.get("/api/accounts")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["statusCode"] == 401
        assert body["data"] is None

    def test_invalid_token_is_rejected(self):
        response = self.client.get("/api/accounts", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    def test_account_lifecycle(self):
        account = self.open_account(self.alice, initial_deposit="100.00", account_type="savings")
        assert account["balance"] == {"amount": "100.00", "currency": "USD"}
        assert account["display_name"].startswith("SAVINGS - ")

        listing = self.client.get("/api/accounts", headers=self.alice).json()["data"]["accounts"]
        assert [a["id"] for a in listing] == [account["id"]]

        updated = self.client.put(f"/api/accounts/{account['id']}",
                                  json={"interest_rate": "4.5"}, headers=self.alice)
        assert updated.status_code == 200
        assert updated.json()["data"]["account"]["interest_rate"] == "4.5"

        refused = self.client.delete(f"/api/accounts/{account['id']}", headers=self.alice)
        assert refused.status_code == 400
        assert refused.json()["message"].startswith("Cannot close account with balance")

    def test_foreign_and_missing_accounts(self):
        account = self.open_account(self.alice)

        foreign = self.client.get(f"/api/accounts/{account['id']}", headers=self.bob)
        assert foreign.status_code == 403

        missing = self.client.get("/api/accounts/does-not-exist", headers=self.alice)
        assert missing.status_code == 404
        assert missing.json()["success"] is False

    def test_deposit_withdraw_and_history(self):
        account = self.open_account(self.alice)

        deposit = self.client.post("/api/transactions/deposit", headers=self.alice,
                                   json={"account_id": account["id"], "amount": "250.00"})
        assert deposit.status_code == 201
        transaction = deposit.json()["data"]["transaction"]
        assert transaction["transaction_type"] == "deposit"
        assert transaction["balance_after"]["amount"] == "250.00"
        assert transaction["transaction_id"].startswith("TXN")

        withdraw = self.client.post("/api/transactions/withdraw", headers=self.alice,
                                    json={"account_id": account["id"], "amount": "50.00"})
        assert withdraw.status_code == 201

        too_much = self.client.post("/api/transactions/withdraw", headers=self.alice,
                                    json={"account_id": account["id"], "amount": "500.00"})
        assert too_much.status_code == 400
        assert too_much.json()["message"] == "Insufficient balance or below minimum balance requirement"

        history = self.client.get("/api/transactions?limit=1", headers=self.alice).json()["data"]
        assert history["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert history["transactions"][0]["transaction_type"] == "withdrawal"

        single = self.client.get(f"/api/transactions/{transaction['transaction_id']}",
                                 headers=self.alice)
        assert single.status_code == 200
        foreign = self.client.get(f"/api/transactions/{transaction['transaction_id']}",
                                  headers=self.bob)
        assert foreign.status_code == 403

    def test_invalid_amounts_are_bad_requests(self):
        account = self.open_account(self.alice)

        negative = self.client.post("/api/transactions/deposit", headers=self.alice,
                                    json={"account_id": account["id"], "amount": "-5"})
        assert negative.status_code == 400
        assert negative.json()["success"] is False

        precise = self.client.post("/api/transactions/deposit", headers=self.alice,
                                   json={"account_id": account["id"], "amount": "1.001"})
        assert precise.status_code == 400

        huge = self.client.post("/api/transactions/deposit", headers=self.alice,
                                json={"account_id": account["id"], "amount": "1e27"})
        assert huge.status_code == 400
        assert huge.json()["success"] is False

        huge_loan = self.client.post("/api/loans", headers=self.alice, json={
            "account_id": account["id"], "loan_type": "personal",
            "principal": "1e27", "interest_rate": "12", "tenure_months": 12
        })
        assert huge_loan.status_code == 400

    def test_transfer_by_account_number(self):
        source = self.open_account(self.alice, initial_deposit="100.00")
        target = self.open_account(self.bob)

        response = self.client.post("/api/transactions/transfer", headers=self.alice, json={
            "from_account_id": source["id"],
            "to_account_number": target["account_number"],
            "amount": "40.00"
        })
        assert response.status_code == 201

        bob_account = self.client.get(f"/api/accounts/{target['id']}", headers=self.bob)
        assert bob_account.json()["data"]["account"]["balance"]["amount"] == "40.00"

        same = self.client.post("/api/transactions/transfer", headers=self.alice, json={
            "from_account_id": source["id"], "to_account_id": source["id"], "amount": "1.00"
        })
        assert same.status_code == 400
        assert same.json()["message"] == "Cannot transfer to the same account"

        inbox = self.client.get("/api/notifications", headers=self.bob).json()["data"]
        assert any(n["title"] == "Funds received" for n in inbox["notifications"])

    def test_frozen_account_is_locked(self):
        account = self.open_account(self.alice, initial_deposit="10.00")

        frozen = self.client.put(f"/api/admin/accounts/{account['id']}/freeze",
                                 json={"reason": "fraud review"}, headers=self.admin)
        assert frozen.status_code == 200
        assert frozen.json()["data"]["account"]["status"] == "frozen"

        response = self.client.post("/api/transactions/withdraw", headers=self.alice,
                                    json={"account_id": account["id"], "amount": "1.00"})
        assert response.status_code == 423

    def test_statement_formats(self):
        account = self.open_account(self.alice, initial_deposit="75.00")

        as_json = self.client.get(f"/api/transactions/statement/{account['id']}", headers=self.alice)
        statement = as_json.json()["data"]["statement"]
        assert statement["opening_balance"]["amount"] == "0.00"
        assert statement["closing_balance"]["amount"] == "75.00"

        as_csv = self.client.get(f"/api/transactions/statement/{account['id']}?format=csv",
                                 headers=self.alice)
        assert as_csv.status_code == 200
        assert as_csv.headers["content-type"].startswith("text/csv")
        assert "attachment" in as_csv.headers["content-disposition"]
        assert "Initial deposit" in as_csv.text

    def test_loan_flow(self):
        account = self.open_account(self.alice, initial_deposit="1000.00")

        calculator = self.client.get(
            "/api/loans/calculator?principal=12000&interest_rate=12&tenure_months=12",
            headers=self.alice
        ).json()["data"]
        assert calculator["emi"] == "1066.19"
        assert calculator["total_amount"] == "12794.28"

        applied = self.client.post("/api/loans", headers=self.alice, json={
            "account_id": account["id"], "loan_type": "personal",
            "principal": "12000", "interest_rate": "12", "tenure_months": 12
        })
        assert applied.status_code == 201
        loan_id = applied.json()["data"]["loan"]["id"]

        early = self.client.post(f"/api/loans/{loan_id}/pay", headers=self.alice,
                                 json={"account_id": account["id"], "amount": "100.00"})
        assert early.status_code == 400
        assert early.json()["message"] == "Loan is not active"

        forbidden = self.client.put(f"/api/admin/loans/{loan_id}/approve", headers=self.alice)
        assert forbidden.status_code == 403

        pending = self.client.get("/api/admin/loans/pending", headers=self.admin).json()["data"]
        assert [l["id"] for l in pending["loans"]] == [loan_id]

        assert self.client.put(f"/api/admin/loans/{loan_id}/approve",
                               headers=self.admin).status_code == 200
        disbursed = self.client.put(f"/api/admin/loans/{loan_id}/disburse", headers=self.admin)
        assert disbursed.json()["data"]["loan"]["status"] == "disbursed"

        paid = self.client.post(f"/api/loans/{loan_id}/pay", headers=self.alice,
                                json={"account_id": account["id"], "amount": "12794.28"})
        assert paid.status_code == 200
        loan = paid.json()["data"]["loan"]
        assert loan["status"] == "closed"
        assert loan["remaining_balance"]["amount"] == "0.00"

        balance = self.client.get(f"/api/accounts/{account['id']}", headers=self.alice)
        assert balance.json()["data"]["account"]["balance"]["amount"] == "205.72"

        schedule = self.client.get(f"/api/loans/{loan_id}/schedule", headers=self.alice)
        assert len(schedule.json()["data"]["schedule"]) == 12

    def test_reject_requires_reason(self):
        account = self.open_account(self.alice)
        loan_id = self.client.post("/api/loans", headers=self.alice, json={
            "account_id": account["id"], "loan_type": "car",
            "principal": "5000", "interest_rate": "7", "tenure_months": 24
        }).json()["data"]["loan"]["id"]

        missing_reason = self.client.put(f"/api/admin/loans/{loan_id}/reject",
                                         json={}, headers=self.admin)
        assert missing_reason.status_code == 400

        rejected = self.client.put(f"/api/admin/loans/{loan_id}/reject",
                                   json={"reason": "Low credit score"}, headers=self.admin)
        assert rejected.json()["data"]["loan"]["rejection_reason"] == "Low credit score"

    def test_admin_views(self):
        self.open_account(self.alice, initial_deposit="10.00")

        dashboard = self.client.get("/api/admin/dashboard", headers=self.admin).json()["data"]
        assert dashboard["accounts"]["total"] == 1
        assert dashboard["transactions"]["completed"] == 1

        events = self.client.get("/api/admin/audit?action=account_create",
                                 headers=self.admin).json()["data"]["events"]
        assert len(events) == 1
        assert events[0]["actor_id"] == "alice"

        verify = self.client.get("/api/admin/audit/verify", headers=self.admin).json()["data"]
        assert verify["valid"] is True

        assert self.client.get("/api/admin/dashboard", headers=self.alice).status_code == 403

    def test_notifications_inbox(self):
        self.open_account(self.alice)

        inbox = self.client.get("/api/notifications", headers=self.alice).json()["data"]
        assert inbox["unread"] == 1
        notification_id = inbox["notifications"][0]["id"]

        foreign = self.client.put(f"/api/notifications/{notification_id}/read", headers=self.bob)
        assert foreign.status_code == 403

        read = self.client.put(f"/api/notifications/{notification_id}/read", headers=self.alice)
        assert read.json()["data"]["notification"]["is_read"] is True
        assert self.client.get("/api/notifications?unread_only=true",
                               headers=self.alice).json()["data"]["unread"] == 0

    def test_correlation_id_header(self):
        echoed = self.client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert echoed.headers["X-Correlation-ID"] == "req-123"

        generated = self.client.get("/health")
        assert len(generated.headers["X-Correlation-ID"]) == 32

    def test_beneficiary_flow(self):
        source = self.open_account(self.alice, initial_deposit="100.00")
        target = self.open_account(self.bob)

        added = self.client.post("/api/beneficiaries", headers=self.alice, json={
            "nickname": "Bob", "account_number": target["account_number"],
            "account_holder_name": "Bob Smith", "bank_name": "LedgerBank",
            "routing_code": "lbnk0001", "account_type": "checking"
        })
        assert added.status_code == 201
        beneficiary = added.json()["data"]["beneficiary"]
        assert beneficiary["is_verified"] is True
        assert beneficiary["routing_code"] == "LBNK0001"

        duplicate = self.client.post("/api/beneficiaries", headers=self.alice, json={
            "nickname": "Bob again", "account_number": target["account_number"],
            "account_holder_name": "Bob Smith", "bank_name": "LedgerBank",
            "routing_code": "LBNK0001", "account_type": "checking"
        })
        assert duplicate.status_code == 409

        sent = self.client.post(f"/api/beneficiaries/{beneficiary['id']}/transfer",
                                headers=self.alice,
                                json={"from_account_id": source["id"], "amount": "40.00"})
        assert sent.status_code == 201
        assert sent.json()["data"]["transaction"]["to_account_id"] == target["id"]

        renamed = self.client.put(f"/api/beneficiaries/{beneficiary['id']}", headers=self.alice,
                                  json={"nickname": "Bobby"})
        assert renamed.json()["data"]["beneficiary"]["nickname"] == "Bobby"
        assert self.client.put(f"/api/beneficiaries/{beneficiary['id']}", headers=self.bob,
                               json={"nickname": "Me"}).status_code == 403

        listed = self.client.get("/api/beneficiaries", headers=self.alice).json()["data"]
        assert [b["nickname"] for b in listed["beneficiaries"]] == ["Bobby"]
        assert listed["beneficiaries"][0]["last_used"] is not None

        deleted = self.client.delete(f"/api/beneficiaries/{beneficiary['id']}", headers=self.alice)
        assert deleted.status_code == 200
        assert deleted.json()["data"] is None
        assert self.client.get("/api/beneficiaries",
                               headers=self.alice).json()["data"]["beneficiaries"] == []
        assert self.client.delete(f"/api/beneficiaries/{beneficiary['id']}",
                                  headers=self.alice).status_code == 404
