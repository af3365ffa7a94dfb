"""
Integration tests for the Teller Core API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from teller_core.api import create_app
from teller_core.api.auth import TellerSystem
from teller_core.config import TellerConfig
from teller_core.permissions import Role
from teller_core.storage import InMemoryStorage


PASSWORD = "counter-pass-1"


@pytest.fixture
def system():
    """Teller system over in-memory storage with an admin and a teller"""
    config = TellerConfig(
        database_url="memory://",
        jwt_secret="api-test-secret-0123456789abcdef0123",
        log_format="text",
        log_level="WARNING"
    )
    system = TellerSystem(config=config, storage=InMemoryStorage(lock_timeout=2.0))
    system.directory.provision_employee("admin@bank.example", PASSWORD, "Layla Admin", Role.ADMIN)
    system.directory.provision_employee("teller@bank.example", PASSWORD, "Sami Teller", Role.TELLER,
                                        branch="Damascus")
    yield system
    system.close()


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def login(client, email):
    r = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def admin(client):
    return login(client, "admin@bank.example")


@pytest.fixture
def teller(client):
    return login(client, "teller@bank.example")


def open_account(client, headers, name="Hala Mansour", deposit=None):
    r = client.post("/accounts", headers=headers, json={
        "name": name, "account_type": "personal", "phone": "+963-944-123456"
    })
    assert r.status_code == 201
    account = r.json()
    if deposit:
        r = client.post("/transactions", headers=headers, json={
            "transaction_type": "deposit", "amount": deposit, "destination": account["id"]
        })
        assert r.status_code == 201
    return account


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestSessionFlow:

    def test_login_returns_token_and_identity(self, client):
        r = client.post("/auth/login", json={"email": "Teller@Bank.example", "password": PASSWORD})
        assert r.status_code == 200
        data = r.json()
        assert data["token_type"] == "bearer"
        assert data["employee"]["role"] == "teller"
        assert data["employee"]["allowed_operations"] == ["view_dashboard", "manage_transactions"]

    def test_bad_credentials(self, client):
        r = client.post("/auth/login", json={"email": "teller@bank.example", "password": "wrong"})
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert r.headers["www-authenticate"] == "Bearer"

    def test_me_and_logout(self, client, teller):
        r = client.get("/auth/me", headers=teller)
        assert r.status_code == 200
        assert r.json()["branch"] == "Damascus"

        assert client.post("/auth/logout", headers=teller).json() == {"logged_out": True}
        r = client.get("/auth/me", headers=teller)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "SESSION_INVALID"

    def test_missing_token(self, client):
        r = client.get("/accounts")
        assert r.status_code == 401
        assert r.json()["type"] == "SessionInvalid"


class TestAccountEndpoints:

    def test_create_and_fetch(self, client, admin, teller):
        account = open_account(client, admin, deposit="150.00")
        assert account["account_number"].startswith("12")

        # Tellers may look accounts up by number to serve them
        r = client.get(f"/accounts/{account['account_number']}", headers=teller)
        assert r.status_code == 200
        assert r.json()["balance"] == "150.00"

    def test_teller_cannot_open_accounts(self, client, teller):
        r = client.post("/accounts", headers=teller, json={
            "name": "X", "account_type": "personal", "phone": "1"
        })
        assert r.status_code == 403
        body = r.json()
        assert body["error"]["operation"] == "create_customer"
        assert body["allowed_operations"] == ["view_dashboard", "manage_transactions"]

    def test_business_account_missing_fields(self, client, admin):
        r = client.post("/accounts", headers=admin, json={
            "name": "Acme", "account_type": "business", "phone": "1", "business_name": "Acme"
        })
        assert r.status_code == 422
        assert r.json()["error"]["field"] == "business_registration"

    def test_list_and_edit(self, client, admin):
        account = open_account(client, admin)

        r = client.patch(f"/accounts/{account['id']}", headers=admin, json={"address": "Latakia"})
        assert r.status_code == 200
        assert r.json()["address"] == "Latakia"

        r = client.get("/accounts", headers=admin, params={"status_filter": "active"})
        assert r.json()["count"] == 1
        r = client.get("/accounts", headers=admin, params={"status_filter": "dormant"})
        assert r.status_code == 422

    def test_freeze_and_close(self, client, admin):
        funded = open_account(client, admin, deposit="10")
        r = client.post(f"/accounts/{funded['id']}/close", headers=admin)
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "ACCOUNT_BALANCE_NOT_ZERO"

        r = client.post(f"/accounts/{funded['id']}/freeze", headers=admin, json={"reason": "review"})
        assert r.status_code == 200
        assert r.json()["status"] == "frozen"

        empty = open_account(client, admin)
        r = client.post(f"/accounts/{empty['id']}/close", headers=admin)
        assert r.json()["status"] == "closed"

    def test_unknown_account(self, client, admin):
        r = client.get("/accounts/0000000000", headers=admin)
        assert r.status_code == 404


class TestTransactionEndpoints:

    def test_transfer_between_accounts(self, client, admin, teller):
        source = open_account(client, admin, deposit="500")
        destination = open_account(client, admin, name="Karim Saleh")

        r = client.post("/transactions", headers=teller, json={
            "transaction_type": "transfer", "amount": "125.50",
            "source": source["account_number"], "destination": destination["account_number"]
        })
        assert r.status_code == 201
        transaction = r.json()
        assert transaction["status"] == "completed"
        assert transaction["method"] == "internal"

        assert client.get(f"/accounts/{source['id']}", headers=teller).json()["balance"] == "374.50"
        assert client.get(f"/accounts/{destination['id']}", headers=teller).json()["balance"] == "125.50"

        r = client.get(f"/transactions/{transaction['id']}", headers=teller)
        assert r.json()["amount"] == "125.50"

    def test_insufficient_funds(self, client, admin, teller):
        account = open_account(client, admin, deposit="20")
        r = client.post("/transactions", headers=teller, json={
            "transaction_type": "withdraw", "amount": "20.01", "source": account["id"]
        })
        assert r.status_code == 409
        assert r.json()["error"]["balance"] == "20.00"

    @pytest.mark.parametrize("amount", ["0", "-3", "abc", "0.004"])
    def test_invalid_amounts(self, client, admin, teller, amount):
        account = open_account(client, admin)
        r = client.post("/transactions", headers=teller, json={
            "transaction_type": "deposit", "amount": amount, "destination": account["id"]
        })
        assert r.status_code == 422

    def test_frozen_account_rejects(self, client, admin, teller):
        account = open_account(client, admin, deposit="50")
        client.post(f"/accounts/{account['id']}/freeze", headers=admin)
        r = client.post("/transactions", headers=teller, json={
            "transaction_type": "deposit", "amount": "5", "destination": account["id"]
        })
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "ACCOUNT_NOT_ACTIVE"

    def test_history(self, client, admin, teller):
        account = open_account(client, admin, deposit="80")
        client.post("/transactions", headers=teller, json={
            "transaction_type": "withdraw", "amount": "30", "source": account["id"]
        })

        r = client.get("/transactions", headers=teller, params={"account": account["id"]})
        assert r.json()["count"] == 2
        r = client.get("/transactions", headers=teller, params={"transaction_type": "withdraw"})
        assert [t["amount"] for t in r.json()["transactions"]] == ["30.00"]
        r = client.get("/transactions", headers=teller, params={"transaction_type": "loan"})
        assert r.status_code == 422

        assert client.get("/transactions/missing", headers=teller).status_code == 404


class TestExchangeAndReports:

    def test_rates(self, client, admin, teller):
        r = client.put("/exchange-rates/usd", headers=teller,
                       json={"currency_name": "US Dollar", "rate_to_base": "13000"})
        assert r.status_code == 403

        r = client.put("/exchange-rates/usd", headers=admin,
                       json={"currency_name": "US Dollar", "rate_to_base": "13000"})
        assert r.status_code == 200
        assert r.json()["currency_code"] == "USD"

        r = client.get("/exchange-rates", headers=teller)
        assert r.json()["base_currency"] == "SYP"
        assert [rate["currency_code"] for rate in r.json()["rates"]] == ["USD"]

        r = client.get("/exchange-rates/USD/convert", headers=teller, params={"amount": "2"})
        assert r.json()["converted_amount"] == "26000.00"
        r = client.get("/exchange-rates/EUR/convert", headers=teller, params={"amount": "2"})
        assert r.status_code == 404

    def test_reports(self, client, admin, teller):
        open_account(client, admin, deposit="2600")
        client.put("/exchange-rates/USD", headers=admin,
                   json={"currency_name": "US Dollar", "rate_to_base": "13000"})

        summary = client.get("/reports/summary", headers=teller).json()
        assert summary["total_balance"] == "2600.00"
        assert summary["transaction_count"] == 1

        dashboard = client.get("/reports/dashboard", headers=teller).json()
        assert dashboard["total_cash_deposits"] == "2600.00"
        assert dashboard["total_balance_in_quote"] == "0.20"
