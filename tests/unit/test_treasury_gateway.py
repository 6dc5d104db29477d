"""
Unit tests for the SQLite and HTTP treasury gateways.
"""

import json
from decimal import Decimal

import httpx
import pytest

from custody.core.database import get_db_connection
from custody.core.seed_data import DEMO_BRANCH_ID, DEMO_TENANT_ID, insert_seed_data
from custody.domain.errors import ExternalDependencyFailure, ValidationError
from custody.domain.models import EngineContext, TreasuryDirection
from custody.integrations.treasury_gateway import (
    HttpTreasuryGateway,
    SqliteTreasuryGateway,
    TreasuryTransactionRequest,
)


@pytest.fixture
def conn():
    conn = get_db_connection(":memory:")
    insert_seed_data(conn)
    yield conn
    conn.close()


@pytest.fixture
def ctx():
    return EngineContext(tenant_id=DEMO_TENANT_ID, branch_id=DEMO_BRANCH_ID)


def _request(amount="250.00", direction=TreasuryDirection.INFLOW, account="acct-main-cash"):
    return TreasuryTransactionRequest(
        account_id=account,
        direction=direction,
        amount=Decimal(amount),
        reference_type="settlement",
        reference_id="set-1",
        description="Custody return",
    )


class TestSqliteTreasuryGateway:
    def test_account_exists_is_branch_scoped(self, conn, ctx):
        """Test account exists is branch scoped."""
        gateway = SqliteTreasuryGateway(db=conn)
        assert gateway.account_exists(ctx, "acct-main-cash") is True
        assert gateway.account_exists(ctx, "acct-missing") is False
        assert gateway.account_exists(EngineContext(DEMO_TENANT_ID, "other"), "acct-main-cash") is False

    def test_inflow_increases_balance(self, conn, ctx):
        """Test inflow increases balance."""
        gateway = SqliteTreasuryGateway(db=conn)
        transaction = gateway.create_transaction(ctx, _request())

        assert transaction.new_balance == Decimal("10250.00")
        assert gateway.get_balance(ctx, "acct-main-cash") == Decimal("10250.00")
        row = conn.execute(
            "SELECT direction, amount, reference_type, reference_id FROM treasury_transactions WHERE id = ?",
            (transaction.id,),
        ).fetchone()
        assert tuple(row) == ("inflow", "250.00", "settlement", "set-1")
        assert not conn.in_transaction

    def test_outflow_decreases_balance(self, conn, ctx):
        """Test outflow decreases balance."""
        gateway = SqliteTreasuryGateway(db=conn)
        gateway.create_transaction(ctx, _request(direction=TreasuryDirection.OUTFLOW))
        assert gateway.get_balance(ctx, "acct-main-cash") == Decimal("9750.00")

    def test_joins_open_transaction(self, conn, ctx):
        """Test joining the caller's open transaction."""
        gateway = SqliteTreasuryGateway(db=conn)
        conn.execute("BEGIN IMMEDIATE")
        gateway.create_transaction(ctx, _request())
        assert conn.in_transaction
        conn.rollback()

        assert gateway.get_balance(ctx, "acct-main-cash") == Decimal("10000.00")
        assert conn.execute("SELECT COUNT(*) FROM treasury_transactions").fetchone()[0] == 0

    def test_void_reverses_balance(self, conn, ctx):
        """Test void reverses balance."""
        gateway = SqliteTreasuryGateway(db=conn)
        transaction = gateway.create_transaction(ctx, _request())
        gateway.void_transaction(ctx, transaction.id)
        gateway.void_transaction(ctx, transaction.id)

        assert gateway.get_balance(ctx, "acct-main-cash") == Decimal("10000.00")
        is_void = conn.execute(
            "SELECT is_void FROM treasury_transactions WHERE id = ?", (transaction.id,)
        ).fetchone()[0]
        assert is_void == 1

    def test_non_positive_amount_rejected(self, conn, ctx):
        """Test non positive amount rejected."""
        with pytest.raises(ValidationError):
            SqliteTreasuryGateway(db=conn).create_transaction(ctx, _request(amount="0"))

    def test_unknown_account_fails(self, conn, ctx):
        """Test unknown account fails."""
        with pytest.raises(ExternalDependencyFailure):
            SqliteTreasuryGateway(db=conn).create_transaction(ctx, _request(account="acct-missing"))
        assert not conn.in_transaction


def _http_gateway(handler):
    client = httpx.Client(base_url="https://treasury.test", transport=httpx.MockTransport(handler))
    return HttpTreasuryGateway(client=client, timeout=2.0)


class TestHttpTreasuryGateway:
    def test_create_transaction_posts_payload(self, ctx):
        """Test create transaction posts payload."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                201,
                json={"id": "tx-9", "created_at": "2025-01-01T00:00:00Z", "new_balance": "10250.00"},
            )

        transaction = _http_gateway(handler).create_transaction(ctx, _request())

        assert transaction.id == "tx-9"
        assert transaction.new_balance == Decimal("10250.00")
        assert seen["path"] == "/transactions"
        assert seen["headers"]["X-Tenant-Id"] == DEMO_TENANT_ID
        assert seen["headers"]["X-Branch-Id"] == DEMO_BRANCH_ID
        assert seen["body"] == {
            "account_id": "acct-main-cash",
            "transaction_type": "inflow",
            "amount": "250.00",
            "reference_type": "settlement",
            "reference_id": "set-1",
            "description": "Custody return",
        }

    def test_account_exists_maps_404(self, ctx):
        """Test account exists maps 404."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("acct-main-cash"):
                return httpx.Response(200, json={"id": "acct-main-cash"})
            return httpx.Response(404)

        gateway = _http_gateway(handler)
        assert gateway.account_exists(ctx, "acct-main-cash") is True
        assert gateway.account_exists(ctx, "acct-missing") is False

    def test_server_error_maps_to_dependency_failure(self, ctx):
        """Test server error maps to dependency failure."""
        gateway = _http_gateway(lambda request: httpx.Response(503))
        with pytest.raises(ExternalDependencyFailure) as excinfo:
            gateway.create_transaction(ctx, _request())
        assert excinfo.value.context["reason"] == "HTTP 503"
        assert excinfo.value.context["dependency"] == "treasury"

    def test_timeout_maps_to_dependency_failure(self, ctx):
        """Test timeout maps to dependency failure."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ExternalDependencyFailure) as excinfo:
            _http_gateway(handler).create_transaction(ctx, _request())
        assert excinfo.value.context["reason"] == "timeout"

    def test_invalid_response_body(self, ctx):
        """Test a response body that is not JSON."""
        gateway = _http_gateway(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(ExternalDependencyFailure) as excinfo:
            gateway.create_transaction(ctx, _request())
        assert excinfo.value.context["reason"] == "invalid response"

    def test_void_posts_to_void_endpoint(self, ctx):
        """Test void posts to void endpoint."""
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append((request.method, request.url.path))
            return httpx.Response(204)

        _http_gateway(handler).void_transaction(ctx, "tx-9")
        assert paths == [("POST", "/transactions/tx-9/void")]

    def test_requires_base_url_without_client(self, monkeypatch):
        """Test that a base URL is required without a client."""
        monkeypatch.setattr("custody.core.config.Config.TREASURY_API_BASE_URL", None)
        with pytest.raises(ValueError):
            HttpTreasuryGateway()
