"""
Unit tests for SettlementProcessor expense and return settlements.
"""

import sqlite3
from decimal import Decimal
from unittest.mock import Mock

import pytest

from custody.core.database import get_db_connection
from custody.core.seed_data import DEMO_BRANCH_ID, DEMO_TENANT_ID, insert_seed_data
from custody.domain.errors import (
    AmountExceedsBalance,
    ExternalDependencyFailure,
    NotEligible,
    NotFound,
    ValidationError,
)
from custody.domain.models import (
    AdvanceStatus,
    EngineContext,
    Holder,
    LineItem,
    SettlementKind,
    VendorRef,
)
from custody.integrations.treasury_gateway import TreasuryGateway, TreasuryTransaction
from custody.services.advance_ledger import AdvanceLedger
from custody.services.settlement_processor import SettlementProcessor


@pytest.fixture
def conn():
    conn = get_db_connection(":memory:")
    insert_seed_data(conn)
    yield conn
    conn.close()


@pytest.fixture
def ctx():
    return EngineContext(tenant_id=DEMO_TENANT_ID, branch_id=DEMO_BRANCH_ID, actor="pytest")


@pytest.fixture
def processor(conn):
    return SettlementProcessor(db=conn)


def _open_advance(conn, ctx, amount="1000.00", approve=True, cost_center_id="cc-villa-renovation"):
    ledger = AdvanceLedger(db=conn)
    advance = ledger.issue_advance(
        ctx,
        holder=Holder.employee("emp-site-manager"),
        amount=amount,
        currency="SAR",
        treasury_account_id="acct-main-cash",
        cost_center_id=cost_center_id,
    )
    if approve:
        advance = ledger.record_approval_decision(ctx, advance.id, approved=True)
    return advance


def _cash_balance(conn) -> str:
    return conn.execute(
        "SELECT current_balance FROM treasury_accounts WHERE id = 'acct-main-cash'"
    ).fetchone()[0]


VENDOR = VendorRef(vendor_id="ven-building-supplies")
ITEMS = [LineItem("Cement", Decimal("2"), Decimal("100")), LineItem("Tiles", Decimal("1"), Decimal("300"))]


class TestSettleAsExpense:
    def test_expense_amount_is_sum_of_lines(self, processor, conn, ctx):
        """Test expense amount is sum of lines."""
        advance = _open_advance(conn, ctx)

        settlement = processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS, notes="site materials")

        assert settlement.kind is SettlementKind.EXPENSE
        assert settlement.amount == Decimal("500.00")
        assert settlement.amount == settlement.po_snapshot.total
        assert settlement.cost_center_id == "cc-villa-renovation"
        assert settlement.treasury_transaction_id is None
        assert settlement.reference_number.startswith("SETT-")
        assert settlement.created_by == "pytest"

        updated = processor.ledger.get_advance(ctx, advance.id)
        assert updated.remaining_amount == Decimal("500.00")
        assert updated.status is AdvanceStatus.PARTIALLY_SETTLED

    def test_expense_does_not_touch_treasury(self, processor, conn, ctx):
        """Test expense does not touch treasury."""
        advance = _open_advance(conn, ctx)
        processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS)
        assert _cash_balance(conn) == "10000.00"
        assert conn.execute("SELECT COUNT(*) FROM treasury_transactions").fetchone()[0] == 0

    def test_expense_for_full_balance_settles(self, processor, conn, ctx):
        """Test expense for full balance settles."""
        advance = _open_advance(conn, ctx, amount="500.00")
        processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS)
        assert processor.ledger.get_advance(ctx, advance.id).status is AdvanceStatus.SETTLED

    def test_expense_above_balance_rejected_without_side_effects(self, processor, conn, ctx):
        """Test expense above balance rejected without side effects."""
        advance = _open_advance(conn, ctx, amount="200.00")
        vendors_before = conn.execute("SELECT COUNT(*) FROM vendors").fetchone()[0]

        with pytest.raises(AmountExceedsBalance) as excinfo:
            processor.settle_as_expense(
                ctx, advance.id, VendorRef(name="Brand New Vendor"), [LineItem("Steel", 1, 250)]
            )

        assert excinfo.value.context["requested"] == "250.00"
        assert excinfo.value.context["remaining"] == "200.00"
        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("200.00")
        assert conn.execute("SELECT COUNT(*) FROM settlements").fetchone()[0] == 0
        assert conn.execute("SELECT COUNT(*) FROM vendors").fetchone()[0] == vendors_before

    def test_zero_total_rejected(self, processor, conn, ctx):
        """Test zero total rejected."""
        advance = _open_advance(conn, ctx)
        with pytest.raises(AmountExceedsBalance):
            processor.settle_as_expense(ctx, advance.id, VENDOR, [LineItem("Sample", 1, 0)])

    def test_empty_line_items_rejected(self, processor, conn, ctx):
        """Test empty line items rejected."""
        advance = _open_advance(conn, ctx)
        with pytest.raises(ValidationError):
            processor.settle_as_expense(ctx, advance.id, VENDOR, [])

    def test_pending_advance_not_eligible(self, processor, conn, ctx):
        """Test pending advance not eligible."""
        advance = _open_advance(conn, ctx, approve=False)
        with pytest.raises(NotEligible):
            processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS)

    def test_unknown_advance(self, processor, ctx):
        """Test settling an unknown advance."""
        with pytest.raises(NotFound):
            processor.settle_as_expense(ctx, "missing", VENDOR, ITEMS)

    def test_settled_advance_not_eligible(self, processor, conn, ctx):
        """Test settled advance not eligible."""
        advance = _open_advance(conn, ctx, amount="500.00")
        processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS)
        with pytest.raises(NotEligible):
            processor.settle_as_expense(ctx, advance.id, VENDOR, [LineItem("More", 1, 1)])

    def test_snapshot_is_loaded_with_settlement(self, processor, conn, ctx):
        """Test snapshot is loaded with settlement."""
        advance = _open_advance(conn, ctx)
        settlement = processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS)

        loaded = processor.get_settlement(ctx, settlement.id)
        assert loaded.po_snapshot == settlement.po_snapshot
        assert len(loaded.po_snapshot.lines) == 2


class TestSettleAsReturn:
    def test_return_records_inflow(self, processor, conn, ctx):
        """Test return records inflow."""
        advance = _open_advance(conn, ctx)

        settlement = processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")

        assert settlement.kind is SettlementKind.RETURN
        assert settlement.amount == Decimal("300.00")
        assert settlement.po_snapshot is None
        row = conn.execute(
            "SELECT direction, amount, reference_type, reference_id FROM treasury_transactions"
        ).fetchone()
        assert tuple(row) == ("inflow", "300.00", "settlement", settlement.id)
        assert settlement.treasury_transaction_id is not None
        assert _cash_balance(conn) == "10300.00"
        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("700.00")

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_non_positive_amount_rejected(self, processor, conn, ctx, amount):
        """Test non positive amount rejected."""
        advance = _open_advance(conn, ctx)
        with pytest.raises(ValidationError):
            processor.settle_as_return(ctx, advance.id, amount, "acct-main-cash")

    def test_amount_above_balance_rejected(self, processor, conn, ctx):
        """Test amount above balance rejected."""
        advance = _open_advance(conn, ctx, amount="100.00")
        with pytest.raises(AmountExceedsBalance):
            processor.settle_as_return(ctx, advance.id, "100.01", "acct-main-cash")
        assert _cash_balance(conn) == "10000.00"

    def test_unknown_treasury_account(self, processor, conn, ctx):
        """Test returning to an unknown treasury account."""
        advance = _open_advance(conn, ctx)
        with pytest.raises(NotFound):
            processor.settle_as_return(ctx, advance.id, "10.00", "acct-missing")

    def test_treasury_failure_leaves_ledger_unchanged(self, conn, ctx):
        """Test treasury failure leaves ledger unchanged."""
        advance = _open_advance(conn, ctx)
        treasury = Mock(spec=TreasuryGateway)
        treasury.shares_transaction = False
        treasury.account_exists.return_value = True
        treasury.create_transaction.side_effect = ExternalDependencyFailure("treasury", "timeout")
        processor = SettlementProcessor(db=conn, treasury=treasury)

        with pytest.raises(ExternalDependencyFailure):
            processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")

        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("1000.00")
        assert conn.execute("SELECT COUNT(*) FROM settlements").fetchone()[0] == 0
        treasury.void_transaction.assert_not_called()

    def test_remote_transaction_voided_when_local_write_fails(self, conn, ctx, monkeypatch):
        """Test remote transaction voided when local write fails."""
        advance = _open_advance(conn, ctx)
        treasury = Mock(spec=TreasuryGateway)
        treasury.shares_transaction = False
        treasury.account_exists.return_value = True
        treasury.create_transaction.return_value = TreasuryTransaction(
            id="remote-tx-1",
            account_id="acct-main-cash",
            direction=None,
            amount=Decimal("300.00"),
            reference_type="settlement",
            reference_id="ignored",
            created_at="2025-01-01T00:00:00Z",
        )
        processor = SettlementProcessor(db=conn, treasury=treasury)
        monkeypatch.setattr(
            processor.settlements,
            "insert",
            Mock(side_effect=sqlite3.OperationalError("disk I/O error")),
        )

        with pytest.raises(ExternalDependencyFailure) as excinfo:
            processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")

        assert excinfo.value.context["dependency"] == "database"
        treasury.void_transaction.assert_called_once_with(ctx, "remote-tx-1")
        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("1000.00")

    def test_failed_void_is_reported_on_error(self, conn, ctx, monkeypatch):
        """Test failed void is reported on error."""
        advance = _open_advance(conn, ctx)
        treasury = Mock(spec=TreasuryGateway)
        treasury.shares_transaction = False
        treasury.account_exists.return_value = True
        treasury.create_transaction.return_value = Mock(id="remote-tx-2")
        treasury.void_transaction.side_effect = ExternalDependencyFailure("treasury", "HTTP 500")
        processor = SettlementProcessor(db=conn, treasury=treasury)
        monkeypatch.setattr(
            processor.settlements,
            "insert",
            Mock(side_effect=sqlite3.OperationalError("disk I/O error")),
        )

        with pytest.raises(ExternalDependencyFailure) as excinfo:
            processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")
        assert excinfo.value.context["orphaned_treasury_transaction_id"] == "remote-tx-2"

    def test_local_treasury_failure_needs_no_compensation(self, processor, conn, ctx, monkeypatch):
        """Test local treasury failure needs no compensation."""
        advance = _open_advance(conn, ctx)
        void = Mock()
        monkeypatch.setattr(processor.treasury, "void_transaction", void)
        monkeypatch.setattr(
            processor.settlements,
            "insert",
            Mock(side_effect=sqlite3.OperationalError("disk I/O error")),
        )

        with pytest.raises(ExternalDependencyFailure):
            processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")

        void.assert_not_called()
        assert _cash_balance(conn) == "10000.00"
        assert conn.execute("SELECT COUNT(*) FROM treasury_transactions").fetchone()[0] == 0

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_pending_advance_not_eligible_before_amount_check(self, processor, conn, ctx, amount):
        """Test that eligibility is checked before the return amount."""
        advance = _open_advance(conn, ctx, approve=False)
        with pytest.raises(NotEligible):
            processor.settle_as_return(ctx, advance.id, amount, "acct-main-cash")

    def test_unknown_advance_reported_before_amount_check(self, processor, ctx):
        """Test that an unknown advance wins over a zero amount."""
        with pytest.raises(NotFound) as excinfo:
            processor.settle_as_return(ctx, "missing", "0", "acct-main-cash")
        assert excinfo.value.context["entity"] == "advance"

    def test_remote_transaction_voided_on_unexpected_error(self, conn, ctx, monkeypatch):
        """Test that any local failure after the remote inflow voids it."""
        advance = _open_advance(conn, ctx)
        treasury = Mock(spec=TreasuryGateway)
        treasury.shares_transaction = False
        treasury.account_exists.return_value = True
        treasury.create_transaction.return_value = Mock(id="remote-tx-3")
        processor = SettlementProcessor(db=conn, treasury=treasury)
        monkeypatch.setattr(
            processor.settlements, "insert", Mock(side_effect=RuntimeError("boom"))
        )

        with pytest.raises(RuntimeError):
            processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")

        treasury.void_transaction.assert_called_once_with(ctx, "remote-tx-3")
        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("1000.00")

    def test_remote_call_made_without_write_lock(self, conn, ctx):
        """Test that a remote treasury is called outside the database transaction."""
        advance = _open_advance(conn, ctx)
        treasury = Mock(spec=TreasuryGateway)
        treasury.shares_transaction = False
        treasury.account_exists.return_value = True
        in_transaction = []

        def create_transaction(_ctx, request):
            in_transaction.append(conn.in_transaction)
            return Mock(id="remote-tx-4")

        treasury.create_transaction.side_effect = create_transaction
        processor = SettlementProcessor(db=conn, treasury=treasury)

        settlement = processor.settle_as_return(ctx, advance.id, "300.00", "acct-main-cash")

        assert in_transaction == [False]
        assert settlement.treasury_transaction_id == "remote-tx-4"
        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("700.00")

    def test_balance_rechecked_after_remote_call(self, conn, ctx):
        """Test that a balance consumed during the remote call voids the inflow."""
        advance = _open_advance(conn, ctx, amount="100.00")
        other = SettlementProcessor(db=conn)
        treasury = Mock(spec=TreasuryGateway)
        treasury.shares_transaction = False
        treasury.account_exists.return_value = True

        def create_transaction(_ctx, request):
            other.settle_as_expense(
                ctx, advance.id, VENDOR, [LineItem("Sand", Decimal("1"), Decimal("50"))]
            )
            return Mock(id="remote-tx-5")

        treasury.create_transaction.side_effect = create_transaction
        processor = SettlementProcessor(db=conn, treasury=treasury)

        with pytest.raises(AmountExceedsBalance):
            processor.settle_as_return(ctx, advance.id, "80.00", "acct-main-cash")

        treasury.void_transaction.assert_called_once_with(ctx, "remote-tx-5")
        assert processor.ledger.get_advance(ctx, advance.id).remaining_amount == Decimal("50.00")


class TestQueries:
    def test_settlements_for_advance_most_recent_first(self, processor, conn, ctx):
        """Test settlements for advance most recent first."""
        advance = _open_advance(conn, ctx)
        first = processor.settle_as_expense(ctx, advance.id, VENDOR, ITEMS)
        second = processor.settle_as_return(ctx, advance.id, "100.00", "acct-main-cash")

        settlements = processor.get_settlements_for_advance(ctx, advance.id)

        assert [s.id for s in settlements] == [second.id, first.id]
        assert settlements[1].po_snapshot is not None

    def test_settlements_for_unknown_advance(self, processor, ctx):
        """Test settlements for unknown advance."""
        with pytest.raises(NotFound):
            processor.get_settlements_for_advance(ctx, "missing")

    def test_unknown_settlement(self, processor, ctx):
        """Test fetching an unknown settlement."""
        with pytest.raises(NotFound):
            processor.get_settlement(ctx, "missing")

    def test_settlements_are_append_only(self, processor, conn, ctx):
        """Test settlements are append only."""
        advance = _open_advance(conn, ctx)
        processor.settle_as_return(ctx, advance.id, "100.00", "acct-main-cash")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE settlements SET amount = '1.00'")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("DELETE FROM settlements")
        conn.rollback()
