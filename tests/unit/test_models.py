"""
Unit tests for the custody domain model and money helpers.
"""

from decimal import Decimal

import pytest

from custody.domain.errors import (
    AmountExceedsBalance,
    NotFound,
    ValidationError,
)
from custody.domain.models import (
    Advance,
    AdvanceStatus,
    EngineContext,
    Holder,
    HolderKind,
    PurchaseOrderLine,
    PurchaseOrderSnapshot,
    TransferResult,
    VendorIdentity,
)
from custody.domain.money import from_db, quantize_money, to_decimal, to_money


def _advance(**overrides) -> Advance:
    values = dict(
        id="adv-1",
        tenant_id="t1",
        branch_id="b1",
        holder_name="Site Manager",
        holder_ref="emp-1",
        cost_center_id="cc-1",
        original_amount=Decimal("1000.00"),
        remaining_amount=Decimal("400.00"),
        currency="SAR",
        treasury_account_id="acct-1",
        reference_number="ADV-001",
        status=AdvanceStatus.PARTIALLY_SETTLED,
        created_at="2025-01-01T00:00:00Z",
    )
    values.update(overrides)
    return Advance(**values)


class TestMoney:
    def test_quantize_rounds_half_up(self):
        """Test quantize rounds half up."""
        assert quantize_money(Decimal("1.005")) == Decimal("1.01")
        assert quantize_money(Decimal("2.004")) == Decimal("2.00")

    def test_to_money_accepts_strings_and_ints(self):
        """Test to money accepts strings and ints."""
        assert to_money("12.5") == Decimal("12.50")
        assert to_money(7) == Decimal("7.00")

    def test_to_money_avoids_binary_float_error(self):
        """Test to money avoids binary float error."""
        assert to_money(0.1) + to_money(0.2) == Decimal("0.30")

    @pytest.mark.parametrize("value", [None, True, "abc", "", "NaN", "Infinity"])
    def test_to_decimal_rejects_invalid_values(self, value):
        """Test to decimal rejects invalid values."""
        with pytest.raises(ValidationError):
            to_decimal(value, "amount")

    def test_from_db_reads_text_columns(self):
        """Test decoding TEXT money columns."""
        assert from_db("500.00") == Decimal("500.00")

    def test_to_money_rejects_values_too_large_for_cents(self):
        """Test to money rejects values too large for cents."""
        with pytest.raises(ValidationError) as excinfo:
            to_money("1e30", "unit_price")
        assert excinfo.value.context["field"] == "unit_price"

    def test_quantize_rejects_values_too_large_for_cents(self):
        """Test quantize rejects values too large for cents."""
        with pytest.raises(ValidationError):
            quantize_money(Decimal("1e30"))


class TestAdvanceStatus:
    def test_only_approved_and_partially_settled_accept_settlement(self):
        """Test only approved and partially settled accept settlement."""
        accepting = {status for status in AdvanceStatus if status.accepts_settlement}
        assert accepting == {AdvanceStatus.APPROVED, AdvanceStatus.PARTIALLY_SETTLED}

    def test_after_settlement_is_determined_by_remaining(self):
        """Test after settlement is determined by remaining."""
        assert AdvanceStatus.after_settlement(Decimal("0.00")) is AdvanceStatus.SETTLED
        assert AdvanceStatus.after_settlement(Decimal("0.01")) is AdvanceStatus.PARTIALLY_SETTLED

    def test_unknown_status_value_raises(self):
        """Test unknown status value raises."""
        with pytest.raises(ValueError):
            AdvanceStatus("closed")


class TestAdvance:
    def test_eligible_when_open_with_balance(self):
        """Test eligible when open with balance."""
        assert _advance().is_eligible is True

    def test_not_eligible_without_balance(self):
        """Test not eligible without balance."""
        assert _advance(remaining_amount=Decimal("0.00")).is_eligible is False

    @pytest.mark.parametrize(
        "status",
        [AdvanceStatus.PENDING, AdvanceStatus.REJECTED, AdvanceStatus.SETTLED, AdvanceStatus.TRANSFERRED],
    )
    def test_not_eligible_in_closed_states(self, status):
        """Test not eligible in closed states."""
        assert _advance(status=status).is_eligible is False

    def test_settled_amount(self):
        """Test the settled amount of an advance."""
        assert _advance().settled_amount == Decimal("600.00")


class TestContextAndHolder:
    def test_context_requires_tenant_and_branch(self):
        """Test context requires tenant and branch."""
        with pytest.raises(ValidationError):
            EngineContext(tenant_id="", branch_id="b1")
        with pytest.raises(ValidationError):
            EngineContext(tenant_id="t1", branch_id="")

    def test_holder_kind(self):
        """Test holder kind for employee and external holders."""
        assert Holder.employee("emp-1").kind is HolderKind.EMPLOYEE
        assert Holder.external("Contractor").kind is HolderKind.EXTERNAL


def test_snapshot_total_sums_line_totals():
    """Test snapshot total sums line totals."""
    snapshot = PurchaseOrderSnapshot(
        po_number="PO-2025-0001",
        vendor=VendorIdentity(id="v1", name="Vendor"),
        lines=(
            PurchaseOrderLine("Cement", Decimal("2"), Decimal("100.00"), Decimal("200.00")),
            PurchaseOrderLine("Paint", Decimal("1"), Decimal("300.00"), Decimal("300.00")),
        ),
        currency="SAR",
    )
    assert snapshot.total == Decimal("500.00")


def test_transfer_result_derives_record():
    """Test transfer result derives record."""
    closed = _advance(status=AdvanceStatus.TRANSFERRED)
    successor = _advance(
        id="adv-2",
        original_amount=Decimal("400.00"),
        remaining_amount=Decimal("400.00"),
        status=AdvanceStatus.APPROVED,
        source_advance_id="adv-1",
    )
    result = TransferResult(closed_advance=closed, new_advance=successor)
    assert result.record.closed_advance_id == "adv-1"
    assert result.record.new_advance_id == "adv-2"
    assert result.record.carried_amount == Decimal("400.00")


def test_errors_expose_code_and_context():
    """Test errors expose code and context."""
    error = AmountExceedsBalance(
        "too much", requested=Decimal("250.00"), remaining=Decimal("200.00"), advance_id="a"
    )
    assert error.to_dict() == {
        "code": "AMOUNT_EXCEEDS_BALANCE",
        "message": "too much",
        "context": {"requested": "250.00", "remaining": "200.00", "advance_id": "a"},
    }
    missing = NotFound("advance", "x")
    assert missing.code == "NOT_FOUND"
    assert missing.context["entity"] == "advance"
