"""
Reconciliation checks over advances and settlements.

Verifies conservation per advance (settled total equals original minus
remaining, remaining within bounds, status consistent with remaining) and
computes outstanding custody per holder.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from custody.core.database import get_db_connection
from custody.domain.errors import NotFound
from custody.domain.models import Advance, AdvanceStatus, EngineContext
from custody.domain.money import ZERO, quantize_money
from custody.repositories.advance_repository import AdvanceRepository
from custody.repositories.settlement_repository import SettlementRepository
from custody.utils.logging_config import get_logger


logger = get_logger(__name__)

# Holders keep custody of these until it is settled or transferred away
_EXCLUDED_FROM_OUTSTANDING = (AdvanceStatus.TRANSFERRED, AdvanceStatus.REJECTED)


@dataclass
class AdvanceReconciliation:
    """Result of checking one advance against its settlements."""

    advance_id: str
    reference_number: str
    original_amount: Decimal
    remaining_amount: Decimal
    settled_total: Decimal
    status: AdvanceStatus
    issues: List[str] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.issues

    @property
    def difference(self) -> Decimal:
        """Settled total minus the amount the balance says was consumed."""
        return quantize_money(
            self.settled_total - (self.original_amount - self.remaining_amount)
        )


@dataclass
class HolderBalance:
    """Outstanding custody for one holder."""

    holder_name: str
    holder_ref: Optional[str]
    total_advanced: Decimal
    total_settled: Decimal
    outstanding: Decimal
    advance_count: int


class ReconciliationService:
    """Service for conservation checks and per-holder custody balances."""

    def __init__(self, db: sqlite3.Connection | None = None) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()
        self.advances = AdvanceRepository(self.db)
        self.settlements = SettlementRepository(self.db)

    def close(self) -> None:
        """Close the managed database connection if owned by the service."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive path
            pass

    def verify_advance(self, ctx: EngineContext, advance_id: str) -> AdvanceReconciliation:
        """Check a single advance. Raises NotFound for an unknown id."""
        advance = self.advances.get(ctx, advance_id)
        if advance is None:
            raise NotFound("advance", advance_id)
        settled = sum(
            (s.amount for s in self.settlements.list_for_advance(ctx, advance_id)), ZERO
        )
        result = self._check(advance, settled)
        if not result.is_consistent:
            logger.warning(
                "advance_reconciliation_mismatch", advance_id=advance_id, issues=result.issues
            )
        return result

    def verify_all(self, ctx: EngineContext) -> List[AdvanceReconciliation]:
        """Check every advance in scope, most recent first."""
        logger.info("verifying_advances", tenant_id=ctx.tenant_id, branch_id=ctx.branch_id)
        totals = self.settlements.totals_by_advance(ctx)
        results = [
            self._check(advance, totals.get(advance.id, ZERO))
            for advance in self.advances.find(ctx)
        ]
        mismatches = [r.advance_id for r in results if not r.is_consistent]
        if mismatches:
            logger.warning("advance_reconciliation_mismatch", advance_ids=mismatches)
        logger.info("advances_verified", count=len(results), mismatches=len(mismatches))
        return results

    def holder_balances(self, ctx: EngineContext) -> List[HolderBalance]:
        """
        Outstanding custody per holder.

        Counts advances that still carry a balance and have not been
        transferred or rejected. Sorted by outstanding amount, largest first.
        """
        totals = self.settlements.totals_by_advance(ctx)
        balances: Dict[tuple, HolderBalance] = {}
        for advance in self.advances.find(ctx):
            if advance.status in _EXCLUDED_FROM_OUTSTANDING or advance.remaining_amount <= ZERO:
                continue
            key = (advance.holder_ref, advance.holder_name if advance.holder_ref is None else None)
            balance = balances.get(key)
            if balance is None:
                balance = HolderBalance(
                    holder_name=advance.holder_name,
                    holder_ref=advance.holder_ref,
                    total_advanced=ZERO,
                    total_settled=ZERO,
                    outstanding=ZERO,
                    advance_count=0,
                )
                balances[key] = balance
            balance.total_advanced += advance.original_amount
            balance.total_settled += totals.get(advance.id, ZERO)
            balance.outstanding += advance.remaining_amount
            balance.advance_count += 1

        result = sorted(
            balances.values(), key=lambda b: (-b.outstanding, b.holder_name.casefold())
        )
        logger.info("holder_balances_calculated", count=len(result))
        return result

    @staticmethod
    def _check(advance: Advance, settled: Decimal) -> AdvanceReconciliation:
        result = AdvanceReconciliation(
            advance_id=advance.id,
            reference_number=advance.reference_number,
            original_amount=advance.original_amount,
            remaining_amount=advance.remaining_amount,
            settled_total=quantize_money(settled),
            status=advance.status,
        )
        if result.difference != ZERO:
            result.issues.append(
                f"settled total {result.settled_total} does not match "
                f"consumed amount {advance.settled_amount}"
            )
        if advance.remaining_amount < ZERO or advance.remaining_amount > advance.original_amount:
            result.issues.append("remaining amount outside 0..original")
        if advance.remaining_amount == ZERO and advance.status not in (
            AdvanceStatus.SETTLED,
            AdvanceStatus.TRANSFERRED,
        ):
            result.issues.append(f"zero balance with status {advance.status.value}")
        if advance.status is AdvanceStatus.SETTLED and advance.remaining_amount != ZERO:
            result.issues.append("settled advance still carries a balance")
        return result

    def __enter__(self) -> "ReconciliationService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
