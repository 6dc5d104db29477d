"""
Settlement processing for custody advances.

Two settlement kinds exist:
- expense: the holder spent the money; documented by a purchase order whose
  line totals make up the settlement amount. No treasury movement.
- return: the holder handed cash back; recorded as an inflow on a treasury
  account in the same unit of work as the settlement.

Settlements of one advance serialize on a per-advance lock inside this
process and on ``BEGIN IMMEDIATE`` across connections, so the second one
always sees the first one's balance.
"""

from __future__ import annotations

import sqlite3
import uuid
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple

import structlog

from custody.core.database import get_db_connection
from custody.domain.errors import (
    AmountExceedsBalance,
    CustodyError,
    ExternalDependencyFailure,
    NotFound,
    ValidationError,
)
from custody.domain.models import (
    Advance,
    EngineContext,
    Settlement,
    SettlementKind,
    TreasuryDirection,
    VendorRef,
)
from custody.domain.money import ZERO, to_money
from custody.integrations.treasury_gateway import (
    SqliteTreasuryGateway,
    TreasuryGateway,
    TreasuryTransaction,
    TreasuryTransactionRequest,
)
from custody.repositories.settlement_repository import SettlementRepository
from custody.services.advance_ledger import AdvanceLedger
from custody.services.purchase_order_linker import PurchaseOrderLinker, price_lines
from custody.utils.database_utils import TransactionError, advance_lock, transactional
from custody.utils.datetime_helpers import utc_now_iso

logger = structlog.get_logger(__name__)

SETTLEMENT_REFERENCE_TYPE = "settlement"


def settlement_reference(settlement_id: str) -> str:
    return f"SETT-{settlement_id.split('-')[0].upper()}"


class SettlementProcessor:
    """Validates and applies settlements against advances."""

    def __init__(
        self,
        db: Optional[sqlite3.Connection] = None,
        *,
        ledger: Optional[AdvanceLedger] = None,
        linker: Optional[PurchaseOrderLinker] = None,
        treasury: Optional[TreasuryGateway] = None,
    ) -> None:
        """
        Initialize the processor.

        Collaborators default to instances sharing this processor's
        connection; injected collaborators must use the same connection for
        the settlement to stay atomic.
        """
        self._owns_connection = db is None
        self.db = db or get_db_connection()
        self.treasury = treasury or SqliteTreasuryGateway(self.db)
        self.ledger = ledger or AdvanceLedger(self.db, treasury=self.treasury)
        self.linker = linker or PurchaseOrderLinker(self.db)
        self.settlements = SettlementRepository(self.db)

    def close(self) -> None:
        """Close the managed database connection if owned by the processor."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    # ------------------------------------------------------------------ #
    # Settlement operations
    # ------------------------------------------------------------------ #

    def settle_as_expense(
        self,
        ctx: EngineContext,
        advance_id: str,
        vendor: VendorRef,
        line_items: Iterable[Any],
        notes: Optional[str] = None,
    ) -> Settlement:
        """
        Settle part or all of an advance as a documented expense.

        The settlement amount is the sum of the purchase order line totals.

        Raises:
            NotFound: Unknown advance or vendor id
            NotEligible: Advance is not approved/partially settled with a balance
            ValidationError: Empty or malformed line items, missing vendor
            AmountExceedsBalance: Total is zero or above the remaining balance
            ExternalDependencyFailure: Vendor directory or database failure
        """
        line_items = list(line_items or ())
        try:
            with advance_lock(ctx.tenant_id, advance_id), transactional(
                self.db, immediate=True
            ) as conn:
                advance = self.ledger.get_advance(ctx, advance_id)
                self.ledger.ensure_eligible(advance)

                lines = price_lines(line_items)
                amount = sum((line.line_total for line in lines), ZERO)
                self._ensure_settleable_amount(advance, amount)

                snapshot = self.linker.build_snapshot(ctx, vendor, line_items, advance.currency)
                settlement = self._new_settlement(ctx, advance, SettlementKind.EXPENSE, amount, notes)
                settlement.po_snapshot = snapshot

                self.settlements.insert(settlement)
                self.linker.persist_snapshot(conn, ctx, settlement.id, snapshot)
                self.ledger.apply_settlement(advance, amount)
        except TransactionError as exc:
            logger.error(
                "settlement_failed",
                kind=SettlementKind.EXPENSE.value,
                advance_id=advance_id,
                error=str(exc.__cause__ or exc),
            )
            raise ExternalDependencyFailure("database", str(exc.__cause__ or exc)) from exc
        except CustodyError as exc:
            self._log_rejection(SettlementKind.EXPENSE, advance_id, exc)
            raise

        self._log_applied(settlement, advance)
        return settlement

    def settle_as_return(
        self,
        ctx: EngineContext,
        advance_id: str,
        amount: Any,
        treasury_account_id: str,
        notes: Optional[str] = None,
    ) -> Settlement:
        """
        Settle part or all of an advance by returning cash to a treasury account.

        The treasury inflow and the settlement form one unit: a treasury
        failure leaves the advance untouched, and a treasury transaction
        recorded outside this database is voided if the local commit fails.

        A treasury that shares this processor's connection writes inside the
        settlement transaction. Any other treasury is called before the local
        write starts, so a slow remote call holds only this advance's lock
        and never the database write lock. The balance is checked again once
        the write lock is taken.

        Raises:
            NotFound: Unknown advance or treasury account
            NotEligible: Advance is not approved/partially settled with a balance
            ValidationError: Amount is not positive
            AmountExceedsBalance: Amount is above the remaining balance
            ExternalDependencyFailure: Treasury or database failure
        """
        treasury_transaction: Optional[TreasuryTransaction] = None
        try:
            with advance_lock(ctx.tenant_id, advance_id):
                if self._treasury_joins_transaction:
                    with transactional(self.db, immediate=True):
                        advance, amount = self._validate_return(
                            ctx, advance_id, amount, treasury_account_id
                        )
                        settlement = self._new_settlement(
                            ctx, advance, SettlementKind.RETURN, amount, notes
                        )
                        treasury_transaction = self._record_inflow(
                            ctx, advance, settlement, treasury_account_id
                        )
                        self.settlements.insert(settlement)
                        self.ledger.apply_settlement(advance, amount)
                else:
                    advance, amount = self._validate_return(
                        ctx, advance_id, amount, treasury_account_id
                    )
                    settlement = self._new_settlement(
                        ctx, advance, SettlementKind.RETURN, amount, notes
                    )
                    treasury_transaction = self._record_inflow(
                        ctx, advance, settlement, treasury_account_id
                    )
                    with transactional(self.db, immediate=True):
                        # Another process may have settled while the treasury call ran
                        advance = self.ledger.get_advance(ctx, advance_id)
                        self.ledger.ensure_eligible(advance)
                        self.ledger.ensure_within_balance(advance, amount)
                        self.settlements.insert(settlement)
                        self.ledger.apply_settlement(advance, amount)
        except TransactionError as exc:
            logger.error(
                "settlement_failed",
                kind=SettlementKind.RETURN.value,
                advance_id=advance_id,
                error=str(exc.__cause__ or exc),
            )
            failure = ExternalDependencyFailure("database", str(exc.__cause__ or exc))
            self._compensate(ctx, treasury_transaction, failure)
            raise failure from exc
        except CustodyError as exc:
            self._log_rejection(SettlementKind.RETURN, advance_id, exc)
            self._compensate(ctx, treasury_transaction, exc)
            raise
        except Exception as exc:
            logger.error(
                "settlement_failed",
                kind=SettlementKind.RETURN.value,
                advance_id=advance_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._compensate(ctx, treasury_transaction)
            raise

        self._log_applied(settlement, advance)
        return settlement

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_settlements_for_advance(self, ctx: EngineContext, advance_id: str) -> List[Settlement]:
        """Settlements applied to an advance, most recent first."""
        self.ledger.get_advance(ctx, advance_id)
        return [
            self._with_snapshot(ctx, settlement)
            for settlement in self.settlements.list_for_advance(ctx, advance_id)
        ]

    def get_settlement(self, ctx: EngineContext, settlement_id: str) -> Settlement:
        settlement = self.settlements.get(ctx, settlement_id)
        if settlement is None:
            raise NotFound("settlement", settlement_id)
        return self._with_snapshot(ctx, settlement)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @property
    def _treasury_joins_transaction(self) -> bool:
        return self.treasury.shares_transaction and getattr(self.treasury, "db", None) is self.db

    def _validate_return(
        self,
        ctx: EngineContext,
        advance_id: str,
        amount: Any,
        treasury_account_id: str,
    ) -> Tuple[Advance, Decimal]:
        advance = self.ledger.get_advance(ctx, advance_id)
        self.ledger.ensure_eligible(advance)

        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Return amount must be greater than zero", amount=str(amount))
        self.ledger.ensure_within_balance(advance, amount)

        if not treasury_account_id or not self.treasury.account_exists(ctx, treasury_account_id):
            raise NotFound("treasury_account", treasury_account_id)
        return advance, amount

    def _record_inflow(
        self,
        ctx: EngineContext,
        advance: Advance,
        settlement: Settlement,
        treasury_account_id: str,
    ) -> TreasuryTransaction:
        treasury_transaction = self.treasury.create_transaction(
            ctx,
            TreasuryTransactionRequest(
                account_id=treasury_account_id,
                direction=TreasuryDirection.INFLOW,
                amount=settlement.amount,
                reference_type=SETTLEMENT_REFERENCE_TYPE,
                reference_id=settlement.id,
                description=f"Custody return {advance.reference_number} ({advance.holder_name})",
            ),
        )
        settlement.treasury_transaction_id = treasury_transaction.id
        return treasury_transaction

    def _compensate(
        self,
        ctx: EngineContext,
        treasury_transaction: Optional[TreasuryTransaction],
        failure: Optional[CustodyError] = None,
    ) -> None:
        """Void a treasury transaction the rolled-back settlement no longer backs."""
        if treasury_transaction is None or self._treasury_joins_transaction:
            return
        try:
            self.treasury.void_transaction(ctx, treasury_transaction.id)
        except ExternalDependencyFailure as exc:
            # Settlement error still propagates; the orphaned transaction needs manual review
            logger.error(
                "treasury_compensation_failed",
                treasury_transaction_id=treasury_transaction.id,
                error=str(exc),
            )
            if failure is not None:
                failure.context["orphaned_treasury_transaction_id"] = treasury_transaction.id
            return
        logger.warning(
            "treasury_transaction_compensated",
            treasury_transaction_id=treasury_transaction.id,
            reference_id=treasury_transaction.reference_id,
        )

    @staticmethod
    def _ensure_settleable_amount(advance: Advance, amount: Decimal) -> None:
        if amount <= ZERO:
            raise AmountExceedsBalance(
                "Settlement total must be greater than zero",
                requested=amount,
                remaining=advance.remaining_amount,
                advance_id=advance.id,
            )
        AdvanceLedger.ensure_within_balance(advance, amount)

    @staticmethod
    def _new_settlement(
        ctx: EngineContext,
        advance: Advance,
        kind: SettlementKind,
        amount: Decimal,
        notes: Optional[str],
    ) -> Settlement:
        settlement_id = str(uuid.uuid4())
        return Settlement(
            id=settlement_id,
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            linked_advance_id=advance.id,
            kind=kind,
            amount=amount,
            currency=advance.currency,
            cost_center_id=advance.cost_center_id,
            reference_number=settlement_reference(settlement_id),
            created_at=utc_now_iso(),
            created_by=ctx.actor,
            notes=notes,
        )

    def _with_snapshot(self, ctx: EngineContext, settlement: Settlement) -> Settlement:
        if settlement.kind is SettlementKind.EXPENSE:
            settlement.po_snapshot = self.linker.load_snapshot(ctx, settlement.id)
        return settlement

    @staticmethod
    def _log_rejection(kind: SettlementKind, advance_id: str, exc: CustodyError) -> None:
        logger.warning(
            "settlement_rejected",
            kind=kind.value,
            advance_id=advance_id,
            code=exc.code,
            reason=exc.message,
        )

    @staticmethod
    def _log_applied(settlement: Settlement, advance: Advance) -> None:
        logger.info(
            "settlement_applied",
            settlement_id=settlement.id,
            reference_number=settlement.reference_number,
            kind=settlement.kind.value,
            advance_id=advance.id,
            amount=str(settlement.amount),
            remaining=str(advance.remaining_amount),
            status=advance.status.value,
            treasury_transaction_id=settlement.treasury_transaction_id,
        )

    def __enter__(self) -> "SettlementProcessor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
