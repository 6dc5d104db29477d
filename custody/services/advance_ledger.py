"""
Advance ledger: issuance, queries and balance/status changes of custody advances.

The ledger is the only writer of the advances table. Settlement and transfer
services mutate balances through ``apply_settlement``, ``mark_transferred``
and ``open_successor`` inside their own transactions so every change is
written with the same version check and status rules.
"""

from __future__ import annotations

import sqlite3
import uuid
from decimal import Decimal
from typing import Any, List, Optional, Union

import structlog

from custody.core.config import Config
from custody.core.database import get_db_connection
from custody.domain.errors import (
    AmountExceedsBalance,
    ExternalDependencyFailure,
    NotEligible,
    NotFound,
    ValidationError,
)
from custody.domain.models import (
    OPEN_STATUSES,
    Advance,
    AdvanceFilter,
    AdvanceStatus,
    EngineContext,
    Holder,
)
from custody.domain.money import ZERO, quantize_money, to_money
from custody.integrations.treasury_gateway import SqliteTreasuryGateway, TreasuryGateway
from custody.repositories.advance_repository import AdvanceRepository
from custody.repositories.reference_repository import ReferenceRepository
from custody.utils.database_utils import TransactionError, transactional
from custody.utils.datetime_helpers import utc_now_iso

logger = structlog.get_logger(__name__)


def normalize_currency(currency: Optional[str]) -> str:
    """Return an upper-case 3-letter currency code or raise ValidationError."""
    code = (currency or Config.DEFAULT_CURRENCY or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError("Currency must be a valid 3-letter ISO code", currency=currency)
    return code


class AdvanceLedger:
    """Owns Advance records and their lifecycle."""

    def __init__(
        self,
        db: Optional[sqlite3.Connection] = None,
        *,
        treasury: Optional[TreasuryGateway] = None,
        references: Optional[ReferenceRepository] = None,
    ) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()
        self.treasury = treasury or SqliteTreasuryGateway(self.db)
        self.references = references or ReferenceRepository(self.db)
        self.advances = AdvanceRepository(self.db)

    def close(self) -> None:
        """Close the managed database connection if owned by the ledger."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    # ------------------------------------------------------------------ #
    # Issuance and approval
    # ------------------------------------------------------------------ #

    def issue_advance(
        self,
        ctx: EngineContext,
        holder: Holder,
        amount: Any,
        currency: Optional[str],
        treasury_account_id: str,
        cost_center_id: Optional[str] = None,
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Advance:
        """
        Create a pending advance for ``holder``. No money moves at issuance.

        Args:
            ctx: Tenant/branch scope and acting user
            holder: Employee reference or external holder name
            amount: Positive amount granted
            currency: 3-letter code; ``None`` uses Config.DEFAULT_CURRENCY
            treasury_account_id: Account the cash is drawn from
            cost_center_id: Project the advance is booked to; ``None`` for
                general custody
            reference_number: Caller-supplied reference; generated when omitted
            notes: Free text

        Returns:
            The persisted Advance in status ``pending``

        Raises:
            ValidationError: Bad amount, currency, holder or treasury account
            NotFound: Unknown cost center or employee
            ExternalDependencyFailure: Treasury lookup or database failure
        """
        try:
            amount = to_money(amount)
        except ValidationError as exc:
            logger.warning("advance_issue_rejected", reason="invalid_amount", error=exc.message)
            raise
        if amount <= ZERO:
            logger.warning("advance_issue_rejected", reason="non_positive_amount", amount=str(amount))
            raise ValidationError("Advance amount must be greater than zero", amount=str(amount))

        currency = normalize_currency(currency)
        holder_name = self._resolve_holder_name(ctx, holder)

        if not treasury_account_id or not self.treasury.account_exists(ctx, treasury_account_id):
            logger.warning(
                "advance_issue_rejected",
                reason="unknown_treasury_account",
                treasury_account_id=treasury_account_id,
            )
            raise ValidationError(
                "Treasury account does not exist", treasury_account_id=treasury_account_id
            )

        if cost_center_id is not None and not self.references.cost_center_exists(
            ctx, cost_center_id
        ):
            raise NotFound("cost_center", cost_center_id)

        try:
            with transactional(self.db, immediate=True):
                if reference_number:
                    reference_number = reference_number.strip()
                    if self.advances.reference_exists(ctx, reference_number):
                        raise ValidationError(
                            "Reference number already in use",
                            reference_number=reference_number,
                        )
                else:
                    reference_number = self.advances.next_reference_number(
                        ctx, Config.ADVANCE_REFERENCE_PREFIX, Config.ADVANCE_REFERENCE_WIDTH
                    )

                advance = Advance(
                    id=str(uuid.uuid4()),
                    tenant_id=ctx.tenant_id,
                    branch_id=ctx.branch_id,
                    holder_name=holder_name,
                    holder_ref=holder.employee_ref,
                    cost_center_id=cost_center_id,
                    original_amount=amount,
                    remaining_amount=amount,
                    currency=currency,
                    treasury_account_id=treasury_account_id,
                    reference_number=reference_number,
                    status=AdvanceStatus.PENDING,
                    created_at=utc_now_iso(),
                    notes=notes,
                    created_by=ctx.actor,
                )
                self.advances.insert(advance)
        except TransactionError as exc:
            logger.error("advance_issue_failed", holder=holder_name, error=str(exc.__cause__ or exc))
            raise ExternalDependencyFailure("database", str(exc.__cause__ or exc)) from exc

        logger.info(
            "advance_issued",
            advance_id=advance.id,
            reference_number=advance.reference_number,
            holder=holder_name,
            holder_kind=holder.kind.value,
            cost_center_id=cost_center_id,
            amount=str(amount),
            currency=currency,
            actor=ctx.actor,
        )
        return advance

    def record_approval_decision(
        self, ctx: EngineContext, advance_id: str, approved: bool
    ) -> Advance:
        """
        Apply the external approval workflow's decision to a pending advance.

        Only the advance's status changes. Handing the cash to the holder is
        the caller's job: record the matching treasury outflow on
        ``advance.treasury_account_id`` when the money actually leaves the
        box. Returns are recorded as inflows by ``settle_as_return``, so a
        treasury that never sees the outflow grows with every return.

        Raises:
            NotFound: Unknown advance
            NotEligible: Advance is not pending
            ExternalDependencyFailure: Database failure
        """
        try:
            with transactional(self.db, immediate=True):
                advance = self.get_advance(ctx, advance_id)
                if advance.status is not AdvanceStatus.PENDING:
                    logger.warning(
                        "approval_decision_rejected",
                        advance_id=advance_id,
                        status=advance.status.value,
                    )
                    raise NotEligible(
                        "Only pending advances can be approved or rejected",
                        advance_id=advance_id,
                        status=advance.status.value,
                    )
                status = AdvanceStatus.APPROVED if approved else AdvanceStatus.REJECTED
                self.advances.update_balance(advance, advance.remaining_amount, status)
        except TransactionError as exc:
            logger.error("approval_decision_failed", advance_id=advance_id, error=str(exc))
            raise ExternalDependencyFailure("database", str(exc.__cause__ or exc)) from exc

        logger.info(
            "advance_approval_recorded",
            advance_id=advance_id,
            status=advance.status.value,
            actor=ctx.actor,
        )
        return advance

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_advance(self, ctx: EngineContext, advance_id: str) -> Advance:
        advance = self.advances.get(ctx, advance_id)
        if advance is None:
            raise NotFound("advance", advance_id)
        return advance

    def list_open_advances(
        self, ctx: EngineContext, advance_filter: Optional[AdvanceFilter] = None
    ) -> List[Advance]:
        """Advances that can still be settled or transferred, most recent first."""
        return [
            advance
            for advance in self.advances.find(ctx, advance_filter, OPEN_STATUSES)
            if advance.remaining_amount > ZERO
        ]

    def list_advances(
        self,
        ctx: EngineContext,
        advance_filter: Optional[AdvanceFilter] = None,
        status: Optional[Union[AdvanceStatus, str]] = None,
    ) -> List[Advance]:
        statuses = None
        if status is not None:
            if not isinstance(status, AdvanceStatus):
                try:
                    status = AdvanceStatus(status)
                except ValueError as exc:
                    raise ValidationError("Unknown advance status", status=status) from exc
            statuses = (status,)
        return self.advances.find(ctx, advance_filter, statuses)

    # ------------------------------------------------------------------ #
    # Balance mutation (callers hold an open transaction)
    # ------------------------------------------------------------------ #

    @staticmethod
    def ensure_eligible(advance: Advance) -> None:
        """Raise NotEligible unless the advance can be settled or transferred."""
        if not advance.is_eligible:
            raise NotEligible(
                "Advance is not open for settlement or transfer",
                advance_id=advance.id,
                status=advance.status.value,
                remaining=str(advance.remaining_amount),
            )

    @staticmethod
    def ensure_within_balance(advance: Advance, amount: Decimal) -> None:
        if amount > advance.remaining_amount:
            raise AmountExceedsBalance(
                "Settlement amount exceeds the remaining balance",
                requested=amount,
                remaining=advance.remaining_amount,
                advance_id=advance.id,
            )

    def apply_settlement(self, advance: Advance, amount: Decimal) -> Advance:
        """Decrement the remaining balance and recompute status."""
        self.ensure_within_balance(advance, amount)
        remaining = quantize_money(advance.remaining_amount - amount)
        return self.advances.update_balance(
            advance, remaining, AdvanceStatus.after_settlement(remaining)
        )

    def mark_transferred(self, advance: Advance, transferred_at: Optional[str] = None) -> Advance:
        """Close an advance whose balance has been carried into a successor."""
        return self.advances.update_balance(
            advance,
            advance.remaining_amount,
            AdvanceStatus.TRANSFERRED,
            transferred_at=transferred_at or utc_now_iso(),
        )

    def open_successor(
        self, ctx: EngineContext, source: Advance, cost_center_id: Optional[str]
    ) -> Advance:
        """Insert an approved advance carrying ``source``'s remaining balance."""
        successor = Advance(
            id=str(uuid.uuid4()),
            tenant_id=ctx.tenant_id,
            branch_id=ctx.branch_id,
            holder_name=source.holder_name,
            holder_ref=source.holder_ref,
            cost_center_id=cost_center_id,
            original_amount=source.remaining_amount,
            remaining_amount=source.remaining_amount,
            currency=source.currency,
            treasury_account_id=source.treasury_account_id,
            reference_number=self.advances.next_reference_number(
                ctx, Config.ADVANCE_REFERENCE_PREFIX, Config.ADVANCE_REFERENCE_WIDTH
            ),
            status=AdvanceStatus.APPROVED,
            created_at=utc_now_iso(),
            source_advance_id=source.id,
            notes=f"Transferred from {source.reference_number}",
            created_by=ctx.actor,
        )
        self.advances.insert(successor)
        return successor

    def _resolve_holder_name(self, ctx: EngineContext, holder: Holder) -> str:
        if holder is None or not (holder.employee_ref or (holder.external_name or "").strip()):
            raise ValidationError("Advance holder is required", field="holder")
        if holder.employee_ref:
            name = self.references.get_employee_name(ctx, holder.employee_ref)
            if name is None:
                raise NotFound("employee", holder.employee_ref)
            return name
        return holder.external_name.strip()

    # Context manager convenience -------------------------------------------------

    def __enter__(self) -> "AdvanceLedger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
