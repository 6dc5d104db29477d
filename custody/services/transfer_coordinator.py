"""
Transfer of an open advance's remaining balance to another cost center.

The source advance is closed as ``transferred`` with its balance frozen, and a
successor advance carrying that balance is opened in the target cost center.
Both writes share one transaction.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import List, Optional, Union

import structlog

from custody.core.database import get_db_connection
from custody.domain.errors import (
    CustodyError,
    ExternalDependencyFailure,
    NotEligible,
    NotFound,
    ValidationError,
)
from custody.domain.models import Advance, EngineContext, TransferResult
from custody.repositories.reference_repository import ReferenceRepository
from custody.services.advance_ledger import AdvanceLedger
from custody.utils.database_utils import TransactionError, advance_lock, transactional
from custody.utils.datetime_helpers import format_utc_iso, parse_utc_iso

logger = structlog.get_logger(__name__)


def _transfer_timestamp(value: Optional[Union[datetime, str]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return format_utc_iso(value)
    try:
        return format_utc_iso(parse_utc_iso(str(value).strip()))
    except ValueError as exc:
        raise ValidationError(
            "Transfer date must be an ISO8601 date or datetime",
            field="transfer_date",
            value=str(value),
        ) from exc


class TransferCoordinator:
    """Moves open advances between cost centers."""

    def __init__(
        self,
        db: Optional[sqlite3.Connection] = None,
        *,
        ledger: Optional[AdvanceLedger] = None,
        references: Optional[ReferenceRepository] = None,
    ) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()
        self.references = references or ReferenceRepository(self.db)
        self.ledger = ledger or AdvanceLedger(self.db, references=self.references)

    def close(self) -> None:
        """Close the managed database connection if owned by the coordinator."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    def transfer_advance(
        self,
        ctx: EngineContext,
        advance_id: str,
        new_cost_center_id: Optional[str],
        transfer_date: Optional[Union[datetime, str]] = None,
    ) -> TransferResult:
        """
        Close ``advance_id`` and open a successor in ``new_cost_center_id``.

        ``transfer_date`` backdates the closed advance's transfer time (a
        datetime or ISO8601 string, naive values read as UTC); it defaults
        to now.

        Raises:
            NotFound: Unknown advance or target cost center
            NotEligible: Advance is not open, or already in the target cost center
            ValidationError: transfer_date is not a valid date
            ExternalDependencyFailure: Database failure; nothing is written
        """
        try:
            transferred_at = _transfer_timestamp(transfer_date)
            with advance_lock(ctx.tenant_id, advance_id), transactional(
                self.db, immediate=True
            ):
                source = self.ledger.get_advance(ctx, advance_id)
                self.ledger.ensure_eligible(source)

                if new_cost_center_id == source.cost_center_id:
                    raise NotEligible(
                        "Advance is already booked to this cost center",
                        advance_id=advance_id,
                        cost_center_id=new_cost_center_id,
                    )
                if new_cost_center_id is not None and not self.references.cost_center_exists(
                    ctx, new_cost_center_id
                ):
                    raise NotFound("cost_center", new_cost_center_id)

                previous_cost_center = source.cost_center_id
                self.ledger.mark_transferred(source, transferred_at)
                successor = self.ledger.open_successor(ctx, source, new_cost_center_id)
        except TransactionError as exc:
            logger.error(
                "advance_transfer_failed", advance_id=advance_id, error=str(exc.__cause__ or exc)
            )
            raise ExternalDependencyFailure("database", str(exc.__cause__ or exc)) from exc
        except CustodyError as exc:
            logger.warning(
                "advance_transfer_rejected",
                advance_id=advance_id,
                new_cost_center_id=new_cost_center_id,
                code=exc.code,
                reason=exc.message,
            )
            raise

        result = TransferResult(closed_advance=source, new_advance=successor)
        logger.info(
            "advance_transferred",
            closed_advance_id=source.id,
            new_advance_id=successor.id,
            new_reference_number=successor.reference_number,
            from_cost_center_id=previous_cost_center,
            to_cost_center_id=new_cost_center_id,
            transferred_at=source.transferred_at,
            carried_amount=str(result.record.carried_amount),
            actor=ctx.actor,
        )
        return result

    def transfer_chain(self, ctx: EngineContext, advance_id: str) -> List[Advance]:
        """Return the advance and its predecessors, oldest grant first."""
        chain: List[Advance] = []
        seen = set()
        current: Optional[Advance] = self.ledger.get_advance(ctx, advance_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(current)
            if current.source_advance_id is None:
                break
            current = self.ledger.advances.get(ctx, current.source_advance_id)
        chain.reverse()
        return chain

    def __enter__(self) -> "TransferCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
