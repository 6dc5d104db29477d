"""
Treasury gateway implementations.

The treasury records inflow/outflow transactions against cash boxes and bank
accounts. The engine only calls it for cash-return settlements and to check
that an account exists when an advance is issued.

Two implementations are provided:
- ``SqliteTreasuryGateway`` writes the local treasury tables on the engine's
  own connection, so its writes commit or roll back with the settlement.
- ``HttpTreasuryGateway`` talks to a remote treasury service with a bounded
  timeout; its writes are not covered by the local transaction and must be
  compensated with ``void_transaction`` if the local commit fails.
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from custody.core.config import Config
from custody.core.database import get_db_connection
from custody.domain.errors import ExternalDependencyFailure, ValidationError
from custody.domain.models import EngineContext, TreasuryDirection
from custody.domain.money import ZERO, from_db, quantize_money, to_money
from custody.utils.database_utils import TransactionError, transactional
from custody.utils.datetime_helpers import utc_now_iso

logger = structlog.get_logger(__name__)

DEPENDENCY = "treasury"


@dataclass(frozen=True)
class TreasuryTransactionRequest:
    """One money movement to record against a treasury account."""

    account_id: str
    direction: TreasuryDirection
    amount: Decimal
    reference_type: str
    reference_id: str
    description: Optional[str] = None


@dataclass(frozen=True)
class TreasuryTransaction:
    """A transaction as recorded by the treasury."""

    id: str
    account_id: str
    direction: TreasuryDirection
    amount: Decimal
    reference_type: str
    reference_id: str
    created_at: str
    new_balance: Optional[Decimal] = None


class TreasuryGateway:
    """Interface consumed by the custody services."""

    # True when writes happen inside the engine's own database transaction
    shares_transaction = False

    def account_exists(self, ctx: EngineContext, account_id: str) -> bool:
        raise NotImplementedError

    def create_transaction(
        self, ctx: EngineContext, request: TreasuryTransactionRequest
    ) -> TreasuryTransaction:
        raise NotImplementedError

    def void_transaction(self, ctx: EngineContext, transaction_id: str) -> None:
        raise NotImplementedError


class SqliteTreasuryGateway(TreasuryGateway):
    """Treasury backed by the local treasury_accounts/treasury_transactions tables."""

    shares_transaction = True

    def __init__(self, db: Optional[sqlite3.Connection] = None) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()

    def close(self) -> None:
        """Close the managed database connection if owned by the gateway."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    def account_exists(self, ctx: EngineContext, account_id: str) -> bool:
        try:
            cursor = self.db.execute(
                "SELECT 1 FROM treasury_accounts WHERE id = ? AND tenant_id = ? AND branch_id = ?",
                (account_id, ctx.tenant_id, ctx.branch_id),
            )
            return cursor.fetchone() is not None
        except sqlite3.Error as exc:
            raise ExternalDependencyFailure(DEPENDENCY, str(exc), account_id=account_id) from exc

    def get_balance(self, ctx: EngineContext, account_id: str) -> Decimal:
        cursor = self.db.execute(
            "SELECT current_balance FROM treasury_accounts WHERE id = ? AND tenant_id = ?",
            (account_id, ctx.tenant_id),
        )
        row = cursor.fetchone()
        if row is None:
            raise ExternalDependencyFailure(DEPENDENCY, "account not found", account_id=account_id)
        return from_db(row["current_balance"])

    def create_transaction(
        self, ctx: EngineContext, request: TreasuryTransactionRequest
    ) -> TreasuryTransaction:
        """
        Record a transaction and move the account balance.

        Joins the caller's open transaction when there is one; otherwise runs
        in its own.
        """
        amount = to_money(request.amount)
        if amount <= ZERO:
            raise ValidationError("Treasury amount must be greater than zero", amount=str(amount))

        try:
            if self.db.in_transaction:
                return self._record(ctx, request, amount)
            with transactional(self.db):
                return self._record(ctx, request, amount)
        except (sqlite3.Error, TransactionError) as exc:
            logger.error(
                "treasury_transaction_failed",
                account_id=request.account_id,
                reference_id=request.reference_id,
                error=str(exc),
            )
            raise ExternalDependencyFailure(
                DEPENDENCY, str(exc), account_id=request.account_id
            ) from exc

    def void_transaction(self, ctx: EngineContext, transaction_id: str) -> None:
        """Mark a transaction void and reverse its effect on the account balance."""
        try:
            if self.db.in_transaction:
                self._void(ctx, transaction_id)
            else:
                with transactional(self.db):
                    self._void(ctx, transaction_id)
        except (sqlite3.Error, TransactionError) as exc:
            raise ExternalDependencyFailure(
                DEPENDENCY, str(exc), transaction_id=transaction_id
            ) from exc

    def _record(
        self, ctx: EngineContext, request: TreasuryTransactionRequest, amount: Decimal
    ) -> TreasuryTransaction:
        balance = self.get_balance(ctx, request.account_id)
        change = amount if request.direction is TreasuryDirection.INFLOW else -amount
        new_balance = quantize_money(balance + change)

        transaction_id = str(uuid.uuid4())
        created_at = utc_now_iso()
        self.db.execute(
            """
            INSERT INTO treasury_transactions (
                id, tenant_id, account_id, direction, amount,
                reference_type, reference_id, description, created_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction_id,
                ctx.tenant_id,
                request.account_id,
                request.direction.value,
                str(amount),
                request.reference_type,
                request.reference_id,
                request.description,
                created_at,
            ),
        )
        self._set_balance(ctx, request.account_id, new_balance)

        logger.info(
            "treasury_transaction_recorded",
            transaction_id=transaction_id,
            account_id=request.account_id,
            direction=request.direction.value,
            amount=str(amount),
            new_balance=str(new_balance),
        )
        return TreasuryTransaction(
            id=transaction_id,
            account_id=request.account_id,
            direction=request.direction,
            amount=amount,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            created_at=created_at,
            new_balance=new_balance,
        )

    def _void(self, ctx: EngineContext, transaction_id: str) -> None:
        cursor = self.db.execute(
            """
            SELECT account_id, direction, amount FROM treasury_transactions
            WHERE id = ? AND tenant_id = ? AND is_void = 0
            """,
            (transaction_id, ctx.tenant_id),
        )
        row = cursor.fetchone()
        if row is None:
            return
        amount = from_db(row["amount"])
        change = -amount if row["direction"] == TreasuryDirection.INFLOW.value else amount
        balance = self.get_balance(ctx, row["account_id"])
        self.db.execute(
            "UPDATE treasury_transactions SET is_void = 1 WHERE id = ?", (transaction_id,)
        )
        self._set_balance(ctx, row["account_id"], quantize_money(balance + change))
        logger.info("treasury_transaction_voided", transaction_id=transaction_id)

    def _set_balance(self, ctx: EngineContext, account_id: str, balance: Decimal) -> None:
        self.db.execute(
            """
            UPDATE treasury_accounts
            SET current_balance = ?, updated_at_utc = ?
            WHERE id = ? AND tenant_id = ?
            """,
            (str(balance), utc_now_iso(), account_id, ctx.tenant_id),
        )


class HttpTreasuryGateway(TreasuryGateway):
    """Client for a remote treasury service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        """
        Initialize the treasury client.

        Args:
            base_url: Base URL of the treasury API
            api_key: Bearer token for the treasury API
            timeout: Seconds before a request is abandoned
            client: Preconfigured httpx client (tests inject a MockTransport)
        """
        self.base_url = base_url or Config.TREASURY_API_BASE_URL
        self.api_key = api_key or Config.TREASURY_API_KEY
        self.timeout = timeout or Config.TREASURY_TIMEOUT_SECONDS

        if not self.base_url and client is None:
            raise ValueError("Treasury base URL is required for the HTTP gateway")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        self._client = client or httpx.Client(
            base_url=self.base_url, headers=headers, timeout=self.timeout
        )

    def close(self) -> None:
        self._client.close()

    def account_exists(self, ctx: EngineContext, account_id: str) -> bool:
        response = self._request("GET", f"/accounts/{account_id}", ctx, allow_404=True)
        return response is not None

    def create_transaction(
        self, ctx: EngineContext, request: TreasuryTransactionRequest
    ) -> TreasuryTransaction:
        payload = {
            "account_id": request.account_id,
            "transaction_type": request.direction.value,
            "amount": str(to_money(request.amount)),
            "reference_type": request.reference_type,
            "reference_id": request.reference_id,
            "description": request.description,
        }
        response = self._request("POST", "/transactions", ctx, json=payload)
        try:
            data = response.json()
            new_balance = data.get("new_balance")
            transaction = TreasuryTransaction(
                id=str(data["id"]),
                account_id=request.account_id,
                direction=request.direction,
                amount=to_money(request.amount),
                reference_type=request.reference_type,
                reference_id=request.reference_id,
                created_at=data.get("created_at") or utc_now_iso(),
                new_balance=Decimal(str(new_balance)) if new_balance is not None else None,
            )
        except (KeyError, TypeError, AttributeError, ValueError, ArithmeticError) as exc:
            logger.error("treasury_invalid_response", body=response.text, error=str(exc))
            raise ExternalDependencyFailure(DEPENDENCY, "invalid response") from exc

        logger.info(
            "treasury_transaction_recorded",
            transaction_id=transaction.id,
            account_id=request.account_id,
            direction=request.direction.value,
            amount=str(transaction.amount),
        )
        return transaction

    def void_transaction(self, ctx: EngineContext, transaction_id: str) -> None:
        self._request("POST", f"/transactions/{transaction_id}/void", ctx)
        logger.info("treasury_transaction_voided", transaction_id=transaction_id)

    def _request(
        self,
        method: str,
        path: str,
        ctx: EngineContext,
        *,
        allow_404: bool = False,
        json: Optional[Dict[str, Any]] = None,
    ) -> Optional[httpx.Response]:
        headers = {"X-Tenant-Id": ctx.tenant_id, "X-Branch-Id": ctx.branch_id}
        try:
            response = self._client.request(method, path, headers=headers, json=json)
            if allow_404 and response.status_code == 404:
                return None
            response.raise_for_status()
            return response
        except httpx.TimeoutException as exc:
            logger.error("treasury_timeout", path=path, timeout=self.timeout)
            raise ExternalDependencyFailure(DEPENDENCY, "timeout", path=path) from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "treasury_http_error", path=path, status_code=exc.response.status_code
            )
            raise ExternalDependencyFailure(
                DEPENDENCY, f"HTTP {exc.response.status_code}", path=path
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("treasury_http_error", path=path, error=str(exc))
            raise ExternalDependencyFailure(DEPENDENCY, str(exc), path=path) from exc
