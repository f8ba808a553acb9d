from typing import Any

import psycopg
from psycopg.rows import dict_row

from invoice_pipeline.credits.exceptions import (
    InsufficientCreditsError,
    UserNotFoundError,
)
from invoice_pipeline.credits.models import (
    ChargeResult,
    Reconciliation,
    TransactionStatus,
    TransactionType,
)
from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import TransactionRecord
from invoice_pipeline.logging.logger import Log


class _DuplicateCharge(Exception):
    pass


class CreditLedger:
    """The only code path that changes users.credits.

    Every balance change and its credit_transactions row are written in the
    same database transaction, so the stored balance always equals the sum of
    the user's completed transactions.
    """

    def charge_usage(
        self,
        user_id: int,
        amount: int,
        job_id: str,
        session_id: str | None = None,
        conn: psycopg.Connection[Any] | None = None,
    ) -> ChargeResult:
        """Debit ``amount`` credits for a completed job.

        When ``conn`` is given the charge joins the caller's transaction (as a
        savepoint) and the caller commits. A second charge for the same job is
        declined as a duplicate.
        """
        if amount <= 0:
            raise ValueError("Usage charge amount must be positive")
        if conn is not None:
            return self._charge(conn, user_id, amount, job_id, session_id)
        with get_connection() as own:
            result = self._charge(own, user_id, amount, job_id, session_id)
            own.commit()
            return result

    def _charge(
        self,
        conn: psycopg.Connection[Any],
        user_id: int,
        amount: int,
        job_id: str,
        session_id: str | None,
    ) -> ChargeResult:
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE users
                        SET credits = credits - %s, updated_at = NOW()
                        WHERE id = %s AND credits >= %s
                        RETURNING credits
                        """,
                        (amount, user_id, amount),
                    )
                    row = cur.fetchone()
                    if row is None:
                        return ChargeResult(
                            charged=False,
                            balance=self._current_balance(conn, user_id),
                            insufficient=True,
                        )
                    balance = int(row[0])
                    cur.execute(
                        """
                        INSERT INTO credit_transactions
                            (user_id, type, credits, status, description, job_id, session_id)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (job_id) WHERE type = 'USAGE' DO NOTHING
                        RETURNING id
                        """,
                        (
                            user_id,
                            TransactionType.USAGE.value,
                            -amount,
                            TransactionStatus.COMPLETED.value,
                            f"Processed page (job {job_id})",
                            job_id,
                            session_id,
                        ),
                    )
                    if cur.fetchone() is None:
                        raise _DuplicateCharge
        except _DuplicateCharge:
            Log.warning(f"Duplicate usage charge for job {job_id} declined")
            return ChargeResult(
                charged=False,
                balance=self._current_balance(conn, user_id),
                duplicate=True,
            )
        return ChargeResult(charged=True, balance=balance)

    def credit(
        self,
        user_id: int,
        amount: int,
        transaction_type: TransactionType,
        reference: str | None = None,
        description: str | None = None,
    ) -> int:
        """Apply a purchase, refund, bonus or admin adjustment. Returns the new balance.

        ADMIN_DEBIT subtracts ``amount`` and is refused if it would go below zero.
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        if transaction_type is TransactionType.USAGE:
            raise ValueError("Usage debits go through charge_usage")
        delta = -amount if transaction_type.is_debit else amount

        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users
                    SET credits = credits + %s, updated_at = NOW()
                    WHERE id = %s AND credits + %s >= 0
                    RETURNING credits
                    """,
                    (delta, user_id, delta),
                )
                row = cur.fetchone()
                if row is None:
                    balance = self._current_balance(conn, user_id)
                    conn.rollback()
                    raise InsufficientCreditsError(
                        f"User {user_id} has {balance} credits, cannot debit {amount}"
                    )
                cur.execute(
                    """
                    INSERT INTO credit_transactions
                        (user_id, type, credits, status, description, reference)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        transaction_type.value,
                        delta,
                        TransactionStatus.COMPLETED.value,
                        description or transaction_type.value.replace("_", " ").title(),
                        reference,
                    ),
                )
            conn.commit()
        Log.info(f"Applied {transaction_type.value} of {delta} credits to user {user_id}")
        return int(row[0])

    def balance(self, user_id: int) -> int:
        with get_connection() as conn:
            return self._current_balance(conn, user_id)

    def history(self, user_id: int, limit: int = 50) -> list[TransactionRecord]:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT id, user_id, type, credits, status, description,
                           job_id, session_id, reference, created_at
                    FROM credit_transactions
                    WHERE user_id = %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                    """,
                    (user_id, limit),
                )
                rows = cur.fetchall()
        return [
            TransactionRecord(
                id=row["id"],
                user_id=row["user_id"],
                type=row["type"],
                credits=row["credits"],
                status=row["status"],
                description=row["description"],
                job_id=str(row["job_id"]) if row["job_id"] else None,
                session_id=str(row["session_id"]) if row["session_id"] else None,
                reference=row["reference"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def reconcile(self, user_id: int) -> Reconciliation:
        """Compare a user's stored balance with the sum of their transactions."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT u.credits, COALESCE(SUM(t.credits), 0)
                    FROM users u
                    LEFT JOIN credit_transactions t
                      ON t.user_id = u.id AND t.status = %s
                    WHERE u.id = %s
                    GROUP BY u.id, u.credits
                    """,
                    (TransactionStatus.COMPLETED.value, user_id),
                )
                row = cur.fetchone()
        if row is None:
            raise UserNotFoundError(f"User {user_id} not found")
        result = Reconciliation(user_id=user_id, balance=int(row[0]), ledger_sum=int(row[1]))
        if not result.ok:
            _log_mismatch(result)
        return result

    def reconcile_all(self) -> list[Reconciliation]:
        """Return (and log) every user whose balance disagrees with the ledger."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT u.id, u.credits, COALESCE(SUM(t.credits), 0) AS ledger_sum
                    FROM users u
                    LEFT JOIN credit_transactions t
                      ON t.user_id = u.id AND t.status = %s
                    GROUP BY u.id, u.credits
                    HAVING u.credits <> COALESCE(SUM(t.credits), 0)
                    """,
                    (TransactionStatus.COMPLETED.value,),
                )
                rows = cur.fetchall()
        mismatches = [
            Reconciliation(user_id=row[0], balance=int(row[1]), ledger_sum=int(row[2]))
            for row in rows
        ]
        for mismatch in mismatches:
            _log_mismatch(mismatch)
        Log.info(f"Ledger reconciliation finished, {len(mismatches)} mismatch(es)")
        return mismatches

    def _current_balance(self, conn: psycopg.Connection[Any], user_id: int) -> int:
        with conn.cursor() as cur:
            cur.execute("SELECT credits FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
        if row is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return int(row[0])


def _log_mismatch(result: Reconciliation) -> None:
    Log.error(
        f"Ledger mismatch for user {result.user_id}: "
        f"balance={result.balance} ledger_sum={result.ledger_sum}"
    )
