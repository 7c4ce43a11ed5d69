"""CRUD operations for all domain models."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from dcabot.config.constants import (
    AmountType,
    ConditionOperator,
    ConditionType,
    ExchangeType,
    ExecutionStatus,
    ExecutionType,
    Frequency,
    NotificationType,
)
from dcabot.data.models import (
    Exchange,
    Execution,
    Notification,
    ScheduledJob,
    Strategy,
    StrategyCondition,
    User,
)

if TYPE_CHECKING:
    from dcabot.data.database import Database

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a UTC ISO string for storage.

    Naive datetimes are taken to be UTC so stored values compare lexically.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string back to datetime."""
    return datetime.fromisoformat(s) if s else None


class Repository:
    """Data-access layer for the SQLite database."""

    def __init__(self, db: "Database") -> None:
        self._db = db

    @property
    def _conn(self):
        return self._db.connection

    async def _write(self, sql: str, params: tuple = ()):
        """Run one mutating statement under the database write lock."""
        async with self._db.transaction() as conn:
            return await conn.execute(sql, params)

    # -- Users ----------------------------------------------------------------

    async def save_user(self, user: User) -> int:
        """Insert a user. Returns the row id."""
        user.created_at = user.created_at or utcnow()
        cursor = await self._write(
            """
            INSERT INTO users
                (email, name, is_active, notify_email, notify_telegram, notify_line,
                 telegram_chat_id, line_user_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user.email,
                user.name,
                int(user.is_active),
                int(user.notify_email),
                int(user.notify_telegram),
                int(user.notify_line),
                user.telegram_chat_id,
                user.line_user_id,
                _dt_to_str(user.created_at),
            ),
        )
        user.id = cursor.lastrowid
        return cursor.lastrowid

    async def get_user(self, user_id: int) -> User | None:
        cursor = await self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            is_active=bool(row["is_active"]),
            notify_email=bool(row["notify_email"]),
            notify_telegram=bool(row["notify_telegram"]),
            notify_line=bool(row["notify_line"]),
            telegram_chat_id=row["telegram_chat_id"],
            line_user_id=row["line_user_id"],
            created_at=_str_to_dt(row["created_at"]),
        )

    # -- Exchanges ------------------------------------------------------------

    async def save_exchange(self, exchange: Exchange) -> int:
        """Insert an exchange binding (credentials already encrypted)."""
        exchange.created_at = exchange.created_at or utcnow()
        cursor = await self._write(
            """
            INSERT INTO exchanges
                (user_id, name, type, api_key, api_secret, passphrase,
                 is_active, last_sync_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                exchange.user_id,
                exchange.name,
                ExchangeType(exchange.type).value,
                exchange.api_key,
                exchange.api_secret,
                exchange.passphrase,
                int(exchange.is_active),
                _dt_to_str(exchange.last_sync_at),
                _dt_to_str(exchange.created_at),
            ),
        )
        exchange.id = cursor.lastrowid
        return cursor.lastrowid

    async def get_exchange(self, exchange_id: int, user_id: int | None = None) -> Exchange | None:
        """Fetch an exchange, optionally scoped to its owner."""
        if user_id is None:
            cursor = await self._conn.execute(
                "SELECT * FROM exchanges WHERE id = ?", (exchange_id,)
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM exchanges WHERE id = ? AND user_id = ?",
                (exchange_id, user_id),
            )
        row = await cursor.fetchone()
        return self._row_to_exchange(row) if row else None

    async def list_exchanges(self, user_id: int) -> list[Exchange]:
        cursor = await self._conn.execute(
            "SELECT * FROM exchanges WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        return [self._row_to_exchange(row) for row in await cursor.fetchall()]

    async def touch_exchange_sync(self, exchange_id: int, at: datetime) -> None:
        await self._write(
            "UPDATE exchanges SET last_sync_at = ? WHERE id = ?",
            (_dt_to_str(at), exchange_id),
        )

    async def set_exchange_active(self, exchange_id: int, is_active: bool) -> None:
        await self._write(
            "UPDATE exchanges SET is_active = ? WHERE id = ?",
            (int(is_active), exchange_id),
        )

    async def count_active_strategies(self, exchange_id: int) -> int:
        """Number of active strategies referencing an exchange."""
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM strategies WHERE exchange_id = ? AND is_active = 1",
            (exchange_id,),
        )
        row = await cursor.fetchone()
        return row[0]

    async def delete_exchange(self, exchange_id: int) -> None:
        """Delete an exchange and any (paused) strategies still bound to it."""
        async with self._db.transaction() as conn:
            # strategy children go with the strategy via ON DELETE CASCADE
            await conn.execute("DELETE FROM strategies WHERE exchange_id = ?", (exchange_id,))
            await conn.execute("DELETE FROM exchanges WHERE id = ?", (exchange_id,))

    def _row_to_exchange(self, row) -> Exchange:
        return Exchange(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=ExchangeType(row["type"]),
            api_key=row["api_key"],
            api_secret=row["api_secret"],
            passphrase=row["passphrase"] or "",
            is_active=bool(row["is_active"]),
            last_sync_at=_str_to_dt(row["last_sync_at"]),
            created_at=_str_to_dt(row["created_at"]),
        )

    # -- Strategies -----------------------------------------------------------

    async def save_strategy(self, strategy: Strategy) -> int:
        """Insert a strategy together with its conditions. Returns the row id."""
        now = utcnow()
        strategy.created_at = strategy.created_at or now
        strategy.updated_at = now
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO strategies
                    (user_id, exchange_id, name, description, pair, base_currency,
                     quote_currency, amount, amount_type, frequency, start_date,
                     end_date, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    strategy.user_id,
                    strategy.exchange_id,
                    strategy.name,
                    strategy.description,
                    strategy.pair,
                    strategy.base_currency,
                    strategy.quote_currency,
                    strategy.amount,
                    AmountType(strategy.amount_type).value,
                    Frequency(strategy.frequency).value,
                    _dt_to_str(strategy.start_date),
                    _dt_to_str(strategy.end_date),
                    int(strategy.is_active),
                    _dt_to_str(strategy.created_at),
                    _dt_to_str(strategy.updated_at),
                ),
            )
            strategy.id = cursor.lastrowid
            await self._insert_conditions(conn, strategy.id, strategy.conditions)
        return strategy.id

    async def update_strategy(self, strategy: Strategy) -> None:
        """Persist edits to a strategy; conditions are replaced wholesale."""
        strategy.updated_at = utcnow()
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                UPDATE strategies
                SET name = ?, description = ?, pair = ?, base_currency = ?,
                    quote_currency = ?, amount = ?, amount_type = ?, frequency = ?,
                    start_date = ?, end_date = ?, is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    strategy.name,
                    strategy.description,
                    strategy.pair,
                    strategy.base_currency,
                    strategy.quote_currency,
                    strategy.amount,
                    AmountType(strategy.amount_type).value,
                    Frequency(strategy.frequency).value,
                    _dt_to_str(strategy.start_date),
                    _dt_to_str(strategy.end_date),
                    int(strategy.is_active),
                    _dt_to_str(strategy.updated_at),
                    strategy.id,
                ),
            )
            await conn.execute(
                "DELETE FROM strategy_conditions WHERE strategy_id = ?", (strategy.id,)
            )
            await self._insert_conditions(conn, strategy.id, strategy.conditions)

    async def _insert_conditions(
        self, conn, strategy_id: int, conditions: list[StrategyCondition]
    ) -> None:
        for cond in conditions:
            cursor = await conn.execute(
                """
                INSERT INTO strategy_conditions (strategy_id, type, operator, value, is_active)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    strategy_id,
                    ConditionType(cond.type).value,
                    ConditionOperator(cond.operator).value,
                    cond.value,
                    int(cond.is_active),
                ),
            )
            cond.id = cursor.lastrowid
            cond.strategy_id = strategy_id

    async def get_strategy(self, strategy_id: int, user_id: int | None = None) -> Strategy | None:
        """Fetch a strategy with its conditions, optionally scoped to its owner."""
        if user_id is None:
            cursor = await self._conn.execute(
                "SELECT * FROM strategies WHERE id = ?", (strategy_id,)
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM strategies WHERE id = ? AND user_id = ?",
                (strategy_id, user_id),
            )
        row = await cursor.fetchone()
        if row is None:
            return None
        strategy = self._row_to_strategy(row)
        strategy.conditions = await self.get_conditions(strategy_id)
        return strategy

    async def list_strategies(self, user_id: int) -> list[Strategy]:
        cursor = await self._conn.execute(
            "SELECT * FROM strategies WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        strategies = [self._row_to_strategy(row) for row in await cursor.fetchall()]
        for strategy in strategies:
            strategy.conditions = await self.get_conditions(strategy.id)
        return strategies

    async def get_conditions(self, strategy_id: int) -> list[StrategyCondition]:
        cursor = await self._conn.execute(
            "SELECT * FROM strategy_conditions WHERE strategy_id = ? ORDER BY id ASC",
            (strategy_id,),
        )
        return [
            StrategyCondition(
                id=row["id"],
                strategy_id=row["strategy_id"],
                type=ConditionType(row["type"]),
                operator=ConditionOperator(row["operator"]),
                value=row["value"],
                is_active=bool(row["is_active"]),
            )
            for row in await cursor.fetchall()
        ]

    async def set_strategy_active(self, strategy_id: int, is_active: bool) -> None:
        await self._write(
            "UPDATE strategies SET is_active = ?, updated_at = ? WHERE id = ?",
            (int(is_active), _dt_to_str(utcnow()), strategy_id),
        )

    async def delete_strategy(self, strategy_id: int) -> None:
        """Delete a strategy with its conditions, executions and schedule entry."""
        async with self._db.transaction() as conn:
            await conn.execute(
                "DELETE FROM strategy_conditions WHERE strategy_id = ?", (strategy_id,)
            )
            await conn.execute("DELETE FROM executions WHERE strategy_id = ?", (strategy_id,))
            await conn.execute(
                "DELETE FROM scheduled_jobs WHERE strategy_id = ?", (strategy_id,)
            )
            await conn.execute("DELETE FROM strategies WHERE id = ?", (strategy_id,))

    def _row_to_strategy(self, row) -> Strategy:
        return Strategy(
            id=row["id"],
            user_id=row["user_id"],
            exchange_id=row["exchange_id"],
            name=row["name"],
            description=row["description"] or "",
            pair=row["pair"],
            base_currency=row["base_currency"],
            quote_currency=row["quote_currency"],
            amount=row["amount"],
            amount_type=AmountType(row["amount_type"]),
            frequency=Frequency(row["frequency"]),
            start_date=_str_to_dt(row["start_date"]),
            end_date=_str_to_dt(row["end_date"]),
            is_active=bool(row["is_active"]),
            created_at=_str_to_dt(row["created_at"]),
            updated_at=_str_to_dt(row["updated_at"]),
        )

    # -- Executions -----------------------------------------------------------

    async def save_execution(self, execution: Execution) -> int:
        """Insert an execution record. Returns the row id."""
        execution.updated_at = execution.updated_at or execution.timestamp
        cursor = await self._write(
            """
            INSERT INTO executions
                (strategy_id, amount, quantity, price, fee, status, type,
                 exchange_order_id, client_order_id, error_message, timestamp, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.strategy_id,
                execution.amount,
                execution.quantity,
                execution.price,
                execution.fee,
                execution.status.value,
                execution.type.value,
                execution.exchange_order_id,
                execution.client_order_id,
                execution.error_message,
                _dt_to_str(execution.timestamp),
                _dt_to_str(execution.updated_at),
            ),
        )
        execution.id = cursor.lastrowid
        return cursor.lastrowid

    async def get_execution(self, execution_id: int) -> Execution | None:
        cursor = await self._conn.execute(
            "SELECT * FROM executions WHERE id = ?", (execution_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_execution(row) if row else None

    async def record_order_submitted(
        self, execution_id: int, exchange_order_id: str, amount: float
    ) -> None:
        """Attach the venue order id to a still-pending execution."""
        await self._write(
            """
            UPDATE executions
            SET exchange_order_id = ?, amount = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (exchange_order_id, amount, _dt_to_str(utcnow()), execution_id),
        )

    async def finalize_execution(self, execution: Execution) -> bool:
        """Write the terminal state of a pending execution.

        Only a row still in ``pending`` is updated: terminal rows are
        immutable. Returns True if the row transitioned.
        """
        if not execution.status.is_terminal:
            raise ValueError("finalize_execution requires a terminal status")
        execution.updated_at = utcnow()
        cursor = await self._write(
            """
            UPDATE executions
            SET status = ?, amount = ?, quantity = ?, price = ?, fee = ?,
                exchange_order_id = ?, error_message = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (
                execution.status.value,
                execution.amount,
                execution.quantity,
                execution.price,
                execution.fee,
                execution.exchange_order_id,
                execution.error_message,
                _dt_to_str(execution.updated_at),
                execution.id,
            ),
        )
        transitioned = cursor.rowcount == 1
        if not transitioned:
            logger.warning(
                "Execution %s already terminal, ignoring %s", execution.id, execution.status.value
            )
        return transitioned

    async def list_executions(self, strategy_id: int, limit: int = 50) -> list[Execution]:
        """Most recent executions for a strategy, newest first."""
        cursor = await self._conn.execute(
            """
            SELECT * FROM executions
            WHERE strategy_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            (strategy_id, limit),
        )
        return [self._row_to_execution(row) for row in await cursor.fetchall()]

    async def count_executions(self, strategy_id: int) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM executions WHERE strategy_id = ?", (strategy_id,)
        )
        row = await cursor.fetchone()
        return row[0]

    async def get_stale_pending_executions(self, older_than: datetime) -> list[Execution]:
        """Pending executions created before *older_than*, oldest first."""
        cursor = await self._conn.execute(
            """
            SELECT * FROM executions
            WHERE status = 'pending' AND timestamp < ?
            ORDER BY timestamp ASC
            """,
            (_dt_to_str(older_than),),
        )
        return [self._row_to_execution(row) for row in await cursor.fetchall()]

    async def execution_totals(self, strategy_id: int) -> dict[str, Any]:
        """Aggregate counts and sums over a strategy's execution history."""
        cursor = await self._conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                COALESCE(SUM(CASE WHEN status = 'completed' THEN amount END), 0.0) AS invested,
                COALESCE(SUM(CASE WHEN status = 'completed' THEN quantity END), 0.0) AS quantity
            FROM executions
            WHERE strategy_id = ?
            """,
            (strategy_id,),
        )
        row = await cursor.fetchone()
        return {
            "total": row["total"] or 0,
            "completed": row["completed"] or 0,
            "failed": row["failed"] or 0,
            "invested": row["invested"] or 0.0,
            "quantity": row["quantity"] or 0.0,
        }

    def _row_to_execution(self, row) -> Execution:
        return Execution(
            id=row["id"],
            strategy_id=row["strategy_id"],
            amount=row["amount"],
            quantity=row["quantity"],
            price=row["price"],
            fee=row["fee"],
            status=ExecutionStatus(row["status"]),
            type=ExecutionType(row["type"]),
            exchange_order_id=row["exchange_order_id"] or "",
            client_order_id=row["client_order_id"] or "",
            error_message=row["error_message"] or "",
            timestamp=_str_to_dt(row["timestamp"]),
            updated_at=_str_to_dt(row["updated_at"]),
        )

    # -- Scheduled jobs -------------------------------------------------------

    async def upsert_job(self, job: ScheduledJob) -> None:
        """Create or re-activate the schedule entry for a strategy.

        Counters survive re-activation; the lease is cleared.
        """
        await self._write(
            """
            INSERT INTO scheduled_jobs
                (strategy_id, next_run_at, last_run_at, run_count, failure_count,
                 is_active, locked_by, locked_until)
            VALUES (?, ?, ?, ?, ?, ?, '', NULL)
            ON CONFLICT(strategy_id)
            DO UPDATE SET next_run_at = excluded.next_run_at,
                          is_active = excluded.is_active,
                          locked_by = '', locked_until = NULL
            """,
            (
                job.strategy_id,
                _dt_to_str(job.next_run_at),
                _dt_to_str(job.last_run_at),
                job.run_count,
                job.failure_count,
                int(job.is_active),
            ),
        )

    async def get_job(self, strategy_id: int) -> ScheduledJob | None:
        cursor = await self._conn.execute(
            "SELECT * FROM scheduled_jobs WHERE strategy_id = ?", (strategy_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def list_jobs(self) -> list[ScheduledJob]:
        cursor = await self._conn.execute(
            "SELECT * FROM scheduled_jobs ORDER BY next_run_at ASC"
        )
        return [self._row_to_job(row) for row in await cursor.fetchall()]

    async def deactivate_job(self, strategy_id: int) -> None:
        await self._write(
            "UPDATE scheduled_jobs SET is_active = 0 WHERE strategy_id = ?",
            (strategy_id,),
        )

    async def get_due_jobs(self, now: datetime) -> list[ScheduledJob]:
        """Active jobs whose next run is at or before *now*."""
        cursor = await self._conn.execute(
            """
            SELECT * FROM scheduled_jobs
            WHERE is_active = 1 AND next_run_at <= ?
            ORDER BY next_run_at ASC
            """,
            (_dt_to_str(now),),
        )
        return [self._row_to_job(row) for row in await cursor.fetchall()]

    async def acquire_lease(
        self, strategy_id: int, owner: str, now: datetime, until: datetime
    ) -> bool:
        """Atomically claim a job for firing.

        Succeeds only if the job is still active and due and no unexpired lease
        is held. Returns True on success.
        """
        cursor = await self._write(
            """
            UPDATE scheduled_jobs
            SET locked_by = ?, locked_until = ?
            WHERE strategy_id = ?
              AND is_active = 1
              AND next_run_at <= ?
              AND (locked_until IS NULL OR locked_until <= ?)
            """,
            (owner, _dt_to_str(until), strategy_id, _dt_to_str(now), _dt_to_str(now)),
        )
        return cursor.rowcount == 1

    async def release_lease(self, strategy_id: int, owner: str) -> None:
        await self._write(
            """
            UPDATE scheduled_jobs SET locked_by = '', locked_until = NULL
            WHERE strategy_id = ? AND locked_by = ?
            """,
            (strategy_id, owner),
        )

    async def record_job_run(
        self,
        strategy_id: int,
        last_run_at: datetime,
        next_run_at: datetime,
        succeeded: bool,
    ) -> None:
        """Advance a job after a firing and bump the matching counter."""
        counter = "run_count" if succeeded else "failure_count"
        await self._write(
            f"""
            UPDATE scheduled_jobs
            SET last_run_at = ?, next_run_at = ?, {counter} = {counter} + 1
            WHERE strategy_id = ?
            """,
            (_dt_to_str(last_run_at), _dt_to_str(next_run_at), strategy_id),
        )

    def _row_to_job(self, row) -> ScheduledJob:
        return ScheduledJob(
            strategy_id=row["strategy_id"],
            next_run_at=_str_to_dt(row["next_run_at"]),
            last_run_at=_str_to_dt(row["last_run_at"]),
            run_count=row["run_count"],
            failure_count=row["failure_count"],
            is_active=bool(row["is_active"]),
            locked_by=row["locked_by"] or "",
            locked_until=_str_to_dt(row["locked_until"]),
        )

    # -- Notifications --------------------------------------------------------

    async def save_notification(self, notification: Notification) -> int:
        notification.created_at = notification.created_at or utcnow()
        cursor = await self._write(
            """
            INSERT INTO notifications
                (user_id, type, title, message, data, channels, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.user_id,
                notification.type.value,
                notification.title,
                notification.message,
                json.dumps(notification.data, default=str),
                ",".join(notification.channels),
                int(notification.is_read),
                _dt_to_str(notification.created_at),
            ),
        )
        notification.id = cursor.lastrowid
        return cursor.lastrowid

    async def list_notifications(
        self, user_id: int, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        cursor = await self._conn.execute(query, (user_id, limit))
        return [
            Notification(
                id=row["id"],
                user_id=row["user_id"],
                type=NotificationType(row["type"]),
                title=row["title"],
                message=row["message"],
                data=json.loads(row["data"]) if row["data"] else {},
                channels=[c for c in (row["channels"] or "").split(",") if c],
                is_read=bool(row["is_read"]),
                created_at=_str_to_dt(row["created_at"]),
            )
            for row in await cursor.fetchall()
        ]

    async def mark_notification_read(self, notification_id: int, user_id: int) -> None:
        await self._write(
            "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
            (notification_id, user_id),
        )
