"""Storage backends for the invoice retry queue.

:class:`PostgresQueueStore` keeps items in PostgreSQL and claims due items
with ``FOR UPDATE SKIP LOCKED`` so that several service instances can drain
the same table without ever claiming one item twice.
:class:`InMemoryQueueStore` implements the same interface for a single
process (tests, local development).
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

import asyncpg  # type: ignore[import-not-found,import-untyped]

from invoice_delivery.logging import get_logger
from invoice_delivery.queue.models import QueueItem, QueueOutcome, QueueStats

log = get_logger("invoice_delivery.queue.storage")

QUEUE_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS invoice_retry_queue (
    id            UUID PRIMARY KEY,
    tenant_id     TEXT        NOT NULL,
    invoice_id    TEXT        NOT NULL,
    priority      INTEGER     NOT NULL DEFAULT 0,
    scheduled_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    attempts      INTEGER     NOT NULL DEFAULT 0,
    max_attempts  INTEGER     NOT NULL,
    is_processing BOOLEAN     NOT NULL DEFAULT FALSE,
    claimed_at    TIMESTAMPTZ,
    last_error    TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT invoice_retry_queue_attempts_within_budget CHECK (attempts <= max_attempts)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_invoice_retry_queue_invoice
    ON invoice_retry_queue (invoice_id);

CREATE INDEX IF NOT EXISTS idx_invoice_retry_queue_due
    ON invoice_retry_queue (priority DESC, scheduled_at ASC)
    WHERE is_processing = FALSE;

CREATE TABLE IF NOT EXISTS invoice_queue_outcomes (
    id          BIGSERIAL PRIMARY KEY,
    tenant_id   TEXT        NOT NULL,
    invoice_id  TEXT        NOT NULL,
    outcome     TEXT        NOT NULL,
    attempts    INTEGER     NOT NULL,
    last_error  TEXT,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_invoice_queue_outcomes_tenant
    ON invoice_queue_outcomes (tenant_id, outcome);
"""

# Columns that ``update()`` may change.
_UPDATABLE_COLUMNS = frozenset(
    {"priority", "scheduled_at", "attempts", "is_processing", "last_error"}
)


def _row_to_item(row: asyncpg.Record) -> QueueItem:
    """Convert an ``asyncpg.Record`` to a :class:`QueueItem`."""
    return QueueItem(
        id=row["id"],
        tenant_id=row["tenant_id"],
        invoice_id=row["invoice_id"],
        priority=row["priority"],
        scheduled_at=row["scheduled_at"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        is_processing=row["is_processing"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _due_order(item: QueueItem) -> tuple[int, datetime]:
    """Sort key: priority descending, then scheduled time ascending."""
    return (-item.priority, item.scheduled_at)


def _check_columns(fields: dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update queue item columns: {sorted(unknown)}")


class QueueStore(Protocol):
    """Durable persistence of queue items.

    ``claim_due_items`` must be atomic across processes: two callers never
    receive the same item.
    """

    async def find_due_items(self, limit: int) -> list[QueueItem]: ...

    async def claim_due_items(self, limit: int) -> list[QueueItem]: ...

    async def find_by_invoice_id(self, invoice_id: str) -> QueueItem | None: ...

    async def create(self, item: QueueItem) -> QueueItem: ...

    async def update(self, item_id: UUID, **fields: Any) -> QueueItem | None: ...

    async def delete(self, item_id: UUID) -> bool: ...

    async def record_outcome(self, item: QueueItem, outcome: QueueOutcome) -> None: ...

    async def get_stats(self, tenant_id: str | None = None) -> QueueStats: ...

    async def release_stale(self, older_than_seconds: int) -> int: ...


class PostgresQueueStore:
    """PostgreSQL storage backend for the invoice retry queue.

    All public methods acquire connections from the pool and release them
    automatically.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:  # type: ignore[type-arg]
        """Initialise with an existing asyncpg connection pool.

        Args:
            pool: An ``asyncpg.Pool`` instance shared with the record store.
        """
        self._pool = pool

    async def ensure_schema(self) -> None:
        """Create the queue tables if they don't exist."""
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(QUEUE_SCHEMA_SQL)
            log.info("queue_schema_ensured")
        except asyncpg.PostgresError as exc:
            log.error("queue_schema_creation_failed", error=str(exc))
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_due_items(self, limit: int) -> list[QueueItem]:
        """Return up to *limit* idle items whose scheduled time has passed.

        Read-only; use :meth:`claim_due_items` to take ownership.
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM invoice_retry_queue
                WHERE is_processing = FALSE
                  AND scheduled_at <= now()
                ORDER BY priority DESC, scheduled_at ASC
                LIMIT $1
                """,
                limit,
            )
        return [_row_to_item(row) for row in rows]

    async def find_by_invoice_id(self, invoice_id: str) -> QueueItem | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM invoice_retry_queue WHERE invoice_id = $1",
                invoice_id,
            )
        return _row_to_item(row) if row is not None else None

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_due_items(self, limit: int) -> list[QueueItem]:
        """Atomically mark up to *limit* due items as processing and return them.

        Uses ``FOR UPDATE SKIP LOCKED`` so concurrent instances skip rows
        another transaction is claiming.
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE invoice_retry_queue
                SET is_processing = TRUE,
                    claimed_at    = now(),
                    updated_at    = now()
                WHERE id IN (
                    SELECT id FROM invoice_retry_queue
                    WHERE is_processing = FALSE
                      AND scheduled_at <= now()
                    ORDER BY priority DESC, scheduled_at ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                limit,
            )
        # UPDATE ... RETURNING does not preserve the subquery order
        items = sorted((_row_to_item(row) for row in rows), key=_due_order)
        if items:
            log.debug("queue_items_claimed", count=len(items))
        return items

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, item: QueueItem) -> QueueItem:
        """Insert *item*; if the invoice already has a live item, return that one."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO invoice_retry_queue
                    (id, tenant_id, invoice_id, priority, scheduled_at,
                     attempts, max_attempts, is_processing, last_error)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (invoice_id) DO NOTHING
                RETURNING *
                """,
                item.id,
                item.tenant_id,
                item.invoice_id,
                item.priority,
                item.scheduled_at,
                item.attempts,
                item.max_attempts,
                item.is_processing,
                item.last_error,
            )
            if row is None:
                row = await conn.fetchrow(
                    "SELECT * FROM invoice_retry_queue WHERE invoice_id = $1",
                    item.invoice_id,
                )
        created = _row_to_item(row)
        log.debug(
            "queue_item_created",
            item_id=str(created.id),
            invoice_id=created.invoice_id,
            scheduled_at=created.scheduled_at.isoformat(),
        )
        return created

    async def update(self, item_id: UUID, **fields: Any) -> QueueItem | None:
        """Apply a partial update and return the new row (``None`` if gone)."""
        _check_columns(fields)
        if not fields:
            raise ValueError("update() requires at least one field")

        assignments = []
        args: list[Any] = [item_id]
        for column, value in fields.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")
        if fields.get("is_processing") is False:
            assignments.append("claimed_at = NULL")
        assignments.append("updated_at = now()")

        # Column names come from _UPDATABLE_COLUMNS only
        query = (
            f"UPDATE invoice_retry_queue SET {', '.join(assignments)} "  # nosec B608
            "WHERE id = $1 RETURNING *"
        )
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        if row is None:
            log.warning("queue_update_item_not_found", item_id=str(item_id))
            return None
        return _row_to_item(row)

    async def delete(self, item_id: UUID) -> bool:
        async with self._pool.acquire() as conn:
            result: str = await conn.execute(
                "DELETE FROM invoice_retry_queue WHERE id = $1",
                item_id,
            )
        # asyncpg returns e.g. "DELETE 1"
        return int(result.split()[-1]) > 0

    async def record_outcome(self, item: QueueItem, outcome: QueueOutcome) -> None:
        """Append a terminal outcome for stats."""
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO invoice_queue_outcomes
                    (tenant_id, invoice_id, outcome, attempts, last_error)
                VALUES ($1, $2, $3, $4, $5)
                """,
                item.tenant_id,
                item.invoice_id,
                outcome.value,
                item.attempts,
                item.last_error,
            )

    # ------------------------------------------------------------------
    # Stats / housekeeping
    # ------------------------------------------------------------------

    async def get_stats(self, tenant_id: str | None = None) -> QueueStats:
        """Return queue counts, optionally restricted to one tenant."""
        async with self._pool.acquire() as conn:
            live = await conn.fetchrow(
                """
                SELECT count(*)::int                                       AS total,
                       count(*) FILTER (WHERE NOT is_processing)::int      AS pending,
                       count(*) FILTER (WHERE is_processing)::int          AS processing,
                       min(scheduled_at) FILTER (WHERE NOT is_processing) AS next_scheduled_at
                FROM invoice_retry_queue
                WHERE ($1::text IS NULL OR tenant_id = $1)
                """,
                tenant_id,
            )
            done = await conn.fetchrow(
                """
                SELECT count(*) FILTER (WHERE outcome = 'succeeded')::int AS succeeded,
                       count(*) FILTER (WHERE outcome = 'failed')::int    AS failed
                FROM invoice_queue_outcomes
                WHERE ($1::text IS NULL OR tenant_id = $1)
                """,
                tenant_id,
            )
        return QueueStats(
            total=live["total"],
            pending=live["pending"],
            processing=live["processing"],
            succeeded=done["succeeded"],
            failed=done["failed"],
            next_scheduled_at=live["next_scheduled_at"],
        )

    async def release_stale(self, older_than_seconds: int) -> int:
        """Return items claimed longer ago than the threshold to Pending.

        Args:
            older_than_seconds: Claim age after which an item is considered
                abandoned (e.g. its process died mid-pass).

        Returns:
            Number of items released.
        """
        cutoff = datetime.now(tz=UTC) - timedelta(seconds=older_than_seconds)
        async with self._pool.acquire() as conn:
            result: str = await conn.execute(
                """
                UPDATE invoice_retry_queue
                SET is_processing = FALSE,
                    claimed_at    = NULL,
                    updated_at    = now()
                WHERE is_processing = TRUE
                  AND claimed_at <= $1
                """,
                cutoff,
            )
        count = int(result.split()[-1])
        if count > 0:
            log.info("queue_stale_released", count=count, older_than_seconds=older_than_seconds)
        return count


class InMemoryQueueStore:
    """In-process queue store with the same semantics as the PostgreSQL one.

    Suitable for a single process only: claims are atomic because no
    ``await`` happens between selecting and marking items.
    """

    def __init__(self) -> None:
        self._items: dict[UUID, QueueItem] = {}
        self._claimed_at: dict[UUID, datetime] = {}
        self._outcomes: list[tuple[str, QueueOutcome]] = []

    async def find_due_items(self, limit: int) -> list[QueueItem]:
        now = datetime.now(tz=UTC)
        due = sorted((i for i in self._items.values() if i.is_due(now)), key=_due_order)
        return [replace(i) for i in due[:limit]]

    async def claim_due_items(self, limit: int) -> list[QueueItem]:
        now = datetime.now(tz=UTC)
        due = sorted((i for i in self._items.values() if i.is_due(now)), key=_due_order)
        claimed = []
        for item in due[:limit]:
            item.is_processing = True
            item.updated_at = now
            self._claimed_at[item.id] = now
            claimed.append(replace(item))
        return claimed

    async def find_by_invoice_id(self, invoice_id: str) -> QueueItem | None:
        for item in self._items.values():
            if item.invoice_id == invoice_id:
                return replace(item)
        return None

    async def create(self, item: QueueItem) -> QueueItem:
        existing = await self.find_by_invoice_id(item.invoice_id)
        if existing is not None:
            return existing
        self._items[item.id] = replace(item)
        return replace(item)

    async def update(self, item_id: UUID, **fields: Any) -> QueueItem | None:
        _check_columns(fields)
        if not fields:
            raise ValueError("update() requires at least one field")
        item = self._items.get(item_id)
        if item is None:
            return None
        if fields.get("attempts", item.attempts) > item.max_attempts:
            raise ValueError("attempts cannot exceed max_attempts")
        for column, value in fields.items():
            setattr(item, column, value)
        if fields.get("is_processing") is False:
            self._claimed_at.pop(item_id, None)
        item.updated_at = datetime.now(tz=UTC)
        return replace(item)

    async def delete(self, item_id: UUID) -> bool:
        self._claimed_at.pop(item_id, None)
        return self._items.pop(item_id, None) is not None

    async def record_outcome(self, item: QueueItem, outcome: QueueOutcome) -> None:
        self._outcomes.append((item.tenant_id, outcome))

    async def get_stats(self, tenant_id: str | None = None) -> QueueStats:
        items = [i for i in self._items.values() if tenant_id is None or i.tenant_id == tenant_id]
        outcomes = [o for t, o in self._outcomes if tenant_id is None or t == tenant_id]
        pending = [i for i in items if not i.is_processing]
        return QueueStats(
            total=len(items),
            pending=len(pending),
            processing=len(items) - len(pending),
            succeeded=outcomes.count(QueueOutcome.SUCCEEDED),
            failed=outcomes.count(QueueOutcome.FAILED),
            next_scheduled_at=min((i.scheduled_at for i in pending), default=None),
        )

    async def release_stale(self, older_than_seconds: int) -> int:
        cutoff = datetime.now(tz=UTC) - timedelta(seconds=older_than_seconds)
        stale = [item_id for item_id, at in self._claimed_at.items() if at <= cutoff]
        for item_id in stale:
            self._items[item_id].is_processing = False
            del self._claimed_at[item_id]
        return len(stale)
