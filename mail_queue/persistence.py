"""SQLite backed persistence used by the mail queue."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    CANCELLABLE_STATUSES,
    DUE_STATUSES,
    RETRYABLE_STATUSES,
    Campaign,
    CampaignStatus,
    Message,
    MessageStatus,
)

MESSAGE_COLUMNS = (
    "id",
    "recipient_email",
    "recipient_name",
    "subject",
    "body",
    "kind",
    "status",
    "priority",
    "attempt_count",
    "max_attempts",
    "scheduled_at",
    "created_at",
    "last_attempt_at",
    "sent_at",
    "error_message",
    "correlation_id",
    "campaign_id",
    "campaign_name",
)

CAMPAIGN_COLUMNS = (
    "id",
    "name",
    "description",
    "subject",
    "body",
    "campaign_type",
    "target_audience",
    "status",
    "priority",
    "max_attempts",
    "created_by",
    "created_at",
    "scheduled_at",
    "sent_at",
    "total_recipients",
    "emails_queued",
    "emails_failed",
    "emails_sent",
)
# emails_sent is advanced by deliveries only, never by a campaign save
CAMPAIGN_SAVE_COLUMNS = tuple(col for col in CAMPAIGN_COLUMNS if col != "emails_sent")


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def _status_values(statuses: Sequence[MessageStatus | CampaignStatus]) -> Tuple[str, ...]:
    return tuple(status.value for status in statuses)


class Persistence:
    """Helper class responsible for reading and writing queue state.

    Every method opens its own connection and commits before returning, so
    each state transition is a single durable write.
    """

    def __init__(self, db_path: str = "/data/mail_queue.db"):
        """Persist data to the given database path."""
        self.db_path = db_path

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    recipient_email TEXT NOT NULL,
                    recipient_name TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    priority INTEGER NOT NULL DEFAULT 5,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    scheduled_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    last_attempt_at INTEGER,
                    sent_at INTEGER,
                    error_message TEXT,
                    correlation_id TEXT,
                    campaign_id TEXT,
                    campaign_name TEXT
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_due ON messages(status, scheduled_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_campaign ON messages(campaign_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_correlation ON messages(correlation_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    campaign_type TEXT NOT NULL,
                    target_audience TEXT NOT NULL DEFAULT 'ALL',
                    status TEXT NOT NULL DEFAULT 'DRAFT',
                    priority INTEGER NOT NULL DEFAULT 5,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    created_by TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    scheduled_at INTEGER,
                    sent_at INTEGER,
                    total_recipients INTEGER NOT NULL DEFAULT 0,
                    emails_queued INTEGER NOT NULL DEFAULT 0,
                    emails_failed INTEGER NOT NULL DEFAULT 0,
                    emails_sent INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_campaigns_due ON campaigns(status, scheduled_at)"
            )
            await db.commit()

    # Messages -----------------------------------------------------------------
    @staticmethod
    def _decode_message_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Message:
        return Message(**dict(zip(columns, row)))

    async def _fetch_messages(self, query: str, params: Sequence[Any]) -> List[Message]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_message_row(row, cols) for row in rows]

    async def insert_message(self, message: Message) -> Message:
        """Persist a freshly built message."""
        data = message.model_dump(mode="json")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO messages ({", ".join(MESSAGE_COLUMNS)})
                VALUES ({_placeholders(MESSAGE_COLUMNS)})
                """,
                tuple(data[col] for col in MESSAGE_COLUMNS),
            )
            await db.commit()
        return message

    async def get_message(self, msg_id: str) -> Optional[Message]:
        """Return a single message or ``None`` when unknown."""
        rows = await self._fetch_messages(
            f"SELECT {', '.join(MESSAGE_COLUMNS)} FROM messages WHERE id=?",
            (msg_id,),
        )
        return rows[0] if rows else None

    async def fetch_due_messages(self, *, limit: int, now_ts: int) -> List[Message]:
        """Return messages eligible for delivery, most urgent first."""
        statuses = _status_values(DUE_STATUSES)
        return await self._fetch_messages(
            f"""
            SELECT {', '.join(MESSAGE_COLUMNS)}
            FROM messages
            WHERE status IN ({_placeholders(statuses)})
              AND scheduled_at <= ?
            ORDER BY priority ASC, scheduled_at ASC, created_at ASC, id ASC
            LIMIT ?
            """,
            (*statuses, now_ts, limit),
        )

    async def claim_message(self, msg_id: str, now_ts: int) -> bool:
        """Move a due message to PROCESSING, recording the attempt.

        The update only applies while the message is still PENDING or
        SCHEDULED, so a message cancelled after selection is never claimed.
        """
        statuses = _status_values(DUE_STATUSES)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE messages
                SET status=?, last_attempt_at=?, attempt_count=attempt_count + 1
                WHERE id=? AND status IN ({_placeholders(statuses)})
                  AND attempt_count < max_attempts
                """,
                (MessageStatus.PROCESSING.value, now_ts, msg_id, *statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_sent(self, msg_id: str, sent_ts: int) -> None:
        """Mark a claimed message as delivered and count it on its campaign."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE messages
                SET status=?, sent_at=?, error_message=NULL
                WHERE id=? AND status=?
                """,
                (MessageStatus.SENT.value, sent_ts, msg_id, MessageStatus.PROCESSING.value),
            )
            if cursor.rowcount:
                await db.execute(
                    """
                    UPDATE campaigns SET emails_sent = emails_sent + 1
                    WHERE id = (SELECT campaign_id FROM messages WHERE id=?)
                    """,
                    (msg_id,),
                )
            await db.commit()

    async def mark_retry(self, msg_id: str, scheduled_at: int, error: str) -> None:
        """Return a claimed message to PENDING with a later eligibility time."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE messages
                SET status=?, scheduled_at=?, error_message=?
                WHERE id=? AND status=?
                """,
                (
                    MessageStatus.PENDING.value,
                    scheduled_at,
                    error,
                    msg_id,
                    MessageStatus.PROCESSING.value,
                ),
            )
            await db.commit()

    async def mark_failed(self, msg_id: str, error: str) -> None:
        """Mark a claimed message as permanently failed."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE messages
                SET status=?, error_message=?
                WHERE id=? AND status=?
                """,
                (MessageStatus.FAILED.value, error, msg_id, MessageStatus.PROCESSING.value),
            )
            await db.commit()

    async def cancel_message(self, msg_id: str) -> bool:
        """Cancel a message that has not been claimed yet."""
        statuses = _status_values(CANCELLABLE_STATUSES)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE messages
                SET status=?
                WHERE id=? AND status IN ({_placeholders(statuses)})
                """,
                (MessageStatus.CANCELLED.value, msg_id, *statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def retry_message(self, msg_id: str, now_ts: int) -> bool:
        """Put a FAILED or CANCELLED message back in the queue for a new round."""
        statuses = _status_values(RETRYABLE_STATUSES)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE messages
                SET status=?, error_message=NULL, scheduled_at=?, attempt_count=0
                WHERE id=? AND status IN ({_placeholders(statuses)})
                """,
                (MessageStatus.PENDING.value, now_ts, msg_id, *statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def requeue_failed_with_attempts_left(self, now_ts: int) -> int:
        """Re-queue FAILED messages that still have attempts available."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE messages
                SET status=?, scheduled_at=?
                WHERE status=? AND attempt_count < max_attempts
                """,
                (MessageStatus.PENDING.value, now_ts, MessageStatus.FAILED.value),
            )
            await db.commit()
            return cursor.rowcount

    async def requeue_stale_processing(self, threshold_ts: int, now_ts: int) -> int:
        """Release PROCESSING messages claimed before ``threshold_ts``.

        Messages whose attempts are exhausted are failed instead.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE messages
                SET status=?, error_message=COALESCE(error_message, 'Delivery attempt interrupted')
                WHERE status=? AND last_attempt_at < ? AND attempt_count >= max_attempts
                """,
                (MessageStatus.FAILED.value, MessageStatus.PROCESSING.value, threshold_ts),
            )
            cursor = await db.execute(
                """
                UPDATE messages
                SET status=?, scheduled_at=?
                WHERE status=? AND last_attempt_at < ?
                """,
                (MessageStatus.PENDING.value, now_ts, MessageStatus.PROCESSING.value, threshold_ts),
            )
            await db.commit()
            return cursor.rowcount

    async def list_messages(
        self,
        *,
        status: Optional[MessageStatus] = None,
        campaign_id: Optional[str] = None,
        kind: Optional[str] = None,
        correlation_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Message], int]:
        """Return a page of messages (newest first) and the total match count."""
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status=?")
            params.append(MessageStatus(status).value)
        if campaign_id is not None:
            clauses.append("campaign_id=?")
            params.append(campaign_id)
        if kind is not None:
            clauses.append("kind=?")
            params.append(str(getattr(kind, "value", kind)))
        if correlation_id is not None:
            clauses.append("correlation_id=?")
            params.append(correlation_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(f"SELECT COUNT(*) FROM messages{where}", tuple(params)) as cur:
                row = await cur.fetchone()
        total = int(row[0] if row else 0)
        items = await self._fetch_messages(
            f"""
            SELECT {', '.join(MESSAGE_COLUMNS)} FROM messages{where}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return items, total

    async def count_by(self, column: str) -> Dict[str, int]:
        """Return message counts grouped by ``status`` or ``kind``."""
        if column not in ("status", "kind"):
            raise ValueError(f"Cannot group messages by '{column}'")
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {column}, COUNT(*) FROM messages GROUP BY {column}"
            ) as cur:
                rows = await cur.fetchall()
        return {str(key): int(count) for key, count in rows}

    async def count_status(self, status: MessageStatus) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM messages WHERE status=?", (status.value,)
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def count_active_messages(self) -> int:
        """Return the number of messages still awaiting delivery."""
        statuses = _status_values((*DUE_STATUSES, MessageStatus.PROCESSING))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT COUNT(*) FROM messages WHERE status IN ({_placeholders(statuses)})",
                statuses,
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def delete_sent_before(self, threshold_ts: int) -> int:
        """Delete SENT messages created before ``threshold_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM messages WHERE status=? AND created_at < ?",
                (MessageStatus.SENT.value, threshold_ts),
            )
            await db.commit()
            return cursor.rowcount

    # Campaigns ----------------------------------------------------------------
    @staticmethod
    def _decode_campaign_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Campaign:
        return Campaign(**dict(zip(columns, row)))

    async def _fetch_campaigns(self, query: str, params: Sequence[Any]) -> List[Campaign]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_campaign_row(row, cols) for row in rows]

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert or overwrite a campaign definition, keeping its delivered count."""
        data = campaign.model_dump(mode="json")
        updates = ", ".join(f"{col}=excluded.{col}" for col in CAMPAIGN_SAVE_COLUMNS if col != "id")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO campaigns ({", ".join(CAMPAIGN_SAVE_COLUMNS)})
                VALUES ({_placeholders(CAMPAIGN_SAVE_COLUMNS)})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                tuple(data[col] for col in CAMPAIGN_SAVE_COLUMNS),
            )
            await db.commit()
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        rows = await self._fetch_campaigns(
            f"SELECT {', '.join(CAMPAIGN_COLUMNS)} FROM campaigns WHERE id=?",
            (campaign_id,),
        )
        return rows[0] if rows else None

    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        """Return campaigns, newest first, optionally filtered by status."""
        query = f"SELECT {', '.join(CAMPAIGN_COLUMNS)} FROM campaigns"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status=?"
            params = (CampaignStatus(status).value,)
        query += " ORDER BY created_at DESC, id DESC"
        return await self._fetch_campaigns(query, params)

    async def fetch_due_campaigns(self, now_ts: int) -> List[Campaign]:
        """Return SCHEDULED campaigns whose scheduled time has arrived."""
        return await self._fetch_campaigns(
            f"""
            SELECT {', '.join(CAMPAIGN_COLUMNS)} FROM campaigns
            WHERE status=? AND scheduled_at IS NOT NULL AND scheduled_at <= ?
            ORDER BY scheduled_at ASC, id ASC
            """,
            (CampaignStatus.SCHEDULED.value, now_ts),
        )

    async def transition_campaign(
        self,
        campaign_id: str,
        from_statuses: Sequence[CampaignStatus],
        to_status: CampaignStatus,
        *,
        scheduled_at: Optional[int] = None,
    ) -> bool:
        """Move a campaign to ``to_status`` only if it is still in one of ``from_statuses``.

        Returns ``False`` when the campaign is missing or another caller
        changed its status first.
        """
        statuses = _status_values(from_statuses)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE campaigns SET status=?, scheduled_at=COALESCE(?, scheduled_at)
                WHERE id=? AND status IN ({_placeholders(statuses)})
                """,
                (to_status.value, scheduled_at, campaign_id, *statuses),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_campaign_fields(
        self,
        campaign_id: str,
        fields: Dict[str, Any],
        *,
        locked_statuses: Sequence[CampaignStatus] = (),
    ) -> bool:
        """Write ``fields`` unless the campaign has reached one of ``locked_statuses``."""
        rejected = (set(fields) - set(CAMPAIGN_SAVE_COLUMNS)) | ({"id", "status"} & set(fields))
        if rejected:
            raise ValueError(f"Unsupported campaign fields: {', '.join(sorted(rejected))}")
        if not fields:
            return await self.get_campaign(campaign_id) is not None
        columns = list(fields)
        locked = _status_values(locked_statuses)
        where = "id=?"
        if locked:
            where += f" AND status NOT IN ({_placeholders(locked)})"
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE campaigns SET {', '.join(f'{col}=?' for col in columns)} WHERE {where}",
                (*(fields[col] for col in columns), campaign_id, *locked),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_campaign(
        self, campaign_id: str, *, locked_statuses: Sequence[CampaignStatus] = ()
    ) -> bool:
        """Delete a campaign unless it has reached one of ``locked_statuses``."""
        locked = _status_values(locked_statuses)
        query = "DELETE FROM campaigns WHERE id=?"
        if locked:
            query += f" AND status NOT IN ({_placeholders(locked)})"
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, (campaign_id, *locked))
            await db.commit()
            return cursor.rowcount > 0

    async def count_campaigns_by_status(self) -> Dict[str, int]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM campaigns GROUP BY status"
            ) as cur:
                rows = await cur.fetchall()
        return {str(key): int(count) for key, count in rows}

    async def count_campaign_types(self) -> Dict[str, int]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT campaign_type, COUNT(*) FROM campaigns GROUP BY campaign_type"
            ) as cur:
                rows = await cur.fetchall()
        return {str(key): int(count) for key, count in rows}
