"""
SQLite repository for dilemmas and votes.

Read side used by the scheduler:
- list_future_items(now): dilemmas whose publication is still ahead
- compute_stats(item_id): global A/B vote split

Write helpers (upsert_item, delete_item, add_vote) seed the tables for
local runs and tests. The scheduler, the admin API and the CLI never
write dilemmas or votes.

Tables:
    dilemmas(id, question, option_a, option_b, publish_at, reveal_at, created_at)
    votes(id, user_id, dilemma_id, choice, created_at), one vote per user and dilemma
"""

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, time, timezone
from pathlib import Path
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from ..scheduler.clock import ensure_utc
from ..scheduler.entities import ScheduledItem, from_iso, to_iso
from ..scheduler.errors import InvalidOperationError
from ..scheduler.ports import VoteStats


logger = logging.getLogger(__name__)


# Results are revealed at 20:00 local time on the publication day
REVEAL_HOUR = 20

CHOICES = ("A", "B")

MEMORY_DB = ":memory:"


def reveal_time_for(publish_at: datetime, tz_name: str) -> datetime:
    """
    Reveal instant of a dilemma published at publish_at.

    Returns:
        20:00 local time on the publish date, as an aware UTC datetime
    """
    tz = ZoneInfo(tz_name)
    local_date = ensure_utc(publish_at).astimezone(tz).date()
    reveal_local = datetime.combine(local_date, time(hour=REVEAL_HOUR), tzinfo=tz)
    return reveal_local.astimezone(timezone.utc)


class SqliteItemRepository:
    """SQLite-backed dilemma store."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._shared: Optional[sqlite3.Connection] = None

        if self.db_path == MEMORY_DB:
            self._shared = sqlite3.connect(MEMORY_DB, check_same_thread=False)
            self._shared.row_factory = sqlite3.Row
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._shared is not None:
                with self._shared:
                    yield self._shared
                return

            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def _init_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS dilemmas (
                    id TEXT PRIMARY KEY,
                    question TEXT NOT NULL DEFAULT '',
                    option_a TEXT NOT NULL DEFAULT '',
                    option_b TEXT NOT NULL DEFAULT '',
                    publish_at TEXT NOT NULL,
                    reveal_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_dilemmas_publish ON dilemmas(publish_at);

                CREATE TABLE IF NOT EXISTS votes (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    dilemma_id TEXT NOT NULL REFERENCES dilemmas(id) ON DELETE CASCADE,
                    choice TEXT NOT NULL CHECK (choice IN ('A', 'B')),
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, dilemma_id)
                );
                CREATE INDEX IF NOT EXISTS idx_votes_dilemma ON votes(dilemma_id, choice);
                """
            )

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # =========================================================================
    # Scheduler Reads
    # =========================================================================

    def list_future_items(self, now: datetime) -> list[ScheduledItem]:
        """Dilemmas with publish_at > now, soonest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, publish_at, reveal_at FROM dilemmas
                WHERE publish_at > ?
                ORDER BY publish_at ASC
                """,
                (to_iso(now),),
            ).fetchall()

        return [
            ScheduledItem(
                item_id=row["id"],
                publish_at=from_iso(row["publish_at"]),
                reveal_at=from_iso(row["reveal_at"]),
            )
            for row in rows
        ]

    def compute_stats(self, item_id: str) -> VoteStats:
        """Global vote split of a dilemma."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN choice = 'A' THEN 1 ELSE 0 END), 0) AS votes_a
                FROM votes WHERE dilemma_id = ?
                """,
                (item_id,),
            ).fetchone()

        return VoteStats.from_counts(row["total"], row["votes_a"])

    def get_item(self, item_id: str) -> Optional[ScheduledItem]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, publish_at, reveal_at FROM dilemmas WHERE id = ?",
                (item_id,),
            ).fetchone()

        if row is None:
            return None

        return ScheduledItem(
            item_id=row["id"],
            publish_at=from_iso(row["publish_at"]),
            reveal_at=from_iso(row["reveal_at"]),
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_item(
        self,
        item_id: str,
        publish_at: datetime,
        reveal_at: datetime,
        question: str = "",
        option_a: str = "",
        option_b: str = "",
    ) -> ScheduledItem:
        """Create or update a dilemma's dates (and text when given)."""
        if ensure_utc(reveal_at) < ensure_utc(publish_at):
            raise InvalidOperationError(
                f"Reveal of item {item_id} is before its publication"
            )

        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO dilemmas
                    (id, question, option_a, option_b, publish_at, reveal_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    publish_at = excluded.publish_at,
                    reveal_at = excluded.reveal_at,
                    question = CASE WHEN excluded.question != ''
                        THEN excluded.question ELSE dilemmas.question END,
                    option_a = CASE WHEN excluded.option_a != ''
                        THEN excluded.option_a ELSE dilemmas.option_a END,
                    option_b = CASE WHEN excluded.option_b != ''
                        THEN excluded.option_b ELSE dilemmas.option_b END
                """,
                (
                    item_id,
                    question,
                    option_a,
                    option_b,
                    to_iso(publish_at),
                    to_iso(reveal_at),
                    to_iso(datetime.now(timezone.utc)),
                ),
            )

        logger.debug(f"Saved dilemma {item_id}")
        return ScheduledItem(item_id, ensure_utc(publish_at), ensure_utc(reveal_at))

    def delete_item(self, item_id: str) -> bool:
        with self._connection() as conn:
            conn.execute("DELETE FROM votes WHERE dilemma_id = ?", (item_id,))
            cursor = conn.execute("DELETE FROM dilemmas WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    def add_vote(self, user_id: str, item_id: str, choice: str) -> None:
        """
        Record a user's vote.

        Raises:
            InvalidOperationError: Unknown choice or user already voted
        """
        if choice not in CHOICES:
            raise InvalidOperationError(f"Invalid choice: {choice}")

        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO votes (id, user_id, dilemma_id, choice, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        uuid.uuid4().hex,
                        user_id,
                        item_id,
                        choice,
                        to_iso(datetime.now(timezone.utc)),
                    ),
                )
        except sqlite3.IntegrityError:
            raise InvalidOperationError(f"User {user_id} already voted on {item_id}")
