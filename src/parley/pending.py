"""
Parley - Pending mutation queue.

Created by orpheus497

Group mutations that succeeded on the network but could not be written to
the local replica are queued here instead of being reported as failures.
The next synchronization pass drains the queue and re-applies each mutation
to the replica. Remote state is authoritative, so a queued mutation is never
sent to the network again.

Thread safety:
- All database operations are protected by a threading.Lock
- The SQLite connection is shared with check_same_thread=False
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import (
    PENDING_MUTATION_MAX_AGE,
    PENDING_MUTATION_RETRY_ATTEMPTS,
    PENDING_MUTATION_RETRY_DELAY,
)
from .utils import backoff_delay

logger = logging.getLogger(__name__)


@dataclass
class PendingMutation:
    """A remotely applied mutation awaiting local reconciliation."""

    mutation_id: int
    conversation_id: str
    operation: str
    arguments: str  # JSON encoded
    created_at: float
    attempts: int
    next_retry: float
    expires_at: float

    @property
    def args(self) -> Dict[str, Any]:
        return json.loads(self.arguments)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_row(cls, row: tuple) -> "PendingMutation":
        """Create from database row."""
        return cls(*row)


class PendingMutationQueue:
    """
    Persistent queue of mutations awaiting local reconciliation.

    Stores mutations in SQLite; entries are retried with exponential backoff
    until applied or expired.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize the pending mutation queue.

        Args:
            db_path: Path to SQLite database file; None keeps it in memory
        """
        self.db_path = Path(db_path) if db_path is not None else None
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()

        self._init_database()

    def open(self) -> None:
        """Reconnect to the database after close(); a no-op while open."""
        if self.conn is None:
            self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._db_lock:
            target = str(self.db_path) if self.db_path is not None else ":memory:"
            self.conn = sqlite3.connect(target, check_same_thread=False)

            cursor = self.conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_mutations (
                    mutation_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    arguments TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    next_retry REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pending_conversation
                ON pending_mutations (conversation_id)
            """
            )
            self.conn.commit()
            logger.debug(f"Pending mutation queue initialized: {target}")

    def enqueue(self, conversation_id: str, operation: str, arguments: Dict[str, Any]) -> bool:
        """
        Queue a mutation for reconciliation.

        Args:
            conversation_id: Group the mutation applies to
            operation: Mutation name (e.g. "add_members")
            arguments: JSON-serializable mutation arguments

        Returns:
            True if queued successfully, False otherwise
        """
        try:
            now = time.time()
            encoded = json.dumps(arguments, sort_keys=True)
            with self._db_lock:
                cursor = self.conn.cursor()
                cursor.execute(
                    """
                    INSERT INTO pending_mutations
                    (conversation_id, operation, arguments, created_at, next_retry, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """,
                    (conversation_id, operation, encoded, now, now, now + PENDING_MUTATION_MAX_AGE),
                )
                self.conn.commit()

            logger.info(f"Queued {operation} on {conversation_id} for reconciliation")
            return True

        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"Failed to queue mutation {operation}: {e}", exc_info=True)
            return False

    def pending(self, limit: int = 100) -> List[PendingMutation]:
        """
        Mutations due for reconciliation, oldest first.

        Args:
            limit: Maximum entries to return
        """
        now = time.time()
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT * FROM pending_mutations
                WHERE next_retry <= ?
                AND expires_at > ?
                AND attempts < ?
                ORDER BY mutation_id ASC
                LIMIT ?
            """,
                (now, now, PENDING_MUTATION_RETRY_ATTEMPTS, limit),
            )
            return [PendingMutation.from_row(row) for row in cursor.fetchall()]

    def mark_applied(self, mutation_id: int) -> bool:
        """Remove a mutation that has been reconciled. Returns True if it existed."""
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM pending_mutations WHERE mutation_id = ?", (mutation_id,))
            self.conn.commit()
            removed = cursor.rowcount > 0

        if removed:
            logger.debug(f"Pending mutation {mutation_id} reconciled")
        return removed

    def mark_failed(self, mutation_id: int) -> bool:
        """
        Record a failed reconciliation attempt and schedule a retry.

        Returns:
            True if the mutation exists, False otherwise
        """
        now = time.time()
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT attempts FROM pending_mutations WHERE mutation_id = ?", (mutation_id,)
            )
            row = cursor.fetchone()
            if not row:
                logger.warning(f"Pending mutation {mutation_id} not found")
                return False

            attempts = row[0] + 1
            delay = backoff_delay(attempts, PENDING_MUTATION_RETRY_DELAY, PENDING_MUTATION_MAX_AGE)
            cursor.execute(
                """
                UPDATE pending_mutations
                SET attempts = ?, next_retry = ?
                WHERE mutation_id = ?
            """,
                (attempts, now + delay, mutation_id),
            )
            self.conn.commit()

        logger.info(f"Pending mutation {mutation_id} failed (attempt {attempts}, retry in {delay}s)")
        return True

    def count(self, conversation_id: Optional[str] = None) -> int:
        """Number of queued mutations, optionally for one conversation."""
        with self._db_lock:
            cursor = self.conn.cursor()
            if conversation_id is None:
                cursor.execute("SELECT COUNT(*) FROM pending_mutations")
            else:
                cursor.execute(
                    "SELECT COUNT(*) FROM pending_mutations WHERE conversation_id = ?",
                    (conversation_id,),
                )
            return cursor.fetchone()[0]

    def cleanup_expired(self) -> int:
        """
        Remove expired mutations and those that exhausted their attempts.

        Returns:
            Number of entries removed
        """
        now = time.time()
        with self._db_lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "DELETE FROM pending_mutations WHERE expires_at <= ? OR attempts >= ?",
                (now, PENDING_MUTATION_RETRY_ATTEMPTS),
            )
            removed = cursor.rowcount
            self.conn.commit()

        if removed > 0:
            logger.warning(f"Dropped {removed} pending mutations that could not be reconciled")
        return removed

    def close(self) -> None:
        """Close database connection."""
        with self._db_lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Pending mutation queue closed")

    def __enter__(self) -> "PendingMutationQueue":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
