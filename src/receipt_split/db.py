"""SQLite database operations for ReceiptSplit."""

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from pydantic import TypeAdapter

from .models import PendingDelta, PendingDeltaEntry, UserDocument

_ENTRIES_ADAPTER = TypeAdapter(list[PendingDeltaEntry])


class Database:
    """SQLite database manager.

    Holds two documents: each user's whole ledger (one row per username) and
    the map of pending collaborator proposals keyed by owner and transaction.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Whole-ledger documents, one per user
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_documents (
                username TEXT PRIMARY KEY,
                body TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        # Pending proposals: at most one per (owner, transaction)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_deltas (
                owner_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                entries TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (owner_id, transaction_id)
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Ledger documents
    # ========================================================================

    def _write_user_document(self, cursor: sqlite3.Cursor, document: UserDocument):
        cursor.execute(
            """
            INSERT INTO ledger_documents (username, body, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(username) DO UPDATE SET
                body = excluded.body,
                updated_at = excluded.updated_at
            """,
            (
                document.username,
                document.model_dump_json(by_alias=True),
                datetime.now(UTC).isoformat(),
            ),
        )

    def get_user_document(self, username: str) -> UserDocument | None:
        """Load a user's ledger document."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT body FROM ledger_documents WHERE username = ?", (username,)
        )
        row = cursor.fetchone()
        if not row:
            return None
        return UserDocument.model_validate_json(row["body"])

    def save_user_document(self, document: UserDocument):
        """Replace a user's whole ledger document in one write."""
        cursor = self.conn.cursor()
        self._write_user_document(cursor, document)
        self.conn.commit()

    # ========================================================================
    # Pending deltas
    # ========================================================================

    def save_pending_delta(self, delta: PendingDelta):
        """Store a proposal, replacing any previous one for the same transaction."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO pending_deltas (owner_id, transaction_id, entries, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(owner_id, transaction_id) DO UPDATE SET
                entries = excluded.entries,
                created_at = excluded.created_at
            """,
            (
                delta.owner_id,
                delta.transaction_id,
                _ENTRIES_ADAPTER.dump_json(delta.entries, by_alias=True).decode(),
                delta.created_at.isoformat(),
            ),
        )
        self.conn.commit()

    def get_pending_delta(
        self, owner_id: str, transaction_id: str
    ) -> PendingDelta | None:
        """Get the proposal for one transaction, if any."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT owner_id, transaction_id, entries, created_at
            FROM pending_deltas
            WHERE owner_id = ? AND transaction_id = ?
            """,
            (owner_id, transaction_id),
        )
        row = cursor.fetchone()
        if not row:
            return None

        return PendingDelta(
            owner_id=row["owner_id"],
            transaction_id=row["transaction_id"],
            entries=_ENTRIES_ADAPTER.validate_json(row["entries"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_pending_map(self) -> dict[str, dict[str, list[PendingDeltaEntry]]]:
        """Get every proposal as ``owner -> transaction -> entries``."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT owner_id, transaction_id, entries
            FROM pending_deltas
            ORDER BY owner_id, created_at
            """
        )
        pending: dict[str, dict[str, list[PendingDeltaEntry]]] = {}
        for row in cursor.fetchall():
            pending.setdefault(row["owner_id"], {})[row["transaction_id"]] = (
                _ENTRIES_ADAPTER.validate_json(row["entries"])
            )
        return pending

    def delete_pending_delta(self, owner_id: str, transaction_id: str) -> bool:
        """Remove a proposal. Returns True if one existed."""
        cursor = self.conn.cursor()
        cursor.execute(
            "DELETE FROM pending_deltas WHERE owner_id = ? AND transaction_id = ?",
            (owner_id, transaction_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def apply_pending_delta(
        self, document: UserDocument, owner_id: str, transaction_id: str
    ):
        """
        Persist an updated ledger and clear the applied proposal together.

        Both statements run in one transaction: if either fails, neither the
        ledger nor the proposal changes.
        """
        with self.conn:
            cursor = self.conn.cursor()
            self._write_user_document(cursor, document)
            cursor.execute(
                "DELETE FROM pending_deltas WHERE owner_id = ? AND transaction_id = ?",
                (owner_id, transaction_id),
            )
