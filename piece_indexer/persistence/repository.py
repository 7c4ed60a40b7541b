"""
Piece Index Repository - Persistence Layer.

Stores the per-provider walker cursor and the piece -> payload index.
Enables walks to resume across restarts.

Tables:
    walker_state (one row per provider, upsert semantics)
    piece_payload (one row per (provider, piece, payload), set semantics)
"""

import logging
import sqlite3
import time
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional

from ..types import WalkerState


class PieceIndexRepository:
    """SQLite-backed persistence for walker state and the piece index.

    Invariants:
    - One walker_state row per provider, never deleted
    - piece_payload rows are only ever inserted; duplicates collapse
    - Thread-safe with RLock, check_same_thread=False
    """

    def __init__(self, db_path: str = "data/piece_index.db"):
        """Initialize repository with database connection.

        Args:
            db_path: Path to SQLite database file
        """
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._logger = logging.getLogger("PieceIndexRepository")
        self._lock = RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self._create_schema()
        self._logger.debug(f"Opened piece index at {db_path}")

    def _create_schema(self):
        """Create tables if not exists."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS walker_state (
                    provider_id TEXT PRIMARY KEY,
                    head TEXT,
                    tail TEXT,
                    last_head TEXT,
                    status TEXT NOT NULL DEFAULT '',
                    entries_not_retrievable INTEGER NOT NULL DEFAULT 0,
                    ads_missing_piece_cid INTEGER NOT NULL DEFAULT 0,
                    updated_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS piece_payload (
                    provider_id TEXT NOT NULL,
                    piece_cid TEXT NOT NULL,
                    payload_cid TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (provider_id, piece_cid, payload_cid)
                )
            """)

            self.conn.commit()

    # =========================================================================
    # Walker State
    # =========================================================================

    def get_walker_state(self, provider_id: str) -> Optional[WalkerState]:
        """Load walker state for a provider, None if never walked."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT head, tail, last_head, status, entries_not_retrievable, ads_missing_piece_cid
                FROM walker_state WHERE provider_id = ?
            """, (provider_id,))
            row = cursor.fetchone()

        if row is None:
            return None
        return self._row_to_state(row)

    def set_walker_state(self, provider_id: str, state: WalkerState) -> None:
        """Save walker state (upsert)."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO walker_state (
                    provider_id, head, tail, last_head, status,
                    entries_not_retrievable, ads_missing_piece_cid, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider_id) DO UPDATE SET
                    head = excluded.head,
                    tail = excluded.tail,
                    last_head = excluded.last_head,
                    status = excluded.status,
                    entries_not_retrievable = excluded.entries_not_retrievable,
                    ads_missing_piece_cid = excluded.ads_missing_piece_cid,
                    updated_at = excluded.updated_at
            """, (
                provider_id,
                state.head,
                state.tail,
                state.last_head,
                state.status,
                state.entries_not_retrievable,
                state.ads_missing_piece_cid,
                time.time()
            ))
            self.conn.commit()

    def get_walker_states(self) -> Dict[str, WalkerState]:
        """Load walker state for every provider ever walked."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT provider_id, head, tail, last_head, status,
                       entries_not_retrievable, ads_missing_piece_cid
                FROM walker_state
            """)
            rows = cursor.fetchall()

        return {row["provider_id"]: self._row_to_state(row) for row in rows}

    def _row_to_state(self, row: sqlite3.Row) -> WalkerState:
        return WalkerState(
            head=row["head"],
            tail=row["tail"],
            last_head=row["last_head"],
            status=row["status"],
            entries_not_retrievable=row["entries_not_retrievable"],
            ads_missing_piece_cid=row["ads_missing_piece_cid"]
        )

    # =========================================================================
    # Piece -> Payload Index
    # =========================================================================

    def add_piece_payload_blocks(self, provider_id: str, piece_cid: str, *payload_cids: str) -> None:
        """Add payload CIDs to the (provider, piece) set."""
        if not payload_cids:
            return
        now = time.time()
        with self._lock:
            cursor = self.conn.cursor()
            cursor.executemany("""
                INSERT OR IGNORE INTO piece_payload (provider_id, piece_cid, payload_cid, created_at)
                VALUES (?, ?, ?, ?)
            """, [(provider_id, piece_cid, payload_cid, now) for payload_cid in payload_cids])
            self.conn.commit()

    def get_piece_payload_blocks(self, provider_id: str, piece_cid: str) -> List[str]:
        """Payload CIDs recorded for a (provider, piece) pair, oldest first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT payload_cid FROM piece_payload
                WHERE provider_id = ? AND piece_cid = ?
                ORDER BY rowid
            """, (provider_id, piece_cid))
            return [row["payload_cid"] for row in cursor.fetchall()]

    def count_pieces_indexed(self, provider_id: str) -> int:
        """Number of distinct pieces with at least one payload recorded."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT COUNT(DISTINCT piece_cid) FROM piece_payload WHERE provider_id = ?
            """, (provider_id,))
            return cursor.fetchone()[0]

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()
