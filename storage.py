"""
MOMENTUM STORAGE v0.1
=====================
Almacén documental durable sobre SQLite.

Colecciones lógicas:
- repositories: documento por referencia normalizada (merge-upsert)
- proposals: historial append-only, consultable por cycle_id
- memories: lecciones append-only con su embedding
"""

import json
import logging
import os
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Optional

from dotenv import load_dotenv

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

PROJECT_ROOT = Path.cwd()
load_dotenv(PROJECT_ROOT / ".env")

AI_DIR = PROJECT_ROOT / os.getenv("AI_CORE_DIR", ".ai")
MOMENTUM_DB = Path(os.getenv("MOMENTUM_DB", str(AI_DIR / "momentum.db")))

logger = logging.getLogger("momentum.storage")


class StorageError(Exception):
    """El almacén durable no está disponible o rechazó la operación."""
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ═══════════════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════════════

class MomentumStore:
    """Persistencia de repositorios, propuestas y memorias."""

    def __init__(self, db_path: Optional[Path] = None):
        self._db_path = Path(db_path) if db_path else MOMENTUM_DB
        self._lock = Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open store at {self._db_path}: {e}") from e
        logger.info(f"MomentumStore inicializado: {self._db_path}")

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock, closing(self._connect()) as conn, conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS repositories (
                    repo_ref TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS proposals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cycle_id TEXT NOT NULL UNIQUE,
                    repo_ref TEXT NOT NULL,
                    status TEXT NOT NULL,
                    proposal TEXT NOT NULL,
                    evaluation TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    text TEXT NOT NULL,
                    type TEXT NOT NULL,
                    repo_ref TEXT NOT NULL DEFAULT '',
                    embedding TEXT NOT NULL DEFAULT '[]',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memories_repo ON memories (repo_ref, id)"
            )

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._lock, closing(self._connect()) as conn, conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e

    # ───────────────────────────────────────────────────────────────────────────
    # REPOSITORIES
    # ───────────────────────────────────────────────────────────────────────────

    def upsert_repository(self, repo_ref: str, changes: dict) -> dict:
        """Mezcla `changes` sobre el documento existente y retorna el resultado."""
        try:
            with self._lock, closing(self._connect()) as conn, conn:
                row = conn.execute(
                    "SELECT data FROM repositories WHERE repo_ref = ?", (repo_ref,)
                ).fetchone()
                data = json.loads(row["data"]) if row else {}
                data.update(changes)
                data["repo_ref"] = repo_ref
                data["updated_at"] = utc_now()
                conn.execute(
                    """
                    INSERT INTO repositories (repo_ref, data, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(repo_ref) DO UPDATE SET data = excluded.data,
                                                        updated_at = excluded.updated_at
                    """,
                    (repo_ref, json.dumps(data), data["updated_at"]),
                )
                return data
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e

    def get_repository(self, repo_ref: str) -> Optional[dict]:
        rows = self._execute("SELECT data FROM repositories WHERE repo_ref = ?", (repo_ref,))
        return json.loads(rows[0]["data"]) if rows else None

    def list_repositories(self) -> list[dict]:
        rows = self._execute("SELECT data FROM repositories ORDER BY repo_ref")
        return [json.loads(row["data"]) for row in rows]

    def delete_repository(self, repo_ref: str) -> bool:
        try:
            with self._lock, closing(self._connect()) as conn, conn:
                cursor = conn.execute("DELETE FROM repositories WHERE repo_ref = ?", (repo_ref,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e

    # ───────────────────────────────────────────────────────────────────────────
    # PROPOSALS
    # ───────────────────────────────────────────────────────────────────────────

    def append_proposal(
        self,
        cycle_id: str,
        repo_ref: str,
        proposal: dict,
        evaluation: Optional[dict] = None,
        status: str = "PENDING",
    ) -> None:
        now = utc_now()
        self._execute(
            """
            INSERT INTO proposals (cycle_id, repo_ref, status, proposal, evaluation, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                cycle_id,
                repo_ref,
                status,
                json.dumps(proposal),
                json.dumps(evaluation) if evaluation is not None else None,
                now,
                now,
            ),
        )

    def update_proposal_status(self, cycle_id: str, status: str) -> bool:
        try:
            with self._lock, closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    "UPDATE proposals SET status = ?, updated_at = ? WHERE cycle_id = ?",
                    (status, utc_now(), cycle_id),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e

    def get_proposal(self, cycle_id: str) -> Optional[dict]:
        rows = self._execute("SELECT * FROM proposals WHERE cycle_id = ?", (cycle_id,))
        if not rows:
            return None
        row = rows[0]
        return {
            "cycle_id": row["cycle_id"],
            "repo_ref": row["repo_ref"],
            "status": row["status"],
            "proposal": json.loads(row["proposal"]),
            "evaluation": json.loads(row["evaluation"]) if row["evaluation"] else None,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    # ───────────────────────────────────────────────────────────────────────────
    # MEMORIES
    # ───────────────────────────────────────────────────────────────────────────

    def add_memory(
        self,
        text: str,
        memory_type: str,
        repo_ref: str = "",
        embedding: Optional[list] = None,
        metadata: Optional[dict] = None,
        created_at: Optional[str] = None,
    ) -> str:
        try:
            with self._lock, closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    """
                    INSERT INTO memories (text, type, repo_ref, embedding, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        text,
                        memory_type,
                        repo_ref or "",
                        json.dumps(embedding or []),
                        json.dumps(metadata or {}),
                        created_at or utc_now(),
                    ),
                )
                return str(cursor.lastrowid)
        except sqlite3.Error as e:
            raise StorageError(f"{type(e).__name__}: {e}") from e

    def recent_memories(self, limit: int = 50, repo_ref: Optional[str] = None) -> list[dict]:
        """
        Ventana de las memorias más recientes (más nueva primero).

        Con `repo_ref`, incluye las de ese repositorio y las globales (sin scope).
        """
        if repo_ref:
            rows = self._execute(
                "SELECT * FROM memories WHERE repo_ref IN (?, '') ORDER BY id DESC LIMIT ?",
                (repo_ref, limit),
            )
        else:
            rows = self._execute("SELECT * FROM memories ORDER BY id DESC LIMIT ?", (limit,))

        return [
            {
                "id": str(row["id"]),
                "text": row["text"],
                "type": row["type"],
                "repo_ref": row["repo_ref"],
                "embedding": json.loads(row["embedding"]),
                "metadata": json.loads(row["metadata"]),
                "timestamp": row["created_at"],
            }
            for row in rows
        ]

    def count_memories(self, memory_type: Optional[str] = None) -> int:
        if memory_type:
            rows = self._execute("SELECT COUNT(*) AS n FROM memories WHERE type = ?", (memory_type,))
        else:
            rows = self._execute("SELECT COUNT(*) AS n FROM memories")
        return int(rows[0]["n"])
