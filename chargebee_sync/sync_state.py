"""Batch progress tracking for resumable sync runs.

A run is split into fixed-size chunks. After each chunk the coordinator
returns an updated ``BatchProgress``; the CLI persists it together with
the account id list so an interrupted run can continue from the next
unprocessed chunk.
"""

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("chargebee_sync.sync_state")

JOB_KEY = "current_job"


@dataclass
class BatchProgress:
    """Progress through one run, threaded through every chunk call."""

    total: int = 0
    processed: int = 0
    next_chunk: int = 0
    chunk_count: int = 0
    errors: int = 0

    @property
    def finished(self) -> bool:
        return self.next_chunk >= self.chunk_count

    @property
    def fraction(self) -> float:
        return self.processed / self.total if self.total else 1.0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchProgress":
        return cls(**{k: int(data.get(k, 0)) for k in cls.__dataclass_fields__})


@dataclass
class SavedJob:
    account_ids: list[int]
    progress: BatchProgress
    options: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


class ProgressStateManager:
    """Persists the current job's progress in SQLite."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_jobs (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self._conn.commit()
        logger.debug("Progress state opened: %s", self.db_path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "ProgressStateManager":
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("ProgressStateManager not opened")
        return self._conn

    def save(
        self,
        account_ids: list[int],
        progress: BatchProgress,
        options: dict[str, Any] | None = None,
    ) -> None:
        value = json.dumps({
            "account_ids": list(account_ids),
            "progress": progress.to_dict(),
            "options": options or {},
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })
        self.conn.execute(
            "INSERT OR REPLACE INTO sync_jobs (key, value) VALUES (?, ?)",
            (JOB_KEY, value),
        )
        self.conn.commit()
        logger.debug(
            "Progress saved: %d/%d accounts, next chunk %d/%d",
            progress.processed, progress.total, progress.next_chunk, progress.chunk_count,
        )

    def load(self) -> SavedJob | None:
        row = self.conn.execute(
            "SELECT value FROM sync_jobs WHERE key = ?", (JOB_KEY,)
        ).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row["value"])
            job = SavedJob(
                account_ids=[int(i) for i in data["account_ids"]],
                progress=BatchProgress.from_dict(data["progress"]),
                options=data.get("options") or {},
                updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable saved progress: %s", e)
            return None
        logger.info(
            "Loaded saved progress: %d/%d accounts, next chunk %d/%d",
            job.progress.processed, job.progress.total,
            job.progress.next_chunk, job.progress.chunk_count,
        )
        return job

    def clear(self) -> None:
        self.conn.execute("DELETE FROM sync_jobs WHERE key = ?", (JOB_KEY,))
        self.conn.commit()
