from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "rrc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              kind TEXT NOT NULL,
              target TEXT,
              rollout_id TEXT,
              message TEXT NOT NULL,
              data TEXT
            );

            CREATE TABLE IF NOT EXISTS rollouts (
              id TEXT PRIMARY KEY,
              target TEXT NOT NULL,
              source_revision TEXT NOT NULL,
              state TEXT NOT NULL, -- Pending|InProgress|Paused|Succeeded|Failed|RolledBack
              image_reference TEXT,
              digest TEXT,
              initial_replicas INTEGER,
              desired_replicas INTEGER NOT NULL,
              final_replicas INTEGER,
              last_completed_step INTEGER,
              error TEXT,
              started_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_rollout_id ON events(rollout_id);
            CREATE INDEX IF NOT EXISTS idx_rollouts_target ON rollouts(target);
            """
        )


def log_event(
    level: str,
    message: str,
    kind: str = "info",
    target: str | None = None,
    rollout_id: str | None = None,
    data: dict[str, Any] | None = None,
    ts: str | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, kind, target, rollout_id, message, data) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                ts or utc_now(),
                level.upper(),
                kind,
                target,
                rollout_id,
                message,
                json.dumps(data, sort_keys=True) if data is not None else None,
            ),
        )


@dataclass(frozen=True)
class RolloutRow:
    id: str
    target: str
    source_revision: str
    state: str
    image_reference: str | None
    digest: str | None
    initial_replicas: int | None
    desired_replicas: int
    final_replicas: int | None
    last_completed_step: int | None
    error: str | None
    started_at: str
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def upsert_rollout(
    rollout_id: str,
    target: str,
    source_revision: str,
    state: str,
    desired_replicas: int,
    image_reference: str | None = None,
    digest: str | None = None,
    initial_replicas: int | None = None,
    final_replicas: int | None = None,
    last_completed_step: int | None = None,
    error: str | None = None,
    started_at: str | None = None,
) -> RolloutRow:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO rollouts (id, target, source_revision, state, image_reference, digest, initial_replicas,
                                  desired_replicas, final_replicas, last_completed_step, error, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              state=excluded.state,
              image_reference=excluded.image_reference,
              digest=excluded.digest,
              initial_replicas=excluded.initial_replicas,
              final_replicas=excluded.final_replicas,
              last_completed_step=excluded.last_completed_step,
              error=excluded.error,
              updated_at=excluded.updated_at
            """,
            (
                rollout_id,
                target,
                source_revision,
                state,
                image_reference,
                digest,
                initial_replicas,
                desired_replicas,
                final_replicas,
                last_completed_step,
                error,
                started_at or now,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM rollouts WHERE id=?", (rollout_id,)).fetchone()
        return RolloutRow(**dict(row))


def get_rollout(rollout_id: str) -> RolloutRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM rollouts WHERE id=?", (rollout_id,)).fetchone()
        return RolloutRow(**dict(row)) if row else None


def list_rollouts(target: str | None = None, limit: int = 100) -> list[RolloutRow]:
    with connect() as conn:
        if target:
            cur = conn.execute(
                "SELECT * FROM rollouts WHERE target=? ORDER BY started_at DESC, id LIMIT ?",
                (target, limit),
            )
        else:
            cur = conn.execute("SELECT * FROM rollouts ORDER BY started_at DESC, id LIMIT ?", (limit,))
        return _rows_to_dataclass(cur.fetchall(), RolloutRow)


def _event_dict(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    if out.get("data"):
        out["data"] = json.loads(out["data"])
    return out


def latest_events(limit: int = 100, rollout_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if rollout_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE rollout_id=? ORDER BY id DESC LIMIT ?",
                (rollout_id, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_event_dict(r) for r in rows]
