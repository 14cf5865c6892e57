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

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dcr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS manifests (
              generation INTEGER PRIMARY KEY,
              digest TEXT NOT NULL,
              raw BLOB NOT NULL,
              container_count INTEGER NOT NULL,
              accepted_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS applies (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              generation INTEGER NOT NULL,
              trigger TEXT NOT NULL, -- upload|drift|manual
              created TEXT NOT NULL, -- json list of names
              removed TEXT NOT NULL,
              started TEXT NOT NULL,
              failed TEXT NOT NULL, -- json list of {name, action, cause}
              finished_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              container TEXT,
              generation INTEGER,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_applies_generation ON applies(generation);
            """
        )


def log_event(level: str, message: str, container: str | None = None, generation: int | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, container, generation, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), container, generation, message),
        )


@dataclass(frozen=True)
class ManifestRow:
    generation: int
    digest: str
    raw: bytes
    container_count: int
    accepted_at: str


@dataclass(frozen=True)
class ApplyRow:
    id: int
    generation: int
    trigger: str
    created: list[str]
    removed: list[str]
    started: list[str]
    failed: list[dict[str, Any]]
    finished_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def insert_manifest(digest: str, raw: bytes, container_count: int) -> ManifestRow:
    """Persist an accepted manifest and assign it the next generation.

    The generation is allocated inside an immediate transaction so two
    concurrent uploads can never receive the same number.
    """
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT COALESCE(MAX(generation), 0) AS g FROM manifests").fetchone()
        generation = int(row["g"]) + 1
        accepted_at = utc_now()
        conn.execute(
            "INSERT INTO manifests (generation, digest, raw, container_count, accepted_at) VALUES (?, ?, ?, ?, ?)",
            (generation, digest, raw, container_count, accepted_at),
        )
    return ManifestRow(
        generation=generation,
        digest=digest,
        raw=raw,
        container_count=container_count,
        accepted_at=accepted_at,
    )


def latest_manifest() -> ManifestRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM manifests ORDER BY generation DESC LIMIT 1").fetchone()
        return ManifestRow(**dict(row)) if row else None


def list_manifests(limit: int = 20) -> list[ManifestRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM manifests ORDER BY generation DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dataclass(rows, ManifestRow)


def insert_apply(
    generation: int,
    trigger: str,
    created: list[str],
    removed: list[str],
    started: list[str],
    failed: list[dict[str, Any]],
) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO applies (generation, trigger, created, removed, started, failed, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                generation,
                trigger,
                json.dumps(created),
                json.dumps(removed),
                json.dumps(started),
                json.dumps(failed),
                utc_now(),
            ),
        )


def latest_applies(limit: int = 20) -> list[ApplyRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM applies ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        out: list[ApplyRow] = []
        for r in rows:
            d = dict(r)
            for key in ("created", "removed", "started", "failed"):
                d[key] = json.loads(d[key])
            out.append(ApplyRow(**d))
        return out


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
