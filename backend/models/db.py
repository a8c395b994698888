from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence
from contextlib import contextmanager

from config.game_config import ROUNDS, STARTUPS, ROUND_STATUSES, GAME_CONFIG, team_ids


DATA_DIR = Path(__file__).resolve().parents[1] / "data"

DEFAULT_DB_PATH = DATA_DIR / "app.db"

_DB_PATH: Path = Path(os.getenv("INVESTMENT_DB_PATH", str(DEFAULT_DB_PATH)))

TEAM_FIELDS = (*STARTUPS, "pre_fund", "post_fund", "submitted")
STARTUP_FIELDS = ("pre_cap", "yield", "post_cap")


def set_db_path(path: Path | str) -> None:
    global _DB_PATH
    _DB_PATH = Path(path)
    _DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_db_path() -> Path:
    return _DB_PATH


def _connect(path: Optional[Path] = None) -> sqlite3.Connection:
    target = Path(path) if path else get_db_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(target, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def get_connection(path: Optional[Path] = None) -> Iterator[sqlite3.Connection]:
    conn = _connect(path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def use_connection(conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
    """Reuse the caller's connection (and its transaction) or open a new one."""
    if conn is not None:
        yield conn
        return
    with get_connection() as own:
        yield own


def _team_table(round_id: str) -> str:
    # Table names cannot be bound as parameters; only whitelisted ids reach SQL
    if round_id not in ROUNDS:
        raise ValueError(f"Invalid round: {round_id}")
    return f"team_{round_id}"


def _startup_table(round_id: str) -> str:
    if round_id not in ROUNDS:
        raise ValueError(f"Invalid round: {round_id}")
    return f"startup_{round_id}"


def _ensure_schema_migrations_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        """
    )


def _get_applied_versions(conn: sqlite3.Connection) -> set[str]:
    _ensure_schema_migrations_table(conn)
    cur = conn.execute("SELECT version FROM schema_migrations")
    return {row[0] for row in cur.fetchall()}


def _record_applied(conn: sqlite3.Connection, version: str) -> None:
    conn.execute("INSERT OR IGNORE INTO schema_migrations(version) VALUES (?)", (version,))


def _migration_files() -> Sequence[Path]:
    migrations_dir = Path(__file__).resolve().parent / "migrations"
    return sorted(p for p in migrations_dir.iterdir() if p.suffix == ".sql")


def run_migrations(path: Optional[Path] = None) -> None:
    """Run pending SQL migrations found in models/migrations/*.sql in sorted order."""
    with get_connection(path) as conn:
        applied = _get_applied_versions(conn)
        for sql_file in _migration_files():
            version = sql_file.stem
            if version in applied:
                continue
            conn.executescript(sql_file.read_text(encoding="utf-8"))
            _record_applied(conn, version)


def init_db(path: Optional[Path] = None) -> None:
    """Initialize database by running migrations and seeding team rows. Safe to call multiple times."""
    run_migrations(path)
    with get_connection(path) as conn:
        for round_id in ROUNDS:
            _seed_team_rows(conn, round_id, replace=False)


# --- Seeding / resets ---

def _seed_team_rows(conn: sqlite3.Connection, round_id: str, replace: bool) -> None:
    table = _team_table(round_id)
    if replace:
        conn.execute(f"DELETE FROM {table}")
    conn.executemany(
        f"INSERT OR IGNORE INTO {table}(team, pre_fund, post_fund, submitted) VALUES(?, ?, NULL, 0)",
        [(team, GAME_CONFIG["initial_fund"]) for team in team_ids()],
    )


def reset_team_tables() -> None:
    """Reinitialise every team row of every round in one transaction."""
    with get_connection() as conn:
        for round_id in ROUNDS:
            _seed_team_rows(conn, round_id, replace=True)


def reset_startup_tables(conn: Optional[sqlite3.Connection] = None) -> None:
    with use_connection(conn) as c:
        for round_id in ROUNDS:
            table = _startup_table(round_id)
            c.execute(f"DELETE FROM {table}")
            c.executemany(
                f"INSERT INTO {table}(startup, pre_cap, yield, post_cap) VALUES(?, NULL, NULL, NULL)",
                [(s,) for s in STARTUPS],
            )


def reset_round_states() -> list[sqlite3.Row]:
    with get_connection() as conn:
        conn.execute("DELETE FROM round_state")
        conn.executemany(
            "INSERT INTO round_state(round, status) VALUES(?, 'locked')",
            [(r,) for r in ROUNDS],
        )
        return list(conn.execute("SELECT * FROM round_state ORDER BY round").fetchall())


# --- Round state ---

def get_round_states() -> list[sqlite3.Row]:
    with get_connection() as conn:
        cur = conn.execute("SELECT round, status, updated_at FROM round_state ORDER BY round")
        return list(cur.fetchall())


def get_round_status(round_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
    with use_connection(conn) as c:
        row = c.execute("SELECT status FROM round_state WHERE round = ?", (round_id,)).fetchone()
        return row["status"] if row else None


def transition_round_status(
    round_id: str,
    from_status: str,
    to_status: str,
    conn: Optional[sqlite3.Connection] = None,
) -> bool:
    """Compare-and-set a round's status. Returns False if the round was not in ``from_status``."""
    if to_status not in ROUND_STATUSES:
        raise ValueError(f"Invalid status: {to_status}")
    with use_connection(conn) as c:
        cur = c.execute(
            "UPDATE round_state SET status = ?, updated_at = datetime('now') WHERE round = ? AND status = ?",
            (to_status, round_id, from_status),
        )
        return cur.rowcount > 0


# --- Team rows ---

def get_teams_for_round(round_id: str, conn: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    table = _team_table(round_id)
    with use_connection(conn) as c:
        cur = c.execute(f"SELECT * FROM {table} ORDER BY CAST(substr(team, 5) AS INTEGER), team")
        return list(cur.fetchall())


def get_team(round_id: str, team: str, conn: Optional[sqlite3.Connection] = None) -> Optional[sqlite3.Row]:
    table = _team_table(round_id)
    with use_connection(conn) as c:
        return c.execute(f"SELECT * FROM {table} WHERE team = ?", (team,)).fetchone()


def update_team(round_id: str, team: str, conn: Optional[sqlite3.Connection] = None, **fields: Any) -> bool:
    """Update whitelisted columns on a team row. Returns True if the row exists."""
    table = _team_table(round_id)
    unknown = set(fields) - set(TEAM_FIELDS)
    if unknown:
        raise ValueError(f"Unknown team fields: {sorted(unknown)}")
    if not fields:
        return False
    assignments = ", ".join(f"{name} = ?" for name in fields)
    params: list[Any] = [int(v) if isinstance(v, bool) else v for v in fields.values()]
    params.append(team)
    with use_connection(conn) as c:
        cur = c.execute(f"UPDATE {table} SET {assignments} WHERE team = ?", params)
        return cur.rowcount > 0


def set_all_submitted(round_id: str, submitted: bool = True) -> list[str]:
    table = _team_table(round_id)
    with get_connection() as conn:
        conn.execute(f"UPDATE {table} SET submitted = ?", (1 if submitted else 0,))
        cur = conn.execute(f"SELECT team FROM {table} ORDER BY CAST(substr(team, 5) AS INTEGER)")
        return [row["team"] for row in cur.fetchall()]


def count_submissions(round_id: str, conn: Optional[sqlite3.Connection] = None) -> tuple[int, int]:
    """Return (submitted, total) team counts for a round."""
    table = _team_table(round_id)
    with use_connection(conn) as c:
        row = c.execute(
            f"SELECT COALESCE(SUM(submitted), 0) AS submitted, COUNT(*) AS total FROM {table}"
        ).fetchone()
        return int(row["submitted"]), int(row["total"])


# --- Startup rows ---

def get_startups(round_id: str, conn: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    table = _startup_table(round_id)
    with use_connection(conn) as c:
        return list(c.execute(f"SELECT * FROM {table} ORDER BY startup").fetchall())


def update_startup(round_id: str, startup: str, conn: Optional[sqlite3.Connection] = None, **fields: Any) -> bool:
    table = _startup_table(round_id)
    unknown = set(fields) - set(STARTUP_FIELDS)
    if unknown:
        raise ValueError(f"Unknown startup fields: {sorted(unknown)}")
    if not fields:
        return False
    assignments = ", ".join(f'"{name}" = ?' for name in fields)
    params: list[Any] = list(fields.values()) + [startup]
    with use_connection(conn) as c:
        cur = c.execute(f"UPDATE {table} SET {assignments} WHERE startup = ?", params)
        return cur.rowcount > 0


# --- Final matching ---

def replace_final_matching(matches: list[tuple[str, str]]) -> None:
    with get_connection() as conn:
        conn.execute("DELETE FROM final_matching")
        conn.executemany("INSERT INTO final_matching(team, startup) VALUES(?, ?)", matches)


def get_final_matching() -> list[sqlite3.Row]:
    with get_connection() as conn:
        cur = conn.execute(
            "SELECT team, startup FROM final_matching ORDER BY startup, CAST(substr(team, 5) AS INTEGER)"
        )
        return list(cur.fetchall())
