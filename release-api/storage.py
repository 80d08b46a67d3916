import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from config import SETTINGS
from errors import ReleaseInProgress
from release_state import IN_FLIGHT_STATES, TERMINAL_STATES


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Storage:
    """Durable release log.

    ``releases`` only ever grows; a row's state moves forward until it is
    terminal and is never touched again. ``current_releases`` holds the single
    mutable pointer per (namespace, environment) and is written only when a
    release finishes as SUCCEEDED, in the same transaction that finishes it.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS releases (
                id TEXT PRIMARY KEY,
                namespace TEXT NOT NULL,
                environment TEXT NOT NULL,
                state TEXT NOT NULL,
                outcome TEXT,
                spec_json TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                previous_good_id TEXT,
                intent_correlation_id TEXT,
                requested_by TEXT,
                mutations INTEGER NOT NULL DEFAULT 0,
                seq INTEGER NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS release_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                release_id TEXT NOT NULL,
                category TEXT NOT NULL,
                summary TEXT NOT NULL,
                detail TEXT,
                action_hint TEXT,
                observed_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS release_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                release_id TEXT NOT NULL,
                state TEXT NOT NULL,
                detail TEXT,
                occurred_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS current_releases (
                namespace TEXT NOT NULL,
                environment TEXT NOT NULL,
                release_id TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (namespace, environment)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS releases_namespace ON releases (namespace, seq)")
        conn.close()

    def begin_release(self, record: dict) -> Optional[str]:
        """Insert a new PENDING release unless the namespace already has one in flight.

        The namespace's current release is read in the same transaction and
        stored as the new release's previous good release, which is returned.
        """
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            placeholders = ", ".join("?" for _ in IN_FLIGHT_STATES)
            cur.execute(
                f"SELECT id FROM releases WHERE namespace = ? AND state IN ({placeholders}) LIMIT 1",
                (record["namespace"], *sorted(IN_FLIGHT_STATES)),
            )
            row = cur.fetchone()
            if row is not None:
                cur.execute("ROLLBACK")
                raise ReleaseInProgress(record["namespace"], row["id"])
            cur.execute(
                "SELECT release_id FROM current_releases WHERE namespace = ? AND environment = ?",
                (record["namespace"], record["environment"]),
            )
            current = cur.fetchone()
            record["previousGoodId"] = current["release_id"] if current else None
            cur.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM releases")
            next_seq = cur.fetchone()["next_seq"]
            cur.execute(
                """
                INSERT INTO releases (
                    id, namespace, environment, state, outcome, spec_json, started_at,
                    finished_at, previous_good_id, intent_correlation_id, requested_by, mutations, seq
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["namespace"],
                    record["environment"],
                    record["state"],
                    record.get("outcome"),
                    json.dumps(record["spec"], sort_keys=True),
                    record["startedAt"],
                    record.get("finishedAt"),
                    record.get("previousGoodId"),
                    record.get("intentCorrelationId"),
                    record.get("requestedBy"),
                    int(record.get("mutations") or 0),
                    next_seq,
                ),
            )
            self._append_event(cur, record["id"], record["state"], "Release accepted")
            cur.execute("COMMIT")
        finally:
            conn.close()
        return record["previousGoodId"]

    def transition(self, release_id: str, state: str, detail: Optional[str] = None, mutations: int = 0) -> None:
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            placeholders = ", ".join("?" for _ in TERMINAL_STATES)
            cur.execute(
                f"UPDATE releases SET state = ?, mutations = mutations + ? "
                f"WHERE id = ? AND state NOT IN ({placeholders})",
                (state, mutations, release_id, *sorted(TERMINAL_STATES)),
            )
            if cur.rowcount != 1:
                cur.execute("ROLLBACK")
                raise RuntimeError(f"Release {release_id} is terminal or missing")
            self._append_event(cur, release_id, state, detail)
            cur.execute("COMMIT")
        finally:
            conn.close()

    def finish_release(
        self,
        release_id: str,
        outcome: str,
        failures: List[dict],
        detail: Optional[str] = None,
        mutations: int = 0,
    ) -> None:
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            finished_at = utc_now()
            placeholders = ", ".join("?" for _ in TERMINAL_STATES)
            cur.execute(
                f"UPDATE releases SET state = ?, outcome = ?, finished_at = ?, mutations = mutations + ? "
                f"WHERE id = ? AND state NOT IN ({placeholders})",
                (outcome, outcome, finished_at, mutations, release_id, *sorted(TERMINAL_STATES)),
            )
            if cur.rowcount != 1:
                cur.execute("ROLLBACK")
                raise RuntimeError(f"Release {release_id} is terminal or missing")
            for failure in failures:
                cur.execute(
                    """
                    INSERT INTO release_failures (
                        release_id, category, summary, detail, action_hint, observed_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        release_id,
                        failure.get("category"),
                        failure.get("summary"),
                        failure.get("detail"),
                        failure.get("actionHint"),
                        failure.get("observedAt") or finished_at,
                    ),
                )
            if outcome == "SUCCEEDED":
                cur.execute("SELECT namespace, environment FROM releases WHERE id = ?", (release_id,))
                row = cur.fetchone()
                cur.execute(
                    """
                    INSERT INTO current_releases (namespace, environment, release_id, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (namespace, environment)
                    DO UPDATE SET release_id = excluded.release_id, updated_at = excluded.updated_at
                    """,
                    (row["namespace"], row["environment"], release_id, finished_at),
                )
            self._append_event(cur, release_id, outcome, detail)
            cur.execute("COMMIT")
        finally:
            conn.close()

    def get_release(self, release_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM releases WHERE id = ?", (release_id,))
        row = cur.fetchone()
        if not row:
            conn.close()
            return None
        failures = self._get_failures(cur, release_id)
        conn.close()
        return self._row_to_release(row, failures)

    def get_current(self, namespace: str, environment: Optional[str] = None) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        if environment:
            cur.execute(
                "SELECT release_id FROM current_releases WHERE namespace = ? AND environment = ?",
                (namespace, environment),
            )
        else:
            cur.execute(
                "SELECT release_id FROM current_releases WHERE namespace = ? ORDER BY updated_at DESC LIMIT 1",
                (namespace,),
            )
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return self.get_release(row["release_id"])

    def get_in_flight(self, namespace: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        placeholders = ", ".join("?" for _ in IN_FLIGHT_STATES)
        cur.execute(
            f"SELECT id FROM releases WHERE namespace = ? AND state IN ({placeholders}) LIMIT 1",
            (namespace, *sorted(IN_FLIGHT_STATES)),
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return self.get_release(row["id"])

    def list_in_flight(self) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        placeholders = ", ".join("?" for _ in IN_FLIGHT_STATES)
        cur.execute(
            f"SELECT * FROM releases WHERE state IN ({placeholders}) ORDER BY seq",
            tuple(sorted(IN_FLIGHT_STATES)),
        )
        rows = cur.fetchall()
        releases = [self._row_to_release(row, []) for row in rows]
        conn.close()
        return releases

    def list_releases(self, namespace: Optional[str] = None, limit: int = 100) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        if namespace:
            cur.execute(
                "SELECT * FROM releases WHERE namespace = ? ORDER BY seq DESC LIMIT ?",
                (namespace, limit),
            )
        else:
            cur.execute("SELECT * FROM releases ORDER BY seq DESC LIMIT ?", (limit,))
        rows = cur.fetchall()
        releases = [self._row_to_release(row, self._get_failures(cur, row["id"])) for row in rows]
        conn.close()
        return releases

    def list_events(self, release_id: str) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT state, detail, occurred_at FROM release_events WHERE release_id = ? ORDER BY id",
            (release_id,),
        )
        rows = cur.fetchall()
        conn.close()
        return [{"state": row["state"], "detail": row["detail"], "occurredAt": row["occurred_at"]} for row in rows]

    def _append_event(self, cur: sqlite3.Cursor, release_id: str, state: str, detail: Optional[str]) -> None:
        cur.execute(
            "INSERT INTO release_events (release_id, state, detail, occurred_at) VALUES (?, ?, ?, ?)",
            (release_id, state, detail, utc_now()),
        )

    def _get_failures(self, cur: sqlite3.Cursor, release_id: str) -> List[dict]:
        cur.execute(
            """
            SELECT category, summary, detail, action_hint, observed_at
            FROM release_failures WHERE release_id = ? ORDER BY id
            """,
            (release_id,),
        )
        return [
            {
                "category": row["category"],
                "summary": row["summary"],
                "detail": row["detail"],
                "actionHint": row["action_hint"],
                "observedAt": row["observed_at"],
            }
            for row in cur.fetchall()
        ]

    def _row_to_release(self, row: sqlite3.Row, failures: List[dict]) -> dict:
        return {
            "id": row["id"],
            "namespace": row["namespace"],
            "environment": row["environment"],
            "state": row["state"],
            "outcome": row["outcome"],
            "spec": json.loads(row["spec_json"]),
            "startedAt": row["started_at"],
            "finishedAt": row["finished_at"],
            "previousGoodId": row["previous_good_id"],
            "intentCorrelationId": row["intent_correlation_id"],
            "requestedBy": row["requested_by"],
            "mutations": row["mutations"],
            "failures": failures,
        }


def build_storage() -> Storage:
    return Storage(SETTINGS.db_path)
