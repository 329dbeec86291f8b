"""DuckDB store: users, teams, invitations, datasets, columns, rows and activity."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import duckdb
import pandas as pd

from errors import InternalError, NotFound
from models import Row

logger = logging.getLogger(__name__)

SCHEMA_SQL: tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS users (
        id VARCHAR PRIMARY KEY,
        name VARCHAR NOT NULL,
        email VARCHAR NOT NULL UNIQUE,
        created_at TIMESTAMP NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS teams (
        id VARCHAR PRIMARY KEY,
        name VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS team_members (
        team_id VARCHAR NOT NULL,
        user_id VARCHAR NOT NULL,
        role VARCHAR NOT NULL,
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (team_id, user_id)
    )""",
    """CREATE TABLE IF NOT EXISTS invitations (
        id VARCHAR PRIMARY KEY,
        email VARCHAR NOT NULL,
        token VARCHAR NOT NULL,
        team_id VARCHAR NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS datasets (
        id VARCHAR PRIMARY KEY,
        name VARCHAR NOT NULL,
        owner_id VARCHAR NOT NULL,
        team_id VARCHAR,
        created_at TIMESTAMP NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS dataset_columns (
        dataset_id VARCHAR NOT NULL,
        position INTEGER NOT NULL,
        name VARCHAR NOT NULL,
        type VARCHAR NOT NULL,
        PRIMARY KEY (dataset_id, position)
    )""",
    """CREATE TABLE IF NOT EXISTS dataset_rows (
        id VARCHAR PRIMARY KEY,
        dataset_id VARCHAR NOT NULL,
        position INTEGER NOT NULL,
        data VARCHAR NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS activity (
        id VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        action VARCHAR NOT NULL,
        dataset_id VARCHAR,
        details VARCHAR,
        created_at TIMESTAMP NOT NULL
    )""",
)

DATASET_SELECT_SQL = (
    "SELECT d.id, d.name, d.owner_id, d.team_id, d.created_at, "
    "(SELECT COUNT(*) FROM dataset_rows r WHERE r.dataset_id = d.id) AS row_count "
    "FROM datasets d"
)

INVITATION_SELECT_SQL = (
    "SELECT id, email, token, team_id, expires_at FROM invitations"
)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Store(ABC):
    @abstractmethod
    def create_user(
        self, name: str, email: str, invitation: dict | None = None
    ) -> dict:
        """Insert a user and return it.

        With an invitation, the user joins the invitation's team as a member
        and the invitation is consumed in the same transaction.
        """

    @abstractmethod
    def get_user(self, user_id: str) -> dict | None:
        pass

    @abstractmethod
    def find_user_by_email(self, email: str) -> dict | None:
        pass

    @abstractmethod
    def create_team(self, name: str, owner_id: str) -> dict:
        """Insert a team with owner_id as its first (owner) member."""

    @abstractmethod
    def get_team(self, team_id: str) -> dict | None:
        pass

    @abstractmethod
    def add_team_member(self, team_id: str, user_id: str, role: str) -> None:
        pass

    @abstractmethod
    def remove_team_member(self, team_id: str, user_id: str) -> None:
        pass

    @abstractmethod
    def user_teams(self, user_id: str) -> list[dict]:
        """Memberships of a user, oldest first."""

    @abstractmethod
    def create_invitation(
        self, email: str, team_id: str, token: str, expires_at: datetime
    ) -> dict:
        pass

    @abstractmethod
    def refresh_invitation(
        self, invitation_id: str, token: str, expires_at: datetime
    ) -> dict:
        """Give an invitation a new token and expiry."""

    @abstractmethod
    def find_active_invitation(
        self, email: str, team_id: str, now: datetime
    ) -> dict | None:
        pass

    @abstractmethod
    def count_active_invitations(self, email: str, now: datetime) -> int:
        pass

    @abstractmethod
    def get_invitation(self, token: str) -> dict | None:
        """Invitation by token, expired or not."""

    @abstractmethod
    def delete_invitation(self, token: str) -> None:
        pass

    @abstractmethod
    def create_dataset(
        self,
        owner_id: str,
        name: str,
        columns: list[str],
        records: list[dict[str, Any]],
    ) -> str:
        """Write a dataset with its columns and rows in one transaction."""

    @abstractmethod
    def get_dataset(self, dataset_id: str) -> dict | None:
        pass

    @abstractmethod
    def list_datasets(self, user_id: str) -> list[dict]:
        """Datasets owned by the user or shared with one of its teams."""

    @abstractmethod
    def list_columns(self, dataset_id: str) -> list[str]:
        pass

    @abstractmethod
    def list_rows(self, dataset_id: str, limit: int | None = None) -> list[Row]:
        """Rows in stable insertion order."""

    @abstractmethod
    def get_row(self, row_id: str) -> Row | None:
        pass

    @abstractmethod
    def update_row_field(self, row_id: str, column: str, value: Any) -> Row:
        """Replace one key of a row's data mapping."""

    @abstractmethod
    def rename_dataset(self, dataset_id: str, name: str) -> None:
        pass

    @abstractmethod
    def set_dataset_team(self, dataset_id: str, team_id: str | None) -> None:
        pass

    @abstractmethod
    def delete_dataset(self, dataset_id: str) -> None:
        pass

    @abstractmethod
    def log_activity(
        self,
        user_id: str,
        action: str,
        dataset_id: str | None,
        details: dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    def list_activity(self, user_id: str, limit: int = 50) -> list[dict]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class DuckDBStore(Store):
    def __init__(self, path: str = ":memory:") -> None:
        self.conn = duckdb.connect(path)
        self._lock = threading.Lock()
        with self._lock:
            for stmt in SCHEMA_SQL:
                self.conn.execute(stmt)

    # ── Users & teams ──

    def create_user(
        self, name: str, email: str, invitation: dict | None = None
    ) -> dict:
        user_id = _new_id()
        created = _now()
        with self._lock:
            self.conn.begin()
            try:
                self.conn.execute(
                    "INSERT INTO users VALUES (?, ?, ?, ?)",
                    [user_id, name, email, created],
                )
                if invitation:
                    self.conn.execute(
                        "INSERT INTO team_members VALUES (?, ?, 'member', ?)",
                        [invitation["teamId"], user_id, created],
                    )
                    self.conn.execute(
                        "DELETE FROM invitations WHERE token = ?",
                        [invitation["token"]],
                    )
                self.conn.commit()
            except duckdb.Error:
                self.conn.rollback()
                raise
        return {
            "id": user_id,
            "name": name,
            "email": email,
            "createdAt": created.isoformat(),
        }

    def get_user(self, user_id: str) -> dict | None:
        return self._fetch_user("id", user_id)

    def find_user_by_email(self, email: str) -> dict | None:
        return self._fetch_user("email", email)

    def _fetch_user(self, key: str, value: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT id, name, email, created_at FROM users WHERE {key} = ?",
                [value],
            ).fetchone()
        if not row:
            return None
        return {
            "id": row[0],
            "name": row[1],
            "email": row[2],
            "createdAt": row[3].isoformat(),
        }

    def create_team(self, name: str, owner_id: str) -> dict:
        team_id = _new_id()
        created = _now()
        with self._lock:
            self.conn.begin()
            try:
                self.conn.execute(
                    "INSERT INTO teams VALUES (?, ?, ?)", [team_id, name, created]
                )
                self.conn.execute(
                    "INSERT INTO team_members VALUES (?, ?, 'owner', ?)",
                    [team_id, owner_id, created],
                )
                self.conn.commit()
            except duckdb.Error:
                self.conn.rollback()
                raise
        return {"id": team_id, "name": name, "createdAt": created.isoformat()}

    def get_team(self, team_id: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT id, name, created_at FROM teams WHERE id = ?", [team_id]
            ).fetchone()
            if not row:
                return None
            members = self.conn.execute(
                "SELECT m.user_id, u.name, u.email, m.role FROM team_members m "
                "JOIN users u ON u.id = m.user_id WHERE m.team_id = ? "
                "ORDER BY m.joined_at, m.user_id",
                [team_id],
            ).fetchall()
        return {
            "id": row[0],
            "name": row[1],
            "createdAt": row[2].isoformat(),
            "members": [
                {"userId": m[0], "name": m[1], "email": m[2], "role": m[3]}
                for m in members
            ],
        }

    def add_team_member(self, team_id: str, user_id: str, role: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO team_members VALUES (?, ?, ?, ?)",
                [team_id, user_id, role, _now()],
            )

    def remove_team_member(self, team_id: str, user_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "DELETE FROM team_members WHERE team_id = ? AND user_id = ?",
                [team_id, user_id],
            )

    def user_teams(self, user_id: str) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT team_id, role FROM team_members WHERE user_id = ? "
                "ORDER BY joined_at, team_id",
                [user_id],
            ).fetchall()
        return [{"teamId": r[0], "role": r[1]} for r in rows]

    # ── Invitations ──

    def create_invitation(
        self, email: str, team_id: str, token: str, expires_at: datetime
    ) -> dict:
        invitation_id = _new_id()
        with self._lock:
            self.conn.execute(
                "INSERT INTO invitations VALUES (?, ?, ?, ?, ?, ?)",
                [invitation_id, email, token, team_id, expires_at, _now()],
            )
        return self._invitation_dict((invitation_id, email, token, team_id, expires_at))

    def refresh_invitation(
        self, invitation_id: str, token: str, expires_at: datetime
    ) -> dict:
        with self._lock:
            self.conn.execute(
                "UPDATE invitations SET token = ?, expires_at = ? WHERE id = ?",
                [token, expires_at, invitation_id],
            )
            row = self.conn.execute(
                f"{INVITATION_SELECT_SQL} WHERE id = ?", [invitation_id]
            ).fetchone()
        if not row:
            raise NotFound(f"Invitation not found: {invitation_id}")
        return self._invitation_dict(row)

    def find_active_invitation(
        self, email: str, team_id: str, now: datetime
    ) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                f"{INVITATION_SELECT_SQL} WHERE email = ? AND team_id = ? "
                "AND expires_at > ? ORDER BY created_at LIMIT 1",
                [email, team_id, now],
            ).fetchone()
        return self._invitation_dict(row) if row else None

    def count_active_invitations(self, email: str, now: datetime) -> int:
        with self._lock:
            (count,) = self.conn.execute(
                "SELECT COUNT(*) FROM invitations WHERE email = ? AND expires_at > ?",
                [email, now],
            ).fetchone()
        return int(count)

    def get_invitation(self, token: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                f"{INVITATION_SELECT_SQL} WHERE token = ?", [token]
            ).fetchone()
        return self._invitation_dict(row) if row else None

    def delete_invitation(self, token: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM invitations WHERE token = ?", [token])

    def _invitation_dict(self, row: tuple) -> dict:
        return {
            "id": row[0],
            "email": row[1],
            "token": row[2],
            "teamId": row[3],
            "expiresAt": row[4],
        }

    # ── Datasets ──

    def create_dataset(
        self,
        owner_id: str,
        name: str,
        columns: list[str],
        records: list[dict[str, Any]],
    ) -> str:
        dataset_id = _new_id()
        rows_df = pd.DataFrame(
            {
                "id": [_new_id() for _ in records],
                "dataset_id": [dataset_id] * len(records),
                "position": list(range(len(records))),
                "data": [json.dumps(r) for r in records],
            },
            columns=["id", "dataset_id", "position", "data"],
        )

        with self._lock:
            self.conn.begin()
            try:
                self.conn.execute(
                    "INSERT INTO datasets VALUES (?, ?, ?, NULL, ?)",
                    [dataset_id, name, owner_id, _now()],
                )
                self.conn.executemany(
                    "INSERT INTO dataset_columns VALUES (?, ?, ?, 'string')",
                    [[dataset_id, i, col] for i, col in enumerate(columns)],
                )
                self.conn.register("upload_rows", rows_df)
                try:
                    self.conn.execute(
                        "INSERT INTO dataset_rows "
                        "SELECT id, dataset_id, position, data FROM upload_rows"
                    )
                finally:
                    self.conn.unregister("upload_rows")
                self.conn.commit()
            except duckdb.Error:
                self.conn.rollback()
                raise

        logger.info(
            "Stored dataset %s (%d columns, %d rows)",
            dataset_id,
            len(columns),
            len(records),
        )
        return dataset_id

    def get_dataset(self, dataset_id: str) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                f"{DATASET_SELECT_SQL} WHERE d.id = ?", [dataset_id]
            ).fetchone()
        if not row:
            return None
        return self._dataset_dict(row, self.list_columns(dataset_id))

    def list_datasets(self, user_id: str) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                f"{DATASET_SELECT_SQL} WHERE d.owner_id = ? OR d.team_id IN "
                "(SELECT team_id FROM team_members WHERE user_id = ?) "
                "ORDER BY d.created_at DESC, d.id",
                [user_id, user_id],
            ).fetchall()
        return [self._dataset_dict(r, self.list_columns(r[0])) for r in rows]

    def _dataset_dict(self, row: tuple, columns: list[str]) -> dict:
        return {
            "id": row[0],
            "name": row[1],
            "ownerId": row[2],
            "teamId": row[3],
            "createdAt": row[4].isoformat(),
            "columnHeaders": columns,
            "columnCount": len(columns),
            "rowCount": int(row[5]),
        }

    def list_columns(self, dataset_id: str) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT name FROM dataset_columns WHERE dataset_id = ? ORDER BY position",
                [dataset_id],
            ).fetchall()
        return [r[0] for r in rows]

    def list_rows(self, dataset_id: str, limit: int | None = None) -> list[Row]:
        sql = (
            "SELECT id, dataset_id, position, data FROM dataset_rows "
            "WHERE dataset_id = ? ORDER BY position"
        )
        params: list[Any] = [dataset_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            raw_rows = self.conn.execute(sql, params).fetchall()
        return [self._to_row(r) for r in raw_rows]

    def get_row(self, row_id: str) -> Row | None:
        with self._lock:
            raw = self.conn.execute(
                "SELECT id, dataset_id, position, data FROM dataset_rows WHERE id = ?",
                [row_id],
            ).fetchone()
        return self._to_row(raw) if raw else None

    def update_row_field(self, row_id: str, column: str, value: Any) -> Row:
        with self._lock:
            raw = self.conn.execute(
                "SELECT id, dataset_id, position, data FROM dataset_rows WHERE id = ?",
                [row_id],
            ).fetchone()
            if not raw:
                raise NotFound(f"Row not found: {row_id}")
            data = self._decode_data(raw[0], raw[3])
            data[column] = value
            self.conn.execute(
                "UPDATE dataset_rows SET data = ? WHERE id = ?",
                [json.dumps(data), row_id],
            )
        return Row.from_mapping(raw[0], raw[1], int(raw[2]), data)

    def _to_row(self, raw: tuple) -> Row:
        return Row.from_mapping(raw[0], raw[1], int(raw[2]), self._decode_data(raw[0], raw[3]))

    def _decode_data(self, row_id: str, payload: str) -> dict[str, Any]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise InternalError(f"Corrupt data for row {row_id}") from exc
        if not isinstance(data, dict):
            raise InternalError(f"Corrupt data for row {row_id}")
        return data

    def rename_dataset(self, dataset_id: str, name: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE datasets SET name = ? WHERE id = ?", [name, dataset_id]
            )

    def set_dataset_team(self, dataset_id: str, team_id: str | None) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE datasets SET team_id = ? WHERE id = ?", [team_id, dataset_id]
            )

    def delete_dataset(self, dataset_id: str) -> None:
        with self._lock:
            self.conn.begin()
            try:
                self.conn.execute(
                    "DELETE FROM dataset_rows WHERE dataset_id = ?", [dataset_id]
                )
                self.conn.execute(
                    "DELETE FROM dataset_columns WHERE dataset_id = ?", [dataset_id]
                )
                self.conn.execute("DELETE FROM datasets WHERE id = ?", [dataset_id])
                self.conn.commit()
            except duckdb.Error:
                self.conn.rollback()
                raise

    # ── Activity ──

    def log_activity(
        self,
        user_id: str,
        action: str,
        dataset_id: str | None,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO activity VALUES (?, ?, ?, ?, ?, ?)",
                [_new_id(), user_id, action, dataset_id, json.dumps(details), _now()],
            )

    def list_activity(self, user_id: str, limit: int = 50) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, action, dataset_id, details, created_at FROM activity "
                "WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                [user_id, limit],
            ).fetchall()
        return [
            {
                "id": r[0],
                "action": r[1],
                "datasetId": r[2],
                "details": json.loads(r[3]) if r[3] else {},
                "createdAt": r[4].isoformat(),
            }
            for r in rows
        ]

    def close(self) -> None:
        self.conn.close()
