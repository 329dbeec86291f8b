"""Dataset operations on behalf of an explicit caller."""

from __future__ import annotations

import csv
import io
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pandas as pd

from access import Caller, can_manage, can_read, can_write
from charts import ChartKind, analyze
from config import (
    ANALYSIS_SAMPLE_SIZE,
    APP_BASE_URL,
    INVITATION_TTL_HOURS,
    MAX_ACTIVE_INVITATIONS_PER_EMAIL,
    MAX_PAGE_SIZE,
    MAX_UPLOAD_BYTES,
)
from errors import Forbidden, InvalidInput, NotFound, Unauthorized
from models import Cell
from query import (
    QueryOptions,
    apply_filters,
    describe_query,
    query_rows,
    sort_rows,
    total_pages,
)
from store import Store

logger = logging.getLogger(__name__)

TEAM_ROLES = {"owner", "member"}


def _unique_names(names: list[str]) -> list[str]:
    seen: dict[str, int] = {}
    out: list[str] = []
    for name in names:
        n = seen.get(name, 0)
        seen[name] = n + 1
        out.append(name if n == 0 else f"{name}_{n}")
    return out


def parse_csv(content: bytes) -> tuple[list[str], list[dict[str, str]]]:
    """Parse CSV bytes into header names and string-valued records.

    The header is read as an ordinary line, so a data line wider than the
    header is a parse error instead of silently becoming an index column.
    Data lines shorter than the header read their missing fields as "".
    """
    try:
        df = pd.read_csv(
            io.BytesIO(content),
            header=None,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            encoding="utf-8-sig",
        )
    except pd.errors.EmptyDataError:
        raise InvalidInput("CSV file is empty or invalid")
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise InvalidInput(f"Failed to parse CSV: {e}")

    header = [str(h) for h in df.iloc[0].fillna("")]
    keep = [i for i, name in enumerate(header) if name.strip()]
    columns = _unique_names([header[i] for i in keep])
    data = df.iloc[1:].fillna("")
    if data.empty or not columns:
        raise InvalidInput("CSV file is empty or invalid")

    records = [
        {col: str(values[i]) for col, i in zip(columns, keep)}
        for values in data.itertuples(index=False, name=None)
    ]
    return columns, records


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DatasetService:
    def __init__(
        self,
        store: Store,
        options: QueryOptions | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.options = options or QueryOptions()
        self.clock = clock

    # ── Identity ──

    def resolve_caller(self, user_id: str | None) -> Caller:
        if not user_id:
            raise Unauthorized("Unauthorized")
        user = self.store.get_user(user_id)
        if not user:
            raise Unauthorized("Unauthorized")
        memberships = self.store.user_teams(user_id)
        return Caller(
            user_id=user_id,
            team_ids=tuple(m["teamId"] for m in memberships),
            owned_team_ids=tuple(
                m["teamId"] for m in memberships if m["role"] == "owner"
            ),
        )

    def create_user(
        self, name: str, email: str, invitation_token: str | None = None
    ) -> dict:
        """Register a user; a valid invitation token also joins its team."""
        name = name.strip()
        email = email.strip().lower()
        if not name or not email:
            raise InvalidInput("Name and email are required")

        invitation = None
        if invitation_token:
            invitation = self.store.get_invitation(invitation_token)
            if not invitation:
                raise InvalidInput("Invalid invitation token")
            if invitation["expiresAt"] <= self.clock():
                self.store.delete_invitation(invitation_token)
                raise InvalidInput("Invitation token has expired")
            if invitation["email"] != email:
                raise InvalidInput("Email does not match invitation")

        if self.store.find_user_by_email(email):
            raise InvalidInput("Email is already registered")

        user = self.store.create_user(name, email, invitation)
        if invitation:
            logger.info("User %s joined team %s by invitation", user["id"], invitation["teamId"])
        return user

    def create_team(self, caller: Caller, name: str) -> dict:
        name = name.strip()
        if not name:
            raise InvalidInput("Team name is required")
        team = self.store.create_team(name, caller.user_id)
        logger.info("User %s created team %s", caller.user_id, team["id"])
        return self.store.get_team(team["id"]) or team

    def _owned_team(self, caller: Caller, team_id: str, action: str) -> dict:
        team = self.store.get_team(team_id)
        if not team or team_id not in caller.team_ids:
            raise NotFound("Team not found")
        if team_id not in caller.owned_team_ids:
            raise Forbidden(f"Only a team owner can {action}")
        return team

    def add_team_member(
        self, caller: Caller, team_id: str, user_id: str, role: str = "member"
    ) -> dict:
        if role not in TEAM_ROLES:
            raise InvalidInput(f"Invalid team role: {role}")
        team = self._owned_team(caller, team_id, "add members")
        if not self.store.get_user(user_id):
            raise NotFound("User not found")
        if any(m["userId"] == user_id for m in team["members"]):
            raise InvalidInput("User is already a member of this team")

        self.store.add_team_member(team_id, user_id, role)
        return self.store.get_team(team_id) or team

    def remove_team_member(self, caller: Caller, team_id: str, user_id: str) -> dict:
        team = self._owned_team(caller, team_id, "remove members")
        if user_id == caller.user_id:
            raise InvalidInput("Cannot remove yourself as a team owner")
        if not any(m["userId"] == user_id for m in team["members"]):
            raise NotFound("Team member not found in this team")

        self.store.remove_team_member(team_id, user_id)
        logger.info("User %s removed %s from team %s", caller.user_id, user_id, team_id)
        return self.store.get_team(team_id) or team

    def list_teams(self, caller: Caller) -> list[dict]:
        """Every team of the caller, with the caller's role in each."""
        teams = []
        for membership in self.store.user_teams(caller.user_id):
            team = self.store.get_team(membership["teamId"])
            if team:
                teams.append({**team, "role": membership["role"]})
        return teams

    def list_activity(self, caller: Caller) -> list[dict]:
        return self.store.list_activity(caller.user_id)

    # ── Invitations ──

    def invite(self, caller: Caller, email: str) -> dict:
        """Invite an e-mail address into the caller's owned team.

        The team is created on demand. An active invitation for the same
        address and team gets a fresh token and expiry instead of a duplicate.
        """
        email = (email or "").strip().lower()
        if not email:
            raise InvalidInput("Email is required")
        if self.store.find_user_by_email(email):
            raise InvalidInput("User with this email already exists")

        if caller.owned_team_ids:
            team_id = caller.owned_team_ids[0]
        else:
            inviter = self.store.get_user(caller.user_id) or {}
            team_id = self.store.create_team(
                f"{inviter.get('name') or 'My'}'s Team", caller.user_id
            )["id"]
            logger.info("Created team %s for inviting user %s", team_id, caller.user_id)

        now = self.clock()
        token = str(uuid.uuid4())
        expires_at = now + timedelta(hours=INVITATION_TTL_HOURS)

        existing = self.store.find_active_invitation(email, team_id, now)
        if existing:
            invitation = self.store.refresh_invitation(existing["id"], token, expires_at)
            logger.info("Refreshed invitation for %s in team %s", email, team_id)
        else:
            active = self.store.count_active_invitations(email, now)
            if active >= MAX_ACTIVE_INVITATIONS_PER_EMAIL:
                raise InvalidInput(
                    f"Maximum {MAX_ACTIVE_INVITATIONS_PER_EMAIL} active invitations "
                    "allowed per email"
                )
            invitation = self.store.create_invitation(email, team_id, token, expires_at)
            logger.info("Created invitation for %s in team %s", email, team_id)

        return {
            "email": invitation["email"],
            "teamId": invitation["teamId"],
            "token": invitation["token"],
            "expiresAt": invitation["expiresAt"].isoformat(),
            "invitationLink": f"{APP_BASE_URL}/register?token={invitation['token']}",
            "refreshed": existing is not None,
        }

    def validate_invitation(self, token: str | None) -> dict:
        if not token:
            raise InvalidInput("Token is missing")
        invitation = self.store.get_invitation(token)
        if not invitation or invitation["expiresAt"] <= self.clock():
            raise NotFound("Invalid or expired invitation token")
        team = self.store.get_team(invitation["teamId"])
        return {
            "email": invitation["email"],
            "teamId": invitation["teamId"],
            "teamName": team["name"] if team else None,
        }

    # ── Datasets ──

    def _visible_dataset(self, caller: Caller, dataset_id: str) -> dict:
        dataset = self.store.get_dataset(dataset_id)
        if not dataset or not can_read(caller, dataset):
            raise NotFound(f"Dataset not found: {dataset_id}")
        return dataset

    def _managed_dataset(self, caller: Caller, dataset_id: str, action: str) -> dict:
        dataset = self._visible_dataset(caller, dataset_id)
        if not can_manage(caller, dataset):
            raise Forbidden(f"Only the dataset owner can {action} it")
        return dataset

    def list_datasets(self, caller: Caller) -> list[dict]:
        return self.store.list_datasets(caller.user_id)

    def get_dataset(self, caller: Caller, dataset_id: str) -> dict:
        return self._visible_dataset(caller, dataset_id)

    def upload(
        self,
        caller: Caller,
        filename: str,
        content: bytes,
        name: str | None = None,
    ) -> dict:
        safe_name = Path(filename).name
        if not filename or safe_name != filename or safe_name in {"", ".", ".."}:
            raise InvalidInput("Invalid filename")
        if Path(safe_name).suffix.lower() != ".csv":
            raise InvalidInput(f"Unsupported file format: {Path(safe_name).suffix}")
        if len(content) > MAX_UPLOAD_BYTES:
            raise InvalidInput(f"File exceeds the {MAX_UPLOAD_BYTES} byte upload limit")

        columns, records = parse_csv(content)
        display_name = (name or "").strip() or safe_name

        dataset_id = self.store.create_dataset(
            caller.user_id, display_name, columns, records
        )
        self.store.log_activity(
            caller.user_id,
            "uploaded_csv",
            dataset_id,
            {"fileName": display_name, "rowCount": len(records)},
        )
        logger.info(
            "User %s uploaded %s as dataset %s", caller.user_id, safe_name, dataset_id
        )
        return self._visible_dataset(caller, dataset_id)

    def rename(self, caller: Caller, dataset_id: str, name: str) -> dict:
        self._managed_dataset(caller, dataset_id, "rename")
        name = name.strip()
        if not name:
            raise InvalidInput("Invalid name")
        self.store.rename_dataset(dataset_id, name)
        self.store.log_activity(caller.user_id, "renamed_csv", dataset_id, {"fileName": name})
        return self._visible_dataset(caller, dataset_id)

    def delete(self, caller: Caller, dataset_id: str) -> None:
        dataset = self._managed_dataset(caller, dataset_id, "delete")
        self.store.delete_dataset(dataset_id)
        self.store.log_activity(
            caller.user_id, "deleted_csv", dataset_id, {"fileName": dataset["name"]}
        )
        logger.info("User %s deleted dataset %s", caller.user_id, dataset_id)

    def share(self, caller: Caller, dataset_id: str, team_id: str | None = None) -> dict:
        dataset = self._managed_dataset(caller, dataset_id, "share")
        if team_id is None:
            if not caller.owned_team_ids:
                raise Forbidden("User is not the owner of a team")
            team_id = caller.owned_team_ids[0]
        elif team_id not in caller.team_ids:
            raise Forbidden("User is not a member of this team")

        if dataset["teamId"] == team_id:
            return {
                "message": "Dataset is already shared with this team",
                "alreadyShared": True,
                "dataset": dataset,
            }

        self.store.set_dataset_team(dataset_id, team_id)
        self.store.log_activity(
            caller.user_id, "shared_csv", dataset_id, {"teamId": team_id}
        )
        logger.info("Dataset %s shared with team %s", dataset_id, team_id)
        return {
            "message": "Dataset shared with team",
            "alreadyShared": False,
            "dataset": self._visible_dataset(caller, dataset_id),
        }

    def unshare(self, caller: Caller, dataset_id: str) -> dict:
        dataset = self._managed_dataset(caller, dataset_id, "share")
        if dataset["teamId"] is not None:
            self.store.set_dataset_team(dataset_id, None)
            self.store.log_activity(
                caller.user_id, "unshared_csv", dataset_id, {"teamId": dataset["teamId"]}
            )
        return self._visible_dataset(caller, dataset_id)

    # ── Rows ──

    def query_rows(
        self,
        caller: Caller,
        dataset_id: str,
        page: int,
        page_size: int,
        sort_column: str | None = None,
        sort_direction: str | None = None,
        filters: dict[str, str] | None = None,
    ) -> dict:
        if page_size > MAX_PAGE_SIZE:
            raise InvalidInput(f"pageSize must be <= {MAX_PAGE_SIZE}")
        self._visible_dataset(caller, dataset_id)

        logger.debug(
            "Querying rows of %s: %s",
            dataset_id,
            describe_query(
                {
                    "page": page,
                    "pageSize": page_size,
                    "sortColumn": sort_column,
                    "sortDirection": sort_direction,
                    "filters": filters,
                }
            ),
        )

        result = query_rows(
            self.store.list_rows(dataset_id),
            page=page,
            page_size=page_size,
            sort_column=sort_column,
            sort_direction=sort_direction,
            filters=filters,
            options=self.options,
        )
        return {
            "rows": [r.to_dict() for r in result.rows],
            "total": result.total,
            "page": page,
            "pageSize": page_size,
            "totalPages": total_pages(result.total, page_size),
        }

    def update_cell(
        self,
        caller: Caller,
        dataset_id: str,
        row_id: str,
        column: str,
        value: Any,
    ) -> dict:
        dataset = self.store.get_dataset(dataset_id)
        if not dataset or not can_write(caller, dataset):
            raise NotFound(f"Dataset not found: {dataset_id}")

        row = self.store.get_row(row_id)
        if not row or row.dataset_id != dataset_id:
            raise NotFound("Row not found in this dataset")
        if column not in dataset["columnHeaders"]:
            raise InvalidInput(f"Unknown column: {column}")

        cell = Cell.of(value)
        updated = self.store.update_row_field(row_id, column, cell.value)
        logger.info(
            "User %s updated row %s column %r of dataset %s",
            caller.user_id,
            row_id,
            column,
            dataset_id,
        )
        return updated.to_dict()

    # ── Analysis ──

    def analyze(
        self,
        caller: Caller,
        dataset_id: str,
        column: str | None = None,
        chart_kind: str | None = None,
        sample_size: int = ANALYSIS_SAMPLE_SIZE,
    ) -> dict:
        if sample_size < 1:
            raise InvalidInput("sampleSize must be >= 1")
        kind: ChartKind | None = None
        if chart_kind:
            try:
                kind = ChartKind(chart_kind)
            except ValueError:
                raise InvalidInput(f"Invalid chart kind: {chart_kind}")

        dataset = self._visible_dataset(caller, dataset_id)
        sample = self.store.list_rows(dataset_id, limit=sample_size)
        view = analyze(sample, dataset["columnHeaders"], column, kind)

        payload = view.model_dump(mode="json")
        payload["summary"] = {
            col: stats.model_dump(mode="json", exclude_none=True)
            for col, stats in view.summary.items()
        }
        payload["sampleSize"] = len(sample)
        payload["totalRows"] = dataset["rowCount"]
        payload["sampled"] = len(sample) < dataset["rowCount"]
        return payload

    # ── Export ──

    def export_csv(
        self,
        caller: Caller,
        dataset_id: str,
        sort_column: str | None = None,
        sort_direction: str | None = None,
        filters: dict[str, str] | None = None,
    ) -> tuple[str, bytes]:
        dataset = self._visible_dataset(caller, dataset_id)
        columns = dataset["columnHeaders"]

        rows = apply_filters(
            self.store.list_rows(dataset_id), filters or {}, self.options.case_sensitive
        )
        if sort_column:
            rows = sort_rows(
                rows, sort_column, sort_direction or "asc", self.options.sort_mode
            )

        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(columns)
        for row in rows:
            writer.writerow(row.get(col).text for col in columns)
        return dataset["name"], buf.getvalue().encode("utf-8")
