"""FastAPI app: dataset, row, analysis and team routes + CORS."""

from __future__ import annotations

import logging
from typing import Literal

import duckdb
from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from access import Caller
from config import ANALYSIS_SAMPLE_SIZE, DATABASE_PATH, DEFAULT_PAGE_SIZE, LOG_LEVEL
from errors import CsvShareError
from query import parse_filters
from service import DatasetService
from store import DuckDBStore

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("csvshare")

app = FastAPI(title="CSV Share")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

store = DuckDBStore(DATABASE_PATH)
service = DatasetService(store)


@app.exception_handler(CsvShareError)
async def csvshare_error_handler(request: Request, exc: CsvShareError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(duckdb.Error)
async def storage_error_handler(request: Request, exc: duckdb.Error):
    logger.exception("Storage error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def get_caller(x_user_id: str | None = Header(None)) -> Caller:
    return service.resolve_caller(x_user_id)


# ── Users & teams ──


class CreateUserRequest(BaseModel):
    name: str
    email: str
    invitationToken: str | None = None


class CreateTeamRequest(BaseModel):
    name: str


class AddMemberRequest(BaseModel):
    userId: str
    role: Literal["owner", "member"] = "member"


class InviteRequest(BaseModel):
    email: str


@app.post("/api/users", status_code=201)
async def create_user(body: CreateUserRequest):
    return service.create_user(body.name, body.email, body.invitationToken)


@app.get("/api/teams")
async def list_teams(caller: Caller = Depends(get_caller)):
    return {"teams": service.list_teams(caller)}


@app.post("/api/teams", status_code=201)
async def create_team(body: CreateTeamRequest, caller: Caller = Depends(get_caller)):
    return service.create_team(caller, body.name)


@app.post("/api/teams/{team_id}/members")
async def add_team_member(
    team_id: str, body: AddMemberRequest, caller: Caller = Depends(get_caller)
):
    return service.add_team_member(caller, team_id, body.userId, body.role)


@app.delete("/api/teams/{team_id}/members/{user_id}")
async def remove_team_member(
    team_id: str, user_id: str, caller: Caller = Depends(get_caller)
):
    return service.remove_team_member(caller, team_id, user_id)


@app.post("/api/invitations", status_code=201)
async def invite_user(body: InviteRequest, caller: Caller = Depends(get_caller)):
    return service.invite(caller, body.email)


@app.get("/api/invitations/validate")
async def validate_invitation(token: str | None = Query(None)):
    return service.validate_invitation(token)


@app.get("/api/activity")
async def list_activity(caller: Caller = Depends(get_caller)):
    return {"activity": service.list_activity(caller)}


# ── Datasets ──


class RenameRequest(BaseModel):
    name: str


class ShareRequest(BaseModel):
    teamId: str | None = None


@app.get("/api/datasets")
async def list_datasets(caller: Caller = Depends(get_caller)):
    return {"datasets": service.list_datasets(caller)}


@app.post("/api/datasets/upload", status_code=201)
async def upload_dataset(
    file: UploadFile = File(...),
    name: str | None = Form(None),
    caller: Caller = Depends(get_caller),
):
    content = await file.read()
    return service.upload(caller, file.filename or "", content, name)


@app.get("/api/datasets/{dataset_id}")
async def get_dataset(dataset_id: str, caller: Caller = Depends(get_caller)):
    return service.get_dataset(caller, dataset_id)


@app.patch("/api/datasets/{dataset_id}")
async def rename_dataset(
    dataset_id: str, body: RenameRequest, caller: Caller = Depends(get_caller)
):
    return service.rename(caller, dataset_id, body.name)


@app.delete("/api/datasets/{dataset_id}")
async def delete_dataset(dataset_id: str, caller: Caller = Depends(get_caller)):
    service.delete(caller, dataset_id)
    return {"id": dataset_id, "deleted": True}


@app.post("/api/datasets/{dataset_id}/share")
async def share_dataset(
    dataset_id: str,
    body: ShareRequest | None = None,
    caller: Caller = Depends(get_caller),
):
    team_id = body.teamId if body else None
    return service.share(caller, dataset_id, team_id)


@app.delete("/api/datasets/{dataset_id}/share")
async def unshare_dataset(dataset_id: str, caller: Caller = Depends(get_caller)):
    return service.unshare(caller, dataset_id)


# ── Rows ──


class CellUpdateRequest(BaseModel):
    rowId: str
    column: str
    value: str | int | float | bool | None = Field(...)


@app.get("/api/datasets/{dataset_id}/rows")
async def get_rows(
    dataset_id: str,
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize"),
    sort_column: str | None = Query(None, alias="sortColumn"),
    sort_direction: str | None = Query(None, alias="sortDirection"),
    filters: str | None = Query(None),
    caller: Caller = Depends(get_caller),
):
    parsed_filters = parse_filters(filters)
    return service.query_rows(
        caller,
        dataset_id,
        page=page,
        page_size=page_size,
        sort_column=sort_column,
        sort_direction=sort_direction,
        filters=parsed_filters,
    )


@app.patch("/api/datasets/{dataset_id}/rows")
async def update_cell(
    dataset_id: str, body: CellUpdateRequest, caller: Caller = Depends(get_caller)
):
    return service.update_cell(caller, dataset_id, body.rowId, body.column, body.value)


# ── Analysis ──


@app.get("/api/datasets/{dataset_id}/analysis")
async def analyze_dataset(
    dataset_id: str,
    column: str | None = Query(None),
    chart_kind: str | None = Query(None, alias="chartKind"),
    sample_size: int = Query(ANALYSIS_SAMPLE_SIZE, alias="sampleSize"),
    caller: Caller = Depends(get_caller),
):
    return service.analyze(caller, dataset_id, column, chart_kind, sample_size)


# ── Export ──


@app.get("/api/datasets/{dataset_id}/export")
async def export_dataset(
    dataset_id: str,
    sort_column: str | None = Query(None, alias="sortColumn"),
    sort_direction: str | None = Query(None, alias="sortDirection"),
    filters: str | None = Query(None),
    caller: Caller = Depends(get_caller),
):
    parsed_filters = parse_filters(filters)
    name, csv_bytes = service.export_csv(
        caller,
        dataset_id,
        sort_column=sort_column,
        sort_direction=sort_direction,
        filters=parsed_filters,
    )
    filename = name if name.lower().endswith(".csv") else f"{name}.csv"

    return StreamingResponse(
        iter([csv_bytes]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True)
