from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query

from nosqlgate.api.schemas import (
    Envelope,
    RecordsRequest,
    RecordsResponse,
    TableCreateRequest,
    TableListResponse,
)
from nosqlgate.logging import get_logger
from nosqlgate.service.records import RecordService, RequestExtras
from nosqlgate.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class RequestContext:
    runtime: Runtime
    user_id: Optional[str]
    service: RecordService

    def authorize(self, action: str, resource: str) -> None:
        if not self.runtime.permissions.check(action, resource):
            logger.warning("permission_denied", user_id=self.user_id, action=action, resource=resource)
            raise _http_error(
                "forbidden",
                f"Access to '{resource}' denied for {action}.",
                status_code=403,
            )


async def get_context(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> RequestContext:
    runtime = get_runtime()
    user_id = x_user_id.strip() if x_user_id and x_user_id.strip() else None
    return RequestContext(runtime=runtime, user_id=user_id, service=runtime.record_service(user_id))


def record_options(
    fields: Optional[str] = Query(None, description="Comma separated fields to return, '*' for all"),
    id_field: Optional[str] = Query(None, description="Override identifier field(s)"),
    id_type: Optional[str] = Query(None, description="Override identifier type(s)"),
    rollback: bool = Query(False),
    continue_: bool = Query(False, alias="continue"),
    partition_key: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    order: Optional[str] = Query(None),
    include_count: bool = Query(False),
) -> RequestExtras:
    return RequestExtras(
        fields=fields,
        id_field=id_field,
        id_type=id_type,
        rollback=rollback,
        continue_on_error=continue_,
        partition_key=partition_key,
        limit=limit,
        offset=offset,
        order=order,
        include_count=include_count,
    )


def _records_payload(result: Any) -> Dict[str, Any]:
    return RecordsResponse(record=list(result)).model_dump(exclude_none=True)


# tables


@router.get("/tables", response_model=Envelope, tags=["tables"])
async def list_tables(
    refresh: bool = Query(False),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("read", "tables")
    names = await asyncio.to_thread(ctx.runtime.catalog.list_tables, refresh)
    return Envelope(status="ok", data=TableListResponse(table=[{"name": name} for name in names]))


@router.post("/tables", response_model=Envelope, status_code=201, tags=["tables"])
async def create_table(body: TableCreateRequest, ctx: RequestContext = Depends(get_context)):
    ctx.authorize("create", "tables")
    info = await asyncio.to_thread(ctx.runtime.catalog.create_table, body.name, body.properties)
    return Envelope(status="ok", data=info)


@router.post("/tables/_refresh", response_model=Envelope, tags=["tables"])
async def refresh_tables(ctx: RequestContext = Depends(get_context)):
    ctx.authorize("read", "tables")
    names = await asyncio.to_thread(ctx.runtime.catalog.refresh)
    return Envelope(status="ok", data=TableListResponse(table=[{"name": name} for name in names]))


@router.get("/tables/{table}", response_model=Envelope, tags=["tables"])
async def describe_table(table: str = Path(...), ctx: RequestContext = Depends(get_context)):
    ctx.authorize("read", table)
    info = await asyncio.to_thread(ctx.runtime.catalog.describe_table, table)
    return Envelope(status="ok", data=info)


@router.delete("/tables/{table}", response_model=Envelope, tags=["tables"])
async def delete_table(table: str = Path(...), ctx: RequestContext = Depends(get_context)):
    ctx.authorize("delete", table)
    await asyncio.to_thread(ctx.runtime.catalog.delete_table, table)
    return Envelope(status="ok", data={"name": table, "deleted": True})


# records


@router.get("/tables/{table}/records", response_model=Envelope, tags=["records"])
async def retrieve_records(
    table: str = Path(...),
    ids: Optional[str] = Query(None, description="Comma separated identifiers"),
    filter: Optional[str] = Query(None),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("read", table)
    if ids:
        result = await asyncio.to_thread(ctx.service.retrieve_records_by_ids, table, ids, extras)
        return Envelope(status="ok", data=_records_payload(result))
    result = await asyncio.to_thread(ctx.service.retrieve_records_by_filter, table, filter, None, extras)
    return Envelope(status="ok", data=RecordsResponse(**result).model_dump(exclude_none=True))


@router.get("/tables/{table}/records/{id}", response_model=Envelope, tags=["records"])
async def retrieve_record(
    table: str = Path(...),
    id: str = Path(...),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("read", table)
    record = await asyncio.to_thread(ctx.service.retrieve_record_by_id, table, id, extras)
    return Envelope(status="ok", data=record)


@router.post("/tables/{table}/records", response_model=Envelope, status_code=201, tags=["records"])
async def create_records(
    body: RecordsRequest,
    table: str = Path(...),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("create", table)
    if isinstance(body.record, dict):
        record = await asyncio.to_thread(ctx.service.create_record, table, body.record, extras)
        return Envelope(status="ok", data=record)
    result = await asyncio.to_thread(ctx.service.create_records, table, body.records(), extras)
    return Envelope(status="ok", data=_records_payload(result))


async def _write_records(
    ctx: RequestContext,
    verb: str,
    table: str,
    body: RecordsRequest,
    ids: Optional[str],
    filter: Optional[str],
    extras: RequestExtras,
) -> Envelope:
    service = ctx.service
    ids = ids or body.ids
    filter = filter or body.filter
    if ids:
        fn = service.update_records_by_ids if verb == "update" else service.merge_records_by_ids
        result = await asyncio.to_thread(fn, table, body.record, ids, extras)
    elif filter:
        fn = service.update_records_by_filter if verb == "update" else service.merge_records_by_filter
        result = await asyncio.to_thread(fn, table, body.record, filter, body.params, extras)
    elif isinstance(body.record, dict):
        fn = service.update_record if verb == "update" else service.merge_record
        record = await asyncio.to_thread(fn, table, body.record, extras)
        return Envelope(status="ok", data=record)
    else:
        fn = service.update_records if verb == "update" else service.merge_records
        result = await asyncio.to_thread(fn, table, body.records(), extras)
    return Envelope(status="ok", data=_records_payload(result))


@router.put("/tables/{table}/records", response_model=Envelope, tags=["records"])
async def update_records(
    body: RecordsRequest,
    table: str = Path(...),
    ids: Optional[str] = Query(None),
    filter: Optional[str] = Query(None),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("update", table)
    return await _write_records(ctx, "update", table, body, ids, filter, extras)


@router.patch("/tables/{table}/records", response_model=Envelope, tags=["records"])
async def merge_records(
    body: RecordsRequest,
    table: str = Path(...),
    ids: Optional[str] = Query(None),
    filter: Optional[str] = Query(None),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("update", table)
    return await _write_records(ctx, "merge", table, body, ids, filter, extras)


@router.delete("/tables/{table}/records", response_model=Envelope, tags=["records"])
async def delete_records(
    table: str = Path(...),
    ids: Optional[str] = Query(None),
    filter: Optional[str] = Query(None),
    body: Optional[RecordsRequest] = Body(None),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("delete", table)
    body = body or RecordsRequest()
    ids = ids or body.ids
    filter = filter or body.filter
    if ids:
        result = await asyncio.to_thread(ctx.service.delete_records_by_ids, table, ids, extras)
    elif filter:
        result = await asyncio.to_thread(
            ctx.service.delete_records_by_filter, table, filter, body.params, extras
        )
    else:
        result = await asyncio.to_thread(ctx.service.delete_records, table, body.records(), extras)
    return Envelope(status="ok", data=_records_payload(result))


@router.put("/tables/{table}/records/{id}", response_model=Envelope, tags=["records"])
async def update_record(
    body: RecordsRequest,
    table: str = Path(...),
    id: str = Path(...),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("update", table)
    record = await asyncio.to_thread(ctx.service.update_record_by_id, table, body.record, id, extras)
    return Envelope(status="ok", data=record)


@router.patch("/tables/{table}/records/{id}", response_model=Envelope, tags=["records"])
async def merge_record(
    body: RecordsRequest,
    table: str = Path(...),
    id: str = Path(...),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("update", table)
    record = await asyncio.to_thread(ctx.service.merge_record_by_id, table, body.record, id, extras)
    return Envelope(status="ok", data=record)


@router.delete("/tables/{table}/records/{id}", response_model=Envelope, tags=["records"])
async def delete_record(
    table: str = Path(...),
    id: str = Path(...),
    extras: RequestExtras = Depends(record_options),
    ctx: RequestContext = Depends(get_context),
):
    ctx.authorize("delete", table)
    record = await asyncio.to_thread(ctx.service.delete_record_by_id, table, id, extras)
    return Envelope(status="ok", data=record)
