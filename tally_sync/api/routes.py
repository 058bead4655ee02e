"""
REST routes for sync control and read views.

Endpoints:
  GET  /api/tally/health
  GET  /api/tally/sync/status
  GET  /api/tally/sync/history
  POST /api/tally/sync/full
  POST /api/tally/sync/manual
  POST /api/tally/sync/vouchers
  POST /api/tally/sync/relationships
  POST /api/tally/sync/entity/{entity}
  POST /api/tally/scheduler/start
  POST /api/tally/scheduler/stop
  GET  /api/tally/companies
  GET  /api/tally/groups
  GET  /api/tally/cost-centres
  GET  /api/tally/currencies
  GET  /api/tally/ledgers
  GET  /api/tally/ledgers/{ledger_id}
  GET  /api/tally/stock-items
  GET  /api/tally/vouchers
"""
from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from .. import __version__
from ..config import TallySyncConfig
from ..loaders import DocumentStore, VOUCHER
from ..loaders import masters as mst
from ..parsers.masters import stock_status
from ..relationships import RelationshipBuilder
from ..scheduler import SyncScheduler, TriggerResult
from .schemas import (
    HealthResponse,
    LedgerDetailResponse,
    PageResponse,
    SchedulerResponse,
    SyncHistoryResponse,
    SyncStatusResponse,
    TriggerResponse,
    VoucherSyncRequest,
)

router = APIRouter(prefix="/api/tally")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


# ── Dependencies ──────────────────────────────────────────────────────────────


def get_config(request: Request) -> TallySyncConfig:
    return request.app.state.config


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler


# ── Helpers ───────────────────────────────────────────────────────────────────


def _ack(result: TriggerResult) -> dict:
    if not result.accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)
    return result.to_dict()


def _filters(**values) -> dict:
    return {key: value for key, value in values.items() if value is not None}


def _page(
    store: DocumentStore,
    config: TallySyncConfig,
    collection: str,
    page: int,
    limit: int,
    filters: dict,
    search: Optional[str],
    search_fields: tuple[str, ...] = ("name", "aliasName"),
    sort_field: str = "name",
    descending: bool = False,
) -> dict:
    total = store.count(collection, config.tenant_id, filters, search, search_fields)
    data = store.find(
        collection,
        config.tenant_id,
        filters=filters,
        search=search,
        search_fields=search_fields,
        sort_field=sort_field,
        descending=descending,
        skip=(page - 1) * limit,
        limit=limit,
    )
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "data": data,
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalRecords": total,
            "recordsPerPage": limit,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    }


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
def health(
    config: TallySyncConfig = Depends(get_config),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    return {
        "status": "ok",
        "version": __version__,
        "tenant": config.tenant_id,
        "schedulerActive": scheduler.is_active,
    }


# ── Sync control ──────────────────────────────────────────────────────────────


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.get("/sync/history", response_model=SyncHistoryResponse)
def sync_history(scheduler: SyncScheduler = Depends(get_scheduler)):
    history = scheduler.history()
    return {"history": history, "total": len(history)}


@router.post("/sync/full", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_full_sync(scheduler: SyncScheduler = Depends(get_scheduler)):
    return _ack(scheduler.trigger_full_sync())


@router.post("/sync/manual", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_partial_sync(
    days: Optional[int] = Query(None, ge=0, le=366),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    return _ack(scheduler.trigger_partial_sync(days))


@router.post("/sync/vouchers", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_voucher_sync(
    body: Optional[VoucherSyncRequest] = None,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    try:
        body = body or VoucherSyncRequest()
        result = scheduler.trigger_voucher_sync(
            body.from_date, body.to_date, voucher_types=body.voucher_types
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return _ack(result)


@router.post(
    "/sync/relationships", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED
)
def trigger_relationship_build(scheduler: SyncScheduler = Depends(get_scheduler)):
    return _ack(scheduler.trigger_relationship_build())


@router.post(
    "/sync/entity/{entity}", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED
)
def trigger_entity_sync(entity: str, scheduler: SyncScheduler = Depends(get_scheduler)):
    try:
        result = scheduler.trigger_entity_sync(entity)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return _ack(result)


@router.post("/scheduler/start", response_model=SchedulerResponse)
def start_scheduler(scheduler: SyncScheduler = Depends(get_scheduler)):
    changed = scheduler.start()
    return {
        "active": scheduler.is_active,
        "changed": changed,
        "message": "Scheduler started" if changed else "Scheduler already running",
        "nextScheduledSync": scheduler.next_scheduled_sync().isoformat(),
    }


@router.post("/scheduler/stop", response_model=SchedulerResponse)
def stop_scheduler(scheduler: SyncScheduler = Depends(get_scheduler)):
    changed = scheduler.stop()
    return {
        "active": scheduler.is_active,
        "changed": changed,
        "message": "Scheduler stopped" if changed else "Scheduler was not running",
    }


# ── Read views ────────────────────────────────────────────────────────────────


@router.get("/companies", response_model=PageResponse)
def list_companies(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    return _page(store, config, mst.COMPANY, page, limit, {}, search, ("name", "mailingName"))


@router.get("/groups", response_model=PageResponse)
def list_groups(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    parent: Optional[str] = None,
    group_type: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    filters = _filters(parent=parent, groupType=group_type)
    return _page(store, config, mst.GROUP, page, limit, filters, search)


@router.get("/cost-centres", response_model=PageResponse)
def list_cost_centres(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    category: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    filters = _filters(category=category)
    return _page(store, config, mst.COST_CENTRE, page, limit, filters, search)


@router.get("/currencies", response_model=PageResponse)
def list_currencies(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    return _page(store, config, mst.CURRENCY, page, limit, {}, search, ("name", "formalName"))


@router.get("/ledgers", response_model=PageResponse)
def list_ledgers(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    parent: Optional[str] = None,
    year: Optional[int] = None,
    has_related_vouchers: Optional[bool] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    filters = _filters(parent=parent, year=year, hasRelatedVouchers=has_related_vouchers)
    return _page(
        store, config, mst.LEDGER, page, limit, filters, search, ("name", "aliasName", "gstin")
    )


@router.get("/ledgers/{ledger_id}", response_model=LedgerDetailResponse)
def get_ledger(
    ledger_id: int,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    ledger = store.get(mst.LEDGER, config.tenant_id, ledger_id)
    if ledger is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ledger not found")
    builder = RelationshipBuilder(store, config.tenant_id, config.match_mode)
    return {"ledger": ledger, "relatedVouchers": builder.related_vouchers(ledger, limit=limit)}


@router.get("/stock-items", response_model=PageResponse)
def list_stock_items(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    parent: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    result = _page(store, config, mst.STOCK_ITEM, page, limit, _filters(parent=parent), search)
    for item in result["data"]:
        item["stockStatus"] = stock_status(item)
    return result


@router.get("/vouchers", response_model=PageResponse)
def list_vouchers(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    voucher_type: Optional[str] = None,
    party: Optional[str] = None,
    year: Optional[int] = None,
    store: DocumentStore = Depends(get_store),
    config: TallySyncConfig = Depends(get_config),
):
    filters = _filters(voucherType=voucher_type, party=party, year=year)
    return _page(
        store,
        config,
        VOUCHER,
        page,
        limit,
        filters,
        search,
        search_fields=("voucherNumber", "party", "narration"),
        sort_field="date",
        descending=True,
    )
