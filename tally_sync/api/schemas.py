"""Pydantic request/response schemas for the sync API."""
from __future__ import annotations

from datetime import date
from typing import Any, Optional
from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    tenant: str
    schedulerActive: bool


class TriggerResponse(BaseModel):
    triggered: bool
    syncType: str
    message: str


class VoucherSyncRequest(BaseModel):
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    voucher_types: Optional[list[str]] = None


class SyncStatusResponse(BaseModel):
    fullSyncRunning: bool
    partialSyncRunning: bool
    states: dict[str, str]
    lastSyncResult: Optional[dict[str, Any]] = None
    syncHistory: list[dict[str, Any]]
    schedulerActive: bool
    nextScheduledSync: Optional[str] = None


class SyncHistoryResponse(BaseModel):
    history: list[dict[str, Any]]
    total: int


class SchedulerResponse(BaseModel):
    active: bool
    changed: bool
    message: str
    nextScheduledSync: Optional[str] = None


class Pagination(BaseModel):
    currentPage: int
    totalPages: int
    totalRecords: int
    recordsPerPage: int
    hasNextPage: bool
    hasPrevPage: bool


class PageResponse(BaseModel):
    data: list[dict[str, Any]]
    pagination: Pagination


class LedgerDetailResponse(BaseModel):
    ledger: dict[str, Any]
    relatedVouchers: list[dict[str, Any]]
