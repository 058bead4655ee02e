"""
Master data loaders.

Writes normalized masters into their collections:
- mst_company
- mst_group
- mst_cost_centre
- mst_currency
- mst_ledger
- mst_stock_item
"""
from __future__ import annotations
from loguru import logger

from ..models import WriteResult
from .base import DocumentLoader

COMPANY = "mst_company"
GROUP = "mst_group"
COST_CENTRE = "mst_cost_centre"
CURRENCY = "mst_currency"
LEDGER = "mst_ledger"
STOCK_ITEM = "mst_stock_item"

MASTER_COLLECTIONS = (COMPANY, GROUP, COST_CENTRE, CURRENCY, LEDGER, STOCK_ITEM)


def by_name(record: dict) -> str:
    return record.get("name") or ""


def currency_key(record: dict) -> str:
    return record.get("name") or record.get("symbol") or ""


class MasterLoader(DocumentLoader):
    """Loader for master data collections."""

    def _load(
        self,
        collection: str,
        records: list[dict],
        label: str,
        natural_key=by_name,
        timestamp_fields: tuple[str, ...] = ("lastUpdated",),
    ) -> WriteResult:
        result = self.load_documents(collection, records, natural_key, timestamp_fields)
        logger.info(f"Loaded {result.written} {label}")
        return result

    def load_company(self, rows: list[dict]) -> WriteResult:
        return self._load(COMPANY, rows, "company", timestamp_fields=("lastUpdated", "lastSyncedAt"))

    def load_groups(self, rows: list[dict]) -> WriteResult:
        return self._load(GROUP, rows, "groups")

    def load_cost_centres(self, rows: list[dict]) -> WriteResult:
        return self._load(COST_CENTRE, rows, "cost centres")

    def load_currencies(self, rows: list[dict]) -> WriteResult:
        return self._load(CURRENCY, rows, "currencies", natural_key=currency_key)

    def load_ledgers(self, rows: list[dict]) -> WriteResult:
        return self._load(LEDGER, rows, "ledgers")

    def load_stock_items(self, rows: list[dict]) -> WriteResult:
        return self._load(STOCK_ITEM, rows, "stock items")

    def update_company_stats(self, voucher_collection: str) -> dict:
        """Write per-collection totals onto the tenant's company documents."""
        stats = {
            "totalLedgers": self.store.count(LEDGER, self.company_id),
            "totalGroups": self.store.count(GROUP, self.company_id),
            "totalCostCentres": self.store.count(COST_CENTRE, self.company_id),
            "totalCurrencies": self.store.count(CURRENCY, self.company_id),
            "totalStockItems": self.store.count(STOCK_ITEM, self.company_id),
            "totalVouchers": self.store.count(voucher_collection, self.company_id),
        }
        updated = self.store.update_many(COMPANY, self.company_id, stats)
        logger.debug(f"Updated stats on {updated} company document(s): {stats}")
        return stats
