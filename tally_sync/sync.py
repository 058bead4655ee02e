"""
Main sync orchestration for Tally Sync.

Provides:
- Full sync: all masters, in dependency order
- Partial sync: company, ledgers, stock items and recent vouchers
- Voucher sync: vouchers in a date range, then ledger relationships
- Single entity sync
"""
from __future__ import annotations
from datetime import date, datetime, timedelta
from typing import Optional
from loguru import logger

from .config import TallySyncConfig
from .client import TallySyncClient
from .loaders import ALL_COLLECTIONS, DocumentStore, MasterLoader, TransactionLoader, VOUCHER
from .loaders import masters as mst
from .models import EntityResult, SyncResult, utcnow
from .parsers.masters import (
    parse_companies,
    parse_cost_centres,
    parse_currencies,
    parse_groups,
    parse_ledgers,
    parse_stock_items,
)
from .parsers.transactions import parse_vouchers
from .relationships import RelationshipBuilder

SYNC_FULL = "FULL"
SYNC_PARTIAL = "PARTIAL"
SYNC_VOUCHERS = "VOUCHERS"
SYNC_ENTITY = "ENTITY"
SYNC_RELATIONSHIPS = "RELATIONSHIPS"

# Groups before ledgers, ledgers before anything that references them
FULL_SYNC_ENTITIES = ("company", "groups", "cost_centres", "currencies", "ledgers", "stock_items")
PARTIAL_SYNC_ENTITIES = ("company", "ledgers", "stock_items")


class TallySync:
    """
    Main synchronization orchestrator.

    Coordinates fetching data from Tally and writing it to the document
    store. Every run returns a SyncResult; one failing entity is recorded
    in its errors and the run moves on to the next entity.

    Usage:
        with TallySync() as sync:
            sync.run_full_sync()
            sync.run_partial_sync(days=7)
            sync.sync_vouchers(date(2024, 4, 1), date(2024, 4, 30))
    """

    ENTITIES = {
        "company": {
            "parser": parse_companies,
            "loader_method": "load_company",
            "collection": mst.COMPANY,
        },
        "groups": {
            "parser": parse_groups,
            "loader_method": "load_groups",
            "collection": mst.GROUP,
        },
        "cost_centres": {
            "parser": parse_cost_centres,
            "loader_method": "load_cost_centres",
            "collection": mst.COST_CENTRE,
        },
        "currencies": {
            "parser": parse_currencies,
            "loader_method": "load_currencies",
            "collection": mst.CURRENCY,
        },
        "ledgers": {
            "parser": parse_ledgers,
            "loader_method": "load_ledgers",
            "collection": mst.LEDGER,
        },
        "stock_items": {
            "parser": parse_stock_items,
            "loader_method": "load_stock_items",
            "collection": mst.STOCK_ITEM,
        },
        "vouchers": {
            "parser": parse_vouchers,
            "loader_method": "load_vouchers",
            "collection": VOUCHER,
            "transactional": True,
        },
    }

    def __init__(
        self,
        config: Optional[TallySyncConfig] = None,
        client: Optional[TallySyncClient] = None,
        store: Optional[DocumentStore] = None,
        clock=utcnow,
    ):
        self.config = config or TallySyncConfig.from_env()
        self.client = client or TallySyncClient(self.config)
        self.store = store or DocumentStore(self.config)
        self.clock = clock
        tenant = self.config.tenant_id
        self.master_loader = MasterLoader(self.store, tenant, clock)
        self.transaction_loader = TransactionLoader(self.store, tenant, clock)
        self.relationships = RelationshipBuilder(self.store, tenant, self.config.match_mode, clock)

    def test_connection(self) -> dict:
        """Test connection to Tally."""
        return self.client.test_connection()

    def initialize_schema(self):
        """Create the schema and collection tables if they don't exist."""
        self.store.ensure_schema(ALL_COLLECTIONS)

    def today(self) -> date:
        """Today on the configured wall clock."""
        return self.clock().astimezone(self.config.timezone).date()

    def sync_entity(
        self,
        entity_name: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        voucher_types: Optional[list[str]] = None,
    ) -> EntityResult:
        """
        Fetch, normalize and write one entity type.

        Transport errors propagate; record-level problems are returned in
        the EntityResult.
        """
        if entity_name not in self.ENTITIES:
            raise ValueError(f"Unknown entity: {entity_name}. Valid: {list(self.ENTITIES.keys())}")

        entity_config = self.ENTITIES[entity_name]
        logger.info(f"Syncing {entity_name}...")

        tree = self.client.fetch(
            entity_name, from_date=from_date, to_date=to_date, voucher_types=voucher_types
        )
        batch = entity_config["parser"](tree)

        loader = self.transaction_loader if entity_config.get("transactional") else self.master_loader
        written = getattr(loader, entity_config["loader_method"])(batch.records)

        result = EntityResult(
            entity=entity_name,
            fetched=len(batch.records) + len(batch.failures),
            written=written.written,
            failures=batch.failures + written.failures,
        )
        logger.info(
            f"  Synced {result.written} {entity_name}"
            + (f" ({len(result.failures)} skipped)" if result.failures else "")
        )
        return result

    def _sync_entities(self, result: SyncResult, entities, **kwargs):
        for entity_name in entities:
            try:
                result.add_entity(self.sync_entity(entity_name, **kwargs))
            except Exception as e:
                logger.error(f"Failed to sync {entity_name}: {e}")
                result.add_error(entity_name, e)

    def _build_relationships(self, result: SyncResult):
        try:
            built = self.relationships.build()
        except Exception as e:
            logger.error(f"Relationship build failed: {e}")
            result.add_error("relationships", e)
            return
        result.relationships = built.linked
        result.warnings.extend(f"relationships: {error}" for error in built.errors)

    def _update_company_stats(self, result: SyncResult):
        try:
            self.master_loader.update_company_stats(VOUCHER)
        except Exception as e:
            logger.warning(f"Could not update company stats: {e}")
            result.warnings.append(f"company stats: {e}")

    def _checkpoint_name(self, sync_type: str) -> str:
        return f"{self.config.tenant_id}:{sync_type.lower()}_sync"

    def _finish(self, result: SyncResult) -> SyncResult:
        result.finish()
        try:
            self.store.update_checkpoint(
                self._checkpoint_name(result.sync_type),
                row_count=sum(result.counts.values()),
                status=result.status,
                error_message="; ".join(result.errors) or None,
                last_sync_at=result.finished_at,
            )
        except Exception as e:
            logger.warning(f"Could not record {result.sync_type} checkpoint: {e}")
            result.warnings.append(f"checkpoint: {e}")

        logger.info(
            f"=== {result.sync_type} sync {result.status} in {result.duration_seconds}s: "
            f"{result.counts} ==="
        )
        for error in result.errors:
            logger.warning(f"  {error}")
        return result

    def run_full_sync(self, trigger: str = "manual") -> SyncResult:
        """Sync every master entity (vouchers excluded)."""
        result = SyncResult(SYNC_FULL, trigger=trigger)
        logger.info("=== Full Sync ===")
        self._sync_entities(result, FULL_SYNC_ENTITIES)
        self._update_company_stats(result)
        return self._finish(result)

    def voucher_window(self, days: Optional[int] = None) -> tuple[date, date]:
        """Trailing date range ending today."""
        days = self.config.voucher_window_days if days is None else days
        to_date = self.today()
        return to_date - timedelta(days=days), to_date

    def run_partial_sync(self, days: Optional[int] = None, trigger: str = "manual") -> SyncResult:
        """Company, ledgers and stock items, plus vouchers of the last `days` days."""
        result = SyncResult(SYNC_PARTIAL, trigger=trigger)
        from_date, to_date = self.voucher_window(days)
        logger.info(f"=== Partial Sync (vouchers {from_date} to {to_date}) ===")

        self._sync_entities(result, PARTIAL_SYNC_ENTITIES)
        self._sync_entities(result, ("vouchers",), from_date=from_date, to_date=to_date)
        self._build_relationships(result)
        self._update_company_stats(result)
        return self._finish(result)

    def sync_vouchers(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        trigger: str = "manual",
        voucher_types: Optional[list[str]] = None,
    ) -> SyncResult:
        """
        Vouchers in [from_date, to_date], then ledger relationships.

        `voucher_types` limits the export to those voucher type names; by
        default every type is fetched.
        """
        voucher_types = [t.strip() for t in voucher_types or () if t and t.strip()] or None
        if from_date is None or to_date is None:
            default_from, default_to = self.voucher_window()
            from_date = from_date or default_from
            to_date = to_date or default_to
        if from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")

        result = SyncResult(SYNC_VOUCHERS, trigger=trigger, message=", ".join(voucher_types or ()))
        logger.info(
            f"=== Voucher Sync {from_date} to {to_date}"
            + (f" ({result.message})" if voucher_types else "")
            + " ==="
        )
        self._sync_entities(
            result, ("vouchers",), from_date=from_date, to_date=to_date, voucher_types=voucher_types
        )
        self._build_relationships(result)
        self._update_company_stats(result)
        return self._finish(result)

    def run_entity_sync(self, entity_name: str, trigger: str = "manual") -> SyncResult:
        """Sync a single entity type (vouchers use the trailing window)."""
        if entity_name not in self.ENTITIES:
            raise ValueError(f"Unknown entity: {entity_name}. Valid: {list(self.ENTITIES.keys())}")
        if entity_name == "vouchers":
            return self.sync_vouchers(trigger=trigger)

        result = SyncResult(SYNC_ENTITY, trigger=trigger, message=entity_name)
        self._sync_entities(result, (entity_name,))
        self._update_company_stats(result)
        return self._finish(result)

    def build_relationships(self, trigger: str = "manual") -> SyncResult:
        """Recompute voucher summaries for every ledger."""
        result = SyncResult(SYNC_RELATIONSHIPS, trigger=trigger)
        self._build_relationships(result)
        return self._finish(result)

    def last_full_sync_at(self) -> Optional[datetime]:
        """Finish time of the last recorded full sync, if any."""
        checkpoint = self.store.get_checkpoint(self._checkpoint_name(SYNC_FULL))
        return checkpoint["last_sync_at"] if checkpoint else None

    def close(self):
        """Close all connections."""
        self.client.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def run_sync(
    mode: str = "full",
    entity: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    days: Optional[int] = None,
    config: Optional[TallySyncConfig] = None,
    voucher_types: Optional[list[str]] = None,
) -> SyncResult:
    """
    Convenience function to run one sync outside the scheduler.

    Args:
        mode: 'full', 'partial', 'vouchers', 'entity', 'relationships'
    """
    with TallySync(config) as sync:
        if mode == "full":
            return sync.run_full_sync()
        elif mode == "partial":
            return sync.run_partial_sync(days)
        elif mode == "vouchers":
            return sync.sync_vouchers(from_date, to_date, voucher_types=voucher_types)
        elif mode == "entity":
            return sync.run_entity_sync(entity)
        elif mode == "relationships":
            return sync.build_relationships()
        else:
            raise ValueError(
                f"Unknown mode: {mode}. Valid: full, partial, vouchers, entity, relationships"
            )
