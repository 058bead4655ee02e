"""
Tests for the document store and entity loaders.

Loader semantics (keys, merge, stamping) run against the in-memory store;
DocumentStore's SQL plumbing runs against a mocked psycopg connection.
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import psycopg
import pytest

from tally_sync.loaders import DocumentStore, MasterLoader, StoredDocument, TransactionLoader
from tally_sync.loaders import masters as mst
from tally_sync.loaders.transactions import VOUCHER, voucher_key

NOW = datetime(2024, 4, 10, 6, 30, tzinfo=timezone.utc)


@pytest.fixture
def masters(store, clock):
    return MasterLoader(store, "tenant-1", clock)


@pytest.fixture
def transactions(store, clock):
    return TransactionLoader(store, "tenant-1", clock)


class TestMasterLoader:
    """Tests for master upserts."""

    def test_guid_keeps_identity_across_rename(self, masters, store):
        masters.load_ledgers([{"name": "Acme", "guid": "led-1", "parent": "Debtors"}])
        masters.load_ledgers([{"name": "Acme Ltd", "guid": "led-1", "parent": "Debtors"}])

        docs = store.documents(mst.LEDGER)
        assert len(docs) == 1
        assert docs[0]["name"] == "Acme Ltd"

    def test_guidless_records_collapse_by_name(self, masters, store):
        masters.load_ledgers([{"name": "Cash", "guid": "", "closingBalance": 10.0}])
        result = masters.load_ledgers([{"name": "Cash", "guid": "", "closingBalance": 20.0}])

        assert result.written == 1
        docs = store.documents(mst.LEDGER)
        assert len(docs) == 1
        assert docs[0]["closingBalance"] == 20.0

    def test_guidless_duplicates_in_one_batch_collapse(self, masters, store):
        masters.load_ledgers([
            {"name": "Cash", "guid": "", "closingBalance": 10.0},
            {"name": "Cash", "guid": "", "closingBalance": 20.0},
        ])

        docs = store.documents(mst.LEDGER)
        assert len(docs) == 1
        assert docs[0]["closingBalance"] == 20.0

    def test_guidless_name_does_not_match_guid_document(self, masters, store):
        masters.load_ledgers([{"name": "Cash", "guid": "led-9"}])
        masters.load_ledgers([{"name": "Cash", "guid": ""}])
        assert len(store.documents(mst.LEDGER)) == 2

    def test_tenants_are_isolated(self, masters, store, clock):
        other = MasterLoader(store, "tenant-2", clock)
        masters.load_ledgers([{"name": "Acme", "guid": "led-1"}])
        other.load_ledgers([{"name": "Acme", "guid": "led-1"}])

        assert store.count(mst.LEDGER, "tenant-1") == 1
        assert store.count(mst.LEDGER, "tenant-2") == 1

    def test_fields_not_in_record_survive(self, masters, store):
        masters.load_ledgers([{"name": "Acme", "guid": "led-1"}])
        ledger = store.find(mst.LEDGER, "tenant-1")[0]
        store.update_document(mst.LEDGER, ledger["id"], {"voucherSummary": {"totalVouchers": 3}})

        masters.load_ledgers([{"name": "Acme", "guid": "led-1", "closingBalance": 5.0}])

        doc = store.documents(mst.LEDGER)[0]
        assert doc["voucherSummary"] == {"totalVouchers": 3}
        assert doc["closingBalance"] == 5.0

    def test_documents_are_stamped(self, masters, store):
        masters.load_groups([{"name": "Sundry Debtors", "guid": "grp-1"}])
        doc = store.documents(mst.GROUP)[0]
        assert doc["companyId"] == "tenant-1"
        assert doc["year"] == 2024
        assert doc["lastUpdated"] == NOW.isoformat()
        assert "lastSyncedAt" not in doc

    def test_company_records_sync_time(self, masters, store):
        masters.load_company([{"name": "Acme Traders", "guid": "cmp-1"}])
        doc = store.documents(mst.COMPANY)[0]
        assert doc["lastSyncedAt"] == NOW.isoformat()

    def test_record_without_key_is_rejected(self, masters, store, log_messages):
        result = masters.load_ledgers([{"name": "", "guid": ""}, {"name": "Cash", "guid": ""}])
        assert result.written == 1
        assert len(result.failures) == 1
        assert result.failures[0].index == 0
        assert any("without a key" in m for m in log_messages)

    def test_currency_keyed_by_symbol_without_name(self, masters, store):
        masters.load_currencies([{"name": "", "symbol": "$", "guid": ""}])
        masters.load_currencies([{"name": "", "symbol": "$", "guid": ""}])
        assert len(store.documents(mst.CURRENCY)) == 1

    def test_update_company_stats(self, masters, transactions, store):
        masters.load_company([{"name": "Acme Traders", "guid": "cmp-1"}])
        masters.load_ledgers([{"name": "A", "guid": "1"}, {"name": "B", "guid": "2"}])
        transactions.load_vouchers([{"voucherNumber": "S-1", "guid": "v-1"}])

        stats = masters.update_company_stats(VOUCHER)

        assert stats["totalLedgers"] == 2
        assert stats["totalVouchers"] == 1
        assert stats["totalGroups"] == 0
        assert store.documents(mst.COMPANY)[0]["totalLedgers"] == 2


class TestTransactionLoader:
    """Tests for voucher upserts."""

    def test_voucher_key(self):
        record = {"voucherType": "Sales", "voucherNumber": "S-1", "date": "2024-04-05"}
        assert voucher_key(record) == "Sales/S-1/2024-04-05"
        assert voucher_key({"voucherType": "Sales"}) == ""

    def test_same_number_different_types_are_distinct(self, transactions, store):
        transactions.load_vouchers([
            {"voucherType": "Sales", "voucherNumber": "1", "date": "2024-04-05", "guid": ""},
            {"voucherType": "Receipt", "voucherNumber": "1", "date": "2024-04-05", "guid": ""},
        ])
        assert len(store.documents(VOUCHER)) == 2

    def test_guidless_voucher_reload_is_idempotent(self, transactions, store):
        record = {"voucherType": "Sales", "voucherNumber": "1", "date": "2024-04-05", "guid": ""}
        transactions.load_vouchers([record])
        transactions.load_vouchers([dict(record, amount=100.0)])
        docs = store.documents(VOUCHER)
        assert len(docs) == 1
        assert docs[0]["amount"] == 100.0


class TestStoredDocument:
    """Tests for upsert key selection."""

    def test_guid_key(self):
        doc = StoredDocument("t", "Acme", {}, NOW, guid="g-1")
        assert doc.key_kind == "guid"
        assert doc.match == {"company_id": "t", "guid": "g-1"}

    def test_natural_key(self):
        doc = StoredDocument("t", "Acme", {}, NOW)
        assert doc.key_kind == "natural_key"
        assert doc.match == {"company_id": "t", "guid": "", "natural_key": "Acme"}


class TestDocumentStore:
    """Tests for DocumentStore with a mocked connection."""

    @pytest.fixture
    def cursor(self):
        return MagicMock()

    @pytest.fixture
    def pg(self, config, cursor):
        conn = MagicMock()
        conn.closed = False
        conn.cursor.return_value.__enter__.return_value = cursor
        return DocumentStore(config, conn=conn)

    def _docs(self, *guids):
        return [
            StoredDocument("tenant-1", f"name-{i}", {"name": f"name-{i}"}, NOW, guid=guid, index=i)
            for i, guid in enumerate(guids)
        ]

    def test_upsert_groups_by_key_kind(self, pg, cursor):
        result = pg.upsert_many(mst.LEDGER, self._docs("g-1", "", "g-2"))

        assert result.written == 3
        assert cursor.executemany.call_count == 2
        guid_rows = cursor.executemany.call_args_list[0].args[1]
        natural_rows = cursor.executemany.call_args_list[1].args[1]
        assert [r["guid"] for r in guid_rows] == ["g-1", "g-2"]
        assert [r["natural_key"] for r in natural_rows] == ["name-1"]
        assert guid_rows[0]["doc"].obj == {"name": "name-0"}

    def test_upsert_chunks_by_batch_size(self, pg, cursor, config):
        config.batch_size = 2
        pg.upsert_many(mst.LEDGER, self._docs("a", "b", "c", "d", "e"))
        assert cursor.executemany.call_count == 3

    def test_failed_chunk_falls_back_to_rows(self, pg, cursor, log_messages):
        cursor.executemany.side_effect = psycopg.Error("chunk failed")
        cursor.execute.side_effect = [None, psycopg.Error("bad row"), None]

        result = pg.upsert_many(mst.LEDGER, self._docs("a", "b", "c"))

        assert result.written == 2
        assert len(result.failures) == 1
        assert result.failures[0].index == 1
        assert result.failures[0].name == "name-1"
        assert any("retrying 3 rows individually" in m for m in log_messages)

    def test_find_params(self, pg, cursor):
        cursor.fetchall.return_value = [{"id": 7, "doc": {"name": "Acme"}}]

        docs = pg.find(
            mst.LEDGER, "tenant-1", filters={"parent": "Debtors"}, search="ac", skip=20, limit=10
        )

        assert docs == [{"name": "Acme", "id": 7}]
        params = cursor.execute.call_args.args[1]
        assert params[0] == "tenant-1"
        assert params[1].obj == {"parent": "Debtors"}
        assert params[2:] == ["name", "%ac%", "name", 10, 20]

    def test_find_matching_params(self, pg, cursor):
        cursor.fetchall.return_value = []
        pg.find_matching(VOUCHER, "tenant-1", [("party", "^Acme$"), ("partyLedgerName", "^Acme$")])
        params = cursor.execute.call_args.args[1]
        assert params == ["tenant-1", "party", "^Acme$", "partyLedgerName", "^Acme$"]

    def test_find_matching_without_clauses(self, pg, cursor):
        assert pg.find_matching(VOUCHER, "tenant-1", []) == []
        cursor.execute.assert_not_called()

    def test_count(self, pg, cursor):
        cursor.fetchone.return_value = {"cnt": 42}
        assert pg.count(mst.LEDGER, "tenant-1") == 42

    def test_get_missing(self, pg, cursor):
        cursor.fetchone.return_value = None
        assert pg.get(mst.LEDGER, "tenant-1", 99) is None

    def test_update_checkpoint(self, pg, cursor):
        pg.update_checkpoint("tenant-1:full_sync", row_count=5, last_sync_at=NOW)
        params = cursor.execute.call_args.args[1]
        assert params == ("tenant-1:full_sync", NOW, 5, "completed", None)

    def test_ensure_schema_creates_tables(self, pg, cursor):
        pg.ensure_schema((mst.LEDGER, VOUCHER))
        # schema + one DDL per collection + checkpoint table
        assert cursor.execute.call_count == 4
