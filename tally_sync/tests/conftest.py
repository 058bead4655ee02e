"""
Shared pytest fixtures.

MemoryDocumentStore mirrors DocumentStore's semantics (GUID / natural-key
upserts, shallow merge, containment filters, regex matching) so sync,
relationship and API tests run without PostgreSQL. FakeTallyClient serves
canned XML per entity without a Tally server.
"""
import copy
import itertools
import re
from collections import defaultdict
from datetime import datetime, timezone

import pytest
from loguru import logger

from tally_sync.config import TallySyncConfig
from tally_sync.models import WriteResult
from tally_sync.parsers.base import parse_xml
from tally_sync.sync import TallySync


EMPTY_RESPONSE = "<ENVELOPE><BODY><DATA><COLLECTION/></DATA></BODY></ENVELOPE>"


def envelope(body: str) -> str:
    return f"<ENVELOPE><BODY><DATA><COLLECTION>{body}</COLLECTION></DATA></BODY></ENVELOPE>"


COMPANY_XML = envelope("""
    <COMPANY NAME="Acme Traders">
        <GUID>cmp-1</GUID>
        <ADDRESS.LIST TYPE="String">
            <ADDRESS>12 Market Road</ADDRESS>
            <ADDRESS>Pune</ADDRESS>
        </ADDRESS.LIST>
        <STATENAME>Maharashtra</STATENAME>
        <STARTINGFROM>20240401</STARTINGFROM>
        <ENDINGAT>20250331</ENDINGAT>
    </COMPANY>
""")

GROUPS_XML = envelope("""
    <GROUP NAME="Sundry Debtors">
        <GUID>grp-1</GUID>
        <PARENT>Current Assets</PARENT>
        <NATURE>Assets</NATURE>
    </GROUP>
    <GROUP NAME="Sales Accounts">
        <GUID>grp-2</GUID>
        <PARENT>&#4; Primary</PARENT>
        <ISREVENUE>Yes</ISREVENUE>
    </GROUP>
""")

COST_CENTRES_XML = envelope("""
    <COSTCENTRE NAME="Head Office">
        <GUID>cc-1</GUID>
        <CATEGORY>Primary Cost Category</CATEGORY>
    </COSTCENTRE>
""")

CURRENCIES_XML = envelope("""
    <CURRENCY NAME="₹">
        <GUID>cur-1</GUID>
        <EXPANDEDSYMBOL>INR</EXPANDEDSYMBOL>
        <MAILINGNAME>Indian Rupees</MAILINGNAME>
        <DECIMALPLACES>2</DECIMALPLACES>
    </CURRENCY>
""")

LEDGERS_XML = envelope("""
    <LEDGER NAME="Acme">
        <GUID>led-1</GUID>
        <PARENT>Sundry Debtors</PARENT>
        <OPENINGBALANCE>1,000.00 Dr</OPENINGBALANCE>
        <CLOSINGBALANCE>5,000.00 Dr</CLOSINGBALANCE>
        <PARTYGSTIN>27AAACA1234A1Z5</PARTYGSTIN>
    </LEDGER>
    <LEDGER NAME="Beta">
        <GUID>led-2</GUID>
        <PARENT>Sundry Debtors</PARENT>
        <CLOSINGBALANCE>2500 Cr</CLOSINGBALANCE>
    </LEDGER>
""")

STOCK_ITEMS_XML = envelope("""
    <STOCKITEM NAME="Widget">
        <GUID>stk-1</GUID>
        <PARENT>Finished Goods</PARENT>
        <BASEUNITS>Nos</BASEUNITS>
        <CLOSINGBALANCE>10 Nos</CLOSINGBALANCE>
        <CLOSINGVALUE>1,000.00</CLOSINGVALUE>
    </STOCKITEM>
""")

VOUCHERS_XML = envelope("""
    <VOUCHER VCHTYPE="Sales">
        <GUID>vch-1</GUID>
        <DATE>20240405</DATE>
        <VOUCHERNUMBER>S-1</VOUCHERNUMBER>
        <VOUCHERTYPENAME>Sales</VOUCHERTYPENAME>
        <PARTYLEDGERNAME>ACME</PARTYLEDGERNAME>
        <AMOUNT>1000</AMOUNT>
    </VOUCHER>
    <VOUCHER VCHTYPE="Sales">
        <GUID>vch-2</GUID>
        <DATE>20240406</DATE>
        <VOUCHERNUMBER>S-2</VOUCHERNUMBER>
        <VOUCHERTYPENAME>Sales</VOUCHERTYPENAME>
        <PARTYLEDGERNAME>acme ltd</PARTYLEDGERNAME>
        <AMOUNT>500</AMOUNT>
    </VOUCHER>
    <VOUCHER VCHTYPE="Receipt">
        <GUID>vch-3</GUID>
        <DATE>20240407</DATE>
        <VOUCHERNUMBER>R-1</VOUCHERNUMBER>
        <VOUCHERTYPENAME>Receipt</VOUCHERTYPENAME>
        <PARTYLEDGERNAME>Beta</PARTYLEDGERNAME>
        <AMOUNT>250</AMOUNT>
    </VOUCHER>
""")

TALLY_RESPONSES = {
    "company": COMPANY_XML,
    "groups": GROUPS_XML,
    "cost_centres": COST_CENTRES_XML,
    "currencies": CURRENCIES_XML,
    "ledgers": LEDGERS_XML,
    "stock_items": STOCK_ITEMS_XML,
    "vouchers": VOUCHERS_XML,
}


class MemoryDocumentStore:
    """In-memory stand-in for DocumentStore."""

    def __init__(self):
        self.collections = defaultdict(list)
        self.checkpoints = {}
        self.schema = None
        self.closed = False
        self._ids = itertools.count(1)

    def ensure_schema(self, collections):
        self.schema = tuple(collections)

    def _rows(self, collection, company_id):
        return [r for r in self.collections[collection] if r["company_id"] == company_id]

    def upsert_many(self, collection, documents):
        result = WriteResult()
        for document in documents:
            rows = self.collections[collection]
            row = next(
                (r for r in rows if all(r[k] == v for k, v in document.match.items())),
                None,
            )
            if row is None:
                rows.append({
                    "id": next(self._ids),
                    "company_id": document.company_id,
                    "guid": document.guid,
                    "natural_key": document.natural_key,
                    "year": document.year,
                    "doc": copy.deepcopy(document.doc),
                    "last_updated": document.last_updated,
                })
            else:
                row["doc"] = {**row["doc"], **copy.deepcopy(document.doc)}
                row["natural_key"] = document.natural_key
                row["year"] = document.year
                row["last_updated"] = document.last_updated
            result.written += 1
        return result

    @staticmethod
    def _matches(doc, filters, search, search_fields):
        if filters and any(doc.get(k) != v for k, v in filters.items()):
            return False
        if search:
            needle = search.lower()
            return any(needle in str(doc.get(f) or "").lower() for f in search_fields)
        return True

    @staticmethod
    def _out(row):
        return {**copy.deepcopy(row["doc"]), "id": row["id"]}

    def find(self, collection, company_id, filters=None, search=None, search_fields=("name",),
             sort_field="name", descending=False, skip=0, limit=None):
        rows = [
            r for r in self._rows(collection, company_id)
            if self._matches(r["doc"], filters, search, search_fields)
        ]
        rows.sort(key=lambda r: (str(r["doc"].get(sort_field) or ""), r["id"]), reverse=descending)
        rows = rows[skip:]
        if limit is not None:
            rows = rows[:limit]
        return [self._out(r) for r in rows]

    def count(self, collection, company_id, filters=None, search=None, search_fields=("name",)):
        return len(self.find(collection, company_id, filters, search, search_fields))

    def get(self, collection, company_id, doc_id):
        for row in self._rows(collection, company_id):
            if row["id"] == doc_id:
                return self._out(row)
        return None

    def find_matching(self, collection, company_id, clauses):
        out = []
        for row in self._rows(collection, company_id):
            if any(
                re.search(pattern, str(row["doc"].get(field) or ""), re.IGNORECASE)
                for field, pattern in clauses
            ):
                out.append(self._out(row))
        return out

    def update_document(self, collection, doc_id, fields):
        for row in self.collections[collection]:
            if row["id"] == doc_id:
                row["doc"].update(copy.deepcopy(fields))

    def update_many(self, collection, company_id, fields):
        rows = self._rows(collection, company_id)
        for row in rows:
            row["doc"].update(copy.deepcopy(fields))
        return len(rows)

    def get_checkpoint(self, entity_name):
        return self.checkpoints.get(entity_name)

    def update_checkpoint(self, entity_name, row_count=0, status="completed",
                          error_message=None, last_sync_at=None):
        self.checkpoints[entity_name] = {
            "entity_name": entity_name,
            "last_sync_at": last_sync_at or datetime.now(timezone.utc),
            "row_count": row_count,
            "status": status,
            "error_message": error_message,
        }

    def documents(self, collection):
        """All stored documents of a collection, without ids."""
        return [copy.deepcopy(r["doc"]) for r in self.collections[collection]]

    def close(self):
        self.closed = True


class FakeTallyClient:
    """Serves canned XML per entity; raises configured errors."""

    def __init__(self, responses=None, errors=None):
        self.responses = dict(TALLY_RESPONSES if responses is None else responses)
        self.errors = errors or {}
        self.calls = []
        self.voucher_types = {}

    def fetch(self, entity, from_date=None, to_date=None, voucher_types=None):
        self.calls.append((entity, from_date, to_date))
        self.voucher_types[entity] = voucher_types
        if entity in self.errors:
            raise self.errors[entity]
        return parse_xml(self.responses.get(entity, EMPTY_RESPONSE))

    def test_connection(self):
        return {"status": "connected"}

    def close(self):
        pass


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 4, 10, 6, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def config():
    return TallySyncConfig(
        tally_url="http://tally.test:9000",
        tally_company="Acme Traders",
        tenant_id="tenant-1",
        db_url="postgresql://unused",
        batch_size=1000,
        request_timeout=300,
        retry_attempts=1,
        voucher_window_days=7,
        sync_time="00:00",
        sync_timezone="Asia/Kolkata",
        scheduler_enabled=False,
        catch_up_missed_run=False,
        history_size=5,
        match_mode="exact",
        log_file=None,
    )


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def tally():
    return FakeTallyClient()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def sync(config, tally, store, clock):
    return TallySync(config, client=tally, store=store, clock=clock)


@pytest.fixture
def log_messages():
    """Capture loguru messages at WARNING and above."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)
