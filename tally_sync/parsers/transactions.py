"""
Transaction normalizers.

Normalizes Tally vouchers with their nested entries:
- Ledger (accounting) entries with bill allocations
- Inventory entries
- Cost centre allocations
"""
from __future__ import annotations
from typing import Any
from loguru import logger

from ..models import BatchResult
from .base import TallyRecord, as_list, extract_entities, normalize_batch


def _entry_lists(rec: TallyRecord, *names: str) -> list[TallyRecord]:
    """Concatenate every present list (invoices and accounting vouchers differ)."""
    entries = []
    for name in names:
        entries.extend(TallyRecord(e) for e in as_list(rec.get(name)) if isinstance(e, dict))
    return entries


def _cost_centre_allocations(entry: TallyRecord, ledger_name: str) -> list[dict]:
    allocations = []
    for category in _entry_lists(entry, "CATEGORYALLOCATIONS.LIST"):
        category_name = category.text("CATEGORY")
        for centre in _entry_lists(category, "COSTCENTREALLOCATIONS.LIST"):
            allocations.append({
                "costCentre": centre.text("NAME", "COSTCENTRENAME"),
                "amount": centre.amount("AMOUNT"),
                "category": category_name,
                "ledgerName": ledger_name,
            })
    for centre in _entry_lists(entry, "COSTCENTREALLOCATIONS.LIST"):
        allocations.append({
            "costCentre": centre.text("NAME", "COSTCENTRENAME"),
            "amount": centre.amount("AMOUNT"),
            "category": centre.text("CATEGORY"),
            "ledgerName": ledger_name,
        })
    return allocations


def _ledger_entry(entry: TallyRecord, party: str) -> dict:
    ledger_name = entry.text("LEDGERNAME")
    amount = entry.amount("AMOUNT")
    # Tally marks debits as deemed positive and exports them with a negative sign
    if entry.get("ISDEEMEDPOSITIVE") is not None:
        is_debit = entry.flag("ISDEEMEDPOSITIVE")
    else:
        is_debit = amount < 0
    return {
        "ledgerName": ledger_name,
        "amount": amount,
        "isDebit": is_debit,
        "isPartyLedger": entry.flag("ISPARTYLEDGER") or (bool(party) and ledger_name == party),
        "billAllocations": [
            {
                "billName": bill.text("NAME", "BILLNAME"),
                "billType": bill.text("BILLTYPE"),
                "billAmount": bill.amount("AMOUNT"),
            }
            for bill in _entry_lists(entry, "BILLALLOCATIONS.LIST")
        ],
    }


def _inventory_entry(entry: TallyRecord) -> dict:
    batches = _entry_lists(entry, "BATCHALLOCATIONS.LIST")
    return {
        "stockItemName": entry.text("STOCKITEMNAME"),
        "actualQuantity": entry.amount("ACTUALQTY"),
        "billedQuantity": entry.amount("BILLEDQTY"),
        "rate": entry.amount("RATE"),
        "amount": entry.amount("AMOUNT"),
        "discount": entry.amount("DISCOUNT"),
        "godownName": entry.text("GODOWNNAME") or (batches[0].text("GODOWNNAME") if batches else ""),
    }


def _voucher_amount(rec: TallyRecord, ledger_entries: list[dict]) -> float:
    """Header amount, else the party entry, else the total of one side."""
    amount = rec.amount("AMOUNT", "TOTALAMOUNT", "VOUCHERAMOUNT")
    if amount:
        return amount
    for entry in ledger_entries:
        if entry["isPartyLedger"]:
            return entry["amount"]
    return round(sum(e["amount"] for e in ledger_entries if e["amount"] > 0), 2)


def normalize_voucher(raw: Any) -> dict:
    rec = TallyRecord(raw)

    voucher_number = rec.text("VOUCHERNUMBER", "VCHNUMBER")
    guid = rec.text("GUID")
    if not voucher_number and not guid:
        raise ValueError("missing VOUCHERNUMBER and GUID")

    party = rec.text("PARTYNAME", "PARTYLEDGERNAME", "PARTY")
    party_ledger = rec.text("PARTYLEDGERNAME") or party

    ledger_entries = []
    cost_centres = []
    for entry in _entry_lists(rec, "ALLLEDGERENTRIES.LIST", "LEDGERENTRIES.LIST"):
        normalized = _ledger_entry(entry, party_ledger)
        ledger_entries.append(normalized)
        cost_centres.extend(_cost_centre_allocations(entry, normalized["ledgerName"]))

    inventory_entries = [
        _inventory_entry(entry)
        for entry in _entry_lists(rec, "ALLINVENTORYENTRIES.LIST", "INVENTORYENTRIES.LIST")
    ]

    return {
        "date": rec.date("DATE", "VOUCHERDATE", "EFFECTIVEDATE"),
        "voucherNumber": voucher_number,
        "voucherType": rec.text("VOUCHERTYPENAME", "VCHTYPE", "VOUCHERTYPE"),
        "party": party,
        "partyLedgerName": party_ledger,
        "partyGstin": rec.text("PARTYGSTIN"),
        "amount": _voucher_amount(rec, ledger_entries),
        "narration": rec.text("NARRATION", "REMARKS"),
        "reference": rec.text("REFERENCE"),
        "referenceDate": rec.date("REFERENCEDATE"),
        "guid": guid,
        "masterId": rec.integer("MASTERID"),
        "alterId": rec.integer("ALTERID"),
        "voucherKey": rec.text("VOUCHERKEY"),
        "placeOfSupply": rec.text("PLACEOFSUPPLY"),
        "isInvoice": rec.flag("ISINVOICE"),
        "isCancelled": rec.flag("ISCANCELLED"),
        "isOptional": rec.flag("ISOPTIONAL"),
        "isPostDated": rec.flag("ISPOSTDATED"),
        "ledgerEntries": ledger_entries,
        "inventoryEntries": inventory_entries,
        "costCentreAllocations": cost_centres,
    }


def parse_vouchers(tree: dict) -> BatchResult:
    """Normalize all VOUCHER elements of a collection response."""
    result = normalize_batch(extract_entities(tree, "VOUCHER"), normalize_voucher, "vouchers")
    logger.debug(f"Parsed {len(result.records)} vouchers")
    return result
