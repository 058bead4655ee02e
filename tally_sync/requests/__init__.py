"""
XML request documents for the Tally API.

Each entity type is a declarative CollectionRequest (the Tally object type
plus the native methods to fetch). All of them render through a single
Jinja2 template into an ENVELOPE export request.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Iterable, Optional
from jinja2 import Environment, FileSystemLoader

# Template directory
TEMPLATE_DIR = Path(__file__).parent
TEMPLATE_NAME = "collection.xml.j2"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=True,
    keep_trailing_newline=True,
)


@dataclass(frozen=True)
class CollectionRequest:
    collection_name: str
    tally_type: str
    fields: tuple[str, ...]
    date_filtered: bool = False


_MASTER_IDS = ("Name", "Guid", "MasterId", "AlterId", "ReservedName")

COLLECTION_REQUESTS = {
    "company": CollectionRequest(
        "TallySyncCompany",
        "Company",
        (
            "Name", "Guid", "MailingName", "Address", "StateName", "CountryName",
            "PinCode", "PhoneNumber", "Email", "CurrencySymbol", "CurrencyName",
            "StartingFrom", "EndingAt", "BooksFrom",
        ),
    ),
    "groups": CollectionRequest(
        "TallySyncGroups",
        "Group",
        _MASTER_IDS + (
            "Parent", "PrimaryGroup", "Nature", "IsRevenue", "AffectsStock",
            "IsDeemedPositive", "IsSubLedger", "AffectsGrossProfit", "SortPosition",
            "OpeningBalance", "ClosingBalance",
        ),
    ),
    "cost_centres": CollectionRequest(
        "TallySyncCostCentres",
        "CostCentre",
        _MASTER_IDS + (
            "Parent", "Category", "SortPosition", "ForCostAllocation", "AffectsStock",
            "ForPayroll", "ForJobCosting", "OpeningBalance", "ClosingBalance",
        ),
    ),
    "currencies": CollectionRequest(
        "TallySyncCurrencies",
        "Currency",
        (
            "Name", "Guid", "MasterId", "AlterId", "OriginalSymbol", "ExpandedSymbol",
            "MailingName", "DecimalPlaces", "DecimalSymbol", "IsSuffix", "HasSpace",
            "IsBaseCurrency", "StandardRate",
        ),
    ),
    "ledgers": CollectionRequest(
        "TallySyncLedgers",
        "Ledger",
        _MASTER_IDS + (
            "Parent", "Description", "OpeningBalance", "ClosingBalance",
            "Address", "LedStateName", "CountryName", "PinCode", "LedgerContact",
            "Email", "EmailCC", "LedgerPhone", "LedgerMobile", "LedgerFax", "Website",
            "PartyGSTIN", "GSTRegistrationType", "IncomeTaxNumber", "VATTINNumber",
            "SalesTaxNumber", "BankName", "BankAccHolderName", "BankAccountNumber",
            "IFSCode", "SwiftCode", "BranchName", "CreditLimit", "BillCreditPeriod",
            "IsBillWiseOn", "IsCostCentresOn", "IsInterestOn", "IsGSTApplicable",
            "IsTDSApplicable", "IsTCSApplicable", "BillAllocations",
        ),
    ),
    "stock_items": CollectionRequest(
        "TallySyncStockItems",
        "StockItem",
        _MASTER_IDS + (
            "Parent", "Category", "Description", "PartNo", "BaseUnits", "AdditionalUnits",
            "OpeningBalance", "OpeningValue", "OpeningRate", "ClosingBalance",
            "ClosingValue", "ClosingRate", "GSTApplicable", "HSNCode", "CostingMethod",
            "ValuationMethod", "ReorderBase", "MinimumOrderBase", "BatchAllocations",
        ),
    ),
    "vouchers": CollectionRequest(
        "TallySyncVouchers",
        "Voucher",
        (
            "Date", "Guid", "MasterId", "AlterId", "VoucherNumber", "VoucherTypeName",
            "VoucherKey", "PartyName", "PartyLedgerName", "PartyGSTIN", "Amount",
            "Narration", "Reference", "ReferenceDate", "PlaceOfSupply", "IsInvoice",
            "IsCancelled", "IsOptional", "IsPostDated", "AllLedgerEntries",
            "AllInventoryEntries",
        ),
        date_filtered=True,
    ),
}


def get_request(name: str) -> CollectionRequest:
    if name not in COLLECTION_REQUESTS:
        raise ValueError(f"Unknown request: {name}. Valid: {list(COLLECTION_REQUESTS.keys())}")
    return COLLECTION_REQUESTS[name]


def voucher_type_formula(voucher_types: Iterable[str]) -> str:
    """TDL predicate selecting the given voucher types."""
    return " OR ".join(f'$VoucherTypeName = "{vt}"' for vt in voucher_types)


def render_request(
    name: str,
    company: str = "",
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    voucher_types: Optional[Iterable[str]] = None,
) -> str:
    """Render the export request for one entity type."""
    request = get_request(name)
    context = {
        "collection_name": request.collection_name,
        "tally_type": request.tally_type,
        "fields": request.fields,
        "company": company,
        "from_date": None,
        "to_date": None,
        "voucher_type_filter": voucher_type_formula(voucher_types) if voucher_types else "",
    }
    if request.date_filtered:
        if from_date:
            context["from_date"] = from_date.strftime("%Y%m%d")
        if to_date:
            context["to_date"] = to_date.strftime("%Y%m%d")
    return _env.get_template(TEMPLATE_NAME).render(**context)
