"""
Master data normalizers.

Normalizes Tally masters into flat documents:
- Company
- Groups
- Cost Centres
- Currencies
- Ledgers
- Stock Items
"""
from __future__ import annotations
from typing import Any
from loguru import logger

from ..models import BatchResult
from .base import (
    TallyRecord,
    as_list,
    extract_entities,
    extract_text,
    normalize_batch,
)

DEFAULT_CURRENCY_SYMBOL = "₹"
DEFAULT_SORT_POSITION = 1000

# Candidate fields in priority order; first non-zero value wins.
OPENING_BALANCE_FIELDS = ("OPENINGBALANCE", "OPENING_BALANCE", "PREVOPENINGBALANCE", "OBVALUE")
CLOSING_BALANCE_FIELDS = (
    "CLOSINGBALANCE",
    "CLOSING_BALANCE",
    "PREVCLOSINGBALANCE",
    "CBVALUE",
    "BALANCE",
    "CURRENTBALANCE",
)

GROUP_TYPES = ("Assets", "Liabilities", "Income", "Expenses", "Trading", "P&L", "Balance Sheet")

_NATURE_GROUP_TYPES = {
    "asset": "Assets",
    "assets": "Assets",
    "liability": "Liabilities",
    "liabilities": "Liabilities",
    "income": "Income",
    "incomes": "Income",
    "expense": "Expenses",
    "expenses": "Expenses",
    "trading": "Trading",
    "p&l": "P&L",
    "profit & loss": "P&L",
    "balance sheet": "Balance Sheet",
}

# Tally's reserved primary groups
_PRIMARY_GROUP_TYPES = {
    "capital account": "Liabilities",
    "loans (liability)": "Liabilities",
    "current liabilities": "Liabilities",
    "suspense a/c": "Liabilities",
    "branch / divisions": "Liabilities",
    "fixed assets": "Assets",
    "investments": "Assets",
    "current assets": "Assets",
    "misc. expenses (asset)": "Assets",
    "sales accounts": "Income",
    "direct incomes": "Income",
    "indirect incomes": "Income",
    "purchase accounts": "Expenses",
    "direct expenses": "Expenses",
    "indirect expenses": "Expenses",
}


def _name_list(rec: TallyRecord) -> list[str]:
    """Names from NAME.LIST / LANGUAGENAME.LIST (first is the name, rest aliases)."""
    names = []
    for node in rec.items("NAME.LIST", "LANGUAGENAME.LIST"):
        if isinstance(node, dict) and "NAME.LIST" in node:
            node = node["NAME.LIST"]
        for entry in as_list(node):
            inner = entry.get("NAME") if isinstance(entry, dict) else entry
            names.extend(t for t in (extract_text(n) for n in as_list(inner)) if t)
    return names


def _identity(rec: TallyRecord) -> dict:
    """Fields every master carries: name, alias and Tally's identifiers."""
    names = _name_list(rec)
    name = rec.text("NAME") or (names[0] if names else "")
    if not name:
        raise ValueError("missing NAME")
    alias = rec.text("ALIAS", "ALIASNAME", "ONLYALIAS") or next(
        (n for n in names if n != name), ""
    )
    return {
        "name": name,
        "aliasName": alias,
        "reservedName": rec.text("RESERVEDNAME"),
        "guid": rec.text("GUID"),
        "masterId": rec.integer("MASTERID"),
        "alterId": rec.integer("ALTERID"),
    }


def _parent(rec: TallyRecord) -> str:
    parent = rec.text("PARENT", "PARENTNAME")
    # Top-level masters report Tally's "Primary" pseudo-parent
    return "" if parent.lower() == "primary" else parent


def _address_lines(rec: TallyRecord, *names: str) -> list[str]:
    lines = []
    for node in rec.items(*names):
        if isinstance(node, dict) and ("ADDRESS" in node or "address" in node):
            inner = node.get("ADDRESS", node.get("address"))
            lines.extend(extract_text(line) for line in as_list(inner))
        else:
            lines.append(extract_text(node))
    return [line for line in lines if line]


def _balances(rec: TallyRecord) -> dict:
    return {
        "openingBalance": rec.first_amount(OPENING_BALANCE_FIELDS),
        "closingBalance": rec.first_amount(CLOSING_BALANCE_FIELDS),
    }


def normalize_company(raw: Any) -> dict:
    """Normalize one COMPANY element. A bare string is taken as the name."""
    if isinstance(raw, str):
        raw = {"NAME": raw}
    rec = TallyRecord(raw)

    name = rec.text("NAME", "COMPANYNAME", "BASICCOMPANYFORMALNAME", "_")
    if not name:
        raise ValueError("missing company NAME")

    address_list = _address_lines(rec, "ADDRESS.LIST", "ADDRESS")
    return {
        "name": name,
        "guid": rec.text("GUID"),
        "mailingName": rec.text("MAILINGNAME", "BASICCOMPANYFORMALNAME") or name,
        "address": ", ".join(address_list),
        "addressList": address_list,
        "state": rec.text("STATENAME", "STATE"),
        "country": rec.text("COUNTRYNAME", "COUNTRY"),
        "pincode": rec.text("PINCODE"),
        "phone": rec.text("PHONENUMBER", "PHONE"),
        "email": rec.text("EMAIL"),
        "currencySymbol": rec.text("CURRENCYSYMBOL", "BASECURRENCYSYMBOL") or DEFAULT_CURRENCY_SYMBOL,
        "currencyName": rec.text("CURRENCYNAME", "BASICCURRENCYNAME"),
        "financialYearFrom": rec.date("STARTINGFROM", "FINYEARFROM", "FINANCIALYEARFROM"),
        "financialYearTo": rec.date("ENDINGAT", "FINYEARTO", "FINANCIALYEARTO"),
        "booksBeginningFrom": rec.date("BOOKSFROM", "BOOKSBEGININGFROM", "BOOKSBEGINNINGFROM"),
        "isActive": True,
    }


def derive_group_type(
    nature: str,
    primary_group: str = "",
    is_revenue: bool = False,
    affects_gross_profit: bool = False,
) -> str:
    """
    Classify a group as Assets / Liabilities / Income / Expenses / Trading /
    P&L / Balance Sheet. Returns "" when nothing identifies it.
    """
    group_type = _NATURE_GROUP_TYPES.get(nature.strip().lower())
    if group_type:
        return group_type
    group_type = _PRIMARY_GROUP_TYPES.get(primary_group.strip().lower())
    if group_type:
        return group_type
    if is_revenue:
        return "Trading" if affects_gross_profit else "P&L"
    return ""


def normalize_group(raw: Any) -> dict:
    rec = TallyRecord(raw)
    group = _identity(rec)
    parent = _parent(rec)
    primary_group = rec.text("PRIMARYGROUP", "_PRIMARYGROUP") or ("" if parent else group["name"])
    nature = rec.text("NATURE", "NATUREOFGROUP", "GROUPNATURE")
    is_revenue = rec.flag("ISREVENUE")
    affects_gross_profit = rec.flag("AFFECTSGROSSPROFIT", "AFFECTGROSSPROFIT")

    group.update({
        "parent": parent,
        "primaryGroup": primary_group,
        "nature": nature,
        "groupType": derive_group_type(nature, primary_group, is_revenue, affects_gross_profit),
        "affectsStock": rec.flag("AFFECTSSTOCK"),
        "isRevenue": is_revenue,
        "isDeemedPositive": rec.flag("ISDEEMEDPOSITIVE"),
        "isSubLedger": rec.flag("ISSUBLEDGER"),
        "affectsGrossProfit": affects_gross_profit,
        "sortPosition": rec.integer("SORTPOSITION", default=DEFAULT_SORT_POSITION),
    })
    group.update(_balances(rec))
    return group


def normalize_cost_centre(raw: Any) -> dict:
    rec = TallyRecord(raw)
    centre = _identity(rec)
    centre.update({
        "parent": _parent(rec),
        "category": rec.text("CATEGORY", "COSTCATEGORY"),
        "sortPosition": rec.integer("SORTPOSITION", default=DEFAULT_SORT_POSITION),
        "usedForAllocation": rec.flag("FORCOSTALLOCATION", "USEFORALLOCATION", "USEDFORALLOCATION"),
        "affectsStock": rec.flag("AFFECTSSTOCK"),
        "forPayroll": rec.flag("FORPAYROLL"),
        "forJobCosting": rec.flag("FORJOBCOSTING"),
    })
    centre.update(_balances(rec))
    return centre


def normalize_currency(raw: Any) -> dict:
    """
    Normalize one CURRENCY element.

    Tally names currencies by their symbol ("₹"); the expanded symbol ("INR")
    and mailing name ("Indian Rupees") are kept alongside.
    """
    rec = TallyRecord(raw)
    symbol = rec.text("ORIGINALSYMBOL", "SYMBOL", "NAME")
    name = rec.text("NAME", "ORIGINALNAME", "EXPANDEDSYMBOL") or symbol
    if not name:
        raise ValueError("missing currency NAME and symbol")

    return {
        "name": name,
        "symbol": symbol,
        "formalName": rec.text("MAILINGNAME", "FORMALNAME", "EXPANDEDSYMBOL"),
        "guid": rec.text("GUID"),
        "masterId": rec.integer("MASTERID"),
        "alterId": rec.integer("ALTERID"),
        "decimalPlaces": rec.integer("DECIMALPLACES", default=2),
        "exchangeRate": rec.amount("EXCHANGERATE", "STANDARDRATE", default=1.0) or 1.0,
        "isBaseCurrency": rec.flag("ISBASECURRENCY"),
        "hasSymbol": bool(symbol),
        "putSymbolInFront": not rec.flag("ISSUFFIX"),
        "addSpaceBetweenAmountAndSymbol": rec.flag("HASSPACE", "ISSPACEBETWEENAMOUNTANDSYMBOL"),
        "subUnit": rec.text("DECIMALSYMBOL", "SUBUNIT"),
    }


def _gst_details(rec: TallyRecord) -> dict:
    gst = {
        "registrationType": rec.text("GSTREGISTRATIONTYPE"),
        "gstin": rec.text("PARTYGSTIN", "GSTIN"),
        "placeOfSupply": rec.text("PLACEOFSUPPLY", "LEDSTATENAME", "STATENAME"),
    }
    if gst["gstin"]:
        return gst

    # Newer releases nest registrations in a list
    for entry in rec.items("LEDGSTREGDETAILS.LIST", "TAXREGISTRATION.LIST"):
        if not isinstance(entry, dict):
            continue
        reg = TallyRecord(entry)
        gstin = reg.text("GSTIN", "REGISTRATIONNUMBER", "TAXREGISTRATIONNUMBER")
        if gstin:
            gst["gstin"] = gstin
            gst["registrationType"] = gst["registrationType"] or reg.text(
                "GSTREGISTRATIONTYPE", "REGISTRATIONTYPE"
            )
            gst["placeOfSupply"] = gst["placeOfSupply"] or reg.text("PLACEOFSUPPLY", "STATE")
            break
    return gst


def _bill_wise_details(rec: TallyRecord) -> list[dict]:
    bills = []
    for entry in rec.items("BILLALLOCATIONS.LIST", "LEDGERBILLALLOCATIONS.LIST"):
        if not isinstance(entry, dict):
            continue
        bill = TallyRecord(entry)
        bill_name = bill.text("NAME", "BILLNAME")
        if not bill_name:
            continue
        bills.append({
            "billName": bill_name,
            "billDate": bill.date("BILLDATE"),
            "billAmount": bill.amount("OPENINGBALANCE", "AMOUNT", "BILLAMOUNT"),
            "billCredit": bill.integer("BILLCREDITPERIOD", "BILLCREDIT"),
            "billType": bill.text("BILLTYPE") or ("Advance" if bill.flag("ISADVANCE") else ""),
        })
    return bills


def normalize_ledger(raw: Any) -> dict:
    rec = TallyRecord(raw)
    ledger = _identity(rec)
    parent = _parent(rec)

    city = rec.text("CITY", "LEDGERCITY")
    state = rec.text("LEDSTATENAME", "STATENAME", "STATE")
    country = rec.text("COUNTRYNAME", "COUNTRY", "COUNTRYOFRESIDENCE")
    pincode = rec.text("PINCODE")
    address_list = _address_lines(rec, "ADDRESS.LIST", "LEDMAILINGDETAILS.LIST", "ADDRESS")
    for part in (city, state, country, pincode):
        if part and not any(part in line for line in address_list):
            address_list.append(part)

    gst = _gst_details(rec)
    ledger.update({
        "parent": parent,
        "description": rec.text("DESCRIPTION", "NARRATION"),
        **_balances(rec),
        "bankDetails": {
            "bankName": rec.text("BANKNAME", "BANKINGCONFIGBANK"),
            "accountHolderName": rec.text("BANKACCHOLDERNAME", "ACCOUNTHOLDERNAME"),
            "accountNumber": rec.text("BANKACCOUNTNUMBER", "ACCOUNTNUMBER", "BANKDETAILS"),
            "ifscCode": rec.text("IFSCODE", "IFSCCODE"),
            "swiftCode": rec.text("SWIFTCODE"),
            "branchName": rec.text("BRANCHNAME", "BANKBRANCHNAME"),
            "accountType": rec.text("BANKACCOUNTTYPE", "ACCOUNTTYPE"),
        },
        "contact": {
            "contactPerson": rec.text("LEDGERCONTACT", "CONTACTPERSON"),
            "email": rec.text("EMAIL", "LEDGEREMAIL"),
            "emailCC": rec.text("EMAILCC"),
            "phone": rec.text("LEDGERPHONE", "PHONENUMBER", "PHONE"),
            "mobile": rec.text("LEDGERMOBILE", "MOBILENUMBER", "MOBILE"),
            "fax": rec.text("LEDGERFAX", "FAXNUMBER", "FAX"),
            "website": rec.text("WEBSITE"),
        },
        "addressList": address_list,
        "city": city,
        "state": state,
        "country": country,
        "pincode": pincode,
        "gstDetails": gst,
        "gstin": gst["gstin"],
        "taxInfo": {
            "incomeTaxNumber": rec.text("INCOMETAXNUMBER", "PAN"),
            "vatTinNumber": rec.text("VATTINNUMBER"),
            "salesTaxNumber": rec.text("SALESTAXNUMBER", "INTERSTATESTNUMBER"),
        },
        "creditLimit": rec.amount("CREDITLIMIT"),
        "creditPeriod": rec.integer("BILLCREDITPERIOD", "CREDITPERIOD"),
        "interestRate": rec.amount("INTERESTRATE", "RATEOFINTEREST"),
        "isBillWiseOn": rec.flag("ISBILLWISEON"),
        "isCostCentresOn": rec.flag("ISCOSTCENTRESON"),
        "isInterestOn": rec.flag("ISINTERESTON"),
        "isGstApplicable": rec.flag("ISGSTAPPLICABLE") or bool(gst["gstin"]),
        "isTdsApplicable": rec.flag("ISTDSAPPLICABLE"),
        "isTcsApplicable": rec.flag("ISTCSAPPLICABLE"),
        "billWiseDetails": _bill_wise_details(rec),
        "isGroup": rec.flag("ISGROUP", default=not parent),
    })
    return ledger


def _godown_details(rec: TallyRecord) -> list[dict]:
    details = []
    for entry in rec.items("BATCHALLOCATIONS.LIST", "GODOWNDETAILS.LIST"):
        if not isinstance(entry, dict):
            continue
        batch = TallyRecord(entry)
        details.append({
            "godownName": batch.text("GODOWNNAME", "NAME"),
            "batchName": batch.text("BATCHNAME"),
            "quantity": batch.amount("OPENINGBALANCE", "ACTUALQTY", "BILLEDQTY"),
            "rate": batch.amount("OPENINGRATE", "RATE"),
            "value": batch.amount("OPENINGVALUE", "AMOUNT"),
        })
    return details


def _rate(value: float, quantity: float) -> float:
    return round(abs(value / quantity), 2) if quantity else 0.0


def normalize_stock_item(raw: Any) -> dict:
    rec = TallyRecord(raw)
    item = _identity(rec)

    opening_qty = rec.amount("OPENINGBALANCEQTY", "OPENINGQTY", "OPENINGBALANCE")
    opening_value = rec.amount("OPENINGVALUE", "OPENINGBALANCEVALUE")
    closing_qty = rec.amount("CLOSINGBALANCEQTY", "CLOSINGQTY", "CLOSINGBALANCE")
    closing_value = rec.amount("CLOSINGVALUE", "CLOSINGBALANCEVALUE")

    item.update({
        "description": rec.text("DESCRIPTION", "NARRATION"),
        "stockItemCode": rec.text("PARTNO", "STOCKITEMCODE", "ITEMCODE"),
        "parent": _parent(rec),
        "category": rec.text("CATEGORY", "STOCKCATEGORY"),
        "stockGroup": rec.text("STOCKGROUP", "PARENT"),
        "baseUnits": rec.text("BASEUNITS", "BASEUNIT"),
        "additionalUnits": rec.text("ADDITIONALUNITS"),
        "openingQty": opening_qty,
        "openingValue": opening_value,
        "openingRate": rec.amount("OPENINGRATE") or _rate(opening_value, opening_qty),
        "closingQty": closing_qty,
        "closingValue": closing_value,
        "closingRate": rec.amount("CLOSINGRATE") or _rate(closing_value, closing_qty),
        "gstApplicable": rec.text("GSTAPPLICABLE"),
        "hsnCode": rec.text("HSNCODE", "GSTHSNCODE"),
        "costingMethod": rec.text("COSTINGMETHOD"),
        "valuationMethod": rec.text("VALUATIONMETHOD"),
        "reorderLevel": rec.amount("REORDERBASE", "REORDERLEVEL"),
        "minimumLevel": rec.amount("MINIMUMORDERBASE", "MINIMUMLEVEL"),
        "maximumLevel": rec.amount("MAXIMUMLEVEL", "MAXIMUMSTOCKLEVEL"),
        "godownDetails": _godown_details(rec),
    })
    return item


def stock_status(item: dict) -> str:
    """
    Stock level label derived at read time from the closing quantity and the
    item's reorder / minimum / maximum levels.
    """
    qty = item.get("closingQty") or 0
    maximum = item.get("maximumLevel") or 0
    if maximum > 0 and qty > maximum:
        return "Overstock"
    if qty > (item.get("reorderLevel") or 0):
        return "In Stock"
    if qty > (item.get("minimumLevel") or 0):
        return "Low Stock"
    if qty > 0:
        return "Critical Stock"
    return "Out of Stock"


def _parse(tree: dict, tag: str, normalizer, entity: str) -> BatchResult:
    result = normalize_batch(extract_entities(tree, tag), normalizer, entity)
    logger.debug(f"Parsed {len(result.records)} {entity}")
    return result


def parse_companies(tree: dict) -> BatchResult:
    return _parse(tree, "COMPANY", normalize_company, "company")


def parse_groups(tree: dict) -> BatchResult:
    return _parse(tree, "GROUP", normalize_group, "groups")


def parse_cost_centres(tree: dict) -> BatchResult:
    return _parse(tree, "COSTCENTRE", normalize_cost_centre, "cost_centres")


def parse_currencies(tree: dict) -> BatchResult:
    return _parse(tree, "CURRENCY", normalize_currency, "currencies")


def parse_ledgers(tree: dict) -> BatchResult:
    return _parse(tree, "LEDGER", normalize_ledger, "ledgers")


def parse_stock_items(tree: dict) -> BatchResult:
    return _parse(tree, "STOCKITEM", normalize_stock_item, "stock_items")
