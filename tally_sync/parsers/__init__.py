"""
Normalizers for Tally collection responses.

Each entity type has a pure `normalize_*` function (one raw element to one
document) and a `parse_*` function (a whole response tree to a BatchResult).
"""
from .base import (
    TallyRecord,
    as_list,
    extract_entities,
    extract_text,
    find_collection,
    normalize_batch,
    parse_amount,
    parse_bool,
    parse_tally_date,
    parse_xml,
    sanitize_xml,
)
from .masters import (
    parse_companies,
    parse_cost_centres,
    parse_currencies,
    parse_groups,
    parse_ledgers,
    parse_stock_items,
    stock_status,
)
from .transactions import parse_vouchers

__all__ = [
    "TallyRecord",
    "as_list",
    "extract_entities",
    "extract_text",
    "find_collection",
    "normalize_batch",
    "parse_amount",
    "parse_bool",
    "parse_tally_date",
    "parse_xml",
    "sanitize_xml",
    "parse_companies",
    "parse_cost_centres",
    "parse_currencies",
    "parse_groups",
    "parse_ledgers",
    "parse_stock_items",
    "parse_vouchers",
    "stock_status",
]
