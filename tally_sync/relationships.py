"""
Ledger to voucher relationship builder.

After vouchers are synced, every ledger gets a summary of the vouchers
whose party is that ledger: count, plain sum of amounts, latest voucher
and the distinct voucher types. Party names are matched case-insensitively,
either as the whole party name ("exact") or anywhere inside it ("contains").
A voucher may count towards several ledgers.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Optional
from loguru import logger

from .loaders.masters import LEDGER
from .loaders.transactions import VOUCHER
from .models import utcnow

# Ledger name is matched against both party fields, the alias against party only
NAME_FIELDS = ("party", "partyLedgerName")
ALIAS_FIELDS = ("party",)


def ledger_pattern(value: str, match_mode: str = "exact") -> Optional[str]:
    """Regex for a ledger name with every metacharacter escaped."""
    value = (value or "").strip()
    if not value:
        return None
    escaped = re.escape(value)
    if match_mode == "contains":
        return escaped
    return rf"^\s*{escaped}\s*$"


def match_clauses(ledger: dict, match_mode: str = "exact") -> list[tuple[str, str]]:
    clauses = []
    name_pattern = ledger_pattern(ledger.get("name", ""), match_mode)
    if name_pattern:
        clauses.extend((field_name, name_pattern) for field_name in NAME_FIELDS)
    alias_pattern = ledger_pattern(ledger.get("aliasName", ""), match_mode)
    if alias_pattern:
        clauses.extend((field_name, alias_pattern) for field_name in ALIAS_FIELDS)
    return clauses


def _sort_key(voucher: dict) -> tuple:
    return (voucher.get("date") or "", voucher.get("voucherNumber") or "")


def summarize_vouchers(vouchers: list[dict]) -> dict:
    """Aggregate a ledger's vouchers into its voucherSummary."""
    latest = max(vouchers, key=_sort_key, default=None)
    return {
        "totalVouchers": len(vouchers),
        "totalAmount": round(sum(v.get("amount") or 0 for v in vouchers), 2),
        "latestVoucher": {
            "date": latest.get("date"),
            "voucherNumber": latest.get("voucherNumber"),
            "voucherType": latest.get("voucherType"),
            "party": latest.get("party"),
            "amount": latest.get("amount"),
        } if latest else None,
        "voucherTypes": sorted({v["voucherType"] for v in vouchers if v.get("voucherType")}),
    }


@dataclass
class RelationshipResult:
    ledgers: int = 0
    linked: int = 0
    errors: list[str] = field(default_factory=list)


class RelationshipBuilder:
    """Attaches voucher summaries to the ledgers of one tenant."""

    def __init__(self, store, company_id: str, match_mode: str = "exact", clock=utcnow):
        self.store = store
        self.company_id = company_id
        self.match_mode = match_mode
        self.clock = clock

    def related_vouchers(self, ledger: dict, limit: Optional[int] = None) -> list[dict]:
        """Vouchers whose party matches the ledger, most recent first."""
        clauses = match_clauses(ledger, self.match_mode)
        vouchers = self.store.find_matching(VOUCHER, self.company_id, clauses)
        vouchers.sort(key=_sort_key, reverse=True)
        return vouchers[:limit] if limit else vouchers

    def build(self) -> RelationshipResult:
        """Recompute and write the voucher summary of every ledger."""
        result = RelationshipResult()
        synced_at = self.clock().isoformat()

        for ledger in self.store.find(LEDGER, self.company_id):
            try:
                vouchers = self.related_vouchers(ledger)
                self.store.update_document(
                    LEDGER,
                    ledger["id"],
                    {
                        "voucherSummary": summarize_vouchers(vouchers),
                        "hasRelatedVouchers": bool(vouchers),
                        "lastVoucherSync": synced_at,
                    },
                )
            except Exception as e:
                logger.warning(f"Could not link vouchers to ledger {ledger.get('name')!r}: {e}")
                result.errors.append(f"{ledger.get('name')}: {e}")
                continue
            result.ledgers += 1
            if vouchers:
                result.linked += 1

        logger.info(
            f"Linked vouchers to {result.linked} of {result.ledgers} ledgers"
            + (f" ({len(result.errors)} failed)" if result.errors else "")
        )
        return result
