"""
Transaction loaders.

Vouchers are stored whole (entries nested) in trn_voucher. Tally voucher
numbers repeat across voucher types and years, so the fallback key combines
type, number and date.
"""
from __future__ import annotations
from loguru import logger

from ..models import WriteResult
from .base import DocumentLoader

VOUCHER = "trn_voucher"


def voucher_key(record: dict) -> str:
    number = record.get("voucherNumber") or ""
    if not number:
        return ""
    return f"{record.get('voucherType') or ''}/{number}/{record.get('date') or ''}"


class TransactionLoader(DocumentLoader):
    """Loader for transaction collections."""

    def load_vouchers(self, rows: list[dict]) -> WriteResult:
        result = self.load_documents(VOUCHER, rows, voucher_key)
        logger.info(f"Loaded {result.written} vouchers")
        return result
