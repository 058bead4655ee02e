"""
Document store and entity loaders.
"""
from .base import DocumentLoader, DocumentStore, StoredDocument
from .masters import MASTER_COLLECTIONS, MasterLoader
from .transactions import VOUCHER, TransactionLoader

ALL_COLLECTIONS = MASTER_COLLECTIONS + (VOUCHER,)

__all__ = [
    "ALL_COLLECTIONS",
    "DocumentLoader",
    "DocumentStore",
    "MASTER_COLLECTIONS",
    "MasterLoader",
    "StoredDocument",
    "TransactionLoader",
    "VOUCHER",
]
