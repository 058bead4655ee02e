"""
Tally Sync - pulls masters and vouchers from Tally into a document store.

Fetches data over Tally's XML-over-HTTP export interface, normalizes the
inconsistently shaped XML into flat documents and upserts them per tenant.
A scheduler runs the full sync daily and serves manual triggers; after
voucher syncs every ledger gets a summary of its vouchers.

Usage:
    # Full sync of all masters
    python -m tally_sync full

    # Masters plus the last 7 days of vouchers
    python -m tally_sync partial --days 7

    # Vouchers in a date range
    python -m tally_sync vouchers --from-date 2024-04-01 --to-date 2024-04-30

    # API server with the daily scheduler
    python -m tally_sync serve
"""

__version__ = "1.0.0"

from .config import TallySyncConfig
from .sync import TallySync, run_sync

__all__ = ["TallySyncConfig", "TallySync", "run_sync", "__version__"]
