"""REST surface: sync triggers, sync status and read views."""
from .app import create_app

__all__ = ["create_app"]
