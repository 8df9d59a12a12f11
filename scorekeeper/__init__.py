"""
Scorekeeper Cache

Client-side data consistency layer for the tournament judging client:
per-relationship entity caches, optimistic mutations with rollback,
domain change events with rule-based invalidation, and cross-tab
replication of persisted cache snapshots.
"""

from .constants import APP_NAME, APP_VERSION

__version__ = APP_VERSION

__all__ = ["APP_NAME", "APP_VERSION", "__version__"]
