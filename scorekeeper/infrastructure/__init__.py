"""
Infrastructure Module

Adapters at the edges of the cache layer:
- RemoteApiClient: httpx client for the scoring backend
- StorageHub / StorageArea: browser-style key-value storage with change
  notifications between tabs
- RedisStorageBridge: carries storage changes between processes over Redis
- Exception hierarchy shared by all layers
"""

from .api_client import RemoteApiClient
from .exceptions import (
    CacheLayerException,
    RemoteCallError,
    NetworkFailure,
    ValidationFailure,
    InvariantViolation,
    StorageException,
    extract_error_message,
)

__all__ = [
    "RemoteApiClient",
    "CacheLayerException",
    "RemoteCallError",
    "NetworkFailure",
    "ValidationFailure",
    "InvariantViolation",
    "StorageException",
    "extract_error_message",
]
