"""
Main pytest configuration for the cache layer tests.

Fixtures for storage tabs, a scripted remote API and sample domain data.
"""

import asyncio
import copy
import os
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Set test environment variables before importing package modules
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["API_BASE_URL"] = "http://scoring.test"
os.environ["API_RETRY_DELAY_SECONDS"] = "0"
os.environ["PERSISTED_RECORD_VERSION"] = "0"
os.environ["SERIALIZE_MUTATIONS"] = "true"

from scorekeeper.domain.cache.repository_interfaces import RemoteApi  # noqa: E402
from scorekeeper.infrastructure.api_client import unwrap_envelope  # noqa: E402
from scorekeeper.infrastructure.storage.memory import StorageHub  # noqa: E402

_MISSING = object()


class ScriptedRemoteApi(RemoteApi):
    """In-memory RemoteApi answering from a route table and recording calls.

    A route value may be a payload, an exception instance to raise, or a
    callable taking the request payload.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.closed = False

    def on(self, method: str, path: str, response: Any = None) -> None:
        self.routes[(method, path)] = response

    def count(self, method: str, path: Optional[str] = None) -> int:
        return sum(
            1
            for call_method, call_path, _ in self.calls
            if call_method == method and (path is None or call_path == path)
        )

    async def _dispatch(self, method: str, path: str, payload: Any = None) -> Any:
        self.calls.append((method, path, payload))
        # Remote calls are suspension points
        await asyncio.sleep(0)
        route = self.routes.get((method, path), _MISSING)
        if route is _MISSING:
            raise AssertionError(f"Unexpected remote call: {method} {path}")
        if isinstance(route, BaseException):
            raise route
        if callable(route):
            return route(payload)
        return copy.deepcopy(route)

    async def get(self, path: str, envelope: Optional[str] = None) -> Any:
        return unwrap_envelope(await self._dispatch("GET", path), envelope)

    async def post(
        self, path: str, payload: Any = None, envelope: Optional[str] = None
    ) -> Any:
        return unwrap_envelope(await self._dispatch("POST", path, payload), envelope)

    async def delete(self, path: str) -> Any:
        return await self._dispatch("DELETE", path)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def remote_api():
    """Scripted remote API."""
    return ScriptedRemoteApi()


@pytest.fixture
def storage_hub():
    """Shared storage for a set of tabs."""
    return StorageHub()


@pytest.fixture
def tab_a(storage_hub):
    return storage_hub.connect("tab-a")


@pytest.fixture
def tab_b(storage_hub):
    return storage_hub.connect("tab-b")


@pytest.fixture
def judge_one():
    return {
        "id": 1,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone_number": "555-0101",
        "role": 1,
    }


@pytest.fixture
def judge_two():
    return {
        "id": 2,
        "first_name": "Grace",
        "last_name": "Hopper",
        "phone_number": "555-0102",
        "role": 2,
    }
