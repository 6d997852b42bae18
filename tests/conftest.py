"""Shared fixtures."""

import asyncio
import copy
from typing import Any, Dict, List, Optional

import pytest

from togglebox.errors import NetworkError

PAYLOAD: Dict[str, Any] = {
    "version": "7",
    "configs": {"theme": "dark", "max_items": 25},
    "flags": {
        "new-checkout": {
            "defaultValue": False,
            "enabled": True,
            "rollout": 100,
        },
        "beta-banner": {
            "defaultValue": False,
            "enabled": True,
            "rollout": 0,
            "rules": [
                {
                    "id": "germany",
                    "conditions": [{"attribute": "country", "operator": "equals", "value": "DE"}],
                    "outcome": True,
                }
            ],
        },
    },
    "experiments": {
        "pricing-page": {
            "status": "running",
            "variations": [
                {"key": "control", "weight": 50, "value": {"price": 10}},
                {"key": "discount", "weight": 50, "value": {"price": 8}},
            ],
            "version": 2,
        },
        "paused": {
            "status": "stopped",
            "variations": [{"key": "only", "weight": 1}],
        },
    },
}


class FakeTransport:
    """In-memory transport that records calls."""

    def __init__(self, payload: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.payload = copy.deepcopy(PAYLOAD if payload is None else payload)
        self.delay = delay
        self.fetch_calls = 0
        self.batches: List[List[Dict[str, Any]]] = []
        self.fetch_error: Optional[Exception] = None
        self.post_error: Optional[Exception] = None
        self.post_delay = 0.0
        self.not_modified = False
        self.closed = False

    async def fetch_definitions(self, platform, environment, version, etag=None):
        self.fetch_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fetch_error is not None:
            raise self.fetch_error
        if self.not_modified and etag:
            return None
        return copy.deepcopy(self.payload), '"etag-1"'

    async def post_events(self, batch):
        if self.post_delay:
            await asyncio.sleep(self.post_delay)
        if self.post_error is not None:
            raise self.post_error
        self.batches.append(batch)

    async def check_connection(self):
        if self.fetch_error is not None:
            raise NetworkError("unreachable")
        return {"status": "ok", "uptime": 12}

    async def close(self):
        self.closed = True


@pytest.fixture
def payload():
    return copy.deepcopy(PAYLOAD)


@pytest.fixture
def transport():
    return FakeTransport()
