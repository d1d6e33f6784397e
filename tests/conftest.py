"""
Test fixtures: in-memory stand-ins for the lookup and claim endpoints.
"""

import asyncio
import random
from typing import Dict, List, Optional, Tuple

import pytest

from name_claimer import IdentityPool, NetworkIdentity


class FakeResponse:
    def __init__(self, outcome, delay: float = 0.0):
        self.outcome = outcome
        self.delay = delay
        self.status: Optional[int] = None

    async def __aenter__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        self.status = self.outcome
        return self

    async def __aexit__(self, *exc):
        return False


class FakeApi:
    """
    Routes by the last URL segment: uuid for lookups (GET), name for claims (PUT).
    Table values are a status, an exception to raise, or (status, delay_s).
    """

    def __init__(self, lookup: Optional[Dict] = None, claim: Optional[Dict] = None):
        self.lookup = dict(lookup or {})
        self.claim = dict(claim or {})
        self.calls: List[Tuple[str, str, str, Optional[dict]]] = []

    def respond(self, address: str, method: str, url: str, headers: Optional[dict]) -> FakeResponse:
        self.calls.append((address, method, url, dict(headers) if headers else None))
        key = url.rsplit("/", 1)[-1]
        if method == "GET":
            outcome = self.lookup.get(key, 404)
        else:
            outcome = self.claim.get(key, 403)
        delay = 0.0
        if isinstance(outcome, tuple):
            outcome, delay = outcome
        return FakeResponse(outcome, delay)

    def calls_for(self, method: str, key: Optional[str] = None):
        return [c for c in self.calls if c[1] == method and (key is None or c[2].endswith("/" + key))]


class FakeSession:
    def __init__(self, api: FakeApi, address: str):
        self.api = api
        self.address = address
        self.closed = False

    def request(self, method, url, headers=None):
        return self.api.respond(self.address, method, url, headers)

    async def close(self):
        self.closed = True


def make_pool(api: FakeApi, size: int = 3, seed: int = 7) -> IdentityPool:
    identities = []
    for i in range(size):
        addr = f"2001:db8::{i + 1:x}"
        identities.append(NetworkIdentity(addr, FakeSession(api, addr)))
    return IdentityPool(identities, rng=random.Random(seed))


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def pool(api) -> IdentityPool:
    return make_pool(api)
