"""
Shared test doubles for encoders and the remote tokenizer HTTP session.
"""

import pytest

from token_cost_guard.core.encoders import EncoderRegistry
from token_cost_guard.core.local_resolver import LocalResolver


class FakeEncoder:
    """Whitespace tokenizer standing in for a BPE encoding."""

    def __init__(self, name: str):
        self.name = name

    def encode(self, text, **kwargs):
        return text.split()


class FakeLoader:
    """Encoder loader that records calls and can refuse named encodings."""

    def __init__(self, unavailable=()):
        self.calls = []
        self.unavailable = set(unavailable)

    def __call__(self, name: str) -> FakeEncoder:
        self.calls.append(name)
        if name in self.unavailable:
            raise ValueError(f"Unknown encoding {name}")
        return FakeEncoder(name)


class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Scripted aiohttp session: each post() consumes the next outcome.

    An outcome is either an exception to raise or a (status, payload) pair;
    the last outcome repeats once the script runs out.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.closed = False
        self.close_calls = 0

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(*outcome)

    async def close(self):
        self.close_calls += 1
        self.closed = True


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def make_loader():
    return FakeLoader


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def registry(loader):
    return EncoderRegistry(loader=loader)


@pytest.fixture
def local_resolver(registry):
    return LocalResolver(registry=registry)


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps):
    async def _sleep(delay):
        recorded_sleeps.append(delay)
    return _sleep
