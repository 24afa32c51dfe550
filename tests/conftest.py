"""Shared fixtures for cnn_visualizer tests."""

import asyncio

import pytest

from cnn_visualizer.chat import ChatResponder, CompletionClient
from cnn_visualizer.context import AppContext
from cnn_visualizer.engines import MockEngine, NumpyEngine


def collect(stream):
    """Drain an async event stream into a list."""

    async def _drain():
        return [event async for event in stream]

    return asyncio.run(_drain())


def types_of(events):
    return [event['type'] for event in events]


class FakeClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        self.now += 1.0
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context(clock):
    return AppContext(clock=clock)


@pytest.fixture
def mock_engine():
    return MockEngine(pacing=0, seed=7)


@pytest.fixture
def numpy_engine():
    return NumpyEngine(pacing=0, seed=7, num_samples=8, batch_size=4)


@pytest.fixture
def offline_responder():
    """Responder without an API key, so it always answers locally."""
    return ChatResponder(CompletionClient(api_key=None))
