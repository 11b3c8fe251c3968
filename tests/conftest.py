"""Shared fixtures for the test suite."""

from __future__ import annotations

from typing import Any

import pytest

from docharvest.core.config.models import OrchestratorConfig
from docharvest.core.orchestrator import Orchestrator
from docharvest.persistence.store import MemoryStateStore
from fakes import FakeClock, FakeContextProvider, FakeExtractionBackend, FakeRenderBackend


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    """Default limits with every delay removed."""
    return OrchestratorConfig(
        extract_timeout_seconds=5,
        extract_retry_delay_seconds=0,
        settle_delay_seconds=0,
        load_timeout_seconds=1,
        backfill_delay_seconds=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def contexts() -> FakeContextProvider:
    return FakeContextProvider()


@pytest.fixture
def extractor(contexts: FakeContextProvider) -> FakeExtractionBackend:
    return FakeExtractionBackend(contexts)


@pytest.fixture
def renderer() -> FakeRenderBackend:
    return FakeRenderBackend()


@pytest.fixture
def make_orchestrator(fast_config, clock, store, contexts, extractor, renderer):
    """Factory building an orchestrator over the shared fakes."""

    def factory(**overrides: Any) -> Orchestrator:
        kwargs: dict[str, Any] = {
            "store": store,
            "contexts": contexts,
            "extractor": extractor,
            "renderer": renderer,
            "config": fast_config,
            "clock": clock,
        }
        kwargs.update(overrides)
        return Orchestrator(**kwargs)

    return factory
