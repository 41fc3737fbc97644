from __future__ import annotations

import pytest

from offramp_orchestrator.providers.registry import ProviderRegistry
from offramp_orchestrator.store import InMemoryOrderStore

from fakes import FakeProvider


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry([provider])


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()
