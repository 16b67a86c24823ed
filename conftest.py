"""
Shared test fixtures: in-memory settings, scripted providers and a fully
wired in-memory orchestrator.
"""

from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from cep_crawler.broker import InMemoryBroker
from cep_crawler.config.settings import CrawlerSettings
from cep_crawler.core.types import ProviderResult
from cep_crawler.health import CompositeHealthMonitor, ProviderHealthMonitor
from cep_crawler.orchestrator import CrawlOrchestrator
from cep_crawler.state import InMemoryJobStore


class FakeProvider:
    """Provider returning scripted results per key (success by default)."""

    def __init__(self, name: str = "ViaCEP", results: Optional[Dict[str, ProviderResult]] = None):
        self._name = name
        self.results: Dict[str, ProviderResult] = dict(results or {})
        self.calls: List[str] = []
        self.probe_ok = True
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def fetch(self, key: str) -> ProviderResult:
        self.calls.append(key)
        if key in self.results:
            return self.results[key]
        return ProviderResult(success=True, payload={"cep": key, "uf": "SP"}, status_code=200)

    async def probe(self) -> bool:
        return self.probe_ok

    async def close(self) -> None:
        self.closed = True


def make_settings(**overrides) -> CrawlerSettings:
    values = {
        "environment": "dev",
        "store_backend": "memory",
        "broker_backend": "memory",
        "rate_limiter_backend": "local",
        "providers": ["viacep"],
        "min_request_interval_ms": 0,
        "retry_visibility_seconds": 0,
        "json_logs": False,
    }
    values.update(overrides)
    return CrawlerSettings(_env_file=None, **values)


@pytest.fixture
def settings() -> CrawlerSettings:
    return make_settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker(visibility_timeout_seconds=60)


@pytest.fixture
def healthy_monitor() -> CompositeHealthMonitor:
    """Composite with one leaf already marked healthy."""
    leaf = ProviderHealthMonitor("ViaCEP", AsyncMock(return_value=True))
    leaf._publish(leaf.status().model_copy(update={"is_healthy": True}))
    return CompositeHealthMonitor([leaf], poll_interval_seconds=0.01, default_wait_timeout_seconds=0.05)


@pytest.fixture
def unhealthy_monitor() -> CompositeHealthMonitor:
    leaf = ProviderHealthMonitor("ViaCEP", AsyncMock(return_value=False))
    return CompositeHealthMonitor([leaf], poll_interval_seconds=0.01, default_wait_timeout_seconds=0.05)


@pytest.fixture
def orchestrator(store, broker, healthy_monitor, settings) -> CrawlOrchestrator:
    return CrawlOrchestrator(store, broker, healthy_monitor, settings)
