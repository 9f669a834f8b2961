# tests/conftest.py
import pytest

from core.config import ProviderSettings
from core.orchestrator import LLMOrchestrator
from providers.registry import ProviderRegistry
from tests.fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    # Empty settings: no credentials leak in from the developer's environment
    return ProviderRegistry(ProviderSettings())


@pytest.fixture
def orchestrator(registry, clock):
    return LLMOrchestrator(registry, clock=clock, sleep=clock.sleep)


@pytest.fixture
def register(registry):
    """register("X", FakeTransport(...)) -> the transport, wired into the registry."""
    def _register(provider, transport, required_credentials=()):
        registry.register(provider, lambda request: transport, required_credentials)
        return transport
    return _register
