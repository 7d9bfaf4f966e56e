import os

os.environ.setdefault("ORDER_SERVICE_LOG_FILE", "")

import httpx
import pytest

from mock_services.mock_inventory_service import app as mock_inventory_app
from order_service.clients import InventoryClient
from order_service.resilience import PolicyConfig, ResiliencePolicyExecutor
from order_service.store import SqliteOrderStore
from order_service.tracing import Tracer
from order_service.workflow import OrderPlacementOrchestrator, ServiceContext

from .fakes import FakeClock, RecordingPublisher, RecordingSleep


@pytest.fixture
def store(tmp_path):
    store = SqliteOrderStore(tmp_path / "orders.db")
    store.init_db()
    return store


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def spans():
    return []


@pytest.fixture
def policy_config():
    return PolicyConfig(
        timeout_s=0.5,
        max_attempts=3,
        wait_s=0.1,
        backoff_multiplier=2.0,
        max_wait_s=1.0,
        failure_rate_threshold=50.0,
        sliding_window_size=2,
        minimum_number_of_calls=2,
        wait_in_open_state_s=30.0,
        permitted_calls_in_half_open_state=1,
    )


@pytest.fixture
def make_orchestrator(store, publisher, clock, sleep, spans, policy_config):
    """Builds an orchestrator whose inventory client talks to the given httpx transport.

    Without a transport the client is routed to the mock inventory service app.
    """
    def _make(transport=None, config=None, **overrides):
        if transport is None:
            transport = httpx.ASGITransport(app=mock_inventory_app)
        context = ServiceContext(
            store=overrides.pop("store", store),
            inventory=InventoryClient(base_url="http://inventory", transport=transport),
            publisher=overrides.pop("publisher", publisher),
            resilience=ResiliencePolicyExecutor({"inventory": config or policy_config}, clock=clock, sleep=sleep),
            tracer=Tracer(reporter=spans.append),
        )
        return OrderPlacementOrchestrator(context)

    return _make


