"""Tests for the order placement workflow, end to end against fake or mock inventory services."""

import asyncio
import json
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from order_service.models import OrderedItem, OrderRequest
from order_service.resilience import CircuitState, PolicyConfig
from order_service.store import OrderStoreError, SqliteOrderStore

from .fakes import CountingHandler, order_request


def _unreachable(request):
    raise httpx.ConnectError("connection refused", request=request)


def _all_available(request):
    return httpx.Response(200, json=[{"skuCode": i["skuCode"], "available": True} for i in json.loads(request.content)])


def _order_number(publisher):
    return publisher.events[0][1].orderNumber


class TestCreateOrder:
    def test_absent_request_is_rejected_without_side_effects(self, make_orchestrator, publisher, store, spans):
        handler = CountingHandler(_all_available)
        orchestrator = make_orchestrator(httpx.MockTransport(handler))

        assert asyncio.run(orchestrator.create_order(None)) is False
        assert publisher.events == []
        assert handler.calls == 0
        assert store.count() == 0
        assert spans == []

    @pytest.mark.parametrize("payload", [
        order_request(("TSHIRT", 0, "10.00")),
        order_request(("TSHIRT", -1, "10.00")),
        order_request(("", 1, "10.00")),
        order_request(("TSHIRT", 1, "-1")),
        {"orderedItems": []},
        {"items": "nonsense"},
    ])
    def test_invalid_request_is_rejected_before_remote_call(self, make_orchestrator, publisher, store, payload):
        handler = CountingHandler(_all_available)
        orchestrator = make_orchestrator(httpx.MockTransport(handler))

        assert asyncio.run(orchestrator.create_order(payload)) is False
        assert handler.calls == 0
        assert publisher.events == []
        assert store.count() == 0

    def test_unvalidated_model_with_non_positive_quantity_is_rejected(self, make_orchestrator, publisher):
        handler = CountingHandler(_all_available)
        orchestrator = make_orchestrator(httpx.MockTransport(handler))
        request = OrderRequest.model_construct(orderedItems=[
            OrderedItem.model_construct(skuCode="TSHIRT", quantity=0, unitPrice=Decimal("10.00"))
        ])

        assert asyncio.run(orchestrator.create_order(request)) is False
        assert handler.calls == 0
        assert publisher.events == []

    def test_available_order_is_confirmed_and_stored(self, make_orchestrator, publisher, store):
        orchestrator = make_orchestrator()

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 2, "10.00")))) is True

        assert store.count() == 1
        stored = store.get(_order_number(publisher))
        assert len(stored.items) == 1
        item = stored.items[0]
        assert (item.skuCode, item.quantity, item.unitPrice) == ("TSHIRT", 2, Decimal("10.00"))

    def test_events_received_then_confirmed_on_notification_topic(self, make_orchestrator, publisher):
        orchestrator = make_orchestrator()

        asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 2, "10.00"))))

        assert publisher.kinds == ["ORDER_RECEIVED", "ORDER_CONFIRMED"]
        assert {topic for topic, _ in publisher.events} == {"notificationTopic"}
        assert len({event.orderNumber for _, event in publisher.events}) == 1

    def test_accepts_order_request_model(self, make_orchestrator, store):
        orchestrator = make_orchestrator()
        request = OrderRequest.model_validate(order_request(("TSHIRT", 1, "3.00"), ("CAP", 4, "1.25")))

        assert asyncio.run(orchestrator.create_order(request)) is True
        assert store.count() == 1

    def test_each_order_gets_a_fresh_order_number(self, make_orchestrator, publisher, store):
        orchestrator = make_orchestrator()

        asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00"))))
        asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00"))))

        numbers = {event.orderNumber for _, event in publisher.events}
        assert len(numbers) == 2
        assert store.count() == 2

    def test_out_of_stock_order_is_rejected(self, make_orchestrator, publisher, store):
        orchestrator = make_orchestrator()

        assert asyncio.run(orchestrator.create_order(order_request(("OUT-OF-STOCK", 1, "5.00")))) is False
        assert store.count() == 0
        assert store.get(_order_number(publisher)) is None
        # tentative event is not retracted
        assert publisher.kinds == ["ORDER_RECEIVED"]

    def test_partially_available_order_is_rejected(self, make_orchestrator, store):
        orchestrator = make_orchestrator()
        payload = order_request(("TSHIRT", 1, "10.00"), ("OUT-OF-STOCK", 1, "5.00"))

        assert asyncio.run(orchestrator.create_order(payload)) is False
        assert store.count() == 0

    def test_error_sentinel_rejects_without_circuit_failure(self, make_orchestrator, store):
        orchestrator = make_orchestrator()

        assert asyncio.run(orchestrator.create_order(order_request(("ERROR-SKU", 1, "5.00")))) is False

        metrics = orchestrator.context.resilience.policy("inventory").circuit_breaker.metrics()
        assert metrics.failed_calls == 0
        assert metrics.buffered_calls == 1
        assert store.count() == 0

    def test_malformed_response_is_rejected_and_not_retried(self, make_orchestrator, store, sleep):
        handler = CountingHandler(lambda request: httpx.Response(200, text="{not json"))
        orchestrator = make_orchestrator(httpx.MockTransport(handler))

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False
        assert handler.calls == 1
        assert sleep.delays == []
        assert store.count() == 0

    def test_incomplete_response_is_rejected(self, make_orchestrator, store):
        handler = CountingHandler(lambda request: httpx.Response(200, json=[{"skuCode": "A", "available": True}]))
        orchestrator = make_orchestrator(httpx.MockTransport(handler))

        payload = order_request(("A", 1, "1.00"), ("B", 1, "1.00"))
        assert asyncio.run(orchestrator.create_order(payload)) is False
        assert store.count() == 0

    def test_unreachable_inventory_falls_back(self, make_orchestrator, publisher, store, sleep, policy_config):
        handler = CountingHandler(_unreachable)
        orchestrator = make_orchestrator(httpx.MockTransport(handler))

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False
        assert handler.calls == policy_config.max_attempts
        assert sleep.delays == [0.1, 0.2]
        assert store.count() == 0
        assert publisher.kinds == ["ORDER_RECEIVED"]

    def test_failing_fallback_rejects_order(self, make_orchestrator, publisher, store, spans):
        orchestrator = make_orchestrator(httpx.MockTransport(CountingHandler(_unreachable)))
        orchestrator._inventory_fallback = MagicMock(side_effect=KeyError("skuCode"))

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False
        assert store.count() == 0
        assert publisher.kinds == ["ORDER_RECEIVED"]
        assert spans[0].finished
        assert spans[0].error is not None

    def test_server_errors_are_retried(self, make_orchestrator, store):
        failures = [503, 503]

        def flaky(request):
            if failures:
                return httpx.Response(failures.pop())
            return _all_available(request)

        handler = CountingHandler(flaky)
        orchestrator = make_orchestrator(httpx.MockTransport(handler))

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is True
        assert handler.calls == 3
        assert store.count() == 1

    def test_slow_inventory_times_out(self, make_orchestrator, store, policy_config):
        async def slow(request):
            await asyncio.sleep(5)
            return _all_available(request)

        handler = CountingHandler(slow)
        config = PolicyConfig(timeout_s=0.05, max_attempts=2, wait_s=0.0)
        orchestrator = make_orchestrator(httpx.MockTransport(handler), config=config)

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False
        assert handler.calls == 2
        assert store.count() == 0

    def test_circuit_opens_and_short_circuits(self, make_orchestrator, policy_config):
        handler = CountingHandler(_unreachable)
        orchestrator = make_orchestrator(httpx.MockTransport(handler))
        breaker = orchestrator.context.resilience.policy("inventory").circuit_breaker
        payload = order_request(("TSHIRT", 1, "10.00"))

        for _ in range(policy_config.minimum_number_of_calls):
            assert asyncio.run(orchestrator.create_order(payload)) is False
        assert breaker.state is CircuitState.OPEN
        calls_before = handler.calls

        async def burst():
            return await asyncio.gather(*(orchestrator.create_order(payload) for _ in range(5)))

        assert asyncio.run(burst()) == [False] * 5
        assert handler.calls == calls_before

    def test_circuit_recovers_after_cool_down(self, make_orchestrator, clock, policy_config, store):
        healthy = []
        handler = CountingHandler(lambda request: _all_available(request) if healthy else _unreachable(request))
        orchestrator = make_orchestrator(httpx.MockTransport(handler))
        breaker = orchestrator.context.resilience.policy("inventory").circuit_breaker
        payload = order_request(("TSHIRT", 1, "10.00"))

        for _ in range(policy_config.minimum_number_of_calls):
            asyncio.run(orchestrator.create_order(payload))
        assert breaker.state is CircuitState.OPEN

        healthy.append(True)
        clock.advance(policy_config.wait_in_open_state_s)
        assert breaker.state is CircuitState.HALF_OPEN
        assert asyncio.run(orchestrator.create_order(payload)) is True
        assert breaker.state is CircuitState.CLOSED
        assert store.count() == 1

    def test_store_failure_rejects_but_keeps_events(self, make_orchestrator, publisher):
        failing_store = MagicMock()
        failing_store.save.side_effect = OrderStoreError("disk full")
        orchestrator = make_orchestrator(store=failing_store)

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False
        failing_store.save.assert_called_once()
        assert publisher.kinds == ["ORDER_RECEIVED", "ORDER_CONFIRMED"]

    def test_unopenable_database_rejects_order(self, make_orchestrator, tmp_path):
        # a directory cannot be opened as a database file
        orchestrator = make_orchestrator(store=SqliteOrderStore(tmp_path))

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False

    def test_unexpected_store_error_rejects_order(self, make_orchestrator, publisher):
        failing_store = MagicMock()
        failing_store.save.side_effect = OSError("disk gone")
        orchestrator = make_orchestrator(store=failing_store)

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is False
        assert publisher.kinds == ["ORDER_RECEIVED", "ORDER_CONFIRMED"]

    def test_received_event_is_issued_before_inventory_call(self, make_orchestrator, publisher):
        kinds_at_request = []

        def respond(request):
            kinds_at_request.append(list(publisher.kinds))
            return _all_available(request)

        orchestrator = make_orchestrator(httpx.MockTransport(CountingHandler(respond)))

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is True
        assert kinds_at_request == [["ORDER_RECEIVED"]]

    def test_publisher_failure_does_not_affect_result(self, make_orchestrator, store):
        broken_publisher = MagicMock()
        broken_publisher.publish.side_effect = RuntimeError("broker gone")
        orchestrator = make_orchestrator(publisher=broken_publisher)

        assert asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00")))) is True
        assert broken_publisher.publish.call_count == 2
        assert store.count() == 1


class TestCreateOrderTracing:
    def test_span_wraps_successful_call(self, make_orchestrator, publisher, spans):
        orchestrator = make_orchestrator()

        asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00"))))

        assert len(spans) == 1
        span = spans[0]
        assert span.name == "CreateOrder"
        assert span.finished
        assert span.error is None
        assert span.tags["orderNumber"] == _order_number(publisher)
        assert span.tags["inventory.outcome"] == "StockConfirmed"

    def test_span_closes_on_fallback(self, make_orchestrator, spans):
        orchestrator = make_orchestrator(httpx.MockTransport(CountingHandler(_unreachable)))

        asyncio.run(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00"))))

        assert len(spans) == 1
        assert spans[0].tags["inventory.outcome"] == "InventoryUnavailable"

    def test_span_closes_once_on_cancellation(self, make_orchestrator, spans, store):
        async def hanging(request):
            await asyncio.sleep(5)
            return _all_available(request)

        config = PolicyConfig(timeout_s=2.0, max_attempts=1)
        orchestrator = make_orchestrator(httpx.MockTransport(CountingHandler(hanging)), config=config)

        async def scenario():
            task = asyncio.create_task(orchestrator.create_order(order_request(("TSHIRT", 1, "10.00"))))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert len(spans) == 1
        assert isinstance(spans[0].error, asyncio.CancelledError)
        breaker = orchestrator.context.resilience.policy("inventory").circuit_breaker
        assert breaker.metrics().failed_calls == 0
        assert store.count() == 0
