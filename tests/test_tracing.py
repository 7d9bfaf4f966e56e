import pytest

from order_service.tracing import Tracer

from .fakes import FakeClock


def test_span_reports_once_with_duration_and_tags():
    finished = []
    clock = FakeClock()
    tracer = Tracer(reporter=finished.append, clock=clock)

    with tracer.span("CreateOrder", orderNumber="abc") as span:
        assert tracer.current_span() is span
        clock.advance(2)
        span.tag("inventory.outcome", "StockConfirmed")

    assert finished == [span]
    assert span.duration_s == 2
    assert span.tags == {"orderNumber": "abc", "inventory.outcome": "StockConfirmed"}
    assert tracer.current_span() is None
    assert span.finish() is False


def test_span_records_error_and_reraises():
    finished = []
    tracer = Tracer(reporter=finished.append)

    with pytest.raises(RuntimeError):
        with tracer.span("CreateOrder"):
            raise RuntimeError("boom")

    assert len(finished) == 1
    assert isinstance(finished[0].error, RuntimeError)
    assert finished[0].finished


def test_nested_spans_share_trace():
    finished = []
    tracer = Tracer(reporter=finished.append)

    with tracer.span("outer") as outer:
        with tracer.span("inner") as inner:
            pass

    assert inner.trace_id == outer.trace_id
    assert inner.parent_id == outer.span_id
    assert [s.name for s in finished] == ["inner", "outer"]
