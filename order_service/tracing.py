"""
tracing.py — Lightweight Tracing Scopes

Spans are opened with `Tracer.span(name)` as a context manager. A span stays
current for the whole `with` block, including any `await` inside it, and is
finished exactly once when the block exits, whatever the exit path (return,
exception or task cancellation).

Finished spans are handed to a reporter callable. The default reporter logs
them; tests pass a list's `append` to collect them.
"""

import contextvars
import logging
import time
import uuid
from contextlib import contextmanager

log = logging.getLogger(__name__)

_current_span = contextvars.ContextVar("current_span", default=None)


class Span:
    def __init__(self, name, trace_id, parent_id=None, clock=time.monotonic):
        self.name = name
        self.trace_id = trace_id
        self.span_id = uuid.uuid4().hex[:16]
        self.parent_id = parent_id
        self.tags = {}
        self.error = None
        self._clock = clock
        self.started_at = clock()
        self.duration_s = None

    @property
    def finished(self) -> bool:
        return self.duration_s is not None

    def tag(self, key, value):
        self.tags[key] = value

    def finish(self) -> bool:
        """Finishes the span. Returns False if it was already finished."""
        if self.finished:
            return False
        self.duration_s = self._clock() - self.started_at
        return True


def log_reporter(span: Span):
    status = f"FEHLER ({span.error!r})" if span.error else "OK"
    log.info(f"[Trace: {span.trace_id}] Span '{span.name}' ({span.span_id}) beendet: {status}, "
             f"{span.duration_s * 1000:.1f} ms, Tags: {span.tags}")


class Tracer:
    def __init__(self, reporter=log_reporter, clock=time.monotonic):
        self._reporter = reporter
        self._clock = clock

    @staticmethod
    def current_span():
        return _current_span.get()

    @contextmanager
    def span(self, name, **tags):
        parent = _current_span.get()
        trace_id = parent.trace_id if parent else uuid.uuid4().hex
        span = Span(name, trace_id, parent.span_id if parent else None, clock=self._clock)
        span.tags.update(tags)
        token = _current_span.set(span)
        try:
            yield span
        except BaseException as e:
            span.error = e
            raise
        finally:
            _current_span.reset(token)
            if span.finish():
                self._reporter(span)
