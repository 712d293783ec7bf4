"""Tests for the job model and the shared retry decision."""

from __future__ import annotations

import pytest

from event_fanout.bus.jobs import JobRecord, next_attempt, notify
from event_fanout.core.config import BackoffPolicy, JobOptions
from event_fanout.core.enums import BackoffType
from event_fanout.core.errors import EventDeserializationError, HandlerNotFoundError
from event_fanout.core.ids import job_id, job_name


class TestJobIds:

    def test_job_id_is_deterministic(self):
        assert job_id("evt-1", "OrderCreatedEmailHandler") == "evt-1-OrderCreatedEmailHandler"
        assert job_id("evt-1", "X") == job_id("evt-1", "X")

    def test_job_name(self):
        assert job_name("order.created", "H") == "order.created-H"


class TestJobRecord:

    def test_wire_keys(self, order_event):
        record = JobRecord(handler_class="OrderCreatedEmailHandler", event=order_event.to_wire())
        dumped = record.model_dump(by_alias=True)
        assert set(dumped) == {"handlerClass", "event"}

    def test_json_round_trip(self, order_event):
        record = JobRecord(handler_class="OrderCreatedEmailHandler", event=order_event.to_wire())
        restored = JobRecord.from_json(record.to_json())
        assert restored == record
        assert '"handlerClass"' in record.to_json()


class TestBackoff:

    def test_exponential(self):
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=2000)
        assert policy.delay_for(1) == 2.0
        assert policy.delay_for(2) == 4.0
        assert policy.delay_for(3) == 8.0

    def test_fixed(self):
        policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=500)
        assert policy.delay_for(1) == 0.5
        assert policy.delay_for(4) == 0.5


class TestNextAttempt:

    def test_retry_with_backoff(self):
        decision = next_attempt(RuntimeError("x"), 1, JobOptions())
        assert decision.retry is True
        assert decision.delay == 2.0

    def test_second_retry_doubles(self):
        decision = next_attempt(RuntimeError("x"), 2, JobOptions())
        assert decision.retry is True
        assert decision.delay == 4.0

    def test_budget_exhausted(self):
        decision = next_attempt(RuntimeError("x"), 3, JobOptions(attempts=3))
        assert decision.retry is False

    def test_single_attempt_never_retries(self):
        assert next_attempt(RuntimeError("x"), 1, JobOptions(attempts=1)).retry is False

    @pytest.mark.parametrize(
        "exc",
        [HandlerNotFoundError("gone"), EventDeserializationError("bad")],
    )
    def test_unrecoverable_never_retries(self, exc):
        decision = next_attempt(exc, 1, JobOptions(attempts=5))
        assert decision.retry is False


class TestNotify:

    def test_none_callback(self):
        notify(None, 1, 2)

    def test_callback_receives_args(self):
        seen = []
        notify(lambda *args: seen.append(args), "a", 1)
        assert seen == [("a", 1)]

    def test_callback_error_is_swallowed(self):
        def boom(*args):
            raise ValueError("observer broke")

        notify(boom, "a")
