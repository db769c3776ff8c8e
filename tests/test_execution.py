"""
Tests for starting, waiting on and cancelling executions.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from stepdeploy.errors import Cancelled
from stepdeploy.models import StateMachine
from stepdeploy.statemachine import HISTORY_PAGE_SIZE, STOP_ERROR, StateMachineService

from conftest import FAST_POLICY, client_error, sm_arn

BASE = sm_arn("hello")
EXECUTION_ARN = "arn:aws:states:us-east-1:123456789012:execution:hello:run-1"
STARTED = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def standard(**kw):
    return StateMachine(name="hello", arn=BASE, **kw)


def new_service(client, **kw):
    return StateMachineService(client, retry_policy=FAST_POLICY, poll_interval=0,
                               sleep=lambda seconds: None, **kw)


def running_client():
    client = Mock()
    client.start_execution.return_value = {"executionArn": EXECUTION_ARN, "startDate": STARTED}
    client.describe_execution.return_value = {"status": "RUNNING", "startDate": STARTED}
    return client


class TestStartExecution:
    """Test the execution run path."""

    def test_standard_waits_until_stopped(self):
        client = running_client()
        client.describe_execution.side_effect = [
            {"status": "RUNNING", "startDate": STARTED},
            {"status": "SUCCEEDED", "startDate": STARTED,
             "stopDate": STARTED + timedelta(seconds=3), "output": '{"ok": true}'},
        ]
        client.get_execution_history.return_value = {"events": []}

        result = new_service(client).start_execution(standard(), input='{"a": 1}', qualifier="current", name="run-1")

        assert result.success is True
        assert result.failed is False
        assert result.output == '{"ok": true}'
        assert result.elapsed() == timedelta(seconds=3)
        kwargs = client.start_execution.call_args.kwargs
        assert kwargs["stateMachineArn"] == f"{BASE}:current"
        assert kwargs["name"] == "run-1"
        assert kwargs["input"] == '{"a": 1}'

    def test_failure_detail_from_history(self):
        client = running_client()
        client.describe_execution.return_value = {"status": "FAILED", "startDate": STARTED, "stopDate": STARTED}
        client.get_execution_history.return_value = {"events": [
            {"type": "ExecutionFailed", "executionFailedEventDetails": {"error": "States.TaskFailed", "cause": "boom"}},
        ]}

        result = new_service(client).start_execution(standard())

        assert result.failed is True
        assert result.detail == {"error": "States.TaskFailed", "cause": "boom"}
        history_kwargs = client.get_execution_history.call_args.kwargs
        assert history_kwargs["reverseOrder"] is True
        assert history_kwargs["maxResults"] == 5

    def test_async_returns_immediately(self):
        client = running_client()
        result = new_service(client).start_execution(standard(), async_=True)
        assert result.execution_arn == EXECUTION_ARN
        client.describe_execution.assert_not_called()

    def test_name_defaults_to_uuid(self):
        client = running_client()
        new_service(client).start_execution(standard(), async_=True)
        assert len(client.start_execution.call_args.kwargs["name"]) == 36

    def test_express_runs_synchronously(self):
        client = Mock()
        client.start_sync_execution.return_value = {
            "executionArn": EXECUTION_ARN, "status": "FAILED", "error": "E", "cause": "C",
            "startDate": STARTED, "stopDate": STARTED,
        }
        result = new_service(client).start_execution(standard(type="EXPRESS"))
        assert result.failed is True
        assert result.detail == {"error": "E", "cause": "C"}
        assert result.can_not_dump_history is True
        client.start_execution.assert_not_called()


class TestCancellation:
    """Test the two-step stop protocol."""

    def test_cancel_stops_running_execution(self):
        client = running_client()
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            new_service(client, cancel=cancel).start_execution(standard())
        client.stop_execution.assert_called_once_with(
            executionArn=EXECUTION_ARN, error=STOP_ERROR, cause="cancellation requested")

    def test_stop_failure_still_cancels(self):
        client = running_client()
        client.stop_execution.side_effect = client_error("AccessDeniedException")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            new_service(client, cancel=cancel).start_execution(standard())
        assert client.stop_execution.call_count == 1

    def test_stop_timeout_still_cancels(self):
        client = running_client()
        release = threading.Event()
        client.stop_execution.side_effect = lambda **kwargs: release.wait(5)
        cancel = threading.Event()
        cancel.set()
        try:
            with pytest.raises(Cancelled):
                new_service(client, cancel=cancel, stop_grace_timeout=0.05).start_execution(standard())
        finally:
            release.set()

    def test_already_stopped_skips_stop(self):
        client = running_client()
        client.describe_execution.side_effect = [
            {"status": "RUNNING", "startDate": STARTED},
            {"status": "SUCCEEDED", "startDate": STARTED},
        ]
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            new_service(client, cancel=cancel).start_execution(standard())
        client.stop_execution.assert_not_called()

    def test_keyboard_interrupt_stops_execution(self):
        client = running_client()

        def interrupt(seconds):
            raise KeyboardInterrupt

        service = StateMachineService(client, retry_policy=FAST_POLICY, poll_interval=0, sleep=interrupt)
        with pytest.raises(Cancelled):
            service.start_execution(standard())
        assert client.stop_execution.call_args.kwargs["cause"] == "interrupted"


def test_execution_history_tracks_steps():
    client = Mock()
    client.describe_execution.return_value = {"startDate": STARTED}
    client.get_paginator.return_value.paginate.return_value = [
        {"events": [
            {"id": 1, "type": "ExecutionStarted", "timestamp": STARTED},
            {"id": 2, "type": "PassStateEntered", "timestamp": STARTED + timedelta(seconds=1),
             "stateEnteredEventDetails": {"name": "Hello"}},
        ], "nextToken": "t"},
        {"events": [
            {"id": 3, "type": "PassStateExited", "timestamp": STARTED + timedelta(seconds=2)},
        ]},
    ]
    events = new_service(client).get_execution_history(EXECUTION_ARN)
    assert [e.step for e in events] == ["", "Hello", "Hello"]
    assert events[2].elapsed() == timedelta(seconds=2)
    client.get_paginator.assert_called_once_with("get_execution_history")
    kwargs = client.get_paginator.return_value.paginate.call_args.kwargs
    assert kwargs["executionArn"] == EXECUTION_ARN
    assert kwargs["PaginationConfig"] == {"PageSize": HISTORY_PAGE_SIZE}
