from __future__ import annotations

import pytest

from obo_provision.config import PropagationConfig
from obo_provision.errors import PropagationTimeout
from obo_provision.graph_client import GraphApiError
from obo_provision.mock_directory import MockDirectory
from obo_provision.propagation import PropagationWaiter


def test_await_visible_returns_after_propagation_lag(sleeps):
    directory = MockDirectory(propagation_lag=2)
    created = directory.create_application({"displayName": "lagging"})
    waiter = PropagationWaiter(directory, PropagationConfig(max_attempts=5, interval_seconds=2), sleep=sleeps.append)

    assert waiter.await_visible(created["appId"]) is True
    assert sleeps == [2, 2]


@pytest.mark.parametrize("attempts,interval", [(1, 2.0), (3, 0.5), (30, 2.0)])
def test_exhaustion_returns_false_within_bound(sleeps, attempts, interval):
    directory = MockDirectory()
    waiter = PropagationWaiter(directory, PropagationConfig(), sleep=sleeps.append)

    assert waiter.await_visible("never-created", max_attempts=attempts, interval=interval) is False
    assert len(sleeps) <= attempts
    assert sum(sleeps) <= attempts * interval
    assert all(delay == interval for delay in sleeps)


def test_require_visible_raises(sleeps):
    waiter = PropagationWaiter(MockDirectory(), PropagationConfig(max_attempts=2, interval_seconds=0), sleep=sleeps.append)
    with pytest.raises(PropagationTimeout) as excinfo:
        waiter.require_visible("missing")
    assert excinfo.value.attempts == 2


def test_transient_errors_count_as_not_yet_visible(sleeps):
    outcomes = [GraphApiError(503, "ServiceUnavailable", "busy"), GraphApiError(404, "NotFound", "gone"), True]

    def probe():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    waiter = PropagationWaiter(MockDirectory(), PropagationConfig(max_attempts=5, interval_seconds=1), sleep=sleeps.append)
    assert waiter.await_condition("flaky", probe) is True
    assert sleeps == [1, 1]


def test_hard_errors_propagate(sleeps):
    def probe():
        raise GraphApiError(400, "Request_BadRequest", "bad filter")

    waiter = PropagationWaiter(MockDirectory(), PropagationConfig(max_attempts=5, interval_seconds=1), sleep=sleeps.append)
    with pytest.raises(GraphApiError):
        waiter.await_condition("broken", probe)
    assert sleeps == []
