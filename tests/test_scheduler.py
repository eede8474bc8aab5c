import logging
import sys
import threading
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from configuration import Target, TargetStatus  # noqa: E402
from servmon.notifier import AlertDispatcher  # noqa: E402
from servmon.service import MonitorScheduler  # noqa: E402
from servmon.state_machine import AlertKind  # noqa: E402
from servmon.target_store import TargetStore  # noqa: E402
from servmon.throttle import NotificationThrottler  # noqa: E402

UP = TargetStatus(is_up=True)
DOWN = TargetStatus(is_up=False, last_error="refused")


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _loop_threads(name):
    return [
        thread for thread in threading.enumerate()
        if thread.name == f"Monitor:{name}" and thread.is_alive()
    ]


class SequenceProbe:
    """Return queued results, then repeat the last one."""

    def __init__(self, results):
        self._results = list(results)
        self._lock = threading.Lock()
        self.calls = []

    def __call__(self, target, timeout):
        with self._lock:
            self.calls.append((target.id, timeout))
            if len(self._results) > 1:
                return self._results.pop(0)
            return self._results[0]


@pytest.fixture
def store():
    return TargetStore([
        Target(id="web", name="Web", address="https://example.com",
               protocol="http", interval="0.02s", timeout="2s",
               status=UP),
    ])


@pytest.fixture
def scheduler_factory(store):
    created = []

    def _factory(**kwargs):
        scheduler = MonitorScheduler(store, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _factory
    for scheduler in created:
        scheduler.stop_all(join_timeout=2)


def test_start_probes_immediately_and_writes_status(store, scheduler_factory):
    store.upsert(store.get("web").with_status(DOWN))
    probe = SequenceProbe([UP])
    scheduler = scheduler_factory(probe_function=probe)

    scheduler.start(store.get("web"))

    assert _wait_for(lambda: store.get_status("web").is_up)
    assert probe.calls[0] == ("web", 2.0)
    assert scheduler.is_running("web")
    assert scheduler.active_ids() == ["web"]


def test_second_start_replaces_first_loop(store, scheduler_factory):
    scheduler = scheduler_factory(probe_function=SequenceProbe([UP]))
    target = store.get("web")

    scheduler.start(target)
    scheduler.start(target)

    assert scheduler.active_ids() == ["web"]
    assert _wait_for(lambda: len(_loop_threads("Web")) == 1)


def test_stop_discards_in_flight_result(store, scheduler_factory):
    entered = threading.Event()
    release = threading.Event()
    notifications = []

    def blocking_probe(target, timeout):
        entered.set()
        release.wait(5)
        return DOWN

    scheduler = scheduler_factory(probe_function=blocking_probe,
                                  dispatcher=notifications.append)
    scheduler.start(store.get("web"))
    assert entered.wait(2)

    assert scheduler.stop("web") is True
    assert scheduler.stop("web") is False
    release.set()

    assert _wait_for(lambda: not _loop_threads("Web"))
    assert store.get_status("web") == UP
    assert notifications == []
    assert not scheduler.is_running("web")


def test_three_failures_after_up_escalate(store, scheduler_factory):
    notifications = []
    scheduler = scheduler_factory(probe_function=SequenceProbe([DOWN]),
                                  dispatcher=notifications.append)

    scheduler.start(store.get("web"))

    assert _wait_for(lambda: len(notifications) >= 2)
    scheduler.stop("web")
    assert notifications[0].kind is AlertKind.DOWN
    assert notifications[1].kind is AlertKind.CRITICAL
    assert notifications[1].failures == 3


def test_probe_exception_is_recorded_as_down(store, scheduler_factory, caplog):

    def broken_probe(target, timeout):
        raise RuntimeError("probe exploded")

    scheduler = scheduler_factory(probe_function=broken_probe)

    with caplog.at_level(logging.ERROR):
        scheduler.start(store.get("web"))
        assert _wait_for(lambda: not store.get_status("web").is_up)

    assert store.get_status("web").last_error == "probe exploded"
    assert "monitor.scheduler.probe_error" in caplog.text


def test_loop_exits_when_target_is_removed(store, scheduler_factory):
    scheduler = scheduler_factory(probe_function=SequenceProbe([UP]))
    scheduler.start(store.get("web"))
    assert _wait_for(lambda: scheduler.is_running("web"))

    store.remove("web")

    assert _wait_for(lambda: scheduler.active_ids() == [])
    assert _wait_for(lambda: not _loop_threads("Web"))


def test_run_single_check_leaves_store_untouched(store, scheduler_factory):
    probe = SequenceProbe([DOWN])
    scheduler = scheduler_factory(probe_function=probe)

    status = scheduler.run_single_check(store.get("web"))

    assert status == DOWN
    assert store.get_status("web") == UP
    assert probe.calls == [("web", 2.0)]


def test_event_handler_failure_does_not_stop_loop(store, scheduler_factory,
                                                  caplog):
    events = []

    def handler(event):
        events.append(event)
        raise ValueError("handler broke")

    scheduler = scheduler_factory(probe_function=SequenceProbe([UP]),
                                  event_handler=handler)

    with caplog.at_level(logging.ERROR):
        scheduler.start(store.get("web"))
        assert _wait_for(lambda: len(events) >= 3)

    assert "monitor.scheduler.event_handler_error" in caplog.text
    assert scheduler.is_running("web")


def test_disabled_notifications_still_update_status(store, scheduler_factory):
    local_calls = []
    mail_calls = []

    class FakeNotifier:

        def notify(self, title, body, *, critical=False):
            local_calls.append(title)

    throttler = NotificationThrottler(0, enabled=False)
    dispatcher = AlertDispatcher(throttler,
                                 local_notifier=FakeNotifier(),
                                 mail_submitter=mail_calls.append,
                                 recipients=["ops@example.com"])
    scheduler = scheduler_factory(probe_function=SequenceProbe([DOWN]),
                                  dispatcher=dispatcher.dispatch)

    scheduler.start(store.get("web"))

    assert _wait_for(lambda: not store.get_status("web").is_up)
    time.sleep(0.1)
    assert local_calls == []
    assert mail_calls == []


def test_stop_all_cancels_every_loop(store, scheduler_factory):
    store.upsert(Target(id="db", name="DB", address="db:5432",
                        protocol="tcp", interval="0.02s"))
    scheduler = scheduler_factory(probe_function=SequenceProbe([UP]))
    for target in store.list():
        scheduler.start(target)
    assert _wait_for(lambda: sorted(scheduler.active_ids()) == ["db", "web"])

    scheduler.stop_all(join_timeout=2)

    assert scheduler.active_ids() == []
    assert not _loop_threads("Web")
    assert not _loop_threads("DB")
