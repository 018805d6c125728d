import json
import threading
import time
import pytest
from vhoster.pipeline.broadcast import StatusHub, status_message

STATUS_ORDER = {"none": 0, "queued": 1, "running": 2, "done": 3, "error": 3}


@pytest.fixture
def hub(job_registry, event_bus):
    status_hub = StatusHub(job_registry)
    status_hub.attach(event_bus)
    return status_hub


def messages(conn):
    return [json.loads(m) for m in conn.sent]


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_status_message_shape():
    assert json.loads(status_message("abc", {"status": "none"})) == {
        "type": "status", "id": "abc", "job": {"status": "none"}
    }


def test_subscribe_sends_current_state(hub, connection):
    hub.subscribe(connection, "unknown")
    assert hub.flush()
    assert messages(connection) == [{"type": "status", "id": "unknown", "job": {"status": "none"}}]


def test_subscribe_to_running_job(hub, job_registry, connection):
    job_registry.create("abc")
    job_registry.start("abc", "re-encoding")
    hub.subscribe(connection, "abc")
    assert hub.flush()
    [msg] = messages(connection)
    assert msg["job"]["status"] == "running"
    assert msg["job"]["message"] == "re-encoding"


def test_subscribe_after_completion_sends_final_state(hub, job_registry, connection):
    job_registry.create("abc")
    job_registry.start("abc")
    job_registry.finish("abc")

    hub.subscribe(connection, "abc")
    assert hub.flush()

    [msg] = messages(connection)
    assert msg["job"]["status"] == "done"
    assert msg["job"]["progress"] == 100


def test_transitions_are_pushed_in_order(hub, job_registry, connection):
    hub.subscribe(connection, "abc")
    job_registry.create("abc")
    job_registry.start("abc")
    job_registry.progress("abc", 40)
    job_registry.finish("abc")
    assert hub.flush()

    statuses = [m["job"]["status"] for m in messages(connection)]
    assert statuses == ["none", "queued", "running", "running", "done"]
    progress = [m["job"].get("progress") for m in messages(connection)[1:]]
    assert progress == [0, 0, 40, 100]


def test_only_subscribers_of_the_id_receive(hub, job_registry, connection_factory):
    watching = connection_factory()
    other = connection_factory()
    hub.subscribe(watching, "abc")
    hub.subscribe(other, "def")

    job_registry.create("abc")
    assert hub.flush()

    assert len(watching.sent) == 2
    assert len(other.sent) == 1


def test_connection_can_follow_several_ids(hub, job_registry, connection):
    hub.subscribe(connection, "a")
    hub.subscribe(connection, "b")
    job_registry.create("a")
    job_registry.create("b")
    assert hub.flush()
    assert [m["id"] for m in messages(connection)] == ["a", "b", "a", "b"]


def test_unsubscribe_stops_delivery(hub, job_registry, connection):
    hub.subscribe(connection, "abc")
    hub.unsubscribe(connection, "abc")
    hub.unsubscribe(connection, "abc")
    job_registry.create("abc")
    assert hub.flush()
    assert len(connection.sent) == 1
    assert hub.subscriber_count("abc") == 0


def test_connection_closed_removes_everywhere(hub, job_registry, connection):
    hub.subscribe(connection, "a")
    hub.subscribe(connection, "b")
    assert hub.flush()
    hub.on_connection_closed(connection)
    hub.on_connection_closed(connection)

    assert hub.subscriber_count("a") == 0
    assert hub.subscriber_count("b") == 0
    job_registry.create("a")
    assert hub.flush()
    assert len(connection.sent) == 2


def test_broken_connection_is_dropped(hub, job_registry, connection_factory):
    broken = connection_factory(fail=True)
    healthy = connection_factory()
    hub.subscribe(broken, "abc")
    hub.subscribe(healthy, "abc")

    job_registry.create("abc")
    assert hub.flush()

    assert hub.publish("abc") == 1
    assert hub.flush()
    assert len(healthy.sent) == 3
    assert hub.subscriber_count("abc") == 1


def test_slow_connection_does_not_block_publisher_or_others(hub, job_registry, connection_factory):
    slow = connection_factory(delay=1.0)
    fast = connection_factory()
    job_registry.create("abc")
    job_registry.start("abc")
    hub.subscribe(slow, "abc")
    hub.subscribe(fast, "abc")
    try:
        started = time.monotonic()
        job_registry.progress("abc", 10)
        job_registry.progress("abc", 20)
        assert time.monotonic() - started < 0.5

        assert wait_until(lambda: len(fast.sent) == 3, timeout=0.5)
        assert [m["job"]["progress"] for m in messages(fast)] == [0, 10, 20]
    finally:
        hub.on_connection_closed(slow)


def test_stalled_connection_is_dropped_when_too_far_behind(job_registry):
    hub = StatusHub(job_registry, max_pending=2)
    release = threading.Event()

    class StalledConnection:
        def send(self, message):
            release.wait(5)

    stalled = StalledConnection()
    try:
        hub.subscribe(stalled, "abc")
        for percent in (10, 20, 30):
            hub.publish("abc", {"status": "running", "progress": percent})

        assert hub.subscriber_count("abc") == 0
        assert hub.publish("abc", {"status": "running", "progress": 40}) == 0
    finally:
        release.set()


def test_late_subscribers_never_see_state_go_backwards(hub, job_registry, connection_factory):
    job_registry.create("abc")
    job_registry.start("abc")
    connections = [connection_factory() for _ in range(20)]

    def convert():
        for percent in range(1, 100):
            job_registry.progress("abc", percent)
        job_registry.finish("abc")

    engine_thread = threading.Thread(target=convert)
    engine_thread.start()
    for conn in connections:
        hub.subscribe(conn, "abc")
    engine_thread.join(5)
    assert hub.flush()

    for conn in connections:
        jobs = [m["job"] for m in messages(conn)]
        ranks = [STATUS_ORDER[job["status"]] for job in jobs]
        progress = [job["progress"] for job in jobs]
        assert ranks == sorted(ranks)
        assert progress == sorted(progress)
        assert jobs[-1]["status"] == "done"


def test_publish_without_subscribers(hub):
    assert hub.publish("nobody") == 0


def test_flush_without_connections(hub):
    assert hub.flush(timeout=0.1)
