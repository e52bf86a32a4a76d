"""Tests for progress streams."""

import orjson
import pytest

from docstream.jobs.progress import ProgressEvent, ProgressHub, ProgressStream


def test_events_reach_the_listener_in_order() -> None:
    hub = ProgressHub()
    subscription = hub.subscribe("job_1")
    hub.publish("job_1", "started", "go", 0.0)
    hub.publish("job_1", "progress", "half", 50.0)
    hub.publish("job_1", "completed", "done", 100.0, {"status": "completed"})
    events = list(subscription)
    assert [event.type for event in events] == ["started", "progress", "completed"]
    assert subscription.finished
    assert "job_1" not in hub.channels


def test_publish_without_listener_is_dropped() -> None:
    hub = ProgressHub()
    event = hub.publish("nobody", "progress", "lost", 10.0)
    assert event.type == "progress"
    assert hub.channels == []
    assert hub.has_listener("nobody") is False


def test_full_buffer_drops_without_blocking() -> None:
    stream = ProgressStream("chan", buffer_size=2)
    subscription = stream.attach()
    results = [stream.publish(ProgressEvent("progress", f"step {idx}", "chan", float(idx))) for idx in range(5)]
    assert results == [True, True, False, False, False]
    assert [event.message for event in subscription.poll()] == ["step 0", "step 1"]


def test_terminal_event_is_forced_through_a_full_buffer() -> None:
    stream = ProgressStream("chan", buffer_size=2)
    subscription = stream.attach()
    stream.publish(ProgressEvent("progress", "a", "chan"))
    stream.publish(ProgressEvent("progress", "b", "chan"))
    assert stream.publish(ProgressEvent("failed", "boom", "chan")) is True
    events = list(subscription)
    assert events[-1].type == "failed"
    assert stream.closed
    assert stream.publish(ProgressEvent("progress", "late", "chan")) is False


def test_new_listener_ends_the_previous_one() -> None:
    stream = ProgressStream("chan")
    first = stream.attach()
    second = stream.attach()
    assert first.closed
    assert not second.closed
    stream.publish(ProgressEvent("progress", "only second", "chan"))
    assert first.poll() == []
    assert [event.message for event in second.poll()] == ["only second"]


def test_attach_after_close_yields_a_finished_subscription() -> None:
    hub = ProgressHub()
    stream = hub.channel("chan")
    stream.close()
    subscription = stream.attach()
    assert subscription.closed
    assert list(subscription) == []
    assert "chan" not in hub.channels


def test_cancelled_listener_detaches_and_hub_forgets_channel() -> None:
    hub = ProgressHub()
    subscription = hub.subscribe("upload-1")
    assert hub.has_listener("upload-1")
    subscription.cancel()
    assert hub.has_listener("upload-1") is False
    assert "upload-1" not in hub.channels
    hub.publish("upload-1", "progress", "after detach", 20.0)


def test_event_serialises_to_ndjson() -> None:
    event = ProgressEvent("progress", "Chunking", "job_9", 40.0, {"windows": 3})
    line = event.to_line()
    assert line.endswith(b"\n")
    payload = orjson.loads(line)
    assert payload["type"] == "progress"
    assert payload["percent"] == 40.0
    assert payload["data"] == {"windows": 3}
    assert "timestamp" in payload


def test_unknown_event_type() -> None:
    with pytest.raises(ValueError):
        ProgressEvent("exploded", "?", "chan")
