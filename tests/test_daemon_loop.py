import threading

from common.daemon_loop import _safe_item_summary, process_batch, run_polling_loop


def test_process_batch_continues_on_item_error():
    processed = []

    def process_item(item):
        if item == 2:
            raise RuntimeError("boom")
        processed.append(item)

    succeeded = process_batch(
        daemon_name="test",
        items=[1, 2, 3],
        process_item=process_item,
        max_workers=2,
    )

    assert succeeded == 2
    assert sorted(processed) == [1, 3]


def test_process_batch_with_no_items():
    assert process_batch(daemon_name="test", items=[], process_item=print, max_workers=4) == 0


def test_process_batch_never_exceeds_max_workers():
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def process_item(_item):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        threading.Event().wait(0.01)
        with lock:
            active["now"] -= 1

    process_batch(
        daemon_name="test", items=range(8), process_item=process_item, max_workers=2
    )

    assert active["peak"] <= 2


def test_run_polling_loop_ticks_until_interrupted():
    ticks = []

    def tick():
        ticks.append(1)
        return len(ticks) % 2

    sleep_calls = []

    def sleep(seconds):
        sleep_calls.append(seconds)
        if len(sleep_calls) == 3:
            raise KeyboardInterrupt

    run_polling_loop(
        daemon_name="test", tick=tick, poll_interval_seconds=15, sleep=sleep
    )

    assert len(ticks) == 3
    assert sleep_calls == [15, 15, 15]


def test_run_polling_loop_survives_tick_errors():
    calls = {"tick": 0}
    stop = threading.Event()

    def tick():
        calls["tick"] += 1
        if calls["tick"] == 1:
            raise RuntimeError("database unavailable")
        stop.set()
        return 0

    run_polling_loop(
        daemon_name="test",
        tick=tick,
        poll_interval_seconds=0.5,
        sleep=lambda _seconds: None,
        should_stop=stop.is_set,
    )

    assert calls["tick"] == 2


def test_run_polling_loop_does_not_tick_when_already_stopped():
    calls = []

    run_polling_loop(
        daemon_name="test",
        tick=lambda: calls.append(1) or 0,
        poll_interval_seconds=1,
        should_stop=lambda: True,
    )

    assert calls == []


def test_safe_item_summary():
    class Item:
        id = "doc-1"

    assert _safe_item_summary({"id": 7}) == "id=7"
    assert _safe_item_summary({"b": 1, "a": 2}) == "dict_keys=['a', 'b']"
    assert _safe_item_summary(Item()) == "id=doc-1"
    assert _safe_item_summary("doc-2") == "doc-2"
