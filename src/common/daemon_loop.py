"""
Daemon Loop Utilities
=====================

The OCR queue runs as a long-running poller with a simple control flow:

- Every interval, run one "tick" that claims a batch of work.
- Process the batch concurrently on a bounded thread pool.
- Keep running until SIGINT / Ctrl-C or until asked to stop.

This module contains the reusable pieces of that loop so the queue engine
and the daemon entrypoint stay thin and easy to read.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def process_batch(
    *,
    daemon_name: str,
    items: Iterable[T],
    process_item: Callable[[T], None],
    max_workers: int,
) -> int:
    """
    Process a batch of work items concurrently in a thread pool.

    Exceptions raised while processing one item are logged and do not affect
    the other items of the batch. Returns the number of items that completed
    without raising.
    """
    items = list(items)
    if not items:
        return 0
    max_workers = max(1, min(int(max_workers), len(items)))

    log.info(
        "Processing batch",
        daemon=daemon_name,
        item_count=len(items),
        max_workers=max_workers,
    )

    succeeded = 0
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_item = {executor.submit(process_item, item): item for item in items}
        for future in as_completed(future_to_item):
            item = future_to_item[future]
            try:
                future.result()
                succeeded += 1
            except Exception:
                # The per-item processor owns the document's failure path;
                # anything escaping it is only logged here.
                log.exception(
                    "Work item failed",
                    daemon=daemon_name,
                    item=_safe_item_summary(item),
                )
    return succeeded


def run_polling_loop(
    *,
    daemon_name: str,
    tick: Callable[[], int],
    poll_interval_seconds: float,
    sleep: Callable[[float], object] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> None:
    """
    Run ``tick`` every ``poll_interval_seconds`` until stopped.

    Args:
        daemon_name:
            Name used in log messages.
        tick:
            Runs one poll; returns how many work items it handled.
        poll_interval_seconds:
            How long to sleep between ticks.
        sleep:
            Injectable sleep function. A ``threading.Event.wait`` can be passed
            so that ``stop()`` interrupts the wait.
        should_stop:
            Checked before every tick.
    """
    poll_interval_seconds = max(0.001, float(poll_interval_seconds))

    was_idle = False
    while not should_stop():
        try:
            handled = tick()
            if not handled:
                if not was_idle:
                    log.info("No work found; waiting", daemon=daemon_name)
                was_idle = True
            else:
                was_idle = False
            sleep(poll_interval_seconds)
        except KeyboardInterrupt:
            log.info("Ctrl-C received; exiting", daemon=daemon_name)
            break
        except Exception:
            log.exception(
                "Unexpected error in daemon loop; sleeping",
                daemon=daemon_name,
                poll_interval_seconds=poll_interval_seconds,
            )
            sleep(poll_interval_seconds)
    log.info("Polling loop stopped", daemon=daemon_name)


def _safe_item_summary(item: object) -> str:
    """
    Best-effort string for logging a work item.
    """
    try:
        if isinstance(item, dict):
            if "id" in item:
                return f"id={item.get('id')}"
            return f"dict_keys={sorted(item.keys())}"
        item_id = getattr(item, "id", None)
        if item_id is not None:
            return f"id={item_id}"
        return str(item)
    except Exception:
        return "<unprintable>"
