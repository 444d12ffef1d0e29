from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

LOGGER = logging.getLogger(__name__)

_CRON_FIELDS = ("second", "minute", "hour", "day", "month", "day_of_week", "year")


def build_cron_trigger(expression: str) -> CronTrigger:
    """Build a UTC :class:`CronTrigger` from a cron expression.

    Accepts the classic 5-field form (``min hour dom mon dow``, firing at
    second 0), the 6-field form with seconds first, and a 7-field form with a
    trailing year. Raises ``ValueError`` for anything else.
    """
    parts = expression.split()
    if len(parts) == 5:
        parts = ["0", *parts]
    if len(parts) not in (6, 7):
        raise ValueError(
            f"expected 5, 6 or 7 fields, got {len(parts)} in {expression!r}"
        )
    fields = {name: value for name, value in zip(_CRON_FIELDS, parts) if value != "?"}
    return CronTrigger(timezone=UTC, **fields)


def run_forever(
    trigger: CronTrigger,
    job: Callable[[], object],
    shutdown_event: threading.Event,
    now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> None:
    """Run *job* at every fire time of *trigger* until *shutdown_event* is set.

    The job runs synchronously on the calling thread, so a cycle that
    overruns its slot delays the next one instead of overlapping it.
    Exceptions escaping the job are logged and the loop keeps going.
    """
    previous: datetime | None = None
    while not shutdown_event.is_set():
        now = now_fn()
        if previous is not None:
            # Missed fire times are skipped, never replayed back to back.
            now = max(now, previous + timedelta(microseconds=1))
        next_fire = trigger.get_next_fire_time(None, now)
        if next_fire is None:
            LOGGER.warning("Cron schedule has no future fire times; stopping scheduler")
            return

        delay = max(0.0, (next_fire - now).total_seconds())
        LOGGER.debug("Next reconciliation cycle at %s", next_fire.isoformat())
        if shutdown_event.wait(timeout=delay):
            return
        previous = next_fire

        try:
            job()
        except Exception:
            LOGGER.exception("Reconciliation cycle crashed")
