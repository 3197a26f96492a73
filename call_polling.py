"""
call_polling.py
---------------
RecordVerify - Patient-Verified Health Records - Bounded call status polling
-----------------------------------------------------------------------------
Waits for a verification call to reach a terminal status (ended / error)
without ever waiting longer than the call's own forced-hangup cap.

Loop contract:
  - sleep(interval) precedes every status check;
  - stop as soon as a check returns a terminal status;
  - stop once the clock passes the deadline, then make exactly one extra
    status fetch and flag the outcome as timed out;
  - a failing status fetch is logged and polling continues;
  - cancellation of the awaiting task propagates out of sleep().

sleep and clock are injectable so tests run instantly and deterministically.

Project: RecordVerify - Patient-Verified Health Records
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from errors import RecordVerifyError
from schemas import CallStatusSnapshot

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], float]


@dataclass
class PollOutcome:
    """
    Result of poll_until_terminal.

    Attributes:
        snapshot:  Last successfully fetched status, None if every fetch failed.
        timed_out: True when the deadline passed before a terminal status.
        polls:     Number of status fetches attempted, including the final one.
    """
    snapshot: Optional[CallStatusSnapshot]
    timed_out: bool
    polls: int

    @property
    def is_terminal(self) -> bool:
        return self.snapshot is not None and self.snapshot.is_terminal


async def _fetch(client: Any, call_id: str) -> Optional[CallStatusSnapshot]:
    try:
        return await client.get_status(call_id)
    except (RecordVerifyError, RuntimeError) as exc:
        logger.warning("Status check for call %s failed: %s; continuing to poll.", call_id, exc)
        return None


async def poll_until_terminal(
    client: Any,
    call_id: str,
    interval_seconds: float,
    ceiling_seconds: float,
    sleep: SleepFn = asyncio.sleep,
    clock: ClockFn = time.monotonic,
) -> PollOutcome:
    """
    Poll a call's status until it is terminal or the ceiling elapses.

    Args:
        client:           Object with ``async get_status(call_id) -> CallStatusSnapshot``.
        call_id:          Call to watch.
        interval_seconds: Pause before each check.
        ceiling_seconds:  Longest time to wait; the call's max duration.
        sleep:            Awaitable sleep (asyncio.sleep in production).
        clock:            Monotonic clock in seconds.

    Returns:
        PollOutcome: The number of fetches never exceeds
            ceil(ceiling / interval) + 1.

    Raises:
        asyncio.CancelledError: if the awaiting task is cancelled.
    """
    deadline = clock() + ceiling_seconds
    last: Optional[CallStatusSnapshot] = None
    polls = 0

    while clock() < deadline:
        await sleep(interval_seconds)
        if clock() >= deadline:
            break
        polls += 1
        snapshot = await _fetch(client, call_id)
        if snapshot is None:
            continue
        last = snapshot
        logger.debug("Call %s poll #%d: %s", call_id, polls, snapshot.status)
        if snapshot.is_terminal:
            logger.info("Call %s reached terminal status '%s' after %d poll(s).",
                        call_id, snapshot.status, polls)
            return PollOutcome(snapshot=snapshot, timed_out=False, polls=polls)

    polls += 1
    final = await _fetch(client, call_id)
    if final is not None:
        last = final
    logger.warning(
        "Call %s did not finish within %.0fs; final status '%s'.",
        call_id, ceiling_seconds, last.status if last else "unknown",
    )
    return PollOutcome(snapshot=last, timed_out=True, polls=polls)
