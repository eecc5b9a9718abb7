"""Two step status query: volume first, source after a pause.

The speaker returns a stale source if it is queried right after a volume query,
so the source query always waits STATE_QUERY_DELAY seconds after the volume
query went out. Only one sequence runs at a time; a request made while one is
running is refused, not queued.
"""

import asyncio
import logging
from asyncio import Task
from functools import partial
from typing import Callable, Optional

from pykef.protocol import SOURCE_QUERY, VOLUME_QUERY
from pykef.scheduler import FlightState, SingleFlight, TaskScheduler

STATE_QUERY_DELAY = 0.3

BUSY_MESSAGE = "Socket is not connected or already requesting state from speaker, ignoring"
CANCELLED_MESSAGE = "Connection closed before state check completed"

CompletionCallback = Optional[Callable[[Optional[str]], None]]


def notify(callback: CompletionCallback, error: Optional[str] = None):
    if callback is not None:
        callback(error)


class PollSequencer:

    def __init__(
        self,
        send: Callable[[bytes], Optional[str]],
        is_connected: Callable[[], bool],
        scheduler: TaskScheduler,
        query_delay: float = STATE_QUERY_DELAY,
    ):
        self._logger = logging.getLogger(__name__)
        self._send = send
        self._is_connected = is_connected
        self._scheduler = scheduler
        self.query_delay = query_delay
        self._flight = SingleFlight("poll")

    @property
    def state(self) -> FlightState:
        return self._flight.state

    @property
    def polling(self) -> bool:
        return self._flight.busy

    def check_state(self, callback: CompletionCallback = None) -> bool:
        """Start a volume -> source query sequence.

        Returns False and reports BUSY_MESSAGE to the callback straight away when
        not connected or a sequence is already running. Otherwise the callback
        runs once the source query has been written.
        """
        if not self._is_connected() or not self._flight.begin():
            self._logger.debug("State check refused, not connected or already polling")
            notify(callback, BUSY_MESSAGE)
            return False

        error = self._send(VOLUME_QUERY)
        if error is not None:
            self._flight.finish()
            notify(callback, error)
            return False

        task = self._scheduler.spawn(self._query_source(self._scheduler.epoch))
        # A task cancelled before its first step never runs its body, so release the guard from here
        task.add_done_callback(partial(self._sequence_done, callback))
        return True

    async def _query_source(self, epoch: int) -> Optional[str]:
        await asyncio.sleep(self.query_delay)
        if not self._scheduler.is_current(epoch):
            return CANCELLED_MESSAGE
        self._flight.completing()
        return self._send(SOURCE_QUERY)

    def _sequence_done(self, callback: CompletionCallback, task: Task[Optional[str]]):
        self._flight.finish()
        if task.cancelled():
            error = CANCELLED_MESSAGE
        elif task.exception() is not None:
            self._logger.error("State check failed", exc_info=task.exception())
            error = f"State check failed: {task.exception()}"
        else:
            error = task.result()
        notify(callback, error)
