import asyncio
import logging
from asyncio import Task
from enum import Enum
from typing import Any, Callable, Coroutine, Optional


class FlightState(Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETING = "completing"


class SingleFlight:
    """Guard allowing at most one instance of an operation at a time.

    IDLE -> IN_PROGRESS on begin(), IN_PROGRESS -> COMPLETING when the last
    step has been issued, back to IDLE on finish(). Only IDLE accepts begin().
    """

    def __init__(self, name: str):
        self._name = name
        self._state = FlightState.IDLE

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> FlightState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not FlightState.IDLE

    def begin(self) -> bool:
        if self.busy:
            return False
        self._state = FlightState.IN_PROGRESS
        return True

    def completing(self):
        if self._state is FlightState.IN_PROGRESS:
            self._state = FlightState.COMPLETING

    def finish(self):
        self._state = FlightState.IDLE


class TaskScheduler:
    """Delayed callbacks and background tasks tied to one connection.

    Each call to cancel_all() starts a new epoch. Tasks from an older epoch are
    cancelled, and a delayed callback that still wakes up after its epoch ended
    is dropped instead of acting on a newer connection.
    """
    _tasks: set[Task[Any]]

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._logger = logging.getLogger(__name__)
        self._loop = loop
        self._epoch = 0
        self._tasks = set()

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> Task[Any]:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def call_later(self, delay: float, callback: Callable[..., Any], *args) -> Task[Any]:
        return self.spawn(self._run_later(self._epoch, delay, callback, args))

    async def _run_later(self, epoch: int, delay: float, callback: Callable[..., Any], args):
        await asyncio.sleep(delay)
        if epoch != self._epoch:
            self._logger.debug(f"Dropping stale timer {getattr(callback, '__name__', callback)} from epoch {epoch}")
            return
        callback(*args)

    def is_current(self, epoch: Optional[int]) -> bool:
        return epoch == self._epoch

    def cancel_all(self):
        self._epoch += 1
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._tasks.clear()
