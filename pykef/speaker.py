"""KEF speaker client with connection management and state tracking.

This module contains the high-level speaker abstraction:
- Connection lifecycle (DISCONNECTED -> CONNECTING -> CONNECTED -> CLOSED)
- Automatic reconnection at a fixed interval, one attempt outstanding at a time
- Device state derived from frames the speaker pushes or answers
- Commands (source, power off, volume, mute) written to the socket

Command callbacks are invoked when the frame has been written to the socket,
not when the speaker applied it. Register a SpeakerListener to learn about the
resulting state."""

import asyncio
import logging
from asyncio import Task
from typing import Any, Optional

from pykef.listener import MultiplexingListener, ResponseListener, SpeakerListener
from pykef.poller import CompletionCallback, PollSequencer, notify
from pykef.protocol import (
    DEFAULT_PORT,
    POWER_OFF,
    SOURCE_QUERY,
    VOLUME_QUERY,
    AckFrame,
    SourceFrame,
    SpeakerProtocol,
    UnparsedFrame,
    VolumeFrame,
    encode_set_volume,
    encode_source,
    is_valid_volume,
)
from pykef.scheduler import SingleFlight, TaskScheduler
from pykef.state import MUTE_OFFSET, ConnectionState, DeviceState, Power, Source, StateSnapshot

# The speaker needs a moment after reporting "powering on" before it knows its input
TRANSITION_SETTLE_DELAY = 1.0
# Power off takes a few seconds and the speaker never announces it
POWER_OFF_CHECK_DELAY = 5.0


class SpeakerResponseHandler(ResponseListener):
    """Forwards transport events of one connection attempt to the speaker.

    Each attempt gets its own SpeakerProtocol and handler. Events from an
    attempt that end() or a later connect() superseded are not forwarded.
    """

    def __init__(self, speaker: "KEFSpeaker", generation: int):
        self._speaker = speaker
        self._generation = generation
        self.protocol: Optional[SpeakerProtocol] = None

    @property
    def current(self) -> bool:
        return self._speaker._generation == self._generation

    def connected(self):
        self._speaker._on_connected(self)

    def disconnected(self, exc: Optional[Exception]):
        if self.current:
            self._speaker._on_disconnected(exc)

    def frame_received(self, frame):
        if self.current:
            self._speaker._on_frame(frame)


class KEFSpeaker:
    """Persistent connection to a KEF LS50 Wireless / LSX speaker.

    Must be created from within a running event loop.
    """

    def __init__(self, host, port=DEFAULT_PORT, retry_interval=1.0, retry=True, max_volume=50,
                 check_state_interval=0, emit_unchanged_state=False, connect_on_construction=True):
        """Initialize speaker.

        Args:
            host: Speaker hostname or IP
            port: TCP port (50001 on all known models)
            retry_interval: Seconds to wait before reconnecting a closed socket
            retry: Whether a closed socket is reconnected. connect() and end() change this
            max_volume: Hard limit (1-100) for unmuted volume set by this client
            check_state_interval: Seconds between state polls, 0 to poll once per connection
            emit_unchanged_state: Emit a state event for every report, even if nothing changed
            connect_on_construction: Start connecting right away
        """
        if not host:
            raise ValueError("No host defined")
        if not 1 <= max_volume <= 100:
            raise ValueError(f"Invalid max volume set {max_volume}")

        self._host: str = host
        self._port: int = port
        self._retry_interval: float = retry_interval
        self._retry: bool = retry
        self._max_volume: int = max_volume
        self._check_state_interval: float = check_state_interval
        self._emit_unchanged_state: bool = emit_unchanged_state

        self.transition_settle_delay: float = TRANSITION_SETTLE_DELAY
        self.power_off_check_delay: float = POWER_OFF_CHECK_DELAY

        self._logger = logging.getLogger(__name__)
        self._loop = asyncio.get_running_loop()

        self._state = DeviceState()
        self._connection_state = ConnectionState.DISCONNECTED

        # Tasks
        self._connect_task: Optional[Task[Any]] = None
        self._reconnect_task: Optional[Task[Any]] = None
        self._reconnect = SingleFlight("reconnect")
        # Timers and polls that belong to the current connection only
        self._scheduler = TaskScheduler(self._loop)

        self._multiplex_callback = MultiplexingListener()
        # Bumped for every connection attempt and by end() while one is outstanding
        self._generation = 0
        self._protocol: Optional[SpeakerProtocol] = None
        self._poller = PollSequencer(self._send_frame, lambda: self.connected, self._scheduler)

        if connect_on_construction:
            self.connect()

    # ========== Public API ==========

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def max_volume(self) -> int:
        return self._max_volume

    @property
    def retry(self) -> bool:
        return self._retry

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def connected(self) -> bool:
        return self._connection_state is ConnectionState.CONNECTED

    @property
    def polling(self) -> bool:
        return self._poller.polling

    @property
    def reconnecting(self) -> bool:
        return self._reconnect.busy

    @property
    def volume(self) -> int:
        """Volume 0-100, or -1 until the speaker reported it."""
        return self._state.volume

    @property
    def muted(self) -> Optional[bool]:
        return self._state.muted

    @property
    def source(self) -> Source:
        return self._state.source

    @property
    def power(self) -> Power:
        return self._state.power

    @property
    def state(self) -> StateSnapshot:
        return self._state.snapshot(self._connection_state)

    def register_listener(self, listener: SpeakerListener):
        """Register external listener for speaker events."""
        self._multiplex_callback.register_listener(listener)

    def unregister_listener(self, listener: SpeakerListener):
        """Unregister external listener."""
        self._multiplex_callback.unregister_listener(listener)

    def connect(self) -> Optional[Task[Any]]:
        """Start connecting and re-enable automatic reconnection.

        Returns the connection attempt task, or None when already connected.
        """
        self._retry = True
        if self._connection_state is ConnectionState.CONNECTED:
            self._logger.debug("Already connected")
            return None
        if self._connection_state is ConnectionState.CONNECTING:
            self._logger.debug("Connection attempt already in progress")
            return self._connect_task

        self._logger.info(f"Connecting to {self._host}:{self._port}")
        self._generation += 1
        self._set_connection_state(ConnectionState.CONNECTING)
        self._connect_task = self._loop.create_task(self._open_connection(self._generation))
        return self._connect_task

    async def async_connect(self) -> bool:
        """Connect and wait for the outcome. Returns whether the socket is connected."""
        task = self.connect()
        if task is None:
            return self.connected
        return await task

    def end(self):
        """Close the connection and stop reconnection attempts."""
        self._retry = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        self._reconnect.finish()

        if self._protocol is not None and self._protocol.connected:
            self._protocol.close()
        elif self._connection_state is ConnectionState.CONNECTING:
            self._generation += 1
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
            self._on_closed(None)

    def check_state(self, callback: CompletionCallback = None) -> bool:
        """Query volume, then source. Refused while not connected or already polling."""
        return self._poller.check_state(callback)

    def turn_on_or_switch_source(self, source=Source.AUX, callback: CompletionCallback = None) -> bool:
        """Switch input, powering the speaker on if it is in standby.

        Raises ValueError for a name that is not an input of the speaker.
        """
        return self._write(encode_source(Source.from_name(source)), callback)

    def turn_off(self, callback: CompletionCallback = None) -> bool:
        if not self._write(POWER_OFF, callback):
            return False
        self._scheduler.call_later(self.power_off_check_delay, self.get_source)
        return True

    def set_volume(self, value: int, callback: CompletionCallback = None) -> bool:
        """Set the volume. Values of 128 and up set "muted at value - 128"."""
        if not self.connected or not is_valid_volume(value, self._max_volume):
            self._reject(f"Socket is not connected or value out of range {value}", callback)
            return False
        return self._write(encode_set_volume(value, self._max_volume), callback)

    def change_volume(self, amount: int = 1, callback: CompletionCallback = None) -> bool:
        """Change the volume relative to the last reported level. Negative amounts go down."""
        if not self._state.volume_known:
            self._reject("Unable to change relative volume, current volume unknown.", callback)
            return False
        return self.set_volume(self._state.volume + amount, callback)

    def mute_toggle(self, callback: CompletionCallback = None) -> bool:
        if self._state.muted is True:
            return self.set_volume(self._state.volume, callback)
        if self._state.muted is False:
            return self.set_volume(self._state.volume + MUTE_OFFSET, callback)
        self._reject("Unable to toggle mute, current mute state unknown", callback)
        return False

    def get_volume(self, callback: CompletionCallback = None) -> bool:
        return self._write(VOLUME_QUERY, callback)

    def get_source(self, callback: CompletionCallback = None) -> bool:
        return self._write(SOURCE_QUERY, callback)

    # ========== Connection lifecycle handlers ==========

    async def _open_connection(self, generation: int) -> bool:
        handler = SpeakerResponseHandler(self, generation)
        handler.protocol = SpeakerProtocol(handler)
        try:
            await self._loop.create_connection(
                lambda: handler.protocol, host=self._host, port=self._port
            )
        except OSError as e:
            if not handler.current:
                self._logger.debug(f"Ignoring failure of superseded connection attempt: {e}")
                return False
            self._logger.warning(f"Connection attempt to {self._host}:{self._port} failed: {e}")
            self._multiplex_callback.transport_error(e)
            self._on_closed(e)
            return False
        return handler.current and self.connected

    def _on_connected(self, handler: SpeakerResponseHandler):
        """Called by SpeakerResponseHandler when the socket is up."""
        if not handler.current or self._connection_state is not ConnectionState.CONNECTING:
            self._logger.debug("Closing socket of a superseded connection attempt")
            handler.protocol.close()
            return

        self._protocol = handler.protocol
        self._state.reset()
        self._set_connection_state(ConnectionState.CONNECTED)

        if self._check_state_interval > 0:
            self._scheduler.spawn(self._check_state_loop())
            self._logger.info(f"State polling started (interval={self._check_state_interval}s)")
        else:
            self._poller.check_state()

    def _on_disconnected(self, exc: Optional[Exception]):
        """Called by SpeakerResponseHandler when the socket is gone."""
        if exc is not None:
            self._multiplex_callback.transport_error(exc)
        self._on_closed(exc)

    def _on_closed(self, cause: Optional[Exception]):
        self._scheduler.cancel_all()

        disconnected_message = f"Disconnected from {self._host}"
        if self._retry:
            self._logger.error(disconnected_message + f", will try to reconnect in {self._retry_interval} seconds")
        else:
            self._logger.info(disconnected_message + ", not reconnecting")

        self._set_connection_state(ConnectionState.CLOSED, cause)

        if self._retry:
            self._schedule_reconnect()

    def _schedule_reconnect(self):
        if not self._reconnect.begin():
            self._logger.debug("Reconnect already scheduled")
            return
        self._reconnect_task = self._loop.create_task(self._wait_to_reconnect())

    async def _wait_to_reconnect(self):
        try:
            await asyncio.sleep(self._retry_interval)
            self._reconnect.completing()
        finally:
            self._reconnect.finish()
            self._reconnect_task = None
        if self._retry:
            self.connect()

    async def _check_state_loop(self):
        while True:
            await asyncio.sleep(self._check_state_interval)
            self._poller.check_state()

    def _set_connection_state(self, state: ConnectionState, cause: Optional[Exception] = None):
        self._connection_state = state
        self._multiplex_callback.connection_state_changed(state, cause)
        if state is ConnectionState.CONNECTING:
            self._multiplex_callback.connecting()
        elif state is ConnectionState.CONNECTED:
            self._multiplex_callback.connected()
        elif state is ConnectionState.DISCONNECTED:
            self._multiplex_callback.disconnected()
        else:
            self._multiplex_callback.closed(cause)

    # ========== Inbound frames ==========

    def _on_frame(self, frame):
        if isinstance(frame, AckFrame):
            # The ack only says the command arrived, ask what the speaker did with it
            self._logger.debug("Ack received, rechecking state")
            self._poller.check_state()
            return
        if isinstance(frame, UnparsedFrame):
            self._logger.warning(f"Unparsed data ({frame.reason}): {frame.data.hex()}")
            return

        if isinstance(frame, VolumeFrame):
            changed = self._state.apply_volume(frame.volume, frame.muted)
        elif isinstance(frame, SourceFrame):
            changed = self._state.apply_source(frame.power, frame.source, frame.standby_source)
            if frame.transitioning:
                self._logger.debug("Speaker is powering on, querying source again shortly")
                self._scheduler.call_later(self.transition_settle_delay, self.get_source)
        else:
            self._logger.warning(f"Unhandled frame {frame!r}")
            return

        if changed or self._emit_unchanged_state:
            self._multiplex_callback.state_changed(self.state)

    # ========== Outbound frames ==========

    def _send_frame(self, frame: bytes) -> Optional[str]:
        if not self.connected:
            return "Socket is not connected"
        return self._protocol.send(frame)

    def _write(self, frame: bytes, callback: CompletionCallback) -> bool:
        error = self._send_frame(frame)
        if error is not None:
            self._reject(error, callback)
            return False
        notify(callback)
        return True

    def _reject(self, message: str, callback: CompletionCallback):
        self._logger.warning(message)
        notify(callback, message)
