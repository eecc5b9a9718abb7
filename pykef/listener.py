from abc import ABC, abstractmethod
import logging
from typing import List, Optional

from pykef.state import ConnectionState, StateSnapshot


class ResponseListener(ABC):
    """Receives transport events from SpeakerProtocol."""

    @abstractmethod
    def connected(self):
        pass

    @abstractmethod
    def disconnected(self, exc: Optional[Exception]):
        pass

    @abstractmethod
    def frame_received(self, frame):
        """Called with each decoded frame (see pykef.protocol.Frame)."""
        pass


class SpeakerListener(ABC):

    @abstractmethod
    def state_changed(self, state: StateSnapshot):
        """Called when volume, mute, source or power changed (or always, in emit-unchanged mode)."""
        pass

    @abstractmethod
    def connected(self):
        pass

    @abstractmethod
    def closed(self, cause: Optional[Exception]):
        pass

    def connection_state_changed(self, state: ConnectionState, cause: Optional[Exception] = None):
        # Called for every transition, before the state specific hook below.
        pass

    def connecting(self):
        pass

    def disconnected(self):
        pass

    def transport_error(self, exc: Exception):
        # By default, do nothing but can be overwritten to be notified of socket errors.
        pass


class MultiplexingListener(SpeakerListener):

    _listeners: List[SpeakerListener]

    def __init__(self):
        self._logger = logging.getLogger(__name__)
        self._listeners = []

    def _dispatch(self, method: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception:
                self._logger.error(f"Exception in {method}() listener callback", exc_info=True)

    def state_changed(self, state: StateSnapshot):
        self._dispatch("state_changed", state)

    def connection_state_changed(self, state: ConnectionState, cause: Optional[Exception] = None):
        self._dispatch("connection_state_changed", state, cause)

    def connecting(self):
        self._dispatch("connecting")

    def connected(self):
        self._dispatch("connected")

    def disconnected(self):
        self._dispatch("disconnected")

    def closed(self, cause: Optional[Exception]):
        self._dispatch("closed", cause)

    def transport_error(self, exc: Exception):
        self._dispatch("transport_error", exc)

    def register_listener(self, listener: SpeakerListener):
        self._listeners.append(listener)

    def unregister_listener(self, listener: SpeakerListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        else:
            self._logger.info("Listener isn't registered")


class LoggingListener(SpeakerListener):

    def __init__(self, logger=logging):
        self.logger = logger

    def connecting(self):
        self.logger.info("Connecting")

    def connected(self):
        self.logger.info("Connected")

    def disconnected(self):
        self.logger.info("Disconnected")

    def closed(self, cause: Optional[Exception]):
        if cause is not None:
            self.logger.info(f"Closed: {cause}")
        else:
            self.logger.info("Closed")

    def transport_error(self, exc: Exception):
        self.logger.warning(f"Socket error: {exc}")

    def state_changed(self, state: StateSnapshot):
        self.logger.info(
            f"Power: {state.power.name}, source: {state.source.name}, "
            f"volume: {state.volume}, muted: {state.muted}"
        )
