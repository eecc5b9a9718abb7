"""Shared test helpers: recording listener, callbacks and speaker setup."""

from typing import Optional
from unittest.mock import MagicMock

from pykef.listener import SpeakerListener
from pykef.speaker import KEFSpeaker
from pykef.state import ConnectionState, StateSnapshot

HOST = "192.168.1.50"


class RecordingListener(SpeakerListener):
    """Keeps every event it receives."""

    def __init__(self):
        self.states: list[StateSnapshot] = []
        self.transitions: list[ConnectionState] = []
        self.causes: list[Optional[Exception]] = []
        self.errors: list[Exception] = []

    def state_changed(self, state: StateSnapshot):
        self.states.append(state)

    def connection_state_changed(self, state: ConnectionState, cause: Optional[Exception] = None):
        self.transitions.append(state)

    def connected(self):
        pass

    def closed(self, cause: Optional[Exception]):
        self.causes.append(cause)

    def transport_error(self, exc: Exception):
        self.errors.append(exc)


def make_speaker(host: str = HOST, **kwargs) -> KEFSpeaker:
    """Build a speaker with short delays. Must run inside the event loop."""
    kwargs.setdefault("connect_on_construction", False)
    kwargs.setdefault("retry_interval", 0.05)
    speaker = KEFSpeaker(host, **kwargs)
    speaker._poller.query_delay = 0.01
    speaker.transition_settle_delay = 0.03
    speaker.power_off_check_delay = 0.03
    return speaker


def written(transport: MagicMock) -> list[bytes]:
    return [call.args[0] for call in transport.write.call_args_list]


class Callback:
    """Completion callback that records what it was called with."""

    def __init__(self):
        self.calls: list[Optional[str]] = []

    def __call__(self, error: Optional[str] = None):
        self.calls.append(error)

    @property
    def error(self) -> Optional[str]:
        assert len(self.calls) == 1
        return self.calls[0]


def shutdown(speaker: KEFSpeaker):
    """End the speaker and deliver the connection_lost the real transport would."""
    speaker.end()
    protocol = speaker._protocol
    if protocol is not None and protocol._transport is not None:
        protocol.connection_lost(None)
