"""pykef Python Package

Python library for controlling KEF LS50 Wireless and LSX speakers over TCP.
"""

from pykef.listener import LoggingListener, SpeakerListener
from pykef.speaker import KEFSpeaker
from pykef.state import ConnectionState, Power, Source, StateSnapshot

__all__ = [
    "ConnectionState",
    "KEFSpeaker",
    "LoggingListener",
    "Power",
    "Source",
    "SpeakerListener",
    "StateSnapshot",
]
