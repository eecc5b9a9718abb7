"""Device and connection state for a KEF speaker.

The speaker never pushes a full status. State is rebuilt field by field from
volume reports (type 0x25) and source/power reports (type 0x30), so every field
starts out unknown and is only trustworthy once the matching report arrived.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

UNKNOWN_VOLUME = -1

# Offset the speaker adds to the volume byte when muted
MUTE_OFFSET = 128


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Source(Enum):
    UNKNOWN = -1
    WIFI = "WIFI"
    BT = "BT"
    AUX = "AUX"
    OPT = "OPT"
    USB = "USB"

    @classmethod
    def from_name(cls, name) -> "Source":
        """Look up an input by name, accepting a Source or a case-insensitive string."""
        if isinstance(name, Source):
            source = name
        else:
            try:
                source = cls[str(name).upper()]
            except KeyError:
                raise ValueError(f"Invalid input: {name}") from None
        if source is cls.UNKNOWN:
            raise ValueError(f"Invalid input: {name}")
        return source


class Power(Enum):
    UNKNOWN = -1
    OFF = 0
    ON = 1


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable view of the speaker handed to listeners."""
    volume: int
    muted: Optional[bool]
    source: Source
    power: Power
    connection_state: ConnectionState
    standby_source: Source = Source.UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        return {
            "volume": self.volume,
            "muted": self.muted,
            "source": self.source.name,
            "connection_state": self.connection_state.value,
            "power": self.power.name,
            "standby_source": self.standby_source.name,
        }


@dataclass
class DeviceState:
    """Mutable model of the speaker, updated in place from decoded frames.

    The apply_* methods return True when a watched field (volume, muted, source,
    power) changed. standby_source only records the input the speaker reported
    while off, is cleared once it reports ON, and never marks the state dirty
    on its own.
    """
    volume: int = UNKNOWN_VOLUME
    muted: Optional[bool] = None
    source: Source = Source.UNKNOWN
    power: Power = Power.UNKNOWN
    standby_source: Source = Source.UNKNOWN

    @property
    def volume_known(self) -> bool:
        return self.volume != UNKNOWN_VOLUME

    @property
    def mute_known(self) -> bool:
        return self.muted is not None

    def reset(self):
        """Forget everything learned from a previous session."""
        self.volume = UNKNOWN_VOLUME
        self.muted = None
        self.source = Source.UNKNOWN
        self.power = Power.UNKNOWN
        self.standby_source = Source.UNKNOWN

    def apply_volume(self, volume: int, muted: bool) -> bool:
        changed = volume != self.volume or muted != self.muted
        self.volume = volume
        self.muted = muted
        return changed

    def apply_source(self, power: Power, source: Source, standby_source: Optional[Source] = None) -> bool:
        changed = power != self.power or source != self.source
        self.power = power
        self.source = source
        if power is Power.ON:
            # Only meaningful in standby
            self.standby_source = Source.UNKNOWN
        elif standby_source is not None:
            self.standby_source = standby_source
        return changed

    def snapshot(self, connection_state: ConnectionState) -> StateSnapshot:
        return StateSnapshot(
            volume=self.volume,
            muted=self.muted,
            source=self.source,
            power=self.power,
            connection_state=connection_state,
            standby_source=self.standby_source,
        )
