import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from pykef.listener import ResponseListener
from pykef.state import MUTE_OFFSET, Power, Source

# KEF LS50W/LSX speakers speak a small binary protocol on TCP port 50001.
# Commands start with 0x53 (set) or 0x47 (get), responses with 0x52.
# The last byte of every command is a checksum. The speaker does not validate
# it for volume sets, so only the fixed frames below carry a real one.
DEFAULT_PORT = 50001

SOURCE_COMMANDS: dict[Source, bytes] = {
    Source.WIFI: bytes([0x53, 0x30, 0x81, 0x12, 0x82]),
    Source.BT: bytes([0x53, 0x30, 0x81, 0x19, 0xAD]),
    Source.AUX: bytes([0x53, 0x30, 0x81, 0x1A, 0x9B]),
    Source.OPT: bytes([0x53, 0x30, 0x81, 0x1B, 0x00]),
    Source.USB: bytes([0x53, 0x30, 0x81, 0x1C, 0xF7]),
}
VOLUME_QUERY = bytes([0x47, 0x25, 0x80, 0x6C])
SOURCE_QUERY = bytes([0x47, 0x30, 0x80, 0xD9])
POWER_OFF = bytes([0x53, 0x30, 0x81, 0x9B, 0x0B])

# Every fixed frame by name, used for fixtures and diagnostics
COMMANDS: dict[str, bytes] = {
    **{source.name: frame for source, frame in SOURCE_COMMANDS.items()},
    "VOL_GET": VOLUME_QUERY,
    "SRC_GET": SOURCE_QUERY,
    "OFF": POWER_OFF,
}

VOLUME_SET_PREFIX = bytes([0x53, 0x25, 0x81])
VOLUME_SET_SUFFIX = 0x1A

RESPONSE_HEADER = 0x52
RESPONSE_ACK = 0x11
RESPONSE_VOLUME = 0x25
RESPONSE_SOURCE = 0x30
PAYLOAD_OFFSET = 3
# Ack is 52 11 ff, reports are 52 <type> 81 <payload> <checksum>
RESPONSE_LENGTHS: dict[int, int] = {
    RESPONSE_ACK: 3,
    RESPONSE_VOLUME: 5,
    RESPONSE_SOURCE: 5,
}

# Source byte while the speaker is in standby, naming the input it will wake on
OFF_INPUT_FLAG: dict[int, Source] = {
    0x92: Source.WIFI,
    0x9A: Source.AUX,
    0x9F: Source.BT,
    0x9C: Source.USB,
    0x9B: Source.OPT,
}

# Speaker is powering up and has not picked an input yet
TRANSITION_INPUT_FLAG = 0x90

ON_INPUT_FLAG: dict[int, Source] = {
    0x12: Source.WIFI,
    0x1A: Source.AUX,
    0x1F: Source.BT,
    0x1C: Source.USB,
    0x1B: Source.OPT,
}


@dataclass(frozen=True)
class AckFrame:
    """Speaker received a command. It says nothing about what it applied."""


@dataclass(frozen=True)
class VolumeFrame:
    volume: int
    muted: bool


@dataclass(frozen=True)
class SourceFrame:
    power: Power
    source: Source
    transitioning: bool = False
    standby_source: Optional[Source] = None


@dataclass(frozen=True)
class UnparsedFrame:
    data: bytes
    reason: str


Frame = Union[AckFrame, VolumeFrame, SourceFrame, UnparsedFrame]


def is_valid_volume(value: int, max_volume: int) -> bool:
    """Whether value is encodable: an unmuted level up to max_volume, or any muted level."""
    return value >= 0 and (value >= MUTE_OFFSET or value <= max_volume)


def encode_set_volume(value: int, max_volume: int) -> bytes:
    """Build the volume set frame.

    Values from 128 up mean "muted at value - 128". Muted levels are capped at
    128 + max_volume, unmuted levels above max_volume are refused.
    """
    if not is_valid_volume(value, max_volume):
        raise ValueError(f"Volume {value} out of range (max volume {max_volume})")
    level = min(value, MUTE_OFFSET + max_volume)
    return VOLUME_SET_PREFIX + bytes([level, VOLUME_SET_SUFFIX])


def encode_source(source: Source) -> bytes:
    if source not in SOURCE_COMMANDS:
        raise ValueError(f"Invalid input: {source}")
    return SOURCE_COMMANDS[source]


def decode_volume(payload: int) -> VolumeFrame:
    if payload >= MUTE_OFFSET:
        return VolumeFrame(volume=payload - MUTE_OFFSET, muted=True)
    return VolumeFrame(volume=payload, muted=False)


def decode_source(payload: int) -> Optional[SourceFrame]:
    if payload in OFF_INPUT_FLAG:
        return SourceFrame(power=Power.OFF, source=Source.UNKNOWN, standby_source=OFF_INPUT_FLAG[payload])
    if payload == TRANSITION_INPUT_FLAG:
        return SourceFrame(power=Power.ON, source=Source.UNKNOWN, transitioning=True)
    if payload in ON_INPUT_FLAG:
        return SourceFrame(power=Power.ON, source=ON_INPUT_FLAG[payload])
    return None


def split_frames(data: bytes) -> list[bytes]:
    """Split a received chunk into single responses.

    TCP can deliver two responses in one chunk, e.g. an ack followed by a
    volume report. Known responses are cut at their fixed length. Anything
    that does not start with a known response is kept whole, as is a short tail.
    """
    frames = []
    while True:
        length = None
        if len(data) > 1 and data[0] == RESPONSE_HEADER:
            length = RESPONSE_LENGTHS.get(data[1])
        if length is None or len(data) <= length:
            frames.append(bytes(data))
            return frames
        frames.append(bytes(data[:length]))
        data = data[length:]


def decode_frame(data: bytes) -> Frame:
    """Decode one response received from the speaker."""
    if not data or data[0] != RESPONSE_HEADER:
        return UnparsedFrame(bytes(data), "not a response")
    if len(data) < 2:
        return UnparsedFrame(bytes(data), "truncated")

    response_type = data[1]
    if response_type == RESPONSE_ACK:
        return AckFrame()
    if response_type not in (RESPONSE_VOLUME, RESPONSE_SOURCE):
        return UnparsedFrame(bytes(data), f"unknown response type 0x{response_type:02x}")
    if len(data) <= PAYLOAD_OFFSET:
        return UnparsedFrame(bytes(data), "truncated")

    payload = data[PAYLOAD_OFFSET]
    if response_type == RESPONSE_VOLUME:
        return decode_volume(payload)
    frame = decode_source(payload)
    if frame is None:
        return UnparsedFrame(bytes(data), f"unknown source byte 0x{payload:02x}")
    return frame


class SpeakerProtocol(asyncio.Protocol):
    """Transport adapter: turns socket events into ResponseListener calls.

    A data_received chunk can hold more than one response, see split_frames.
    """
    _transport: Optional[asyncio.Transport]

    def __init__(self, callback: ResponseListener):
        self._logger = logging.getLogger(__name__)
        self._callback = callback
        self._transport = None
        self.peer_name = None

    @property
    def connected(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    def connection_made(self, transport):
        """Method from asyncio.Protocol"""
        self._transport = transport
        self.peer_name = transport.get_extra_info("peername")
        self._logger.info(f"Connection Made: {self.peer_name}")
        self._callback.connected()

    def connection_lost(self, exc):
        """Method from asyncio.Protocol"""
        self._transport = None
        self._callback.disconnected(exc)

    def data_received(self, data):
        """Method from asyncio.Protocol"""
        self._logger.debug(f"RECV: {data.hex()}")
        for frame in split_frames(data):
            self._callback.frame_received(decode_frame(frame))

    def send(self, frame: bytes) -> Optional[str]:
        """Write a frame. Returns None once handed to the transport, or an error message."""
        if not self.connected:
            return "Socket is not connected"
        self._logger.debug(f"SEND: {frame.hex()}")
        self._transport.write(frame)
        return None

    def close(self):
        if self._transport is not None:
            self._transport.close()
