"""
Tests for the KEF wire protocol.

Covers the fixed command table, the computed volume frame, response decoding
and the SpeakerProtocol transport adapter.
"""

from unittest.mock import MagicMock

import pytest

from pykef.protocol import (
    COMMANDS,
    POWER_OFF,
    SOURCE_QUERY,
    VOLUME_QUERY,
    AckFrame,
    SourceFrame,
    SpeakerProtocol,
    UnparsedFrame,
    VolumeFrame,
    decode_frame,
    split_frames,
    encode_set_volume,
    encode_source,
    is_valid_volume,
)
from pykef.state import Power, Source


def volume_response(payload: int) -> bytes:
    return bytes([0x52, 0x25, 0x81, payload, 0x00])


def source_response(payload: int) -> bytes:
    return bytes([0x52, 0x30, 0x81, payload, 0x00])


class TestCommandTable:

    def test_fixed_frames(self) -> None:
        assert COMMANDS == {
            "WIFI": bytes([0x53, 0x30, 0x81, 0x12, 0x82]),
            "BT": bytes([0x53, 0x30, 0x81, 0x19, 0xAD]),
            "AUX": bytes([0x53, 0x30, 0x81, 0x1A, 0x9B]),
            "OPT": bytes([0x53, 0x30, 0x81, 0x1B, 0x00]),
            "USB": bytes([0x53, 0x30, 0x81, 0x1C, 0xF7]),
            "VOL_GET": bytes([0x47, 0x25, 0x80, 0x6C]),
            "SRC_GET": bytes([0x47, 0x30, 0x80, 0xD9]),
            "OFF": bytes([0x53, 0x30, 0x81, 0x9B, 0x0B]),
        }

    def test_queries_are_four_bytes(self) -> None:
        assert len(VOLUME_QUERY) == 4
        assert len(SOURCE_QUERY) == 4
        assert len(POWER_OFF) == 5

    def test_encode_source(self) -> None:
        assert encode_source(Source.OPT) == COMMANDS["OPT"]

    def test_encode_unknown_source_rejected(self) -> None:
        with pytest.raises(ValueError):
            encode_source(Source.UNKNOWN)


class TestVolumeEncoding:

    def test_unmuted_frame(self) -> None:
        assert encode_set_volume(30, 50) == bytes([0x53, 0x25, 0x81, 30, 0x1A])

    def test_muted_frame(self) -> None:
        assert encode_set_volume(128 + 30, 50) == bytes([0x53, 0x25, 0x81, 158, 0x1A])

    def test_muted_level_capped_at_max_volume(self) -> None:
        assert encode_set_volume(128 + 90, 50)[3] == 128 + 50

    @pytest.mark.parametrize("value", [-1, 51, 100, 127])
    def test_out_of_range_rejected(self, value: int) -> None:
        assert not is_valid_volume(value, 50)
        with pytest.raises(ValueError):
            encode_set_volume(value, 50)

    def test_max_volume_is_inclusive(self) -> None:
        assert is_valid_volume(50, 50)
        assert is_valid_volume(0, 50)

    def test_every_unmuted_level_decodes_back(self) -> None:
        for value in range(0, 101):
            frame = encode_set_volume(value, 100)
            assert decode_frame(volume_response(frame[3])) == VolumeFrame(volume=value, muted=False)

    def test_every_muted_level_decodes_back(self) -> None:
        for value in range(0, 101):
            frame = encode_set_volume(value + 128, 100)
            assert decode_frame(volume_response(frame[3])) == VolumeFrame(volume=value, muted=True)


class TestDecoding:

    def test_ack(self) -> None:
        assert decode_frame(bytes([0x52, 0x11, 0xFF])) == AckFrame()

    def test_source_on(self) -> None:
        assert decode_frame(source_response(0x1A)) == SourceFrame(power=Power.ON, source=Source.AUX)

    @pytest.mark.parametrize(
        "payload,source",
        [(0x12, Source.WIFI), (0x1F, Source.BT), (0x1C, Source.USB), (0x1B, Source.OPT)],
    )
    def test_source_on_table(self, payload: int, source: Source) -> None:
        frame = decode_frame(source_response(payload))
        assert frame.power is Power.ON
        assert frame.source is source

    def test_source_off_hides_input(self) -> None:
        frame = decode_frame(source_response(0x9A))
        assert frame.power is Power.OFF
        assert frame.source is Source.UNKNOWN
        assert frame.standby_source is Source.AUX
        assert not frame.transitioning

    def test_source_transition(self) -> None:
        frame = decode_frame(source_response(0x90))
        assert frame == SourceFrame(power=Power.ON, source=Source.UNKNOWN, transitioning=True)

    def test_unknown_source_byte(self) -> None:
        frame = decode_frame(source_response(0x42))
        assert isinstance(frame, UnparsedFrame)
        assert "0x42" in frame.reason

    def test_wrong_header_ignored(self) -> None:
        frame = decode_frame(bytes([0x53, 0x25, 0x81, 0x10]))
        assert isinstance(frame, UnparsedFrame)
        assert frame.reason == "not a response"

    def test_unknown_response_type(self) -> None:
        assert isinstance(decode_frame(bytes([0x52, 0x77, 0x81, 0x10])), UnparsedFrame)

    def test_truncated_volume(self) -> None:
        assert isinstance(decode_frame(bytes([0x52, 0x25, 0x81])), UnparsedFrame)

    def test_empty(self) -> None:
        assert isinstance(decode_frame(b""), UnparsedFrame)


class TestFraming:

    def test_single_response(self) -> None:
        assert split_frames(volume_response(0x14)) == [volume_response(0x14)]

    def test_ack_and_report_in_one_chunk(self) -> None:
        ack = bytes([0x52, 0x11, 0xFF])
        chunk = ack + volume_response(0x14) + source_response(0x1A)
        assert split_frames(chunk) == [ack, volume_response(0x14), source_response(0x1A)]

    def test_unknown_tail_kept_whole(self) -> None:
        chunk = volume_response(0x14) + bytes([0x00, 0x01, 0x02])
        assert split_frames(chunk) == [volume_response(0x14), bytes([0x00, 0x01, 0x02])]

    def test_short_tail_kept(self) -> None:
        chunk = bytes([0x52, 0x11, 0xFF, 0x52, 0x25, 0x81])
        assert split_frames(chunk) == [bytes([0x52, 0x11, 0xFF]), bytes([0x52, 0x25, 0x81])]


class TestSpeakerProtocol:

    def test_send_without_connection(self) -> None:
        protocol = SpeakerProtocol(MagicMock())
        assert protocol.send(VOLUME_QUERY) == "Socket is not connected"

    def test_lifecycle_is_forwarded(self, transport: MagicMock) -> None:
        callback = MagicMock()
        protocol = SpeakerProtocol(callback)

        protocol.connection_made(transport)
        assert protocol.connected
        assert protocol.peer_name == ("192.168.1.50", 50001)
        callback.connected.assert_called_once()

        assert protocol.send(SOURCE_QUERY) is None
        transport.write.assert_called_once_with(SOURCE_QUERY)

        error = ConnectionResetError()
        protocol.connection_lost(error)
        assert not protocol.connected
        callback.disconnected.assert_called_once_with(error)

    def test_data_is_decoded(self) -> None:
        callback = MagicMock()
        protocol = SpeakerProtocol(callback)
        protocol.data_received(volume_response(0x94))
        callback.frame_received.assert_called_once_with(VolumeFrame(volume=20, muted=True))

    def test_closing_transport_refuses_writes(self, transport: MagicMock) -> None:
        protocol = SpeakerProtocol(MagicMock())
        protocol.connection_made(transport)
        protocol.close()
        assert protocol.send(VOLUME_QUERY) == "Socket is not connected"
        transport.write.assert_not_called()

    def test_coalesced_responses_all_dispatched(self) -> None:
        callback = MagicMock()
        protocol = SpeakerProtocol(callback)
        protocol.data_received(bytes([0x52, 0x11, 0xFF]) + volume_response(0x14))
        assert [call.args[0] for call in callback.frame_received.call_args_list] == [
            AckFrame(),
            VolumeFrame(volume=20, muted=False),
        ]
