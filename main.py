"""
Main command-line interface for pykef.

This script provides a CLI to interact with a KEF LS50 Wireless / LSX speaker.
"""

import argparse
import asyncio
import logging

from pykef.listener import SpeakerListener
from pykef.speaker import KEFSpeaker
from pykef.state import Power, StateSnapshot


class StateWaiter(SpeakerListener):
    """Resolves once both volume and power have been reported."""

    def __init__(self):
        self.ready = asyncio.Event()

    def state_changed(self, state: StateSnapshot):
        if state.volume != -1 and state.power is not Power.UNKNOWN:
            self.ready.set()

    def connected(self):
        pass

    def closed(self, cause):
        pass


async def open_speaker(hostname: str, port: int, max_volume: int) -> tuple[KEFSpeaker, StateWaiter]:
    print(f"Connecting to KEF speaker at {hostname}:{port}...")
    speaker = KEFSpeaker(hostname, port, max_volume=max_volume, connect_on_construction=False)
    waiter = StateWaiter()
    speaker.register_listener(waiter)
    if not await speaker.async_connect():
        speaker.end()
        raise SystemExit(f"Unable to connect to {hostname}:{port}")
    try:
        await asyncio.wait_for(waiter.ready.wait(), timeout=5)
    except asyncio.TimeoutError:
        print("Speaker did not report its state in time")
    return speaker, waiter


def print_state(speaker: KEFSpeaker):
    state = speaker.state
    volume_str = "unknown" if state.volume == -1 else str(state.volume)
    muted_str = "unknown" if state.muted is None else ("yes" if state.muted else "no")
    print("-" * 40)
    print(f"{'Power:':10s} {state.power.name}")
    print(f"{'Source:':10s} {state.source.name}")
    print(f"{'Volume:':10s} {volume_str}")
    print(f"{'Muted:':10s} {muted_str}")
    print("-" * 40)


async def show_status(hostname: str, port: int, max_volume: int):
    speaker, _ = await open_speaker(hostname, port, max_volume)
    print_state(speaker)
    speaker.end()


async def run_command(hostname: str, port: int, max_volume: int, command: str, argument=None):
    speaker, _ = await open_speaker(hostname, port, max_volume)

    def done(error):
        if error:
            print(f"Error: {error}")

    if command == "source":
        print(f"Switching to {argument.upper()}...")
        speaker.turn_on_or_switch_source(argument, done)
    elif command == "off":
        print("Turning off...")
        speaker.turn_off(done)
    elif command == "volume":
        print(f"Setting volume to {argument}...")
        speaker.set_volume(argument, done)
    elif command == "change":
        print(f"Changing volume by {argument:+d}...")
        speaker.change_volume(argument, done)
    elif command == "mute":
        print("Toggling mute...")
        speaker.mute_toggle(done)

    # Give the speaker time to ack and report the new state
    await asyncio.sleep(2)
    print_state(speaker)
    speaker.end()
    print("Done")


def main():
    parser = argparse.ArgumentParser(description="Control KEF LS50 Wireless / LSX speakers")
    parser.add_argument("--host", required=True, help="Speaker hostname or IP")
    parser.add_argument("--port", type=int, default=50001, help="Speaker port (default: 50001)")
    parser.add_argument("--max-volume", type=int, default=50, help="Volume limit (default: 50)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("status", help="Show power, source and volume")

    source_parser = subparsers.add_parser("source", help="Switch input (turns the speaker on)")
    source_parser.add_argument("source", choices=["wifi", "bt", "aux", "opt", "usb"], help="Input")

    subparsers.add_parser("off", help="Turn the speaker off")

    volume_parser = subparsers.add_parser("volume", help="Set volume level")
    volume_parser.add_argument("level", type=int, help="Volume level (0-max volume, 128+ for muted)")

    change_parser = subparsers.add_parser("change", help="Change volume relative to current level")
    change_parser.add_argument("delta", type=int, help="Amount, negative goes down")

    subparsers.add_parser("mute", help="Toggle mute")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)

    if args.command == "status":
        asyncio.run(show_status(args.host, args.port, args.max_volume))
    elif args.command == "source":
        asyncio.run(run_command(args.host, args.port, args.max_volume, "source", args.source))
    elif args.command == "off":
        asyncio.run(run_command(args.host, args.port, args.max_volume, "off"))
    elif args.command == "volume":
        asyncio.run(run_command(args.host, args.port, args.max_volume, "volume", args.level))
    elif args.command == "change":
        asyncio.run(run_command(args.host, args.port, args.max_volume, "change", args.delta))
    elif args.command == "mute":
        asyncio.run(run_command(args.host, args.port, args.max_volume, "mute"))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
