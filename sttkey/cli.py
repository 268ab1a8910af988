"""
sttkey command-line front end

Stands in for the hotkey and status-bar UI: press Enter to start or stop a
recording, type ``q`` to quit. Transcript fragments stream to stdout as they
arrive and the final text is printed when the cycle completes.
"""

import argparse
import asyncio
import logging
import sys

from sttkey.core.config import Settings, get_settings
from sttkey.core.exceptions import SttKeyError
from sttkey.core.models import CoordinatorState, RecordingOutcome, ToggleAction
from sttkey.services.audio import list_input_devices
from sttkey.services.coordinator import RecordingCoordinator

logger = logging.getLogger(__name__)


def print_devices() -> None:
    """Print available audio input devices."""
    devices = list_input_devices()
    print("\nAudio input devices:")
    print("-" * 60)
    for device in devices:
        print(
            f"  [{device['index']:>2}] {device['name']:36} "
            f"{device['channels']}ch {device['sample_rate']}Hz"
        )
    print("-" * 60)
    if not devices:
        print("  (none found)")


def _on_state_change(state: CoordinatorState) -> None:
    if state is CoordinatorState.recording:
        print("\n● Recording... press Enter to stop", flush=True)
    elif state is CoordinatorState.transcribing:
        print("… Transcribing", flush=True)


def _on_delta(text: str) -> None:
    print(text, end="", flush=True)


def _on_finished(outcome: RecordingOutcome) -> None:
    if outcome.ok:
        result = outcome.result
        latency = (
            f"{result.first_audio_latency * 1000:.0f}ms"
            if result.first_audio_latency is not None
            else "n/a"
        )
        print(f"\n\n✓ {result.text}")
        print(
            f"  ({result.mode.value}, {result.recording_duration:.1f}s recorded, "
            f"first audio after {latency})\n",
            flush=True,
        )
    else:
        print(f"\n✗ {outcome.error.detail} [{outcome.error.code}]\n", flush=True)


async def run(settings: Settings) -> int:
    """Drive the coordinator from stdin until ``q`` or EOF."""
    coordinator = RecordingCoordinator(
        settings,
        on_finished=_on_finished,
        on_delta=_on_delta,
        on_state_change=_on_state_change,
    )
    print(f"sttkey ({settings.transcription_mode}) - Enter toggles recording, q quits")
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line or line.strip().lower() == "q":
                break
            try:
                action = coordinator.toggle()
            except SttKeyError as exc:
                print(f"✗ {exc.detail}", flush=True)
                continue
            if action is ToggleAction.cancelled:
                print("Start cancelled", flush=True)
            elif action is ToggleAction.busy:
                print("Still transcribing, please wait", flush=True)
    finally:
        await coordinator.shutdown()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Record from the microphone and transcribe with OpenAI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--mode",
        type=str,
        default=None,
        choices=["batch", "streaming"],
        help="Transcription mode (default: TRANSCRIPTION_MODE or batch)",
    )

    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Input device index or name substring (default: system input)",
    )

    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List audio input devices and exit",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL or INFO)",
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    overrides = {}
    if args.mode is not None:
        overrides["transcription_mode"] = args.mode
    if args.device is not None:
        overrides["input_device"] = args.device
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if overrides:
        settings = settings.model_copy(update=overrides)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    # List devices and exit
    if args.list_devices:
        try:
            print_devices()
        except SttKeyError as exc:
            print(f"Error: {exc.detail}")
            return 1
        return 0

    try:
        return asyncio.run(run(settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
