"""
Command definitions and auto-completion for REPL.

Defines all available commands with metadata and provides a completer
for prompt_toolkit auto-completion.
"""

from dataclasses import dataclass
from typing import Any, Dict, List

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import SensitivityLevel, TreadmillMode


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str


# Define all available commands
COMMANDS = [
    Command(
        name="scan",
        aliases=["sc"],
        description="Scan for WalkingPad treadmills",
        usage="scan [seconds]",
        handler="cmd_scan",
    ),
    Command(
        name="connect",
        aliases=["c"],
        description="Connect to a scanned or cached treadmill",
        usage="connect [index|address]",
        handler="cmd_connect",
    ),
    Command(
        name="disconnect",
        aliases=["dc"],
        description="Disconnect from device",
        usage="disconnect",
        handler="cmd_disconnect",
    ),
    Command(
        name="start",
        aliases=["s"],
        description="Start or resume the belt",
        usage="start",
        handler="cmd_start",
    ),
    Command(
        name="stop",
        aliases=["x"],
        description="Stop the belt",
        usage="stop",
        handler="cmd_stop",
    ),
    Command(
        name="pause",
        aliases=["p"],
        description="Pause the belt",
        usage="pause",
        handler="cmd_pause",
    ),
    Command(
        name="speed",
        aliases=["sp"],
        description="Set belt speed in km/h",
        usage="speed <km/h>",
        handler="cmd_speed",
    ),
    Command(
        name="mode",
        aliases=["m"],
        description="Switch mode (legacy only)",
        usage="mode <auto|manual|standby>",
        handler="cmd_mode",
    ),
    Command(
        name="sleep",
        aliases=[],
        description="Put the treadmill to sleep (KingSmith only)",
        usage="sleep",
        handler="cmd_sleep",
    ),
    Command(
        name="wake",
        aliases=[],
        description="Wake the treadmill (KingSmith only)",
        usage="wake",
        handler="cmd_wake",
    ),
    Command(
        name="pref",
        aliases=["set"],
        description="Write a device preference (legacy only)",
        usage="pref <maxspeed|startspeed|sensitivity|childlock|units|autostart> <value>",
        handler="cmd_pref",
    ),
    Command(
        name="poll",
        aliases=[],
        description="Toggle periodic status requests (legacy only)",
        usage="poll [seconds]",
        handler="cmd_poll",
    ),
    Command(
        name="history",
        aliases=["hist"],
        description="Request the last session record (legacy only)",
        usage="history",
        handler="cmd_history",
    ),
    Command(
        name="status",
        aliases=["st"],
        description="Show current sensor values",
        usage="status",
        handler="cmd_status",
    ),
    Command(
        name="live",
        aliases=["l"],
        description="Toggle live display mode",
        usage="live",
        handler="cmd_live",
    ),
    Command(
        name="info",
        aliases=["i"],
        description="Show device and debug information",
        usage="info",
        handler="cmd_info",
    ),
    Command(
        name="help",
        aliases=["h", "?"],
        description="Show all available commands",
        usage="help",
        handler="cmd_help",
    ),
    Command(
        name="quit",
        aliases=["q", "exit"],
        description="Exit the REPL",
        usage="quit",
        handler="cmd_quit",
    ),
]

MODE_NAMES: Dict[str, TreadmillMode] = {
    "auto": TreadmillMode.AUTOMATIC,
    "manual": TreadmillMode.MANUAL,
    "standby": TreadmillMode.STANDBY,
}

SENSITIVITY_NAMES: Dict[str, SensitivityLevel] = {
    "high": SensitivityLevel.HIGH,
    "medium": SensitivityLevel.MEDIUM,
    "low": SensitivityLevel.LOW,
}

PREFERENCE_NAMES = [
    "maxspeed",
    "startspeed",
    "sensitivity",
    "childlock",
    "units",
    "autostart",
]

ON_OFF = ["on", "off"]


def get_command(name: str) -> Command | None:
    """Get command by name or alias.

    Args:
        name: Command name or alias

    Returns:
        Command object if found, None otherwise
    """
    for cmd in COMMANDS:
        if cmd.name == name or name in cmd.aliases:
            return cmd
    return None


def parse_on_off(value: str) -> bool:
    """Parse on/off style flags; raises ValueError for anything else."""
    lowered = value.lower()
    if lowered in ("on", "1", "yes", "true", "miles"):
        return True
    if lowered in ("off", "0", "no", "false", "km"):
        return False
    raise ValueError(f"Expected on/off, got '{value}'")


def parse_speed(value: str) -> int:
    """Parse a km/h string into tenths of km/h (``"3.5"`` -> 35)."""
    return int(round(float(value) * 10))


class CommandCompleter(Completer):
    """Auto-completion for commands and arguments."""

    def __init__(self) -> None:
        """Initialize completer."""
        self._command_names = set()
        self._command_aliases = set()

        for cmd in COMMANDS:
            self._command_names.add(cmd.name)
            self._command_aliases.update(cmd.aliases)

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        """Get completion suggestions for current input.

        Args:
            document: Current input document
            complete_event: Completion event

        Yields:
            Completion objects for matching commands/arguments
        """
        text = document.text_before_cursor.lstrip()
        parts = text.split()

        # If no text yet, suggest nothing (avoid spam)
        if not text:
            return []

        # A trailing space starts a new, empty argument
        if text.endswith(" "):
            parts.append("")

        # First part: complete command name
        if len(parts) <= 1:
            partial_cmd = parts[0].lower() if parts else ""
            all_names = self._command_names | self._command_aliases
            yield from self._complete(sorted(all_names), partial_cmd, parenthesize=True)
            return

        cmd = get_command(parts[0].lower())
        if cmd is None:
            return
        partial = parts[-1].lower()

        if cmd.name == "speed" and len(parts) == 2:
            # Suggest common speeds: 0.5, 1.0, ..., 6.0
            yield from self._complete(
                [f"{tenths / 10:.1f}" for tenths in range(5, 61, 5)], partial
            )
        elif cmd.name == "mode" and len(parts) == 2:
            yield from self._complete(list(MODE_NAMES), partial)
        elif cmd.name == "pref":
            if len(parts) == 2:
                yield from self._complete(PREFERENCE_NAMES, partial)
            elif len(parts) == 3:
                key = parts[1].lower()
                if key == "sensitivity":
                    yield from self._complete(list(SENSITIVITY_NAMES), partial)
                elif key in ("childlock", "autostart"):
                    yield from self._complete(ON_OFF, partial)
                elif key == "units":
                    yield from self._complete(["km", "miles"], partial)

    @staticmethod
    def _complete(candidates: List[str], partial: str, parenthesize: bool = False):  # type: ignore[no-untyped-def]
        for candidate in candidates:
            if candidate.startswith(partial):
                # Replaces the partial word typed so far
                yield Completion(
                    candidate,
                    start_position=-len(partial),
                    display=f"({candidate})" if parenthesize else candidate,
                )
