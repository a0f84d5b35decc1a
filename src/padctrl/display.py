"""
Display manager for Rich-based REPL output and live updates.

Everything the REPL shows goes through here: one-off tables, result and
state lines, and the toggle-able live view fed by status notifications.
"""

import logging
from typing import Any, Optional

from pyftms import ResultCode
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .models import (
    ConnectionState,
    Device,
    LastRecord,
    MachineEvent,
    MachineEventKind,
    format_duration,
)

logger = logging.getLogger(__name__)

# (colour, symbol, text) per command outcome
RESULT_STYLES = {
    ResultCode.SUCCESS: ("green", "✓", "succeeded"),
    ResultCode.NOT_SUPPORTED: ("yellow", "⚠", "not supported by this protocol"),
    ResultCode.INVALID_PARAMETER: ("red", "✗", "invalid parameter"),
    ResultCode.FAILED: ("red", "✗", "failed"),
}

MACHINE_EVENT_TEXT = {
    MachineEventKind.STOPPED_BY_USER: "Belt stopped on the treadmill",
    MachineEventKind.PAUSED_BY_USER: "Belt paused on the treadmill",
    MachineEventKind.STARTED_BY_USER: "Belt started on the treadmill",
    MachineEventKind.CONTROL_PERMISSION_LOST: "Treadmill revoked remote control",
}

IDLE_VALUES: dict[str, Any] = {
    "status": "Waiting...",
    "speed": 0.0,
    "distance": 0.0,
    "time": 0,
    "calories": 0,
    "protocol": "-",
}


class DisplayManager:
    """Manages console output with Rich library."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize display manager.

        Args:
            console: Rich Console instance (creates one if None)
        """
        self.console = console or Console()
        self.live_enabled = False
        self._live: Optional[Live] = None
        self._live_data: dict[str, Any] = {}

    def print_banner(self) -> None:
        """Print startup banner."""
        self.console.print(
            Panel(
                "[bold cyan]PadCtrl - WalkingPad Treadmill Control[/bold cyan]\n"
                "[dim]Legacy F7, FTMS and KingSmith devices. "
                "Type 'help' for commands, 'quit' to exit[/dim]",
                expand=False,
            )
        )

    def print_status(self, data: dict) -> None:
        """Display one-time status table.

        Args:
            data: Dictionary from TreadmillController.get_status()
        """
        self.console.print(self.format_status_table(data))

    def print_result(self, cmd: str, result: ResultCode) -> None:
        """Show how a controller command went.

        Args:
            cmd: Command name as typed
            result: ResultCode returned by the controller
        """
        style = RESULT_STYLES.get(result)
        if style is None:
            self.console.print(
                f"[yellow]?[/yellow] {cmd} result: {result.name}", highlight=False
            )
            return
        color, symbol, text = style
        self.console.print(f"[{color}]{symbol}[/{color}] {cmd} {text}", highlight=False)

    def print_state(self, state: ConnectionState) -> None:
        color = "green" if state == ConnectionState.READY else "cyan"
        self.console.print(f"[{color}]State:[/{color}] {state.label}", highlight=False)

    def print_machine_event(self, event: MachineEvent) -> None:
        """Report a state change the user made on the treadmill itself."""
        if event.kind == MachineEventKind.TARGET_SPEED_CHANGED:
            speed = (event.value or 0) / 100
            self.print_info(f"Target speed changed to {self.format_speed(speed)}")
        else:
            self.print_info(MACHINE_EVENT_TEXT[event.kind])

    def print_devices(self, devices: list[Device]) -> None:
        """Display discovered treadmills with their index for 'connect <n>'."""
        if not devices:
            self.print_info("No treadmills found")
            return
        table = Table(title="Discovered Devices", show_header=True)
        table.add_column("#", style="magenta", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Address", style="yellow")
        for index, device in enumerate(devices):
            table.add_row(str(index), device.name, device.identity)
        self.console.print(table)

    def print_record(self, record: LastRecord) -> None:
        self.print_info(
            f"Last session: {record.formatted_time}, "
            f"{self.format_distance(record.distance_km)}"
        )

    def print_error(self, message: str) -> None:
        self._print_tagged("red", "Error", message)

    def print_info(self, message: str) -> None:
        self._print_tagged("cyan", "Info", message)

    def _print_tagged(self, color: str, tag: str, message: str) -> None:
        self.console.print(f"[{color}]{tag}:[/{color}] {message}", highlight=False)

    def print_help(self, commands: list) -> None:
        """Display command reference.

        Args:
            commands: List of Command objects
        """
        table = Table(title="Available Commands", show_header=True)
        table.add_column("Command", style="cyan", no_wrap=True)
        table.add_column("Description", style="white")
        table.add_column("Usage", style="yellow")

        for cmd in commands:
            name = cmd.name
            if cmd.aliases:
                name += f" ({', '.join(cmd.aliases)})"
            table.add_row(name, cmd.description, cmd.usage)

        self.console.print(table)
        self.console.print(
            "[dim]Speeds are km/h. Ctrl+C interrupts, Ctrl+D exits[/dim]"
        )

    # ========== Live view ==========

    def start_live(self) -> None:
        """Start live display refresh mode."""
        if self.live_enabled:
            return

        self.live_enabled = True
        self._live_data = dict(IDLE_VALUES)
        self._live = Live(
            self.format_status_table(self._live_data),
            console=self.console,
            refresh_per_second=2,
        )
        self._live.start()
        self.console.print("[dim]Live display enabled ['live' to disable][/dim]")

    def stop_live(self) -> None:
        if not self.live_enabled:
            return

        self.live_enabled = False
        live, self._live = self._live, None
        if live is not None:
            live.stop()

    def update_live(self, data: dict) -> None:
        """Merge new status values into the live table.

        Args:
            data: Dictionary from TreadmillController.get_status()
        """
        if not self.live_enabled or self._live is None:
            return

        self._live_data.update(data)
        try:
            self._live.update(self.format_status_table(self._live_data))
        except Exception as e:
            logger.error(f"Live update error: {e}")

    def toggle_live(self) -> bool:
        """Toggle live display on/off.

        Returns:
            New live display state (True = on, False = off)
        """
        if self.live_enabled:
            self.stop_live()
        else:
            self.start_live()
        return self.live_enabled

    def format_status_table(self, data: dict) -> Table:
        """Build the Metric/Value table shared by 'status' and the live view.

        Args:
            data: Dictionary with status, speed, distance, time, calories, protocol

        Returns:
            Rich Table object
        """
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow")

        rows = (
            ("Status", str(data.get("status", "UNKNOWN"))),
            ("Speed", self.format_speed(data.get("speed", 0.0))),
            ("Distance", self.format_distance(data.get("distance", 0.0))),
            ("Time", self.format_time(data.get("time", 0))),
            ("Calories", self.format_energy(data.get("calories", 0))),
            ("Protocol", str(data.get("protocol", "-"))),
        )
        for metric, value in rows:
            table.add_row(metric, value)
        return table

    # ========== Formatting ==========

    @staticmethod
    def format_time(seconds: int) -> str:
        """Convert seconds to MM:SS (or H:MM:SS) format."""
        return format_duration(int(seconds))

    @staticmethod
    def format_speed(km_h: float) -> str:
        return f"{km_h:.1f} km/h"

    @staticmethod
    def format_distance(km: float) -> str:
        """Kilometres from 1 km up, whole metres below."""
        if km >= 1:
            return f"{km:.2f} km"
        return f"{round(km * 1000)} m"

    @staticmethod
    def format_energy(kcal: int) -> str:
        return f"{kcal} kcal"
