"""
Main REPL application for WalkingPad treadmill control.

Interactive command loop with async support, auto-completion,
and live sensor display.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory
from pyftms import ResultCode

from .commands import (
    COMMANDS,
    MODE_NAMES,
    SENSITIVITY_NAMES,
    CommandCompleter,
    get_command,
    parse_on_off,
    parse_speed,
)
from .controller import TreadmillController
from .core import CONNECT_TIMEOUT, POLL_INTERVAL, SCAN_TIMEOUT
from .display import DisplayManager
from .models import ConnectionState, Device, LastRecord, Protocol, TreadmillStatus

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    """Plain message logging; ``--debug`` adds module names and frame dumps."""
    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
        # bleak is chatty at INFO on some backends
        logging.getLogger("bleak").setLevel(logging.WARNING)


class PadCtrlREPL:
    """Interactive REPL for WalkingPad treadmill control."""

    def __init__(self, controller: Optional[TreadmillController] = None) -> None:
        """Initialize REPL with controller and display manager."""
        self.controller = controller or TreadmillController()
        self.display = DisplayManager()
        self.running = False
        self.session: PromptSession

        # Set up listeners
        self.controller.on_state.subscribe(self._on_state_change)
        self.controller.on_status.subscribe(self._on_status)
        self.controller.on_last_record.subscribe(self._on_last_record)
        self.controller.on_device.subscribe(self._on_device_found)
        self.controller.on_error.subscribe(self._on_error)
        self.controller.on_machine_event.subscribe(self.display.print_machine_event)

        # Create prompt session with auto-completion
        self.session = PromptSession(
            completer=CommandCompleter(),
            history=InMemoryHistory(),
            enable_history_search=True,
        )

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner()

        # Auto-connect to the last device that reached READY
        cached = self.controller.cached_device()
        if cached is not None:
            self.display.console.print(
                f"Attempting to connect to {cached.name} ({cached.identity})..."
            )
            if await self._connect_and_wait(cached):
                self.display.console.print("✓ Connected successfully\n")
            else:
                self.display.console.print(
                    "⚠ Could not connect to device. Use 'scan' and 'connect' to retry.\n"
                )
        else:
            self.display.console.print("No cached treadmill, use 'scan' to find one.\n")

        try:
            while self.running:
                try:
                    # Get user input
                    prompt_text = self._get_prompt()
                    text = await self.session.prompt_async(prompt_text)

                    # Parse and execute command
                    if text.strip():
                        await self._handle_input(text.strip())

                except KeyboardInterrupt:
                    # Just show new prompt on Ctrl+C
                    self.display.console.print()
                    continue

        except EOFError:
            # End of input (Ctrl+D)
            await self.cmd_quit([])
        finally:
            self.running = False
            self.display.stop_live()

    def _get_prompt(self) -> FormattedText:
        """Get dynamic prompt based on connection state.

        Returns:
            FormattedText for prompt_toolkit
        """
        state = self.controller.connection_state
        if state == ConnectionState.READY:
            device_name = self.controller.device_name or "Device"
            return FormattedText([("class:prompt", f"[{device_name}] > ")])
        if state == ConnectionState.DISCONNECTED:
            return FormattedText([("class:prompt", "[disconnected] > ")])
        return FormattedText([("class:prompt", f"[{state.value}] > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        if not parts:
            return

        cmd_name = parts[0].lower()
        args = parts[1].split() if len(parts) > 1 else []

        # Find command
        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(
                f"Unknown command: {cmd_name}. Type 'help' for available commands."
            )
            return

        # Get handler method
        handler_name = cmd.handler
        if not hasattr(self, handler_name):
            self.display.print_error(f"Handler not found: {handler_name}")
            return

        handler = getattr(self, handler_name)

        # Execute command
        try:
            await handler(args)
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    # ========== Controller listeners ==========

    def _on_state_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.DISCONNECTED:
            if self.display.live_enabled:
                self.display.stop_live()
            self.display.print_info("Device disconnected")
        elif state == ConnectionState.READY:
            protocol = self.controller.active_protocol
            self.display.print_info(
                f"Ready ({protocol.value if protocol else 'unknown'} protocol)"
            )

    def _on_status(self, status: TreadmillStatus) -> None:
        if self.display.live_enabled:
            self.display.update_live(self.controller.get_status())

    def _on_last_record(self, record: LastRecord) -> None:
        self.display.print_record(record)

    def _on_device_found(self, device: Device) -> None:
        index = len(self.controller.discovered_devices) - 1
        self.display.print_info(f"[{index}] {device.name} ({device.identity})")

    def _on_error(self, error: Exception) -> None:
        self.display.print_error(str(error))

    # ========== Helpers ==========

    async def _connect_and_wait(self, device: Device) -> bool:
        await self.controller.connect(device)
        # The supervisor retries once, so allow two full attempts
        return await self.controller.wait_until_ready(
            self.controller.connect_timeout * 2 + 1
        )

    def _require_ready(self) -> bool:
        if not self.controller.is_ready:
            self.display.print_error("Not connected. Use 'connect' first.")
            return False
        return True

    def _resolve_device(self, args: list) -> Optional[Device]:
        """Map a ``connect`` argument to a device.

        No argument picks the only/first scanned device, falling back to the
        cached one. A number indexes the last scan; anything else is taken
        as an address.
        """
        devices = self.controller.discovered_devices
        if not args:
            if devices:
                return devices[0]
            return self.controller.cached_device()

        target = args[0]
        if target.isdigit():
            index = int(target)
            if index >= len(devices):
                self.display.print_error(f"No scanned device #{index}")
                return None
            return devices[index]
        for device in devices:
            if device.identity.lower() == target.lower():
                return device
        return Device(identity=target)

    async def _run_legacy_command(self, name: str, coro) -> None:  # type: ignore[no-untyped-def]
        result = await coro
        if result == ResultCode.NOT_SUPPORTED:
            self.display.print_error(f"{name} is only available on legacy devices")
        else:
            self.display.print_result(name, result)

    # ========== Command Handlers ==========

    async def cmd_scan(self, args: list) -> None:
        """Scan for treadmills."""
        if self.controller.is_connected:
            self.display.print_info("Already connected, disconnect first")
            return

        try:
            timeout = float(args[0]) if args else SCAN_TIMEOUT
        except ValueError:
            self.display.print_error(f"Invalid scan time: {args[0]}")
            return

        self.display.print_info(f"Scanning for {timeout:.0f}s...")
        devices = await self.controller.discover(timeout)
        self.display.print_devices(devices)

    async def cmd_connect(self, args: list) -> None:
        """Connect to treadmill."""
        if self.controller.is_ready:
            self.display.print_info("Already connected")
            return

        device = self._resolve_device(args)
        if device is None:
            if not args:
                self.display.print_error(
                    "No device known. Use 'scan' first or give an address."
                )
            return

        self.display.print_info(f"Connecting to {device.name} ({device.identity})...")
        if not await self._connect_and_wait(device):
            self.display.print_error("Connection failed. Please try again.")
            return

        # Show status
        await self.cmd_status([])

    async def cmd_disconnect(self, args: list) -> None:
        """Disconnect from device."""
        if self.controller.connection_state == ConnectionState.DISCONNECTED:
            self.display.print_info("Not connected")
            return

        if self.display.live_enabled:
            self.display.stop_live()

        await self.controller.disconnect()

    async def cmd_start(self, args: list) -> None:
        """Start or resume the belt."""
        if not self._require_ready():
            return

        result = await self.controller.start_belt()
        self.display.print_result("start", result)

    async def cmd_stop(self, args: list) -> None:
        """Stop the belt."""
        if not self._require_ready():
            return

        result = await self.controller.stop_belt()
        self.display.print_result("stop", result)

    async def cmd_pause(self, args: list) -> None:
        """Pause the belt."""
        if not self._require_ready():
            return

        result = await self.controller.pause_belt()
        self.display.print_result("pause", result)

    async def cmd_speed(self, args: list) -> None:
        """Set belt speed in km/h."""
        if not self._require_ready():
            return

        min_kmh = self.controller.SPEED_MIN / 10
        max_kmh = self.controller.SPEED_MAX / 10
        if not args:
            self.display.print_error("Usage: speed <km/h>")
            self.display.print_info(f"Range: {min_kmh:.1f}-{max_kmh:.1f} km/h")
            return

        try:
            tenths = parse_speed(args[0])
        except ValueError:
            self.display.print_error(f"Invalid speed: {args[0]}")
            return

        if not self.controller.SPEED_MIN <= tenths <= self.controller.SPEED_MAX:
            self.display.print_info(
                f"Speed clamped to the {min_kmh:.1f}-{max_kmh:.1f} km/h range"
            )

        result = await self.controller.set_speed(tenths)
        if result == ResultCode.SUCCESS:
            clamped = max(
                self.controller.SPEED_MIN, min(self.controller.SPEED_MAX, tenths)
            )
            self.display.print_info(f"Speed set to {clamped / 10:.1f} km/h")
        else:
            self.display.print_result("set_speed", result)

    async def cmd_mode(self, args: list) -> None:
        """Switch treadmill mode."""
        if not self._require_ready():
            return

        if not args or args[0].lower() not in MODE_NAMES:
            self.display.print_error("Usage: mode <auto|manual|standby>")
            return

        mode = MODE_NAMES[args[0].lower()]
        await self._run_legacy_command("mode", self.controller.switch_mode(mode))

    async def cmd_sleep(self, args: list) -> None:
        """Put the treadmill to sleep."""
        if not self._require_ready():
            return
        if not self.controller.has_vendor_channel:
            self.display.print_error("Device has no KingSmith channel")
            return

        result = await self.controller.sleep_device()
        self.display.print_result("sleep", result)

    async def cmd_wake(self, args: list) -> None:
        """Wake the treadmill."""
        if not self._require_ready():
            return
        if not self.controller.has_vendor_channel:
            self.display.print_error("Device has no KingSmith channel")
            return

        result = await self.controller.wake_device()
        self.display.print_result("wake", result)

    async def cmd_pref(self, args: list) -> None:
        """Write a legacy device preference."""
        if not self._require_ready():
            return

        if len(args) < 2:
            self.display.print_error(
                "Usage: pref <maxspeed|startspeed|sensitivity|childlock|units|autostart> <value>"
            )
            return

        key, value = args[0].lower(), args[1]
        try:
            if key == "maxspeed":
                coro = self.controller.set_max_speed(parse_speed(value))
            elif key == "startspeed":
                coro = self.controller.set_start_speed(parse_speed(value))
            elif key == "sensitivity":
                level = SENSITIVITY_NAMES.get(value.lower())
                if level is None:
                    self.display.print_error("Sensitivity must be high, medium or low")
                    return
                coro = self.controller.set_sensitivity(level)
            elif key == "childlock":
                coro = self.controller.set_child_lock(parse_on_off(value))
            elif key == "units":
                coro = self.controller.set_units_miles(parse_on_off(value))
            elif key == "autostart":
                coro = self.controller.set_intelligent_start(parse_on_off(value))
            else:
                self.display.print_error(f"Unknown preference: {key}")
                return
        except ValueError as e:
            self.display.print_error(str(e))
            return

        await self._run_legacy_command(f"pref {key}", coro)

    async def cmd_poll(self, args: list) -> None:
        """Toggle periodic status polling."""
        if self.controller.is_polling:
            self.controller.stop_polling()
            self.display.print_info("Polling stopped")
            return

        if not self._require_ready():
            return
        if self.controller.active_protocol == Protocol.FTMS:
            self.display.print_info("FTMS devices push data, polling not needed")
            return

        try:
            interval = float(args[0]) if args else POLL_INTERVAL
        except ValueError:
            self.display.print_error(f"Invalid interval: {args[0]}")
            return

        self.controller.start_polling(interval)
        self.display.print_info(f"Polling every {interval:.1f}s")

    async def cmd_history(self, args: list) -> None:
        """Request the last session record."""
        if not self._require_ready():
            return
        await self._run_legacy_command("history", self.controller.ask_history())

    async def cmd_status(self, args: list) -> None:
        """Show current sensor values."""
        status = self.controller.get_status()
        self.display.print_status(status)

    async def cmd_live(self, args: list) -> None:
        """Toggle live display mode."""
        enabled = self.display.toggle_live()
        if enabled:
            # Need initial status for live display
            status = self.controller.get_status()
            self.display.update_live(status)
        else:
            self.display.print_info("Live display disabled")

    async def cmd_info(self, args: list) -> None:
        """Show device and debug information."""
        controller = self.controller
        console = self.display.console

        console.print("[bold cyan]Device Information[/bold cyan]")
        console.print(f"  Name: {controller.device_name or '-'}")
        console.print(f"  State: {controller.connection_state.label}")
        protocol = controller.active_protocol
        console.print(f"  Protocol: {protocol.value if protocol else '-'}")
        console.print(f"  KingSmith channel: {controller.has_vendor_channel}")

        console.print()
        console.print("[bold cyan]Speed Settings[/bold cyan]")
        console.print(
            f"  Range: {controller.SPEED_MIN / 10:.1f}-{controller.SPEED_MAX / 10:.1f} km/h"
        )
        if controller.speed_range is not None:
            speed_range = controller.speed_range
            console.print(
                f"  Reported by device: {speed_range.minimum:.2f}-"
                f"{speed_range.maximum:.2f} km/h (step {speed_range.increment:.2f})"
            )

        console.print()
        console.print("[bold cyan]Debug Information[/bold cyan]")
        console.print(f"  Polling: {controller.is_polling}")
        console.print(f"  Live enabled: {self.display.live_enabled}")
        console.print(f"  Live data: {self.display._live_data}")
        if controller.current_status is not None:
            console.print(f"  Last frame: {controller.current_status.raw.hex(' ').upper()}")
        if controller.last_record is not None:
            record = controller.last_record
            console.print(
                f"  Last record: {record.formatted_time}, {record.distance_km:.2f} km"
            )

    async def cmd_help(self, args: list) -> None:
        """Show all available commands."""
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        """Exit the REPL."""
        if self.display.live_enabled:
            self.display.stop_live()

        if self.controller.connection_state != ConnectionState.DISCONNECTED:
            self.display.print_info("Disconnecting...")
            await self.controller.disconnect()

        self.display.console.print("[cyan]Goodbye![/cyan]")
        self.running = False


async def _auto_connect(
    controller: TreadmillController,
    display: DisplayManager,
    scan_timeout: float,
    connect_timeout: float,
) -> bool:
    """Connect to the cached treadmill, or the first one a scan finds."""
    device = controller.cached_device()
    if device is None:
        display.print_info("Scanning for treadmills...")
        devices = await controller.discover(scan_timeout)
        if not devices:
            display.print_error(
                "Device not found. Make sure it's powered on and in range."
            )
            return False
        device = devices[0]

    display.print_info(f"Connecting to {device.name} ({device.identity})...")
    await controller.connect(device)
    return await controller.wait_until_ready(connect_timeout * 2 + 1)


async def run_cli_command(
    command: str,
    scan_timeout: float = SCAN_TIMEOUT,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> None:
    """Run a single CLI command and exit."""
    controller = TreadmillController(connect_timeout=connect_timeout)
    display = DisplayManager()
    controller.on_error.subscribe(lambda e: display.print_error(str(e)))

    try:
        # Handle commands that don't need connection first
        if command == "clear-cache":
            controller.clear_address_cache()
            display.print_info("Cleared cached device address")
            return

        if command == "scan":
            display.print_info(f"Scanning for {scan_timeout:.0f}s...")
            display.print_devices(await controller.discover(scan_timeout))
            return

        if not await _auto_connect(controller, display, scan_timeout, connect_timeout):
            display.print_error("Failed to connect to device")
            sys.exit(1)

        if command == "start":
            result = await controller.start_belt()
            display.print_result("start", result)

        elif command == "pause":
            result = await controller.pause_belt()
            display.print_result("pause", result)

        elif command == "stop":
            result = await controller.stop_belt()
            display.print_result("stop", result)

        elif command == "status":
            # Legacy devices only report when asked
            controller.start_polling()
            # Wait a moment for sensor updates to arrive after connecting
            await asyncio.sleep(2)
            display.print_status(controller.get_status())

        else:
            display.print_error(f"Unknown command: {command}")
            sys.exit(1)

        if command != "status" and result != ResultCode.SUCCESS:
            sys.exit(1)

    finally:
        # Ensure we disconnect if still connected
        if controller.connection_state != ConnectionState.DISCONNECTED:
            await controller.disconnect()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="WalkingPad Treadmill Control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  padctrl                    # Start interactive REPL
  padctrl --scan             # List nearby treadmills
  padctrl --start            # Start treadmill (auto-connects)
  padctrl --pause            # Pause treadmill
  padctrl --status           # Get device status (auto-connects)
  padctrl --stop             # Stop treadmill (auto-connects)
  padctrl --clear-cache      # Clear cached device address
        """,
    )

    parser.add_argument("--scan", action="store_true", help="Scan for treadmills")

    parser.add_argument("--start", action="store_true", help="Start/resume treadmill")

    parser.add_argument("--pause", action="store_true", help="Pause treadmill")

    parser.add_argument("--stop", action="store_true", help="Stop treadmill")

    parser.add_argument("--status", action="store_true", help="Show device status")

    parser.add_argument(
        "--clear-cache", action="store_true", help="Clear cached device address"
    )

    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=SCAN_TIMEOUT,
        help=f"Seconds to scan for devices (default: {SCAN_TIMEOUT:.0f})",
    )

    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=CONNECT_TIMEOUT,
        help=f"Seconds before a stuck connection is retried (default: {CONNECT_TIMEOUT:.0f})",
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    return parser


def selected_commands(args: argparse.Namespace) -> List[str]:
    """Check which one-shot commands were requested."""
    commands = []
    if args.scan:
        commands.append("scan")
    if args.start:
        commands.append("start")
    if args.pause:
        commands.append("pause")
    if args.stop:
        commands.append("stop")
    if args.status:
        commands.append("status")
    if args.clear_cache:
        commands.append("clear-cache")
    return commands


def main() -> None:
    """Entry point for the REPL application."""
    args = build_parser().parse_args()
    configure_logging(args.debug)
    commands = selected_commands(args)

    # If no CLI commands, start REPL
    if not commands:
        try:
            repl = PadCtrlREPL(
                TreadmillController(connect_timeout=args.connect_timeout)
            )
            asyncio.run(repl.run())
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(0)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        # Run CLI commands
        if len(commands) > 1:
            print("Error: Only one command can be specified at a time", file=sys.stderr)
            sys.exit(1)

        try:
            asyncio.run(
                run_cli_command(commands[0], args.scan_timeout, args.connect_timeout)
            )
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(1)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
