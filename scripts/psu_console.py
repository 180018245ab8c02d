#!/usr/bin/env python3
"""Monitor and drive a SCPI power supply from the terminal."""

from __future__ import annotations

import argparse
import logging
import queue
import sys
import time

from psu_control.instrumentation import PowerSupplyError
from psu_control.io import load_controller_settings, update_settings_value
from psu_control.orchestration import AutomationConfig, ConnectionEvent, PowerSupplyController


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--list-ports", action="store_true", help="List serial ports and exit.")
    parser.add_argument("--port", help="Serial port of the supply (default: serial.port from settings).")
    parser.add_argument("--settings", help="Optional path to a settings YAML file.")
    parser.add_argument("--interval", type=int, help="Poll interval in milliseconds (floor 200).")
    parser.add_argument(
        "--loop",
        nargs=3,
        metavar=("VOLT_A", "VOLT_B", "MS"),
        help="Alternate the output between two voltages every MS milliseconds.",
    )
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after this many seconds (0: until Ctrl-C).")
    parser.add_argument("--save-port", action="store_true", help="Remember --port in the settings file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every SCPI line.")
    return parser.parse_args()


def print_event(event: ConnectionEvent) -> None:
    suffix = f" ({event.reason.value}: {event.detail})" if event.reason else ""
    print(f"[{event.state.value}]{suffix}")


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_ports:
        ports = PowerSupplyController.list_available_ports()
        if not ports:
            print("No Ports Found")
        for port in ports:
            print(f"{port.device}\t{port.description}")
        return 0

    settings = load_controller_settings(args.settings)
    port = args.port or settings.serial.port
    if not port:
        raise SystemExit("No port given. Use --port or set serial.port in the settings file.")

    controller = PowerSupplyController(settings)
    controller.add_state_listener(print_event)
    controller.add_automation_error_listener(lambda exc: print(f"Automation stopped: {exc}"))
    if args.interval is not None:
        effective = controller.set_poll_interval(args.interval)
        print(f"Polling every {effective} ms")

    try:
        subscription = controller.subscribe_snapshots()
        snapshot = controller.connect(port)
    except PowerSupplyError as exc:
        print(f"Connection failed: {exc}", file=sys.stderr)
        return 1
    print(f"Connected: {controller.identity}")
    if args.save_port:
        update_settings_value("serial.port", port, args.settings)

    try:
        if args.loop:
            config = AutomationConfig(
                level_a=float(args.loop[0]),
                level_b=float(args.loop[1]),
                interval_ms=int(args.loop[2]),
            )
            controller.start_automation(config)

        deadline = time.monotonic() + args.duration if args.duration > 0 else None
        while deadline is None or time.monotonic() < deadline:
            try:
                snapshot = subscription.get(timeout=0.5)
            except queue.Empty:
                continue
            if snapshot is None:
                break
            print(
                f"{snapshot.measured_voltage:8.3f} V  {snapshot.measured_current:7.3f} A  "
                f"{snapshot.power:8.3f} W  {snapshot.mode.value:<7}  "
                f"out={'ON' if snapshot.output_enabled else 'OFF'}"
            )
    except PowerSupplyError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        subscription.close()
        controller.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
