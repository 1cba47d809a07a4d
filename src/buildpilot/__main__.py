"""Main entry point for BuildPilot.

Usage:
    python -m buildpilot devices --tier standard          # Show a device matrix
    python -m buildpilot devices --platform ios --json    # iOS devices as JSON
    python -m buildpilot providers                        # Configured device clouds
    python -m buildpilot --help                           # Show help
"""

import argparse
import json
import sys

from .device_cloud.device_matrix import get_recommended_devices
from .device_cloud.models import DeviceTier, Platform


def _print_devices(args) -> int:
    devices = get_recommended_devices(args.tier, args.platform)
    if args.json:
        print(json.dumps([device.model_dump(mode="json") for device in devices], indent=2))
        return 0

    print(f"{args.tier} matrix ({len(devices)} devices):")
    for device in devices:
        print(f"  {device.platform.value:<8} {device.name:<28} {device.os_version:<6} {device.form_factor.value}")
    return 0


def _print_providers() -> int:
    from .config import get_settings
    from .device_cloud.providers import ProviderRegistry

    registry = ProviderRegistry.from_settings(get_settings())
    for name in registry.names():
        marker = " (default)" if name == registry.default_provider else ""
        print(f"{name.value}{marker}")
    return 0


def main(argv=None):
    """Main CLI entry point for BuildPilot."""
    parser = argparse.ArgumentParser(
        prog="buildpilot",
        description="BuildPilot - job scheduling and device cloud testing",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override the configured log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    devices_parser = subparsers.add_parser("devices", help="Show a recommended device matrix")
    devices_parser.add_argument(
        "--tier",
        choices=[tier.value for tier in DeviceTier],
        default=DeviceTier.MINIMAL.value,
        help="Matrix size (default: minimal)",
    )
    devices_parser.add_argument(
        "--platform",
        action="append",
        choices=[platform.value for platform in Platform],
        help="Restrict to a platform (repeatable)",
    )
    devices_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    subparsers.add_parser("providers", help="List device cloud providers configured from the environment")

    args = parser.parse_args(argv)

    if args.version:
        from .version import __version__

        print(f"BuildPilot {__version__}")
        return 0

    if args.log_level:
        from .logging_config import configure_logging

        configure_logging(log_level=args.log_level, stream=sys.stderr)

    if args.command == "devices":
        return _print_devices(args)

    elif args.command == "providers":
        return _print_providers()

    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
