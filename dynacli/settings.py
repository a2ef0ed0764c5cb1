"""Commands for viewing and changing user settings."""

from __future__ import annotations

import argparse
import logging
import re
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from dynacli.config import Config, ConfigError, Settings

log = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT_NAME = "default-query-limit"
_HIGH_LIMIT_WARNING = 50000
_U32_MAX = 2**32 - 1

Confirm = Callable[[str, bool], bool]
PathLike = str | Path | None


class SettingsError(Exception):
    """Raised for unknown settings or invalid setting values."""


def _console_confirm(message: str, default: bool) -> bool:
    hint = "[Y/n]" if default else "[y/N]"
    answer = input(f"{message} {hint} ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def _unknown(name: str) -> SettingsError:
    return SettingsError(f"Unknown setting: {name}")


def _parse_limit(value: str) -> int:
    if re.fullmatch(r"\+?[0-9]+", value) is None or int(value) > _U32_MAX:
        raise SettingsError(
            f"Invalid value for {DEFAULT_QUERY_LIMIT_NAME}: '{value}'. "
            "Must be a positive integer."
        )
    return int(value)


def get_command(name: str, path: PathLike = None) -> int:
    """Print the value of one setting and return it."""
    log.info("Getting setting: %s", name)
    config = Config.load(path)
    if name != DEFAULT_QUERY_LIMIT_NAME:
        raise _unknown(name)
    value = config.settings.default_query_limit
    print(value)
    return value


def set_command(name: str, value: str, path: PathLike = None) -> None:
    """Change the value of one setting and save it."""
    log.info("Setting %s to %s", name, value)
    config = Config.load(path)
    if name != DEFAULT_QUERY_LIMIT_NAME:
        raise _unknown(name)

    limit = _parse_limit(value)
    if limit == 0:
        raise SettingsError(f"{DEFAULT_QUERY_LIMIT_NAME} must be greater than 0")
    if limit > _HIGH_LIMIT_WARNING:
        print(f"Warning: Setting a very high default limit ({limit}) may impact performance.")
        print("Consider using explicit limit() clauses for large queries instead.")

    config.update_default_query_limit(limit)
    print(f"Set {DEFAULT_QUERY_LIMIT_NAME} to {limit}")


def reset_command(name: str, path: PathLike = None) -> None:
    """Restore one setting to its default value."""
    log.info("Resetting setting: %s", name)
    config = Config.load(path)
    if name != DEFAULT_QUERY_LIMIT_NAME:
        raise _unknown(name)
    default = Settings().default_query_limit
    config.update_default_query_limit(default)
    print(f"Reset {DEFAULT_QUERY_LIMIT_NAME} to {default}")


def reset_all_command(
    force: bool = False, path: PathLike = None, confirm: Confirm | None = None
) -> bool:
    """Restore all settings to their defaults; returns False if the user declined."""
    log.info("Resetting all settings to defaults")
    ask = confirm if confirm is not None else _console_confirm
    if not force and not ask("Reset all settings to their default values?", False):
        print("Operation cancelled.")
        return False

    config = Config.load(path)
    config.settings = Settings()
    config.save()

    print("All settings have been reset to default values:")
    print(f"  {DEFAULT_QUERY_LIMIT_NAME}: {config.settings.default_query_limit}")
    return True


def show_command(path: PathLike = None) -> None:
    """Print all current settings."""
    log.info("Showing all settings")
    settings = Config.load(path).settings

    print("Current Settings:")
    print("=" * 20)
    print()
    print("Query Settings:")
    print(f"  {DEFAULT_QUERY_LIMIT_NAME}: {settings.default_query_limit}")
    print()
    print("Use 'settings set <name> <value>' to change a setting")
    print("Use 'settings reset <name>' to reset a setting to default")


def list_mappings_command(path: PathLike = None) -> None:
    """Print every saved field mapping, grouped by entity comparison."""
    mappings = Config.load(path).settings.field_mappings
    if not mappings:
        print("No field mappings found.")
        return

    print("Field Mappings:")
    print("=============")
    for comparison, fields in mappings.items():
        print(f"\n{comparison}")
        for source_field, target_field in fields.items():
            print(f"  {source_field} → {target_field}")

    print(f"\nTotal entity comparisons: {len(mappings)}")
    print(f"Total field mappings: {sum(len(fields) for fields in mappings.values())}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dynamics-cli settings", description="Manage settings")
    parser.add_argument("--config", type=Path, default=None, help="path of the config file")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("show", help="show all settings")

    get = commands.add_parser("get", help="show one setting")
    get.add_argument("name")

    set_ = commands.add_parser("set", help="change one setting")
    set_.add_argument("name")
    set_.add_argument("value")

    reset = commands.add_parser("reset", help="reset one setting to its default")
    reset.add_argument("name")

    reset_all = commands.add_parser("reset-all", help="reset all settings to defaults")
    reset_all.add_argument("--force", action="store_true", help="skip confirmation")

    commands.add_parser("list-mappings", help="list field mappings")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run a settings command; returns the process exit status."""
    args = _build_parser().parse_args(argv)
    try:
        match args.command:
            case "show":
                show_command(args.config)
            case "get":
                get_command(args.name, args.config)
            case "set":
                set_command(args.name, args.value, args.config)
            case "reset":
                reset_command(args.name, args.config)
            case "reset-all":
                reset_all_command(args.force, args.config)
            case "list-mappings":
                list_mappings_command(args.config)
    except (SettingsError, ConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())