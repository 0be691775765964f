#!/usr/bin/env python3
"""
Power Profile Toggle & Status Utility
-------------------------------------
Small helper around powerprofilesctl for i3 keybindings and status bars.

  • get: print the active profile
  • toggle: cycle balanced → power-saver → performance → balanced
  • watch: write a one-letter status (P/B/S/-) to ~/.cache/ppd_status.txt

Usage:
  ./power_profile.py toggle
  ./power_profile.py watch --interval 2
"""

import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

# ------------------------------
# Configuration
# ------------------------------
PROFILE_CYCLE = {
    "balanced": "power-saver",
    "power-saver": "performance",
    "performance": "balanced",
}
STATUS_LETTERS = {
    "performance": "P",
    "balanced": "B",
    "power-saver": "S",
}
DEFAULT_PROFILE = "balanced"
UNKNOWN_STATUS = "-"
DEFAULT_INTERVAL = 2.0
LOGGER_NAME = "power_profile"

console = Console()
err_console = Console(stderr=True)


def default_status_file() -> Path:
    return Path.home() / ".cache" / "ppd_status.txt"


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def print_error(text: str) -> None:
    err_console.print(f"[bold #BF616A]✗ {text}[/bold #BF616A]", soft_wrap=True)


# ------------------------------
# Profile Helpers
# ------------------------------
def current_profile() -> str:
    """Active profile, or an empty string when powerprofilesctl is unavailable."""
    try:
        result = subprocess.run(
            ["powerprofilesctl", "get"], capture_output=True, text=True, check=True
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        logging.getLogger(LOGGER_NAME).debug(f"powerprofilesctl get failed: {e}")
        return ""
    return result.stdout.strip()


def next_profile(current: str) -> str:
    return PROFILE_CYCLE.get(current, DEFAULT_PROFILE)


def status_letter(current: str) -> str:
    return STATUS_LETTERS.get(current, UNKNOWN_STATUS)


def set_profile(profile: str) -> None:
    logging.getLogger(LOGGER_NAME).debug(f"Switching power profile to {profile}")
    subprocess.run(["powerprofilesctl", "set", profile], check=True)


def write_status(path: Path, letter: str) -> None:
    """Replace path with letter (no trailing newline) in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(letter)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


# ------------------------------
# CLI Commands with Click
# ------------------------------
@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Toggle and report the power-profiles-daemon profile."""
    setup_logging(debug)


@cli.command()
def get() -> None:
    """Print the active power profile."""
    profile = current_profile()
    console.print(profile or UNKNOWN_STATUS, highlight=False)


@cli.command()
def toggle() -> None:
    """Switch to the next profile in the cycle."""
    target = next_profile(current_profile())
    try:
        set_profile(target)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        print_error(f"Could not set power profile to {target}: {e}")
        sys.exit(1)
    console.print(f"[bold #88C0D0]→ {target}[/bold #88C0D0]")


@cli.command()
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Status file (default: ~/.cache/ppd_status.txt)",
)
@click.option("-i", "--interval", type=float, default=DEFAULT_INTERVAL, show_default=True, help="Seconds between polls")
@click.option("--iterations", type=int, default=0, help="Stop after this many polls (0 runs forever)")
def watch(output: Optional[Path], interval: float, iterations: int) -> None:
    """Keep a one-letter profile status file up to date for the status bar."""
    output = output or default_status_file()
    count = 0
    while True:
        write_status(output, status_letter(current_profile()))
        count += 1
        if iterations and count >= iterations:
            break
        time.sleep(interval)


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
