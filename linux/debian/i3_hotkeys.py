#!/usr/bin/env python3
"""
i3 Hotkeys Cheat Sheet
----------------------
Shows ~/.config/i3/hotkeys.txt in a dedicated terminal window.

  • show: print the hotkeys file and keep the window open
  • launch: open a single "Hotkeys" alacritty window on workspace 10, then
    jump back to the previous workspace. Does nothing if the window is already
    open or another launch is in progress.

Usage:
  ./i3_hotkeys.py launch
"""

import fcntl
import json
import logging
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

# ------------------------------
# Configuration
# ------------------------------
WINDOW_CLASS = "Hotkeys"
WORKSPACE = "10"
FONT_SIZE = 13
SWITCH_DELAY = 0.15
RETURN_DELAY = 0.2
LOGGER_NAME = "i3_hotkeys"

console = Console()
err_console = Console(stderr=True)


def default_hotkeys_file() -> Path:
    return Path.home() / ".config" / "i3" / "hotkeys.txt"


def default_lock_file() -> Path:
    return Path(os.environ.get("XDG_RUNTIME_DIR") or "/tmp") / "hotkeys.launch.lock"


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


# ------------------------------
# Helpers
# ------------------------------
def read_hotkeys(path: Path) -> str:
    try:
        return path.read_text()
    except OSError:
        return f"Hotkeys file not found:\n  {path}\n\nCreate it and reload i3."


def iter_nodes(node: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    yield node
    for child in node.get("nodes", []) + node.get("floating_nodes", []):
        yield from iter_nodes(child)


def window_open(tree: Dict[str, Any], window_class: str = WINDOW_CLASS) -> bool:
    """True if any window in an i3 layout tree has the given class."""
    for node in iter_nodes(tree):
        props = node.get("window_properties") or {}
        if props.get("class") == window_class:
            return True
    return False


def i3_tree() -> Dict[str, Any]:
    result = subprocess.run(
        ["i3-msg", "-t", "get_tree"], capture_output=True, text=True, check=True
    )
    return json.loads(result.stdout)


def i3_command(command: str) -> None:
    subprocess.run(["i3-msg", "-q", command], check=True)


def terminal_command(hotkeys_file: Path) -> List[str]:
    return [
        "alacritty",
        "--class",
        f"{WINDOW_CLASS.lower()},{WINDOW_CLASS}",
        "--title",
        WINDOW_CLASS,
        "--option",
        "window.dynamic_title=false",
        "-o",
        f"font.size={FONT_SIZE}",
        "-e",
        sys.executable,
        str(Path(__file__).resolve()),
        "show",
        "--file",
        str(hotkeys_file),
    ]


def launch_window(hotkeys_file: Path, lock_file: Path) -> bool:
    """Open the hotkeys window. Returns False when nothing was launched."""
    logger = logging.getLogger(LOGGER_NAME)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_file, "w") as lock:
        try:
            fcntl.flock(lock, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            logger.debug(f"{lock_file} is held by another launch")
            return False
        if window_open(i3_tree()):
            logger.debug("Hotkeys window already open")
            return False
        i3_command(f"workspace number {WORKSPACE}")
        time.sleep(SWITCH_DELAY)
        subprocess.Popen(
            terminal_command(hotkeys_file),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        time.sleep(RETURN_DELAY)
        i3_command("workspace back_and_forth")
    return True


# ------------------------------
# CLI Commands with Click
# ------------------------------
@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Hotkeys cheat sheet window for i3."""
    setup_logging(debug)


@cli.command()
@click.option("-f", "--file", "hotkeys_file", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Hotkeys text file (default: ~/.config/i3/hotkeys.txt)")
@click.option("--once", is_flag=True, help="Print the file and exit instead of keeping the window open")
def show(hotkeys_file: Optional[Path], once: bool) -> None:
    """Display the hotkeys file and stay open."""
    hotkeys_file = hotkeys_file or default_hotkeys_file()
    if not once:
        console.clear()
    console.print(f"\n{escape(read_hotkeys(hotkeys_file))}\n", highlight=False)
    if once:
        return
    while True:
        time.sleep(3600)


@cli.command()
@click.option("-f", "--file", "hotkeys_file", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Hotkeys text file passed to the window")
@click.option("--lock-file", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Launch lock (default: $XDG_RUNTIME_DIR/hotkeys.launch.lock)")
def launch(hotkeys_file: Optional[Path], lock_file: Optional[Path]) -> None:
    """Open the hotkeys window on workspace 10 unless it is already open."""
    try:
        launch_window(hotkeys_file or default_hotkeys_file(), lock_file or default_lock_file())
    except (subprocess.CalledProcessError, FileNotFoundError, json.JSONDecodeError) as e:
        err_console.print(f"[bold #BF616A]✗ Could not launch hotkeys window: {escape(str(e))}[/bold #BF616A]")
        sys.exit(1)


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
