#!/usr/bin/env python3
"""
XFCE + xRDP + Google Authenticator Setup Utility (Reversible)
---------------------------------------------------------------

This utility performs, on Debian 13:
  • Installation of XFCE, xrdp and libpam-google-authenticator
  • Configuration of xrdp to start XFCE (/etc/xrdp/startwm.sh)
  • TOTP two-factor authentication for RDP logins via /etc/pam.d/xrdp-sesman
  • Creation (or backup and overwrite) of the target user's ~/.xsession
  • An exact undo driven by timestamped backups and a saved state record

Every modified file is backed up under /var/lib/xfce-xrdp-2fa/backups before it
is touched, and the state of the last install is kept in
/var/lib/xfce-xrdp-2fa/state.env.

Usage:
  sudo ./xfce_xrdp_2fa.py install --user <username>
  sudo ./xfce_xrdp_2fa.py undo [--purge-packages]
  ./xfce_xrdp_2fa.py status
"""

# ----------------------------------------------------------------
# Dependencies and Imports
# ----------------------------------------------------------------
import fcntl
import logging
import os
import pwd
import re
import shlex
import shutil
import signal
import stat
import subprocess
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import click
import pyfiglet
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme


# ----------------------------------------------------------------
# Nord-Themed Colors and Theme Setup
# ----------------------------------------------------------------
class NordColors:
    POLAR_NIGHT_3: str = "#434C5E"
    SNOW_STORM_1: str = "#D8DEE9"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.SNOW_STORM_1,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
    }
)

console = Console(theme=nord_theme)
err_console = Console(theme=nord_theme, stderr=True)

# ----------------------------------------------------------------
# Global Configuration
# ----------------------------------------------------------------
APP_NAME = "xRDP 2FA"
APP_ID = "xfce-xrdp-2fa"
VERSION = "1.0.0"
LOGGER_NAME = "xfce_xrdp_2fa"

DEFAULT_STATE_DIR = Path("/var/lib") / APP_ID
DEFAULT_LOG_FILE = Path("/var/log/xfce_xrdp_2fa.log")

MARKER_LINE = "auth required pam_google_authenticator.so nullok"
MARKER_MODULE = "pam_google_authenticator.so"
ANCHOR_RE = re.compile(r"^\s*@include\s+common-auth")

STARTWM_CONTENT = (
    "#!/bin/sh\n"
    "# Managed by xfce-xrdp-2fa (reversible via undo)\n"
    "unset DBUS_SESSION_BUS_ADDRESS\n"
    "unset XDG_RUNTIME_DIR\n"
    "exec startxfce4\n"
)
XSESSION_CONTENT = "startxfce4\n"

BACKUP_TS_FORMAT = "%Y%m%dT%H%M%SZ"
BACKUP_SUFFIX_RE = re.compile(r"^(\d{8}T\d{6}Z)(?:\.(\d{2,}))?$")


@dataclass
class Config:
    STATE_DIR: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    LOG_FILE: Optional[Path] = field(default_factory=lambda: DEFAULT_LOG_FILE)
    XRDP_STARTWM: Path = field(default_factory=lambda: Path("/etc/xrdp/startwm.sh"))
    XRDP_PAM: Path = field(default_factory=lambda: Path("/etc/pam.d/xrdp-sesman"))
    PACKAGES: List[str] = field(
        default_factory=lambda: [
            "xfce4",
            "xfce4-goodies",
            "xrdp",
            "libpam-google-authenticator",
        ]
    )
    XRDP_SERVICE: str = "xrdp"
    SESMAN_SERVICE: str = "xrdp-sesman"
    SSL_CERT_GROUP: str = "ssl-cert"
    DEBUG: bool = False

    def __post_init__(self):
        self.STATE_DIR = Path(self.STATE_DIR)
        self.XRDP_STARTWM = Path(self.XRDP_STARTWM)
        self.XRDP_PAM = Path(self.XRDP_PAM)
        if self.LOG_FILE is not None:
            self.LOG_FILE = Path(self.LOG_FILE)

    @property
    def BACKUP_DIR(self) -> Path:
        return self.STATE_DIR / "backups"

    @property
    def STATE_FILE(self) -> Path:
        return self.STATE_DIR / "state.env"

    @property
    def LOCK_FILE(self) -> Path:
        return self.STATE_DIR / ".lock"


# ----------------------------------------------------------------
# Custom Exceptions
# ----------------------------------------------------------------
class SetupError(Exception):
    """Base exception for setup and undo errors."""

    pass


class PrivilegeError(SetupError):
    """Raised when the utility is not running as root."""

    pass


class ArgumentError(SetupError):
    """Raised when a required argument is missing or invalid."""

    pass


class PreconditionError(SetupError):
    """Raised when a user account or an expected system file is missing."""

    pass


class LockError(PreconditionError):
    """Raised when another instance holds the state directory lock."""

    pass


class StateMissingError(SetupError):
    """Raised when undo runs without a saved state record."""

    pass


class BackupError(SetupError):
    """Raised when backing up, writing or restoring a managed file fails."""

    pass


class CollaboratorError(SetupError):
    """Raised when an external command (apt-get, systemctl, adduser) fails."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"Command '{' '.join(self.cmd)}' failed with exit code {returncode}"
        if self.stderr:
            message += f": {self.stderr.splitlines()[-1]}"
        super().__init__(message)


# ----------------------------------------------------------------
# Simple Message Printing Helpers
# ----------------------------------------------------------------
def print_header(title: str) -> None:
    ascii_art = pyfiglet.figlet_format(title, font="slant")
    console.print(ascii_art, style="banner", markup=False, highlight=False)


def print_message(text: str, style: str = NordColors.FROST_2, prefix: str = "•") -> None:
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]", soft_wrap=True)


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


def print_error(message: str) -> None:
    err_console.print(
        f"[{NordColors.RED}]✗ {escape(message)}[/{NordColors.RED}]", soft_wrap=True
    )


# ----------------------------------------------------------------
# Logger Setup
# ----------------------------------------------------------------
def setup_logger(log_file: Optional[Path], debug: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()
    console_handler = RichHandler(
        console=err_console, rich_tracebacks=True, show_path=False
    )
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.addHandler(console_handler)
    if log_file is None:
        return logger
    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}")
        return logger
    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    try:
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")
    return logger


# ----------------------------------------------------------------
# File Helpers
# ----------------------------------------------------------------
def timestamp() -> str:
    """UTC timestamp with second resolution that sorts chronologically."""
    return datetime.now(timezone.utc).strftime(BACKUP_TS_FORMAT)


def make_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    os.chmod(path, 0o700)


def copy_ownership(src: Path, dst: Path) -> bool:
    """Give dst the owner and group of src. Returns False if not permitted."""
    st = os.stat(src)
    try:
        os.chown(dst, st.st_uid, st.st_gid)
    except PermissionError:
        logging.getLogger(LOGGER_NAME).debug(
            f"Not permitted to copy ownership of {src} onto {dst}"
        )
        return False
    return True


def atomic_write_text(
    path: Path,
    content: str,
    mode: Optional[int] = None,
    owner: Optional[Tuple[int, int]] = None,
) -> None:
    """Write content to a temp file next to path, then move it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            errors="surrogateescape",
            newline="",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            temp_path = Path(tmp.name)
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        if owner is not None:
            os.chown(temp_path, owner[0], owner[1])
        os.replace(temp_path, path)
    finally:
        if temp_path is not None and temp_path.exists():
            temp_path.unlink()


def copy_into_place(src: Path, dst: Path) -> None:
    """Copy src over dst (bytes, mode, ownership) through a temp file."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(dst.parent), prefix=f".{dst.name}.", suffix=".tmp")
    os.close(fd)
    temp_path = Path(tmp_name)
    try:
        shutil.copy2(src, temp_path)
        copy_ownership(src, temp_path)
        os.replace(temp_path, dst)
    finally:
        if temp_path.exists():
            temp_path.unlink()


# ----------------------------------------------------------------
# Backup Store
# ----------------------------------------------------------------
class BackupStore:
    """Timestamped copies of managed files, mirrored by absolute path.

    ``/etc/pam.d/xrdp-sesman`` backed up at 2026-01-02 03:04:05 UTC lands at
    ``<root>/etc/pam.d/xrdp-sesman.20260102T030405Z``. A second backup taken
    within the same second gets a ``.01`` sequence suffix, and so on.
    Existing backups are never overwritten or removed.
    """

    def __init__(self, root: Path, logger: Optional[logging.Logger] = None):
        self.root = Path(root)
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def mirror_path(self, path: Path) -> Path:
        path = Path(path)
        if not path.is_absolute():
            raise ValueError(f"Managed paths must be absolute: {path}")
        return self.root / path.relative_to(path.anchor)

    def backup_path_for(self, path: Path, stamp: str, seq: int = 0) -> Path:
        mirrored = self.mirror_path(path)
        name = f"{mirrored.name}.{stamp}"
        if seq:
            name += f".{seq:02d}"
        return mirrored.with_name(name)

    def backup(self, path: Path) -> Optional[Path]:
        path = Path(path)
        if not path.is_file():
            self.logger.debug(f"{path} does not exist; nothing to back up.")
            return None
        stamp = timestamp()
        seq = 0
        dest = self.backup_path_for(path, stamp)
        while dest.exists():
            seq += 1
            dest = self.backup_path_for(path, stamp, seq)
        try:
            make_private_dir(dest.parent)
            shutil.copy2(path, dest)
            copy_ownership(path, dest)
        except OSError as e:
            raise BackupError(f"Failed to back up {path} to {dest}: {e}") from e
        self.logger.info(f"Backed up {path} -> {dest}")
        print_message(f"Backed up {path} -> {dest}")
        return dest

    def list_backups(self, path: Path) -> List[Path]:
        """Backups of path, oldest first."""
        mirrored = self.mirror_path(path)
        if not mirrored.parent.is_dir():
            return []
        prefix = f"{mirrored.name}."
        found = []
        for entry in mirrored.parent.iterdir():
            if not entry.name.startswith(prefix) or not entry.is_file():
                continue
            match = BACKUP_SUFFIX_RE.match(entry.name[len(prefix):])
            if match:
                found.append(((match.group(1), int(match.group(2) or 0)), entry))
        return [entry for _, entry in sorted(found)]

    def latest_backup(self, path: Path) -> Optional[Path]:
        backups = self.list_backups(path)
        return backups[-1] if backups else None

    def restore_latest(self, path: Path) -> Optional[Path]:
        path = Path(path)
        latest = self.latest_backup(path)
        if latest is None:
            self.logger.info(f"No backup found for {path}; skipping restore.")
            print_message(f"No backup found for {path}; skipping restore.")
            return None
        try:
            copy_into_place(latest, path)
        except OSError as e:
            raise BackupError(f"Failed to restore {path} from {latest}: {e}") from e
        self.logger.info(f"Restored {path} from {latest}")
        print_success(f"Restored {path} from {latest}")
        return latest


# ----------------------------------------------------------------
# State Record
# ----------------------------------------------------------------
@dataclass(frozen=True)
class ManagedFile:
    path: Path
    created: bool = False

    @property
    def existed_before(self) -> bool:
        return not self.created


@dataclass
class StateRecord:
    """What the last install changed. Saved as shell-style KEY='value' lines."""

    app_id: str
    backup_dir: Path
    xrdp_startwm: Path
    xrdp_pam: Path
    packages: List[str]
    target_user: str = ""
    target_home: Optional[Path] = None
    created_xsession: bool = False
    saved_at: str = ""

    REQUIRED_KEYS = ("APP_ID", "BACKUP_DIR", "XRDP_STARTWM", "XRDP_PAM", "PACKAGES")

    @property
    def xsession_path(self) -> Optional[Path]:
        if self.target_home is None:
            return None
        return self.target_home / ".xsession"

    def managed_files(self) -> List[ManagedFile]:
        files = [ManagedFile(self.xrdp_startwm), ManagedFile(self.xrdp_pam)]
        if self.xsession_path is not None:
            files.append(ManagedFile(self.xsession_path, created=self.created_xsession))
        return files

    def to_env(self) -> str:
        values = {
            "APP_ID": self.app_id,
            "BACKUP_DIR": str(self.backup_dir),
            "XRDP_STARTWM": str(self.xrdp_startwm),
            "XRDP_PAM": str(self.xrdp_pam),
            "PACKAGES": " ".join(self.packages),
            "TARGET_USER": self.target_user,
            "TARGET_HOME": str(self.target_home) if self.target_home else "",
            "CREATED_XSESSION": "1" if self.created_xsession else "0",
            "SAVED_AT": self.saved_at,
        }
        return "".join(f"{key}={shlex.quote(value)}\n" for key, value in values.items())

    @classmethod
    def from_env(cls, text: str) -> "StateRecord":
        values: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            for token in shlex.split(line):
                key, sep, value = token.partition("=")
                if sep:
                    values[key] = value
        missing = [key for key in cls.REQUIRED_KEYS if key not in values]
        if missing:
            raise StateMissingError(f"State record is incomplete, missing: {', '.join(missing)}")
        home = values.get("TARGET_HOME", "")
        return cls(
            app_id=values["APP_ID"],
            backup_dir=Path(values["BACKUP_DIR"]),
            xrdp_startwm=Path(values["XRDP_STARTWM"]),
            xrdp_pam=Path(values["XRDP_PAM"]),
            packages=values["PACKAGES"].split(),
            target_user=values.get("TARGET_USER", ""),
            target_home=Path(home) if home else None,
            created_xsession=values.get("CREATED_XSESSION", "0") == "1",
            saved_at=values.get("SAVED_AT", ""),
        )


class StateFile:
    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        try:
            st = self.path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return False
        except PermissionError:
            raise PreconditionError(f"Cannot read {self.path}; run as root.") from None
        return stat.S_ISREG(st.st_mode)

    def load(self) -> StateRecord:
        if not self.exists():
            raise StateMissingError(f"No state file found at {self.path}. Nothing to undo.")
        try:
            text = self.path.read_text()
        except OSError as e:
            raise BackupError(f"Failed to read state file {self.path}: {e}") from e
        return StateRecord.from_env(text)

    def save(self, record: StateRecord) -> None:
        try:
            atomic_write_text(self.path, record.to_env(), mode=0o600)
        except OSError as e:
            raise BackupError(f"Failed to write state file {self.path}: {e}") from e


# ----------------------------------------------------------------
# Idempotent Patcher
# ----------------------------------------------------------------
class PatchOutcome(str, Enum):
    ALREADY_PRESENT = "already-present"
    BEFORE_ANCHOR = "before-anchor"
    FALLBACK = "fallback"


def insert_marker(
    lines: List[str],
    marker: str = MARKER_LINE,
    module: str = MARKER_MODULE,
    anchor: "re.Pattern[str]" = ANCHOR_RE,
) -> Tuple[List[str], PatchOutcome]:
    """Insert marker before the first anchor line, or as line 2 if none.

    Lines keep their line endings. Any line mentioning ``module`` counts as
    present, commented out or not.
    """
    if any(module in line for line in lines):
        return list(lines), PatchOutcome.ALREADY_PRESENT
    for index, line in enumerate(lines):
        if anchor.match(line):
            marker_line = marker + (line_ending(line) or line_ending(lines[0]) or "\n")
            return lines[:index] + [marker_line] + lines[index:], PatchOutcome.BEFORE_ANCHOR
    if not lines:
        return [f"{marker}\n"], PatchOutcome.FALLBACK
    ending = line_ending(lines[0]) or "\n"
    head = lines[0] if line_ending(lines[0]) else lines[0] + ending
    return [head, marker + ending] + lines[1:], PatchOutcome.FALLBACK


def line_ending(line: str) -> str:
    for ending in ("\r\n", "\n", "\r"):
        if line.endswith(ending):
            return ending
    return ""


def patch_pam_file(path: Path, logger: Optional[logging.Logger] = None) -> PatchOutcome:
    logger = logger or logging.getLogger(LOGGER_NAME)
    path = Path(path)
    if not path.is_file():
        raise PreconditionError(f"Expected {path} to exist after installing xrdp.")
    try:
        with open(path, encoding="utf-8", errors="surrogateescape", newline="") as fh:
            lines = fh.readlines()
    except OSError as e:
        raise BackupError(f"Failed to read {path}: {e}") from e
    new_lines, outcome = insert_marker(lines)
    if outcome is PatchOutcome.ALREADY_PRESENT:
        logger.info(f"{path} already references {MARKER_MODULE}; leaving as-is.")
        return outcome
    st = path.stat()
    try:
        atomic_write_text(
            path,
            "".join(new_lines),
            mode=stat.S_IMODE(st.st_mode),
            owner=(st.st_uid, st.st_gid),
        )
    except OSError as e:
        raise BackupError(f"Failed to write {path}: {e}") from e
    if outcome is PatchOutcome.FALLBACK:
        logger.warning(
            f"No '@include common-auth' line in {path}; inserted the marker as line 2. "
            "Verify the PAM stack order manually."
        )
    logger.info(f"Inserted '{MARKER_LINE}' into {path} ({outcome.value})")
    return outcome


# ----------------------------------------------------------------
# File Replacer
# ----------------------------------------------------------------
def replace_file(
    store: BackupStore,
    path: Path,
    content: str,
    mode: int,
    owner: Optional[Tuple[int, int]] = None,
) -> Optional[Path]:
    """Back up path, then overwrite it with content. Returns the backup, if any."""
    path = Path(path)
    backup = store.backup(path)
    try:
        atomic_write_text(path, content, mode=mode, owner=owner)
    except OSError as e:
        raise BackupError(f"Failed to write {path}: {e}") from e
    store.logger.info(f"Wrote {path} (mode {mode:o})")
    return backup


# ----------------------------------------------------------------
# Restore Engine
# ----------------------------------------------------------------
@dataclass
class RestoreReport:
    restored: List[Tuple[Path, Path]] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def restore_managed_files(
    store: BackupStore, managed: Sequence[ManagedFile], logger: Optional[logging.Logger] = None
) -> RestoreReport:
    """Put every managed file back the way it was before install.

    Files the installer created are removed, the rest are restored from their
    newest backup. A failure on one file is recorded and the rest still run.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    report = RestoreReport()
    for item in managed:
        try:
            if item.created:
                if item.path.exists() or item.path.is_symlink():
                    item.path.unlink()
                    logger.info(f"Removed {item.path} (it was created by install)")
                    print_success(f"Removed {item.path} (it was created by install)")
                    report.removed.append(item.path)
                else:
                    report.skipped.append(item.path)
                continue
            used = store.restore_latest(item.path)
            if used is None:
                report.skipped.append(item.path)
            else:
                report.restored.append((item.path, used))
        except (OSError, SetupError) as e:
            logger.error(f"Failed to restore {item.path}: {e}")
            print_error(f"Failed to restore {item.path}: {e}")
            report.failed.append((item.path, str(e)))
    return report


# ----------------------------------------------------------------
# Main Setup Class
# ----------------------------------------------------------------
class XrdpTwoFactorSetup:
    def __init__(self, config: Optional[Config] = None, logger: Optional[logging.Logger] = None):
        self.config = config or Config()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.store = BackupStore(self.config.BACKUP_DIR, self.logger)
        self.state_file = StateFile(self.config.STATE_FILE)

    # ------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------
    def run_command(self, cmd: List[str]) -> subprocess.CompletedProcess:
        self.logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            self.logger.debug(e.stdout or "")
            raise CollaboratorError(cmd, e.returncode, e.stderr) from e
        except FileNotFoundError as e:
            raise CollaboratorError(cmd, 127, str(e)) from e
        if result.stdout:
            self.logger.debug(result.stdout)
        return result

    def run_tolerated(self, cmd: List[str]) -> bool:
        try:
            self.run_command(cmd)
            return True
        except CollaboratorError as e:
            self.logger.info(f"Ignoring failure: {e}")
            return False

    def check_root(self) -> None:
        if os.geteuid() != 0:
            raise PrivilegeError("Run as root (use sudo).")

    def lookup_user(self, username: str) -> pwd.struct_passwd:
        if not username:
            raise ArgumentError("--user is required")
        try:
            return pwd.getpwnam(username)
        except KeyError:
            raise PreconditionError(f"User '{username}' does not exist.") from None

    def ensure_dirs(self) -> None:
        try:
            make_private_dir(self.config.STATE_DIR)
            make_private_dir(self.config.BACKUP_DIR)
        except OSError as e:
            raise BackupError(
                f"Failed to prepare state directory {self.config.STATE_DIR}: {e}"
            ) from e

    @contextmanager
    def locked(self) -> Iterator[None]:
        self.ensure_dirs()
        try:
            lock = open(self.config.LOCK_FILE, "w")
        except OSError as e:
            raise BackupError(f"Failed to open lock file {self.config.LOCK_FILE}: {e}") from e
        with lock:
            try:
                fcntl.flock(lock, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise LockError(
                    f"Another {APP_ID} run holds {self.config.LOCK_FILE}."
                ) from None
            try:
                yield
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

    def install_packages(self) -> None:
        packages = self.config.PACKAGES
        print_step(f"Installing packages: {' '.join(packages)}")
        with console.status("Running apt-get...", spinner="dots"):
            self.run_command(["apt-get", "update"])
            self.run_command(["apt-get", "install", "-y", *packages])
        print_success("Packages installed.")

    def purge_packages(self, packages: List[str]) -> None:
        print_step(f"Purging packages: {' '.join(packages)}")
        with console.status("Running apt-get purge...", spinner="dots"):
            purged = self.run_tolerated(["apt-get", "purge", "-y", *packages])
            self.run_tolerated(["apt-get", "autoremove", "-y"])
        if not purged:
            self.logger.warning("Package purge failed; configuration was restored regardless.")

    def enable_xrdp(self) -> None:
        service = self.config.XRDP_SERVICE
        print_step(f"Enabling and starting {service}")
        self.run_command(["systemctl", "enable", service])
        self.run_tolerated(["systemctl", "restart", service])
        print_step(f"Adding {service} to the {self.config.SSL_CERT_GROUP} group")
        self.run_tolerated(["adduser", service, self.config.SSL_CERT_GROUP])

    def restart_services(self, strict: bool = True) -> None:
        print_step("Restarting xrdp services")
        if strict:
            self.run_command(["systemctl", "restart", self.config.XRDP_SERVICE])
        else:
            self.run_tolerated(["systemctl", "restart", self.config.XRDP_SERVICE])
        self.run_tolerated(["systemctl", "restart", self.config.SESMAN_SERVICE])

    # ------------------------------------------------------------
    # Managed files
    # ------------------------------------------------------------
    def configure_startwm(self) -> None:
        print_step("Configuring xrdp to start XFCE")
        replace_file(self.store, self.config.XRDP_STARTWM, STARTWM_CONTENT, 0o755)

    def configure_pam(self) -> PatchOutcome:
        pam = self.config.XRDP_PAM
        print_step(f"Configuring PAM for {self.config.SESMAN_SERVICE} to use Google Authenticator")
        if not pam.is_file():
            raise PreconditionError(f"Expected {pam} to exist after installing xrdp.")
        self.store.backup(pam)
        outcome = patch_pam_file(pam, self.logger)
        if outcome is PatchOutcome.ALREADY_PRESENT:
            print_message(f"PAM already references {MARKER_MODULE}; leaving as-is.")
        else:
            print_success(f"Inserted: {MARKER_LINE}")
        return outcome

    def configure_xsession(self, user: pwd.struct_passwd) -> bool:
        """Write ~/.xsession for user. Returns True if install created it."""
        home = Path(user.pw_dir)
        if not home.is_dir():
            self.logger.warning(
                f"Could not find home dir for {user.pw_name}; skipping ~/.xsession"
            )
            return False
        xsession = home / ".xsession"
        print_step(f"Configuring {xsession} to start XFCE under xrdp")
        created = not xsession.is_file()
        replace_file(
            self.store,
            xsession,
            XSESSION_CONTENT,
            0o700,
            owner=(user.pw_uid, user.pw_gid),
        )
        print_success(f"Wrote {xsession}")
        return created

    def managed_files_for(self, record: StateRecord) -> List[ManagedFile]:
        managed = record.managed_files()
        home = record.target_home
        if home is None or not record.target_user:
            return [m for m in managed if m.path != record.xsession_path]
        if not home.is_dir():
            self.logger.warning(f"{home} no longer exists; leaving ~/.xsession alone")
            return [m for m in managed if m.path != record.xsession_path]
        return managed

    # ------------------------------------------------------------
    # Install / Undo
    # ------------------------------------------------------------
    def install(self, username: str) -> StateRecord:
        self.check_root()
        user = self.lookup_user(username)
        with self.locked():
            self.install_packages()
            self.enable_xrdp()
            self.configure_startwm()
            self.configure_pam()
            created = self.configure_xsession(user)
            record = StateRecord(
                app_id=APP_ID,
                backup_dir=self.config.BACKUP_DIR,
                xrdp_startwm=self.config.XRDP_STARTWM,
                xrdp_pam=self.config.XRDP_PAM,
                packages=list(self.config.PACKAGES),
                target_user=user.pw_name,
                target_home=Path(user.pw_dir),
                created_xsession=created,
                saved_at=timestamp(),
            )
            self.state_file.save(record)
            self.logger.info(f"Wrote state: {self.state_file.path}")
            print_success(f"Wrote state: {self.state_file.path}")
            self.restart_services(strict=True)
        return record

    def undo(self, purge_packages: bool = False) -> RestoreReport:
        self.check_root()
        if not self.state_file.exists():
            raise StateMissingError(
                f"No state file found at {self.state_file.path}. Nothing to undo."
            )
        with self.locked():
            record = self.state_file.load()
            print_step("Restoring configuration files from backups (if present)")
            store = BackupStore(record.backup_dir, self.logger)
            report = restore_managed_files(store, self.managed_files_for(record), self.logger)
            xsession = record.xsession_path
            if xsession is not None and any(path == xsession for path, _ in report.restored):
                self.chown_to_user(xsession, record.target_user)
            self.restart_services(strict=False)
            if purge_packages:
                self.purge_packages(record.packages)
        return report

    def chown_to_user(self, path: Path, username: str) -> None:
        try:
            user = pwd.getpwnam(username)
            os.chown(path, user.pw_uid, user.pw_gid)
        except (KeyError, OSError) as e:
            self.logger.warning(f"Could not hand {path} back to {username}: {e}")


# ----------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------
def print_next_steps(record: StateRecord) -> None:
    user = record.target_user
    console.print(
        "\n[success]DONE.[/success]\n\n"
        "[header]Next steps (manual, per-user):[/header]\n"
        f"  1) As {escape(user)}, run:\n"
        "       google-authenticator\n"
        f"     (Or: sudo -u {escape(user)} google-authenticator)\n\n"
        "  2) Test RDP login. Depending on your RDP client, you may get:\n"
        "     - Password prompt then a TOTP prompt\n"
        "     - OR a single prompt where you enter: passwordTOTP (no separator)\n\n"
        "Rollback any time:\n"
        "  sudo xfce-xrdp-2fa undo",
        highlight=False,
    )


def print_restore_report(report: RestoreReport, state_dir: Path) -> None:
    table = Table(title="Undo Report", style="banner")
    table.add_column("File", style="header")
    table.add_column("Result", style="info")
    table.add_column("Detail", style="info")
    for path, backup in report.restored:
        table.add_row(str(path), "[success]restored[/success]", str(backup))
    for path in report.removed:
        table.add_row(str(path), "[success]removed[/success]", "created by install")
    for path in report.skipped:
        table.add_row(str(path), "[warning]skipped[/warning]", "no backup")
    for path, error in report.failed:
        table.add_row(str(path), "[error]failed[/error]", escape(error))
    console.print(table)
    print_message(f"Leaving backups and state directory in place: {state_dir}")
    print_message("(You can remove it manually if you want.)")


def print_status(config: Config) -> None:
    state_file = StateFile(config.STATE_FILE)
    record = state_file.load() if state_file.exists() else None
    store = BackupStore(record.backup_dir if record else config.BACKUP_DIR)
    if record is None:
        print_message(f"No state file at {config.STATE_FILE}; not installed.")
        managed = [ManagedFile(config.XRDP_STARTWM), ManagedFile(config.XRDP_PAM)]
    else:
        print_message(
            f"Installed for {record.target_user or '(no user)'} at {record.saved_at or 'unknown time'}"
        )
        managed = record.managed_files()
    table = Table(title="Managed Files", style="banner")
    table.add_column("File", style="header")
    table.add_column("Exists", style="info")
    table.add_column("Created by install", style="info")
    table.add_column("Backups", style="info", justify="right")
    for item in managed:
        table.add_row(
            str(item.path),
            "yes" if item.path.exists() else "no",
            "yes" if item.created else "no",
            str(len(store.list_backups(item.path))),
        )
    console.print(table)


# ----------------------------------------------------------------
# CLI Argument Parsing with Click
# ----------------------------------------------------------------
class SetupGroup(click.Group):
    """Click group that maps every failure to exit status 1."""

    def main(self, *args, **kwargs):
        kwargs["standalone_mode"] = False
        try:
            rv = super().main(*args, **kwargs)
        except click.ClickException as e:
            e.show()
            sys.exit(1)
        except click.exceptions.Abort:
            print_error("Interrupted by user.")
            sys.exit(130)
        except (SetupError, OSError) as e:
            logging.getLogger(LOGGER_NAME).debug("Fatal error", exc_info=True)
            print_error(str(e))
            sys.exit(1)
        sys.exit(rv if isinstance(rv, int) else 0)


CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

USAGE_NOTES = """\b
What install does:
  - Installs XFCE + xrdp + libpam-google-authenticator
  - Configures xrdp to start XFCE
  - Enables TOTP for RDP logins via /etc/pam.d/xrdp-sesman (with nullok)
  - Adds xrdp to the ssl-cert group
  - Creates/backs up the target user's ~/.xsession -> startxfce4

\b
What you still do manually:
  - For each user who should use 2FA, run:
      google-authenticator
    (or run it as that user with: sudo -u <user> google-authenticator)

\b
Notes:
  - 'nullok' means users without ~/.google_authenticator can still log in.
    Remove nullok later if you want to enforce 2FA for all RDP users.
"""


@click.group(
    cls=SetupGroup,
    invoke_without_command=True,
    context_settings=CONTEXT_SETTINGS,
    epilog=USAGE_NOTES,
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_STATE_DIR,
    envvar="XRDP2FA_STATE_DIR",
    show_default=True,
    help="Directory holding backups and the state record.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_LOG_FILE,
    envvar="XRDP2FA_LOG_FILE",
    show_default=True,
    help="Detailed log of install and undo runs.",
)
@click.option("--debug", is_flag=True, help="Show debug logging on the console.")
@click.version_option(version=VERSION)
@click.pass_context
def cli(ctx: click.Context, state_dir: Path, log_file: Path, debug: bool) -> None:
    """Debian 13: XFCE + xRDP + Google Authenticator (PAM TOTP).

    Reversible: backs up every modified file and stores state for undo.
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(1)
    ctx.obj = Config(STATE_DIR=state_dir, LOG_FILE=log_file, DEBUG=debug)


@cli.command(context_settings=CONTEXT_SETTINGS)
@click.option("--user", "username", required=True, metavar="NAME", help="User whose ~/.xsession starts XFCE.")
@click.pass_obj
def install(config: Config, username: str) -> int:
    """Install packages and configure xrdp with TOTP two-factor logins."""
    logger = setup_logger(config.LOG_FILE, config.DEBUG)
    print_header(APP_NAME)
    logger.info(f"Install started for user {username}")
    record = XrdpTwoFactorSetup(config, logger).install(username)
    logger.info("Install complete")
    print_next_steps(record)
    return 0


@cli.command(context_settings=CONTEXT_SETTINGS)
@click.option("--purge-packages", is_flag=True, help="Also purge the installed packages (best effort).")
@click.pass_obj
def undo(config: Config, purge_packages: bool) -> int:
    """Restore every modified file from its latest backup."""
    logger = setup_logger(config.LOG_FILE, config.DEBUG)
    print_header(APP_NAME)
    logger.info("Undo started")
    report = XrdpTwoFactorSetup(config, logger).undo(purge_packages=purge_packages)
    print_restore_report(report, config.STATE_DIR)
    if not report.ok:
        print_error(f"UNDO incomplete: {len(report.failed)} file(s) could not be restored.")
        return 1
    logger.info("Undo complete")
    print_success("UNDO complete.")
    return 0


@cli.command(context_settings=CONTEXT_SETTINGS)
@click.pass_obj
def status(config: Config) -> int:
    """Show the saved state and the backups of each managed file."""
    setup_logger(None, config.DEBUG)
    print_status(config)
    return 0


# ----------------------------------------------------------------
# Signal Handling and Main Entry Point
# ----------------------------------------------------------------
def signal_handler(signum, frame):
    sig = signal.Signals(signum).name
    logging.getLogger(LOGGER_NAME).error(f"Interrupted by {sig}.")
    print_error(f"Interrupted by {sig}.")
    sys.exit(128 + signum)


def main() -> None:
    for s in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        signal.signal(s, signal_handler)
    cli(prog_name="xfce-xrdp-2fa")


if __name__ == "__main__":
    main()
