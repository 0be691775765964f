import os
import pwd
import subprocess
from pathlib import Path

import pytest

import xfce_xrdp_2fa

PAM_SESMAN = (
    "#%PAM-1.0\n"
    "@include common-auth\n"
    "@include common-account\n"
    "@include common-session\n"
    "@include common-password\n"
)

ORIGINAL_STARTWM = "#!/bin/sh\nif test -r /etc/profile; then\n\t. /etc/profile\nfi\nexec /bin/sh /etc/X11/Xsession\n"


class RecordingSetup(xfce_xrdp_2fa.XrdpTwoFactorSetup):
    """Setup whose external commands are recorded instead of executed."""

    def __init__(self, *args, fail=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.commands = []
        self.fail = set(fail)

    def run_command(self, cmd):
        self.commands.append(list(cmd))
        if " ".join(cmd) in self.fail:
            raise xfce_xrdp_2fa.CollaboratorError(cmd, 1, "simulated failure")
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def config(tmp_path):
    etc = tmp_path / "etc"
    startwm = etc / "xrdp" / "startwm.sh"
    pam = etc / "pam.d" / "xrdp-sesman"
    startwm.parent.mkdir(parents=True)
    pam.parent.mkdir(parents=True)
    startwm.write_text(ORIGINAL_STARTWM)
    startwm.chmod(0o755)
    pam.write_text(PAM_SESMAN)
    pam.chmod(0o644)
    return xfce_xrdp_2fa.Config(
        STATE_DIR=tmp_path / "state",
        LOG_FILE=None,
        XRDP_STARTWM=startwm,
        XRDP_PAM=pam,
    )


@pytest.fixture
def home(tmp_path):
    path = tmp_path / "home" / "alice"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def fake_user(monkeypatch, home):
    entry = pwd.struct_passwd(
        ("alice", "x", os.getuid(), os.getgid(), "Alice", str(home), "/bin/bash")
    )

    def getpwnam(name):
        if name == "alice":
            return entry
        raise KeyError(name)

    monkeypatch.setattr(xfce_xrdp_2fa.pwd, "getpwnam", getpwnam)
    return entry


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(xfce_xrdp_2fa.os, "geteuid", lambda: 0)


@pytest.fixture
def clock(monkeypatch):
    """Deterministic, strictly increasing backup timestamps."""
    ticks = iter(f"20260101T0000{n:02d}Z" for n in range(60))
    monkeypatch.setattr(xfce_xrdp_2fa, "timestamp", lambda: next(ticks))


@pytest.fixture
def make_setup(config):
    def factory(**kwargs):
        return RecordingSetup(config, **kwargs)

    return factory


def tree_files(root: Path):
    return sorted(str(p.relative_to(root)) for p in root.rglob("*") if p.is_file())
