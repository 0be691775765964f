import subprocess

import pytest
from click.testing import CliRunner

import power_profile


@pytest.mark.parametrize(
    "current, expected",
    [
        ("balanced", "power-saver"),
        ("power-saver", "performance"),
        ("performance", "balanced"),
        ("", "balanced"),
    ],
)
def test_next_profile_cycle(current, expected):
    assert power_profile.next_profile(current) == expected


def test_status_letters():
    assert [power_profile.status_letter(p) for p in ("performance", "balanced", "power-saver", "")] == ["P", "B", "S", "-"]


def test_current_profile_without_daemon(monkeypatch):
    def missing(*args, **kwargs):
        raise FileNotFoundError("powerprofilesctl")

    monkeypatch.setattr(power_profile.subprocess, "run", missing)
    assert power_profile.current_profile() == ""


def test_toggle_sets_next_profile(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, "power-saver\n", "")

    monkeypatch.setattr(power_profile.subprocess, "run", fake_run)
    result = CliRunner().invoke(power_profile.cli, ["toggle"])
    assert result.exit_code == 0
    assert calls[-1] == ["powerprofilesctl", "set", "performance"]


def test_watch_writes_status_without_newline(monkeypatch, tmp_path):
    monkeypatch.setattr(power_profile, "current_profile", lambda: "performance")
    out = tmp_path / "cache" / "ppd_status.txt"
    result = CliRunner().invoke(power_profile.cli, ["watch", "--output", str(out), "--iterations", "1"])
    assert result.exit_code == 0
    assert out.read_text() == "P"
