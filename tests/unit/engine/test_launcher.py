"""Tests for engine process launching helpers."""

import os
from pathlib import Path

import pytest

from tierconvert.engine.launcher import (
    HARDENING_FLAGS,
    EngineLauncher,
    EngineProcess,
    build_command,
    filter_extra_args,
    find_engine_executable,
    is_process_alive,
)
from tierconvert.exceptions import LaunchFailedError


class TestBuildCommand:
    """Tests for build_command."""

    def test_contains_hardening_flags(self, temp_dir):
        command = build_command("/usr/bin/chromium", temp_dir)

        assert command[0] == "/usr/bin/chromium"
        assert "--headless=new" in command
        for flag in HARDENING_FLAGS:
            assert flag in command
        assert f"--user-data-dir={temp_dir}" in command
        assert "--remote-debugging-pipe" in command
        assert command[-1] == "about:blank"

    def test_headful(self, temp_dir):
        command = build_command("chromium", temp_dir, headless=False)
        assert "--headless=new" not in command

    def test_blocked_user_flags_are_dropped(self, temp_dir):
        command = build_command(
            "chromium",
            temp_dir,
            extra_args=["--no-sandbox", "--lang=de", "--remote-debugging-port=9222"],
        )

        assert "--lang=de" in command
        assert "--no-sandbox" not in command
        assert not any(arg.startswith("--remote-debugging-port") for arg in command)


class TestFilterExtraArgs:
    @pytest.mark.parametrize(
        "flag",
        [
            "--disable-web-security",
            "--user-data-dir=/tmp/x",
            "--single-process",
            "--load-extension=/ext",
        ],
    )
    def test_blocked(self, flag):
        assert filter_extra_args([flag]) == []

    def test_allowed(self):
        assert filter_extra_args(["--window-size=1280,720"]) == ["--window-size=1280,720"]


class TestFindExecutable:
    def test_configured_existing_path(self, temp_dir):
        executable = temp_dir / "chrome"
        executable.write_text("#!/bin/sh\n")
        assert find_engine_executable(str(executable)) == str(executable)

    def test_configured_missing_path(self):
        assert find_engine_executable("/nonexistent/definitely-not-chrome") is None

    def test_searches_path(self, monkeypatch):
        monkeypatch.setattr(
            "tierconvert.engine.launcher.shutil.which",
            lambda name: "/opt/bin/chromium" if name == "chromium" else None,
        )
        monkeypatch.setattr("tierconvert.engine.launcher.sys.platform", "linux")
        assert find_engine_executable() == "/opt/bin/chromium"


class TestProcessHelpers:
    def test_current_process_is_alive(self):
        assert is_process_alive(os.getpid()) is True

    def test_endpoint(self):
        assert EngineProcess(pid=42, transport=None).endpoint == "pipe://42"


class TestEngineLauncher:
    async def test_launch_without_executable_fails(self, monkeypatch):
        monkeypatch.setattr(
            "tierconvert.engine.launcher.find_engine_executable", lambda configured: None
        )
        with pytest.raises(LaunchFailedError):
            await EngineLauncher().launch()

    async def test_terminate_removes_profile_dir(self, temp_dir):
        profile = Path(temp_dir) / "profile"
        profile.mkdir()
        (profile / "Preferences").write_text("{}")

        await EngineLauncher().terminate(
            EngineProcess(pid=-1, transport=None, user_data_dir=profile)
        )

        assert not profile.exists()

    def test_extra_args_filtered_at_construction(self):
        launcher = EngineLauncher(extra_args=["--no-sandbox", "--mute-audio"])
        assert launcher.extra_args == ["--mute-audio"]
