"""Launch and terminate headless Chromium processes.

Each process gets a private temporary profile directory and talks to us over
``--remote-debugging-pipe`` (the engine reads commands on fd 3 and writes
replies on fd 4), so no debugging port is ever exposed.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from tierconvert.config.constants import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_LAUNCH_TIMEOUT,
)
from tierconvert.engine.transport import PipeTransport, open_pipe_transport
from tierconvert.exceptions import LaunchFailedError
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

# Always passed to the engine
HARDENING_FLAGS = (
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-plugins",
    "--disable-sync",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-default-apps",
    "--disable-component-update",
    "--disable-domain-reliability",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--metrics-recording-only",
    "--mute-audio",
    "--no-first-run",
    "--no-default-browser-check",
    "--hide-scrollbars",
)

# User-supplied flags that weaken isolation or conflict with the managed setup
BLOCKED_FLAG_PREFIXES = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-web-security",
    "--allow-running-insecure-content",
    "--remote-debugging-port",
    "--remote-debugging-address",
    "--remote-debugging-pipe",
    "--remote-allow-origins",
    "--user-data-dir",
    "--load-extension",
    "--single-process",
    "--no-zygote",
)

_EXECUTABLE_NAMES = (
    "chromium",
    "chromium-browser",
    "google-chrome",
    "google-chrome-stable",
    "chrome",
    "headless_shell",
)

# Engine-side pipe descriptors
_ENGINE_READ_FD = 3
_ENGINE_WRITE_FD = 4


def find_engine_executable(configured: str | None = None) -> str | None:
    """Find a Chromium executable."""
    if configured:
        return configured if Path(configured).exists() else shutil.which(configured)

    if sys.platform == "darwin":
        app_path = "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
        if Path(app_path).exists():
            return app_path
    elif sys.platform == "win32":
        common_paths = [
            r"C:\Program Files\Google\Chrome\Application\chrome.exe",
            r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
        ]
        for path in common_paths:
            if Path(path).exists():
                return path

    for name in _EXECUTABLE_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None


def filter_extra_args(args: list[str] | tuple[str, ...]) -> list[str]:
    """Drop user flags that appear in the blocklist."""
    allowed = []
    for arg in args:
        if arg.startswith(BLOCKED_FLAG_PREFIXES):
            log.warning("Ignoring blocked engine flag", flag=arg)
            continue
        allowed.append(arg)
    return allowed


def build_command(
    executable: str,
    user_data_dir: Path,
    headless: bool = True,
    extra_args: list[str] | tuple[str, ...] = (),
) -> list[str]:
    """Assemble the engine command line."""
    command = [executable]
    if headless:
        command.append("--headless=new")
    command.extend(HARDENING_FLAGS)
    command.append(f"--user-data-dir={user_data_dir}")
    command.append("--remote-debugging-pipe")
    command.extend(filter_extra_args(extra_args))
    command.append("about:blank")
    return command


def is_process_alive(pid: int) -> bool:
    """Probe a process with signal 0 (no signal is delivered)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False
    return True


@dataclass
class EngineProcess:
    """A running engine with its transport."""

    pid: int
    transport: PipeTransport | None
    user_data_dir: Path | None = None
    process: asyncio.subprocess.Process | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def endpoint(self) -> str:
        return f"pipe://{self.pid}"


def _remap_pipe_fds(engine_read: int, engine_write: int) -> None:
    # Runs in the child between fork and exec; move the pipe ends to 3 and 4
    read_copy = fcntl.fcntl(engine_read, fcntl.F_DUPFD, 10)
    write_copy = fcntl.fcntl(engine_write, fcntl.F_DUPFD, 10)
    os.dup2(read_copy, _ENGINE_READ_FD)
    os.dup2(write_copy, _ENGINE_WRITE_FD)


class EngineLauncher:
    """Spawns hardened headless Chromium processes."""

    def __init__(
        self,
        executable: str | None = None,
        headless: bool = True,
        extra_args: list[str] | None = None,
        launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.executable = executable
        self.headless = headless
        self.extra_args = filter_extra_args(extra_args or [])
        self.launch_timeout = launch_timeout
        self.kill_timeout = kill_timeout
        self.command_timeout = command_timeout

    async def launch(self) -> EngineProcess:
        """Start an engine and wait until it answers a command.

        Raises:
            LaunchFailedError: executable missing, spawn failure or readiness timeout
        """
        executable = find_engine_executable(self.executable)
        if not executable:
            raise LaunchFailedError("No Chromium executable found")

        user_data_dir = Path(tempfile.mkdtemp(prefix="tierconvert-engine-"))
        command = build_command(executable, user_data_dir, self.headless, self.extra_args)

        # to_engine: we write, engine reads on fd 3; from_engine: engine writes on fd 4
        to_engine_read, to_engine_write = os.pipe()
        from_engine_read, from_engine_write = os.pipe()

        process: asyncio.subprocess.Process | None = None
        transport: PipeTransport | None = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                pass_fds=(_ENGINE_READ_FD, _ENGINE_WRITE_FD),
                preexec_fn=lambda: _remap_pipe_fds(to_engine_read, from_engine_write),
                start_new_session=True,
            )
            os.close(to_engine_read)
            os.close(from_engine_write)
            to_engine_read = from_engine_write = -1

            transport = await open_pipe_transport(
                from_engine_read, to_engine_write, command_timeout=self.command_timeout
            )
            from_engine_read = to_engine_write = -1

            version = await transport.send("Browser.getVersion", timeout=self.launch_timeout)
        except Exception as e:
            for fd in (to_engine_read, to_engine_write, from_engine_read, from_engine_write):
                if fd >= 0:
                    try:
                        os.close(fd)
                    except OSError:
                        pass
            partial = EngineProcess(
                pid=process.pid if process else -1,
                transport=transport,
                user_data_dir=user_data_dir,
                process=process,
            )
            await self.terminate(partial)
            log.warning("Engine launch failed", executable=executable, error=str(e))
            raise LaunchFailedError(str(e) or type(e).__name__, cause=e) from e

        log.debug(
            "Engine launched",
            pid=process.pid,
            product=version.get("product"),
            user_data_dir=str(user_data_dir),
        )
        return EngineProcess(
            pid=process.pid, transport=transport, user_data_dir=user_data_dir, process=process
        )

    async def terminate(self, engine: EngineProcess) -> None:
        """Close the transport, stop the process and remove its profile directory."""
        if engine.transport is not None:
            await engine.transport.close()

        process = engine.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), self.kill_timeout)
            except ProcessLookupError:
                pass
            except TimeoutError:
                log.warning("Engine did not exit, killing", pid=engine.pid)
                try:
                    process.kill()
                    await process.wait()
                except ProcessLookupError:
                    pass

        if engine.user_data_dir is not None:
            shutil.rmtree(engine.user_data_dir, ignore_errors=True)
