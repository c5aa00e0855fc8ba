"""Headless rendering-engine process management."""

from tierconvert.engine.launcher import EngineLauncher, EngineProcess, find_engine_executable
from tierconvert.engine.pool import ProcessHandle, ProcessPool
from tierconvert.engine.transport import PipeTransport, Subscription

__all__ = [
    "EngineLauncher",
    "EngineProcess",
    "find_engine_executable",
    "ProcessHandle",
    "ProcessPool",
    "PipeTransport",
    "Subscription",
]
