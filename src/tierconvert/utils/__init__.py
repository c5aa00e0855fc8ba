"""Utility module for TierConvert."""

from tierconvert.utils.assets import AssetReport, classify_reference, scan_assets
from tierconvert.utils.backoff import retry_delay
from tierconvert.utils.flow_control import CancelToken, ChunkStream, stream_chunks
from tierconvert.utils.memory import MemoryPressureMonitor, MemorySample, MemoryStatus
from tierconvert.utils.rate_limit import ServiceRateLimiter

__all__ = [
    # Assets
    "AssetReport",
    "classify_reference",
    "scan_assets",
    # Retry
    "retry_delay",
    "ServiceRateLimiter",
    # Flow control
    "CancelToken",
    "ChunkStream",
    "stream_chunks",
    # Memory
    "MemoryPressureMonitor",
    "MemorySample",
    "MemoryStatus",
]
