"""TierConvert - tiered document conversion with graceful fallback."""

__version__ = "0.1.0"
