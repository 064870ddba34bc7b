"""Token usage metering with hour/day/month rollups."""

__version__ = "0.1.0"
