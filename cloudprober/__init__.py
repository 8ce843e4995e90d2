"""Metrics model, system variable export, surfacers and probe-target servers for active monitoring."""

__version__ = "0.1.0"