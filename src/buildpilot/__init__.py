"""BuildPilot: resilient job scheduling and device cloud test orchestration."""

from .version import __version__

__all__ = ["__version__"]
