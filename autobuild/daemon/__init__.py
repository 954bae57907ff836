"""Build daemon module."""

from autobuild.daemon.service import AutoBuildDaemon

__all__ = ["AutoBuildDaemon"]
