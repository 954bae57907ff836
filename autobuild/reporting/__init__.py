"""Status reporting module."""

from autobuild.reporting.status import StatusStore, load_status

__all__ = ["StatusStore", "load_status"]
