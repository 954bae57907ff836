"""Repository sync module."""

from autobuild.sync.service import RepositorySync

__all__ = ["RepositorySync"]
