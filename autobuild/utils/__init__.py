"""Utility functions for autobuild."""

from autobuild.utils.process import CommandResult, CommandRunner, run_command

__all__ = ["CommandResult", "CommandRunner", "run_command"]
