"""Per-repository poll loop."""

from autobuild.poll.orchestrator import CycleReport, PollOrchestrator

__all__ = ["CycleReport", "PollOrchestrator"]
