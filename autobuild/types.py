"""Core data types shared by the sync, discovery, build and poll layers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union


@dataclass
class RepositoryState:
    """Runtime state of one monitored repository.

    Owned and mutated only by that repository's ``RepositorySync``.
    """
    name: str
    checkout_path: Path
    ready: bool = False
    branch_heads: dict[str, str] = field(default_factory=dict)
    changed: bool = False  # Branch heads moved on the last refresh
    last_fetch_at_ms: int | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class CommitRef:
    """A commit to evaluate, ``distance`` commits behind its branch tip."""
    repo: str
    branch: str
    hash: str
    distance: int = 0
    message: str = field(default="", compare=False)  # Subject line
    committed_at: int | None = field(default=None, compare=False)  # Unix seconds

    @property
    def short(self) -> str:
        return self.hash[:12]


# ---------------------------------------------------------------------------
# Discovery tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Leaf:
    """A derivation reported by ``nix flake show``."""
    name: str
    derivation_name: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class Interior:
    """An attribute set whose children are further nodes."""
    name: str
    children: dict[str, DiscoveryNode] = field(default_factory=dict)


DiscoveryNode = Union[Interior, Leaf]


_PLAIN_ATTR = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")


def join_attr_path(segments: list[str] | tuple[str, ...]) -> str:
    """Join attribute names into a Nix attribute path, quoting where needed."""
    parts = []
    for segment in segments:
        if _PLAIN_ATTR.match(segment):
            parts.append(segment)
        else:
            escaped = segment.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'"{escaped}"')
    return ".".join(parts)


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuildTarget:
    """One buildable attribute of one commit.

    Identity (equality and hashing) is ``(flake_ref, attr_path)`` only.
    """
    flake_ref: str
    attr_path: str
    platform: str = field(compare=False)
    repo: str = field(default="", compare=False)
    commit: CommitRef | None = field(default=None, compare=False)
    derivation_name: str | None = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.flake_ref, self.attr_path)

    @property
    def installable(self) -> str:
        return f"{self.flake_ref}#{self.attr_path}"


@dataclass(frozen=True)
class Succeeded:
    """Build finished; ``output_paths`` are the printed store paths."""
    output_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class Failed:
    """Build failed; ``error`` is the (bounded) diagnostic output."""
    error: str
    returncode: int | None = None


BuildOutcome = Union[Succeeded, Failed]


@dataclass(frozen=True)
class BuildResult:
    """Outcome of a single build execution."""
    target: BuildTarget
    outcome: BuildOutcome
    duration_s: float
    finished_at_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Succeeded)

    def to_dict(self) -> dict:
        commit = self.target.commit
        data = {
            "repo": self.target.repo,
            "branch": commit.branch if commit else None,
            "commit": commit.hash if commit else None,
            "commitMessage": commit.message if commit else None,
            "committedAt": commit.committed_at if commit else None,
            "flakeRef": self.target.flake_ref,
            "attrPath": self.target.attr_path,
            "platform": self.target.platform,
            "durationS": round(self.duration_s, 3),
            "finishedAtMs": self.finished_at_ms,
        }
        if isinstance(self.outcome, Succeeded):
            data["status"] = "succeeded"
            data["outputPaths"] = list(self.outcome.output_paths)
        else:
            data["status"] = "failed"
            data["error"] = self.outcome.error
            data["returncode"] = self.outcome.returncode
        return data
