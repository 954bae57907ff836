"""Discovery of buildable targets through `nix flake show`."""

import asyncio
import json
from pathlib import Path

from loguru import logger

from autobuild.discovery.tree import flatten, parse_tree
from autobuild.errors import ParseFailed, ToolFailed
from autobuild.types import BuildTarget, CommitRef, Interior
from autobuild.utils.process import DEFAULT_STDERR_LIMIT, CommandRunner, run_command


def flake_ref(checkout_path: Path, commit: CommitRef) -> str:
    """Flake reference pinning ``commit`` in a local checkout."""
    return f"git+file://{Path(checkout_path).resolve()}?rev={commit.hash}"


class DiscoveryEngine:
    """Lists the derivations a commit provides, for every system."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        nix: str = "nix",
        nix_options: list[str] | None = None,
        max_parallel: int = 1,
        stderr_limit: int = DEFAULT_STDERR_LIMIT,
    ):
        self.runner = runner
        self.nix = nix
        self.nix_options = list(nix_options or [])
        self.stderr_limit = stderr_limit
        self._semaphore = asyncio.Semaphore(max(1, max_parallel))

    async def discover(self, checkout_path: Path, commit: CommitRef) -> Interior:
        """
        Run ``nix flake show`` for one commit and parse its output.

        Raises:
            ToolFailed: The command exited non-zero or could not be started.
            ParseFailed: The output is not a JSON object.
        """
        ref = flake_ref(checkout_path, commit)
        args = [self.nix, *self.nix_options, "flake", "show", "--json", "--all-systems", ref]

        async with self._semaphore:
            logger.info(f"Discovery: listing {commit.repo}@{commit.short} ({commit.branch}~{commit.distance})")
            try:
                result = await self.runner(args, stderr_limit=self.stderr_limit)
            except OSError as e:
                raise ToolFailed(commit.hash, f"failed to run {self.nix}: {e}") from e

        if not result.ok:
            raise ToolFailed(commit.hash, result.error_text())

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ParseFailed(commit.hash, f"invalid JSON from nix flake show: {e}") from e
        if not isinstance(data, dict):
            raise ParseFailed(commit.hash, f"expected a JSON object, got {type(data).__name__}")

        return parse_tree(data)

    async def discover_targets(self, checkout_path: Path, commit: CommitRef) -> list[BuildTarget]:
        """Discover and flatten one commit into build targets."""
        tree = await self.discover(checkout_path, commit)
        targets = flatten(tree, flake_ref(checkout_path, commit), repo=commit.repo, commit=commit)
        logger.debug(f"Discovery: {commit.repo}@{commit.short} provides {len(targets)} derivation(s)")
        return targets
