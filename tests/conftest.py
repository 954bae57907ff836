"""Shared test helpers."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from autobuild.utils.process import CommandResult


@dataclass
class Call:
    args: list[str]
    cwd: Path | None
    env: dict[str, str] | None


class FakeRunner:
    """
    Scripted stand-in for ``run_command``.

    Responses are registered with ``on(*tokens, contains=..., ...)``. A rule
    matches when every token equals some argument and every ``contains``
    string is a substring of some argument. With ``cwd`` the rule only
    applies to commands run in that directory. The most recently registered
    matching rule wins. Unmatched commands succeed with no output.
    """

    def __init__(self):
        self.calls: list[Call] = []
        self._rules: list[tuple[tuple[str, ...], tuple[str, ...], Path | None, Callable[[list[str]], Any]]] = []
        self.running = 0
        self.peak_running = 0

    def on(
        self,
        *tokens: str,
        contains: tuple[str, ...] = (),
        cwd: Path | None = None,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        delay: float = 0.0,
        func: Callable[[list[str]], CommandResult] | None = None,
    ) -> None:
        async def respond(args: list[str]) -> CommandResult:
            if delay:
                await asyncio.sleep(delay)
            if func is not None:
                return func(args)
            return CommandResult(args, returncode, stdout, stderr)

        self._rules.append((tokens, contains, cwd, respond))

    def matching(self, *tokens: str, contains: tuple[str, ...] = ()) -> list[Call]:
        return [c for c in self.calls if _matches(c.args, tokens, contains)]

    async def __call__(self, args, *, cwd=None, env=None, timeout=None, stderr_limit=65536):
        argv = [str(a) for a in args]
        self.calls.append(Call(argv, cwd, env))
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        try:
            for tokens, contains, rule_cwd, respond in reversed(self._rules):
                if rule_cwd is not None and cwd != rule_cwd:
                    continue
                if _matches(argv, tokens, contains):
                    return await respond(argv)
            return CommandResult(argv, 0, "", "")
        finally:
            self.running -= 1


def _matches(args: list[str], tokens: tuple[str, ...], contains: tuple[str, ...]) -> bool:
    return all(token in args for token in tokens) and all(
        any(part in arg for arg in args) for part in contains
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


def git_remote(runner: FakeRunner, checkout: Path, url: str, heads: dict[str, list[str]]) -> None:
    """
    Script a healthy remote: ``heads`` maps branch -> commits from tip to oldest.
    """
    refs = "".join(f"{branch} {commits[0]}\n" for branch, commits in heads.items())
    runner.on("rev-parse", "--show-toplevel", cwd=checkout, stdout=f"{checkout}\n")
    runner.on("remote", "get-url", "origin", cwd=checkout, stdout=f"{url}\n")
    runner.on("for-each-ref", cwd=checkout, stdout=f"HEAD {next(iter(heads.values()))[0]}\n" + refs)

    by_tip = {commits[0]: commits for commits in heads.values()}

    def git_log(args: list[str]) -> CommandResult:
        tip = args[-1]
        depth = int(next(a for a in args if a.startswith("--max-count=")).split("=", 1)[1])
        lines = [f"{c}\t{1700000000 + i}\tcommit {c}" for i, c in enumerate(by_tip[tip][:depth])]
        return CommandResult(args, 0, "\n".join(lines) + "\n", "")

    runner.on("log", cwd=checkout, func=git_log)
