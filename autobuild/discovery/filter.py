"""Platform allow-list filtering of build targets."""

from typing import Iterable

from autobuild.types import BuildTarget


def filter_targets(targets: Iterable[BuildTarget], allowed: Iterable[str]) -> list[BuildTarget]:
    """
    Keep the targets whose platform is on the allow-list, preserving order.

    Membership is an exact string match. An empty allow-list selects nothing.
    """
    platforms = frozenset(allowed)
    if not platforms:
        return []
    return [t for t in targets if t.platform in platforms]
