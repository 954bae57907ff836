"""Discovery of buildable flake outputs."""

from autobuild.discovery.engine import DiscoveryEngine, flake_ref
from autobuild.discovery.filter import filter_targets
from autobuild.discovery.tree import flatten, parse_tree, platform_of

__all__ = ["DiscoveryEngine", "filter_targets", "flake_ref", "flatten", "parse_tree", "platform_of"]
