"""Parsing and flattening of `nix flake show --json` output."""

from typing import Any, Iterator

from autobuild.types import BuildTarget, CommitRef, DiscoveryNode, Interior, Leaf, join_attr_path

DERIVATION_TYPE = "derivation"

# Index of the attribute path segment naming the platform: packages.<platform>.foo
PLATFORM_SEGMENT = 1


def parse_tree(data: dict[str, Any], name: str = "") -> Interior:
    """
    Build a discovery tree from the decoded JSON of ``nix flake show``.

    An object whose ``type`` is the string ``"derivation"`` becomes a
    ``Leaf``. Any other object with a string ``type`` (apps, modules,
    templates, NixOS configurations, ``unknown``) is not buildable and is
    dropped. Every remaining object is an attribute set and is descended
    into, whatever its depth.
    """
    children: dict[str, DiscoveryNode] = {}
    for key, value in data.items():
        if not isinstance(value, dict):
            continue
        node = _parse_node(key, value)
        if node is not None:
            children[key] = node
    return Interior(name=name, children=children)


def _parse_node(name: str, value: dict[str, Any]) -> DiscoveryNode | None:
    node_type = value.get("type")
    if isinstance(node_type, str):
        if node_type != DERIVATION_TYPE:
            return None
        return Leaf(
            name=name,
            derivation_name=_str_or_none(value.get("name")),
            description=_str_or_none(value.get("description")),
        )
    return parse_tree(value, name)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def iter_leaves(tree: DiscoveryNode, path: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], Leaf]]:
    """Yield ``(path, leaf)`` for every leaf, depth-first in document order."""
    if isinstance(tree, Leaf):
        yield path, tree
        return
    for key, child in tree.children.items():
        yield from iter_leaves(child, path + (key,))


def platform_of(path: tuple[str, ...]) -> str:
    """Platform encoded in an attribute path, or "" when the path is too short."""
    return path[PLATFORM_SEGMENT] if len(path) > PLATFORM_SEGMENT else ""


def flatten(
    tree: DiscoveryNode,
    flake_ref: str,
    repo: str = "",
    commit: CommitRef | None = None,
) -> list[BuildTarget]:
    """Turn every leaf of ``tree`` into a ``BuildTarget``."""
    return [
        BuildTarget(
            flake_ref=flake_ref,
            attr_path=join_attr_path(path),
            platform=platform_of(path),
            repo=repo,
            commit=commit,
            derivation_name=leaf.derivation_name,
        )
        for path, leaf in iter_leaves(tree)
    ]
