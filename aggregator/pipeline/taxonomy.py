"""
Static category taxonomy.

The taxonomy is a JSON tree of nodes ``{key, label, leaves?, children?}``.
Leaves are the terminal entries the coverage orchestrator keeps stocked.
A small default tree ships with the package.
"""

import json
import re
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from aggregator.models.schemas import TaxonomyLeaf
from aggregator.utils.retry import ConfigurationError

DEFAULT_TAXONOMY_PATH = Path(__file__).resolve().parent.parent / "data" / "taxonomy.json"


def to_key(label: str) -> str:
    """Kebab-case key for a label ("Home & Living" -> "home-and-living")."""
    key = label.lower().replace("&", " and ")
    key = re.sub(r"[^a-z0-9]+", "-", key)
    return re.sub(r"-{2,}", "-", key).strip("-")


def load_taxonomy(path: Optional[Union[str, Path]] = None) -> list[dict[str, Any]]:
    """
    Read a taxonomy file and return its top-level nodes.

    Accepts either a bare list of nodes or an object with a ``categories``
    list.

    Raises:
        ConfigurationError: missing file, invalid JSON or wrong shape
    """
    source = Path(path) if path else DEFAULT_TAXONOMY_PATH
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Taxonomy file not found: {source}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Taxonomy file is not valid JSON: {source}: {e}") from e

    nodes = data.get("categories") if isinstance(data, dict) else data
    if not isinstance(nodes, list):
        raise ConfigurationError(f"Taxonomy must be a list of category nodes: {source}")
    return nodes


def _leaf_entry(raw: Union[str, dict]) -> tuple[str, str, tuple[str, ...]]:
    if isinstance(raw, str):
        return to_key(raw), raw, ()
    label = str(raw.get("label") or raw.get("key") or "").strip()
    key = str(raw.get("key") or to_key(label)).strip()
    terms = tuple(t for t in (raw.get("terms") or []) if isinstance(t, str) and t.strip())
    return key, label, terms


def flatten_leaves(nodes: Iterable[dict[str, Any]]) -> list[TaxonomyLeaf]:
    """
    Depth-first leaves of the tree, first occurrence wins for repeated keys.

    ``category_key`` is the top-level node a leaf belongs to; ``parents``
    lists every node key from the top down to the leaf's direct parent.
    """
    leaves: list[TaxonomyLeaf] = []
    seen: set[str] = set()

    def walk(node: dict[str, Any], chain: tuple[str, ...]) -> None:
        node_key = str(node.get("key") or to_key(str(node.get("label", "")))).strip()
        if not node_key:
            raise ConfigurationError(f"Taxonomy node without key or label: {node!r}")
        path = chain + (node_key,)
        for raw in node.get("leaves") or []:
            key, label, terms = _leaf_entry(raw)
            if not key or not label or key in seen:
                continue
            seen.add(key)
            leaves.append(TaxonomyLeaf(
                key=key,
                label=label,
                category_key=path[0],
                parents=path,
                terms=terms,
            ))
        for child in node.get("children") or []:
            walk(child, path)

    for top in nodes:
        walk(top, ())
    return leaves


__all__ = ["DEFAULT_TAXONOMY_PATH", "flatten_leaves", "load_taxonomy", "to_key"]
