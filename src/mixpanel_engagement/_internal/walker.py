"""Recursive traversal of Mixpanel pivot-table metric trees.

Insights responses nest one mapping level per breakdown dimension, e.g.
user -> portfolio_ticker -> creator_id -> creator_username -> count. Every
metric is walked by the same generator, parameterized by an ordered list of
dimensions and the aggregate sentinel key (``$overall``).
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

_logger = logging.getLogger(__name__)

SENTINEL = "$overall"
"""Aggregate key meaning "total across this dimension"."""

LEAF_COUNT_KEY = "all"
"""Key holding the count inside a leaf object."""

INVALID_KEYS = frozenset({"", "undefined", "null"})

CompoundKey = tuple[str, ...]
MetricTree = Mapping[str, Any]


@dataclass(frozen=True)
class Dimension:
    """One level of a metric tree.

    Attributes:
        name: Dimension name, used in log messages only.
        min_length: Shortest acceptable key. Symbol dimensions such as
            portfolio tickers use 2 so single-character junk is rejected.
    """

    name: str
    min_length: int = 1


_LABEL = Dimension("label")


@dataclass
class WalkStats:
    """Counters collected while walking one or more trees."""

    yielded: int = 0
    invalid_keys: int = 0
    malformed_nodes: int = 0

    @property
    def skipped(self) -> int:
        """Branches skipped for any reason."""
        return self.invalid_keys + self.malformed_nodes


def _as_dimensions(dimensions: Sequence[Dimension | str]) -> list[Dimension]:
    dims = [d if isinstance(d, Dimension) else Dimension(d) for d in dimensions]
    if not dims:
        raise ValueError("At least one dimension is required")
    return dims


def is_valid_key(key: Any, dimension: Dimension, sentinel: str = SENTINEL) -> bool:
    """Check whether key is a usable value for dimension.

    Args:
        key: Mapping key found at the dimension's level.
        dimension: The dimension being consumed.
        sentinel: Aggregate sentinel key.

    Returns:
        False for the sentinel, placeholder strings ("undefined", "null"),
        empty keys and keys shorter than the dimension's min_length.
    """
    if not isinstance(key, str):
        return False
    stripped = key.strip()
    if stripped == sentinel or stripped in INVALID_KEYS:
        return False
    return len(stripped) >= dimension.min_length


def _clean_number(value: float) -> int:
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def extract_count(
    node: Any, sentinel: str = SENTINEL, stats: WalkStats | None = None
) -> int:
    """Extract a non-negative integer count from a leaf node.

    Resolution order:
    1. A bare number is used directly.
    2. A mapping with an ``all`` key uses that value.
    3. A mapping holding the sentinel uses the sentinel's count instead of
       summing its siblings.
    4. Any other mapping sums the children under valid labels recursively.
       Placeholder labels ("undefined", "null", blank) are skipped with a
       warning.
    5. Strings are parsed as numbers; anything else counts as 0.

    Negative and non-finite values count as 0.

    Args:
        node: Value found once every dimension has been consumed.
        sentinel: Aggregate sentinel key.
        stats: Optional counters; skipped labels add to invalid_keys.

    Returns:
        Count for the node.

    Example:
        ```python
        extract_count(5)  # 5
        extract_count({"all": 5})  # 5
        extract_count({"$overall": 9, "a": 4, "b": 5})  # 9
        extract_count({"a": {"all": 2}, "b": 3})  # 5
        extract_count({"alice": 2, "undefined": 3})  # 2
        ```
    """
    if isinstance(node, bool):
        return int(node)
    if isinstance(node, int | float):
        return _clean_number(float(node))
    if isinstance(node, Mapping):
        if LEAF_COUNT_KEY in node:
            return extract_count(node[LEAF_COUNT_KEY], sentinel, stats)
        if sentinel in node:
            return extract_count(node[sentinel], sentinel, stats)
        total = 0
        for label, child in node.items():
            if not is_valid_key(label, _LABEL, sentinel):
                if stats is not None:
                    stats.invalid_keys += 1
                _logger.warning("Skipping invalid label %r in count node", label)
                continue
            total += extract_count(child, sentinel, stats)
        return total
    if isinstance(node, str):
        try:
            return _clean_number(float(node))
        except ValueError:
            return 0
    return 0


def walk_metric(
    tree: Any,
    dimensions: Sequence[Dimension | str],
    *,
    sentinel: str = SENTINEL,
    stats: WalkStats | None = None,
) -> Iterator[tuple[CompoundKey, int]]:
    """Enumerate (compound key, count) pairs of a metric tree.

    Depth-first, lazy and single pass. At each dimension level sentinel keys
    are skipped. A level whose only key is the sentinel is a wrapper: an
    object under it is descended into without consuming the dimension, and
    a bare total under it is yielded as the count of the partial key walked
    so far. Invalid keys and non-mapping nodes skip their whole branch with
    a warning. Once every dimension is consumed the remaining node is
    resolved by extract_count.

    Args:
        tree: Raw metric tree (one series of an Insights response).
        dimensions: Ordered dimensions, outermost first. Plain strings are
            accepted as Dimension(name).
        sentinel: Aggregate sentinel key.
        stats: Optional counters updated in place.

    Yields:
        Tuples of (compound key, count). Keys are shorter than dimensions
        only for sentinel-only totals. A key may repeat if the tree reports
        it twice; use collect_metric to sum duplicates.

    Raises:
        ValueError: If dimensions is empty.

    Example:
        ```python
        tree = {"u1": {"c1": {"alice": {"all": 5}}}}
        list(walk_metric(tree, ["user", "creator_id", "creator_username"]))
        # [(("u1", "c1", "alice"), 5)]
        ```
    """
    dims = _as_dimensions(dimensions)
    counters = stats if stats is not None else WalkStats()
    return _walk(tree, dims, 0, (), sentinel, counters)


def _walk(
    node: Any,
    dims: list[Dimension],
    depth: int,
    prefix: CompoundKey,
    sentinel: str,
    stats: WalkStats,
) -> Iterator[tuple[CompoundKey, int]]:
    if depth == len(dims):
        stats.yielded += 1
        yield prefix, extract_count(node, sentinel, stats)
        return

    dimension = dims[depth]
    if not isinstance(node, Mapping):
        stats.malformed_nodes += 1
        _logger.warning(
            "Skipping malformed node at %s level under %r: expected object, got %s",
            dimension.name,
            prefix,
            type(node).__name__,
        )
        return

    if len(node) == 1 and sentinel in node:
        total = node[sentinel]
        if isinstance(total, Mapping):
            yield from _walk(total, dims, depth, prefix, sentinel, stats)
        else:
            stats.yielded += 1
            yield prefix, extract_count(total, sentinel, stats)
        return

    for key, child in node.items():
        if key == sentinel:
            continue
        if not is_valid_key(key, dimension, sentinel):
            stats.invalid_keys += 1
            _logger.warning(
                "Skipping invalid %s key %r under %r", dimension.name, key, prefix
            )
            continue
        yield from _walk(child, dims, depth + 1, (*prefix, key), sentinel, stats)


def collect_metric(
    tree: Any,
    dimensions: Sequence[Dimension | str],
    *,
    sentinel: str = SENTINEL,
    stats: WalkStats | None = None,
) -> dict[CompoundKey, int]:
    """Walk a tree into a dict, summing counts of repeated keys.

    Args:
        tree: Raw metric tree.
        dimensions: Ordered dimensions, outermost first.
        sentinel: Aggregate sentinel key.
        stats: Optional counters updated in place.

    Returns:
        Compound key -> total count, in first-seen order.
    """
    totals: dict[CompoundKey, int] = {}
    for key, count in walk_metric(tree, dimensions, sentinel=sentinel, stats=stats):
        totals[key] = totals.get(key, 0) + count
    return totals


def child_labels(
    tree: Any,
    path: Sequence[str],
    *,
    sentinel: str = SENTINEL,
) -> list[str]:
    """List the valid keys directly under the node at path.

    Args:
        tree: Raw metric tree.
        path: Keys to follow from the root.
        sentinel: Aggregate sentinel key.

    Returns:
        Non-sentinel, non-placeholder keys in tree order. Empty when the
        path does not exist or does not end at a mapping.
    """
    node = tree
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return []
        node = node[key]
    if not isinstance(node, Mapping):
        return []
    return [key for key in node if is_valid_key(key, _LABEL, sentinel)]


def first_label(
    tree: Any,
    path: Sequence[str],
    *,
    sentinel: str = SENTINEL,
) -> str | None:
    """Return the first valid key under the node at path, or None."""
    labels = child_labels(tree, path, sentinel=sentinel)
    return labels[0] if labels else None


def extract_series(response: Any, metric_name: str) -> dict[str, Any]:
    """Pull one metric tree out of an Insights response.

    Args:
        response: Parsed Insights response with a ``series`` mapping.
        metric_name: Series name, e.g. "Total Profile Views".

    Returns:
        The metric tree, or an empty dict when the series is absent.
    """
    if not isinstance(response, Mapping):
        return {}
    series = response.get("series")
    if not isinstance(series, Mapping):
        return {}
    tree = series.get(metric_name)
    if not isinstance(tree, Mapping):
        if tree is not None:
            _logger.warning(
                "Series %r is not an object (got %s)", metric_name, type(tree).__name__
            )
        return {}
    return dict(tree)
