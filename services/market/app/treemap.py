"""Squarified treemap layout.

`squarify` partitions a rectangle into one sub-rectangle per weight, each
with area proportional to its weight, growing rows greedily while the worst
aspect ratio in the row does not get worse. Weights are expected in
descending order; `layout_tiles` takes care of that for callers.
"""

from __future__ import annotations

import math
from functools import lru_cache
from typing import List, Sequence, Tuple

from .errors import InvalidInput
from .models import Rect, Tile, TileRect

OTHERS_LABEL = "Others"


def _clean(w: float) -> float:
    w = float(w)
    return w if math.isfinite(w) and w > 0 else 0.0


def _worst_ratio(row: Sequence[float], length: float, scale: float) -> float:
    """Worst aspect ratio of `row` laid along a strip of `length`.

    `scale` is container area per unit of weight.
    """
    row_weight = sum(row)
    if row_weight <= 0 or length <= 0:
        return math.inf
    thickness = row_weight * scale / length
    worst = 0.0
    for w in row:
        if w <= 0:
            return math.inf
        side = length * w / row_weight
        worst = max(worst, side / thickness, thickness / side)
    return worst


def _row_size(weights: Sequence[float], length: float, scale: float) -> int:
    n = 1
    current = _worst_ratio(weights[:1], length, scale)
    while n < len(weights):
        candidate = _worst_ratio(weights[:n + 1], length, scale)
        if candidate > current:
            break
        current = candidate
        n += 1
    return n


def _lay_row(row: Sequence[float], r: Rect, horizontal: bool, thickness: float) -> List[Rect]:
    row_weight = sum(row)
    span = r.width if horizontal else r.height
    out: List[Rect] = []
    offset = 0.0
    for i, w in enumerate(row):
        share = w / row_weight if row_weight > 0 else 0.0
        if i == len(row) - 1 and row_weight > 0:
            size = max(0.0, span - offset)  # absorb float drift
        else:
            size = span * share
        if horizontal:
            out.append(Rect(r.x + offset, r.y, size, thickness))
        else:
            out.append(Rect(r.x, r.y + offset, thickness, size))
        offset += size
    return out


@lru_cache(maxsize=256)
def _squarify(weights: Tuple[float, ...], r: Rect) -> Tuple[Rect, ...]:
    if not weights:
        return ()
    total = sum(weights)
    if total <= 0 or r.area <= 0:
        return tuple(Rect(r.x, r.y, 0.0, 0.0) for _ in weights)

    # Tall containers get a horizontal strip across the top, wide ones a
    # vertical strip down the left side.
    horizontal = r.width < r.height
    length = r.width if horizontal else r.height
    depth = r.height if horizontal else r.width
    scale = r.area / total

    n = _row_size(weights, length, scale)
    row, rest = weights[:n], weights[n:]
    thickness = depth if not rest else min(depth, sum(row) * scale / length)

    rects = _lay_row(row, r, horizontal, thickness)
    remaining = max(0.0, depth - thickness)
    if horizontal:
        leftover = Rect(r.x, r.y + thickness, r.width, remaining)
    else:
        leftover = Rect(r.x + thickness, r.y, remaining, r.height)
    return tuple(rects) + _squarify(rest, leftover)


def squarify(weights: Sequence[float], container: Rect) -> List[Rect]:
    """One rectangle per weight, same order; zero weights get zero-size rects."""
    return list(_squarify(tuple(_clean(w) for w in weights), container))


def collapse_others(tiles: Sequence[Tile], max_tiles: int, label: str = OTHERS_LABEL) -> List[Tile]:
    """Keep the `max_tiles` heaviest tiles and fold the rest into one tile.

    The folded tile's weight is the sum of the folded weights and its value
    the weight-weighted mean of their values (0 when every weight is 0).
    """
    if max_tiles < 1:
        raise InvalidInput(f"max_tiles must be >= 1, got {max_tiles}")
    ordered = sorted(tiles, key=lambda t: _clean(t.weight), reverse=True)
    top, rest = ordered[:max_tiles], ordered[max_tiles:]
    if not rest:
        return list(top)
    weight = sum(_clean(t.weight) for t in rest)
    value = sum(t.value * _clean(t.weight) for t in rest) / weight if weight > 0 else 0.0
    return list(top) + [Tile(label=label, weight=weight, value=value)]


def adaptive_tile_cap(width: float, tile_width: float = 80.0) -> int:
    if tile_width <= 0:
        return 1
    return max(1, int(width // tile_width))


def layout_tiles(tiles: Sequence[Tile], container: Rect, spacing: float = 0.0) -> List[TileRect]:
    ordered = sorted(tiles, key=lambda t: _clean(t.weight), reverse=True)
    rects = squarify([t.weight for t in ordered], container)
    inset = max(0.0, spacing) / 2
    return [TileRect(tile=t, rect=r.inset(inset) if inset else r) for t, r in zip(ordered, rects)]
