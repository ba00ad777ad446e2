"""Column layout engine for satellite panes.

Pure functions, no tmux calls. Satellite panes are spread round-robin across
`ceil(n / max_per_column)` columns to the right of the main pane, and the
resulting tree is serialized in tmux's custom layout grammar:

    <csum>,WxH,X,Y{child,child}     side-by-side children
    <csum>,WxH,X,Y[child,child]     stacked children
    WxH,X,Y,<pane>                  leaf

Layout picture for 5 panes, 3 per column:

    ┌──────────┬──────┬──────┐
    │          │  p1  │  p2  │
    │   main   ├──────┤      │
    │          │  p3  ├──────┤
    │          ├──────┤  p4  │
    │          │  p5  │      │
    └──────────┴──────┴──────┘
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Optional, Sequence, TypeVar

T = TypeVar("T")

SplitDirection = Literal["horizontal", "vertical"]

# One cell between siblings is taken by the tmux border.
SEPARATOR_CELLS = 1


@dataclass(frozen=True)
class ColumnDistribution:
    """Column assignment for a number of agents."""

    num_columns: int
    assignments: tuple[int, ...]

    @property
    def column_sizes(self) -> list[int]:
        sizes = [0] * self.num_columns
        for column in self.assignments:
            sizes[column] += 1
        return sizes


def column_count(agent_count: int, max_per_column: int) -> int:
    """Number of columns needed to fit `agent_count` agents."""
    if max_per_column <= 0:
        raise ValueError(f"max_per_column must be positive, got {max_per_column}")
    if agent_count <= 0:
        return 0
    return math.ceil(agent_count / max_per_column)


def distribute(agent_count: int, max_per_column: int) -> ColumnDistribution:
    """Assign agent i to column `i % num_columns`.

    Round-robin keeps every column within one agent of the others, whatever
    order the agents arrive in.

    Raises:
        ValueError: `max_per_column` is not positive.
    """
    num_columns = column_count(agent_count, max_per_column)
    if num_columns == 0:
        return ColumnDistribution(num_columns=0, assignments=())
    return ColumnDistribution(
        num_columns=num_columns,
        assignments=tuple(index % num_columns for index in range(agent_count)),
    )


def group_by_column(items: Sequence[T], max_per_column: int) -> list[list[T]]:
    """Group items into columns following `distribute`."""
    distribution = distribute(len(items), max_per_column)
    columns: list[list[T]] = [[] for _ in range(distribution.num_columns)]
    for item, column in zip(items, distribution.assignments):
        columns[column].append(item)
    return columns


def main_pane_share(num_columns: int) -> int:
    """Main pane width in percent; shrinks as satellite columns are added."""
    if num_columns <= 0:
        return 100
    if num_columns == 1:
        return 60
    if num_columns == 2:
        return 45
    return 30


@dataclass(frozen=True)
class LayoutCell:
    """Node of a tmux layout tree: a pane leaf or a split with children."""

    width: int
    height: int
    x: int
    y: int
    pane_id: Optional[str] = None
    split: Optional[SplitDirection] = None
    children: tuple["LayoutCell", ...] = ()

    @property
    def is_leaf(self) -> bool:
        return self.split is None

    def leaves(self) -> list["LayoutCell"]:
        if self.is_leaf:
            return [self]
        found: list[LayoutCell] = []
        for child in self.children:
            found.extend(child.leaves())
        return found

    def serialize(self) -> str:
        head = f"{self.width}x{self.height},{self.x},{self.y}"
        if self.is_leaf:
            return f"{head},{self.pane_id}"
        body = ",".join(child.serialize() for child in self.children)
        if self.split == "horizontal":
            return f"{head}{{{body}}}"
        return f"{head}[{body}]"


def layout_checksum(layout: str) -> int:
    """tmux layout checksum: 16-bit rotate-right-and-add over the bytes."""
    csum = 0
    for byte in layout.encode("utf-8"):
        csum = (csum >> 1) + ((csum & 1) << 15)
        csum = (csum + byte) & 0xFFFF
    return csum


def with_checksum(layout: str) -> str:
    return f"{layout_checksum(layout):04x},{layout}"


def _bare_id(pane_id: str | int) -> str:
    return str(pane_id).lstrip("%")


def split_evenly(total: int, parts: int) -> list[int]:
    """Split `total` cells into `parts` sizes, leaving a separator between neighbours.

    Earlier parts absorb the remainder.
    """
    usable = total - SEPARATOR_CELLS * (parts - 1)
    if parts <= 0 or usable < parts:
        raise ValueError(f"cannot split {total} cells into {parts} parts")
    base, remainder = divmod(usable, parts)
    return [base + 1 if index < remainder else base for index in range(parts)]


def _build_column(width: int, height: int, x: int, pane_ids: Sequence[str]) -> LayoutCell:
    if len(pane_ids) == 1:
        return LayoutCell(width, height, x, 0, pane_id=pane_ids[0])

    rows: list[LayoutCell] = []
    y = 0
    for pane_id, row_height in zip(pane_ids, split_evenly(height, len(pane_ids))):
        rows.append(LayoutCell(width, row_height, x, y, pane_id=pane_id))
        y += row_height + SEPARATOR_CELLS
    return LayoutCell(width, height, x, 0, split="vertical", children=tuple(rows))


def build_layout(
    width: int,
    height: int,
    main_pane_id: str | int,
    pane_ids: Sequence[str | int],
    max_per_column: int,
    main_pane_percent: Optional[int] = None,
) -> LayoutCell:
    """Build the layout tree for the main pane plus satellite panes.

    Args:
        width: Window width in cells.
        height: Window height in cells.
        main_pane_id: tmux pane id of the main pane (`%3` or `3`).
        pane_ids: Satellite pane ids in display order. The main pane is ignored if present.
        max_per_column: Per-column satellite limit.
        main_pane_percent: Main pane width; defaults to `main_pane_share(columns)`.

    Raises:
        ValueError: Non-positive dimensions, bad limit, or a window too small to split.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid window size {width}x{height}")

    main_id = _bare_id(main_pane_id)
    satellites = [bare for bare in (_bare_id(pane_id) for pane_id in pane_ids) if bare != main_id]
    columns = group_by_column(satellites, max_per_column)
    if not columns:
        return LayoutCell(width, height, 0, 0, pane_id=main_id)

    percent = main_pane_percent if main_pane_percent is not None else main_pane_share(len(columns))
    main_width = width * percent // 100
    region_x = main_width + SEPARATOR_CELLS
    region_width = width - region_x
    if main_width < 1 or region_width < 1:
        raise ValueError(f"window width {width} too small for a {percent}% main pane")

    column_cells: list[LayoutCell] = []
    x = region_x
    for column_ids, column_width in zip(columns, split_evenly(region_width, len(columns))):
        column_cells.append(_build_column(column_width, height, x, column_ids))
        x += column_width + SEPARATOR_CELLS

    if len(column_cells) == 1:
        region = column_cells[0]
    else:
        region = LayoutCell(region_width, height, region_x, 0, split="horizontal", children=tuple(column_cells))

    main = LayoutCell(main_width, height, 0, 0, pane_id=main_id)
    return LayoutCell(width, height, 0, 0, split="horizontal", children=(main, region))


def render_layout(
    width: int,
    height: int,
    main_pane_id: str | int,
    pane_ids: Sequence[str | int],
    max_per_column: int,
    main_pane_percent: Optional[int] = None,
) -> str:
    """Render a checksummed layout string ready for `tmux select-layout`."""
    tree = build_layout(width, height, main_pane_id, pane_ids, max_per_column, main_pane_percent)
    return with_checksum(tree.serialize())
