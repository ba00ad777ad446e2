"""Unit tests for the column layout engine."""

import pytest

from paneherd.core.layout import (
    LayoutCell,
    build_layout,
    column_count,
    distribute,
    group_by_column,
    layout_checksum,
    main_pane_share,
    render_layout,
    split_evenly,
    with_checksum,
)


def test_distribute_five_agents_three_per_column():
    """Test the round-robin assignment for 5 agents with a limit of 3."""
    distribution = distribute(5, 3)

    assert distribution.num_columns == 2
    assert distribution.assignments == (0, 1, 0, 1, 0)
    assert distribution.column_sizes == [3, 2]


@pytest.mark.parametrize("agents,limit", [(1, 1), (4, 3), (7, 3), (10, 4), (30, 10), (9, 2)])
def test_distribute_keeps_columns_balanced(agents, limit):
    """Test column sizes sum to the agent count and differ by at most one."""
    sizes = distribute(agents, limit).column_sizes

    assert sum(sizes) == agents
    assert max(sizes) - min(sizes) <= 1
    assert max(sizes) <= limit


def test_distribute_zero_agents_gives_zero_columns():
    """Test that no agents means no columns."""
    distribution = distribute(0, 3)

    assert distribution.num_columns == 0
    assert distribution.assignments == ()
    assert distribution.column_sizes == []


def test_distribute_rejects_non_positive_limit():
    """Test that a zero limit raises even when there are no agents."""
    with pytest.raises(ValueError):
        distribute(5, 0)
    with pytest.raises(ValueError):
        column_count(0, -1)


def test_group_by_column_preserves_order_within_columns():
    """Test that items keep arrival order inside each column."""
    assert group_by_column(["a", "b", "c", "d", "e"], 3) == [["a", "c", "e"], ["b", "d"]]
    assert group_by_column([], 3) == []


@pytest.mark.parametrize("columns,share", [(0, 100), (1, 60), (2, 45), (3, 30), (7, 30)])
def test_main_pane_share(columns, share):
    """Test main pane share by column count."""
    assert main_pane_share(columns) == share


def test_split_evenly_gives_remainder_to_earlier_parts():
    """Test even splitting with one separator cell between parts."""
    assert split_evenly(50, 3) == [16, 16, 16]
    assert split_evenly(50, 2) == [25, 24]
    assert split_evenly(109, 2) == [54, 54]
    assert split_evenly(10, 1) == [10]


def test_split_evenly_rejects_too_many_parts():
    """Test that a region too small for the separators raises."""
    with pytest.raises(ValueError):
        split_evenly(3, 3)


def test_layout_checksum_known_value():
    """Test the checksum against a layout string produced by tmux itself."""
    assert layout_checksum("80x24,0,0{40x24,0,0,129,39x24,41,0,130}") == 0x6C56
    assert with_checksum("80x24,0,0,1").split(",", 1)[1] == "80x24,0,0,1"


def test_render_layout_two_panes():
    """Test the golden layout for a main pane and one satellite."""
    layout = render_layout(80, 24, "%129", ["%130"], 3, main_pane_percent=50)

    assert layout == "6c56,80x24,0,0{40x24,0,0,129,39x24,41,0,130}"


def test_render_layout_stacks_a_single_column():
    """Test that one column of two panes is a stacked split used as the region itself."""
    layout = render_layout(80, 24, "%129", ["%130", "%131"], 3, main_pane_percent=50)

    body = layout.split(",", 1)[1]
    assert body == "80x24,0,0{40x24,0,0,129,39x24,41,0[39x12,41,0,130,39x11,41,13,131]}"


def test_render_layout_five_agents_two_columns():
    """Test the full layout for 5 agents, 3 per column, on a 200x50 window."""
    layout = render_layout(200, 50, "%0", ["%1", "%2", "%3", "%4", "%5"], 3)

    checksum, body = layout.split(",", 1)
    assert body == (
        "200x50,0,0{90x50,0,0,0,109x50,91,0{"
        "54x50,91,0[54x16,91,0,1,54x16,91,17,3,54x16,91,34,5],"
        "54x50,146,0[54x25,146,0,2,54x24,146,26,4]}}"
    )
    assert checksum == f"{layout_checksum(body):04x}"


def test_render_layout_is_deterministic():
    """Test that the same input renders the same string."""
    args = (200, 50, "%0", ["%1", "%2", "%3", "%4"], 2)
    assert render_layout(*args) == render_layout(*args)


def test_build_layout_without_satellites_fills_window():
    """Test that the main pane alone covers the whole window."""
    tree = build_layout(120, 40, "%7", [], 3)

    assert tree == LayoutCell(120, 40, 0, 0, pane_id="7")
    assert tree.serialize() == "120x40,0,0,7"


def test_build_layout_ignores_main_pane_in_satellites():
    """Test that the main pane is not laid out twice."""
    tree = build_layout(80, 24, "%1", ["%1", "%2"], 3, main_pane_percent=50)

    assert [leaf.pane_id for leaf in tree.leaves()] == ["1", "2"]


def test_build_layout_leaves_stay_inside_window():
    """Test that no leaf extends past the window bounds."""
    tree = build_layout(151, 47, "%0", [f"%{i}" for i in range(1, 10)], 3)

    for leaf in tree.leaves():
        assert leaf.x + leaf.width <= 151
        assert leaf.y + leaf.height <= 47
    assert len(tree.leaves()) == 10


@pytest.mark.parametrize("width,height", [(0, 24), (80, 0), (-1, -1)])
def test_build_layout_rejects_invalid_dimensions(width, height):
    """Test that non-positive window sizes raise."""
    with pytest.raises(ValueError):
        build_layout(width, height, "%0", ["%1"], 3)


def test_build_layout_rejects_too_small_window():
    """Test that a window too narrow for its columns raises."""
    with pytest.raises(ValueError):
        build_layout(4, 24, "%0", ["%1", "%2", "%3", "%4"], 1)
