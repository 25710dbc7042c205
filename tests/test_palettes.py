import pytest

from plot_harness.core.palettes import (
    CUSTOM_PALETTES,
    available_palettes,
    is_known_palette,
    palette_colors,
    resolve_colors,
)


@pytest.mark.parametrize("name", ["viridis", "magma", "rocket", "mako", "Set2", "hawk_natural"])
def test_named_palettes_produce_requested_count(name):
    colors = palette_colors(name, 7)
    assert len(colors) == 7
    assert all(c.startswith("#") and len(c) == 7 for c in colors)
    assert is_known_palette(name)
    assert name in available_palettes()


def test_custom_palette_uses_anchor_colors_when_enough():
    assert palette_colors("hawk_vivid", 3) == [c.lower() for c in CUSTOM_PALETTES["hawk_vivid"][:3]]
    stretched = palette_colors("hawk_vivid", 9)
    assert stretched[0] == CUSTOM_PALETTES["hawk_vivid"][0].lower()
    assert stretched[-1] == CUSTOM_PALETTES["hawk_vivid"][-1].lower()


def test_unknown_palette_raises():
    assert not is_known_palette("no_such_map")
    with pytest.raises(KeyError):
        palette_colors("no_such_map", 3)
    assert palette_colors("no_such_map", 0) == []


def test_explicit_colors_beat_palette():
    assert resolve_colors(2, palette="magma", colors=["#ff0000", "#0000ff"]) == ["#ff0000", "#0000ff"]
    assert resolve_colors(3) == palette_colors("viridis", 3)
