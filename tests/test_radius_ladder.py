import pytest

import radius_ladder


def test_ladder_is_strictly_increasing_with_thirteen_rungs() -> None:
    values = radius_ladder.ladder()
    assert len(values) == 13
    assert values[0] == 0.01
    assert values[-1] == 32.0
    assert all(a < b for a, b in zip(values, values[1:]))


def test_advance_moves_one_rung() -> None:
    assert radius_ladder.advance(0) == 1
    assert radius_ladder.advance(5) == 6


def test_advance_never_passes_last_rung() -> None:
    index = 0
    for _ in range(100):
        index = radius_ladder.advance(index)
        assert index <= radius_ladder.LAST_INDEX
    assert index == radius_ladder.LAST_INDEX
    assert radius_ladder.advance(radius_ladder.LAST_INDEX) == radius_ladder.LAST_INDEX
    assert radius_ladder.advance(999) == radius_ladder.LAST_INDEX


def test_negative_index_clamps_to_first_rung() -> None:
    assert radius_ladder.clamp(-3) == 0
    assert radius_ladder.advance(-3) == 1
    assert radius_ladder.radius_at(-1) == 0.01


def test_is_last() -> None:
    assert not radius_ladder.is_last(0)
    assert not radius_ladder.is_last(radius_ladder.LAST_INDEX - 1)
    assert radius_ladder.is_last(radius_ladder.LAST_INDEX)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.01, "0.01"), (1.0, "1"), (1.5, "1.5"), (32.0, "32")],
)
def test_format_radius(value: float, expected: str) -> None:
    assert radius_ladder.format_radius(value) == expected
