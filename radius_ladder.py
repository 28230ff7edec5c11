"""Search radii tried around a pin, smallest first."""

from __future__ import annotations

# Kilometers. Flickr caps geo searches at 32 km.
RADIUS_LADDER: tuple[float, ...] = (
    0.01,
    0.05,
    0.1,
    0.2,
    0.5,
    1.0,
    1.5,
    2.0,
    3.0,
    4.0,
    8.0,
    16.0,
    32.0,
)

LAST_INDEX = len(RADIUS_LADDER) - 1


def ladder() -> tuple[float, ...]:
    return RADIUS_LADDER


def clamp(index: int) -> int:
    return min(max(0, int(index)), LAST_INDEX)


def advance(index: int) -> int:
    """Return the next rung, saturating at the widest radius."""

    return clamp(clamp(index) + 1)


def is_last(index: int) -> bool:
    return clamp(index) >= LAST_INDEX


def radius_at(index: int) -> float:
    return RADIUS_LADDER[clamp(index)]


def format_radius(value: float) -> str:
    return f"{value:g}"


__all__ = [
    "RADIUS_LADDER",
    "LAST_INDEX",
    "ladder",
    "clamp",
    "advance",
    "is_last",
    "radius_at",
    "format_radius",
]
