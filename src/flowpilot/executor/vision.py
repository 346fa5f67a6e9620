"""Vision prompts and defensive parsing of model coordinate replies."""

from __future__ import annotations

import re

from flowpilot.browser.viewports import Viewport

NOT_FOUND = "NOT_FOUND"
INTEGER = re.compile(r"-?\d+")

TAP_PROMPT = (
    "Look at this screenshot of a web page ({width}x{height} viewport). "
    'Find the element containing the text "{text}" and return ONLY the center '
    'coordinates as "x,y" (integer pixel values). If the text is not visible, '
    'return "NOT_FOUND".'
)
VISIBILITY_PROMPT = (
    "Look at this screenshot of a web page ({width}x{height} viewport). "
    'Is the text "{text}" visible anywhere on the screen? Answer only "YES" or "NO".'
)


def tap_prompt(text: str, viewport: Viewport) -> str:
    return TAP_PROMPT.format(width=viewport.width, height=viewport.height, text=text)


def visibility_prompt(text: str, viewport: Viewport) -> str:
    return VISIBILITY_PROMPT.format(width=viewport.width, height=viewport.height, text=text)


def is_not_found(response: str) -> bool:
    return NOT_FOUND in response.upper()


def is_affirmative(response: str) -> bool:
    return "YES" in response.strip().upper()


def parse_coordinates(response: str) -> tuple[int, int]:
    """Read ``x,y`` from replies such as ``"12,34"``, ``"(12, 34)"`` or prose.

    Raises ``ValueError`` when fewer than two integers are present.
    """
    compact = response.strip().strip("()").replace(" ", "")
    parts = compact.split(",")
    if len(parts) == 2:
        try:
            return int(parts[0]), int(parts[1])
        except ValueError:
            pass
    numbers = INTEGER.findall(compact)
    if len(numbers) >= 2:
        return int(numbers[0]), int(numbers[1])
    raise ValueError(f"no coordinates found in {response.strip()!r}")


def resolve_point(point: str, viewport: Viewport) -> tuple[int, int]:
    """Resolve ``"x,y"`` where each axis is pixels or a viewport percentage."""
    parts = point.split(",")
    if len(parts) != 2:
        raise ValueError(f"invalid format {point!r}, expected 'x,y'")
    return (
        _resolve_axis(parts[0], viewport.width, "x"),
        _resolve_axis(parts[1], viewport.height, "y"),
    )


def _resolve_axis(raw: str, extent: int, axis: str) -> int:
    value = raw.strip()
    if value.endswith("%"):
        try:
            return int(float(value[:-1]) / 100.0 * extent)
        except ValueError as exc:
            raise ValueError(f"invalid {axis} percentage {value!r}") from exc
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"invalid {axis} coordinate {value!r}") from exc
