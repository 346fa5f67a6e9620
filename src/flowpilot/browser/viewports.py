"""Named viewport presets used for browser sessions and device batches."""

from __future__ import annotations

from dataclasses import dataclass

from flowpilot.constants import DEFAULT_VIEWPORT


@dataclass(frozen=True)
class Viewport:
    name: str
    label: str
    category: str
    width: int
    height: int
    device_scale_factor: float = 1.0

    @property
    def is_mobile(self) -> bool:
        return self.category in {"phone", "tablet"}


_PRESETS: tuple[Viewport, ...] = (
    Viewport("desktop-hd", "Desktop HD", "desktop", 1920, 1080),
    Viewport("desktop-std", "Desktop", "desktop", 1280, 720),
    Viewport("desktop-lg", "Desktop QHD", "desktop", 2560, 1440),
    Viewport("desktop-4k", "Desktop 4K", "desktop", 3840, 2160),
    Viewport("laptop-13", "Laptop 13\"", "laptop", 1440, 900, 2),
    Viewport("laptop-15", "Laptop 15\"", "laptop", 1536, 864, 2),
    Viewport("macbook-air", "MacBook Air", "laptop", 1440, 900, 2),
    Viewport("macbook-pro-16", "MacBook Pro 16\"", "laptop", 1728, 1117, 2),
    Viewport("iphone-16-pro-max", "iPhone 16 Pro Max", "phone", 440, 956, 3),
    Viewport("iphone-16-pro", "iPhone 16 Pro", "phone", 402, 874, 3),
    Viewport("iphone-16", "iPhone 16", "phone", 393, 852, 3),
    Viewport("iphone-15", "iPhone 15", "phone", 393, 852, 3),
    Viewport("iphone-se", "iPhone SE", "phone", 375, 667, 2),
    Viewport("iphone-14-plus", "iPhone 14 Plus", "phone", 428, 926, 3),
    Viewport("iphone-13-mini", "iPhone 13 mini", "phone", 375, 812, 3),
    Viewport("pixel-9-pro", "Pixel 9 Pro", "phone", 412, 892, 2.625),
    Viewport("pixel-9", "Pixel 9", "phone", 412, 892, 2.625),
    Viewport("samsung-s24-ultra", "Galaxy S24 Ultra", "phone", 412, 915, 3.5),
    Viewport("samsung-s24", "Galaxy S24", "phone", 360, 780, 3),
    Viewport("samsung-a54", "Galaxy A54", "phone", 412, 915, 2.625),
    Viewport("oneplus-12", "OnePlus 12", "phone", 412, 915, 3.5),
    Viewport("ipad-pro-12", "iPad Pro 12.9\"", "tablet", 1024, 1366, 2),
    Viewport("ipad-pro-11", "iPad Pro 11\"", "tablet", 834, 1194, 2),
    Viewport("ipad-air", "iPad Air", "tablet", 820, 1180, 2),
    Viewport("ipad-mini", "iPad mini", "tablet", 744, 1133, 2),
    Viewport("ipad-10th", "iPad (10th gen)", "tablet", 810, 1080, 2),
    Viewport("samsung-tab-s9", "Galaxy Tab S9", "tablet", 800, 1280, 2),
    Viewport("pixel-tablet", "Pixel Tablet", "tablet", 800, 1280, 2),
)

VIEWPORTS: dict[str, Viewport] = {preset.name: preset for preset in _PRESETS}


def get_viewport_by_name(name: str | None) -> Viewport | None:
    """Look up a preset; ``None`` for unknown names."""
    if not name:
        return None
    return VIEWPORTS.get(name.strip().lower())


def resolve_viewport(name: str | None) -> Viewport:
    """Return the named preset, falling back to the default viewport."""
    return get_viewport_by_name(name) or VIEWPORTS[DEFAULT_VIEWPORT]
