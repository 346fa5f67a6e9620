"""Package-wide constants."""

from __future__ import annotations

PACKAGE_VERSION = "0.4.0"
SCHEMA_VERSION = "1.0.0"

MODE_AGENT = "agent"
MODE_BROWSER = "browser"
MODE_MAESTRO = "maestro"
RUN_MODES = (MODE_AGENT, MODE_BROWSER, MODE_MAESTRO)

PROGRESS_PREFIX = "PROGRESS:"

# Ordered best to worst; the first readable file wins.
CHECKPOINT_STAGES = ("synthesized", "analyzed", "scouted")

DEFAULT_VIEWPORT = "desktop-std"
DEFAULT_APP_ID = "com.android.chrome"
