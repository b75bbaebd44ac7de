from __future__ import annotations

import os

PRIMARY_PREFIX = "HOOPS_TRACKER_"


def get_env(name: str, default: str | None = None) -> str | None:
    """
    Resolve configuration environment variables.

    Looks up ``HOOPS_TRACKER_<name>`` first and falls back to the bare name so
    platform-provided variables (``GEMINI_API_KEY``, ``LOG_LEVEL``) work unchanged.
    """
    for key in (f"{PRIMARY_PREFIX}{name}", name):
        value = os.getenv(key)
        if value is not None:
            return value
    return default
