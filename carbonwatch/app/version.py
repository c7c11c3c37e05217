from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path


DIST_NAME = "carbonwatch-telemetry"


def get_version() -> str:
    """Installed distribution version, else `[project].version` from a source checkout."""

    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        pass

    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    try:
        project = tomllib.loads(pyproject.read_text("utf-8")).get("project") or {}
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"
    return str(project.get("version") or "0.0.0")


__version__ = get_version()
