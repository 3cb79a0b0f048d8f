# app/core/version.py
"""Service version reported by the health endpoints."""
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path

DISTRIBUTION_NAME = "image-license-gateway"
VERSION_FILE = Path(__file__).parent.parent.parent / "VERSION"


@lru_cache()
def get_version() -> str:
    """
    VERSION file first (container builds), then installed package
    metadata, then "0.0.0-unknown".
    """
    if VERSION_FILE.exists():
        version = VERSION_FILE.read_text().strip()
        if version:
            return version

    try:
        return package_version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "0.0.0-unknown"


VERSION = get_version()
