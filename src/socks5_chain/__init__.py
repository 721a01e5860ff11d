"""SOCKS5 relay that chains clients through an authenticated upstream proxy."""

import pathlib
import tomllib
from importlib.metadata import PackageNotFoundError, version


def get_version() -> str:
    """Read version from pyproject.toml, falling back to installed metadata."""
    current_dir = pathlib.Path(__file__).parent
    for parent in [current_dir, *current_dir.parents]:
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            if pyproject_data.get("project", {}).get("name") == "socks5-chain":
                return pyproject_data["project"]["version"]

    try:
        return version("socks5-chain")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
