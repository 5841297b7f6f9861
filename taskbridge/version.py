"""Resolve ``taskbridge.__version__``."""

from importlib.metadata import PackageNotFoundError, version as metadata_version
from pathlib import Path

import tomllib

PACKAGE_NAME = "taskbridge"
PYPROJECT_PATH = Path(__file__).resolve().parents[1] / "pyproject.toml"


def get_version() -> str:
    # Installed distributions carry metadata; a bare checkout only has pyproject.toml
    try:
        return metadata_version(PACKAGE_NAME)
    except PackageNotFoundError:
        pass

    try:
        with PYPROJECT_PATH.open("rb") as fh:
            return tomllib.load(fh)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "0.0.0+unknown"
