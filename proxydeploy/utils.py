import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml
from eth_utils import to_hex

from proxydeploy.constants import STANDARD_JSON_FORMAT


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def write_json_atomic(filepath: Path, data: Any) -> None:
    """
    Writes JSON to a temp file in the same directory, fsyncs it and swaps it into place.
    Readers never observe a partially-written file.
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{filepath.name}.", suffix=".tmp", dir=str(filepath.parent)
    )
    temp_filepath = Path(temp_name)
    try:
        with os.fdopen(fd, "w") as file:
            json.dump(data, file, **STANDARD_JSON_FORMAT)
            file.flush()
            os.fsync(file.fileno())
        os.replace(temp_filepath, filepath)
    finally:
        if temp_filepath.exists():
            temp_filepath.unlink()
    _fsync_directory(filepath.parent)


def _fsync_directory(directory: Path) -> None:
    # persists the rename itself; not supported on every platform
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def to_json_safe(value: Any) -> Any:
    """Converts resolved argument values into something json can encode."""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(bytes(value))
    if isinstance(value, (list, tuple)):
        return [to_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    return value
