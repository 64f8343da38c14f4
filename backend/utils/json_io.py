"""JSON files on disk: browser cookie jars and similar small state."""
import json
import os
from pathlib import Path
from typing import Any


def atomic_write_json(path: Path, data: Any) -> None:
    """Write via a pid-suffixed temp file and rename, so readers never see half a file."""
    tmp_path = path.with_suffix(path.suffix + f".{os.getpid()}.tmp")
    tmp_path.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def read_json(path: Path, default: Any = None) -> Any:
    """Load `path`, or return `default` when it does not exist. Corrupt files raise ValueError."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return default
