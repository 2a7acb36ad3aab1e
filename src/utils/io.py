from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

PathLike = Union[str, Path]


def ensure_parent(p: PathLike) -> Path:
    """Ensure the parent directory of a file path exists, returning the path."""
    p = Path(p)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {p.parent}: {e}") from e
    return p


def append_jsonl(path: PathLike, item: Dict[str, Any]) -> None:
    """Append a JSON-serializable dict as one line to a JSONL file."""
    try:
        line = json.dumps(item, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize item to JSON: {e}") from e

    p = ensure_parent(path)
    try:
        with open(p, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError as e:
        raise OSError(f"Failed to write to {p}: {e}") from e


def read_json(path: PathLike) -> Optional[Any]:
    """Load a JSON document, or None when the file does not exist."""
    p = Path(path)
    if not p.exists():
        return None
    with open(p, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise RuntimeError(f"Corrupt JSON in {p}: {e}") from e


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Write a JSON file through a temp file + replace so readers never see a partial file."""
    p = ensure_parent(path)
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", delete=False, dir=str(p.parent)
        ) as tmp:
            json.dump(data, tmp, ensure_ascii=False, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_name = tmp.name
        os.replace(tmp_name, p)
    except OSError as e:
        raise OSError(f"Atomic write failed for {p}: {e}") from e
