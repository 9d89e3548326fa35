"""
JSON file persistence for corpus, chunk, and manifest files

Every write goes to a temporary file in the target directory and is then
moved into place with ``os.replace`` so readers never observe a
half-written file.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from errors import ParseError, StorageError

logger = logging.getLogger(__name__)


def dumps_compact(payload: Any) -> str:
    """Compact JSON serialization used for byte-size accounting"""
    return json.dumps(payload, ensure_ascii=False, separators=(',', ':'))


def serialized_size(payload: Any) -> int:
    """UTF-8 byte length of the compact JSON form of ``payload``"""
    return len(dumps_compact(payload).encode('utf-8'))


def write_json_atomic(path: Union[str, Path], payload: Any, indent: Optional[int] = None) -> Path:
    """Write JSON to ``path`` atomically

    Args:
        path: Destination file
        payload: JSON-serializable object
        indent: Pretty-print indentation (compact when None)

    Returns:
        Destination path

    Raises:
        StorageError: If the directory or file cannot be written
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=path.parent)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            if indent is None:
                f.write(dumps_compact(payload))
            else:
                json.dump(payload, f, ensure_ascii=False, indent=indent)
        os.replace(tmp_name, path)
        return path
    except (OSError, TypeError, ValueError) as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise StorageError(f"Failed to write {path}: {e}")


def read_json(path: Union[str, Path]) -> Any:
    """Read and decode a JSON file

    Raises:
        StorageError: If the file cannot be read
        ParseError: If the content is not valid JSON
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in {path.name}: {e}")
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}")


def directory_size(path: Union[str, Path]) -> int:
    """Total size in bytes of all files below ``path``"""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError as e:
                logger.warning(f"Cannot stat {name} in {root}: {e}")
    return total
