"""Default file callbacks injected into :class:`~lstmocr.trainer.LSTMTrainer`.

The trainer only ever reads and writes checkpoints through a ``FileReader``
and a ``FileWriter``, so tests can swap in dictionaries instead of disks.
"""

import os
import logging
from typing import Callable

# A logger for this file
logger = logging.getLogger(__name__)

FileReader = Callable[[str], "bytes | None"]
FileWriter = Callable[[bytes, str], bool]


def read_file(path: str) -> bytes | None:
    """Returns the contents of ``path``, or ``None`` if it cannot be read."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        logger.warning(f"Failed to read {path}: {e}")
        return None


def write_file(data: bytes, path: str) -> bool:
    """Writes ``data`` to ``path``, creating parent directories. Returns success."""
    try:
        out_dir = os.path.dirname(os.path.abspath(path))
        os.makedirs(out_dir, exist_ok=True)
        # Write then rename so a crash never leaves a half-written checkpoint
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except OSError as e:
        logger.warning(f"Failed to write {path}: {e}")
        return False
    return True


class MemoryFileStore:
    """In-memory ``FileReader`` / ``FileWriter`` pair backed by a dict."""

    def __init__(self):
        self.files: dict[str, bytes] = {}

    def read(self, path: str) -> bytes | None:
        return self.files.get(path)

    def write(self, data: bytes, path: str) -> bool:
        self.files[path] = bytes(data)
        return True
