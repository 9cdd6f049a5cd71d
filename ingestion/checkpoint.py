"""
Checkpoint and summary documents.

Both are JSON files written atomically (temp file + os.replace). The
checkpoint file holds one entry per source; writing one source keeps the
others.
"""

from typing import Any, Dict, Optional
import json
import logging
import os
import tempfile

from core.exceptions import CheckpointError
from schemas.journal import CheckpointEntry

logger = logging.getLogger(__name__)


def write_json_atomic(path: str, payload: Any) -> None:
    parent = os.path.dirname(path) or "."
    try:
        os.makedirs(parent, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except OSError as e:
        raise CheckpointError("Failed to write JSON document", context={"path": path}, original_exception=e)


def read_json(path: str) -> Optional[Any]:
    """None when the file is missing or not valid JSON."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning(f"Ignoring unreadable JSON document at {path}")
        return None
    except OSError as e:
        raise CheckpointError("Failed to read JSON document", context={"path": path}, original_exception=e)


class CheckpointFile:
    """Per-source cursor document"""

    def __init__(self, path: Optional[str]):
        self.path = path

    def load(self) -> Dict[str, Any]:
        if not self.path:
            return {}
        document = read_json(self.path)
        return document if isinstance(document, dict) else {}

    def read(self, source: str) -> Optional[CheckpointEntry]:
        entry = self.load().get(source)
        if not isinstance(entry, dict):
            return None
        return CheckpointEntry(**entry)

    def write(self, source: str, entry: CheckpointEntry) -> None:
        if not self.path:
            return
        document = self.load()
        document[source] = entry.dict(by_alias=True)
        write_json_atomic(self.path, document)
        logger.debug(f"Checkpoint {source}: lastId={entry.last_id} nextStart={entry.next_start}")
