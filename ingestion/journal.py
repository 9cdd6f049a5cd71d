"""
Append-only JSONL failure journal.

One line per failed unit of work. Lines are appended by the coordinator
only, after a page's workers complete, so writes never interleave.
"""

from typing import Iterable, List, Optional
import json
import logging
import os

from pydantic import ValidationError

from core.exceptions import JournalError
from schemas.journal import FailureEntry

logger = logging.getLogger(__name__)


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


class FailureJournal:
    """
    Failure journal bound to one file path.

    ``line_count`` covers lines already in the file when the journal was
    opened plus lines appended since.
    """

    def __init__(self, path: Optional[str]):
        self.path = path
        self.base_lines = 0
        self.appended = 0
        self.appended_bytes = 0
        if path and os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    self.base_lines = sum(1 for line in handle if line.strip())
            except OSError as e:
                raise JournalError("Failed to read failure journal", context={"path": path}, original_exception=e)

    @property
    def line_count(self) -> int:
        return self.base_lines + self.appended

    def append(self, entries: Iterable[FailureEntry]) -> int:
        entries = list(entries)
        if not entries or not self.path:
            return 0
        lines = [json.dumps(entry.to_line(), ensure_ascii=False) + "\n" for entry in entries]
        try:
            _ensure_parent(self.path)
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.writelines(lines)
        except OSError as e:
            raise JournalError(
                "Failed to append to failure journal",
                context={"path": self.path, "entries": len(entries)},
                original_exception=e,
            )
        self.appended += len(lines)
        self.appended_bytes += sum(len(line.encode("utf-8")) for line in lines)
        for entry in entries:
            logger.warning(
                f"Journaled failure source={entry.source} sourceId={entry.source_id} "
                f"stage={entry.stage} status={entry.status}: {entry.message}"
            )
        return len(lines)

    @staticmethod
    def load(path: str) -> List[FailureEntry]:
        """
        Read a journal. A missing file is empty; unparseable lines and lines
        without source/sourceId are ignored.
        """
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw_lines = [line.strip() for line in handle]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise JournalError("Failed to read failure journal", context={"path": path}, original_exception=e)

        entries = []
        ignored = 0
        for line in raw_lines:
            if not line:
                continue
            try:
                entry = FailureEntry(**json.loads(line))
            except (ValueError, TypeError, ValidationError):
                ignored += 1
                continue
            if not entry.source or not entry.source_id:
                ignored += 1
                continue
            entries.append(entry)
        if ignored:
            logger.warning(f"Ignored {ignored} unparseable journal lines in {path}")
        return entries


def dedupe_entries(entries: Iterable[FailureEntry]) -> List[FailureEntry]:
    """First entry per (source, sourceId) wins."""
    seen = set()
    unique = []
    for entry in entries:
        key = (entry.source, entry.source_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(entry)
    return unique
