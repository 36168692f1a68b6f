"""Session history readers for the CLI's append-only JSONL logs.

Logs live at ``<base>/projects/<projectId>/<sessionId>.jsonl``. This
module only reads them; the CLI is the sole writer.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from endlesscode.shared.models.message import ParsedMessage

from .errors import HistoryFileNotFoundError
from .line_parser import LineParser

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_HISTORY_LIMIT = 1000
DEFAULT_RECENT_COUNT = 100


@dataclass
class SessionHistory:
    messages: list[ParsedMessage] = field(default_factory=list)
    total_lines: int = 0
    corrupted_lines: int = 0
    offset: int = 0
    has_more: bool = False
    session_id: str | None = None


class HistoryTailer:
    def __init__(
        self,
        claude_base_path: str | Path,
        parser: LineParser | None = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.base_path = Path(claude_base_path).expanduser()
        self._parser = parser or LineParser()
        self._chunk_size = chunk_size

    def session_file_path(self, project_id: str, session_id: str) -> Path:
        return self.base_path / "projects" / project_id / f"{session_id}.jsonl"

    def _parse(self, raw: bytes) -> ParsedMessage | None:
        return self._parser.try_parse(raw.decode("utf-8", errors="replace"))

    def load_recent_messages(
        self, path: str | Path, count: int = DEFAULT_RECENT_COUNT
    ) -> list[ParsedMessage]:
        """Last *count* parseable lines of *path*, oldest first.

        Reads backward in fixed-size chunks so only the tail of a large
        log is touched.
        """
        path = Path(path)
        if not path.is_file():
            raise HistoryFileNotFoundError(str(path))
        if count <= 0:
            return []

        newest_first: list[ParsedMessage] = []
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            position = f.tell()
            # Bytes before the first newline seen so far: possibly a partial line.
            fragment = b""
            while position > 0 and len(newest_first) < count:
                read_size = min(self._chunk_size, position)
                position -= read_size
                f.seek(position)
                lines = (f.read(read_size) + fragment).split(b"\n")
                fragment = lines[0]
                for raw in reversed(lines[1:]):
                    message = self._parse(raw)
                    if message is not None:
                        newest_first.append(message)
                        if len(newest_first) == count:
                            break
            if position == 0 and len(newest_first) < count and fragment:
                message = self._parse(fragment)
                if message is not None:
                    newest_first.append(message)

        newest_first.reverse()
        return newest_first

    def load_history(
        self,
        path: str | Path,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> SessionHistory:
        """Forward page of up to *limit* messages after skipping *offset* lines.

        Lines that fail to parse inside the page are counted in
        ``corrupted_lines`` and skipped. ``has_more`` is
        ``offset + returned < total_lines``, so skipped lines still count
        as remaining.
        """
        path = Path(path)
        if not path.is_file():
            raise HistoryFileNotFoundError(str(path))
        offset = max(0, offset)

        history = SessionHistory(offset=offset)
        with open(path, "rb") as f:
            for raw in f:
                if not raw.strip():
                    continue
                history.total_lines += 1
                if history.total_lines <= offset:
                    continue
                if len(history.messages) >= limit:
                    continue
                message = self._parse(raw)
                if message is None:
                    history.corrupted_lines += 1
                    continue
                history.messages.append(message)

        history.has_more = offset + len(history.messages) < history.total_lines
        if history.corrupted_lines:
            logger.warning(
                "History %s: %d corrupted line(s) skipped", path, history.corrupted_lines
            )
        return history

    def load_session_history(
        self,
        project_id: str,
        session_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> SessionHistory:
        history = self.load_history(
            self.session_file_path(project_id, session_id), limit, offset
        )
        history.session_id = session_id
        return history

    def load_session_recent(
        self, project_id: str, session_id: str, count: int = DEFAULT_RECENT_COUNT
    ) -> list[ParsedMessage]:
        return self.load_recent_messages(
            self.session_file_path(project_id, session_id), count
        )
