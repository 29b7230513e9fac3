"""Append-only diagnostic log for the Telegram bot and AI assist calls.

Records are newline-delimited JSON objects ``{timestamp, event, payload}``.
When the active file grows past ``max_bytes`` it is renamed with a UTC
timestamp suffix and a fresh file is started on the next write.
"""

import asyncio
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from auditbot.logging_config import get_logger

logger = get_logger("debug_log")

DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class DebugLogSink:
    def __init__(self, path: Union[str, Path], max_bytes: int = DEFAULT_MAX_BYTES):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

    def write(self, event: str, payload: Optional[dict] = None) -> bool:
        """Append one record. Never raises; returns False if the write failed."""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "payload": payload or {},
        }
        try:
            line = json.dumps(record, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Debug log record not serializable: {e}", extra={"context": {"event": event}})
            return False

        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed()
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            return True
        except Exception as e:
            logger.warning(f"Debug log write failed: {e}", extra={"context": {"event": event, "path": str(self.path)}})
            return False

    async def awrite(self, event: str, payload: Optional[dict] = None) -> bool:
        """``write`` on a worker thread so file IO and rotation stay off the event loop."""
        return await asyncio.to_thread(self.write, event, payload)

    def _rotate_if_needed(self) -> Optional[Path]:
        if not self.path.exists() or self.path.stat().st_size <= self.max_bytes:
            return None

        suffix = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        rotated = self.path.with_name(f"{self.path.name}.{suffix}")
        counter = 1
        while rotated.exists():
            rotated = self.path.with_name(f"{self.path.name}.{suffix}.{counter}")
            counter += 1

        self.path.rename(rotated)
        logger.info(f"Rotated debug log to {rotated.name}")
        return rotated

    def tail(self, lines: int = 200) -> list[str]:
        """Last ``lines`` non-empty lines of the active file."""
        with self._lock:
            if not self.path.exists():
                return []
            data = self.path.read_text(encoding="utf-8", errors="replace")
        all_lines = [line for line in data.splitlines() if line]
        return all_lines[-lines:] if lines > 0 else []

    def rotated_files(self) -> list[Path]:
        return sorted(self.path.parent.glob(f"{self.path.name}.*"))


class NullDebugLog(DebugLogSink):
    """Sink that drops every record."""

    def __init__(self):
        super().__init__(Path("/dev/null"))

    def write(self, event: str, payload: Optional[dict] = None) -> bool:
        return True

    async def awrite(self, event: str, payload: Optional[dict] = None) -> bool:
        return True

    def tail(self, lines: int = 200) -> list[str]:
        return []


def preview(value: Any, limit: int = 200) -> str:
    text = str(value)
    return text if len(text) <= limit else text[:limit] + "..."
