"""
Audit logging service.
Records queue resets and set-list activations to a CSV file per run.
"""

import csv
import io
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import aiofiles

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Append-only CSV diagnostics log.
    The file is created lazily on the first record.
    """

    HEADERS = [
        "timestamp",
        "action",
        "subject_id",
        "affected",
        "detail",
    ]

    def __init__(self, logs_dir: str = "logs/audit"):
        """
        Args:
            logs_dir: Directory to store audit logs
        """
        self.logs_dir = Path(logs_dir)
        self.current_file: Optional[Path] = None

    async def start(self) -> Path:
        """Create a new audit file with headers."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        started = datetime.now()
        self.current_file = self.logs_dir / started.strftime("audit_%Y%m%d_%H%M%S_%f.csv")

        async with aiofiles.open(self.current_file, mode="w", newline="", encoding="utf-8") as f:
            await f.write(self._format_row(self.HEADERS))

        logger.info(f"Started audit log: {self.current_file}")
        return self.current_file

    async def record(
        self,
        action: str,
        subject_id: Optional[str],
        affected: int,
        detail: str = "",
    ) -> None:
        """
        Append one audit row.

        Args:
            action: What happened (e.g. "reset_queue", "set_active")
            subject_id: Affected entity id, if a single one
            affected: Number of rows affected
            detail: Free text
        """
        if not self.current_file:
            await self.start()

        row = [
            datetime.now(timezone.utc).isoformat(),
            action,
            subject_id or "",
            str(affected),
            detail,
        ]
        async with aiofiles.open(self.current_file, mode="a", newline="", encoding="utf-8") as f:
            await f.write(self._format_row(row))

        logger.debug(f"Audit: {action} {subject_id or ''} ({affected})")

    async def entries(self, limit: Optional[int] = None) -> List[dict]:
        """Recorded rows, oldest first (last `limit` when given)."""
        if not self.current_file or not self.current_file.exists():
            return []

        async with aiofiles.open(self.current_file, mode="r", newline="", encoding="utf-8") as f:
            content = await f.read()

        rows = list(csv.DictReader(io.StringIO(content)))
        if limit is not None:
            rows = rows[-limit:]
        return rows

    @staticmethod
    def _format_row(values: List[str]) -> str:
        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="\n").writerow(values)
        return buffer.getvalue()
