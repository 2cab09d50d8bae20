"""Customization artwork storage.

Uploads land in a temp area before checkout; once the order is paid they are
moved under a per-order permanent directory. Moving is idempotent: a file
already at its destination counts as promoted.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Protocol

import structlog

from app.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class FileStorage(Protocol):
    async def promote(self, order_id: str, temp_path: str) -> str:
        """Move a temp upload to permanent storage and return its new location."""
        ...


class LocalFileStorage:
    """Filesystem-backed storage (mounted volume in production)."""

    def __init__(self, temp_dir: str | Path, permanent_dir: str | Path):
        self.temp_dir = Path(temp_dir)
        self.permanent_dir = Path(permanent_dir)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LocalFileStorage":
        settings = settings or get_settings()
        return cls(settings.storage_temp_dir, settings.storage_permanent_dir)

    def _source(self, temp_path: str) -> Path:
        path = Path(temp_path)
        return path if path.is_absolute() else self.temp_dir / path

    def _move(self, source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.move(str(source), str(destination))
        except FileNotFoundError:
            # Another worker moved it first
            if not destination.exists():
                raise

    async def promote(self, order_id: str, temp_path: str) -> str:
        source = self._source(temp_path)
        destination = self.permanent_dir / order_id / source.name

        if not source.exists():
            if destination.exists():
                return str(destination)
            raise FileNotFoundError(f"Temp upload not found: {source}")

        await asyncio.to_thread(self._move, source, destination)
        logger.info("order_file_promoted", order_id=order_id, destination=str(destination))
        return str(destination)
