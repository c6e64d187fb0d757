import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from parley.app.config.app_config import GlobalAppConfig
from parley.app.config.languages import get_target_language
from parley.app.services.storage.storage_models import TranscriptionHistoryData, TranscriptionRecord
from parley.app.services.storage.storage_service import StorageService

logger = logging.getLogger(__name__)

EXPORT_RULE = "=" * 50


class HistoryService:
    """Persists finalized transcription records, newest last, capped at ``max_history_items``."""

    def __init__(self, storage: StorageService, config: GlobalAppConfig) -> None:
        self._storage = storage
        self._max_items = config.storage.max_history_items
        self._write_lock = asyncio.Lock()

    async def persist(self, record: TranscriptionRecord) -> bool:
        async with self._write_lock:
            history = await self._storage.read(TranscriptionHistoryData)
            records = list(history.records)
            records.append(record)
            if len(records) > self._max_items:
                records = records[-self._max_items :]
            saved = await self._storage.write(TranscriptionHistoryData(records=records))

        if saved:
            logger.info(f"Persisted transcription record {record.id} ({len(records)} in history)")
        else:
            logger.error(f"Failed to persist transcription record {record.id}")
        return saved

    async def load_all(self) -> List[TranscriptionRecord]:
        history = await self._storage.read(TranscriptionHistoryData)
        return list(history.records)

    async def clear(self) -> None:
        async with self._write_lock:
            await self._storage.delete(TranscriptionHistoryData)
        logger.info("Transcription history cleared")

    def file_size_kb(self) -> float:
        path = self._storage.get_path(TranscriptionHistoryData)
        if not path.exists():
            return 0.0
        return path.stat().st_size / 1024.0

    async def export_text(self, target_language_code: str, exported_at: Optional[datetime] = None) -> str:
        """Render the history as a plain-text report."""
        records = await self.load_all()
        exported_at = exported_at or datetime.now()
        target = get_target_language(target_language_code)

        lines = [
            "Real-time Translation Records",
            f"Exported: {exported_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Target language: {target.name}",
            f"Records: {len(records)}",
            EXPORT_RULE,
            "",
        ]
        if not records:
            lines.append("(no records)")
        for index, record in enumerate(records, start=1):
            lines.append(f"Record #{index} [{record.timestamp.strftime('%H:%M:%S')}]")
            lines.append(f"Original: {record.original_text}")
            lines.append(f"Translation: {record.translated_text}")
            lines.append("")
        return "\n".join(lines).rstrip("\n") + "\n"
