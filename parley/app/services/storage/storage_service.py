import asyncio
import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import ValidationError

from parley.app.config.app_config import GlobalAppConfig
from parley.app.services.storage.storage_models import CredentialData, StorageData, TranscriptionHistoryData, UsageData

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=StorageData)


class StorageService:
    """Typed JSON persistence for the storage models.

    Each model type maps to one file under the user data root. Reads and
    writes run on a small executor so the event loop never blocks on disk.
    Writes go to a temporary file first and are moved into place with
    ``os.replace``, so a crash never leaves a half-written file behind.
    The last read or written instance of each model is cached.
    """

    def __init__(self, config: GlobalAppConfig) -> None:
        self._config = config
        storage = config.storage

        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="Storage")
        self._cache: Dict[str, StorageData] = {}

        self._path_map: Dict[Type[StorageData], str] = {
            TranscriptionHistoryData: os.path.join(storage.history_dir, storage.history_filename),
            UsageData: os.path.join(storage.settings_dir, storage.usage_filename),
            CredentialData: os.path.join(storage.settings_dir, storage.credential_filename),
        }

        for filepath in self._path_map.values():
            os.makedirs(os.path.dirname(filepath), exist_ok=True)

        logger.debug(f"StorageService initialized with base directory: {storage.user_data_root}")

    def get_path(self, model_type: Type[StorageData]) -> Path:
        if model_type not in self._path_map:
            raise ValueError(f"Unknown storage model type: {model_type.__name__}")
        return Path(self._path_map[model_type])

    async def read(self, model_type: Type[T]) -> T:
        """Read a model from disk, or its defaults when the file is missing or invalid."""
        cache_key = model_type.__name__
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        path = self.get_path(model_type)
        if not path.exists():
            logger.debug(f"File does not exist: {path}, using defaults")
            return model_type()

        loop = asyncio.get_running_loop()
        try:
            data_dict = await loop.run_in_executor(self._executor, self._read_json, path)
            instance = model_type.model_validate(data_dict)
        except ValidationError as e:
            logger.error(f"Validation error reading {cache_key}: {e}")
            return model_type()
        except (OSError, ValueError) as e:
            logger.error(f"Error reading {cache_key}: {e}")
            return model_type()

        with self._lock:
            self._cache[cache_key] = instance
        logger.debug(f"Read {cache_key} from storage")
        return instance

    async def write(self, data: StorageData) -> bool:
        """Atomically write a model to its file.

        Returns:
            True if the file was written.
        """
        model_type = type(data)
        path = self.get_path(model_type)
        cache_key = model_type.__name__

        loop = asyncio.get_running_loop()
        payload = data.model_dump(mode="json")
        success = await loop.run_in_executor(self._executor, self._write_json, path, payload)
        if success:
            with self._lock:
                self._cache[cache_key] = data
            logger.debug(f"Wrote {cache_key} to storage")
        return success

    async def delete(self, model_type: Type[StorageData]) -> bool:
        path = self.get_path(model_type)
        self.clear_cache(model_type)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._remove_file, path)

    def _read_json(self, path: Path) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_json(self, path: Path, data: Dict[str, Any]) -> bool:
        temp_path = path.with_suffix(f".tmp.{uuid.uuid4().hex}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_path, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error writing JSON to {path}: {e}")
            if temp_path.exists():
                try:
                    os.remove(temp_path)
                except OSError:
                    logger.warning(f"Could not remove temporary file {temp_path}")
            return False

    def _remove_file(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Error deleting {path}: {e}")
            return False

    def clear_cache(self, model_type: Optional[Type[StorageData]] = None) -> None:
        with self._lock:
            if model_type:
                self._cache.pop(model_type.__name__, None)
            else:
                self._cache.clear()

    async def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        logger.info("StorageService shutdown complete")
