"""
Boundary of the Rune core.

``RuneLibrary`` wires the index, the runtime manager and the tagging queue
together and exposes the operations a presentation layer calls. Every
operation returns an ``OperationResult``; errors carry a short user-facing
message while the details go to the log.
"""

import asyncio
import functools
import os
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union
from uuid import uuid4
import httpx

from .config import Settings, settings as default_settings
from .errors import CancellationError, NotFoundError, PathSafetyError, RuneError
from .events import EventBus, Handler
from .library_index import DB_DIRNAME, close_index, get_index, is_path_inside
from .logging import get_logger
from .models import AVAILABLE_VL_MODELS, ImageRecord, OperationResult
from .runtime_manager import ModelRuntimeManager, ProgressCallback
from .tagging_queue import TaggingQueue


IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif", ".bmp", ".tiff"})
TRASH_DIRNAME = "trash"


def is_supported_image(path: Union[str, os.PathLike]) -> bool:
    return Path(path).suffix.lower() in IMAGE_EXTENSIONS


def boundary(action: str):
    """Turn the result or error of a facade coroutine into an ``OperationResult``."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs) -> OperationResult:
            try:
                data = await func(self, *args, **kwargs)
            except CancellationError as e:
                self.logger.info(f"⏹️  {action} cancelled: {e}")
                return OperationResult.failure(e)
            except RuneError as e:
                self.logger.error(f"❌ {action} failed: {e}")
                return OperationResult.failure(e)
            except Exception as e:
                self.logger.exception(f"❌ {action} failed unexpectedly")
                return OperationResult.failure(e)
            return OperationResult.success(data)
        return wrapper
    return decorator


class RuneLibrary:
    """One image library plus the local tagging runtime that annotates it."""

    def __init__(
        self,
        library_path: Optional[Union[str, os.PathLike]] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.logger = get_logger("library")
        self.settings = settings or default_settings
        self.library_path = Path(library_path or self.settings.library_path).expanduser().resolve()
        self.library_path.mkdir(parents=True, exist_ok=True)
        self.events = event_bus or EventBus()

        # Raises StorageError when the engine is unusable; the library must not be used then
        self.index = get_index(self.library_path, self.settings)
        self.runtime = ModelRuntimeManager(self.settings, http_client=http_client, event_bus=self.events)
        self.queue = TaggingQueue(self.index, self.runtime, self.events, self.settings)

    def subscribe(self, topic: Optional[str], handler: Handler) -> Callable[[], None]:
        """Register an event handler; ``None`` subscribes to every topic."""
        return self.events.subscribe(topic, handler)

    # ===== Images =====

    @boundary("Import")
    async def import_images(self, paths: Iterable[Union[str, os.PathLike]]) -> List[ImageRecord]:
        """Copy image files into the library and queue them for tagging."""
        sources = []
        for raw in paths:
            path = Path(raw)
            if not path.is_file():
                self.logger.warning(f"⚠️  Skipping missing file: {path}")
            elif not is_supported_image(path):
                self.logger.warning(f"⚠️  Skipping unsupported file: {path.name}")
            else:
                sources.append(path)
        if not sources:
            return []

        # Strictly increasing timestamps keep import order under the newest-first sort
        base_time = datetime.now(timezone.utc)
        records: List[ImageRecord] = []
        copied: List[Path] = []
        try:
            for offset, source in enumerate(sources):
                image_id = str(uuid4())
                stored_name = f"{image_id}{source.suffix.lower()}"
                dest = self.library_path / stored_name
                await asyncio.to_thread(shutil.copy2, source, dest)
                copied.append(dest)
                records.append(ImageRecord(
                    id=image_id,
                    original_name=source.name,
                    stored_name=stored_name,
                    file_path=str(dest),
                    added_at=base_time + timedelta(microseconds=offset),
                    bytes=dest.stat().st_size,
                ))
            self.index.insert_images(records)
        except BaseException:
            for dest in copied:
                dest.unlink(missing_ok=True)
            raise

        self.logger.info(f"📥 Imported {len(records)} images")
        await self.queue.enqueue_new_images([record.id for record in records])
        return records

    @boundary("Search")
    async def search(self, query: Optional[str] = "", limit: int = 200, cursor=None):
        # Off the event loop; the index serializes access with its own lock
        return await asyncio.to_thread(self.index.search, query, limit=limit, cursor=cursor)

    @boundary("Get image")
    async def get_image(self, image_id: str) -> ImageRecord:
        record = await asyncio.to_thread(self.index.get_image_by_id, image_id)
        if record is None:
            raise NotFoundError(f"Image not found: {image_id}", "Image not found.")
        return record

    @boundary("Delete")
    async def delete_image(self, image_id: str) -> str:
        """Remove an image file together with its rows; either both go or neither does."""
        record = self.index.get_image_by_id(image_id)
        if record is None:
            raise NotFoundError(f"Image not found: {image_id}", "Image not found.")
        path = Path(record.file_path)
        if not is_path_inside(self.library_path, path):
            raise PathSafetyError(f"Refusing to delete outside library: {path}")

        trash_dir = self.library_path / DB_DIRNAME / TRASH_DIRNAME
        trash_dir.mkdir(parents=True, exist_ok=True)
        trashed = trash_dir / record.stored_name
        moved = False
        if path.exists():
            os.replace(path, trashed)
            moved = True
        else:
            self.logger.warning(f"⚠️  Image file already missing: {path}")

        try:
            deleted = self.index.delete_image_by_id(image_id)
        except BaseException:
            if moved:
                os.replace(trashed, path)
            raise
        if not deleted:
            if moved:
                os.replace(trashed, path)
            raise NotFoundError(f"Image vanished during delete: {image_id}", "Image not found.")

        if moved:
            trashed.unlink(missing_ok=True)
        self.logger.info(f"🗑️  Deleted image {record.original_name}")
        return image_id

    @boundary("Retry")
    async def retry_tagging(self, image_id: str) -> ImageRecord:
        return self.queue.retry_image(image_id)

    # ===== Tagging queue =====

    @boundary("Start tagging")
    async def start_tagging(self) -> bool:
        return await self.queue.start()

    @boundary("Pause tagging")
    async def pause_tagging(self) -> None:
        self.queue.pause()

    @boundary("Resume tagging")
    async def resume_tagging(self) -> None:
        self.queue.resume()

    @boundary("Tagging status")
    async def get_tagging_status(self):
        return self.queue.get_status()

    # ===== Runtime =====

    @boundary("Runtime download")
    async def download_binary(self, on_progress: Optional[ProgressCallback] = None):
        return await self.runtime.download_binary(on_progress)

    @boundary("Model download")
    async def download_model(self, model_name: Optional[str] = None,
                             on_progress: Optional[ProgressCallback] = None):
        status = await self.runtime.download_model(model_name, on_progress)
        if not self.queue.is_started:
            await self.queue.start()
        return status

    @boundary("Cancel download")
    async def cancel_model_download(self) -> bool:
        return self.runtime.cancel_model_download()

    @boundary("Model delete")
    async def delete_model(self, model_name: Optional[str] = None):
        if not model_name or model_name == self.runtime.current_model:
            await self.queue.stop()
        return await self.runtime.delete_model(model_name)

    @boundary("Runtime delete")
    async def delete_binary(self):
        await self.queue.stop()
        return await self.runtime.delete_binary()

    @boundary("Runtime restart")
    async def restart_runtime(self):
        return await self.runtime.restart_server()

    @boundary("Status")
    async def get_status(self):
        return await self.runtime.check_status()

    @boundary("Model list")
    async def list_installed_models(self) -> List[str]:
        return await self.runtime.list_installed_models()

    @boundary("Available models")
    async def get_available_models(self):
        return list(AVAILABLE_VL_MODELS)

    @boundary("Model selection")
    async def set_current_model(self, model_name: str) -> str:
        self.runtime.set_current_model(model_name)
        return self.runtime.current_model

    async def close(self) -> None:
        await self.queue.stop()
        await self.runtime.close()
        close_index(self.library_path)
