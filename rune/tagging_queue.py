"""
Background queue that assigns AI tags to pending images.
"""

import asyncio
import time
from typing import Iterable, Optional

from .config import Settings, settings as default_settings
from .errors import NotFoundError, RuntimeUnavailableError, ValidationError
from .events import IMAGE_TAGS_UPDATED, EventBus
from .library_index import LibraryIndex
from .logging import TaggingMetrics, get_logger
from .models import (
    ImageRecord,
    ImageTagsUpdated,
    TaggingQueueStatus,
    TagStatus,
    transition_sources,
)
from .runtime_manager import ModelRuntimeManager


class TaggingQueue:
    """Single-flight poll loop over pending images.

    Every tick pulls up to ``batch_size`` pending images, newest first, and
    tags them one after another. A failing image is marked failed and the
    batch moves on.
    """

    def __init__(
        self,
        index: LibraryIndex,
        runtime: ModelRuntimeManager,
        event_bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.logger = get_logger("tagging_queue")
        self.index = index
        self.runtime = runtime
        self.events = event_bus or runtime.events
        self.settings = settings or default_settings
        self.metrics = TaggingMetrics()

        self.is_started = False
        self.is_processing = False
        self.is_paused = False
        self.current_image_id: Optional[str] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    # ===== Control =====

    async def start(self) -> bool:
        """Begin polling. Returns False when no model is available to tag with."""
        if self.is_started:
            return True
        try:
            await self.runtime.ensure_server()
        except RuntimeUnavailableError as e:
            self.logger.warning(f"⚠️  Tagging not started: {e}")
            return False
        if not await self.runtime.is_model_installed():
            self.logger.warning(f"⚠️  Tagging not started: model {self.runtime.current_model} is not installed")
            return False

        recovered = self.index.fail_interrupted()
        if recovered:
            self.logger.info(f"♻️  Marked {recovered} interrupted images as failed")

        self.is_started = True
        self.is_paused = False
        self.logger.info(f"🏷️  Tagging queue started (batch size {self.settings.batch_size})")
        self._schedule(self.settings.process_interval)
        return True

    def pause(self) -> None:
        """Stop scheduling ticks. An image already being tagged finishes."""
        self.is_paused = True
        self._cancel_tick()
        self.logger.info("⏸️  Tagging queue paused")

    def resume(self) -> None:
        if not self.is_paused:
            return
        self.is_paused = False
        self.logger.info("▶️  Tagging queue resumed")
        self._schedule(self.settings.process_interval)

    async def stop(self) -> None:
        """Stop polling and wait for the in-flight batch to finish."""
        self.is_started = False
        self._cancel_tick()
        task = self._task
        if task is not None and not task.done():
            await task
        self._task = None

    def wake(self) -> None:
        """Run the next tick now if the loop is idle."""
        if not self.is_started or self.is_paused or self.is_processing:
            return
        self._cancel_tick()
        self._schedule(0)

    async def enqueue_new_images(self, image_ids: Iterable[str]) -> None:
        """Newly imported images are already pending; only make sure the loop runs."""
        image_ids = list(image_ids)
        if not image_ids:
            return
        self.logger.debug(f"Queued {len(image_ids)} new images")
        if self.is_started:
            self.wake()
            return

        # Join a runtime that is already up; never launch the server from here
        status = await self.runtime.check_status()
        if not (status.server_running and status.model_installed):
            self.logger.debug("Runtime not serving the model yet, new images stay pending")
            return
        await self.start()

    def retry_image(self, image_id: str) -> ImageRecord:
        """Move a failed image back to pending and wake the loop."""
        if self.index.get_image_by_id(image_id) is None:
            raise NotFoundError(f"Image not found: {image_id}", "Image not found.")
        if not self.index.set_image_tag_status(
            image_id, TagStatus.PENDING, from_statuses=transition_sources(TagStatus.PENDING)
        ):
            raise ValidationError(
                f"Image {image_id} is not in failed state", "Only failed images can be retried."
            )
        self._emit(image_id, None, TagStatus.PENDING)
        self.logger.info(f"🔁 Retrying tags for image {image_id}")
        self.wake()
        return self.index.get_image_by_id(image_id)

    def get_status(self) -> TaggingQueueStatus:
        return TaggingQueueStatus(
            is_processing=self.is_processing,
            is_paused=self.is_paused,
            pending=self.index.count_by_status(TagStatus.PENDING),
            completed=self.metrics.completed,
            failed=self.metrics.failed,
            current_image_id=self.current_image_id,
        )

    async def wait_until_idle(self, poll_interval: Optional[float] = None) -> None:
        """Block until the running queue has no pending image left."""
        interval = poll_interval or self.settings.process_interval
        while self.is_started and not self.is_paused and (
            self.is_processing or self.index.count_by_status(TagStatus.PENDING)
        ):
            await asyncio.sleep(interval)

    # ===== Loop =====

    def _schedule(self, delay: float) -> None:
        if not self.is_started or self.is_paused or self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._tick)

    def _cancel_tick(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self) -> None:
        self._handle = None
        if self.is_processing or self.is_paused or not self.is_started:
            return
        self._task = asyncio.create_task(self._process_next())

    async def _process_next(self) -> None:
        if self.is_processing:
            return
        self.is_processing = True
        try:
            images = self.index.get_images_needing_tags(self.settings.batch_size)
            if images:
                self.logger.debug(f"Processing batch of {len(images)} images")
            for image in images:
                if self.is_paused or not self.is_started:
                    break
                await self._process_image(image)
        except Exception:
            self.logger.exception("Tagging batch failed")
        finally:
            self.is_processing = False
            self.current_image_id = None
        self._schedule(self.settings.process_interval)

    async def _process_image(self, image: ImageRecord) -> None:
        if not self.index.set_image_tag_status(
            image.id, TagStatus.GENERATING, from_statuses=transition_sources(TagStatus.GENERATING)
        ):
            # Deleted or retried by someone else since the batch was read
            self.logger.debug(f"Skipping image {image.id}: no longer pending")
            return
        self.current_image_id = image.id
        self._emit(image.id, None, TagStatus.GENERATING)

        start_time = time.time()
        try:
            tags = await self.runtime.generate_tags(image.file_path)
            if not self.index.update_image_tags(
                image.id, tags, TagStatus.COMPLETE,
                from_statuses=transition_sources(TagStatus.COMPLETE),
            ):
                self.logger.debug(f"Image {image.id} deleted or reset while tagging")
                return
        except Exception as e:
            self.metrics.log_image_failure(image.id, str(e))
            if self.index.update_image_tags(
                image.id, None, TagStatus.FAILED,
                from_statuses=transition_sources(TagStatus.FAILED),
            ):
                self._emit(image.id, None, TagStatus.FAILED)
            return

        tag_count = len([t for t in tags.split(",") if t.strip()])
        self.metrics.log_image_tagged(image.id, tag_count, time.time() - start_time)
        self._emit(image.id, tags, TagStatus.COMPLETE)

    def _emit(self, image_id: str, tags: Optional[str], status: TagStatus) -> None:
        self.events.publish(
            IMAGE_TAGS_UPDATED,
            ImageTagsUpdated(id=image_id, ai_tags=tags, ai_tag_status=status),
        )
