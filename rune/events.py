"""
Publish/subscribe event bus used to report progress and tag updates.
"""

from typing import Any, Callable, Dict, List, Optional
from .logging import get_logger


IMAGE_TAGS_UPDATED = "image-tags-updated"
BINARY_DOWNLOAD_PROGRESS = "binary-download-progress"
MODEL_DOWNLOAD_PROGRESS = "model-download-progress"
RUNTIME_STATUS = "runtime-status"

Handler = Callable[[str, Any], None]


class EventBus:
    """In-process publish/subscribe hub.

    Handlers are called synchronously, in subscription order, with the topic
    and the event payload. A handler that raises is logged and skipped.
    """

    def __init__(self):
        self.logger = get_logger("events")
        self._handlers: Dict[Optional[str], List[Handler]] = {}

    def subscribe(self, topic: Optional[str], handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic`` (``None`` means every topic).

        Returns a callable that removes the subscription.
        """
        self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        return self.subscribe(None, handler)

    def publish(self, topic: str, event: Any) -> None:
        handlers = list(self._handlers.get(topic, [])) + list(self._handlers.get(None, []))
        for handler in handlers:
            try:
                handler(topic, event)
            except Exception:
                self.logger.exception(f"Event handler failed for '{topic}'")
