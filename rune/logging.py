"""
Logging configuration for the Rune library core.
"""

import logging
from typing import Any, Dict, Optional
from rich.logging import RichHandler
from .config import settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure clean, simple logging output."""

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level or settings.log_level),
        handlers=[RichHandler(
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
            show_level=False,
            markup=False
        )],
        force=True  # Override any existing configuration
    )

    # Silence noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a standard logger instance."""
    return logging.getLogger(f"rune.{name}")


class TaggingMetrics:
    """Counters for the tagging queue."""

    def __init__(self):
        self.logger = get_logger("metrics")
        self.metrics: Dict[str, Any] = {
            "images_tagged": 0,
            "tags_assigned": 0,
            "failures": 0,
            "generation_time": 0.0,
        }

    @property
    def completed(self) -> int:
        return self.metrics["images_tagged"]

    @property
    def failed(self) -> int:
        return self.metrics["failures"]

    def log_image_tagged(self, image_id: str, tags_count: int, generation_time: float) -> None:
        """Log a successfully tagged image."""
        self.metrics["images_tagged"] += 1
        self.metrics["tags_assigned"] += tags_count
        self.metrics["generation_time"] += generation_time

        # Only log individual images at DEBUG level to avoid spam
        self.logger.debug(
            f"Image tagged: {image_id} | Tags: {tags_count} | Time: {generation_time:.3f}s | "
            f"Total: {self.metrics['images_tagged']} images, {self.metrics['tags_assigned']} tags"
        )

    def log_image_failure(self, image_id: str, error: str) -> None:
        """Log a failed tag generation."""
        self.metrics["failures"] += 1
        self.logger.warning(f"Tagging failed: {image_id} | Error: {error}")

    def reset(self) -> None:
        for key in self.metrics:
            self.metrics[key] = 0.0 if key == "generation_time" else 0

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics."""
        return self.metrics.copy()
