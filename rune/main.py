"""
Command-line front end for the Rune library core.
"""

import argparse
import asyncio
import sys
from typing import Optional
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from .config import settings
from .library import RuneLibrary
from .logging import get_logger, setup_logging
from .models import DownloadPhase, DownloadProgress, OperationResult


console = Console()


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Rune - local image library with AI keyword tagging"
    )
    parser.add_argument(
        "--library",
        help=f"Library folder (default: {settings.library_path})"
    )
    parser.add_argument(
        "--model",
        help=f"Model to use (default: {settings.default_model})"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from configuration"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    import_parser = commands.add_parser("import", help="Copy images into the library")
    import_parser.add_argument("paths", nargs="+", help="Image files to import")

    search_parser = commands.add_parser("search", help="Search images by name or tags")
    search_parser.add_argument("query", nargs="?", default="", help="Prefix terms (empty lists everything)")
    search_parser.add_argument("--limit", type=int, default=50, help="Page size (default: 50)")
    search_parser.add_argument("--cursor", help="Continuation token from a previous page")

    delete_parser = commands.add_parser("delete", help="Delete an image")
    delete_parser.add_argument("image_id")

    retry_parser = commands.add_parser("retry", help="Retry tagging of a failed image")
    retry_parser.add_argument("image_id")

    commands.add_parser("status", help="Show runtime and tagging status")
    commands.add_parser("install-runtime", help="Download and install the inference server")
    commands.add_parser("remove-runtime", help="Stop and remove the inference server")

    pull_parser = commands.add_parser("pull", help="Download a model")
    pull_parser.add_argument("name", nargs="?", help="Model name (default: current model)")

    remove_model_parser = commands.add_parser("remove-model", help="Delete an installed model")
    remove_model_parser.add_argument("name", nargs="?", help="Model name (default: current model)")

    commands.add_parser("models", help="List available and installed models")

    tag_parser = commands.add_parser("tag", help="Tag pending images")
    tag_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and tag new images as they arrive"
    )

    return parser.parse_args(argv)


def report(result: OperationResult, success_message: Optional[str] = None) -> bool:
    """Log the outcome of a library call. Returns True on success."""
    logger = get_logger("main")
    if not result.ok:
        logger.error(f"❌ {result.error} ({result.code})")
        return False
    if success_message:
        logger.info(success_message)
    return True


class DownloadDisplay:
    """Renders download progress events as a rich progress bar."""

    def __init__(self, description: str):
        self.progress = Progress(
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            DownloadColumn(),
            console=console,
        )
        self.task_id = self.progress.add_task(description, total=None)

    def __enter__(self):
        self.progress.start()
        return self

    def __exit__(self, *exc_info):
        self.progress.stop()

    def __call__(self, event: DownloadProgress) -> None:
        if event.phase == DownloadPhase.ERROR:
            return
        if event.total:
            self.progress.update(self.task_id, total=event.total, completed=event.downloaded)
        elif event.phase == DownloadPhase.COMPLETE:
            self.progress.update(self.task_id, total=100, completed=100)


def print_images(result) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Added")
    table.add_column("Status")
    table.add_column("Tags")
    for image in result.items:
        table.add_row(
            image.id,
            image.original_name,
            image.added_at.strftime("%Y-%m-%d %H:%M:%S"),
            image.ai_tag_status.value,
            image.ai_tags or "",
        )
    console.print(table)
    if result.next_cursor:
        console.print(f"Next page: --cursor {result.next_cursor.to_token()}")


async def run_command(library: RuneLibrary, args) -> bool:
    logger = get_logger("main")

    if args.command == "import":
        result = await library.import_images(args.paths)
        if report(result, f"✅ Imported {len(result.data or [])} images"):
            await library.queue.wait_until_idle()
            return True
        return False

    if args.command == "search":
        result = await library.search(args.query, limit=args.limit, cursor=args.cursor)
        if report(result):
            print_images(result.data)
            return True
        return False

    if args.command == "delete":
        return report(await library.delete_image(args.image_id), f"🗑️  Deleted {args.image_id}")

    if args.command == "retry":
        result = await library.retry_tagging(args.image_id)
        if report(result, f"🔁 Queued {args.image_id} for tagging"):
            await library.queue.wait_until_idle()
            return True
        return False

    if args.command == "status":
        status = await library.get_status()
        tagging = await library.get_tagging_status()
        if not (report(status) and report(tagging)):
            return False
        logger.info(f"📊 Runtime: {status.data.status.value}")
        logger.info(f"   Binary installed: {status.data.binary_installed}")
        logger.info(f"   Server running: {status.data.server_running}")
        logger.info(f"   Model {status.data.model}: {'installed' if status.data.model_installed else 'missing'}")
        logger.info(f"🏷️  Pending images: {tagging.data.pending}")
        return True

    if args.command == "install-runtime":
        with DownloadDisplay("Runtime") as display:
            result = await library.download_binary(display)
        return report(result, "✅ Runtime installed")

    if args.command == "remove-runtime":
        return report(await library.delete_binary(), "🗑️  Runtime removed")

    if args.command == "pull":
        with DownloadDisplay(args.name or library.runtime.current_model) as display:
            result = await library.download_model(args.name, display)
        return report(result, "✅ Model installed")

    if args.command == "remove-model":
        return report(await library.delete_model(args.name), "🗑️  Model removed")

    if args.command == "models":
        installed = await library.list_installed_models()
        available = await library.get_available_models()
        if not (report(installed) and report(available)):
            return False
        table = Table(show_header=True, header_style="bold")
        table.add_column("Model")
        table.add_column("Label")
        table.add_column("Size")
        table.add_column("Installed")
        names = set(installed.data)
        for model in available.data:
            table.add_row(model.name, model.label, model.size, "✓" if model.name in names else "")
        for name in sorted(names - {model.name for model in available.data}):
            table.add_row(name, "", "", "✓")
        console.print(table)
        return True

    if args.command == "tag":
        started = await library.start_tagging()
        if not report(started):
            return False
        if not started.data:
            logger.error("❌ Tagging could not start; install the runtime and a model first")
            return False
        if args.watch:
            logger.info("👀 Watching for new images (Ctrl+C to stop)")
            while True:
                await asyncio.sleep(3600)
        await library.queue.wait_until_idle()
        tagging = await library.get_tagging_status()
        if report(tagging):
            logger.info(f"✅ Tagged {tagging.data.completed} images, {tagging.data.failed} failed")
        return True

    logger.error(f"❌ Unknown command: {args.command}")
    return False


async def run(args) -> bool:
    library = RuneLibrary(args.library)
    try:
        if args.model:
            if not report(await library.set_current_model(args.model)):
                return False
        return await run_command(library, args)
    finally:
        await library.close()


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)
    setup_logging(args.log_level)
    logger = get_logger("main")

    try:
        return 0 if asyncio.run(run(args)) else 1
    except KeyboardInterrupt:
        logger.info("⏹️  Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"❌ Unexpected error: {str(e)}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
