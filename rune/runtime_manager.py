"""
Lifecycle manager for the local inference server.

Downloads and installs the server binary, starts and supervises the server
process, pulls and deletes vision-language models through the server's HTTP
API, and generates keyword tags for images.
"""

import asyncio
import base64
import logging
import os
import platform
import re
import shutil
import tempfile
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import httpx

from .archive import archive_suffix, detect_format, extract_archive, find_file
from .config import Settings, settings as default_settings
from .errors import (
    BinaryNotInstalledError,
    CancellationError,
    GenerationError,
    NotFoundError,
    RuneError,
    RuntimeUnavailableError,
    ServerUnreachableError,
    ValidationError,
)
from .events import BINARY_DOWNLOAD_PROGRESS, MODEL_DOWNLOAD_PROGRESS, RUNTIME_STATUS, EventBus
from .logging import get_logger
from .models import (
    DownloadKind,
    DownloadPhase,
    DownloadProgress,
    RuntimeState,
    RuntimeStatus,
)
from .ndjson import NDJSONDecoder


RELEASE_URL = "https://github.com/ollama/ollama/releases/download/{version}/{asset}"
DOWNLOAD_CHUNK_SIZE = 64 * 1024
UNKNOWN_SIZE_REPORT_BYTES = 1024 * 1024

ProgressCallback = Callable[[DownloadProgress], None]


def binary_name_for(system: Optional[str] = None) -> str:
    system = (system or platform.system()).lower()
    return "ollama.exe" if system == "windows" else "ollama"


def resolve_download_asset(system: str, machine: str) -> str:
    """Pick the release archive for an OS and CPU architecture."""
    system = system.lower()
    arch = {
        "x86_64": "amd64",
        "amd64": "amd64",
        "x64": "amd64",
        "arm64": "arm64",
        "aarch64": "arm64",
    }.get(machine.lower())

    if system == "darwin":
        # Universal binary
        return "ollama-darwin.tgz"
    if arch is None:
        raise RuntimeUnavailableError(
            f"Unsupported CPU architecture: {machine}",
            "This computer's processor is not supported.",
        )
    if system == "linux":
        return f"ollama-linux-{arch}.tar.zst"
    if system == "windows":
        return f"ollama-windows-{arch}.zip"
    raise RuntimeUnavailableError(
        f"Unsupported operating system: {system}",
        "This operating system is not supported.",
    )


def normalize_tags(raw: str) -> str:
    """Normalize a model answer into ``tag, tag, tag`` form."""
    text = raw.strip().replace("\r", "\n")
    text = re.sub(r"\s*\n\s*", ", ", text)
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s*,[\s,]*", ", ", text)
    return text.strip(" ,")


def _parse_modified(value: Any) -> datetime:
    if not isinstance(value, str) or not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    # The server reports nanoseconds; datetime only keeps microseconds
    value = re.sub(r"(\.\d{6})\d+", r"\1", value).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def match_model(requested: str, models: List[Dict[str, Any]]) -> Optional[str]:
    """Find the installed model that satisfies ``requested``.

    An exact name wins. Otherwise a model with the same base name (the part
    before ``:``) counts, preferring ``<base>:latest``, then the most recently
    modified variant, then the smallest name.
    """
    names = [m.get("name") for m in models if isinstance(m.get("name"), str)]
    if requested in names:
        return requested

    base = requested.split(":")[0]
    candidates = sorted(
        (m for m in models if isinstance(m.get("name"), str) and m["name"].split(":")[0] == base),
        key=lambda m: m["name"],
    )
    if not candidates:
        return None
    for model in candidates:
        if model["name"] == f"{base}:latest":
            return model["name"]
    return max(candidates, key=lambda m: _parse_modified(m.get("modified_at")))["name"]


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, round(done / total * 100)))


class ModelRuntimeManager:
    """Owns the inference server binary, its process and its models."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        event_bus: Optional[EventBus] = None,
        install_dir: Optional[os.PathLike] = None,
    ):
        self.settings = settings or default_settings
        self.logger = get_logger("runtime_manager")
        self.server_logger = get_logger("ollama")
        self.install_dir = Path(install_dir or self.settings.runtime_dir)
        self.binary_name = binary_name_for()
        self.base_url = self.settings.server_url
        self.client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self.events = event_bus or EventBus()
        self.current_model = self.settings.default_model

        self._process: Optional[asyncio.subprocess.Process] = None
        self._process_tasks: List[asyncio.Task] = []
        self._server_output: deque = deque(maxlen=self.settings.server_log_lines)
        self._start_lock = asyncio.Lock()
        self._downloading: Optional[DownloadKind] = None
        self._model_cancel: Optional[asyncio.Event] = None
        self._last_error: Optional[str] = None
        self._status = RuntimeStatus(model=self.current_model)

    # ===== Model selection =====

    def get_current_model(self) -> str:
        return self.current_model

    def set_current_model(self, model_name: str) -> None:
        if not model_name or not model_name.strip():
            raise ValidationError("Empty model name", "A model name is required.")
        self.current_model = model_name.strip()

    # ===== Status =====

    @property
    def binary_path(self) -> Path:
        """Where the server binary is (or would be) installed."""
        for candidate in (self.install_dir / self.binary_name, self.install_dir / "bin" / self.binary_name):
            if candidate.is_file():
                return candidate
        found = find_file(self.install_dir, self.binary_name)
        return found or self.install_dir / self.binary_name

    def is_binary_installed(self) -> bool:
        path = self.binary_path
        return path.is_file() and os.access(path, os.X_OK)

    async def is_server_running(self) -> bool:
        try:
            response = await self.client.get(
                f"{self.base_url}/api/tags", timeout=self.settings.health_timeout
            )
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def _fetch_models(self) -> List[Dict[str, Any]]:
        try:
            response = await self.client.get(
                f"{self.base_url}/api/tags", timeout=self.settings.request_timeout
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ServerUnreachableError(f"Failed to list models: {e}") from e
        except ValueError as e:
            raise ServerUnreachableError(f"Invalid model list response: {e}") from e
        models = data.get("models") if isinstance(data, dict) else None
        return [m for m in models or [] if isinstance(m, dict)]

    async def list_installed_models(self) -> List[str]:
        """Names of installed models, or an empty list if the server is down."""
        if not await self.is_server_running():
            return []
        try:
            models = await self._fetch_models()
        except RuntimeUnavailableError as e:
            self.logger.debug(f"Model listing failed: {e}")
            return []
        return [m["name"] for m in models if isinstance(m.get("name"), str)]

    async def resolve_model(self, model_name: str) -> Optional[str]:
        """The installed model name that satisfies ``model_name``, if any."""
        try:
            models = await self._fetch_models()
        except RuntimeUnavailableError as e:
            self.logger.debug(f"Model lookup failed: {e}")
            return None
        return match_model(model_name, models)

    async def is_model_installed(self, model_name: Optional[str] = None) -> bool:
        return await self.resolve_model(model_name or self.current_model) is not None

    def _derive_state(self, binary: bool, server: bool) -> RuntimeState:
        if self._downloading == DownloadKind.BINARY:
            return RuntimeState.DOWNLOADING_BINARY
        if self._downloading == DownloadKind.MODEL:
            return RuntimeState.DOWNLOADING_MODEL
        if self._last_error:
            return RuntimeState.ERROR
        if binary and server:
            return RuntimeState.RUNNING
        if binary:
            return RuntimeState.READY
        return RuntimeState.NOT_INSTALLED

    async def check_status(self) -> RuntimeStatus:
        """Re-derive the runtime status from disk and live probes."""
        binary = self.is_binary_installed()
        server = False
        model = False
        if binary:
            server = await self.is_server_running()
            if server:
                model = await self.is_model_installed(self.current_model)

        self._set_status(RuntimeStatus(
            binary_installed=binary,
            model_installed=model,
            server_running=server,
            status=self._derive_state(binary, server),
            model=self.current_model,
            error=self._last_error,
        ))
        return self._status

    def get_status(self) -> RuntimeStatus:
        """The most recently derived status, without probing."""
        return self._status

    def _set_status(self, status: RuntimeStatus) -> None:
        changed = status != self._status
        self._status = status
        if changed:
            self.events.publish(RUNTIME_STATUS, status)

    def _record_error(self, error: Exception) -> None:
        self._last_error = error.user_message if isinstance(error, RuneError) else str(error)

    def _report(self, on_progress: Optional[ProgressCallback], progress: DownloadProgress) -> None:
        if on_progress is not None:
            try:
                on_progress(progress)
            except Exception:
                self.logger.exception("Progress callback failed")
        topic = BINARY_DOWNLOAD_PROGRESS if progress.kind == DownloadKind.BINARY else MODEL_DOWNLOAD_PROGRESS
        self.events.publish(topic, progress)

    # ===== Binary installation =====

    def download_url(self) -> str:
        if self.settings.binary_download_url:
            return self.settings.binary_download_url
        asset = resolve_download_asset(platform.system(), platform.machine())
        return RELEASE_URL.format(version=self.settings.ollama_version, asset=asset)

    async def download_binary(self, on_progress: Optional[ProgressCallback] = None) -> RuntimeStatus:
        """Download, extract and install the server binary.

        Nothing is left at the install location when any step fails.
        """
        if self._downloading is not None:
            raise RuntimeUnavailableError(
                f"Download already in progress: {self._downloading.value}",
                "A download is already in progress.",
            )

        url = self.download_url()
        archive_format = detect_format(url)
        self._last_error = None
        self._downloading = DownloadKind.BINARY
        archive_path = self.install_dir / f".download{archive_suffix(url)}"
        staging: Optional[Path] = None
        try:
            await self.check_status()
            self.install_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.install_dir))
            self.logger.info(f"⬇️  Downloading runtime from {url}")
            total = await self._download_file(url, archive_path, on_progress)
            await asyncio.to_thread(extract_archive, archive_path, staging, archive_format)

            extracted = find_file(staging, self.binary_name)
            if extracted is None:
                raise RuntimeUnavailableError(
                    f"{self.binary_name} not found in {url}",
                    "The downloaded runtime is incomplete.",
                )
            if os.name != "nt":
                extracted.chmod(0o755)
            installed = await asyncio.to_thread(self._install_bundle, staging, extracted)
            self.logger.info(f"✅ Runtime installed at {installed}")
            self._report(on_progress, DownloadProgress(
                kind=DownloadKind.BINARY,
                percent=100,
                downloaded=total,
                total=total,
                phase=DownloadPhase.COMPLETE,
            ))
        except Exception as e:
            error = e if isinstance(e, RuneError) else RuntimeUnavailableError(f"Runtime install failed: {e}")
            self._record_error(error)
            self.logger.error(f"❌ Runtime download failed: {e}")
            self._report(on_progress, DownloadProgress(
                kind=DownloadKind.BINARY,
                phase=DownloadPhase.ERROR,
                error=error.user_message,
            ))
            if error is e:
                raise
            raise error from e
        finally:
            self._downloading = None
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            archive_path.unlink(missing_ok=True)
            await self.check_status()
        return self._status

    async def _download_file(self, url: str, dest: Path,
                             on_progress: Optional[ProgressCallback]) -> int:
        """Stream ``url`` into ``dest`` following redirects. Returns bytes written."""
        written = 0
        total = 0
        try:
            async with self.client.stream(
                "GET",
                url,
                follow_redirects=True,
                timeout=httpx.Timeout(self.settings.download_timeout),
            ) as response:
                if response.status_code != 200:
                    raise RuntimeUnavailableError(
                        f"Failed to download runtime: HTTP {response.status_code}",
                        "The runtime download failed.",
                    )
                total = int(response.headers.get("content-length") or 0)
                last_percent = -1
                last_reported = 0
                with open(dest, "wb") as fh:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
                        downloaded = response.num_bytes_downloaded
                        percent = _percent(downloaded, total)
                        if percent != last_percent or (
                            total == 0 and downloaded - last_reported >= UNKNOWN_SIZE_REPORT_BYTES
                        ):
                            last_percent = percent
                            last_reported = downloaded
                            self._report(on_progress, DownloadProgress(
                                kind=DownloadKind.BINARY,
                                percent=percent,
                                downloaded=downloaded,
                                total=total,
                            ))
                downloaded = response.num_bytes_downloaded
        except httpx.HTTPError as e:
            raise RuntimeUnavailableError(
                f"Runtime download failed: {e}", "The runtime download failed."
            ) from e

        if total and downloaded < total:
            raise RuntimeUnavailableError(
                f"Runtime download incomplete: {downloaded} of {total} bytes",
                "The runtime download failed.",
            )
        return written

    def _install_bundle(self, staging: Path, extracted: Path) -> Path:
        """Move the extracted bundle into the install directory.

        The bundle root is the directory holding the binary, or its parent when
        the binary sits in a ``bin`` directory next to its libraries.
        """
        bundle_root = extracted.parent
        if bundle_root.name == "bin" and bundle_root != staging:
            bundle_root = bundle_root.parent

        moved: List[Path] = []
        try:
            for entry in sorted(bundle_root.iterdir()):
                target = self.install_dir / entry.name
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                elif target.exists() or target.is_symlink():
                    target.unlink()
                shutil.move(str(entry), str(target))
                moved.append(target)

            installed = self.install_dir / extracted.relative_to(bundle_root)
            if not (installed.is_file() and os.access(installed, os.X_OK)):
                raise RuntimeUnavailableError(
                    f"Runtime binary missing after install: {installed}",
                    "The downloaded runtime is incomplete.",
                )
            return installed
        except BaseException:
            for target in moved:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target, ignore_errors=True)
                else:
                    target.unlink(missing_ok=True)
            raise

    async def delete_binary(self) -> RuntimeStatus:
        """Stop the server and remove the installed runtime."""
        self._last_error = None
        await self.stop_server()

        binary = self.binary_path
        if binary.exists():
            binary.unlink()
            self.logger.info(f"🗑️  Removed runtime binary {binary}")

        # Libraries shipped next to the binary, plus archive leftovers
        lib_dir = self.install_dir / "lib"
        if lib_dir.is_dir():
            shutil.rmtree(lib_dir)
        if self.install_dir.is_dir():
            for pattern in (".download*", ".staging-*", "*.tgz", "*.zip", "*.tar.zst"):
                for leftover in self.install_dir.glob(pattern):
                    if leftover.is_dir():
                        shutil.rmtree(leftover, ignore_errors=True)
                    else:
                        leftover.unlink(missing_ok=True)

        for directory in dict.fromkeys([binary.parent, self.install_dir]):
            try:
                directory.rmdir()
            except OSError as e:
                self.logger.debug(f"Keeping {directory}: {e}")

        return await self.check_status()

    # ===== Server process =====

    def server_output_tail(self, lines: int = 20) -> str:
        """The last captured lines of server output."""
        return "\n".join(list(self._server_output)[-lines:])

    async def ensure_server(self) -> None:
        """Start the server unless it is already reachable."""
        if not self.is_binary_installed():
            raise BinaryNotInstalledError(f"Runtime binary not installed at {self.binary_path}")
        if await self.is_server_running():
            return
        await self.start_server()

    async def start_server(self) -> RuntimeStatus:
        self._last_error = None
        async with self._start_lock:
            if self._process is not None and self._process.returncode is None:
                return self._status
            if not self.is_binary_installed():
                raise BinaryNotInstalledError(f"Runtime binary not installed at {self.binary_path}")
            if await self.is_server_running():
                self.logger.info(f"🔌 Server already reachable at {self.base_url}")
                return await self.check_status()

            binary = self.binary_path
            env = dict(os.environ)
            env["OLLAMA_HOST"] = f"{self.settings.server_host}:{self.settings.server_port}"
            if self.settings.models_dir:
                env["OLLAMA_MODELS"] = self.settings.models_dir

            self.logger.info(f"🚀 Starting inference server: {binary}")
            try:
                process = await asyncio.create_subprocess_exec(
                    str(binary),
                    "serve",
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=1024 * 1024,
                )
            except OSError as e:
                error = ServerUnreachableError(f"Failed to launch {binary}: {e}")
                self._record_error(error)
                raise error from e

            self._process = process
            self._process_tasks = [
                asyncio.create_task(self._pump_output(process.stdout)),
                asyncio.create_task(self._pump_output(process.stderr)),
                asyncio.create_task(self._watch_process(process)),
            ]
            try:
                await self._wait_for_server(process)
            except BaseException as e:
                await self._terminate(process)
                if isinstance(e, RuneError):
                    self._record_error(e)
                    self.logger.error(f"❌ Inference server failed to start: {e}")
                    await self.check_status()
                raise

            self.logger.info(f"✅ Inference server running at {self.base_url}")
        return await self.check_status()

    async def _pump_output(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._server_output.append(text)
                self.server_logger.debug(text)

    async def _watch_process(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._process is not process:
            return
        self._process = None
        level = logging.INFO if code == 0 else logging.WARNING
        self.logger.log(level, f"Inference server exited with code {code}")
        status = self._status
        if status.server_running:
            self._set_status(status.model_copy(update={
                "server_running": False,
                "status": RuntimeState.READY if status.status == RuntimeState.RUNNING else status.status,
            }))

    async def _wait_for_server(self, process: asyncio.subprocess.Process) -> None:
        for _ in range(self.settings.server_start_attempts):
            if process.returncode is not None:
                # Let the readers collect what the process printed before it died
                readers = [task for task in self._process_tasks[:2] if not task.done()]
                if readers:
                    await asyncio.wait(readers, timeout=1.0)
                raise ServerUnreachableError(
                    f"Server exited with code {process.returncode} during startup:\n"
                    f"{self.server_output_tail()}"
                )
            if await self.is_server_running():
                return
            await asyncio.sleep(self.settings.server_start_interval)
        raise ServerUnreachableError(
            f"Server did not respond after {self.settings.server_start_attempts} attempts:\n"
            f"{self.server_output_tail()}"
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.settings.server_stop_timeout)
            except asyncio.TimeoutError:
                self.logger.warning("⚠️  Server did not exit in time, killing it")
                process.kill()
                await process.wait()

        tasks, self._process_tasks = self._process_tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._process is process:
            self._process = None

    async def stop_server(self) -> None:
        """Ask the server to exit, killing it if it does not within the stop timeout."""
        self._last_error = None
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            self.logger.info("⏹️  Stopping inference server")
        await self._terminate(process)
        await self.check_status()

    async def restart_server(self) -> RuntimeStatus:
        self._last_error = None
        await self.stop_server()
        await self.start_server()
        return await self.check_status()

    # ===== Models =====

    async def download_model(
        self,
        model_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RuntimeStatus:
        """Pull a model through the server, reporting progress.

        Setting ``cancel_event`` (or calling ``cancel_model_download``) aborts
        the request and raises ``CancellationError``.
        """
        if self._downloading is not None:
            raise RuntimeUnavailableError(
                f"Download already in progress: {self._downloading.value}",
                "A download is already in progress.",
            )
        target = model_name or self.current_model
        if model_name:
            self.set_current_model(model_name)

        # Claimed before the first await so a concurrent pull sees the guard
        self._last_error = None
        self._downloading = DownloadKind.MODEL
        self._model_cancel = cancel_event or asyncio.Event()
        pull: Optional[asyncio.Task] = None
        cancelled: Optional[asyncio.Task] = None
        try:
            await self.ensure_server()
            await self.check_status()
            self.logger.info(f"⬇️  Pulling model {target}")

            pull = asyncio.create_task(self._pull_model(target, on_progress))
            cancelled = asyncio.create_task(self._model_cancel.wait())
            done, _ = await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if pull not in done:
                pull.cancel()
                await asyncio.gather(pull, return_exceptions=True)
                raise CancellationError(f"Model download cancelled: {target}")
            pull.result()
            self.logger.info(f"✅ Model {target} installed")
            self._report(on_progress, DownloadProgress(
                kind=DownloadKind.MODEL, percent=100, phase=DownloadPhase.COMPLETE,
            ))
        except CancellationError as e:
            self.logger.info(f"⏹️  {e}")
            self._report(on_progress, DownloadProgress(
                kind=DownloadKind.MODEL, phase=DownloadPhase.ERROR, error=e.user_message,
            ))
            raise
        except Exception as e:
            error = e if isinstance(e, RuneError) else RuntimeUnavailableError(f"Model pull failed: {e}")
            self._record_error(error)
            self.logger.error(f"❌ Model download failed: {e}")
            self._report(on_progress, DownloadProgress(
                kind=DownloadKind.MODEL, phase=DownloadPhase.ERROR, error=error.user_message,
            ))
            if error is e:
                raise
            raise error from e
        finally:
            tasks = [task for task in (pull, cancelled) if task is not None]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._downloading = None
            self._model_cancel = None
            await self.check_status()
        return self._status

    def cancel_model_download(self) -> bool:
        """Abort the running model pull. Returns False if none is running."""
        if self._model_cancel is None:
            return False
        self._model_cancel.set()
        return True

    async def _pull_model(self, model_name: str, on_progress: Optional[ProgressCallback]) -> None:
        decoder = NDJSONDecoder()
        progress = {"total": 0, "completed": 0}
        timeout = httpx.Timeout(self.settings.request_timeout, read=self.settings.pull_read_timeout)
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/api/pull",
                json={"name": model_name, "stream": True},
                timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise RuntimeUnavailableError(
                        f"Failed to pull model {model_name}: HTTP {response.status_code} {body[:200]!r}",
                        "The model download failed.",
                    )
                async for chunk in response.aiter_bytes():
                    for message in decoder.feed(chunk):
                        self._handle_pull_message(message, progress, on_progress)
                for message in decoder.close():
                    self._handle_pull_message(message, progress, on_progress)
        except httpx.HTTPError as e:
            raise ServerUnreachableError(f"Model pull request failed: {e}") from e

    def _handle_pull_message(self, message: Dict[str, Any], progress: Dict[str, int],
                             on_progress: Optional[ProgressCallback]) -> None:
        if message.get("error"):
            raise RuntimeUnavailableError(
                f"Model pull failed: {message['error']}", "The model download failed."
            )
        if message.get("total"):
            progress["total"] = int(message["total"])
        if message.get("completed") is not None:
            progress["completed"] = int(message["completed"])
        self.logger.debug(f"Pull status: {message.get('status')}")
        self._report(on_progress, DownloadProgress(
            kind=DownloadKind.MODEL,
            percent=_percent(progress["completed"], progress["total"]),
            downloaded=progress["completed"],
            total=progress["total"],
        ))

    async def delete_model(self, model_name: Optional[str] = None) -> RuntimeStatus:
        target = model_name or self.current_model
        self._last_error = None
        await self.ensure_server()
        try:
            response = await self.client.request(
                "DELETE",
                f"{self.base_url}/api/delete",
                json={"name": target},
                timeout=self.settings.delete_timeout,
            )
        except httpx.HTTPError as e:
            raise ServerUnreachableError(f"Delete request failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"Model not installed: {target}", "Model not found.")
        if not response.is_success:
            raise RuntimeUnavailableError(
                f"Failed to delete model {target}: HTTP {response.status_code} {response.text[:200]}",
                "The model could not be deleted.",
            )
        self.logger.info(f"🗑️  Deleted model {target}")
        return await self.check_status()

    # ===== Generation =====

    async def generate_tags(self, image_path: os.PathLike, model_name: Optional[str] = None) -> str:
        """Ask the model for comma-separated keyword tags describing an image."""
        self._last_error = None
        target = model_name or self.current_model
        path = Path(image_path)
        try:
            image_bytes = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError(f"Image file missing: {path}", "Image file not found.") from e
        except OSError as e:
            raise GenerationError(f"Cannot read image {path}: {e}") from e

        await self.ensure_server()
        model = await self.resolve_model(target) or target
        payload = {
            "model": model,
            "prompt": self.settings.tagging_prompt,
            "images": [base64.b64encode(image_bytes).decode("ascii")],
            "stream": False,
        }
        try:
            response = await self.client.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=self.settings.generation_timeout,
            )
        except httpx.TimeoutException as e:
            raise GenerationError(f"Tag generation timed out for {path.name}") from e
        except httpx.HTTPError as e:
            raise ServerUnreachableError(f"Generate request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if data.get("error"):
            raise GenerationError(f"Model error: {data['error']}")
        if not response.is_success:
            raise GenerationError(f"Failed to generate tags: HTTP {response.status_code}")
        return normalize_tags(str(data.get("response") or ""))

    async def close(self) -> None:
        await self.stop_server()
        if self._owns_client:
            await self.client.aclose()
