"""
Tests for the inference runtime manager.
"""

import asyncio
import base64
import io
import json
import os
import signal
import socket
import sys
import tarfile
from pathlib import Path

import httpx
import pytest

from conftest import wait_for
from rune.errors import (
    BinaryNotInstalledError,
    CancellationError,
    GenerationError,
    NotFoundError,
    RuntimeUnavailableError,
    ServerUnreachableError,
)
from rune.events import MODEL_DOWNLOAD_PROGRESS, RUNTIME_STATUS, EventBus
from rune.models import DownloadPhase, RuntimeState
from rune.runtime_manager import (
    ModelRuntimeManager,
    match_model,
    normalize_tags,
    resolve_download_asset,
)


posix_only = pytest.mark.skipif(os.name == "nt", reason="needs POSIX executables")

DOWNLOAD_URL = "https://downloads.example.test/v1/ollama-linux-amd64.tgz"


def make_runtime(settings, http_client, **kwargs):
    return ModelRuntimeManager(settings, http_client=http_client, **kwargs)


def build_bundle() -> bytes:
    """A gzip tarball with the binary nested under a top-level directory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data, mode in [
            ("ollama-dist/bin/ollama", b"#!/bin/sh\nexit 0\n", 0o755),
            ("ollama-dist/lib/ollama/libggml.so", b"\x7fELF", 0o644),
        ]:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def download_client(fake_ollama, archive: bytes = None, broken: bool = False):
    """Serve the release archive (behind a redirect) next to the fake API."""
    async def handler(request):
        if request.url.host != "downloads.example.test":
            return await fake_ollama.handler(request)
        if request.url.path.startswith("/v1/"):
            return httpx.Response(302, headers={"Location": "https://downloads.example.test/blob/asset"})
        if broken:
            async def body():
                yield b"\x1f\x8b" + b"x" * 4096
                raise httpx.ReadError("connection dropped", request=request)
            return httpx.Response(200, content=body())
        return httpx.Response(200, content=archive)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_match_model():
    models = [
        {"name": "llava:7b", "modified_at": "2024-01-01T00:00:00Z"},
        {"name": "llava:13b", "modified_at": "2024-03-01T00:00:00.123456789+02:00"},
        {"name": "moondream:latest", "modified_at": "2023-01-01T00:00:00Z"},
        {"name": "moondream:v2", "modified_at": "2025-01-01T00:00:00Z"},
    ]

    assert match_model("llava:7b", models) == "llava:7b"
    assert match_model("llava", models) == "llava:13b"
    assert match_model("moondream", models) == "moondream:latest"
    assert match_model("moondream:v3", models) == "moondream:latest"
    assert match_model("gemma3", models) is None
    assert match_model("llava", [{"name": "llava:b"}, {"name": "llava:a"}]) == "llava:a"


def test_normalize_tags():
    assert normalize_tags("sunset,beach") == "sunset, beach"
    assert normalize_tags("  sunset ,, beach,\n ocean \r\n") == "sunset, beach, ocean"
    assert normalize_tags(",sunset,  golden   hour,") == "sunset, golden hour"
    assert normalize_tags("one\n\ntwo") == "one, two"
    assert normalize_tags("   ") == ""


def test_resolve_download_asset():
    assert resolve_download_asset("Darwin", "arm64") == "ollama-darwin.tgz"
    assert resolve_download_asset("Linux", "x86_64") == "ollama-linux-amd64.tar.zst"
    assert resolve_download_asset("Linux", "aarch64") == "ollama-linux-arm64.tar.zst"
    assert resolve_download_asset("Windows", "AMD64") == "ollama-windows-amd64.zip"
    with pytest.raises(RuntimeUnavailableError):
        resolve_download_asset("Linux", "mips")
    with pytest.raises(RuntimeUnavailableError):
        resolve_download_asset("Plan9", "x86_64")


def test_download_url_uses_version_and_override(settings, http_client):
    runtime = make_runtime(settings, http_client)
    assert runtime.download_url().startswith(
        f"https://github.com/ollama/ollama/releases/download/{settings.ollama_version}/ollama-"
    )

    custom = settings.model_copy(update={"binary_download_url": DOWNLOAD_URL})
    assert make_runtime(custom, http_client).download_url() == DOWNLOAD_URL


@pytest.mark.asyncio
async def test_status_without_binary_skips_probes(settings, http_client, fake_ollama):
    runtime = make_runtime(settings, http_client)

    status = await runtime.check_status()

    assert status.status == RuntimeState.NOT_INSTALLED
    assert not status.binary_installed
    assert fake_ollama.requests == []


@posix_only
@pytest.mark.asyncio
async def test_status_running_with_model(settings, http_client, fake_binary):
    runtime = make_runtime(settings, http_client)

    status = await runtime.check_status()

    assert status.binary_installed and status.server_running and status.model_installed
    assert status.status == RuntimeState.RUNNING
    assert status.model == "qwen2.5vl:3b"


@posix_only
@pytest.mark.asyncio
async def test_status_ready_when_server_down(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.running = False
    runtime = make_runtime(settings, http_client)

    status = await runtime.check_status()

    assert status.status == RuntimeState.READY
    assert not status.server_running
    assert not status.model_installed
    assert await runtime.list_installed_models() == []


@posix_only
@pytest.mark.asyncio
async def test_status_change_is_published(settings, http_client, fake_binary):
    events = EventBus()
    seen = []
    events.subscribe(RUNTIME_STATUS, lambda topic, status: seen.append(status.status))
    runtime = make_runtime(settings, http_client, event_bus=events)

    await runtime.check_status()
    await runtime.check_status()

    assert seen == [RuntimeState.RUNNING]


@posix_only
@pytest.mark.asyncio
async def test_model_installed_by_base_name(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.models = [{"name": "llava:7b", "modified_at": "2024-01-01T00:00:00Z"}]
    runtime = make_runtime(settings, http_client)
    runtime.set_current_model("llava")

    assert await runtime.is_model_installed()
    assert await runtime.list_installed_models() == ["llava:7b"]
    assert not await runtime.is_model_installed("moondream")


@posix_only
@pytest.mark.asyncio
async def test_generate_tags(settings, http_client, fake_binary, fake_ollama, tmp_path):
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG fake image")
    runtime = make_runtime(settings, http_client)

    tags = await runtime.generate_tags(image)

    assert tags == "sunset, beach, ocean"
    request = [r for r in fake_ollama.requests if r.url.path == "/api/generate"][0]
    payload = json.loads(request.content)
    assert payload["model"] == "qwen2.5vl:3b"
    assert payload["stream"] is False
    assert payload["prompt"] == settings.tagging_prompt
    assert base64.b64decode(payload["images"][0]) == b"\x89PNG fake image"


@posix_only
@pytest.mark.asyncio
async def test_generate_tags_errors(settings, http_client, fake_binary, fake_ollama, tmp_path):
    image = tmp_path / "photo.png"
    image.write_bytes(b"data")
    runtime = make_runtime(settings, http_client)

    with pytest.raises(NotFoundError):
        await runtime.generate_tags(tmp_path / "missing.png")

    fake_ollama.generate_status = 500
    fake_ollama.generate_reply = {"error": "model runner crashed"}
    with pytest.raises(GenerationError):
        await runtime.generate_tags(image)


@pytest.mark.asyncio
async def test_generate_requires_binary(settings, http_client, tmp_path):
    image = tmp_path / "photo.png"
    image.write_bytes(b"data")
    runtime = make_runtime(settings, http_client)

    with pytest.raises(BinaryNotInstalledError):
        await runtime.generate_tags(image)


@posix_only
@pytest.mark.asyncio
async def test_download_model_reports_progress(settings, http_client, fake_binary, fake_ollama):
    events = EventBus()
    published = []
    events.subscribe(MODEL_DOWNLOAD_PROGRESS, lambda topic, event: published.append(event))
    runtime = make_runtime(settings, http_client, event_bus=events)
    progress = []

    status = await runtime.download_model("moondream", on_progress=progress.append)

    assert [p.percent for p in progress[:3]] == [0, 25, 100]
    assert progress[-1].phase == DownloadPhase.COMPLETE
    assert published == progress
    assert runtime.get_current_model() == "moondream"
    pull = [r for r in fake_ollama.requests if r.url.path == "/api/pull"][0]
    assert json.loads(pull.content) == {"name": "moondream", "stream": True}
    assert status.status == RuntimeState.RUNNING


@posix_only
@pytest.mark.asyncio
async def test_download_model_error_line_aborts(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.pull_lines = [
        {"status": "pulling manifest"},
        {"error": "pull model manifest: file does not exist"},
        {"status": "success"},
    ]
    runtime = make_runtime(settings, http_client)
    progress = []

    with pytest.raises(RuntimeUnavailableError):
        await runtime.download_model("nope", on_progress=progress.append)

    assert progress[-1].phase == DownloadPhase.ERROR
    assert runtime.get_status().status == RuntimeState.ERROR
    assert runtime.get_status().error == "The model download failed."


@posix_only
@pytest.mark.asyncio
async def test_download_model_cancellation(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.pull_hangs = True
    runtime = make_runtime(settings, http_client)
    progress = []

    task = asyncio.create_task(runtime.download_model(on_progress=progress.append))
    await wait_for(lambda: len(progress) >= 2)
    assert runtime.cancel_model_download()

    with pytest.raises(CancellationError):
        await task
    assert not runtime.cancel_model_download()
    assert runtime.get_status().status == RuntimeState.RUNNING


@posix_only
@pytest.mark.asyncio
async def test_delete_model(settings, http_client, fake_binary, fake_ollama):
    runtime = make_runtime(settings, http_client)

    status = await runtime.delete_model()

    assert not status.model_installed
    assert fake_ollama.models == []
    with pytest.raises(NotFoundError):
        await runtime.delete_model("qwen2.5vl:3b")


@posix_only
@pytest.mark.asyncio
async def test_concurrent_model_pull_is_rejected(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.pull_hangs = True
    runtime = make_runtime(settings, http_client)

    first = asyncio.create_task(runtime.download_model("moondream"))
    second = asyncio.create_task(runtime.download_model("llava:7b"))

    with pytest.raises(RuntimeUnavailableError):
        await second
    await wait_for(lambda: any(r.url.path == "/api/pull" for r in fake_ollama.requests))
    assert runtime.get_status().status == RuntimeState.DOWNLOADING_MODEL
    assert runtime.get_current_model() == "moondream"

    assert runtime.cancel_model_download()
    with pytest.raises(CancellationError):
        await first
    pulls = [r for r in fake_ollama.requests if r.url.path == "/api/pull"]
    assert [json.loads(r.content)["name"] for r in pulls] == ["moondream"]
    assert runtime.get_status().status == RuntimeState.RUNNING


@posix_only
@pytest.mark.asyncio
async def test_next_action_clears_last_error(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.pull_lines = [{"error": "manifest unknown"}]
    runtime = make_runtime(settings, http_client)
    with pytest.raises(RuntimeUnavailableError):
        await runtime.download_model("nope")
    assert runtime.get_status().status == RuntimeState.ERROR

    status = await runtime.delete_model("qwen2.5vl:3b")

    assert status.status == RuntimeState.RUNNING
    assert status.error is None


@posix_only
@pytest.mark.asyncio
async def test_download_binary_installs_nested_bundle(settings, fake_ollama):
    custom = settings.model_copy(update={"binary_download_url": DOWNLOAD_URL})
    runtime = make_runtime(custom, download_client(fake_ollama, archive=build_bundle()))
    progress = []

    status = await runtime.download_binary(progress.append)

    install_dir = Path(settings.runtime_dir)
    binary = install_dir / "bin" / "ollama"
    assert binary.is_file() and os.access(binary, os.X_OK)
    assert (install_dir / "lib" / "ollama" / "libggml.so").is_file()
    assert sorted(p.name for p in install_dir.iterdir()) == ["bin", "lib"]
    assert runtime.binary_path == binary
    assert status.binary_installed
    assert progress[-1].phase == DownloadPhase.COMPLETE


@posix_only
@pytest.mark.asyncio
async def test_download_binary_failure_leaves_nothing(settings, fake_ollama):
    custom = settings.model_copy(update={"binary_download_url": DOWNLOAD_URL})
    runtime = make_runtime(custom, download_client(fake_ollama, broken=True))
    progress = []

    with pytest.raises(RuntimeUnavailableError):
        await runtime.download_binary(progress.append)

    install_dir = Path(settings.runtime_dir)
    assert not (install_dir / "ollama").exists()
    assert list(install_dir.iterdir()) == []
    assert not runtime.is_binary_installed()
    status = runtime.get_status()
    assert not status.binary_installed
    assert status.status == RuntimeState.ERROR
    assert progress[-1].phase == DownloadPhase.ERROR


@posix_only
@pytest.mark.asyncio
async def test_download_binary_rejects_bundle_without_binary(settings, fake_ollama):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        info = tarfile.TarInfo("README.md")
        info.size = 5
        tar.addfile(info, io.BytesIO(b"hello"))
    custom = settings.model_copy(update={"binary_download_url": DOWNLOAD_URL})
    runtime = make_runtime(custom, download_client(fake_ollama, archive=buffer.getvalue()))

    with pytest.raises(RuntimeUnavailableError):
        await runtime.download_binary()

    assert list(Path(settings.runtime_dir).iterdir()) == []


@posix_only
@pytest.mark.asyncio
async def test_delete_binary_removes_install(settings, http_client, fake_binary, fake_ollama):
    fake_ollama.running = False
    install_dir = Path(settings.runtime_dir)
    (install_dir / "lib" / "ollama").mkdir(parents=True)
    (install_dir / ".download.tgz").write_bytes(b"partial")
    runtime = make_runtime(settings, http_client)

    status = await runtime.delete_binary()

    assert not install_dir.exists()
    assert status.status == RuntimeState.NOT_INSTALLED


# ===== Process supervision with a real child process =====

FAKE_SERVER = """#!{python}
import json
import os
import signal
from http.server import BaseHTTPRequestHandler, HTTPServer

host, port = os.environ["OLLAMA_HOST"].rsplit(":", 1)


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = json.dumps({{"models": []}}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


print("listening on", port, flush=True)
HTTPServer((host, int(port)), Handler).serve_forever()
"""

FAILING_SERVER = """#!{python}
import sys
print("boom: address already in use", file=sys.stderr, flush=True)
sys.exit(1)
"""


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def install_script(settings, source: str) -> Path:
    path = Path(settings.runtime_dir) / "ollama"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source.format(python=sys.executable))
    path.chmod(0o755)
    return path


@posix_only
@pytest.mark.asyncio
async def test_server_lifecycle(settings):
    live = settings.model_copy(update={"server_port": free_port()})
    install_script(live, FAKE_SERVER)
    async with httpx.AsyncClient() as client:
        runtime = make_runtime(live, client)
        try:
            status = await runtime.start_server()
            assert status.status == RuntimeState.RUNNING
            assert not status.model_installed
            await wait_for(lambda: "listening" in runtime.server_output_tail())

            status = await runtime.restart_server()
            assert status.server_running

            await runtime.stop_server()
            assert runtime.get_status().status == RuntimeState.READY
            assert not await runtime.is_server_running()
        finally:
            await runtime.close()


@posix_only
@pytest.mark.asyncio
async def test_unexpected_exit_marks_server_stopped(settings):
    live = settings.model_copy(update={"server_port": free_port()})
    install_script(live, FAKE_SERVER)
    async with httpx.AsyncClient() as client:
        runtime = make_runtime(live, client)
        try:
            await runtime.start_server()
            runtime._process.kill()
            await wait_for(lambda: not runtime.get_status().server_running)
            assert runtime.get_status().status == RuntimeState.READY
        finally:
            await runtime.close()


@posix_only
@pytest.mark.asyncio
async def test_server_start_failure_reports_output(settings):
    live = settings.model_copy(update={"server_port": free_port()})
    install_script(live, FAILING_SERVER)
    async with httpx.AsyncClient() as client:
        runtime = make_runtime(live, client)
        try:
            with pytest.raises(ServerUnreachableError) as excinfo:
                await runtime.start_server()
            assert "boom" in str(excinfo.value)
            assert runtime.get_status().status == RuntimeState.ERROR
        finally:
            await runtime.close()


STUBBORN_SERVER = FAKE_SERVER.replace(
    "import os\n",
    "import os\nimport signal\n\nsignal.signal(signal.SIGTERM, signal.SIG_IGN)\n",
    1,
)


@posix_only
@pytest.mark.asyncio
async def test_stop_kills_server_that_ignores_terminate(settings):
    live = settings.model_copy(update={"server_port": free_port(), "server_stop_timeout": 0.5})
    install_script(live, STUBBORN_SERVER)
    async with httpx.AsyncClient() as client:
        runtime = make_runtime(live, client)
        try:
            await runtime.start_server()
            process = runtime._process

            await asyncio.wait_for(runtime.stop_server(), timeout=10)

            assert process.returncode == -signal.SIGKILL
            assert runtime._process is None
            assert not await runtime.is_server_running()
            assert runtime.get_status().status == RuntimeState.READY
        finally:
            await runtime.close()
