"""
Shared fixtures for the Rune test suite.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from rune.config import Settings
from rune.library_index import LibraryIndex
from rune.models import ImageRecord


BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        library_path=str(tmp_path / "library"),
        runtime_dir=str(tmp_path / "runtime"),
        process_interval=0.01,
        server_start_attempts=50,
        server_start_interval=0.1,
        server_stop_timeout=2.0,
        default_model="qwen2.5vl:3b",
    )


@pytest.fixture
def index(settings):
    idx = LibraryIndex(settings.library_path, settings=settings)
    yield idx
    idx.close()


@pytest.fixture
def make_record(settings):
    """Build an ImageRecord inside the library; ``minutes`` offsets added_at."""
    def factory(name, minutes=0, image_id=None, **fields):
        image_id = image_id or f"img-{name}"
        stored_name = f"{image_id}{Path(name).suffix}"
        return ImageRecord(
            id=image_id,
            original_name=name,
            stored_name=stored_name,
            file_path=str(Path(settings.library_path) / stored_name),
            added_at=BASE_TIME + timedelta(minutes=minutes),
            bytes=fields.pop("bytes", 100),
            **fields,
        )
    return factory


async def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or fail after ``timeout`` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeOllama:
    """In-memory stand-in for the inference server's HTTP API."""

    def __init__(self):
        self.running = True
        self.models = [{"name": "qwen2.5vl:3b", "modified_at": "2024-05-01T10:00:00.123456789Z"}]
        self.generate_reply = {"response": "sunset,  beach\nocean"}
        self.generate_status = 200
        self.pull_lines = [
            {"status": "pulling manifest"},
            {"status": "downloading", "total": 200, "completed": 50},
            {"status": "downloading", "total": 200, "completed": 200},
            {"status": "success"},
        ]
        self.pull_hangs = False
        self.requests = []

    def _pull_body(self):
        lines = self.pull_lines
        hangs = self.pull_hangs

        async def body():
            for line in lines:
                yield (json.dumps(line) + "\n").encode()
            if hangs:
                await asyncio.Event().wait()

        return body()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.running:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/api/tags":
            return httpx.Response(200, json={"models": self.models})
        if path == "/api/generate":
            return httpx.Response(self.generate_status, json=self.generate_reply)
        if path == "/api/pull":
            return httpx.Response(200, content=self._pull_body())
        if path == "/api/delete":
            name = json.loads(request.content)["name"]
            if name not in [m["name"] for m in self.models]:
                return httpx.Response(404, json={"error": f"model '{name}' not found"})
            self.models = [m for m in self.models if m["name"] != name]
            return httpx.Response(200)
        return httpx.Response(404)

    def paths(self):
        return [request.url.path for request in self.requests]


@pytest.fixture
def fake_ollama():
    return FakeOllama()


@pytest.fixture
def http_client(fake_ollama):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_ollama.handler))


@pytest.fixture
def fake_binary(settings):
    """An executable placeholder where the runtime binary is expected."""
    path = Path(settings.runtime_dir) / "ollama"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path
