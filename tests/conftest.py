"""Shared fixtures: fake upstream HTTP and fake ffmpeg/ffprobe processes."""

import asyncio
import itertools
import json
from typing import Callable

import httpx
import pytest

from config import Settings

_pids = itertools.count(4000)


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, long_running: bool = False):
        self.pid = next(_pids)
        self.args: tuple = ()
        self.stdout_data = stdout
        self.stderr_data = stderr
        self.final_returncode = returncode
        self.returncode = None if long_running else returncode
        self.terminated = False
        self.killed = False

    async def communicate(self):
        self.returncode = self.final_returncode
        return self.stdout_data, self.stderr_data

    async def wait(self):
        while self.returncode is None:
            await asyncio.sleep(0.01)
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9


class FakeExec:
    """Replacement for ``asyncio.create_subprocess_exec`` recording every spawn."""

    def __init__(self):
        self.factory: Callable[..., FakeProcess] = lambda *args: FakeProcess(long_running=True)
        self.spawned: list[FakeProcess] = []

    async def __call__(self, *args, **kwargs):
        proc = self.factory(*args)
        proc.args = args
        self.spawned.append(proc)
        return proc

    @property
    def live(self) -> list[FakeProcess]:
        return [p for p in self.spawned if p.returncode is None]


@pytest.fixture
def fake_exec(monkeypatch) -> FakeExec:
    fake = FakeExec()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake)
    return fake


def ffprobe_json(streams: list[dict], duration: str = "8340.5", size: str = "4200000000", format_name: str = "matroska,webm") -> bytes:
    return json.dumps({
        "streams": streams,
        "format": {"duration": duration, "size": size, "bit_rate": "4028000", "format_name": format_name},
    }).encode()


def mock_client(handler, base_url: str = "http://upstream") -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        radarr_api_key="radarr-key",
        sonarr_api_key="sonarr-key",
        transcode_dir=str(tmp_path / "transcode"),
        media_roots=[str(tmp_path)],
        public_base_url="http://cinema.local:3001",
    )
