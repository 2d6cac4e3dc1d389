"""Shared fakes for the aiohttp-facing code.

`FakeSession.get` replays a script of steps, one per request. A step is a
FakeResponse, an exception instance (raised when the request is entered),
HANG (the request never completes) or a callable taking the request and
returning one of those.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import pytest

from run_log import RunLog

HANG = object()
_RAISE = object()


class FakeContent:
    def __init__(self, chunks, on_chunk: Optional[Callable[[int], None]] = None):
        self._chunks = list(chunks)
        self._on_chunk = on_chunk

    async def iter_chunked(self, n: int):
        for i, chunk in enumerate(self._chunks):
            if self._on_chunk is not None:
                self._on_chunk(i)
            yield chunk
            await asyncio.sleep(0)


class FakeResponse:
    def __init__(self, status: int = 200, *, json_data: Any = None, chunks=(),
                 headers: Optional[dict] = None, invalid_json: bool = False,
                 on_chunk: Optional[Callable[[int], None]] = None):
        self.status = status
        self.headers = headers or {}
        self.content = FakeContent(chunks, on_chunk)
        self._json = _RAISE if invalid_json else json_data

    async def json(self, content_type=None):
        if self._json is _RAISE:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._json


def cdx_hit(imgur_id: str, ext: str, timestamp: str = "20200101000000") -> FakeResponse:
    original = f"https://i.imgur.com/{imgur_id}{ext}"
    return FakeResponse(200, json_data=[
        ["urlkey", "timestamp", "original", "mimetype", "statuscode", "digest", "length"],
        [f"com,imgur,i)/{imgur_id.lower()}{ext}", timestamp, original, "image/jpeg", "200", "X", "1"],
    ])


def cdx_empty() -> FakeResponse:
    return FakeResponse(200, json_data=[])


@dataclass
class Request:
    url: str
    params: Optional[dict] = None
    timeout: Any = None

    @property
    def probe_url(self) -> Optional[str]:
        return (self.params or {}).get("url")


class _RequestContext:
    def __init__(self, step):
        self._step = step

    async def __aenter__(self):
        if self._step is HANG:
            await asyncio.Event().wait()
        if isinstance(self._step, BaseException):
            raise self._step
        return self._step

    async def __aexit__(self, *exc):
        return False


@dataclass
class FakeSession:
    script: list = field(default_factory=list)
    requests: list = field(default_factory=list)

    def get(self, url, params=None, timeout=None):
        request = Request(url, params, timeout)
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"unexpected request: {url} {params}")
        step = self.script.pop(0)
        if callable(step) and not isinstance(step, FakeResponse):
            step = step(request)
        return _RequestContext(step)

    @property
    def probed(self) -> list:
        return [r.probe_url for r in self.requests if r.probe_url is not None]


@pytest.fixture
def run_log() -> RunLog:
    return RunLog(echo=False)
