import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
import requests

import page_mirror as pm


class FakeResponse:
    def __init__(self, status_code: int, body: bytes):
        self.status_code = status_code
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; routes map URL -> (status, body) or exception."""

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes = dict(routes or {})
        self.calls: List[str] = []
        self.timeouts: List[float] = []
        self.headers: Dict[str, str] = {}

    def get(self, url: str, timeout: float = None, stream: bool = False):
        self.calls.append(url)
        self.timeouts.append(timeout)
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route to {url}")
        if callable(route):
            route = route(url, timeout)
        if isinstance(route, BaseException):
            raise route
        status, body = route
        return FakeResponse(status, body)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRenderer(pm.RemoteDocumentAcquirer):
    def __init__(
        self,
        context: pm.CrawlContext,
        pages: Dict[str, Union[str, BaseException]],
        gate: Optional[threading.Event] = None,
    ):
        super().__init__(context)
        self.pages = pages
        self.gate = gate
        self.calls: List[str] = []

    def render(self, url: str, deadline: pm.Deadline) -> str:
        self.calls.append(url)
        if self.gate is not None:
            self.gate.wait(5)
        page = self.pages.get(url)
        if page is None:
            raise pm.DocumentError(url, "navigation failed: net::ERR_NAME_NOT_RESOLVED")
        if isinstance(page, BaseException):
            raise page
        return page


def write_files(root: Path, files: Dict[str, Union[str, bytes]]) -> Path:
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            p.write_bytes(content)
        else:
            p.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def site(tmp_path):
    def build(files: Dict[str, Union[str, bytes]]) -> Path:
        return write_files(tmp_path / "front", files)

    return build


@pytest.fixture
def layout(tmp_path):
    out = pm.OutputLayout(tmp_path / "front_local")
    out.asset_dir.mkdir(parents=True)
    out.font_dir.mkdir(parents=True)
    return out


@pytest.fixture
def local_run(layout):
    def make(root: Path, session: Optional[FakeSession] = None, **kwargs) -> pm.MirrorRun:
        context = pm.CrawlContext(str(root))
        return pm.MirrorRun(
            context, layout, kwargs.pop("settings", None), session=session or FakeSession(), **kwargs
        )

    return make
