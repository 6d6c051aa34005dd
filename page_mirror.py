#!/usr/bin/env python3
import argparse
import logging
import os
import posixpath
import re
import shutil
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Union
from urllib.parse import quote, unquote, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup, FeatureNotFound, NavigableString
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/114.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.7",
}

DEFAULT_INPUT = "front"
DEFAULT_OUTPUT = "front_local"
DEFAULT_START_DOCUMENT = "index.html"

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
SCRIPT_DOCUMENT_RE = re.compile(r"['\"]([^'\"]+\.html)['\"]")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')

IGNORED_PREFIXES = (
    "#",
    "data:",
    "about:",
    "javascript:",
    "mailto:",
    "tel:",
    "sms:",
    "blob:",
    "chrome:",
    "chrome-extension:",
)
FETCHABLE_SCHEMES = {"http", "https"}
FONT_EXTS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}
STYLESHEET_EXTS = {".css"}

AUTO_SCROLL_JS = """
() => {
  const before = document.body ? document.body.scrollHeight : 0;
  window.scrollTo(0, before);
  return before;
}
"""

# -------------------- Settings --------------------


@dataclass
class Settings:
    # Timeouts (seconds)
    deadline: float = 60.0
    request_timeout: float = 30.0
    render_timeout: float = 30.0
    prefetch_wait: float = 15.0

    # Rendering
    settle_delay: float = 5.0
    scroll_passes: int = 8
    scroll_pause_ms: int = 350
    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: str = DEFAULT_USER_AGENT

    # Layout
    asset_dir: str = "assets"
    font_dir: str = "fonts"

    # HTTP
    retries: int = 1

    def validate(self) -> None:
        for name in ("request_timeout", "render_timeout", "prefetch_wait"):
            value = getattr(self, name)
            if value <= 0 or value >= self.deadline:
                raise SetupError(
                    f"{name} ({value:g}s) must be positive and shorter than "
                    f"the deadline ({self.deadline:g}s)"
                )
        if not self.asset_dir or not self.font_dir or self.asset_dir == self.font_dir:
            raise SetupError("asset and font directories must be distinct names")


# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class SetupError(MirrorError):
    pass


class DocumentError(MirrorError):
    def __init__(self, document: str, reason: str):
        super().__init__(f"{document}: {reason}")
        self.document = document
        self.reason = reason


class ResourceError(MirrorError):
    pass


class DeadlineExceeded(MirrorError):
    pass


class SkipReference(Exception):
    """Raised for references that are left alone on purpose (fragments, data: ...)."""


# -------------------- Deadline --------------------


class Deadline:
    """Cooperative cancellation token shared by every blocking step of a run."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self) -> None:
        if self.expired():
            raise DeadlineExceeded(f"deadline of {self.seconds:g}s exceeded")

    def bound(self, timeout: float) -> float:
        self.check()
        return min(timeout, self.remaining())


# -------------------- Model --------------------


@dataclass(frozen=True)
class CrawlContext:
    root_dir: str
    start_document: str = DEFAULT_START_DOCUMENT
    is_remote: bool = False
    # URL the user named, when it differs from root_dir + start_document
    entry_url: Optional[str] = None


@dataclass(frozen=True)
class OutputLayout:
    output_root: Path
    asset_subdir: str = "assets"
    font_subdir: str = "fonts"

    @property
    def asset_dir(self) -> Path:
        return self.output_root / self.asset_subdir

    @property
    def font_dir(self) -> Path:
        return self.output_root / self.font_subdir

    def bucket_for(self, file_name: str) -> str:
        return self.font_subdir if is_font_file(file_name) else self.asset_subdir


@dataclass(frozen=True)
class FetchTarget:
    absolute_id: str
    is_remote: bool


@dataclass
class Statistics:
    files_written: int = 0
    bytes_written: int = 0
    resources_failed: int = 0

    def record_file(self, size: int) -> None:
        self.files_written += 1
        self.bytes_written += size


@dataclass
class Outcome:
    stats: Statistics
    error: Optional[MirrorError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, DeadlineExceeded)


@dataclass(frozen=True)
class AcquiredDocument:
    markup: Union[bytes, str]
    base_context: str


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def should_ignore_link(link: Optional[str]) -> bool:
    if link is None:
        return True
    v = link.strip().lower()
    if not v:
        return True
    return v.startswith(IGNORED_PREFIXES)


def is_url(value: str) -> bool:
    return urlparse(value.strip()).scheme.lower() in FETCHABLE_SCHEMES


def is_external_ref(ref: str) -> bool:
    ref = ref.strip()
    return ref.startswith("//") or is_url(ref)


def is_font_file(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in FONT_EXTS


def is_stylesheet(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in STYLESHEET_EXTS


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def format_comma(n: int) -> str:
    return f"{n:,}"


def build_session(settings: Optional[Settings] = None) -> requests.Session:
    settings = settings or Settings()
    s = requests.Session()
    retry = Retry(
        total=max(0, settings.retries),
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=8, pool_maxsize=8)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = settings.user_agent
    return s


# -------------------- Paths --------------------


def resolve_fetch_target(
    reference: str, base_context: str, site_root: Optional[str] = None
) -> FetchTarget:
    ref = reference.strip()
    if should_ignore_link(ref):
        raise SkipReference(reference)
    try:
        scheme = urlparse(ref).scheme.lower()
    except ValueError as e:
        raise ResourceError(f"invalid reference {reference!r}: {e}") from e
    # single letters are drive names, not schemes
    if len(scheme) > 1 and scheme not in FETCHABLE_SCHEMES:
        raise SkipReference(reference)

    if is_url(base_context):
        try:
            target = urljoin(base_context, ref)
        except ValueError as e:
            raise ResourceError(f"invalid reference {reference!r}: {e}") from e
        return FetchTarget(target.split("#", 1)[0], True)

    if scheme in FETCHABLE_SCHEMES:
        return FetchTarget(ref.split("#", 1)[0], True)
    if ref.startswith("//"):
        return FetchTarget("https:" + ref.split("#", 1)[0], True)

    path_part = unquote(ref.split("#", 1)[0].split("?", 1)[0])
    if not path_part:
        raise SkipReference(reference)
    if path_part.startswith("/") and site_root is not None:
        joined = os.path.join(site_root, path_part.lstrip("/"))
    else:
        joined = os.path.join(base_context, path_part.lstrip("/"))
    return FetchTarget(os.path.normpath(os.path.abspath(joined)), False)


def relativize(from_output_dir: Union[str, Path], to_output_path: Union[str, Path]) -> str:
    rel = os.path.relpath(os.path.abspath(to_output_path), os.path.abspath(from_output_dir))
    return Path(rel).as_posix()


def as_href(rel_path: str) -> str:
    return quote(rel_path, safe="/")


def normalize_document_id(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/")).lstrip("/")


def resolve_nested_document(reference: str, current_document: str) -> str:
    ref = reference.strip()
    if should_ignore_link(ref) or is_external_ref(ref):
        raise SkipReference(reference)
    path = unquote(ref.split("#", 1)[0].split("?", 1)[0]).replace("\\", "/")
    if not path:
        raise SkipReference(reference)
    if path.startswith("/"):
        joined = path.lstrip("/")
    else:
        joined = posixpath.join(posixpath.dirname(current_document), path)
    doc_id = posixpath.normpath(joined)
    if doc_id in ("", ".", "..") or doc_id.startswith("../"):
        raise SkipReference(reference)
    return doc_id


def resolve_remote_nested_document(reference: str, base_url: str, root_dir: str) -> str:
    """Resolve a nested reference the way a browser would, then map it under root_dir."""
    ref = reference.strip()
    if should_ignore_link(ref):
        raise SkipReference(reference)
    try:
        target = urlparse(urljoin(base_url, ref))
    except ValueError:
        raise SkipReference(reference)
    root = urlparse(root_dir)
    if target.scheme.lower() not in FETCHABLE_SCHEMES:
        raise SkipReference(reference)
    if (target.scheme.lower(), target.netloc.lower()) != (root.scheme.lower(), root.netloc.lower()):
        raise SkipReference(reference)
    if not target.path.startswith(root.path):
        raise SkipReference(reference)
    rest = unquote(target.path[len(root.path):])
    if not rest:
        return DEFAULT_START_DOCUMENT
    doc_id = posixpath.normpath(rest)
    if doc_id in ("", ".", "..") or doc_id.startswith("../"):
        raise SkipReference(reference)
    return doc_id


def document_output_path(layout: OutputLayout, doc_id: str) -> Path:
    out = layout.output_root.joinpath(*doc_id.split("/"))
    if not posixpath.splitext(doc_id)[1]:
        return out / DEFAULT_START_DOCUMENT
    return out


def document_url(root_dir: str, doc_id: str) -> str:
    return urljoin(root_dir, quote(doc_id, safe="/"))


def remote_base_context(url: str) -> str:
    if posixpath.splitext(urlparse(url).path)[1]:
        return urljoin(url, "./")
    return url


def resource_file_name(target: FetchTarget) -> str:
    if target.is_remote:
        u = urlparse(target.absolute_id)
        name = unquote(posixpath.basename(u.path))
    else:
        # local ids are already decoded
        u = None
        name = os.path.basename(target.absolute_id)
    if name in ("", ".", "/"):
        # best effort only: extensionless remote roots are usually script endpoints
        if u is not None and u.netloc:
            name = u.netloc + ".js"
        else:
            name = "resource.bin"
    return sanitize_filename(name)


# -------------------- HTML utils --------------------


def bs4_parse(markup: Union[bytes, str]) -> BeautifulSoup:
    try:
        return BeautifulSoup(markup, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(markup, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


# -------------------- Resource store --------------------


class ResourceStore:
    """Flattens every discovered resource into the asset or font bucket.

    The cache is keyed by fetch identity (absolute URL or absolute local
    path), so one resource is read at most once per run however many
    spellings reference it.
    """

    def __init__(
        self,
        context: CrawlContext,
        layout: OutputLayout,
        settings: Settings,
        deadline: Deadline,
        stats: Statistics,
        session: Optional[requests.Session] = None,
    ):
        self.context = context
        self.layout = layout
        self.settings = settings
        self.deadline = deadline
        self.stats = stats
        self.session = session or build_session(settings)
        self.cache: Dict[str, str] = {}
        self.stylesheets = StylesheetProcessor(self)
        self._claimed: Dict[str, str] = {}
        self._pending: Dict[str, str] = {}
        self._site_root = None if context.is_remote else os.path.abspath(context.root_dir)

    def acquire(self, reference: str, base_context: str) -> str:
        self.deadline.check()
        target = resolve_fetch_target(reference, base_context, self._site_root)
        ident = target.absolute_id
        cached = self.cache.get(ident)
        if cached is not None:
            return cached
        if ident in self._pending:
            # stylesheet cycle; the path is claimed and will be written
            return self._pending[ident]

        name = resource_file_name(target)
        bucket = self.layout.bucket_for(name)
        rel_path = posixpath.join(bucket, name)
        full_path = self.layout.output_root / bucket / name

        owner = self._claimed.get(rel_path)
        if owner is not None and owner != ident:
            logging.warning(
                "name collision: %s and %s both map to %s", owner, ident, rel_path
            )

        if full_path.is_file():
            self._claimed.setdefault(rel_path, ident)
            self.cache[ident] = rel_path
            logging.info("cached: %s", self._display(rel_path))
            if is_stylesheet(name):
                # the existing copy may reference resources unknown to this run
                try:
                    data = full_path.read_bytes()
                except OSError as e:
                    raise ResourceError(f"cannot read {full_path}: {e}") from e
                self.stylesheets.process(data, self._css_context(target), full_path.parent)
            return rel_path

        self._pending[ident] = rel_path
        try:
            data = self._fetch(target)
            if is_stylesheet(name):
                data = self.stylesheets.process(
                    data, self._css_context(target), full_path.parent
                )
            try:
                ensure_parent_dir(full_path)
                full_path.write_bytes(data)
            except OSError as e:
                raise ResourceError(f"cannot write {full_path}: {e}") from e
        finally:
            del self._pending[ident]

        self.stats.record_file(len(data))
        self._claimed[rel_path] = ident
        self.cache[ident] = rel_path
        logging.info("saved: %s", self._display(rel_path))
        return rel_path

    def try_acquire(self, reference: str, base_context: str) -> Optional[str]:
        try:
            return self.acquire(reference, base_context)
        except SkipReference:
            logging.debug("skip: %s", reference)
            return None
        except ResourceError as e:
            self.stats.resources_failed += 1
            logging.warning("failed %s: %s", reference, e)
            return None

    def output_path(self, rel_path: str) -> Path:
        return self.layout.output_root.joinpath(*rel_path.split("/"))

    def _css_context(self, target: FetchTarget) -> str:
        if target.is_remote:
            return target.absolute_id
        return os.path.dirname(target.absolute_id)

    def _display(self, rel_path: str) -> str:
        return "/" + posixpath.join(self.layout.output_root.name, rel_path)

    def _fetch(self, target: FetchTarget) -> bytes:
        if not target.is_remote:
            try:
                return Path(target.absolute_id).read_bytes()
            except OSError as e:
                raise ResourceError(f"cannot read {target.absolute_id}: {e}") from e

        timeout = self.deadline.bound(self.settings.request_timeout)
        clipped = timeout < self.settings.request_timeout
        try:
            resp = self.session.get(target.absolute_id, timeout=timeout, stream=True)
        except requests.RequestException as e:
            raise self._fetch_error(target, e, clipped) from e
        try:
            if not 200 <= resp.status_code < 300:
                raise ResourceError(f"HTTP {resp.status_code}")
            chunks: List[bytes] = []
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                self.deadline.check()
                if chunk:
                    chunks.append(chunk)
            return b"".join(chunks)
        except requests.RequestException as e:
            raise self._fetch_error(target, e, clipped) from e
        finally:
            resp.close()

    def _fetch_error(
        self, target: FetchTarget, error: Exception, clipped: bool
    ) -> MirrorError:
        if self.deadline.expired() or (clipped and isinstance(error, requests.Timeout)):
            return DeadlineExceeded(
                f"deadline of {self.deadline.seconds:g}s exceeded while fetching "
                f"{target.absolute_id}"
            )
        return ResourceError(str(error))


# -------------------- Stylesheets --------------------


class StylesheetProcessor:
    def __init__(self, store: ResourceStore):
        self.store = store

    def process(self, data: bytes, base_context: str, output_dir: Path) -> bytes:
        store = self.store
        store.deadline.check()
        text = data.decode("utf-8", errors="surrogateescape")

        def repl_url(m: re.Match) -> str:
            store.deadline.check()
            link = m.group(2).strip()
            if should_ignore_link(link):
                return m.group(0)
            rel_path = store.try_acquire(link, base_context)
            if rel_path is None:
                return m.group(0)
            href = relativize(output_dir, store.output_path(rel_path))
            return f"url('{as_href(href)}')"

        return CSS_URL_RE.sub(repl_url, text).encode("utf-8", errors="surrogateescape")


# -------------------- Acquisition --------------------


class DocumentAcquirer:
    def acquire(self, doc_id: str, deadline: Deadline) -> AcquiredDocument:
        raise NotImplementedError


class LocalDocumentReader(DocumentAcquirer):
    def __init__(self, root_dir: str):
        self.root_dir = root_dir

    def acquire(self, doc_id: str, deadline: Deadline) -> AcquiredDocument:
        deadline.check()
        path = Path(self.root_dir).joinpath(*doc_id.split("/"))
        try:
            data = path.read_bytes()
        except OSError as e:
            raise DocumentError(doc_id, f"cannot read {path}: {e}") from e
        return AcquiredDocument(data, os.path.abspath(path.parent))


class RemoteDocumentAcquirer(DocumentAcquirer):
    def __init__(self, context: CrawlContext):
        self.context = context

    def url_for(self, doc_id: str) -> str:
        if doc_id == self.context.start_document and self.context.entry_url:
            return self.context.entry_url
        return document_url(self.context.root_dir, doc_id)

    def acquire(self, doc_id: str, deadline: Deadline) -> AcquiredDocument:
        deadline.check()
        url = self.url_for(doc_id)
        html = self.render(url, deadline)
        # a result produced after the deadline is never handed over
        deadline.check()
        return AcquiredDocument(html, remote_base_context(url))

    def render(self, url: str, deadline: Deadline) -> str:
        raise NotImplementedError


class PlaywrightRenderer(RemoteDocumentAcquirer):
    def __init__(self, context: CrawlContext, settings: Settings):
        super().__init__(context)
        self.settings = settings

    def render(self, url: str, deadline: Deadline) -> str:
        try:
            from playwright.sync_api import Error as PlaywrightError
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise DocumentError(
                url,
                "Playwright not installed. Run: pip install playwright && "
                "playwright install chromium",
            ) from e

        s = self.settings
        budget = deadline.bound(s.render_timeout)
        started = time.monotonic()

        def left_ms() -> float:
            deadline.check()
            left = budget - (time.monotonic() - started)
            if left <= 0:
                raise DocumentError(url, f"rendering session exceeded {budget:g}s")
            return max(1.0, left * 1000)

        logging.info("rendering %s", url)
        try:
            with sync_playwright() as pl:
                browser = pl.chromium.launch(
                    headless=True, args=["--disable-gpu"], timeout=left_ms()
                )
                try:
                    context = browser.new_context(
                        viewport={"width": s.viewport_width, "height": s.viewport_height},
                        user_agent=s.user_agent,
                    )
                    page = context.new_page()
                    page.goto(url, timeout=left_ms())
                    page.wait_for_timeout(min(s.settle_delay * 1000, left_ms()))
                    self._auto_scroll(page, left_ms)
                    page.wait_for_timeout(min(s.scroll_pause_ms, left_ms()))
                    left_ms()
                    html = page.content()
                finally:
                    browser.close()
        except PlaywrightError as e:
            if deadline.expired():
                raise DeadlineExceeded(
                    f"deadline of {deadline.seconds:g}s exceeded while rendering {url}"
                ) from e
            raise DocumentError(url, f"rendering failed: {e}") from e
        return html

    def _auto_scroll(self, page, left_ms: Callable[[], float]) -> None:
        last = -1
        for _ in range(max(0, self.settings.scroll_passes)):
            height = page.evaluate(AUTO_SCROLL_JS)
            page.wait_for_timeout(min(self.settings.scroll_pause_ms, left_ms()))
            if height == last:
                break
            last = height
        page.evaluate("() => window.scrollTo(0, 0)")


# -------------------- Traversal --------------------


class DocumentRewriter:
    """Rewrites the references of one parsed document in place."""

    def __init__(self, run: "MirrorRun", doc_id: str, base_context: str, output_dir: Path):
        self.run = run
        self.doc_id = doc_id
        self.base_context = base_context
        self.output_dir = output_dir
        self._handlers: Dict[str, Callable] = {
            "script": self._visit_script,
            "link": self._visit_link,
            "img": self._visit_img,
            "iframe": self._visit_iframe,
        }

    def rewrite(self, soup: BeautifulSoup) -> None:
        # find_all yields tags in document order, i.e. a depth-first walk
        for tag in soup.find_all(list(self._handlers)):
            self.run.deadline.check()
            self._handlers[tag.name](tag)

    def _visit_script(self, tag) -> None:
        if self._rewrite_attribute(tag, "src"):
            for rm in ("integrity", "crossorigin"):
                tag.attrs.pop(rm, None)
        if not self.run.context.is_remote:
            self._scan_script_text(tag)

    def _visit_link(self, tag) -> None:
        if self._rewrite_attribute(tag, "href"):
            for rm in ("integrity", "crossorigin"):
                tag.attrs.pop(rm, None)

    def _visit_img(self, tag) -> None:
        self._rewrite_attribute(tag, "src")
        self._rewrite_attribute(tag, "data-src")

    def _visit_iframe(self, tag) -> None:
        value = tag.get("src")
        if not isinstance(value, str):
            return
        context = self.run.context
        try:
            if context.is_remote:
                doc_id = resolve_remote_nested_document(value, self.base_context, context.root_dir)
            else:
                doc_id = resolve_nested_document(value, self.doc_id)
        except SkipReference:
            logging.debug("skip iframe: %s", value)
            return
        if self.run.process_nested(doc_id):
            target = self.run.document_output_path(doc_id)
            tag["src"] = as_href(relativize(self.output_dir, target))

    def _rewrite_attribute(self, tag, attr: str) -> bool:
        value = tag.get(attr)
        if not isinstance(value, str) or should_ignore_link(value):
            return False
        store = self.run.store
        rel_path = store.try_acquire(value, self.base_context)
        if rel_path is None:
            return False
        tag[attr] = as_href(relativize(self.output_dir, store.output_path(rel_path)))
        return True

    def _scan_script_text(self, tag) -> None:
        for child in tag.contents:
            if not isinstance(child, NavigableString):
                continue
            for m in SCRIPT_DOCUMENT_RE.finditer(str(child)):
                self.run.deadline.check()
                ref = m.group(1)
                if should_ignore_link(ref) or is_external_ref(ref):
                    continue
                try:
                    doc_id = resolve_nested_document(ref, self.doc_id)
                except SkipReference:
                    continue
                if not self.run.source_exists(doc_id):
                    continue
                self.run.process_nested(doc_id)


# -------------------- Orchestrator --------------------


class MirrorRun:
    """One mirroring pass; owns the visited set, caches and statistics."""

    def __init__(
        self,
        context: CrawlContext,
        layout: OutputLayout,
        settings: Optional[Settings] = None,
        *,
        deadline: Optional[Deadline] = None,
        session: Optional[requests.Session] = None,
        acquirer: Optional[DocumentAcquirer] = None,
    ):
        self.context = context
        self.layout = layout
        self.settings = settings or Settings()
        self.deadline = deadline or Deadline(self.settings.deadline)
        self.stats = Statistics()
        self.visited: Set[str] = set()
        self.failed: Set[str] = set()
        self.session = session or build_session(self.settings)
        if acquirer is None:
            if context.is_remote:
                acquirer = PlaywrightRenderer(context, self.settings)
            else:
                acquirer = LocalDocumentReader(context.root_dir)
        self.acquirer = acquirer
        self.store = ResourceStore(
            context, layout, self.settings, self.deadline, self.stats, self.session
        )
        self.start_id = normalize_document_id(context.start_document)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._prefetch: Optional[Future] = None

    def start_prefetch(self) -> None:
        if not self.context.is_remote or self._prefetch is not None:
            return
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="prefetch")
        self._prefetch = self._executor.submit(
            self.acquirer.acquire, self.start_id, self.deadline
        )

    def run(self) -> Outcome:
        try:
            self.process_document(self.start_id)
        except MirrorError as e:
            return Outcome(self.stats, e)
        finally:
            self.close()
        return Outcome(self.stats)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def document_output_path(self, doc_id: str) -> Path:
        return document_output_path(self.layout, doc_id)

    def source_exists(self, doc_id: str) -> bool:
        return Path(self.context.root_dir).joinpath(*doc_id.split("/")).is_file()

    def process_nested(self, doc_id: str) -> bool:
        doc_id = normalize_document_id(doc_id)
        if doc_id in self.failed:
            return False
        try:
            self.process_document(doc_id)
        except DocumentError as e:
            self.failed.add(doc_id)
            logging.warning("nested document failed: %s", e)
            return False
        return True

    def process_document(self, doc_id: str) -> None:
        self.deadline.check()
        doc_id = normalize_document_id(doc_id)
        if doc_id in self.visited:
            return
        self.visited.add(doc_id)

        document = self._acquire_document(doc_id)
        soup = bs4_parse(document.markup)
        output_path = self.document_output_path(doc_id)
        logging.info(
            "document: %s",
            posixpath.join(self.layout.output_root.name, doc_id),
        )

        DocumentRewriter(self, doc_id, document.base_context, output_path.parent).rewrite(soup)
        self.deadline.check()

        data = serialize_html(soup).encode("utf-8")
        try:
            ensure_parent_dir(output_path)
            output_path.write_bytes(data)
        except OSError as e:
            raise DocumentError(doc_id, f"cannot write {output_path}: {e}") from e
        self.stats.record_file(len(data))

    def _acquire_document(self, doc_id: str) -> AcquiredDocument:
        if self._prefetch is not None and doc_id == self.start_id:
            future, self._prefetch = self._prefetch, None
            return self._await_prefetch(doc_id, future)
        return self.acquirer.acquire(doc_id, self.deadline)

    def _await_prefetch(self, doc_id: str, future: Future) -> AcquiredDocument:
        wait = self.deadline.bound(self.settings.prefetch_wait)
        logging.info("waiting for rendered start document (up to %gs)", wait)
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError as e:
            future.cancel()
            if wait < self.settings.prefetch_wait:
                raise DeadlineExceeded(
                    f"deadline of {self.deadline.seconds:g}s exceeded while rendering"
                ) from e
            raise DocumentError(doc_id, f"rendering did not finish within {wait:g}s") from e


# -------------------- Setup --------------------


def classify_input(raw: str) -> CrawlContext:
    raw = (raw or "").strip()
    if not raw:
        raise SetupError("empty input")
    if raw.lower().startswith(("http://", "https://")):
        try:
            u = urlparse(raw)
        except ValueError as e:
            raise SetupError(f"invalid URL {raw!r}: {e}") from e
        if not u.netloc:
            raise SetupError(f"invalid URL {raw!r}: missing host")
        path = u.path
        ext = posixpath.splitext(path)[1]
        explicit = bool(ext) or (path not in ("", "/") and not path.endswith("/"))
        if explicit:
            start = unquote(posixpath.basename(path))
            path = posixpath.dirname(path)
        else:
            start = DEFAULT_START_DOCUMENT
        if path in ("", "."):
            path = "/"
        if not path.endswith("/"):
            path += "/"
        root = urlunparse((u.scheme, u.netloc, path, "", "", ""))
        return CrawlContext(root, start, True, entry_url=urlunparse(u._replace(fragment="")))
    if os.path.isfile(raw):
        return CrawlContext(os.path.dirname(raw) or ".", os.path.basename(raw), False)
    return CrawlContext(raw, DEFAULT_START_DOCUMENT, False)


def validate_input(
    context: CrawlContext,
    session: requests.Session,
    settings: Settings,
    deadline: Optional[Deadline] = None,
) -> None:
    if context.is_remote:
        check_url = context.entry_url or document_url(
            context.root_dir, context.start_document
        )
        timeout = settings.request_timeout
        if deadline is not None:
            timeout = deadline.bound(timeout)
        try:
            resp = session.get(check_url, timeout=timeout, stream=True)
        except requests.RequestException as e:
            raise SetupError(f"remote server unreachable ({e})") from e
        try:
            if resp.status_code >= 400:
                raise SetupError(f"remote resource missing (HTTP {resp.status_code})")
        finally:
            resp.close()
        return
    check_path = Path(context.root_dir).joinpath(*context.start_document.split("/"))
    if not check_path.is_file():
        raise SetupError(f"input file not found ({check_path})")


def ask_overwrite(output_root: Path) -> bool:
    print("\nWarning: the output directory already exists.")
    print(f"   path: {output_root.resolve()}")
    answer = input("   Delete it and create it again? (Y/n): ").strip().lower()
    return answer in ("", "y", "yes")


def prepare_output(
    layout: OutputLayout, confirm: Callable[[Path], bool] = ask_overwrite
) -> bool:
    root = layout.output_root
    if root.is_dir():
        if not confirm(root):
            print("Cancelled.")
            return False
        logging.info("removing existing output: %s", root)
        try:
            shutil.rmtree(root)
        except OSError as e:
            raise SetupError(f"cannot remove {root}: {e}") from e
    for d in (layout.asset_dir, layout.font_dir):
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SetupError(f"cannot create {d}: {e}") from e
    return True


# -------------------- Report --------------------


def print_banner() -> None:
    print("=" * 51)
    print("   page-mirror: offline copies of local or remote pages")
    print("=" * 51)


def print_start_info(context: CrawlContext, layout: OutputLayout) -> None:
    mode = "web rendering (headless browser)" if context.is_remote else "local files"
    print(f"Starting ({mode})")
    print(f"   source: {context.root_dir} (start: {context.start_document})")
    print(f"   output: {layout.output_root.resolve()}")
    print("=" * 50)


def print_result(outcome: Outcome) -> None:
    print("=" * 50)
    if outcome.timed_out:
        print(f"*** Warning: timeout ({outcome.error})")
    elif outcome.error is not None:
        print(f"Error: {outcome.error}")
    else:
        print("Done!")
    stats = outcome.stats
    print(f"Total {stats.files_written} files, saved {format_comma(stats.bytes_written)} bytes")
    if stats.resources_failed:
        print(f"({stats.resources_failed} resources could not be fetched)")


def exit_status(outcome: Outcome) -> int:
    if outcome.ok:
        return 0
    return 2 if outcome.timed_out else 1


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        try:
            with open(p, "rb") as f:
                return tomllib.load(f) or {}
        except OSError as e:
            raise SetupError(f"cannot read config {p}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise SetupError(f"invalid TOML in {p}: {e}") from e
    elif suf in {".yaml", ".yml"}:
        import yaml

        try:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise SetupError(f"cannot read config {p}: {e}") from e
        except yaml.YAMLError as e:
            raise SetupError(f"invalid YAML in {p}: {e}") from e
        if not isinstance(data, dict):
            raise SetupError("Top-level YAML must be a mapping")
        return data
    else:
        raise SetupError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    d = Settings()
    p = argparse.ArgumentParser(
        prog="page-mirror",
        description="Mirror a local folder or a remote page into an offline copy.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument(
        "input",
        nargs="?",
        default=DEFAULT_INPUT,
        help="local folder or http(s) URL (default: front)",
    )
    p.add_argument(
        "-o",
        "--output",
        default="",
        help=f"output directory ('.' or empty: {DEFAULT_OUTPUT})",
    )
    p.add_argument("-y", "--yes", action="store_true", help="replace existing output without asking")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # timeouts
    p.add_argument("--deadline", type=float, default=d.deadline, help="global deadline seconds")
    p.add_argument(
        "--request-timeout", type=float, default=d.request_timeout, help="per resource seconds"
    )
    p.add_argument(
        "--render-timeout", type=float, default=d.render_timeout, help="per render session seconds"
    )
    p.add_argument(
        "--prefetch-wait",
        type=float,
        default=d.prefetch_wait,
        help="max seconds to wait for the pre-rendered start page",
    )

    # render
    p.add_argument("--settle-delay", type=float, default=d.settle_delay, help="seconds after load")
    p.add_argument("--scroll-passes", type=int, default=d.scroll_passes, help="auto-scroll passes")
    p.add_argument("--scroll-pause-ms", type=int, default=d.scroll_pause_ms, help="pause per pass")
    p.add_argument("--viewport-width", type=int, default=d.viewport_width)
    p.add_argument("--viewport-height", type=int, default=d.viewport_height)
    p.add_argument("--user-agent", type=str, default=d.user_agent)

    # layout / http
    p.add_argument("--asset-dir", type=str, default=d.asset_dir, help="asset bucket name")
    p.add_argument("--font-dir", type=str, default=d.font_dir, help="font bucket name")
    p.add_argument("--retries", type=int, default=d.retries, help="transport retries per resource")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("timeouts", "render", "layout", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            flat = {k.replace("-", "_"): v for k, v in flat.items()}
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(**{f.name: getattr(args, f.name) for f in fields(Settings)})


def output_root_for(option: str) -> Path:
    if not option or option == ".":
        return Path(DEFAULT_OUTPUT)
    return Path(option)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except SetupError as e:
        print(f"Error: {e}")
        return 1
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)
    print_banner()

    try:
        settings.validate()
        deadline = Deadline(settings.deadline)
        context = classify_input(args.input)
    except SetupError as e:
        print(f"Error: {e}")
        return 1

    layout = OutputLayout(output_root_for(args.output), settings.asset_dir, settings.font_dir)
    run = MirrorRun(context, layout, settings, deadline=deadline)
    if context.is_remote:
        logging.info("rendering input URL in the background")
    run.start_prefetch()

    try:
        validate_input(context, run.session, settings, deadline)
        confirm = (lambda _root: True) if args.yes else ask_overwrite
        if not prepare_output(layout, confirm):
            run.close()
            return 0
    except MirrorError as e:
        run.close()
        print_result(Outcome(run.stats, e))
        return exit_status(Outcome(run.stats, e))

    print_start_info(context, layout)
    outcome = run.run()
    print_result(outcome)
    return exit_status(outcome)


if __name__ == "__main__":
    sys.exit(main())
