#!/usr/bin/env python3
import argparse
import html
import itertools
import json
import logging
import os
import re
import sys
import threading
import time
import zipfile
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.utils import format_datetime
from enum import Enum
from http.cookiejar import DefaultCookiePolicy, MozillaCookieJar
from pathlib import Path
from threading import Lock
from typing import (
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)
from urllib import robotparser
from urllib.parse import quote, urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\()?\s*([\"']?)([^\)\"';\s]+)\1\s*\)?",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")

# Absolute references only: relative ones are never touched again,
# which keeps a second rewrite pass a no-op.
REWRITE_ATTR_RE = re.compile(
    r"(?P<pre>\b(?:href|src)\s*=\s*(?P<q>[\"']))(?P<u>https?://[^\"']+)(?P=q)",
    re.IGNORECASE,
)
REWRITE_SRCSET_RE = re.compile(
    r"(?P<pre>\bsrcset\s*=\s*(?P<q>[\"']))(?P<v>[^\"']+)(?P=q)", re.IGNORECASE
)
REWRITE_CSS_URL_RE = re.compile(
    r"(?P<pre>url\(\s*(?P<q>[\"']?))(?P<u>https?://[^\"')\s]+)(?P=q)(?P<post>\s*\))",
    re.IGNORECASE,
)
ABSOLUTE_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

SKIPPED_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")
IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp"}
FONT_EXTS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}
TEXT_TYPE_MARKERS = ("text", "javascript", "json", "xml")

HISTORY_LIMIT = 50
EXTERNAL_DIR = "_external"
# same set encodeURIComponent leaves alone
QUERY_SAFE = "-_.!~*'()"


class ResourceType(str, Enum):
    HTML = "html"
    CSS = "css"
    JS = "js"
    IMAGE = "image"
    FONT = "font"


class ExportFormat(str, Enum):
    ARCHIVE = "archive"
    SNAPSHOT = "snapshot"


class Phase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_PHASES = (Phase.RUNNING, Phase.PAUSED)

RESOURCE_TYPE_ALIASES = {
    "images": ResourceType.IMAGE,
    "img": ResourceType.IMAGE,
    "fonts": ResourceType.FONT,
    "scripts": ResourceType.JS,
    "javascript": ResourceType.JS,
    "stylesheets": ResourceType.CSS,
    "pages": ResourceType.HTML,
}


def parse_resource_types(
    value: Union[str, Iterable[Union[str, ResourceType]]]
) -> FrozenSet[ResourceType]:
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    out: Set[ResourceType] = set()
    for v in value:
        if isinstance(v, ResourceType):
            out.add(v)
            continue
        name = v.strip().lower()
        if name in RESOURCE_TYPE_ALIASES:
            out.add(RESOURCE_TYPE_ALIASES[name])
        else:
            out.add(ResourceType(name))
    return frozenset(out)


# -------------------- Settings --------------------


@dataclass(frozen=True)
class Configuration:
    max_depth: int = 2
    concurrency: int = 5
    resource_types: FrozenSet[ResourceType] = frozenset(
        {ResourceType.HTML, ResourceType.CSS, ResourceType.JS, ResourceType.IMAGE}
    )
    request_delay: float = 0.1
    request_timeout: float = 30.0
    # advisory: compared with the declared Content-Length only
    max_content_length: int = 50 * 1024 * 1024
    include_credentials: bool = False
    export_format: ExportFormat = ExportFormat.ARCHIVE

    cookies_file: Optional[str] = None
    extra_headers: Tuple[str, ...] = ()  # "Name: value"
    respect_robots: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "Configuration":
        known = {f.name for f in fields(cls)}
        kw = {k: v for k, v in data.items() if k in known and v is not None}
        if "resource_types" in kw:
            kw["resource_types"] = parse_resource_types(kw["resource_types"])
        if "export_format" in kw:
            kw["export_format"] = ExportFormat(kw["export_format"])
        if "extra_headers" in kw:
            kw["extra_headers"] = tuple(kw["extra_headers"])
        return cls(**kw).normalized()

    def normalized(self) -> "Configuration":
        return replace(
            self,
            max_depth=max(0, int(self.max_depth)),
            concurrency=max(1, int(self.concurrency)),
            request_delay=max(0.0, float(self.request_delay)),
            request_timeout=max(0.1, float(self.request_timeout)),
            max_content_length=max(1024, int(self.max_content_length)),
        )

    def to_mapping(self) -> Dict[str, object]:
        return {
            "max_depth": self.max_depth,
            "concurrency": self.concurrency,
            "resource_types": sorted(t.value for t in self.resource_types),
            "request_delay": self.request_delay,
            "request_timeout": self.request_timeout,
            "max_content_length": self.max_content_length,
            "include_credentials": self.include_credentials,
            "export_format": self.export_format.value,
            "cookies_file": self.cookies_file,
            "extra_headers": list(self.extra_headers),
            "respect_robots": self.respect_robots,
        }

    def wants(self, rtype: ResourceType) -> bool:
        return rtype in self.resource_types


# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class TransportError(MirrorError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason


class TooLargeError(MirrorError):
    def __init__(self, url: str, declared: int, limit: int):
        super().__init__(f"declared size {declared} exceeds {limit}: {url}")
        self.url = url
        self.declared = declared
        self.limit = limit


class UrlError(MirrorError):
    pass


class UnsupportedSchemeError(UrlError):
    pass


class MalformedUrlError(UrlError):
    pass


class AlreadyActiveError(MirrorError):
    pass


class FinalizationError(MirrorError):
    pass


# -------------------- Utils --------------------


def format_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.2f} MB"


def truncate_url(url: str, max_length: int = 50) -> str:
    if len(url) <= max_length:
        return url
    return url[: max_length - 3] + "..."


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_json(path: Path, data: object) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def url_extension(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return os.path.splitext(path.rsplit("/", 1)[-1])[1].lower()


def is_image_url(url: str) -> bool:
    return url_extension(url) in IMAGE_EXTS


def is_font_url(url: str) -> bool:
    return url_extension(url) in FONT_EXTS


def is_text_content_type(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    return any(marker in ct for marker in TEXT_TYPE_MARKERS)


def declared_length(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        return int(value.strip())
    except ValueError:
        return 0


# -------------------- URL resolution --------------------


def resolve_url(reference: Optional[str], base_url: str) -> str:
    """Resolve ``reference`` against ``base_url`` to a canonical URL.

    The fragment is dropped. Anything that does not end up as an
    http(s) URL with a host raises a ``UrlError``; callers skip those.
    """
    if reference is None:
        raise MalformedUrlError("missing reference")
    ref = reference.strip()
    if not ref:
        raise MalformedUrlError("empty reference")
    if ref.lower().startswith(SKIPPED_PREFIXES):
        raise UnsupportedSchemeError(ref)
    try:
        absu = urljoin(base_url, ref)
        p = urlsplit(absu)
        scheme = p.scheme.lower()
        host = p.hostname
    except ValueError as e:
        raise MalformedUrlError(f"{ref}: {e}") from e
    if scheme not in ("http", "https"):
        raise UnsupportedSchemeError(absu)
    if not host:
        raise MalformedUrlError(absu)
    path = p.path
    if "/." in path:
        # urljoin only removes dot segments from relative references
        path = urlsplit(urljoin(f"{scheme}://{p.netloc}/", path.lstrip("/"))).path
    return urlunsplit((p.scheme, p.netloc, path, p.query, ""))


def origin_of(url: str) -> str:
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


def is_same_origin(url: str, origin: str) -> bool:
    host = origin_of(url)
    return bool(host) and host == origin.lower()


# -------------------- Path mapping --------------------

_fallback_names = itertools.count(1)


def map_path(url: str, origin: str) -> str:
    """Map a canonical URL to its relative output path.

    Pure in (url, origin): the rewrite pass recomputes paths with it
    after the crawl, independently of the order resources arrived in.
    """
    try:
        p = urlsplit(url)
        host = p.hostname
        if not host or p.scheme.lower() not in ("http", "https"):
            raise ValueError(url)
    except ValueError:
        return f"unknown_{next(_fallback_names)}"

    path = p.path
    if host != origin.lower():
        if not path.startswith("/"):
            path = "/" + path
        path = f"/{EXTERNAL_DIR}/{host}{path}"
    # never climb out of the output tree
    path = "/".join(s for s in path.split("/") if s not in (".", ".."))
    if path in ("", "/"):
        path = "/index.html"
    last = path.rsplit("/", 1)[-1]
    if "." not in last and not path.endswith("/"):
        path += ".html"
    if path.endswith("/"):
        path += "index.html"
    if p.query:
        dot = path.rfind(".")
        path = f"{path[:dot]}_{quote(p.query, safe=QUERY_SAFE)}{path[dot:]}"
    return path.lstrip("/")


# -------------------- HTML utils --------------------


def bs4_parse(markup: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(markup, "lxml")
    except Exception:
        return BeautifulSoup(markup, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return resolve_url(tag["href"], fallback)
        except UrlError:
            pass
    return fallback


def parse_srcset(v: str) -> List[str]:
    urls: List[str] = []
    if not v:
        return urls
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts and parts[0]:
            urls.append(parts[0])
    return urls


# -------------------- Extraction --------------------


@dataclass
class Extraction:
    links: List[str] = field(default_factory=list)
    assets: List[Tuple[str, ResourceType]] = field(default_factory=list)


class _Collector:
    def __init__(self, type_filter: FrozenSet[ResourceType]):
        self.type_filter = type_filter
        self._links: Dict[str, None] = {}
        self._assets: Dict[str, ResourceType] = {}

    def link(self, ref: Optional[str], base: str) -> None:
        try:
            self._links.setdefault(resolve_url(ref, base))
        except UrlError:
            pass

    def asset(self, ref: Optional[str], base: str, rtype: ResourceType) -> None:
        if rtype not in self.type_filter:
            return
        try:
            self._assets.setdefault(resolve_url(ref, base), rtype)
        except UrlError:
            pass

    def css_url(self, ref: str, base: str) -> None:
        ref = ref.strip()
        if ref.lower().startswith("data:"):
            return
        try:
            absu = resolve_url(ref, base)
        except UrlError:
            return
        if is_image_url(absu):
            self.asset(absu, base, ResourceType.IMAGE)
        elif is_font_url(absu):
            self.asset(absu, base, ResourceType.FONT)

    def result(self) -> Extraction:
        return Extraction(list(self._links), list(self._assets.items()))


def _scan_css_text(css: str, base: str, out: _Collector) -> None:
    for m in CSS_IMPORT_RE.finditer(css):
        out.asset(m.group(2), base, ResourceType.CSS)
    for m in CSS_URL_RE.finditer(css):
        out.css_url(m.group(2), base)


def _scan_html(markup: str, document_url: str, out: _Collector) -> None:
    soup = bs4_parse(markup)
    base = effective_base_url(soup, document_url)

    if ResourceType.HTML in out.type_filter:
        for a in soup.select("a[href]"):
            out.link(a.get("href"), base)

    for link in soup.select("link[href]"):
        rels = link.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if "stylesheet" in {r.lower() for r in rels}:
            out.asset(link.get("href"), base, ResourceType.CSS)
    for style in soup.find_all("style"):
        _scan_css_text(style.get_text(), base, out)
    for tag in soup.select("[style]"):
        for m in CSS_URL_RE.finditer(tag.get("style") or ""):
            out.css_url(m.group(2), base)

    for tag in soup.select("script[src]"):
        out.asset(tag.get("src"), base, ResourceType.JS)

    for tag in soup.select("img[src]"):
        out.asset(tag.get("src"), base, ResourceType.IMAGE)
    for tag in soup.select("[srcset]"):
        for u in parse_srcset(tag.get("srcset") or ""):
            out.asset(u, base, ResourceType.IMAGE)

    # url(...) anywhere else in the markup, classified by extension
    for m in CSS_URL_RE.finditer(markup):
        out.css_url(html.unescape(m.group(2)), base)


def extract_resources(
    text: str,
    document_url: str,
    content_kind: ResourceType,
    type_filter: Iterable[ResourceType],
) -> Extraction:
    """Scan a document or stylesheet for outbound references.

    Links are only produced for html documents; assets are limited to
    ``type_filter``. Unresolvable references are dropped.
    """
    out = _Collector(frozenset(type_filter))
    if content_kind == ResourceType.HTML:
        _scan_html(text, document_url, out)
    elif content_kind == ResourceType.CSS:
        _scan_css_text(text, document_url, out)
    return out.result()


# -------------------- HTTP --------------------


def build_session(config: Optional[Configuration] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        read=0,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=64, pool_maxsize=64)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    if config is not None:
        apply_auth_to_session(s, config)
    return s


def apply_auth_to_session(session: requests.Session, config: Configuration) -> None:
    for h in config.extra_headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()
    if not config.include_credentials:
        # neither store nor send cookies
        session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        return
    if config.cookies_file:
        try:
            jar = MozillaCookieJar()
            jar.load(config.cookies_file, ignore_discard=True, ignore_expires=True)
            session.cookies.update(jar)
            logging.info("loaded cookies: %s", config.cookies_file)
        except (OSError, ValueError) as e:
            logging.error("failed to load cookies: %s", e)


@dataclass
class FetchedBody:
    content: Union[str, bytes]
    content_type: str
    is_text: bool
    size: int


def fetch_resource(
    session: requests.Session, url: str, *, timeout: float, max_content_length: int
) -> FetchedBody:
    try:
        resp = session.get(url, timeout=timeout, stream=True)
    except requests.RequestException as e:
        raise TransportError(url, str(e) or type(e).__name__) from e
    try:
        if resp.status_code >= 400:
            raise TransportError(url, f"HTTP {resp.status_code}")
        content_type = resp.headers.get("Content-Type") or ""
        declared = declared_length(resp.headers.get("Content-Length"))
        if declared > max_content_length:
            raise TooLargeError(url, declared, max_content_length)
        try:
            body = resp.content
        except requests.RequestException as e:
            raise TransportError(url, str(e) or type(e).__name__) from e
        is_text = is_text_content_type(content_type)
        if not is_text:
            return FetchedBody(body, content_type, False, len(body))
        if "charset=" not in content_type.lower():
            resp.encoding = resp.apparent_encoding or "utf-8"
        return FetchedBody(resp.text, content_type, True, len(body))
    finally:
        resp.close()


def fetch_robots(
    session: requests.Session, seed_url: str, timeout: float
) -> Optional[robotparser.RobotFileParser]:
    try:
        r = session.get(urljoin(seed_url, "/robots.txt"), timeout=timeout)
        if r.status_code >= 400 or not r.text:
            return None
        rp = robotparser.RobotFileParser()
        rp.parse(r.text.splitlines())
        return rp
    except requests.RequestException as e:
        logging.debug("robots.txt unavailable: %s", e)
        return None


# -------------------- Progress events --------------------


class EventKind(str, Enum):
    LOG = "log"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    PROGRESS = "progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    message: str = ""
    data: Mapping[str, object] = field(default_factory=dict)


Listener = Callable[[ProgressEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, kind: EventKind, message: str = "", **data: object) -> None:
        event = ProgressEvent(kind, message, data)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # a broken UI must never stop the crawl
                logging.debug("progress listener failed: %s", e)


# -------------------- Crawl job --------------------


@dataclass(frozen=True)
class QueueItem:
    url: str
    depth: int
    resource_type: ResourceType
    discovered_at: int = 0


@dataclass(frozen=True)
class ResourceRecord:
    source_url: str
    local_path: str
    content_type: str
    size: int
    is_text: bool
    content: Union[str, bytes]


@dataclass
class JobStats:
    total_discovered: int = 0
    total_downloaded: int = 0
    total_bytes: int = 0
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        end = self.finished_at if self.finished_at is not None else time.time()
        return int((end - self.started_at) * 1000)

    @property
    def percent(self) -> int:
        if self.total_discovered <= 0:
            return 0
        return round(self.total_downloaded / self.total_discovered * 100)


@dataclass
class CrawlJob:
    seed_url: str
    target_origin: str
    config: Configuration
    queue: Deque[QueueItem] = field(default_factory=deque)
    queued: Set[str] = field(default_factory=set)
    in_flight: Set[str] = field(default_factory=set)
    downloaded: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    skipped: Set[str] = field(default_factory=set)
    resources: Dict[str, ResourceRecord] = field(default_factory=dict)
    stats: JobStats = field(default_factory=JobStats)
    phase: Phase = Phase.IDLE
    error: Optional[str] = None
    artifact: Optional[Path] = None
    cond: threading.Condition = field(
        default_factory=threading.Condition, repr=False, compare=False
    )
    stop_signal: Future = field(default_factory=Future, repr=False, compare=False)

    @classmethod
    def create(cls, seed_url: str, config: Configuration) -> "CrawlJob":
        canonical = resolve_url(seed_url, seed_url)
        job = cls(seed_url=canonical, target_origin=origin_of(canonical), config=config)
        job.queue.append(QueueItem(canonical, 0, ResourceType.HTML, 0))
        job.queued.add(canonical)
        job.stats.total_discovered = 1
        return job

    def seen(self, url: str) -> bool:
        return (
            url in self.downloaded
            or url in self.failed
            or url in self.queued
            or url in self.in_flight
            or url in self.skipped
        )


@dataclass(frozen=True)
class JobStatus:
    phase: Phase
    total_discovered: int
    total_downloaded: int
    total_bytes: int
    queue_depth: int
    started_at: Optional[float]
    error: Optional[str] = None


# -------------------- Live DOM discovery --------------------


class ResourceDiscoverer:
    def discover_additional(self, page_url: str) -> List[Tuple[str, ResourceType]]:
        raise NotImplementedError

    def close(self) -> None:
        pass


PLAYWRIGHT_TYPES = {
    "stylesheet": ResourceType.CSS,
    "script": ResourceType.JS,
    "image": ResourceType.IMAGE,
    "font": ResourceType.FONT,
}


class PlaywrightDiscoverer(ResourceDiscoverer):
    """Loads the page in headless Chromium and records sub-resource requests."""

    def __init__(self, wait_until: str = "networkidle", timeout_ms: int = 10000):
        self.wait_until = wait_until
        self.timeout_ms = timeout_ms
        self._pl = None
        self._browser = None
        self._disabled = False

    def _start_playwright(self):
        from playwright.sync_api import sync_playwright

        return sync_playwright().start()

    def _ensure_browser(self) -> bool:
        if self._disabled:
            return False
        if self._browser is not None:
            return True
        try:
            self._pl = self._start_playwright()
            self._browser = self._pl.chromium.launch(headless=True)
        except ImportError:
            logging.error(
                "Playwright not installed. "
                "Run: pip install playwright && playwright install"
            )
            self._disabled = True
            return False
        except Exception as e:
            logging.error("Playwright browser launch failed: %s", e)
            # one attempt per discoverer; later pages skip live discovery
            self._disabled = True
            self.close()
            return False
        return True

    def discover_additional(self, page_url: str) -> List[Tuple[str, ResourceType]]:
        if not self._ensure_browser():
            return []
        found: Dict[str, ResourceType] = {}

        def on_request(request) -> None:
            rtype = PLAYWRIGHT_TYPES.get(request.resource_type)
            if rtype is None:
                return
            try:
                found.setdefault(resolve_url(request.url, page_url), rtype)
            except UrlError:
                pass

        context = self._browser.new_context(user_agent=DEFAULT_HEADERS["User-Agent"])
        try:
            page = context.new_page()
            page.on("request", on_request)
            page.goto(page_url, wait_until=self.wait_until, timeout=self.timeout_ms)
        finally:
            context.close()
        return list(found.items())

    def close(self) -> None:
        try:
            if self._browser:
                self._browser.close()
            if self._pl:
                self._pl.stop()
        except Exception as e:
            logging.debug("playwright shutdown: %s", e)
        finally:
            self._browser = None
            self._pl = None


# -------------------- Scheduler --------------------


@dataclass
class FetchOutcome:
    item: QueueItem
    body: Optional[FetchedBody] = None
    extraction: Optional[Extraction] = None
    error: Optional[BaseException] = None
    skip_reason: Optional[str] = None


class CrawlScheduler:
    def __init__(
        self,
        job: CrawlJob,
        session: requests.Session,
        events: Optional[EventBus] = None,
        discoverer: Optional[ResourceDiscoverer] = None,
    ):
        self.job = job
        self.session = session
        self.events = events or EventBus()
        self.discoverer = discoverer
        self.robots: Optional[robotparser.RobotFileParser] = None

    # ---- control signals ----

    def pause(self) -> bool:
        job = self.job
        with job.cond:
            if job.phase != Phase.RUNNING:
                return False
            job.phase = Phase.PAUSED
        self.events.emit(EventKind.PAUSED, "Download paused")
        return True

    def resume(self) -> bool:
        job = self.job
        with job.cond:
            if job.phase != Phase.PAUSED:
                return False
            job.phase = Phase.RUNNING
            job.cond.notify_all()
        self.events.emit(EventKind.RESUMED, "Download resumed")
        return True

    def cancel(self) -> bool:
        job = self.job
        with job.cond:
            if job.phase not in (Phase.IDLE,) + ACTIVE_PHASES:
                return False
            job.phase = Phase.CANCELLED
            job.queue.clear()
            job.queued.clear()
            job.in_flight.clear()
            job.stats.finished_at = time.time()
            job.cond.notify_all()
        if not job.stop_signal.done():
            job.stop_signal.set_result(True)
        self.events.emit(EventKind.CANCELLED, "Download cancelled")
        return True

    # ---- main loop ----

    def run(self) -> Phase:
        job = self.job
        cfg = job.config
        with job.cond:
            if job.phase == Phase.IDLE:
                job.phase = Phase.RUNNING
            if job.phase not in ACTIVE_PHASES:
                return job.phase
        self.events.emit(EventKind.LOG, f"Starting crawl of {job.target_origin}")
        if cfg.respect_robots:
            self.robots = fetch_robots(self.session, job.seed_url, cfg.request_timeout)

        pool = ThreadPoolExecutor(
            max_workers=cfg.concurrency, thread_name_prefix="site-mirror"
        )
        try:
            while True:
                batch = self._next_batch()
                if not batch:
                    break
                if not self._run_batch(pool, batch):
                    break
                self._emit_progress()
                if cfg.request_delay > 0:
                    with job.cond:
                        job.cond.wait_for(
                            lambda: job.phase == Phase.CANCELLED, cfg.request_delay
                        )
        finally:
            # in-flight fetches are abandoned on cancel, not awaited
            pool.shutdown(wait=job.phase != Phase.CANCELLED, cancel_futures=True)

        with job.cond:
            if job.phase == Phase.RUNNING and not job.queue:
                job.phase = Phase.COMPLETED
                job.stats.finished_at = time.time()
            return job.phase

    def _next_batch(self) -> List[QueueItem]:
        job = self.job
        with job.cond:
            job.cond.wait_for(lambda: job.phase != Phase.PAUSED)
            if job.phase != Phase.RUNNING or not job.queue:
                return []
            n = min(job.config.concurrency, len(job.queue))
            batch = [job.queue.popleft() for _ in range(n)]
            for item in batch:
                job.queued.discard(item.url)
                job.in_flight.add(item.url)
            return batch

    def _run_batch(self, pool: ThreadPoolExecutor, batch: List[QueueItem]) -> bool:
        job = self.job
        futures: Dict[Future, QueueItem] = {}
        for item in batch:
            self.events.emit(EventKind.LOG, f"Downloading: {truncate_url(item.url)}")
            futures[pool.submit(self._process, item)] = item
        waiting = set(futures)
        while waiting:
            done, _ = wait(waiting | {job.stop_signal}, return_when=FIRST_COMPLETED)
            if job.stop_signal.done():
                return False
            for fut in done:
                waiting.discard(fut)
                exc = fut.exception()
                if exc is None:
                    outcome = fut.result()
                else:
                    logging.debug(
                        "unexpected error for %s", futures[fut].url, exc_info=exc
                    )
                    outcome = FetchOutcome(futures[fut], error=exc)
                self._apply(outcome)
        return True

    # ---- per item, runs on worker threads ----

    def _process(self, item: QueueItem) -> FetchOutcome:
        job = self.job
        cfg = job.config
        if item.resource_type == ResourceType.HTML:
            if not is_same_origin(item.url, job.target_origin):
                return FetchOutcome(item, skip_reason="external page")
            if self.robots is not None and not self.robots.can_fetch(
                self.session.headers.get("User-Agent", "*"), item.url
            ):
                return FetchOutcome(item, skip_reason="disallowed by robots.txt")
        try:
            body = fetch_resource(
                self.session,
                item.url,
                timeout=cfg.request_timeout,
                max_content_length=cfg.max_content_length,
            )
        except (TransportError, TooLargeError) as e:
            return FetchOutcome(item, error=e)

        extraction = None
        if body.is_text:
            kind = None
            if item.resource_type == ResourceType.HTML:
                kind = ResourceType.HTML
            elif (
                "css" in body.content_type.lower()
                or item.resource_type == ResourceType.CSS
            ):
                kind = ResourceType.CSS
            if kind is not None:
                extraction = extract_resources(
                    body.content, item.url, kind, cfg.resource_types
                )
        return FetchOutcome(item, body=body, extraction=extraction)

    # ---- state mutation, scheduler thread only ----

    def _apply(self, outcome: FetchOutcome) -> None:
        item = outcome.item
        event = self._settle(outcome)
        if event is None:
            return
        # listeners may call cancel(), so they run without the job lock
        self.events.emit(event.kind, event.message, **event.data)
        if (
            event.kind == EventKind.SUCCESS
            and item.resource_type == ResourceType.HTML
            and self.discoverer is not None
        ):
            self._merge_discovered(item)

    def _settle(self, outcome: FetchOutcome) -> Optional[ProgressEvent]:
        job = self.job
        item = outcome.item
        with job.cond:
            if job.phase == Phase.CANCELLED:
                return None
            job.in_flight.discard(item.url)
            if item.url in job.downloaded or item.url in job.failed:
                return None

            if isinstance(outcome.error, TooLargeError):
                job.skipped.add(item.url)
                return ProgressEvent(
                    EventKind.WARNING,
                    f"File too large, skipped: {truncate_url(item.url)}",
                )
            if outcome.error is not None:
                job.failed.add(item.url)
                logging.debug("failed %s: %s", item.url, outcome.error)
                return ProgressEvent(
                    EventKind.ERROR,
                    f"Error: {truncate_url(item.url)}",
                    {"url": item.url, "reason": str(outcome.error)},
                )
            if outcome.skip_reason is not None:
                job.skipped.add(item.url)
                logging.debug("skip %s: %s", item.url, outcome.skip_reason)
                return None

            body = outcome.body
            local_path = map_path(item.url, job.target_origin)
            job.resources[local_path] = ResourceRecord(
                source_url=item.url,
                local_path=local_path,
                content_type=body.content_type,
                size=body.size,
                is_text=body.is_text,
                content=body.content,
            )
            job.downloaded.add(item.url)
            job.stats.total_downloaded += 1
            job.stats.total_bytes += body.size

            ext = outcome.extraction
            if ext is not None:
                follow = item.depth < job.config.max_depth
                if item.resource_type == ResourceType.HTML and follow:
                    for link in ext.links:
                        if is_same_origin(link, job.target_origin):
                            self._enqueue(
                                link, item.depth + 1, ResourceType.HTML, item.depth
                            )
                for url, rtype in ext.assets:
                    self._enqueue(url, 0, rtype, item.depth)
            return ProgressEvent(EventKind.SUCCESS, f"OK: {truncate_url(item.url)}")

    def _merge_discovered(self, item: QueueItem) -> None:
        job = self.job
        try:
            extra = self.discoverer.discover_additional(item.url)
        except Exception as e:
            logging.warning("live discovery failed for %s: %s", item.url, e)
            return
        with job.cond:
            if job.phase == Phase.CANCELLED:
                return
            for url, rtype in extra:
                if rtype == ResourceType.HTML or not job.config.wants(rtype):
                    continue
                self._enqueue(url, 0, rtype, item.depth)

    def _enqueue(
        self, url: str, depth: int, rtype: ResourceType, discovered_at: int
    ) -> bool:
        job = self.job
        if job.phase == Phase.CANCELLED or job.seen(url):
            return False
        job.queue.append(QueueItem(url, depth, rtype, discovered_at))
        job.queued.add(url)
        job.stats.total_discovered += 1
        return True

    def _emit_progress(self) -> None:
        job = self.job
        with job.cond:
            stats = job.stats
            data = {
                "percent": stats.percent,
                "downloaded": stats.total_downloaded,
                "total": stats.total_discovered,
                "bytes": stats.total_bytes,
                "queue_depth": len(job.queue),
            }
        self.events.emit(EventKind.PROGRESS, "", **data)


# -------------------- Rewriters --------------------


def rewrite_text(
    text: str, local_path: str, origin: str, downloaded: Iterable[str] = ()
) -> str:
    prefix = "../" * local_path.count("/")
    captured = set(downloaded)

    def target_for(raw: str) -> Optional[str]:
        url = html.unescape(raw.strip())
        try:
            canonical = resolve_url(url, url)
        except UrlError:
            return None
        if not (is_same_origin(canonical, origin) or canonical in captured):
            return None
        rel = prefix + map_path(canonical, origin)
        frag = urlsplit(url).fragment
        return f"{rel}#{frag}" if frag else rel

    def repl_attr(m: re.Match) -> str:
        t = target_for(m.group("u"))
        if t is None:
            return m.group(0)
        return f"{m.group('pre')}{t}{m.group('q')}"

    def repl_srcset(m: re.Match) -> str:
        if "://" not in m.group("v"):
            return m.group(0)
        parts = []
        for candidate in SRCSET_SPLIT_RE.split(m.group("v").strip()):
            comp = WS_RE.split(candidate.strip()) if candidate else []
            if not comp or not comp[0]:
                continue
            url_part = comp[0]
            t = target_for(url_part) if ABSOLUTE_URL_RE.match(url_part) else None
            parts.append(" ".join([t or url_part] + comp[1:]))
        return f"{m.group('pre')}{', '.join(parts)}{m.group('q')}"

    def repl_css(m: re.Match) -> str:
        t = target_for(m.group("u"))
        if t is None:
            return m.group(0)
        return f"{m.group('pre')}{t}{m.group('q')}{m.group('post')}"

    out = REWRITE_ATTR_RE.sub(repl_attr, text)
    out = REWRITE_SRCSET_RE.sub(repl_srcset, out)
    return REWRITE_CSS_URL_RE.sub(repl_css, out)


def rewrite_resources(
    resources: Dict[str, ResourceRecord], origin: str, downloaded: Iterable[str]
) -> int:
    """Point absolute references in every text resource at the local tree.

    New contents are computed first and committed together, so a failure
    leaves the captured resources as they were.
    """
    captured = set(downloaded)
    updates: Dict[str, str] = {}
    for path, rec in resources.items():
        if not rec.is_text:
            continue
        new_text = rewrite_text(rec.content, path, origin, captured)
        if new_text != rec.content:
            updates[path] = new_text
    for path, new_text in updates.items():
        rec = resources[path]
        resources[path] = replace(
            rec, content=new_text, size=len(new_text.encode("utf-8"))
        )
    return len(updates)


# -------------------- Archive --------------------


@dataclass(frozen=True)
class ArchiveEntry:
    content: Union[str, bytes]
    content_type: str


def archive_payload(resources: Mapping[str, ResourceRecord]) -> Dict[str, ArchiveEntry]:
    return {
        path.lstrip("/"): ArchiveEntry(rec.content, rec.content_type)
        for path, rec in resources.items()
    }


def archive_filename(
    seed_url: str, suffix: str, when: Optional[datetime] = None
) -> str:
    host = origin_of(seed_url) or "site"
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return f"{host}_{stamp}{suffix}"


def _as_bytes(content: Union[str, bytes]) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


class ArchiveSink:
    def write(self, seed_url: str, payload: Mapping[str, ArchiveEntry]) -> Path:
        raise NotImplementedError


class ZipArchiveSink(ArchiveSink):
    def __init__(self, output_dir: Path, filename: Optional[str] = None):
        self.output_dir = Path(output_dir)
        self.filename = filename

    def write(self, seed_url: str, payload: Mapping[str, ArchiveEntry]) -> Path:
        path = self.output_dir / (self.filename or archive_filename(seed_url, ".zip"))
        ensure_parent_dir(path)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, entry in sorted(payload.items()):
                zf.writestr(name, _as_bytes(entry.content))
        logging.info("archive written: %s (%d files)", path, len(payload))
        return path


class SnapshotArchiveSink(ArchiveSink):
    """Single-file MHTML snapshot (multipart/related)."""

    def __init__(self, output_dir: Path, filename: Optional[str] = None):
        self.output_dir = Path(output_dir)
        self.filename = filename

    def write(self, seed_url: str, payload: Mapping[str, ArchiveEntry]) -> Path:
        p = urlsplit(seed_url)
        root = f"{p.scheme}://{p.netloc}/"
        start = map_path(seed_url, p.hostname or "")
        names = sorted(payload, key=lambda n: (n != start, n))

        msg = MIMEMultipart("related", type="text/html")
        msg["Subject"] = seed_url
        msg["Snapshot-Content-Location"] = seed_url
        msg["Date"] = format_datetime(datetime.now(timezone.utc))
        for name in names:
            entry = payload[name]
            ctype = entry.content_type.split(";")[0].strip().lower()
            maintype, _, subtype = ctype.partition("/")
            part = MIMEBase(maintype or "application", subtype or "octet-stream")
            part.set_payload(_as_bytes(entry.content))
            encoders.encode_base64(part)
            if isinstance(entry.content, str):
                part.set_param("charset", "utf-8")
            # relative references resolve against the synthetic root
            part["Content-Location"] = root + name
            msg.attach(part)

        path = self.output_dir / (self.filename or archive_filename(seed_url, ".mhtml"))
        ensure_parent_dir(path)
        path.write_bytes(msg.as_bytes())
        logging.info("snapshot written: %s (%d parts)", path, len(names))
        return path


class DirectoryArchiveSink(ArchiveSink):
    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def write(self, seed_url: str, payload: Mapping[str, ArchiveEntry]) -> Path:
        root = (self.output_dir / (origin_of(seed_url) or "site")).resolve()
        for name, entry in payload.items():
            target = (root / name).resolve()
            if root not in target.parents:
                logging.warning("refusing to write outside output root: %s", name)
                continue
            ensure_parent_dir(target)
            target.write_bytes(_as_bytes(entry.content))
        logging.info("mirror written: %s (%d files)", root, len(payload))
        return root


def default_sink(config: Configuration, output_dir: Path) -> ArchiveSink:
    if config.export_format == ExportFormat.SNAPSHOT:
        return SnapshotArchiveSink(output_dir)
    return ZipArchiveSink(output_dir)


# -------------------- Settings / history stores --------------------


class JsonSettingsStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Configuration:
        if not self.path.exists():
            return Configuration()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Configuration.from_mapping(data.get("settings", data))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logging.warning("failed to load settings %s: %s", self.path, e)
            return Configuration()

    def save(self, config: Configuration) -> None:
        atomic_write_json(self.path, {"settings": config.to_mapping()})
        logging.info("settings saved: %s", self.path)


@dataclass(frozen=True)
class HistoryEntry:
    url: str
    timestamp: str
    file_count: int
    total_bytes: int
    duration_ms: int
    id: int = 0


def empty_global_stats() -> Dict[str, object]:
    return {
        "totalDownloads": 0,
        "totalFiles": 0,
        "totalSize": 0,
        "byType": {"html": 0, "css": 0, "js": 0, "images": 0, "other": 0},
    }


def stats_bucket(local_path: str) -> str:
    ext = local_path.rsplit(".", 1)[-1].lower() if "." in local_path else ""
    if ext in ("html", "htm"):
        return "html"
    if ext == "css":
        return "css"
    if ext in ("js", "mjs"):
        return "js"
    if "." + ext in IMAGE_EXTS:
        return "images"
    return "other"


class JsonHistoryStore:
    def __init__(self, path: Path, limit: int = HISTORY_LIMIT):
        self.path = Path(path)
        self.limit = limit
        self._lock = Lock()

    def _load(self) -> Dict[str, object]:
        if not self.path.exists():
            return {"history": [], "globalStats": empty_global_stats()}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logging.warning("failed to load history %s: %s", self.path, e)
            return {"history": [], "globalStats": empty_global_stats()}
        if not isinstance(data, dict):
            logging.warning("ignoring malformed history file %s", self.path)
            return {"history": [], "globalStats": empty_global_stats()}
        data.setdefault("history", [])
        data.setdefault("globalStats", empty_global_stats())
        return data

    def record(self, entry: HistoryEntry, local_paths: Iterable[str]) -> None:
        with self._lock:
            data = self._load()
            history = data["history"]
            history.insert(0, entry.__dict__.copy())
            del history[self.limit :]
            gs = data["globalStats"]
            gs["totalDownloads"] += 1
            gs["totalFiles"] += entry.file_count
            gs["totalSize"] += entry.total_bytes
            for p in local_paths:
                bucket = stats_bucket(p)
                gs["byType"][bucket] = gs["byType"].get(bucket, 0) + 1
            atomic_write_json(self.path, data)

    def entries(self) -> List[HistoryEntry]:
        with self._lock:
            return [HistoryEntry(**e) for e in self._load()["history"]]

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return self._load()["globalStats"]

    def clear(self) -> None:
        with self._lock:
            data = self._load()
            data["history"] = []
            atomic_write_json(self.path, data)


# -------------------- Job control --------------------


class MirrorController:
    """Runs at most one mirroring job at a time on a background thread."""

    def __init__(
        self,
        *,
        session_factory: Callable[[Configuration], requests.Session] = build_session,
        sink_factory: Optional[Callable[[Configuration], ArchiveSink]] = None,
        history: Optional[JsonHistoryStore] = None,
        discoverer: Optional[ResourceDiscoverer] = None,
        events: Optional[EventBus] = None,
    ):
        self.session_factory = session_factory
        self.sink_factory = sink_factory
        self.history = history
        self.discoverer = discoverer
        self.events = events or EventBus()
        self._lock = Lock()
        self._job: Optional[CrawlJob] = None
        self._scheduler: Optional[CrawlScheduler] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def job(self) -> Optional[CrawlJob]:
        return self._job

    def start(self, seed_url: str, config: Optional[Configuration] = None) -> CrawlJob:
        config = config or Configuration()
        with self._lock:
            busy = self._thread is not None and self._thread.is_alive()
            if busy or (self._job is not None and self._job.phase in ACTIVE_PHASES):
                raise AlreadyActiveError("a mirroring job is already in progress")
            try:
                job = CrawlJob.create(seed_url, config)
            except UrlError as e:
                job = CrawlJob(seed_url=seed_url, target_origin="", config=config)
                job.phase = Phase.FAILED
                job.error = f"invalid seed URL: {e}"
                self._job = job
                self._scheduler = None
                self._thread = None
                self.events.emit(EventKind.ERROR, job.error)
                return job
            job.phase = Phase.RUNNING
            scheduler = CrawlScheduler(
                job, self.session_factory(config), self.events, self.discoverer
            )
            self._job = job
            self._scheduler = scheduler
            self._thread = threading.Thread(
                target=self._run, args=(scheduler,), name="site-mirror-job", daemon=True
            )
            self._thread.start()
            return job

    def pause(self) -> bool:
        return self._scheduler.pause() if self._scheduler else False

    def resume(self) -> bool:
        return self._scheduler.resume() if self._scheduler else False

    def cancel(self) -> bool:
        return self._scheduler.cancel() if self._scheduler else False

    def status(self) -> JobStatus:
        job = self._job
        if job is None:
            return JobStatus(Phase.IDLE, 0, 0, 0, 0, None)
        with job.cond:
            return JobStatus(
                phase=job.phase,
                total_discovered=job.stats.total_discovered,
                total_downloaded=job.stats.total_downloaded,
                total_bytes=job.stats.total_bytes,
                queue_depth=len(job.queue),
                started_at=job.stats.started_at,
                error=job.error,
            )

    def wait(self, timeout: Optional[float] = None) -> bool:
        t = self._thread
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    def _run(self, scheduler: CrawlScheduler) -> None:
        job = scheduler.job
        try:
            phase = scheduler.run()
            if phase == Phase.COMPLETED:
                self._finalize(job)
        except Exception as e:
            logging.exception("crawl aborted")
            with job.cond:
                job.phase = Phase.FAILED
                job.error = str(e)
            self.events.emit(EventKind.ERROR, f"Crawl error: {e}")
        finally:
            if self.discoverer is not None:
                self.discoverer.close()

    def _finalize(self, job: CrawlJob) -> None:
        self.events.emit(EventKind.LOG, "Finalizing download...")
        try:
            rewrite_resources(job.resources, job.target_origin, job.downloaded)
            if self.sink_factory is not None:
                sink = self.sink_factory(job.config)
                job.artifact = sink.write(job.seed_url, archive_payload(job.resources))
            if self.history is not None:
                self.history.record(
                    HistoryEntry(
                        url=job.seed_url,
                        timestamp=datetime.now(timezone.utc)
                        .replace(microsecond=0)
                        .isoformat()
                        .replace("+00:00", "Z"),
                        file_count=job.stats.total_downloaded,
                        total_bytes=job.stats.total_bytes,
                        duration_ms=job.stats.duration_ms,
                        id=int(time.time() * 1000),
                    ),
                    list(job.resources),
                )
        except Exception as e:
            err = FinalizationError(str(e))
            logging.debug("finalization failed", exc_info=True)
            job.error = f"finalization error: {err}"
            self.events.emit(EventKind.ERROR, f"Finalization error: {err}")
            return
        self.events.emit(
            EventKind.COMPLETE,
            "Download completed successfully",
            files=job.stats.total_downloaded,
            bytes=job.stats.total_bytes,
            artifact=str(job.artifact) if job.artifact else None,
        )


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------

CONFIG_GROUPS = ("crawl", "limits", "auth", "export", "general")


def resource_types_arg(value: str) -> FrozenSet[ResourceType]:
    try:
        return parse_resource_types(value)
    except ValueError:
        known = ", ".join(t.value for t in ResourceType)
        raise argparse.ArgumentTypeError(
            f"unknown resource type in {value!r} (choose from {known})"
        )


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a website into an offline archive.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument(
        "--settings",
        type=str,
        default=str(Path.home() / ".site-mirror" / "settings.json"),
        help="saved settings file",
    )
    p.add_argument(
        "--save-settings", action="store_true", help="store these options as defaults"
    )
    p.add_argument(
        "--history",
        type=str,
        default=str(Path.home() / ".site-mirror" / "history.json"),
        help="history and statistics file",
    )
    p.add_argument(
        "--show-history", action="store_true", help="print recent mirrors and exit"
    )
    p.add_argument("--clear-history", action="store_true", help="forget recent mirrors")

    p.add_argument("url", nargs="?", help="http(s) URL of the seed page")
    p.add_argument("-o", "--output-dir", default=".", help="where to write the result")
    p.add_argument(
        "--unpacked",
        action="store_true",
        help="write the mirrored tree to a directory instead of an archive",
    )
    p.add_argument(
        "--format",
        dest="export_format",
        choices=[f.value for f in ExportFormat],
        default=None,
        help="archive (zip) or snapshot (single mhtml file)",
    )

    # crawl
    p.add_argument("--max-depth", type=int, default=None, help="max link depth")
    p.add_argument(
        "--concurrency", type=int, default=None, help="parallel fetches per batch"
    )
    p.add_argument(
        "--types",
        dest="resource_types",
        type=resource_types_arg,
        default=None,
        help="comma-separated resource types: html,css,js,image,font",
    )
    p.add_argument(
        "--delay",
        dest="request_delay",
        type=float,
        default=None,
        help="pause between batches (s)",
    )
    p.add_argument(
        "--timeout",
        dest="request_timeout",
        type=float,
        default=None,
        help="request timeout (s)",
    )
    p.add_argument(
        "--max-bytes",
        dest="max_content_length",
        type=int,
        default=None,
        help="skip files whose declared size is larger",
    )
    p.add_argument(
        "--respect-robots", action="store_true", default=None, help="respect robots.txt"
    )
    p.add_argument(
        "--render-js",
        action="store_true",
        help="discover extra resources with Playwright if installed",
    )
    p.add_argument(
        "--render-timeout-ms", type=int, default=10000, help="Playwright timeout ms"
    )

    # auth / session
    p.add_argument(
        "--include-credentials",
        action="store_true",
        default=None,
        help="send cookies with requests",
    )
    p.add_argument(
        "--cookies",
        dest="cookies_file",
        type=str,
        default=None,
        help="cookies.txt (Netscape/Mozilla format)",
    )
    p.add_argument(
        "--header",
        dest="extra_headers",
        action="append",
        default=None,
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in CONFIG_GROUPS:
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace, base: Configuration) -> Configuration:
    overrides = {
        f.name: getattr(args, f.name)
        for f in fields(Configuration)
        if getattr(args, f.name, None) is not None
    }
    merged = base.to_mapping()
    merged.update(overrides)
    return Configuration.from_mapping(merged)


def log_event(event: ProgressEvent) -> None:
    if event.kind == EventKind.PROGRESS:
        d = event.data
        logging.info(
            "progress %s%% (%s/%s, %s, queue %s)",
            d.get("percent"),
            d.get("downloaded"),
            d.get("total"),
            format_size(int(d.get("bytes") or 0)),
            d.get("queue_depth"),
        )
    elif event.kind == EventKind.ERROR:
        logging.error("%s", event.message)
    elif event.kind == EventKind.WARNING:
        logging.warning("%s", event.message)
    elif event.kind == EventKind.LOG:
        logging.debug("%s", event.message)
    else:
        logging.info("%s", event.message)


def print_history(store: JsonHistoryStore) -> None:
    entries = store.entries()
    if not entries:
        print("No mirrors yet.")
        return
    for e in entries:
        print(
            f"{e.timestamp}  {e.url}  {e.file_count} files  "
            f"{format_size(e.total_bytes)}  {e.duration_ms / 1000:.1f}s"
        )
    s = store.stats()
    print(
        f"total: {s['totalDownloads']} mirrors, {s['totalFiles']} files, "
        f"{format_size(s['totalSize'])}"
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    history = JsonHistoryStore(Path(args.history))
    if args.clear_history:
        history.clear()
    if args.show_history:
        print_history(history)
        return
    if not args.url:
        if args.clear_history:
            return
        print("A URL is required.")
        sys.exit(2)
    if urlsplit(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    settings_store = JsonSettingsStore(Path(args.settings))
    try:
        config = config_from_args(args, settings_store.load())
    except ValueError as e:
        # values from --config files bypass argparse validation
        print(f"Invalid configuration: {e}")
        sys.exit(2)
    if args.save_settings:
        settings_store.save(config)

    output_dir = Path(args.output_dir)
    if args.unpacked:
        sink_factory = lambda cfg: DirectoryArchiveSink(output_dir)  # noqa: E731
    else:
        sink_factory = lambda cfg: default_sink(cfg, output_dir)  # noqa: E731
    discoverer = (
        PlaywrightDiscoverer(timeout_ms=args.render_timeout_ms)
        if args.render_js
        else None
    )

    controller = MirrorController(
        sink_factory=sink_factory, history=history, discoverer=discoverer
    )
    controller.events.subscribe(log_event)

    print("Reminder: only mirror content you own or have permission to copy.")
    job = controller.start(args.url, config)
    try:
        while not controller.wait(0.5):
            pass
    except KeyboardInterrupt:
        logging.warning("Interrupted. Cancelling.")
        controller.cancel()

    if job.phase != Phase.COMPLETED or job.error:
        sys.exit(1)
    print("Mirroring complete")
    print(f"Files saved: {job.stats.total_downloaded}")
    print(f"Size: {format_size(job.stats.total_bytes)}")
    if job.artifact:
        print(f"Output: {job.artifact}")


if __name__ == "__main__":
    main()
