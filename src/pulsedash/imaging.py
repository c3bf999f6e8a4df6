"""Image pipeline: protocol negotiation, aspect-fill scaling, gallery, fetch.

The fetch itself runs as a Textual worker; it reports back by putting a
``FetchOutcome`` into the pipeline's inbox, which the tick drains. Every
request carries a monotonically increasing token and outcomes for
superseded tokens are dropped.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import random
import re
import select
import sys
import termios
import tty
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError
from rich.color import Color
from rich.style import Style
from rich.text import Text

from pulsedash.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_CELL_SIZE = (8, 16)  # (width, height) in pixels
FETCH_TIMEOUT = 15.0
DEFAULT_PREFETCH = 1
DEFAULT_MAX_IMAGES = 20
SIXEL_COLORS = 64
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp")

KITTY_QUERY = "\x1b_Gi=31,s=1,v=1,a=q,t=d,f=24;AAAA\x1b\\"
CELL_SIZE_QUERY = "\x1b[16t"
DA1_QUERY = "\x1b[c"


class ProtocolKind(Enum):
    """Closed set of image rendering strategies."""

    KITTY = "kitty"
    ITERM2 = "iterm2"
    SIXEL = "sixel"
    HALFBLOCKS = "halfblocks"

    @property
    def is_graphics(self) -> bool:
        return self is not ProtocolKind.HALFBLOCKS


# ── Protocol negotiation ────────────────────────────────────────────────────


def protocol_from_env(env: Mapping[str, str]) -> ProtocolKind | None:
    """Identify the terminal from its environment, if it says who it is."""
    term = env.get("TERM", "")
    program = env.get("TERM_PROGRAM", "")
    if term == "xterm-kitty" or env.get("KITTY_WINDOW_ID") or program == "ghostty":
        return ProtocolKind.KITTY
    if program in ("iTerm.app", "WezTerm"):
        return ProtocolKind.ITERM2
    if term.startswith(("foot", "mlterm")) or program == "mlterm":
        return ProtocolKind.SIXEL
    return None


@dataclass(slots=True, frozen=True)
class QueryReply:
    protocol: ProtocolKind | None = None
    cell_size: tuple[int, int] | None = None


_KITTY_OK = re.compile(rb"\x1b_Gi=31;OK")
_CELL_SIZE = re.compile(rb"\x1b\[6;(\d+);(\d+)t")
_DA1 = re.compile(rb"\x1b\[\?([\d;]*)c")


def parse_query_reply(reply: bytes) -> QueryReply:
    """Interpret the terminal's answers to the kitty, cell-size and DA1 queries."""
    protocol: ProtocolKind | None = None
    if _KITTY_OK.search(reply):
        protocol = ProtocolKind.KITTY
    else:
        da1 = _DA1.search(reply)
        if da1 and "4" in da1.group(1).decode().split(";"):
            protocol = ProtocolKind.SIXEL

    cell_size = None
    size = _CELL_SIZE.search(reply)
    if size:
        height, width = int(size.group(1)), int(size.group(2))
        if height > 0 and width > 0:
            cell_size = (width, height)
    return QueryReply(protocol, cell_size)


def query_terminal(timeout: float = 0.1) -> bytes:
    """Ask the terminal about its graphics support.

    Must run before the TUI takes over the terminal. Returns whatever the
    terminal answered (possibly nothing) once the DA1 reply arrives or the
    timeout expires.
    """
    if not (sys.stdin.isatty() and sys.stdout.isatty()):
        return b""
    fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(fd)
    reply = b""
    try:
        tty.setcbreak(fd)
        sys.stdout.write(KITTY_QUERY + CELL_SIZE_QUERY + DA1_QUERY)
        sys.stdout.flush()
        while select.select([fd], [], [], timeout)[0]:
            reply += os.read(fd, 1024)
            if _DA1.search(reply):
                break
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
    return reply


class ProtocolPicker:
    """
    Picks one rendering strategy per session and remembers it.

    Order: explicit override, terminal identity from the environment,
    interactive capability query, then half blocks.
    """

    def __init__(
        self,
        override: str = "auto",
        env: Mapping[str, str] | None = None,
        query: Callable[[], bytes] | None = query_terminal,
    ) -> None:
        self.override = override
        self._env = os.environ if env is None else env
        self._query = query
        self._chosen: ProtocolKind | None = None
        self.cell_size: tuple[int, int] = DEFAULT_CELL_SIZE

    @property
    def chosen(self) -> ProtocolKind | None:
        return self._chosen

    def select(self) -> ProtocolKind:
        if self._chosen is None:
            self._chosen = self._negotiate()
            logger.info("image protocol: %s", self._chosen.value)
        return self._chosen

    def _negotiate(self) -> ProtocolKind:
        if self.override and self.override != "auto":
            try:
                return ProtocolKind(self.override)
            except ValueError:
                logger.warning("unknown image protocol override %r", self.override)

        reply = QueryReply()
        if self._query is not None:
            try:
                reply = parse_query_reply(self._query())
            except (OSError, termios.error) as e:
                logger.debug("terminal query failed: %s", e)
        if reply.cell_size:
            self.cell_size = reply.cell_size

        return protocol_from_env(self._env) or reply.protocol or ProtocolKind.HALFBLOCKS


# ── Scaling and encoding ────────────────────────────────────────────────────


def cover_resize(image: Image.Image, width: int, height: int) -> Image.Image:
    """Scale to exactly ``width`` x ``height``, filling and cropping centred."""
    return ImageOps.fit(
        image.convert("RGB"),
        (max(1, width), max(1, height)),
        method=Image.Resampling.LANCZOS,
        centering=(0.5, 0.5),
    )


def render_halfblocks(image: Image.Image, cols: int, rows: int) -> Text:
    """Two pixels per cell: upper half as foreground, lower as background."""
    scaled = cover_resize(image, cols, rows * 2)
    pixels = scaled.load()
    text = Text(no_wrap=True, overflow="crop")
    for row in range(rows):
        for col in range(cols):
            top = pixels[col, row * 2]
            bottom = pixels[col, row * 2 + 1]
            text.append(
                "▀",
                Style(color=Color.from_rgb(*top), bgcolor=Color.from_rgb(*bottom)),
            )
        if row < rows - 1:
            text.append("\n")
    return text


def _png_base64(image: Image.Image) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return base64.standard_b64encode(buffer.getvalue()).decode("ascii")


def encode_kitty(image: Image.Image, cols: int, rows: int) -> str:
    payload = _png_base64(image)
    chunks = [payload[i : i + 4096] for i in range(0, len(payload), 4096)] or [""]
    parts = []
    for i, chunk in enumerate(chunks):
        more = 1 if i < len(chunks) - 1 else 0
        if i == 0:
            parts.append(f"\x1b_Ga=T,f=100,q=2,c={cols},r={rows},m={more};{chunk}\x1b\\")
        else:
            parts.append(f"\x1b_Gm={more};{chunk}\x1b\\")
    return "".join(parts)


KITTY_CLEAR = "\x1b_Ga=d,d=A,q=2\x1b\\"


def encode_iterm2(image: Image.Image, cols: int, rows: int) -> str:
    payload = _png_base64(image)
    return (
        f"\x1b]1337;File=inline=1;width={cols};height={rows};"
        f"preserveAspectRatio=0:{payload}\x07"
    )


def encode_sixel(image: Image.Image, colors: int = SIXEL_COLORS) -> str:
    """DEC sixel encoding of an RGB image, quantized to ``colors`` entries."""
    quantized = image.convert("RGB").quantize(colors=colors)
    palette = quantized.getpalette() or []
    width, height = quantized.size
    pixels = quantized.load()
    used = sorted(set(quantized.getdata()))

    out = [f'\x1bPq"1;1;{width};{height}']
    for index in used:
        r, g, b = palette[index * 3 : index * 3 + 3]
        out.append(f"#{index};2;{r * 100 // 255};{g * 100 // 255};{b * 100 // 255}")

    for band in range(0, height, 6):
        band_rows = min(6, height - band)
        lines = []
        for index in used:
            line: list[str] = []
            run_char, run_len = "", 0
            seen = False
            for x in range(width):
                bits = 0
                for dy in range(band_rows):
                    if pixels[x, band + dy] == index:
                        bits |= 1 << dy
                seen = seen or bits != 0
                char = chr(63 + bits)
                if char == run_char:
                    run_len += 1
                    continue
                if run_len:
                    line.append(_sixel_run(run_char, run_len))
                run_char, run_len = char, 1
            if not seen:
                continue
            line.append(_sixel_run(run_char, run_len))
            lines.append(f"#{index}" + "".join(line))
        out.append("$".join(lines) + "-")

    out.append("\x1b\\")
    return "".join(out)


def _sixel_run(char: str, length: int) -> str:
    return f"!{length}{char}" if length > 3 else char * length


class ImageRenderer:
    """Encodes gallery images for one negotiated protocol, caching the last result."""

    def __init__(self, picker: ProtocolPicker) -> None:
        self.picker = picker
        self._cache_key: tuple[int, int, int, ProtocolKind] | None = None
        self._cached: Text | str = ""

    def render(self, entry: GalleryEntry, cols: int, rows: int) -> Text | str:
        """Half-block ``Text`` or a graphics escape sequence sized to the cells."""
        kind = self.picker.select()
        key = (id(entry), cols, rows, kind)
        if key == self._cache_key:
            return self._cached

        if kind is ProtocolKind.HALFBLOCKS:
            result: Text | str = render_halfblocks(entry.image, cols, rows)
        else:
            cell_w, cell_h = self.picker.cell_size
            scaled = cover_resize(entry.image, cols * cell_w, rows * cell_h)
            if kind is ProtocolKind.KITTY:
                result = encode_kitty(scaled, cols, rows)
            elif kind is ProtocolKind.ITERM2:
                result = encode_iterm2(scaled, cols, rows)
            else:
                result = encode_sixel(scaled)

        self._cache_key = key
        self._cached = result
        return result


# ── Gallery ─────────────────────────────────────────────────────────────────


class ImageSource(Enum):
    BUNDLED = "bundled"
    FETCHED = "fetched"


@dataclass(eq=False)
class GalleryEntry:
    image: Image.Image
    title: str
    source: ImageSource
    tags: tuple[str, ...] = ()
    hash: str = ""


def format_image_name(name: str) -> str:
    """'sakura_tree-01.png' -> 'sakura tree 01'."""
    stem = name
    dot = name.rfind(".")
    if dot > 0:
        stem = name[:dot]
    return stem.replace("_", " ").replace("-", " ")


def decode_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        raise FetchError(f"cannot decode image: {e}") from e
    return image


class Gallery:
    """
    Ordered images with a wrapping cursor.

    The cursor is -1 only while the gallery is empty.
    """

    def __init__(
        self,
        entries: Iterable[GalleryEntry] = (),
        max_size: int = DEFAULT_MAX_IMAGES,
        rng: random.Random | None = None,
    ) -> None:
        self.entries: list[GalleryEntry] = list(entries)
        self.max_size = max(1, max_size)
        self.cursor = len(self.entries) - 1
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def current(self) -> GalleryEntry | None:
        return self.entries[self.cursor] if self.entries else None

    def next(self) -> None:
        if self.entries:
            self.cursor = (self.cursor + 1) % len(self.entries)

    def previous(self) -> None:
        if self.entries:
            self.cursor = (self.cursor - 1) % len(self.entries)

    def random(self) -> None:
        """Jump to a uniformly chosen entry other than the current one."""
        count = len(self.entries)
        if count < 2:
            return
        pick = self._rng.randrange(count - 1)
        self.cursor = pick + 1 if pick >= self.cursor else pick

    def select(self, index: int) -> None:
        if 0 <= index < len(self.entries):
            self.cursor = index

    def index_of_hash(self, digest: str) -> int | None:
        if not digest:
            return None
        for i, entry in enumerate(self.entries):
            if entry.hash == digest:
                return i
        return None

    def add(self, entry: GalleryEntry, move: bool = True) -> int | None:
        """
        Append ``entry`` (or find its duplicate) and return its index.

        Returns None when a background add has no room: a full single-slot
        gallery keeps the image on screen and drops the new one.
        """
        existing = self.index_of_hash(entry.hash)
        if existing is not None:
            if move:
                self.cursor = existing
            return existing

        if not move and self.entries and self.max_size == 1:
            return None
        self.entries.append(entry)
        index = len(self.entries) - 1
        if move or self.cursor < 0:
            self.cursor = index
        while len(self.entries) > self.max_size:
            victim = 0 if self.cursor != 0 else 1
            del self.entries[victim]
            if victim < self.cursor:
                self.cursor -= 1
            if victim < index:
                index -= 1
        return index


def load_bundled(directory: Path) -> list[GalleryEntry]:
    """Images shipped in ``directory``, oldest first. Unreadable files are skipped."""
    if not directory.is_dir():
        return []
    paths = sorted(
        (p for p in directory.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES),
        key=lambda p: (p.stat().st_mtime, p.name),
    )
    entries: list[GalleryEntry] = []
    for path in paths:
        try:
            image = Image.open(path)
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            logger.warning("skipping image %s: %s", path.name, e)
            continue
        entries.append(GalleryEntry(image, format_image_name(path.name), ImageSource.BUNDLED))
    return entries


# ── Fetch ───────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class FetchedImage:
    data: bytes
    name: str
    hash: str


class ImageTransport(Protocol):
    async def fetch(self, endpoint: str, category: str) -> FetchedImage: ...


class HttpImageTransport:
    """Fetches a random image from the mirror's ``/api/random`` endpoint."""

    def __init__(self, timeout: float = FETCH_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, endpoint: str, category: str) -> FetchedImage:
        endpoint = endpoint.rstrip("/")
        url = f"{endpoint}/api/random?category={quote(category)}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self.transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                meta = response.json()
                image_url = meta["url"]
                if image_url.startswith("/"):
                    image_url = endpoint + image_url
                elif httpx.URL(image_url).is_relative_url:
                    image_url = response.url.join(image_url)
                image_response = await client.get(image_url)
                image_response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            raise FetchError(f"request failed: {e}") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise FetchError(f"unexpected response from {endpoint}") from e
        return FetchedImage(
            data=image_response.content,
            name=str(meta.get("id") or ""),
            hash=str(meta.get("hash") or ""),
        )


class FetchStatus(Enum):
    IDLE = "idle"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class FetchTicket:
    token: int
    prefetch: bool = False


@dataclass(slots=True)
class FetchOutcome:
    ticket: FetchTicket
    entry: GalleryEntry | None = None
    error: str | None = None


@dataclass
class ImagePipeline:
    """
    Gallery plus live-fetch bookkeeping.

    ``begin_fetch`` hands out tickets; ``run_fetch`` is the awaitable unit of
    work for one ticket; ``drain`` applies finished outcomes on the event
    loop. Only the newest foreground ticket and the newest prefetch ticket
    are honoured.
    """

    gallery: Gallery = field(default_factory=Gallery)
    transport: ImageTransport | None = None
    endpoint: str = ""
    category: str = "sfw"
    prefetch: int = DEFAULT_PREFETCH
    status: FetchStatus = FetchStatus.IDLE
    last_error: str | None = None
    show_info: bool = False
    inbox: deque[FetchOutcome] = field(default_factory=deque)
    _token: int = 0
    _foreground: int | None = None
    _background: int | None = None

    @property
    def live(self) -> bool:
        return self.transport is not None and bool(self.endpoint)

    @property
    def has_image(self) -> bool:
        return len(self.gallery) > 0

    @property
    def pending(self) -> bool:
        return self._foreground is not None

    def begin_fetch(self, prefetch: bool = False) -> FetchTicket | None:
        """Issue a ticket for a new fetch, or None when fetching is unavailable."""
        if not self.live:
            return None
        self._token += 1
        ticket = FetchTicket(self._token, prefetch)
        if prefetch:
            self._background = ticket.token
        else:
            self._foreground = ticket.token
            self.status = FetchStatus.PENDING
        return ticket

    async def run_fetch(self, ticket: FetchTicket) -> None:
        """Fetch and decode one image, then post the outcome to the inbox."""
        assert self.transport is not None
        try:
            fetched = await self.transport.fetch(self.endpoint, self.category)
            image = decode_image(fetched.data)
        except FetchError as e:
            self.submit(FetchOutcome(ticket, error=str(e)))
            return
        except Exception as e:
            logger.exception("unexpected error fetching image")
            self.submit(FetchOutcome(ticket, error=f"unexpected error: {e}"))
            return
        entry = GalleryEntry(
            image,
            format_image_name(fetched.name) or "untitled",
            ImageSource.FETCHED,
            tags=(self.category,),
            hash=fetched.hash,
        )
        self.submit(FetchOutcome(ticket, entry=entry))

    def submit(self, outcome: FetchOutcome) -> None:
        self.inbox.append(outcome)

    def drain(self) -> list[str]:
        """Apply queued outcomes. Returns error messages worth showing."""
        errors: list[str] = []
        while self.inbox:
            outcome = self.inbox.popleft()
            token = outcome.ticket.token
            if outcome.ticket.prefetch:
                if token != self._background:
                    logger.debug("dropping superseded prefetch %d", token)
                    continue
                self._background = None
            else:
                if token != self._foreground:
                    logger.debug("dropping superseded fetch %d", token)
                    continue
                self._foreground = None

            if outcome.error is not None:
                logger.warning("image fetch failed: %s", outcome.error)
                if not outcome.ticket.prefetch:
                    self.status = FetchStatus.FAILED
                    self.last_error = outcome.error
                    errors.append(f"fetch failed: {outcome.error}")
                continue

            assert outcome.entry is not None
            self.gallery.add(outcome.entry, move=not outcome.ticket.prefetch)
            if not outcome.ticket.prefetch:
                self.status = FetchStatus.READY
                self.last_error = None
        return errors

    def wants_prefetch(self) -> bool:
        if not self.live or self.prefetch < 1 or self.gallery.max_size < 2:
            return False
        if self._foreground is not None or self._background is not None:
            return False
        if self.status is not FetchStatus.READY:
            return False
        ahead = len(self.gallery) - 1 - self.gallery.cursor
        return ahead < self.prefetch
