"""Tests for the image pipeline."""

import io
import random

import httpx
import pytest
from PIL import Image

from pulsedash.errors import FetchError
from pulsedash.imaging import (
    DEFAULT_CELL_SIZE,
    FetchedImage,
    FetchOutcome,
    FetchStatus,
    Gallery,
    GalleryEntry,
    HttpImageTransport,
    ImagePipeline,
    ImageRenderer,
    ImageSource,
    ProtocolKind,
    ProtocolPicker,
    cover_resize,
    decode_image,
    encode_iterm2,
    encode_kitty,
    encode_sixel,
    format_image_name,
    load_bundled,
    parse_query_reply,
    protocol_from_env,
    render_halfblocks,
)


def _image(width=40, height=20, color=(200, 30, 30)) -> Image.Image:
    return Image.new("RGB", (width, height), color)


def _entry(title="img", digest="") -> GalleryEntry:
    return GalleryEntry(_image(), title, ImageSource.BUNDLED, hash=digest)


def _png_bytes(width=16, height=16) -> bytes:
    buffer = io.BytesIO()
    _image(width, height).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeTransport:
    """Hands out canned images or failures, recording each call."""

    def __init__(self, data: bytes | None = None, error: str | None = None) -> None:
        self.data = data if data is not None else _png_bytes()
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.counter = 0

    async def fetch(self, endpoint: str, category: str) -> FetchedImage:
        self.calls.append((endpoint, category))
        if self.error:
            raise FetchError(self.error)
        self.counter += 1
        return FetchedImage(self.data, f"pic_{self.counter}.png", f"hash{self.counter}")


def _pipeline(count=0, transport=None, **kwargs) -> ImagePipeline:
    gallery = Gallery([_entry(f"e{i}", f"h{i}") for i in range(count)])
    return ImagePipeline(
        gallery=gallery,
        transport=transport if transport is not None else FakeTransport(),
        endpoint="https://img.example.com",
        **kwargs,
    )


class TestGallery:
    def test_cursor_starts_at_newest(self):
        assert Gallery([_entry(), _entry()]).cursor == 1
        empty = Gallery()
        assert empty.cursor == -1
        assert empty.current is None

    def test_next_wraps(self):
        gallery = Gallery([_entry() for _ in range(3)])
        gallery.select(0)
        visited = []
        for _ in range(4):
            gallery.next()
            visited.append(gallery.cursor)
        assert visited == [1, 2, 0, 1]

    def test_previous_from_zero_wraps_to_last(self):
        gallery = Gallery([_entry() for _ in range(5)])
        gallery.select(0)
        gallery.previous()
        assert gallery.cursor == 4

    def test_next_then_previous_is_identity(self):
        gallery = Gallery([_entry() for _ in range(4)])
        for start in range(4):
            gallery.select(start)
            gallery.next()
            gallery.previous()
            assert gallery.cursor == start

    def test_random_never_picks_current(self):
        gallery = Gallery([_entry() for _ in range(4)], rng=random.Random(7))
        for _ in range(50):
            before = gallery.cursor
            gallery.random()
            assert gallery.cursor != before
            assert 0 <= gallery.cursor < 4

    def test_random_single_entry_is_noop(self):
        gallery = Gallery([_entry()])
        gallery.random()
        assert gallery.cursor == 0

    def test_navigation_on_empty_gallery(self):
        gallery = Gallery()
        gallery.next()
        gallery.previous()
        gallery.random()
        assert gallery.cursor == -1

    def test_duplicate_hash_moves_cursor_instead_of_appending(self):
        gallery = Gallery([_entry("a", "x"), _entry("b", "y")])
        assert gallery.add(_entry("again", "x")) == 0
        assert len(gallery) == 2
        assert gallery.cursor == 0

    def test_add_without_move(self):
        gallery = Gallery([_entry("a", "x")])
        gallery.add(_entry("b", "y"), move=False)
        assert gallery.cursor == 0
        assert len(gallery) == 2

    def test_add_to_empty_gallery_sets_cursor(self):
        gallery = Gallery()
        gallery.add(_entry("a", "x"), move=False)
        assert gallery.cursor == 0

    def test_eviction_removes_oldest(self):
        gallery = Gallery(max_size=3)
        for i in range(5):
            gallery.add(_entry(f"e{i}", f"h{i}"))
        assert [e.title for e in gallery.entries] == ["e2", "e3", "e4"]
        assert gallery.current.title == "e4"

    def test_eviction_spares_entry_under_cursor(self):
        gallery = Gallery([_entry(f"e{i}", f"h{i}") for i in range(3)], max_size=3)
        gallery.select(0)
        gallery.add(_entry("new", "hn"), move=False)
        assert [e.title for e in gallery.entries] == ["e0", "e2", "new"]
        assert gallery.current.title == "e0"

    def test_single_slot_background_add_keeps_current(self):
        gallery = Gallery([_entry("a", "x")], max_size=1)
        assert gallery.add(_entry("b", "y"), move=False) is None
        assert [e.title for e in gallery.entries] == ["a"]
        assert gallery.cursor == 0

    def test_single_slot_foreground_add_replaces(self):
        gallery = Gallery([_entry("a", "x")], max_size=1)
        assert gallery.add(_entry("b", "y")) == 0
        assert [e.title for e in gallery.entries] == ["b"]
        assert gallery.current.title == "b"

    def test_add_returns_index_after_eviction(self):
        gallery = Gallery([_entry(f"e{i}", f"h{i}") for i in range(3)], max_size=3)
        gallery.select(0)
        assert gallery.add(_entry("new", "hn"), move=False) == 2


class TestScaling:
    @pytest.mark.parametrize("size", [(1, 1), (10, 3), (80, 24), (3, 50)])
    def test_cover_resize_exact_size(self, size):
        assert cover_resize(_image(123, 77), *size).size == size

    def test_cover_resize_clamps_to_one_pixel(self):
        assert cover_resize(_image(), 0, 0).size == (1, 1)

    def test_halfblocks_dimensions(self):
        text = render_halfblocks(_image(), 12, 5)
        lines = text.plain.split("\n")
        assert len(lines) == 5
        assert all(line == "▀" * 12 for line in lines)

    def test_encoders_emit_escape_sequences(self):
        image = _image(16, 12)
        assert encode_kitty(image, 4, 2).startswith("\x1b_Ga=T,f=100")
        assert encode_iterm2(image, 4, 2).startswith("\x1b]1337;File=inline=1")
        sixel = encode_sixel(image, colors=4)
        assert sixel.startswith("\x1bPq")
        assert sixel.endswith("\x1b\\")

    def test_kitty_payload_is_chunked(self):
        noisy = Image.effect_noise((256, 256), 100).convert("RGB")
        encoded = encode_kitty(noisy, 10, 5)
        assert encoded.count("\x1b_G") > 1
        assert encoded.rstrip("\\").endswith("\x1b")


class TestNegotiation:
    @pytest.mark.parametrize(
        "env, expected",
        [
            ({"TERM": "xterm-kitty"}, ProtocolKind.KITTY),
            ({"KITTY_WINDOW_ID": "3"}, ProtocolKind.KITTY),
            ({"TERM_PROGRAM": "ghostty"}, ProtocolKind.KITTY),
            ({"TERM_PROGRAM": "iTerm.app"}, ProtocolKind.ITERM2),
            ({"TERM_PROGRAM": "WezTerm"}, ProtocolKind.ITERM2),
            ({"TERM": "foot-extra"}, ProtocolKind.SIXEL),
            ({"TERM": "xterm-256color"}, None),
            ({}, None),
        ],
    )
    def test_protocol_from_env(self, env, expected):
        assert protocol_from_env(env) is expected

    def test_parse_kitty_reply(self):
        reply = parse_query_reply(b"\x1b_Gi=31;OK\x1b\\\x1b[6;18;9t\x1b[?62;22c")
        assert reply.protocol is ProtocolKind.KITTY
        assert reply.cell_size == (9, 18)

    def test_parse_sixel_attribute(self):
        assert parse_query_reply(b"\x1b[?62;4;22c").protocol is ProtocolKind.SIXEL
        assert parse_query_reply(b"\x1b[?62;14;22c").protocol is None

    def test_parse_empty_reply(self):
        reply = parse_query_reply(b"")
        assert reply.protocol is None
        assert reply.cell_size is None

    def test_override_wins(self):
        calls = []
        picker = ProtocolPicker("sixel", env={"TERM": "xterm-kitty"}, query=lambda: calls.append(1) or b"")
        assert picker.select() is ProtocolKind.SIXEL
        assert calls == []

    def test_env_beats_query(self):
        picker = ProtocolPicker(env={"TERM_PROGRAM": "iTerm.app"}, query=lambda: b"\x1b_Gi=31;OK\x1b\\")
        assert picker.select() is ProtocolKind.ITERM2

    def test_query_used_when_env_silent(self):
        picker = ProtocolPicker(env={}, query=lambda: b"\x1b_Gi=31;OK\x1b\\\x1b[6;20;10t")
        assert picker.select() is ProtocolKind.KITTY
        assert picker.cell_size == (10, 20)

    def test_fallback_to_halfblocks(self):
        picker = ProtocolPicker(env={}, query=None)
        assert picker.select() is ProtocolKind.HALFBLOCKS
        assert picker.cell_size == DEFAULT_CELL_SIZE

    def test_bad_override_falls_through(self):
        picker = ProtocolPicker("hologram", env={}, query=None)
        assert picker.select() is ProtocolKind.HALFBLOCKS

    def test_choice_is_cached(self):
        calls = []

        def query():
            calls.append(1)
            return b""

        picker = ProtocolPicker(env={}, query=query)
        assert picker.chosen is None
        picker.select()
        picker.select()
        assert calls == [1]
        assert picker.chosen is ProtocolKind.HALFBLOCKS

    def test_query_error_is_tolerated(self):
        def query():
            raise OSError("not a tty")

        assert ProtocolPicker(env={}, query=query).select() is ProtocolKind.HALFBLOCKS


class TestRenderer:
    def test_halfblocks_render_cached(self):
        renderer = ImageRenderer(ProtocolPicker("halfblocks", query=None))
        entry = _entry()
        first = renderer.render(entry, 8, 4)
        assert first is renderer.render(entry, 8, 4)
        assert renderer.render(entry, 9, 4) is not first

    def test_graphics_render_is_escape_string(self):
        renderer = ImageRenderer(ProtocolPicker("iterm2", query=None))
        rendered = renderer.render(_entry(), 4, 2)
        assert isinstance(rendered, str)
        assert rendered.startswith("\x1b]1337")


class TestHelpers:
    def test_format_image_name(self):
        assert format_image_name("sakura_tree-01.png") == "sakura tree 01"
        assert format_image_name("plain") == "plain"
        assert format_image_name(".hidden") == ".hidden"

    def test_decode_image(self):
        assert decode_image(_png_bytes(5, 7)).size == (5, 7)
        with pytest.raises(FetchError):
            decode_image(b"not an image")

    def test_load_bundled(self, tmp_path):
        _image().save(tmp_path / "first_one.png")
        (tmp_path / "broken.png").write_bytes(b"junk")
        (tmp_path / "notes.txt").write_text("ignored")
        entries = load_bundled(tmp_path)
        assert [e.title for e in entries] == ["first one"]
        assert entries[0].source is ImageSource.BUNDLED
        assert load_bundled(tmp_path / "missing") == []


class TestPipeline:
    def test_not_live_without_endpoint(self):
        pipeline = ImagePipeline(transport=FakeTransport())
        assert not pipeline.live
        assert pipeline.begin_fetch() is None
        assert pipeline.status is FetchStatus.IDLE

    def test_tokens_increase(self):
        pipeline = _pipeline()
        first = pipeline.begin_fetch()
        second = pipeline.begin_fetch()
        assert second.token > first.token
        assert pipeline.pending
        assert pipeline.status is FetchStatus.PENDING

    def test_failed_fetch_leaves_gallery_unchanged(self):
        pipeline = _pipeline(count=2)
        ticket = pipeline.begin_fetch()
        pipeline.submit(FetchOutcome(ticket, error="timeout"))

        assert pipeline.drain() == ["fetch failed: timeout"]
        assert len(pipeline.gallery) == 2
        assert pipeline.gallery.cursor == 1
        assert pipeline.status is FetchStatus.FAILED
        assert pipeline.last_error == "timeout"
        assert not pipeline.pending

    def test_stale_outcome_is_discarded(self):
        pipeline = _pipeline()
        old = pipeline.begin_fetch()
        new = pipeline.begin_fetch()
        pipeline.submit(FetchOutcome(old, entry=_entry("old", "o")))
        pipeline.drain()
        assert len(pipeline.gallery) == 0
        assert pipeline.pending

        pipeline.submit(FetchOutcome(new, entry=_entry("new", "n")))
        pipeline.drain()
        assert pipeline.gallery.current.title == "new"
        assert pipeline.status is FetchStatus.READY

    def test_prefetch_appends_without_moving_cursor(self):
        pipeline = _pipeline(count=2)
        pipeline.gallery.select(1)
        pipeline.status = FetchStatus.READY
        assert pipeline.wants_prefetch()

        ticket = pipeline.begin_fetch(prefetch=True)
        assert not pipeline.pending
        assert not pipeline.wants_prefetch()
        pipeline.submit(FetchOutcome(ticket, entry=_entry("ahead", "a")))
        pipeline.drain()

        assert len(pipeline.gallery) == 3
        assert pipeline.gallery.cursor == 1
        assert not pipeline.wants_prefetch()

    def test_prefetch_failure_is_silent(self):
        pipeline = _pipeline(count=1)
        pipeline.status = FetchStatus.READY
        ticket = pipeline.begin_fetch(prefetch=True)
        pipeline.submit(FetchOutcome(ticket, error="boom"))
        assert pipeline.drain() == []
        assert pipeline.status is FetchStatus.READY

    def test_no_prefetch_before_first_success(self):
        pipeline = _pipeline()
        assert not pipeline.wants_prefetch()

    @pytest.mark.asyncio
    async def test_run_fetch_success(self):
        transport = FakeTransport()
        pipeline = _pipeline(transport=transport, category="landscape")
        ticket = pipeline.begin_fetch()
        await pipeline.run_fetch(ticket)
        pipeline.drain()

        assert transport.calls == [("https://img.example.com", "landscape")]
        entry = pipeline.gallery.current
        assert entry.title == "pic 1"
        assert entry.source is ImageSource.FETCHED
        assert entry.tags == ("landscape",)
        assert entry.hash == "hash1"
        assert entry.image.size == (16, 16)

    @pytest.mark.asyncio
    async def test_run_fetch_transport_error(self):
        pipeline = _pipeline(transport=FakeTransport(error="request failed: 503"))
        ticket = pipeline.begin_fetch()
        await pipeline.run_fetch(ticket)
        assert pipeline.drain() == ["fetch failed: request failed: 503"]
        assert not pipeline.has_image

    @pytest.mark.asyncio
    async def test_run_fetch_undecodable_bytes(self):
        pipeline = _pipeline(transport=FakeTransport(data=b"<html>nope</html>"))
        ticket = pipeline.begin_fetch()
        await pipeline.run_fetch(ticket)
        errors = pipeline.drain()
        assert len(errors) == 1
        assert "cannot decode image" in errors[0]
        assert pipeline.status is FetchStatus.FAILED

    def test_single_slot_gallery_never_prefetches(self):
        pipeline = ImagePipeline(
            gallery=Gallery([_entry("a", "x")], max_size=1),
            transport=FakeTransport(),
            endpoint="https://img.example.com",
        )
        pipeline.status = FetchStatus.READY
        assert not pipeline.wants_prefetch()

    def test_prefetch_into_full_single_slot_gallery(self):
        pipeline = ImagePipeline(
            gallery=Gallery([_entry("a", "x")], max_size=1),
            transport=FakeTransport(),
            endpoint="https://img.example.com",
        )
        pipeline.status = FetchStatus.READY
        ticket = pipeline.begin_fetch(prefetch=True)
        pipeline.submit(FetchOutcome(ticket, entry=_entry("b", "y")))
        assert pipeline.drain() == []
        assert pipeline.gallery.current.title == "a"
        assert len(pipeline.gallery) == 1

    @pytest.mark.asyncio
    async def test_run_fetch_oversized_image(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        pipeline = _pipeline(transport=FakeTransport(data=_png_bytes(40, 40)))
        ticket = pipeline.begin_fetch()
        await pipeline.run_fetch(ticket)
        errors = pipeline.drain()
        assert len(errors) == 1
        assert "cannot decode image" in errors[0]
        assert pipeline.status is FetchStatus.FAILED
        assert not pipeline.pending

    @pytest.mark.asyncio
    async def test_run_fetch_unexpected_error_still_reports(self):
        class BrokenTransport:
            async def fetch(self, endpoint, category):
                raise RuntimeError("stream consumed")

        pipeline = _pipeline(transport=BrokenTransport())
        ticket = pipeline.begin_fetch()
        await pipeline.run_fetch(ticket)
        assert pipeline.drain() == ["fetch failed: unexpected error: stream consumed"]
        assert pipeline.status is FetchStatus.FAILED
        assert not pipeline.pending
        assert pipeline.begin_fetch() is not None


class TestHttpTransport:
    @staticmethod
    def _mirror(image_url: str, seen: list[str]) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            if request.url.path.endswith("/api/random"):
                return httpx.Response(200, json={"url": image_url, "id": "sunset.png", "hash": "abc"})
            return httpx.Response(200, content=_png_bytes())

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_rooted_url_keeps_endpoint_prefix(self):
        seen: list[str] = []
        transport = HttpImageTransport(transport=self._mirror("/files/sunset.png", seen))
        fetched = await transport.fetch("https://img.example.com/mirror/", "sfw")
        assert seen == [
            "https://img.example.com/mirror/api/random?category=sfw",
            "https://img.example.com/mirror/files/sunset.png",
        ]
        assert fetched.name == "sunset.png"
        assert fetched.hash == "abc"

    @pytest.mark.asyncio
    async def test_relative_url_resolves_against_metadata_url(self):
        seen: list[str] = []
        transport = HttpImageTransport(transport=self._mirror("files/sunset.png", seen))
        await transport.fetch("https://img.example.com", "sfw")
        assert seen[1] == "https://img.example.com/api/files/sunset.png"

    @pytest.mark.asyncio
    async def test_absolute_url_used_as_is(self):
        seen: list[str] = []
        transport = HttpImageTransport(transport=self._mirror("https://cdn.example.net/x.png", seen))
        await transport.fetch("https://img.example.com", "sfw")
        assert seen[1] == "https://cdn.example.net/x.png"

    @pytest.mark.asyncio
    async def test_http_error_becomes_fetch_error(self):
        transport = HttpImageTransport(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(FetchError, match="request failed"):
            await transport.fetch("https://img.example.com", "sfw")
