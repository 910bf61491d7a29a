# -*- coding: utf-8 -*-
import asyncio
import io
from typing import Dict, List, Optional, Tuple

import pytest
from PIL import Image as PILImage

from bulkgen.domain.errors import DownloadError, TransportError
from bulkgen.domain.models import DRAFT, UPSCALE, VARIATION, RawMessage, StageOptions

QUADRANT_COLORS = [(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 255)]


def _png(im: PILImage.Image) -> bytes:
    buf = io.BytesIO()
    im.save(buf, format="PNG")
    return buf.getvalue()


def make_grid_png(size: int = 64) -> bytes:
    """2x2 grid, one solid color per quadrant (TL red, TR green, BL blue, BR white)."""
    im = PILImage.new("RGB", (size, size))
    half = size // 2
    for n, color in enumerate(QUADRANT_COLORS):
        x, y = (n % 2) * half, (n // 2) * half
        im.paste(color, (x, y, x + half, y + half))
    return _png(im)


def make_single_png(size: int = 48, color: Tuple[int, int, int] = (10, 20, 30)) -> bytes:
    return _png(PILImage.new("RGB", (size, size), color))


class FakeBot:
    """
    Scripted Midjourney stand-in. Every command produces, on the shared feed:
      waiting message (echoing the nonce) -> 50% edit -> final edit with an
    attachment and, for grids, U1..U4 / V1..V4 buttons.
    `slow` adds per-prompt delay before the final; with `final_as_new` the
    final arrives as a fresh message without the nonce.
    """

    def __init__(
        self,
        delay: float = 0.005,
        hang: Tuple[str, ...] = (),
        buttons: bool = True,
        noise: bool = False,
        broken_downloads: bool = False,
        slow: Optional[Dict[str, float]] = None,
        final_as_new: bool = False,
    ):
        self.delay = delay
        self.hang = set(hang)
        self.buttons = buttons
        self.noise = noise
        self.broken_downloads = broken_downloads
        self.slow = dict(slow or {})
        self.final_as_new = final_as_new
        self.sent_at: List[float] = []
        self.sent: List[Tuple[str, StageOptions]] = []
        self.downloads: List[str] = []
        self.active = 0
        self.peak = 0
        self._subscribers: List["asyncio.Queue[RawMessage]"] = []
        self._scripts: List[asyncio.Task] = []
        self._ids = 1000
        self.grid = make_grid_png()
        self.single = make_single_png()

    def subscribe(self) -> "asyncio.Queue[RawMessage]":
        q: "asyncio.Queue[RawMessage]" = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "asyncio.Queue[RawMessage]") -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def inject(self, msg: RawMessage) -> None:
        for q in list(self._subscribers):
            q.put_nowait(msg)

    def drafts(self) -> List[str]:
        return [p for p, o in self.sent if o.stage == DRAFT]

    def stages(self, stage: str) -> List[StageOptions]:
        return [o for _, o in self.sent if o.stage == stage]

    async def send_command(self, prompt: str, options: StageOptions) -> str:
        if options.stage != DRAFT and not (options.message_id and options.custom_id):
            raise TransportError(f"{options.stage} requires a parent message and a button id")
        self.sent.append((prompt, options))
        self.sent_at.append(asyncio.get_running_loop().time())
        self.active += 1
        self.peak = max(self.peak, self.active)
        self._scripts.append(asyncio.create_task(self._script(prompt, options)))
        return options.nonce

    def _label(self, options: StageOptions) -> str:
        if options.stage == VARIATION:
            return "Variations (Strong) by <@42>"
        if options.stage == UPSCALE:
            return f"Image #{options.quadrant} <@42>"
        return "<@42>"

    def _buttons(self, message_id: str) -> Dict[str, str]:
        if not self.buttons:
            return {}
        out = {}
        for q in range(1, 5):
            out[f"U{q}"] = f"MJ::JOB::upsample::{q}::{message_id}"
            out[f"V{q}"] = f"MJ::JOB::variation::{q}::{message_id}"
        out["MJ::JOB::reroll::0::" + message_id] = "MJ::JOB::reroll::0::" + message_id
        return out

    async def _script(self, prompt: str, options: StageOptions) -> None:
        self._ids += 1
        mid = str(self._ids)
        ref = options.message_id
        head = f"**https://s.mj.run/ref {prompt} --v 5** - {self._label(options)}"
        await asyncio.sleep(self.delay)
        if self.noise:
            self.inject(RawMessage(id="noise-" + mid, channel_id="c", content="not a status at all"))
        self.inject(RawMessage(id=mid, channel_id="c", content=f"{head} (Waiting to start)",
                               nonce=options.nonce, reference_id=ref))
        if prompt in self.hang:
            return
        await asyncio.sleep(self.delay)
        self.inject(RawMessage(id=mid, channel_id="c", content=f"{head} (50%) (fast)",
                               reference_id=ref, event="MESSAGE_UPDATE"))
        await asyncio.sleep(self.delay + self.slow.get(prompt, 0.0))
        self.active -= 1
        kind = "upscale" if options.stage == UPSCALE else "grid"
        event = "MESSAGE_UPDATE"
        if self.final_as_new:
            self._ids += 1
            mid = str(self._ids)
            event = "MESSAGE_CREATE"
        self.inject(RawMessage(
            id=mid,
            channel_id="c",
            content=f"{head} (fast)",
            reference_id=ref,
            attachments=[f"https://cdn.example/{kind}/{mid}.png"],
            buttons={} if options.stage == UPSCALE else self._buttons(mid),
            event=event,
        ))

    async def download(self, url: str) -> bytes:
        self.downloads.append(url)
        if self.broken_downloads:
            raise DownloadError(f"GET {url}: 404")
        return self.single if "/upscale/" in url else self.grid


@pytest.fixture
def make_bot():
    def _make(**kwargs) -> FakeBot:
        return FakeBot(**kwargs)
    return _make


@pytest.fixture
def grid_png() -> bytes:
    return make_grid_png()


@pytest.fixture
def single_png() -> bytes:
    return make_single_png()


def pixel_of(data: bytes) -> Optional[Tuple[int, int, int]]:
    with PILImage.open(io.BytesIO(data)) as im:
        return im.convert("RGB").getpixel((im.width // 2, im.height // 2))


@pytest.fixture
def center_pixel():
    return pixel_of
