# -*- coding: utf-8 -*-
import asyncio
import logging
import os
import re
from typing import Any, List, Optional

from bulkgen.domain.errors import DownloadError, ImageProcessingError
from bulkgen.domain.models import GenerateEvent, Image
from bulkgen.utils import images as imgutil

log = logging.getLogger("materializer")

THUMBNAILS_DIR = "_thumbnails"
# Upscales are large single images, quadrants are already a quarter of the grid
UPSCALE_THUMB_FACTOR = 8
QUADRANT_THUMB_FACTOR = 4

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, limit: int = 40) -> str:
    slug = _SLUG_RE.sub("-", (text or "").lower()).strip("-")
    return (slug[:limit].rstrip("-")) or "prompt"


def base_name(event: GenerateEvent) -> str:
    """
    <index>_<slug>[_<lineage>], e.g. 0003_red-fox_v2_u3
    """
    name = f"{event.prompt_index:04d}_{slugify(event.prompt)}"
    if event.lineage:
        name = f"{name}_{event.lineage}"
    return name


class ArtifactMaterializer:
    """
    Turns finished results into stored files under one album directory.
    Every failure is logged and shortens the returned list; nothing raises.
    """

    def __init__(self, bot: Any, album_dir: str):
        self._bot = bot
        self.album_dir = album_dir

    def _write(self, rel_path: str, data: bytes) -> str:
        path = os.path.join(self.album_dir, rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
        return rel_path

    async def _in_thread(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    async def _thumbnail(self, data: bytes, factor: int, name: str) -> Optional[str]:
        try:
            thumb = await self._in_thread(imgutil.resize, factor, data)
            return await self._in_thread(self._write, os.path.join(THUMBNAILS_DIR, f"{name}.jpg"), thumb)
        except (ImageProcessingError, OSError) as e:
            log.error("Couldn't create thumbnail %s: %s", name, e)
            return None

    async def materialize(
        self,
        event: GenerateEvent,
        download: bool = True,
        upscale_stage: bool = False,
        thumbnail: bool = False,
    ) -> List[Image]:
        if not event.urls:
            return []
        url = event.urls[0]
        if not download:
            return [Image(prompt_index=event.prompt_index, prompt=event.prompt, url=url)]

        name = base_name(event)
        try:
            data = await self._bot.download(url)
        except DownloadError as e:
            log.error("Couldn't download %s: %s", url, e)
            return []
        ext = imgutil.sniff_extension(data)

        if upscale_stage:
            try:
                rel = await self._in_thread(self._write, f"{name}.{ext}", data)
            except OSError as e:
                log.error("Couldn't store %s: %s", name, e)
                return []
            thumb = await self._thumbnail(data, UPSCALE_THUMB_FACTOR, name) if thumbnail else None
            return [Image(prompt_index=event.prompt_index, prompt=event.prompt, url=url, file=rel, thumbnail=thumb)]

        try:
            parts = await self._in_thread(imgutil.split_grid, data)
        except ImageProcessingError as e:
            log.error("Couldn't split %s: %s", url, e)
            return []

        produced: List[Image] = []
        for n, part in enumerate(parts, start=1):
            part_name = f"{name}_{n}"
            try:
                rel = await self._in_thread(self._write, f"{part_name}.png", part)
            except OSError as e:
                log.error("Couldn't store %s: %s", part_name, e)
                break
            thumb = await self._thumbnail(part, QUADRANT_THUMB_FACTOR, part_name) if thumbnail else None
            produced.append(Image(prompt_index=event.prompt_index, prompt=event.prompt, url=url, file=rel, thumbnail=thumb))
        return produced
