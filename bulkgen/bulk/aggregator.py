# -*- coding: utf-8 -*-
import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from bulkgen.domain.models import (
    STATUS_CANCELLED,
    STATUS_FINISHED,
    STATUS_PARTIAL,
    STATUS_RUNNING,
    UPSCALE,
    Album,
    GenerateEvent,
    Image,
    Status,
)

log = logging.getLogger("aggregator")

Observer = Callable[[Status], None]


def total_images(prompt_count: int, want_variations: bool) -> int:
    """
    Four quadrant images per prompt; with variations, the draft set plus
    four variation grids.
    """
    return prompt_count * 4 * (5 if want_variations else 1)


class ProgressAggregator:
    """
    Folds the GenerateEvent stream of one album into the Album record.
    The album is mutated only here and only under the lock; downloads and
    image work happen before the lock is taken.
    """

    def __init__(
        self,
        album: Album,
        materializer: Any,
        want_variations: bool = False,
        want_upscale: bool = False,
        download: bool = True,
        thumbnail: bool = False,
        observers: Optional[Iterable[Observer]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.album = album
        self._materializer = materializer
        self.want_variations = want_variations
        self.want_upscale = want_upscale
        self.download = download
        self.thumbnail = thumbnail
        self.observers: List[Observer] = list(observers or [])
        self._clock = clock
        self._lock = asyncio.Lock()
        # prompts that lost at least one artifact; never marked finished
        self._short: Set[int] = set()
        self.task_progress: Dict[str, float] = {}
        self.total = total_images(len(album.prompts), want_variations)
        album.percentage = self._percentage()

    def _percentage(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, 100.0 * len(self.album.images) / self.total)

    def _notify(self, status: Status) -> None:
        for observer in list(self.observers):
            try:
                observer(status)
            except Exception as e:
                log.exception("Progress observer failed: %s", e)

    def _wants_images(self, event: GenerateEvent) -> bool:
        if not event.ok or not event.urls:
            return False
        # with upscales on, grids are intermediate and only upscales are kept
        return event.stage == UPSCALE or not self.want_upscale

    def _expected(self, event: GenerateEvent) -> int:
        if not self.download or event.stage == UPSCALE:
            return 1
        return 4

    async def apply(self, event: GenerateEvent) -> None:
        images: List[Image] = []
        if self._wants_images(event):
            images = await self._materializer.materialize(
                event,
                download=self.download,
                upscale_stage=event.stage == UPSCALE,
                thumbnail=self.thumbnail,
            )

        status: Optional[Status] = None
        async with self._lock:
            album = self.album
            album.status = STATUS_RUNNING
            album.touch()
            prev = self.task_progress.get(event.key, 0.0)
            self.task_progress[event.key] = max(prev, event.progress)
            if not event.done:
                return

            if self._wants_images(event) and len(images) < self._expected(event):
                self._short.add(event.prompt_index)
            if images:
                album.images.extend(images)
                if (
                    event.is_last
                    and event.chain_ok
                    and event.prompt_index not in self._short
                    and 0 <= event.prompt_index < len(album.prompts)
                    and event.prompt_index not in album.finished
                ):
                    album.finished.append(event.prompt_index)

            percentage = self._percentage()
            if percentage > album.percentage:
                # average time per image since the album was created
                estimated: Optional[timedelta] = None
                if album.images:
                    elapsed = max(0.0, self._clock() - album.created_at.timestamp())
                    avg = elapsed / len(album.images)
                    remaining = max(0, self.total - len(album.images)) * avg
                    estimated = timedelta(minutes=round(remaining / 60.0))
                album.percentage = percentage
                status = Status(percentage=percentage, estimated=estimated)
            current = album.percentage

        if event.error:
            self._notify(Status(percentage=current, error=f"prompt #{event.prompt_index} {event.stage}: {event.error}"))
        if status is not None:
            log.info("Album %s: %.1f%% (eta %s)", self.album.id, status.percentage, status.estimated)
            self._notify(status)

    async def finish(self, cancelled: bool = False) -> Album:
        async with self._lock:
            album = self.album
            if cancelled:
                album.status = STATUS_CANCELLED
            elif album.percentage >= 100.0:
                album.status = STATUS_FINISHED
            else:
                album.status = STATUS_PARTIAL
            album.touch()
        log.info("Album %s %s (%.1f%%, %d image(s), %d/%d prompt(s) finished)",
                 album.id, album.status, album.percentage, len(album.images), len(album.finished), len(album.prompts))
        return album

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            return self.album.to_dict()

    async def consume(
        self,
        events: "asyncio.Queue[Optional[GenerateEvent]]",
        persist: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
    ) -> None:
        """
        Apply events until the channel is closed (None).
        """
        while True:
            event = await events.get()
            if event is None:
                return
            try:
                await self.apply(event)
            except Exception as e:
                log.exception("Failed to apply event for prompt #%d: %s", event.prompt_index, e)
            if event.done and persist is not None:
                await persist(await self.snapshot())
