# -*- coding: utf-8 -*-
import asyncio
from datetime import datetime, timedelta, timezone

from bulkgen.bulk.aggregator import ProgressAggregator, total_images
from bulkgen.domain.models import (
    DRAFT,
    STATUS_CANCELLED,
    STATUS_FINISHED,
    STATUS_PARTIAL,
    STATUS_RUNNING,
    UPSCALE,
    Album,
    GenerateEvent,
    Image,
)


class StubMaterializer:
    def __init__(self, grid_images: int = 4):
        self.grid_images = grid_images
        self.calls = []

    async def materialize(self, event, download=True, upscale_stage=False, thumbnail=False):
        self.calls.append(event)
        count = 1 if upscale_stage else self.grid_images
        return [Image(prompt_index=event.prompt_index, prompt=event.prompt, url=event.urls[0]) for _ in range(count)]


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _done(index, prompt, stage=DRAFT, lineage="", is_last=True, chain_ok=True, error=None):
    return GenerateEvent(
        prompt_index=index, prompt=prompt, stage=stage, lineage=lineage, progress=1.0, done=True,
        urls=[] if error else [f"https://cdn/{index}/{lineage or stage}.png"],
        is_last=is_last, chain_ok=chain_ok, error=error,
    )


def test_total_images():
    assert total_images(2, False) == 8
    assert total_images(2, True) == 40
    assert total_images(0, True) == 0


def test_percentage_eta_and_finished():
    clock = Clock()
    statuses = []
    album = Album(id="a", prompts=["a cat", "a dog"], created_at=datetime.fromtimestamp(0, timezone.utc))
    agg = ProgressAggregator(album, StubMaterializer(), observers=[statuses.append], clock=clock)

    async def run():
        clock.now = 120.0
        await agg.apply(_done(0, "a cat"))
        clock.now = 240.0
        await agg.apply(_done(1, "a dog"))
        return await agg.finish()

    result = asyncio.run(run())
    assert [s.percentage for s in statuses] == [50.0, 100.0]
    # 4 images 120s after the album was created -> 30s each, 4 left -> 2 minutes
    assert statuses[0].estimated == timedelta(minutes=2)
    assert statuses[1].estimated == timedelta(0)
    assert result.status == STATUS_FINISHED
    assert result.finished == [0, 1]
    assert len(result.images) == 8


def test_progress_events_only_track_levels():
    album = Album(id="a", prompts=["a cat"])
    statuses = []
    agg = ProgressAggregator(album, StubMaterializer(), observers=[statuses.append])

    async def run():
        await agg.apply(GenerateEvent(prompt_index=0, prompt="a cat", stage=DRAFT, progress=0.4))
        await agg.apply(GenerateEvent(prompt_index=0, prompt="a cat", stage=DRAFT, progress=0.2))

    asyncio.run(run())
    assert agg.task_progress == {"0:draft": 0.4}
    assert album.status == STATUS_RUNNING
    assert album.images == []
    assert statuses == []


def test_failed_events_report_errors_and_leave_prompt_open():
    album = Album(id="a", prompts=["a cat", "a dog"])
    statuses = []
    agg = ProgressAggregator(album, StubMaterializer(), observers=[statuses.append])

    async def run():
        await agg.apply(_done(0, "a cat", error="no result within 900s", chain_ok=False))
        await agg.apply(_done(1, "a dog"))
        return await agg.finish()

    result = asyncio.run(run())
    assert statuses[0].error and "no result" in statuses[0].error
    assert result.finished == [1]
    assert result.percentage == 50.0
    assert result.status == STATUS_PARTIAL


def test_broken_chain_is_not_finished():
    album = Album(id="a", prompts=["a cat"])
    agg = ProgressAggregator(album, StubMaterializer())
    asyncio.run(agg.apply(_done(0, "a cat", chain_ok=False)))
    assert len(album.images) == 4
    assert album.finished == []


def test_short_artifacts_keep_prompt_unfinished():
    album = Album(id="a", prompts=["a cat"])
    agg = ProgressAggregator(album, StubMaterializer(grid_images=2))
    asyncio.run(agg.apply(_done(0, "a cat")))
    assert len(album.images) == 2
    assert album.finished == []
    assert album.percentage == 50.0


def test_upscale_mode_keeps_only_upscales():
    album = Album(id="a", prompts=["a cat"])
    materializer = StubMaterializer()
    agg = ProgressAggregator(album, materializer, want_upscale=True)

    async def run():
        await agg.apply(_done(0, "a cat", is_last=False))
        for q in range(1, 5):
            await agg.apply(_done(0, "a cat", stage=UPSCALE, lineage=f"u{q}", is_last=q == 4))
        return await agg.finish()

    result = asyncio.run(run())
    assert all(e.stage == UPSCALE for e in materializer.calls)
    assert len(result.images) == 4
    assert result.finished == [0]
    assert result.status == STATUS_FINISHED


def test_percentage_never_decreases_and_cancel_status():
    album = Album(id="a", prompts=["a cat"], percentage=0.0)
    agg = ProgressAggregator(album, StubMaterializer())

    async def run():
        await agg.apply(_done(0, "a cat"))
        # a duplicate final must not push the album past its total
        await agg.apply(_done(0, "a cat"))
        return await agg.finish(cancelled=True)

    result = asyncio.run(run())
    assert result.percentage == 100.0
    assert result.finished == [0]
    assert result.status == STATUS_CANCELLED


def test_consume_until_closed_and_persist():
    album = Album(id="a", prompts=["a cat"])
    agg = ProgressAggregator(album, StubMaterializer())
    saved = []

    async def persist(data):
        saved.append(data)

    async def run():
        q = asyncio.Queue()
        q.put_nowait(GenerateEvent(prompt_index=0, prompt="a cat", stage=DRAFT, progress=0.5))
        q.put_nowait(_done(0, "a cat"))
        q.put_nowait(None)
        await agg.consume(q, persist=persist)

    asyncio.run(run())
    assert len(saved) == 1
    assert saved[0]["finished"] == [0]
    assert saved[0]["percentage"] == 100.0
