# -*- coding: utf-8 -*-
import asyncio
import logging
import os
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from bulkgen.bulk.aggregator import ProgressAggregator
from bulkgen.bulk.correlator import StatusParser
from bulkgen.bulk.dispatcher import TaskDispatcher
from bulkgen.bulk.materializer import ArtifactMaterializer
from bulkgen.bulk.registry import AlbumRegistry, Container
from bulkgen.domain.errors import ConfigurationError
from bulkgen.domain.models import Album, Status
from bulkgen.infra.albums_repo import AlbumRepository
from bulkgen.midjourney.parser import parse_status

log = logging.getLogger("bulk")


class BulkHandle:
    """
    Returned by BulkService.start_bulk. `cancel()` asks the run to stop
    admitting work; `wait()` resolves with the album once every run feeding
    it has ended.
    """

    def __init__(self, album_id: str, container: Container, stop: asyncio.Event, runner: asyncio.Task):
        self.album_id = album_id
        self._container = container
        self._stop = stop
        self._runner = runner

    def cancel(self) -> None:
        if not self._stop.is_set():
            log.info("Cancelling bulk run for album %s", self.album_id)
            self._stop.set()

    def done(self) -> bool:
        return self._container.done.done()

    async def wait(self) -> Album:
        await asyncio.gather(self._runner, return_exceptions=True)
        return await asyncio.shield(self._container.done)


class BulkService:
    """
    Entry point for bulk generation: one call per StartBulk request.

    The first call for an album opens it (loads or creates the record,
    starts the aggregator); later calls for the same album while it is
    active join the same event channel.
    """

    def __init__(
        self,
        bot: Any,
        repo: AlbumRepository,
        registry: Optional[AlbumRegistry] = None,
        task_timeout: float = 900.0,
        grace: float = 30.0,
        parse: StatusParser = parse_status,
    ):
        self._bot = bot
        self._repo = repo
        self._registry = registry or AlbumRegistry()
        self._dispatcher = TaskDispatcher(bot, parse=parse, task_timeout=task_timeout, grace=grace)

    async def start_bulk(
        self,
        album_id: str,
        prompts: Sequence[str],
        already_finished: Iterable[int] = (),
        want_variations: bool = False,
        want_upscale: bool = False,
        concurrency: int = 1,
        min_spacing: float = 0.0,
        on_update: Optional[Callable[[Status], None]] = None,
        download: bool = True,
        thumbnail: bool = False,
    ) -> BulkHandle:
        if not album_id:
            raise ConfigurationError("missing album id")
        if not prompts:
            raise ConfigurationError("missing prompt")
        if concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1")
        prompts = list(prompts)

        container, created = await self._acquire(album_id)
        try:
            if created:
                try:
                    await self._open(container, prompts, want_variations, want_upscale, download, thumbnail)
                except BaseException as e:
                    self._fail_open(container, e)
                    await self._registry.remove(album_id)
                    raise
            else:
                await container.ready.wait()
            album = container.album
            if album is None:
                raise ValueError(f"album {album_id} failed to open")
            if container.stages != (want_variations, want_upscale):
                raise ValueError(f"album {album_id} is already running with different stages")
            missing = [p for p in prompts if p not in album.prompts]
            if missing:
                raise ValueError(f"album {album_id} is running; {len(missing)} prompt(s) are not part of it")
        except BaseException:
            # a closed container holds no references; its id may already be reused
            if not container.closed:
                await self._registry.release(album_id)
            raise

        if on_update is not None:
            container.observers.append(on_update)

        wanted = set(prompts)
        done_texts = {prompts[i] for i in already_finished if 0 <= i < len(prompts)}
        skip: Set[int] = set(album.finished) | set(container.claimed)
        for i, p in enumerate(album.prompts):
            if p not in wanted or p in done_texts:
                skip.add(i)
        own = {i for i in range(len(album.prompts)) if i not in skip}
        container.claimed |= own

        stop = asyncio.Event()
        runner = asyncio.create_task(self._produce(
            container, list(album.prompts), skip, own,
            want_variations, want_upscale, concurrency, min_spacing, stop,
        ))
        return BulkHandle(album_id, container, stop, runner)

    async def _acquire(self, album_id: str) -> Tuple[Container, bool]:
        """
        Take a reference on the album's container. A container whose channel is
        already closed is still being recorded; wait for it to finish and be
        removed before opening the album again.
        """
        while True:
            container, created = await self._registry.get_or_create(album_id)
            if not container.closed:
                return container, created
            log.info("Album %s is still being recorded, waiting before reopening", album_id)
            await asyncio.wait([container.done])
            await container.removed.wait()

    def _fail_open(self, container: Container, exc: BaseException) -> None:
        log.error("Couldn't open album %s: %s", container.album_id, exc)
        container.close()
        container.ready.set()
        if not container.done.done():
            container.done.set_exception(exc if isinstance(exc, Exception) else RuntimeError(str(exc)))
            # joiners learn about the failure through container.album
            container.done.add_done_callback(lambda f: f.exception())

    async def _open(
        self,
        container: Container,
        prompts: List[str],
        want_variations: bool,
        want_upscale: bool,
        download: bool,
        thumbnail: bool,
    ) -> None:
        album_id = container.album_id
        loop = asyncio.get_running_loop()
        album = await loop.run_in_executor(None, lambda: self._repo.load(album_id))
        if album is None:
            album = Album(id=album_id, prompts=list(prompts))
            log.info("New album %s with %d prompt(s)", album_id, len(prompts))
        else:
            added = [p for p in prompts if p not in album.prompts]
            album.prompts.extend(added)
            # images of unfinished prompts are regenerated from scratch
            keep = set(album.finished)
            dropped = len(album.images)
            album.images = [im for im in album.images if im.prompt_index in keep]
            dropped -= len(album.images)
            log.info("Resuming album %s: %d/%d prompt(s) finished, %d new, %d stale image(s) dropped",
                     album_id, len(album.finished), len(album.prompts), len(added), dropped)

        album_dir = self._repo.album_dir(album_id)
        await loop.run_in_executor(None, lambda: os.makedirs(album_dir, exist_ok=True))
        aggregator = ProgressAggregator(
            album,
            ArtifactMaterializer(self._bot, album_dir),
            want_variations=want_variations,
            want_upscale=want_upscale,
            download=download,
            thumbnail=thumbnail,
        )
        # observers joining later are seen by the aggregator
        aggregator.observers = container.observers
        await self._persist(album.to_dict())

        container.album = album
        container.stages = (want_variations, want_upscale)
        container.consumer = asyncio.create_task(self._consume(container, aggregator))
        container.ready.set()

    async def _persist(self, data: Dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self._repo.save_dict(data))

    async def _consume(self, container: Container, aggregator: ProgressAggregator) -> None:
        try:
            await aggregator.consume(container.events, persist=self._persist)
        finally:
            try:
                await aggregator.finish(cancelled=container.cancelled)
                await self._persist(await aggregator.snapshot())
            finally:
                # the album can be reopened only once this run is fully recorded
                await self._registry.remove(container.album_id)
                if not container.done.done():
                    container.done.set_result(aggregator.album)

    async def _produce(
        self,
        container: Container,
        prompts: List[str],
        skip: Set[int],
        own: Set[int],
        want_variations: bool,
        want_upscale: bool,
        concurrency: int,
        min_spacing: float,
        stop: asyncio.Event,
    ) -> None:
        try:
            async for event in self._dispatcher.run(
                prompts,
                already_finished=skip,
                want_variations=want_variations,
                want_upscale=want_upscale,
                concurrency=concurrency,
                min_spacing=min_spacing,
                stop=stop,
            ):
                if stop.is_set():
                    # results landing during the grace period leave the album as it was
                    if event.done:
                        log.info("Dropping %s result for prompt #%d after cancellation", event.stage, event.prompt_index)
                    continue
                if not container.closed:
                    container.events.put_nowait(event)
        except asyncio.CancelledError:
            stop.set()
            raise
        except Exception as e:
            log.exception("Bulk run for album %s failed: %s", container.album_id, e)
        finally:
            if stop.is_set():
                container.cancelled = True
            container.claimed -= own
            await self._registry.release(container.album_id)
