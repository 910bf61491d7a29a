# -*- coding: utf-8 -*-
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from bulkgen.domain.models import Album, GenerateEvent, Status

log = logging.getLogger("registry")

# Request kinds served by the registry loop
_GET_OR_CREATE = "get_or_create"
_RELEASE = "release"
_REMOVE = "remove"
_LIST = "list"


@dataclass
class Container:
    """
    One album's event channel plus the number of bulk calls feeding it.
    `None` on the channel marks that the last producer released it; the
    container stays registered until its consumer calls `remove`.
    """
    album_id: str
    events: "asyncio.Queue[Optional[GenerateEvent]]" = field(default_factory=asyncio.Queue)
    refs: int = 0
    closed: bool = False
    cancelled: bool = False
    album: Optional[Album] = None
    # (want_variations, want_upscale) fixed by the call that opened the album
    stages: Tuple[bool, bool] = (False, False)
    # prompt indices currently scheduled by some producer
    claimed: Set[int] = field(default_factory=set)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    # set once the registry dropped the container
    removed: asyncio.Event = field(default_factory=asyncio.Event)
    done: "asyncio.Future[Album]" = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    consumer: Optional[asyncio.Task] = None
    observers: List[Callable[[Status], None]] = field(default_factory=list)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.events.put_nowait(None)


class AlbumRegistry:
    """
    Owns the album_id -> Container map. Only the registry loop touches the
    map; callers talk to it through a request queue and await the reply.
    Releasing the last reference closes the channel; the container is
    dropped by `remove` once everything on the channel is recorded.
    """

    def __init__(self):
        self._containers: Dict[str, Container] = {}
        self._requests: "asyncio.Queue[Optional[Tuple[str, str, asyncio.Future]]]" = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._serve())

    async def shutdown(self) -> None:
        """
        Stop serving and close every remaining channel.
        """
        if self._loop_task is None:
            return
        await self._requests.put(None)
        await self._loop_task
        self._loop_task = None

    async def _call(self, kind: str, album_id: str) -> Any:
        self.start()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._requests.put((kind, album_id, fut))
        return await fut

    async def get_or_create(self, album_id: str) -> Tuple[Container, bool]:
        """
        Return the album's container and whether this call created it.
        A reference is taken unless the container is already closed.
        """
        return await self._call(_GET_OR_CREATE, album_id)

    async def release(self, album_id: str) -> int:
        """
        Drop one reference; at zero the channel is closed.
        Returns the remaining count.
        """
        return await self._call(_RELEASE, album_id)

    async def remove(self, album_id: str) -> bool:
        return await self._call(_REMOVE, album_id)

    async def active(self) -> List[str]:
        return await self._call(_LIST, "")

    async def _serve(self) -> None:
        while True:
            req = await self._requests.get()
            if req is None:
                for c in self._containers.values():
                    c.close()
                    c.removed.set()
                self._containers.clear()
                return
            kind, album_id, fut = req
            try:
                result = self._handle(kind, album_id)
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
                continue
            if not fut.done():
                fut.set_result(result)

    def _handle(self, kind: str, album_id: str) -> Any:
        if kind == _GET_OR_CREATE:
            container = self._containers.get(album_id)
            created = container is None
            if container is None:
                container = Container(album_id=album_id)
                self._containers[album_id] = container
                log.info("Album container created: %s", album_id)
            # a closed channel takes no new producers
            if not container.closed:
                container.refs += 1
            return container, created
        if kind == _RELEASE:
            container = self._containers.get(album_id)
            if container is None:
                return 0
            container.refs = max(0, container.refs - 1)
            if container.refs == 0:
                container.close()
                log.info("Album container closed: %s", album_id)
            return container.refs
        if kind == _REMOVE:
            container = self._containers.pop(album_id, None)
            if container is None:
                return False
            container.refs = 0
            container.close()
            container.removed.set()
            log.info("Album container removed: %s", album_id)
            return True
        if kind == _LIST:
            return sorted(self._containers.keys())
        raise ValueError(f"unknown registry request: {kind}")
