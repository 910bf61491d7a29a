# -*- coding: utf-8 -*-
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, Dict, Iterable, List, Optional, Sequence

from bulkgen.bulk.correlator import EventCorrelator, StatusParser
from bulkgen.discord.client import make_nonce
from bulkgen.domain.errors import BulkError, ConfigurationError, TaskTimeout
from bulkgen.domain.models import (
    DRAFT,
    UPSCALE,
    VARIATION,
    GenerateEvent,
    RawMessage,
    Task,
    TaskUpdate,
)
from bulkgen.midjourney.parser import parse_status

log = logging.getLogger("dispatcher")

# Per-prompt states
PENDING = "pending"
DRAFT_RUNNING = "draft_running"
VARIATIONS_RUNNING = "variations_running"
UPSCALING = "upscaling"
DONE = "done"
FAILED = "failed"


@dataclass
class PromptState:
    """
    pending -> draft_running -> {variations_running, upscaling} -> done | failed

    `outstanding` holds every task of the prompt that is queued or in flight,
    so the prompt's last event is the one that empties it.
    """
    index: int
    prompt: str
    state: str = PENDING
    failed: bool = False
    outstanding: Dict[str, str] = field(default_factory=dict)  # token -> stage

    def add(self, task: Task) -> None:
        self.outstanding[task.token] = task.stage
        self._refresh()

    def resolve(self, task: Task, ok: bool) -> None:
        self.outstanding.pop(task.token, None)
        if not ok:
            self.failed = True
        self._refresh()

    @property
    def is_last(self) -> bool:
        return not self.outstanding

    def _refresh(self) -> None:
        stages = set(self.outstanding.values())
        if not stages:
            self.state = FAILED if self.failed else DONE
        elif DRAFT in stages:
            self.state = DRAFT_RUNNING
        elif VARIATION in stages:
            self.state = VARIATIONS_RUNNING
        else:
            self.state = UPSCALING


@dataclass
class _Resolution:
    task: Task
    update: Optional[TaskUpdate] = None
    error: Optional[str] = None


class TaskDispatcher:
    """
    Bounded-concurrency scheduler turning an ordered prompt list into bot tasks.

    One coordination loop (the `run` generator) admits tasks, every admitted
    task runs in its own asyncio task and reports back through a results
    queue. A single pump feeds the bot's messages through the correlator into
    per-task inboxes.
    """

    def __init__(
        self,
        bot: Any,
        parse: StatusParser = parse_status,
        task_timeout: float = 900.0,
        grace: float = 30.0,
        token_factory: Callable[[], str] = make_nonce,
    ):
        self._bot = bot
        self._parse = parse
        self._task_timeout = task_timeout
        self._grace = grace
        self._new_token = token_factory

    async def run(
        self,
        prompts: Sequence[str],
        already_finished: Iterable[int] = (),
        want_variations: bool = False,
        want_upscale: bool = False,
        concurrency: int = 1,
        min_spacing: float = 0.0,
        stop: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[GenerateEvent]:
        """
        Yield a GenerateEvent for every progress advance and every task
        resolution. The generator ends once all admitted tasks (follow-ups
        included) resolved and nothing is left to schedule, or after `stop`
        is set and in-flight tasks resolved or the grace period ran out.
        """
        if concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1")
        loop = asyncio.get_running_loop()
        skip = set(already_finished)
        states: Dict[int, PromptState] = {
            i: PromptState(index=i, prompt=p) for i, p in enumerate(prompts) if i not in skip
        }
        drafts: Deque[PromptState] = deque(states.values())
        followups: Deque[Task] = deque()
        results: "asyncio.Queue[Any]" = asyncio.Queue()
        inboxes: Dict[str, "asyncio.Queue[TaskUpdate]"] = {}
        units: Dict[str, asyncio.Task] = {}
        correlator = EventCorrelator(self._parse)

        feed = self._bot.subscribe()
        pump = asyncio.create_task(self._pump(feed, correlator, inboxes))
        last_admit: Optional[float] = None
        grace_deadline: Optional[float] = None
        log.info(
            "Bulk run: %d prompt(s), %d skipped, concurrency=%d, spacing=%.1fs, variations=%s, upscale=%s",
            len(states), len(prompts) - len(states), concurrency, min_spacing, want_variations, want_upscale,
        )

        try:
            while True:
                stopping = stop is not None and stop.is_set()
                if stopping and grace_deadline is None:
                    grace_deadline = loop.time() + self._grace
                    log.info("Stop requested: %d task(s) in flight, admitting no more", len(units))
                has_work = bool(followups or drafts)
                if not units and (stopping or not has_work):
                    break

                timeout: Optional[float] = None
                if stopping:
                    assert grace_deadline is not None
                    timeout = grace_deadline - loop.time()
                    if timeout <= 0:
                        log.warning("Grace period over, abandoning %d task(s)", len(units))
                        break
                elif has_work and len(units) < concurrency:
                    delay = 0.0 if last_admit is None else last_admit + min_spacing - loop.time()
                    if delay <= 0:
                        if followups:
                            task = followups.popleft()
                        else:
                            state = drafts.popleft()
                            task = self._draft_task(state)
                            state.add(task)
                        self._admit(task, correlator, inboxes, units, results)
                        last_admit = loop.time()
                        continue
                    timeout = delay

                item = await self._next(results, timeout, None if stopping else stop)
                if item is None:
                    continue
                if isinstance(item, GenerateEvent):
                    yield item
                    continue
                yield self._resolve(
                    item, states, followups, correlator, inboxes, units, want_variations, want_upscale
                )
        finally:
            pump.cancel()
            for unit in units.values():
                unit.cancel()
            self._bot.unsubscribe(feed)
            await asyncio.gather(pump, *units.values(), return_exceptions=True)
            pending = sum(1 for s in states.values() if s.state not in (DONE, FAILED))
            log.info("Bulk run closed: %d prompt(s) not completed", pending)

    def _draft_task(self, state: PromptState) -> Task:
        return Task(prompt_index=state.index, prompt=state.prompt, stage=DRAFT, token=self._new_token())

    def _admit(
        self,
        task: Task,
        correlator: EventCorrelator,
        inboxes: Dict[str, "asyncio.Queue[TaskUpdate]"],
        units: Dict[str, asyncio.Task],
        results: "asyncio.Queue[Any]",
    ) -> None:
        task.created_at = asyncio.get_running_loop().time()
        inbox: "asyncio.Queue[TaskUpdate]" = asyncio.Queue()
        inboxes[task.token] = inbox
        correlator.track(task)
        units[task.token] = asyncio.create_task(self._execute(task, inbox, results))
        log.debug("Admitted %s%s for prompt #%d (in flight: %d)",
                  task.stage, f" {task.lineage}" if task.lineage else "", task.prompt_index, len(units))

    async def _pump(
        self,
        feed: "asyncio.Queue[RawMessage]",
        correlator: EventCorrelator,
        inboxes: Dict[str, "asyncio.Queue[TaskUpdate]"],
    ) -> None:
        while True:
            msg = await feed.get()
            try:
                update = correlator.correlate(msg)
            except Exception as e:
                log.exception("Correlation failed for message %s: %s", msg.id, e)
                continue
            if update is None:
                continue
            inbox = inboxes.get(update.task.token)
            if inbox is not None:
                inbox.put_nowait(update)

    async def _execute(self, task: Task, inbox: "asyncio.Queue[TaskUpdate]", results: "asyncio.Queue[Any]") -> None:
        loop = asyncio.get_running_loop()
        try:
            await self._bot.send_command(task.prompt, task.options())
            deadline = loop.time() + self._task_timeout
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TaskTimeout(f"no result within {self._task_timeout:.0f}s")
                try:
                    update = await asyncio.wait_for(inbox.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise TaskTimeout(f"no result within {self._task_timeout:.0f}s")
                if update.terminal:
                    results.put_nowait(_Resolution(task=task, update=update))
                    return
                results.put_nowait(self._progress_event(task, update))
        except BulkError as e:
            log.warning("%s for prompt #%d failed: %s", task.stage, task.prompt_index, e)
            results.put_nowait(_Resolution(task=task, error=str(e)))
        except Exception as e:
            log.exception("%s for prompt #%d crashed: %s", task.stage, task.prompt_index, e)
            results.put_nowait(_Resolution(task=task, error=str(e) or e.__class__.__name__))

    async def _next(
        self,
        results: "asyncio.Queue[Any]",
        timeout: Optional[float],
        stop: Optional[asyncio.Event],
    ) -> Any:
        """
        Wait for the next result, the timeout, or the stop signal; None unless a result arrived.
        """
        getter = asyncio.ensure_future(results.get())
        waiters = {getter}
        if stop is not None:
            waiters.add(asyncio.ensure_future(stop.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                if not w.done():
                    w.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    def _progress_event(self, task: Task, update: TaskUpdate) -> GenerateEvent:
        return GenerateEvent(
            prompt_index=task.prompt_index,
            prompt=task.prompt,
            stage=task.stage,
            lineage=task.lineage,
            progress=update.progress,
            done=False,
            message_id=update.message_id,
        )

    def _resolve(
        self,
        res: _Resolution,
        states: Dict[int, PromptState],
        followups: Deque[Task],
        correlator: EventCorrelator,
        inboxes: Dict[str, "asyncio.Queue[TaskUpdate]"],
        units: Dict[str, asyncio.Task],
        want_variations: bool,
        want_upscale: bool,
    ) -> GenerateEvent:
        task = res.task
        state = states[task.prompt_index]
        units.pop(task.token, None)
        inboxes.pop(task.token, None)
        correlator.forget(task)

        if res.update is None:
            state.resolve(task, ok=False)
            return GenerateEvent(
                prompt_index=task.prompt_index,
                prompt=task.prompt,
                stage=task.stage,
                lineage=task.lineage,
                progress=task.progress,
                done=True,
                message_id=task.message_id,
                is_last=state.is_last,
                chain_ok=False,
                error=res.error or "failed",
            )

        update = res.update
        for child in self._plan_followups(task, update, state, want_variations, want_upscale):
            state.add(child)
            followups.append(child)
        state.resolve(task, ok=True)
        log.info("Prompt #%d %s%s done (%s)", task.prompt_index, task.stage,
                 f" {task.lineage}" if task.lineage else "", state.state)
        return GenerateEvent(
            prompt_index=task.prompt_index,
            prompt=task.prompt,
            stage=task.stage,
            lineage=task.lineage,
            progress=1.0,
            done=True,
            urls=list(update.urls),
            message_id=update.message_id,
            buttons=dict(update.buttons),
            is_last=state.is_last,
            chain_ok=not state.failed,
        )

    def _plan_followups(
        self,
        parent: Task,
        update: TaskUpdate,
        state: PromptState,
        want_variations: bool,
        want_upscale: bool,
    ) -> List[Task]:
        planned: List[Task] = []
        if parent.stage == DRAFT and want_variations:
            planned.extend(self._children(parent, update, state, VARIATION))
        if want_upscale and parent.stage in (DRAFT, VARIATION):
            planned.extend(self._children(parent, update, state, UPSCALE))
        return planned

    def _children(self, parent: Task, update: TaskUpdate, state: PromptState, stage: str) -> List[Task]:
        prefix = "V" if stage == VARIATION else "U"
        children: List[Task] = []
        for q in range(1, 5):
            custom_id = update.buttons.get(f"{prefix}{q}")
            if not custom_id:
                log.warning("No %s%d button on message %s (prompt #%d), skipping",
                            prefix, q, update.message_id, parent.prompt_index)
                state.failed = True
                continue
            lineage = f"{prefix.lower()}{q}"
            if parent.lineage:
                lineage = f"{parent.lineage}_{lineage}"
            children.append(Task(
                prompt_index=parent.prompt_index,
                prompt=parent.prompt,
                stage=stage,
                token=self._new_token(),
                quadrant=q,
                lineage=lineage,
                parent_id=update.message_id,
                custom_id=custom_id,
            ))
        return children
