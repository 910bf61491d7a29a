# -*- coding: utf-8 -*-
import logging
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from bulkgen.domain.models import DRAFT, UPSCALE, ParsedStatus, RawMessage, Task, TaskUpdate
from bulkgen.midjourney.parser import normalize_prompt, parse_status

log = logging.getLogger("correlator")

StatusParser = Callable[[str], Optional[ParsedStatus]]


class EventCorrelator:
    """
    Maps raw bot messages to outstanding tasks.

    Matching order:
    1. message nonce == task token (the bot echoes the interaction nonce);
    2. message id already bound to a task (progress edits of the same message);
    3. best-effort text match: same stage, same normalized prompt, same parent
       message for follow-ups, same quadrant for "Image #N" upscales.

    Only strictly increasing completion levels are forwarded; completed message
    ids are remembered so redelivered finals are dropped.
    """

    def __init__(self, parse: StatusParser = parse_status, seen_limit: int = 2048):
        self._parse = parse
        self._tasks: Dict[str, Task] = {}
        self._by_message: Dict[str, Task] = {}
        self._normalized: Dict[str, str] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._seen_limit = seen_limit

    def track(self, task: Task) -> None:
        self._tasks[task.token] = task
        self._normalized[task.token] = normalize_prompt(task.prompt)

    def forget(self, task: Task) -> None:
        self._tasks.pop(task.token, None)
        self._normalized.pop(task.token, None)
        for mid in [m for m, t in self._by_message.items() if t is task]:
            self._by_message.pop(mid, None)

    def outstanding(self) -> List[Task]:
        return list(self._tasks.values())

    def _remember(self, message_id: str) -> None:
        self._seen[message_id] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

    def _text_match(self, msg: RawMessage, status: ParsedStatus) -> Optional[Task]:
        wanted = normalize_prompt(status.prompt)
        candidates: List[Task] = []
        for token, task in self._tasks.items():
            if task.stage != status.stage:
                continue
            if self._normalized.get(token) != wanted:
                continue
            if task.stage != DRAFT and msg.reference_id and task.parent_id and msg.reference_id != task.parent_id:
                continue
            if task.stage == UPSCALE and status.quadrant and task.quadrant and status.quadrant != task.quadrant:
                continue
            candidates.append(task)
        if not candidates:
            return None
        # A fresh message most likely belongs to a task the bot has not acknowledged yet
        unbound = [t for t in candidates if t.message_id is None]
        pool = unbound or candidates
        return min(pool, key=lambda t: t.created_at)

    def correlate(self, msg: RawMessage) -> Optional[TaskUpdate]:
        """
        Return the update this message represents, or None when it is
        irrelevant (unparseable, unrelated, duplicate or not an advance).
        """
        if msg.id in self._seen:
            return None
        status = self._parse(msg.content)
        if status is None:
            log.debug("Ignoring unparseable message id=%s", msg.id)
            return None

        task: Optional[Task] = None
        if msg.nonce:
            task = self._tasks.get(msg.nonce)
        if task is None:
            task = self._by_message.get(msg.id)
        if task is None:
            task = self._text_match(msg, status)
        if task is None:
            log.debug("No task for message id=%s (%s %r)", msg.id, status.stage, status.prompt[:60])
            return None

        if task.message_id is None:
            task.message_id = msg.id
        self._by_message[msg.id] = task

        terminal = status.terminal
        if terminal and not msg.attachments:
            # finished text without an image yet; a later edit will carry it
            terminal = False
        progress = 1.0 if terminal else min(status.progress, 0.99)
        if progress <= task.progress:
            return None
        task.progress = progress
        if terminal:
            task.message_id = msg.id

        update = TaskUpdate(
            task=task,
            progress=progress,
            terminal=terminal,
            message_id=msg.id,
            urls=list(msg.attachments) if terminal else [],
            buttons=dict(msg.buttons) if terminal else {},
        )
        if terminal:
            self._remember(msg.id)
            self.forget(task)
        return update
