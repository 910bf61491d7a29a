# -*- coding: utf-8 -*-
import asyncio
import logging
from typing import Any, Dict, Optional

from bulkgen.discord.client import DiscordClient
from bulkgen.domain.errors import TransportError
from bulkgen.domain.models import DRAFT, RawMessage, StageOptions

log = logging.getLogger("midjourney")

MIDJOURNEY_APP_ID = "936929561302675456"

# Discord interaction types
_APPLICATION_COMMAND = 2
_MESSAGE_COMPONENT = 3
_BUTTON = 2


class MidjourneyBot:
    """
    Midjourney on top of a DiscordClient: /imagine for drafts, V<n>/U<n>
    button presses for variations and upscales.
    """

    def __init__(self, client: DiscordClient, application_id: str = MIDJOURNEY_APP_ID):
        self._client = client
        self._application_id = application_id
        self._imagine: Optional[Dict[str, Any]] = None

    async def prepare(self) -> None:
        """
        Resolve the /imagine command definition (id + version) once.
        """
        loop = asyncio.get_running_loop()
        self._imagine = await loop.run_in_executor(
            None, lambda: self._client.search_command(self._application_id, "imagine")
        )
        log.info("Resolved /imagine (id=%s, version=%s)", self._imagine.get("id"), self._imagine.get("version"))

    def _imagine_payload(self, prompt: str, nonce: str) -> dict:
        cmd = self._imagine
        if cmd is None:
            raise TransportError("/imagine command is not resolved, call prepare() first")
        payload = {
            "type": _APPLICATION_COMMAND,
            "application_id": self._application_id,
            "channel_id": self._client.channel_id,
            "data": {
                "version": cmd.get("version"),
                "id": cmd.get("id"),
                "name": "imagine",
                "type": 1,
                "options": [{"type": 3, "name": "prompt", "value": prompt}],
                "application_command": cmd,
                "attachments": [],
            },
            "nonce": nonce,
        }
        if self._client.guild_id:
            payload["guild_id"] = self._client.guild_id
        return payload

    def _button_payload(self, options: StageOptions) -> dict:
        if not options.message_id or not options.custom_id:
            raise TransportError(f"{options.stage} requires a parent message and a button id")
        payload = {
            "type": _MESSAGE_COMPONENT,
            "application_id": self._application_id,
            "channel_id": self._client.channel_id,
            "message_flags": 0,
            "message_id": options.message_id,
            "data": {"component_type": _BUTTON, "custom_id": options.custom_id},
            "nonce": options.nonce,
        }
        if self._client.guild_id:
            payload["guild_id"] = self._client.guild_id
        return payload

    async def send_command(self, prompt: str, options: StageOptions) -> str:
        """
        Fire-and-forget: returns the nonce the bot's replies will be correlated by.
        """
        if options.stage == DRAFT:
            payload = self._imagine_payload(prompt, options.nonce)
        else:
            payload = self._button_payload(options)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self._client.interact(payload))
        log.debug("Sent %s (nonce=%s) for %r", options.stage, options.nonce, prompt[:60])
        return options.nonce

    def subscribe(self) -> "asyncio.Queue[RawMessage]":
        return self._client.subscribe()

    def unsubscribe(self, q: "asyncio.Queue[RawMessage]") -> None:
        self._client.unsubscribe(q)

    async def download(self, url: str) -> bytes:
        return await self._client.download(url)
