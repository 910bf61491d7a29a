# -*- coding: utf-8 -*-
import asyncio
import base64
import json
import logging
import random
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Set

import websocket  # websocket-client

from bulkgen.domain.errors import DownloadError, TransportError
from bulkgen.domain.models import RawMessage
from bulkgen.midjourney.parser import extract_buttons

log = logging.getLogger("discord_client")

API_BASE = "https://discord.com/api/v9"
GATEWAY_URL = "wss://gateway.discord.gg/?v=9&encoding=json"
DISCORD_EPOCH_MS = 1420070400000

MESSAGE_CREATE = "MESSAGE_CREATE"
MESSAGE_UPDATE = "MESSAGE_UPDATE"


def make_nonce() -> str:
    """
    Snowflake-shaped nonce, unique enough to correlate one interaction.
    """
    ms = int(time.time() * 1000) - DISCORD_EPOCH_MS
    return str((ms << 22) | random.getrandbits(22))


class DiscordClient:
    """
    Minimal Discord user-session client:
    - gateway websocket (reader + heartbeat threads), fanned out to asyncio subscribers
    - POST /interactions for slash commands and button presses
    - GET /channels/{id}/application-commands/search
    - plain GET for attachment downloads
    """

    def __init__(
        self,
        token: str,
        channel_id: str,
        guild_id: str = "",
        user_agent: str = "Mozilla/5.0",
        locale: str = "",
        language: str = "",
        super_properties: str = "",
        cookie: str = "",
        proxy: str = "",
        http_timeout: float = 60.0,
        ws_timeout: float = 30.0,
    ):
        self.token = token
        self.channel_id = channel_id
        self.guild_id = guild_id or ""
        self.user_agent = user_agent
        self.locale = locale
        self.language = language
        self.super_properties = super_properties
        self.cookie = cookie
        self.proxy = proxy
        self.http_timeout = http_timeout
        self.ws_timeout = ws_timeout

        handlers: List[urllib.request.BaseHandler] = []
        if proxy:
            handlers.append(urllib.request.ProxyHandler({"http": self._proxy_url(), "https": self._proxy_url()}))
        self._opener = urllib.request.build_opener(*handlers)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribers: Set["asyncio.Queue[RawMessage]"] = set()
        self._session_id: Optional[str] = None
        self._seq: Optional[int] = None
        self._ws: Optional[websocket.WebSocket] = None
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None

    # ----- REST -----

    def _proxy_url(self) -> str:
        p = self.proxy.strip()
        if "://" not in p:
            p = "http://" + p
        return p

    def _headers(self) -> Dict[str, str]:
        h: Dict[str, str] = {"User-Agent": self.user_agent, "Authorization": self.token}
        if self.super_properties:
            h["X-Super-Properties"] = self.super_properties
        if self.locale:
            h["X-Discord-Locale"] = self.locale
        if self.language:
            h["Accept-Language"] = self.language
        if self.cookie:
            h["Cookie"] = self.cookie
        return h

    def _request(self, method: str, url: str, payload: Optional[dict] = None) -> bytes:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = self._headers()
        if data is not None:
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with self._opener.open(req, timeout=self.http_timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            body = b""
            try:
                body = e.read()[:300]
            except OSError:
                pass
            raise TransportError(f"{method} {url} failed: HTTP {e.code} {body.decode('utf-8', 'replace')}")
        except (OSError, ValueError) as e:
            raise TransportError(f"{method} {url} failed: {e}")

    def _get_json(self, url: str) -> Any:
        raw = self._request("GET", url)
        try:
            return json.loads(raw)
        except ValueError as e:
            raise TransportError(f"bad JSON from {url}: {e}")

    def interact(self, payload: dict) -> None:
        """
        Send an interaction (slash command or button press). Completion is only
        observable through the gateway feed.
        """
        payload = dict(payload)
        payload.setdefault("session_id", self._session_id or "")
        self._request("POST", f"{API_BASE}/interactions", payload)

    def search_command(self, application_id: str, name: str) -> Dict[str, Any]:
        q = urllib.parse.urlencode({"type": 1, "query": name, "limit": 7, "include_applications": "false"})
        data = self._get_json(f"{API_BASE}/channels/{self.channel_id}/application-commands/search?{q}")
        for cmd in data.get("application_commands", []) if isinstance(data, dict) else []:
            if cmd.get("application_id") == application_id and cmd.get("name") == name:
                return cmd
        raise TransportError(f"application command /{name} not found for application {application_id}")

    def download_bytes(self, url: str) -> bytes:
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        try:
            with self._opener.open(req, timeout=self.http_timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            raise DownloadError(f"couldn't download {url}: HTTP {e.code}")
        except (OSError, ValueError) as e:
            raise DownloadError(f"couldn't download {url}: {e}")

    async def download(self, url: str) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.download_bytes(url))

    # ----- Feed -----

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def subscribe(self) -> "asyncio.Queue[RawMessage]":
        q: "asyncio.Queue[RawMessage]" = asyncio.Queue()
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: "asyncio.Queue[RawMessage]") -> None:
        self._subscribers.discard(q)

    def _publish(self, msg: RawMessage) -> None:
        for q in list(self._subscribers):
            q.put_nowait(msg)

    def _to_raw_message(self, event: str, d: Dict[str, Any]) -> RawMessage:
        ref = d.get("message_reference") or {}
        attachments = [a.get("url") for a in d.get("attachments") or [] if isinstance(a, dict) and a.get("url")]
        return RawMessage(
            id=str(d.get("id") or ""),
            channel_id=str(d.get("channel_id") or ""),
            content=str(d.get("content") or ""),
            nonce=str(d.get("nonce") or ""),
            reference_id=str(ref["message_id"]) if isinstance(ref, dict) and ref.get("message_id") else None,
            attachments=attachments,
            buttons=extract_buttons(d.get("components")),
            event=event,
        )

    # ----- Gateway -----

    async def start(self) -> None:
        """
        Connect the gateway on a background thread and wait for READY.
        """
        self._loop = asyncio.get_running_loop()
        self._stop.clear()
        self._ready.clear()
        self._reader = threading.Thread(target=self._run_gateway, name="discord-gateway", daemon=True)
        self._reader.start()
        ok = await self._loop.run_in_executor(None, lambda: self._ready.wait(self.http_timeout))
        if not ok:
            self.close()
            raise TransportError("discord gateway did not become ready")
        log.info("Discord gateway ready (session=%s)", self._session_id)

    def close(self) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception:
                pass
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=5)
        self._reader = None

    def _ws_options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"header": [f"User-Agent: {self.user_agent}"]}
        if self.proxy:
            parts = urllib.parse.urlsplit(self._proxy_url())
            opts["http_proxy_host"] = parts.hostname
            opts["http_proxy_port"] = parts.port or 80
            opts["proxy_type"] = "http"
            if parts.username:
                opts["http_proxy_auth"] = (parts.username, parts.password or "")
        return opts

    def _identify_payload(self) -> dict:
        props: Dict[str, Any] = {"os": "Linux", "browser": "Chrome", "device": "", "browser_user_agent": self.user_agent}
        if self.super_properties:
            try:
                decoded = json.loads(base64.b64decode(self.super_properties))
                if isinstance(decoded, dict):
                    props = decoded
            except ValueError as e:
                log.warning("Ignoring undecodable super properties: %s", e)
        return {
            "op": 2,
            "d": {
                "token": self.token,
                "properties": props,
                "presence": {"status": "online", "since": 0, "activities": [], "afk": False},
                "compress": False,
            },
        }

    def _run_gateway(self) -> None:
        backoff = 1.0
        while not self._stop.is_set():
            try:
                self._connect_once()
                backoff = 1.0
            except (websocket.WebSocketException, TransportError, OSError, ValueError) as e:
                if self._stop.is_set():
                    break
                log.warning("Gateway connection lost: %s", e)
            if self._stop.is_set():
                break
            delay = min(60.0, backoff) + random.uniform(0, 1)
            backoff *= 2
            log.info("Reconnecting gateway in %.1fs", delay)
            self._stop.wait(delay)

    def _connect_once(self) -> None:
        ws = websocket.WebSocket()
        ws.settimeout(self.ws_timeout)
        ws.connect(GATEWAY_URL, **self._ws_options())
        self._ws = ws
        hb_stop = threading.Event()
        try:
            hello = json.loads(ws.recv())
            interval = float(hello.get("d", {}).get("heartbeat_interval", 41250)) / 1000.0
            threading.Thread(
                target=self._heartbeat, args=(ws, interval, hb_stop), name="discord-heartbeat", daemon=True
            ).start()
            ws.send(json.dumps(self._identify_payload()))

            while not self._stop.is_set():
                try:
                    raw = ws.recv()
                except websocket.WebSocketTimeoutException:
                    continue
                if not raw:
                    raise TransportError("gateway closed the connection")
                if isinstance(raw, (bytes, bytearray)):
                    continue
                try:
                    data = json.loads(raw)
                except ValueError:
                    continue
                self._handle_gateway(data)
        finally:
            hb_stop.set()
            self._ready.clear()
            try:
                ws.close()
            except Exception:
                pass
            self._ws = None

    def _heartbeat(self, ws: websocket.WebSocket, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            try:
                ws.send(json.dumps({"op": 1, "d": self._seq}))
            except (websocket.WebSocketException, OSError) as e:
                log.debug("Heartbeat failed: %s", e)
                return

    def _handle_gateway(self, data: Dict[str, Any]) -> None:
        op = data.get("op")
        if op in (7, 9):
            raise TransportError(f"gateway requested reconnect (op={op})")
        if op != 0:
            return
        if data.get("s") is not None:
            self._seq = data["s"]
        t = data.get("t")
        d = data.get("d") or {}
        if t == "READY":
            self._session_id = d.get("session_id")
            self._ready.set()
            return
        if t not in (MESSAGE_CREATE, MESSAGE_UPDATE):
            return
        if str(d.get("channel_id")) != str(self.channel_id):
            return
        msg = self._to_raw_message(t, d)
        if log.isEnabledFor(logging.DEBUG):
            log.debug("%s id=%s nonce=%s content=%r", t, msg.id, msg.nonce, msg.content[:120])
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._publish, msg)
