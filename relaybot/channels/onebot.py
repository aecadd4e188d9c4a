"""OneBot v11 gateway: websocket event stream plus HTTP command API."""

import asyncio
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx
import websockets
from loguru import logger

from relaybot.bus.events import InboundEvent, Principal, Scope
from relaybot.channels.base import GatewayClient
from relaybot.channels.errors import (
    GatewayDisconnected,
    GatewayTimeout,
    SendFailed,
    TemporaryGatewayError,
)
from relaybot.config.schema import NetworkConfig
from relaybot.utils.clock import Clock, backoff_delay
from relaybot.utils.helpers import truncate

# How many message ids we remember to re-use their sequence numbers on replay
_SEEN_IDS_LIMIT = 2048
# Recent bridge seq values kept per scope to tell a replay from a restart
_RECENT_SEQ_LIMIT = 256
# Delivery ids of our own replies, used to drop the bridge's echo of them
_SENT_IDS_LIMIT = 512


@dataclass
class _BridgeSequence:
    """Bridge ``seq`` state for one scope."""

    last: int | None = None
    offset: int = 0
    recent: OrderedDict[int, int] = field(default_factory=OrderedDict)


def flatten_segments(segments: list[Any], self_id: str | None) -> tuple[str, bool]:
    """
    Render a OneBot message array as plain text.

    Returns the text and whether the bot (or everyone) was mentioned.
    """
    parts: list[str] = []
    mentions_self = False
    for seg in segments:
        if not isinstance(seg, dict):
            continue
        kind = seg.get("type")
        data = seg.get("data") or {}
        if kind == "text":
            parts.append(str(data.get("text", "")))
        elif kind == "at":
            qq = str(data.get("qq", ""))
            if qq == "all" or (self_id is not None and qq == self_id):
                mentions_self = True
            parts.append(f"@<{qq}>")
        elif kind == "image":
            summary = data.get("summary") or ""
            file = data.get("file") or ""
            parts.append(f"Image<{summary} {file}>")
        # face, reply, record and the rest carry no text
    return "".join(parts).strip(), mentions_self


class OneBotGateway(GatewayClient):
    """
    Gateway for OneBot v11 bridges such as NapCat.

    Events arrive over a websocket; replies are posted to the bridge's HTTP
    API. Both endpoints authenticate with the same bearer token.
    """

    name = "onebot"

    def __init__(
        self,
        network: NetworkConfig,
        heart_beat: float = 0.5,
        clock: Clock | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.network = network
        self.heart_beat = heart_beat
        self.clock = clock or Clock()
        self.self_id: str | None = None
        self._http = http_client
        self._owns_http = http_client is None
        self._ws: Any = None
        self._running = False
        self._connected = False
        self._closed = False
        self._counter = 0
        self._bridge_seqs: dict[str, _BridgeSequence] = {}
        self._seen_ids: OrderedDict[str, int] = OrderedDict()
        self._sent_ids: OrderedDict[str, None] = OrderedDict()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _headers(self) -> dict[str, str]:
        if not self.network.login_token:
            return {}
        return {"Authorization": f"Bearer {self.network.login_token}"}

    async def events(self) -> AsyncIterator[InboundEvent]:
        """Yield message events, reconnecting with backoff after a drop."""
        self._running = True
        attempt = 0
        while self._running:
            try:
                async with websockets.connect(
                    self.network.websocket,
                    additional_headers=self._headers(),
                ) as ws:
                    self._ws = ws
                    self._connected = True
                    logger.info(f"Connected to bridge at {self.network.websocket}")
                    async for raw in ws:
                        # Reset only once the bridge has sent a frame
                        attempt = 0
                        event = self.handle_frame(raw)
                        if event is not None:
                            yield event
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                if self._running:
                    logger.warning(f"Bridge connection lost: {e}")
            finally:
                self._connected = False
                self._ws = None

            if not self._running:
                break
            attempt += 1
            delay = backoff_delay(attempt, self.heart_beat, self.network.reconnect_max_delay)
            logger.info(f"Reconnecting to bridge in {delay:.1f}s (attempt {attempt})")
            await self.clock.sleep(delay)

    def handle_frame(self, raw: str | bytes) -> InboundEvent | None:
        """Decode one websocket frame. Returns an event for chat messages only."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            payload = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug(f"Skipping undecodable frame: {e}")
            return None
        if not isinstance(payload, dict):
            logger.debug("Skipping non-object frame")
            return None

        post_type = payload.get("post_type")
        if post_type == "meta_event":
            self._handle_meta_event(payload)
            return None
        if post_type == "message":
            try:
                return self._parse_message(payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed message frame: {e}")
                return None
        return None

    def _handle_meta_event(self, payload: dict[str, Any]) -> None:
        kind = payload.get("meta_event_type")
        if kind == "heartbeat":
            status = payload.get("status") or {}
            if not status.get("online", True):
                logger.info("[Heartbeat] Bot is not online.")
            if not status.get("good", True):
                logger.info("[Heartbeat] Bot is not good.")
        elif kind == "lifecycle":
            self_id = payload.get("self_id")
            if self_id is not None:
                self.self_id = str(self_id)
                logger.info(f"Bot connected: {self.self_id}")

    def _parse_message(self, payload: dict[str, Any]) -> InboundEvent | None:
        if self.self_id is None and payload.get("self_id") is not None:
            self.self_id = str(payload["self_id"])

        sender = payload.get("sender") or {}
        user_id = str(sender.get("user_id") or payload["user_id"])
        message_id = payload.get("message_id")
        message_id = str(message_id) if message_id is not None else None
        from_self = self.self_id is not None and user_id == self.self_id

        if from_self and message_id is not None and message_id in self._sent_ids:
            logger.debug(f"Skipping echo of our own message {message_id}")
            return None

        message_type = payload["message_type"]
        if message_type == "private":
            if from_self:
                # Sent by the bot account from another client; key on the peer.
                target_id = payload.get("target_id")
                if target_id is None:
                    logger.debug("Skipping own private message without target_id")
                    return None
                scope = Scope.private(target_id)
            else:
                scope = Scope.private(user_id)
        elif message_type == "group":
            scope = Scope.group(payload["group_id"])
        else:
            raise ValueError(f"unknown message_type {message_type!r}")

        segments = payload.get("message")
        if isinstance(segments, list):
            text, mentions_self = flatten_segments(segments, self.self_id)
        else:
            text, mentions_self = str(payload.get("raw_message") or segments or "").strip(), False

        return InboundEvent(
            scope=scope,
            principal=Principal(
                sender_id=user_id,
                display_name=sender.get("card") or sender.get("nickname") or None,
            ),
            raw_text=text,
            sequence_no=self._assign_sequence(scope, payload.get("seq"), message_id),
            message_id=message_id,
            mentions_self=mentions_self,
            from_self=from_self,
            metadata={"raw_message": payload.get("raw_message", "")},
        )

    def _assign_sequence(self, scope: Scope, bridge_seq: Any, message_id: str | None) -> int:
        """
        Pick the sequence number for an event.

        A bridge-supplied ``seq`` wins, tracked per scope. When it drops to a
        value not seen recently the bridge has restarted its numbering, and
        the new run is offset past the old one so numbers keep increasing.
        Without ``seq`` a local counter is used and a replayed message id
        gets the number it was first given.
        """
        if isinstance(bridge_seq, int) and not isinstance(bridge_seq, bool):
            return self._rebase_bridge_seq(scope, bridge_seq)

        if message_id is not None and message_id in self._seen_ids:
            self._seen_ids.move_to_end(message_id)
            return self._seen_ids[message_id]

        self._counter += 1
        if message_id is not None:
            self._seen_ids[message_id] = self._counter
            while len(self._seen_ids) > _SEEN_IDS_LIMIT:
                self._seen_ids.popitem(last=False)
        return self._counter

    def _rebase_bridge_seq(self, scope: Scope, bridge_seq: int) -> int:
        track = self._bridge_seqs.setdefault(scope.key, _BridgeSequence())
        if bridge_seq in track.recent:
            track.recent.move_to_end(bridge_seq)
            return track.recent[bridge_seq]

        last = track.last
        if last is not None:
            if bridge_seq < last:
                logger.warning(
                    f"Bridge sequence for {scope.key} restarted ({last} -> {bridge_seq}), starting a new epoch"
                )
                track.offset += last + 1
                track.recent.clear()
            elif bridge_seq > last + 1:
                logger.warning(f"Sequence gap from bridge in {scope.key}: {last} -> {bridge_seq}")

        track.last = bridge_seq
        sequence_no = bridge_seq + track.offset
        track.recent[bridge_seq] = sequence_no
        while len(track.recent) > _RECENT_SEQ_LIMIT:
            track.recent.popitem(last=False)
        return sequence_no

    def _get_http(self) -> httpx.AsyncClient:
        if self._closed:
            raise GatewayDisconnected("gateway is closed")
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.network.send_timeout)
        return self._http

    async def send(self, scope: Scope, text: str, reply_to: str | None = None) -> str:
        """Post a message through ``send_private_msg`` / ``send_group_msg``."""
        if scope.is_private:
            endpoint, target = "send_private_msg", {"user_id": _as_id(scope.id)}
        else:
            endpoint, target = "send_group_msg", {"group_id": _as_id(scope.id)}

        message: list[dict[str, Any]] = []
        if reply_to:
            message.append({"type": "reply", "data": {"id": reply_to}})
        message.append({"type": "text", "data": {"text": text}})

        url = f"{self.network.http.rstrip('/')}/{endpoint}"
        try:
            response = await self._get_http().post(
                url,
                json={**target, "message": message},
                headers=self._headers(),
                timeout=self.network.send_timeout,
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"{endpoint} timed out: {e}") from e
        except httpx.TransportError as e:
            raise GatewayDisconnected(f"{endpoint} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TemporaryGatewayError(f"{endpoint} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise SendFailed(f"{endpoint} returned HTTP {response.status_code}: {truncate(response.text)}")

        try:
            body = response.json()
        except ValueError:
            raise SendFailed(f"{endpoint} returned a non-JSON body") from None
        if not isinstance(body, dict) or body.get("status") != "ok":
            detail = body.get("wording") or body.get("message") if isinstance(body, dict) else body
            raise SendFailed(f"{endpoint} rejected the message: {detail}")

        data = body.get("data") or {}
        message_id = data.get("message_id") if isinstance(data, dict) else None
        if message_id is None:
            raise SendFailed(f"{endpoint} response has no message_id")
        delivery_id = str(message_id)
        self._sent_ids[delivery_id] = None
        while len(self._sent_ids) > _SENT_IDS_LIMIT:
            self._sent_ids.popitem(last=False)
        logger.debug(f"Sent to {scope.key}: {truncate(text)}")
        return delivery_id

    async def stop_events(self) -> None:
        """Close the event socket. Sends in flight are left to finish."""
        self._running = False
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def close(self) -> None:
        """Stop the event stream and close both connections."""
        await self.stop_events()
        self._closed = True
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


def _as_id(value: str) -> int | str:
    """OneBot expects numeric ids where the id is numeric."""
    return int(value) if value.isdigit() else value
