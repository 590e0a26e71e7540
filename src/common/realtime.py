"""
Realtime push client for the identity store.

Speaks the Phoenix channel protocol over a single websocket:
- row change channels (``postgres_changes`` filtered to one row)
- broadcast channels (out-of-band commands such as ``reload``)

Delivery is best effort. While the socket is down every open channel
reports ``errored``; channels are rejoined after reconnecting. The
connection health monitor reads ``channel_states()`` to decide when the
push side has been dead for too long.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.common.logger import setup_logger

logger = setup_logger(__name__)

# Channel states, as reported by channel_states()
CHANNEL_CLOSED = "closed"
CHANNEL_ERRORED = "errored"
CHANNEL_JOINED = "joined"
CHANNEL_JOINING = "joining"
CHANNEL_LEAVING = "leaving"

DEFAULT_HEARTBEAT_INTERVAL = 25
DEFAULT_RECONNECT_DELAY = 5

PHOENIX_TOPIC = "phoenix"


class Channel:
    """One joined topic and the callbacks attached to its events."""

    def __init__(self, name: str, config: Dict[str, Any]):
        self.name = name
        self.topic = f"realtime:{name}"
        self.config = config
        self.state = CHANNEL_CLOSED
        self.join_ref: Optional[str] = None
        self._handlers: List[tuple] = []

    def on(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._handlers.append((event, callback))

    def trigger(self, event: str, payload: Dict[str, Any]) -> None:
        """Run every callback registered for event; callback errors are logged."""
        for handler_event, callback in self._handlers:
            if handler_event != event:
                continue
            try:
                callback(payload)
            except Exception as e:
                logger.error("Error in %s handler on %s: %s", event, self.name, e)

    def join_payload(self, access_token: str) -> Dict[str, Any]:
        return {"config": self.config, "access_token": access_token}

    def __repr__(self) -> str:
        return f"Channel(topic={self.topic}, state={self.state})"


class Subscription:
    """Handle returned by subscribe_*; unsubscribe() leaves the channel."""

    def __init__(self, client: "RealtimeClient", channel: Channel):
        self._client = client
        self.channel = channel

    @property
    def state(self) -> str:
        return self.channel.state

    async def unsubscribe(self) -> None:
        await self._client.remove_channel(self.channel)


class RealtimeClient:
    """
    Websocket client multiplexing realtime channels.

    Usage:
        client = RealtimeClient("https://xyz.supabase.co", api_key)
        task = asyncio.create_task(client.run())
        sub = await client.subscribe_to_broadcast("screen-cmd-1", "reload", cb)
        ...
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ):
        """
        Args:
            base_url: Project URL (http/https; converted to ws/wss)
            api_key: API key sent as query parameter and access token
            heartbeat_interval: Seconds between protocol heartbeats
            reconnect_delay: Seconds to wait before reconnecting
        """
        self._base_url = base_url.rstrip('/')
        self._api_key = api_key
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay

        self._channels: Dict[str, Channel] = {}
        self._ws = None
        self._ref = 0
        self._running = False
        self._stop_event = asyncio.Event()
        # Ref of the last heartbeat still waiting for its phx_reply
        self._pending_heartbeat: Optional[str] = None

    @property
    def endpoint(self) -> str:
        """Websocket URL for the realtime service."""
        if self._base_url.startswith('https://'):
            ws_base = 'wss://' + self._base_url[len('https://'):]
        elif self._base_url.startswith('http://'):
            ws_base = 'ws://' + self._base_url[len('http://'):]
        else:
            ws_base = self._base_url
        query = urlencode({'apikey': self._api_key, 'vsn': '1.0.0'})
        return f"{ws_base}/realtime/v1/websocket?{query}"

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def channel_states(self) -> List[str]:
        """State of every tracked channel."""
        return [channel.state for channel in self._channels.values()]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_to_row_change(
        self,
        table: str,
        row_id: str,
        on_change: Callable[[Dict[str, Any]], None],
    ) -> Subscription:
        """Deliver the new row of every UPDATE to row_id."""
        channel = Channel(
            f"screen-{row_id}",
            {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [{
                    "event": "UPDATE",
                    "schema": "public",
                    "table": table,
                    "filter": f"id=eq.{row_id}",
                }],
            },
        )

        def _on_postgres_change(payload: Dict[str, Any]) -> None:
            data = payload.get("data") or {}
            record = data.get("record")
            if data.get("type", "UPDATE") == "UPDATE" and record:
                on_change(record)

        channel.on("postgres_changes", _on_postgres_change)
        await self._add_channel(channel)
        return Subscription(self, channel)

    async def subscribe_to_broadcast(
        self,
        channel_id: str,
        event_name: str,
        on_event: Callable[[Dict[str, Any]], None],
    ) -> Subscription:
        """Deliver broadcast messages named event_name on channel_id."""
        channel = Channel(
            channel_id,
            {"broadcast": {"self": False}, "presence": {"key": ""}, "postgres_changes": []},
        )

        def _on_broadcast(payload: Dict[str, Any]) -> None:
            if payload.get("event") == event_name:
                on_event(payload.get("payload") or {})

        channel.on("broadcast", _on_broadcast)
        await self._add_channel(channel)
        return Subscription(self, channel)

    async def _add_channel(self, channel: Channel) -> None:
        existing = self._channels.get(channel.topic)
        if existing is not None:
            await self.remove_channel(existing)

        self._channels[channel.topic] = channel
        channel.state = CHANNEL_JOINING
        if self._ws is not None:
            try:
                await self._join(channel)
            except (ConnectionClosed, WebSocketException, OSError) as e:
                # Rejoined by run() after the reconnect
                logger.warning("Join of %s deferred: %s", channel.topic, e)
        logger.debug("Channel added: %s", channel.topic)

    async def remove_channel(self, channel: Channel) -> None:
        """Leave a channel and stop tracking it."""
        if self._channels.get(channel.topic) is not channel:
            return

        if self._ws is not None and channel.state in (CHANNEL_JOINED, CHANNEL_JOINING):
            channel.state = CHANNEL_LEAVING
            try:
                await self._push(channel.topic, "phx_leave", {}, channel.join_ref)
            except (ConnectionClosed, WebSocketException, OSError) as e:
                logger.debug("Leave failed for %s: %s", channel.topic, e)

        channel.state = CHANNEL_CLOSED
        del self._channels[channel.topic]

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect, read messages and reconnect until close() is called."""
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                async with websockets.connect(self.endpoint, ping_interval=None) as ws:
                    self._ws = ws
                    self._pending_heartbeat = None
                    logger.info("Realtime connected")
                    for channel in list(self._channels.values()):
                        await self._join(channel)

                    heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
                    try:
                        async for raw in ws:
                            self._handle_raw(raw)
                    finally:
                        heartbeat.cancel()
            except (ConnectionClosed, WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning("Realtime connection lost: %s", e)
            finally:
                self._ws = None
                self._mark_disconnected()

            if not self._running:
                break

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Realtime client stopped")

    async def close(self) -> None:
        """Leave all channels and close the socket."""
        self._running = False
        self._stop_event.set()

        for channel in list(self._channels.values()):
            await self.remove_channel(channel)

        if self._ws is not None:
            try:
                await self._ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug("Realtime close error: %s", e)

    def _mark_disconnected(self) -> None:
        for channel in self._channels.values():
            if channel.state != CHANNEL_CLOSED:
                channel.state = CHANNEL_ERRORED

    async def _heartbeat_loop(self, ws) -> None:
        """
        Send a protocol heartbeat every interval.

        A heartbeat still unanswered when the next one is due means the
        peer is gone (half-open socket, stalled server): the socket is
        closed so run() marks every channel errored and reconnects.
        """
        while self._ws is ws:
            await asyncio.sleep(self.heartbeat_interval)
            if self._ws is not ws:
                return

            if self._pending_heartbeat is not None:
                logger.warning("Realtime heartbeat %s unanswered, closing socket",
                               self._pending_heartbeat)
                self._pending_heartbeat = None
                try:
                    await ws.close()
                except (WebSocketException, OSError) as e:
                    logger.debug("Realtime close error: %s", e)
                return

            self._pending_heartbeat = self._make_ref()
            try:
                await self._push(PHOENIX_TOPIC, "heartbeat", {}, ref=self._pending_heartbeat)
            except (ConnectionClosed, WebSocketException, OSError) as e:
                logger.debug("Heartbeat send failed: %s", e)
                return

    async def _join(self, channel: Channel) -> None:
        channel.state = CHANNEL_JOINING
        ref = self._make_ref()
        channel.join_ref = ref
        await self._push(
            channel.topic,
            "phx_join",
            channel.join_payload(self._api_key),
            join_ref=ref,
            ref=ref,
        )

    async def _push(
        self,
        topic: str,
        event: str,
        payload: Dict[str, Any],
        join_ref: Optional[str] = None,
        ref: Optional[str] = None,
    ) -> str:
        if self._ws is None:
            raise ConnectionError("Realtime socket is not connected")
        ref = ref or self._make_ref()
        message = {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref,
            "join_ref": join_ref,
        }
        await self._ws.send(json.dumps(message))
        return ref

    def _make_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def _handle_raw(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed realtime message")
            return
        if isinstance(message, dict):
            self.dispatch(message)

    def dispatch(self, message: Dict[str, Any]) -> None:
        """Route one decoded protocol message to its channel."""
        topic = message.get("topic")
        event = message.get("event")
        payload = message.get("payload") or {}

        if topic == PHOENIX_TOPIC:
            if event == "phx_reply" and message.get("ref") == self._pending_heartbeat:
                self._pending_heartbeat = None
            return

        channel = self._channels.get(topic)
        if channel is None:
            return

        if event == "phx_reply":
            if message.get("ref") != channel.join_ref:
                return
            if payload.get("status") == "ok":
                if channel.state == CHANNEL_JOINING:
                    channel.state = CHANNEL_JOINED
                    logger.info("Subscribed to %s", channel.name)
            else:
                channel.state = CHANNEL_ERRORED
                logger.warning("Join rejected for %s: %s", channel.name, payload.get("response"))
        elif event == "phx_error":
            channel.state = CHANNEL_ERRORED
            logger.warning("Channel error on %s", channel.name)
        elif event == "phx_close":
            channel.state = CHANNEL_CLOSED
        else:
            channel.trigger(event, payload)
