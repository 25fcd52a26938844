"""
NATS JetStream Client for the Campaign Engine

Domain events ({name, tenant_id, payload}) travel over NATS JetStream.
The event name is the subject (e.g. "appointment.created"); each subject
prefix maps to its own stream ("appointment" -> "appointment-stream").

Subscriptions are durable queue consumers named after the service, so
replicas of the engine share the work and nothing published while the
engine was down is lost.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.js import JetStreamContext
from nats.js.errors import NotFoundError

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[Any]]
EventPredicate = Callable[["Event"], bool]


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime values"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class Event:
    """Event model"""

    def __init__(
        self,
        name: str,
        tenant_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        source: str = "external",
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.name = name
        self.tenant_id = tenant_id
        self.payload = payload or {}
        self.source = source
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tenant_id": self.tenant_id,
            "payload": self.payload,
            "source": self.source,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls(
            name=data["name"],
            tenant_id=data.get("tenant_id"),
            payload=data.get("payload", {}),
            source=data.get("source", "external"),
            metadata=data.get("metadata", {}),
        )
        if data.get("id"):
            event.id = data["id"]
        if data.get("timestamp"):
            event.timestamp = data["timestamp"]
        return event

    def __repr__(self) -> str:
        return f"Event(name={self.name!r}, tenant_id={self.tenant_id!r})"


def stream_name_for(subject: str) -> str:
    """appointment.created -> appointment-stream"""
    return f"{subject.split('.')[0]}-stream"


def consumer_name_for(service_name: str, pattern: str) -> str:
    """Durable consumer name for a subject pattern; NATS forbids dots and wildcards"""
    token = pattern.replace(".", "_").replace("*", "any").replace(">", "all")
    return f"{service_name}-{token}"


def decode_message(subject: str, data: bytes) -> Event:
    """
    Build an Event from a NATS message body.

    Full envelopes (with a "name") are restored as-is; bare payloads published
    by other services are wrapped with the subject as the event name.
    """
    body = json.loads(data.decode()) if data else {}
    if isinstance(body, dict) and "name" in body:
        return Event.from_dict(body)

    payload = body if isinstance(body, dict) else {"value": body}
    return Event(
        name=subject,
        tenant_id=payload.get("tenant_id") or payload.get("tenantId"),
        payload=payload,
        source="nats",
    )


class NATSEventBus:
    """
    NATS JetStream event bus.

    Delivery is at-least-once: a message is acknowledged after its handler
    returns and redelivered (nak) when the handler raises.
    """

    def __init__(
        self,
        service_name: str,
        servers: str = "nats://localhost:4222",
        max_reconnect_attempts: int = 60,
    ):
        self.service_name = service_name
        self.servers = [s.strip() for s in servers.split(",") if s.strip()]
        self.max_reconnect_attempts = max_reconnect_attempts
        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: Dict[str, Any] = {}
        self._streams: Set[str] = set()

    async def connect(self) -> None:
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(
                servers=self.servers,
                name=self.service_name,
                max_reconnect_attempts=self.max_reconnect_attempts,
            )
            self._js = self._nc.jetstream()
            logger.info(f"Connected to NATS at {', '.join(self.servers)} as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    async def _ensure_stream(self, subject: str) -> None:
        name = stream_name_for(subject)
        if name in self._streams:
            return
        prefix = subject.split(".")[0]
        try:
            await self._js.stream_info(name)
        except NotFoundError:
            await self._js.add_stream(name=name, subjects=[f"{prefix}.>"])
            logger.info(f"Created JetStream stream {name}")
        self._streams.add(name)

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to the stream of its subject.

        Returns:
            True when JetStream acknowledged the message
        """
        if not self.is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            await self._ensure_stream(event.name)
            ack = await self._js.publish(
                event.name,
                json.dumps(event.to_dict(), cls=DecimalEncoder).encode(),
                headers={
                    "event_id": event.id,
                    "tenant_id": event.tenant_id or "",
                    "source": event.source,
                },
            )
            logger.info(f"Published event {event.name} [{event.id}] to {ack.stream}, seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event.name} [{event.id}]: {e}")
            return False

    async def subscribe_to_events(
        self,
        pattern: str,
        handler: EventHandler,
        predicate: Optional[EventPredicate] = None,
    ) -> str:
        """
        Subscribe a handler to a subject pattern (e.g. "appointment.*").

        Args:
            pattern: NATS subject pattern; "*" matches one token, ">" the rest
            handler: Async callback receiving the Event
            predicate: Optional filter; unmatched events are acknowledged and skipped

        Returns:
            The durable consumer name
        """
        if not self._js:
            raise RuntimeError("Not connected to NATS")

        durable = consumer_name_for(self.service_name, pattern)

        async def on_message(msg: Msg) -> None:
            try:
                event = decode_message(msg.subject, msg.data)
            except (ValueError, KeyError) as e:
                logger.error(f"Dropping undecodable message on {msg.subject}: {e}")
                await msg.term()
                return

            try:
                if predicate is None or predicate(event):
                    await handler(event)
                await msg.ack()
            except Exception as e:
                logger.error(f"Handler for {pattern} failed on event {event.name}: {e}", exc_info=True)
                await msg.nak()

        await self._ensure_stream(pattern)
        subscription = await self._js.subscribe(
            pattern,
            queue=durable,
            durable=durable,
            cb=on_message,
            manual_ack=True,
        )
        self._subscriptions[pattern] = subscription
        logger.info(f"Subscribed to {pattern} (JetStream consumer {durable})")
        return durable

    async def unsubscribe(self, pattern: str) -> bool:
        subscription = self._subscriptions.pop(pattern, None)
        if subscription is None:
            return False
        await subscription.unsubscribe()
        logger.info(f"Unsubscribed from {pattern}")
        return True

    async def drain(self) -> None:
        """Flush pending publishes to the server"""
        if self.is_connected:
            await self._nc.flush()

    async def close(self) -> None:
        """Drain subscriptions and close the connection"""
        if self._nc and not self._nc.is_closed:
            await self._nc.drain()
        self._subscriptions.clear()
        self._nc = None
        self._js = None
        logger.info("Disconnected from NATS")


__all__ = [
    "DecimalEncoder",
    "Event",
    "EventHandler",
    "EventPredicate",
    "NATSEventBus",
    "consumer_name_for",
    "decode_message",
    "stream_name_for",
]
