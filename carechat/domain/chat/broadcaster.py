"""
Real-time chat broadcasting.

Every thread has a topic named chat.{threadId}. Subscribers hold a bounded
asyncio.Queue; publishing never waits on a subscriber, and a subscriber whose
queue is full is dropped.

RedisBroadcaster fans events out across API processes: publish goes to the
Redis channel of the same name and a relay task delivers incoming messages to
the local subscribers.
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from ...models import User
from ...models_chat import ChatThread
from .events import ChatEvent
from .exceptions import ChatForbidden
from .policy import AuthorizationPolicy, policy as default_policy

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "chat."
# Pusher-protocol clients name authenticated channels private-chat.{threadId}
PRIVATE_CHANNEL_PREFIX = "private-"


def topic_for(thread_id: int) -> str:
    return f"{TOPIC_PREFIX}{thread_id}"


def thread_id_from_topic(topic: str) -> Optional[int]:
    """'chat.42' or 'private-chat.42' -> 42; anything else -> None"""
    if topic.startswith(PRIVATE_CHANNEL_PREFIX):
        topic = topic[len(PRIVATE_CHANNEL_PREFIX) :]
    if not topic.startswith(TOPIC_PREFIX):
        return None
    raw = topic[len(TOPIC_PREFIX) :]
    if not raw.isdigit():
        return None
    return int(raw)


@dataclass(frozen=True)
class BroadcastMessage:
    topic: str
    event: str
    data: dict

    def to_json(self) -> str:
        return json.dumps({"event": self.event, "data": self.data})

    @classmethod
    def from_json(cls, topic: str, raw: str) -> "BroadcastMessage":
        body = json.loads(raw)
        return cls(topic=topic, event=body["event"], data=body.get("data") or {})


@dataclass(eq=False)
class Subscription:
    topic: str
    user_id: int
    queue: asyncio.Queue = field(repr=False)

    async def get(self, timeout: Optional[float] = None) -> BroadcastMessage:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class RealtimeBroadcaster:
    """In-process pub/sub keyed by thread topic"""

    def __init__(self, policy: Optional[AuthorizationPolicy] = None, queue_maxsize: int = 100) -> None:
        self.policy = policy or default_policy
        self._queue_maxsize = queue_maxsize
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    def subscriber_count(self, thread_id: int) -> int:
        return len(self._subscribers.get(topic_for(thread_id), ()))

    def subscribe(self, actor: Optional[User], thread: ChatThread) -> Subscription:
        """Join a thread's topic; refused unless the actor may view the thread"""
        if not self.policy.can_view(actor, thread):
            logger.warning(
                f"🚫 Subscription refused: user {getattr(actor, 'id', None)} on thread {thread.id}"
            )
            raise ChatForbidden("Not authorized to subscribe to this thread")

        subscription = Subscription(
            topic=topic_for(thread.id),
            user_id=actor.id,
            queue=asyncio.Queue(maxsize=self._queue_maxsize),
        )
        self._subscribers[subscription.topic].add(subscription)
        logger.debug(f"📡 User {actor.id} subscribed to {subscription.topic}")
        return subscription

    def is_subscribed(self, subscription: Subscription) -> bool:
        return subscription in self._subscribers.get(subscription.topic, ())

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]

    async def publish(self, thread_id: int, event: ChatEvent) -> int:
        """Deliver to local subscribers; returns how many queues accepted the event"""
        message = BroadcastMessage(
            topic=topic_for(thread_id), event=event.event_name, data=event.payload()
        )
        return self.deliver(message)

    def deliver(self, message: BroadcastMessage) -> int:
        delivered = 0
        dead: list[Subscription] = []
        for subscription in list(self._subscribers.get(message.topic, ())):
            try:
                subscription.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                dead.append(subscription)

        # Slow consumers are dropped rather than allowed to back up the publisher
        for subscription in dead:
            logger.warning(
                f"⚠️ Dropping slow subscriber (user {subscription.user_id}) on {message.topic}"
            )
            self.unsubscribe(subscription)

        return delivered

    async def close(self) -> None:
        self._subscribers.clear()


class RedisBroadcaster(RealtimeBroadcaster):
    """Publishes through Redis pub/sub so every API process sees every event"""

    def __init__(
        self,
        redis_client,
        policy: Optional[AuthorizationPolicy] = None,
        queue_maxsize: int = 100,
    ) -> None:
        super().__init__(policy=policy, queue_maxsize=queue_maxsize)
        self.redis = redis_client
        self._relay_task: Optional[asyncio.Task] = None

    async def publish(self, thread_id: int, event: ChatEvent) -> int:
        message = BroadcastMessage(
            topic=topic_for(thread_id), event=event.event_name, data=event.payload()
        )
        try:
            return await self.redis.publish(message.topic, message.to_json())
        except Exception as e:
            # Broadcast happens after the state change has committed; never fail the caller
            logger.error(f"❌ Redis publish failed for {message.topic}: {e}")
            return 0

    async def relay(self) -> None:
        """Forward every chat.* message from Redis to local subscribers until cancelled"""
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(f"{TOPIC_PREFIX}*")
        logger.info("📡 Chat broadcast relay listening on Redis")
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "pmessage":
                    continue
                topic = raw["channel"]
                data = raw["data"]
                if isinstance(topic, bytes):
                    topic = topic.decode()
                if isinstance(data, bytes):
                    data = data.decode()
                try:
                    self.deliver(BroadcastMessage.from_json(topic, data))
                except (ValueError, KeyError) as e:
                    logger.warning(f"⚠️ Ignoring malformed broadcast on {topic}: {e}")
        finally:
            await pubsub.punsubscribe(f"{TOPIC_PREFIX}*")
            await pubsub.close()

    def start(self) -> asyncio.Task:
        if self._relay_task is None or self._relay_task.done():
            self._relay_task = asyncio.create_task(self.relay())
        return self._relay_task

    async def close(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None
        await super().close()
