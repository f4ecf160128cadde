from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from driver.dispatch import ListenerDispatcher
from shared.errors import CallTimeoutError, RemoteError
from shared.frames import Added, Changed, Removed, Subscribe, Unsubscribe
from shared.log import get_logger

logger = get_logger(__name__)

CollectionEvent = Union[Added, Changed, Removed]
EventListener = Callable[[CollectionEvent], Union[None, Awaitable[None]]]
FrameSender = Callable[[Any], Awaitable[None]]


class SubscriptionState(str, Enum):
    REQUESTING = "requesting"
    READY = "ready"
    STOPPED = "stopped"


@dataclass(eq=False)
class Subscription:
    """
    One DDP subscription.

    Events whose id equals the subscription id go straight to its listeners.
    Stream publications instead emit events keyed by collection (and by
    fields.eventName, e.g. a room id); 'collection' and 'event_name' register
    the subscription for those.
    """
    id: str
    name: str
    params: List[Any] = field(default_factory=list)
    collection: Optional[str] = None
    event_name: Optional[str] = None
    state: SubscriptionState = SubscriptionState.REQUESTING
    listeners: List[EventListener] = field(default_factory=list)
    ready: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state is not SubscriptionState.STOPPED

    def matches(self, event: CollectionEvent) -> bool:
        if self.collection is None or event.collection != self.collection:
            return False
        return self.event_name is None or event.event_name == self.event_name


class SubscriptionManager:
    """
    Tracks subscriptions by id and routes added/changed/removed events.

    Listeners are handed to the dispatcher rather than called here, so routing
    never waits on application code. The dispatcher is a single FIFO queue,
    which keeps each subscription's events in arrival order.
    """

    def __init__(self, issue_id: Callable[[], str], send: FrameSender, dispatcher: ListenerDispatcher) -> None:
        self._issue_id = issue_id
        self._send = send
        self._dispatcher = dispatcher
        self._subscriptions: Dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def get(self, sub_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(sub_id)

    @property
    def active(self) -> List[Subscription]:
        return [s for s in self._subscriptions.values() if s.is_active]

    async def subscribe(
        self,
        name: str,
        params: Optional[List[Any]] = None,
        *,
        collection: Optional[str] = None,
        event_name: Optional[str] = None,
        listener: Optional[EventListener] = None,
        timeout: Optional[float] = None,
    ) -> Subscription:
        """Send a 'sub' frame and wait for the service to report it ready."""
        sub = Subscription(
            id=self._issue_id(),
            name=name,
            params=list(params or []),
            collection=collection,
            event_name=event_name,
            ready=asyncio.get_running_loop().create_future(),
        )
        if listener is not None:
            sub.listeners.append(listener)
        self._subscriptions[sub.id] = sub

        try:
            await self._send(Subscribe(id=sub.id, name=name, params=sub.params))
            await asyncio.wait_for(asyncio.shield(sub.ready), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Subscription %s not ready within %ss", name, timeout, extra={"sub_id": sub.id})
            await self.unsubscribe(sub.id)
            raise CallTimeoutError(f"Subscription {name} not ready within {timeout}s") from None
        except BaseException:
            self._drop(sub)
            raise

        logger.info("Subscribed to %s %s", name, sub.params, extra={"sub_id": sub.id})
        return sub

    async def unsubscribe(self, sub_id: str) -> bool:
        sub = self._subscriptions.get(sub_id)
        if sub is None or not sub.is_active:
            return False
        self._drop(sub)
        await self._send(Unsubscribe(id=sub_id))
        logger.info("Unsubscribed from %s", sub.name, extra={"sub_id": sub_id})
        return True

    def mark_ready(self, sub_id: str) -> bool:
        sub = self._subscriptions.get(sub_id)
        if sub is None or not sub.is_active:
            logger.warning("Ready for unknown or stopped subscription", extra={"sub_id": sub_id})
            return False
        sub.state = SubscriptionState.READY
        if sub.ready is not None and not sub.ready.done():
            sub.ready.set_result(sub)
        return True

    def mark_failed(self, sub_id: str, error: Optional[Dict[str, Any]]) -> bool:
        """Handle 'nosub': a refusal while requesting, or the end of a live subscription."""
        sub = self._subscriptions.get(sub_id)
        if sub is None:
            logger.debug("nosub for unknown subscription", extra={"sub_id": sub_id})
            return False
        self._drop(sub, RemoteError.from_payload(error) if error else None)
        if error:
            logger.warning("Subscription %s stopped by service: %s", sub.name, error, extra={"sub_id": sub_id})
        return True

    def stop_all(self, error: BaseException) -> int:
        subs = list(self._subscriptions.values())
        for sub in subs:
            self._drop(sub, error)
        return len(subs)

    def route_event(self, event: CollectionEvent) -> int:
        """
        Queue an event for the matching subscription listeners.

        Returns the number of subscriptions the event reached; events nobody
        is listening for are dropped since unsubscribe may race in-flight data.
        """
        direct = self._subscriptions.get(event.id)
        if direct is not None and direct.is_active:
            targets = [direct]
        else:
            targets = [s for s in self._subscriptions.values() if s.is_active and s.matches(event)]

        if not targets:
            logger.debug("Dropping %s event for %s/%s", event.kind, event.collection, event.id)
            return 0

        for sub in targets:
            self._dispatcher.post(sub.listeners, event)
        return len(targets)

    def _drop(self, sub: Subscription, error: Optional[BaseException] = None) -> None:
        sub.state = SubscriptionState.STOPPED
        self._subscriptions.pop(sub.id, None)
        if sub.ready is not None and not sub.ready.done():
            sub.ready.set_exception(error or RemoteError(reason=f"Subscription {sub.name} stopped"))
            sub.ready.exception()
