from __future__ import annotations
import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from shared.errors import CallTimeoutError
from shared.log import get_logger

logger = get_logger(__name__)


@dataclass
class PendingCall:
    id: str
    future: asyncio.Future
    issued_at: float = field(default_factory=time.monotonic)
    timeout: Optional[float] = None

    @property
    def age(self) -> float:
        return time.monotonic() - self.issued_at


class CorrelationRegistry:
    """
    Maps outstanding call ids to the futures their callers await.

    Each id is resolved at most once: resolve/fail/retire pop the entry, so a
    late or duplicate reply finds nothing and is logged as a protocol anomaly.
    Every method runs to completion on the event loop without awaiting, which
    is what serializes access to the pending map between the ingestion task
    and callers issuing new calls.
    """

    def __init__(self) -> None:
        self._counter: Iterator[int] = itertools.count(1)
        self._pending: Dict[str, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._pending

    def issue(self) -> str:
        """Return a fresh id that is not in flight."""
        while True:
            call_id = str(next(self._counter))
            if call_id not in self._pending:
                return call_id

    def register(self, call_id: str, timeout: Optional[float] = None) -> PendingCall:
        if call_id in self._pending:
            raise ValueError(f"Call id {call_id} is already pending")
        pending = PendingCall(
            id=call_id,
            future=asyncio.get_running_loop().create_future(),
            timeout=timeout,
        )
        self._pending[call_id] = pending
        return pending

    def resolve(self, call_id: str, result: Any = None) -> bool:
        pending = self._pending.pop(call_id, None)
        if pending is None:
            logger.warning("Dropping result for unknown or retired call", extra={"call_id": call_id})
            return False
        if not pending.future.done():
            pending.future.set_result(result)
        return True

    def fail(self, call_id: str, error: BaseException) -> bool:
        pending = self._pending.pop(call_id, None)
        if pending is None:
            logger.warning("Dropping error for unknown or retired call: %s", error, extra={"call_id": call_id})
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def retire(self, call_id: str) -> bool:
        """Forget a call without resolving it (its caller gave up)."""
        pending = self._pending.pop(call_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.cancel()
        logger.debug("Retired call after %.3fs", pending.age, extra={"call_id": call_id})
        return True

    def cancel_all(self, error: BaseException) -> int:
        pending_calls = list(self._pending.values())
        self._pending.clear()
        for pending in pending_calls:
            if not pending.future.done():
                pending.future.set_exception(error)
                # Mark retrieved so callers that already left don't trigger
                # "exception was never retrieved" warnings
                pending.future.exception()
        if pending_calls:
            logger.info("Cancelled %d pending call(s): %s", len(pending_calls), error)
        return len(pending_calls)

    async def wait(self, pending: PendingCall) -> Any:
        """
        Await a registered call, honouring its timeout.

        On timeout the entry is retired before CallTimeoutError propagates, so
        the registry never keeps orphaned entries.
        """
        try:
            if pending.timeout is None:
                return await asyncio.shield(pending.future)
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=pending.timeout)
        except asyncio.TimeoutError:
            self.retire(pending.id)
            raise CallTimeoutError(f"No reply to call {pending.id} within {pending.timeout}s") from None
        except asyncio.CancelledError:
            self.retire(pending.id)
            raise
