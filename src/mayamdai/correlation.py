import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

ResponsePayload: TypeAlias = dict[str, Any]
# An exception instance means failure, anything else is the success payload.
Outcome: TypeAlias = ResponsePayload | BaseException


@dataclass
class PendingRequest:
    kind: str
    id: int
    envelope: dict[str, Any]
    future: asyncio.Future[ResponsePayload]
    timeout_handle: asyncio.TimerHandle | None = field(default=None)


class CorrelationTable:
    """Maps (kind, id) to the request waiting on it.

    Every removal goes through `_pop`, which detaches the entry and cancels its
    timer before the outcome is delivered. Whoever pops an entry is the only
    one allowed to complete it.
    """

    def __init__(self) -> None:
        self._kinds: dict[str, dict[int, PendingRequest]] = {}

    def __len__(self) -> int:
        return sum(len(requests) for requests in self._kinds.values())

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(self.pending())

    def register(self, pending: PendingRequest) -> None:
        requests = self._kinds.setdefault(pending.kind, {})
        if pending.id in requests:
            raise ValueError(
                f"Request ({pending.kind}:{pending.id}) is already pending"
            )
        requests[pending.id] = pending

    def get(self, kind: str, request_id: int) -> PendingRequest | None:
        return self._kinds.get(kind, {}).get(request_id)

    def has_kind(self, kind: str) -> bool:
        """True once any request of this kind was registered, even if resolved."""
        return kind in self._kinds

    def pending(self, kind: str | None = None) -> list[PendingRequest]:
        """Snapshot of live requests, in submission order within each kind."""
        if kind is not None:
            return list(self._kinds.get(kind, {}).values())
        return [
            pending
            for requests in self._kinds.values()
            for pending in requests.values()
        ]

    def resolve(self, kind: str, request_id: int, outcome: Outcome) -> bool:
        """Deliver an outcome and drop the entry.

        Returns False when nothing is pending under (kind, request_id); the
        caller should treat the message as stale.
        """
        pending = self._pop(kind, request_id)
        if pending is None:
            return False
        _deliver(pending, outcome)
        return True

    def discard(self, pending: PendingRequest) -> None:
        """Forget this exact request without delivering anything to it.

        A different request that reuses the same (kind, id) is left alone.
        """
        if self.get(pending.kind, pending.id) is pending:
            self._pop(pending.kind, pending.id)

    def cancel_all(
        self, kind: str, reason: Callable[[PendingRequest], BaseException]
    ) -> int:
        """Fail every pending request of one kind, in submission order."""
        cancelled = 0
        for pending in self.pending(kind):
            if self._pop(kind, pending.id) is not None:
                _deliver(pending, reason(pending))
                cancelled += 1
        return cancelled

    def drain_all(self, reason: Callable[[PendingRequest], BaseException]) -> int:
        drained = 0
        for kind in list(self._kinds):
            drained += self.cancel_all(kind, reason)
        self._kinds.clear()
        return drained

    def _pop(self, kind: str, request_id: int) -> PendingRequest | None:
        requests = self._kinds.get(kind)
        if requests is None:
            return None
        pending = requests.pop(request_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
            pending.timeout_handle = None
        return pending


def _deliver(pending: PendingRequest, outcome: Outcome) -> None:
    if pending.future.done():
        # The caller stopped waiting (task cancelled), nobody to tell.
        logger.debug(
            "Dropping outcome for abandoned request (%s:%d)",
            pending.kind,
            pending.id,
        )
        return
    if isinstance(outcome, BaseException):
        pending.future.set_exception(outcome)
    else:
        pending.future.set_result(outcome)
