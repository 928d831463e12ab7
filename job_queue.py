import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from errors import get_error_message
from models import EventStatus, QueuedEvent
from recurrence import local_now
from schemas import RECURRING_PROCESS_EVENT, SchedulingEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventHandler = Callable[[Session, dict, datetime], Optional[dict]]

OPEN_STATUSES = (EventStatus.pending, EventStatus.processing)
_KEY_CHUNK = 500


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay: timedelta = timedelta(seconds=1)

    def delay_for(self, attempt: int) -> timedelta:
        return self.base_delay * (2**attempt)


class Throttle:
    """Sliding-window limiter: at most ``limit`` acquisitions per key per ``period``."""

    def __init__(self, limit: int, period: timedelta) -> None:
        if limit <= 0:
            raise ValueError("Throttle limit must be positive")
        self.limit = limit
        self.period = period
        self._hits: dict[str, deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, key: str, now: datetime) -> deque[datetime]:
        hits = self._hits[key]
        while hits and hits[0] <= now - self.period:
            hits.popleft()
        return hits

    def try_acquire(self, key: str, now: datetime) -> bool:
        with self._lock:
            hits = self._prune(key, now)
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def next_available(self, key: str, now: datetime) -> datetime:
        with self._lock:
            hits = self._prune(key, now)
            if len(hits) < self.limit:
                return now
            return hits[0] + self.period

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class EventQueue:
    def __init__(self, session: Session, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy()

    def _open_keys(self, keys: list[str]) -> set[str]:
        found: set[str] = set()
        for start in range(0, len(keys), _KEY_CHUNK):
            chunk = keys[start : start + _KEY_CHUNK]
            stmt = select(QueuedEvent.idempotency_key).where(
                QueuedEvent.idempotency_key.in_(chunk),
                QueuedEvent.status.in_(OPEN_STATUSES),
            )
            found.update(self.session.scalars(stmt).all())
        return found

    def enqueue_batch(
        self,
        events: Iterable[tuple[SchedulingEvent, str]],
        now: datetime,
        *,
        name: str = RECURRING_PROCESS_EVENT,
    ) -> int:
        """Stage a batch of events in the session; nothing is visible until commit."""
        batch = list(events)
        seen = self._open_keys([key for _, key in batch])
        rows: list[QueuedEvent] = []
        for event, key in batch:
            if key in seen:
                continue
            seen.add(key)
            rows.append(
                QueuedEvent(
                    name=name,
                    transaction_id=event.transaction_id,
                    user_id=event.user_id,
                    idempotency_key=key,
                    status=EventStatus.pending,
                    attempts=0,
                    available_at=now,
                )
            )
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def requeue_stale(self, now: datetime, timeout: timedelta) -> int:
        stmt = select(QueuedEvent).where(
            QueuedEvent.status == EventStatus.processing,
            QueuedEvent.started_at < now - timeout,
        )
        stale = self.session.scalars(stmt).all()
        for row in stale:
            row.status = EventStatus.pending
            row.available_at = now
            logger.warning(f"queued_event: id={row.id} requeued=stale")
        self.session.flush()
        return len(stale)

    def claim_ready(
        self,
        now: datetime,
        throttles: Optional[dict[str, Throttle]] = None,
        limit: int = 100,
    ) -> list[QueuedEvent]:
        throttles = throttles or {}
        stmt = (
            select(QueuedEvent)
            .where(
                QueuedEvent.status == EventStatus.pending,
                QueuedEvent.available_at <= now,
            )
            .order_by(QueuedEvent.available_at, QueuedEvent.id)
            .limit(limit)
        )
        claimed: list[QueuedEvent] = []
        deferred = 0
        for row in self.session.scalars(stmt).all():
            throttle = throttles.get(row.name)
            key = str(row.user_id)
            if throttle is not None and not throttle.try_acquire(key, now):
                row.available_at = throttle.next_available(key, now)
                deferred += 1
                continue
            row.status = EventStatus.processing
            row.attempts += 1
            row.started_at = now
            claimed.append(row)
        self.session.flush()
        if claimed or deferred:
            logger.info(f"queue_claim: claimed={len(claimed)} throttled={deferred}")
        return claimed

    def complete(self, event_id: int, now: datetime) -> EventStatus:
        row = self.session.get(QueuedEvent, event_id)
        if row is None:
            raise ValueError("Queued event not found")
        row.status = EventStatus.completed
        row.finished_at = now
        row.last_error = None
        self.session.flush()
        return row.status

    def fail(self, event_id: int, error: str, now: datetime) -> EventStatus:
        row = self.session.get(QueuedEvent, event_id)
        if row is None:
            raise ValueError("Queued event not found")
        row.last_error = error[:2000]
        if row.attempts > self.retry_policy.max_retries:
            row.status = EventStatus.failed
            row.finished_at = now
            logger.error(
                f"queued_event: id={row.id} name={row.name} "
                f"transaction_id={row.transaction_id} attempts={row.attempts} "
                f"status=failed error={error}"
            )
        else:
            delay = self.retry_policy.delay_for(row.attempts - 1)
            row.status = EventStatus.pending
            row.available_at = now + delay
            logger.warning(
                f"queued_event: id={row.id} attempts={row.attempts} "
                f"retry_in={delay.total_seconds():g}s error={error}"
            )
        self.session.flush()
        return row.status


class EventDispatcher:
    def __init__(
        self,
        handlers: dict[str, EventHandler],
        *,
        throttles: Optional[dict[str, Throttle]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session_factory: Optional[sessionmaker] = None,
        batch_size: int = 100,
        stale_after: timedelta = timedelta(minutes=15),
    ) -> None:
        self.handlers = handlers
        self.throttles = throttles or {}
        self.retry_policy = retry_policy or RetryPolicy()
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.stale_after = stale_after

    def _queue(self, session: Session) -> EventQueue:
        return EventQueue(session, self.retry_policy)

    def claim(self, now: datetime) -> list[int]:
        with session_scope(self.session_factory) as session:
            queue = self._queue(session)
            queue.requeue_stale(now, self.stale_after)
            return [row.id for row in queue.claim_ready(now, self.throttles, self.batch_size)]

    def run_event(self, event_id: int, now: Optional[datetime] = None) -> EventStatus:
        now = now or local_now()
        with session_scope(self.session_factory) as session:
            row = session.get(QueuedEvent, event_id)
            if row is None:
                raise ValueError("Queued event not found")
            name = row.name
            payload = {"transaction_id": row.transaction_id, "user_id": row.user_id}

        handler = self.handlers.get(name)
        try:
            if handler is None:
                raise LookupError(f"No handler registered for event {name}")
            with session_scope(self.session_factory) as session:
                result = handler(session, payload, now)
        except Exception as exc:
            logger.exception(f"queued_event: id={event_id} name={name} handler_failed")
            with session_scope(self.session_factory) as session:
                return self._queue(session).fail(
                    event_id, get_error_message(exc, type(exc).__name__), now
                )

        logger.info(f"queued_event: id={event_id} name={name} result={result}")
        with session_scope(self.session_factory) as session:
            return self._queue(session).complete(event_id, now)

    def dispatch(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        event_ids = self.claim(now)
        for event_id in event_ids:
            self.run_event(event_id, now)
        return len(event_ids)


def run_with_retries(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= policy.max_retries:
                logger.error(
                    f"job_run: job={label} attempts={attempt + 1} status=failed "
                    f"error={get_error_message(exc, type(exc).__name__)}"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"job_run: job={label} attempt={attempt + 1} "
                f"retry_in={delay.total_seconds():g}s error={get_error_message(exc)}"
            )
            sleep(delay.total_seconds())
            attempt += 1
