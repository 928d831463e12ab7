import logging
from datetime import date, datetime, timedelta
from typing import Optional, TypeVar, Union
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from models import RecurringInterval, Transaction, TransactionStatus, TransactionType
from schemas import SchedulingEvent

logger = logging.getLogger(__name__)

D = TypeVar("D", date, datetime)

# Daily recurrence over several centuries; anything longer is corrupt data.
MAX_ROLL_FORWARD_STEPS = 100_000


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: D, months: int, *, desired_day: int) -> D:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(desired_day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def _coerce_interval(
    interval: Union[RecurringInterval, str, None],
) -> Optional[RecurringInterval]:
    if isinstance(interval, RecurringInterval):
        return interval
    if isinstance(interval, str):
        try:
            return RecurringInterval(interval.lower())
        except ValueError:
            return None
    return None


def next_occurrence(
    value: D,
    interval: Union[RecurringInterval, str, None],
    *,
    anchor_day: Optional[int] = None,
) -> D:
    """Return the occurrence one interval after ``value``.

    Monthly and yearly steps aim for ``anchor_day`` (default: ``value.day``)
    and clamp to the last day of shorter months, so Jan 31 steps to Feb 29
    in a leap year. An unknown interval leaves ``value`` unchanged.
    """
    unit = _coerce_interval(interval)
    if unit == RecurringInterval.daily:
        return value + timedelta(days=1)
    if unit == RecurringInterval.weekly:
        return value + timedelta(weeks=1)
    if unit == RecurringInterval.monthly:
        return _add_months(value, 1, desired_day=anchor_day or value.day)
    if unit == RecurringInterval.yearly:
        return _add_months(value, 12, desired_day=anchor_day or value.day)
    logger.warning(f"recurrence: unrecognized interval={interval!r}, date unchanged")
    return value


def roll_forward(
    value: D, interval: Union[RecurringInterval, str, None], now: D
) -> D:
    """Step ``value`` forward until it is strictly after ``now``."""
    anchor_day = value.day
    current = value
    steps = 0
    while current <= now:
        following = next_occurrence(current, interval, anchor_day=anchor_day)
        if following <= current:
            return value
        current = following
        steps += 1
        if steps > MAX_ROLL_FORWARD_STEPS:
            raise ValueError(
                f"Cannot roll {value} forward past {now} in {MAX_ROLL_FORWARD_STEPS} steps"
            )
    return current


def is_transaction_due(txn: Transaction, now: datetime) -> bool:
    if txn.last_processed_at is None:
        return True
    if txn.next_due_at is None:
        return True
    return txn.next_due_at <= now


def idempotency_key(txn: Transaction) -> str:
    marker = txn.next_due_at.isoformat() if txn.next_due_at else "initial"
    return f"{txn.id}:{marker}"


def find_due_transactions(session: Session, now: datetime) -> list[Transaction]:
    stmt = (
        select(Transaction)
        .where(
            Transaction.is_recurring.is_(True),
            Transaction.status == TransactionStatus.completed,
            or_(
                Transaction.last_processed_at.is_(None),
                Transaction.next_due_at <= now,
            ),
        )
        .order_by(Transaction.id)
    )
    return list(session.scalars(stmt).all())


def fan_out_due_transactions(session: Session, now: datetime) -> int:
    from job_queue import EventQueue

    due = find_due_transactions(session, now)
    if not due:
        logger.info("recurring_fan_out: due=0")
        return 0
    events = [
        (SchedulingEvent(transaction_id=txn.id, user_id=txn.user_id), idempotency_key(txn))
        for txn in due
    ]
    enqueued = EventQueue(session).enqueue_batch(events, now)
    logger.info(
        f"recurring_fan_out: due={len(due)} enqueued={enqueued} "
        f"already_queued={len(due) - enqueued}"
    )
    return enqueued


class RecurringTransactionProcessor:
    """Apply one due occurrence of a recurring transaction.

    All writes happen in the caller's session; the caller's unit of work
    commits them together or rolls all of them back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def process(
        self, event: SchedulingEvent, now: Optional[datetime] = None
    ) -> Optional[Transaction]:
        from services import apply_balance_delta, signed_amount

        now = now or local_now()
        source = self.session.scalar(
            select(Transaction).where(
                Transaction.id == event.transaction_id,
                Transaction.user_id == event.user_id,
            )
        )
        if source is None:
            logger.info(
                f"recurring_process: transaction_id={event.transaction_id} outcome=missing"
            )
            return None
        if not source.is_recurring or not is_transaction_due(source, now):
            logger.info(
                f"recurring_process: transaction_id={source.id} outcome=not_due"
            )
            return None

        next_due = next_occurrence(now, source.recurring_interval)
        if next_due <= now:
            logger.warning(
                f"recurring_process: transaction_id={source.id} outcome=skipped "
                f"reason=invalid_interval interval={source.recurring_interval!r}"
            )
            return None

        previous = source.last_processed_at
        claim = (
            update(Transaction)
            .where(
                Transaction.id == source.id,
                Transaction.last_processed_at.is_(None)
                if previous is None
                else Transaction.last_processed_at == previous,
            )
            .values(last_processed_at=now, next_due_at=next_due)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(claim).rowcount != 1:
            logger.info(
                f"recurring_process: transaction_id={source.id} outcome=already_claimed"
            )
            return None

        entry = Transaction(
            user_id=source.user_id,
            account_id=source.account_id,
            type=source.type,
            amount_cents=source.amount_cents,
            description=f"{source.description or source.category} (Recurring)",
            date=now,
            category=source.category,
            status=TransactionStatus.completed,
            is_recurring=False,
            recurring_source_id=source.id,
        )
        self.session.add(entry)
        apply_balance_delta(
            self.session,
            source.account_id,
            signed_amount(source.type, source.amount_cents),
        )
        self.session.flush()
        self.session.expire(source, ["last_processed_at", "next_due_at"])
        logger.info(
            f"recurring_process: transaction_id={source.id} outcome=processed "
            f"entry_id={entry.id} next_due_at={next_due.isoformat()} "
            f"delta_cents={signed_amount(source.type, source.amount_cents)}"
        )
        return entry


def process_recurring_event(
    session: Session, payload: dict, now: datetime
) -> Optional[dict]:
    event = SchedulingEvent.model_validate(payload)
    entry = RecurringTransactionProcessor(session).process(event, now)
    if entry is None:
        return None
    return {"entry_id": entry.id, "type": TransactionType(entry.type).value}
