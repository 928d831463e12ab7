from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import AlertDeliveryError
from recurrence import fan_out_due_transactions, process_recurring_event
from schemas import RECURRING_PROCESS_EVENT
from services import BudgetAlertService, MonthlyReportService


@dataclass(frozen=True)
class EventTrigger:
    event: str
    throttle_limit: Optional[int] = None
    throttle_period: timedelta = timedelta(minutes=1)


@dataclass(frozen=True)
class JobDefinition:
    id: str
    name: str
    trigger: Union[BaseTrigger, EventTrigger]
    handler: Callable
    misfire_grace_time: int = 3600

    @property
    def is_event(self) -> bool:
        return isinstance(self.trigger, EventTrigger)


def trigger_recurring_transactions(session: Session, now: datetime) -> dict:
    return {"triggered": fan_out_due_transactions(session, now)}


def check_budget_alerts(session: Session, now: datetime) -> dict:
    result = BudgetAlertService(session).check_all(now)
    if result["failed"]:
        # Delivered alerts are already committed, so a rerun only retries the failures.
        raise AlertDeliveryError(
            f"{result['failed']} budget alert(s) could not be delivered"
        )
    return result


def generate_monthly_reports(session: Session, now: datetime) -> dict:
    return MonthlyReportService(session).generate_all(now)


def build_jobs(settings: Optional[Settings] = None) -> list[JobDefinition]:
    settings = settings or get_settings()
    tz = settings.timezone
    return [
        JobDefinition(
            id="trigger-recurring-transactions",
            name="Trigger Recurring Transactions",
            trigger=CronTrigger.from_crontab("0 0 * * *", timezone=tz),
            handler=trigger_recurring_transactions,
        ),
        JobDefinition(
            id="process-recurring-transaction",
            name="Process Recurring Transaction",
            trigger=EventTrigger(
                event=RECURRING_PROCESS_EVENT,
                throttle_limit=settings.recurring_throttle_limit,
                throttle_period=timedelta(
                    seconds=settings.recurring_throttle_period_secs
                ),
            ),
            handler=process_recurring_event,
        ),
        JobDefinition(
            id="check-budget-alerts",
            name="Check Budget Alerts",
            trigger=CronTrigger.from_crontab("0 */6 * * *", timezone=tz),
            handler=check_budget_alerts,
            misfire_grace_time=1800,
        ),
        JobDefinition(
            id="generate-monthly-reports",
            name="Generate Monthly Reports",
            trigger=CronTrigger.from_crontab("0 0 1 * *", timezone=tz),
            handler=generate_monthly_reports,
            misfire_grace_time=6 * 3600,
        ),
    ]
