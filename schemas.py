from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import RecurringInterval, TransactionStatus, TransactionType

RECURRING_PROCESS_EVENT = "transaction.recurring.process"


class SchedulingEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    transaction_id: int = Field(..., gt=0)
    user_id: int = Field(..., gt=0)


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    date: datetime
    category: str = Field(..., min_length=1, max_length=100)
    status: TransactionStatus = TransactionStatus.completed
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None


class MonthlyStats(BaseModel):
    total_income_cents: int = 0
    total_expenses_cents: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expenses_cents


class BudgetStatus(BaseModel):
    budget_amount_cents: Optional[int]
    current_expenses_cents: int
    percentage_used: float
    last_alert_sent: Optional[datetime]
    alert_due: bool


class RecurringDateFix(BaseModel):
    transaction_id: int
    description: Optional[str]
    date: datetime
    old_next_due_at: Optional[datetime]
    new_next_due_at: Optional[datetime]
