from __future__ import annotations

import calendar
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import AlertDeliveryError, CollaboratorError
from gemini import extract_json_array, strip_code_fences
from models import (
    Account,
    Budget,
    Transaction,
    TransactionType,
    User,
)
from notifications import EmailSender, format_money, format_percentage
from recurrence import local_now, next_occurrence, roll_forward
from schemas import BudgetStatus, MonthlyStats, RecurringDateFix, TransactionIn

logger = logging.getLogger(__name__)

GENERIC_RECOMMENDATION = (
    "Consider reviewing your spending patterns for better financial management."
)


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if TransactionType(txn_type) == TransactionType.expense:
        return -amount_cents
    return amount_cents


def apply_balance_delta(session: Session, account_id: int, delta_cents: int) -> None:
    """Shift an account balance in SQL so concurrent writers never lose updates."""
    stmt = (
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        raise ValueError("Account not found")


def start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    if month == 12:
        return start, datetime(year + 1, 1, 1)
    return start, datetime(year, month + 1, 1)


def previous_month(now: datetime) -> tuple[int, int]:
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


def is_new_month(last: datetime, now: datetime) -> bool:
    return (last.year, last.month) != (now.year, now.month)


def percentage_used(total_cents: int, budget_cents: int) -> float:
    if budget_cents == 0:
        return float("inf") if total_cents > 0 else 0.0
    return total_cents / budget_cents * 100


def month_to_date_expenses(session: Session, user_id: int, now: datetime) -> int:
    stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
        Transaction.user_id == user_id,
        Transaction.type == TransactionType.expense,
        Transaction.date >= start_of_month(now),
    )
    return int(session.execute(stmt).scalar_one() or 0)


def should_alert(
    pct_used: float, last_alert_sent: Optional[datetime], now: datetime, threshold: float
) -> bool:
    if pct_used < threshold:
        return False
    return last_alert_sent is None or is_new_month(last_alert_sent, now)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        account = self._account(data.account_id)
        next_due = None
        if data.is_recurring and data.recurring_interval:
            next_due = next_occurrence(data.date, data.recurring_interval)
        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            category=data.category,
            status=data.status,
            is_recurring=data.is_recurring,
            recurring_interval=data.recurring_interval if data.is_recurring else None,
            next_due_at=next_due,
        )
        self.session.add(txn)
        apply_balance_delta(
            self.session, account.id, signed_amount(data.type, data.amount_cents)
        )
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        apply_balance_delta(
            self.session, txn.account_id, -signed_amount(txn.type, txn.amount_cents)
        )
        self.session.execute(
            update(Transaction)
            .where(Transaction.recurring_source_id == txn.id)
            .values(recurring_source_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(txn)
        self.session.commit()


class RecurringScheduleRepairService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def repair(self, now: Optional[datetime] = None) -> list[RecurringDateFix]:
        now = now or local_now()
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.is_recurring.is_(True),
            )
            .order_by(Transaction.id)
        )
        fixes: list[RecurringDateFix] = []
        for txn in self.session.scalars(stmt).all():
            old_next = txn.next_due_at
            new_next = roll_forward(txn.date, txn.recurring_interval, now)
            if new_next <= now:
                logger.warning(
                    f"recurring_repair: transaction_id={txn.id} skipped "
                    f"interval={txn.recurring_interval!r}"
                )
                new_next = old_next
            else:
                txn.next_due_at = new_next
            fixes.append(
                RecurringDateFix(
                    transaction_id=txn.id,
                    description=txn.description,
                    date=txn.date,
                    old_next_due_at=old_next,
                    new_next_due_at=new_next,
                )
            )
        self.session.commit()
        logger.info(f"recurring_repair: user_id={self.user_id} fixed={len(fixes)}")
        return fixes


class BudgetAlertService:
    def __init__(
        self,
        session: Session,
        sender: Optional[EmailSender] = None,
        *,
        threshold: Optional[float] = None,
    ) -> None:
        self.session = session
        self.sender = sender or EmailSender()
        self.threshold = (
            threshold if threshold is not None else get_settings().budget_alert_threshold
        )

    def check_budget(self, budget: Budget, now: datetime) -> bool:
        total = month_to_date_expenses(self.session, budget.user_id, now)
        pct = percentage_used(total, budget.amount_cents)
        logger.info(
            f"budget_check: user_id={budget.user_id} total_expenses_cents={total} "
            f"budget_cents={budget.amount_cents} percentage_used={pct:.1f} "
            f"last_alert_sent={budget.last_alert_sent}"
        )
        if not should_alert(pct, budget.last_alert_sent, now, self.threshold):
            return False

        outcome = self.sender.send(
            to=budget.user.email,
            subject=f"Budget Alert - {format_percentage(pct)} Used",
            template="budget_alert.html",
            context={
                "user_name": budget.user.name,
                "percentage_used": pct,
                "budget_amount_cents": budget.amount_cents,
                "total_expenses_cents": total,
                "account_name": "All Accounts",
            },
        )
        if not outcome.ok:
            raise AlertDeliveryError(
                f"Budget alert for user {budget.user_id} not delivered: {outcome.error}"
            )

        previous = budget.last_alert_sent
        mark = (
            update(Budget)
            .where(
                Budget.id == budget.id,
                Budget.last_alert_sent.is_(None)
                if previous is None
                else Budget.last_alert_sent == previous,
            )
            .values(last_alert_sent=now)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(mark).rowcount != 1:
            logger.warning(
                f"budget_alert: budget_id={budget.id} last_alert_sent changed concurrently"
            )
        self.session.commit()
        self.session.expire(budget, ["last_alert_sent"])
        logger.info(f"budget_alert: budget_id={budget.id} user_id={budget.user_id} sent")
        return True

    def check_all(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or local_now()
        stmt = (
            select(Budget)
            .options(joinedload(Budget.user).selectinload(User.accounts))
            .order_by(Budget.id)
        )
        budgets = self.session.scalars(stmt).unique().all()
        logger.info(f"budget_check: budgets={len(budgets)}")

        checked = skipped = sent = failed = 0
        for budget in budgets:
            budget_id = budget.id
            if not budget.user.accounts:
                logger.info(f"budget_check: user_id={budget.user_id} skipped=no_accounts")
                skipped += 1
                continue
            checked += 1
            try:
                if self.check_budget(budget, now):
                    sent += 1
            except AlertDeliveryError:
                logger.exception(f"budget_alert: budget_id={budget_id} delivery_failed")
                failed += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_alert: budget_id={budget_id} check_failed")
                failed += 1
        return {
            "checked": checked,
            "skipped": skipped,
            "alerts_sent": sent,
            "failed": failed,
        }


class BudgetStatusService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def status(self, now: Optional[datetime] = None) -> BudgetStatus:
        now = now or local_now()
        budget = self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))
        total = month_to_date_expenses(self.session, self.user_id, now)
        if budget is None:
            return BudgetStatus(
                budget_amount_cents=None,
                current_expenses_cents=total,
                percentage_used=0.0,
                last_alert_sent=None,
                alert_due=False,
            )
        pct = percentage_used(total, budget.amount_cents)
        threshold = get_settings().budget_alert_threshold
        return BudgetStatus(
            budget_amount_cents=budget.amount_cents,
            current_expenses_cents=total,
            percentage_used=pct,
            last_alert_sent=budget.last_alert_sent,
            alert_due=should_alert(pct, budget.last_alert_sent, now, threshold),
        )


def build_insights_prompt(stats: MonthlyStats, month_name: str) -> str:
    categories = ", ".join(
        f"{category}: {format_money(amount)}"
        for category, amount in stats.by_category.items()
    )
    return (
        "Analyze this financial data and provide 3 concise, actionable insights.\n"
        "Focus on spending patterns and practical advice.\n"
        "Keep it friendly and conversational.\n\n"
        f"Financial Data for {month_name}:\n"
        f"- Total Income: {format_money(stats.total_income_cents)}\n"
        f"- Total Expenses: {format_money(stats.total_expenses_cents)}\n"
        f"- Net Income: {format_money(stats.net_cents)}\n"
        f"- Expense Categories: {categories or 'none'}\n\n"
        "Format the response as a JSON array of strings, like this:\n"
        '["insight 1", "insight 2", "insight 3"]'
    )


def parse_insights(text: str) -> list[str]:
    cleaned = strip_code_fences(text)
    try:
        insights = json.loads(cleaned)
    except json.JSONDecodeError:
        span = extract_json_array(cleaned)
        if span is None:
            raise ValueError("Could not extract JSON array from response")
        try:
            insights = json.loads(span)
        except json.JSONDecodeError as exc:
            raise ValueError("Malformed JSON array in response") from exc
    if not isinstance(insights, list) or not insights:
        raise ValueError("Invalid insights format")
    if not all(isinstance(item, str) and item.strip() for item in insights):
        raise ValueError("Insights must be non-empty strings")
    return [item.strip() for item in insights]


def fallback_insights(stats: MonthlyStats) -> list[str]:
    insights: list[str] = []
    if stats.by_category:
        category, amount = max(stats.by_category.items(), key=lambda item: item[1])
        insights.append(
            f"Your highest expense category is {category} at {format_money(amount)}."
        )
    income = stats.total_income_cents
    expenses = stats.total_expenses_cents
    if income > 0 and expenses > 0:
        rate = (income - expenses) / income * 100
        if rate > 0:
            insights.append(f"You saved {rate:.1f}% of your income this month.")
        else:
            insights.append(
                f"You spent {abs(rate):.1f}% more than you earned this month."
            )
    insights.append(GENERIC_RECOMMENDATION)
    return insights


class InsightGenerator:
    def __init__(self, client=None) -> None:
        if client is None:
            from gemini import GeminiClient

            client = GeminiClient()
        self.client = client

    def generate(self, stats: MonthlyStats, month_name: str) -> list[str]:
        outcome = self.client.generate_content(build_insights_prompt(stats, month_name))
        if not outcome.ok:
            logger.warning(
                f"insights: fallback=true kind={outcome.error_kind.value} error={outcome.error}"
            )
            return fallback_insights(stats)
        try:
            return parse_insights(outcome.value)
        except ValueError as exc:
            logger.warning(f"insights: fallback=true kind=invalid_response error={exc}")
            return fallback_insights(stats)


class MonthlyReportService:
    def __init__(
        self,
        session: Session,
        sender: Optional[EmailSender] = None,
        insights: Optional[InsightGenerator] = None,
    ) -> None:
        self.session = session
        self.sender = sender or EmailSender()
        self.insights = insights or InsightGenerator()

    def monthly_stats(self, user_id: int, year: int, month: int) -> MonthlyStats:
        start, end = month_bounds(year, month)
        stmt = (
            select(
                Transaction.type,
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("n"),
            )
            .where(
                Transaction.user_id == user_id,
                Transaction.date >= start,
                Transaction.date < end,
            )
            .group_by(Transaction.type, Transaction.category)
        )
        stats = MonthlyStats()
        for row in self.session.execute(stmt):
            amount = int(row.total or 0)
            stats.transaction_count += int(row.n)
            if row.type == TransactionType.expense:
                stats.total_expenses_cents += amount
                stats.by_category[row.category] = (
                    stats.by_category.get(row.category, 0) + amount
                )
            else:
                stats.total_income_cents += amount
        return stats

    def generate_for_user(self, user: User, now: datetime) -> Optional[list[str]]:
        """Email ``user`` last month's report; None when it was already sent."""
        year, month = previous_month(now)
        report_month = f"{year}-{month:02d}"
        if user.last_report_month == report_month:
            logger.info(
                f"monthly_report: user_id={user.id} month={report_month} skipped=already_sent"
            )
            return None
        stats = self.monthly_stats(user.id, year, month)
        month_name = f"{calendar.month_name[month]} {year}"
        insights = self.insights.generate(stats, month_name)
        self.sender.send(
            to=user.email,
            subject=f"Your Monthly Financial Report - {month_name}",
            template="monthly_report.html",
            context={
                "user_name": user.name,
                "month": month_name,
                "stats": stats,
                "insights": insights,
            },
        ).unwrap()

        previous = user.last_report_month
        mark = (
            update(User)
            .where(
                User.id == user.id,
                User.last_report_month.is_(None)
                if previous is None
                else User.last_report_month == previous,
            )
            .values(last_report_month=report_month)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(mark).rowcount != 1:
            logger.warning(
                f"monthly_report: user_id={user.id} last_report_month changed concurrently"
            )
        self.session.commit()
        logger.info(
            f"monthly_report: user_id={user.id} month={report_month} "
            f"transactions={stats.transaction_count} insights={len(insights)}"
        )
        return insights

    def generate_all(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or local_now()
        users = self.session.scalars(select(User).order_by(User.id)).all()
        sent = skipped = failed = 0
        for user in users:
            user_id = user.id
            try:
                if self.generate_for_user(user, now) is None:
                    skipped += 1
                else:
                    sent += 1
            except CollaboratorError as exc:
                logger.error(
                    f"monthly_report: user_id={user_id} failed kind={exc.kind.value} error={exc}"
                )
                failed += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"monthly_report: user_id={user_id} failed")
                failed += 1
        return {
            "processed": len(users),
            "sent": sent,
            "skipped": skipped,
            "failed": failed,
        }
