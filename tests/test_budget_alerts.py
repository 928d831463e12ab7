import math
from datetime import datetime
from http.client import RemoteDisconnected

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import notifications
from database import Base
from errors import ErrorKind, Outcome
from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from notifications import EmailSender
from services import (
    BudgetAlertService,
    BudgetStatusService,
    month_to_date_expenses,
    percentage_used,
    should_alert,
)

NOW = datetime(2024, 4, 20, 9, 0)


class FakeSender:
    def __init__(self, fail_for: tuple[str, ...] = ()) -> None:
        self.fail_for = fail_for
        self.sent: list[dict] = []

    def send(self, to, subject, template, context):
        if to in self.fail_for:
            return Outcome.failure(ErrorKind.transient, "Resend rejected email: 503")
        self.sent.append(
            {"to": to, "subject": subject, "template": template, "context": context}
        )
        return Outcome.success({"id": f"email-{len(self.sent)}"})


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _seed_user(
    session: Session,
    email: str,
    *,
    budget_cents: int = 10_000,
    expenses: tuple[int, ...] = (8_500,),
    last_alert_sent=None,
    with_account: bool = True,
) -> Budget:
    user = User(email=email, name=email.split("@")[0].title())
    session.add(user)
    session.flush()
    budget = Budget(
        user_id=user.id, amount_cents=budget_cents, last_alert_sent=last_alert_sent
    )
    session.add(budget)
    if with_account:
        account = Account(user_id=user.id, name="Checking", balance_cents=0)
        session.add(account)
        session.flush()
        for amount in expenses:
            session.add(
                Transaction(
                    user_id=user.id,
                    account_id=account.id,
                    type=TransactionType.expense,
                    amount_cents=amount,
                    description="Groceries",
                    date=datetime(2024, 4, 5),
                    category="groceries",
                    status=TransactionStatus.completed,
                )
            )
    session.flush()
    return budget


def test_percentage_used_handles_zero_budget():
    assert percentage_used(8_500, 10_000) == 85.0
    assert percentage_used(0, 0) == 0.0
    assert math.isinf(percentage_used(1, 0))


def test_should_alert_once_per_month():
    assert should_alert(85.0, None, NOW, 80)
    assert not should_alert(79.9, None, NOW, 80)
    assert not should_alert(85.0, datetime(2024, 4, 1), NOW, 80)
    assert should_alert(85.0, datetime(2024, 3, 31, 23, 59), NOW, 80)
    assert should_alert(85.0, datetime(2023, 4, 10), NOW, 80)


def test_month_to_date_expenses_ignores_income_and_prior_months():
    engine = _engine()
    with Session(engine) as session:
        budget = _seed_user(session, "ana@example.com", expenses=(1_000, 2_000))
        account_id = session.query(Account.id).scalar()
        session.add_all(
            [
                Transaction(
                    user_id=budget.user_id,
                    account_id=account_id,
                    type=TransactionType.income,
                    amount_cents=50_000,
                    date=datetime(2024, 4, 2),
                    category="salary",
                ),
                Transaction(
                    user_id=budget.user_id,
                    account_id=account_id,
                    type=TransactionType.expense,
                    amount_cents=9_999,
                    date=datetime(2024, 3, 31, 23, 0),
                    category="groceries",
                ),
            ]
        )
        session.commit()
        assert month_to_date_expenses(session, budget.user_id, NOW) == 3_000


def test_alert_fires_at_threshold_and_records_month():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        budget = _seed_user(session, "ana@example.com")
        session.commit()

        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
        assert result == {"checked": 1, "skipped": 0, "alerts_sent": 1, "failed": 0}

        session.refresh(budget)
        assert budget.last_alert_sent == NOW

    assert len(sender.sent) == 1
    message = sender.sent[0]
    assert message["to"] == "ana@example.com"
    assert message["subject"] == "Budget Alert - 85.0% Used"
    assert message["template"] == "budget_alert.html"
    assert message["context"]["total_expenses_cents"] == 8_500
    assert message["context"]["budget_amount_cents"] == 10_000


def test_no_alert_when_already_sent_this_month():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        budget = _seed_user(
            session, "ana@example.com", last_alert_sent=datetime(2024, 4, 2, 6, 0)
        )
        session.commit()

        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
        assert result["alerts_sent"] == 0
        session.refresh(budget)
        assert budget.last_alert_sent == datetime(2024, 4, 2, 6, 0)
    assert sender.sent == []


def test_alert_sent_last_month_fires_again():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        _seed_user(session, "ana@example.com", last_alert_sent=datetime(2024, 3, 25))
        session.commit()
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
    assert result["alerts_sent"] == 1


def test_repeated_runs_send_a_single_alert():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        _seed_user(session, "ana@example.com")
        session.commit()
        service = BudgetAlertService(session, sender, threshold=80)
        for hour in (9, 15, 21):
            service.check_all(NOW.replace(hour=hour))
    assert len(sender.sent) == 1


def test_below_threshold_sends_nothing():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        budget = _seed_user(session, "ana@example.com", expenses=(7_999,))
        session.commit()
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
        assert result["alerts_sent"] == 0
        session.refresh(budget)
        assert budget.last_alert_sent is None
    assert sender.sent == []


def test_zero_budget_with_spending_alerts_once():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        _seed_user(session, "ana@example.com", budget_cents=0, expenses=(500,))
        _seed_user(session, "bo@example.com", budget_cents=0, expenses=())
        session.commit()
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)

    assert result["alerts_sent"] == 1
    assert sender.sent[0]["to"] == "ana@example.com"
    assert sender.sent[0]["subject"] == "Budget Alert - over 100% Used"


def test_failed_delivery_leaves_alert_unsent_and_isolated():
    engine = _engine()
    sender = FakeSender(fail_for=("ana@example.com",))
    with Session(engine) as session:
        ana = _seed_user(session, "ana@example.com")
        bo = _seed_user(session, "bo@example.com", expenses=(9_000,))
        session.commit()

        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
        assert result == {"checked": 2, "skipped": 0, "alerts_sent": 1, "failed": 1}

        session.refresh(ana)
        session.refresh(bo)
        assert ana.last_alert_sent is None
        assert bo.last_alert_sent == NOW

    # The next run retries only the budget whose alert was never delivered.
    sender.fail_for = ()
    with Session(engine) as session:
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
    assert result["alerts_sent"] == 1
    assert [m["to"] for m in sender.sent] == ["bo@example.com", "ana@example.com"]


def test_users_without_accounts_are_skipped():
    engine = _engine()
    sender = FakeSender()
    with Session(engine) as session:
        _seed_user(session, "ana@example.com", with_account=False)
        session.commit()
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
    assert result == {"checked": 0, "skipped": 1, "alerts_sent": 0, "failed": 0}
    assert sender.sent == []


@pytest.mark.parametrize(
    "expenses, alert_due",
    [((8_000,), True), ((7_000,), False)],
)
def test_budget_status_reports_alert_due(expenses, alert_due):
    engine = _engine()
    with Session(engine) as session:
        budget = _seed_user(session, "ana@example.com", expenses=expenses)
        session.commit()
        status = BudgetStatusService(session, budget.user_id).status(NOW)
    assert status.budget_amount_cents == 10_000
    assert status.current_expenses_cents == sum(expenses)
    assert status.alert_due is alert_due


def test_budget_status_without_budget():
    engine = _engine()
    with Session(engine) as session:
        user = User(email="ana@example.com", name="Ana")
        session.add(user)
        session.commit()
        status = BudgetStatusService(session, user.id).status(NOW)
    assert status.budget_amount_cents is None
    assert status.percentage_used == 0.0
    assert status.alert_due is False


def test_dropped_email_connection_does_not_skip_other_budgets(monkeypatch):
    delivered = []

    def post(api_key, body, timeout):
        if body["to"] == ["ana@example.com"]:
            raise RemoteDisconnected("closed")
        delivered.append(body["to"][0])
        return {"id": "email-1"}

    monkeypatch.setattr(notifications, "_post_resend", post)
    engine = _engine()
    with Session(engine) as session:
        ana = _seed_user(session, "ana@example.com")
        bo = _seed_user(session, "bo@example.com")
        session.commit()

        sender = EmailSender(api_key="re_test", sender="Finance App <hi@example.com>")
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)
        assert result == {"checked": 2, "skipped": 0, "alerts_sent": 1, "failed": 1}

        session.refresh(ana)
        session.refresh(bo)
        assert ana.last_alert_sent is None
        assert bo.last_alert_sent == NOW
    assert delivered == ["bo@example.com"]


def test_unexpected_sender_error_is_counted_per_budget():
    class ExplodingSender(FakeSender):
        def send(self, to, subject, template, context):
            if to == "ana@example.com":
                raise ConnectionResetError("connection reset by peer")
            return super().send(to, subject, template, context)

    engine = _engine()
    sender = ExplodingSender()
    with Session(engine) as session:
        _seed_user(session, "ana@example.com")
        _seed_user(session, "bo@example.com")
        session.commit()
        result = BudgetAlertService(session, sender, threshold=80).check_all(NOW)

    assert result["failed"] == 1
    assert result["alerts_sent"] == 1
    assert [m["to"] for m in sender.sent] == ["bo@example.com"]
