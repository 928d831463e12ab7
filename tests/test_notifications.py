import io
from http.client import RemoteDisconnected
from urllib.error import HTTPError, URLError

import notifications
from errors import ErrorKind
from notifications import EmailSender, format_money, format_percentage
from schemas import MonthlyStats


def test_format_helpers():
    assert format_money(123_456) == "$1,234.56"
    assert format_money(-500) == "-$5.00"
    assert format_money(1_000, "CHF") == "CHF 10.00"
    assert format_percentage(85.0) == "85.0%"
    assert format_percentage(float("inf")) == "over 100%"


def test_budget_alert_template_renders_amounts():
    html = EmailSender(api_key="re_test").render(
        "budget_alert.html",
        {
            "user_name": "Ana",
            "percentage_used": 85.0,
            "budget_amount_cents": 10_000,
            "total_expenses_cents": 8_500,
            "account_name": "All Accounts",
        },
    )
    assert "Ana" in html
    assert "85.0%" in html
    assert "$100.00" in html
    assert "$85.00" in html
    assert "$15.00" in html


def test_monthly_report_template_lists_categories_and_insights():
    stats = MonthlyStats(
        total_income_cents=500_000,
        total_expenses_cents=260_000,
        by_category={"groceries": 60_000, "housing": 200_000},
        transaction_count=4,
    )
    html = EmailSender(api_key="re_test").render(
        "monthly_report.html",
        {
            "user_name": "Ana",
            "month": "April 2024",
            "stats": stats,
            "insights": ["Keep <saving>"],
        },
    )
    assert "April 2024" in html
    assert "$2,400.00" in html
    assert html.index("housing") < html.index("groceries")
    assert "Keep &lt;saving&gt;" in html


def test_send_posts_rendered_email(monkeypatch):
    captured = {}

    def fake_post(api_key, body, timeout):
        captured.update(api_key=api_key, body=body)
        return {"id": "email-123"}

    monkeypatch.setattr(notifications, "_post_resend", fake_post)
    sender = EmailSender(api_key="re_test", sender="Finance App <hi@example.com>")
    outcome = sender.send(
        "ana@example.com",
        "Budget Alert - 85.0% Used",
        "budget_alert.html",
        {
            "user_name": "Ana",
            "percentage_used": 85.0,
            "budget_amount_cents": 10_000,
            "total_expenses_cents": 8_500,
            "account_name": "All Accounts",
        },
    )

    assert outcome.ok
    assert outcome.value == {"id": "email-123"}
    assert captured["api_key"] == "re_test"
    assert captured["body"]["to"] == ["ana@example.com"]
    assert captured["body"]["from"] == "Finance App <hi@example.com>"
    assert "85.0%" in captured["body"]["html"]


def test_send_without_key_is_configuration_error(monkeypatch):
    def fail_post(api_key, body, timeout):
        raise AssertionError("no request expected")

    monkeypatch.setattr(notifications, "_post_resend", fail_post)
    outcome = EmailSender(api_key="").send("ana@example.com", "Hi", "base.html", {})
    assert outcome.error_kind == ErrorKind.configuration


def test_send_classifies_http_failures(monkeypatch):
    def rejected(status):
        def fake_post(api_key, body, timeout):
            raise HTTPError(
                notifications.RESEND_URL, status, "error", {}, io.BytesIO(b"{}")
            )

        return fake_post

    sender = EmailSender(api_key="re_test")
    monkeypatch.setattr(notifications, "_post_resend", rejected(503))
    assert sender.send("a@example.com", "Hi", "base.html", {}).error_kind == ErrorKind.transient

    monkeypatch.setattr(notifications, "_post_resend", rejected(422))
    assert (
        sender.send("a@example.com", "Hi", "base.html", {}).error_kind
        == ErrorKind.configuration
    )

    def unreachable(api_key, body, timeout):
        raise URLError("timed out")

    monkeypatch.setattr(notifications, "_post_resend", unreachable)
    assert sender.send("a@example.com", "Hi", "base.html", {}).error_kind == ErrorKind.transient


def test_send_dropped_connection_is_transient(monkeypatch):
    def disconnect(api_key, body, timeout):
        raise RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(notifications, "_post_resend", disconnect)
    outcome = EmailSender(api_key="re_test").send("a@example.com", "Hi", "base.html", {})
    assert not outcome.ok
    assert outcome.error_kind == ErrorKind.transient
    assert "closed connection" in outcome.error
