import json
import logging
from pathlib import Path
from typing import Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import get_settings
from errors import TRANSPORT_ERRORS, ErrorKind, Outcome, get_error_message

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "emails"

_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "INR": "₹", "JPY": "¥"}


def format_money(cents: int, currency: str = "USD") -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency.upper())
    amount = f"{abs(cents) / 100:,.2f}"
    sign = "-" if cents < 0 else ""
    if symbol:
        return f"{sign}{symbol}{amount}"
    return f"{sign}{currency.upper()} {amount}"


def format_percentage(value: float) -> str:
    if value == float("inf"):
        return "over 100%"
    return f"{value:.1f}%"


def build_template_env(directory: Path = TEMPLATE_DIR) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(directory)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["currency"] = format_money
    env.filters["percentage"] = format_percentage
    return env


def _post_resend(api_key: str, body: dict, timeout: float) -> dict:
    req = Request(
        RESEND_URL,
        data=json.dumps(body).encode("utf-8"),
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    with urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8") or "{}")


class EmailSender:
    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        env: Optional[Environment] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.sender = sender or settings.email_from
        self.timeout = timeout if timeout is not None else settings.email_timeout_secs
        self.env = env or build_template_env()

    def render(self, template: str, context: dict) -> str:
        return self.env.get_template(template).render(**context)

    def send(self, to: str, subject: str, template: str, context: dict) -> Outcome[dict]:
        if not self.api_key:
            return Outcome.failure(ErrorKind.configuration, "RESEND_API_KEY is not set")
        html = self.render(template, context)
        body = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        try:
            data = _post_resend(self.api_key, body, self.timeout)
        except HTTPError as exc:
            kind = ErrorKind.transient if exc.code >= 500 or exc.code == 429 else ErrorKind.configuration
            logger.error(f"email_send: to={to} status={exc.code} error={exc.reason}")
            return Outcome.failure(kind, f"Resend rejected email: {exc.code} {exc.reason}")
        except TRANSPORT_ERRORS as exc:
            message = get_error_message(exc, type(exc).__name__)
            logger.error(f"email_send: to={to} error={message}")
            return Outcome.failure(ErrorKind.transient, message)
        logger.info(f"email_send: to={to} subject={subject!r} id={data.get('id')}")
        return Outcome.success(data)
