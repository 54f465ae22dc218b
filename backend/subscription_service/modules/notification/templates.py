"""Email templates for subscription notifications."""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class NotificationKind(str, Enum):
    EXPIRY_WARNING = "expiry_warning"
    EXPIRY_OCCURRED = "expiry_occurred"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"


@dataclass
class RenderedMessage:
    subject: str
    text: str
    html: str


def _day_word(days: int) -> str:
    return "day" if days == 1 else "days"


def _html(title: str, paragraphs: list[str], link: str, link_label: str) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; color: #333;">
        <h2>{title}</h2>
        {body}
        <p><a href="{link}" style="background: #4f46e5; color: #fff; padding: 10px 20px;
            text-decoration: none; border-radius: 6px;">{link_label}</a></p>
    </body>
    </html>
    """


def render(kind: NotificationKind, params: dict[str, Any], frontend_url: str) -> RenderedMessage:
    """Render the message for ``kind``.

    Args:
        kind: Which notification to render
        params: ``name`` and ``plan_name`` always; ``days_left`` and
            ``expiry`` for warnings; ``expiry`` for activations
        frontend_url: Base URL for renewal and dashboard links

    Raises:
        KeyError: If a parameter the template needs is missing
    """
    name = params.get("name") or "there"
    plan_name = params["plan_name"]
    pricing_url = f"{frontend_url}/pricing"

    if kind == NotificationKind.EXPIRY_WARNING:
        days = int(params["days_left"])
        title = f"Your {plan_name} plan expires in {days} {_day_word(days)}"
        lines = [
            f"Hi {name},",
            f"Your {plan_name} subscription expires on {params['expiry']}.",
            "Renew now to keep your current limits and features without interruption.",
        ]
        return RenderedMessage(
            subject=title,
            text="\n\n".join(lines + [f"Renew: {pricing_url}"]),
            html=_html(title, lines, pricing_url, "Renew subscription"),
        )

    if kind == NotificationKind.EXPIRY_OCCURRED:
        title = f"Your {plan_name} plan has expired"
        lines = [
            f"Hi {name},",
            f"Your {plan_name} subscription has expired and your account has been moved to the Starter plan.",
            "Upgrade again at any time to restore your previous limits.",
        ]
        return RenderedMessage(
            subject=title,
            text="\n\n".join(lines + [f"Renew: {pricing_url}"]),
            html=_html(title, lines, pricing_url, "Choose a plan"),
        )

    if kind == NotificationKind.SUBSCRIPTION_ACTIVATED:
        dashboard_url = f"{frontend_url}/dashboard"
        title = f"Welcome to {plan_name}"
        lines = [
            f"Hi {name},",
            f"Your payment was received and your {plan_name} plan is active until {params['expiry']}.",
        ]
        return RenderedMessage(
            subject=title,
            text="\n\n".join(lines + [f"Dashboard: {dashboard_url}"]),
            html=_html(title, lines, dashboard_url, "Go to dashboard"),
        )

    raise ValueError(f"Unknown notification kind: {kind}")
