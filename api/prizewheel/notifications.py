from __future__ import annotations

import logging
from datetime import datetime

import httpx

from .config import settings
from .spin import WinDetails

logger = logging.getLogger(__name__)


class EmailError(Exception):
    pass


class EmailClient:
    """Thin client for the Resend HTTP API."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.api_key = settings.resend_api_key
        self.api_url = settings.resend_api_url
        self.sender = settings.email_from
        self.timeout = settings.email_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, text: str) -> str | None:
        """Send one message. Returns the provider id, or None when email is not configured."""
        if not self.configured:
            logger.info("Email not configured, skipping %r to %s", subject, to)
            return None

        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise EmailError(f"Email provider unreachable: {exc}") from exc

        if r.status_code >= 400:
            raise EmailError(f"Email provider error {r.status_code}: {r.text}")

        return r.json().get("id")


def _fmt(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC")


async def send_win_notifications(win: WinDetails, client: EmailClient | None = None) -> None:
    """Tell the admin and the winner about a committed spin.

    Runs after the response has gone out. Failures are logged and dropped;
    the win stands regardless.
    """
    client = client or EmailClient()

    if settings.admin_email:
        try:
            await client.send(
                settings.admin_email,
                f"New prize won - {win.prize_title}",
                "\n".join([
                    f"Prize: {win.prize_title}",
                    f"Winner: {win.winner_name or 'Unknown'} <{win.winner_email or 'Unknown'}>",
                    f"Code: {win.code}",
                    f"Won at: {_fmt(win.won_at)}",
                    f"Manage winners: {settings.app_url}/admin/winners",
                ]),
            )
        except Exception:
            logger.exception("Admin win notification failed for winner %s", win.winner_id)
    else:
        logger.info("ADMIN_EMAIL not set, skipping admin win notification")

    if not win.winner_email:
        return
    try:
        await client.send(
            win.winner_email,
            f"Congratulations! You won {win.prize_title}",
            "\n".join([
                f"Hi {win.winner_name or 'Winner'},",
                "",
                f"Your code {win.code} won: {win.prize_title}",
                win.prize_description or "",
                "",
                f"Questions? Contact {settings.admin_email or settings.email_from}.",
                f"{settings.app_name}",
            ]),
        )
    except Exception:
        logger.exception("Winner confirmation failed for winner %s", win.winner_id)


async def send_code_issued(client: EmailClient, *, name: str | None, email: str, code: str) -> None:
    await client.send(
        email,
        f"Your {settings.app_name} spin code",
        "\n".join([
            f"Hi {name or 'there'},",
            "",
            f"Your spin code is {code}.",
            f"Enter it at {settings.app_url} to spin the wheel.",
            "",
            f"{settings.app_name}",
        ]),
    )
