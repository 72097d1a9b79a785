"""
Transactional mail through the SendGrid v3 Web API.
"""

import logging
from typing import Optional

import httpx

import config

logger = logging.getLogger(__name__)

SEND_ENDPOINT = "/v3/mail/send"


class MailerError(Exception):
    pass


def _parse_address(addr: str) -> dict:
    """'Shop <shop@x.com>' or a bare address into SendGrid's {email, name} form."""
    addr = addr.strip()
    if "<" in addr and addr.endswith(">"):
        display, _, email = addr.partition("<")
        parsed = {"email": email.rstrip(">").strip()}
        if display.strip().strip('"'):
            parsed["name"] = display.strip().strip('"')
        return parsed
    return {"email": addr}


def build_payload(to: str, subject: str, message: str) -> dict:
    payload = {
        "personalizations": [{"to": [{"email": to}], "subject": subject}],
        "from": _parse_address(config.EMAIL_FROM),
        "subject": subject,
        "content": [{"type": "text/plain", "value": message}],
        "tracking_settings": {
            "click_tracking": {"enable": False},
            "open_tracking": {"enable": False},
        },
    }
    if config.SENDGRID_SANDBOX:
        payload["mail_settings"] = {"sandbox_mode": {"enable": True}}
    return payload


async def send_email(to: str, subject: str, message: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    """Send a plain-text email and return SendGrid's message id.

    Raises MailerError when the API key or sender is missing, the request
    fails, or SendGrid answers with anything but 2xx.
    """
    if not config.SENDGRID_API_KEY or not config.EMAIL_FROM:
        raise MailerError("Email transport not configured (SENDGRID_API_KEY / EMAIL_FROM)")

    logger.info("Sending '%s' to %s", subject, to)
    async with httpx.AsyncClient(
        base_url=config.SENDGRID_API_BASE,
        headers={"Authorization": f"Bearer {config.SENDGRID_API_KEY}"},
        timeout=httpx.Timeout(config.EMAIL_TIMEOUT),
        transport=transport,
    ) as client:
        try:
            response = await client.post(SEND_ENDPOINT, json=build_payload(to, subject, message))
        except httpx.HTTPError as exc:
            raise MailerError(f"SendGrid request for {to} failed: {exc}") from exc

    # SendGrid answers 202 Accepted
    if response.status_code not in (200, 201, 202):
        try:
            errors = response.json().get("errors", [])
            detail = "; ".join(err.get("message", str(err)) for err in errors) or response.text
        except ValueError:
            detail = response.text
        raise MailerError(f"SendGrid rejected mail to {to} (HTTP {response.status_code}): {detail}")

    message_id = response.headers.get("X-Message-Id", "")
    logger.info("Email accepted by SendGrid, message id %s", message_id or "n/a")
    return message_id


def get_email_sender():
    """FastAPI dependency returning the coroutine function used for outbound mail."""
    return send_email
