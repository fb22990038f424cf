from __future__ import annotations

import logging
import os

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_SENDER = "Idea Validator <onboarding@resend.dev>"

WAITLIST_SUBJECT = "You're on the list (Idea Validator beta)"
WAITLIST_HTML = """
<div style="font-family: sans-serif; color: #0f172a; max-width: 600px; margin: 0 auto; line-height: 1.6;">
    <h2>Founder,</h2>
    <p>Stop building in the dark.</p>
    <p>You're officially on the waitlist. We are rolling out invites in batches.
    <strong>Expect your private access link within the next 24 hours.</strong></p>
    <p>Keep an eye on this inbox.</p>
</div>
""".strip()


class MailDeliveryError(RuntimeError):
    pass


class ResendMailer:
    def __init__(
        self,
        *,
        api_key: str,
        sender: str = DEFAULT_SENDER,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key.strip()
        self.sender = sender
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_env(cls) -> "ResendMailer":
        return cls(
            api_key=os.getenv("RESEND_API_KEY", ""),
            sender=os.getenv("IDEA_VALIDATOR_MAIL_FROM", DEFAULT_SENDER),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, *, to: str, subject: str, html_body: str) -> None:
        if not self.configured:
            raise MailDeliveryError("Outbound mail is not configured (missing RESEND_API_KEY).")

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout_seconds) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.sender, "to": [to], "subject": subject, "html": html_body},
                )
        except httpx.HTTPError as exc:
            raise MailDeliveryError(f"Mail request failed: {exc}") from exc

        if response.status_code >= 400:
            raise MailDeliveryError(f"Mail provider rejected message ({response.status_code}): {response.text[:300]}")

    async def send_best_effort(self, *, to: str, subject: str, html_body: str) -> bool:
        if not self.configured:
            logger.info("Mail disabled; skipped '%s' to %s", subject, to)
            return False
        try:
            await self.send(to=to, subject=subject, html_body=html_body)
        except MailDeliveryError as exc:
            logger.warning("Mail to %s failed: %s", to, exc)
            return False
        logger.info("Sent '%s' to %s", subject, to)
        return True

    async def send_waitlist_confirmation(self, email: str) -> bool:
        return await self.send_best_effort(to=email, subject=WAITLIST_SUBJECT, html_body=WAITLIST_HTML)
