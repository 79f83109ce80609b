import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
from tenacity import retry, stop_after_attempt, wait_exponential

from premarket_app.core.breaker import email_breaker
from premarket_app.core.settings import settings

logger = logging.getLogger(__name__)


def _layout(title: str, name: str, body: str) -> str:
    return f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6;">
            <h2>{title}</h2>
            <p>Hello {name},</p>
            {body}
            <p>Best regards,<br>The Pre-Market Team</p>
        </body>
        </html>
        """


class EmailService:
    def __init__(self):
        self.sender = settings.EMAIL_USER
        self.dashboard_url = settings.FRONTEND_URL or ""

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _deliver(self, message: MIMEMultipart):
        await aiosmtplib.send(
            message,
            hostname=settings.EMAIL_SERVER,
            port=settings.EMAIL_PORT,
            username=settings.EMAIL_USER,
            password=settings.EMAIL_PASSWORD,
            start_tls=settings.EMAIL_USE_TLS,
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
        )

    async def send(self, email: str, subject: str, html_content: str):
        if not settings.EMAIL_ENABLED or not settings.EMAIL_SERVER:
            logger.info(f"Email disabled, skipping '{subject}' to {email}")
            return

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = email
        message.attach(MIMEText(html_content, "html"))

        async def handler():
            await self._deliver(message)
            logger.info(f"Sent '{subject}' to {email}")

        await email_breaker.call(handler)

    async def send_access_requested_email(
        self, email: str, name: str, agent_name: str, request_code: str
    ):
        body = (
            f"<p>{agent_name} has requested access to pre-market request "
            f"<strong>{request_code}</strong>.</p>"
            f"<p>Please review it and decide whether to grant it for free or set a price.</p>"
        )
        await self.send(
            email, "New Grant Access Request", _layout("Access Request", name, body)
        )

    async def send_access_approved_email(self, email: str, name: str, request_code: str):
        body = (
            f"<p>Your access to pre-market request <strong>{request_code}</strong> "
            f"has been granted free of charge.</p>"
            f"<p>The renter's contact details are now visible in your "
            f'<a href="{self.dashboard_url}">dashboard</a>.</p>'
        )
        await self.send(email, "Access Granted", _layout("Access Granted", name, body))

    async def send_payment_requested_email(
        self, email: str, name: str, request_code: str, amount: str, currency: str
    ):
        body = (
            f"<p>Access to pre-market request <strong>{request_code}</strong> "
            f"is available for <strong>{amount} {currency}</strong>.</p>"
            f"<p>Complete the payment from your dashboard to unlock the renter's details.</p>"
        )
        await self.send(
            email, "Payment Required For Access", _layout("Payment Required", name, body)
        )

    async def send_access_rejected_email(
        self, email: str, name: str, request_code: str, notes: str | None
    ):
        reason = f"<p>Reason: {notes}</p>" if notes else ""
        body = (
            f"<p>Your access request for pre-market request "
            f"<strong>{request_code}</strong> was not approved.</p>{reason}"
        )
        await self.send(
            email, "Access Request Rejected", _layout("Access Request Update", name, body)
        )

    async def send_payment_succeeded_email(
        self, email: str, name: str, request_code: str, amount: str, currency: str
    ):
        body = (
            f"<p>We received your payment of <strong>{amount} {currency}</strong>.</p>"
            f"<p>You now have full access to pre-market request "
            f"<strong>{request_code}</strong>.</p>"
        )
        await self.send(
            email, "Payment Successful", _layout("Payment Successful", name, body)
        )

    async def send_admin_payment_received_email(
        self,
        email: str,
        name: str,
        agent_name: str,
        request_code: str,
        amount: str,
        currency: str,
    ):
        body = (
            f"<p>{agent_name} paid <strong>{amount} {currency}</strong> for access "
            f"to pre-market request <strong>{request_code}</strong>.</p>"
        )
        await self.send(email, "Payment Received", _layout("Payment Received", name, body))

    async def send_renter_access_granted_email(
        self, email: str, name: str, agent_name: str, request_code: str
    ):
        body = (
            f"<p>{agent_name} now has access to your contact details for "
            f"pre-market request <strong>{request_code}</strong> and may reach out soon.</p>"
        )
        await self.send(
            email, "An Agent Can Now Contact You", _layout("Agent Access", name, body)
        )

    async def send_payment_failed_email(
        self, email: str, name: str, request_code: str, failure_count: int
    ):
        remaining = max(settings.GRANT_ACCESS_MAX_PAYMENT_FAILURES - failure_count, 0)
        retry_note = (
            f"<p>You can retry the payment ({remaining} attempt(s) remaining).</p>"
            if remaining
            else "<p>The attempt limit was reached. An admin needs to review the request.</p>"
        )
        body = (
            f"<p>Your payment for pre-market request <strong>{request_code}</strong> "
            f"did not go through.</p>{retry_note}"
        )
        await self.send(email, "Payment Failed", _layout("Payment Failed", name, body))

    async def send_request_expired_email(self, email: str, name: str, request_code: str):
        body = (
            f"<p>Your pre-market request <strong>{request_code}</strong> has passed its "
            f"moving window and is no longer shown to agents.</p>"
            f"<p>Create a new request if you are still searching.</p>"
        )
        await self.send(email, "Pre-Market Request Expired", _layout("Request Expired", name, body))

    async def send_new_request_to_agent_email(
        self, email: str, name: str, request_name: str, location: str, request_code: str
    ):
        body = (
            f"<p>A new pre-market request <strong>{request_name}</strong> "
            f"({request_code}) was posted for {location}.</p>"
            f"<p>Request access from your dashboard if you have a match: "
            f"{self.dashboard_url}</p>"
        )
        await self.send(
            email,
            f"New Pre-Market Listing Opportunity - {request_name}",
            _layout("New Pre-Market Request", name, body),
        )

    async def send_new_request_to_admin_email(
        self,
        email: str,
        name: str,
        renter_name: str,
        renter_email: str,
        request_name: str,
        location: str,
        request_code: str,
    ):
        body = (
            f"<p>{renter_name} ({renter_email}) created pre-market request "
            f"<strong>{request_name}</strong> ({request_code}) for {location}.</p>"
        )
        await self.send(
            email,
            f"[ADMIN] New Pre-Market Request - {request_name}",
            _layout("New Pre-Market Request", name, body),
        )
