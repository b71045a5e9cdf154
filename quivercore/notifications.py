"""
Transactional billing emails sent through the Resend REST API.

All calls are fire-and-forget to avoid blocking request handlers or
webhook processing.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from .config import config

logger = logging.getLogger(__name__)


class EmailService:
    """
    Async client for Resend's ``/emails`` endpoint.

    Public methods are meant to be scheduled with fire_and_forget().
    Errors are logged but never raised.
    """

    def __init__(self):
        self._base_url: str = config.RESEND_API_BASE.rstrip("/")
        self._api_key: str = config.RESEND_API_KEY
        self._sender: str = config.EMAIL_FROM
        self._timeout: float = config.EMAIL_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self._api_key and self._base_url)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def send(self, to: List[str], subject: str, html: str, tags: Optional[Dict[str, str]] = None) -> bool:
        if not self.enabled:
            logger.info(f"Email disabled (RESEND_API_KEY not set), skipping '{subject}' to {', '.join(to)}")
            return False

        payload: Dict[str, Any] = {
            "from": self._sender,
            "to": to,
            "subject": subject,
            "html": html,
        }
        if tags:
            payload["tags"] = [{"name": key, "value": value} for key, value in tags.items()]

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(f"{self._base_url}/emails", json=payload, headers=self._headers())

            if response.status_code in (200, 201):
                logger.debug(f"Email '{subject}' sent to {', '.join(to)}")
                return True
            if response.status_code == 401:
                logger.error("Resend auth failed (401): check RESEND_API_KEY")
            else:
                logger.warning(f"Resend unexpected status {response.status_code}: {response.text[:200]}")
        except httpx.TimeoutException:
            logger.warning(f"Resend timed out sending '{subject}' to {', '.join(to)}")
        except httpx.HTTPError as exc:
            logger.error(f"Resend error: {type(exc).__name__}: {exc}")
        return False

    async def send_payment_failed(self, email: str, amount: str, invoice_url: Optional[str] = None) -> bool:
        """Tell the customer their invoice payment failed"""
        link = invoice_url or f"{config.APP_BASE_URL}/settings/billing"
        html = (
            "<h2>Your payment didn't go through</h2>"
            f"<p>We couldn't collect <strong>${amount}</strong> for your QuiverCore subscription.</p>"
            f"<p>Please update your payment method to keep your plan active: <a href=\"{link}\">Update billing</a></p>"
            "<p>Thanks,<br>The QuiverCore Team</p>"
        )
        return await self.send([email], "Action required: payment failed", html, tags={"category": "payment_failed"})

    async def send_trial_ending(self, email: str, plan_name: str, trial_end: str) -> bool:
        """Remind the customer that their trial converts soon"""
        html = (
            "<h2>Your trial is ending soon</h2>"
            f"<p>Your QuiverCore {plan_name} trial ends on <strong>{trial_end}</strong>.</p>"
            f"<p>Manage your subscription any time: <a href=\"{config.APP_BASE_URL}/settings/billing\">Billing settings</a></p>"
            "<p>Thanks,<br>The QuiverCore Team</p>"
        )
        return await self.send([email], f"Your {plan_name} trial ends {trial_end}", html, tags={"category": "trial_ending"})


# Strong references to scheduled sends; the event loop only keeps weak ones
_pending_tasks: Set[asyncio.Task] = set()


def fire_and_forget(coro):
    """
    Schedule a coroutine as a background task without blocking.

    In FastAPI request context: uses the running event loop.
    In sync context (e.g. background_jobs.py cron): falls back to asyncio.run().
    """
    try:
        loop = asyncio.get_running_loop()
        task = loop.create_task(coro)
        _pending_tasks.add(task)
        task.add_done_callback(_pending_tasks.discard)
    except RuntimeError:
        try:
            asyncio.run(asyncio.wait_for(coro, timeout=config.EMAIL_TIMEOUT_SECONDS))
        except Exception as exc:
            logger.error(f"Email fire_and_forget sync fallback error: {exc}")


# Module-level singleton
email_service = EmailService()
