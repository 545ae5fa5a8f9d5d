"""
Email channel using Resend
"""

import asyncio
import logging
from typing import Optional

import resend

from ..config import EMAIL_FROM_ADDRESS, RESEND_API_KEY

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


async def send_email(to: str, subject: str, html_content: str) -> tuple[bool, Optional[str]]:
    """
    Send a single email via Resend

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        return False, "Email service not configured"

    try:
        logger.info(f"📧 Sending email via Resend to: {to}")
        # The Resend SDK is synchronous; keep it off the event loop
        response = await asyncio.to_thread(
            resend.Emails.send,
            {
                "from": EMAIL_FROM_ADDRESS,
                "to": [to],
                "subject": subject,
                "html": html_content,
            },
        )
        logger.info(f"✅ Email sent successfully via Resend: {response}")
        return True, None
    except Exception as e:
        logger.error(f"❌ Email send error to {to}: {e}")
        return False, str(e)
