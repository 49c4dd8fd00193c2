import html
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

SMTP_SERVER = os.getenv("SMTP_SERVER", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "1") == "1"
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
EMAIL_FROM = (os.getenv("EMAIL_FROM") or SMTP_USERNAME or "no-reply@example.com").strip()
ADMIN_NOTIFY_EMAIL = os.getenv("ADMIN_NOTIFY_EMAIL") or os.getenv("ADMIN_EMAIL")


def send_email(to: str, subject: str, body: str, *, html_body: Optional[str] = None) -> Tuple[bool, str]:
    """
    Send an email through the configured SMTP server.

    Returns (success, error_message). Never raises: callers treat mail as a
    side effect that must not fail the request that triggered it.
    """
    if not SMTP_SERVER:
        error_msg = "SMTP server not configured (SMTP_SERVER environment variable missing)"
        logger.warning(error_msg)
        return False, error_msg
    if not to:
        error_msg = "No recipient address"
        logger.warning(error_msg)
        return False, error_msg

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"SMM Panel <{EMAIL_FROM}>"
    msg["To"] = to
    msg.set_content(body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")

    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT, timeout=30) as server:
            if SMTP_USE_TLS:
                server.starttls()
            if SMTP_USERNAME and SMTP_PASSWORD:
                server.login(SMTP_USERNAME, SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.exception(f"Email to {to} failed")
        return False, str(e)
    return True, ""


def order_email(order: dict) -> Tuple[str, str, str]:
    """Build (subject, text, html) for a new-order notification."""
    user = order.get("user") or {}
    rows = [
        ("Order", order.get("id", "")),
        ("Customer", f"{user.get('name', '')} <{user.get('email') or '-'}>"),
        ("Platform", order.get("platform", "")),
        ("Service", order.get("service", "")),
        ("Link", order.get("link", "")),
        ("Quantity", order.get("quantity", "")),
        ("Price", order.get("price", "")),
        ("Payment", order.get("payment_method", "")),
        ("Status", order.get("status", "")),
        ("Time", order.get("created_at", "")),
        ("Proof", order.get("proof", "")),
    ]
    subject = f"New Order: {order.get('platform')} - {order.get('service')}"
    text = "New Order Received\n\n" + "\n".join(f"{k}: {v}" for k, v in rows)
    body = "".join(f"<p><b>{k}:</b> {html.escape(str(v))}</p>" for k, v in rows)
    return subject, text, f"<h3>New Order Received</h3>{body}"


def notify_new_order(order: dict) -> bool:
    subject, text, html_body = order_email(order)
    ok, error = send_email(ADMIN_NOTIFY_EMAIL or "", subject, text, html_body=html_body)
    if not ok:
        logger.error(f"Order {order.get('id')} recorded but admin email failed: {error}")
    return ok
