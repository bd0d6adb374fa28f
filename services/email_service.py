from __future__ import annotations

import json
import logging
from html import escape
from typing import Optional, Tuple

import requests

from shared.config import get_email_settings

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def _wrap_html(title: str, body_html: str) -> str:
    return f"""
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
    <title>{escape(title)}</title>
  </head>
  <body style=\"margin:0; padding:0; background:#f1f5f9; font-family:Arial, sans-serif; color:#0f172a;\">
    <table width=\"100%\" cellpadding=\"0\" cellspacing=\"0\" style=\"padding:32px 12px;\">
      <tr>
        <td align=\"center\">
          <table width=\"100%\" cellpadding=\"0\" cellspacing=\"0\" style=\"max-width:560px; background:#ffffff; border-radius:16px; padding:28px;\">
            <tr>
              <td>
                <h1 style=\"margin:0 0 12px; font-size:22px; color:#0f172a;\">{escape(title)}</h1>
                {body_html}
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>
"""


def _button(url: str, label: str) -> str:
    return (
        f"<a href=\"{escape(url, quote=True)}\" style=\"display:inline-block; padding:12px 24px; "
        f"background-color:#0070f3; color:#ffffff; text-decoration:none; border-radius:6px; margin:16px 0;\">"
        f"{escape(label)}</a>"
    )


def send_email(*, to_email: str, subject: str, html: str, text: str) -> Tuple[bool, Optional[str]]:
    """Send one message through SendGrid. Returns (sent, error)."""
    if not to_email:
        return False, "Recipient email is required"
    settings = get_email_settings()
    payload = {
        "personalizations": [{"to": [{"email": to_email}], "subject": subject}],
        "from": {"email": settings["from_email"], "name": settings["from_name"]},
        "content": [
            {"type": "text/plain", "value": text},
            {"type": "text/html", "value": html},
        ],
    }

    if not settings["api_key"]:
        logger.info("SendGrid disabled; email payload: %s", json.dumps(payload, ensure_ascii=True))
        return True, None

    try:
        resp = requests.post(
            SENDGRID_URL,
            headers={"Authorization": f"Bearer {settings['api_key']}", "Content-Type": "application/json"},
            json=payload,
            timeout=10,
        )
    except requests.RequestException as exc:
        logger.warning("SendGrid request failed: %s", exc)
        return False, str(exc)
    if resp.status_code >= 300:
        logger.warning("SendGrid send failed: %s %s", resp.status_code, resp.text)
        return False, f"Email provider returned {resp.status_code}"
    return True, None


def send_invitation_email(
    *,
    to_email: str,
    tenant_name: str,
    role: str,
    link: str,
    inviter_name: Optional[str] = None,
) -> Tuple[bool, Optional[str]]:
    subject = f"You've been invited to join {tenant_name}"
    who = inviter_name or "A team administrator"
    body = (
        f"<p style=\"margin:0 0 16px;\">{escape(who)} invited you to join "
        f"<strong>{escape(tenant_name)}</strong> as <strong>{escape(role)}</strong>.</p>"
        f"{_button(link, 'Accept invitation')}"
        "<p style=\"margin:16px 0 0; color:#475569;\">This invitation expires in 7 days.</p>"
    )
    text = "\n".join(
        [
            f"{who} invited you to join {tenant_name} as {role}.",
            "",
            f"Accept the invitation: {link}",
            "",
            "This invitation expires in 7 days.",
        ]
    )
    return send_email(to_email=to_email, subject=subject, html=_wrap_html(subject, body), text=text)


def send_recovery_verification_email(*, to_email: str, link: str) -> Tuple[bool, Optional[str]]:
    subject = "Verify your recovery email"
    body = (
        "<p style=\"margin:0 0 16px;\">You've added this email as a recovery email for your account.</p>"
        "<p style=\"margin:0 0 16px;\">Click the button below to verify this email address:</p>"
        f"{_button(link, 'Verify Recovery Email')}"
        "<p style=\"margin:0 0 8px;\">This link will expire in 24 hours.</p>"
        "<p style=\"margin:0; color:#475569;\">If you didn't request this, you can safely ignore this email.</p>"
    )
    text = "\n".join(
        [
            "You've added this email as a recovery email for your account.",
            f"Verify it here: {link}",
            "This link will expire in 24 hours.",
        ]
    )
    return send_email(to_email=to_email, subject=subject, html=_wrap_html(subject, body), text=text)
