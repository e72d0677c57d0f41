"""Email service for organization invitations via SMTP."""

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from .config import get_settings

logger = logging.getLogger(__name__)

ROLE_LABELS = {
    "owner": "propriétaire",
    "admin": "administrateur",
    "teacher": "formateur",
    "student": "apprenant",
}


def build_invite_link(token: str) -> str:
    settings = get_settings()
    return f"{settings.frontend_url.rstrip('/')}/join?token={token}"


def build_invite_message(
    to_email: str,
    organization_name: str,
    role: str,
    invite_link: str,
    inviter_name: Optional[str] = None,
) -> MIMEMultipart:
    """Build the plain text and HTML invitation email."""
    settings = get_settings()
    role_label = ROLE_LABELS.get(role, role)
    inviter = inviter_name or "Un membre"

    msg = MIMEMultipart("alternative")
    msg["Subject"] = f"Invitation à rejoindre {organization_name} sur iaiaz"
    msg["From"] = settings.smtp_from_email
    msg["To"] = to_email

    text_content = f"""Vous êtes invité(e) sur iaiaz
{'=' * 40}

{inviter} vous invite à rejoindre {organization_name} en tant que {role_label}.

Acceptez l'invitation en ouvrant ce lien :
{invite_link}

Ce lien expire dans 30 jours.
"""

    html_content = f"""
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
        <h1>Vous êtes invité(e) sur iaiaz</h1>
        <p>{html.escape(inviter)} vous invite à rejoindre <strong>{html.escape(organization_name)}</strong>
        en tant que {html.escape(role_label)}.</p>
        <p><a href="{html.escape(invite_link)}">Accepter l'invitation</a></p>
        <p style="color: #6b7280; font-size: 14px;">Ce lien expire dans 30 jours.</p>
    </body>
    </html>
    """

    msg.attach(MIMEText(text_content, "plain"))
    msg.attach(MIMEText(html_content, "html"))
    return msg


def send_invite_email(
    to_email: str,
    organization_name: str,
    role: str,
    token: str,
    inviter_name: Optional[str] = None,
) -> bool:
    """
    Send an organization invitation.

    Args:
        to_email: Recipient email address
        organization_name: Name shown in the subject and body
        role: Role the invitee will get
        token: Invite token used to build the join link
        inviter_name: Optional name of the member who sent the invite

    Returns:
        True if the email was sent, False if SMTP is not configured or sending failed
    """
    settings = get_settings()

    if not settings.smtp_username or not settings.smtp_password:
        logger.warning(f"SMTP credentials not configured - invite email to {to_email} not sent")
        return False

    msg = build_invite_message(
        to_email,
        organization_name,
        role,
        build_invite_link(token),
        inviter_name,
    )

    try:
        if settings.smtp_use_ssl:
            # Use SSL (port 465)
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, context=context) as server:
                server.login(settings.smtp_username, settings.smtp_password)
                server.sendmail(settings.smtp_from_email, to_email, msg.as_string())
        else:
            # Use TLS (port 587)
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
                server.starttls()
                server.login(settings.smtp_username, settings.smtp_password)
                server.sendmail(settings.smtp_from_email, to_email, msg.as_string())

        logger.info(f"Invite email sent to {to_email} for {organization_name}")
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error(f"SMTP authentication failed: {e}")
        return False
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP error sending invite to {to_email}: {e}")
        return False
