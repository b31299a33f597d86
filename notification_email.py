"""
Notification Email Helper
Sends account emails (verification, password reset, results) via SMTP.

Configuration via environment variables:
- MAIL_SERVER: SMTP host (e.g., smtp.gce.cm)
- MAIL_PORT: SMTP port (default: 587 for TLS)
- MAIL_USERNAME: SMTP username
- MAIL_PASSWORD: SMTP password
- MAIL_USE_TLS: Use STARTTLS (default: True)
- MAIL_USE_SSL: Use SSL (default: False, use for port 465)
- MAIL_SENDER_NAME: Display name for sender (default: GCE Board)
"""

import os
import smtplib
import logging
from email.message import EmailMessage
from email.utils import formataddr
from typing import List, Tuple, Optional

logger = logging.getLogger(__name__)


def get_smtp_config():
    """Get SMTP configuration from environment (reload each time for testing)."""
    return {
        'host': os.getenv('MAIL_SERVER', 'localhost'),
        'port': int(os.getenv('MAIL_PORT', 587)),
        'user': os.getenv('MAIL_USERNAME', ''),
        'password': os.getenv('MAIL_PASSWORD', ''),
        'use_tls': os.getenv('MAIL_USE_TLS', 'True').lower() in ('true', '1', 'yes'),
        'use_ssl': os.getenv('MAIL_USE_SSL', 'False').lower() in ('true', '1', 'yes'),
        'sender_name': os.getenv('MAIL_SENDER_NAME', 'GCE Board'),
    }


def is_email_configured() -> bool:
    """Check if email sending is properly configured."""
    cfg = get_smtp_config()
    return bool(cfg['host'] and cfg['host'] != 'localhost' and cfg['user'] and cfg['password'])


def send_email(to_addrs: List[str], subject: str, plain_body: str,
               html_body: Optional[str] = None) -> Tuple[bool, str]:
    """
    Send an email to one or more recipients.

    Returns:
        Tuple of (success: bool, message: str)
    """
    cfg = get_smtp_config()

    if not is_email_configured():
        logger.info(f"[EMAIL] not configured, skipped '{subject}' to {to_addrs}")
        return False, "Email not configured. Set MAIL_SERVER, MAIL_USERNAME, MAIL_PASSWORD environment variables."

    to_addrs = [addr for addr in to_addrs if addr and '@' in addr]
    if not to_addrs:
        return False, "No valid email addresses provided"

    try:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = formataddr((cfg['sender_name'], cfg['user']))
        msg['To'] = ', '.join(to_addrs)
        msg['Reply-To'] = cfg['user']
        msg.set_content(plain_body)
        if html_body:
            msg.add_alternative(html_body, subtype='html')

        if cfg['use_ssl']:
            with smtplib.SMTP_SSL(cfg['host'], cfg['port'], timeout=30) as server:
                server.login(cfg['user'], cfg['password'])
                server.send_message(msg)
        else:
            with smtplib.SMTP(cfg['host'], cfg['port'], timeout=30) as server:
                if cfg['use_tls']:
                    server.starttls()
                server.login(cfg['user'], cfg['password'])
                server.send_message(msg)

        logger.info(f"[EMAIL] sent '{subject}' to {len(to_addrs)} recipient(s)")
        return True, f"Email sent to {len(to_addrs)} recipient(s)"

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"[EMAIL] failed to send '{subject}': {e}")
        return False, f"Failed to send email: {e}"


def send_verification_email(to_email: str, token: str, user_name: str, base_url: str) -> Tuple[bool, str]:
    """Email verification link, valid 24 hours."""
    link = f"{base_url}/auth/verify-email?token={token}"
    body = f"""
Dear {user_name},

Welcome to the Cameroon GCE Examination System!

Please open the link below to verify your email address:
{link}

This link will expire in 24 hours.
If you didn't create this account, please ignore this email.

Best regards,
GCE Board Team
"""
    return send_email([to_email], "Verify Your GCE Account", body)


def send_password_reset_email(to_email: str, token: str, user_name: str, base_url: str) -> Tuple[bool, str]:
    """Password reset link, valid 1 hour."""
    link = f"{base_url}/auth/reset-password?token={token}"
    body = f"""
Dear {user_name},

We received a request to reset your password for your GCE account.
Open the link below to reset your password:
{link}

This link will expire in 1 hour for security reasons.
If you didn't request this password reset, please ignore this email.
Your password will remain unchanged.

Best regards,
GCE Board Team
"""
    return send_email([to_email], "Reset Your GCE Account Password", body)


def send_results_published_email(to_addrs: List[str], exam_session: str, exam_level: str) -> Tuple[bool, str]:
    """Tell candidates their results are available."""
    body = f"""
Dear Candidate,

Your {exam_level} results for the {exam_session} session have been published.
Log in to the GCE portal to view your results.

Best regards,
GCE Board Team
"""
    return send_email(to_addrs, f"GCE {exam_level} Results Published", body)
