"""
Email reports for CRM AD Sync runs.

Reports go out over SMTP when ``notifications.enable_email`` is set: an alert
when a run aborts, a list of users that could not be synchronized, an optional
summary after a clean run and a test message for checking the settings.
Delivery problems are logged and reported as ``False``; they never raise.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


SUBJECT_PREFIX = "CRM AD Sync"
FOOTER = "This is an automated message from CRM AD Sync."
MAX_LISTED_ERRORS = 10
SMTPS_PORT = 465


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    if isinstance(email_to, str):
        return [email_to]
    return list(email_to)


def _open_smtp(host: str, port: int, use_tls: bool):
    if port == SMTPS_PORT:
        return smtplib.SMTP_SSL(host, port)
    server = smtplib.SMTP(host, port)
    if use_tls:
        server.starttls()
    return server


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Deliver a plain text message to the configured recipients.

    Args:
        subject: Subject line
        body: Message text
        config: ``notifications`` configuration section

    Returns:
        True when the SMTP server accepted the message
    """
    if not config.get('enable_email', False):
        logger.debug(f"Email disabled, not sending: {subject}")
        return False

    host = config.get('smtp_server')
    recipients = _recipients(config)
    if not host:
        logger.error("Cannot send email: notifications.smtp_server is not set")
        return False
    if not recipients:
        logger.error("Cannot send email: notifications.email_to is empty")
        return False

    port = int(config.get('smtp_port', 587))
    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from') or username

    message = MIMEMultipart()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message.attach(MIMEText(body, 'plain'))

    try:
        server = _open_smtp(host, port, config.get('smtp_tls', True))
        try:
            if username and password:
                server.login(username, password)
            server.sendmail(sender, recipients, message.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Sending '{subject}' via {host}:{port} failed: {e}")
        return False

    logger.info(f"Sent '{subject}' to {len(recipients)} recipient(s)")
    return True


def format_runtime(runtime_seconds: float) -> str:
    """Format a duration the way the run summary reports it."""
    if runtime_seconds > 60:
        minutes, seconds = divmod(runtime_seconds, 60)
        return f"{int(minutes)}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _report(heading: str, lines: List[str]) -> str:
    stamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    return '\n'.join([heading, f"Timestamp: {stamp}", ""] + lines + ["", FOOTER])


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Report a run that stopped before all users were processed.

    Args:
        title: Short failure description, used in the subject
        error_message: The error that stopped the run
        config: ``notifications`` configuration section
        additional_info: Extra ``name: value`` lines for the report
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure reports are disabled")
        return False

    lines = [f"Failure Type: {title}", f"Error Message: {error_message}"]
    if additional_info:
        lines += ["", "Details:"] + [f"  {key}: {value}" for key, value in additional_info.items()]
    lines += ["", "See the application log for the full trace."]

    return send_email(f"{SUBJECT_PREFIX} Alert: {title}",
                      _report("CRM AD Sync Failure Report", lines), config)


def send_listing_failure(error_message: str, config: Dict[str, Any], server_url: str = '') -> bool:
    """Report that the CRM user listing failed, so no user was synchronized."""
    return send_failure_notification("CRM User Listing Failed", error_message, config, {
        'Component': 'CRM user listing',
        'Server': server_url or 'unknown',
        'Impact': 'No users were synchronized',
    })


def send_update_error_notification(
    error_count: int,
    errors: List[str],
    config: Dict[str, Any]
) -> bool:
    """Report the users whose directory lookup or update failed in a completed run."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure reports are disabled")
        return False

    lines = [f"Failed users: {error_count}", "", "Errors:"]
    lines += [f"  {number}. {error}" for number, error in enumerate(errors[:MAX_LISTED_ERRORS], 1)]
    hidden = len(errors) - MAX_LISTED_ERRORS
    if hidden > 0:
        lines.append(f"  ... and {hidden} more errors")
    lines += ["", "All other users were processed normally."]

    return send_email(f"{SUBJECT_PREFIX} Alert: {error_count} User Update Errors",
                      _report("CRM AD Sync User Error Report", lines), config)


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """Send the run statistics after a run without failures, when enabled."""
    if not config.get('email_on_success', False):
        logger.debug("Success summaries are disabled")
        return False

    counters = [
        ('Users listed', 'users_listed'),
        ('Users enriched', 'users_enriched'),
        ('Users without directory record', 'users_skipped'),
        ('Users updated', 'users_updated'),
        ('Failed updates', 'users_failed'),
        ('Directory lookup errors', 'enrichment_errors'),
    ]
    lines = ["Sync completed.", "", "Statistics:",
             f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}"]
    lines += [f"  {label}: {sync_stats.get(key, 0)}" for label, key in counters]

    return send_email(f"{SUBJECT_PREFIX}: Successful Completion",
                      _report("CRM AD Sync Summary Report", lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """Send a test message with the given settings and report the outcome."""
    lines = [
        "If you receive this message, email notifications are configured correctly.",
        "",
        f"SMTP server: {config.get('smtp_server', 'not configured')}",
        f"SMTP port: {config.get('smtp_port', 'not configured')}",
        f"From: {config.get('email_from', 'not configured')}",
        f"To: {', '.join(_recipients(config))}",
    ]

    sent = send_email(f"{SUBJECT_PREFIX}: Configuration Test",
                      _report("CRM AD Sync Test Message", lines), config)
    if sent:
        logger.info("Test message sent")
    else:
        logger.error("Test message could not be sent")
    return sent


# Not a test case
test_notification_config.__test__ = False
