"""
Email notification utilities for Device Group Sync.

This module sends email notifications for fatal run failures and, optionally,
a summary of every completed run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_ITEMS = 25


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a run that was aborted.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Device Group Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from Device Group Sync."
    ])

    return send_email(f"Device Group Sync Alert: {title}", '\n'.join(body_lines), config)


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_run_summary(
    run_stats: Dict[str, Any],
    matched_devices: List[str],
    failures: List[str],
    config: Dict[str, Any]
) -> bool:
    """
    Send summary notification for a completed run.

    Sent when email_on_success is enabled, or when members failed and
    email_on_failure is enabled.

    Args:
        run_stats: Run statistics from the orchestrator
        matched_devices: One line per matched device
        failures: One line per failed member operation
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if failures:
        if not config.get('email_on_failure', True):
            logger.debug("Failure email notifications disabled")
            return False
    elif not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    counts = run_stats.get('outcomes', {})

    body_lines = [
        "Device Group Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        f"Target group: {run_stats.get('target_group', 'none')}",
        f"Dry run: {run_stats.get('dry_run', False)}",
        f"Runtime: {_format_runtime(run_stats.get('runtime_seconds', 0))}",
        f"Source groups: {', '.join(run_stats.get('source_groups', [])) or 'org-wide'}",
        f"Matched devices: {run_stats.get('matched_devices', 0)}",
        f"Desired members: {run_stats.get('desired_members', 0)}",
        ""
    ]

    if counts:
        body_lines.append("Member outcomes:")
        for outcome, count in counts.items():
            body_lines.append(f"  {outcome}: {count}")
        body_lines.append("")

    if matched_devices:
        body_lines.append("Matched devices:")
        for line in matched_devices[:MAX_LISTED_ITEMS]:
            body_lines.append(f"  {line}")
        if len(matched_devices) > MAX_LISTED_ITEMS:
            body_lines.append(f"  ... and {len(matched_devices) - MAX_LISTED_ITEMS} more")
        body_lines.append("")

    if failures:
        body_lines.append("Failures:")
        for i, failure in enumerate(failures[:MAX_LISTED_ITEMS], 1):
            body_lines.append(f"  {i}. {failure}")
        if len(failures) > MAX_LISTED_ITEMS:
            body_lines.append(f"  ... and {len(failures) - MAX_LISTED_ITEMS} more failures")
        body_lines.append("")

    body_lines.append("This is an automated message from Device Group Sync.")

    status = "Completed With Failures" if failures else "Successful Completion"
    return send_email(f"Device Group Sync: {status}", '\n'.join(body_lines), config)


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    test_body = """This is a test email from Device Group Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(email_to)
    )

    result = send_email("Device Group Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
