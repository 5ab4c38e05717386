"""
Mail notification plugin: sends the run log to each recipient.

Environment:
    SENDMAIL_ENABLE      'true' to enable (default: false)
    SENDMAIL_RECIPIENTS  comma separated addresses
    SENDMAIL_SUBJECT     subject tag (default: host name)
"""

import logging
import os
import socket

from hostbackup.backup.outcome import FatalError
from hostbackup.backup.tools import run_tool, which_first, ToolError

log = logging.getLogger(__name__)

SENDMAIL_ENABLE = os.environ.get('SENDMAIL_ENABLE', 'false').lower() == 'true'
SENDMAIL_RECIPIENTS = [
    r.strip() for r in os.environ.get('SENDMAIL_RECIPIENTS', '').split(',') if r.strip()
]
SENDMAIL_SUBJECT = os.environ.get('SENDMAIL_SUBJECT') or socket.gethostname()


def sendmail_subject(failed: bool) -> str:
    if failed:
        return f"[{SENDMAIL_SUBJECT}] Backup experienced errors"
    return f"[{SENDMAIL_SUBJECT}] Backup completed successfully"


def sendmail_setup() -> str:
    mail = which_first(['mail'])
    if not mail:
        raise FatalError("mail command not found. Please install before using this plugin.")
    return mail


def sendmail_exec(log_file, context):
    if not SENDMAIL_ENABLE:
        log.info("sendmail plugin disabled.")
        return True

    subject = sendmail_subject(context.outcome.failed)
    mail = sendmail_setup()
    ok = True

    for recipient in SENDMAIL_RECIPIENTS:
        log.info("Sending mail notification to: %s", recipient)
        try:
            with open(log_file, 'rb') as body:
                run_tool([mail, '-s', subject, recipient], stdin=body)
        except (ToolError, OSError) as e:
            log.error("Failed to send mail notification: %s", e)
            ok = False

    return ok
