"""
core/audit.py -- Audit trail for membership events.

Every security-relevant action (login, failed login, lockout, registration,
role change, request table bootstrap) is written as one line to the
"membership.audit" logger:

    login: User logged in. user='alice' ip='10.0.0.5' temporary_password=False

Events that carry an error are logged at WARNING with the error text appended
so failures stand out in the stream. Routing the audit trail through stdlib
logging means it follows whatever handlers api/main.py configured.
"""

import logging

audit_logger = logging.getLogger("membership.audit")


def audit(action: str, message: str, error: BaseException | None = None, **fields) -> None:
    details = " ".join(f"{key}={value!r}" for key, value in fields.items())
    if error is not None:
        audit_logger.warning("%s: %s %s error=%r", action, message, details, str(error))
    else:
        audit_logger.info("%s: %s %s", action, message, details)
