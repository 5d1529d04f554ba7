"""
Scheduled Tasks - EventBridge-triggered sweeps over customer state.

Jobs:
- trial-reminder: trials ending in 3 days
- winback-30 / winback-90: cancellations 30 or 90 days ago
- pending-email-retry: resend emails held back for unverified recipients
- mouse-version-notify: promote latestVersion to readyVersion

Every email job checks the customer's emailsSent ledger before sending and
stamps it after, so overlapping or repeated runs never double-send.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from boto3.dynamodb.conditions import Attr

from shared.constants import (
    TRIAL_REMINDER_DAYS,
    VERIFIED_STATUS,
    VERSION_PRODUCT,
    WINBACK_WINDOWS,
)
from shared.dynamo import RecordStore, utc_now_iso
from shared.email_templates import EmailTemplates, template_for_event
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.mailer import Mailer, mask_email
from shared.metrics import emit_batch_result_metrics

logger = logging.getLogger(__name__)

TRIAL_REMINDER_KEY = "trial-reminder"
WINBACK_TEMPLATES = {"winback-30": "winBack30", "winback-90": "winBack90"}


def get_date_range(days_offset: int, now: Optional[datetime] = None) -> tuple[str, str]:
    """
    Bounds of the UTC calendar day `days_offset` days from now.

    Returns:
        (start_of_day, end_of_day) as ISO-8601 strings with millisecond precision
    """
    target = (now or datetime.now(timezone.utc)) + timedelta(days=days_offset)
    day = target.strftime("%Y-%m-%d")
    return f"{day}T00:00:00.000Z", f"{day}T23:59:59.999Z"


def was_email_sent(customer: dict, email_type: str) -> bool:
    return bool((customer.get("emailsSent") or {}).get(email_type))


class ScheduledTasks:
    """Runs one scheduled job per invocation."""

    def __init__(self, store: RecordStore, mailer: Mailer, templates: Optional[EmailTemplates] = None):
        self.store = store
        self.mailer = mailer
        self.templates = templates or EmailTemplates()
        self._tasks: dict[str, Callable[[], dict]] = {
            "trial-reminder": self.trial_reminder,
            "winback-30": lambda: self.winback("winback-30"),
            "winback-90": lambda: self.winback("winback-90"),
            "pending-email-retry": self.pending_email_retry,
            "mouse-version-notify": self.mouse_version_notify,
        }

    @property
    def task_types(self) -> list[str]:
        return list(self._tasks)

    def run(self, task_type: str) -> Optional[dict]:
        """Run a job by name. Returns None for an unknown task type."""
        task = self._tasks.get(task_type)
        if task is None:
            return None
        return task()

    def _send(self, template_name: str, data: dict) -> bool:
        """Render and send; a send failure is logged and reported as False."""
        try:
            content = self.templates.render(template_name, data)
            self.mailer.send(data["email"], content)
        except Exception as e:
            logger.error(
                f"Failed to send {template_name}: {e}",
                extra={"template": template_name, "email": mask_email(data.get("email"))},
            )
            return False

        logger.info(f"Email sent: {template_name}", extra={"template": template_name, "email": mask_email(data["email"])})
        return True

    def _stamp(self, user_id: str, ledger_key: str, clear_pending: bool = False) -> None:
        """Record a send in the emailsSent ledger; a failure here does not undo the send."""
        try:
            self.store.mark_email_sent(user_id, ledger_key, clear_pending=clear_pending)
        except Exception as e:
            logger.warning(f"Failed to stamp emailsSent.{ledger_key} for {user_id}: {e}")

    def _sweep(self, job: str, customers: list[dict], ledger_key: str, template_name: str, extra_data: dict) -> dict:
        sent = 0
        skipped = 0
        failed = 0

        for customer in customers:
            if was_email_sent(customer, ledger_key):
                skipped += 1
                continue
            if not customer.get("email"):
                logger.warning(f"Customer {customer.get('userId')} has no email, skipping {job}")
                skipped += 1
                continue

            if self._send(template_name, {"email": customer["email"], **extra_data}):
                self._stamp(customer["userId"], ledger_key)
                sent += 1
            else:
                failed += 1

        logger.info(
            f"{job} complete",
            extra={"job": job, "sent": sent, "skipped": skipped, "failed": failed, "total": len(customers)},
        )
        return {"sent": sent, "skipped": skipped, "failed": failed}

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def trial_reminder(self) -> dict:
        """Remind trialing customers whose period ends TRIAL_REMINDER_DAYS from today."""
        start, end = get_date_range(TRIAL_REMINDER_DAYS)
        customers = self.store.scan_customers(
            Attr("subscriptionStatus").eq("trialing") & Attr("currentPeriodEnd").between(start, end)
        )
        logger.info(f"Found {len(customers)} trials ending {start[:10]}")
        return self._sweep(
            TRIAL_REMINDER_KEY,
            customers,
            TRIAL_REMINDER_KEY,
            "trialEnding",
            {"daysRemaining": TRIAL_REMINDER_DAYS},
        )

    def winback(self, job: str) -> dict:
        """Win-back email for customers canceled exactly N days ago."""
        start, end = get_date_range(-WINBACK_WINDOWS[job])
        customers = self.store.scan_customers(
            Attr("subscriptionStatus").eq("canceled") & Attr("canceledAt").between(start, end)
        )
        logger.info(f"Found {len(customers)} cancellations on {start[:10]} for {job}")
        return self._sweep(job, customers, job, WINBACK_TEMPLATES[job], {})

    def pending_email_retry(self) -> dict:
        """
        Retry emails held back because the recipient was not yet verified.

        The verification lookup is one batched call; if it fails the whole
        job fails and the next scheduled run tries again.
        """
        customers = self.store.scan_customers(Attr("emailPendingVerification").eq(True))
        logger.info(f"Found {len(customers)} customers with pending emails")

        sent = 0
        still_pending = 0
        skipped = 0
        failed = 0
        if not customers:
            return {"sent": sent, "stillPending": still_pending, "skipped": skipped, "failed": failed}

        statuses = self.mailer.get_verification_statuses(c["email"] for c in customers if c.get("email"))

        for customer in customers:
            user_id = customer["userId"]
            email = customer.get("email")
            if not email or statuses.get(email) != VERIFIED_STATUS:
                still_pending += 1
                continue

            event_type = customer.get("eventType")
            template_name = template_for_event(event_type)
            if not template_name:
                logger.info(f"No template for pending {event_type} on {user_id}, clearing flag")
                self.store.update_customer(user_id, {"emailPendingVerification": False})
                skipped += 1
                continue

            if was_email_sent(customer, event_type):
                self.store.update_customer(user_id, {"emailPendingVerification": False})
                skipped += 1
                continue

            data = {"email": email, "sessionId": customer.get("sessionId"), "planName": customer.get("planName")}
            if self._send(template_name, data):
                self._stamp(user_id, event_type, clear_pending=True)
                sent += 1
            else:
                failed += 1

        logger.info(
            "pending-email-retry complete",
            extra={"sent": sent, "still_pending": still_pending, "skipped": skipped, "failed": failed},
        )
        return {"sent": sent, "stillPending": still_pending, "skipped": skipped, "failed": failed}

    def mouse_version_notify(self) -> dict:
        """Promote the latest published version to the ready-to-announce slot."""
        config = self.store.get_version_config(VERSION_PRODUCT)
        latest = (config or {}).get("latestVersion")
        if not latest:
            logger.warning(f"No latestVersion for {VERSION_PRODUCT}")
            return {"updated": False, "reason": "missing-latestVersion"}

        if config.get("readyVersion") == latest:
            logger.info(f"Version {latest} already ready")
            return {"updated": False, "reason": "already-ready"}

        self.store.update_version_config(VERSION_PRODUCT, {
            "readyVersion": latest,
            "readyReleaseNotesUrl": config.get("releaseNotesUrl"),
            "readyUpdatedAt": utc_now_iso(),
        })
        logger.info(f"Version {latest} marked ready", extra={"previous": config.get("readyVersion")})
        return {"updated": True, "readyVersion": latest}


_tasks: Optional[ScheduledTasks] = None


def _get_tasks() -> ScheduledTasks:
    global _tasks
    if _tasks is None:
        _tasks = ScheduledTasks(RecordStore(), Mailer())
    return _tasks


def handler(event, context):
    """Lambda handler for EventBridge schedule rules."""
    configure_structured_logging()
    set_request_id(event, context)

    task_type = event.get("taskType") or event.get("detail-type") or "unknown"
    logger.info(f"Scheduled task started: {task_type}")

    tasks = _get_tasks()
    if task_type not in tasks.task_types:
        logger.warning(f"Unknown task type: {task_type}")
        return {"status": "skipped", "taskType": task_type}

    try:
        result = tasks.run(task_type)
    except Exception as e:
        logger.error(f"Scheduled task {task_type} failed: {e}", exc_info=True)
        raise

    logger.info(f"Scheduled task complete: {task_type}", extra={"task_type": task_type, **result})
    if "sent" in result:
        emit_batch_result_metrics(f"ScheduledTasks/{task_type}", result)
    return {"status": "success", "taskType": task_type, **result}
