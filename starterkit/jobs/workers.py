"""Workers for every job kind plus the enqueue helpers request handlers call."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Optional

from starterkit.core.settings import settings
from starterkit.jobs.args import (
    DataExportArgs,
    ProcessStripeWebhookArgs,
    SendAccountLockedEmailArgs,
    SendAnnouncementEmailArgs,
    SendPasswordResetEmailArgs,
    SendVerificationEmailArgs,
)
from starterkit.jobs.config import ExportsConfig
from starterkit.jobs.data_export_worker import DataExportWorker
from starterkit.jobs.queue import InsertResult, Job, Worker, Workers
from starterkit.services import billing_utils
from starterkit.services.email_utils import EmailService, SendParams

if TYPE_CHECKING:
    from starterkit.jobs.client import JobClient

logger = logging.getLogger("jobs")


def frontend_url() -> str:
    return (settings.FRONTEND_URL or "").rstrip("/")


class _EmailWorker(Worker):
    def __init__(self, email: EmailService):
        self.email = email

    def _send(self, job: Job, to: str, template_name: str, data: dict, user_id: Any) -> None:
        ctx = {"user_id": user_id, "to": to, "template": template_name, "job_id": job.id}
        logger.info(f"sending {template_name} email", extra=ctx)
        try:
            self.email.send_blocking(SendParams(to=to, template_name=template_name, data=data))
        except Exception as e:
            logger.error(f"failed to send {template_name} email: {e}", extra=ctx)
            raise
        logger.info(f"{template_name} email sent", extra=ctx)


class SendVerificationEmailWorker(_EmailWorker):
    args_class = SendVerificationEmailArgs

    def work(self, job: Job[SendVerificationEmailArgs]) -> None:
        a = job.args
        self._send(
            job,
            a.email,
            "verification",
            {"Name": a.name, "VerificationURL": f"{frontend_url()}/verify-email?token={a.token}"},
            a.user_id,
        )


class SendPasswordResetEmailWorker(_EmailWorker):
    args_class = SendPasswordResetEmailArgs

    def work(self, job: Job[SendPasswordResetEmailArgs]) -> None:
        a = job.args
        self._send(
            job,
            a.email,
            "password_reset",
            {"Name": a.name, "ResetURL": f"{frontend_url()}/reset-password?token={a.token}"},
            a.user_id,
        )


class SendAnnouncementEmailWorker(_EmailWorker):
    args_class = SendAnnouncementEmailArgs

    def work(self, job: Job[SendAnnouncementEmailArgs]) -> None:
        a = job.args
        self._send(
            job,
            a.user_email,
            "announcement",
            {
                "Title": a.title,
                "Name": a.user_name,
                "Message": a.message,
                "Category": a.category,
                "LinkURL": a.link_url or "",
                "LinkText": a.link_text or "",
            },
            a.user_id,
        )


class SendAccountLockedEmailWorker(_EmailWorker):
    args_class = SendAccountLockedEmailArgs

    def work(self, job: Job[SendAccountLockedEmailArgs]) -> None:
        a = job.args
        self._send(
            job,
            a.email,
            "account_locked",
            {
                "Name": a.name,
                "LockDuration": a.lock_duration,
                "FailedAttempts": a.failed_attempts,
                "LoginURL": f"{frontend_url()}/login",
            },
            a.user_id,
        )


EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAID = "invoice.payment_succeeded"
EVENT_INVOICE_FAILED = "invoice.payment_failed"


def process_stripe_event(db, event_type: str, payload: Any) -> bool:
    """Apply one Stripe event. Returns False for event types we do not handle.

    Unknown types are not errors: retrying them can never succeed.
    """
    # The payload is only parsed for event types we handle
    if event_type == EVENT_CHECKOUT_COMPLETED:
        billing_utils.apply_checkout_completed(db, billing_utils.parse_event_object(payload))
    elif event_type in (EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED):
        billing_utils.apply_subscription_change(db, billing_utils.parse_event_object(payload))
    elif event_type == EVENT_SUBSCRIPTION_DELETED:
        billing_utils.apply_subscription_deleted(db, billing_utils.parse_event_object(payload))
    elif event_type == EVENT_INVOICE_PAID:
        billing_utils.apply_invoice_payment(db, billing_utils.parse_event_object(payload), succeeded=True)
    elif event_type == EVENT_INVOICE_FAILED:
        billing_utils.apply_invoice_payment(db, billing_utils.parse_event_object(payload), succeeded=False)
    else:
        logger.warning("unhandled stripe event type", extra={"event_type": event_type})
        return False
    return True


class ProcessStripeWebhookWorker(Worker):
    args_class = ProcessStripeWebhookArgs

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def work(self, job: Job[ProcessStripeWebhookArgs]) -> None:
        a = job.args
        logger.info("processing stripe webhook", extra={"event_id": a.event_id, "event_type": a.event_type})
        db = self.session_factory()
        try:
            process_stripe_event(db, a.event_type, a.payload)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def build_workers(session_factory, email: EmailService, storage, exports: Optional[ExportsConfig] = None) -> Workers:
    workers = Workers()
    workers.add(SendVerificationEmailWorker(email))
    workers.add(SendPasswordResetEmailWorker(email))
    workers.add(SendAnnouncementEmailWorker(email))
    workers.add(SendAccountLockedEmailWorker(email))
    workers.add(ProcessStripeWebhookWorker(session_factory))
    workers.add(DataExportWorker(session_factory, email, storage, exports))
    return workers


# ---- enqueue helpers ---------------------------------------------------------
# Each raises JobsUnavailableError when the job system is disabled so callers
# can fall back (e.g. finish registration without the verification email).


def enqueue_verification_email(jobs: JobClient, user_id: int, email: str, name: str, token: str) -> InsertResult:
    return jobs.insert(SendVerificationEmailArgs(user_id=user_id, email=email, name=name, token=token))


def enqueue_password_reset_email(jobs: JobClient, user_id: int, email: str, name: str, token: str) -> InsertResult:
    return jobs.insert(SendPasswordResetEmailArgs(user_id=user_id, email=email, name=name, token=token))


def enqueue_announcement_email(
    jobs: JobClient,
    announcement_id: int,
    user_id: int,
    user_email: str,
    user_name: str,
    title: str,
    message: str,
    category: str,
    link_url: Optional[str] = None,
    link_text: Optional[str] = None,
) -> InsertResult:
    return jobs.insert(
        SendAnnouncementEmailArgs(
            announcement_id=announcement_id,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            title=title,
            message=message,
            category=category,
            link_url=link_url,
            link_text=link_text,
        )
    )


def enqueue_account_locked_email(
    jobs: JobClient, user_id: int, email: str, name: str, lock_duration: str, failed_attempts: int
) -> InsertResult:
    return jobs.insert(
        SendAccountLockedEmailArgs(
            user_id=user_id,
            email=email,
            name=name,
            lock_duration=lock_duration,
            failed_attempts=failed_attempts,
        )
    )


def enqueue_stripe_webhook(jobs: JobClient, event_id: str, event_type: str, payload: Any) -> InsertResult:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    elif not isinstance(payload, str):
        payload = json.dumps(payload, sort_keys=True)
    return jobs.insert(ProcessStripeWebhookArgs(event_id=event_id, event_type=event_type, payload=payload))


def enqueue_data_export(jobs: JobClient, user_id: int, email: str, export_id: int) -> InsertResult:
    return jobs.insert(DataExportArgs(user_id=user_id, email=email, export_id=export_id))
