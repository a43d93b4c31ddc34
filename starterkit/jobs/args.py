"""Job argument types: one dataclass per job kind, with its routing and retry policy."""
from dataclasses import dataclass
from typing import Optional

from starterkit.jobs.queue import QUEUE_DEFAULT, InsertOpts, JobArgs

QUEUE_EMAIL = "email"
QUEUE_WEBHOOKS = "webhooks"

# SMTP failures are usually transient
EMAIL_MAX_ATTEMPTS = 5
WEBHOOK_MAX_ATTEMPTS = 3
DATA_EXPORT_MAX_ATTEMPTS = 3


@dataclass
class SendVerificationEmailArgs(JobArgs):
    kind = "send_verification_email"

    user_id: int
    email: str
    name: str
    token: str

    def insert_opts(self) -> InsertOpts:
        return InsertOpts(queue=QUEUE_EMAIL, max_attempts=EMAIL_MAX_ATTEMPTS)


@dataclass
class SendPasswordResetEmailArgs(JobArgs):
    kind = "send_password_reset_email"

    user_id: int
    email: str
    name: str
    token: str

    def insert_opts(self) -> InsertOpts:
        return InsertOpts(queue=QUEUE_EMAIL, max_attempts=EMAIL_MAX_ATTEMPTS)


@dataclass
class SendAnnouncementEmailArgs(JobArgs):
    kind = "send_announcement_email"

    announcement_id: int
    user_id: int
    user_email: str
    user_name: str
    title: str
    message: str
    category: str
    link_url: Optional[str] = None
    link_text: Optional[str] = None

    def insert_opts(self) -> InsertOpts:
        return InsertOpts(queue=QUEUE_EMAIL, max_attempts=EMAIL_MAX_ATTEMPTS)


@dataclass
class SendAccountLockedEmailArgs(JobArgs):
    kind = "send_account_locked_email"

    user_id: int
    email: str
    name: str
    lock_duration: str
    failed_attempts: int

    def insert_opts(self) -> InsertOpts:
        return InsertOpts(queue=QUEUE_EMAIL, max_attempts=EMAIL_MAX_ATTEMPTS)


@dataclass
class ProcessStripeWebhookArgs(JobArgs):
    kind = "process_stripe_webhook"

    event_id: str
    event_type: str
    payload: str  # raw event JSON

    def insert_opts(self) -> InsertOpts:
        # Stripe redelivers events; one job per distinct delivery payload
        return InsertOpts(queue=QUEUE_WEBHOOKS, max_attempts=WEBHOOK_MAX_ATTEMPTS, unique_by_args=True)


@dataclass
class DataExportArgs(JobArgs):
    kind = "generate_data_export"

    user_id: int
    email: str
    export_id: int

    def insert_opts(self) -> InsertOpts:
        return InsertOpts(queue=QUEUE_DEFAULT, max_attempts=DATA_EXPORT_MAX_ATTEMPTS)


ALL_JOB_ARGS = (
    SendVerificationEmailArgs,
    SendPasswordResetEmailArgs,
    SendAnnouncementEmailArgs,
    SendAccountLockedEmailArgs,
    ProcessStripeWebhookArgs,
    DataExportArgs,
)
