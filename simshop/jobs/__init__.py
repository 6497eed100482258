"""
Background Jobs Module

Handles scheduled tasks for:
- Retrying orders parked in a retryable provisioning status
- Sending receipts the provisioning path never reached
- Profile status and usage sync
"""

from simshop.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from simshop.jobs.order_jobs import retry_pending_orders, send_pending_receipts, sync_esim_profiles

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "retry_pending_orders",
    "send_pending_receipts",
    "sync_esim_profiles",
]
