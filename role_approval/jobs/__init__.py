"""
Background Jobs for Role Approval.

- deadline_sweeper: fires expired reply deadlines
- mail_poller: the long-running worker (mailbox polling + sweeping)
- alerts: operator alerts raised by both
"""

from .alerts import AlertSeverity, JobAlert, JobAlerter
from .deadline_sweeper import run_deadline_job
from .mail_poller import run_poll_cycle, run_worker

__all__ = [
    "AlertSeverity",
    "JobAlert",
    "JobAlerter",
    "run_deadline_job",
    "run_poll_cycle",
    "run_worker",
]
