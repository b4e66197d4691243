"""
Job lifecycle: statuses, events and the single transition table.

    pending -> paid -> in_progress -> delivered -> completed
                          ^              |
                          +-- revision --+
    in_progress | delivered -> disputed -> completed | refunded
    pending | paid -> refunded            (agent declines)
    paid | in_progress -> failed          (processing / delivery failed)
"""
from decimal import Decimal
from enum import Enum

from core.errors import ValidationError


class JobStatus(str, Enum):
    PENDING = 'pending'
    PAID = 'paid'
    IN_PROGRESS = 'in_progress'
    DELIVERED = 'delivered'
    COMPLETED = 'completed'
    DISPUTED = 'disputed'
    REFUNDED = 'refunded'
    FAILED = 'failed'


class JobEvent(str, Enum):
    PAYMENT_CONFIRMED = 'payment_confirmed'
    AGENT_ACCEPT = 'agent_accept'
    AGENT_DECLINE = 'agent_decline'
    AGENT_DELIVER = 'agent_deliver'
    PURCHASER_APPROVE = 'purchaser_approve'
    PURCHASER_REQUEST_REVISION = 'purchaser_request_revision'
    PURCHASER_DISPUTE = 'purchaser_dispute'
    DISPUTE_RESOLVED = 'dispute_resolved'
    PROCESSING_FAILED = 'processing_failed'


class DisputeOutcome(str, Enum):
    REFUND = 'refund'
    PARTIAL = 'partial'
    RELEASE = 'release'


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.REFUNDED, JobStatus.FAILED})

# Share of the price returned to the purchaser on a partial dispute outcome
PARTIAL_REFUND_RATIO = Decimal('0.5')

DISPUTE_OUTCOME_STATUS = {
    DisputeOutcome.REFUND: JobStatus.REFUNDED,
    DisputeOutcome.PARTIAL: JobStatus.REFUNDED,
    DisputeOutcome.RELEASE: JobStatus.COMPLETED,
}

# (current status, event) -> next status
TRANSITIONS = {
    (JobStatus.PENDING, JobEvent.PAYMENT_CONFIRMED): JobStatus.PAID,
    (JobStatus.PAID, JobEvent.AGENT_ACCEPT): JobStatus.IN_PROGRESS,
    (JobStatus.PENDING, JobEvent.AGENT_DECLINE): JobStatus.REFUNDED,
    (JobStatus.PAID, JobEvent.AGENT_DECLINE): JobStatus.REFUNDED,
    (JobStatus.PAID, JobEvent.AGENT_DELIVER): JobStatus.DELIVERED,
    (JobStatus.IN_PROGRESS, JobEvent.AGENT_DELIVER): JobStatus.DELIVERED,
    (JobStatus.DELIVERED, JobEvent.PURCHASER_APPROVE): JobStatus.COMPLETED,
    (JobStatus.DELIVERED, JobEvent.PURCHASER_REQUEST_REVISION): JobStatus.IN_PROGRESS,
    (JobStatus.IN_PROGRESS, JobEvent.PURCHASER_DISPUTE): JobStatus.DISPUTED,
    (JobStatus.DELIVERED, JobEvent.PURCHASER_DISPUTE): JobStatus.DISPUTED,
    # Post-state depends on the outcome, see resolve_target()
    (JobStatus.DISPUTED, JobEvent.DISPUTE_RESOLVED): None,
    (JobStatus.PAID, JobEvent.PROCESSING_FAILED): JobStatus.FAILED,
    (JobStatus.IN_PROGRESS, JobEvent.PROCESSING_FAILED): JobStatus.FAILED,
}


def allowed_from(event: JobEvent) -> frozenset:
    """Pre-states from which `event` may fire."""
    return frozenset(state for state, ev in TRANSITIONS if ev == event)


def resolve_target(event: JobEvent, outcome=None) -> JobStatus:
    """Post-state for `event`. Only dispute resolution needs an outcome."""
    if event == JobEvent.DISPUTE_RESOLVED:
        try:
            return DISPUTE_OUTCOME_STATUS[DisputeOutcome(outcome)]
        except ValueError:
            raise ValidationError(
                f"Unknown dispute outcome: {outcome!r}",
                details={"allowed": [o.value for o in DisputeOutcome]},
            )
    targets = {TRANSITIONS[key] for key in TRANSITIONS if key[1] == event}
    # Every non-dispute event has exactly one post-state
    return targets.pop()


def next_status(current, event: JobEvent, outcome=None) -> JobStatus:
    """Validate (current, event) against the table and return the next status.

    Raises ValidationError naming the current status for any pair not in the table.
    """
    current = JobStatus(current)
    event = JobEvent(event)
    if (current, event) not in TRANSITIONS:
        raise ValidationError(
            f"Cannot apply {event.value} to a job in status {current.value}",
            current_status=current.value,
        )
    return resolve_target(event, outcome)


def is_terminal(status) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES
