"""
Administrative dispute resolution. Disputes never resolve on their own; an
operator picks one of three fixed outcomes.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN

from core.errors import ValidationError
from core.job_states import DisputeOutcome, JobEvent, PARTIAL_REFUND_RATIO
from services.job_state_machine import JobStateMachine

logger = logging.getLogger('relay.disputes')

_MICRO_USDC = Decimal('0.000001')


def refund_for(outcome: DisputeOutcome, price) -> Decimal:
    """Amount returned to the purchaser for `outcome`.

    Partial refunds are quantized to 6 decimal places (one micro-USDC, the
    precision of the Numeric(18, 6) columns) with round-half-even, so an odd
    micro-unit price loses its half unit: 0.000003 -> 0.000002,
    0.000001 -> 0.000000.
    """
    price = Decimal(str(price))
    if outcome == DisputeOutcome.REFUND:
        return price
    if outcome == DisputeOutcome.PARTIAL:
        return (price * PARTIAL_REFUND_RATIO).quantize(_MICRO_USDC, rounding=ROUND_HALF_EVEN)
    return Decimal('0')


class DisputeResolver:
    def __init__(self, machine: JobStateMachine = None):
        self.machine = machine or JobStateMachine()

    def resolve(self, job_uuid: str, outcome, resolved_by: str = None):
        """Apply `outcome` to a disputed job. Returns the job in its terminal status.

        refund  -> refunded, refund_amount = price
        partial -> refunded, refund_amount = price * 0.5
        release -> completed, refund_amount = 0, agent credited as on approval
        """
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError:
            raise ValidationError(
                f"Unknown dispute outcome: {outcome!r}",
                details={"allowed": [o.value for o in DisputeOutcome]},
            )

        job = self.machine.get_job(job_uuid)
        refund = refund_for(outcome, job.price)
        job = self.machine.transition(
            job_uuid,
            JobEvent.DISPUTE_RESOLVED,
            {
                'dispute_outcome': outcome.value,
                'refund_amount': refund,
                'resolved_at': datetime.now(timezone.utc),
            },
            outcome=outcome,
            credit_agent=(outcome == DisputeOutcome.RELEASE),
        )
        logger.info("Dispute on job %s resolved as %s by %s (refund %s)",
                    job_uuid, outcome.value, resolved_by or 'operator', refund)

        if outcome == DisputeOutcome.RELEASE:
            self.machine.notify('job.completed', job, {"dispute_outcome": outcome.value})
            self.machine.notify('job.payment_released', job, {"amount_usdc": float(job.price)})
        else:
            self.machine.notify('job.refunded', job, {
                "dispute_outcome": outcome.value,
                "refund_amount": float(refund),
            })
        return job
