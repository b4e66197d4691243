"""
Job state machine: the only code path that changes a job's status.

Each event method
  1. loads the job and checks the actor,
  2. validates (current status, event) against core.job_states.TRANSITIONS,
  3. writes the new status and its side-effect fields with one
     compare-and-set against the status it read,
  4. after commit, recomputes the agent's trust tier when the event affects
     it and fires the matching lifecycle webhook event.
A lost race or a repeated event surfaces as ValidationError with nothing written.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from core.errors import (
    AuthorizationError, ExternalVerificationFailure, NotFoundError,
    ProcessingError, ValidationError,
)
from core.job_states import JobEvent, JobStatus, TERMINAL_STATUSES, next_status
from services.job_store import JobStore

logger = logging.getLogger('relay.jobs')

# Terminal status -> timestamp column; at most one is ever written per job
_TERMINAL_TIMESTAMP = {
    JobStatus.COMPLETED: 'completed_at',
    JobStatus.REFUNDED: 'refunded_at',
    JobStatus.FAILED: 'failed_at',
}

# Events after which the agent's trust tier is recomputed
_TRUST_EVENTS = frozenset({
    JobEvent.AGENT_DECLINE,
    JobEvent.PURCHASER_APPROVE,
    JobEvent.PURCHASER_DISPUTE,
    JobEvent.DISPUTE_RESOLVED,
    JobEvent.PROCESSING_FAILED,
})


def _now():
    return datetime.now(timezone.utc)


class JobStateMachine:
    def __init__(self, store=None, verifier=None, dispatcher=None, processor=None):
        self.store = store or JobStore()
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.processor = processor

    # -- lookups and guards -------------------------------------------------

    def get_job(self, job_uuid: str):
        job = self.store.get_job(job_uuid)
        if job is None:
            raise NotFoundError(f"Job {job_uuid} not found")
        return job

    def _get_agent(self, agent_id: str):
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return agent

    @staticmethod
    def _authorize_agent(job, agent_id):
        if agent_id != job.agent_id:
            raise AuthorizationError("Only the job's agent can perform this action")

    @staticmethod
    def _authorize_purchaser(job, wallet):
        if not wallet or wallet.lower() != (job.requester_wallet or '').lower():
            raise AuthorizationError("Only the job's purchaser can perform this action")

    # -- the single transition entry point ----------------------------------

    def transition(self, job_uuid: str, event: JobEvent, fields: dict = None,
                   outcome=None, from_statuses=None, credit_agent: bool = False):
        """Apply `event` to the job with one compare-and-set. Returns the reloaded job.

        `from_statuses` narrows the allowed pre-states further (e.g. webhook
        failure only applies to jobs still in `paid`). `credit_agent` increments
        the agent's completed-job and earnings counters in the same transaction.
        """
        job = self.get_job(job_uuid)
        current = JobStatus(job.status)
        target = next_status(current, event, outcome)
        if from_statuses is not None and current not in {JobStatus(s) for s in from_statuses}:
            raise ValidationError(
                f"Cannot apply {JobEvent(event).value} to a job in status {current.value}",
                current_status=current.value,
            )

        values = dict(fields or {})
        if target in TERMINAL_STATUSES:
            values[_TERMINAL_TIMESTAMP[target]] = _now()

        agent_id, price = job.agent_id, job.price
        try:
            if not self.store.update_job_status(job_uuid, target, values, expected_statuses=(current,)):
                self.store.rollback()
                latest = self.get_job(job_uuid)
                logger.info("Job %s: %s lost race (expected %s, now %s)",
                            job_uuid, JobEvent(event).value, current.value, latest.status)
                raise ValidationError(
                    f"Cannot apply {JobEvent(event).value} to a job in status {latest.status}",
                    current_status=latest.status,
                )
            if credit_agent:
                self.store.update_agent_stats(agent_id, 1, price)
            self.store.commit()
        except IntegrityError:
            self.store.rollback()
            raise ValidationError("This transaction has already been used to pay for a job")

        logger.info("Job %s: %s -> %s via %s", job_uuid, current.value, target.value, JobEvent(event).value)
        job = self.get_job(job_uuid)
        if JobEvent(event) in _TRUST_EVENTS:
            self._recompute_trust(agent_id)
        return job

    def _recompute_trust(self, agent_id: str):
        from services.trust_service import TrustService
        try:
            TrustService.recompute(agent_id)
        except Exception as e:
            self.store.rollback()
            logger.error("Trust recompute failed for agent %s: %s", agent_id, e)

    def notify(self, event_name: str, job, data: dict = None):
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.fire_event(event_name, job, data)
        except Exception as e:
            logger.error("Failed to fire %s for job %s: %s", event_name, job.job_uuid, e)

    # -- payment --------------------------------------------------------------

    def confirm_payment(self, job_uuid: str, tx_ref: str) -> dict:
        """Verify the payment, move pending -> paid, then hand the job to the agent.

        Blocks on the payment verifier. If the agent has a webhook the new-job
        notification is queued in the background and this returns at once;
        otherwise the task processor runs before returning.
        """
        if not tx_ref:
            raise ValidationError("tx_hash is required")
        job = self.get_job(job_uuid)
        # Reject before the slow chain call when the job can't be paid anyway
        next_status(job.status, JobEvent.PAYMENT_CONFIRMED)
        agent = self._get_agent(job.agent_id)

        if self.verifier is None:
            raise ExternalVerificationFailure("Payment verifier not configured")
        try:
            verification = self.verifier.verify(tx_ref, job.price, agent.wallet_address)
        except Exception as e:
            logger.error("Payment verifier raised for job %s: %s", job_uuid, e)
            raise ExternalVerificationFailure("Payment could not be verified", details=str(e))
        if not verification.get('valid'):
            logger.warning("Payment verification failed for job %s: %s", job_uuid, verification.get('error'))
            raise ExternalVerificationFailure(
                "Payment could not be verified. Please ensure you sent the correct amount "
                "to the right address.",
                details=verification.get('error'),
            )

        job = self.transition(job_uuid, JobEvent.PAYMENT_CONFIRMED, {
            'payment_tx_hash': tx_ref,
            'paid_at': _now(),
        })
        result = {
            "job_uuid": job.job_uuid,
            "status": job.status,
            "tx_hash": tx_ref,
            "verified": True,
            "amount": float(verification['amount']) if verification.get('amount') is not None else None,
            "block_number": verification.get('block_number'),
        }
        self.notify('job.paid', job, {"price_usdc": float(job.price), "input_data": job.input_data})

        if agent.webhook_url:
            if self.dispatcher is not None:
                self.dispatcher.dispatch_new_job(job.job_uuid)
                result["webhook_notified"] = True
                result["message"] = "Agent notified via webhook. Job will be processed asynchronously."
            else:
                logger.warning("Job %s paid but no dispatcher configured", job_uuid)
                result["webhook_notified"] = False
            return result

        return self._process_in_hub(job, result)

    def _process_in_hub(self, job, result: dict) -> dict:
        if self.processor is None:
            result["message"] = "Awaiting agent"
            return result
        service_key = job.skill.service_key if job.skill else None
        logger.info("Job %s: processing in hub (service=%s)", job.job_uuid, service_key)
        try:
            output = self.processor.run(service_key, job.input_data)
        except ProcessingError as e:
            failed = self.processing_failed(job.job_uuid, {"error": e.message, "code": e.code})
            result["status"] = failed.status
            result["error"] = f"Processing failed: {e.message}"
            return result
        delivered = self.agent_deliver(job.job_uuid, output)
        result["status"] = delivered.status
        result["result"] = output
        return result

    # -- agent events ---------------------------------------------------------

    def agent_accept(self, job_uuid: str, agent_id: str):
        job = self.get_job(job_uuid)
        self._authorize_agent(job, agent_id)
        job = self.transition(job_uuid, JobEvent.AGENT_ACCEPT, {'accepted_at': _now()})
        self.notify('job.accepted', job, {"price_usdc": float(job.price)})
        return job

    def agent_decline(self, job_uuid: str, agent_id: str, reason: str = None):
        job = self.get_job(job_uuid)
        self._authorize_agent(job, agent_id)
        refund = Decimal(job.price) if job.status == JobStatus.PAID.value else Decimal('0')
        job = self.transition(job_uuid, JobEvent.AGENT_DECLINE, {
            'refund_amount': refund,
            'output_data': {"error": "Declined by agent", "details": reason},
        })
        self.notify('job.refunded', job, {"refund_amount": float(refund), "reason": reason})
        return job

    def agent_deliver(self, job_uuid: str, output, agent_id: str = None):
        """Store the output. `agent_id` is None when the hub's own processor delivers."""
        job = self.get_job(job_uuid)
        if agent_id is not None:
            self._authorize_agent(job, agent_id)
        if output is None or output == '' or output == {}:
            raise ValidationError("output is required")
        job = self.transition(job_uuid, JobEvent.AGENT_DELIVER, {
            'output_data': output,
            'delivered_at': _now(),
        })
        self.notify('job.delivered', job)
        return job

    # -- purchaser events -----------------------------------------------------

    def purchaser_approve(self, job_uuid: str, wallet: str):
        job = self.get_job(job_uuid)
        self._authorize_purchaser(job, wallet)
        job = self.transition(job_uuid, JobEvent.PURCHASER_APPROVE, credit_agent=True)
        self.notify('job.approved', job, {"price_usdc": float(job.price)})
        self.notify('job.payment_released', job, {"amount_usdc": float(job.price)})
        return job

    def purchaser_request_revision(self, job_uuid: str, wallet: str, feedback: str = None):
        job = self.get_job(job_uuid)
        self._authorize_purchaser(job, wallet)
        job = self.transition(job_uuid, JobEvent.PURCHASER_REQUEST_REVISION, {
            'revision_feedback': feedback,
        })
        self.notify('job.revision_requested', job, {"feedback": feedback})
        return job

    def purchaser_dispute(self, job_uuid: str, wallet: str, reason: str):
        job = self.get_job(job_uuid)
        self._authorize_purchaser(job, wallet)
        if not reason or not reason.strip():
            raise ValidationError("reason is required")
        job = self.transition(job_uuid, JobEvent.PURCHASER_DISPUTE, {
            'dispute_reason': reason.strip(),
            'disputed_at': _now(),
        })
        self.notify('job.disputed', job, {"reason": job.dispute_reason})
        return job

    # -- system events --------------------------------------------------------

    def processing_failed(self, job_uuid: str, error_payload: dict, from_statuses=None):
        """Fail the job, storing `error_payload` for display."""
        job = self.transition(job_uuid, JobEvent.PROCESSING_FAILED, {
            'output_data': error_payload,
        }, from_statuses=from_statuses)
        self.notify('job.failed', job, {"error": error_payload.get("error")})
        return job
