import re as _re
from decimal import Decimal, InvalidOperation

from core.errors import NotFoundError, ValidationError
from models import db, Job, Review
from services.job_store import JobStore

_WALLET_RE = _re.compile(r'^0x[0-9a-fA-F]{40}$')
MAX_INPUT_CHARS = 10000


def _to_decimal(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


class JobService:
    @staticmethod
    def create_job(requester_wallet: str, agent_id: str, skill_id, input_data, price, store=None) -> Job:
        """Create a pending job after checking agent, skill ownership and price."""
        store = store or JobStore()
        if not requester_wallet or not _WALLET_RE.match(requester_wallet):
            raise ValidationError("Invalid wallet address format")

        agent = store.get_agent(agent_id)
        if agent is None or not agent.is_active:
            raise NotFoundError("Agent not found or inactive")

        skill = store.get_skill(skill_id)
        if skill is None or not skill.is_active:
            raise NotFoundError("Skill not found")
        if skill.agent_id != agent.agent_id:
            raise ValidationError("Skill does not belong to specified agent")

        quoted = _to_decimal(price, 'price')
        if quoted != Decimal(skill.price):
            raise ValidationError(
                f"Price mismatch. Expected {Decimal(skill.price):.2f}, got {quoted:.2f}"
            )

        if isinstance(input_data, str):
            input_data = {"prompt": input_data}
        if not input_data:
            raise ValidationError("input is required")
        if len(str(input_data)) > MAX_INPUT_CHARS:
            raise ValidationError(f"input exceeds {MAX_INPUT_CHARS} characters")

        job = store.create_job({
            'requester_wallet': requester_wallet.lower(),
            'agent_id': agent.agent_id,
            'skill_id': skill.id,
            'input_data': input_data,
            'price': quoted,
        })
        store.commit()
        return job

    @staticmethod
    def list_jobs(agent_id=None, requester_wallet=None, status=None, limit=50, offset=0):
        query = Job.query
        if agent_id:
            query = query.filter(Job.agent_id == agent_id)
        if requester_wallet:
            query = query.filter(Job.requester_wallet == requester_wallet.lower())
        if status:
            query = query.filter(Job.status == status)

        total = query.count()
        limit = min(max(1, limit), 200)
        offset = max(0, offset)
        jobs = query.order_by(Job.created_at.desc()).offset(offset).limit(limit).all()
        return jobs, total

    @staticmethod
    def get_job(job_uuid: str) -> Job:
        job = db.session.get(Job, job_uuid)
        if job is None:
            raise NotFoundError(f"Job {job_uuid} not found")
        return job

    @staticmethod
    def to_dict(job: Job) -> dict:
        def _iso(dt):
            return dt.isoformat() if dt else None

        review = Review.query.filter_by(job_uuid=job.job_uuid).first()
        return {
            "job_uuid": job.job_uuid,
            "status": job.status,
            "price": float(job.price),
            "requester_wallet": job.requester_wallet,
            "agent_id": job.agent_id,
            "skill_id": job.skill_id,
            "skill_name": job.skill.name if job.skill else None,
            "input": job.input_data,
            "output": job.output_data,
            "payment_tx_hash": job.payment_tx_hash,
            "dispute_reason": job.dispute_reason,
            "dispute_outcome": job.dispute_outcome,
            "refund_amount": float(job.refund_amount) if job.refund_amount is not None else None,
            "revision_feedback": job.revision_feedback,
            "rating": review.rating if review else None,
            "created_at": _iso(job.created_at),
            "paid_at": _iso(job.paid_at),
            "accepted_at": _iso(job.accepted_at),
            "delivered_at": _iso(job.delivered_at),
            "completed_at": _iso(job.completed_at),
            "disputed_at": _iso(job.disputed_at),
            "resolved_at": _iso(job.resolved_at),
            "refunded_at": _iso(job.refunded_at),
            "failed_at": _iso(job.failed_at),
            "updated_at": _iso(job.updated_at),
        }
