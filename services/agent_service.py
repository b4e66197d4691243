import logging
import re as _re
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError

from core.errors import AuthorizationError, NotFoundError, ValidationError
from models import db, Agent, Job, Review, Skill
from services.trust_service import TrustService
from services.webhook_service import is_safe_webhook_url

logger = logging.getLogger('relay.agents')

_WALLET_RE = _re.compile(r'^0x[0-9a-fA-F]{40}$')
_AGENT_ID_RE = _re.compile(r'^[A-Za-z0-9_.-]{3,100}$')


class AgentService:
    @staticmethod
    def register(agent_id: str, wallet_address: str, name: str = None,
                 webhook_url: str = None, allow_http: bool = False) -> dict:
        """Create an agent. The raw API key is returned once and only its hash is stored."""
        from services.auth_service import generate_api_key

        if not agent_id or not _AGENT_ID_RE.match(agent_id):
            raise ValidationError("agent_id must be 3-100 characters of letters, digits, '.', '_' or '-'")
        if not wallet_address or not _WALLET_RE.match(wallet_address):
            raise ValidationError("Invalid wallet address format")
        if webhook_url and not is_safe_webhook_url(webhook_url, allow_http=allow_http):
            raise ValidationError("Webhook URL must be https and publicly routable")

        if db.session.get(Agent, agent_id) is not None:
            raise ValidationError("Agent already registered")

        raw_key, key_hash = generate_api_key()
        agent = Agent(
            agent_id=agent_id,
            name=name or agent_id,
            wallet_address=wallet_address.lower(),
            webhook_url=webhook_url,
            api_key_hash=key_hash,
        )
        db.session.add(agent)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ValidationError("Agent already registered")
        logger.info("Registered agent %s (webhook=%s)", agent_id, bool(webhook_url))

        result = AgentService.to_dict(agent)
        result["api_key"] = raw_key
        return result

    @staticmethod
    def get_agent(agent_id: str) -> Agent:
        agent = db.session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return agent

    @staticmethod
    def update_webhook(agent_id: str, webhook_url, allow_http: bool = False) -> dict:
        """Set or clear (None) the new-job webhook. Clearing routes jobs to the hub processor."""
        agent = AgentService.get_agent(agent_id)
        if webhook_url and not is_safe_webhook_url(webhook_url, allow_http=allow_http):
            raise ValidationError("Webhook URL must be https and publicly routable")
        agent.webhook_url = webhook_url or None
        # Set again by the next successful delivery
        agent.webhook_verified = False
        db.session.commit()
        return AgentService.to_dict(agent)

    @staticmethod
    def add_skill(agent_id: str, name: str, service_key: str, price, description: str = None) -> dict:
        AgentService.get_agent(agent_id)
        if not name or not service_key:
            raise ValidationError("name and service_key are required")
        try:
            price = Decimal(str(price))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError("price must be a number")
        if not price.is_finite() or price <= 0:
            raise ValidationError("price must be positive")

        skill = Skill(agent_id=agent_id, name=name, service_key=service_key,
                      price=price, description=description)
        db.session.add(skill)
        db.session.commit()
        return {
            "skill_id": skill.id,
            "agent_id": agent_id,
            "name": skill.name,
            "service_key": skill.service_key,
            "price": float(skill.price),
        }

    @staticmethod
    def submit_review(job_uuid: str, wallet: str, rating, comment: str = None) -> dict:
        """Purchaser rates a completed job once. Rating changes feed the trust tier."""
        job = db.session.get(Job, job_uuid)
        if job is None:
            raise NotFoundError(f"Job {job_uuid} not found")
        if not wallet or wallet.lower() != job.requester_wallet.lower():
            raise AuthorizationError("Only the job's purchaser can review it")
        if job.status != 'completed':
            raise ValidationError(f"Only completed jobs can be reviewed (current: {job.status})",
                                  current_status=job.status)
        try:
            rating = int(rating)
        except (ValueError, TypeError):
            raise ValidationError("rating must be an integer from 1 to 5")
        if rating < 1 or rating > 5:
            raise ValidationError("rating must be an integer from 1 to 5")

        db.session.add(Review(
            job_uuid=job_uuid,
            agent_id=job.agent_id,
            reviewer_wallet=wallet.lower(),
            rating=rating,
            comment=comment,
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ValidationError("This job has already been reviewed")

        trust = TrustService.recompute(job.agent_id)
        return {"job_uuid": job_uuid, "rating": rating, "trust": trust}

    @staticmethod
    def to_dict(agent: Agent) -> dict:
        return {
            "agent_id": agent.agent_id,
            "name": agent.name,
            "wallet_address": agent.wallet_address,
            "webhook_url": agent.webhook_url,
            "is_active": bool(agent.is_active),
            "total_jobs": agent.total_jobs or 0,
            "total_earned": float(agent.total_earned or 0),
            "rating": float(agent.rating) if agent.rating is not None else None,
            "completion_rate": float(agent.completion_rate) if agent.completion_rate is not None else None,
            "response_time_avg": agent.response_time_avg,
            "trust_tier": agent.trust_tier or 'new',
            "trust_score": float(agent.trust_score or 0),
            "created_at": agent.created_at.isoformat() if agent.created_at else None,
        }
