"""
Recomputes an agent's derived statistics and trust tier from job history.
The calculation itself lives in core.trust_tiers; this module only gathers
the inputs and caches the result on the agent row for display.
"""
import logging
from decimal import Decimal

from core.errors import NotFoundError
from core.trust_tiers import calculate_trust
from models import db, Agent, Job, Review

logger = logging.getLogger('relay.trust')

# Outcomes that count toward completion rate
_CLOSED_STATUSES = ('completed', 'failed', 'refunded', 'disputed')


class TrustService:
    @staticmethod
    def gather_stats(agent: Agent) -> dict:
        """Full current statistics for one agent."""
        rows = db.session.query(Job.status, db.func.count(Job.job_uuid)).filter(
            Job.agent_id == agent.agent_id,
            Job.status.in_(_CLOSED_STATUSES),
        ).group_by(Job.status).all()
        counts = {status: n for status, n in rows}
        closed = sum(counts.values())
        completed = counts.get('completed', 0)
        completion_rate = completed / closed if closed else None

        accepted = db.session.query(Job.paid_at, Job.accepted_at).filter(
            Job.agent_id == agent.agent_id,
            Job.paid_at.isnot(None),
            Job.accepted_at.isnot(None),
        ).all()
        if accepted:
            response_time_avg = sum(
                max(0.0, (acc - paid).total_seconds()) for paid, acc in accepted
            ) / len(accepted)
        else:
            response_time_avg = None

        rating = db.session.query(db.func.avg(Review.rating)).filter(
            Review.agent_id == agent.agent_id,
        ).scalar()

        return {
            "total_jobs": agent.total_jobs or 0,
            "total_earned": agent.total_earned or Decimal('0'),
            "rating": float(rating) if rating is not None else None,
            "completion_rate": completion_rate,
            "response_time_avg": response_time_avg,
            "identity_verified": bool(agent.identity_verified),
            "webhook_verified": bool(agent.webhook_verified),
            "security_audited": bool(agent.security_audited),
        }

    @staticmethod
    def recompute(agent_id: str, commit: bool = True) -> dict:
        """Recompute and cache tier/score. Safe to call any number of times."""
        agent = db.session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")

        stats = TrustService.gather_stats(agent)
        trust = calculate_trust(stats)

        previous_tier = agent.trust_tier
        agent.completion_rate = (
            Decimal(str(round(stats["completion_rate"], 4))) if stats["completion_rate"] is not None else None
        )
        agent.response_time_avg = (
            int(stats["response_time_avg"]) if stats["response_time_avg"] is not None else None
        )
        agent.rating = Decimal(str(round(stats["rating"], 2))) if stats["rating"] is not None else None
        agent.trust_tier = trust["tier"]
        agent.trust_score = Decimal(str(trust["score"]))
        if commit:
            db.session.commit()
        else:
            db.session.flush()

        if previous_tier != trust["tier"]:
            logger.info("Agent %s trust tier %s -> %s (score %.2f)",
                        agent_id, previous_tier, trust["tier"], trust["score"])
        return TrustService._to_dict(agent_id, stats, trust)

    @staticmethod
    def get_metrics(agent_id: str) -> dict:
        """Trust breakdown computed on read, without touching the cache."""
        agent = db.session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        stats = TrustService.gather_stats(agent)
        return TrustService._to_dict(agent_id, stats, calculate_trust(stats))

    @staticmethod
    def _to_dict(agent_id: str, stats: dict, trust: dict) -> dict:
        return {
            "agent_id": agent_id,
            "trust_tier": trust["tier"],
            "trust_score": trust["score"],
            "next_tier": trust["next_tier"],
            "progress": trust["progress"],
            "tier_progress": trust["tier_progress"],
            "progress_breakdown": trust["progress_breakdown"],
            "stats": {
                "total_jobs": stats["total_jobs"],
                "total_earned": float(stats["total_earned"]),
                "rating": stats["rating"],
                "completion_rate": stats["completion_rate"],
                "response_time_avg": stats["response_time_avg"],
                "identity_verified": stats["identity_verified"],
                "webhook_verified": stats["webhook_verified"],
                "security_audited": stats["security_audited"],
            },
        }
