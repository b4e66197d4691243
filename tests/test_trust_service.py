"""
Tests for trust recomputation from job history (services/trust_service.py).
"""
import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# Force DEV_MODE and test DB before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory

from server import app
from models import db, Agent, Skill, Job, Review
from core.errors import NotFoundError
from services.trust_service import TrustService


@pytest.fixture
def ctx():
    """Create an app context with a fresh in-memory DB."""
    app.config['TESTING'] = True
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
    with app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


def _history(statuses, total_jobs=0, total_earned='0', ratings=(), response_seconds=600):
    """Agent with one job per status, plus reviews on the completed ones."""
    db.session.add(Agent(agent_id='tr-agent', name='Trust Agent', wallet_address='0x' + '0f' * 20,
                         total_jobs=total_jobs, total_earned=Decimal(total_earned)))
    db.session.flush()
    skill = Skill(agent_id='tr-agent', name='Research', service_key='research', price=Decimal('10'))
    db.session.add(skill)
    db.session.flush()

    paid = datetime(2024, 1, 1, 12, 0, 0)
    ratings = list(ratings)
    for i, status in enumerate(statuses):
        job = Job(job_uuid=f'tr-job-{i}', status=status, price=Decimal('10'), requester_wallet='0x' + '0e' * 20,
                  agent_id='tr-agent', skill_id=skill.id, input_data={"prompt": "x"},
                  paid_at=paid, accepted_at=paid + timedelta(seconds=response_seconds))
        db.session.add(job)
        db.session.flush()
        if status == 'completed' and ratings:
            db.session.add(Review(job_uuid=job.job_uuid, agent_id='tr-agent',
                                  reviewer_wallet='0x' + '0e' * 20, rating=ratings.pop(0)))
    db.session.commit()
    return 'tr-agent'


class TestTrustService:
    def test_completion_rate_over_closed_jobs(self, ctx):
        agent_id = _history(['completed', 'completed', 'completed', 'refunded', 'in_progress'])
        stats = TrustService.gather_stats(db.session.get(Agent, agent_id))
        # in_progress is not closed
        assert stats["completion_rate"] == pytest.approx(0.75)

    def test_response_time_and_rating(self, ctx):
        agent_id = _history(['completed', 'completed'], ratings=(4, 5), response_seconds=1200)
        stats = TrustService.gather_stats(db.session.get(Agent, agent_id))
        assert stats["response_time_avg"] == pytest.approx(1200)
        assert stats["rating"] == pytest.approx(4.5)

    def test_no_history(self, ctx):
        agent_id = _history([])
        stats = TrustService.gather_stats(db.session.get(Agent, agent_id))
        assert stats["completion_rate"] is None
        assert stats["rating"] is None
        assert stats["response_time_avg"] is None

    def test_recompute_promotes_and_caches(self, ctx):
        agent_id = _history(['completed'] * 3, total_jobs=3, total_earned='30', ratings=(5, 4, 5))
        result = TrustService.recompute(agent_id)

        assert result["trust_tier"] == 'rising'
        assert result["next_tier"] == 'established'
        db.session.expire_all()
        agent = db.session.get(Agent, agent_id)
        assert agent.trust_tier == 'rising'
        assert Decimal(agent.rating) == Decimal('4.67')
        assert agent.response_time_avg == 600
        assert float(agent.trust_score) == pytest.approx(result["trust_score"], abs=0.01)

    def test_recompute_is_repeatable(self, ctx):
        agent_id = _history(['completed', 'failed'], total_jobs=1, total_earned='10')
        first = TrustService.recompute(agent_id)
        second = TrustService.recompute(agent_id)
        assert first == second

    def test_get_metrics_does_not_write(self, ctx):
        agent_id = _history(['completed'] * 3, total_jobs=3, total_earned='30', ratings=(5, 5, 5))
        metrics = TrustService.get_metrics(agent_id)
        assert metrics["trust_tier"] == 'rising'
        db.session.expire_all()
        assert db.session.get(Agent, agent_id).trust_tier == 'new'

    def test_unknown_agent(self, ctx):
        with pytest.raises(NotFoundError):
            TrustService.recompute('ghost')
