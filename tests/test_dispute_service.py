"""
Tests for operator dispute resolution (services/dispute_service.py).
"""
import os
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Force DEV_MODE and test DB before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory

from server import app
from models import db, Agent, Skill, Job
from core.errors import ValidationError
from core.job_states import DisputeOutcome
from services.dispute_service import DisputeResolver, refund_for
from services.job_state_machine import JobStateMachine


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


def _seed_disputed(price='10.00', status='disputed'):
    db.session.add(Agent(agent_id='dsp-agent', name='Dispute Agent', wallet_address='0x' + 'dd' * 20))
    db.session.flush()
    skill = Skill(agent_id='dsp-agent', name='Brief', service_key='brief', price=Decimal(price))
    db.session.add(skill)
    db.session.flush()
    db.session.add(Job(job_uuid='job-dsp', status=status, price=Decimal(price),
                       requester_wallet='0x' + 'ee' * 20, agent_id='dsp-agent', skill_id=skill.id,
                       input_data={"prompt": "launch brief"}, dispute_reason='Off topic'))
    db.session.commit()
    return 'job-dsp'


class TestRefundAmounts:
    def test_refund_full(self):
        assert refund_for(DisputeOutcome.REFUND, Decimal('10.00')) == Decimal('10.00')

    def test_partial_half(self):
        assert refund_for(DisputeOutcome.PARTIAL, Decimal('10.00')) == Decimal('5.00')

    def test_partial_keeps_micro_usdc_precision(self):
        assert refund_for(DisputeOutcome.PARTIAL, Decimal('0.000003')) == Decimal('0.000002')

    def test_partial_half_unit_rounds_to_even(self):
        # stored amounts have 6 decimal places
        assert refund_for(DisputeOutcome.PARTIAL, Decimal('0.000001')) == Decimal('0.000000')
        assert refund_for(DisputeOutcome.PARTIAL, Decimal('10.000001')) == Decimal('5.000000')
        assert refund_for(DisputeOutcome.PARTIAL, Decimal('10.000002')).as_tuple().exponent == -6

    def test_release_refunds_nothing(self):
        assert refund_for(DisputeOutcome.RELEASE, Decimal('10.00')) == 0


class TestResolve:
    def test_refund_outcome(self, ctx):
        job_uuid = _seed_disputed()
        job = DisputeResolver().resolve(job_uuid, 'refund')
        assert job.status == 'refunded'
        assert Decimal(job.refund_amount) == Decimal('10.00')
        assert job.dispute_outcome == 'refund'
        assert job.resolved_at is not None
        assert job.refunded_at is not None

    def test_partial_outcome(self, ctx):
        job_uuid = _seed_disputed()
        job = DisputeResolver().resolve(job_uuid, DisputeOutcome.PARTIAL)
        assert job.status == 'refunded'
        assert Decimal(job.refund_amount) == Decimal('5.00')

    def test_release_credits_agent(self, ctx):
        job_uuid = _seed_disputed()
        dispatcher = MagicMock()
        job = DisputeResolver(JobStateMachine(dispatcher=dispatcher)).resolve(job_uuid, 'release')

        assert job.status == 'completed'
        assert Decimal(job.refund_amount) == 0
        assert job.completed_at is not None
        db.session.expire_all()
        agent = db.session.get(Agent, 'dsp-agent')
        assert agent.total_jobs == 1
        assert Decimal(agent.total_earned) == Decimal('10.00')
        fired = [c.args[0] for c in dispatcher.fire_event.call_args_list]
        assert fired == ['job.completed', 'job.payment_released']

    def test_refund_does_not_credit_agent(self, ctx):
        job_uuid = _seed_disputed()
        DisputeResolver().resolve(job_uuid, 'refund')
        db.session.expire_all()
        agent = db.session.get(Agent, 'dsp-agent')
        assert agent.total_jobs == 0
        assert Decimal(agent.total_earned) == 0

    def test_resolve_twice_rejected(self, ctx):
        job_uuid = _seed_disputed()
        resolver = DisputeResolver()
        resolver.resolve(job_uuid, 'release')
        with pytest.raises(ValidationError) as exc:
            resolver.resolve(job_uuid, 'refund')
        assert exc.value.current_status == 'completed'
        db.session.expire_all()
        assert db.session.get(Agent, 'dsp-agent').total_jobs == 1

    def test_unknown_outcome_rejected(self, ctx):
        job_uuid = _seed_disputed()
        with pytest.raises(ValidationError) as exc:
            DisputeResolver().resolve(job_uuid, 'split')
        assert exc.value.details["allowed"] == ['refund', 'partial', 'release']
        db.session.expire_all()
        assert db.session.get(Job, job_uuid).status == 'disputed'

    def test_not_disputed_rejected(self, ctx):
        job_uuid = _seed_disputed(status='delivered')
        with pytest.raises(ValidationError) as exc:
            DisputeResolver().resolve(job_uuid, 'refund')
        assert exc.value.current_status == 'delivered'

    def test_resolution_recomputes_trust(self, ctx):
        job_uuid = _seed_disputed()
        DisputeResolver().resolve(job_uuid, 'refund')
        db.session.expire_all()
        agent = db.session.get(Agent, 'dsp-agent')
        # One closed job, refunded: completion rate 0
        assert Decimal(agent.completion_rate) == 0
