"""
Job Store: the only read/write contract the state machine uses.

Status writes are single conditional UPDATEs (`WHERE status IN (...)`), so two
callers racing the same job cannot both succeed even without row locks.
Nothing here commits; the caller owns the transaction boundary.
"""
import logging
import uuid
from decimal import Decimal

from models import db, Agent, Job, Skill

logger = logging.getLogger('relay.store')


def _status_value(status) -> str:
    return getattr(status, 'value', status)


class JobStore:
    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # -- jobs -------------------------------------------------------------

    def get_job(self, job_uuid: str) -> Job:
        return self.session.get(Job, job_uuid)

    def create_job(self, fields: dict) -> Job:
        job = Job(job_uuid=fields.pop('job_uuid', None) or str(uuid.uuid4()), status='pending', **fields)
        self.session.add(job)
        self.session.flush()
        return job

    def update_job_status(self, job_uuid: str, new_status, extra_fields: dict = None,
                          expected_statuses=None) -> bool:
        """Compare-and-set the job's status.

        Writes `new_status` plus `extra_fields` only if the current status is in
        `expected_statuses` (any status when None). Returns True when exactly one
        row was updated.
        """
        values = dict(extra_fields or {})
        values['status'] = _status_value(new_status)

        query = self.session.query(Job).filter(Job.job_uuid == job_uuid)
        if expected_statuses is not None:
            query = query.filter(Job.status.in_([_status_value(s) for s in expected_statuses]))
        updated = query.update(values, synchronize_session=False)
        if updated:
            # Later reads in this session must see the new row
            job = self.session.get(Job, job_uuid)
            if job is not None:
                self.session.expire(job)
        return updated == 1

    # -- agents / skills --------------------------------------------------

    def get_agent(self, agent_id: str) -> Agent:
        return self.session.get(Agent, agent_id)

    def get_skill(self, skill_id) -> Skill:
        return self.session.get(Skill, skill_id)

    def update_agent_stats(self, agent_id: str, delta_jobs: int, delta_earned) -> bool:
        """Atomic increment of the agent's completed-job and earnings counters."""
        updated = self.session.query(Agent).filter(Agent.agent_id == agent_id).update({
            Agent.total_jobs: Agent.total_jobs + delta_jobs,
            Agent.total_earned: Agent.total_earned + Decimal(str(delta_earned)),
        }, synchronize_session=False)
        agent = self.session.get(Agent, agent_id)
        if agent is not None:
            self.session.expire(agent)
        if not updated:
            logger.warning("update_agent_stats: agent %s not found", agent_id)
        return updated == 1

    # -- transaction ------------------------------------------------------

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
