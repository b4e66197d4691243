from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import uuid

db = SQLAlchemy()


class Agent(db.Model):
    __tablename__ = 'agents'
    agent_id = db.Column(db.String(100), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    wallet_address = db.Column(db.String(42), nullable=False, index=True)
    webhook_url = db.Column(db.Text, nullable=True)
    api_key_hash = db.Column(db.String(128), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    # Rolling statistics
    total_jobs = db.Column(db.Integer, default=0, nullable=False)
    total_earned = db.Column(db.Numeric(18, 6), default=0, nullable=False)
    rating = db.Column(db.Numeric(3, 2), nullable=True)
    completion_rate = db.Column(db.Numeric(5, 4), nullable=True)  # 0.0000-1.0000
    response_time_avg = db.Column(db.Integer, nullable=True)  # seconds
    # Verification flags
    identity_verified = db.Column(db.Boolean, default=False)
    webhook_verified = db.Column(db.Boolean, default=False)
    security_audited = db.Column(db.Boolean, default=False)
    # Derived, display only; recomputed by TrustService
    trust_tier = db.Column(db.String(20), default='new')
    trust_score = db.Column(db.Numeric(5, 2), default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    skills = db.relationship('Skill', backref='agent', lazy=True)


class Skill(db.Model):
    __tablename__ = 'skills'
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    agent_id = db.Column(db.String(100), db.ForeignKey('agents.agent_id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    service_key = db.Column(db.String(64), nullable=False)
    price = db.Column(db.Numeric(18, 6), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Job(db.Model):
    __tablename__ = 'jobs'
    job_uuid = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)
    # Statuses: pending, paid, in_progress, delivered, completed, disputed, refunded, failed
    price = db.Column(db.Numeric(18, 6), nullable=False)
    requester_wallet = db.Column(db.String(42), nullable=False, index=True)
    agent_id = db.Column(db.String(100), db.ForeignKey('agents.agent_id'), nullable=False, index=True)
    skill_id = db.Column(db.Integer, db.ForeignKey('skills.id'), nullable=False)
    input_data = db.Column(db.JSON)
    output_data = db.Column(db.JSON, nullable=True)
    payment_tx_hash = db.Column(db.String(66), unique=True, nullable=True)
    # Disputes / revisions
    dispute_reason = db.Column(db.Text, nullable=True)
    dispute_outcome = db.Column(db.String(20), nullable=True)
    refund_amount = db.Column(db.Numeric(18, 6), nullable=True)
    revision_feedback = db.Column(db.Text, nullable=True)
    # Lifecycle timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    accepted_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    # Terminal timestamps: at most one is ever set
    completed_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    # Relationships
    agent = db.relationship('Agent', foreign_keys=[agent_id])
    skill = db.relationship('Skill', foreign_keys=[skill_id])

    __table_args__ = (
        db.Index('ix_jobs_agent_status', 'agent_id', 'status'),
    )


class Review(db.Model):
    __tablename__ = 'reviews'
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    job_uuid = db.Column(db.String(36), db.ForeignKey('jobs.job_uuid'), nullable=False, unique=True)
    agent_id = db.Column(db.String(100), db.ForeignKey('agents.agent_id'), nullable=False, index=True)
    reviewer_wallet = db.Column(db.String(42), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class WebhookSubscription(db.Model):
    """Lifecycle event subscriptions registered by an agent."""
    __tablename__ = 'webhook_subscriptions'
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_id = db.Column(db.String(100), db.ForeignKey('agents.agent_id'), nullable=False, index=True)
    url = db.Column(db.Text, nullable=False)
    events = db.Column(db.JSON, default=lambda: [])  # e.g. ["job.paid", "job.disputed"]
    secret = db.Column(db.String(64), nullable=False)
    active = db.Column(db.Boolean, default=True)
    failure_count = db.Column(db.Integer, default=0)
    last_failure_at = db.Column(db.DateTime, nullable=True)
    disabled_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class WebhookDelivery(db.Model):
    """Audit log of new-job webhook deliveries. Never consulted for job state."""
    __tablename__ = 'webhook_deliveries'
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    job_uuid = db.Column(db.String(36), db.ForeignKey('jobs.job_uuid'), nullable=False, index=True)
    agent_id = db.Column(db.String(100), nullable=False)
    url = db.Column(db.Text, nullable=False)
    success = db.Column(db.Boolean, nullable=False)
    attempts = db.Column(db.Integer, nullable=False)
    status_code = db.Column(db.Integer, nullable=True)
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
