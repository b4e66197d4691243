"""
Agent Hub Relay: HTTP server
Thin Flask surface mapping requests onto job state machine events.

Job statuses:  pending -> paid -> in_progress -> delivered -> completed
               delivered -> in_progress (revision) | disputed -> completed | refunded
               pending | paid -> refunded;  paid | in_progress -> failed
"""

from flask import Flask, request, jsonify, g
from models import db
from config import Config
from core.errors import RelayError, ValidationError
from services.auth_service import require_auth, require_operator, require_wallet
from services.nonce_store import NonceStore
from services.webhook_service import WebhookDispatcher

import atexit
import logging
import os
import re

# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Produce valid JSON log lines even when message contains quotes/newlines."""
    def format(self, record):
        import json as _json
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            from flask import g as _g
            rid = getattr(_g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return _json.dumps(entry)


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(_JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[_log_handler])
logger = logging.getLogger('relay')

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

# Enable WAL mode for SQLite concurrent access (webhook threads + request threads)
from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine

@sa_event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    import sqlite3
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

logger.info("Starting Agent Hub Relay")
if 'sqlite' in Config.SQLALCHEMY_DATABASE_URI:
    logger.warning("SQLite detected. Use PostgreSQL for production deployments.")

Config.validate_production()

if not Config.TASK_PROCESSOR_API_KEY:
    logger.warning("Task processor not configured. Jobs for agents without a webhook "
                   "stay in 'paid' until the agent accepts them.")

with app.app_context():
    try:
        db.create_all()
        logger.info("Database tables created / verified")
    except Exception as e:
        logger.critical("Database init failed: %s", e)


def _init_extensions(flask_app):
    from services.payment_verifier import get_payment_verifier
    from services.task_processor import get_task_processor

    flask_app.extensions['nonce_store'] = NonceStore(Config.NONCE_TTL_SECONDS)
    flask_app.extensions['webhook_dispatcher'] = WebhookDispatcher(flask_app, Config.WEBHOOK_POOL_SIZE)
    flask_app.extensions['payment_verifier'] = get_payment_verifier()
    flask_app.extensions['task_processor'] = get_task_processor() if Config.TASK_PROCESSOR_API_KEY else None


_init_extensions(app)


def _atexit_shutdown():
    app.extensions['webhook_dispatcher'].shutdown(wait=False)

atexit.register(_atexit_shutdown)


# Correlation ID: attach unique request ID to every request
@app.before_request
def _attach_request_id():
    import uuid as _uuid
    rid = request.headers.get('X-Request-ID') or str(_uuid.uuid4())
    g.request_id = rid

@app.after_request
def _add_request_id_header(response):
    rid = getattr(g, 'request_id', None)
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


@app.errorhandler(RelayError)
def _handle_relay_error(e):
    if e.status_code >= 500:
        logger.error("%s on %s: %s", e.code, request.path, e.message)
    return jsonify(e.to_dict()), e.status_code


def _machine():
    from services.job_state_machine import JobStateMachine
    return JobStateMachine(
        verifier=app.extensions.get('payment_verifier'),
        dispatcher=app.extensions.get('webhook_dispatcher'),
        processor=app.extensions.get('task_processor'),
    )


def _job_response(job, status_code=200):
    from services.job_service import JobService
    return jsonify(JobService.to_dict(job)), status_code


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (ValueError, TypeError):
        return default


# ===================================================================
# Health
# ===================================================================


@app.route('/health', methods=['GET'])
def health():
    return jsonify({"status": "healthy", "service": "agent-hub-relay"}), 200


# ===================================================================
# Agents
# ===================================================================


@app.route('/api/agents', methods=['POST'])
def register_agent():
    from services.agent_service import AgentService

    data = request.get_json(silent=True) or {}
    result = AgentService.register(
        data.get('agent_id'),
        data.get('wallet_address'),
        name=data.get('name'),
        webhook_url=data.get('webhook_url'),
        allow_http=Config.DEV_MODE,
    )
    response = {"status": "registered", **result}
    if not result.get("webhook_url"):
        response["warnings"] = ["No webhook_url set. Paid jobs are processed by the hub when configured."]
    return jsonify(response), 201


@app.route('/api/agents/<agent_id>', methods=['GET'])
def get_agent(agent_id):
    from services.agent_service import AgentService
    return jsonify(AgentService.to_dict(AgentService.get_agent(agent_id))), 200


@app.route('/api/agents/<agent_id>/webhook', methods=['PATCH'])
@require_auth
def update_agent_webhook(agent_id):
    from services.agent_service import AgentService

    if g.current_agent_id != agent_id:
        return jsonify({"error": "Cannot update another agent's webhook"}), 403
    data = request.get_json(silent=True) or {}
    if 'webhook_url' not in data:
        raise ValidationError("webhook_url is required (null clears it)")
    return jsonify(AgentService.update_webhook(agent_id, data['webhook_url'], allow_http=Config.DEV_MODE)), 200


@app.route('/api/agents/<agent_id>/skills', methods=['POST'])
@require_auth
def add_skill(agent_id):
    from services.agent_service import AgentService

    if g.current_agent_id != agent_id:
        return jsonify({"error": "Cannot add skills for another agent"}), 403
    data = request.get_json(silent=True) or {}
    result = AgentService.add_skill(
        agent_id, data.get('name'), data.get('service_key'), data.get('price'),
        description=data.get('description'),
    )
    return jsonify(result), 201


@app.route('/api/agents/<agent_id>/trust-metrics', methods=['GET'])
def trust_metrics(agent_id):
    from services.trust_service import TrustService
    return jsonify(TrustService.get_metrics(agent_id)), 200


@app.route('/api/agents/<agent_id>/jobs', methods=['GET'])
@require_auth
def list_agent_jobs(agent_id):
    from services.job_service import JobService

    if g.current_agent_id != agent_id:
        return jsonify({"error": "Cannot list another agent's jobs"}), 403
    jobs, total = JobService.list_jobs(
        agent_id=agent_id,
        status=request.args.get('status'),
        limit=_int_arg('limit', 50),
        offset=_int_arg('offset', 0),
    )
    return jsonify({"jobs": [JobService.to_dict(j) for j in jobs], "total": total}), 200


# ===================================================================
# Purchaser wallet challenge
# ===================================================================


@app.route('/api/auth/challenge', methods=['POST'])
def auth_challenge():
    data = request.get_json(silent=True) or {}
    wallet = data.get('wallet_address')
    if not wallet or not re.match(r'^0x[0-9a-fA-F]{40}$', wallet):
        raise ValidationError("Invalid wallet address format")
    store = app.extensions['nonce_store']
    store.cleanup()
    return jsonify(store.issue(wallet)), 200


# ===================================================================
# Jobs
# ===================================================================


@app.route('/api/jobs', methods=['POST'])
def create_job():
    from services.job_service import JobService

    data = request.get_json(silent=True) or {}
    job = JobService.create_job(
        data.get('requester_wallet'),
        data.get('agent_id'),
        data.get('skill_id'),
        data.get('input'),
        data.get('price'),
    )
    logger.info("Job %s created for agent %s", job.job_uuid, job.agent_id)
    return _job_response(job, 201)


@app.route('/api/jobs', methods=['GET'])
def list_jobs():
    from services.job_service import JobService

    jobs, total = JobService.list_jobs(
        requester_wallet=request.args.get('wallet'),
        status=request.args.get('status'),
        limit=_int_arg('limit', 50),
        offset=_int_arg('offset', 0),
    )
    return jsonify({"jobs": [JobService.to_dict(j) for j in jobs], "total": total}), 200


@app.route('/api/jobs/<job_uuid>', methods=['GET'])
def get_job(job_uuid):
    from services.job_service import JobService
    return _job_response(JobService.get_job(job_uuid))


@app.route('/api/jobs/<job_uuid>/pay', methods=['POST'])
def pay_job(job_uuid):
    data = request.get_json(silent=True) or {}
    result = _machine().confirm_payment(job_uuid, data.get('tx_hash'))
    return jsonify(result), 200


@app.route('/api/jobs/<job_uuid>/accept', methods=['POST'])
@require_auth
def accept_job(job_uuid):
    return _job_response(_machine().agent_accept(job_uuid, g.current_agent_id))


@app.route('/api/jobs/<job_uuid>/decline', methods=['POST'])
@require_auth
def decline_job(job_uuid):
    data = request.get_json(silent=True) or {}
    return _job_response(_machine().agent_decline(job_uuid, g.current_agent_id, data.get('reason')))


@app.route('/api/jobs/<job_uuid>/deliver', methods=['POST'])
@require_auth
def deliver_job(job_uuid):
    data = request.get_json(silent=True) or {}
    return _job_response(_machine().agent_deliver(job_uuid, data.get('output'), agent_id=g.current_agent_id))


@app.route('/api/jobs/<job_uuid>/approve', methods=['POST'])
@require_wallet
def approve_job(job_uuid):
    return _job_response(_machine().purchaser_approve(job_uuid, g.current_wallet))


@app.route('/api/jobs/<job_uuid>/revision', methods=['POST'])
@require_wallet
def request_revision(job_uuid):
    data = request.get_json(silent=True) or {}
    return _job_response(_machine().purchaser_request_revision(job_uuid, g.current_wallet, data.get('feedback')))


@app.route('/api/jobs/<job_uuid>/dispute', methods=['POST'])
@require_wallet
def dispute_job(job_uuid):
    data = request.get_json(silent=True) or {}
    return _job_response(_machine().purchaser_dispute(job_uuid, g.current_wallet, data.get('reason')))


@app.route('/api/jobs/<job_uuid>/review', methods=['POST'])
@require_wallet
def review_job(job_uuid):
    from services.agent_service import AgentService

    data = request.get_json(silent=True) or {}
    result = AgentService.submit_review(job_uuid, g.current_wallet, data.get('rating'), data.get('comment'))
    return jsonify(result), 201


@app.route('/api/jobs/<job_uuid>/resolve', methods=['POST'])
@require_operator
def resolve_dispute(job_uuid):
    from services.dispute_service import DisputeResolver

    data = request.get_json(silent=True) or {}
    job = DisputeResolver(_machine()).resolve(job_uuid, data.get('outcome'), resolved_by='operator')
    return _job_response(job)


# ===================================================================
# Lifecycle webhook subscriptions
# ===================================================================


@app.route('/api/agents/<agent_id>/webhooks', methods=['POST'])
@require_auth
def create_webhook(agent_id):
    from services.webhook_service import create_subscription

    if g.current_agent_id != agent_id:
        return jsonify({"error": "Cannot manage webhooks for another agent"}), 403
    data = request.get_json(silent=True) or {}
    if not data.get('url'):
        raise ValidationError("url is required")
    events = data.get('events', [])
    if not isinstance(events, list):
        raise ValidationError("events must be a non-empty list")
    result = create_subscription(agent_id, data['url'], events, allow_http=Config.DEV_MODE)
    return jsonify(result), 201


@app.route('/api/agents/<agent_id>/webhooks', methods=['GET'])
@require_auth
def list_webhooks(agent_id):
    from services.webhook_service import list_subscriptions

    if g.current_agent_id != agent_id:
        return jsonify({"error": "Cannot view webhooks for another agent"}), 403
    return jsonify(list_subscriptions(agent_id)), 200


@app.route('/api/agents/<agent_id>/webhooks/<webhook_id>', methods=['DELETE'])
@require_auth
def delete_webhook(agent_id, webhook_id):
    from services.webhook_service import delete_subscription

    if g.current_agent_id != agent_id:
        return jsonify({"error": "Cannot manage webhooks for another agent"}), 403
    if delete_subscription(webhook_id, agent_id):
        return '', 204
    return jsonify({"error": "Webhook not found"}), 404


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    app.run(port=5005, debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1'))
