"""
Webhook delivery to agents.

Two kinds of traffic share one retrying `deliver()`:
  - new-job notification to the agent's own webhook_url (payment confirmed);
    its terminal failure is reported back to the state machine as
    `processing_failed`;
  - signed lifecycle events to WebhookSubscription endpoints, which only
    affect the subscription's own failure counter.
Both run on a bounded thread pool; callers never wait on them.
"""
import hashlib
import hmac
import ipaddress
import json
import logging
import secrets
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from urllib.parse import urlparse

import requests as http_requests

from core.errors import ValidationError, WebhookDeliveryFailure
from models import db, Agent, Job, WebhookDelivery, WebhookSubscription

logger = logging.getLogger('relay.webhooks')

USER_AGENT = 'AgentHubRelay/1.0'

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_TIMEOUT = 30
# Delay before each attempt, in seconds: 0, 1, 2, 4
DEFAULT_DELAYS = (0, 1, 2, 4)

SUBSCRIPTION_MAX_ATTEMPTS = 3
SUBSCRIPTION_TIMEOUT = 10
SUBSCRIPTION_DELAYS = (0, 2, 4)
MAX_SUBSCRIPTIONS_PER_AGENT = 10
AUTO_DISABLE_AFTER = 10

JOB_EVENTS = (
    'job.paid',
    'job.accepted',
    'job.delivered',
    'job.approved',
    'job.completed',
    'job.disputed',
    'job.revision_requested',
    'job.payment_released',
    'job.refunded',
    'job.failed',
)


def is_safe_webhook_url(url: str, allow_http: bool = False) -> bool:
    """Reject non-https URLs and hosts resolving to internal addresses."""
    try:
        parsed = urlparse(url)
        if parsed.scheme != 'https' and not (allow_http and parsed.scheme == 'http'):
            return False
        hostname = parsed.hostname
        if not hostname:
            return False
        ip = ipaddress.ip_address(socket.gethostbyname(hostname))
        if allow_http:
            return not (ip.is_link_local or ip.is_multicast or ip.is_unspecified)
        return ip.is_global
    except (socket.gaierror, ValueError, OSError):
        return False


def _classify(status_code: int) -> str:
    if 200 <= status_code < 300:
        return 'success'
    if 400 <= status_code < 500:
        return 'abort'
    return 'retry'


def deliver(url: str, payload: dict, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
            timeout: float = DEFAULT_TIMEOUT, delays=DEFAULT_DELAYS,
            headers: dict = None, body: str = None, stop_event=None) -> dict:
    """POST `payload` as JSON with bounded retries.

    2xx returns success at once. 4xx aborts without using the remaining
    attempts. 5xx, connection errors and timeouts are retried until
    `max_attempts` is reached.

    Returns {"success", "attempts", "status_code", "error"}.
    """
    if body is None:
        body = json.dumps(payload, default=str)
    send_headers = {
        'Content-Type': 'application/json',
        'User-Agent': USER_AGENT,
    }
    if headers:
        send_headers.update(headers)

    job_ref = payload.get('jobUuid') or payload.get('data', {}).get('job_uuid')
    last_error = None
    last_status = None
    attempt = 0

    for attempt in range(1, max_attempts + 1):
        delay = delays[attempt - 1] if attempt - 1 < len(delays) else 0
        if delay > 0:
            time.sleep(delay)
        if stop_event is not None and stop_event.is_set():
            last_error = last_error or 'Delivery stopped by shutdown'
            logger.warning("Webhook delivery to %s stopped by shutdown after %d attempts",
                           url, attempt - 1)
            return {"success": False, "attempts": attempt - 1,
                    "status_code": last_status, "error": last_error}

        try:
            resp = http_requests.post(url, data=body, headers=send_headers, timeout=timeout)
        except http_requests.exceptions.Timeout:
            last_error = f"Timeout after {timeout}s"
            last_status = None
            logger.warning("Webhook attempt %d/%d to %s timed out (job=%s)",
                           attempt, max_attempts, url, job_ref)
            continue
        except http_requests.exceptions.RequestException as e:
            last_error = str(e)
            last_status = None
            logger.warning("Webhook attempt %d/%d to %s failed (job=%s): %s",
                           attempt, max_attempts, url, job_ref, e)
            continue

        last_status = resp.status_code
        outcome = _classify(resp.status_code)
        if outcome == 'success':
            logger.info("Webhook delivered to %s (status %d, attempt %d, job=%s)",
                        url, resp.status_code, attempt, job_ref)
            return {"success": True, "attempts": attempt, "status_code": resp.status_code, "error": None}
        if outcome == 'abort':
            logger.warning("Webhook to %s aborted on client error %d (attempt %d, job=%s)",
                           url, resp.status_code, attempt, job_ref)
            return {"success": False, "attempts": attempt, "status_code": resp.status_code,
                    "error": f"HTTP {resp.status_code}"}

        last_error = f"HTTP {resp.status_code}"
        logger.warning("Webhook %s returned %d (attempt %d/%d, job=%s)",
                       url, resp.status_code, attempt, max_attempts, job_ref)

    logger.error("Webhook delivery to %s exhausted %d attempts (job=%s): %s",
                 url, max_attempts, job_ref, last_error)
    return {"success": False, "attempts": attempt, "status_code": last_status,
            "error": last_error or 'All webhook attempts failed'}


def build_job_payload(job: Job, agent: Agent) -> dict:
    """New-job notification body sent to the agent's webhook_url."""
    skill = job.skill
    paid_at = job.paid_at or datetime.now(timezone.utc)
    return {
        "jobUuid": job.job_uuid,
        "agentId": agent.agent_id,
        "skillId": job.skill_id,
        "serviceKey": skill.service_key if skill else None,
        "input": job.input_data,
        "price": float(job.price),
        "paidAt": paid_at.isoformat(),
    }


def sign_body(secret: str, body: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """Background delivery on a bounded pool.

    `app` is needed so worker threads can open their own app context.
    """

    def __init__(self, app, max_workers: int = 8, executor=None):
        self.app = app
        self.max_workers = max_workers
        self._executor = executor
        self.shutdown_event = threading.Event()

    @property
    def executor(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                thread_name_prefix='webhook')
        return self._executor

    def shutdown(self, wait=True):
        self.shutdown_event.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _settings(self) -> dict:
        cfg = self.app.config
        return {
            "max_attempts": cfg.get('WEBHOOK_MAX_ATTEMPTS', DEFAULT_MAX_ATTEMPTS),
            "timeout": cfg.get('WEBHOOK_TIMEOUT_SECONDS', DEFAULT_TIMEOUT),
            "delays": cfg.get('WEBHOOK_RETRY_DELAYS', DEFAULT_DELAYS),
        }

    # -- new-job notification ----------------------------------------------

    def dispatch_new_job(self, job_uuid: str):
        """Queue the new-job notification. Returns the Future."""
        return self.executor.submit(self.run_new_job_delivery, job_uuid)

    def run_new_job_delivery(self, job_uuid: str) -> dict:
        """Deliver the new-job payload and feed a failure back into the state machine."""
        with self.app.app_context():
            try:
                job = db.session.get(Job, job_uuid)
                if job is None:
                    logger.error("Webhook dispatch: job %s not found", job_uuid)
                    return {"success": False, "attempts": 0, "error": "Job not found"}
                agent = db.session.get(Agent, job.agent_id)
                if agent is None or not agent.webhook_url:
                    logger.info("Webhook dispatch skipped for job %s: no webhook_url", job_uuid)
                    return {"success": False, "attempts": 0, "skipped": True}

                url, agent_id = agent.webhook_url, agent.agent_id
                payload = build_job_payload(job, agent)
                # Release the connection while the network calls run
                db.session.commit()

                if not is_safe_webhook_url(url, allow_http=self.app.config.get('DEV_MODE', False)):
                    logger.warning("Webhook URL %s failed safety re-check at delivery time", url)
                    result = {"success": False, "attempts": 0, "status_code": None,
                              "error": "Webhook URL failed safety check"}
                else:
                    result = deliver(url, payload, stop_event=self.shutdown_event, **self._settings())

                self._log_delivery(job_uuid, agent_id, url, result)
                if result["success"]:
                    Agent.query.filter_by(agent_id=agent_id).update({"webhook_verified": True})
                    db.session.commit()
                else:
                    failure = WebhookDeliveryFailure(
                        attempts=result["attempts"],
                        status_code_received=result.get("status_code"),
                        details=result.get("error"),
                    )
                    self.report_failure(job_uuid, failure)
                return result
            except Exception as e:
                db.session.rollback()
                logger.error("Webhook dispatch for job %s crashed: %s", job_uuid, e)
                return {"success": False, "attempts": 0, "error": str(e)}
            finally:
                db.session.remove()

    def report_failure(self, job_uuid: str, failure: WebhookDeliveryFailure):
        """Turn a failed delivery into a `processing_failed` event.

        Only a job still waiting in `paid` is failed; if the agent moved it on
        by another path the failure is just logged.
        """
        from core.job_states import JobStatus
        from services.job_state_machine import JobStateMachine

        machine = JobStateMachine(dispatcher=self)
        try:
            machine.processing_failed(job_uuid, failure.to_payload(),
                                      from_statuses=(JobStatus.PAID,))
            logger.warning("Job %s failed: webhook delivery failed after %d attempts",
                           job_uuid, failure.attempts)
        except ValidationError as e:
            logger.info("Webhook failure for job %s not applied: %s", job_uuid, e.message)

    def _log_delivery(self, job_uuid, agent_id, url, result):
        try:
            db.session.add(WebhookDelivery(
                job_uuid=job_uuid,
                agent_id=agent_id,
                url=url,
                success=result["success"],
                attempts=result["attempts"],
                status_code=result.get("status_code"),
                error=result.get("error"),
            ))
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error("Failed to log webhook delivery for job %s: %s", job_uuid, e)

    # -- lifecycle subscriptions -------------------------------------------

    def fire_event(self, event: str, job: Job, data: dict = None):
        """Send `event` to the job agent's matching subscriptions (non-blocking)."""
        subs = WebhookSubscription.query.filter(
            WebhookSubscription.agent_id == job.agent_id,
            WebhookSubscription.active.is_(True),
        ).all()
        matching = [s for s in subs if event in (s.events or [])]
        if not matching:
            return 0

        payload = {
            "id": f"evt_{secrets.token_hex(12)}",
            "type": event,
            "created": int(time.time()),
            "data": dict(data or {}, job_uuid=job.job_uuid, agent_id=job.agent_id),
        }
        for sub in matching:
            self.executor.submit(self.run_subscription_delivery, sub.id, sub.url, sub.secret, payload)
        logger.info("Webhook event %s dispatched for job %s to %d subscriptions",
                    event, job.job_uuid, len(matching))
        return len(matching)

    def run_subscription_delivery(self, subscription_id: str, url: str, secret: str, payload: dict) -> dict:
        body = json.dumps(payload, default=str)
        headers = {
            'X-Hub-Signature': f'sha256={sign_body(secret, body)}',
            'X-Hub-Event': payload["type"],
            'X-Hub-Delivery': payload["id"],
        }
        if not is_safe_webhook_url(url, allow_http=self.app.config.get('DEV_MODE', False)):
            logger.warning("Subscription URL %s failed safety re-check, skipping", url)
            result = {"success": False, "attempts": 0, "error": "Webhook URL failed safety check"}
        else:
            result = deliver(url, payload, max_attempts=SUBSCRIPTION_MAX_ATTEMPTS,
                             timeout=SUBSCRIPTION_TIMEOUT, delays=SUBSCRIPTION_DELAYS,
                             headers=headers, body=body, stop_event=self.shutdown_event)
        self._track_subscription(subscription_id, result["success"])
        return result

    def _track_subscription(self, subscription_id: str, success: bool):
        with self.app.app_context():
            try:
                sub = db.session.get(WebhookSubscription, subscription_id)
                if sub is None:
                    return
                if success:
                    sub.failure_count = 0
                else:
                    sub.failure_count = (sub.failure_count or 0) + 1
                    sub.last_failure_at = datetime.now(timezone.utc)
                    if sub.failure_count >= AUTO_DISABLE_AFTER:
                        sub.active = False
                        sub.disabled_reason = f"Auto-disabled after {sub.failure_count} consecutive failures"
                        logger.warning("Subscription %s auto-disabled after %d failures",
                                       subscription_id, sub.failure_count)
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                logger.error("Failed to update subscription failure tracking: %s", e)
            finally:
                db.session.remove()


# -- subscription registration ---------------------------------------------

def create_subscription(agent_id: str, url: str, events: list, allow_http: bool = False) -> dict:
    """Register a lifecycle subscription. Returns it with its secret (shown once)."""
    unknown = [e for e in (events or []) if e not in JOB_EVENTS]
    if not events or unknown:
        raise ValidationError("events must be a non-empty list of known job events",
                              details={"unknown": unknown, "allowed": list(JOB_EVENTS)})
    if not is_safe_webhook_url(url, allow_http=allow_http):
        raise ValidationError("Webhook URL must be https and publicly routable")

    active_count = WebhookSubscription.query.filter_by(agent_id=agent_id, active=True).count()
    if active_count >= MAX_SUBSCRIPTIONS_PER_AGENT:
        raise ValidationError(f"Maximum {MAX_SUBSCRIPTIONS_PER_AGENT} webhooks per agent")

    sub = WebhookSubscription(
        agent_id=agent_id,
        url=url,
        events=list(events),
        secret=secrets.token_hex(32),
        active=True,
    )
    db.session.add(sub)
    db.session.commit()
    return subscription_to_dict(sub, include_secret=True)


def list_subscriptions(agent_id: str) -> list:
    subs = WebhookSubscription.query.filter_by(agent_id=agent_id, active=True).all()
    return [subscription_to_dict(s) for s in subs]


def delete_subscription(subscription_id: str, agent_id: str) -> bool:
    """Soft-delete a subscription. Returns True if deleted."""
    sub = WebhookSubscription.query.filter_by(id=subscription_id, agent_id=agent_id).first()
    if not sub:
        return False
    sub.active = False
    db.session.commit()
    return True


def subscription_to_dict(sub: WebhookSubscription, include_secret: bool = False) -> dict:
    d = {
        "webhook_id": sub.id,
        "agent_id": sub.agent_id,
        "url": sub.url,
        "events": sub.events or [],
        "active": sub.active,
        "failure_count": sub.failure_count or 0,
        "created_at": sub.created_at.isoformat() if sub.created_at else None,
    }
    if include_secret:
        d["secret"] = sub.secret
    return d
