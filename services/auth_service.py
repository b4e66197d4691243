"""
Authentication: agent API keys, purchaser wallet challenges, operator signatures.
"""
import hashlib
import secrets
import time
import logging
from functools import wraps
from flask import current_app, request, jsonify, g
from models import Agent
from services.nonce_store import challenge_message

logger = logging.getLogger(__name__)


def generate_api_key() -> tuple:
    """Generate a new API key. Returns (raw_key, key_hash)."""
    raw_key = 'hub_' + secrets.token_urlsafe(32)
    key_hash = hashlib.sha256(raw_key.encode()).hexdigest()
    return raw_key, key_hash


def verify_api_key(raw_key: str) -> Agent:
    """Verify an API key and return the associated Agent, or None."""
    key_hash = hashlib.sha256(raw_key.encode()).hexdigest()
    return Agent.query.filter_by(api_key_hash=key_hash).first()


def require_auth(f):
    """Decorator: require valid agent API key in Authorization header.

    Sets g.current_agent_id on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            return jsonify({"error": "Missing or invalid Authorization header"}), 401

        token = auth_header[7:]  # strip "Bearer "
        agent = verify_api_key(token)
        if not agent:
            return jsonify({"error": "Invalid API key"}), 401

        g.current_agent_id = agent.agent_id
        return f(*args, **kwargs)
    return decorated


def recover_wallet(message_text: str, signature_hex: str) -> str:
    """Address that signed `message_text` (EIP-191 personal_sign)."""
    from eth_account import Account
    from eth_account.messages import encode_defunct
    return Account.recover_message(encode_defunct(text=message_text), signature=signature_hex)


def verify_wallet_signature(nonce_store, wallet: str, nonce: str, signature_hex: str):
    """Check a signed challenge. The nonce is consumed whether or not it verifies.

    Returns (is_valid, error_message).
    """
    if not nonce_store.consume(nonce, wallet):
        return False, "Unknown, expired or already used nonce"
    try:
        recovered = recover_wallet(challenge_message(wallet, nonce), signature_hex)
    except Exception as e:
        logger.warning("Wallet signature recovery failed: %s", e)
        return False, "Invalid signature format"
    if recovered.lower() != wallet.lower():
        return False, "Signature does not match wallet"
    return True, None


def require_wallet(f):
    """Decorator: require a signed wallet challenge.

    Expects headers:
      X-Wallet-Address:   0x...
      X-Wallet-Nonce:     nonce from POST /api/auth/challenge
      X-Wallet-Signature: personal_sign of the challenge message

    Sets g.current_wallet on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        wallet = request.headers.get('X-Wallet-Address')
        nonce = request.headers.get('X-Wallet-Nonce')
        signature = request.headers.get('X-Wallet-Signature')
        if not wallet or not nonce or not signature:
            return jsonify({"error": "Wallet signature required"}), 401

        valid, error = verify_wallet_signature(
            current_app.extensions['nonce_store'], wallet, nonce, signature,
        )
        if not valid:
            return jsonify({"error": error}), 401

        g.current_wallet = wallet.lower()
        return f(*args, **kwargs)
    return decorated


def verify_operator_signature(signature_hex, timestamp, path):
    """Verify an Operator signature against OPERATOR_ADDRESS.

    The signed message is: HUB:{path}:{timestamp}
    Returns (is_valid, error_message).
    """
    from config import Config

    operator_addr = Config.OPERATOR_ADDRESS
    if not operator_addr:
        logger.error("OPERATOR_ADDRESS not configured")
        return False, "Operator verification not configured"

    # Anti-replay: check timestamp freshness
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "Invalid timestamp"

    drift = time.time() - ts
    if drift < -30:  # Allow 30s clock skew
        return False, "Timestamp is in the future"
    max_age = Config.OPERATOR_SIGNATURE_MAX_AGE
    if drift > max_age:
        return False, f"Signature expired ({int(drift)}s > {max_age}s)"

    try:
        recovered = recover_wallet(f"HUB:{path}:{timestamp}", signature_hex)
    except Exception as e:
        logger.warning("Operator signature recovery failed: %s", e)
        return False, "Invalid signature format"

    if recovered.lower() != operator_addr.lower():
        logger.warning("Operator signature mismatch: recovered=%s expected=%s", recovered, operator_addr)
        return False, "Signature does not match operator"

    return True, None


def require_operator(f):
    """Decorator: require valid Operator signature.

    Expects headers:
      X-Operator-Signature: <hex signature>
      X-Operator-Timestamp: <unix timestamp>

    Signed message format: HUB:{request.path}:{timestamp}
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        signature = request.headers.get('X-Operator-Signature')
        timestamp = request.headers.get('X-Operator-Timestamp')

        if not signature or not timestamp:
            return jsonify({"error": "Operator signature required"}), 401

        valid, error = verify_operator_signature(signature, timestamp, request.path)
        if not valid:
            return jsonify({"error": error}), 403

        g.operator_verified = True
        return f(*args, **kwargs)
    return decorated
