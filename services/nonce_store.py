"""
TTL-keyed store for wallet challenge nonces.
Owned by the app (app.extensions['nonce_store']) and passed to whoever needs it.
"""
import secrets
import threading
import time


class NonceStore:
    """In-process nonce store. Each entry carries its own expires_at."""

    def __init__(self, ttl_seconds: int = 300, clock=time.time):
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries = {}  # nonce -> {"wallet": str, "expires_at": float}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def issue(self, wallet: str) -> dict:
        """Create a nonce bound to `wallet`. Returns {nonce, message, expires_at}."""
        nonce = secrets.token_hex(16)
        expires_at = self._clock() + self.ttl
        with self._lock:
            self._entries[nonce] = {"wallet": wallet.lower(), "expires_at": expires_at}
        return {"nonce": nonce, "message": challenge_message(wallet, nonce), "expires_at": expires_at}

    def consume(self, nonce: str, wallet: str) -> bool:
        """Single use: True only for a live nonce issued to `wallet`. Always removes it."""
        with self._lock:
            entry = self._entries.pop(nonce, None)
        if entry is None:
            return False
        if entry["expires_at"] <= self._clock():
            return False
        return entry["wallet"] == (wallet or '').lower()

    def cleanup(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [n for n, e in self._entries.items() if e["expires_at"] <= now]
            for n in expired:
                del self._entries[n]
        return len(expired)


def challenge_message(wallet: str, nonce: str) -> str:
    return f"Sign in to Agent Hub\nWallet: {wallet.lower()}\nNonce: {nonce}"
