"""
Tests for wallet challenge nonces (services/nonce_store.py).
"""
from services.nonce_store import NonceStore, challenge_message

WALLET = '0x' + 'Ab' * 20


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestNonceStore:
    def test_issue_returns_message_and_expiry(self):
        clock = _Clock()
        store = NonceStore(ttl_seconds=300, clock=clock)
        issued = store.issue(WALLET)
        assert len(issued["nonce"]) == 32
        assert issued["expires_at"] == 1300.0
        assert issued["message"] == challenge_message(WALLET, issued["nonce"])
        assert WALLET.lower() in issued["message"]
        assert len(store) == 1

    def test_consume_is_single_use(self):
        store = NonceStore()
        nonce = store.issue(WALLET)["nonce"]
        assert store.consume(nonce, WALLET) is True
        assert store.consume(nonce, WALLET) is False

    def test_consume_wallet_case_insensitive(self):
        store = NonceStore()
        nonce = store.issue(WALLET)["nonce"]
        assert store.consume(nonce, WALLET.upper().replace('0X', '0x')) is True

    def test_wrong_wallet_burns_nonce(self):
        store = NonceStore()
        nonce = store.issue(WALLET)["nonce"]
        assert store.consume(nonce, '0x' + '00' * 20) is False
        assert store.consume(nonce, WALLET) is False

    def test_expired_nonce_rejected(self):
        clock = _Clock()
        store = NonceStore(ttl_seconds=60, clock=clock)
        nonce = store.issue(WALLET)["nonce"]
        clock.now += 61
        assert store.consume(nonce, WALLET) is False

    def test_each_entry_keeps_its_own_expiry(self):
        clock = _Clock()
        store = NonceStore(ttl_seconds=60, clock=clock)
        old = store.issue(WALLET)["nonce"]
        clock.now += 50
        fresh = store.issue(WALLET)["nonce"]
        clock.now += 20
        assert store.consume(old, WALLET) is False
        assert store.consume(fresh, WALLET) is True

    def test_cleanup_drops_only_expired(self):
        clock = _Clock()
        store = NonceStore(ttl_seconds=60, clock=clock)
        store.issue(WALLET)
        clock.now += 30
        store.issue(WALLET)
        clock.now += 40
        assert store.cleanup() == 1
        assert len(store) == 1

    def test_unknown_nonce(self):
        assert NonceStore().consume('deadbeef', WALLET) is False
