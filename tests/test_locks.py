import redis

from crm.locks import KeyStore


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.calls = []

    def set(self, key, value, nx=False, ex=None):
        self.calls.append(("set", key, nx, ex))
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def delete(self, key):
        self.calls.append(("delete", key))
        self.data.pop(key, None)


class DownRedis:
    def set(self, *_a, **_k):
        raise redis.ConnectionError("refused")

    def delete(self, *_a, **_k):
        raise redis.ConnectionError("refused")


def test_seen_in_memory():
    keys = KeyStore()
    assert keys.seen("SM1") is False
    assert keys.seen("SM1") is True
    assert keys.seen(None) is False
    assert keys.seen("") is False


def test_claim_and_release_in_memory():
    keys = KeyStore()
    assert keys.claim("fu1", 300) is True
    assert keys.claim("fu1", 300) is False
    keys.release("fu1")
    assert keys.claim("fu1", 300) is True


def test_redis_set_nx_with_ttl():
    fake = FakeRedis()
    keys = KeyStore(fake, prefix="test")

    assert keys.seen("SM1") is False
    assert keys.seen("SM1") is True
    assert keys.claim("fu1", 120) is True
    assert fake.calls[0] == ("set", "test:inbound:SM1", True, 24 * 60 * 60)
    assert ("set", "test:followup:fu1", True, 120) in fake.calls


def test_redis_outage_falls_back_to_local_keys():
    keys = KeyStore(DownRedis())
    assert keys.claim("fu1", 60) is True
    assert keys.claim("fu1", 60) is False
    keys.release("fu1")
    assert keys.claim("fu1", 60) is True


def test_local_claims_expire_after_ttl():
    now = [100.0]
    keys = KeyStore(monotonic=lambda: now[0])

    assert keys.claim("fu1", 60) is True
    now[0] += 59
    assert keys.claim("fu1", 60) is False
    now[0] += 2
    assert keys.claim("fu1", 60) is True
