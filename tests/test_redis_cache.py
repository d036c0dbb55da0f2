import hashlib
import json

from vauth.storage.redis_cache import RedisCache, SyncRedisCache


class FakeSyncClient:
    def __init__(self):
        self.calls = []
        self.values = {}
        self.zcard = 0
        self.closed = False

    def eval(self, script, numkeys, *args):
        self.calls.append(("eval", numkeys, args))
        self.zcard += 1
        return self.zcard

    def publish(self, channel, message):
        self.calls.append(("publish", channel, message))
        return 2

    def set(self, key, value, ex=None):
        self.calls.append(("set", key, value, ex))
        self.values[key] = value

    def get(self, key):
        return self.values.get(key)

    def delete(self, key):
        self.calls.append(("delete", key))
        self.values.pop(key, None)

    def close(self):
        self.closed = True


class FakeAsyncClient(FakeSyncClient):
    async def eval(self, script, numkeys, *args):
        return FakeSyncClient.eval(self, script, numkeys, *args)

    async def publish(self, channel, message):
        return FakeSyncClient.publish(self, channel, message)

    async def set(self, key, value, ex=None):
        FakeSyncClient.set(self, key, value, ex=ex)

    async def get(self, key):
        return FakeSyncClient.get(self, key)

    async def delete(self, key):
        FakeSyncClient.delete(self, key)


def async_cache():
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = FakeAsyncClient()
    return cache


def sync_cache():
    cache = SyncRedisCache("redis://localhost:6379/0")
    cache._sync_client = FakeSyncClient()
    return cache


class TestKeys:
    def test_attempt_key_is_hashed(self):
        key = RedisCache._attempt_key("alice:with:colons")
        assert key == "vauth:attempts:" + hashlib.sha256(b"alice:with:colons").hexdigest()

    def test_admin_session_key_hides_token(self):
        key = RedisCache._admin_session_key("raw-bearer-token")
        assert "raw-bearer-token" not in key
        assert key.startswith("vauth:admin_session:")


class TestRedisCache:
    async def test_record_failed_attempt_runs_window_script(self):
        cache = async_cache()

        count = await cache.record_failed_attempt("alice", 900, now=1000.0)

        _, numkeys, args = cache.client.calls[0]
        assert count == 1
        assert numkeys == 1
        assert args[0] == RedisCache._attempt_key("alice")
        assert args[1:3] == (1000.0, 900)
        assert args[3].startswith("1000.0:")

    async def test_publish_serializes_payload(self):
        cache = async_cache()

        delivered = await cache.publish("vauth:admin", {"event": "token-issued", "n": 1})

        _, channel, message = cache.client.calls[0]
        assert delivered == 2
        assert channel == "vauth:admin"
        assert json.loads(message) == {"event": "token-issued", "n": 1}

    async def test_admin_session_round_trip(self):
        cache = async_cache()

        await cache.set_admin_session("tok", "root", 0)
        assert cache.client.calls[0][3] == 1
        assert await cache.get_admin_session("tok") == "root"
        await cache.delete_admin_session("tok")
        assert await cache.get_admin_session("tok") is None


class TestSyncRedisCache:
    async def test_same_surface_over_sync_client(self):
        cache = sync_cache()

        assert await cache.record_failed_attempt("alice", 60, now=5.0) == 1
        assert await cache.record_failed_attempt("alice", 60, now=6.0) == 2
        await cache.clear_failed_attempts("alice")
        await cache.set_admin_session("tok", "root", 3600)

        assert ("delete", RedisCache._attempt_key("alice")) in cache._sync_client.calls
        assert await cache.get_admin_session("tok") == "root"

    async def test_close(self):
        cache = sync_cache()
        await cache.close()
        assert cache._sync_client.closed
