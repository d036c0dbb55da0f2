import pytest

from vauth.storage.errors import ConstraintViolation, StoreUnavailable
from vauth.storage.memory import MemoryStore
from vauth.storage.models import Session, SessionStatus, Token, TokenStatus


class TestConstraints:
    def test_duplicate_username(self, store):
        store.create_principal("alice", "hash", "VAUTH-AAAAAAAA")
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_principal("alice", "hash", "VAUTH-BBBBBBBB")
        assert exc_info.value.detail["field"] == "username"

    def test_duplicate_device_id(self, store):
        store.create_principal("alice", "hash", "VAUTH-AAAAAAAA")
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_principal("bob", "hash", "VAUTH-AAAAAAAA")
        assert exc_info.value.detail["field"] == "device_id"

    def test_duplicate_digest(self, store, clock):
        store.create_token(Token.new("VAUTH-AAAAAAAA", "d1", 60, now=clock.now))
        with pytest.raises(ConstraintViolation):
            store.create_token(Token.new("VAUTH-BBBBBBBB", "d1", 60, now=clock.now))

    def test_deleted_digest_can_be_reused(self, store, clock):
        token = store.create_token(Token.new("VAUTH-AAAAAAAA", "d1", 60, now=clock.now))
        store.delete_token(token.id)
        store.create_token(Token.new("VAUTH-AAAAAAAA", "d1", 60, now=clock.now))
        assert store.count_tokens() == 1


class TestIsolation:
    def test_returned_objects_are_copies(self, store, clock):
        token = store.create_token(Token.new("VAUTH-AAAAAAAA", "d1", 60, now=clock.now))
        token.status = TokenStatus.USED
        assert store.get_token(token.id).status == TokenStatus.ACTIVE

    def test_transition_requires_expected_status(self, store, clock):
        token = store.create_token(Token.new("VAUTH-AAAAAAAA", "d1", 60, now=clock.now))
        assert store.transition_token(token.id, TokenStatus.USED, used_at=clock.now) is not None
        assert store.transition_token(token.id, TokenStatus.EXPIRED) is None
        assert store.transition_token("missing", TokenStatus.USED) is None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path, clock):
        root = str(tmp_path / "persist")
        first = MemoryStore(fs_root=root)
        principal = first.create_principal("alice", "hash", "VAUTH-AAAAAAAA", {"email": "enc"})
        token = first.create_token(Token.new("VAUTH-AAAAAAAA", "d1", 60, now=clock.now))
        first.transition_token(token.id, TokenStatus.USED, used_at=clock.now)
        session, _ = first.open_session(
            Session.new("alice", "VAUTH-AAAAAAAA", "10.0.0.1", 10, now=clock.now)
        )

        reloaded = MemoryStore(fs_root=root)

        assert reloaded.get_principal_by_username("alice").profile_enc == {"email": "enc"}
        assert reloaded.get_principal_by_device_id("VAUTH-AAAAAAAA").id == principal.id
        restored = reloaded.get_token_by_digest("d1")
        assert restored.status == TokenStatus.USED
        assert restored.used_at == clock.now
        restored_session = reloaded.get_session(session.id)
        assert restored_session.status == SessionStatus.ACTIVE
        assert restored_session.expires_at == session.expires_at

    def test_corrupt_snapshot_starts_empty(self, tmp_path):
        state_dir = tmp_path / "corrupt" / "state"
        state_dir.mkdir(parents=True)
        (state_dir / "vauth_store.json").write_text("{not json")

        store = MemoryStore(fs_root=str(tmp_path / "corrupt"))

        assert store.count_principals() == 0

    def test_write_failure_is_store_unavailable(self, store, tmp_path, monkeypatch):
        # Writing to a directory path fails with an OSError
        monkeypatch.setattr(store, "_state_path", lambda: tmp_path)
        with pytest.raises(StoreUnavailable):
            store.create_principal("alice", "hash", "VAUTH-AAAAAAAA")

    def test_verify_connection(self, store):
        store.verify_connection()
        assert not list((store.fs_root / "state").glob("*.probe"))


class TestListing:
    def test_principals_newest_first(self, store):
        store.create_principal("alice", "hash", "VAUTH-AAAAAAAA")
        store.create_principal("bob", "hash", "VAUTH-BBBBBBBB")
        listed = store.list_principals()
        assert {p.username for p in listed} == {"alice", "bob"}
        assert listed[0].created_at >= listed[1].created_at
        assert store.count_principals() == 2

    def test_sessions_filter_by_status_and_deadline(self, store, clock):
        live, _ = store.open_session(Session.new("alice", "VAUTH-A", None, 10, now=clock.now))
        store.open_session(Session.new("bob", "VAUTH-B", None, 1, now=clock.now))
        clock.advance(minutes=5)

        listed = store.list_sessions(SessionStatus.ACTIVE, expires_after=clock.now)

        assert [s.id for s in listed] == [live.id]
        assert store.count_sessions(SessionStatus.ACTIVE) == 2
        assert store.expire_sessions(clock.now) == 1
