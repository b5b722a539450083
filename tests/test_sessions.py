from datetime import timedelta

from taskdeck.service.sessions import SessionManager
from taskdeck.storage.memory import MemoryStore
from taskdeck.storage.models import utcnow


def _store_with_user():
    store = MemoryStore()
    user = store.create_user(
        email="member@example.com",
        password_hash="x",
        first_name="Test",
        last_name="Member",
        role_id=4,
    )
    return store, user


def test_create_issues_distinct_secrets():
    store, user = _store_with_user()
    manager = SessionManager(store, ttl_days=7)

    first = manager.create(user.id, device_info="laptop", ip_address="10.0.0.1")
    second = manager.create(user.id)

    assert first.session_id != second.session_id
    assert first.refresh_token != second.refresh_token
    assert len(first.session_token) == 64
    assert len(first.refresh_token) == 64
    assert first.session.device_info == "laptop"
    lifetime = first.session.expires_at - first.session.created_at
    assert timedelta(days=7) - lifetime < timedelta(seconds=5)


def test_lookup_by_refresh_token():
    store, user = _store_with_user()
    manager = SessionManager(store)
    created = manager.create(user.id)

    found = manager.get_active_by_refresh_token(created.refresh_token)
    assert found is not None
    assert found.id == created.session_id
    assert manager.get_active_by_refresh_token("") is None
    assert manager.get_active_by_refresh_token("0" * 64) is None


def test_revoked_session_is_not_found():
    store, user = _store_with_user()
    manager = SessionManager(store)
    created = manager.create(user.id)

    manager.revoke(created.session_id)

    assert manager.get_active_by_id(created.session_id) is None
    assert manager.get_active_by_refresh_token(created.refresh_token) is None


def test_expired_session_is_not_usable():
    store, user = _store_with_user()
    manager = SessionManager(store)
    created = manager.create(user.id)
    store.update_session(created.session_id, expires_at=utcnow() - timedelta(seconds=1))

    assert manager.get_active_by_id(created.session_id) is None
    assert manager.get_active_by_refresh_token(created.refresh_token) is None


def test_revoke_all_can_keep_one_session():
    store, user = _store_with_user()
    manager = SessionManager(store)
    keep = manager.create(user.id)
    manager.create(user.id)
    manager.create(user.id)

    assert manager.revoke_all_for_user(user.id, except_session_id=keep.session_id) == 2
    assert manager.get_active_by_id(keep.session_id) is not None
    assert manager.revoke_all_for_user(user.id) == 1
    assert manager.revoke_all_for_user(user.id) == 0
