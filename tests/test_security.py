import jwt
import pytest

from dynacrud.core.config import settings
from dynacrud.core.crud.metadata import MetadataStore
from dynacrud.core.security import (
    ANONYMOUS,
    ActorContext,
    CsrfGuard,
    PermissionManager,
    actor_from_token,
    create_access_token,
)


def make_manager(config, actor=ANONYMOUS, fail_closed=None):
    return PermissionManager(MetadataStore.from_dict("posts", config), actor, fail_closed)


def test_missing_permissions_allow_everything():
    manager = make_manager({})
    assert manager.can_create()
    assert manager.can_read()
    assert manager.can_update()
    assert manager.can_delete()


def test_missing_permissions_fail_closed():
    manager = make_manager({}, fail_closed=True)
    assert not manager.can_create()
    assert not manager.can_delete()


def test_role_permissions():
    config = {"permissions": {"create": ["admin", "editor"], "read": ["*"], "delete": ["admin"]}}

    editor = make_manager(config, ActorContext(id=5, role="editor"))
    assert editor.can_create()
    assert editor.can_read()
    assert not editor.can_delete()
    # Actions without an entry are denied
    assert not editor.can_update()

    guest = make_manager(config)
    assert guest.current_role == "guest"
    assert guest.current_user_id is None
    assert not guest.can_create()
    assert guest.can_read()


def test_row_level_security():
    config = {
        "permissions": {"update": ["admin"], "delete": ["admin"]},
        "row_level_security": {"enabled": True, "owner_field": "user_id", "owner_can_edit": True},
    }
    owner = make_manager(config, ActorContext(id=2, role="user"))
    stranger = make_manager(config, ActorContext(id=3, role="user"))
    record = {"id": 10, "user_id": 2}

    assert owner.can_update(record)
    # owner_can_delete defaults to False
    assert not owner.can_delete(record)
    assert not stranger.can_update(record)

    # Table permission still applies without a record
    assert not owner.can_update()
    assert make_manager(config, ActorContext(id=1, role="admin")).can_delete(record)


def test_access_token_round_trip():
    token = create_access_token({"user_id": 7, "role": "editor"})
    actor = actor_from_token(token, ip="10.0.0.1")

    assert actor == ActorContext(id=7, role="editor", ip="10.0.0.1")


def test_tampered_token_is_rejected():
    token = jwt.encode({"user_id": 7}, "other-secret", algorithm=settings.ALGORITHM)
    with pytest.raises(jwt.PyJWTError):
        actor_from_token(token)


def test_csrf_tokens_are_bound_to_the_actor():
    guard = CsrfGuard(secret="csrf-test-secret")
    alice = ActorContext(id=1, role="user")
    bob = ActorContext(id=2, role="user")

    token = guard.generate(alice)

    assert guard.validate(token, alice)
    assert not guard.validate(token, bob)
    assert not guard.validate(None, alice)
    assert not guard.validate("garbage", alice)
    assert not CsrfGuard(secret="another-secret").validate(token, alice)


def test_access_token_is_not_a_csrf_token():
    guard = CsrfGuard(secret=settings.SECRET_KEY)
    token = create_access_token({"user_id": 1, "sub": "1"})
    assert not guard.validate(token, ActorContext(id=1))
