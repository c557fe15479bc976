import pytest

from dynacrud.core.crud.hooks import HookEvent, HookRegistry


def test_hooks_run_in_registration_order():
    """Each hook sees the previous hook's output"""
    registry = HookRegistry()
    seen = []

    def make_hook(k):
        def hook(payload):
            seen.append(list(payload["trail"]))
            return {**payload, "trail": payload["trail"] + [k]}

        return hook

    for k in range(4):
        registry.on(HookEvent.BEFORE_SAVE, make_hook(k))

    result = registry.run(HookEvent.BEFORE_SAVE, {"trail": []})

    assert result["trail"] == [0, 1, 2, 3]
    assert seen == [[], [0], [0, 1], [0, 1, 2]]


def test_returning_none_keeps_payload():
    registry = HookRegistry()
    registry.on("beforeValidate", lambda payload: None)
    registry.on("beforeValidate", lambda payload: {**payload, "checked": True})

    assert registry.run(HookEvent.BEFORE_VALIDATE, {"title": "x"}) == {"title": "x", "checked": True}


def test_extra_arguments_are_passed():
    registry = HookRegistry()
    calls = []
    registry.on(HookEvent.AFTER_CREATE, lambda payload, record_id: calls.append(record_id))

    registry.run(HookEvent.AFTER_CREATE, {"title": "x"}, 42)
    assert calls == [42]


def test_notify_calls_every_hook():
    registry = HookRegistry()
    calls = []
    registry.on(HookEvent.BEFORE_DELETE, lambda record_id: calls.append(("first", record_id)))
    registry.on(HookEvent.BEFORE_DELETE, lambda record_id: calls.append(("second", record_id)))

    registry.notify(HookEvent.BEFORE_DELETE, 7)
    assert calls == [("first", 7), ("second", 7)]


def test_raising_hook_stops_the_chain():
    registry = HookRegistry()
    calls = []

    def abort(payload):
        raise ValueError("Rejected")

    registry.on(HookEvent.BEFORE_SAVE, abort)
    registry.on(HookEvent.BEFORE_SAVE, lambda payload: calls.append(payload))

    with pytest.raises(ValueError):
        registry.run(HookEvent.BEFORE_SAVE, {})
    assert calls == []


def test_unknown_event_is_rejected():
    with pytest.raises(ValueError):
        HookRegistry().on("beforeEverything", lambda payload: payload)


def test_ten_events():
    assert len(HookEvent) == 10
    assert HookRegistry().hooks("afterDelete") == []
