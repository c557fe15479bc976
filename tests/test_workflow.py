import pytest
from sqlalchemy import inspect

from dynacrud.core.crud.workflow import WorkflowEngine, validate_definition
from dynacrud.core.errors import WorkflowError
from dynacrud.core.schemas import WorkflowDefinition
from dynacrud.core.security import ActorContext


def make_definition(**overrides):
    raw = {
        "field": "status",
        "states": ["pending", "processing", "shipped"],
        "transitions": {
            "process": {"from": "pending", "to": "processing", "permissions": ["admin"]},
            "ship": {"from": ["processing"], "to": "shipped", "label": "Ship it"},
        },
        "history": True,
    }
    raw.update(overrides)
    return WorkflowDefinition.model_validate(raw)


@pytest.fixture
def workflow(db_session, introspector):
    def _build(**overrides):
        table = introspector.get_table("orders")
        return WorkflowEngine(db_session, table, make_definition(**overrides))

    return _build


@pytest.fixture
def order(insert_row):
    return insert_row("orders", reference="A-1")


# =========================
# Definition
# =========================
def test_definition_requires_known_states():
    with pytest.raises(WorkflowError):
        validate_definition(
            make_definition(transitions={"cancel": {"from": "pending", "to": "cancelled"}})
        )
    with pytest.raises(WorkflowError):
        validate_definition(
            make_definition(transitions={"reopen": {"from": "archived", "to": "pending"}})
        )


def test_definition_requires_states_and_transitions():
    with pytest.raises(WorkflowError):
        validate_definition(make_definition(states=[]))
    with pytest.raises(WorkflowError):
        validate_definition(make_definition(transitions={}))


def test_field_must_exist(db_session, introspector):
    with pytest.raises(WorkflowError):
        WorkflowEngine(db_session, introspector.get_table("orders"), make_definition(field="stage"))


# =========================
# Legality
# =========================
def test_can_transition_from_configured_state_only(workflow):
    engine = workflow()
    admin = ActorContext(id=1, role="admin")

    assert engine.can_transition("process", "pending", admin)
    assert not engine.can_transition("process", "processing", admin)
    assert not engine.can_transition("process", "shipped", admin)
    assert not engine.can_transition("unknown", "pending", admin)
    # A status outside the configured states blocks every transition
    assert not engine.can_transition("process", "on_hold", admin)


def test_missing_actor_is_a_guest(workflow):
    engine = workflow()

    assert not engine.can_transition("process", "pending")
    # No permissions declared: anyone may run it
    assert engine.can_transition("ship", "processing")


def test_available_transitions_ignore_permissions(workflow):
    engine = workflow()

    assert list(engine.get_available_transitions("pending")) == ["process"]
    assert list(engine.get_available_transitions("processing")) == ["ship"]
    assert engine.get_available_transitions("shipped") == {}


# =========================
# Transitions
# =========================
def test_permission_gated_transition(workflow, order):
    engine = workflow()

    denied = engine.transition(order, "process", ActorContext(role="guest"))
    assert denied == {"success": False, "error": "Transition not allowed"}
    assert engine.get_current_state(order) == "pending"

    allowed = engine.transition(order, "process", ActorContext(id=1, role="admin"))
    assert allowed == {"success": True, "from": "pending", "to": "processing"}
    assert engine.get_current_state(order) == "processing"


def test_illegal_transition_leaves_status_untouched(workflow, order):
    engine = workflow()

    result = engine.transition(order, "ship", ActorContext(id=1, role="admin"))

    assert result["success"] is False
    assert engine.get_current_state(order) == "pending"


def test_missing_record(workflow):
    assert workflow().transition(999, "process") == {"success": False, "error": "Record not found"}


def test_history_rows(workflow, order):
    engine = workflow()
    admin = ActorContext(id=1, role="admin", ip="10.0.0.5")

    engine.transition(order, "process", admin)
    engine.transition(order, "ship", admin)

    history = engine.get_history(order)
    assert [(row["transition"], row["from_state"], row["to_state"]) for row in history] == [
        ("ship", "processing", "shipped"),
        ("process", "pending", "processing"),
    ]
    assert history[0]["table_name"] == "orders"
    assert history[0]["user_id"] == 1
    assert history[0]["user_ip"] == "10.0.0.5"


def test_custom_history_table(workflow, order, engine):
    wf = workflow(history_table="order_transitions")
    wf.transition(order, "process", ActorContext(id=1, role="admin"))

    assert inspect(engine).has_table("order_transitions")
    assert len(wf.get_history(order)) == 1


def test_history_disabled(workflow, order):
    wf = workflow(history=False)
    wf.transition(order, "process", ActorContext(id=1, role="admin"))

    assert wf.get_history(order) == []


# =========================
# Hooks
# =========================
def test_hooks_receive_transition_details(workflow, order):
    engine = workflow()
    calls = []
    engine.add_hook("before_process", lambda *args: calls.append(("before",) + args[:3]))
    engine.add_hook("after_process", lambda *args: calls.append(("after",) + args[:3]))

    engine.transition(order, "process", ActorContext(id=1, role="admin"))

    assert calls == [
        ("before", order, "pending", "processing"),
        ("after", order, "pending", "processing"),
    ]


def test_before_hook_aborts(workflow, order):
    engine = workflow()

    def refuse(record_id, from_state, to_state, actor):
        raise RuntimeError("Payment not captured")

    engine.add_hook("before_process", refuse)
    result = engine.transition(order, "process", ActorContext(id=1, role="admin"))

    assert result == {"success": False, "error": "Payment not captured"}
    assert engine.get_current_state(order) == "pending"
    assert engine.get_history(order) == []


def test_after_hook_failure_keeps_new_state(workflow, order):
    engine = workflow()

    def broken(record_id, from_state, to_state, actor):
        raise RuntimeError("Mailer offline")

    engine.add_hook("after_process", broken)
    result = engine.transition(order, "process", ActorContext(id=1, role="admin"))

    assert result == {
        "success": True,
        "from": "pending",
        "to": "processing",
        "hook_error": "Mailer offline",
    }
    assert engine.get_current_state(order) == "processing"
    assert len(engine.get_history(order)) == 1
