from __future__ import annotations

import pytest

from dcode_workflow.actions import Call, Jump, Return, execute_action, parse_action
from dcode_workflow.errors import InvalidActionError, InvalidStepIdError, MissingReturnAddressError
from dcode_workflow.models import StepId


def _entry_of(group: str) -> StepId:
    return StepId(group, "Begin")


def test_parse_action_recognises_the_three_verbs() -> None:
    assert parse_action("JUMP:Main__Next") == Jump(target=StepId("Main", "Next"))
    assert parse_action("CALL:Sub") == Call(group="Sub")
    assert parse_action("RETURN") == Return()


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "jump:Main__Next",
        "GOTO:Main__Next",
        "JUMP:",
        "JUMP: Main__Next",
        "JUMP:Main__Next:extra",
        "CALL:Sub__Begin",
        "RETURN:Main__A",
        "return",
    ],
)
def test_parse_action_rejects_anything_outside_the_grammar(raw: str) -> None:
    with pytest.raises(InvalidActionError):
        parse_action(raw)


def test_jump_target_must_be_a_composite_step_id() -> None:
    with pytest.raises(InvalidStepIdError):
        parse_action("JUMP:Main")


def test_jump_leaves_the_stack_untouched() -> None:
    stack = (StepId("Main", "B"),)
    result = execute_action("JUMP:Other__X", stack, resolve_entry=_entry_of)
    assert result.next_step == StepId("Other", "X")
    assert result.call_stack == stack


def test_call_then_return_restores_the_stack() -> None:
    stack = (StepId("Outer", "Resume"), StepId("Mid", "After"))
    return_address = StepId("Main", "B")

    called = execute_action("CALL:Sub", stack, resolve_entry=_entry_of, return_address=return_address)
    assert called.next_step == StepId("Sub", "Begin")
    assert called.call_stack == (*stack, return_address)

    returned = execute_action("RETURN", called.call_stack, resolve_entry=_entry_of)
    assert returned.next_step == return_address
    assert returned.call_stack == stack


def test_return_on_empty_stack_terminates() -> None:
    result = execute_action(Return(), (), resolve_entry=_entry_of)
    assert result.next_step is None
    assert result.call_stack == ()

    called = execute_action("CALL:Sub", (), resolve_entry=_entry_of, return_address=StepId("Main", "B"))
    back = execute_action("RETURN", called.call_stack, resolve_entry=_entry_of)
    again = execute_action("RETURN", back.call_stack, resolve_entry=_entry_of)
    assert again.next_step is None


def test_call_without_return_address_fails_before_pushing() -> None:
    stack = (StepId("Main", "B"),)
    with pytest.raises(MissingReturnAddressError):
        execute_action("CALL:Sub", stack, resolve_entry=_entry_of)
    assert stack == (StepId("Main", "B"),)


def test_step_id_parse_rejects_malformed_ids() -> None:
    assert StepId.parse("Main__Start") == StepId("Main", "Start")
    assert str(StepId("Main", "Start")) == "Main__Start"
    for raw in ("Main", "Main__", "__Start", "A__B__C", " Main__Start"):
        with pytest.raises(InvalidStepIdError):
            StepId.parse(raw)


def test_step_id_rendering_always_parses_back_to_the_same_pair() -> None:
    for group, step in [("Main", "Start"), ("Main_x", "B"), ("Build", "step_2"), ("A", "B_")]:
        assert StepId.parse(str(StepId(group, step))) == StepId(group, step)

    for group, step in [("Main_", "B"), ("Main", "_B"), ("Main", "a__b"), ("", "B")]:
        with pytest.raises(InvalidStepIdError):
            StepId(group, step)
    with pytest.raises(InvalidStepIdError):
        StepId.parse("Main___B")
