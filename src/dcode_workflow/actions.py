"""Action interpreter for the JUMP / CALL / RETURN control-flow instructions.

Action strings are parsed once into a tagged variant and then reduced against
the call stack. Nothing here performs I/O or holds state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .errors import InvalidActionError, MissingReturnAddressError
from .models import STEP_SEPARATOR, StepId

logger = logging.getLogger(__name__)

CallStack = tuple[StepId, ...]


@dataclass(frozen=True)
class Jump:
    target: StepId


@dataclass(frozen=True)
class Call:
    group: str


@dataclass(frozen=True)
class Return:
    pass


Action = Jump | Call | Return


@dataclass(frozen=True)
class ActionResult:
    next_step: StepId | None
    call_stack: CallStack


def parse_action(raw: str) -> Action:
    """Parse ``JUMP:<Group__Step>``, ``CALL:<Group>`` or ``RETURN``.

    The grammar is case-sensitive and colon-delimited; a target may not contain
    another colon.
    """
    if not isinstance(raw, str) or not raw:
        raise InvalidActionError(f"Action must be a non-empty string, got {raw!r}")
    if raw == "RETURN":
        return Return()

    verb, sep, target = raw.partition(":")
    if not sep:
        raise InvalidActionError(f'Unknown workflow action: "{raw}"')
    if verb not in {"JUMP", "CALL"}:
        raise InvalidActionError(f'Unknown workflow action command: "{verb}" in "{raw}"')
    if not target or target.strip() != target:
        raise InvalidActionError(f'Invalid {verb} action: missing or padded target in "{raw}".')
    if ":" in target:
        raise InvalidActionError(f'Invalid {verb} action: unexpected extra ":" in "{raw}".')

    if verb == "JUMP":
        return Jump(target=StepId.parse(target))
    if STEP_SEPARATOR in target:
        raise InvalidActionError(f'Invalid CALL action: target must name a group, got step id "{target}".')
    return Call(group=target)


def execute_action(
    action: Action | str,
    call_stack: CallStack,
    *,
    resolve_entry: Callable[[str], StepId],
    return_address: StepId | None = None,
) -> ActionResult:
    """Reduce one action against the call stack.

    Args:
        action: Parsed action, or a raw action string to parse first.
        call_stack: Current pending return addresses, top of stack last.
        resolve_entry: Maps a group name to its entry step id.
        return_address: Where a CALL resumes once the callee returns.

    Returns:
        The next step (``None`` when a RETURN empties the run) and the new stack.

    Raises:
        InvalidActionError: If ``action`` is a string outside the grammar.
        MissingReturnAddressError: If a CALL has no return address to push.
    """
    parsed = parse_action(action) if isinstance(action, str) else action

    if isinstance(parsed, Jump):
        logger.debug("Executing JUMP to %s", parsed.target)
        return ActionResult(next_step=parsed.target, call_stack=call_stack)

    if isinstance(parsed, Call):
        if return_address is None:
            raise MissingReturnAddressError(
                f'CALL to group "{parsed.group}" has no return address: '
                "the calling step is the last step declared in its group."
            )
        entry = resolve_entry(parsed.group)
        logger.debug("Executing CALL to %s, pushing return address %s", entry, return_address)
        return ActionResult(next_step=entry, call_stack=(*call_stack, return_address))

    if not call_stack:
        logger.warning("RETURN executed on an empty call stack. Workflow will terminate.")
        return ActionResult(next_step=None, call_stack=())
    logger.debug("Executing RETURN to %s", call_stack[-1])
    return ActionResult(next_step=call_stack[-1], call_stack=call_stack[:-1])
