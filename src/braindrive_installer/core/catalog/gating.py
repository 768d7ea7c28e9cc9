"""
Dispatch gating.

All pre-dispatch checks live here and run once per tool call, in order:
link up, schema, then the classification gates from ``GATE_TABLE``. A
failed check raises before anything is sent to the execution agent.
"""

from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError

from braindrive_installer.core.catalog.operations import Classification, OperationSpec
from braindrive_installer.core.catalog.schemas import ConfirmedInput, OperationInput
from braindrive_installer.core.domain.errors import (
    InputValidationError,
    LinkDownError,
    PreconditionError,
)
from braindrive_installer.core.domain.session import InstallState, Session


@dataclass(frozen=True)
class Gate:
    """A session predicate an operation must satisfy."""

    predicate: Callable[[Session, OperationInput], bool]
    error: str


def _confirmed(session: Session, params: OperationInput) -> bool:
    return isinstance(params, ConfirmedInput) and params.user_confirmed


def _install_complete(session: Session, params: OperationInput) -> bool:
    return session.install_state == InstallState.COMPLETED


GATE_TABLE: dict[Classification, tuple[Gate, ...]] = {
    Classification.SAFE: (),
    Classification.REQUIRES_CONFIRMATION: (
        Gate(
            _confirmed,
            "This action needs the user's explicit approval. Ask the user to "
            "confirm, then call again with user_confirmed set to true.",
        ),
    ),
    Classification.REQUIRES_INSTALL_COMPLETE: (
        Gate(
            _install_complete,
            "BrainDrive core installation is not complete yet. Finish the "
            "core install (or run detect_system to confirm it) before this step.",
        ),
    ),
}


def authorize(
    spec: OperationSpec,
    arguments: dict[str, Any],
    session: Session,
    link_up: bool,
) -> OperationInput:
    """
    Run every pre-dispatch check for one tool call.

    Args:
        spec: Operation being requested
        arguments: Raw arguments from the decision-maker
        session: Current session
        link_up: Whether an execution agent is attached

    Returns:
        Validated operation input

    Raises:
        LinkDownError: No execution agent attached
        InputValidationError: Arguments do not match the schema
        PreconditionError: A classification gate is not satisfied
    """
    if not link_up:
        raise LinkDownError(
            "The BrainDrive Installer app is not connected. Ask the user to "
            "open it on their computer.",
            operation=spec.name,
        )

    try:
        params = spec.validate(arguments)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors(include_url=False)
        )
        raise InputValidationError(
            f"Invalid input for {spec.name}: {problems}", operation=spec.name
        ) from e

    for gate in GATE_TABLE[spec.classification]:
        if not gate.predicate(session, params):
            raise PreconditionError(gate.error, operation=spec.name)

    return params
