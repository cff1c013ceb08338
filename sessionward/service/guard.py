"""Authorization requirement trees and their evaluation.

The HTTP layer translates its own decorators or middleware rules into a tree
built from these nodes, for example::

    And(RoleRequirement("admin"), Or(PermissionRequirement("user.add"), SafeRequirement()))

Evaluation is a pure function of the tree and an ``AuthorizationContext``
resolved from an active session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple

from sessionward.service.errors import InvalidRequirementError
from sessionward.service.state import InvalidReason


class Mode(str, Enum):
    AND = "and"
    OR = "or"


@dataclass(frozen=True)
class AuthorizationContext:
    account_id: str
    roles: FrozenSet[str] = frozenset()
    permissions: FrozenSet[str] = frozenset()
    disabled_services: FrozenSet[str] = frozenset()
    safe_services: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    failed_requirement: Optional[str] = None
    failed_kind: Optional[str] = None
    reason: Optional[InvalidReason] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(
        cls, requirement: str, kind: str, reason: Optional[InvalidReason] = None
    ) -> "Decision":
        return cls(
            allowed=False, failed_requirement=requirement, failed_kind=kind, reason=reason
        )


def _names(values: Iterable[str], what: str) -> Tuple[str, ...]:
    names = tuple(values)
    if not names:
        raise InvalidRequirementError(f"{what} requirement needs at least one name")
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise InvalidRequirementError(
                f"{what} names must be non-blank strings", detail={"value": repr(name)}
            )
    return names


def _mode(mode: Mode | str) -> Mode:
    try:
        return Mode(mode)
    except ValueError as exc:
        raise InvalidRequirementError(f"unknown mode {mode!r}") from exc


class Requirement:
    """Base node; subclasses implement ``_evaluate``."""

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        raise NotImplementedError

    def children(self) -> Tuple["Requirement", ...]:
        return ()


@dataclass(frozen=True)
class LoginRequirement(Requirement):
    """Only an active session is needed; it is resolved before evaluation."""

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        return Decision.allow()


@dataclass(frozen=True, init=False)
class RoleRequirement(Requirement):
    roles: Tuple[str, ...]
    mode: Mode = Mode.AND

    def __init__(self, *roles: str, mode: Mode | str = Mode.AND) -> None:
        object.__setattr__(self, "roles", _names(roles, "role"))
        object.__setattr__(self, "mode", _mode(mode))

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        return _match(self.roles, context.roles, self.mode, "role")


@dataclass(frozen=True, init=False)
class PermissionRequirement(Requirement):
    """Permission check, optionally satisfied by roles instead.

    Each ``or_role`` entry grants access on its own; an entry holding several
    comma separated roles (``"admin, manager"``) needs all of them together.
    """

    permissions: Tuple[str, ...]
    mode: Mode = Mode.AND
    or_role: Tuple[str, ...] = field(default=())

    def __init__(
        self,
        *permissions: str,
        mode: Mode | str = Mode.AND,
        or_role: Iterable[str] | str = (),
    ) -> None:
        if isinstance(or_role, str):
            or_role = (or_role,)
        or_role = tuple(or_role)
        if or_role:
            _names(or_role, "or_role")
        object.__setattr__(self, "permissions", _names(permissions, "permission"))
        object.__setattr__(self, "mode", _mode(mode))
        object.__setattr__(self, "or_role", or_role)

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        decision = _match(self.permissions, context.permissions, self.mode, "permission")
        if decision.allowed:
            return decision
        for entry in self.or_role:
            needed = [role.strip() for role in entry.split(",") if role.strip()]
            if needed and all(role in context.roles for role in needed):
                return Decision.allow()
        return decision


@dataclass(frozen=True)
class ServiceEnabledRequirement(Requirement):
    """Passes unless the named service is disabled for the account."""

    service: str = "login"

    def __post_init__(self) -> None:
        _names((self.service,), "service")

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        if self.service in context.disabled_services:
            return Decision.deny(self.service, "service")
        return Decision.allow()


@dataclass(frozen=True)
class SafeRequirement(Requirement):
    """Passes while the token has an open safe-mode window for the service."""

    service: str = "important"

    def __post_init__(self) -> None:
        _names((self.service,), "safe")

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        if self.service in context.safe_services:
            return Decision.allow()
        return Decision.deny(self.service, "safe")


def _operands(operands: Iterable[Requirement], what: str) -> Tuple[Requirement, ...]:
    ops = tuple(operands)
    if not ops:
        raise InvalidRequirementError(f"{what} needs at least one operand")
    for op in ops:
        if not isinstance(op, Requirement):
            raise InvalidRequirementError(
                f"{what} operands must be requirements", detail={"value": repr(op)}
            )
    return ops


@dataclass(frozen=True, init=False)
class And(Requirement):
    operands: Tuple[Requirement, ...]

    def __init__(self, *operands: Requirement) -> None:
        object.__setattr__(self, "operands", _operands(operands, "And"))

    def children(self) -> Tuple[Requirement, ...]:
        return self.operands

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        for op in self.operands:
            decision = op._evaluate(context)
            if not decision.allowed:
                return decision
        return Decision.allow()


@dataclass(frozen=True, init=False)
class Or(Requirement):
    operands: Tuple[Requirement, ...]

    def __init__(self, *operands: Requirement) -> None:
        object.__setattr__(self, "operands", _operands(operands, "Or"))

    def children(self) -> Tuple[Requirement, ...]:
        return self.operands

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        first_failure: Optional[Decision] = None
        for op in self.operands:
            decision = op._evaluate(context)
            if decision.allowed:
                return decision
            if first_failure is None:
                first_failure = decision
        return first_failure


@dataclass(frozen=True)
class Bypass(Requirement):
    """Skip every check, including the login check."""

    def _evaluate(self, context: AuthorizationContext) -> Decision:
        return Decision.allow()


BYPASS = Bypass()


def _match(
    required: Tuple[str, ...], held: FrozenSet[str], mode: Mode, kind: str
) -> Decision:
    if mode == Mode.OR:
        if any(name in held for name in required):
            return Decision.allow()
        return Decision.deny("|".join(required), kind)
    for name in required:
        if name not in held:
            return Decision.deny(name, kind)
    return Decision.allow()


def validate(requirement: object) -> Requirement:
    if requirement is None:
        raise InvalidRequirementError("requirement must not be None")
    if not isinstance(requirement, Requirement):
        raise InvalidRequirementError(
            "requirement must be a Requirement node", detail={"value": repr(requirement)}
        )
    return requirement


def contains_bypass(requirement: Requirement) -> bool:
    if isinstance(requirement, Bypass):
        return True
    return any(contains_bypass(child) for child in requirement.children())


def evaluate(requirement: Requirement, context: AuthorizationContext) -> Decision:
    requirement = validate(requirement)
    if contains_bypass(requirement):
        return Decision.allow()
    return requirement._evaluate(context)


__all__ = [
    "Mode",
    "AuthorizationContext",
    "Decision",
    "Requirement",
    "LoginRequirement",
    "RoleRequirement",
    "PermissionRequirement",
    "ServiceEnabledRequirement",
    "SafeRequirement",
    "And",
    "Or",
    "Bypass",
    "BYPASS",
    "validate",
    "contains_bypass",
    "evaluate",
]
