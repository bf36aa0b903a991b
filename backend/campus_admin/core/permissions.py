"""Permission Model: role -> capability set.

A capability set is derived once per role claim and is read-only afterwards.
Capability names are either generic (``can_export``) or scoped to one entity
kind (``can_export:student``). Any name the set does not contain is denied,
so an unknown role yields a set where every check fails.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any, Optional

CAN_VIEW = "can_view"
CAN_EDIT = "can_edit"
CAN_DELETE = "can_delete"
CAN_EXPORT = "can_export"
CAN_ADD = "can_add"
CAN_TOGGLE_STATUS = "can_toggle_status"
CAN_ACCESS_ADMIN = "can_access_admin"

CAPABILITIES = (
    CAN_VIEW,
    CAN_EDIT,
    CAN_DELETE,
    CAN_EXPORT,
    CAN_ADD,
    CAN_TOGGLE_STATUS,
    CAN_ACCESS_ADMIN,
)

ENTITY_KINDS = (
    "activity",
    "activity_participant",
    "department",
    "student",
    "teacher",
    "staff",
    "audit_event",
    "timestamp",
)

# Per-role grants: capability -> kinds it applies to.
_ALL_KINDS = frozenset(ENTITY_KINDS)
# Logs and rosters are listed and exported here, never changed.
READ_ONLY_KINDS = frozenset({"activity_participant", "timestamp"})
_MANAGED_KINDS = _ALL_KINDS - READ_ONLY_KINDS
ROLE_GRANTS: dict[str, dict[str, frozenset[str]]] = {
    "staff": {
        **{capability: _MANAGED_KINDS for capability in CAPABILITIES},
        CAN_VIEW: _ALL_KINDS,
        CAN_EXPORT: _ALL_KINDS,
    },
    "teacher": {
        CAN_VIEW: frozenset({"activity", "department", "student"}),
        CAN_EXPORT: frozenset({"activity", "department", "student"}),
    },
    "student": {},
}

# Sub-roles widen the grants of their parent role only.
SUB_ROLE_GRANTS: dict[tuple[str, str], dict[str, frozenset[str]]] = {
    ("teacher", "dean"): {
        CAN_VIEW: frozenset({"teacher"}),
        CAN_EXPORT: frozenset({"teacher"}),
    },
}

DENIAL_REASONS: dict[str, str] = {
    CAN_VIEW: "You do not have permission to view these records",
    CAN_EDIT: "You do not have permission to edit these records - staff only",
    CAN_DELETE: "You do not have permission to delete these records - staff only",
    CAN_EXPORT: "You do not have permission to export data",
    CAN_ADD: "You do not have permission to add records - staff only",
    CAN_TOGGLE_STATUS: "You do not have permission to change account status - staff only",
    CAN_ACCESS_ADMIN: "Administrative features are restricted to staff",
}


class CapabilitySet(Mapping):
    """Immutable mapping of capability name -> bool for one role claim."""

    def __init__(
        self,
        flags: Mapping[str, bool],
        *,
        role: Optional[str] = None,
        sub_roles: Iterable[str] = (),
    ) -> None:
        self._flags = MappingProxyType({str(k): bool(v) for k, v in flags.items()})
        self.role = role
        self.sub_roles = tuple(sub_roles)

    def __getitem__(self, key: str) -> bool:
        return self._flags[key]

    def __iter__(self):
        return iter(self._flags)

    def __len__(self) -> int:
        return len(self._flags)

    def __repr__(self) -> str:
        granted = sorted(name for name, flag in self._flags.items() if flag)
        return f"CapabilitySet(role={self.role!r}, granted={granted})"

    def granted(self) -> list[str]:
        return sorted(name for name, flag in self._flags.items() if flag)


def scoped(capability: str, kind: Optional[str]) -> str:
    """Capability name scoped to an entity kind."""
    if not kind:
        return capability
    return f"{capability}:{kind}"


def derive_capabilities(role: Optional[str], sub_roles: Iterable[str] = ()) -> CapabilitySet:
    normalized_role = (role or "").strip().lower() or None
    normalized_subs = tuple(s.strip().lower() for s in sub_roles if s and s.strip())

    grants: dict[str, set[str]] = {capability: set() for capability in CAPABILITIES}
    role_grants = ROLE_GRANTS.get(normalized_role or "")
    if role_grants is not None:
        for capability, kinds in role_grants.items():
            grants[capability].update(kinds)
        for sub_role in normalized_subs:
            for capability, kinds in SUB_ROLE_GRANTS.get((normalized_role, sub_role), {}).items():
                grants[capability].update(kinds)

    flags: dict[str, bool] = {}
    for capability in CAPABILITIES:
        kinds = grants[capability]
        flags[capability] = bool(kinds)
        for kind in ENTITY_KINDS:
            flags[scoped(capability, kind)] = kind in kinds
    return CapabilitySet(flags, role=normalized_role, sub_roles=normalized_subs)


def can_perform(capabilities: Optional[Mapping[str, Any]], capability_name: str) -> bool:
    if not capabilities or not capability_name:
        return False
    try:
        return capabilities.get(capability_name, False) is True
    except Exception:
        return False


EntityPredicate = Callable[[Any], bool]


def can_perform_on_entity(
    capabilities: Optional[Mapping[str, Any]],
    capability_name: str,
    entity: Any,
    predicate: Optional[EntityPredicate] = None,
) -> bool:
    """Capability check narrowed to one record by a caller-supplied predicate."""
    if not can_perform(capabilities, capability_name):
        return False
    if predicate is None:
        return True
    try:
        return bool(predicate(entity))
    except Exception:
        return False


def denial_reason(capability_name: str) -> str:
    base = capability_name.split(":", 1)[0]
    return DENIAL_REASONS.get(base, "You do not have permission to perform this action")


def same_value_scope(field_names: Iterable[str], expected: Optional[str]) -> EntityPredicate:
    """Predicate allowing only records whose field equals ``expected``.

    Used for teachers restricted to their own department.
    """
    names = tuple(field_names)

    def _predicate(entity: Any) -> bool:
        if expected is None or entity is None:
            return False
        for name in names:
            if isinstance(entity, Mapping):
                value = entity.get(name)
            else:
                value = getattr(entity, name, None)
            if value is not None:
                return str(value) == str(expected)
        return False

    return _predicate


class PermissionContext:
    """Holds the capability set for the current session role signal.

    The set is recomputed whenever the role or sub-roles change; reading it
    never triggers a recompute.
    """

    def __init__(self, role: Optional[str] = None, sub_roles: Iterable[str] = ()) -> None:
        self._role = None
        self._sub_roles: tuple[str, ...] = ()
        self._capabilities = derive_capabilities(None)
        self.update(role, sub_roles)

    @property
    def capabilities(self) -> CapabilitySet:
        return self._capabilities

    def update(self, role: Optional[str], sub_roles: Iterable[str] = ()) -> bool:
        """Apply a new role signal. Returns True if the capability set changed."""
        sub_roles = tuple(sub_roles)
        if role == self._role and sub_roles == self._sub_roles and self._role is not None:
            return False
        self._role = role
        self._sub_roles = sub_roles
        previous = self._capabilities
        self._capabilities = derive_capabilities(role, sub_roles)
        return dict(previous) != dict(self._capabilities)
