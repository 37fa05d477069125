"""Role-based permission checks for aumai-qmgateway."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.models import CallerContext, RoleDefinition

logger = structlog.get_logger(__name__)

GLOBAL_WILDCARD = "*:*"


def grants(permissions: set[str] | frozenset[str], required: str) -> bool:
    """Return True when *permissions* cover *required*.

    A permission is covered by an exact match, by ``<resource>:*`` or by
    the global ``*:*``.
    """
    resource = required.split(":", 1)[0]
    return (
        required in permissions
        or f"{resource}:*" in permissions
        or GLOBAL_WILDCARD in permissions
    )


class PermissionChecker:
    """Resolve role names to permissions and authorize requests.

    Args:
        roles: The static role table.  Later definitions of the same role
               name replace earlier ones.
    """

    def __init__(self, roles: Iterable[RoleDefinition]) -> None:
        self._roles: dict[str, frozenset[str]] = {
            role.name: role.permissions for role in roles
        }

    def role_names(self) -> list[str]:
        return sorted(self._roles)

    def permissions_for(self, role_names: Iterable[str]) -> frozenset[str]:
        """Union of the permissions declared for *role_names* (unknown roles add nothing)."""
        collected: set[str] = set()
        for name in role_names:
            collected |= self._roles.get(name, frozenset())
        return frozenset(collected)

    def has_permission(self, role_names: Iterable[str], required: str) -> bool:
        role_names = list(role_names)
        if not role_names:
            return False
        return grants(self.permissions_for(role_names), required)

    def check(self, required: str, caller: CallerContext) -> None:
        """Authorize *caller* for *required*.

        Raises:
            GatewayError: With kind ``AUTHORIZATION`` when the caller has no
                roles or none of them grants *required*.
        """
        if not caller.roles:
            logger.warning("permission_denied_no_roles", required_permission=required)
            raise GatewayError.authorization("no roles assigned")

        held = self.permissions_for(caller.roles)
        if not grants(held, required):
            logger.warning(
                "permission_denied",
                required_permission=required,
                user_id=caller.user_id,
                user_roles=list(caller.roles),
            )
            raise GatewayError.authorization(f"missing required permission: {required}")

        logger.debug("permission_granted", required_permission=required, user_id=caller.user_id)


__all__ = ["GLOBAL_WILDCARD", "PermissionChecker", "grants"]
