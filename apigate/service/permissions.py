from __future__ import annotations

import copy
import json
import threading
from typing import Any, Iterable, Optional

from apigate.logging import get_logger
from apigate.service.errors import ForbiddenError, ValidationFailedError
from apigate.service.identity import AuthStore, Identity

logger = get_logger(__name__)

ACTIONS = ("read", "create", "update", "delete")
WILDCARD = "*"


def _crud(*, read=False, create=False, update=False, delete=False, **extra) -> dict:
    return {"read": read, "create": create, "update": update, "delete": delete, **extra}


def default_policy() -> dict:
    """Built-in roles, field rules and rate limits."""

    return {
        "roles": {
            "administrator": {
                WILDCARD: _crud(read=True, create=True, update=True, delete=True),
            },
            "editor": {
                "post": _crud(read=True, create=True, update=True, delete=True, owner_only=False),
                "page": _crud(read=True, create=True, update=True, delete=True, owner_only=False),
                "media": _crud(read=True, create=True, update=True),
            },
            "contributor": {
                "post": _crud(read=True, create=True, update=True, owner_only=True),
            },
            "subscriber": {
                "post": _crud(read=True),
                "page": _crud(read=True),
            },
        },
        "fields": {
            "allowed": [WILDCARD],
            "denied": ["password_hash", "activation_key"],
        },
        "rate_limits": {
            "default": {"limit": 1000, "window": 3600},
        },
    }


def merge_policy(base: dict, override: dict) -> dict:
    """Recursively replace keys of ``base`` with those of ``override``.

    Nested mappings merge key by key; lists and scalars are replaced whole.
    """

    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_policy(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class PermissionsMatrix:
    """Role -> resource -> action rules, field visibility and per-role rate limits.

    The effective policy is the persisted override merged over
    :func:`default_policy`. Admin operations persist the whole effective
    document and refresh the in-process copy.
    """

    def __init__(self, store: Optional[AuthStore] = None, *, default_limit: int = 1000, default_window: int = 3600) -> None:
        self.store = store
        self._defaults = default_policy()
        self._defaults["rate_limits"]["default"] = {
            "limit": default_limit,
            "window": default_window,
        }
        self._lock = threading.Lock()
        self._policy = self._load()

    def _load(self) -> dict:
        stored = self.store.get_permissions_policy() if self.store else None
        if not stored:
            return copy.deepcopy(self._defaults)
        return merge_policy(self._defaults, stored)

    def reload(self) -> None:
        with self._lock:
            self._policy = self._load()

    def _save(self) -> None:
        if self.store is not None:
            self.store.save_permissions_policy(self._policy)
        logger.info("permissions_policy_saved", roles=sorted(self._policy["roles"]))

    @property
    def policy(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._policy)

    # evaluation
    def has_permission(
        self,
        identity: Identity,
        resource: str,
        action: str,
        target_owner_id: Optional[int] = None,
    ) -> bool:
        with self._lock:
            roles = self._policy.get("roles", {})
            for role in identity.roles:
                rules = roles.get(role) or {}
                if (rules.get(WILDCARD) or {}).get(action):
                    return True
            for role in identity.roles:
                rule = (roles.get(role) or {}).get(resource) or {}
                if not rule.get(action):
                    continue
                if (
                    rule.get("owner_only")
                    and target_owner_id is not None
                    and target_owner_id != identity.id
                ):
                    continue
                return True
        return False

    def authorize(
        self,
        identity: Identity,
        resource: str,
        action: str,
        target_owner_id: Optional[int] = None,
    ) -> None:
        if not self.has_permission(identity, resource, action, target_owner_id):
            logger.warning(
                "permission_denied",
                user_id=identity.id,
                resource=resource,
                action=action,
            )
            raise ForbiddenError(
                "Insufficient permissions",
                detail={"resource": resource, "action": action},
            )

    def can_read_field(self, field_name: str, identity: Identity) -> bool:
        with self._lock:
            fields = self._policy.get("fields", {})
            if field_name in (fields.get("denied") or []):
                return False
            allowed = fields.get("allowed") or []
        return WILDCARD in allowed or field_name in allowed

    def filter_fields(self, record: dict, identity: Identity) -> dict:
        return {
            key: value
            for key, value in record.items()
            if self.can_read_field(key, identity)
        }

    def capabilities_for(self, roles: Iterable[str]) -> frozenset[str]:
        """Flatten granted actions into ``<action>_<resource>`` strings."""

        with self._lock:
            role_rules = self._policy.get("roles", {})
            resources = {
                resource
                for rules in role_rules.values()
                for resource in rules
                if resource != WILDCARD
            }
            resources.add("settings")
            caps: set[str] = set()
            for role in roles:
                for resource, rule in (role_rules.get(role) or {}).items():
                    targets = resources if resource == WILDCARD else {resource}
                    for action in ACTIONS:
                        if (rule or {}).get(action):
                            caps.update(f"{action}_{target}" for target in targets)
        return frozenset(caps)

    def get_rate_limit(self, identity: Optional[Identity]) -> tuple[int, int]:
        """Role-specific ``(limit, window)``, else the default."""

        with self._lock:
            limits = self._policy.get("rate_limits", {})
            default = limits.get("default") or self._defaults["rate_limits"]["default"]
            if identity is not None:
                for role in sorted(identity.roles):
                    specific = limits.get(role)
                    if specific:
                        return int(specific["limit"]), int(specific["window"])
        return int(default["limit"]), int(default["window"])

    # admin operations
    def get_role_permissions(self, role: str) -> dict:
        with self._lock:
            return copy.deepcopy(self._policy["roles"].get(role, {}))

    def set_role_permissions(self, role: str, permissions: dict) -> None:
        if not isinstance(permissions, dict):
            raise ValidationFailedError("role permissions must be an object")
        with self._lock:
            self._policy["roles"][role] = copy.deepcopy(permissions)
            self._save()

    def get_field_permissions(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._policy["fields"])

    def set_field_permissions(self, allowed: list[str], denied: Optional[list[str]] = None) -> None:
        with self._lock:
            self._policy["fields"] = {"allowed": list(allowed), "denied": list(denied or [])}
            self._save()

    def set_rate_limit(self, role: str, limit: int, window: int) -> None:
        if limit <= 0 or window <= 0:
            raise ValidationFailedError(
                "limit and window must be positive",
                detail={"limit": limit, "window": window},
            )
        with self._lock:
            self._policy.setdefault("rate_limits", {})[role] = {
                "limit": int(limit),
                "window": int(window),
            }
            self._save()

    def reset_to_defaults(self) -> None:
        with self._lock:
            if self.store is not None:
                self.store.delete_permissions_policy()
            self._policy = copy.deepcopy(self._defaults)
        logger.info("permissions_policy_reset")

    def export(self) -> str:
        with self._lock:
            return json.dumps(self._policy, indent=2, sort_keys=True)

    def import_policy(self, raw: str | bytes) -> dict:
        try:
            data: Any = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationFailedError("Invalid JSON format") from exc
        if not isinstance(data, dict):
            raise ValidationFailedError("Invalid permissions data")
        with self._lock:
            self._policy = merge_policy(self._defaults, data)
            self._save()
            return copy.deepcopy(self._policy)
