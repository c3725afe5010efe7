from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

_LOOKUP_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")

CURRENT_USER_LOOKUP = "current_user"


@runtime_checkable
class LookupResolver(Protocol):
    def resolve(self, value: Any) -> Any: ...


@runtime_checkable
class CurrentUserProvider(Protocol):
    def current_user_id(self) -> Optional[str]: ...


@runtime_checkable
class PermissionChecker(Protocol):
    def check(self, action: str, resource: str) -> bool: ...


class StaticUserProvider:
    """Current-user provider backed by a fixed id (None when anonymous)."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self.user_id


class TemplateLookupResolver:
    """Replaces ``{{name}}`` references with configured lookup values.

    ``{{current_user}}`` resolves through the current-user provider. Unknown
    names are left in place. Non-string values are returned untouched.
    """

    def __init__(
        self,
        lookups: Optional[Mapping[str, Any]] = None,
        user_provider: Optional[CurrentUserProvider] = None,
    ) -> None:
        self.lookups = dict(lookups or {})
        self.user_provider = user_provider

    def _lookup(self, name: str) -> Optional[Any]:
        if name == CURRENT_USER_LOOKUP and self.user_provider is not None:
            return self.user_provider.current_user_id()
        return self.lookups.get(name)

    def resolve(self, value: Any) -> Any:
        if not isinstance(value, str) or "{{" not in value:
            return value

        def _replace(match: re.Match) -> str:
            found = self._lookup(match.group(1))
            return match.group(0) if found is None else str(found)

        return _LOOKUP_PATTERN.sub(_replace, value)


class AllowAllPermissions:
    def check(self, action: str, resource: str) -> bool:
        return True
