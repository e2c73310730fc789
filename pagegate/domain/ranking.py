from __future__ import annotations

import unicodedata
from collections.abc import Iterable, Mapping
from typing import Protocol, TypeVar

from pagegate.domain.pages import HOME_PATH, PAGE_WILDCARD, normalize_path

TIER_SYSTEM_ADMINISTRATOR = 0
TIER_BASIC_USER = 1
TIER_UNIUM = 2
TIER_HAS_PAGE_ACCESS = 3
TIER_OTHER = 4

SYSTEM_ADMINISTRATOR_NAME = "system administrator"
BASIC_USER_NAME = "basic user"
UNIUM_MARKER = "unium"


class RankableRole(Protocol):
    id: str
    name: str


R = TypeVar("R", bound=RankableRole)


def _collation_key(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return stripped.casefold()


def _has_meaningful_page(page_keys: Iterable[str], home_path: str) -> bool:
    home = normalize_path(home_path)
    for key in page_keys:
        if key == PAGE_WILDCARD:
            return True
        if normalize_path(key) != home:
            return True
    return False


def role_rank(
    role: RankableRole,
    page_rules_by_role: Mapping[str, Iterable[str]] | None = None,
    *,
    home_path: str = HOME_PATH,
) -> int:
    name = (role.name or "").strip().casefold()
    if name == SYSTEM_ADMINISTRATOR_NAME:
        return TIER_SYSTEM_ADMINISTRATOR
    if name == BASIC_USER_NAME:
        return TIER_BASIC_USER
    if UNIUM_MARKER in name:
        return TIER_UNIUM
    if page_rules_by_role:
        page_keys = page_rules_by_role.get(role.id)
        if page_keys and _has_meaningful_page(page_keys, home_path):
            return TIER_HAS_PAGE_ACCESS
    return TIER_OTHER


def sort_roles(
    roles: Iterable[R],
    page_rules_by_role: Mapping[str, Iterable[str]] | None = None,
    *,
    home_path: str = HOME_PATH,
) -> list[R]:
    def _key(role: R) -> tuple[int, str, str, str]:
        name = role.name or ""
        return (
            role_rank(role, page_rules_by_role, home_path=home_path),
            _collation_key(name),
            name,
            role.id,
        )

    return sorted(roles, key=_key)
