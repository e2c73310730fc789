from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

from pagegate.domain.models import AccessReason
from pagegate.domain.pages import (
    NavSection,
    PageCatalog,
    PagePath,
    Wildcard,
    normalize_path,
    parse_page_key,
)
from pagegate.domain.rule_index import RuleIndex

logger = logging.getLogger(__name__)


class RoleLike(Protocol):
    id: str


class PrivilegedRoleLike(Protocol):
    id: str
    is_privileged: bool


class RuleLike(Protocol):
    role_id: str
    page_key: str


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason


def _valid_requested_path(catalog: PageCatalog, requested_path: object) -> str | None:
    if not isinstance(requested_path, str):
        return None
    path = normalize_path(requested_path)
    if path not in catalog.valid_paths():
        return None
    return path


def _match_rules(
    rules: Iterable[RuleLike],
    role_ids: set[str],
    catalog: PageCatalog,
    path: str,
) -> AccessReason:
    matched = False
    for rule in rules:
        if getattr(rule, "role_id", None) not in role_ids:
            continue
        raw_key = getattr(rule, "page_key", None)
        if not isinstance(raw_key, str) or not raw_key.strip():
            logger.warning("ignoring rule with empty page key for role %s", rule.role_id)
            continue
        ref = parse_page_key(raw_key)
        if isinstance(ref, Wildcard):
            return AccessReason.WILDCARD
        if ref.path not in catalog.valid_paths():
            logger.warning(
                "ignoring rule for role %s: page key %r is not in the catalog",
                rule.role_id,
                raw_key,
            )
            continue
        if ref.path == path:
            matched = True
    return AccessReason.RULE if matched else AccessReason.NO_RULE


def decide_access(
    roles: Iterable[RoleLike],
    rules: Iterable[RuleLike],
    catalog: PageCatalog,
    requested_path: str,
    is_privileged_bypass: bool,
) -> AccessDecision:
    path = _valid_requested_path(catalog, requested_path)
    if path is None:
        return AccessDecision(False, AccessReason.UNREGISTERED)
    # Evaluated before rules: the rule table may be empty, failing or not loaded yet.
    if is_privileged_bypass:
        return AccessDecision(True, AccessReason.PRIVILEGED_BYPASS)

    try:
        role_ids = {role.id for role in roles if getattr(role, "id", None)}
        if not role_ids:
            return AccessDecision(False, AccessReason.NO_ROLES)
        reason = _match_rules(rules, role_ids, catalog, path)
    except TypeError as exc:
        logger.warning("denying %s: malformed roles or rules (%s)", path, exc)
        return AccessDecision(False, AccessReason.MALFORMED)
    return AccessDecision(reason in (AccessReason.WILDCARD, AccessReason.RULE), reason)


def can_access(
    roles: Iterable[RoleLike],
    rules: Iterable[RuleLike],
    catalog: PageCatalog,
    requested_path: str,
    is_privileged_bypass: bool = False,
) -> bool:
    return decide_access(roles, rules, catalog, requested_path, is_privileged_bypass).allowed


@dataclass(frozen=True)
class _RoleId:
    id: str


def can_access_indexed(
    role_ids: Iterable[str],
    index: RuleIndex,
    catalog: PageCatalog,
    requested_path: str,
    is_privileged_bypass: bool = False,
) -> bool:
    wanted = [role_id for role_id in role_ids if role_id]
    roles = [_RoleId(role_id) for role_id in wanted]
    return can_access(roles, index.rules_for_roles(wanted), catalog, requested_path, is_privileged_bypass)


def privileged_bypass(
    roles: Iterable[PrivilegedRoleLike],
    catalog: PageCatalog,
    requested_path: str,
) -> bool:
    if not isinstance(requested_path, str):
        return False
    if not catalog.is_privileged_path(requested_path):
        return False
    return any(getattr(role, "is_privileged", False) for role in roles)


def allowed_paths(
    roles: Iterable[RoleLike],
    rules: Iterable[RuleLike],
    catalog: PageCatalog,
) -> tuple[bool, list[str]]:
    role_ids = {role.id for role in roles}
    has_wildcard = False
    paths: set[str] = set()
    for rule in rules:
        if rule.role_id not in role_ids or not isinstance(rule.page_key, str):
            continue
        ref = parse_page_key(rule.page_key)
        if isinstance(ref, Wildcard):
            has_wildcard = True
        elif isinstance(ref, PagePath) and ref.path in catalog.valid_paths():
            paths.add(ref.path)
    if has_wildcard:
        paths.update(catalog.valid_paths())
    return has_wildcard, sorted(paths)


def filter_navigation(
    catalog: PageCatalog,
    can_access_path: Callable[[str], bool],
    *,
    exclude_section_ids: Iterable[str] = (),
    exclude_paths: Iterable[str] = (),
) -> list[NavSection]:
    excluded_sections = set(exclude_section_ids)
    excluded_paths = {normalize_path(path) for path in exclude_paths}
    visible: list[NavSection] = []
    for section in catalog.sections:
        if section.id in excluded_sections:
            continue
        items = tuple(
            item
            for item in section.items
            if item.page_key not in excluded_paths and can_access_path(item.page_key)
        )
        if items:
            visible.append(
                NavSection(id=section.id, label=section.label, items=items, privileged=section.privileged)
            )
    return visible
