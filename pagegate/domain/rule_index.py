from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from threading import Lock
from types import MappingProxyType

from pagegate.domain.models import now_utc
from pagegate.domain.pages import PAGE_WILDCARD, parse_page_key

logger = logging.getLogger(__name__)

CellKey = tuple[str, str]


def canonical_page_key(raw: str) -> str:
    return str(parse_page_key(raw))


@dataclass(frozen=True)
class PermissionRule:
    id: str
    role_id: str
    page_key: str


class RuleOp(StrEnum):
    CREATE = "create"
    DELETE = "delete"


@dataclass(frozen=True)
class RuleOperation:
    op: RuleOp
    role_id: str
    page_key: str
    rule_id: str | None = None


@dataclass(frozen=True)
class OpError:
    role_id: str
    page_key: str
    op: str
    message: str


@dataclass(frozen=True)
class CommitResult:
    applied: int
    errors: tuple[OpError, ...] = ()
    operations: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


class RuleIndex:
    """Read-only snapshot of persisted rules: role_id -> page_key -> rule_id.

    Instances are never mutated after construction; a refresh builds a new
    snapshot with a higher ``version`` and swaps it in through
    ``RuleIndexHolder``.
    """

    __slots__ = ("_by_role", "_rules", "version", "loaded_at")

    def __init__(
        self,
        by_role: Mapping[str, Mapping[str, str]] | None = None,
        *,
        rules: Iterable[PermissionRule] = (),
        version: int = 0,
        loaded_at: datetime | None = None,
    ) -> None:
        frozen = {role_id: MappingProxyType(dict(pages)) for role_id, pages in (by_role or {}).items()}
        self._by_role: Mapping[str, Mapping[str, str]] = MappingProxyType(frozen)
        self._rules: tuple[PermissionRule, ...] = tuple(rules)
        self.version = version
        self.loaded_at = loaded_at or now_utc()

    @classmethod
    def from_rules(cls, rules: Iterable[PermissionRule], *, version: int = 0) -> RuleIndex:
        by_role: dict[str, dict[str, str]] = {}
        kept: list[PermissionRule] = []
        for rule in rules:
            if not rule.role_id or not isinstance(rule.page_key, str):
                continue
            page_key = canonical_page_key(rule.page_key)
            pages = by_role.setdefault(rule.role_id, {})
            if page_key in pages:
                logger.warning(
                    "duplicate rule %s for role %s page %s (keeping %s)",
                    rule.id,
                    rule.role_id,
                    page_key,
                    pages[page_key],
                )
                continue
            pages[page_key] = rule.id
            kept.append(PermissionRule(id=rule.id, role_id=rule.role_id, page_key=page_key))
        return cls(by_role, rules=kept, version=version)

    def __contains__(self, cell: object) -> bool:
        if not isinstance(cell, tuple) or len(cell) != 2:
            return False
        role_id, page_key = cell
        return self.rule_id(role_id, page_key) is not None

    def __len__(self) -> int:
        return len(self._rules)

    def rule_id(self, role_id: str, page_key: str) -> str | None:
        pages = self._by_role.get(role_id)
        if pages is None:
            return None
        return pages.get(canonical_page_key(page_key))

    def has_wildcard(self, role_id: str) -> bool:
        return self.rule_id(role_id, PAGE_WILDCARD) is not None

    def page_keys(self, role_id: str) -> frozenset[str]:
        return frozenset(self._by_role.get(role_id, {}))

    def role_ids(self) -> frozenset[str]:
        return frozenset(self._by_role)

    def page_rules_by_role(self) -> dict[str, frozenset[str]]:
        return {role_id: frozenset(pages) for role_id, pages in self._by_role.items()}

    def rules(self) -> tuple[PermissionRule, ...]:
        return self._rules

    def rules_for_roles(self, role_ids: Iterable[str]) -> list[PermissionRule]:
        wanted = set(role_ids)
        return [rule for rule in self._rules if rule.role_id in wanted]


class RuleIndexHolder:
    def __init__(self, initial: RuleIndex | None = None) -> None:
        self._current = initial or RuleIndex()
        self._issued = self._current.version
        self._lock = Lock()

    @property
    def current(self) -> RuleIndex:
        return self._current

    def next_version(self) -> int:
        with self._lock:
            self._issued += 1
            return self._issued

    def swap(self, index: RuleIndex) -> bool:
        # Older snapshots never replace newer ones.
        with self._lock:
            if index.version <= self._current.version:
                return False
            self._current = index
            return True


@dataclass(frozen=True)
class PendingChanges:
    """Uncommitted desired cell states layered over a ``RuleIndex``.

    Every entry is a real delta: setting a cell back to its persisted value
    removes it.
    """

    _entries: Mapping[CellKey, bool] = field(default_factory=lambda: MappingProxyType({}))

    @staticmethod
    def _key(role_id: str, page_key: str) -> CellKey:
        return role_id, canonical_page_key(page_key)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CellKey]:
        return iter(self._entries)

    def __contains__(self, cell: object) -> bool:
        return cell in self._entries

    def items(self) -> list[tuple[CellKey, bool]]:
        return list(self._entries.items())

    def get(self, role_id: str, page_key: str) -> bool | None:
        return self._entries.get(self._key(role_id, page_key))

    def status(self, role_id: str, page_key: str, index: RuleIndex) -> bool:
        pending = self.get(role_id, page_key)
        if pending is not None:
            return pending
        return index.rule_id(role_id, page_key) is not None

    def set(self, role_id: str, page_key: str, desired: bool, index: RuleIndex) -> PendingChanges:
        key = self._key(role_id, page_key)
        persisted = index.rule_id(*key) is not None
        entries = dict(self._entries)
        if desired == persisted:
            entries.pop(key, None)
        else:
            entries[key] = desired
        return PendingChanges(MappingProxyType(entries))

    def toggle(self, role_id: str, page_key: str, index: RuleIndex) -> PendingChanges:
        return self.set(role_id, page_key, not self.status(role_id, page_key, index), index)

    def prune(self, index: RuleIndex) -> PendingChanges:
        entries = {
            key: desired
            for key, desired in self._entries.items()
            if desired != (index.rule_id(*key) is not None)
        }
        return PendingChanges(MappingProxyType(entries))

    def without(self, cells: Iterable[CellKey]) -> PendingChanges:
        dropped = set(cells)
        entries = {key: desired for key, desired in self._entries.items() if key not in dropped}
        return PendingChanges(MappingProxyType(entries))

    def as_dict(self) -> dict[CellKey, bool]:
        return dict(self._entries)

    @classmethod
    def from_items(cls, items: Iterable[tuple[str, str, bool]], index: RuleIndex) -> PendingChanges:
        pending = cls()
        for role_id, page_key, desired in items:
            pending = pending.set(role_id, page_key, desired, index)
        return pending
