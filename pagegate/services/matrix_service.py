from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError

from pagegate.domain.models import (
    EventEnvelope,
    MatrixCommitRead,
    MatrixPageRead,
    MatrixRead,
    MatrixRoleRead,
    MatrixSectionRead,
    OpErrorRead,
    PendingChangeItem,
    PermissionRuleRead,
)
from pagegate.domain.pages import PAGE_WILDCARD, PageCatalog, PageKeyValidationError
from pagegate.domain.ranking import role_rank, sort_roles
from pagegate.domain.rule_index import OpError, PendingChanges, RuleIndex
from pagegate.infra.catalog import get_catalog
from pagegate.infra.cell_mutex import CellMutex, get_cell_mutex, page_rule_cell
from pagegate.infra.events import PAGE_ACCESS_COMMITTED, event_bus
from pagegate.infra.rule_store import FetchError, RuleStore, get_rule_store
from pagegate.services.identity_service import IdentityService
from pagegate.services.reconciler import MatrixReconciler

logger = logging.getLogger(__name__)

CELL_BUSY_OP = "lock"


class MatrixError(Exception):
    pass


class ValidationError(MatrixError):
    def __init__(self, invalid_keys: list[str]) -> None:
        super().__init__(f"page keys not registered in catalog: {', '.join(invalid_keys)}")
        self.invalid_keys = invalid_keys


class MatrixService:
    def __init__(
        self,
        *,
        store: RuleStore | None = None,
        identity: IdentityService | None = None,
        catalog: PageCatalog | None = None,
        cell_mutex: CellMutex | None = None,
        reconciler: MatrixReconciler | None = None,
    ) -> None:
        self._store = store or get_rule_store()
        self._identity = identity or IdentityService()
        self._catalog = catalog or get_catalog()
        self._cell_mutex = cell_mutex or get_cell_mutex()
        self._reconciler = reconciler or MatrixReconciler(self._store)
        self._version = 0

    def load_index(self) -> RuleIndex:
        self._version += 1
        return RuleIndex.from_rules(self._store.list_rules(), version=self._version)

    def load_matrix(self, search: str | None = None) -> MatrixRead:
        roles = self._identity.search_roles(search)
        index = self.load_index()
        page_rules = index.page_rules_by_role()
        ordered = sort_roles(roles, page_rules, home_path=self._catalog.home_path)
        return MatrixRead(
            version=index.version,
            sections=[
                MatrixSectionRead(
                    label=label,
                    pages=[MatrixPageRead(page_key=page.page_key, label=page.label) for page in pages],
                )
                for label, pages in self._catalog.pages_by_section()
            ],
            roles=[
                MatrixRoleRead(
                    id=role.id,
                    name=role.name,
                    rank=role_rank(role, page_rules, home_path=self._catalog.home_path),
                    page_keys=sorted(index.page_keys(role.id)),
                    has_wildcard=index.has_wildcard(role.id),
                )
                for role in ordered
            ],
            rules=[
                PermissionRuleRead(id=rule.id, role_id=rule.role_id, page_key=rule.page_key)
                for rule in index.rules()
            ],
        )

    def _validate(self, changes: Iterable[PendingChangeItem]) -> None:
        invalid: list[str] = []
        for change in changes:
            try:
                self._catalog.validate_page_key(change.page_key)
            except PageKeyValidationError:
                invalid.append(change.page_key)
        if invalid:
            logger.warning("rejected matrix commit with unknown page keys: %s", invalid)
            raise ValidationError(sorted(set(invalid)))

    def _lock_cells(self, pending: PendingChanges) -> tuple[PendingChanges, list[str], list[OpError]]:
        locked: list[str] = []
        busy: list[OpError] = []
        for role_id, page_key in pending:
            key = page_rule_cell(role_id, page_key)
            if self._cell_mutex.try_acquire(key):
                locked.append(key)
                continue
            busy.append(
                OpError(
                    role_id=role_id,
                    page_key=page_key,
                    op=CELL_BUSY_OP,
                    message="cell is being changed by another request",
                )
            )
        remaining = pending.without((error.role_id, error.page_key) for error in busy)
        return remaining, locked, busy

    def commit(self, changes: list[PendingChangeItem], *, actor_id: str | None = None) -> MatrixCommitRead:
        self._validate(changes)
        index = self.load_index()
        pending = PendingChanges.from_items(
            ((change.role_id, change.page_key, change.allowed) for change in changes),
            index,
        )
        pending, locked, busy = self._lock_cells(pending)
        try:
            result = self._reconciler.commit(pending, index)
        finally:
            for key in locked:
                self._cell_mutex.release(key)

        errors = [*busy, *result.errors]
        event = EventEnvelope(
            event_type=PAGE_ACCESS_COMMITTED,
            actor_id=actor_id,
            payload={
                "applied": result.applied,
                "operations": result.operations + len(busy),
                "failed": len(errors),
                "wildcard_cells": sum(1 for (_, page_key) in pending if page_key == PAGE_WILDCARD),
            },
        )
        try:
            event_bus.publish(event)
        except SQLAlchemyError:
            # The writes already happened; subscribers still drop their snapshots.
            logger.exception("recording %s event failed", PAGE_ACCESS_COMMITTED)
            event_bus.notify(event)

        version: int | None
        try:
            version = self.load_index().version
        except FetchError:
            logger.exception("rule reload after commit failed")
            version = None

        return MatrixCommitRead(
            applied=result.applied,
            operations=result.operations + len(busy),
            errors=[
                OpErrorRead(role_id=error.role_id, page_key=error.page_key, op=error.op, message=error.message)
                for error in errors
            ],
            version=version,
        )
