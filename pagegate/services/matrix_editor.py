from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from threading import Lock

from pagegate.domain.models import Role
from pagegate.domain.pages import PAGE_WILDCARD, PageCatalog
from pagegate.domain.ranking import sort_roles
from pagegate.domain.rule_index import CommitResult, PendingChanges, RuleIndex, canonical_page_key
from pagegate.infra.catalog import get_catalog
from pagegate.infra.rule_store import FetchError, RuleStore, get_rule_store
from pagegate.services.fetch_gate import SEARCH_DEBOUNCE_SECONDS, Debouncer, RequestSequencer
from pagegate.services.identity_service import IdentityService, RoleLookupError
from pagegate.services.reconciler import MatrixReconciler

logger = logging.getLogger(__name__)

RolesSource = Callable[[str | None], Sequence[Role]]


class MatrixEditor:
    """Editing session over the role x page matrix.

    Loads are numbered; a load that finishes after a newer one was issued
    is dropped. Every applied load replaces the rule snapshot and clears
    pending edits. ``save`` always reloads, whether or not writes failed.
    """

    def __init__(
        self,
        *,
        store: RuleStore | None = None,
        roles_source: RolesSource | None = None,
        catalog: PageCatalog | None = None,
        reconciler: MatrixReconciler | None = None,
        debounce_seconds: float = SEARCH_DEBOUNCE_SECONDS,
    ) -> None:
        self._store = store or get_rule_store()
        self._roles_source = roles_source or IdentityService().search_roles
        self._catalog = catalog or get_catalog()
        self._reconciler = reconciler or MatrixReconciler(self._store)
        self._sequencer = RequestSequencer()
        self._debouncer = Debouncer(debounce_seconds)
        self._lock = Lock()
        self._index = RuleIndex()
        self._roles: list[Role] = []
        self._pending = PendingChanges()
        self._search: str | None = None
        self.last_error: str | None = None

    @property
    def index(self) -> RuleIndex:
        return self._index

    @property
    def roles(self) -> list[Role]:
        return list(self._roles)

    @property
    def pending(self) -> PendingChanges:
        return self._pending

    @property
    def search_term(self) -> str | None:
        return self._search

    def load(self, term: str | None = None) -> bool:
        seq = self._sequencer.issue()
        try:
            roles = list(self._roles_source(term))
            rules = self._store.list_rules()
        except (FetchError, RoleLookupError) as exc:
            logger.warning("matrix load #%d failed: %s", seq, exc)
            with self._lock:
                if self._sequencer.is_latest(seq):
                    self.last_error = str(exc)
            return False

        with self._lock:
            if not self._sequencer.is_latest(seq):
                logger.debug("discarded stale matrix load #%d", seq)
                return False
            index = RuleIndex.from_rules(rules, version=seq)
            self._roles = sort_roles(roles, index.page_rules_by_role(), home_path=self._catalog.home_path)
            self._index = index
            self._pending = PendingChanges()
            self._search = term
            self.last_error = None
        return True

    def search(self, term: str | None) -> None:
        self._debouncer.call(self.load, term)

    def flush(self, timeout: float | None = None) -> None:
        self._debouncer.flush(timeout)

    def close(self) -> None:
        self._debouncer.cancel()

    def status(self, role_id: str, page_key: str) -> bool:
        with self._lock:
            if canonical_page_key(page_key) != PAGE_WILDCARD and self._pending.status(
                role_id, PAGE_WILDCARD, self._index
            ):
                return True
            return self._pending.status(role_id, page_key, self._index)

    def is_overridden(self, role_id: str, page_key: str) -> bool:
        return self._pending.get(role_id, page_key) is not None

    def toggle(self, role_id: str, page_key: str) -> bool:
        self._catalog.validate_page_key(page_key)
        with self._lock:
            self._pending = self._pending.toggle(role_id, page_key, self._index)
            return self._pending.status(role_id, page_key, self._index)

    def discard(self) -> None:
        with self._lock:
            self._pending = PendingChanges()

    def save(self) -> CommitResult:
        with self._lock:
            pending, index = self._pending, self._index
        result: CommitResult | None = None
        try:
            result = self._reconciler.commit(pending, index)
            return result
        finally:
            if not self.load(self._search) and result is not None:
                self._drop_applied(pending, result)

    def _drop_applied(self, committed: PendingChanges, result: CommitResult) -> None:
        # Reload failed; applied cells are no longer pending even though the snapshot is stale.
        failed = {(error.role_id, canonical_page_key(error.page_key)) for error in result.errors}
        with self._lock:
            applied = [
                cell
                for cell, desired in committed.items()
                if cell not in failed and self._pending.get(*cell) == desired
            ]
            self._pending = self._pending.without(applied)
