from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from pagegate.domain.models import AccessDecisionRead, AccessReason, EventEnvelope, Role, now_utc
from pagegate.domain.pages import NavSection, PageCatalog, normalize_path
from pagegate.domain.permissions import (
    allowed_paths,
    decide_access,
    filter_navigation,
    privileged_bypass,
)
from pagegate.domain.rule_index import PermissionRule, RuleIndex, RuleIndexHolder
from pagegate.infra.catalog import get_catalog
from pagegate.infra.events import PAGE_ACCESS_COMMITTED, event_bus
from pagegate.infra.rule_store import FetchError, RuleStore, get_rule_store
from pagegate.services.identity_service import IdentityService, RoleLookupError

logger = logging.getLogger(__name__)

ACCESS_INDEX_TTL_SECONDS = float(os.getenv("ACCESS_INDEX_TTL_SECONDS", "30"))


@dataclass(frozen=True)
class PrincipalAccess:
    user_id: str
    roles: tuple[Role, ...]
    rules: tuple[PermissionRule, ...]
    fetch_error: str | None = None


class AccessService:
    """Answers page access questions for principals from a cached rule snapshot.

    The snapshot is rebuilt after a commit event or once it is older than
    the TTL. When rules cannot be loaded every page is denied, except what
    the privileged bypass grants, and the load error is reported alongside
    the decision.
    """

    def __init__(
        self,
        *,
        store: RuleStore | None = None,
        identity: IdentityService | None = None,
        catalog: PageCatalog | None = None,
        ttl_seconds: float = ACCESS_INDEX_TTL_SECONDS,
    ) -> None:
        self._store = store or get_rule_store()
        self._identity = identity or IdentityService()
        self._catalog = catalog or get_catalog()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._holder = RuleIndexHolder()
        self._fresh_after_version = 0

    @property
    def catalog(self) -> PageCatalog:
        return self._catalog

    @property
    def index(self) -> RuleIndex:
        return self._holder.current

    def invalidate(self, _event: EventEnvelope | None = None) -> None:
        # Snapshots whose fetch started before this point are stale.
        self._fresh_after_version = self._holder.next_version()

    def refresh(self) -> RuleIndex:
        version = self._holder.next_version()
        try:
            rules = self._store.list_rules()
        except FetchError:
            logger.exception("failed to refresh page access rules")
            raise
        if not self._holder.swap(RuleIndex.from_rules(rules, version=version)):
            logger.debug("discarded superseded rule snapshot v%d", version)
        return self._holder.current

    def _current_index(self) -> RuleIndex:
        current = self._holder.current
        expired = now_utc() - current.loaded_at > self._ttl
        if current.version <= self._fresh_after_version or expired:
            return self.refresh()
        return current

    def load_principal(self, user_id: str) -> PrincipalAccess:
        try:
            roles = tuple(self._identity.list_roles_for_principal(user_id))
        except RoleLookupError as exc:
            logger.warning("role lookup failed for %s: %s", user_id, exc)
            return PrincipalAccess(user_id=user_id, roles=(), rules=(), fetch_error=str(exc))
        try:
            index = self._current_index()
        except FetchError as exc:
            return PrincipalAccess(user_id=user_id, roles=roles, rules=(), fetch_error=str(exc))
        rules = tuple(index.rules_for_roles(role.id for role in roles))
        return PrincipalAccess(user_id=user_id, roles=roles, rules=rules)

    def decide(self, principal: PrincipalAccess, path: str) -> AccessDecisionRead:
        requested = normalize_path(path) if isinstance(path, str) else str(path)
        bypass = privileged_bypass(principal.roles, self._catalog, path)
        decision = decide_access(principal.roles, principal.rules, self._catalog, path, bypass)
        failed_load = principal.fetch_error is not None and not decision.allowed
        if failed_load and decision.reason != AccessReason.UNREGISTERED:
            return AccessDecisionRead(
                path=requested,
                allowed=False,
                reason=AccessReason.FETCH_ERROR,
                fetch_error=principal.fetch_error,
            )
        return AccessDecisionRead(
            path=requested,
            allowed=decision.allowed,
            reason=decision.reason,
            fetch_error=principal.fetch_error,
        )

    def check(self, user_id: str, path: str) -> AccessDecisionRead:
        return self.decide(self.load_principal(user_id), path)

    def navigation(self, user_id: str) -> list[NavSection]:
        principal = self.load_principal(user_id)
        return filter_navigation(
            self._catalog,
            lambda page_key: self.decide(principal, page_key).allowed,
        )

    def accessible_paths(self, principal: PrincipalAccess) -> tuple[bool, list[str]]:
        has_wildcard, paths = allowed_paths(principal.roles, principal.rules, self._catalog)
        bypassed = [
            page_key
            for page_key in sorted(self._catalog.privileged_paths())
            if privileged_bypass(principal.roles, self._catalog, page_key)
        ]
        return has_wildcard, sorted({*paths, *bypassed})


@lru_cache(maxsize=1)
def get_access_service() -> AccessService:
    service = AccessService()
    event_bus.subscribe(PAGE_ACCESS_COMMITTED, service.invalidate)
    return service
