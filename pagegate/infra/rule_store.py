from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from functools import lru_cache
from typing import Any, Protocol

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from pagegate.domain.models import PageAccessRule, Role
from pagegate.domain.rule_index import PermissionRule, canonical_page_key
from pagegate.infra.db import get_engine

logger = logging.getLogger(__name__)

RULE_STORE_BACKEND = os.getenv("RULE_STORE_BACKEND", "sql")
RULE_STORE_URL = os.getenv("RULE_STORE_URL", "http://rule-store:8080/api")
RULE_STORE_TIMEOUT_SECONDS = float(os.getenv("RULE_STORE_TIMEOUT_SECONDS", "10"))


class RuleStoreError(Exception):
    pass


class FetchError(RuleStoreError):
    pass


class RuleWriteError(RuleStoreError):
    pass


class RuleStore(Protocol):
    def list_rules(self, role_ids: Iterable[str] | None = None) -> list[PermissionRule]: ...

    def create_rule(self, role_id: str, page_key: str) -> str: ...

    def delete_rule(self, rule_id: str) -> None: ...


class SqlRuleStore:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_rule(self, session: Session, role_id: str, page_key: str) -> PageAccessRule | None:
        return session.exec(
            select(PageAccessRule)
            .where(PageAccessRule.role_id == role_id)
            .where(PageAccessRule.page_key == page_key)
        ).first()

    def list_rules(self, role_ids: Iterable[str] | None = None) -> list[PermissionRule]:
        statement = select(PageAccessRule).where(col(PageAccessRule.is_active).is_(True))
        if role_ids is not None:
            wanted = sorted(set(role_ids))
            if not wanted:
                return []
            statement = statement.where(col(PageAccessRule.role_id).in_(wanted))
        try:
            with self._session() as session:
                rows = list(session.exec(statement.order_by(PageAccessRule.created_at)).all())
        except SQLAlchemyError as exc:
            raise FetchError(f"failed to list page access rules: {exc}") from exc
        return [PermissionRule(id=row.id, role_id=row.role_id, page_key=row.page_key) for row in rows]

    def create_rule(self, role_id: str, page_key: str) -> str:
        key = canonical_page_key(page_key)
        try:
            with self._session() as session:
                if session.get(Role, role_id) is None:
                    raise RuleWriteError(f"role not found: {role_id}")
                existing = self._find_rule(session, role_id, key)
                if existing is not None:
                    if not existing.is_active:
                        existing.is_active = True
                        session.add(existing)
                        session.commit()
                    return existing.id
                rule = PageAccessRule(role_id=role_id, page_key=key)
                session.add(rule)
                try:
                    session.commit()
                except IntegrityError:
                    # Lost a race against another writer for the same pair.
                    session.rollback()
                    existing = self._find_rule(session, role_id, key)
                    if existing is None:
                        raise
                    return existing.id
                return rule.id
        except SQLAlchemyError as exc:
            raise RuleWriteError(f"failed to create rule for {role_id} {key}: {exc}") from exc

    def delete_rule(self, rule_id: str) -> None:
        try:
            with self._session() as session:
                rule = session.get(PageAccessRule, rule_id)
                if rule is None:
                    logger.info("rule %s already absent", rule_id)
                    return
                session.delete(rule)
                session.commit()
        except SQLAlchemyError as exc:
            raise RuleWriteError(f"failed to delete rule {rule_id}: {exc}") from exc


class HttpRuleStore:
    """Rule store reached over a REST collection at ``{base_url}/rules``."""

    def __init__(
        self,
        base_url: str = RULE_STORE_URL,
        *,
        timeout_seconds: float = RULE_STORE_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            headers=headers,
        )

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _parse_rules(payload: Any) -> list[PermissionRule]:
        items = payload.get("items", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise FetchError("rule store returned an unexpected payload")
        rules: list[PermissionRule] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            rule_id = item.get("id")
            role_id = item.get("role_id")
            page_key = item.get("page_key")
            if not rule_id or not role_id or not isinstance(page_key, str):
                logger.warning("skipping malformed rule payload: %r", item)
                continue
            rules.append(PermissionRule(id=str(rule_id), role_id=str(role_id), page_key=page_key))
        return rules

    def _get_rules(self, params: list[tuple[str, str]]) -> list[PermissionRule]:
        response = self._client.get("/rules", params=params)
        response.raise_for_status()
        return self._parse_rules(response.json())

    def list_rules(self, role_ids: Iterable[str] | None = None) -> list[PermissionRule]:
        params: list[tuple[str, str]] = []
        if role_ids is not None:
            wanted = sorted(set(role_ids))
            if not wanted:
                return []
            params = [("role_id", role_id) for role_id in wanted]
        try:
            return self._get_rules(params)
        except (httpx.HTTPError, ValueError) as exc:
            raise FetchError(f"failed to list page access rules: {exc}") from exc

    def create_rule(self, role_id: str, page_key: str) -> str:
        key = canonical_page_key(page_key)
        try:
            existing = self._get_rules([("role_id", role_id), ("page_key", key)])
            for rule in existing:
                if rule.role_id == role_id and canonical_page_key(rule.page_key) == key:
                    return rule.id
            response = self._client.post("/rules", json={"role_id": role_id, "page_key": key})
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError, FetchError) as exc:
            raise RuleWriteError(f"failed to create rule for {role_id} {key}: {exc}") from exc
        rule_id = body.get("id") if isinstance(body, dict) else None
        if not rule_id:
            raise RuleWriteError("rule store did not return a rule id")
        return str(rule_id)

    def delete_rule(self, rule_id: str) -> None:
        try:
            response = self._client.delete(f"/rules/{rule_id}")
            if response.status_code == httpx.codes.NOT_FOUND:
                logger.info("rule %s already absent", rule_id)
                return
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuleWriteError(f"failed to delete rule {rule_id}: {exc}") from exc


@lru_cache(maxsize=1)
def get_rule_store() -> RuleStore:
    if RULE_STORE_BACKEND == "http":
        return HttpRuleStore()
    return SqlRuleStore()
