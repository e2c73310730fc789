from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path

import httpx
import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from pagegate.domain.models import PageAccessRule, Role
from pagegate.infra import db
from pagegate.infra.rule_store import FetchError, HttpRuleStore, RuleWriteError, SqlRuleStore


@pytest.fixture()
def sql_store(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> SqlRuleStore:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'rule_store_test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    return SqlRuleStore()


def _create_role(name: str) -> str:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        role = Role(name=name)
        session.add(role)
        session.commit()
        return role.id


def test_sql_create_is_find_or_create(sql_store: SqlRuleStore) -> None:
    role_id = _create_role("Warehouse")
    first = sql_store.create_rule(role_id, "/inventory/")
    second = sql_store.create_rule(role_id, "/inventory")
    assert first == second

    rules = sql_store.list_rules()
    assert [(rule.role_id, rule.page_key) for rule in rules] == [(role_id, "/inventory")]


def test_sql_list_skips_inactive_and_filters_roles(sql_store: SqlRuleStore) -> None:
    role_a = _create_role("A")
    role_b = _create_role("B")
    sql_store.create_rule(role_a, "*")
    inactive_id = sql_store.create_rule(role_b, "/dev")
    with Session(db.get_engine()) as session:
        row = session.get(PageAccessRule, inactive_id)
        assert row is not None
        row.is_active = False
        session.add(row)
        session.commit()

    assert [rule.page_key for rule in sql_store.list_rules()] == ["*"]
    assert sql_store.list_rules([role_b]) == []
    assert sql_store.list_rules([]) == []

    # Re-creating an inactive rule reactivates the same row.
    assert sql_store.create_rule(role_b, "/dev") == inactive_id
    assert [rule.page_key for rule in sql_store.list_rules([role_b])] == ["/dev"]


def test_sql_create_for_unknown_role_fails(sql_store: SqlRuleStore) -> None:
    with pytest.raises(RuleWriteError):
        sql_store.create_rule("missing-role", "/dev")


def test_sql_delete(sql_store: SqlRuleStore) -> None:
    role_id = _create_role("Ops")
    rule_id = sql_store.create_rule(role_id, "/team")
    sql_store.delete_rule(rule_id)
    sql_store.delete_rule(rule_id)
    with Session(db.get_engine()) as session:
        assert session.exec(select(PageAccessRule)).all() == []


def test_sql_list_failure_raises_fetch_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # No tables created.
    monkeypatch.setattr(db, "engine", create_engine(f"sqlite:///{tmp_path / 'empty.db'}"))
    with pytest.raises(FetchError):
        SqlRuleStore().list_rules()


class FakeRuleService:
    def __init__(self) -> None:
        self.rules: dict[str, dict[str, str]] = {
            "rule-1": {"id": "rule-1", "role_id": "R1", "page_key": "/inventory"},
        }
        self.requests: list[tuple[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if request.method == "GET" and request.url.path == "/api/rules":
            role_ids = request.url.params.get_list("role_id")
            page_key = request.url.params.get("page_key")
            items = [
                rule
                for rule in self.rules.values()
                if (not role_ids or rule["role_id"] in role_ids)
                and (page_key is None or rule["page_key"] == page_key)
            ]
            return httpx.Response(200, json={"items": items})
        if request.method == "POST" and request.url.path == "/api/rules":
            body = json.loads(request.content)
            rule_id = f"rule-{len(self.rules) + 1}"
            self.rules[rule_id] = {"id": rule_id, **body}
            return httpx.Response(201, json=self.rules[rule_id])
        if request.method == "DELETE" and request.url.path.startswith("/api/rules/"):
            rule_id = request.url.path.rsplit("/", 1)[-1]
            if self.rules.pop(rule_id, None) is None:
                return httpx.Response(404, json={"detail": "not found"})
            return httpx.Response(204)
        return httpx.Response(500)


@pytest.fixture()
def rule_service() -> FakeRuleService:
    return FakeRuleService()


@pytest.fixture()
def http_store(rule_service: FakeRuleService) -> Generator[HttpRuleStore, None, None]:
    store = HttpRuleStore("http://rules.test/api", transport=httpx.MockTransport(rule_service.handler))
    yield store
    store.close()


def test_http_list_and_filter(http_store: HttpRuleStore) -> None:
    rules = http_store.list_rules()
    assert [(rule.id, rule.role_id, rule.page_key) for rule in rules] == [("rule-1", "R1", "/inventory")]
    assert http_store.list_rules(["R2"]) == []
    assert http_store.list_rules([]) == []


def test_http_create_finds_existing_before_posting(http_store: HttpRuleStore, rule_service: FakeRuleService) -> None:
    assert http_store.create_rule("R1", "/inventory/") == "rule-1"
    assert ("POST", "/api/rules") not in rule_service.requests

    new_id = http_store.create_rule("R1", "*")
    assert new_id == "rule-2"
    assert rule_service.rules[new_id]["page_key"] == "*"


def test_http_delete_missing_is_noop(http_store: HttpRuleStore, rule_service: FakeRuleService) -> None:
    http_store.delete_rule("rule-1")
    http_store.delete_rule("rule-1")
    assert rule_service.rules == {}


def test_http_errors_map_to_store_errors() -> None:
    def _failing(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "down"})

    store = HttpRuleStore("http://rules.test/api", transport=httpx.MockTransport(_failing))
    with pytest.raises(FetchError):
        store.list_rules()
    with pytest.raises(RuleWriteError):
        store.create_rule("R1", "/dev")
    with pytest.raises(RuleWriteError):
        store.delete_rule("rule-1")
    store.close()


def test_http_malformed_items_are_skipped() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": "a", "role_id": "R1", "page_key": "/dev"}, {"id": "b"}, "junk"])

    store = HttpRuleStore("http://rules.test/api", transport=httpx.MockTransport(_handler))
    assert [rule.id for rule in store.list_rules()] == ["a"]
    store.close()
