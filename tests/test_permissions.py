from __future__ import annotations

import logging
from dataclasses import dataclass

import pytest

from pagegate.domain.models import AccessReason
from pagegate.domain.pages import PageCatalog
from pagegate.domain.permissions import (
    AccessDecision,
    allowed_paths,
    can_access,
    can_access_indexed,
    decide_access,
    filter_navigation,
    privileged_bypass,
)
from pagegate.domain.rule_index import PermissionRule, RuleIndex
from pagegate.infra.catalog import default_catalog


@dataclass(frozen=True)
class StubRole:
    id: str
    name: str = ""
    is_privileged: bool = False


def _rule(role_id: str, page_key: str, rule_id: str | None = None) -> PermissionRule:
    return PermissionRule(id=rule_id or f"{role_id}:{page_key}", role_id=role_id, page_key=page_key)


@pytest.fixture()
def catalog() -> PageCatalog:
    return default_catalog()


def test_wildcard_role_scenario(catalog: PageCatalog) -> None:
    roles = [StubRole("R1")]
    rules = [_rule("R1", "*")]
    assert can_access(roles, rules, catalog, "/inventory", False)
    assert not can_access(roles, rules, catalog, "/not-registered", False)


@pytest.mark.parametrize("path", sorted(default_catalog().valid_paths()))
def test_wildcard_grants_every_catalog_path(catalog: PageCatalog, path: str) -> None:
    decision = decide_access([StubRole("R1")], [_rule("R1", "*")], catalog, path, False)
    assert decision.allowed
    assert decision.reason == AccessReason.WILDCARD


@pytest.mark.parametrize("path", ["/not-registered", "/inventory/extra", "inventoryx", "/super-admin"])
def test_unknown_paths_denied_even_with_wildcard_and_bypass(catalog: PageCatalog, path: str) -> None:
    roles = [StubRole("R1", is_privileged=True)]
    rules = [_rule("R1", "*")]
    assert not can_access(roles, rules, catalog, path, True)
    assert decide_access(roles, rules, catalog, path, True).reason == AccessReason.UNREGISTERED


def test_union_over_roles(catalog: PageCatalog) -> None:
    rules = [_rule("R1", "/inventory"), _rule("R2", "/reports")]
    both = [StubRole("R1"), StubRole("R2")]
    for path in catalog.valid_paths():
        expected = can_access([StubRole("R1")], rules, catalog, path) or can_access(
            [StubRole("R2")], rules, catalog, path
        )
        assert can_access(both, rules, catalog, path) == expected
    assert can_access(both, rules, catalog, "/inventory")
    assert can_access(both, rules, catalog, "/reports")
    assert not can_access(both, rules, catalog, "/dev")


def test_rules_of_other_roles_do_not_apply(catalog: PageCatalog) -> None:
    rules = [_rule("R2", "*")]
    decision = decide_access([StubRole("R1")], rules, catalog, "/inventory", False)
    assert decision.reason == AccessReason.NO_RULE


def test_trailing_slash_on_rule_and_request(catalog: PageCatalog) -> None:
    rules = [_rule("R1", "/inventory/")]
    assert can_access([StubRole("R1")], rules, catalog, "inventory/")
    assert decide_access([StubRole("R1")], rules, catalog, "/inventory", False).reason == AccessReason.RULE


def test_no_roles_denied(catalog: PageCatalog) -> None:
    decision = decide_access([], [_rule("R1", "*")], catalog, "/inventory", False)
    assert not decision.allowed
    assert decision.reason == AccessReason.NO_ROLES


def test_bypass_evaluated_before_rules(catalog: PageCatalog) -> None:
    decision = decide_access([], [], catalog, "/super-admin/page-access", True)
    assert decision.allowed
    assert decision.reason == AccessReason.PRIVILEGED_BYPASS


def test_invalid_rule_key_ignored_and_logged(catalog: PageCatalog, caplog: pytest.LogCaptureFixture) -> None:
    rules = [_rule("R1", "/legacy-page"), _rule("R1", "  ")]
    with caplog.at_level(logging.WARNING, logger="pagegate.domain.permissions"):
        assert not can_access([StubRole("R1")], rules, catalog, "/inventory")
    assert "/legacy-page" in caplog.text


def test_malformed_input_returns_false(catalog: PageCatalog) -> None:
    assert not can_access([StubRole("R1")], [_rule("R1", "*")], catalog, None, False)  # type: ignore[arg-type]
    assert not can_access([StubRole("R1")], [_rule("R1", "*")], catalog, 42, False)  # type: ignore[arg-type]
    assert not can_access([StubRole("R1")], None, catalog, "/inventory", False)  # type: ignore[arg-type]
    assert not can_access(None, [_rule("R1", "*")], catalog, "/inventory", False)  # type: ignore[arg-type]

    unhashable = decide_access(
        [StubRole(["R1"])],  # type: ignore[arg-type]
        [_rule("R1", "*")],
        catalog,
        "/inventory",
        False,
    )
    assert unhashable == AccessDecision(False, AccessReason.MALFORMED)

    rule_with_list_role = PermissionRule(id="x", role_id=["R1"], page_key="*")  # type: ignore[arg-type]
    decision = decide_access([StubRole("R1")], [rule_with_list_role], catalog, "/inventory", False)
    assert not decision.allowed


def test_privileged_bypass_needs_capability_and_privileged_page(catalog: PageCatalog) -> None:
    admin = StubRole("A", name="Ops", is_privileged=True)
    plain = StubRole("B", name="Super Admin lookalike")
    assert privileged_bypass([admin], catalog, "/super-admin/user-roles")
    assert not privileged_bypass([admin], catalog, "/inventory")
    assert not privileged_bypass([plain], catalog, "/super-admin/user-roles")


def test_can_access_indexed_matches_list_variant(catalog: PageCatalog) -> None:
    rules = [_rule("R1", "/inventory"), _rule("R2", "*"), _rule("R3", "/reports/")]
    index = RuleIndex.from_rules(rules, version=1)
    for role_ids in (["R1"], ["R2"], ["R3"], ["R1", "R3"], []):
        roles = [StubRole(role_id) for role_id in role_ids]
        for path in [*sorted(catalog.valid_paths()), "/missing"]:
            assert can_access_indexed(role_ids, index, catalog, path) == can_access(roles, rules, catalog, path)


def test_allowed_paths(catalog: PageCatalog) -> None:
    has_wildcard, paths = allowed_paths([StubRole("R1")], [_rule("R1", "/reports/"), _rule("R1", "/x")], catalog)
    assert not has_wildcard
    assert paths == ["/reports"]

    has_wildcard, paths = allowed_paths([StubRole("R1")], [_rule("R1", "*")], catalog)
    assert has_wildcard
    assert paths == sorted(catalog.valid_paths())


def test_filter_navigation_drops_empty_sections(catalog: PageCatalog) -> None:
    visible = filter_navigation(catalog, lambda path: path in {"/", "/reports"})
    assert [section.id for section in visible] == ["home", "analytics"]
    assert [item.page_key for item in visible[1].items] == ["/reports"]


def test_filter_navigation_exclusions(catalog: PageCatalog) -> None:
    visible = filter_navigation(
        catalog,
        lambda _path: True,
        exclude_section_ids=["dev"],
        exclude_paths=["/team/"],
    )
    section_ids = [section.id for section in visible]
    assert "dev" not in section_ids
    operations = next(section for section in visible if section.id == "operations")
    assert [item.page_key for item in operations.items] == ["/inventory", "/projects"]
