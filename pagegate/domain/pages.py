from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import cached_property
from typing import Any

PAGE_WILDCARD = "*"
HOME_PATH = "/"
FORBIDDEN_PATH = "/forbidden"
DEFAULT_SECTION_LABEL = "Main"


class PageKeyValidationError(ValueError):
    pass


def normalize_path(raw: str) -> str:
    value = raw.strip()
    while len(value) > 1 and value.endswith("/"):
        value = value[:-1].rstrip()
    if not value or value == "/":
        return HOME_PATH
    if not value.startswith("/"):
        value = f"/{value}"
    return value


@dataclass(frozen=True)
class Wildcard:
    def __str__(self) -> str:
        return PAGE_WILDCARD


@dataclass(frozen=True)
class PagePath:
    path: str

    def __str__(self) -> str:
        return self.path


PageRef = Wildcard | PagePath

WILDCARD = Wildcard()


def parse_page_key(raw: str) -> PageRef:
    # "*" is compared literally and never goes through normalize_path.
    if raw.strip() == PAGE_WILDCARD:
        return WILDCARD
    return PagePath(normalize_path(raw))


@dataclass(frozen=True)
class NavItem:
    path: str
    label: str
    id: str | None = None

    @property
    def page_key(self) -> str:
        return normalize_path(self.path)


@dataclass(frozen=True)
class NavSection:
    id: str
    label: str
    items: tuple[NavItem, ...] = ()
    privileged: bool = False

    @property
    def display_label(self) -> str:
        return self.label or DEFAULT_SECTION_LABEL


@dataclass(frozen=True)
class CatalogPage:
    page_key: str
    label: str
    section: str


@dataclass(frozen=True)
class PageCatalog:
    """Authoritative set of navigable pages, grouped by navigation section.

    ``valid_paths`` is the flattened membership set used by access checks;
    section grouping is kept only for presentation and for marking the
    privileged area.
    """

    sections: tuple[NavSection, ...]
    always_allowed: tuple[str, ...] = (FORBIDDEN_PATH,)
    home_path: str = HOME_PATH

    @cached_property
    def _valid_paths(self) -> frozenset[str]:
        paths = {item.page_key for section in self.sections for item in section.items}
        paths.update(normalize_path(item) for item in self.always_allowed)
        return frozenset(paths)

    @cached_property
    def _privileged_paths(self) -> frozenset[str]:
        return frozenset(
            item.page_key for section in self.sections if section.privileged for item in section.items
        )

    def valid_paths(self) -> frozenset[str]:
        return self._valid_paths

    def privileged_paths(self) -> frozenset[str]:
        return self._privileged_paths

    def is_valid_path(self, path: str) -> bool:
        return normalize_path(path) in self._valid_paths

    def is_privileged_path(self, path: str) -> bool:
        return normalize_path(path) in self._privileged_paths

    def pages(self) -> list[CatalogPage]:
        return [
            CatalogPage(page_key=item.page_key, label=item.label, section=section.display_label)
            for section in self.sections
            for item in section.items
        ]

    def pages_by_section(self) -> list[tuple[str, list[CatalogPage]]]:
        grouped: dict[str, list[CatalogPage]] = {}
        for page in self.pages():
            grouped.setdefault(page.section, []).append(page)
        return list(grouped.items())

    def validate_page_key(self, raw: str) -> PageRef:
        ref = parse_page_key(raw)
        if isinstance(ref, Wildcard):
            return ref
        if ref.path not in self._valid_paths:
            raise PageKeyValidationError(f"page key not registered in catalog: {raw!r}")
        return ref

    @classmethod
    def from_config(
        cls,
        sections: Iterable[Mapping[str, Any]],
        *,
        always_allowed: Iterable[str] = (FORBIDDEN_PATH,),
        home_path: str = HOME_PATH,
    ) -> PageCatalog:
        parsed: list[NavSection] = []
        for index, raw_section in enumerate(sections):
            items = tuple(
                NavItem(
                    path=str(raw_item["path"]),
                    label=str(raw_item.get("label") or raw_item["path"]),
                    id=raw_item.get("id"),
                )
                for raw_item in raw_section.get("items", [])
            )
            parsed.append(
                NavSection(
                    id=str(raw_section.get("id") or f"section-{index}"),
                    label=str(raw_section.get("label") or ""),
                    items=items,
                    privileged=bool(raw_section.get("privileged", False)),
                )
            )
        return cls(
            sections=tuple(parsed),
            always_allowed=tuple(always_allowed),
            home_path=normalize_path(home_path),
        )
