from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pagegate.domain.pages import FORBIDDEN_PATH, HOME_PATH, PageCatalog

logger = logging.getLogger(__name__)

PAGE_CATALOG_PATH = os.getenv("PAGE_CATALOG_PATH", "")

DEFAULT_SECTIONS: list[dict[str, Any]] = [
    {
        "id": "home",
        "label": "",
        "items": [{"id": "home", "label": "Home", "path": "/"}],
    },
    {
        "id": "analytics",
        "label": "Analytics",
        "items": [
            {"id": "dashboard", "label": "Dashboard", "path": "/dashboard"},
            {"id": "analytics", "label": "Analytics", "path": "/analytics"},
            {"id": "reports", "label": "Reports", "path": "/reports"},
        ],
    },
    {
        "id": "operations",
        "label": "Operations",
        "items": [
            {"id": "inventory", "label": "Inventory", "path": "/inventory"},
            {"id": "projects", "label": "Project Planner", "path": "/projects"},
            {"id": "team", "label": "Team Management", "path": "/team"},
        ],
    },
    {
        "id": "dev",
        "label": "DEV",
        "items": [{"id": "dev-page", "label": "Dev Page", "path": "/dev"}],
    },
    {
        "id": "super-admin",
        "label": "Super Admin",
        "privileged": True,
        "items": [
            {"id": "page-access", "label": "Access Matrix", "path": "/super-admin/page-access"},
            {"id": "user-roles", "label": "User Roles", "path": "/super-admin/user-roles"},
        ],
    },
]


class CatalogConfigError(Exception):
    pass


def load_catalog_file(path: str | Path) -> PageCatalog:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CatalogConfigError(f"cannot read page catalog {path}: {exc}") from exc
    if isinstance(raw, list):
        return PageCatalog.from_config(raw)
    if not isinstance(raw, dict) or not isinstance(raw.get("sections"), list):
        raise CatalogConfigError(f"page catalog {path} must define a sections list")
    try:
        return PageCatalog.from_config(
            raw["sections"],
            always_allowed=raw.get("always_allowed", [FORBIDDEN_PATH]),
            home_path=raw.get("home_path", HOME_PATH),
        )
    except (KeyError, TypeError) as exc:
        raise CatalogConfigError(f"invalid page catalog {path}: {exc}") from exc


def default_catalog() -> PageCatalog:
    return PageCatalog.from_config(DEFAULT_SECTIONS)


@lru_cache(maxsize=1)
def get_catalog() -> PageCatalog:
    if PAGE_CATALOG_PATH:
        catalog = load_catalog_file(PAGE_CATALOG_PATH)
        logger.info("loaded page catalog from %s (%d pages)", PAGE_CATALOG_PATH, len(catalog.pages()))
        return catalog
    return default_catalog()
