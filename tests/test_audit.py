from __future__ import annotations

import pytest

from pagegate.infra.audit import AuditContext, outcome_for


def test_context_merges_sections() -> None:
    context = AuditContext(sections={"what": {"action": "page_access.commit"}})
    context.merge({"what": {"changes": 3}, "result": {"applied": 2}})
    context.merge({"result": {"failed": 1}})
    assert context.sections == {
        "what": {"action": "page_access.commit", "changes": 3},
        "result": {"applied": 2, "failed": 1},
    }


@pytest.mark.parametrize(
    ("status_code", "outcome"),
    [(200, "success"), (201, "success"), (403, "denied"), (404, "denied"), (409, "rejected"), (503, "error")],
)
def test_outcome_for(status_code: int, outcome: str) -> None:
    assert outcome_for(status_code) == outcome
