from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor

from pagegate.domain.rule_index import (
    CellKey,
    CommitResult,
    OpError,
    PendingChanges,
    RuleIndex,
    RuleOp,
    RuleOperation,
)
from pagegate.infra.rule_store import RuleStore

logger = logging.getLogger(__name__)

MATRIX_COMMIT_WORKERS = int(os.getenv("MATRIX_COMMIT_WORKERS", "4"))


def plan_operations(
    pending: PendingChanges | Mapping[CellKey, bool],
    index: RuleIndex,
) -> list[RuleOperation]:
    entries = pending.items() if isinstance(pending, PendingChanges) else list(pending.items())
    operations: list[RuleOperation] = []
    for (role_id, page_key), desired in entries:
        existing_rule_id = index.rule_id(role_id, page_key)
        if desired and existing_rule_id is None:
            operations.append(RuleOperation(op=RuleOp.CREATE, role_id=role_id, page_key=page_key))
        elif not desired and existing_rule_id is not None:
            operations.append(
                RuleOperation(
                    op=RuleOp.DELETE,
                    role_id=role_id,
                    page_key=page_key,
                    rule_id=existing_rule_id,
                )
            )
        # Anything else is already in the desired state.
    return operations


class MatrixReconciler:
    """Applies pending matrix edits to a rule store as independent writes.

    Each create/delete is attempted regardless of the outcome of the others
    and failures are reported per cell. Nothing is retried: repeating a
    create blindly could duplicate rule rows. The caller must reload the
    rule index afterwards, whatever the result.
    """

    def __init__(self, store: RuleStore, *, max_workers: int = MATRIX_COMMIT_WORKERS) -> None:
        self._store = store
        self._max_workers = max(1, max_workers)

    def plan(
        self,
        pending: PendingChanges | Mapping[CellKey, bool],
        index: RuleIndex,
    ) -> list[RuleOperation]:
        return plan_operations(pending, index)

    def _apply(self, operation: RuleOperation) -> None:
        if operation.op == RuleOp.CREATE:
            self._store.create_rule(operation.role_id, operation.page_key)
            return
        if operation.rule_id is None:
            raise ValueError("delete operation without rule id")
        self._store.delete_rule(operation.rule_id)

    def commit(
        self,
        pending: PendingChanges | Mapping[CellKey, bool],
        index: RuleIndex,
    ) -> CommitResult:
        operations = self.plan(pending, index)
        if not operations:
            return CommitResult(applied=0, errors=(), operations=0)

        applied = 0
        errors: list[OpError] = []
        workers = min(self._max_workers, len(operations))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrix-commit") as pool:
            futures: list[tuple[RuleOperation, Future[None]]] = [
                (operation, pool.submit(self._apply, operation)) for operation in operations
            ]
            for operation, future in futures:
                try:
                    future.result()
                except Exception as exc:
                    logger.warning(
                        "%s %s for role %s failed: %s",
                        operation.op,
                        operation.page_key,
                        operation.role_id,
                        exc,
                    )
                    errors.append(
                        OpError(
                            role_id=operation.role_id,
                            page_key=operation.page_key,
                            op=str(operation.op),
                            message=str(exc) or exc.__class__.__name__,
                        )
                    )
                    continue
                applied += 1

        logger.info(
            "matrix commit finished: %d/%d operations applied, %d failed",
            applied,
            len(operations),
            len(errors),
        )
        return CommitResult(applied=applied, errors=tuple(errors), operations=len(operations))
