"""Conflict-tolerant apply.

``terraform apply`` has no idempotent mode: re-applying against cloud
resources that were created outside the current state fails with exit code 1
and an "already exists" error even when everything else converged. This
module scopes the tolerance of that one failure class to a single predicate.
"""
from __future__ import annotations

import re
from collections.abc import Callable

from infra_wizard.process.runner import ProcessResult

ConflictPredicate = Callable[[str], bool]

ALREADY_EXISTS_PATTERN = re.compile(r"already exists|AlreadyExists")

TOLERATED_EXIT_CODE = 1


def is_already_exists_conflict(stderr: str) -> bool:
    """Return ``True`` when *stderr* reports a resource-already-exists conflict."""
    return bool(ALREADY_EXISTS_PATTERN.search(stderr))


class ConflictTolerantApply:
    """Decide whether a provisioning-backend ``apply`` result counts as success.

    Exit code 0 is success. Exit code 1 is success only when the predicate
    matches stderr. Every other outcome is a failure.

    Args:
        predicate: Classifier over the captured stderr. Defaults to
            :func:`is_already_exists_conflict`.
    """

    def __init__(self, predicate: ConflictPredicate = is_already_exists_conflict) -> None:
        self._predicate = predicate

    def __repr__(self) -> str:
        name = getattr(self._predicate, "__name__", type(self._predicate).__name__)
        return f"ConflictTolerantApply(predicate={name})"

    def is_conflict_line(self, line: str) -> bool:
        return self._predicate(line)

    def is_tolerated(self, result: ProcessResult) -> bool:
        """``True`` for an exit-1 result whose stderr matches the predicate."""
        return result.exit_code == TOLERATED_EXIT_CODE and self._predicate(result.stderr)

    def accepts(self, result: ProcessResult) -> bool:
        return result.ok or self.is_tolerated(result)
