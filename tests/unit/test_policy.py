"""Tests for process/policy.py: ConflictTolerantApply."""
from __future__ import annotations

import pytest

from infra_wizard.process.policy import ConflictTolerantApply, is_already_exists_conflict
from infra_wizard.process.runner import ProcessResult


@pytest.mark.parametrize(
    "stderr",
    [
        "Error: creating EKS Cluster: ResourceInUseException: Cluster already exists",
        "Error: EntityAlreadyExists: Role with name x already exists.",
        "DBSubnetGroupAlreadyExists: subnet group exists",
    ],
)
def test_conflict_lines_detected(stderr: str) -> None:
    assert is_already_exists_conflict(stderr)


def test_unrelated_error_not_a_conflict() -> None:
    assert not is_already_exists_conflict("Error: InvalidParameterValue: bad CIDR block")


def test_exit_zero_accepted() -> None:
    policy = ConflictTolerantApply()
    result = ProcessResult(exit_code=0)
    assert policy.accepts(result)
    assert not policy.is_tolerated(result)


def test_exit_one_with_conflict_tolerated() -> None:
    policy = ConflictTolerantApply()
    result = ProcessResult(exit_code=1, stderr="Error: bucket already exists")
    assert policy.is_tolerated(result)
    assert policy.accepts(result)


def test_exit_one_without_conflict_rejected() -> None:
    result = ProcessResult(exit_code=1, stderr="Error: AccessDenied")
    assert not ConflictTolerantApply().accepts(result)


def test_other_exit_codes_rejected_even_with_conflict() -> None:
    result = ProcessResult(exit_code=2, stderr="already exists")
    assert not ConflictTolerantApply().accepts(result)


def test_custom_predicate() -> None:
    policy = ConflictTolerantApply(lambda text: "Duplicate" in text)
    assert policy.accepts(ProcessResult(exit_code=1, stderr="Duplicate entry"))
    assert not policy.accepts(ProcessResult(exit_code=1, stderr="already exists"))
    assert policy.is_conflict_line("Duplicate key")
    assert "ConflictTolerantApply(" in repr(policy)
