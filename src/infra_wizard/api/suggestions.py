"""Human hints for common failure messages.

Purely cosmetic: the hint is attached next to the error, never replacing it.
"""
from __future__ import annotations

import re

_SIGNATURES: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"Dockerfile not found", re.I),
        "Add a Dockerfile to the repository root, or supply a pre-built image URI.",
    ),
    (
        re.compile(r"not found or not accessible|Repository not found|could not read from remote", re.I),
        "Check the repository URL and that the access token can read the repository.",
    ),
    (
        re.compile(
            r"InvalidClientTokenId|SignatureDoesNotMatch|UnrecognizedClient|invalid.*credentials|"
            r"Invalid GitHub access token",
            re.I,
        ),
        "Verify the access keys (or token) and that they have not expired.",
    ),
    (
        re.compile(r"Error acquiring the state lock|ConditionalCheckFailedException", re.I),
        "Another run holds the Terraform state lock; wait for it or release the lock.",
    ),
    (
        re.compile(r"LimitExceeded|quota|Service ?Quota", re.I),
        "An AWS service quota was reached; request an increase or free resources.",
    ),
]


def suggest(error: str | None) -> str | None:
    """Return a hint for *error*, or ``None`` when no known signature matches."""
    if not error:
        return None
    for pattern, hint in _SIGNATURES:
        if pattern.search(error):
            return hint
    return None
