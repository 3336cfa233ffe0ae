"""Sibling label allocation (A, B, C, ... Z).

Labels are single uppercase letters.  Allocation continues from the highest
label already used under a parent and never wraps to ``AA``.
"""

from __future__ import annotations

from typing import Iterable

from designlib.ingest.exceptions import SequenceExhaustedError

FIRST_LABEL = "A"
LAST_LABEL = "Z"


def _validate(label: str) -> str:
    if len(label) != 1 or not (FIRST_LABEL <= label <= LAST_LABEL):
        raise ValueError(f"Invalid sibling label {label!r}; expected one of A-Z")
    return label


def next_label(used: Iterable[str]) -> str:
    """Return the label following the highest label in *used*.

    Args:
        used: Labels already taken by siblings.  May be empty or contain
            duplicates.

    Returns:
        ``"A"`` for an empty input, otherwise the letter after ``max(used)``.

    Raises:
        SequenceExhaustedError: If the highest used label is ``Z``.
        ValueError: If any label is not a single letter A-Z.
    """
    labels = [_validate(label) for label in used]
    if not labels:
        return FIRST_LABEL
    basis = max(labels)
    if basis == LAST_LABEL:
        raise SequenceExhaustedError(
            f"No labels left after {LAST_LABEL}; a parent holds at most 26 siblings"
        )
    return chr(ord(basis) + 1)


def allocate_labels(used: Iterable[str], count: int) -> list[str]:
    """Return the next *count* labels after *used*, in order."""
    taken = list(used)
    labels: list[str] = []
    for _ in range(count):
        label = next_label(taken)
        labels.append(label)
        taken.append(label)
    return labels
