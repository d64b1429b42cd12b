"""
Set difference between two violation snapshots.

A violation's identity is (time, location, behaviour). The site exposes no
stable id, so a record whose text is edited upstream shows up as one removal
plus one addition.
"""

from __future__ import annotations

from dataclasses import dataclass

from phatnguoi.models import Violation


def violation_key(v: Violation) -> str:
    return "|".join(
        (part or "").strip()
        for part in (v.violation_time, v.location, v.violation)
    )


@dataclass(frozen=True)
class ViolationDiff:
    added: tuple[Violation, ...] = ()
    removed: tuple[Violation, ...] = ()
    unchanged: tuple[Violation, ...] = ()
    first_run: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)


def diff_violations(
    previous: list[Violation] | None,
    current: list[Violation],
) -> ViolationDiff:
    """Compare snapshots. previous=None means there is no baseline yet."""
    if previous is None:
        return ViolationDiff(added=tuple(current), first_run=True)

    previous_keys = {violation_key(v) for v in previous}
    current_keys = {violation_key(v) for v in current}

    return ViolationDiff(
        added=tuple(v for v in current if violation_key(v) not in previous_keys),
        removed=tuple(v for v in previous if violation_key(v) not in current_keys),
        unchanged=tuple(v for v in current if violation_key(v) in previous_keys),
    )
