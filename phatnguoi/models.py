"""
Data model shared by the lookup pipeline, the scheduler and the outer layers.

Violations are immutable snapshots: every lookup yields a fresh list and no
record is ever mutated. The wire shape (REST responses, stored history JSON)
uses camelCase keys so that every consumer sees the same payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

SOURCE = "csgt.vn"

# Python attribute name -> wire key
_VIOLATION_KEYS = {
    "plate": "plate",
    "violation_number": "violationNumber",
    "plate_color": "plateColor",
    "vehicle_type": "vehicleType",
    "violation_time": "violationTime",
    "location": "location",
    "violation": "violation",
    "status": "status",
    "fine": "fine",
    "resolution_place": "resolutionPlace",
    "resolution_department": "resolutionDepartment",
    "resolution_address": "resolutionAddress",
    "resolution_phone": "resolutionPhone",
}


@dataclass(frozen=True)
class Violation:
    """One traffic-violation record as rendered by csgt.vn."""
    plate: str
    violation_number: int = 0
    plate_color: str | None = None
    vehicle_type: str | None = None
    violation_time: str | None = None
    location: str | None = None
    violation: str | None = None
    status: str | None = None
    fine: str | None = None
    resolution_place: str | None = None
    resolution_department: str | None = None
    resolution_address: str | None = None
    resolution_phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            wire: getattr(self, attr)
            for attr, wire in _VIOLATION_KEYS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Violation:
        kwargs: dict[str, Any] = {}
        for attr, wire in _VIOLATION_KEYS.items():
            if wire in data:
                kwargs[attr] = data[wire]
            elif attr in data:
                kwargs[attr] = data[attr]
        kwargs.setdefault("plate", "")
        kwargs["violation_number"] = int(kwargs.get("violation_number") or 0)
        return cls(**kwargs)


@dataclass(frozen=True)
class LookupData:
    plate: str
    vehicle_type: str
    violations: tuple[Violation, ...] = ()
    total_violations: int = 0
    total_paid_violations: int = 0
    total_unpaid_violations: int = 0
    total_retry_captcha: int = 0
    lookup_time: str | None = None
    source: str = SOURCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "plate": self.plate,
            "vehicleType": self.vehicle_type,
            "violations": [v.to_dict() for v in self.violations],
            "totalViolations": self.total_violations,
            "totalPaidViolations": self.total_paid_violations,
            "totalUnpaidViolations": self.total_unpaid_violations,
            "totalRetryCaptcha": self.total_retry_captcha,
            "lookupTime": self.lookup_time,
            "source": self.source,
        }


@dataclass(frozen=True)
class LookupResult:
    """Outcome of one lookup call. Never persisted directly."""
    status: str
    message: str | None = None
    data: LookupData | None = None
    # Classified kind of the last error; not part of the wire shape.
    error_kind: str | None = field(default=None, compare=False)
    # On error, the plate/vehicle type/regeneration count still reach callers.
    error_context: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def success(cls, data: LookupData) -> LookupResult:
        return cls(status="ok", data=data)

    @classmethod
    def failure(
        cls,
        message: str,
        error_kind: str | None,
        plate: str,
        vehicle_type: str,
        total_retry_captcha: int,
    ) -> LookupResult:
        return cls(
            status="error",
            message=message,
            error_kind=error_kind,
            error_context={
                "plate": plate,
                "vehicleType": vehicle_type,
                "totalRetryCaptcha": total_retry_captcha,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status}
        if self.message is not None:
            out["message"] = self.message
        if self.data is not None:
            out["data"] = self.data.to_dict()
        elif self.error_context is not None:
            out["data"] = dict(self.error_context)
        return out


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class CronJob:
    """A registered (user, plate, vehicle type) re-check job."""
    id: int
    user_id: int
    plate: str
    vehicle_type: str
    is_active: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    chat_id: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CronJob:
        """Build from a cron_jobs row, optionally joined with users(chat_id)."""
        chat_id = row.get("chat_id")
        user = row.get("users")
        if chat_id is None and isinstance(user, dict):
            chat_id = user.get("chat_id")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            plate=row["plate"],
            vehicle_type=str(row["vehicle_type"]),
            is_active=bool(row.get("is_active", True)),
            last_run=_parse_timestamp(row.get("last_run")),
            next_run=_parse_timestamp(row.get("next_run")),
            chat_id=chat_id,
        )
