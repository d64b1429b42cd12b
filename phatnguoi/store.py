"""
Supabase persistence for users, cron jobs and lookup history.

Tables:
    users(id, chat_id unique, username, first_name, last_name)
    cron_jobs(id, user_id unique, plate, vehicle_type, is_active, last_run, next_run)
    lookup_history(id, cron_job_id, violations jsonb, total_violations,
                   total_paid_violations, total_unpaid_violations,
                   has_new_violations, lookup_time)

Functions here raise on Supabase errors; callers decide whether a failure
is fatal or logged and skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime

from phatnguoi.models import CronJob, LookupData, Violation
from phatnguoi.supabase_client import supabase

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_user_by_chat_id(chat_id: int) -> dict | None:
    resp = (
        supabase.table("users")
        .select("*")
        .eq("chat_id", chat_id)
        .limit(1)
        .execute()
    )
    return resp.data[0] if resp.data else None


def get_or_create_user(
    chat_id: int,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> dict:
    """Register a Telegram user, refreshing their profile fields when they exist."""
    profile = {
        "chat_id": chat_id,
        "username": username,
        "first_name": first_name,
        "last_name": last_name,
    }
    resp = (
        supabase.table("users")
        .upsert(profile, on_conflict="chat_id")
        .execute()
    )
    if not resp.data:
        raise RuntimeError(f"Failed to register user for chat {chat_id}")
    return resp.data[0]


# ---------------------------------------------------------------------------
# Cron jobs
# ---------------------------------------------------------------------------

def upsert_cron_job(user_id: int, plate: str, vehicle_type: str) -> CronJob:
    """Create or replace the user's single monitoring job and reactivate it."""
    resp = (
        supabase.table("cron_jobs")
        .upsert(
            {
                "user_id": user_id,
                "plate": plate,
                "vehicle_type": vehicle_type,
                "is_active": True,
            },
            on_conflict="user_id",
        )
        .execute()
    )
    if not resp.data:
        raise RuntimeError(f"Failed to save cron job for user {user_id}")
    return CronJob.from_row(resp.data[0])


def get_cron_job_by_user(user_id: int) -> CronJob | None:
    resp = (
        supabase.table("cron_jobs")
        .select("*")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return CronJob.from_row(resp.data[0]) if resp.data else None


def set_cron_job_active(user_id: int, is_active: bool) -> None:
    supabase.table("cron_jobs").update(
        {"is_active": is_active}
    ).eq("user_id", user_id).execute()


def get_all_active_cron_jobs() -> list[CronJob]:
    resp = (
        supabase.table("cron_jobs")
        .select("*, users(chat_id)")
        .eq("is_active", True)
        .order("id")
        .execute()
    )
    return [CronJob.from_row(row) for row in resp.data or []]


def update_cron_job_run_times(job_id: int, last_run: datetime, next_run: datetime) -> None:
    supabase.table("cron_jobs").update({
        "last_run": last_run.isoformat(),
        "next_run": next_run.isoformat(),
    }).eq("id", job_id).execute()


# ---------------------------------------------------------------------------
# Lookup history
# ---------------------------------------------------------------------------

def get_latest_lookup_history(cron_job_id: int) -> list[Violation] | None:
    """Return the newest stored snapshot for a job, or None when none exists."""
    resp = (
        supabase.table("lookup_history")
        .select("*")
        .eq("cron_job_id", cron_job_id)
        .order("lookup_time", desc=True)
        .limit(1)
        .execute()
    )
    if not resp.data:
        return None
    stored = resp.data[0].get("violations") or []
    return [Violation.from_dict(v) for v in stored]


def create_lookup_history(
    cron_job_id: int,
    data: LookupData,
    has_new_violations: bool,
) -> dict | None:
    resp = (
        supabase.table("lookup_history")
        .insert({
            "cron_job_id": cron_job_id,
            "violations": [v.to_dict() for v in data.violations],
            "total_violations": data.total_violations,
            "total_paid_violations": data.total_paid_violations,
            "total_unpaid_violations": data.total_unpaid_violations,
            "has_new_violations": has_new_violations,
            "lookup_time": data.lookup_time,
        })
        .execute()
    )
    return resp.data[0] if resp.data else None
