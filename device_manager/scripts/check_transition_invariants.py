#!/usr/bin/env python3
"""Device checkout invariant checks for a DeviceManager database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import and_, create_engine, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import aliased

from device_manager.models.device_models import (
    DEVICE_STATUSES,
    REPORT_TYPES,
    AuditLog,
    Device,
    DeviceRequest,
)


EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Devices": ["DeviceID", "Status", "AssignedToID", "RequestedBy", "ReceivedDate", "ReturnDate"],
    "DeviceRequests": [
        "RequestID",
        "DeviceID",
        "UserID",
        "ProcessedByID",
        "RequestType",
        "ReportType",
        "Status",
        "RequestedAt",
        "ProcessedAt",
        "Reason",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _count(engine: Engine, stmt) -> int:
    with engine.connect() as conn:
        return int(conn.execute(stmt).scalar() or 0)


def _count_check(engine: Engine, name: str, stmt) -> CheckResult:
    count = _count(engine, select(func.count()).select_from(stmt.subquery()))
    return CheckResult(name, count == 0, f"count={count}")


def run_schema_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"table:{table}", False, "missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"table:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_invariant_checks(engine: Engine) -> list[CheckResult]:
    pending = aliased(DeviceRequest)
    pending_for_device = and_(pending.DeviceID == Device.DeviceID, pending.Status == "pending")

    return [
        _count_check(
            engine,
            "devices:multiple_pending_requests",
            select(DeviceRequest.DeviceID)
            .where(DeviceRequest.Status == "pending")
            .group_by(DeviceRequest.DeviceID)
            .having(func.count() > 1),
        ),
        _count_check(
            engine,
            "devices:unknown_status",
            select(Device.DeviceID).where(Device.Status.not_in(sorted(DEVICE_STATUSES))),
        ),
        _count_check(
            engine,
            "devices:assigned_without_holder",
            select(Device.DeviceID).where(Device.Status == "assigned").where(Device.AssignedToID.is_(None)),
        ),
        _count_check(
            engine,
            "devices:holder_without_assignment",
            select(Device.DeviceID).where(Device.Status != "assigned").where(Device.AssignedToID.is_not(None)),
        ),
        _count_check(
            engine,
            "devices:pending_marker_without_request",
            select(Device.DeviceID)
            .outerjoin(pending, pending_for_device)
            .where(Device.Status == "pending")
            .where(pending.RequestID.is_(None)),
        ),
        _count_check(
            engine,
            "devices:requester_without_pending_request",
            select(Device.DeviceID)
            .outerjoin(pending, pending_for_device)
            .where(Device.RequestedBy.is_not(None))
            .where(pending.RequestID.is_(None)),
        ),
        _count_check(
            engine,
            "devices:requester_mismatch",
            select(Device.DeviceID)
            .join(pending, pending_for_device)
            .where((Device.RequestedBy.is_(None)) | (Device.RequestedBy != pending.UserID)),
        ),
        _count_check(
            engine,
            "requests:terminal_without_processing",
            select(DeviceRequest.RequestID)
            .where(DeviceRequest.Status.in_(("approved", "rejected", "cancelled")))
            .where(DeviceRequest.ProcessedAt.is_(None)),
        ),
        _count_check(
            engine,
            "requests:invalid_report_type",
            select(DeviceRequest.RequestID)
            .where(DeviceRequest.RequestType == "report")
            .where((DeviceRequest.ReportType.is_(None)) | (DeviceRequest.ReportType.not_in(sorted(REPORT_TYPES)))),
        ),
        _count_check(
            engine,
            "requests:returned_non_assign",
            select(DeviceRequest.RequestID)
            .where(DeviceRequest.Status == "returned")
            .where(DeviceRequest.RequestType != "assign"),
        ),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_status_counts(engine: Engine) -> None:
    _print_section("Device Status Counts")
    with engine.connect() as conn:
        rows = conn.execute(
            select(Device.Status, func.count()).group_by(Device.Status).order_by(Device.Status)
        ).all()
    for status, count in rows:
        print(f"{status}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Recent Audit Entries")
    with engine.connect() as conn:
        rows = conn.execute(
            select(AuditLog.AuditID, AuditLog.EntityID, AuditLog.Action, AuditLog.UserID, AuditLog.CreatedAt)
            .order_by(AuditLog.AuditID.desc())
            .limit(max(1, sample_size))
        ).all()
    for row in rows:
        print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="DeviceManager transition invariant checks")
    parser.add_argument("--db-url", default=os.environ.get("DEVICE_MANAGER_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("DEVICE_MANAGER_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        with engine.connect():
            pass
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    schema_results = run_schema_checks(engine)
    _print_results("Schema Checks", schema_results)
    if not all(result.ok for result in schema_results):
        return 1

    invariant_results = run_invariant_checks(engine)
    _print_results("Invariant Checks", invariant_results)
    _print_status_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(result.ok for result in invariant_results) else 1


if __name__ == "__main__":
    sys.exit(main())
