from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from device_manager.models.device_models import AuditLog, Device, DeviceRequest
from device_manager.models.device_state import mark_returned


def _id_text(value: int | None) -> str | None:
    if value is None:
        return None
    return str(value)


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def find_pending_request(db: Session, device_id: int) -> DeviceRequest | None:
    stmt = (
        select(DeviceRequest)
        .where(DeviceRequest.DeviceID == device_id)
        .where(DeviceRequest.Status == "pending")
        .order_by(DeviceRequest.RequestID)
    )
    return db.execute(stmt).scalars().first()


def get_request_device_id(db: Session, request_id: int) -> int | None:
    return db.execute(
        select(DeviceRequest.DeviceID).where(DeviceRequest.RequestID == request_id)
    ).scalar_one_or_none()


def lock_request(db: Session, request_id: int) -> DeviceRequest | None:
    stmt = (
        select(DeviceRequest)
        .where(DeviceRequest.RequestID == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalars().first()


def create_request(
    db: Session,
    device: Device,
    user_id: int,
    request_type: str,
    report_type: str | None,
    reason: str | None,
    now: datetime,
) -> DeviceRequest:
    request = DeviceRequest(
        DeviceID=device.DeviceID,
        UserID=user_id,
        RequestType=request_type,
        ReportType=report_type,
        Status="pending",
        RequestedAt=now,
        Reason=(reason or "").strip() or None,
    )
    db.add(request)
    return request


def close_assignment_interval(db: Session, device_id: int, user_id: int) -> int:
    """Mark the user's approved assign requests on the device as returned."""
    open_assignments = db.execute(
        select(DeviceRequest)
        .where(DeviceRequest.DeviceID == device_id)
        .where(DeviceRequest.UserID == user_id)
        .where(DeviceRequest.RequestType == "assign")
        .where(DeviceRequest.Status == "approved")
    ).scalars().all()
    for assignment in open_assignments:
        mark_returned(assignment)
    return len(open_assignments)


def list_requests(
    db: Session,
    status: str | None = None,
    device_id: int | None = None,
    user_id: int | None = None,
) -> list[DeviceRequest]:
    stmt = select(DeviceRequest)
    if status:
        stmt = stmt.where(DeviceRequest.Status == status)
    if device_id is not None:
        stmt = stmt.where(DeviceRequest.DeviceID == device_id)
    if user_id is not None:
        stmt = stmt.where(DeviceRequest.UserID == user_id)
    stmt = stmt.order_by(DeviceRequest.RequestedAt.desc(), DeviceRequest.RequestID.desc())
    return db.execute(stmt).scalars().all()


def serialize_request(request: DeviceRequest) -> dict:
    return {
        "id": _id_text(request.RequestID),
        "deviceId": _id_text(request.DeviceID),
        "userId": _id_text(request.UserID),
        "processedById": _id_text(request.ProcessedByID),
        "type": request.RequestType,
        "reportType": request.ReportType,
        "status": request.Status,
        "requestedAt": request.RequestedAt,
        "processedAt": request.ProcessedAt,
        "reason": request.Reason,
    }


def serialize_device(device: Device) -> dict:
    return {
        "id": _id_text(device.DeviceID),
        "name": device.DeviceName,
        "type": device.DeviceType,
        "serialNumber": device.SerialNumber,
        "imei": device.IMEI,
        "notes": device.Notes,
        "status": device.Status,
        "assignedToId": _id_text(device.AssignedToID),
        "requestedBy": _id_text(device.RequestedBy),
        "receivedDate": device.ReceivedDate,
        "returnDate": device.ReturnDate,
        "createdDate": device.CreatedDate,
        "updatedDate": device.UpdatedDate,
    }


def build_device_history(db: Session, device: Device) -> list[dict]:
    """Ownership history of a device, newest first.

    Each approved or returned assign request opens an interval and each
    approved release closes one. A release entry names the holder it
    released, which differs from its requester when an admin forces it.
    A holder with no open interval in the ledger gets a synthetic
    ``current-<id>`` entry.
    """
    rows = db.execute(
        select(DeviceRequest)
        .where(DeviceRequest.DeviceID == device.DeviceID)
        .where(DeviceRequest.RequestType.in_(("assign", "release")))
        .where(DeviceRequest.Status.in_(("approved", "returned")))
        .order_by(DeviceRequest.ProcessedAt, DeviceRequest.RequestID)
    ).scalars().all()

    history = []
    holder_id = None
    for row in rows:
        is_assign = row.RequestType == "assign"
        if is_assign:
            holder_id = row.UserID
            user_id = row.UserID
        else:
            user_id = holder_id if holder_id is not None else row.UserID
            holder_id = None
        history.append(
            {
                "id": _id_text(row.RequestID),
                "deviceId": _id_text(row.DeviceID),
                "userId": _id_text(user_id),
                "requestedById": _id_text(row.UserID),
                "assignedAt": row.ProcessedAt if is_assign else None,
                "releasedAt": None if is_assign else row.ProcessedAt,
                "releasedById": None if is_assign else _id_text(row.ProcessedByID),
                "releaseReason": None if is_assign else (row.Reason or "User requested release"),
                "isOpen": is_assign and row.Status == "approved",
            }
        )
    history.reverse()

    holder = device.AssignedToID if device.Status == "assigned" else None
    if holder is not None:
        has_open_interval = any(entry["isOpen"] and entry["userId"] == str(holder) for entry in history)
        if not has_open_interval:
            history.insert(
                0,
                {
                    "id": f"current-{device.DeviceID}",
                    "deviceId": _id_text(device.DeviceID),
                    "userId": _id_text(holder),
                    "requestedById": None,
                    "assignedAt": device.ReceivedDate or device.UpdatedDate,
                    "releasedAt": None,
                    "releasedById": None,
                    "releaseReason": None,
                    "isOpen": True,
                },
            )
    return history
