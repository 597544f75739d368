from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from device_manager.models.device_models import Device
from device_manager.services.transition_errors import DeviceNotFound


def lock_device(db: Session, device_id: int) -> Device:
    """Load a device row with an exclusive lock held until the transaction ends."""
    stmt = (
        select(Device)
        .where(Device.DeviceID == device_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    device = db.execute(stmt).scalars().first()
    if not device:
        raise DeviceNotFound()
    return device


def fetch_device(db: Session, device_id: int) -> Device:
    device = db.get(Device, device_id)
    if not device:
        raise DeviceNotFound()
    return device
