"""Device lifecycle state as a tagged variant.

The ``Devices`` row stores the state across three columns (``Status``,
``AssignedToID`` and ``RequestedBy``). Everything in the transition engine
works on the decoded variant instead, so a holder can only exist on
``Assigned`` and the pending marker always names its requester.

A request in flight against a device that is not ``available`` does not
replace the device's status; it is carried as ``requester_id`` on the
current variant so the holder survives a pending release or report.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import ClassVar, Optional, Union

from device_manager.models.device_models import DEVICE_STATUSES, TERMINAL_REQUEST_STATUSES, Device, DeviceRequest
from device_manager.services.transition_errors import DeviceStateCorrupt, RequestStateCorrupt


@dataclass(frozen=True)
class Available:
    status: ClassVar[str] = "available"

    @property
    def requester_id(self) -> None:
        return None


@dataclass(frozen=True)
class Pending:
    requester_id: int
    status: ClassVar[str] = "pending"


@dataclass(frozen=True)
class Assigned:
    holder_id: int
    requester_id: Optional[int] = None
    status: ClassVar[str] = "assigned"


@dataclass(frozen=True)
class Missing:
    requester_id: Optional[int] = None
    status: ClassVar[str] = "missing"


@dataclass(frozen=True)
class Stolen:
    requester_id: Optional[int] = None
    status: ClassVar[str] = "stolen"


@dataclass(frozen=True)
class Dead:
    requester_id: Optional[int] = None
    status: ClassVar[str] = "dead"


@dataclass(frozen=True)
class Returned:
    requester_id: Optional[int] = None
    status: ClassVar[str] = "returned"


DeviceState = Union[Available, Pending, Assigned, Missing, Stolen, Dead, Returned]

_PARKED_STATES = {cls.status: cls for cls in (Missing, Stolen, Dead, Returned)}
REPORT_STATES = {"missing": Missing, "stolen": Stolen, "dead": Dead}


def load_state(device: Device) -> DeviceState:
    status = (device.Status or "").strip()
    holder_id = device.AssignedToID
    requester_id = device.RequestedBy

    if status not in DEVICE_STATUSES:
        raise DeviceStateCorrupt(f"Device {device.DeviceID} has unknown status {status!r}.")
    if status == "assigned":
        if holder_id is None:
            raise DeviceStateCorrupt(f"Device {device.DeviceID} is assigned without a holder.")
        return Assigned(holder_id=holder_id, requester_id=requester_id)
    if holder_id is not None:
        raise DeviceStateCorrupt(f"Device {device.DeviceID} has a holder while {status}.")
    if status == "pending":
        if requester_id is None:
            raise DeviceStateCorrupt(f"Device {device.DeviceID} is pending without a requester.")
        return Pending(requester_id=requester_id)
    if status == "available":
        if requester_id is not None:
            # An in-flight request on an available device is always the pending marker.
            raise DeviceStateCorrupt(f"Device {device.DeviceID} is available with a requester.")
        return Available()
    return _PARKED_STATES[status](requester_id=requester_id)


def store_state(device: Device, state: DeviceState, now: datetime | None = None) -> None:
    device.Status = state.status
    device.AssignedToID = state.holder_id if isinstance(state, Assigned) else None
    device.RequestedBy = state.requester_id
    device.UpdatedDate = now or datetime.now()


def holder_of(state: DeviceState) -> int | None:
    if isinstance(state, Assigned):
        return state.holder_id
    return None


def with_requester(state: DeviceState, requester_id: int) -> DeviceState:
    if isinstance(state, Available):
        return Pending(requester_id=requester_id)
    if isinstance(state, Pending) or state.requester_id is not None:
        raise ValueError("device already carries an in-flight request")
    return replace(state, requester_id=requester_id)


def without_requester(state: DeviceState) -> DeviceState:
    if isinstance(state, Pending):
        return Available()
    if isinstance(state, Available):
        return state
    return replace(state, requester_id=None)


def report_state(report_type: str) -> DeviceState:
    return REPORT_STATES[report_type]()


def check_pending_consistency(device: Device, state: DeviceState, pending: DeviceRequest | None) -> None:
    expected = pending.UserID if pending is not None else None
    if state.requester_id != expected:
        raise DeviceStateCorrupt(
            f"Device {device.DeviceID} requester {state.requester_id} does not match pending request owner {expected}."
        )


def close_request(request: DeviceRequest, status: str, actor_id: int, now: datetime) -> None:
    if request.Status != "pending":
        raise RequestStateCorrupt(f"Request {request.RequestID} is already {request.Status}.")
    if status not in TERMINAL_REQUEST_STATUSES or status == "returned":
        raise ValueError(f"cannot close a request as {status!r}")
    request.Status = status
    request.ProcessedByID = actor_id
    request.ProcessedAt = now


def mark_returned(request: DeviceRequest) -> None:
    if request.RequestType != "assign" or request.Status != "approved":
        raise RequestStateCorrupt(f"Request {request.RequestID} does not hold an open assignment.")
    request.Status = "returned"
