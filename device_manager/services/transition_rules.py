from __future__ import annotations

from device_manager.models.device_models import REPORT_TYPES, REQUEST_TYPES
from device_manager.models.device_state import Assigned, Available, DeviceState, holder_of
from device_manager.services.transition_errors import (
    DeviceNotAvailable,
    DuplicatePendingRequest,
    InvalidReportType,
    InvalidRequestType,
    MustReleaseFirst,
    NotOwner,
    TransitionError,
)

ROLE_USER = "user"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"
ACTOR_ROLES = {ROLE_USER, ROLE_MANAGER, ROLE_ADMIN}
PROCESSING_ROLES = {ROLE_MANAGER, ROLE_ADMIN}


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in ACTOR_ROLES:
        return role
    return ROLE_USER


def normalize_report_type(request_type: str, report_type: str | None) -> str | None:
    if request_type != "report":
        return None
    return (report_type or "").strip().lower() or None


def validate_transition(
    state: DeviceState,
    has_pending: bool,
    request_type: str,
    report_type: str | None,
    actor_id: int,
    actor_role: str,
) -> TransitionError | None:
    """Decide whether ``request_type`` may be submitted against a device.

    Returns the rejection to raise, or ``None`` when the request is legal.
    Must be called with the device row locked so ``state`` and
    ``has_pending`` reflect every committed transition.
    """
    if request_type not in REQUEST_TYPES:
        return InvalidRequestType()
    if request_type == "report" and report_type not in REPORT_TYPES:
        return InvalidReportType()
    if has_pending:
        return DuplicatePendingRequest()

    if request_type == "assign" and not isinstance(state, Available):
        return DeviceNotAvailable()
    if request_type == "release" and holder_of(state) != actor_id and actor_role != ROLE_ADMIN:
        return NotOwner()
    if request_type == "return" and isinstance(state, Assigned):
        return MustReleaseFirst()
    return None
