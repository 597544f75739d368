from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from device_manager.models.device_models import DECISION_STATUSES, REPORT_TYPES, Device, DeviceRequest
from device_manager.models.device_state import (
    Assigned,
    Available,
    DeviceState,
    Returned,
    check_pending_consistency,
    close_request,
    holder_of,
    load_state,
    report_state,
    store_state,
    with_requester,
    without_requester,
)
from device_manager.services.device_registry import fetch_device, lock_device
from device_manager.services.request_ledger import (
    build_device_history,
    close_assignment_interval,
    create_request,
    find_pending_request,
    get_request_device_id,
    list_requests,
    lock_request,
    log_audit,
    serialize_device,
    serialize_request,
)
from device_manager.services.retry_coordinator import RetryCoordinator, RetryPolicy
from device_manager.services.transition_errors import (
    AlreadyProcessed,
    DuplicatePendingRequest,
    InvalidDecision,
    RequestNotFound,
    RequestStateCorrupt,
    StorageError,
    Unauthorized,
)
from device_manager.services.transition_rules import (
    PROCESSING_ROLES,
    ROLE_ADMIN,
    normalize_report_type,
    normalize_role,
    validate_transition,
)

LOGGER = logging.getLogger("device_manager.transitions")

T = TypeVar("T")


class TransitionEngine:
    """Applies device checkout transitions as single atomic units of work.

    Every mutating operation locks the device row first and the request row
    second, validates against the locked state, and commits the ledger and
    device changes together. Lock contention is absorbed by the retry
    coordinator, which re-runs the whole unit.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.coordinator = RetryCoordinator(session_factory, policy, sleep)

    def submit_request(
        self,
        device_id: int,
        actor_id: int,
        actor_role: str | None,
        request_type: str,
        report_type: str | None = None,
        reason: str | None = None,
    ) -> dict:
        request_type = (request_type or "").strip().lower()
        actor_role = normalize_role(actor_role)
        report_type = normalize_report_type(request_type, report_type)

        def unit(db: Session) -> dict:
            device = lock_device(db, device_id)
            state = load_state(device)
            pending = find_pending_request(db, device.DeviceID)

            rejection = validate_transition(state, pending is not None, request_type, report_type, actor_id, actor_role)
            if rejection:
                LOGGER.info(
                    "Rejected %s on device %s by user %s: %s",
                    request_type,
                    device.DeviceID,
                    actor_id,
                    rejection.code,
                )
                raise rejection
            check_pending_consistency(device, state, None)

            now = self.clock()
            request = create_request(db, device, actor_id, request_type, report_type, reason, now)
            store_state(device, with_requester(state, actor_id), now)
            try:
                db.flush()
            except IntegrityError as exc:
                raise DuplicatePendingRequest() from exc

            log_audit(
                db,
                "DeviceRequest",
                request.RequestID,
                "Submit",
                f"{request_type} requested on device {device.DeviceID} ({state.status} -> {device.Status})",
                user_id=actor_id,
            )
            return serialize_request(request)

        result = self.coordinator.run(unit, label=f"submit {request_type} on device {device_id}")
        LOGGER.info("User %s submitted %s request %s on device %s", actor_id, request_type, result["id"], device_id)
        return result

    def process_request(
        self,
        request_id: int,
        actor_id: int,
        actor_role: str | None,
        decision: str,
        return_date: date | None = None,
    ) -> dict:
        decision = (decision or "").strip().lower()
        if decision not in DECISION_STATUSES:
            raise InvalidDecision()
        if normalize_role(actor_role) not in PROCESSING_ROLES:
            raise Unauthorized("Forbidden - Requires manager or admin role.")

        def unit(db: Session) -> dict:
            device, request, state = self._lock_pair(db, request_id)
            if request.Status != "pending":
                raise AlreadyProcessed()
            check_pending_consistency(device, state, request)

            now = self.clock()
            close_request(request, decision, actor_id, now)
            if decision == "approved":
                next_state = self._apply_approval(db, device, request, state, now, return_date)
            else:
                next_state = without_requester(state)
            store_state(device, next_state, now)

            log_audit(
                db,
                "DeviceRequest",
                request.RequestID,
                "Approve" if decision == "approved" else "Reject",
                f"{request.RequestType} on device {device.DeviceID} {decision} ({state.status} -> {device.Status})",
                user_id=actor_id,
            )
            return serialize_request(request)

        result = self.coordinator.run(unit, label=f"process request {request_id}")
        LOGGER.info("User %s %s request %s", actor_id, decision, request_id)
        return result

    def cancel_request(self, request_id: int, actor_id: int, actor_role: str | None) -> dict:
        actor_role = normalize_role(actor_role)

        def unit(db: Session) -> dict:
            device, request, state = self._lock_pair(db, request_id)
            if request.UserID != actor_id and actor_role != ROLE_ADMIN:
                raise Unauthorized()
            if request.Status != "pending":
                raise AlreadyProcessed()
            check_pending_consistency(device, state, request)

            now = self.clock()
            close_request(request, "cancelled", actor_id, now)
            store_state(device, without_requester(state), now)
            log_audit(
                db,
                "DeviceRequest",
                request.RequestID,
                "Cancel",
                f"{request.RequestType} on device {device.DeviceID} cancelled ({state.status} -> {device.Status})",
                user_id=actor_id,
            )
            return serialize_request(request)

        result = self.coordinator.run(unit, label=f"cancel request {request_id}")
        LOGGER.info("User %s cancelled request %s", actor_id, request_id)
        return result

    def get_device(self, device_id: int) -> dict:
        return self._read(lambda db: serialize_device(fetch_device(db, device_id)), f"read device {device_id}")

    def device_history(self, device_id: int) -> list[dict]:
        return self._read(
            lambda db: build_device_history(db, fetch_device(db, device_id)),
            f"read history of device {device_id}",
        )

    def list_requests(
        self,
        status: str | None = None,
        device_id: int | None = None,
        user_id: int | None = None,
    ) -> list[dict]:
        def view(db: Session) -> list[dict]:
            rows = list_requests(db, status=status, device_id=device_id, user_id=user_id)
            return [serialize_request(row) for row in rows]

        return self._read(view, "list requests")

    def _read(self, view: Callable[[Session], T], label: str) -> T:
        # Reads take no locks and are not retried.
        try:
            with self.session_factory() as db:
                return view(db)
        except DBAPIError as exc:
            LOGGER.error("%s failed with a storage error: %s", label, exc.orig or exc)
            raise StorageError() from exc

    def _lock_pair(self, db: Session, request_id: int) -> tuple[Device, DeviceRequest, DeviceState]:
        device_id = get_request_device_id(db, request_id)
        if device_id is None:
            raise RequestNotFound()
        device = lock_device(db, device_id)
        request = lock_request(db, request_id)
        if not request or request.DeviceID != device.DeviceID:
            raise RequestNotFound()
        return device, request, load_state(device)

    def _apply_approval(
        self,
        db: Session,
        device: Device,
        request: DeviceRequest,
        state: DeviceState,
        now: datetime,
        return_date: date | None,
    ) -> DeviceState:
        request_type = request.RequestType
        if request_type == "assign":
            device.ReceivedDate = now
            return Assigned(holder_id=request.UserID)

        if request_type == "release":
            released_holder = holder_of(state) or request.UserID
            closed = close_assignment_interval(db, device.DeviceID, released_holder)
            LOGGER.debug("Closed %s assignment(s) of user %s on device %s", closed, released_holder, device.DeviceID)
            return Available()

        if request_type == "report":
            if request.ReportType not in REPORT_TYPES:
                raise RequestStateCorrupt(f"Request {request.RequestID} has invalid report type {request.ReportType!r}.")
            previous_holder = holder_of(state)
            if previous_holder is not None:
                close_assignment_interval(db, device.DeviceID, previous_holder)
            return report_state(request.ReportType)

        if request_type == "return":
            device.ReturnDate = datetime.combine(return_date or now.date(), time.min)
            return Returned()

        raise RequestStateCorrupt(f"Request {request.RequestID} has invalid type {request_type!r}.")
