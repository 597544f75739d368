import logging
from collections.abc import Generator

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from device_manager.db.session import SessionLocalDevice
from device_manager.schemas.requests import ProcessDeviceRequestDto, SubmitDeviceRequestDto
from device_manager.services.transition_engine import TransitionEngine
from device_manager.services.transition_errors import TransitionError
from device_manager.services.transition_rules import normalize_role

LOGGER = logging.getLogger("device_manager.api")

app = FastAPI()

_TRANSITION_ENGINE = TransitionEngine(SessionLocalDevice)


def get_device_db() -> Generator:
    db = SessionLocalDevice()
    try:
        yield db
    finally:
        db.close()


def get_transition_engine() -> TransitionEngine:
    return _TRANSITION_ENGINE


def _resolve_actor(x_actor_id: str | None, x_actor_role: str | None) -> tuple[int, str]:
    # Identity is resolved upstream; these headers are trusted as given.
    try:
        actor_id = int(str(x_actor_id or "").strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="Not logged in.") from None
    if actor_id <= 0:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return actor_id, normalize_role(x_actor_role)


@app.exception_handler(TransitionError)
async def handle_transition_error(request: Request, exc: TransitionError):
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_device_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/devices/{device_id}")
def get_device(device_id: int, engine: TransitionEngine = Depends(get_transition_engine)):
    return engine.get_device(device_id)


@app.get("/api/devices/{device_id}/history")
def get_device_history(device_id: int, engine: TransitionEngine = Depends(get_transition_engine)):
    return engine.device_history(device_id)


@app.post("/api/devices/{device_id}/request", status_code=201)
def request_device(
    device_id: int,
    payload: SubmitDeviceRequestDto,
    engine: TransitionEngine = Depends(get_transition_engine),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor_id, actor_role = _resolve_actor(x_actor_id, x_actor_role)
    return engine.submit_request(
        device_id,
        actor_id,
        actor_role,
        payload.type,
        report_type=payload.reportType,
        reason=payload.reason,
    )


@app.get("/api/requests")
def get_requests(
    status: str | None = Query(None),
    device_id: int | None = Query(None, alias="deviceId"),
    user_id: int | None = Query(None, alias="userId"),
    engine: TransitionEngine = Depends(get_transition_engine),
):
    return engine.list_requests(status=status, device_id=device_id, user_id=user_id)


@app.put("/api/requests/{request_id}")
def process_request(
    request_id: int,
    payload: ProcessDeviceRequestDto,
    engine: TransitionEngine = Depends(get_transition_engine),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor_id, actor_role = _resolve_actor(x_actor_id, x_actor_role)
    return engine.process_request(request_id, actor_id, actor_role, payload.status, return_date=payload.returnDate)


@app.put("/api/requests/{request_id}/cancel")
def cancel_request(
    request_id: int,
    engine: TransitionEngine = Depends(get_transition_engine),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor_id, actor_role = _resolve_actor(x_actor_id, x_actor_role)
    return engine.cancel_request(request_id, actor_id, actor_role)
