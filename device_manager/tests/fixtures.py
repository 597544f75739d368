import os
import shutil
import tempfile
import unittest

os.environ.setdefault("DEVICE_MANAGER_DB_URL", "sqlite+pysqlite:///:memory:")

from sqlalchemy import func, select

from device_manager.db.base import Base
from device_manager.db.session import build_engine, build_session_factory
from device_manager.models.device_models import AuditLog, Device, DeviceRequest
from device_manager.services.transition_engine import TransitionEngine


class TransitionDbTestCase(unittest.TestCase):
    """Runs each test against a fresh file-backed SQLite database."""

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp(prefix="device-manager-")
        db_path = os.path.join(self.tmp_dir, "devices.db")
        self.db_url = f"sqlite+pysqlite:///{db_path}"
        self.engine = build_engine(self.db_url, lock_timeout_seconds=30)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = build_session_factory(self.engine)
        self.sleeps = []
        self.transitions = TransitionEngine(self.SessionLocal, sleep=self.sleeps.append)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def add_device(self, **overrides) -> int:
        values = {"DeviceName": "Galaxy S24", "DeviceType": "smartphone", "Status": "available"}
        values.update(overrides)
        with self.SessionLocal() as db, db.begin():
            device = Device(**values)
            db.add(device)
            db.flush()
            return device.DeviceID

    def add_request(self, device_id: int, user_id: int, request_type: str, status: str, **overrides) -> int:
        with self.SessionLocal() as db, db.begin():
            request = DeviceRequest(
                DeviceID=device_id,
                UserID=user_id,
                RequestType=request_type,
                Status=status,
                **overrides,
            )
            db.add(request)
            db.flush()
            return request.RequestID

    def reload_device(self, device_id: int) -> Device:
        with self.SessionLocal() as db:
            return db.get(Device, device_id)

    def reload_request(self, request_id) -> DeviceRequest:
        with self.SessionLocal() as db:
            return db.get(DeviceRequest, int(request_id))

    def pending_count(self, device_id: int) -> int:
        with self.SessionLocal() as db:
            return db.execute(
                select(func.count())
                .select_from(DeviceRequest)
                .where(DeviceRequest.DeviceID == device_id)
                .where(DeviceRequest.Status == "pending")
            ).scalar()

    def audit_actions(self) -> list[str]:
        with self.SessionLocal() as db:
            return db.execute(select(AuditLog.Action).order_by(AuditLog.AuditID)).scalars().all()
