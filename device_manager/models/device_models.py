from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from device_manager.db.base import Base


DEVICE_STATUSES = {"available", "pending", "assigned", "missing", "stolen", "dead", "returned"}
REQUEST_TYPES = {"assign", "release", "report", "return"}
REPORT_TYPES = {"missing", "stolen", "dead"}
REQUEST_STATUSES = {"pending", "approved", "rejected", "cancelled", "returned"}
DECISION_STATUSES = {"approved", "rejected"}
TERMINAL_REQUEST_STATUSES = {"approved", "rejected", "cancelled", "returned"}


class Device(Base):
    __tablename__ = "Devices"

    DeviceID = Column(Integer, primary_key=True)
    DeviceName = Column(String(255), nullable=False)
    DeviceType = Column(String(100))
    SerialNumber = Column(String(255), unique=True)
    IMEI = Column(String(100), unique=True)
    Notes = Column(String(1000))
    Status = Column(String(20), nullable=False, default="available")
    AssignedToID = Column(Integer)
    RequestedBy = Column(Integer)
    ReceivedDate = Column(DateTime)
    ReturnDate = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Requests = relationship(
        "DeviceRequest",
        back_populates="Device",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DeviceRequest(Base):
    __tablename__ = "DeviceRequests"
    __table_args__ = (
        Index("IX_DeviceRequests_Device_Status", "DeviceID", "Status"),
        # One pending request per device, where the backend supports filtered indexes.
        Index(
            "UX_DeviceRequests_Pending",
            "DeviceID",
            unique=True,
            sqlite_where=text("Status = 'pending'"),
            postgresql_where=text("\"Status\" = 'pending'"),
            mssql_where=text("Status = 'pending'"),
        ).ddl_if(dialect=("sqlite", "postgresql", "mssql")),
    )

    RequestID = Column(Integer, primary_key=True)
    DeviceID = Column(Integer, ForeignKey("Devices.DeviceID", ondelete="CASCADE"), nullable=False)
    UserID = Column(Integer, nullable=False)
    ProcessedByID = Column(Integer)
    RequestType = Column(String(20), nullable=False)
    ReportType = Column(String(20))
    Status = Column(String(20), nullable=False, default="pending")
    RequestedAt = Column(DateTime, nullable=False, server_default=func.now())
    ProcessedAt = Column(DateTime)
    Reason = Column(String(1000))

    Device = relationship("Device", back_populates="Requests")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
