from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from starterkit.models.user import Base

EXPORT_STATUS_PENDING = "pending"
EXPORT_STATUS_PROCESSING = "processing"
EXPORT_STATUS_COMPLETED = "completed"
EXPORT_STATUS_FAILED = "failed"
EXPORT_STATUS_EXPIRED = "expired"

STORAGE_LOCAL = "local"
STORAGE_S3 = "s3"


class DataExport(Base):
    __tablename__ = "data_exports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # pending|processing|completed|failed|expired
    status = Column(String(50), nullable=False, default=EXPORT_STATUS_PENDING)
    download_url = Column(String(500), nullable=True)
    file_path = Column(String(500), nullable=True)  # local path or S3 key
    storage_type = Column(String(20), nullable=False, default=STORAGE_LOCAL)
    file_size = Column(BigInteger, nullable=True)
    error_message = Column(Text, nullable=True)
    requested_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
