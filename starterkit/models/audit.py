from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from starterkit.models.user import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)  # actor
    target_type = Column(String(50), nullable=False, default="")
    target_id = Column(Integer, nullable=True, index=True)
    action = Column(String(50), nullable=False)
    changes = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), index=True)


class File(Base):
    __tablename__ = "files"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    file_name = Column(String(255), nullable=False)
    content_type = Column(String(100), nullable=False, default="application/octet-stream")
    file_size = Column(BigInteger, nullable=False, default=0)
    location = Column(String(500), nullable=False)  # local path or S3 key
    storage_type = Column(String(20), nullable=False, default="local")
    created_at = Column(DateTime, server_default=func.now())
