from sqlalchemy import BigInteger, Column, Float, Integer, String

from starterkit.models.user import Base


# Time-series rows keyed by unix-second timestamps; purged by the retention sweeper.
class ContainerMetricsHistory(Base):
    __tablename__ = "container_metrics_histories"
    id = Column(Integer, primary_key=True, autoincrement=True)
    container_id = Column(String(100), nullable=False, index=True)
    cpu_percent = Column(Float, nullable=True)
    memory_bytes = Column(BigInteger, nullable=True)
    recorded_at = Column(BigInteger, nullable=False, index=True)


class ServiceUptimeHistory(Base):
    __tablename__ = "service_uptime_histories"
    id = Column(Integer, primary_key=True, autoincrement=True)
    service_name = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    response_time_ms = Column(Integer, nullable=True)
    checked_at = Column(BigInteger, nullable=False, index=True)
