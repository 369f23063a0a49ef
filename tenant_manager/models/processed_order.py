from sqlalchemy import JSON, Column, DateTime, Integer, String

from tenant_manager.database import Base
from tenant_manager.utils.timeutils import utcnow


# Marker that an order-paid event was fully handled; replays are no-ops
class ProcessedOrder(Base):
    __tablename__ = "processed_orders"

    order_id = Column(String(64), primary_key=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    modules_activated = Column(JSON, nullable=False, default=list)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
