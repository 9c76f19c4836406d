"""
SQLAlchemy Database Models

One row per order. The full snapshot lives in `payload` as the order's wire
JSON; the other columns duplicate the fields worth indexing or filtering
on, and `version` guards against out-of-order writes.
"""

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from order_engine.database import Base


class OrderRecord(Base):
    """Persisted order snapshot."""
    __tablename__ = "orders"

    id = Column(String(40), primary_key=True)

    # =========================================================================
    # FILTER COLUMNS
    # =========================================================================
    channel = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    payment_status = Column(String(20), nullable=False)
    payment_method = Column(String(20), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    customer_name = Column(String(100), nullable=True)

    # =========================================================================
    # SNAPSHOT
    # =========================================================================
    payload = Column(Text, nullable=False)  # JSON wire form of the order
    version = Column(Integer, nullable=False, default=0)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    ordered_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<OrderRecord {self.id} - {self.channel} - {self.status} - v{self.version}>"
