from sqlalchemy import Column, String, DateTime, Text, Enum as SQLAEnum, Index
from otp_delivery.core.database import Base
from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.delivery import DeliveryState


class DeliveryRecord(Base):
    """Persisted copy of a delivery attempt, kept for history and statistics."""
    __tablename__ = "delivery_records"

    id = Column(String(32), primary_key=True)  # DeliveryAttempt.id
    request_id = Column(String(64), nullable=False)
    recipient = Column(String(255), nullable=False)
    channel = Column(SQLAEnum(DeliveryChannel), nullable=False)
    state = Column(SQLAEnum(DeliveryState), nullable=False)
    provider_name = Column(String(100), nullable=True)
    message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_delivery_records_request_id', request_id),
        Index('idx_delivery_records_created_at', created_at),
        Index('idx_delivery_records_state', state),
    )

    def __repr__(self):
        return f"<DeliveryRecord(id={self.id}, channel={self.channel}, state={self.state})>"
