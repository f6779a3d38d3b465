from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint

from forecaster.db.base import Base


class Settlement(Base):
    """Consensus outcome for one (forecast, window); written once, never updated."""

    __tablename__ = "settlements"
    id = Column(Integer, primary_key=True)
    forecast_id = Column(String(10), ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False)
    window = Column(String(8), nullable=False)
    actual_return_pct = Column(Float, nullable=False)
    actual_direction = Column(String(8), nullable=False)  # up / down / flat
    predicted_direction = Column(String(8), nullable=False)
    is_hit = Column(Boolean, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    start_price = Column(Float, nullable=False)
    end_price = Column(Float, nullable=False)
    __table_args__ = (UniqueConstraint("forecast_id", "window", name="uq_settlement"),)


class ModelSettlement(Base):
    __tablename__ = "model_settlements"
    id = Column(Integer, primary_key=True)
    forecast_id = Column(String(10), ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False)
    window = Column(String(8), nullable=False)
    model_name = Column(String(64), nullable=False)
    actual_return_pct = Column(Float, nullable=False)
    actual_direction = Column(String(8), nullable=False)
    predicted_direction = Column(String(8), nullable=False)
    confidence = Column(Integer, nullable=False)
    is_hit = Column(Boolean, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    start_price = Column(Float, nullable=False)
    end_price = Column(Float, nullable=False)
    __table_args__ = (
        UniqueConstraint("forecast_id", "window", "model_name", name="uq_model_settlement"),
    )
