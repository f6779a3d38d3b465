from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from forecaster.db.base import Base
from forecaster.db.types import JSON_PAYLOAD


class Forecast(Base):
    __tablename__ = "forecasts"
    id = Column(String(10), primary_key=True)  # YYYYMMDDHH (UTC hour bucket)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    reference_price = Column(Float, nullable=False)
    data_health_grade = Column(String(16), nullable=False)  # normal / degraded / halted
    data_health_reason = Column(Text, nullable=True)
    consensus_strength = Column(Integer, nullable=False)  # 0-100
    divergence_summary = Column(JSON_PAYLOAD, nullable=False, default=list)

    windows = relationship(
        "ForecastWindow", cascade="all, delete-orphan", order_by="ForecastWindow.id"
    )
    model_runs = relationship("ModelRun", cascade="all, delete-orphan", order_by="ModelRun.id")
    model_predictions = relationship(
        "ModelWindowPrediction", cascade="all, delete-orphan", order_by="ModelWindowPrediction.id"
    )


class ForecastWindow(Base):
    """Consensus forecast for one horizon."""

    __tablename__ = "forecast_windows"
    id = Column(Integer, primary_key=True)
    forecast_id = Column(String(10), ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False)
    window = Column(String(8), nullable=False)  # 1h / 4h / 24h
    prob_up = Column(Float, nullable=False)
    prob_down = Column(Float, nullable=False)
    prob_flat = Column(Float, nullable=False)
    prob_move_1pct = Column(Float, nullable=False)
    prob_move_2pct = Column(Float, nullable=False)
    expected_range_pct = Column(Float, nullable=False)
    confidence = Column(Integer, nullable=False)
    main_conclusion = Column(Text, nullable=False)
    top_factors = Column(JSON_PAYLOAD, nullable=False, default=list)
    invalidation_conditions = Column(JSON_PAYLOAD, nullable=False, default=list)
    __table_args__ = (UniqueConstraint("forecast_id", "window", name="uq_forecast_window"),)


class ModelRun(Base):
    """One model invocation inside a forecast cycle, successful or not."""

    __tablename__ = "model_runs"
    id = Column(Integer, primary_key=True)
    forecast_id = Column(String(10), ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False)
    model_name = Column(String(64), nullable=False)
    success = Column(Boolean, nullable=False)
    error_reason = Column(Text, nullable=True)
    reasoning = Column(Text, nullable=True)
    raw_text = Column(Text, nullable=True)
    __table_args__ = (UniqueConstraint("forecast_id", "model_name", name="uq_model_run"),)


class ModelWindowPrediction(Base):
    __tablename__ = "model_window_predictions"
    id = Column(Integer, primary_key=True)
    forecast_id = Column(String(10), ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False)
    model_name = Column(String(64), nullable=False)
    window = Column(String(8), nullable=False)
    prob_up = Column(Float, nullable=False)
    prob_down = Column(Float, nullable=False)
    prob_flat = Column(Float, nullable=False)
    prob_move_1pct = Column(Float, nullable=False)
    prob_move_2pct = Column(Float, nullable=False)
    expected_range_pct = Column(Float, nullable=False)
    confidence = Column(Integer, nullable=False)
    main_conclusion = Column(Text, nullable=True)
    __table_args__ = (
        UniqueConstraint("forecast_id", "model_name", "window", name="uq_model_window_prediction"),
    )
