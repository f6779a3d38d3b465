from sqlalchemy import Column, Float, ForeignKey, Integer, String

from forecaster.db.base import Base


class MarketSnapshotRecord(Base):
    __tablename__ = "market_snapshots"
    id = Column(Integer, primary_key=True)
    forecast_id = Column(
        String(10), ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    price = Column(Float, nullable=False)
    price_change_1h = Column(Float, nullable=True)
    price_change_24h = Column(Float, nullable=True)
    volume_24h = Column(Float, nullable=True)
    funding_rate = Column(Float, nullable=True)
    open_interest = Column(Float, nullable=True)
    order_book_imbalance = Column(Float, nullable=True)
    realized_vol = Column(Float, nullable=True)
    fear_greed = Column(Integer, nullable=True)
    snapshot_time = Column(String(40), nullable=False)
