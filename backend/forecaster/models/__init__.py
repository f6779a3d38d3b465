from .forecast import Forecast, ForecastWindow, ModelRun, ModelWindowPrediction
from .settlement import Settlement, ModelSettlement
from .market_snapshot import MarketSnapshotRecord


__all__ = [
    "Forecast",
    "ForecastWindow",
    "ModelRun",
    "ModelWindowPrediction",
    "Settlement",
    "ModelSettlement",
    "MarketSnapshotRecord",
]
