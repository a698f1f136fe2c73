"""BLE Indoor Locator package.

This package provides:
- LocatingEngine: RSSI conditioning, calibration warm-up, positioning and smoothing
- PositionSolver: trilateration / least squares / weighted centroid
- ConfigManager: YAML-based configuration management
- BeaconStore: read-only beacon table (pandas + CSV)
- MQTTDataProcessor: MQTT ingestion and position publishing
"""

from .config_manager import ConfigManager
from .beacon_store import BeaconStore
from .calculator import PositionSolver, estimate_distance
from .calibration import CalibrationController
from .engine import EngineSettings, LocatingEngine
from .filters import PositionSmoother, RssiConditioner, ScalarKalmanFilter
from .mqtt_processor import MQTTDataProcessor

__all__ = [
    "ConfigManager",
    "BeaconStore",
    "PositionSolver",
    "estimate_distance",
    "CalibrationController",
    "EngineSettings",
    "LocatingEngine",
    "PositionSmoother",
    "RssiConditioner",
    "ScalarKalmanFilter",
    "MQTTDataProcessor",
]
