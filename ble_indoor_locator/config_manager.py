from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any

from .engine import EngineSettings
from .models import PositionMethod


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            logger.warning("环境变量 %s=%r 无法解析，使用默认值 %r", env_key, v, default)
            return default
    return default


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_INDOOR_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "uplink_topic": _env_or_default("BLE_MQTT_UPLINK_TOPIC", "/device/location/{deviceId}"),
                "downlink_topic": _env_or_default("BLE_MQTT_DOWNLINK_TOPIC", "/device/blueTooth/station/+"),
                "status_topic": _env_or_default("BLE_MQTT_STATUS_TOPIC", "/device/blueTooth/status/+"),
            },
            "rssi_model": {
                "window_size": _env_or_default("BLE_RSSI_WINDOW", 5, int),
                "path_loss_exponent": _env_or_default("BLE_RSSI_PATH_LOSS", 2.5, float),
                "default_tx_power": _env_or_default("BLE_RSSI_TX_POWER", -59, float),
            },
            "calibration": {
                "duration_ms": _env_or_default("BLE_CALIBRATION_MS", 3000, float),
            },
            "smoother": {
                "process_noise": _env_or_default("BLE_KF_PROCESS_NOISE", 0.01, float),
                "measurement_noise": _env_or_default("BLE_KF_MEASUREMENT_NOISE", 4.0, float),
                "initial_covariance": _env_or_default("BLE_KF_INITIAL_COVARIANCE", 1.0, float),
            },
            "pipeline": {
                "flush_interval_s": _env_or_default("BLE_FLUSH_INTERVAL", 1.0, float),
                "stale_after_s": _env_or_default("BLE_STALE_AFTER", 5.0, float),
                "method": _env_or_default("BLE_POSITION_METHOD", PositionMethod.TRILATERATION.value),
                "max_iterations": _env_or_default("BLE_LS_MAX_ITERATIONS", 20, int),
                "tolerance": _env_or_default("BLE_LS_TOLERANCE", 0.01, float),
            },
            "paths": {
                "beacon_db": _env_or_default(
                    "BLE_PATH_BEACON_DB", os.path.join(".", "beacon", "beacons.csv")
                ),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
                return
        except (OSError, yaml.YAMLError) as e:
            logger.error("加载配置文件失败，使用默认配置: %s", e)
        self.config = copy.deepcopy(self.default_config)
        self.save_config()

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("保存配置文件失败: %s", e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_calibration_config(self):
        return self.config["calibration"]

    def get_smoother_config(self):
        return self.config["smoother"]

    def get_pipeline_config(self):
        return self.config["pipeline"]

    def get_paths(self):
        return self.config.get("paths", {})

    def get_beacon_db_path(self):
        return self.get_paths()["beacon_db"]

    def get_flush_interval(self) -> float:
        return float(self.get_pipeline_config()["flush_interval_s"])

    def engine_settings(self) -> EngineSettings:
        """由配置文件构造引擎参数"""
        rssi = self.get_rssi_model_config()
        smoother = self.get_smoother_config()
        pipeline = self.get_pipeline_config()
        return EngineSettings(
            window_size=int(rssi["window_size"]),
            path_loss_exponent=float(rssi["path_loss_exponent"]),
            calibration_ms=float(self.get_calibration_config()["duration_ms"]),
            process_noise=float(smoother["process_noise"]),
            measurement_noise=float(smoother["measurement_noise"]),
            initial_covariance=float(smoother["initial_covariance"]),
            stale_after_s=float(pipeline["stale_after_s"]),
            method=PositionMethod(pipeline["method"]),
            max_iterations=int(pipeline["max_iterations"]),
            tolerance=float(pipeline["tolerance"]),
        ).validate()

    def set_rssi_model_config(self, path_loss_exponent: float, window_size: int | None = None):
        self.config["rssi_model"]["path_loss_exponent"] = path_loss_exponent
        if window_size is not None:
            self.config["rssi_model"]["window_size"] = window_size
        self.save_config()
