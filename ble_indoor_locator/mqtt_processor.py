from __future__ import annotations

import json
import logging
import threading
import time
from functools import partial
from typing import Callable, Dict, List, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .beacon_store import BeaconStore
from .config_manager import ConfigManager
from .engine import LocatingEngine
from .errors import ConfigurationError
from .models import ConditionedSample, PositionUpdate, ReadingBatch, ScannerState


logger = logging.getLogger(__name__)


class MQTTDataProcessor:
    def __init__(
        self,
        config_manager: ConfigManager,
        beacon_store: Optional[BeaconStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.lock = threading.Lock()
        self.config_manager = config_manager
        self.clock = clock

        # 信标快照
        if beacon_store is None:
            beacon_store = BeaconStore(self.config_manager)
            beacon_store.load()
        self.beacon_store = beacon_store
        self.settings = self.config_manager.engine_settings()

        # 每个终端一个定位引擎
        self.engines: Dict[str, LocatingEngine] = {}

        self.client: Optional[mqtt.Client] = None
        self._stop_event = threading.Event()
        self._ticker: Optional[threading.Thread] = None

    # ---------- Engines ----------
    def get_engine(self, device_id: str) -> LocatingEngine:
        with self.lock:
            engine = self.engines.get(device_id)
            if engine is not None:
                return engine
            engine = LocatingEngine(
                self.settings,
                self.beacon_store.snapshot(),
                clock=self.clock,
                on_position_update=partial(self.publish_position, device_id),
                on_error=partial(self.on_engine_error, device_id),
            )
            engine.start_locating()
            self.engines[device_id] = engine
            logger.info("终端 %s 开始定位", device_id)
            return engine

    def reload_beacons(self) -> int:
        count = self.beacon_store.reload()
        snapshot = self.beacon_store.snapshot()
        with self.lock:
            engines = list(self.engines.values())
        for engine in engines:
            engine.set_beacons(snapshot)
        return count

    # ---------- Core processing ----------
    def handle_readings(self, payload: str) -> Optional[List[ConditionedSample]]:
        batch = ReadingBatch.parse(payload, self.clock())
        if batch is None or batch.is_empty:
            logger.warning("消息解析无有效信标数据: %s", payload)
            return None
        try:
            engine = self.get_engine(batch.device_id)
        except ConfigurationError as e:
            logger.error("终端 %s 无法开始定位: %s", batch.device_id, e)
            return None
        if not engine.is_locating:
            logger.debug("终端 %s 未在定位，忽略读数", batch.device_id)
            return None
        return engine.ingest(batch)

    def handle_status(self, device_id: str, payload: str) -> None:
        state = ScannerState(payload.strip().lower())
        with self.lock:
            engine = self.engines.get(device_id)
        if engine is None:
            return
        if state is ScannerState.AVAILABLE and not engine.is_locating:
            engine.start_locating()
            logger.info("终端 %s 蓝牙恢复，重新开始定位", device_id)
            return
        engine.handle_scanner_state(state)

    def flush_all(self, now: Optional[float] = None) -> Dict[str, PositionUpdate]:
        with self.lock:
            engines = list(self.engines.items())
        updates: Dict[str, PositionUpdate] = {}
        for device_id, engine in engines:
            try:
                update = engine.flush(now)
            except Exception as e:
                logger.exception("终端 %s 刷新出错: %s", device_id, e)
                continue
            if update is not None:
                updates[device_id] = update
        return updates

    def publish_position(self, device_id: str, update: PositionUpdate) -> None:
        if self.client is None:
            return
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("uplink_topic", "/device/location/{deviceId}")
        message = json.dumps(update.to_dict(), ensure_ascii=False)
        self.client.publish(topic.format(deviceId=device_id), message)

    def on_engine_error(self, device_id: str, error: Exception) -> None:
        logger.error("终端 %s 定位中断: %s", device_id, error)

    # ---------- Ticker ----------
    def start_ticker(self) -> None:
        if self._ticker is not None and self._ticker.is_alive():
            return
        self._stop_event.clear()
        self._ticker = threading.Thread(target=self._run_ticker, name="flush-ticker", daemon=True)
        self._ticker.start()

    def _run_ticker(self) -> None:
        interval = self.config_manager.get_flush_interval()
        while not self._stop_event.wait(interval):
            self.flush_all()

    def stop_ticker(self) -> None:
        self._stop_event.set()
        if self._ticker is not None:
            self._ticker.join(timeout=5)
            self._ticker = None

    # ---------- MQTT ----------
    def start_mqtt_client(self):
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        mqtt_config = self.config_manager.get_mqtt_config()
        try:
            self.client.connect(mqtt_config["ip"], int(mqtt_config["port"]), 60)
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)
            return
        logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
        self.start_ticker()
        self.client.loop_forever()

    def stop_mqtt_client(self):
        self.stop_ticker()
        with self.lock:
            engines = list(self.engines.values())
        for engine in engines:
            engine.stop_locating()
        if self.client is not None:
            self.client.disconnect()
            logger.info("MQTT连接已断开")

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            logger.info("成功连接到MQTT服务器")
            mqtt_config = self.config_manager.get_mqtt_config()
            for key in ("downlink_topic", "status_topic"):
                topic = mqtt_config[key]
                client.subscribe(topic)
                logger.info("已订阅主题: %s", topic)
        else:
            logger.error("连接失败，返回码: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
            status_topic = self.config_manager.get_mqtt_config()["status_topic"]
            if mqtt.topic_matches_sub(status_topic, msg.topic):
                device_id = msg.topic.rstrip("/").rsplit("/", 1)[-1]
                self.handle_status(device_id, payload)
            else:
                self.handle_readings(payload)
        except Exception as e:
            logger.exception("处理消息时出错: %s", e)
