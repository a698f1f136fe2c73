from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List

import pandas as pd

from .beacon_store import BeaconStore
from .config_manager import ConfigManager
from .engine import LocatingEngine
from .models import BeaconIdentity, PositionUpdate, RawReading
from .mqtt_processor import MQTTDataProcessor


logger = logging.getLogger(__name__)

REPLAY_COLUMNS = ["timestamp", "uuid", "major", "minor", "rssi"]


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class SimulatedClock:
    """回放时使用的时钟，由读数时间戳推进"""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def replay_frame(engine: LocatingEngine, df: pd.DataFrame, flush_interval: float) -> List[PositionUpdate]:
    """
    按时间顺序把读数送入引擎，并按 flush_interval 模拟定时刷新
    df 列：timestamp(秒), uuid, major, minor, rssi
    """
    missing = [c for c in REPLAY_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"回放文件缺少列: {', '.join(missing)}")
    if df.empty:
        return []

    df = df.sort_values("timestamp", kind="stable")
    clock = SimulatedClock(float(df["timestamp"].iloc[0]))
    engine.clock = clock
    engine.start_locating()

    updates: List[PositionUpdate] = []
    next_flush = clock.now + flush_interval
    for ts, group in df.groupby("timestamp", sort=True):
        ts = float(ts)
        while next_flush <= ts:
            clock.now = next_flush
            update = engine.flush(next_flush)
            if update is not None:
                updates.append(update)
            next_flush += flush_interval
        clock.now = ts
        engine.ingest(
            RawReading(
                identity=BeaconIdentity(uuid=str(row.uuid), major=int(row.major), minor=int(row.minor)),
                rssi=int(row.rssi),
                timestamp=ts,
            )
            for row in group.itertuples(index=False)
        )

    clock.now = next_flush
    update = engine.flush(next_flush)
    if update is not None:
        updates.append(update)
    engine.stop_locating()
    return updates


def updates_to_frame(updates: List[PositionUpdate]) -> pd.DataFrame:
    rows = []
    for u in updates:
        rows.append(
            {
                "timestamp": u.timestamp,
                "x": u.estimate.x,
                "y": u.estimate.y,
                "method": u.estimate.method.value,
                "raw_x": u.raw.x if u.raw else None,
                "raw_y": u.raw.y if u.raw else None,
                "residual": u.estimate.residual,
                "beacon_count": len(u.samples),
            }
        )
    return pd.DataFrame(rows, columns=["timestamp", "x", "y", "method", "raw_x", "raw_y", "residual", "beacon_count"])


def run_mqtt(args):
    config = ConfigManager(args.config)
    processor = MQTTDataProcessor(config)

    t = threading.Thread(target=processor.start_mqtt_client, daemon=True)
    t.start()

    # graceful shutdown
    def handle_sigint(sig, frame):
        processor.stop_mqtt_client()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()


def run_replay(args):
    config = ConfigManager(args.config)
    store = BeaconStore(config)
    store.load(args.beacons)
    engine = LocatingEngine(config.engine_settings(), store.snapshot())

    df = pd.read_csv(args.csv, dtype={"uuid": str})
    updates = replay_frame(engine, df, config.get_flush_interval())
    frame = updates_to_frame(updates)
    if args.output:
        frame.to_csv(args.output, index=False, encoding="utf-8")
        logger.info("回放完成，%d 个位置已写入 %s", len(frame), args.output)
    else:
        for u in updates:
            print(f"{u.timestamp:.3f} ({u.estimate.x:.2f}, {u.estimate.y:.2f}) {u.estimate.method.value} beacons={len(u.samples)}")
    return 0


def set_path_loss(args):
    config = ConfigManager(args.config)
    if not args.value > 0:
        logger.error("路径损耗指数必须为正数: %s", args.value)
        return 1
    config.set_rssi_model_config(args.value, args.window)
    logger.info("路径损耗指数已更新为 %s", args.value)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ble-indoor-locator", description="BLE Indoor Locator CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BLE_INDOOR_CONFIG")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行 MQTT 服务端监听")
    p_run.set_defaults(func=run_mqtt)

    p_replay = sub.add_parser("replay", help="离线回放读数CSV (timestamp,uuid,major,minor,rssi)")
    p_replay.add_argument("csv", help="读数CSV文件")
    p_replay.add_argument("--beacons", default=None, help="信标CSV，默认使用配置中的 paths.beacon_db")
    p_replay.add_argument("--output", "-o", default=None, help="输出位置CSV，缺省时打印到终端")
    p_replay.set_defaults(func=run_replay)

    p_factor = sub.add_parser("set-path-loss", help="设置路径损耗指数并保存到配置")
    p_factor.add_argument("value", type=float)
    p_factor.add_argument("--window", type=int, default=None, help="同时设置RSSI平滑窗口大小")
    p_factor.set_defaults(func=set_path_loss)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    # 无子命令/无参数时默认启动服务器
    if not hasattr(args, "func"):
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    main()
