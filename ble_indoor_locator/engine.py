from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from .calculator import DEFAULT_PATH_LOSS_EXPONENT, PositionSolver, estimate_distance
from .calibration import DEFAULT_CALIBRATION_MS, CalibrationController
from .errors import ConfigurationError, ScannerUnavailableError
from .filters import (
    DEFAULT_INITIAL_COVARIANCE,
    DEFAULT_MEASUREMENT_NOISE,
    DEFAULT_PROCESS_NOISE,
    DEFAULT_WINDOW_SIZE,
    PositionSmoother,
    RssiConditioner,
)
from .models import (
    BeaconIdentity,
    CalibrationState,
    ConditionedSample,
    ConfiguredBeacon,
    DropReason,
    PositionEstimate,
    PositionMethod,
    PositionUpdate,
    RawReading,
    ScannerState,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    window_size: int = DEFAULT_WINDOW_SIZE
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    calibration_ms: float = DEFAULT_CALIBRATION_MS
    process_noise: float = DEFAULT_PROCESS_NOISE
    measurement_noise: float = DEFAULT_MEASUREMENT_NOISE
    initial_covariance: float = DEFAULT_INITIAL_COVARIANCE
    stale_after_s: float = 5.0
    method: PositionMethod = PositionMethod.TRILATERATION
    max_iterations: int = 20
    tolerance: float = 0.01
    history_size: int = 50

    def validate(self) -> "EngineSettings":
        if int(self.window_size) < 1:
            raise ConfigurationError(f"window_size 必须 >= 1: {self.window_size}")
        if not self.path_loss_exponent > 0:
            raise ConfigurationError(f"路径损耗指数必须为正数: {self.path_loss_exponent}")
        if self.stale_after_s <= 0:
            raise ConfigurationError(f"stale_after_s 必须为正数: {self.stale_after_s}")
        if self.process_noise < 0 or self.measurement_noise <= 0:
            raise ConfigurationError("卡尔曼噪声参数无效")
        if int(self.max_iterations) < 1:
            raise ConfigurationError(f"max_iterations 必须 >= 1: {self.max_iterations}")
        if self.method is PositionMethod.MANUAL:
            raise ConfigurationError("manual 不能作为定位算法")
        return self


PositionCallback = Callable[[PositionUpdate], None]
BeaconsCallback = Callable[[List[ConditionedSample]], None]
ErrorCallback = Callable[[Exception], None]


class LocatingEngine:
    """
    单个接收端的定位引擎：
    读数 -> RSSI平滑 -> 距离估算 -> (校准累积 | 定位解算) -> 卡尔曼平滑 -> 位置回调
    扫描回调与定时刷新可能来自不同线程，所有状态修改都在 self.lock 内完成
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        beacons: Optional[Iterable[ConfiguredBeacon]] = None,
        clock: Callable[[], float] = time.time,
        on_position_update: Optional[PositionCallback] = None,
        on_beacons_detected: Optional[BeaconsCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.lock = threading.Lock()
        self.clock = clock
        self.settings = (settings or EngineSettings()).validate()

        self.on_position_update = on_position_update
        self.on_beacons_detected = on_beacons_detected
        self.on_error = on_error

        self.conditioner = RssiConditioner(self.settings.window_size)
        self.solver = PositionSolver(self.settings.max_iterations, self.settings.tolerance)
        self.calibration = CalibrationController(self.settings.calibration_ms)
        self.smoother = PositionSmoother(
            self.settings.process_noise,
            self.settings.measurement_noise,
            self.settings.initial_covariance,
        )

        self._beacons: Dict[BeaconIdentity, ConfiguredBeacon] = {}
        self._buffer: Dict[BeaconIdentity, ConditionedSample] = {}
        self._history: Deque[PositionUpdate] = deque(maxlen=self.settings.history_size)
        self._locating = False
        self.drop_counts: Counter = Counter()
        # 最近一次解算的耗时与算法
        self._last_calculation_ms: Optional[float] = None
        self._last_method: Optional[PositionMethod] = None

        if beacons is not None:
            self.set_beacons(beacons)

    # ---------- Configuration ----------
    def set_beacons(self, beacons: Iterable[ConfiguredBeacon]) -> int:
        """替换已配置信标快照；缓冲区中的样本在下次刷新时重新过滤"""
        snapshot: Dict[BeaconIdentity, ConfiguredBeacon] = {}
        for beacon in beacons:
            if not all(math.isfinite(v) for v in (beacon.x, beacon.y, beacon.tx_power)):
                logger.warning("忽略无效信标: %s", beacon)
                continue
            snapshot[beacon.identity] = beacon
        with self.lock:
            self._beacons = snapshot
        logger.info("已设置 %d 个有效信标", len(snapshot))
        return len(snapshot)

    @property
    def beacons(self) -> List[ConfiguredBeacon]:
        with self.lock:
            return list(self._beacons.values())

    def configure(self, **changes) -> EngineSettings:
        """运行时调整参数（窗口大小、路径损耗指数、校准时长、R/Q 等）"""
        known = {f.name for f in fields(EngineSettings)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"未知参数: {', '.join(sorted(unknown))}")
        if isinstance(changes.get("method"), str):
            changes["method"] = PositionMethod(changes["method"])

        with self.lock:
            settings = replace(self.settings, **changes).validate()
            if settings.window_size != self.settings.window_size:
                self.conditioner.window_size = settings.window_size
            self.solver.max_iterations = int(settings.max_iterations)
            self.solver.tolerance = float(settings.tolerance)
            # 新的校准时长在下一次定位会话生效
            self.calibration.duration_ms = float(settings.calibration_ms)
            self.smoother.set_noise(settings.process_noise, settings.measurement_noise)
            self.smoother.initial_covariance = float(settings.initial_covariance)
            if settings.history_size != self.settings.history_size:
                self._history = deque(self._history, maxlen=settings.history_size)
            self.settings = settings
        logger.info("参数已更新: %s", changes)
        return settings

    # ---------- Session lifecycle ----------
    @property
    def is_locating(self) -> bool:
        return self._locating

    @property
    def calibration_state(self) -> CalibrationState:
        return self.calibration.state

    def start_locating(self) -> None:
        with self.lock:
            if self._locating:
                logger.info("已经在定位中，忽略重复调用")
                return
            if not self._beacons:
                raise ConfigurationError("没有配置的信标，无法开始定位")
            self._reset_session()
            self._locating = True
            self.calibration.start(self.clock())
        logger.info("开始定位，信标数: %d", len(self._beacons))

    def stop_locating(self) -> bool:
        """停止定位；返回本次调用是否真正结束了会话"""
        with self.lock:
            if not self._locating:
                return False
            self._locating = False
            self.calibration.cancel()
            self._reset_session()
        logger.info("停止定位")
        return True

    def _reset_session(self) -> None:
        self.conditioner.reset()
        self._buffer = {}
        self.smoother.reset()
        self._history.clear()
        self.drop_counts.clear()
        self._last_calculation_ms = None
        self._last_method = None

    def handle_scanner_state(self, state: ScannerState | str) -> bool:
        """扫描端状态变化；蓝牙不可用时终止当前会话并通过 on_error 上报"""
        state = ScannerState(state)
        if state is ScannerState.AVAILABLE:
            return False
        # 检查与停止在同一把锁内完成
        if not self.stop_locating():
            return False
        logger.warning("蓝牙不可用 (%s)，定位已停止", state.value)
        if self.on_error is not None:
            self.on_error(ScannerUnavailableError(state.value))
        return True

    # ---------- Core processing ----------
    def ingest(self, readings: Iterable[RawReading]) -> List[ConditionedSample]:
        """处理一批读数，返回有效样本（用于界面提示）"""
        accepted: List[ConditionedSample] = []
        with self.lock:
            if not self._locating:
                return accepted
            for reading in readings:
                beacon = self._beacons.get(reading.identity)
                if beacon is None:
                    self.drop_counts[DropReason.UNMATCHED_BEACON] += 1
                    continue

                rssi = self.conditioner.observe(reading.identity, reading.rssi)
                if rssi is None:
                    self.drop_counts[DropReason.INVALID_DISTANCE] += 1
                    logger.debug("无效RSSI，丢弃 %s (rssi=%s)", reading.identity, reading.rssi)
                    continue
                distance = estimate_distance(rssi, beacon.tx_power, self.settings.path_loss_exponent)
                if distance is None:
                    self.drop_counts[DropReason.INVALID_DISTANCE] += 1
                    logger.debug("无效距离，丢弃 %s (rssi=%s)", reading.identity, rssi)
                    continue

                sample = ConditionedSample(
                    identity=reading.identity,
                    rssi=rssi,
                    distance=distance,
                    x=beacon.x,
                    y=beacon.y,
                    timestamp=reading.timestamp,
                    name=beacon.name,
                )
                # 每个信标只保留最新样本
                self._buffer[reading.identity] = sample
                accepted.append(sample)
            self.calibration.accumulate(accepted)

        if accepted and self.on_beacons_detected is not None:
            self.on_beacons_detected(accepted)
        return accepted

    def flush(self, now: Optional[float] = None) -> Optional[PositionUpdate]:
        """定时刷新：剔除过期样本并解算，每次最多产生一个位置更新"""
        now = self.clock() if now is None else now
        with self.lock:
            if not self._locating:
                return None
            samples = self._evict(now)

            if self.calibration.is_calibrating:
                if not self.calibration.is_expired(now):
                    return None
                seed = self.calibration.conclude(self.solver, self.settings.method)
                if seed is not None:
                    self.smoother.seed(seed)
                    update = self._record(seed, seed, samples, now)
                else:
                    self.drop_counts[DropReason.CALIBRATION_UNDERRUN] += 1
                    update = self._solve(samples, now)
            else:
                update = self._solve(samples, now)

        if update is not None and self.on_position_update is not None:
            self.on_position_update(update)
        return update

    def _evict(self, now: float) -> List[ConditionedSample]:
        stale_after = self.settings.stale_after_s
        fresh: Dict[BeaconIdentity, ConditionedSample] = {}
        for identity, sample in self._buffer.items():
            if identity not in self._beacons:
                self.drop_counts[DropReason.UNMATCHED_BEACON] += 1
                continue
            if now - sample.timestamp > stale_after:
                self.drop_counts[DropReason.STALE_SAMPLE] += 1
                continue
            fresh[identity] = sample
        self._buffer = fresh
        return list(fresh.values())

    def _solve(self, samples: List[ConditionedSample], now: float) -> Optional[PositionUpdate]:
        ordered = sorted(samples, key=lambda s: s.distance)
        started = time.perf_counter()
        raw = self.solver.solve(ordered, self.settings.method) if ordered else None
        self._last_calculation_ms = (time.perf_counter() - started) * 1000.0
        if raw is None:
            # 保留上一次平滑位置
            self.drop_counts[DropReason.INSUFFICIENT_BEACONS] += 1
            return None

        if (
            len(ordered) >= 3
            and self.settings.method is PositionMethod.TRILATERATION
            and raw.method is not PositionMethod.TRILATERATION
        ):
            self.drop_counts[DropReason.DEGENERATE_GEOMETRY] += 1

        smoothed = self.smoother.smooth(raw)
        return self._record(smoothed, raw, ordered, now)

    def _record(
        self,
        estimate: PositionEstimate,
        raw: PositionEstimate,
        samples: List[ConditionedSample],
        now: float,
    ) -> PositionUpdate:
        update = PositionUpdate(estimate=estimate, samples=list(samples), timestamp=now, raw=raw)
        self._history.append(update)
        self._last_method = raw.method
        log = logger.info if len(self._history) == 1 else logger.debug
        log(
            "位置更新: (%.2f, %.2f), 方法: %s, 信标数: %d",
            estimate.x,
            estimate.y,
            estimate.method.value,
            len(samples),
        )
        return update

    def set_position(self, x: float, y: float) -> Optional[PositionUpdate]:
        """手动设置当前位置（测试或人工校正），平滑器以该位置为新的初值"""
        try:
            x, y = float(x), float(y)
        except (TypeError, ValueError):
            logger.error("设置位置失败：无效的坐标 (%r, %r)", x, y)
            return None
        if not (math.isfinite(x) and math.isfinite(y)):
            logger.error("设置位置失败：无效的坐标 (%r, %r)", x, y)
            return None

        estimate = PositionEstimate(x=x, y=y, method=PositionMethod.MANUAL)
        with self.lock:
            self.smoother.seed(estimate)
            update = self._record(estimate, estimate, [], self.clock())

        if self.on_position_update is not None:
            self.on_position_update(update)
        return update

    # ---------- Accessors ----------
    @property
    def current_position(self) -> Optional[PositionEstimate]:
        with self.lock:
            return self._history[-1].estimate if self._history else None

    def position_history(self, limit: Optional[int] = None) -> List[PositionUpdate]:
        with self.lock:
            history = list(self._history)
        if limit is None or limit <= 0:
            return history
        return history[-limit:]

    def buffered_samples(self) -> List[ConditionedSample]:
        with self.lock:
            return list(self._buffer.values())

    def debug_info(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "locating": self._locating,
                "calibration_state": self.calibration.state.value,
                "buffered_beacons": len(self._buffer),
                "last_method": self._last_method.value if self._last_method else None,
                "calculation_ms": self._last_calculation_ms,
                "drops": {reason.value: count for reason, count in self.drop_counts.items()},
            }
