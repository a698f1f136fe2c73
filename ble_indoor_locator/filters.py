from __future__ import annotations

import math
from collections import deque
from typing import Deque, Dict, Optional

from .models import BeaconIdentity, FilterState, PositionEstimate


DEFAULT_WINDOW_SIZE = 5
DEFAULT_PROCESS_NOISE = 0.01
DEFAULT_MEASUREMENT_NOISE = 4.0
DEFAULT_INITIAL_COVARIANCE = 1.0


class RssiConditioner:
    """每个信标一个滑动窗口，对原始RSSI做算术平均"""

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE):
        if window_size < 1:
            raise ValueError(f"window_size 必须 >= 1, got {window_size}")
        self._window_size = int(window_size)
        self._history: Dict[BeaconIdentity, Deque[int]] = {}

    @property
    def window_size(self) -> int:
        return self._window_size

    @window_size.setter
    def window_size(self, value: int) -> None:
        if value < 1:
            raise ValueError(f"window_size 必须 >= 1, got {value}")
        # 窗口大小变化后旧历史不再可比，直接清空
        self._window_size = int(value)
        self._history.clear()

    def observe(self, identity: BeaconIdentity, raw_rssi: float) -> Optional[int]:
        """返回窗口平均RSSI；非有限值不进入窗口，返回 None"""
        if not math.isfinite(raw_rssi):
            return None
        history = self._history.get(identity)
        if history is None:
            history = deque(maxlen=self._window_size)
            self._history[identity] = history
        history.append(raw_rssi)
        # 四舍五入到整数 dBm（.5 向正无穷方向）
        return int(math.floor(sum(history) / len(history) + 0.5))

    def history(self, identity: BeaconIdentity) -> list:
        return list(self._history.get(identity, ()))

    def reset(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)


class ScalarKalmanFilter:
    """
    一维卡尔曼滤波（状态转移为恒等）
    R: 过程噪声，取小值偏向平滑
    Q: 测量噪声，取大值表示不信任单次解算
    """

    def __init__(
        self,
        process_noise: float = DEFAULT_PROCESS_NOISE,
        measurement_noise: float = DEFAULT_MEASUREMENT_NOISE,
    ):
        self.R = float(process_noise)
        self.Q = float(measurement_noise)
        self.x: Optional[float] = None
        self.P: Optional[float] = None
        self.state = FilterState.UNINITIALIZED

    @property
    def is_seeded(self) -> bool:
        return self.state is FilterState.SEEDED

    def initialize(self, estimate: float, covariance: float = DEFAULT_INITIAL_COVARIANCE) -> None:
        self.x = float(estimate)
        self.P = float(covariance)
        self.state = FilterState.SEEDED

    def update(self, measurement: float) -> float:
        if self.state is not FilterState.SEEDED:
            raise RuntimeError("滤波器未初始化，先调用 initialize()")

        # 预测
        x_pred = self.x
        P_pred = self.P + self.R

        # 校正
        K = P_pred / (P_pred + self.Q)
        self.x = x_pred + K * (float(measurement) - x_pred)
        self.P = (1 - K) * P_pred
        return self.x

    def reset(self) -> None:
        self.x = None
        self.P = None
        self.state = FilterState.UNINITIALIZED


class PositionSmoother:
    """x、y 两个独立的一维卡尔曼滤波"""

    def __init__(
        self,
        process_noise: float = DEFAULT_PROCESS_NOISE,
        measurement_noise: float = DEFAULT_MEASUREMENT_NOISE,
        initial_covariance: float = DEFAULT_INITIAL_COVARIANCE,
    ):
        self.initial_covariance = float(initial_covariance)
        self.kf_x = ScalarKalmanFilter(process_noise, measurement_noise)
        self.kf_y = ScalarKalmanFilter(process_noise, measurement_noise)

    @property
    def state(self) -> FilterState:
        if self.kf_x.is_seeded and self.kf_y.is_seeded:
            return FilterState.SEEDED
        return FilterState.UNINITIALIZED

    @property
    def is_seeded(self) -> bool:
        return self.state is FilterState.SEEDED

    def set_noise(self, process_noise: float, measurement_noise: float) -> None:
        for kf in (self.kf_x, self.kf_y):
            kf.R = float(process_noise)
            kf.Q = float(measurement_noise)

    def seed(self, estimate: PositionEstimate) -> None:
        self.kf_x.initialize(estimate.x, self.initial_covariance)
        self.kf_y.initialize(estimate.y, self.initial_covariance)

    def smooth(self, estimate: PositionEstimate) -> PositionEstimate:
        # 未初始化时用第一个有效位置作为初始状态
        if not self.is_seeded:
            self.seed(estimate)
            return estimate
        return PositionEstimate(
            x=self.kf_x.update(estimate.x),
            y=self.kf_y.update(estimate.y),
            method=estimate.method,
            residual=estimate.residual,
        )

    def reset(self) -> None:
        self.kf_x.reset()
        self.kf_y.reset()
