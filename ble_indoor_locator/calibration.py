from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .calculator import PositionSolver
from .models import (
    BeaconIdentity,
    CalibrationState,
    ConditionedSample,
    PositionEstimate,
    PositionMethod,
)


logger = logging.getLogger(__name__)

DEFAULT_CALIBRATION_MS = 3000
MIN_CALIBRATION_BEACONS = 3


@dataclass(frozen=True)
class CalibrationSample:
    distance: float
    rssi: int
    timestamp: float


@dataclass
class BeaconAccumulator:
    """校准窗口内单个信标的样本"""

    identity: BeaconIdentity
    x: float
    y: float
    samples: List[CalibrationSample] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def distance(self) -> float:
        # 窗口内的平均距离，供解算器直接使用
        return sum(s.distance for s in self.samples) / len(self.samples)


class CalibrationController:
    """
    定位开始后的短暂预热阶段：
    IDLE -> CALIBRATING -> SEEDED | UNSEEDED
    窗口内样本只做累积，到期后用各信标平均距离解算一次，结果作为平滑器的初值
    """

    def __init__(
        self,
        duration_ms: float = DEFAULT_CALIBRATION_MS,
        min_beacons: int = MIN_CALIBRATION_BEACONS,
    ):
        self.duration_ms = float(duration_ms)
        self.min_beacons = int(min_beacons)
        self.state = CalibrationState.IDLE
        self.deadline: Optional[float] = None
        self.accumulator: Dict[BeaconIdentity, BeaconAccumulator] = {}

    @property
    def is_calibrating(self) -> bool:
        return self.state is CalibrationState.CALIBRATING

    def start(self, now: float) -> None:
        self.accumulator = {}
        if self.duration_ms <= 0:
            self.deadline = None
            self.state = CalibrationState.UNSEEDED
            logger.info("校准时长为0，跳过校准")
            return
        self.deadline = now + self.duration_ms / 1000.0
        self.state = CalibrationState.CALIBRATING
        logger.info("开始校准，时长 %.0fms", self.duration_ms)

    def accumulate(self, samples: Iterable[ConditionedSample]) -> int:
        if not self.is_calibrating:
            return 0
        count = 0
        for s in samples:
            acc = self.accumulator.get(s.identity)
            if acc is None:
                acc = BeaconAccumulator(identity=s.identity, x=s.x, y=s.y)
                self.accumulator[s.identity] = acc
            acc.samples.append(CalibrationSample(distance=s.distance, rssi=s.rssi, timestamp=s.timestamp))
            count += 1
        return count

    def is_expired(self, now: float) -> bool:
        return self.is_calibrating and self.deadline is not None and now >= self.deadline

    def remaining(self, now: float) -> float:
        if not self.is_calibrating or self.deadline is None:
            return 0.0
        return max(0.0, self.deadline - now)

    def ranked(self) -> List[BeaconAccumulator]:
        """按样本数降序、平均距离升序排列有样本的信标"""
        qualified = [acc for acc in self.accumulator.values() if len(acc) > 0]
        return sorted(qualified, key=lambda acc: (-len(acc), acc.distance))

    def conclude(
        self,
        solver: PositionSolver,
        method: PositionMethod = PositionMethod.TRILATERATION,
    ) -> Optional[PositionEstimate]:
        if not self.is_calibrating:
            return None

        ranked = self.ranked()
        estimate: Optional[PositionEstimate] = None
        if len(ranked) >= self.min_beacons:
            estimate = solver.solve(ranked, method)
        else:
            logger.warning("校准信标不足: %d/%d，平滑器将在首次定位时初始化", len(ranked), self.min_beacons)

        if estimate is None:
            self.state = CalibrationState.UNSEEDED
        else:
            self.state = CalibrationState.SEEDED
            logger.info(
                "校准完成: (%.2f, %.2f), 方法: %s, 信标数: %d",
                estimate.x,
                estimate.y,
                estimate.method.value,
                len(ranked),
            )

        # 无论成功与否都丢弃累积数据
        self.accumulator = {}
        self.deadline = None
        return estimate

    def cancel(self) -> None:
        self.accumulator = {}
        self.deadline = None
        self.state = CalibrationState.IDLE
