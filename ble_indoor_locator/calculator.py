from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np

from .models import PositionEstimate, PositionMethod


logger = logging.getLogger(__name__)

DEFAULT_PATH_LOSS_EXPONENT = 2.5
MIN_DISTANCE = 0.1
MAX_DISTANCE = 100.0
DET_EPSILON = 1e-10
# 估计点与信标重合时跳过该信标，避免除零
MIN_RANGE = 1e-4


def estimate_distance(
    rssi: float, tx_power: float, path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
) -> Optional[float]:
    """
    对数路径损耗模型：d = 10 ^ ((txPower - rssi) / (10 * n))
    返回 [0.1, 100] 内的距离（米），无效时返回 None
    """
    if not path_loss_exponent or not path_loss_exponent > 0:
        return None
    if not (math.isfinite(rssi) and math.isfinite(tx_power)):
        return None

    # 比1米参考点还近（干扰或贴近信标）
    if rssi > tx_power:
        return MIN_DISTANCE

    exponent = (tx_power - rssi) / (10.0 * path_loss_exponent)
    try:
        distance = math.pow(10, exponent)
    except OverflowError:
        return None
    if not math.isfinite(distance) or distance <= 0:
        return None
    return min(max(distance, MIN_DISTANCE), MAX_DISTANCE)


def _to_arrays(samples: Sequence) -> Tuple[np.ndarray, np.ndarray]:
    positions = np.array([[float(s.x), float(s.y)] for s in samples], dtype=float).reshape(-1, 2)
    distances = np.array([float(s.distance) for s in samples], dtype=float)
    return positions, distances


class PositionSolver:
    """基于信标坐标与估算距离的二维定位算法"""

    def __init__(
        self,
        max_iterations: int = 20,
        tolerance: float = 0.01,
        det_epsilon: float = DET_EPSILON,
    ):
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.det_epsilon = float(det_epsilon)

    @staticmethod
    def usable(samples: Sequence) -> list:
        """过滤出坐标有限、距离为正的样本"""
        result = []
        for s in samples:
            try:
                x, y, d = float(s.x), float(s.y), float(s.distance)
            except (TypeError, ValueError, AttributeError):
                continue
            if math.isfinite(x) and math.isfinite(y) and math.isfinite(d) and d > 0:
                result.append(s)
        return result

    @staticmethod
    def residual(samples: Sequence, x: float, y: float) -> float:
        """平均距离残差 |‖p - b_i‖ - d_i|"""
        positions, distances = _to_arrays(samples)
        ranges = np.linalg.norm(positions - np.array([x, y]), axis=1)
        return float(np.mean(np.abs(ranges - distances)))

    @staticmethod
    def weighted_centroid(samples: Sequence) -> Optional[Tuple[float, float]]:
        """加权质心，权重为 1/d²；只有一个信标时返回该信标坐标"""
        positions, distances = _to_arrays(samples)
        if len(positions) == 0:
            return None
        if len(positions) == 1:
            return float(positions[0, 0]), float(positions[0, 1])

        weights = 1.0 / distances**2
        total_weight = weights.sum()
        if not np.isfinite(total_weight) or total_weight < 1e-10:
            logger.warning("加权质心失败：总权重无效 %s", total_weight)
            return None

        x, y = (positions * weights[:, None]).sum(axis=0) / total_weight
        if not (np.isfinite(x) and np.isfinite(y)):
            return None
        return float(x), float(y)

    def trilateration(self, samples: Sequence) -> Optional[Tuple[float, float]]:
        """
        线性三边定位（前3个信标）
        以第一个信标为参考，其余圆方程减去参考圆方程，得到 A·[x, y]^T = b
        共线或重合（|det A| < ε）时返回 None
        """
        if len(samples) < 3:
            return None
        positions, distances = _to_arrays(samples[:3])
        ref, d_ref = positions[0], distances[0]

        a = 2.0 * (positions[1:] - ref)
        b = d_ref**2 - distances[1:] ** 2 + np.sum(positions[1:] ** 2, axis=1) - np.sum(ref**2)

        det = float(np.linalg.det(a))
        if abs(det) < self.det_epsilon:
            logger.info("三边定位退化：信标共线或过近 (det=%.3e)", det)
            return None

        try:
            x, y = np.linalg.solve(a, b)
        except np.linalg.LinAlgError:
            logger.info("三边定位矩阵奇异")
            return None

        if not (np.isfinite(x) and np.isfinite(y)):
            logger.warning("三边定位结果无效: (%s, %s)", x, y)
            return None
        return float(x), float(y)

    def least_squares(self, samples: Sequence) -> Optional[Tuple[float, float]]:
        """
        非线性最小二乘（梯度迭代），以加权质心为初值
        步长 1/(n + i)，移动量小于 tolerance 时提前结束
        """
        if len(samples) == 0:
            return None
        positions, distances = _to_arrays(samples)
        start = self.weighted_centroid(samples)
        p = np.array(start, dtype=float) if start is not None else positions.mean(axis=0)

        n = len(samples)
        for i in range(self.max_iterations):
            diff = p - positions
            ranges = np.linalg.norm(diff, axis=1)
            mask = ranges > MIN_RANGE
            errors = ranges[mask] - distances[mask]
            gradient = (errors[:, None] * diff[mask] / ranges[mask][:, None]).sum(axis=0)

            move = gradient / (n + i)
            p = p - move
            if float(np.linalg.norm(move)) < self.tolerance:
                logger.debug("最小二乘收敛于第 %d 次迭代", i + 1)
                break

        if not np.all(np.isfinite(p)):
            logger.warning("最小二乘结果无效: %s", p)
            return None
        return float(p[0]), float(p[1])

    def solve(
        self,
        samples: Sequence,
        method: PositionMethod = PositionMethod.TRILATERATION,
    ) -> Optional[PositionEstimate]:
        """根据信标数量选择算法：
        - 0 个信标：返回 None
        - 1~2 个信标：加权质心
        - >=3 个信标：三边定位，退化时回退最小二乘，最后回退加权质心
        method 为首选算法，不改变 1~2 个信标的规则
        """
        valid = self.usable(samples)
        if not valid:
            logger.debug("无有效信标，跳过定位")
            return None

        xy: Optional[Tuple[float, float]] = None
        used = PositionMethod.WEIGHTED_CENTROID
        if len(valid) >= 3 and method is not PositionMethod.WEIGHTED_CENTROID:
            if method is PositionMethod.TRILATERATION:
                xy = self.trilateration(valid)
                used = PositionMethod.TRILATERATION
            if xy is None:
                xy = self.least_squares(valid)
                used = PositionMethod.LEAST_SQUARES

        if xy is None:
            xy = self.weighted_centroid(valid)
            used = PositionMethod.WEIGHTED_CENTROID

        if xy is None:
            logger.warning("所有定位方法都失败，信标数: %d", len(valid))
            return None

        x, y = xy
        return PositionEstimate(x=x, y=y, method=used, residual=self.residual(valid, x, y))
