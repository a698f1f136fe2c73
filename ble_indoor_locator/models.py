from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterator
from enum import Enum


@dataclass(frozen=True)
class BeaconIdentity:
    uuid: str
    major: int
    minor: int

    def __post_init__(self):
        # UUID 比较不区分大小写
        object.__setattr__(self, "uuid", self.uuid.strip().upper())

    @property
    def key(self) -> str:
        return f"{self.uuid}-{self.major}-{self.minor}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class ConfiguredBeacon:
    identity: BeaconIdentity
    x: float
    y: float
    tx_power: float
    name: str = ""


@dataclass(frozen=True)
class RawReading:
    identity: BeaconIdentity
    rssi: int
    timestamp: float


@dataclass(frozen=True)
class ConditionedSample:
    """
    一个处理周期内的有效信标样本（平均后的RSSI + 估算距离 + 信标坐标）
    """

    identity: BeaconIdentity
    rssi: int
    distance: float
    x: float
    y: float
    timestamp: float
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beacon": self.identity.key,
            "name": self.name,
            "rssi": self.rssi,
            "distance": round(self.distance, 3),
            "x": self.x,
            "y": self.y,
        }


class PositionMethod(Enum):
    TRILATERATION = "trilateration"
    LEAST_SQUARES = "least_squares"
    WEIGHTED_CENTROID = "weighted_centroid"
    # 手动设置的位置，不是解算方法
    MANUAL = "manual"


class CalibrationState(Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    SEEDED = "done_seeded"
    UNSEEDED = "done_unseeded"


class FilterState(Enum):
    UNINITIALIZED = "uninitialized"
    SEEDED = "seeded"


class ScannerState(Enum):
    CLOSED = "closed"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"
    AVAILABLE = "available"


class DropReason(Enum):
    UNMATCHED_BEACON = "unmatched_beacon"
    INVALID_DISTANCE = "invalid_distance"
    STALE_SAMPLE = "stale_sample"
    INSUFFICIENT_BEACONS = "insufficient_beacons"
    DEGENERATE_GEOMETRY = "degenerate_geometry"
    CALIBRATION_UNDERRUN = "calibration_underrun"


@dataclass(frozen=True)
class PositionEstimate:
    x: float
    y: float
    method: PositionMethod
    residual: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"x": self.x, "y": self.y, "method": self.method.value, "residual": self.residual}
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class PositionUpdate:
    """
    每个刷新周期最多发出一次的位置更新
    """

    estimate: PositionEstimate
    samples: List[ConditionedSample]
    timestamp: float
    raw: Optional[PositionEstimate] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "timestamp": self.timestamp,
            "position": self.estimate.to_dict(),
            "raw": self.raw.to_dict() if self.raw else None,
            "beacon_count": len(self.samples),
            "beacons": [s.to_dict() for s in self.samples],
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class ReadingBatch:
    """
    扫描端上报的一批信标读数
    格式：uuid,major,minor,rssi;uuid,major,minor,rssi;...;设备ID
    """

    device_id: str
    readings: List[RawReading] = field(default_factory=list)
    timestamp: float = 0.0

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator[RawReading]:
        return iter(self.readings)

    @property
    def is_empty(self):
        return len(self) == 0

    @classmethod
    def parse(cls, data_str: str, now: Optional[float] = None) -> Optional["ReadingBatch"]:
        parts = data_str.strip().split(";")
        if not parts or len(parts) < 2:
            return None
        device_id = parts[-1].strip()
        ts = time.time() if now is None else now
        readings: List[RawReading] = []
        for item in parts[:-1]:
            fields = item.split(",")
            if len(fields) != 4:
                continue
            uuid, major_str, minor_str, rssi_str = fields
            if not uuid.strip():
                continue
            try:
                major = int(major_str)
                minor = int(minor_str)
                rssi = int(float(rssi_str))
            except (ValueError, OverflowError):
                continue
            readings.append(
                RawReading(
                    identity=BeaconIdentity(uuid=uuid, major=major, minor=minor),
                    rssi=rssi,
                    timestamp=ts,
                )
            )
        return cls(device_id=device_id, readings=readings, timestamp=ts)
