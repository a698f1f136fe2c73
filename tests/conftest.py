from __future__ import annotations

from types import SimpleNamespace

import pytest

from ble_indoor_locator.models import BeaconIdentity, ConfiguredBeacon, RawReading


UUID = "0000FFFF-0000-1000-8000-00805F9B34FB"

A = BeaconIdentity(UUID, 1, 1)
B = BeaconIdentity(UUID, 1, 2)
C = BeaconIdentity(UUID, 1, 3)
UNKNOWN = BeaconIdentity("FFFFFFFF-0000-1000-8000-00805F9B34FB", 9, 9)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def reading(identity: BeaconIdentity, rssi: int, timestamp: float) -> RawReading:
    return RawReading(identity=identity, rssi=rssi, timestamp=timestamp)


def ranged(x: float, y: float, distance: float) -> SimpleNamespace:
    return SimpleNamespace(x=x, y=y, distance=distance)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(0.0)


@pytest.fixture
def triangle_beacons() -> list[ConfiguredBeacon]:
    return [
        ConfiguredBeacon(identity=A, x=0.0, y=0.0, tx_power=-59, name="A"),
        ConfiguredBeacon(identity=B, x=10.0, y=0.0, tx_power=-59, name="B"),
        ConfiguredBeacon(identity=C, x=0.0, y=10.0, tx_power=-59, name="C"),
    ]


@pytest.fixture
def collinear_beacons() -> list[ConfiguredBeacon]:
    return [
        ConfiguredBeacon(identity=A, x=0.0, y=0.0, tx_power=-59),
        ConfiguredBeacon(identity=B, x=1.0, y=0.0, tx_power=-59),
        ConfiguredBeacon(identity=C, x=2.0, y=0.0, tx_power=-59),
    ]
