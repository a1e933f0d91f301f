import random

import pytest

from device_manager import DeviceManager, ManagerConfig


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(clock: FakeClock):
    # The background timer never fires during a test; sweeps are driven by run_sweep().
    config = ManagerConfig(tick_interval=3600.0, sla_threshold=3.0, log_file=None)
    with DeviceManager(config, clock=clock, rng=random.Random(7)) as mgr:
        yield mgr
