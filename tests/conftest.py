import pytest

from attendance_engine.config import Config
from attendance_engine.engine import AttendanceEngine

from helpers import DIM, FakeClock


@pytest.fixture
def config():
    return Config(embedding_dim=DIM)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(config, clock):
    return AttendanceEngine(config, clock=clock)
