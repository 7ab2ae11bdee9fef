import pytest

from audio.graph import OfflineDevice
from routing.bus import EventBus
from sampler.engine import VoiceEngine
from tests.helpers import DEVICE_SR, sine


@pytest.fixture
def device():
    return OfflineDevice(sr=DEVICE_SR, blocksize=10)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def engine(device, bus):
    return VoiceEngine(device, bus=bus)


@pytest.fixture
def tone():
    # one second at the device rate
    return sine(50.0, 1.0, DEVICE_SR)
