"""
Pytest configuration and fixtures for the test suite.
"""
import pytest
from hypothesis import settings

from karaoke_realtime.sync.config import RealtimeConfig

from fakes import FakeChannelFactory, FakeServer

# Configure Hypothesis settings for all tests
# Disable deadline to avoid flaky failures with asyncio-driven properties
settings.register_profile("default", deadline=None)
settings.load_profile("default")


@pytest.fixture
def config():
    """Configuration with short timers."""
    return RealtimeConfig.for_testing()


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def factory(server):
    return FakeChannelFactory(server)
