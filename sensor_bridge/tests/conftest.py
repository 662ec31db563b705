"""Shared pytest fixtures for sensor bridge tests."""

from __future__ import annotations

from typing import List

import pytest
import pytest_asyncio

from sensor_bridge.connection_manager import ConnectionManager
from sensor_bridge.fanout import EventFanout
from sensor_bridge.schemas import PortDescriptor
from sensor_bridge.tests.fakes import FakeLinkFactory, RecordingSubscriber, make_config


@pytest.fixture()
def link_factory() -> FakeLinkFactory:
    return FakeLinkFactory()


@pytest.fixture()
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture()
def acm_port() -> PortDescriptor:
    return PortDescriptor(path="/dev/ttyACM0", manufacturer="Arduino (www.arduino.cc)")


class BridgeHarness:
    """Builds manager + fan-out pairs that all publish to one recorder.

    Usage: ``manager = bridge(factory, **config_overrides)``; call
    ``await bridge.flush()`` before asserting on the recorder.
    """

    def __init__(self, recorder: RecordingSubscriber) -> None:
        self._recorder = recorder
        self.managers: List[ConnectionManager] = []
        self.fanouts: List[EventFanout] = []

    def __call__(self, factory, *, discover=None, **overrides) -> ConnectionManager:
        fanout = EventFanout(delivery_timeout=0.5)
        fanout.subscribe(self._recorder)
        kwargs = {}
        if discover is not None:
            kwargs["discover"] = discover
        manager = ConnectionManager(
            make_config(**overrides),
            link_factory=factory,
            publish=fanout.publish,
            **kwargs,
        )
        fanout.set_command_sink(manager.write)
        self.managers.append(manager)
        self.fanouts.append(fanout)
        return manager

    @property
    def fanout(self) -> EventFanout:
        return self.fanouts[-1]

    async def flush(self) -> None:
        for fanout in self.fanouts:
            await fanout.flush()

    async def aclose(self) -> None:
        for manager in self.managers:
            await manager.disconnect()
        for fanout in self.fanouts:
            await fanout.close()


@pytest_asyncio.fixture()
async def bridge(recorder: RecordingSubscriber):
    """``BridgeHarness`` whose managers are torn down afterwards."""
    harness = BridgeHarness(recorder)
    yield harness
    await harness.aclose()
