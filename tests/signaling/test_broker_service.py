import asyncio

import pytest

from application.services.broker_service import BrokerService
from application.services.signaling_link import SignalingLink
from infrastructure.realtime.brokers import InMemoryBroker


@pytest.mark.asyncio
async def test_shutdown_waits_for_registered_clients_to_leave():
    hub = InMemoryBroker()
    service = BrokerService(hub=hub)
    await service.start()
    link = SignalingLink(connector=hub, register_timeout=1.0)
    assert await link.connect("memory://test", "alice")

    async def leave_later():
        await asyncio.sleep(0.05)
        await link.disconnect()

    leaver = asyncio.create_task(leave_later())
    await service.shutdown(drain_timeout=2.0, poll_interval=0.01)
    await leaver
    assert len(service.registry) == 0
    assert hub.connection_ids == set()


@pytest.mark.asyncio
async def test_shutdown_refuses_new_registrations_while_draining():
    hub = InMemoryBroker()
    service = BrokerService(hub=hub)
    await service.start()
    first = SignalingLink(connector=hub, register_timeout=1.0)
    assert await first.connect("memory://test", "alice")

    shutdown = asyncio.create_task(service.shutdown(drain_timeout=0.3, poll_interval=0.01))
    await asyncio.sleep(0.02)
    late = SignalingLink(connector=hub, register_timeout=1.0)
    assert not await late.connect("memory://test", "bob")
    assert not service.registry.is_registered("bob")
    await shutdown
    await first.disconnect()


@pytest.mark.asyncio
async def test_shutdown_times_out_and_closes_hub():
    hub = InMemoryBroker()
    service = BrokerService(hub=hub)
    await service.start()
    link = SignalingLink(connector=hub, register_timeout=1.0)
    assert await link.connect("memory://test", "alice")
    await service.shutdown(drain_timeout=0.05, poll_interval=0.01)
    assert service.registry.is_registered("alice")
    assert not link.is_connected
    await link.disconnect()
