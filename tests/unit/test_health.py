import json

import httpx
import pytest

from quorum.config import ContainerConfig
from quorum.health import HealthMonitor, PortainerHealthProvider, StaticHealthProvider
from quorum.persistence import Agent


class DownTransport:
    async def ping(self):
        raise ConnectionError("connection refused")


async def _agents(repository):
    for agent in (Agent(role="ceo", tier="head"), Agent(role="cto"), Agent(role="cfo", active=False)):
        await repository.save_agent(agent)


@pytest.mark.asyncio
async def test_all_components_healthy(repository, transport):
    await _agents(repository)
    monitor = HealthMonitor(repository, transport, StaticHealthProvider())

    health = await monitor.get_system_health()

    assert health.status == "healthy"
    assert set(health.components) == {"database", "bus", "container_runtime"}
    assert health.agents.total == 3
    assert health.agents.healthy == 2
    assert health.agents.inactive == 1
    assert await monitor.is_alive()
    assert await monitor.is_ready()


@pytest.mark.asyncio
async def test_bus_failure_is_unhealthy(repository):
    monitor = HealthMonitor(repository, DownTransport(), StaticHealthProvider())

    health = await monitor.run_health_check()

    assert health.status == "unhealthy"
    assert health.components["bus"].error == "connection refused"
    assert monitor.last_health is health
    assert await monitor.is_ready() is False
    assert await monitor.is_alive() is True


@pytest.mark.asyncio
async def test_runtime_or_agent_failure_degrades(repository, transport):
    await _agents(repository)

    runtime_down = HealthMonitor(repository, transport, StaticHealthProvider(available=False))
    assert (await runtime_down.get_system_health()).status == "degraded"

    exited = HealthMonitor(repository, transport, StaticHealthProvider(statuses={"cto": "exited"}))
    health = await exited.get_system_health()
    assert health.status == "degraded"
    assert health.agents.unhealthy == 1
    cto = next(d for d in health.agents.details if d.role == "cto")
    assert cto.container_status == "exited"


def _portainer(handler) -> PortainerHealthProvider:
    config = ContainerConfig(portainer_url="http://portainer.local", portainer_api_key="key")
    client = httpx.AsyncClient(
        base_url=config.portainer_url, transport=httpx.MockTransport(handler)
    )
    return PortainerHealthProvider(config, client=client)


@pytest.mark.asyncio
async def test_portainer_provider_reads_container_state():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/endpoints/1/docker/_ping":
            return httpx.Response(200, text="OK")
        if request.url.path == "/api/endpoints/1/docker/containers/json":
            filters = json.loads(request.url.params["filters"])
            assert filters == {"name": ["quorum-cto"]}
            return httpx.Response(200, json=[{"Names": ["/quorum-cto"], "State": "running"}])
        return httpx.Response(404)

    provider = _portainer(handler)
    try:
        assert await provider.ping() is True
        assert await provider.agent_status(Agent(role="cto")) == "running"
    finally:
        await provider.aclose()


@pytest.mark.asyncio
async def test_portainer_missing_container_makes_agent_unhealthy(repository, transport):
    await repository.save_agent(Agent(role="cmo"))

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/_ping"):
            return httpx.Response(200)
        return httpx.Response(200, json=[])

    provider = _portainer(handler)
    try:
        health = await HealthMonitor(repository, transport, provider).get_system_health()
    finally:
        await provider.aclose()
    assert health.status == "degraded"
    assert health.agents.details[0].container_status == "missing"


def test_portainer_requires_url():
    with pytest.raises(ValueError):
        PortainerHealthProvider(ContainerConfig())
