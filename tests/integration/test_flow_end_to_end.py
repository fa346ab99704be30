"""End-to-end flow runs over a mocked HTTP API."""

import json

import httpx
import pytest

from gassapi.config import EnvironmentConfig, GassapiConfig
from gassapi.flows.executor import FlowExecutor
from gassapi.flows.models import FlowConfig, FlowDefinition, FlowStatus
from gassapi.flows.runner import HttpxStepRunner
from gassapi.flows.state import FlowStateManager
from gassapi.session import Scope, SessionStore


def _api(request: httpx.Request) -> httpx.Response:
    """Tiny user API: login, then authenticated profile and orders."""
    path = request.url.path
    if path == "/login" and request.method == "POST":
        creds = json.loads(request.content)
        if creds.get("password") != "secret":
            return httpx.Response(401, json={"error": "bad credentials"})
        return httpx.Response(200, json={"token": "tok-1", "user": {"id": 7}})

    if request.headers.get("authorization") != "Bearer tok-1":
        return httpx.Response(401, json={"error": "unauthorized"})
    if path == "/users/7":
        return httpx.Response(200, json={"id": 7, "name": "Ada"})
    if path == "/users/7/orders":
        return httpx.Response(200, json=[{"id": 1}, {"id": 2}])
    return httpx.Response(404, json={"error": "not found"})


FLOW = {
    "id": "login-flow",
    "name": "Login and fetch profile",
    "steps": [
        {
            "id": "login",
            "name": "Login",
            "method": "POST",
            "url": "{{env.BASE_URL}}/login",
            "body": {"username": "{{input.username}}", "password": "{{input.password}}"},
            "outputs": {"token": "body.token", "userId": "body.user.id"},
        },
        {
            "id": "profile",
            "name": "Profile",
            "method": "GET",
            "url": "{{env.BASE_URL}}/users/{{runtime.userId}}",
            "headers": {"Authorization": "Bearer {{step.login.body.token}}"},
        },
        {
            "id": "orders",
            "name": "Orders",
            "method": "GET",
            "url": "{{env.BASE_URL}}/users/{{step.profile.body.id}}/orders",
            "headers": {"Authorization": "Bearer {{runtime.token}}"},
        },
    ],
}


def _session() -> SessionStore:
    config = GassapiConfig(
        environments={"dev": EnvironmentConfig(variables={"BASE_URL": "http://api.test"})},
        active_environment="dev",
    )
    return SessionStore.from_config(config)


@pytest.mark.asyncio
async def test_chained_login_flow():
    definition = FlowDefinition.model_validate(FLOW)
    session = _session()
    manager = FlowStateManager()
    client = httpx.AsyncClient(transport=httpx.MockTransport(_api))

    async with HttpxStepRunner(client=client) as runner:
        executor = FlowExecutor(runner, manager, session)
        report = await executor.run(
            definition.id,
            definition.steps,
            definition.config,
            {"username": "ada", "password": "secret"},
        )

    assert report.status is FlowStatus.COMPLETED, report.errors
    assert [r.response.status for r in report.results] == [200, 200, 200]
    assert report.results[2].request.url == "http://api.test/users/7/orders"
    assert report.results[2].response.body == [{"id": 1}, {"id": 2}]
    assert report.variables == {"token": "tok-1", "userId": 7}
    profile = session.flow_view(definition.id).get(Scope.STEP, "profile")
    assert profile["body"]["name"] == "Ada"

    history = manager.get_flow_history("login-flow")
    assert history[-1].status is FlowStatus.COMPLETED
    assert manager.get_flow_stats().completed == 1


@pytest.mark.asyncio
async def test_failed_login_stops_flow():
    definition = FlowDefinition.model_validate(FLOW)
    client = httpx.AsyncClient(transport=httpx.MockTransport(_api))

    async with HttpxStepRunner(client=client) as runner:
        executor = FlowExecutor(runner, FlowStateManager(), _session())
        report = await executor.run(
            definition.id,
            definition.steps,
            definition.config,
            {"username": "ada", "password": "wrong"},
        )

    assert report.status is FlowStatus.FAILED
    assert report.executed_steps == 1
    assert report.results[0].error == "HTTP 401"


@pytest.mark.asyncio
async def test_parallel_requests_share_session_inputs():
    session = _session()
    session.set(Scope.RUNTIME, "token", "tok-1")
    steps = FlowDefinition.model_validate(
        {
            "steps": [
                {
                    "id": f"p{i}",
                    "name": f"Profile {i}",
                    "method": "GET",
                    "url": "{{env.BASE_URL}}/users/7",
                    "headers": {"Authorization": "Bearer {{runtime.token}}"},
                }
                for i in range(6)
            ]
        }
    ).steps
    client = httpx.AsyncClient(transport=httpx.MockTransport(_api))

    async with HttpxStepRunner(client=client) as runner:
        executor = FlowExecutor(runner, FlowStateManager(), session)
        report = await executor.run(
            "fanout", steps, FlowConfig(parallel=True, max_concurrency=3)
        )

    assert report.success, report.errors
    assert sorted(r.step_id for r in report.results) == [f"p{i}" for i in range(6)]
    assert session.flow_view("fanout").state.current_headers == {}
