"""
Testes do servidor MCP: tools sobre a API do ClickUp (mockada com respx),
dispatcher JSON-RPC e aplicação HTTP (Starlette TestClient).
"""
import json
import os
import sys
import time

import pytest
import respx
from httpx import Response
from pydantic import ValidationError
from starlette.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

os.environ.setdefault("CLICKUP_API_TOKEN", "pk_test_token_123456789")

import clickup_mcp

# Patch direto no módulo após importar
clickup_mcp.API_TOKEN = "pk_test_token_123456789"
clickup_mcp.TEAM_ID = "team123"

from clickup_mcp import (
    AddTimeEntryInput,
    BulkUpdateTasksInput,
    ClickUpAPIError,
    CreateTaskInput,
    DuplicateTaskInput,
    EventBroker,
    GetListsInput,
    GetMetricsInput,
    GetSpacesInput,
    GetTaskInput,
    GetTasksInput,
    GetTimeEntriesInput,
    MoveTaskInput,
    ReadOnlyModeError,
    RpcDispatcher,
    SSEMessage,
    SearchTasksInput,
    SessionStore,
    ToolNotFoundError,
    ToolRegistry,
    UpdateTaskInput,
    _structure_cache,
    _tasks_cache,
    add_time_entry,
    bulk_update_tasks,
    create_app,
    create_task,
    duplicate_task,
    fuzzy_search_tasks,
    get_lists,
    get_metrics,
    get_spaces,
    get_task,
    get_tasks,
    get_time_entries,
    mcp,
    move_task,
    search_tasks,
    to_timestamp_ms,
    tools,
)

API_BASE = "https://api.clickup.com/api/v2"


@pytest.fixture(autouse=True)
def clear_caches():
    """Limpa caches antes de cada teste."""
    _structure_cache.clear()
    _tasks_cache.clear()
    yield


def rpc(method, params=None, request_id=1):
    body = {"jsonrpc": "2.0", "method": method, "params": params or {}}
    if request_id is not None:
        body["id"] = request_id
    return body


# ============================================================================
# REGISTRO DE TESTE (sem FastMCP)
# ============================================================================

class RecordingBroker(EventBroker):
    """Broker que guarda tudo o que foi publicado."""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, data, event=None):
        self.published.append(SSEMessage(data, event))
        return super().publish(data, event)


@pytest.fixture
def registry():
    """Registro com tools em memória, sem API do ClickUp."""
    registry = ToolRegistry()

    @registry.tool(
        "create_task", "Criar Task", CreateTaskInput,
        read_only=False, notification="task_created"
    )
    async def fake_create(params):
        """Cria task em memória."""
        return {"id": "new1", "name": params.name, "list": {"id": params.list_id}}

    @registry.tool("update_task", "Atualizar Task", UpdateTaskInput, read_only=False, notification="task_updated")
    async def fake_update(params):
        return {"id": params.task_id, "status": {"status": params.status}}

    @registry.tool("get_task", "Buscar Task", GetTaskInput)
    async def fake_get(params):
        raise ClickUpAPIError("Task not found", 404, f"/task/{params.task_id}", "ITEM_013")

    return registry


# ============================================================================
# TESTES DE INPUT
# ============================================================================

class TestInputModels:
    """Inputs aceitam snake_case e camelCase."""

    def test_camel_case_aliases(self):
        params = CreateTaskInput.model_validate({
            "listId": "list1",
            "name": "  Nova task  ",
            "dueDate": "2024-01-01T00:00:00Z",
            "customFields": {"field1": "valor"},
        })

        assert params.list_id == "list1"
        assert params.name == "Nova task"
        assert params.due_date == 1704067200000
        assert params.custom_fields == {"field1": "valor"}

    def test_snake_case_still_accepted(self):
        params = MoveTaskInput(task_id="t1", target_list_id="list2")
        assert params.target_list_id == "list2"

    def test_get_lists_requires_parent(self):
        with pytest.raises(ValidationError):
            GetListsInput()

    def test_priority_range(self):
        with pytest.raises(ValidationError):
            CreateTaskInput(list_id="l", name="x", priority=5)

    def test_search_defaults(self):
        params = SearchTasksInput(query="relatório")
        assert params.threshold == 0.6
        assert params.limit == 25


class TestTimestamps:
    """Datas aceitam epoch ms ou ISO 8601."""

    @pytest.mark.parametrize("value,expected", [
        (1704067200000, 1704067200000),
        ("1704067200000", 1704067200000),
        ("2024-01-01T00:00:00Z", 1704067200000),
        ("2024-01-01T00:00:00", 1704067200000),
        (None, None),
        ("", None),
    ])
    def test_conversion(self, value, expected):
        assert to_timestamp_ms(value) == expected

    def test_invalid_date(self):
        with pytest.raises(ValueError):
            to_timestamp_ms("amanhã")

    def test_invalid_date_in_model(self):
        with pytest.raises(ValidationError):
            GetTasksInput(list_id="l", updated_after="ontem")


# ============================================================================
# TESTES DE TOOLS - ESTRUTURA E TASKS
# ============================================================================

class TestStructureTools:
    """Tools de spaces e lists."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_spaces_uses_default_team(self, mock_spaces_response):
        route = respx.get(f"{API_BASE}/team/team123/space").mock(
            return_value=Response(200, json=mock_spaces_response)
        )

        result = await get_spaces(GetSpacesInput())

        assert result == mock_spaces_response
        assert route.calls[0].request.headers["Authorization"] == "pk_test_token_123456789"

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_spaces_cached(self, mock_spaces_response):
        """Segunda chamada vem do cache."""
        route = respx.get(f"{API_BASE}/team/team123/space").mock(
            return_value=Response(200, json=mock_spaces_response)
        )

        await get_spaces(GetSpacesInput())
        await get_spaces(GetSpacesInput())

        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_lists_folderless(self):
        route = respx.get(f"{API_BASE}/space/space1/list").mock(
            return_value=Response(200, json={"lists": [{"id": "list1"}]})
        )

        result = await get_lists(GetListsInput(space_id="space1"))

        assert result["lists"][0]["id"] == "list1"
        assert route.call_count == 1


class TestTaskTools:
    """Tools de tasks."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_tasks_polling_filters(self, mock_tasks_response):
        route = respx.get(f"{API_BASE}/list/list1/task").mock(
            return_value=Response(200, json=mock_tasks_response)
        )

        params = GetTasksInput.model_validate({"listId": "list1", "updatedAfter": 1704067200000})
        result = await get_tasks(params)

        assert len(result["tasks"]) == 3
        query = route.calls[0].request.url.params
        assert query["date_updated_gt"] == "1704067200000"
        assert query["include_closed"] == "true"

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_task_not_found(self):
        """4xx vira ClickUpAPIError sem retry."""
        route = respx.get(f"{API_BASE}/task/missing").mock(
            return_value=Response(404, json={"err": "Task not found", "ECODE": "ITEM_013"})
        )

        with pytest.raises(ClickUpAPIError) as exc_info:
            await get_task(GetTaskInput(task_id="missing"))

        assert exc_info.value.status_code == 404
        assert exc_info.value.err_code == "ITEM_013"
        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_retry_on_500_error(self, mock_task):
        """5xx é retentado e a segunda tentativa vence."""
        route = respx.get(f"{API_BASE}/task/abc123").mock(
            side_effect=[
                Response(500, json={"err": "Internal Server Error"}),
                Response(200, json=mock_task),
            ]
        )

        result = await get_task(GetTaskInput(task_id="abc123"))

        assert route.call_count == 2
        assert result["id"] == "abc123"

    @respx.mock
    @pytest.mark.asyncio
    async def test_create_task_payload(self):
        route = respx.post(f"{API_BASE}/list/list1/task").mock(
            return_value=Response(200, json={"id": "new1", "name": "Nova task"})
        )

        params = CreateTaskInput.model_validate({
            "listId": "list1",
            "name": "Nova task",
            "priority": 2,
            "dueDate": "2024-01-01T00:00:00Z",
            "customFields": {"field1": "valor"},
        })
        result = await create_task(params)

        body = json.loads(route.calls[0].request.content)
        assert result["id"] == "new1"
        assert body == {
            "name": "Nova task",
            "priority": 2,
            "due_date": 1704067200000,
            "custom_fields": [{"id": "field1", "value": "valor"}],
        }

    @respx.mock
    @pytest.mark.asyncio
    async def test_write_invalidates_tasks_cache(self, mock_tasks_response):
        """Após uma escrita, get_tasks volta à API."""
        list_route = respx.get(f"{API_BASE}/list/list1/task").mock(
            return_value=Response(200, json=mock_tasks_response)
        )
        respx.post(f"{API_BASE}/list/list1/task").mock(return_value=Response(200, json={"id": "new1"}))

        await get_tasks(GetTasksInput(list_id="list1"))
        await get_tasks(GetTasksInput(list_id="list1"))
        await create_task(CreateTaskInput(list_id="list1", name="Nova"))
        await get_tasks(GetTasksInput(list_id="list1"))

        assert list_route.call_count == 2

    @pytest.mark.asyncio
    async def test_read_only_mode_blocks_writes(self, monkeypatch):
        monkeypatch.setattr(clickup_mcp, "READ_ONLY_MODE", True)

        with pytest.raises(ReadOnlyModeError):
            await create_task(CreateTaskInput(list_id="list1", name="Bloqueada"))

    @respx.mock
    @pytest.mark.asyncio
    async def test_move_task(self, mock_task):
        """Adiciona à list de destino e remove da original."""
        respx.get(f"{API_BASE}/task/abc123").mock(return_value=Response(200, json=mock_task))
        add_route = respx.post(f"{API_BASE}/list/list2/task/abc123").mock(return_value=Response(200))
        remove_route = respx.delete(f"{API_BASE}/list/list1/task/abc123").mock(return_value=Response(200))

        result = await move_task(MoveTaskInput(task_id="abc123", target_list_id="list2"))

        assert result == {"success": True, "task_id": "abc123", "list_id": "list2", "previous_list_id": "list1"}
        assert add_route.call_count == 1
        assert remove_route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_duplicate_task_defaults_to_original_list(self, mock_task):
        respx.get(f"{API_BASE}/task/abc123").mock(return_value=Response(200, json=mock_task))
        route = respx.post(f"{API_BASE}/list/list1/task").mock(
            return_value=Response(200, json={"id": "copy1"})
        )

        result = await duplicate_task(DuplicateTaskInput(task_id="abc123"))

        body = json.loads(route.calls[0].request.content)
        assert result["id"] == "copy1"
        assert body["name"] == "Cópia de Relatório Mensal de Vendas"
        assert body["status"] == "Em andamento"
        assert body["priority"] == "2"

    @respx.mock
    @pytest.mark.asyncio
    async def test_bulk_update_partial_failure(self):
        """Uma task inexistente não impede as demais."""
        ok_route = respx.put(f"{API_BASE}/task/t1").mock(return_value=Response(200, json={"id": "t1"}))
        respx.put(f"{API_BASE}/task/t2").mock(
            return_value=Response(404, json={"err": "Task not found", "ECODE": "ITEM_013"})
        )
        respx.put(f"{API_BASE}/task/t3").mock(return_value=Response(200, json={"id": "t3"}))

        result = await bulk_update_tasks(BulkUpdateTasksInput.model_validate({
            "taskIds": ["t1", "t2", "t3"],
            "updates": {"status": "done"},
        }))

        assert result["total"] == 3
        assert result["succeeded"] == 2
        assert result["failed"] == 1
        assert [r["success"] for r in result["results"]] == [True, False, True]
        assert "404" in result["results"][1]["error"]
        assert json.loads(ok_route.calls[0].request.content) == {"status": "done"}


class TestSearchTools:
    """Busca fuzzy."""

    def test_fuzzy_search_ranks_best_match(self, mock_tasks_response):
        matched = fuzzy_search_tasks(mock_tasks_response["tasks"], "Reunião Kickoff", 0.6)
        assert matched[0]["id"] == "task3"

    def test_fuzzy_search_empty(self):
        assert fuzzy_search_tasks([], "x") == []
        assert fuzzy_search_tasks([{"id": "1", "name": "a"}], "") == []

    @respx.mock
    @pytest.mark.asyncio
    async def test_search_tasks(self, mock_tasks_response):
        respx.get(f"{API_BASE}/list/list1/task").mock(
            return_value=Response(200, json=mock_tasks_response)
        )

        result = await search_tasks(SearchTasksInput(query="servidor de email", list_id="list1"))

        assert result["query"] == "servidor de email"
        assert result["total_matches"] >= 1
        assert result["tasks"][0]["id"] == "task2"


class TestTimeTrackingTools:
    """Registro e consulta de tempo."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_add_time_entry(self):
        route = respx.post(f"{API_BASE}/team/team123/time_entries").mock(
            return_value=Response(200, json={"data": {"id": "te1"}})
        )

        params = AddTimeEntryInput.model_validate({
            "taskId": "abc123",
            "duration": 3600000,
            "start": "2024-01-01T09:00:00Z",
            "description": "Reunião",
        })
        result = await add_time_entry(params)

        body = json.loads(route.calls[0].request.content)
        assert result["data"]["id"] == "te1"
        assert body == {
            "tid": "abc123",
            "start": 1704099600000,
            "duration": 3600000,
            "billable": False,
            "description": "Reunião",
        }

    @respx.mock
    @pytest.mark.asyncio
    async def test_add_time_entry_without_start(self):
        """Sem start, o registro termina agora."""
        route = respx.post(f"{API_BASE}/team/team123/time_entries").mock(
            return_value=Response(200, json={"data": {}})
        )
        before = int(time.time() * 1000)

        await add_time_entry(AddTimeEntryInput(task_id="abc123", duration=60000))

        start = json.loads(route.calls[0].request.content)["start"]
        assert before - 60000 <= start <= int(time.time() * 1000) - 60000

    @respx.mock
    @pytest.mark.asyncio
    async def test_get_time_entries_filters(self):
        route = respx.get(f"{API_BASE}/team/team123/time_entries").mock(
            return_value=Response(200, json={"data": []})
        )

        params = GetTimeEntriesInput.model_validate({
            "taskId": "abc123",
            "startDate": "2024-01-01T00:00:00Z",
        })
        await get_time_entries(params)

        query = route.calls[0].request.url.params
        assert query["task_id"] == "abc123"
        assert query["start_date"] == "1704067200000"
        assert "end_date" not in query


class TestMetricsTool:
    @pytest.mark.asyncio
    async def test_get_metrics(self):
        result = await get_metrics(GetMetricsInput())
        assert result["operation_mode"] in ("READ_ONLY", "READ_WRITE")
        assert "cache_hit_rate" in result


# ============================================================================
# TESTES DO REGISTRO DE TOOLS
# ============================================================================

class TestToolRegistry:
    """Registro único para FastMCP e JSON-RPC."""

    def test_all_tools_registered(self):
        expected = {
            "get_spaces", "get_folders", "get_lists", "get_tags", "get_tasks", "get_task",
            "create_task", "update_task", "delete_task", "move_task", "duplicate_task",
            "search_tasks", "bulk_update_tasks", "add_comment", "get_comments",
            "add_time_entry", "get_time_entries", "get_metrics",
        }
        assert {spec["name"] for spec in tools.list_tools()} == expected
        assert len(tools) == 18

    def test_prefixed_lookup(self):
        assert "clickup_get_task" in tools
        assert tools.get("clickup_get_task").name == "get_task"

    def test_unknown_tool(self):
        with pytest.raises(ToolNotFoundError):
            tools.get("not_a_tool")

    def test_input_schema_uses_camel_case(self):
        specs = {spec["name"]: spec for spec in tools.list_tools()}
        properties = specs["move_task"]["inputSchema"]["properties"]
        assert "targetListId" in properties
        assert specs["delete_task"]["annotations"]["readOnlyHint"] is False

    @pytest.mark.asyncio
    async def test_fastmcp_registration(self):
        registered = await mcp.list_tools()
        names = {tool.name for tool in registered}
        assert "clickup_get_spaces" in names
        assert "clickup_bulk_update_tasks" in names
        assert len(names) == 18


# ============================================================================
# TESTES DO DISPATCHER JSON-RPC
# ============================================================================

class TestRpcDispatcher:
    """Handshake MCP, roteamento e códigos de erro."""

    @pytest.mark.asyncio
    async def test_initialize_creates_session(self, registry):
        sessions = SessionStore()
        dispatcher = RpcDispatcher(registry, sessions)

        response = await dispatcher.handle(rpc("initialize", {
            "protocolVersion": "2024-11-05",
            "clientInfo": {"name": "n8n"},
        }))

        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"]["name"] == "clickup-mcp-server"
        assert result["sessionId"].startswith("session_")
        assert result["sessionId"] in sessions
        assert sessions.get(result["sessionId"])["client_info"] == {"name": "n8n"}

    @pytest.mark.asyncio
    async def test_initialized_notification_has_no_response(self, registry):
        dispatcher = RpcDispatcher(registry)
        assert await dispatcher.handle(rpc("notifications/initialized", request_id=None)) is None

    @pytest.mark.asyncio
    async def test_ping(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("ping"))
        assert response["result"]["pong"] is True

    @pytest.mark.asyncio
    async def test_tools_list_aliases(self, registry):
        dispatcher = RpcDispatcher(registry)
        for method in ("tools/list", "tools.list", "listTools"):
            response = await dispatcher.handle(rpc(method))
            assert len(response["result"]["tools"]) == 3

    @pytest.mark.asyncio
    async def test_direct_tool_call_with_notification(self, registry):
        """Nome da tool como método; escrita publica notificação."""
        notifications = []
        dispatcher = RpcDispatcher(registry, notify=notifications.append)

        response = await dispatcher.handle(rpc("create_task", {"listId": "list1", "name": "Nova"}, "req_1_1"))

        assert response == {
            "jsonrpc": "2.0",
            "id": "req_1_1",
            "result": {"id": "new1", "name": "Nova", "list": {"id": "list1"}},
        }
        assert notifications[0]["type"] == "task_created"
        assert notifications[0]["tool"] == "create_task"

    @pytest.mark.asyncio
    async def test_status_change_emits_extra_notification(self, registry):
        notifications = []
        dispatcher = RpcDispatcher(registry, notify=notifications.append)

        await dispatcher.handle(rpc("update_task", {"taskId": "t1", "status": "done"}))

        assert [n["type"] for n in notifications] == ["task_updated", "status_changed"]

    @pytest.mark.asyncio
    async def test_tools_call_success(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("tools/call", {
            "name": "clickup_create_task",
            "arguments": {"listId": "list1", "name": "Via MCP"},
        }))

        content = response["result"]["content"][0]
        assert content["type"] == "text"
        assert json.loads(content["text"])["name"] == "Via MCP"
        assert "isError" not in response["result"]

    @pytest.mark.asyncio
    async def test_tools_call_tool_error_is_content(self, registry):
        """Erro de execução vira isError no resultado."""
        response = await RpcDispatcher(registry).handle(rpc("tools/call", {
            "name": "get_task",
            "arguments": {"taskId": "missing"},
        }))

        assert response["result"]["isError"] is True
        assert "404" in response["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_tools_call_unknown_tool(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("tools/call", {"name": "nope"}))
        assert response["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_tools_call_without_name(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("tools/call", {}))
        assert response["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_unknown_method(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("tasks/explode"))
        assert response["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_invalid_params(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("create_task", {"name": "sem list"}))
        assert response["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_direct_tool_error(self, registry):
        response = await RpcDispatcher(registry).handle(rpc("get_task", {"taskId": "missing"}))
        assert response["error"]["code"] == -32603
        assert "Task not found" in response["error"]["message"]

    @pytest.mark.asyncio
    async def test_unexpected_error_via_tools_call(self, registry):
        @registry.tool("get_tags", "Listar Tags do Space", GetTaskInput)
        async def broken(params):
            raise KeyError("tags")

        response = await RpcDispatcher(registry).handle(rpc("tools/call", {
            "name": "get_tags",
            "arguments": {"taskId": "t1"},
        }, "r1"))

        assert response["id"] == "r1"
        assert response["error"]["code"] == -32603

    @pytest.mark.asyncio
    async def test_invalid_request(self, registry):
        dispatcher = RpcDispatcher(registry)
        assert (await dispatcher.handle([1, 2]))["error"]["code"] == -32600
        assert (await dispatcher.handle({"id": 3}))["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_params_must_be_object(self, registry):
        response = await RpcDispatcher(registry).handle({"jsonrpc": "2.0", "id": 1, "method": "ping", "params": [1]})
        assert response["error"]["code"] == -32602

    @respx.mock
    @pytest.mark.asyncio
    async def test_real_tool_through_dispatcher(self, mock_spaces_response):
        respx.get(f"{API_BASE}/team/team123/space").mock(
            return_value=Response(200, json=mock_spaces_response)
        )

        response = await RpcDispatcher(tools).handle(rpc("get_spaces", {}, "req_9_1"))

        assert response["id"] == "req_9_1"
        assert response["result"] == mock_spaces_response


# ============================================================================
# TESTES DE EVENTOS SSE
# ============================================================================

class TestSSEPlumbing:
    """Codificação de mensagens e fan-out."""

    def test_encode_default_event(self):
        assert SSEMessage({"id": "req_1"}).encode() == 'data: {"id": "req_1"}\n\n'

    def test_encode_named_event(self):
        encoded = SSEMessage({"type": "task_created"}, event="notification").encode()
        assert encoded == 'event: notification\ndata: {"type": "task_created"}\n\n'

    @pytest.mark.asyncio
    async def test_broker_fan_out(self):
        broker = EventBroker()
        first = broker.subscribe()
        second = broker.subscribe()

        assert broker.notify({"type": "comment_added"}) == 2
        message = await first.get()
        assert message == SSEMessage({"type": "comment_added"}, "notification")
        assert second.qsize() == 1

        broker.unsubscribe(first)
        assert broker.subscriber_count == 1

    @pytest.mark.asyncio
    async def test_broker_drops_when_full(self):
        broker = EventBroker(max_queue=1)
        broker.subscribe()

        assert broker.publish({"n": 1}) == 1
        assert broker.publish({"n": 2}) == 0


# ============================================================================
# TESTES DA APLICAÇÃO HTTP
# ============================================================================

def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condição não atingida no tempo limite")
        time.sleep(0.01)


class TestHttpApp:
    """Rotas /health, /mcp e /request."""

    def test_health(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.get("/health")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "ok"
        assert data["tools"] == 3
        assert data["streams"] == 0

    def test_initialize_returns_session_header(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.post("/mcp", json=rpc("initialize"))

        session_id = response.json()["result"]["sessionId"]
        assert response.headers["mcp-session-id"] == session_id

    def test_session_header_echoed(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.post("/mcp", json=rpc("ping"), headers={"mcp-session-id": "session_1_abc"})

        assert response.headers["mcp-session-id"] == "session_1_abc"

    def test_notification_returns_202(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.post("/mcp", json=rpc("notifications/initialized", request_id=None))

        assert response.status_code == 202

    def test_parse_error(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.post("/mcp", content=b"{not json", headers={"content-type": "application/json"})

        assert response.json()["error"]["code"] == -32700

    def test_tool_call_over_http(self, registry):
        broker = RecordingBroker()
        with TestClient(create_app(registry, broker=broker)) as client:
            response = client.post("/mcp", json=rpc("create_task", {"listId": "l1", "name": "HTTP"}))

        assert response.json()["result"]["name"] == "HTTP"
        assert broker.published[0].event == "notification"
        assert broker.published[0].data["type"] == "task_created"

    def test_request_answer_goes_to_stream(self, registry):
        """/request responde 202 e a resposta sai pelo broker."""
        broker = RecordingBroker()
        with TestClient(create_app(registry, broker=broker)) as client:
            response = client.post("/request", json=rpc("get_task", {"taskId": "missing"}, "req_5_1"))

            assert response.status_code == 202
            assert response.json() == {"status": "accepted", "id": "req_5_1"}
            wait_for(lambda: broker.published)

        answer = broker.published[0]
        assert answer.event is None
        assert answer.data["id"] == "req_5_1"
        assert answer.data["error"]["code"] == -32603

    def test_unexpected_tool_error_is_internal_error(self, registry):
        """Exceção fora da hierarquia ClickUpError vira -32603 em /mcp e em /request."""
        @registry.tool("get_comments", "Listar Comentários da Task", GetTaskInput)
        async def non_json_body(params):
            raise ValueError("non-JSON body from ClickUp")

        broker = RecordingBroker()
        with TestClient(create_app(registry, broker=broker)) as client:
            sync = client.post("/mcp", json=rpc("get_comments", {"taskId": "t1"}, "req_7_1"))
            queued = client.post("/request", json=rpc("get_comments", {"taskId": "t1"}, "req_7_2"))

            assert queued.status_code == 202
            wait_for(lambda: broker.published)

        assert sync.status_code == 200
        assert sync.json()["id"] == "req_7_1"
        assert sync.json()["error"]["code"] == -32603
        assert sync.json()["error"]["message"] == "non-JSON body from ClickUp"
        answer = broker.published[0].data
        assert answer["id"] == "req_7_2"
        assert answer["error"]["code"] == -32603

    def test_request_parse_error(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.post("/request", content=b"[", headers={"content-type": "application/json"})

        assert response.status_code == 400

    def test_cors_preflight(self, registry):
        with TestClient(create_app(registry)) as client:
            response = client.options("/mcp", headers={
                "Origin": "http://localhost:5678",
                "Access-Control-Request-Method": "POST",
            })

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_app_state(self, registry):
        broker = EventBroker()
        app = create_app(registry, broker=broker)
        assert app.state.broker is broker
        assert app.state.dispatcher.registry is registry
