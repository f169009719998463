"""
Fixtures para testes do ClickUp MCP (servidor e cliente multi-transporte).
"""
import os
import sys

import pytest

# Adiciona src ao path para importar os módulos
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Seta variáveis de ambiente ANTES de importar o servidor
os.environ.setdefault("CLICKUP_API_TOKEN", "pk_test_token_123456789")
os.environ.setdefault("CLICKUP_TEAM_ID", "team123")

from clickup_mcp_client import ClientConfig  # noqa: E402
from fakes import BASE_URL, FakeMCPServer  # noqa: E402


@pytest.fixture
def fake_server():
    """Servidor MCP simulado (health, stream SSE e canal lateral)."""
    return FakeMCPServer()


@pytest.fixture
def client_config():
    """Config com tempos curtos para testes assíncronos."""
    return ClientConfig(
        server_url=BASE_URL,
        transport="sse",
        timeout=1.0,
        retries=3,
        connect_timeout=1.0,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        heartbeat_interval=0.02,
        retry_backoff=0.0,
    )


@pytest.fixture
def mock_task():
    """Task de exemplo para testes."""
    return {
        "id": "abc123",
        "name": "Relatório Mensal de Vendas",
        "status": {"status": "Em andamento"},
        "priority": {"priority": "2"},
        "date_created": "1704067200000",
        "date_updated": "1704153600000",
        "assignees": [{"username": "joao"}],
        "list": {"id": "list1", "name": "Cliente X"},
        "url": "https://app.clickup.com/t/abc123",
        "description": "Descrição da task"
    }


@pytest.fixture
def mock_tasks_response(mock_task):
    """Resposta mockada para GET /list/{list_id}/task."""
    return {
        "tasks": [
            mock_task,
            {
                "id": "task2",
                "name": "Configuração do Servidor de Email",
                "status": {"status": "Aberto"},
                "list": {"id": "list1", "name": "Cliente X"}
            },
            {
                "id": "task3",
                "name": "Reunião de Kickoff",
                "status": {"status": "Concluído"},
                "list": {"id": "list1", "name": "Cliente X"}
            }
        ]
    }


@pytest.fixture
def mock_spaces_response():
    """Resposta mockada para GET /team/{team_id}/space."""
    return {
        "spaces": [
            {"id": "space1", "name": "Consultoria", "private": False},
            {"id": "space2", "name": "Administrativo", "private": True}
        ]
    }
