#!/usr/bin/env python3
"""
ClickUp MCP Server - Adaptador MCP para N8N
===========================================
Servidor MCP fino sobre a API REST do ClickUp, permitindo:
- Tools de repasse para Spaces, Folders, Lists, Tasks, Tags, Comentários e Time Tracking
- FastMCP (stdio) para clientes MCP tradicionais
- Handshake MCP mínimo via JSON-RPC sobre HTTP (/mcp) para o N8N
- Stream SSE (/events) + canal lateral (/request) para o cliente de streaming
- Notificações em tempo real após operações de escrita

Versão: 3.0.0
"""

import os
import sys
import json
import time
import asyncio
import inspect
import secrets
from datetime import datetime, timezone
from typing import Annotated, Optional, List, Dict, Any, Callable, Awaitable, NamedTuple, Set, Type, Union

import httpx
import uvicorn
from cachetools import TTLCache
from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, Field, ConfigDict, ValidationError, BeforeValidator, model_validator
from pydantic.alias_generators import to_camel
from rapidfuzz import fuzz, process
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from clickup_observability import LOG_LEVEL, logger, Metrics, set_new_correlation_id

# ============================================================================
# CONFIGURAÇÃO
# ============================================================================

API_BASE_URL = "https://api.clickup.com/api/v2"
API_TOKEN = os.environ.get("CLICKUP_API_TOKEN", "")
TEAM_ID = os.environ.get("CLICKUP_TEAM_ID", "")
DEFAULT_TIMEOUT = float(os.environ.get("DEFAULT_TIMEOUT", "30.0"))
CACHE_TTL_STRUCTURE = int(os.environ.get("CACHE_TTL_STRUCTURE", "300"))  # 5 min para estrutura
CACHE_TTL_TASKS = int(os.environ.get("CACHE_TTL_TASKS", "60"))  # 1 min para tasks

# Rate limiting
RATE_LIMIT_REQUESTS = 100  # requests por janela
RATE_LIMIT_WINDOW = 60  # janela em segundos

# Modo operacional
READ_ONLY_MODE = os.environ.get("READ_ONLY_MODE", "false").lower() == "true"

# Transporte do servidor: stdio (FastMCP) ou http (Starlette + uvicorn)
MCP_SERVER_MODE = os.environ.get("MCP_SERVER_MODE", "stdio").lower()
HTTP_HOST = os.environ.get("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.environ.get("HTTP_PORT", "3000"))
SESSION_TTL = int(os.environ.get("SESSION_TTL", "3600"))  # sessões MCP expiram em 1h
SSE_KEEPALIVE_INTERVAL = 15.0

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "clickup-mcp-server"
SERVER_VERSION = "3.0.0"

_metrics = Metrics()

# ============================================================================
# VALIDAÇÃO DE CONFIGURAÇÃO
# ============================================================================

# Flag para permitir startup sem token (útil para testes)
# Detecta automaticamente se está rodando em pytest
_PYTEST_RUNNING = "pytest" in sys.modules or "PYTEST_CURRENT_TEST" in os.environ
ALLOW_MISSING_TOKEN = os.environ.get("ALLOW_MISSING_TOKEN", "false").lower() == "true" or _PYTEST_RUNNING


def validate_config() -> None:
    """
    Valida configuração no startup. Fail-fast para variáveis obrigatórias.

    Raises:
        EnvironmentError: Se variável obrigatória não está configurada

    Note:
        Configure ALLOW_MISSING_TOKEN=true para testes sem token real.
    """
    required = ["CLICKUP_API_TOKEN"]
    optional = [
        "CLICKUP_TEAM_ID", "DEFAULT_TIMEOUT", "CACHE_TTL_STRUCTURE", "CACHE_TTL_TASKS", "LOG_LEVEL",
        "READ_ONLY_MODE", "ALLOW_MISSING_TOKEN", "LOG_FILE", "MCP_SERVER_MODE", "HTTP_HOST",
        "HTTP_PORT", "SESSION_TTL"
    ]
    # Variáveis do cliente (clickup_mcp_client) compartilham o prefixo
    client_vars = [
        "CLICKUP_MCP_SERVER_URL", "CLICKUP_MCP_TRANSPORT", "CLICKUP_MCP_TIMEOUT", "CLICKUP_MCP_RETRIES",
        "CLICKUP_MCP_CONNECT_TIMEOUT", "CLICKUP_MCP_HEARTBEAT_INTERVAL"
    ]

    # Fail-fast para obrigatórias
    missing = [var for var in required if not os.environ.get(var)]

    if missing and not ALLOW_MISSING_TOKEN:
        error_msg = f"Variáveis de ambiente obrigatórias não configuradas: {', '.join(missing)}"
        logger.error(error_msg)
        raise EnvironmentError(error_msg)
    elif missing:
        logger.warning(f"Variáveis não configuradas (permitido por ALLOW_MISSING_TOKEN): {', '.join(missing)}")

    # Warning para desconhecidas (possível typo)
    env_vars = {k for k in os.environ.keys() if k.startswith("CLICKUP_") or k in optional}
    known_vars = set(required + optional + client_vars)
    for var in env_vars - known_vars:
        logger.warning(f"Variável desconhecida ignorada (possível typo?): {var}")

    if MCP_SERVER_MODE not in ("stdio", "http"):
        logger.warning(f"MCP_SERVER_MODE inválido ({MCP_SERVER_MODE}), usando stdio")

    mode = "READ_ONLY" if READ_ONLY_MODE else "READ_WRITE"
    logger.info(f"Configuração validada | Modo: {mode} | Transporte: {MCP_SERVER_MODE}")


# Validar no startup
validate_config()

# Inicializa o servidor MCP
mcp = FastMCP("clickup_mcp")

# ============================================================================
# CACHE
# ============================================================================

# Cache para estrutura (spaces, folders, lists, tags) - TTL maior
_structure_cache: TTLCache = TTLCache(maxsize=100, ttl=CACHE_TTL_STRUCTURE)

# Cache para tasks - TTL menor
_tasks_cache: TTLCache = TTLCache(maxsize=50, ttl=CACHE_TTL_TASKS)


def cache_key(endpoint: str, params: Optional[Dict] = None) -> str:
    """Gera chave de cache única para endpoint + params."""
    params_str = json.dumps(params, sort_keys=True) if params else ""
    return f"{endpoint}:{params_str}"


def get_cached(endpoint: str, params: Optional[Dict] = None, cache_type: str = "structure") -> Optional[Dict]:
    """Busca valor no cache apropriado."""
    key = cache_key(endpoint, params)
    cache = _structure_cache if cache_type == "structure" else _tasks_cache
    result = cache.get(key)
    if result:
        _metrics.record_cache_hit()
        logger.debug(f"Cache HIT: {endpoint}")
    else:
        _metrics.record_cache_miss()
    return result


def set_cached(endpoint: str, data: Dict, params: Optional[Dict] = None, cache_type: str = "structure") -> None:
    """Armazena valor no cache apropriado."""
    key = cache_key(endpoint, params)
    cache = _structure_cache if cache_type == "structure" else _tasks_cache
    cache[key] = data
    logger.debug(f"Cache SET: {endpoint}")


def invalidate_tasks_cache() -> None:
    """Descarta tasks em cache após escrita, para que o polling do N8N veja a mudança."""
    _tasks_cache.clear()


# ============================================================================
# RATE LIMITING
# ============================================================================

class RateLimiter:
    """Rate limiter simples baseado em janela deslizante."""

    def __init__(self, max_requests: int = RATE_LIMIT_REQUESTS, window_seconds: int = RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: List[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Aguarda até que seja seguro fazer uma requisição."""
        async with self._lock:
            now = asyncio.get_running_loop().time()

            # Remove requests fora da janela
            self.requests = [t for t in self.requests if now - t < self.window_seconds]

            if len(self.requests) >= self.max_requests:
                oldest = self.requests[0]
                wait_time = self.window_seconds - (now - oldest) + 0.1
                logger.warning(f"Rate limit atingido. Aguardando {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

            self.requests.append(now)


# Instância global do rate limiter
_rate_limiter = RateLimiter()

# ============================================================================
# CONNECTION POOLING
# ============================================================================

_http_client: Optional[httpx.AsyncClient] = None


async def get_http_client() -> httpx.AsyncClient:
    """Retorna cliente HTTP com connection pooling."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20)
        )
    return _http_client


# ============================================================================
# EXCEÇÕES ESPECÍFICAS
# ============================================================================

class ClickUpError(Exception):
    """Exceção base para erros do ClickUp MCP."""
    pass


class ConfigurationError(ClickUpError):
    """Erro de configuração (variáveis de ambiente, etc)."""
    pass


class ReadOnlyModeError(ClickUpError):
    """Erro quando operação de escrita é bloqueada em modo read-only."""
    pass


class ClickUpAPIError(ClickUpError):
    """Erro retornado pela API do ClickUp."""

    def __init__(self, message: str, status_code: int, endpoint: str, err_code: Optional[str] = None):
        self.status_code = status_code
        self.endpoint = endpoint
        self.err_code = err_code
        super().__init__(f"[{status_code}] {message} (endpoint: {endpoint})")


class RetryableError(ClickUpError):
    """Erro que pode ser retentado (network, timeout, 429, 5xx)."""
    pass


class ToolNotFoundError(ClickUpError):
    """Tool/método inexistente."""
    pass


def check_write_permission(operation: str) -> None:
    """
    Verifica se operações de escrita são permitidas.

    Args:
        operation: Nome da operação sendo executada

    Raises:
        ReadOnlyModeError: Se servidor está em modo read-only
    """
    if READ_ONLY_MODE:
        raise ReadOnlyModeError(
            f"Operação '{operation}' bloqueada: servidor em modo READ_ONLY. "
            f"Para habilitar escrita, configure READ_ONLY_MODE=false"
        )


def resolve_team_id(team_id: Optional[str]) -> str:
    """Usa o team_id informado ou CLICKUP_TEAM_ID."""
    resolved = team_id or TEAM_ID
    if not resolved:
        raise ConfigurationError(
            "team_id não informado e CLICKUP_TEAM_ID não configurado. "
            "Informe teamId na requisição ou configure a variável de ambiente."
        )
    return resolved


# ============================================================================
# CLIENTE HTTP
# ============================================================================

def get_headers() -> Dict[str, str]:
    """
    Retorna headers para autenticação na API.

    Raises:
        ConfigurationError: Se CLICKUP_API_TOKEN não está configurado
    """
    if not API_TOKEN:
        raise ConfigurationError(
            "CLICKUP_API_TOKEN não configurado! "
            "Configure a variável de ambiente CLICKUP_API_TOKEN com seu token de API do ClickUp. "
            "Obtenha em: ClickUp → Settings → Apps → API Token"
        )
    return {
        "Authorization": API_TOKEN,
        "Content-Type": "application/json"
    }


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RetryableError),
    reraise=True
)
async def _make_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Dict[str, str],
    params: Optional[Dict] = None,
    json_data: Optional[Dict] = None
) -> Dict[str, Any]:
    """Faz requisição HTTP com retry automático para erros transientes."""
    try:
        response = await client.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json_data
        )

        # Rate limit (429) - retryable
        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", 5))
            logger.warning(f"Rate limited (429). Aguardando {retry_after}s")
            await asyncio.sleep(retry_after)
            raise RetryableError("Rate limited (429)")

        # Server errors (5xx) - retryable
        if response.status_code >= 500:
            raise RetryableError(f"Server error ({response.status_code})")

        response.raise_for_status()

        if response.status_code == 204 or not response.content:
            return {"success": True}

        return response.json()

    except httpx.TimeoutException:
        _metrics.record_retry()
        logger.warning("Timeout na requisição, retentando...")
        raise RetryableError("Timeout")
    except httpx.ConnectError:
        _metrics.record_retry()
        logger.warning("Erro de conexão, retentando...")
        raise RetryableError("Connection error")
    except httpx.HTTPStatusError as e:
        err_code = None
        try:
            error_detail = e.response.json()
            if isinstance(error_detail, dict):
                err_code = error_detail.get("ECODE")
                error_detail = error_detail.get("err", error_detail)
        except ValueError:
            error_detail = e.response.text
        raise ClickUpAPIError(f"Erro API: {error_detail}", e.response.status_code, url, err_code)


async def api_request(
    method: str,
    endpoint: str,
    params: Optional[Dict] = None,
    json_data: Optional[Dict] = None,
    use_cache: bool = True,
    cache_type: str = "structure"
) -> Dict[str, Any]:
    """
    Faz requisição à API do ClickUp com retry, cache e rate limiting.

    Args:
        method: Método HTTP (GET, POST, PUT, DELETE)
        endpoint: Endpoint da API (sem base URL)
        params: Query parameters
        json_data: Dados JSON para POST/PUT
        use_cache: Se deve usar cache (apenas para GET)
        cache_type: Tipo de cache ("structure" ou "tasks")

    Returns:
        Resposta da API como dicionário

    Raises:
        ClickUpAPIError: Resposta 4xx da API
        ClickUpError: Falha transitória persistente após retries
    """
    # Cache apenas para GET
    if method == "GET" and use_cache:
        cached = get_cached(endpoint, params, cache_type)
        if cached is not None:
            return cached

    await _rate_limiter.acquire()

    url = f"{API_BASE_URL}{endpoint}"
    client = await get_http_client()

    try:
        _metrics.record_api_call()
        logger.debug(f"API {method} {endpoint}")
        result = await _make_request(client, method, url, get_headers(), params, json_data)
    except RetryableError as e:
        raise ClickUpError(f"Erro após 3 tentativas: {e}") from e
    except httpx.HTTPError as e:
        raise ClickUpError(f"Erro inesperado: {e}") from e

    if method == "GET" and use_cache:
        set_cached(endpoint, result, params, cache_type)

    return result


# ============================================================================
# FUZZY SEARCH - rapidfuzz
# ============================================================================

def fuzzy_search_tasks(tasks: List[Dict], query: str, threshold: float = 0.4) -> List[Dict]:
    """
    Busca fuzzy em tasks por nome usando rapidfuzz.

    Args:
        tasks: Lista de tasks para buscar
        query: Texto de busca
        threshold: Limiar mínimo de similaridade (0.0 a 1.0)

    Returns:
        Tasks ordenadas por relevância (maior similaridade primeiro)
    """
    if not tasks or not query:
        return []

    # Usa ID como sufixo para garantir unicidade de nomes repetidos
    task_map: Dict[str, Dict] = {}
    for task in tasks:
        name = task.get('name', '')
        if name:
            task_map[f"{name}||{task.get('id', '')}"] = task

    if not task_map:
        return []

    matches = process.extract(
        query,
        list(task_map),
        scorer=fuzz.WRatio,
        processor=lambda key: key.split("||", 1)[0].lower(),
        score_cutoff=threshold * 100,
        limit=None
    )
    return [task_map[match_name] for match_name, _, _ in matches]


def to_timestamp_ms(value: Any) -> Optional[int]:
    """Aceita epoch ms (int ou string numérica) ou data ISO 8601."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("timestamp inválido")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Data inválida: {value!r} (use epoch ms ou ISO 8601)")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


TimestampMs = Annotated[Optional[int], BeforeValidator(to_timestamp_ms)]


# ============================================================================
# MODELOS DE INPUT
# ============================================================================

class ToolInput(BaseModel):
    """Base dos inputs: aceita snake_case (FastMCP) e camelCase (N8N/cliente)."""
    model_config = ConfigDict(str_strip_whitespace=True, alias_generator=to_camel, populate_by_name=True)


class GetSpacesInput(ToolInput):
    """Input para listar spaces de um workspace."""
    team_id: Optional[str] = Field(default=None, description="ID do workspace/team (default: CLICKUP_TEAM_ID)")
    archived: bool = Field(default=False, description="Incluir spaces arquivados")


class GetFoldersInput(ToolInput):
    """Input para listar folders de um space."""
    space_id: str = Field(..., description="ID do space", min_length=1)
    archived: bool = Field(default=False, description="Incluir folders arquivados")


class GetListsInput(ToolInput):
    """Input para listar lists de um folder ou lists sem folder de um space."""
    folder_id: Optional[str] = Field(default=None, description="ID do folder")
    space_id: Optional[str] = Field(default=None, description="ID do space (lists sem folder)")
    archived: bool = Field(default=False, description="Incluir lists arquivadas")

    @model_validator(mode="after")
    def require_parent(self) -> "GetListsInput":
        if not self.folder_id and not self.space_id:
            raise ValueError("Informe folder_id ou space_id")
        return self


class GetTasksInput(ToolInput):
    """Input para listar tasks de uma list (ou do workspace inteiro)."""
    list_id: Optional[str] = Field(default=None, description="ID da list (sem list: tasks do workspace)")
    team_id: Optional[str] = Field(default=None, description="ID do workspace quando list_id não é informado")
    archived: bool = Field(default=False, description="Incluir tasks arquivadas")
    include_closed: bool = Field(default=True, description="Incluir tasks fechadas")
    page: int = Field(default=0, description="Página (0-indexed)", ge=0)
    statuses: Optional[List[str]] = Field(default=None, description="Filtrar por status")
    assignees: Optional[List[str]] = Field(default=None, description="Filtrar por IDs de responsáveis")
    updated_after: TimestampMs = Field(default=None, description="Atualizadas após (epoch ms ou ISO)")
    created_after: TimestampMs = Field(default=None, description="Criadas após (epoch ms ou ISO)")


class GetTaskInput(ToolInput):
    """Input para buscar uma task específica."""
    task_id: str = Field(..., description="ID da task", min_length=1)
    include_subtasks: bool = Field(default=False, description="Incluir subtasks")


class CreateTaskInput(ToolInput):
    """Input para criar uma nova task."""
    list_id: str = Field(..., description="ID da list onde criar a task", min_length=1)
    name: str = Field(..., description="Nome da task", min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, description="Descrição da task")
    assignees: Optional[List[Union[int, str]]] = Field(default=None, description="IDs dos responsáveis")
    tags: Optional[List[str]] = Field(default=None, description="Tags da task")
    status: Optional[str] = Field(default=None, description="Status inicial")
    priority: Optional[int] = Field(default=None, description="Prioridade (1=urgent, 2=high, 3=normal, 4=low)", ge=1, le=4)
    due_date: TimestampMs = Field(default=None, description="Due date (epoch ms ou ISO)")
    custom_fields: Optional[Union[List[Dict[str, Any]], Dict[str, Any]]] = Field(
        default=None,
        description="Custom fields: [{'id': 'field_id', 'value': valor}] ou {'field_id': valor}"
    )


class UpdateTaskInput(ToolInput):
    """Input para atualizar uma task existente."""
    task_id: str = Field(..., description="ID da task a atualizar", min_length=1)
    name: Optional[str] = Field(default=None, description="Novo nome da task")
    description: Optional[str] = Field(default=None, description="Nova descrição")
    status: Optional[str] = Field(default=None, description="Novo status")
    priority: Optional[int] = Field(default=None, description="Nova prioridade (1-4)", ge=1, le=4)
    due_date: TimestampMs = Field(default=None, description="Novo due date (epoch ms ou ISO)")
    archived: Optional[bool] = Field(default=None, description="Arquivar/desarquivar")


class DeleteTaskInput(ToolInput):
    """Input para deletar uma task."""
    task_id: str = Field(..., description="ID da task a deletar", min_length=1)


class MoveTaskInput(ToolInput):
    """Input para mover uma task para outra list."""
    task_id: str = Field(..., description="ID da task a mover", min_length=1)
    target_list_id: str = Field(..., description="ID da list de destino", min_length=1)


class DuplicateTaskInput(ToolInput):
    """Input para duplicar uma task."""
    task_id: str = Field(..., description="ID da task a duplicar", min_length=1)
    target_list_id: Optional[str] = Field(default=None, description="List de destino (default: list da original)")
    name: Optional[str] = Field(default=None, description="Nome da cópia (opcional)")


class GetTagsInput(ToolInput):
    """Input para listar tags de um space."""
    space_id: str = Field(..., description="ID do space", min_length=1)


class AddCommentInput(ToolInput):
    """Input para comentar em uma task."""
    task_id: str = Field(..., description="ID da task", min_length=1)
    comment_text: str = Field(..., description="Texto do comentário", min_length=1)
    notify_all: bool = Field(default=False, description="Notificar todos")


class GetCommentsInput(ToolInput):
    """Input para listar comentários de uma task."""
    task_id: str = Field(..., description="ID da task", min_length=1)


class AddTimeEntryInput(ToolInput):
    """Input para registrar tempo em uma task."""
    task_id: str = Field(..., description="ID da task", min_length=1)
    duration: int = Field(..., description="Duração em milissegundos", gt=0)
    description: Optional[str] = Field(default=None, description="Descrição do registro")
    start: TimestampMs = Field(default=None, description="Início (default: agora - duração)")
    billable: bool = Field(default=False, description="Registro faturável")
    team_id: Optional[str] = Field(default=None, description="ID do workspace (default: CLICKUP_TEAM_ID)")


class GetTimeEntriesInput(ToolInput):
    """Input para buscar registros de tempo."""
    task_id: Optional[str] = Field(default=None, description="Filtrar por task")
    start_date: TimestampMs = Field(default=None, description="Início do período (epoch ms ou ISO)")
    end_date: TimestampMs = Field(default=None, description="Fim do período (epoch ms ou ISO)")
    team_id: Optional[str] = Field(default=None, description="ID do workspace (default: CLICKUP_TEAM_ID)")


class SearchTasksInput(ToolInput):
    """Input para busca fuzzy de tasks por nome."""
    query: str = Field(..., description="Texto de busca", min_length=1)
    list_id: Optional[str] = Field(default=None, description="Restringe a busca a uma list")
    team_id: Optional[str] = Field(default=None, description="ID do workspace quando list_id não é informado")
    threshold: float = Field(default=0.6, description="Similaridade mínima (0.0 a 1.0)", ge=0.0, le=1.0)
    limit: int = Field(default=25, description="Máximo de resultados", ge=1, le=100)
    include_closed: bool = Field(default=True, description="Incluir tasks fechadas")


class BulkUpdateTasksInput(ToolInput):
    """Input para atualizar várias tasks com os mesmos campos."""
    task_ids: List[str] = Field(..., description="IDs das tasks", min_length=1)
    updates: Dict[str, Any] = Field(..., description="Campos a atualizar (mesmos de update_task)")


class GetMetricsInput(ToolInput):
    """Input para métricas do servidor."""
    pass


# ============================================================================
# REGISTRO DE TOOLS
# ============================================================================

ToolHandler = Callable[[Any], Awaitable[Any]]


class ToolSpec(NamedTuple):
    """Tool registrada: nome curto, modelo de input, handler e notificação de escrita."""
    name: str
    title: str
    description: str
    input_model: Type[BaseModel]
    handler: ToolHandler
    read_only: bool
    notification: Optional[str]


class ToolRegistry:
    """
    Registro único de tools.

    Cada tool é declarada uma vez e exposta tanto no FastMCP (clickup_<nome>)
    quanto no dispatcher JSON-RPC (nome curto, como o cliente envia).
    """

    def __init__(self, server: Optional[FastMCP] = None, prefix: str = "clickup_"):
        self._server = server
        self.prefix = prefix
        self._tools: Dict[str, ToolSpec] = {}

    def tool(
        self,
        name: str,
        title: str,
        input_model: Type[BaseModel],
        read_only: bool = True,
        destructive: bool = False,
        idempotent: bool = True,
        notification: Optional[str] = None
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(fn: ToolHandler) -> ToolHandler:
            if self._server is not None:
                self._server.tool(
                    name=f"{self.prefix}{name}",
                    annotations={
                        "title": title,
                        "readOnlyHint": read_only,
                        "destructiveHint": destructive,
                        "idempotentHint": idempotent,
                        "openWorldHint": False
                    }
                )(fn)
            self._tools[name] = ToolSpec(
                name=name,
                title=title,
                description=inspect.getdoc(fn) or title,
                input_model=input_model,
                handler=fn,
                read_only=read_only,
                notification=notification
            )
            return fn
        return decorator

    def _key(self, name: str) -> str:
        return name[len(self.prefix):] if name.startswith(self.prefix) else name

    def __contains__(self, name: str) -> bool:
        return self._key(name) in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(self._key(name))
        if spec is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")
        return spec

    def list_tools(self) -> List[Dict[str, Any]]:
        """Descrição das tools no formato de tools/list."""
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "inputSchema": spec.input_model.model_json_schema(by_alias=True),
                "annotations": {"title": spec.title, "readOnlyHint": spec.read_only},
            }
            for spec in self._tools.values()
        ]

    async def invoke(self, spec: ToolSpec, params: BaseModel) -> Any:
        """Executa a tool registrando métricas de chamada, erro e latência."""
        _metrics.record_tool_call(spec.name)
        try:
            with _metrics.measure_latency(spec.name):
                return await spec.handler(params)
        except Exception:
            _metrics.record_tool_error(spec.name)
            raise


tools = ToolRegistry(mcp)


# ============================================================================
# TOOLS - ESTRUTURA
# ============================================================================

@tools.tool("get_spaces", "Listar Spaces", GetSpacesInput)
async def get_spaces(params: GetSpacesInput) -> Dict[str, Any]:
    """
    Lista os spaces de um workspace.

    Usa CLICKUP_TEAM_ID quando team_id não é informado.
    """
    team_id = resolve_team_id(params.team_id)
    return await api_request(
        "GET", f"/team/{team_id}/space",
        params={"archived": str(params.archived).lower()}
    )


@tools.tool("get_folders", "Listar Folders", GetFoldersInput)
async def get_folders(params: GetFoldersInput) -> Dict[str, Any]:
    """Lista os folders de um space."""
    return await api_request(
        "GET", f"/space/{params.space_id}/folder",
        params={"archived": str(params.archived).lower()}
    )


@tools.tool("get_lists", "Listar Lists", GetListsInput)
async def get_lists(params: GetListsInput) -> Dict[str, Any]:
    """Lista as lists de um folder, ou as lists sem folder de um space."""
    if params.folder_id:
        endpoint = f"/folder/{params.folder_id}/list"
    else:
        endpoint = f"/space/{params.space_id}/list"
    return await api_request("GET", endpoint, params={"archived": str(params.archived).lower()})


@tools.tool("get_tags", "Listar Tags do Space", GetTagsInput)
async def get_tags(params: GetTagsInput) -> Dict[str, Any]:
    """Lista as tags disponíveis em um space."""
    return await api_request("GET", f"/space/{params.space_id}/tag")


# ============================================================================
# TOOLS - TASKS
# ============================================================================

@tools.tool("get_tasks", "Listar Tasks", GetTasksInput)
async def get_tasks(params: GetTasksInput) -> Dict[str, Any]:
    """
    Lista tasks de uma list ou, sem list_id, do workspace inteiro.

    updated_after/created_after permitem o polling incremental do N8N.
    """
    query: Dict[str, Any] = {
        "archived": str(params.archived).lower(),
        "include_closed": str(params.include_closed).lower(),
        "page": params.page
    }
    if params.statuses:
        query["statuses[]"] = params.statuses
    if params.assignees:
        query["assignees[]"] = params.assignees
    if params.updated_after is not None:
        query["date_updated_gt"] = params.updated_after
    if params.created_after is not None:
        query["date_created_gt"] = params.created_after

    if params.list_id:
        endpoint = f"/list/{params.list_id}/task"
    else:
        endpoint = f"/team/{resolve_team_id(params.team_id)}/task"
    return await api_request("GET", endpoint, params=query, cache_type="tasks")


@tools.tool("get_task", "Buscar Task", GetTaskInput)
async def get_task(params: GetTaskInput) -> Dict[str, Any]:
    """Retorna uma task pelo ID."""
    return await api_request(
        "GET", f"/task/{params.task_id}",
        params={"include_subtasks": str(params.include_subtasks).lower()},
        cache_type="tasks"
    )


def _custom_fields_payload(custom_fields: Union[List[Dict[str, Any]], Dict[str, Any]]) -> List[Dict[str, Any]]:
    # {"field_id": valor} vira [{"id": "field_id", "value": valor}]
    if isinstance(custom_fields, dict):
        return [{"id": field_id, "value": value} for field_id, value in custom_fields.items()]
    return custom_fields


@tools.tool(
    "create_task", "Criar Task", CreateTaskInput,
    read_only=False, idempotent=False, notification="task_created"
)
async def create_task(params: CreateTaskInput) -> Dict[str, Any]:
    """Cria uma nova task em uma list."""
    check_write_permission("create_task")
    json_data: Dict[str, Any] = {"name": params.name}

    if params.description:
        json_data["description"] = params.description
    if params.assignees:
        json_data["assignees"] = params.assignees
    if params.tags:
        json_data["tags"] = params.tags
    if params.status:
        json_data["status"] = params.status
    if params.priority:
        json_data["priority"] = params.priority
    if params.due_date:
        json_data["due_date"] = params.due_date
    if params.custom_fields:
        json_data["custom_fields"] = _custom_fields_payload(params.custom_fields)

    data = await api_request("POST", f"/list/{params.list_id}/task", json_data=json_data)
    invalidate_tasks_cache()
    logger.info(f"Task criada: {data.get('id')}")
    return data


async def _update_task_fields(task_id: str, params: UpdateTaskInput) -> Dict[str, Any]:
    json_data = params.model_dump(exclude_none=True, exclude={"task_id"})
    data = await api_request("PUT", f"/task/{task_id}", json_data=json_data)
    invalidate_tasks_cache()
    return data


@tools.tool(
    "update_task", "Atualizar Task", UpdateTaskInput,
    read_only=False, notification="task_updated"
)
async def update_task(params: UpdateTaskInput) -> Dict[str, Any]:
    """Atualiza os campos informados de uma task."""
    check_write_permission("update_task")
    return await _update_task_fields(params.task_id, params)


@tools.tool(
    "delete_task", "Deletar Task", DeleteTaskInput,
    read_only=False, destructive=True
)
async def delete_task(params: DeleteTaskInput) -> Dict[str, Any]:
    """Deleta uma task. ATENÇÃO: Esta ação é irreversível!"""
    check_write_permission("delete_task")
    await api_request("DELETE", f"/task/{params.task_id}")
    invalidate_tasks_cache()
    return {"success": True, "task_id": params.task_id}


@tools.tool(
    "move_task", "Mover Task", MoveTaskInput,
    read_only=False, notification="task_updated"
)
async def move_task(params: MoveTaskInput) -> Dict[str, Any]:
    """Move uma task para outra list."""
    check_write_permission("move_task")
    task = await api_request("GET", f"/task/{params.task_id}", use_cache=False)
    current_list_id = (task.get("list") or {}).get("id")

    await api_request("POST", f"/list/{params.target_list_id}/task/{params.task_id}")

    # Remove da list original (se diferente)
    if current_list_id and str(current_list_id) != str(params.target_list_id):
        await api_request("DELETE", f"/list/{current_list_id}/task/{params.task_id}")

    invalidate_tasks_cache()
    return {
        "success": True,
        "task_id": params.task_id,
        "list_id": params.target_list_id,
        "previous_list_id": current_list_id
    }


@tools.tool(
    "duplicate_task", "Duplicar Task", DuplicateTaskInput,
    read_only=False, idempotent=False, notification="task_created"
)
async def duplicate_task(params: DuplicateTaskInput) -> Dict[str, Any]:
    """Cria uma cópia de uma task, na mesma list ou em outra."""
    check_write_permission("duplicate_task")
    original = await api_request("GET", f"/task/{params.task_id}", use_cache=False)
    list_id = params.target_list_id or (original.get("list") or {}).get("id")
    if not list_id:
        raise ClickUpError(f"Não foi possível determinar a list de destino da task {params.task_id}")

    json_data = {
        "name": params.name or f"Cópia de {original.get('name', 'Task')}",
        "description": original.get("description"),
        "status": (original.get("status") or {}).get("status"),
        "priority": (original.get("priority") or {}).get("priority"),
    }
    json_data = {k: v for k, v in json_data.items() if v is not None}

    data = await api_request("POST", f"/list/{list_id}/task", json_data=json_data)
    invalidate_tasks_cache()
    return data


@tools.tool("search_tasks", "Busca Fuzzy de Tasks", SearchTasksInput)
async def search_tasks(params: SearchTasksInput) -> Dict[str, Any]:
    """
    Busca tasks por nome com correspondência aproximada (fuzzy).

    O threshold controla a precisão:
    - 0.3: mais resultados, menos preciso
    - 0.6: balanceado (default)
    - 0.8: menos resultados, mais preciso
    """
    query_params = {
        "archived": "false",
        "include_closed": str(params.include_closed).lower(),
        "subtasks": "true"
    }
    if params.list_id:
        endpoint = f"/list/{params.list_id}/task"
    else:
        endpoint = f"/team/{resolve_team_id(params.team_id)}/task"

    data = await api_request("GET", endpoint, params=query_params, cache_type="tasks")
    all_tasks = data.get("tasks", [])
    matched = fuzzy_search_tasks(all_tasks, params.query, params.threshold)

    logger.info(f"Fuzzy search: {len(matched)} matches de {len(all_tasks)} tasks")
    return {
        "query": params.query,
        "threshold": params.threshold,
        "total_matches": len(matched),
        "tasks": matched[:params.limit]
    }


@tools.tool(
    "bulk_update_tasks", "Atualizar Tasks em Lote", BulkUpdateTasksInput,
    read_only=False
)
async def bulk_update_tasks(params: BulkUpdateTasksInput) -> Dict[str, Any]:
    """
    Aplica as mesmas atualizações a várias tasks.

    Processa em sequência e devolve um resultado por task; uma falha não
    interrompe as demais.
    """
    check_write_permission("bulk_update_tasks")
    results: List[Dict[str, Any]] = []
    for task_id in params.task_ids:
        try:
            fields = UpdateTaskInput.model_validate({**params.updates, "task_id": task_id})
            data = await _update_task_fields(task_id, fields)
            results.append({"task_id": task_id, "success": True, "data": data})
        except (ClickUpError, ValidationError) as e:
            logger.warning(f"Bulk update falhou para {task_id}: {e}")
            results.append({"task_id": task_id, "success": False, "error": str(e)})

    succeeded = sum(1 for r in results if r["success"])
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results
    }


# ============================================================================
# TOOLS - COMMENTS
# ============================================================================

@tools.tool(
    "add_comment", "Criar Comentário", AddCommentInput,
    read_only=False, idempotent=False, notification="comment_added"
)
async def add_comment(params: AddCommentInput) -> Dict[str, Any]:
    """Adiciona um comentário a uma task."""
    check_write_permission("add_comment")
    return await api_request(
        "POST", f"/task/{params.task_id}/comment",
        json_data={"comment_text": params.comment_text, "notify_all": params.notify_all}
    )


@tools.tool("get_comments", "Listar Comentários da Task", GetCommentsInput)
async def get_comments(params: GetCommentsInput) -> Dict[str, Any]:
    """Lista os comentários de uma task."""
    return await api_request("GET", f"/task/{params.task_id}/comment", use_cache=False)


# ============================================================================
# TOOLS - TIME TRACKING
# ============================================================================

@tools.tool(
    "add_time_entry", "Registrar Tempo", AddTimeEntryInput,
    read_only=False, idempotent=False, notification="time_entry_added"
)
async def add_time_entry(params: AddTimeEntryInput) -> Dict[str, Any]:
    """
    Registra tempo trabalhado em uma task.

    Sem start, o registro termina agora e começa `duration` ms antes.
    """
    check_write_permission("add_time_entry")
    team_id = resolve_team_id(params.team_id)
    start = params.start if params.start is not None else int(time.time() * 1000) - params.duration
    json_data: Dict[str, Any] = {
        "tid": params.task_id,
        "start": start,
        "duration": params.duration,
        "billable": params.billable
    }
    if params.description:
        json_data["description"] = params.description
    return await api_request("POST", f"/team/{team_id}/time_entries", json_data=json_data)


@tools.tool("get_time_entries", "Buscar Time Entries", GetTimeEntriesInput)
async def get_time_entries(params: GetTimeEntriesInput) -> Dict[str, Any]:
    """Busca registros de tempo do workspace, opcionalmente por task e período."""
    team_id = resolve_team_id(params.team_id)
    query: Dict[str, Any] = {}
    if params.start_date is not None:
        query["start_date"] = params.start_date
    if params.end_date is not None:
        query["end_date"] = params.end_date
    if params.task_id:
        query["task_id"] = params.task_id
    return await api_request("GET", f"/team/{team_id}/time_entries", params=query, use_cache=False)


# ============================================================================
# TOOLS - DIAGNÓSTICO
# ============================================================================

@tools.tool("get_metrics", "Métricas do Servidor", GetMetricsInput)
async def get_metrics(params: GetMetricsInput) -> Dict[str, Any]:
    """
    Retorna métricas de diagnóstico do servidor MCP.

    Inclui: chamadas por tool, cache hit rate, API calls, retries e latência.
    """
    summary = _metrics.get_summary()
    summary["operation_mode"] = "READ_ONLY" if READ_ONLY_MODE else "READ_WRITE"
    summary["uptime"] = _metrics.uptime
    return summary


# ============================================================================
# NOTIFICAÇÕES
# ============================================================================

def _notification(kind: str, tool: str, data: Any) -> Dict[str, Any]:
    return {"type": kind, "tool": tool, "data": data, "timestamp": int(time.time() * 1000)}


def build_notifications(spec: ToolSpec, params: BaseModel, result: Any) -> List[Dict[str, Any]]:
    """Notificações emitidas após uma escrita bem-sucedida."""
    if not spec.notification:
        return []
    events = [_notification(spec.notification, spec.name, result)]
    if spec.notification == "task_updated" and getattr(params, "status", None):
        events.append(_notification("status_changed", spec.name, result))
    return events


# ============================================================================
# JSON-RPC
# ============================================================================

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RpcError(Exception):
    """Erro JSON-RPC com código padronizado."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)


def rpc_error(request_id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


class SessionStore:
    """Sessões MCP criadas no initialize, expiradas por TTL."""

    def __init__(self, ttl: int = SESSION_TTL, maxsize: int = 1000):
        self._sessions: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    def create(self, protocol_version: Optional[str] = None, client_info: Optional[Dict[str, Any]] = None) -> str:
        session_id = f"session_{int(time.time() * 1000)}_{secrets.token_hex(6)}"
        self._sessions[session_id] = {
            "protocol_version": protocol_version or PROTOCOL_VERSION,
            "client_info": client_info or {},
            "created_at": int(time.time() * 1000)
        }
        return session_id

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class RpcDispatcher:
    """
    Handshake MCP mínimo e execução de tools via JSON-RPC 2.0.

    Aceita os nomes de método MCP (tools/call), as variantes usadas pelo
    N8N (tools.call, executeTool) e o nome da tool direto como método,
    que é o que os transportes do cliente enviam.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        sessions: Optional[SessionStore] = None,
        notify: Optional[Callable[[Dict[str, Any]], Any]] = None
    ):
        self.registry = registry
        self.sessions = sessions or SessionStore()
        self._notify = notify

    async def handle(self, body: Any) -> Optional[Dict[str, Any]]:
        """
        Processa uma mensagem JSON-RPC.

        Returns:
            Resposta JSON-RPC, ou None para notificações (sem id)
        """
        if not isinstance(body, dict) or not isinstance(body.get("method"), str):
            request_id = body.get("id") if isinstance(body, dict) else None
            return rpc_error(request_id, INVALID_REQUEST, "Invalid Request")

        request_id = body.get("id")
        method = body["method"]
        params = body.get("params") or {}
        cid = set_new_correlation_id()
        logger.info(f"MCP Request: {method} (id={request_id}, cid={cid})")

        if not isinstance(params, dict):
            return rpc_error(request_id, INVALID_PARAMS, "params must be an object")

        try:
            result = await self._dispatch(method, params)
        except RpcError as e:
            return rpc_error(request_id, e.code, e.message, e.data)
        except ValidationError as e:
            return rpc_error(request_id, INVALID_PARAMS, f"Invalid params: {e.error_count()} validation error(s)", str(e))
        except ToolNotFoundError as e:
            return rpc_error(request_id, METHOD_NOT_FOUND, str(e))
        except ClickUpError as e:
            logger.error(f"Erro ao executar {method}: {e}")
            return rpc_error(request_id, INTERNAL_ERROR, str(e))
        except Exception as e:
            logger.exception(f"Erro inesperado ao executar {method}")
            return rpc_error(request_id, INTERNAL_ERROR, str(e) or type(e).__name__)

        if request_id is None and method.startswith("notifications/"):
            return None
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def _dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        if method in ("initialize", "connection.initialize"):
            return self._initialize(params)
        if method == "notifications/initialized":
            return {}
        if method == "ping":
            return {"pong": True, "timestamp": int(time.time() * 1000)}
        if method in ("tools/list", "tools.list", "listTools"):
            return {"tools": self.registry.list_tools()}
        if method in ("tools/call", "tools.call", "executeTool"):
            return await self._call_tool(params)
        if method in self.registry:
            return await self.run_tool(method, params)
        raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session_id = self.sessions.create(params.get("protocolVersion"), params.get("clientInfo"))
        logger.info(f"Sessão MCP criada: {session_id}")
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}, "logging": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "sessionId": session_id
        }

    async def run_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        """Valida, executa e publica as notificações de uma tool."""
        spec = self.registry.get(name)
        params = spec.input_model.model_validate(arguments)
        result = await self.registry.invoke(spec, params)
        if self._notify is not None:
            for event in build_notifications(spec, params, result):
                self._notify(event)
        return result

    async def _call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name") or params.get("tool") or params.get("toolName")
        if not name:
            raise RpcError(INVALID_PARAMS, "Tool name is required")
        arguments = params.get("arguments") or params.get("args") or params.get("input") or {}
        try:
            result = await self.run_tool(name, arguments)
        except ToolNotFoundError as e:
            raise RpcError(INVALID_PARAMS, str(e))
        except ClickUpError as e:
            # Erro de execução da tool vai no resultado, como o MCP especifica
            return {"content": [{"type": "text", "text": f"Error executing {name}: {e}"}], "isError": True}
        return {"content": [{"type": "text", "text": json.dumps(result, indent=2, ensure_ascii=False)}]}


# ============================================================================
# EVENTOS SSE
# ============================================================================

class SSEMessage(NamedTuple):
    """Mensagem a ser escrita no stream text/event-stream."""
    data: Any
    event: Optional[str] = None

    def encode(self) -> str:
        lines = []
        if self.event:
            lines.append(f"event: {self.event}")
        lines.append(f"data: {json.dumps(self.data, ensure_ascii=False)}")
        return "\n".join(lines) + "\n\n"


class EventBroker:
    """Fan-out em memória das mensagens para todos os streams conectados."""

    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._subscribers: Set["asyncio.Queue[SSEMessage]"] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[SSEMessage]":
        queue: "asyncio.Queue[SSEMessage]" = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[SSEMessage]") -> None:
        self._subscribers.discard(queue)

    def publish(self, data: Any, event: Optional[str] = None) -> int:
        message = SSEMessage(data, event)
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Stream SSE lento: mensagem descartada")
        return delivered

    def notify(self, notification: Dict[str, Any]) -> int:
        return self.publish(notification, event="notification")


# ============================================================================
# APLICAÇÃO HTTP
# ============================================================================

def create_app(
    registry: Optional[ToolRegistry] = None,
    broker: Optional[EventBroker] = None,
    sessions: Optional[SessionStore] = None,
    keepalive_interval: float = SSE_KEEPALIVE_INTERVAL
) -> Starlette:
    """
    Cria a aplicação HTTP do servidor.

    Rotas:
        GET  /health   - health check
        POST /mcp      - JSON-RPC síncrono
        POST /request  - JSON-RPC assíncrono (202, resposta vai para /events)
        GET  /events   - stream SSE (ready, respostas, notificações, keepalive)
    """
    registry = registry or tools
    broker = broker or EventBroker()
    sessions = sessions or SessionStore()
    dispatcher = RpcDispatcher(registry, sessions, notify=broker.notify)
    background: Set["asyncio.Task[None]"] = set()

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "mode": "READ_ONLY" if READ_ONLY_MODE else "READ_WRITE",
            "tools": len(registry),
            "streams": broker.subscriber_count,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    async def rpc(request: Request) -> Response:
        try:
            body = json.loads(await request.body())
        except ValueError:
            return JSONResponse(rpc_error(None, PARSE_ERROR, "Parse error"))

        response = await dispatcher.handle(body)
        if response is None:
            return Response(status_code=202)

        headers = {}
        result = response.get("result")
        session_id = result.get("sessionId") if isinstance(result, dict) else None
        session_id = session_id or request.headers.get("mcp-session-id")
        if session_id:
            headers["mcp-session-id"] = session_id
        return JSONResponse(response, headers=headers)

    async def answer_on_stream(body: Any) -> None:
        response = await dispatcher.handle(body)
        if response is not None:
            broker.publish(response)

    async def submit(request: Request) -> JSONResponse:
        try:
            body = json.loads(await request.body())
        except ValueError:
            return JSONResponse(rpc_error(None, PARSE_ERROR, "Parse error"), status_code=400)

        task = asyncio.create_task(answer_on_stream(body))
        background.add(task)
        task.add_done_callback(background.discard)
        request_id = body.get("id") if isinstance(body, dict) else None
        return JSONResponse({"status": "accepted", "id": request_id}, status_code=202)

    async def events(request: Request) -> StreamingResponse:
        session_id = request.headers.get("mcp-session-id") or sessions.create(client_info={"transport": "sse"})
        # Inscreve antes de responder: nada publicado após o "open" do cliente se perde
        queue = broker.subscribe()
        logger.info(f"Stream SSE aberto: {session_id}")

        async def stream():
            try:
                yield SSEMessage({
                    "sessionId": session_id,
                    "protocolVersion": PROTOCOL_VERSION,
                    "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                    "capabilities": {"tools": {"listChanged": False}}
                }, event="ready").encode()
                while not await request.is_disconnected():
                    try:
                        message = await asyncio.wait_for(queue.get(), timeout=keepalive_interval)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield message.encode()
            finally:
                broker.unsubscribe(queue)
                logger.info(f"Stream SSE fechado: {session_id}")

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "mcp-session-id": session_id
            }
        )

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/mcp", rpc, methods=["POST"]),
            Route("/request", submit, methods=["POST"]),
            Route("/events", events, methods=["GET"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "OPTIONS"],
                allow_headers=["*"],
                expose_headers=["mcp-session-id"]
            )
        ]
    )
    app.state.broker = broker
    app.state.sessions = sessions
    app.state.dispatcher = dispatcher
    return app


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    """Inicia o servidor em stdio (FastMCP) ou HTTP (uvicorn)."""
    if MCP_SERVER_MODE == "http":
        logger.info(f"ClickUp MCP Server HTTP em {HTTP_HOST}:{HTTP_PORT}")
        uvicorn.run(create_app(), host=HTTP_HOST, port=HTTP_PORT, log_level=LOG_LEVEL.lower())
    else:
        mcp.run()


if __name__ == "__main__":
    main()
