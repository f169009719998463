"""
ClickUp MCP Client - Cliente Multi-Transporte
=============================================
Cliente para o ClickUp MCP Server, pensado para integração com N8N:
- Transporte HTTP (JSON-RPC requisição/resposta com retry)
- Transporte SSE (stream de eventos + canal lateral HTTP para requisições)
- Fachada N8N (webhooks, triggers de workflow e polling)
- Cliente unificado que delega para exatamente um transporte ativo

Falhas de requisição nunca são lançadas: toda operação retorna um
OperationResult, o que permite que operações em lote continuem após
falhas parciais. Apenas connect()/disconnect() lançam exceções.

Versão: 1.0.0
"""

import os
import json
import asyncio
import inspect
import itertools
import contextlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from time import perf_counter, time
from typing import Optional, List, Dict, Any, Callable, NamedTuple, Set, Union

import httpx
import uvicorn
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from clickup_observability import logger, Metrics, set_correlation_id, reset_correlation_id

# ============================================================================
# CONFIGURAÇÃO
# ============================================================================

DEFAULT_SERVER_URL = os.environ.get("CLICKUP_MCP_SERVER_URL", "http://localhost:3000")
DEFAULT_TRANSPORT = os.environ.get("CLICKUP_MCP_TRANSPORT", "http")
DEFAULT_TIMEOUT = float(os.environ.get("CLICKUP_MCP_TIMEOUT", "30.0"))
DEFAULT_RETRIES = int(os.environ.get("CLICKUP_MCP_RETRIES", "3"))
CONNECT_TIMEOUT = float(os.environ.get("CLICKUP_MCP_CONNECT_TIMEOUT", "10.0"))
HEARTBEAT_INTERVAL = float(os.environ.get("CLICKUP_MCP_HEARTBEAT_INTERVAL", "30.0"))
N8N_WEBHOOK_PORT = int(os.environ.get("N8N_WEBHOOK_PORT", "3001"))

# Backoff de reconexão (segundos)
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0

USER_AGENT = "ClickUp-MCP-Client/1.0.0"

REQUEST_TIMEOUT_MESSAGE = "Request timeout"
NOT_CONNECTED_MESSAGE = "Transport not connected"
TRANSPORT_CLOSED_MESSAGE = "Transport disconnected"
MAX_RECONNECT_MESSAGE = "Max reconnection attempts reached"


def _now_ms() -> int:
    """Timestamp atual em epoch milissegundos."""
    return int(time() * 1000)


# ============================================================================
# ENUMS
# ============================================================================

class TransportKind(str, Enum):
    """Tipos de transporte suportados pelo cliente."""
    HTTP = "http"
    SSE = "sse"
    N8N = "n8n"
    WEBHOOK = "webhook"  # Alias do transporte N8N


class ConnectionPhase(str, Enum):
    """Fases da máquina de estados de conexão."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TriggerType(str, Enum):
    """Como o workflow N8N é acionado."""
    WEBHOOK = "webhook"
    POLLING = "polling"
    MANUAL = "manual"


# ============================================================================
# EXCEÇÕES ESPECÍFICAS
# ============================================================================

class ClickUpClientError(Exception):
    """Exceção base do cliente MCP."""
    pass


class TransportUnavailableError(ClickUpClientError):
    """Health check do servidor falhou (status não-2xx ou erro de rede)."""
    pass


class ConnectionTimeoutError(ClickUpClientError):
    """O stream não abriu dentro do connect_timeout."""
    pass


class MaxReconnectAttemptsError(ClickUpClientError):
    """Tentativas de reconexão esgotadas."""
    pass


class DuplicateRequestIdError(ClickUpClientError):
    """Já existe uma requisição pendente com o mesmo ID."""
    pass


class TransportNotSupportedError(ClickUpClientError):
    """Funcionalidade pedida não existe no transporte ativo."""
    pass


class RetryableError(ClickUpClientError):
    """Falha HTTP transitória (timeout, conexão, 429, 5xx)."""
    pass


# ============================================================================
# MODELOS
# ============================================================================

class ClientConfig(BaseModel):
    """Configuração compartilhada pelos transportes do cliente."""
    model_config = ConfigDict(str_strip_whitespace=True)
    server_url: str = Field(default=DEFAULT_SERVER_URL, description="URL base do ClickUp MCP Server")
    transport: TransportKind = Field(
        default_factory=lambda: TransportKind(DEFAULT_TRANSPORT),
        description="Transporte ativo do cliente unificado"
    )
    timeout: float = Field(default=DEFAULT_TIMEOUT, description="Timeout por requisição (s)", gt=0)
    retries: int = Field(
        default=DEFAULT_RETRIES,
        description="Tentativas HTTP e teto de reconexões consecutivas",
        ge=0
    )
    connect_timeout: float = Field(default=CONNECT_TIMEOUT, description="Espera máxima pela abertura do stream (s)", gt=0)
    reconnect_base_delay: float = Field(default=RECONNECT_BASE_DELAY, ge=0)
    reconnect_max_delay: float = Field(default=RECONNECT_MAX_DELAY, ge=0)
    heartbeat_interval: float = Field(default=HEARTBEAT_INTERVAL, description="Intervalo do heartbeat (s)", gt=0)
    retry_backoff: float = Field(default=0.5, description="Multiplicador do backoff exponencial HTTP", ge=0)
    health_path: str = "/health"
    events_path: str = "/events"
    request_path: str = "/request"
    rpc_path: str = "/mcp"
    enable_logging: bool = Field(default=True, description="Loga requisições/respostas HTTP em DEBUG")


class N8NConfig(BaseModel):
    """Configuração da integração com N8N."""
    model_config = ConfigDict(str_strip_whitespace=True)
    webhook_url: Optional[str] = Field(default=None, description="URL do webhook do N8N")
    workflow_id: Optional[str] = None
    node_id: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    polling_interval: float = Field(default=60.0, description="Intervalo de polling (s)", gt=0)
    webhook_host: str = Field(default="127.0.0.1", description="Host do servidor de webhooks local")
    webhook_port: int = Field(default=N8N_WEBHOOK_PORT, description="Porta do servidor de webhooks local", ge=0)


class Completion(NamedTuple):
    """Desfecho de uma requisição: resultado em sucesso, mensagem em falha."""
    success: bool
    payload: Any


class OperationMetadata(BaseModel):
    """Metadados anexados a todo resultado de operação."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    operation: str
    timestamp: int
    elapsed_millis: float
    correlation_id: str


class OperationResult(BaseModel):
    """
    Resultado uniforme de uma operação do cliente.

    Construa apenas via ok()/failure(): exatamente um entre data e
    error_message é significativo.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    success: bool
    data: Any = None
    error_message: Optional[str] = None
    metadata: OperationMetadata

    @classmethod
    def ok(cls, data: Any, metadata: OperationMetadata) -> "OperationResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def failure(cls, message: str, metadata: OperationMetadata) -> "OperationResult":
        return cls(success=False, error_message=message or "Unknown error", metadata=metadata)

    @classmethod
    def from_completion(
        cls,
        completion: Completion,
        operation: str,
        correlation_id: str,
        started: float
    ) -> "OperationResult":
        """Monta o resultado a partir de um Completion e do instante de início (perf_counter)."""
        metadata = OperationMetadata(
            operation=operation,
            timestamp=_now_ms(),
            elapsed_millis=(perf_counter() - started) * 1000,
            correlation_id=correlation_id
        )
        if completion.success:
            return cls.ok(completion.payload, metadata)
        return cls.failure(str(completion.payload or ""), metadata)

    def to_dict(self) -> Dict[str, Any]:
        """Serializa com chaves camelCase (formato consumido pelo N8N)."""
        return self.model_dump(by_alias=True)


class ConnectionState(BaseModel):
    """Snapshot do estado de conexão. Apenas o transporte altera o original."""
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    transport: TransportKind
    server_url: Optional[str] = None
    attempt: int = 0
    error_count: int = 0
    last_heartbeat_at: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self.phase == ConnectionPhase.CONNECTED


class JsonRpcRequest(BaseModel):
    """Envelope JSON-RPC 2.0 enviado ao servidor."""
    jsonrpc: str = "2.0"
    id: str
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


def _completion_from_message(message: Any) -> Completion:
    """Converte uma resposta JSON-RPC em Completion."""
    if not isinstance(message, dict):
        return Completion(False, "Invalid JSON-RPC response")
    error = message.get("error")
    if error is not None:
        if isinstance(error, dict):
            return Completion(False, error.get("message") or "Unknown error")
        return Completion(False, str(error))
    return Completion(True, message.get("result"))


# ============================================================================
# EVENT BUS
# ============================================================================

class Subscription:
    """Handle de inscrição. cancel() é idempotente."""

    __slots__ = ("_bus", "category", "handler", "active")

    def __init__(self, bus: "EventBus", category: str, handler: Callable[[Any], Any]):
        self._bus = bus
        self.category = category
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus.unsubscribe(self.category, self.handler)


class EventBus:
    """
    Registro de listeners por categoria.

    Listeners são chamados na ordem de inscrição. Um listener que lança
    exceção é logado e ignorado; os demais continuam sendo chamados.
    Listeners assíncronos viram tasks mantidas pelo próprio bus.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[Any], Any]]] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def subscribe(self, category: str, handler: Callable[[Any], Any]) -> Subscription:
        self._listeners.setdefault(category, []).append(handler)
        return Subscription(self, category, handler)

    def unsubscribe(self, category: str, handler: Callable[[Any], Any]) -> bool:
        listeners = self._listeners.get(category)
        if not listeners or handler not in listeners:
            return False
        listeners.remove(handler)
        if not listeners:
            del self._listeners[category]
        return True

    def publish(self, category: str, payload: Any = None) -> int:
        """
        Publica um evento para os listeners da categoria.

        Returns:
            Número de listeners invocados
        """
        # Snapshot: listeners podem se desinscrever durante a entrega
        listeners = list(self._listeners.get(category, ()))
        for handler in listeners:
            self.invoke(handler, payload, category)
        return len(listeners)

    def invoke(self, handler: Callable[[Any], Any], payload: Any, category: str) -> None:
        """Invoca um listener isolando falhas. Corrotinas viram tasks."""
        try:
            outcome = handler(payload)
        except Exception:
            logger.exception(f"Erro no listener de '{category}'")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._on_task_done(t, category))

    def _on_task_done(self, task: "asyncio.Task[Any]", category: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"Listener assíncrono de '{category}' falhou")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def listener_count(self, category: Optional[str] = None) -> int:
        if category is not None:
            return len(self._listeners.get(category, ()))
        return sum(len(handlers) for handlers in self._listeners.values())

    def categories(self) -> List[str]:
        return list(self._listeners)

    def clear(self) -> None:
        self._listeners.clear()


# ============================================================================
# CORRELAÇÃO DE REQUISIÇÕES
# ============================================================================

class RequestIdGenerator:
    """Gera IDs req_<epoch ms>_<contador>, únicos durante a vida do transporte."""

    def __init__(self, prefix: str = "req"):
        self.prefix = prefix
        self._counter = itertools.count(1)

    def next_id(self) -> str:
        return f"{self.prefix}_{_now_ms()}_{next(self._counter)}"


class PendingRequest:
    """Requisição aguardando resposta no stream."""

    __slots__ = ("request_id", "operation", "deadline", "future", "timer")

    def __init__(
        self,
        request_id: str,
        operation: str,
        deadline: float,
        future: "asyncio.Future[Completion]",
        timer: asyncio.TimerHandle
    ):
        self.request_id = request_id
        self.operation = operation
        self.deadline = deadline
        self.future = future
        self.timer = timer


class CorrelationTable:
    """
    Tabela de requisições pendentes, indexada pelo ID JSON-RPC.

    Cada entrada é completada exatamente uma vez: o primeiro entre
    resolve/fail/expire vence e os demais viram no-op. Respostas sem
    entrada correspondente são publicadas como "message" no bus.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._pending: Dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def register(self, request_id: str, timeout: float, operation: str = "") -> "asyncio.Future[Completion]":
        """
        Registra uma requisição e arma o timer de deadline.

        Raises:
            DuplicateRequestIdError: Se o ID já está pendente
        """
        if request_id in self._pending:
            raise DuplicateRequestIdError(f"Request id already pending: {request_id}")
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Completion]" = loop.create_future()
        timer = loop.call_later(timeout, self.expire, request_id)
        self._pending[request_id] = PendingRequest(
            request_id, operation, loop.time() + timeout, future, timer
        )
        return future

    def _complete(self, request_id: str, completion: Completion) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(completion)
        return True

    def resolve(self, request_id: Optional[str], completion: Completion, frame: Any = None) -> bool:
        """Completa a requisição; sem entrada, publica o frame como "message"."""
        if request_id is not None and self._complete(request_id, completion):
            return True
        logger.debug(f"Resposta sem requisição pendente: {request_id}")
        self.bus.publish("message", frame)
        return False

    def fail(self, request_id: str, message: str) -> bool:
        return self._complete(request_id, Completion(False, message))

    def expire(self, request_id: str) -> bool:
        entry = self._pending.get(request_id)
        if entry is None:
            return False
        logger.warning(f"Requisição expirou: {entry.operation or request_id}")
        return self._complete(request_id, Completion(False, REQUEST_TIMEOUT_MESSAGE))

    def drain(self, reason: str) -> int:
        """Falha todas as requisições pendentes com a mesma razão."""
        request_ids = list(self._pending)
        for request_id in request_ids:
            self.fail(request_id, reason)
        return len(request_ids)


# ============================================================================
# RECONEXÃO E HEARTBEAT
# ============================================================================

# (delay em segundos, callback) -> handle com cancel()
Scheduler = Callable[[float, Callable[[], None]], Any]


class ReconnectSupervisor:
    """
    Agenda reconexões com backoff exponencial determinístico.

    delay = min(base * 2^attempt, max). O contador só avança quando o
    timer dispara e volta a zero em reset() (conexão bem-sucedida).
    """

    def __init__(
        self,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        max_retries: int = DEFAULT_RETRIES,
        scheduler: Optional[Scheduler] = None
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.attempt = 0
        self.scheduled_delays: List[float] = []
        self._scheduler = scheduler
        self._handle: Any = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries

    def next_delay(self) -> float:
        return min(self.base_delay * (2 ** self.attempt), self.max_delay)

    def schedule(self, callback: Callable[[], None]) -> Optional[float]:
        """
        Agenda a próxima tentativa.

        Returns:
            Delay agendado em segundos, ou None se as tentativas acabaram
        """
        if self.exhausted:
            logger.error(MAX_RECONNECT_MESSAGE)
            return None
        self.cancel()
        delay = self.next_delay()
        self.scheduled_delays.append(delay)
        logger.info(f"Reconectando em {delay:.1f}s (tentativa {self.attempt + 1}/{self.max_retries})")

        def fire() -> None:
            self._handle = None
            self.attempt += 1
            callback()

        if self._scheduler is not None:
            self._handle = self._scheduler(delay, fire)
        else:
            self._handle = asyncio.get_running_loop().call_later(delay, fire)
        return delay

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def reset(self) -> None:
        self.cancel()
        self.attempt = 0


class LivenessMonitor:
    """Emite on_beat(timestamp_ms) a cada `interval` segundos enquanto ativo."""

    def __init__(self, interval: float, on_beat: Callable[[int], None]):
        self.interval = interval
        self._on_beat = on_beat
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self._task = asyncio.ensure_future(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._on_beat(_now_ms())
            except Exception:
                logger.exception("Erro ao emitir heartbeat")


# ============================================================================
# DECODIFICADOR SSE
# ============================================================================

class SSEFrame(NamedTuple):
    """Evento SSE completo (despachado na linha em branco)."""
    event: str
    data: str
    id: Optional[str] = None


class SSEDecoder:
    """Decodifica text/event-stream linha a linha."""

    def __init__(self):
        self._reset()

    def _reset(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[SSEFrame]:
        """Consome uma linha (sem o terminador). Retorna o frame quando completo."""
        if line == "":
            if not self._data:
                self._reset()
                return None
            frame = SSEFrame(self._event or "message", "\n".join(self._data), self._id)
            self._reset()
            return frame

        if line.startswith(":"):
            return None  # comentário / keepalive

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        return None


async def _probe_health(client: httpx.AsyncClient, path: str) -> None:
    """
    Verifica se o servidor responde ao health check.

    Raises:
        TransportUnavailableError: Status não-2xx ou erro de rede
    """
    try:
        response = await client.get(path)
    except httpx.HTTPError as e:
        raise TransportUnavailableError(f"Health check failed: {e}") from e
    if not response.is_success:
        raise TransportUnavailableError(f"Health check failed with status: {response.status_code}")


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Remove chaves com valor None."""
    return {k: v for k, v in values.items() if v is not None}


# ============================================================================
# OPERAÇÕES CLICKUP
# ============================================================================

class ClickUpOperationsMixin(ABC):
    """
    Operações do ClickUp como repasse para send_request().

    Parâmetros trafegam em camelCase, como o servidor e o N8N esperam.
    """

    @abstractmethod
    async def send_request(self, operation: str, params: Optional[Dict[str, Any]] = None) -> OperationResult:
        """Envia a operação pelo transporte e resolve sempre com um OperationResult."""

    async def get_tasks(self, list_id: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> OperationResult:
        params = dict(options or {})
        if list_id:
            params["listId"] = list_id
        return await self.send_request("get_tasks", params)

    async def get_task(self, task_id: str, options: Optional[Dict[str, Any]] = None) -> OperationResult:
        return await self.send_request("get_task", {"taskId": task_id, **(options or {})})

    async def create_task(self, name: str, list_id: str, options: Optional[Dict[str, Any]] = None) -> OperationResult:
        return await self.send_request("create_task", {"name": name, "listId": list_id, **(options or {})})

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> OperationResult:
        return await self.send_request("update_task", {"taskId": task_id, **updates})

    async def delete_task(self, task_id: str) -> OperationResult:
        return await self.send_request("delete_task", {"taskId": task_id})

    async def get_lists(self, space_id: Optional[str] = None, folder_id: Optional[str] = None) -> OperationResult:
        return await self.send_request("get_lists", _compact({"spaceId": space_id, "folderId": folder_id}))

    async def get_folders(self, space_id: Optional[str] = None) -> OperationResult:
        return await self.send_request("get_folders", _compact({"spaceId": space_id}))

    async def get_spaces(self) -> OperationResult:
        return await self.send_request("get_spaces", {})

    async def get_tags(self, space_id: Optional[str] = None) -> OperationResult:
        return await self.send_request("get_tags", _compact({"spaceId": space_id}))

    async def add_time_entry(self, task_id: str, duration: int, description: Optional[str] = None) -> OperationResult:
        return await self.send_request(
            "add_time_entry",
            _compact({"taskId": task_id, "duration": duration, "description": description})
        )

    async def get_time_entries(
        self,
        task_id: Optional[str] = None,
        start_date: Optional[Union[int, str]] = None,
        end_date: Optional[Union[int, str]] = None
    ) -> OperationResult:
        return await self.send_request(
            "get_time_entries",
            _compact({"taskId": task_id, "startDate": start_date, "endDate": end_date})
        )

    async def add_comment(self, task_id: str, comment_text: str) -> OperationResult:
        return await self.send_request("add_comment", {"taskId": task_id, "commentText": comment_text})

    async def get_comments(self, task_id: str) -> OperationResult:
        return await self.send_request("get_comments", {"taskId": task_id})

    async def search_tasks(self, query: str, options: Optional[Dict[str, Any]] = None) -> OperationResult:
        return await self.send_request("search_tasks", {"query": query, **(options or {})})

    async def bulk_update_tasks(self, task_ids: List[str], updates: Dict[str, Any]) -> OperationResult:
        return await self.send_request("bulk_update_tasks", {"taskIds": list(task_ids), "updates": updates})

    async def move_task(self, task_id: str, target_list_id: str) -> OperationResult:
        return await self.send_request("move_task", {"taskId": task_id, "targetListId": target_list_id})

    async def duplicate_task(self, task_id: str, target_list_id: Optional[str] = None) -> OperationResult:
        return await self.send_request(
            "duplicate_task",
            _compact({"taskId": task_id, "targetListId": target_list_id})
        )


# ============================================================================
# TRANSPORTE HTTP
# ============================================================================

class HTTPTransport(ClickUpOperationsMixin):
    """Transporte requisição/resposta: cada operação é um POST JSON-RPC."""

    kind = TransportKind.HTTP

    def __init__(self, config: Optional[ClientConfig] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or ClientConfig()
        self.metrics = Metrics()
        self._http = http_client
        self._owns_http = http_client is None
        self._ids = RequestIdGenerator()
        self._state = ConnectionState(transport=TransportKind.HTTP, server_url=self.config.server_url)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.config.server_url,
                timeout=self.config.timeout,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT}
            )
            self._owns_http = True
        return self._http

    @property
    def is_connected(self) -> bool:
        return self._state.phase == ConnectionPhase.CONNECTED

    async def connect(self) -> None:
        """
        Valida o servidor via health check.

        Raises:
            TransportUnavailableError: Se o servidor não responde 2xx
        """
        self._state.phase = ConnectionPhase.CONNECTING
        try:
            await _probe_health(self._client(), self.config.health_path)
        except TransportUnavailableError as e:
            self._state.phase = ConnectionPhase.DISCONNECTED
            self._state.error_count += 1
            logger.error(f"Falha ao conectar via HTTP: {e}")
            raise
        self._state.phase = ConnectionPhase.CONNECTED
        self._state.error_count = 0
        self._state.last_heartbeat_at = _now_ms()
        logger.info(f"Conectado ao ClickUp MCP Server via HTTP ({self.config.server_url})")

    async def disconnect(self) -> None:
        self._state.phase = ConnectionPhase.DISCONNECTED
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
        logger.info("Desconectado do ClickUp MCP Server (HTTP)")

    async def send_request(self, operation: str, params: Optional[Dict[str, Any]] = None) -> OperationResult:
        """Envia a operação e retorna o resultado. Nunca lança exceção."""
        started = perf_counter()
        request_id = self._ids.next_id()
        token = set_correlation_id(request_id)
        try:
            body = JsonRpcRequest(id=request_id, method=operation, params=params or {}).model_dump()
            try:
                completion = _completion_from_message(await self._post_with_retry(body))
            except (ClickUpClientError, httpx.HTTPError, ValueError) as e:
                completion = Completion(False, str(e) or type(e).__name__)

            result = OperationResult.from_completion(completion, operation, request_id, started)
            self.metrics.record_request(result.success, result.metadata.elapsed_millis)
            if not result.success:
                self._state.error_count += 1
                logger.warning(f"Operação {operation} falhou: {result.error_message}")
            return result
        finally:
            reset_correlation_id(token)

    async def _post_with_retry(self, body: Dict[str, Any]) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retries)),
            wait=wait_exponential(multiplier=self.config.retry_backoff, max=10),
            retry=retry_if_exception_type(RetryableError),
            reraise=True
        ):
            with attempt:
                return await self._post(body)

    async def _post(self, body: Dict[str, Any]) -> Any:
        if self.config.enable_logging:
            logger.debug(f"HTTP Request: POST {self.config.rpc_path} {body['method']}")
        try:
            response = await self._client().post(self.config.rpc_path, json=body)
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            self.metrics.record_retry()
            logger.warning(f"Erro transitório HTTP ({type(e).__name__}), retentando...")
            raise RetryableError(f"{type(e).__name__}: {e}") from e

        if self.config.enable_logging:
            logger.debug(f"HTTP Response: {response.status_code} {body['method']}")
        if response.status_code == 429 or response.status_code >= 500:
            self.metrics.record_retry()
            raise RetryableError(f"Server error ({response.status_code})")
        if not response.is_success:
            raise ClickUpClientError(f"Request failed with status code {response.status_code}")
        return response.json()

    def get_connection_state(self) -> ConnectionState:
        return self._state.model_copy()

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.request_summary()


# ============================================================================
# TRANSPORTE SSE
# ============================================================================

def _consume_exception(future: "asyncio.Future[Any]") -> None:
    # Evita "exception was never retrieved" quando ninguém aguarda o waiter
    if not future.cancelled():
        future.exception()


class SSETransport(ClickUpOperationsMixin):
    """
    Transporte de streaming.

    Respostas e notificações chegam por um stream SSE de longa duração
    (GET /events); requisições saem por POST no canal lateral
    (/request) e são casadas com as respostas pelo ID JSON-RPC.

    Fases: disconnected -> connecting -> connected -> reconnecting -> ...
    """

    kind = TransportKind.SSE

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        bus: Optional[EventBus] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[Scheduler] = None
    ):
        self.config = config or ClientConfig()
        self.bus = bus or EventBus()
        self.metrics = Metrics()
        self.table = CorrelationTable(self.bus)
        self.supervisor = ReconnectSupervisor(
            base_delay=self.config.reconnect_base_delay,
            max_delay=self.config.reconnect_max_delay,
            max_retries=self.config.retries,
            scheduler=scheduler
        )
        self.heartbeat = LivenessMonitor(self.config.heartbeat_interval, self._on_heartbeat)
        self._http = http_client
        self._owns_http = http_client is None
        self._ids = RequestIdGenerator()
        self._state = ConnectionState(transport=TransportKind.SSE, server_url=self.config.server_url)
        self._reader: Optional["asyncio.Task[None]"] = None
        self._open_waiter: Optional["asyncio.Future[None]"] = None
        self._sends: Set["asyncio.Task[None]"] = set()

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            # Sem read timeout: o stream fica aberto indefinidamente
            self._http = httpx.AsyncClient(
                base_url=self.config.server_url,
                timeout=httpx.Timeout(self.config.timeout, read=None),
                headers={"User-Agent": USER_AGENT}
            )
            self._owns_http = True
        return self._http

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def is_connected(self) -> bool:
        return self._state.phase == ConnectionPhase.CONNECTED

    def _set_phase(self, phase: ConnectionPhase) -> None:
        if phase != self._state.phase:
            logger.debug(f"SSE: {self._state.phase.value} -> {phase.value}")
            self._state.phase = phase

    def on(self, event: str, listener: Callable[[Any], Any]) -> Subscription:
        return self.bus.subscribe(event, listener)

    def off(self, event: str, listener: Callable[[Any], Any]) -> bool:
        return self.bus.unsubscribe(event, listener)

    # ------------------------------------------------------------------
    # Conexão
    # ------------------------------------------------------------------

    def _new_waiter(self) -> "asyncio.Future[None]":
        waiter: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        waiter.add_done_callback(_consume_exception)
        self._open_waiter = waiter
        return waiter

    def _settle_waiter(self, error: Optional[BaseException] = None) -> None:
        waiter = self._open_waiter
        if waiter is None or waiter.done():
            return
        if error is None:
            waiter.set_result(None)
        else:
            waiter.set_exception(error)

    async def connect(self) -> None:
        """
        Abre o stream de eventos.

        Chamadas concorrentes aguardam a mesma tentativa; nunca há dois streams.
        Quem se junta a uma tentativa em andamento (inclusive uma reconexão)
        só recebe o timeout: a máquina de estados e as requisições pendentes
        seguem intactas.

        Raises:
            TransportUnavailableError: Health check falhou
            ConnectionTimeoutError: Stream não abriu em connect_timeout
            MaxReconnectAttemptsError: Reconexões esgotadas durante a espera
        """
        phase = self._state.phase
        if phase == ConnectionPhase.CONNECTED:
            return
        if phase != ConnectionPhase.DISCONNECTED:
            waiter = self._open_waiter
            if waiter is None or waiter.done():
                waiter = self._new_waiter()
            await self._await_open(waiter, owner=False)
            return

        waiter = self._new_waiter()
        self.supervisor.reset()
        self._set_phase(ConnectionPhase.CONNECTING)
        try:
            await _probe_health(self._client(), self.config.health_path)
        except TransportUnavailableError as e:
            logger.error(f"Falha ao conectar via SSE: {e}")
            self._state.error_count += 1
            self._set_phase(ConnectionPhase.DISCONNECTED)
            self._settle_waiter(e)
            raise

        if not waiter.done():
            self._start_reader(probe=False)
        await self._await_open(waiter, owner=True)

    async def _await_open(self, waiter: "asyncio.Future[None]", owner: bool) -> None:
        """
        Aguarda a abertura do stream por até connect_timeout.

        Só quem iniciou a conexão a partir de disconnected (owner) desfaz
        a tentativa no timeout.
        """
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError:
            error = ConnectionTimeoutError("SSE connection timeout")
            logger.error(str(error))
            if owner:
                await self._teardown(TRANSPORT_CLOSED_MESSAGE, error)
            raise error from None

    def _start_reader(self, probe: bool) -> None:
        self._reader = asyncio.ensure_future(self._run_stream(probe))

    async def _run_stream(self, probe: bool) -> None:
        """Lê o stream até falhar ou ser fechado pelo servidor."""
        client = self._client()
        try:
            if probe:
                await _probe_health(client, self.config.health_path)
            request = client.build_request(
                "GET",
                self.config.events_path,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"}
            )
            response = await client.send(request, stream=True)
            try:
                if not response.is_success:
                    raise TransportUnavailableError(f"Event stream returned status {response.status_code}")
                self._on_open()
                decoder = SSEDecoder()
                async for line in response.aiter_lines():
                    frame = decoder.feed(line)
                    if frame is not None:
                        self._on_frame(frame)
            finally:
                await response.aclose()
        except (httpx.HTTPError, TransportUnavailableError) as e:
            detail = str(e) or type(e).__name__
        else:
            detail = "stream closed by server"
        self._on_stream_failure(detail)
        if self.supervisor.exhausted and self._state.phase == ConnectionPhase.DISCONNECTED:
            await self._close_http()

    def _on_open(self) -> None:
        self._set_phase(ConnectionPhase.CONNECTED)
        self._state.error_count = 0
        self._state.last_heartbeat_at = _now_ms()
        self.supervisor.reset()
        self.heartbeat.start()
        logger.info(f"Conexão SSE estabelecida ({self.config.server_url})")
        self._settle_waiter()
        self.bus.publish("open", {"timestamp": self._state.last_heartbeat_at})

    def _on_stream_failure(self, detail: str) -> None:
        if self._state.phase == ConnectionPhase.DISCONNECTED:
            return
        self._state.error_count += 1
        self.heartbeat.stop()
        self._set_phase(ConnectionPhase.RECONNECTING)
        logger.error(f"Erro na conexão SSE: {detail}")
        self.bus.publish("error", {"message": "Connection error", "detail": detail})
        if self.supervisor.schedule(self._reconnect) is None:
            self._give_up()

    def _reconnect(self) -> None:
        if self._state.phase != ConnectionPhase.RECONNECTING:
            return
        self._set_phase(ConnectionPhase.CONNECTING)
        self._start_reader(probe=True)

    def _give_up(self) -> None:
        """
        Falha terminal: reconexões esgotadas.

        Requisições pendentes seguem até o próprio deadline; disconnect()
        continua sendo o modo de finalizá-las de imediato.
        """
        self.heartbeat.stop()
        self._set_phase(ConnectionPhase.DISCONNECTED)
        self._settle_waiter(MaxReconnectAttemptsError(MAX_RECONNECT_MESSAGE))

    def _on_heartbeat(self, timestamp: int) -> None:
        if self._state.phase != ConnectionPhase.CONNECTED:
            return
        self._state.last_heartbeat_at = timestamp
        self.bus.publish("heartbeat", {"timestamp": timestamp})

    # ------------------------------------------------------------------
    # Frames recebidos
    # ------------------------------------------------------------------

    def _on_frame(self, frame: SSEFrame) -> None:
        """Roteia um frame do stream. Nunca interrompe a leitura."""
        try:
            message = json.loads(frame.data)
        except ValueError:
            logger.warning(f"Frame SSE com JSON inválido descartado (event={frame.event})")
            return
        try:
            if frame.event == "message":
                if isinstance(message, dict) and message.get("id") is not None:
                    self.table.resolve(str(message["id"]), _completion_from_message(message), message)
                else:
                    self.bus.publish("message", message)
            else:
                self.bus.publish(frame.event, message)
        except Exception:
            logger.exception(f"Erro ao processar frame SSE (event={frame.event})")

    # ------------------------------------------------------------------
    # Requisições
    # ------------------------------------------------------------------

    async def send_request(self, operation: str, params: Optional[Dict[str, Any]] = None) -> OperationResult:
        """
        Envia a operação pelo canal lateral e aguarda a resposta no stream.

        Nunca lança exceção: timeout, falha de envio e desconexão viram
        OperationResult com success=False.
        """
        started = perf_counter()
        request_id = self._ids.next_id()
        token = set_correlation_id(request_id)
        try:
            if self._state.phase == ConnectionPhase.DISCONNECTED:
                completion = Completion(False, NOT_CONNECTED_MESSAGE)
            else:
                future = self.table.register(request_id, self.config.timeout, operation)
                request = JsonRpcRequest(id=request_id, method=operation, params=params or {})
                send = asyncio.ensure_future(self._transmit(request))
                self._sends.add(send)
                send.add_done_callback(self._sends.discard)
                completion = await future

            result = OperationResult.from_completion(completion, operation, request_id, started)
            self.metrics.record_request(result.success, result.metadata.elapsed_millis)
            if not result.success:
                logger.warning(f"Operação {operation} falhou: {result.error_message}")
            return result
        finally:
            reset_correlation_id(token)

    async def _transmit(self, request: JsonRpcRequest) -> None:
        if self.config.enable_logging:
            logger.debug(f"SSE Request: POST {self.config.request_path} {request.method}")
        try:
            response = await self._client().post(self.config.request_path, json=request.model_dump())
        except httpx.HTTPError as e:
            logger.error(f"Falha ao enviar requisição {request.method}: {e}")
            self.table.fail(request.id, str(e) or type(e).__name__)
            return
        if not response.is_success:
            self.table.fail(request.id, f"Request failed with status code {response.status_code}")

    # ------------------------------------------------------------------
    # Encerramento
    # ------------------------------------------------------------------

    async def _teardown(self, reason: str, error: Optional[BaseException] = None) -> None:
        self._set_phase(ConnectionPhase.DISCONNECTED)
        self.heartbeat.stop()
        self.supervisor.reset()

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        for send in list(self._sends):
            send.cancel()
        self._sends.clear()

        drained = self.table.drain(reason)
        if drained:
            logger.info(f"{drained} requisições pendentes finalizadas: {reason}")
        self._settle_waiter(error or ClickUpClientError(reason))
        await self._close_http()

    async def _close_http(self) -> None:
        """Fecha o cliente HTTP quando ele pertence ao transporte."""
        if self._owns_http and self._http is not None:
            client, self._http = self._http, None
            await client.aclose()

    async def disconnect(self) -> None:
        """Fecha o stream, cancela timers e finaliza requisições pendentes. Idempotente."""
        await self._teardown(TRANSPORT_CLOSED_MESSAGE)
        logger.info("Desconectado do ClickUp MCP Server (SSE)")

    def get_connection_state(self) -> ConnectionState:
        return self._state.model_copy(update={"attempt": self.supervisor.attempt})

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.request_summary()


# ============================================================================
# N8N - REGISTRO DE WORKFLOWS E WEBHOOKS
# ============================================================================

# Tipo de notificação do servidor -> trigger de workflow
NOTIFICATION_TRIGGERS: Dict[str, str] = {
    "task_created": "task_update",
    "task_updated": "task_update",
    "time_entry_added": "time_tracking",
    "time_entry_updated": "time_tracking",
    "comment_added": "comment_added",
    "attachment_uploaded": "attachment_uploaded",
    "status_changed": "status_changed",
}


class WorkflowRegistry:
    """
    Handlers de webhook (por tipo de evento) e triggers de workflow.

    Pertence ao cliente e é passado explicitamente para quem precisa.
    """

    def __init__(self):
        self.webhook_handlers = EventBus()
        self._triggers: Dict[str, Callable[[Any], Any]] = {}

    @property
    def trigger_ids(self) -> List[str]:
        return list(self._triggers)

    def register_webhook_handler(self, event_type: str, handler: Callable[[Any], Any]) -> Subscription:
        logger.info(f"Webhook handler registrado: {event_type}")
        return self.webhook_handlers.subscribe(event_type, handler)

    def register_trigger(self, trigger_id: str, handler: Callable[[Any], Any]) -> None:
        self._triggers[trigger_id] = handler
        logger.info(f"Workflow trigger registrado: {trigger_id}")

    def unregister_trigger(self, trigger_id: str) -> bool:
        removed = self._triggers.pop(trigger_id, None) is not None
        if removed:
            logger.info(f"Workflow trigger removido: {trigger_id}")
        return removed

    def trigger(self, trigger_id: str, data: Any) -> bool:
        """Dispara o trigger, se registrado."""
        handler = self._triggers.get(trigger_id)
        if handler is None:
            return False
        self.webhook_handlers.invoke(handler, data, trigger_id)
        return True

    def handle_webhook_event(self, event: Dict[str, Any]) -> None:
        """Entrega o evento aos handlers do seu tipo e dispara o trigger de mesmo nome."""
        event_type = event.get("type") or "unknown"
        logger.info(f"Webhook recebido: {event_type}")
        self.webhook_handlers.publish(event_type, event)
        self.trigger(event_type, event)


def build_webhook_app(registry: WorkflowRegistry) -> Starlette:
    """Aplicação ASGI que recebe webhooks e triggers do N8N."""

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})

    async def webhook(request: Request) -> JSONResponse:
        try:
            event = json.loads(await request.body() or b"null")
        except ValueError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        if not isinstance(event, dict):
            return JSONResponse({"error": "Webhook payload must be a JSON object"}, status_code=400)
        registry.handle_webhook_event(event)
        return JSONResponse({"status": "received"})

    async def trigger(request: Request) -> JSONResponse:
        trigger_id = request.path_params["trigger_id"]
        body = await request.body()
        try:
            data = json.loads(body) if body else {}
        except ValueError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        fired = registry.trigger(trigger_id, data)
        if not fired:
            logger.warning(f"Trigger não registrado: {trigger_id}")
        return JSONResponse({"status": "triggered", "triggerId": trigger_id, "handled": fired})

    return Starlette(routes=[
        Route("/health", health, methods=["GET"]),
        Route("/webhook", webhook, methods=["POST"]),
        Route("/trigger/{trigger_id}", trigger, methods=["POST"]),
    ])


# ============================================================================
# TRANSPORTE N8N
# ============================================================================

class N8NTransport(ClickUpOperationsMixin):
    """
    Fachada para workflows N8N.

    Compõe um transporte HTTP (CRUD) e um SSE (notificações em tempo real),
    e opcionalmente sobe um servidor local de webhooks.
    """

    kind = TransportKind.N8N

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        n8n_config: Optional[N8NConfig] = None,
        registry: Optional[WorkflowRegistry] = None,
        http: Optional[HTTPTransport] = None,
        sse: Optional[SSETransport] = None
    ):
        self.config = config or ClientConfig()
        self.n8n_config = n8n_config or N8NConfig()
        self.registry = registry or WorkflowRegistry()
        self.http = http or HTTPTransport(self.config)
        self.sse = sse or SSETransport(self.config)
        self._webhook_server: Optional[uvicorn.Server] = None
        self._webhook_task: Optional["asyncio.Task[None]"] = None
        self._notifications: Optional[Subscription] = None

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.n8n_config.webhook_url) or self.n8n_config.trigger_type == TriggerType.WEBHOOK

    @property
    def webhook_active(self) -> bool:
        return self._webhook_server is not None

    @property
    def is_connected(self) -> bool:
        return self.http.is_connected and self.sse.is_connected

    async def connect(self) -> None:
        """Conecta HTTP e SSE em paralelo e sobe o servidor de webhooks quando configurado."""
        results = await asyncio.gather(self.http.connect(), self.sse.connect(), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error(f"Falha ao conectar ClickUp MCP N8N Client: {errors[0]}")
            await self._disconnect_transports()
            raise errors[0]

        if self.webhook_enabled:
            try:
                await self._start_webhook_server()
            except (OSError, ClickUpClientError) as e:
                logger.error(f"Falha ao iniciar servidor de webhooks: {e}")
                await self._disconnect_transports()
                raise

        if self._notifications is None:
            self._notifications = self.sse.bus.subscribe("notification", self.route_notification)
        logger.info("ClickUp MCP N8N Client conectado")

    async def disconnect(self) -> None:
        if self._notifications is not None:
            self._notifications.cancel()
            self._notifications = None
        await self._stop_webhook_server()
        await self._disconnect_transports()
        logger.info("ClickUp MCP N8N Client desconectado")

    async def _disconnect_transports(self) -> None:
        results = await asyncio.gather(self.http.disconnect(), self.sse.disconnect(), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]

    async def _start_webhook_server(self) -> None:
        if self._webhook_server is not None:
            return
        config = uvicorn.Config(
            build_webhook_app(self.registry),
            host=self.n8n_config.webhook_host,
            port=self.n8n_config.webhook_port,
            log_level="warning",
            lifespan="off"
        )
        server = uvicorn.Server(config)
        task = asyncio.ensure_future(server.serve())
        while not server.started:
            if task.done():
                task.result()
                raise ClickUpClientError("Webhook server stopped during startup")
            await asyncio.sleep(0.05)
        self._webhook_server = server
        self._webhook_task = task
        logger.info(f"N8N webhook server iniciado na porta {self.n8n_config.webhook_port}")

    async def _stop_webhook_server(self) -> None:
        server, task = self._webhook_server, self._webhook_task
        self._webhook_server = None
        self._webhook_task = None
        if server is None or task is None:
            return
        server.should_exit = True
        await task
        logger.info("N8N webhook server parado")

    def route_notification(self, data: Any) -> Optional[str]:
        """Dispara o trigger mapeado para a notificação. Retorna o trigger usado."""
        if not isinstance(data, dict):
            return None
        trigger_id = NOTIFICATION_TRIGGERS.get(data.get("type", ""))
        if trigger_id:
            self.registry.trigger(trigger_id, data)
        return trigger_id

    async def send_request(self, operation: str, params: Optional[Dict[str, Any]] = None) -> OperationResult:
        return await self.http.send_request(operation, params)

    # ------------------------------------------------------------------
    # Helpers N8N
    # ------------------------------------------------------------------

    def _n8n_metadata(self, workflow_id: Optional[str], execution_id: Optional[str]) -> Dict[str, Any]:
        return {
            "source": "n8n",
            "workflowId": workflow_id or self.n8n_config.workflow_id,
            "executionId": execution_id,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    async def create_task_from_n8n(self, task_data: Dict[str, Any]) -> OperationResult:
        """
        Cria task a partir de um item do N8N.

        Espera name, listId e opcionais (description, assignees, priority,
        dueDate, tags, customFields, workflowId, executionId).
        """
        options = _compact({
            "description": task_data.get("description"),
            "assignees": task_data.get("assignees"),
            "priority": task_data.get("priority"),
            "dueDate": task_data.get("dueDate"),
            "tags": task_data.get("tags"),
            "customFields": task_data.get("customFields"),
        })
        options["metadata"] = self._n8n_metadata(task_data.get("workflowId"), task_data.get("executionId"))
        return await self.create_task(task_data.get("name", ""), task_data.get("listId", ""), options)

    async def update_task_from_n8n(self, task_id: str, update_data: Dict[str, Any]) -> OperationResult:
        updates = {k: v for k, v in update_data.items() if k not in ("workflowId", "executionId")}
        updates["metadata"] = self._n8n_metadata(update_data.get("workflowId"), update_data.get("executionId"))
        return await self.update_task(task_id, updates)

    async def add_time_entry_from_n8n(self, time_data: Dict[str, Any]) -> OperationResult:
        params = _compact({
            "taskId": time_data.get("taskId"),
            "duration": time_data.get("duration"),
            "description": time_data.get("description"),
        })
        params["metadata"] = self._n8n_metadata(time_data.get("workflowId"), time_data.get("executionId"))
        return await self.send_request("add_time_entry", params)

    async def add_comment_from_n8n(self, comment_data: Dict[str, Any]) -> OperationResult:
        params = {
            "taskId": comment_data.get("taskId"),
            "commentText": comment_data.get("commentText"),
            "metadata": self._n8n_metadata(comment_data.get("workflowId"), comment_data.get("executionId")),
        }
        return await self.send_request("add_comment", params)

    async def bulk_create_tasks_from_n8n(self, tasks: List[Dict[str, Any]]) -> List[OperationResult]:
        """Cria tasks em sequência. Falhas não interrompem o lote."""
        results = []
        for task_data in tasks:
            results.append(await self.create_task_from_n8n(task_data))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk create: {succeeded}/{len(results)} tasks criadas")
        return results

    async def bulk_update_tasks_from_n8n(self, updates: List[Dict[str, Any]]) -> List[OperationResult]:
        """Atualiza tasks em sequência ({taskId, updateData}). Falhas não interrompem o lote."""
        results = []
        for item in updates:
            results.append(await self.update_task_from_n8n(item.get("taskId", ""), item.get("updateData") or {}))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk update: {succeeded}/{len(results)} tasks atualizadas")
        return results

    async def poll_for_task_updates(
        self,
        list_id: Optional[str] = None,
        last_poll_time: Optional[Union[int, str]] = None
    ) -> OperationResult:
        options: Dict[str, Any] = {}
        if last_poll_time:
            options["updatedAfter"] = last_poll_time
        return await self.get_tasks(list_id, options)

    async def poll_for_new_tasks(
        self,
        list_id: Optional[str] = None,
        last_poll_time: Optional[Union[int, str]] = None
    ) -> OperationResult:
        options: Dict[str, Any] = {"includeClosed": False}
        if last_poll_time:
            options["createdAfter"] = last_poll_time
        return await self.get_tasks(list_id, options)

    # ------------------------------------------------------------------
    # URLs e estado
    # ------------------------------------------------------------------

    def _local_url(self, path: str) -> str:
        return f"http://{self.n8n_config.webhook_host}:{self.n8n_config.webhook_port}{path}"

    def get_webhook_url(self) -> str:
        return self._local_url("/webhook")

    def get_trigger_url(self, trigger_id: str) -> str:
        return self._local_url(f"/trigger/{trigger_id}")

    def get_health_url(self) -> str:
        return self._local_url("/health")

    def get_connection_state(self) -> Dict[str, Any]:
        return {
            "http": self.http.get_connection_state().model_dump(),
            "sse": self.sse.get_connection_state().model_dump(),
            "webhook": {
                "port": self.n8n_config.webhook_port,
                "active": self.webhook_active,
            }
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "http": self.http.get_metrics(),
            "sse": self.sse.get_metrics(),
            "webhook_handlers": self.registry.webhook_handlers.listener_count(),
            "workflow_triggers": len(self.registry.trigger_ids),
        }


# ============================================================================
# CLIENTE UNIFICADO
# ============================================================================

class TransportHandle(NamedTuple):
    """Transporte ativo: o tipo decide o despacho."""
    kind: TransportKind
    transport: Union[HTTPTransport, SSETransport, N8NTransport]


class ClickUpMCPClient(ClickUpOperationsMixin):
    """
    Cliente unificado: mantém um transporte de cada tipo e delega para o ativo.

    Funcionalidades N8N e de eventos só existem nos transportes que as
    suportam; nos demais lançam TransportNotSupportedError.

    Usage:
        async with ClickUpMCPClient(ClientConfig(transport="sse")) as client:
            result = await client.get_spaces()
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        n8n_config: Optional[N8NConfig] = None,
        http: Optional[HTTPTransport] = None,
        sse: Optional[SSETransport] = None,
        n8n: Optional[N8NTransport] = None
    ):
        self.config = config or ClientConfig()
        self.http = http or HTTPTransport(self.config)
        self.sse = sse or SSETransport(self.config)
        self.n8n = n8n or N8NTransport(self.config, n8n_config, WorkflowRegistry())
        self.registry = self.n8n.registry
        self._handle = self._select(self.config.transport)

    def _select(self, kind: TransportKind) -> TransportHandle:
        if kind == TransportKind.SSE:
            return TransportHandle(TransportKind.SSE, self.sse)
        if kind in (TransportKind.N8N, TransportKind.WEBHOOK):
            return TransportHandle(TransportKind.N8N, self.n8n)
        return TransportHandle(TransportKind.HTTP, self.http)

    @property
    def active(self) -> TransportHandle:
        return self._handle

    def get_transport(self) -> TransportKind:
        return self._handle.kind

    @property
    def is_connected(self) -> bool:
        return self._handle.transport.is_connected

    async def __aenter__(self) -> "ClickUpMCPClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        await self._handle.transport.connect()
        logger.info(f"ClickUp MCP Client conectado via {self._handle.kind.value}")

    async def disconnect(self) -> None:
        try:
            await self._handle.transport.disconnect()
        except (ClickUpClientError, httpx.HTTPError, OSError) as e:
            logger.error(f"Erro ao desconectar ({self._handle.kind.value}): {e}")
            raise
        logger.info("ClickUp MCP Client desconectado")

    async def switch_transport(self, kind: Union[TransportKind, str]) -> None:
        """Troca o transporte ativo: desconecta o atual e conecta o novo."""
        handle = self._select(TransportKind(kind))
        if handle.kind == self._handle.kind:
            return
        logger.info(f"Trocando transporte: {self._handle.kind.value} -> {handle.kind.value}")
        await self.disconnect()
        self._handle = handle
        await self.connect()

    async def send_request(self, operation: str, params: Optional[Dict[str, Any]] = None) -> OperationResult:
        return await self._handle.transport.send_request(operation, params)

    # ------------------------------------------------------------------
    # Exclusivo N8N
    # ------------------------------------------------------------------

    def _require_n8n(self, feature: str) -> N8NTransport:
        handle = self._handle
        if handle.kind == TransportKind.N8N:
            return handle.transport
        raise TransportNotSupportedError(f"{feature} are only available when using N8N transport")

    async def create_task_from_n8n(self, task_data: Dict[str, Any]) -> OperationResult:
        return await self._require_n8n("N8N methods").create_task_from_n8n(task_data)

    async def update_task_from_n8n(self, task_id: str, update_data: Dict[str, Any]) -> OperationResult:
        return await self._require_n8n("N8N methods").update_task_from_n8n(task_id, update_data)

    async def add_time_entry_from_n8n(self, time_data: Dict[str, Any]) -> OperationResult:
        return await self._require_n8n("N8N methods").add_time_entry_from_n8n(time_data)

    async def add_comment_from_n8n(self, comment_data: Dict[str, Any]) -> OperationResult:
        return await self._require_n8n("N8N methods").add_comment_from_n8n(comment_data)

    async def bulk_create_tasks_from_n8n(self, tasks: List[Dict[str, Any]]) -> List[OperationResult]:
        return await self._require_n8n("N8N methods").bulk_create_tasks_from_n8n(tasks)

    async def bulk_update_tasks_from_n8n(self, updates: List[Dict[str, Any]]) -> List[OperationResult]:
        return await self._require_n8n("N8N methods").bulk_update_tasks_from_n8n(updates)

    async def poll_for_task_updates(self, list_id: Optional[str] = None, last_poll_time: Optional[Union[int, str]] = None) -> OperationResult:
        return await self._require_n8n("Polling methods").poll_for_task_updates(list_id, last_poll_time)

    async def poll_for_new_tasks(self, list_id: Optional[str] = None, last_poll_time: Optional[Union[int, str]] = None) -> OperationResult:
        return await self._require_n8n("Polling methods").poll_for_new_tasks(list_id, last_poll_time)

    def register_webhook_handler(self, event_type: str, handler: Callable[[Any], Any]) -> Subscription:
        return self._require_n8n("Webhook handlers").registry.register_webhook_handler(event_type, handler)

    def register_workflow_trigger(self, trigger_id: str, handler: Callable[[Any], Any]) -> None:
        self._require_n8n("Workflow triggers").registry.register_trigger(trigger_id, handler)

    def unregister_workflow_trigger(self, trigger_id: str) -> bool:
        return self._require_n8n("Workflow triggers").registry.unregister_trigger(trigger_id)

    def get_webhook_url(self) -> str:
        return self._require_n8n("Webhook URLs").get_webhook_url()

    def get_trigger_url(self, trigger_id: str) -> str:
        return self._require_n8n("Trigger URLs").get_trigger_url(trigger_id)

    def get_health_url(self) -> str:
        return self._require_n8n("Health URLs").get_health_url()

    # ------------------------------------------------------------------
    # Eventos
    # ------------------------------------------------------------------

    def _event_bus(self) -> EventBus:
        handle = self._handle
        if handle.kind == TransportKind.SSE:
            return handle.transport.bus
        if handle.kind == TransportKind.N8N:
            return handle.transport.sse.bus
        raise TransportNotSupportedError("Event listeners are only available when using SSE or N8N transport")

    def subscribe(self, event: str, listener: Callable[[Any], Any]) -> Subscription:
        return self._event_bus().subscribe(event, listener)

    def on(self, event: str, listener: Callable[[Any], Any]) -> Subscription:
        return self.subscribe(event, listener)

    def off(self, event: str, listener: Callable[[Any], Any]) -> bool:
        return self._event_bus().unsubscribe(event, listener)

    # ------------------------------------------------------------------
    # Estado e diagnóstico
    # ------------------------------------------------------------------

    def get_connection_state(self) -> Union[ConnectionState, Dict[str, Any]]:
        return self._handle.transport.get_connection_state()

    def get_metrics(self) -> Dict[str, Any]:
        return self._handle.transport.get_metrics()

    async def health_check(self) -> bool:
        return self.is_connected

    async def ping(self) -> float:
        """
        Mede o round-trip de get_spaces.

        Returns:
            Latência em milissegundos

        Raises:
            ClickUpClientError: Se a requisição falhar
        """
        started = perf_counter()
        result = await self.get_spaces()
        if not result.success:
            raise ClickUpClientError(f"Ping failed: {result.error_message}")
        return (perf_counter() - started) * 1000
