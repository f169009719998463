"""
Observabilidade compartilhada - Logging, Correlation ID e Métricas
==================================================================
Usado pelo servidor MCP (clickup_mcp) e pelo cliente multi-transporte
(clickup_mcp_client). Configura o loguru uma única vez por processo.
"""

import os
import sys
import uuid
import statistics
import contextvars
from collections import Counter, deque
from contextlib import contextmanager
from time import perf_counter, time
from typing import Optional, Dict, Any, Deque, Iterable, Iterator

from loguru import logger

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Configuração de log em arquivo (opcional)
LOG_FILE = os.environ.get("LOG_FILE", "")

# Variável de contexto para correlation ID
_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    'correlation_id',
    default='no-cid'
)


def _inject_correlation_id(record: Dict[str, Any]) -> None:
    """Injeta o correlation ID atual em todo registro de log."""
    record["extra"]["correlation_id"] = _correlation_id.get()


# Remove default logger
logger.remove()
logger.configure(patcher=_inject_correlation_id)

logger.add(
    sys.stderr,
    level=LOG_LEVEL,
    format="<level>{level: <8}</level> | [{extra[correlation_id]}] <cyan>{function}</cyan>:<cyan>{line}</cyan> - {message}",
    colorize=True
)

# Add file logger with rotation (se LOG_FILE configurado)
if LOG_FILE:
    logger.add(
        LOG_FILE,
        level=LOG_LEVEL,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | [{extra[correlation_id]}] {function}:{line} - {message}",
        rotation="10 MB",      # Rotaciona quando arquivo atinge 10MB
        retention="7 days",    # Mantém logs por 7 dias
        compression="gz",      # Comprime arquivos antigos
        serialize=False,
        enqueue=True           # Thread-safe
    )

# ============================================================================
# CORRELATION ID
# ============================================================================


def get_correlation_id() -> str:
    """Retorna o correlation ID atual."""
    return _correlation_id.get()


def set_new_correlation_id() -> str:
    """Gera e define um novo correlation ID."""
    new_id = str(uuid.uuid4())[:8]  # 8 chars é suficiente
    _correlation_id.set(new_id)
    return new_id


def set_correlation_id(value: str) -> contextvars.Token:
    """
    Define um correlation ID explícito (ex: o ID de uma requisição JSON-RPC).

    Returns:
        Token para restaurar o valor anterior com reset_correlation_id()
    """
    return _correlation_id.set(value)


def reset_correlation_id(token: contextvars.Token) -> None:
    """Restaura o correlation ID anterior."""
    _correlation_id.reset(token)



# ============================================================================
# MÉTRICAS
# ============================================================================

_EMPTY_LATENCY = {"p50": 0, "p95": 0, "p99": 0, "avg": 0, "min": 0, "max": 0, "samples": 0}


def latency_percentiles(samples: Iterable[float]) -> Dict[str, float]:
    """p50/p95/p99, média e extremos de uma janela de latências (ms)."""
    ordered = sorted(samples)
    if not ordered:
        return dict(_EMPTY_LATENCY)

    def pick(fraction: float) -> float:
        return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]

    return {
        "p50": pick(0.50),
        "p95": pick(0.95),
        "p99": pick(0.99),
        "avg": statistics.fmean(ordered),
        "min": ordered[0],
        "max": ordered[-1],
        "samples": len(ordered)
    }


class Metrics:
    """
    Contadores e latências em memória.

    O servidor usa os contadores de tools, cache e API; cada transporte do
    cliente tem sua própria instância e usa os contadores de requisições.
    Latências ficam em janelas limitadas (as mais antigas saem primeiro).
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.tool_calls: Counter = Counter()
        self.tool_errors: Counter = Counter()
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
        self.retries = 0
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.average_response_time = 0.0
        self.last_request_time: Optional[int] = None
        self.started_at = time()
        self._latencies: Deque[float] = deque(maxlen=max_latency_samples)
        # Janela por tool é 10x menor
        self._per_tool_window = max(1, max_latency_samples // 10)
        self._tool_latencies: Dict[str, Deque[float]] = {}

    # Servidor

    def record_tool_call(self, tool_name: str) -> None:
        self.tool_calls[tool_name] += 1

    def record_tool_error(self, tool_name: str) -> None:
        self.tool_errors[tool_name] += 1

    def record_cache_hit(self) -> None:
        self.cache_hits += 1

    def record_cache_miss(self) -> None:
        self.cache_misses += 1

    def record_api_call(self) -> None:
        self.api_calls += 1

    def record_retry(self) -> None:
        self.retries += 1

    # Cliente

    def record_request(self, success: bool, elapsed_ms: float) -> None:
        """Registra o desfecho de uma requisição (média incremental do tempo de resposta)."""
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        self.last_request_time = int(time() * 1000)
        self.average_response_time += (elapsed_ms - self.average_response_time) / self.total_requests
        self.record_latency(elapsed_ms)

    # Latência

    def record_latency(self, latency_ms: float, tool_name: Optional[str] = None) -> None:
        self._latencies.append(latency_ms)
        if tool_name:
            window = self._tool_latencies.setdefault(tool_name, deque(maxlen=self._per_tool_window))
            window.append(latency_ms)

    @contextmanager
    def measure_latency(self, tool_name: Optional[str] = None) -> Iterator[None]:
        """
        Mede o bloco e registra a latência, mesmo se ele lançar exceção.

        Usage:
            with metrics.measure_latency("get_tasks"):
                await spec.handler(params)
        """
        started = perf_counter()
        try:
            yield
        finally:
            self.record_latency((perf_counter() - started) * 1000, tool_name)

    @property
    def uptime(self) -> float:
        """Segundos desde a criação."""
        return time() - self.started_at

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0

    def request_summary(self) -> Dict[str, Any]:
        """Resumo exposto por get_metrics() dos transportes do cliente."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_response_time": self.average_response_time,
            "last_request_time": self.last_request_time,
            "uptime": self.uptime,
            "latency_ms": latency_percentiles(self._latencies)
        }

    def get_summary(self) -> Dict[str, Any]:
        """Resumo do servidor; latência por tool apenas das 5 mais chamadas."""
        summary: Dict[str, Any] = {
            "tool_calls": dict(self.tool_calls),
            "tool_errors": dict(self.tool_errors),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hit_rate,
            "api_calls": self.api_calls,
            "retries": self.retries,
            "latency_ms": latency_percentiles(self._latencies)
        }
        busiest = [name for name, _ in self.tool_calls.most_common(5) if name in self._tool_latencies]
        if busiest:
            summary["latency_by_tool"] = {
                name: latency_percentiles(self._tool_latencies[name]) for name in busiest
            }
        return summary
