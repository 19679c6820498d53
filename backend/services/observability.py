"""
Module: observability.py
Description: Logging, metrics and the best-effort contract for the RUPI assistant.

Features:
    - Structured logging with key=value context fields
    - Timing decorator / context manager feeding an in-memory metrics store
    - Convenience log helpers for chat turns, tool calls, gateway calls
      and categorization batches
    - run_best_effort(): explicit contract for side effects whose failure
      must never fail the caller

Usage:
    from services.observability import logger, metrics, timed, run_best_effort

    @timed("gateway.categorize")
    async def categorize(transactions, categories):
        logger.info("Categorizing", count=len(transactions))
        ...

Author: RUPI Assistant Team
"""

import time
import logging
import asyncio
import functools
from datetime import datetime
from typing import Dict, Any, Optional, Callable
from collections import defaultdict
from contextlib import contextmanager


# =============================================================================
# Structured Logger
# =============================================================================

class StructuredLogger:
    """
    Thin wrapper over stdlib logging that appends key=value fields.
    """

    def __init__(self, name: str = "rupi-assistant"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(logging.INFO)
            formatter = logging.Formatter(
                '%(asctime)s | %(levelname)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def _format_message(self, message: str, **kwargs) -> str:
        if kwargs:
            field_str = " | ".join(f"{k}={v}" for k, v in kwargs.items())
            return f"{message} | {field_str}"
        return message

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs) -> None:
        self.logger.error(self._format_message(message, **kwargs))

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(self._format_message(message, **kwargs))

    def exception(self, message: str, **kwargs) -> None:
        """Log at error level with the active traceback."""
        self.logger.exception(self._format_message(message, **kwargs))


# =============================================================================
# Metrics Collector
# =============================================================================

class MetricsCollector:
    """
    In-memory counters, gauges and timing histograms.

    Exposed through GET /metrics. Per-process only; resets on restart.
    """

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.timings: Dict[str, list] = defaultdict(list)
        self._start_time = datetime.utcnow()

    def increment(self, name: str, value: int = 1, tags: Dict[str, str] = None) -> None:
        key = self._make_key(name, tags)
        self.counters[key] += value

    def gauge(self, name: str, value: float, tags: Dict[str, str] = None) -> None:
        key = self._make_key(name, tags)
        self.gauges[key] = value

    def timing(self, name: str, duration_ms: float, tags: Dict[str, str] = None) -> None:
        key = self._make_key(name, tags)
        self.timings[key].append(duration_ms)
        # Keep only last 1000 measurements
        if len(self.timings[key]) > 1000:
            self.timings[key] = self.timings[key][-1000:]

    def _make_key(self, name: str, tags: Optional[Dict[str, str]] = None) -> str:
        if tags:
            tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
            return f"{name}:{tag_str}"
        return name

    def reset(self) -> None:
        self.counters.clear()
        self.gauges.clear()
        self.timings.clear()

    def get_summary(self) -> Dict[str, Any]:
        summary = {
            "uptime_seconds": (datetime.utcnow() - self._start_time).total_seconds(),
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "timings": {},
        }

        for name, values in self.timings.items():
            if values:
                ordered = sorted(values)
                summary["timings"][name] = {
                    "count": len(values),
                    "avg_ms": sum(values) / len(values),
                    "min_ms": ordered[0],
                    "max_ms": ordered[-1],
                    "p50_ms": ordered[len(values) // 2],
                    "p95_ms": ordered[int(len(values) * 0.95)] if len(values) >= 20 else None,
                }

        return summary


# =============================================================================
# Timing Decorators
# =============================================================================

def timed(name: str = None):
    """
    Decorator to time function execution and record metrics.

    Works on both plain and async functions.

    Example:
        @timed("gateway.categorize")
        async def categorize(transactions, categories):
            ...
    """
    def decorator(func: Callable) -> Callable:
        metric_name = name or func.__name__

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                metrics.increment(f"{metric_name}.success")
                return result
            except Exception:
                metrics.increment(f"{metric_name}.error")
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.timing(metric_name, duration_ms)
                logger.debug(f"{metric_name} completed", duration_ms=f"{duration_ms:.2f}")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                metrics.increment(f"{metric_name}.success")
                return result
            except Exception:
                metrics.increment(f"{metric_name}.error")
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.timing(metric_name, duration_ms)
                logger.debug(f"{metric_name} completed", duration_ms=f"{duration_ms:.2f}")

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@contextmanager
def timed_block(name: str):
    """
    Context manager for timing code blocks.

    Example:
        with timed_block("tool.get_balance_sheet"):
            run_tool()
    """
    start = time.perf_counter()
    try:
        yield
        metrics.increment(f"{name}.success")
    except Exception:
        metrics.increment(f"{name}.error")
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.timing(name, duration_ms)


# =============================================================================
# Global Instances
# =============================================================================

logger = StructuredLogger()

metrics = MetricsCollector()


# =============================================================================
# Best-effort contract
# =============================================================================

def run_best_effort(label: str, func: Callable, *args, **kwargs) -> bool:
    """
    Run a side effect that must not fail its caller.

    Returns True when func completed, False when it raised. Failures are
    logged at warning level and counted under best_effort.failed.
    """
    try:
        func(*args, **kwargs)
        return True
    except Exception as e:
        logger.warning("Best-effort step failed", step=label, error=f"{type(e).__name__}: {e}")
        metrics.increment("best_effort.failed", tags={"step": label})
        return False


# =============================================================================
# Convenience Functions
# =============================================================================

def log_chat_turn_start(chat_id: str, family_id: int, message_length: int) -> None:
    logger.info("Chat turn started", chat_id=chat_id[:8], family_id=family_id, msg_length=message_length)
    metrics.increment("chat.turns.started")


def log_chat_turn_complete(chat_id: str, response_id: Optional[str], tool_calls: int) -> None:
    logger.info("Chat turn completed", chat_id=chat_id[:8], response_id=response_id, tool_calls=tool_calls)
    metrics.increment("chat.turns.completed")


def log_chat_turn_failed(chat_id: str, error: str) -> None:
    logger.error("Chat turn failed", chat_id=chat_id[:8], error=error)
    metrics.increment("chat.turns.failed")


def log_tool_call(name: str, succeeded: bool, duration_ms: float) -> None:
    """Log one executed assistant function."""
    logger.info("Tool executed", tool=name, ok=succeeded, duration_ms=f"{duration_ms:.2f}")
    metrics.increment("tools.calls", tags={"tool": name, "ok": str(succeeded).lower()})
    metrics.timing("tools.latency", duration_ms, tags={"tool": name})


def log_gateway_call(endpoint: str, request_id: str, duration_ms: float, tokens: int = 0) -> None:
    logger.debug("Gateway call", endpoint=endpoint, request_id=request_id, tokens=tokens,
                 duration_ms=f"{duration_ms:.2f}")
    metrics.increment("gateway.calls", tags={"endpoint": endpoint})
    if tokens:
        metrics.increment("gateway.tokens", tokens)
    metrics.timing("gateway.latency", duration_ms, tags={"endpoint": endpoint})


def log_categorization_batch(family_id: int, batch_index: int, size: int,
                             modified: int, error: Optional[str] = None) -> None:
    """Log the outcome of one categorization batch."""
    if error:
        logger.warning("Categorization batch failed", family_id=family_id, batch=batch_index,
                       size=size, error=error)
        metrics.increment("categorization.batches.failed")
    else:
        logger.info("Categorization batch done", family_id=family_id, batch=batch_index,
                    size=size, modified=modified)
        metrics.increment("categorization.batches.ok")
        metrics.increment("categorization.transactions", modified)
