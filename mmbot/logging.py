"""
Structured logging for the mmbot market maker.

All events are written as JSON Lines so a deployment cycle can be replayed
from the log: plan summaries, placements, cancellations, pullbacks and
errors each land on one line with a millisecond timestamp.

Components:
- JsonlLogger: append-only JSON Lines writer
- DebugLogger: level filtering with event-name prefixes
- performance_trace: timing decorator for sync and async methods
- ErrorContext: error records with location and stack trace
- ActivityLog: operator-facing activity sink (deploy/withdraw/config changes)
"""
import asyncio
import functools
import inspect
import json
import os
import time
import traceback
from typing import Any, Callable, Dict, List, Optional

from .utils import now_ms


class JsonlLogger:
    """Append-only JSON Lines event writer.

    Every record is ``{"ts_ms": ..., "event": ..., **payload}`` on a single
    line. The file is opened line-buffered so records reach disk as soon as
    they are written.

    Not safe for concurrent writers; use one logger per process.
    """

    def __init__(self, path: str):
        """Open (or create) the log file at path, creating parent directories."""
        self.path = path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._fp = open(path, "a", buffering=1)

    def write(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Write one event.

        Args:
            event_type: Event identifier (e.g. "plan_computed", "order_place")
            payload: Event data merged into the record
        """
        rec = {"ts_ms": now_ms(), "event": event_type, **payload}
        self._fp.write(json.dumps(rec, separators=(",", ":"), ensure_ascii=False, default=str) + "\n")

    def close(self) -> None:
        """Flush and close the file handle. Safe to call twice."""
        if not self._fp.closed:
            self._fp.close()


class DebugLogger(JsonlLogger):
    """JsonlLogger with level filtering.

    Levels follow the standard library numbering. Non-INFO events get a
    prefix so they can be filtered with a plain grep:

        DEBUG    -> "debug_<event>"
        INFO     -> "<event>"
        WARNING  -> "warn_<event>"
        ERROR    -> "error_<event>"
        CRITICAL -> "critical_<event>"

    Usage:
        logger = DebugLogger("mm_events.jsonl", level="DEBUG")
        logger.debug("market_budget", {"market_id": "m1", "budget": 125000})
        logger.warning("insufficient_balance", {"shortfall": 4200})
    """

    LEVELS = {
        'DEBUG': 10,
        'INFO': 20,
        'WARNING': 30,
        'ERROR': 40,
        'CRITICAL': 50,
    }

    def __init__(self, path: str, level: str = 'INFO'):
        super().__init__(path)
        # Unknown level names fall back to INFO
        self.level = self.LEVELS.get(level.upper(), self.LEVELS['INFO'])

    def debug(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Verbose diagnostics (intermediate budgets, per-order detail)."""
        if self.level <= self.LEVELS['DEBUG']:
            self.write(f"debug_{event_type}", payload)

    def info(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Normal operation: plans computed, orders placed, config changes."""
        if self.level <= self.LEVELS['INFO']:
            self.write(event_type, payload)

    def warning(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Conditions an operator should see (shortfall, auto-matches, stale book)."""
        if self.level <= self.LEVELS['WARNING']:
            self.write(f"warn_{event_type}", payload)

    def error(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Failures that abort one operation but not the process."""
        if self.level <= self.LEVELS['ERROR']:
            self.write(f"error_{event_type}", payload)

    def critical(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Failures that leave the book in an unknown state."""
        if self.level <= self.LEVELS['CRITICAL']:
            self.write(f"critical_{event_type}", payload)


def performance_trace(logger_attr: str = 'logger'):
    """Decorator that times a method and logs the duration at DEBUG level.

    The logger is looked up on the instance (``self.<logger_attr>``). Timing
    only happens when that logger is a DebugLogger at DEBUG level; otherwise
    the wrapped function is called directly. Exceptions are logged with
    their duration and re-raised.

    Args:
        logger_attr: Attribute name of the logger on the instance

    Usage:
        @performance_trace()
        def compute(self, snapshot):
            ...
    """

    def _tracing_logger(args) -> Optional[DebugLogger]:
        if not args:
            return None
        logger = getattr(args[0], logger_attr, None)
        if not isinstance(logger, DebugLogger) or logger.level > DebugLogger.LEVELS['DEBUG']:
            return None
        return logger

    def _log_failure(logger: DebugLogger, func: Callable, start: float, e: Exception) -> None:
        logger.error("perf_function_error", {
            "function": f"{func.__module__}.{func.__qualname__}",
            "duration_ms": round((time.perf_counter() - start) * 1000, 3),
            "error": str(e),
            "error_type": type(e).__name__,
        })

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = _tracing_logger(args)
            if logger is None:
                return await func(*args, **kwargs)

            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _log_failure(logger, func, start, e)
                raise
            logger.debug("perf_async_function", {
                "function": f"{func.__module__}.{func.__qualname__}",
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
                "args_count": len(args) + len(kwargs),
            })
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            logger = _tracing_logger(args)
            if logger is None:
                return func(*args, **kwargs)

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_failure(logger, func, start, e)
                raise
            logger.debug("perf_sync_function", {
                "function": f"{func.__module__}.{func.__qualname__}",
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
                "args_count": len(args) + len(kwargs),
            })
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


class ErrorContext:
    """Error records with location, type and optional stack trace.

    Usage:
        try:
            await venue.place_orders(market_id, orders)
        except Exception as e:
            ErrorContext.log_operation_error(logger, "place_orders", e, {
                "market_id": market_id,
                "orders": len(orders),
            })
            raise

    Output (event "error_detailed_error"):
        {"error_message": ..., "error_type": ..., "function": ..., "file": ...,
         "line": ..., "stack_trace": ..., "context": {...}}
    """

    @staticmethod
    def capture_error(
        logger: DebugLogger,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
        include_stack: bool = True
    ) -> None:
        """Log an exception with the location of the code that reported it.

        Args:
            logger: Destination logger
            error: Exception to record
            context: Extra fields (operation, market, amounts)
            include_stack: Attach the formatted traceback
        """
        function_name = "unknown"
        file_name = "unknown"
        line_number = 0

        frame = inspect.currentframe()
        try:
            # Skip capture_error and log_operation_error to reach the caller
            caller_frame = frame
            for _ in range(3):
                if caller_frame:
                    caller_frame = caller_frame.f_back
            if caller_frame:
                function_name = caller_frame.f_code.co_name
                file_name = caller_frame.f_code.co_filename
                line_number = caller_frame.f_lineno
        finally:
            del frame

        error_payload = {
            "error_message": str(error),
            "error_type": type(error).__name__,
            "function": function_name,
            "file": file_name,
            "line": line_number,
            "timestamp": now_ms(),
        }
        if include_stack:
            error_payload["stack_trace"] = traceback.format_exc()
        if context:
            error_payload["context"] = context

        logger.error("detailed_error", error_payload)

    @staticmethod
    def log_operation_error(
        logger: DebugLogger,
        operation: str,
        error: Exception,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log an error raised while running a named operation."""
        full_context = {
            "operation": operation,
            **(context or {}),
        }
        ErrorContext.capture_error(logger, error, full_context)


class ActivityLog:
    """Write-only operator activity sink.

    One JSON line per deploy, withdraw, pullback or config change:

        {"action": "deploy_all", "details": {...}, "exposure_before": 120000,
         "exposure_after": 120000, "timestamp": 1703123456789}

    The engine never reads these records back; ``recent`` exists for the
    CLI status view.
    """

    def __init__(self, path: str):
        self.path = path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def record(
        self,
        action: str,
        details: Dict[str, Any],
        exposure_before: Optional[int] = None,
        exposure_after: Optional[int] = None,
    ) -> Dict[str, Any]:
        entry = {
            "action": action,
            "details": details,
            "exposure_before": exposure_before,
            "exposure_after": exposure_after,
            "timestamp": now_ms(),
        }
        with open(self.path, "a") as fp:
            fp.write(json.dumps(entry, separators=(",", ":"), default=str) + "\n")
        return entry

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent entries, newest first."""
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r") as fp:
            lines = [ln for ln in fp.read().splitlines() if ln.strip()]
        return [json.loads(ln) for ln in reversed(lines[-limit:])] if limit > 0 else []
