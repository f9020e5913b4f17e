"""
Helpers for logging failures without ever raising from the logging path itself.

The proxy recovers from most of its failures locally (rewrite and cookie relay
errors, dropped relay sockets), so these helpers are called from ``except``
blocks that must not blow up on broken exception objects.
"""

import logging
from typing import Optional


def _safe_str(obj) -> str:
    """
    Convert an object to string, falling back to ``repr`` and finally to a
    type placeholder when ``__str__`` itself fails.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            try:
                return f"<{type(obj).__name__} object (string conversion failed)>"
            except Exception:
                return "<object (all string conversions failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def upstream_status_code(exception: Exception) -> Optional[int]:
    """
    Return the HTTP status the origin answered with, if the exception carries one.

    Walks exception groups so a failure raised inside a task group still
    surfaces the origin's status instead of a generic 500.
    """
    try:
        status_code = getattr(exception, "status_code", None)
        if isinstance(status_code, int):
            return status_code

        response = getattr(exception, "response", None)
        status_code = getattr(response, "status_code", None)
        if isinstance(status_code, int):
            return status_code

        if hasattr(exception, "exceptions"):
            for sub_exc in _safe_get_exceptions(exception):
                found = upstream_status_code(sub_exc)
                if found is not None:
                    return found
        return None
    except Exception:
        return None


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, expanding sub-exceptions of exception groups.

    Args:
        logger: The logger instance to use
        prefix: Component prefix for the message (e.g. "[Proxy]", "[Cookie Relay]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        safe_exception_str = "None" if exception is None else _safe_str(exception)

        sub_exceptions = []
        if exception is not None and hasattr(exception, "exceptions"):
            sub_exceptions = _safe_get_exceptions(exception)

        if not sub_exceptions:
            try:
                logger.log(
                    level,
                    f"{safe_prefix} {type(exception).__name__}: {safe_exception_str}",
                    exc_info=exception if exception is not None else False,
                )
            except Exception:
                logger.log(level, f"{safe_prefix} Exception: {safe_exception_str}")
            return

        logger.log(
            level,
            f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: {safe_exception_str}",
        )
        for i, sub_exc in enumerate(sub_exceptions):
            try:
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
            except Exception:
                continue
    except Exception:
        try:
            if logger is not None:
                logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            pass


def format_exception_message(exception: Exception) -> str:
    """
    Format an exception for an error envelope, including sub-exceptions of
    exception groups. Never raises.
    """
    try:
        if exception is None:
            return "None"

        message = getattr(exception, "message", None)
        main_str = message if isinstance(message, str) else _safe_str(exception)

        sub_exceptions = (
            _safe_get_exceptions(exception) if hasattr(exception, "exceptions") else []
        )
        if not sub_exceptions:
            return main_str

        joined = "; ".join(
            f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}"
            for sub_exc in sub_exceptions
        )
        return f"{main_str} (Sub-exceptions: {joined})"
    except Exception:
        try:
            return f"<{type(exception).__name__} (formatting failed)>"
        except Exception:
            return "<exception (all formatting failed)>"
