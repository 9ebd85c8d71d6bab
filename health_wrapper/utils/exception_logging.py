"""
Exception logging for connection boundaries.

Errors on the proxy path are contained per connection: they are logged here
and the connection is dropped, nothing is re-raised into the listener.
"""

import asyncio
import logging

DISCONNECT_ERRORS = (ConnectionError, asyncio.IncompleteReadError)


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def is_disconnect(exception: BaseException) -> bool:
    """True when the exception (or every member of an exception group) is a peer going away."""
    subs = _sub_exceptions(exception)
    if subs:
        return all(is_disconnect(sub) for sub in subs)
    return isinstance(exception, DISCONNECT_ERRORS)


def format_exception_message(exception: BaseException) -> str:
    """One-line description, including the members of an exception group."""
    if exception is None:
        return "None"
    subs = _sub_exceptions(exception)
    if not subs:
        return f"{type(exception).__name__}: {_safe_str(exception)}"
    details = "; ".join(format_exception_message(sub) for sub in subs)
    return f"{_safe_str(exception)} (Sub-exceptions: {details})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception at a connection boundary.

    Peer disconnects are routine for a proxy and go to DEBUG without a
    traceback. Exception groups are unpacked so each member gets its own
    record.
    """
    if is_disconnect(exception):
        logger.debug(f"{prefix} Peer disconnected: {format_exception_message(exception)}")
        return

    subs = _sub_exceptions(exception)
    if not subs:
        logger.log(level, f"{prefix} Exception: {_safe_str(exception)}", exc_info=exception)
        return

    logger.log(
        level,
        f"{prefix} Exception with {len(subs)} sub-exceptions: {_safe_str(exception)}",
    )
    for i, sub in enumerate(subs):
        logger.log(
            level,
            f"{prefix} Sub-exception {i + 1}: {type(sub).__name__}: {_safe_str(sub)}",
            exc_info=sub,
        )
