"""Exceptions and small helpers shared across debrid_namespace.

Every error the engine raises derives from `DebridError`, so callers can
catch one type; the subclasses name the condition (missing object, reserved
root, non-empty folder, broken link, unusable rule file, ...). `retry`,
`sleep_or_cancel` and `CancelScope` are the waiting and cancellation helpers
used by the remote client and job recovery.
"""
import json
import time
import logging
import threading
from functools import wraps
from typing import Callable, Any, List, Optional, Tuple, Type, TypeVar

F = TypeVar('F', bound=Callable[..., Any])


class DebridError(Exception):
    """Base class for all errors raised by the namespace engine."""
    pass


class APIError(DebridError):
    """A non-2xx response from the remote API.

    Attributes:
        message: The error text reported by the server (or the raw body).
        status: A human readable status such as ``"503 Service Unavailable (503)"``.
        status_code: The numeric HTTP status code, if known.
    """

    def __init__(self, message: str, status: str = "", status_code: Optional[int] = None):
        self.message = message
        self.status = status
        self.status_code = status_code
        super().__init__(f"{message} ({status})" if status else message)


class BrokenLinkError(APIError):
    """Raised when a link resolution or download answers 503/404."""
    pass


class ObjectNotFoundError(DebridError):
    """Raised when a path does not refer to an existing file."""
    pass


class DirNotFoundError(DebridError):
    """Raised when a path does not refer to an existing folder."""
    pass


class ReservedRootError(DebridError):
    """Raised when a folder would be created directly under the root."""
    pass


class DirExistsError(DebridError):
    """Raised when the destination of a directory move already exists."""
    pass


class DirectoryNotEmptyError(DebridError):
    """Raised when removing a folder that still has children."""
    pass


class CantShareDirectoriesError(DebridError):
    """Raised when a public link is requested for a folder."""
    pass


class RuleFileError(DebridError):
    """Raised when the rule file cannot be read, parsed or written."""
    pass


class OperationCancelled(DebridError):
    """Raised when an operation is aborted by a cancellation event or a caller deadline."""
    pass


def api_error_from_response(response: Any) -> APIError:
    """Turns a non-2xx HTTP response into a structured `APIError`.

    The real-debrid API reports failures as ``{"error": "...", "error_code": N}``;
    other bodies are kept verbatim as the message.

    Args:
        response: A `requests.Response`-like object.

    Returns:
        An `APIError` (or `BrokenLinkError` for 503/404) describing the failure.
    """
    body = response.text or ""
    message = body
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        message = payload.get('error') or payload.get('message') or body
    status = f"{response.reason} ({response.status_code})"
    error_cls = BrokenLinkError if response.status_code in (404, 503) else APIError
    return error_cls(message, status, response.status_code)


_scopes = threading.local()

CANCEL_POLL_INTERVAL = 0.05


class CancelScope:
    """Caller-supplied cancellation for the remote work done on one thread.

    While the scope is entered, requests, retry pauses and recovery polls on
    the current thread raise `OperationCancelled` once `event` is set or
    `timeout` seconds have elapsed, and no single request waits longer than
    the time left. Scopes nest; the tightest one wins.
    """

    def __init__(self, event: Optional[threading.Event] = None, timeout: Optional[float] = None):
        self.event = event
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def cancelled(self) -> bool:
        if self.event is not None and self.event.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def __enter__(self) -> "CancelScope":
        stack = getattr(_scopes, 'stack', None)
        if stack is None:
            stack = _scopes.stack = []
        stack.append(self)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _scopes.stack.remove(self)


def active_scopes() -> List[CancelScope]:
    return list(getattr(_scopes, 'stack', ()))


def check_cancelled(cancel_event: Optional[threading.Event] = None, what: str = "operation") -> None:
    """Raises `OperationCancelled` if `cancel_event` or any active scope says stop."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"{what} cancelled")
    for scope in active_scopes():
        if scope.cancelled:
            raise OperationCancelled(f"{what} cancelled by caller")


def bounded_timeout(timeout: float) -> float:
    """Shortens a per-request timeout to the time left in the active scopes."""
    left = [r for r in (scope.remaining() for scope in active_scopes()) if r is not None]
    if not left:
        return timeout
    return max(min([timeout] + left), 0.01)


def sleep_or_cancel(delay: float, cancel_event: Optional[threading.Event] = None) -> None:
    """Sleeps for `delay` seconds, returning early with an error if cancelled.

    Raises:
        OperationCancelled: If `cancel_event` is set or an active `CancelScope`
            is cancelled or expires before or during the wait.
    """
    if not active_scopes():
        if cancel_event is None:
            time.sleep(delay)
            return
        if cancel_event.wait(delay):
            raise OperationCancelled("operation cancelled while waiting to retry")
        return
    end = time.monotonic() + delay
    while True:
        check_cancelled(cancel_event, "wait")
        left = end - time.monotonic()
        if left <= 0:
            return
        time.sleep(min(left, CANCEL_POLL_INTERVAL))


def retry(tries: int = 2, delay: float = 5, backoff: float = 1,
          exceptions: Tuple[Type[BaseException], ...] = (Exception,)) -> Callable[[F], F]:
    """Decorator re-running the wrapped call when it raises one of `exceptions`.

    Args:
        tries: Total number of attempts.
        delay: Seconds to wait before the second attempt.
        backoff: Factor applied to the wait after every failure (1 keeps it fixed).
        exceptions: Exception types worth another attempt; others propagate at once.
    """
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            wait = delay
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= tries:
                        logging.error(f"{func.__name__}: giving up after {attempt} attempt(s): {e}")
                        raise
                    logging.warning(f"{func.__name__}: attempt {attempt}/{tries} failed ({e}); "
                                    f"next try in {wait} seconds.")
                    time.sleep(wait)
                    wait *= backoff
                    attempt += 1
        return wrapper  # type: ignore
    return decorator
