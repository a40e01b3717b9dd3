"""Utility functions and decorators for swipr_rec."""

import time
import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from functools import wraps
from typing import Any, TypeVar, Callable, Hashable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator that retries a function with exponential backoff on failure.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds before first retry
        backoff_factor: Multiplier for delay between retries (exponential backoff)
        exceptions: Tuple of exception types to catch and retry

    Example:
        @retry_with_backoff(max_retries=3, initial_delay=0.05,
                            exceptions=(sqlite3.OperationalError,))
        def store_entry(entry):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                            f"Retrying in {delay:.2f}s..."
                        )
                        time.sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def jaccard(a: set, b: set) -> float:
    """Jaccard overlap of two sets; two empty sets have zero overlap."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class LRUCache:
    """Thread-safe LRU mapping with a max size to prevent unbounded memory growth."""

    def __init__(self, max_size: int = 1000):
        self._cache: OrderedDict[Hashable, Any] = OrderedDict()
        self._max_size = max_size
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key]
            return None

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            elif len(self._cache) >= self._max_size:
                self._cache.popitem(last=False)  # Remove oldest
            self._cache[key] = value

    def setdefault(self, key: Hashable, value: Any) -> Any:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key]
            if len(self._cache) >= self._max_size:
                self._cache.popitem(last=False)
            self._cache[key] = value
            return value

    def pop(self, key: Hashable) -> Any | None:
        with self._lock:
            return self._cache.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class KeyedLocks:
    """
    One lock per key, created on first use and dropped once no thread holds
    or waits on it, so the registry only holds keys currently in contention.

    Args:
        factory: Zero-argument callable returning a context-manager lock
    """

    def __init__(self, factory: Callable[[], Any] = threading.Lock):
        self._factory = factory
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [self._factory(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
