"""Tagged fetch outcomes and settle-all fan-out helpers."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Outcome of a single remote fetch: either a value or a failure reason.

    Callers must look at ``ok`` and decide what to substitute on failure,
    instead of relying on an exception handler to return a default.
    """
    value: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def success(cls, value: Any) -> 'FetchResult':
        return cls(value=value)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None) -> 'FetchResult':
        return cls(error=error or 'unknown error', status_code=status_code)

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: Any) -> Any:
        """Return the fetched value, or ``default`` if the fetch failed or returned nothing."""
        if not self.ok or self.value is None:
            return default
        return self.value

    def list_or_empty(self) -> list:
        """Return the value when it is a list, otherwise an empty list."""
        value = self.value_or([])
        return value if isinstance(value, list) else []


def settle_all(
    calls: Dict[Hashable, Callable[[], Any]],
    max_workers: Optional[int] = None
) -> Dict[Hashable, FetchResult]:
    """Run every callable concurrently and report each outcome independently.

    A callable returning a ``FetchResult`` is passed through unchanged; any
    other return value is wrapped as a success. An exception raised by one
    callable becomes a failure for that key only and never cancels the others.

    Args:
        calls: Mapping of key to zero-argument callable
        max_workers: Thread pool size (defaults to one thread per call)

    Returns:
        Mapping of the same keys to their ``FetchResult``
    """
    if not calls:
        return {}

    results: Dict[Hashable, FetchResult] = {}
    workers = max_workers or len(calls)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {key: executor.submit(func) for key, func in calls.items()}
        for key, future in futures.items():
            try:
                value = future.result()
            except Exception as e:
                logger.debug(f"Concurrent call {key!r} failed: {e}")
                results[key] = FetchResult.failure(str(e))
                continue
            results[key] = value if isinstance(value, FetchResult) else FetchResult.success(value)

    return results
