from __future__ import annotations

import logging
import threading


class RateLimitWarnings:
    """Remembers which upstream APIs have already produced a rate-limit warning.

    One instance is created per batch run and handed to every client in that
    run, so the first 429 from an API logs at WARNING and the rest at DEBUG.
    """

    def __init__(self):
        self._warned: set[str] = set()
        self._lock = threading.Lock()

    def warn(self, logger: logging.Logger, api_name: str, message: str, *args) -> None:
        with self._lock:
            first = api_name not in self._warned
            self._warned.add(api_name)
        if first:
            logger.warning(message, *args)
        else:
            logger.debug(message, *args)

    def has_warned(self, api_name: str) -> bool:
        with self._lock:
            return api_name in self._warned

    def reset(self) -> None:
        with self._lock:
            self._warned.clear()
