"""Binance user-data stream: listen-key lifecycle plus the WebSocket reader."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

DEFAULT_WS_URL = "wss://stream.binance.com:9443/ws"
KEEPALIVE_SECONDS = 30 * 60.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (self.factor ** max(attempt - 1, 0)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


class UserDataStream:
    """One listen key and the socket bound to it.

    ``open`` creates a fresh listen key and connects, ``renew`` keeps the key
    alive and ``close`` tears both down. A stream is reopened with a new key
    after a failure rather than repaired in place.
    """

    def __init__(self, client, ws_url: str = DEFAULT_WS_URL, connect: Optional[Callable[..., Any]] = None):
        self.client = client
        self.ws_url = ws_url.rstrip("/")
        self._connect = connect or ws_connect
        self.listen_key: Optional[str] = None
        self._ws = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def open(self) -> "UserDataStream":
        if self._ws is not None:
            raise RuntimeError("stream already open")
        self.listen_key = self.client.create_listen_key()
        try:
            self._ws = self._connect(f"{self.ws_url}/{self.listen_key}")
        except Exception:
            self._release_key()
            raise
        logging.info("User data stream connected (listen key %s...)", self.listen_key[:8])
        return self

    def renew(self) -> None:
        if not self.listen_key:
            raise RuntimeError("stream is not open")
        self.client.keepalive_listen_key(self.listen_key)
        logging.debug("Listen key renewed")

    def recv(self, timeout: float) -> Optional[Dict[str, Any]]:
        """Next decoded message, or ``None`` if nothing arrived within ``timeout``.

        ``WebSocketException`` and ``OSError`` propagate to the caller.
        """
        if self._ws is None:
            raise RuntimeError("stream is not open")
        try:
            message = self._ws.recv(timeout=timeout)
        except TimeoutError:
            return None
        if isinstance(message, bytes):
            message = message.decode("utf-8")
        try:
            payload = json.loads(message)
        except ValueError:
            logging.warning("Ignoring malformed stream message: %.200s", message)
            return None
        return payload if isinstance(payload, dict) else None

    def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                ws.close()
            except (WebSocketException, OSError) as exc:
                logging.debug("Error closing user data socket: %s", exc)
        self._release_key()

    def _release_key(self) -> None:
        key, self.listen_key = self.listen_key, None
        if not key:
            return
        try:
            self.client.close_listen_key(key)
        except Exception as exc:  # pylint: disable=broad-except
            logging.warning("Unable to close listen key: %s", exc)

    def __enter__(self) -> "UserDataStream":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()
