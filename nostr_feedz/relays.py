"""Minimal relay client: query events and publish over websockets."""

from __future__ import annotations

import json
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, List, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from .retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.snort.social",
    "wss://relay.nostr.band",
    "wss://nostr-pub.wellorder.net",
]

Filter = Dict[str, Any]
Event = Dict[str, Any]

_RELAY_ERRORS = (OSError, TimeoutError, WebSocketException, ValueError)


class RelayError(RuntimeError):
    """Raised when no relay could answer a query."""


class RelayPool:
    """Talks to a fixed list of relays, one short-lived connection per call."""

    def __init__(
        self,
        relays: Optional[Iterable[str]] = None,
        *,
        timeout: float = 5.0,
        retry: Optional[RetryOptions] = None,
        connector: Callable[..., Any] = connect,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.relays = list(relays) if relays else list(DEFAULT_RELAYS)
        self.timeout = timeout
        self.retry = retry or RetryOptions(max_attempts=2)
        self._connect = connector
        self._sleep = sleep

    def _open(self, url: str):
        return self._connect(url, open_timeout=self.timeout, close_timeout=1)

    def _recv(self, ws, deadline: float) -> Optional[list]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        try:
            raw = ws.recv(timeout=remaining)
        except TimeoutError:
            return None
        message = json.loads(raw)
        return message if isinstance(message, list) and message else []

    def _query_relay(self, url: str, filter_: Filter) -> List[Event]:
        sub_id = uuid.uuid4().hex[:16]
        events: List[Event] = []
        with self._open(url) as ws:
            ws.send(json.dumps(["REQ", sub_id, filter_]))
            deadline = time.monotonic() + self.timeout
            while True:
                message = self._recv(ws, deadline)
                if message is None:
                    logger.debug("Relay %s timed out before EOSE", url)
                    break
                if not message:
                    continue
                label = message[0]
                if label == "EVENT" and len(message) >= 3 and message[1] == sub_id:
                    if isinstance(message[2], dict):
                        events.append(message[2])
                elif label == "EOSE" and message[1:2] == [sub_id]:
                    break
                elif label == "CLOSED":
                    logger.debug("Relay %s closed subscription: %s", url, message)
                    break
                elif label == "NOTICE":
                    logger.debug("Relay %s notice: %s", url, message[1:])
            ws.send(json.dumps(["CLOSE", sub_id]))
        return events

    def _publish_relay(self, url: str, event: Event) -> bool:
        with self._open(url) as ws:
            ws.send(json.dumps(["EVENT", event]))
            deadline = time.monotonic() + self.timeout
            while True:
                message = self._recv(ws, deadline)
                if message is None:
                    return False
                if message and message[0] == "OK" and len(message) >= 3:
                    if message[1] == event.get("id"):
                        if not message[2]:
                            logger.info(
                                "Relay %s rejected event: %s",
                                url,
                                message[3] if len(message) > 3 else "",
                            )
                        return bool(message[2])

    def _fan_out(self, work: Callable[[str], Any]) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        if not self.relays:
            return results
        with ThreadPoolExecutor(max_workers=len(self.relays)) as executor:
            future_map = {executor.submit(work, url): url for url in self.relays}
            for future in as_completed(future_map):
                url = future_map[future]
                try:
                    results[url] = future.result()
                except _RELAY_ERRORS as exc:
                    logger.warning("Relay %s failed: %s", url, exc)
        return results

    def query(self, filter_: Filter) -> List[Event]:
        """Collect stored events matching ``filter_`` from every relay.

        Events are de-duplicated by id and returned newest first.
        Raises :class:`RelayError` when every relay failed.
        """

        def _work(url: str) -> List[Event]:
            return with_retry(
                lambda: self._query_relay(url, filter_), self.retry, sleep=self._sleep
            )

        answered = self._fan_out(_work)
        if not answered:
            raise RelayError(f"No relay answered out of {len(self.relays)}")

        unique: Dict[str, Event] = {}
        for events in answered.values():
            for event in events:
                event_id = event.get("id")
                if event_id and event_id not in unique:
                    unique[event_id] = event
        return sorted(
            unique.values(), key=lambda item: item.get("created_at", 0), reverse=True
        )

    def get(self, filter_: Filter) -> Optional[Event]:
        """Return the newest event matching ``filter_``, if any."""
        events = self.query(filter_)
        return events[0] if events else None

    def publish(self, event: Event) -> int:
        """Send ``event`` to every relay and return how many accepted it."""
        results = self._fan_out(lambda url: self._publish_relay(url, event))
        accepted = sum(1 for ok in results.values() if ok)
        logger.info(
            "Event %s accepted by %d/%d relays",
            event.get("id"),
            accepted,
            len(self.relays),
        )
        return accepted
