# src/lsp_bridge/bridge/diagnostics.py

"""Per-URI buffer of the latest diagnostics published by the analyzer."""

import copy
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

DiagnosticsSubscriber = Callable[[str, List[Dict[str, Any]]], None]


class DiagnosticsBuffer:
    """Keeps the most recent diagnostics list for each URI.

    A publish for a URI replaces whatever was stored for it. Subscribers are
    notified after every publish with `(uri, diagnostics)`; an exception in
    one subscriber is logged and does not affect the others or the buffer.
    """

    def __init__(self):
        self._entries: Dict[str, List[Dict[str, Any]]] = {}
        self._subscribers: List[DiagnosticsSubscriber] = []

    def __len__(self) -> int:
        return len(self._entries)

    def publish(self, uri: str, diagnostics: List[Dict[str, Any]]) -> None:
        entries = list(diagnostics or [])
        self._entries[uri] = entries
        logger.debug(f"Stored {len(entries)} diagnostic(s) for {uri}.")
        for subscriber in list(self._subscribers):
            try:
                subscriber(uri, copy.deepcopy(entries))
            except Exception:
                logger.exception(f"Diagnostics subscriber {subscriber!r} raised.")

    def handle_notification(self, params: Dict[str, Any]) -> None:
        """Connection diagnostics handler: stores a `publishDiagnostics` payload."""
        uri = params.get("uri")
        if not uri:
            logger.warning(f"Ignoring diagnostics notification without a URI: {params}")
            return
        self.publish(uri, params.get("diagnostics") or [])

    def get(self, uri: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._entries.get(uri, []))

    def get_all(self) -> Dict[str, List[Dict[str, Any]]]:
        return copy.deepcopy(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def subscribe(self, callback: DiagnosticsSubscriber) -> Callable[[], None]:
        """Adds a subscriber and returns a function that removes it again."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe
