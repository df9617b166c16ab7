# enforcement.py
"""Reference implementation of what the sidecar filter does with a rendered policy.

The filter itself runs inside Envoy; this mirrors its contract so the
configuration we render can be checked end to end.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, FrozenSet, Mapping, Optional

LOG = logging.getLogger(__name__)

CLIENT_ID_HEADER = "user-agent"
FORBIDDEN = 403


def source_host(remote: str) -> str:
    """Strip the port from "ip:port" / "[ipv6]:port"; bare addresses pass through."""
    remote = (remote or "").strip()
    if remote.startswith("["):
        return remote[1:].split("]", 1)[0]
    if remote.count(":") == 1:
        return remote.split(":", 1)[0]
    return remote


def _string_set(doc: Mapping[str, object], key: str) -> FrozenSet[str]:
    items = doc.get(key)
    if items is None:
        return frozenset()
    if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
        raise ValueError(f"{key} must be a list of strings")
    return frozenset(items)


class EnforcementContext:
    def __init__(self, load_config: Callable[[], str], tick_period: float = 2.0):
        self.load_config = load_config
        self.tick_period = tick_period
        self.blocked_addresses: FrozenSet[str] = frozenset()
        self.blocked_client_ids: FrozenSet[str] = frozenset()
        self._last_refresh: Optional[float] = None

    def configure(self, text: str) -> bool:
        """Load lists from JSON; on a bad document keep the previous lists and return False."""
        try:
            doc = json.loads(text)
            if not isinstance(doc, dict):
                raise ValueError("configuration must be a JSON object")
            addresses = _string_set(doc, "blockedAddresses")
            client_ids = _string_set(doc, "blockedClientIds")
        except (ValueError, TypeError) as e:
            LOG.info("couldn't configure filter: %s", e)
            return False
        self.blocked_addresses = addresses
        self.blocked_client_ids = client_ids
        return True

    def start(self, now: float) -> bool:
        self._last_refresh = now
        return self.configure(self.load_config())

    def tick(self, now: float) -> bool:
        """Reload when a full period has elapsed since the last load. Returns whether it reloaded."""
        if self._last_refresh is not None and now - self._last_refresh < self.tick_period:
            return False
        self._last_refresh = now
        self.configure(self.load_config())
        return True

    def on_new_connection(self, remote: str) -> bool:
        """False means the connection must be closed."""
        addr = source_host(remote)
        if addr in self.blocked_addresses:
            LOG.info("rejected connection from blocked address: %s", addr)
            return False
        return True

    def on_request_headers(self, headers: Mapping[str, str]) -> Optional[int]:
        """Status to answer with, or None to let the request through."""
        client_id = ""
        for k, v in headers.items():
            if k.lower() == CLIENT_ID_HEADER:
                client_id = v
                break
        if client_id in self.blocked_client_ids:
            LOG.info("rejected request from blocked client id: %s", client_id)
            return FORBIDDEN
        return None
