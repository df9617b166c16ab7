# policy_store.py
from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Tuple

from errors import PolicyNotFound, PolicyParseError
from k8s import ConfigMapClient

LOG = logging.getLogger(__name__)

PolicyRef = Tuple[str, str]  # (namespace, name)

# legacy key names are still accepted on read
_ADDRESS_KEYS = ("blockedAddresses", "blocked_ips")
_CLIENT_ID_KEYS = ("blockedClientIds", "blocked_user_agents")


@dataclass(frozen=True)
class Policy:
    source_ref: PolicyRef
    blocked_addresses: FrozenSet[str] = frozenset()
    blocked_client_ids: FrozenSet[str] = frozenset()

    def to_config(self) -> dict:
        """The JSON document the enforcement filter is configured with."""
        return {
            "blockedAddresses": sorted(self.blocked_addresses),
            "blockedClientIds": sorted(self.blocked_client_ids),
        }


def _pick(doc: dict, keys: Iterable[str]):
    for k in keys:
        if k in doc:
            return doc[k]
    return None


def _clean_entries(raw, field_name: str, ref: PolicyRef) -> FrozenSet[str]:
    if raw is None:
        return frozenset()
    if not isinstance(raw, list):
        raise PolicyParseError(*ref, f"'{field_name}' must be a list of strings")
    out = set()
    for item in raw:
        if not isinstance(item, str):
            raise PolicyParseError(*ref, f"'{field_name}' entries must be strings, got {item!r}")
        item = item.strip()
        if item:
            out.add(item)
    return frozenset(out)


def parse_policy(text: str, ref: PolicyRef) -> Policy:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise PolicyParseError(*ref, f"invalid JSON ({e})") from e
    if not isinstance(doc, dict):
        raise PolicyParseError(*ref, "top-level value must be an object")

    addresses = _clean_entries(_pick(doc, _ADDRESS_KEYS), "blockedAddresses", ref)
    for addr in addresses:
        try:
            ipaddress.ip_address(addr)
        except ValueError:
            raise PolicyParseError(*ref, f"{addr!r} is not an IP address") from None

    client_ids = _clean_entries(_pick(doc, _CLIENT_ID_KEYS), "blockedClientIds", ref)
    return Policy(source_ref=ref, blocked_addresses=addresses, blocked_client_ids=client_ids)


class PolicyStore:
    """Resolves (namespace, name) to a Policy by reading a ConfigMap on every call."""

    def __init__(self, configmaps: ConfigMapClient, key: str = "hermit.json"):
        self.configmaps = configmaps
        self.key = key

    def resolve(self, ref: PolicyRef) -> Policy:
        namespace, name = ref
        data = self.configmaps.read(namespace, name)
        if data is None:
            raise PolicyNotFound(namespace, name)
        text = data.get(self.key)
        if text is None:
            raise PolicyNotFound(namespace, name, f"configmap has no '{self.key}' key")
        policy = parse_policy(text, ref)
        LOG.debug(
            "resolved policy %s/%s: %d addresses, %d client ids",
            namespace,
            name,
            len(policy.blocked_addresses),
            len(policy.blocked_client_ids),
        )
        return policy
