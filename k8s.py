# k8s.py
from __future__ import annotations

import logging
from typing import Dict, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from errors import HermitError, StoreRejected, StoreTransportError

LOG = logging.getLogger(__name__)

APPLY_CONTENT_TYPE = "application/apply-patch+yaml"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

# client errors the API server may answer differently on a retry
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def load_kube() -> None:
    try:
        config.load_incluster_config()
        LOG.info("using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        LOG.info("using kubeconfig (local)")


def _api_error(action: str, e: ApiException) -> HermitError:
    message = f"{action} failed: {e.status} {e.reason}"
    status = e.status or 0
    if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
        return StoreRejected(message, status)
    return StoreTransportError(message)


class ConfigMapClient:
    """Thin wrapper around one shared CoreV1Api for ConfigMap reads and applies.

    Kubernetes failures are translated here: a 404 on read becomes None, other
    4xx answers (RBAC, validation) become StoreRejected, and everything else
    becomes StoreTransportError.
    """

    def __init__(self, api=None, timeout: float = 5.0, field_manager: str = "hermit"):
        self.api = api if api is not None else client.CoreV1Api()
        self.timeout = timeout
        self.field_manager = field_manager

    def read(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        """Return the ConfigMap's data (possibly empty), or None when it does not exist."""
        try:
            cm = self.api.read_namespaced_config_map(
                name=name,
                namespace=namespace,
                _request_timeout=self.timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise _api_error(f"reading configmap {namespace}/{name}", e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StoreTransportError(f"reading configmap {namespace}/{name} failed: {e}") from e
        return dict(cm.data or {})

    def apply(
        self,
        namespace: str,
        name: str,
        data: Dict[str, str],
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        """Server-side apply of a whole ConfigMap in a single request."""
        meta_labels = {MANAGED_BY_LABEL: self.field_manager}
        meta_labels.update(labels or {})
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": meta_labels,
                "annotations": dict(annotations or {}),
            },
            "data": dict(data),
        }
        try:
            self.api.patch_namespaced_config_map(
                name=name,
                namespace=namespace,
                body=body,
                field_manager=self.field_manager,
                force=True,
                _content_type=APPLY_CONTENT_TYPE,
                _request_timeout=self.timeout,
            )
        except ApiException as e:
            raise _api_error(f"applying configmap {namespace}/{name}", e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StoreTransportError(f"applying configmap {namespace}/{name} failed: {e}") from e
