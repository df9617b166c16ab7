from __future__ import annotations

import copy
import json
from types import SimpleNamespace

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from config import Settings
from k8s import ConfigMapClient
from policy_store import PolicyStore
from provision import ConfigProvisioner


class FakeCoreV1:
    """In-memory stand-in for the few CoreV1Api calls the control plane makes."""

    def __init__(self):
        self.configmaps: dict = {}
        self.applies: list = []
        self.read_failures = 0
        self.apply_error = None

    def put_configmap(self, namespace: str, name: str, data: dict) -> None:
        self.configmaps[(namespace, name)] = {
            "metadata": {"name": name, "namespace": namespace},
            "data": dict(data),
        }

    def read_namespaced_config_map(self, name, namespace, **kwargs):
        if self.read_failures:
            self.read_failures -= 1
            raise urllib3.exceptions.MaxRetryError(None, f"/api/v1/namespaces/{namespace}/configmaps/{name}", "refused")
        try:
            body = self.configmaps[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None
        return SimpleNamespace(data=dict(body.get("data") or {}), metadata=SimpleNamespace(**body["metadata"]))

    def patch_namespaced_config_map(self, name, namespace, body, field_manager=None, force=None, _content_type=None, _request_timeout=None):
        if self.apply_error is not None:
            raise self.apply_error
        self.applies.append(
            {
                "name": name,
                "namespace": namespace,
                "field_manager": field_manager,
                "force": force,
                "content_type": _content_type,
                "body": copy.deepcopy(body),
            }
        )
        self.configmaps[(namespace, name)] = copy.deepcopy(body)
        return body


def policy_json(addresses=(), client_ids=()) -> str:
    return json.dumps({"blockedAddresses": list(addresses), "blockedClientIds": list(client_ids)})


def pod(name: str = "web-0", annotations=None, containers=None, volumes=None, namespace: str = "ns1") -> dict:
    spec = {"containers": containers if containers is not None else [{"name": "app", "image": "nginx:1.25"}]}
    if volumes is not None:
        spec["volumes"] = volumes
    meta = {"name": name, "namespace": namespace}
    if annotations is not None:
        meta["annotations"] = annotations
    return {"apiVersion": "v1", "kind": "Pod", "metadata": meta, "spec": spec}


def review(obj: dict, operation: str = "CREATE", namespace: str = "ns1", uid: str = "uid-1") -> dict:
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": "Pod"},
            "operation": operation,
            "namespace": namespace,
            "object": obj,
        },
    }


@pytest.fixture()
def core() -> FakeCoreV1:
    return FakeCoreV1()


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def configmaps(core, settings) -> ConfigMapClient:
    return ConfigMapClient(core, timeout=settings.store_timeout, field_manager=settings.field_manager)


@pytest.fixture()
def store(configmaps, settings) -> PolicyStore:
    return PolicyStore(configmaps, key=settings.policy_key)


@pytest.fixture()
def provisioner(configmaps, settings) -> ConfigProvisioner:
    return ConfigProvisioner(configmaps, settings.sidecar)
