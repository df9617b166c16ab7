# patches.py
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from config import SidecarConfig
from errors import PatchConflict


@dataclass(frozen=True)
class VolumeMount:
    name: str
    mount_path: str
    read_only: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "mountPath": self.mount_path, "readOnly": self.read_only}


@dataclass(frozen=True)
class Container:
    name: str
    image: str
    args: Tuple[str, ...] = ()
    volume_mounts: Tuple[VolumeMount, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "image": self.image}
        if self.args:
            out["args"] = list(self.args)
        out["volumeMounts"] = [m.to_dict() for m in self.volume_mounts]
        return out


@dataclass(frozen=True)
class ConfigMapVolume:
    name: str
    config_map: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "configMap": {"name": self.config_map}}


@dataclass(frozen=True)
class AddOperation:
    path: str
    value: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {"op": "add", "path": self.path, "value": self.value}


def sidecar_container(sidecar: SidecarConfig) -> Container:
    return Container(
        name=sidecar.name,
        image=sidecar.image,
        args=("-c", sidecar.bootstrap_path),
        volume_mounts=(VolumeMount(sidecar.artifact_name, sidecar.config_mount),),
    )


def sidecar_volumes(sidecar: SidecarConfig, policy_name: str) -> Tuple[ConfigMapVolume, ConfigMapVolume]:
    """The rendered bootstrap volume and the policy source volume."""
    return (
        ConfigMapVolume(sidecar.artifact_name, sidecar.artifact_name),
        ConfigMapVolume(sidecar.policy_volume, policy_name),
    )


def _names(items: Sequence[dict]) -> set:
    return {(i or {}).get("name") for i in items}


def build_patch(pod: dict, sidecar: SidecarConfig, policy_name: str) -> List[AddOperation]:
    """Two add operations: existing containers + sidecar, existing volumes + ours.

    Raises PatchConflict when the pod already carries a container or volume
    under one of the names we would add.
    """
    spec = (pod or {}).get("spec", {}) or {}
    containers = list(spec.get("containers", []) or [])
    volumes = list(spec.get("volumes", []) or [])

    container = sidecar_container(sidecar)
    new_volumes = sidecar_volumes(sidecar, policy_name)

    if container.name in _names(containers) or container.name in _names(spec.get("initContainers", []) or []):
        raise PatchConflict(f"pod already has a container named {container.name!r}")
    taken = _names(volumes) & {v.name for v in new_volumes}
    if taken:
        raise PatchConflict(f"pod already has volume(s) named {', '.join(sorted(taken))}")

    return [
        AddOperation("/spec/containers", containers + [container.to_dict()]),
        AddOperation("/spec/volumes", volumes + [v.to_dict() for v in new_volumes]),
    ]


def encode_patch(ops: Sequence[AddOperation]) -> str:
    """Base64 JSONPatch as carried in an AdmissionReview response."""
    raw = json.dumps([op.to_dict() for op in ops]).encode()
    return base64.b64encode(raw).decode()
