# admission.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import Settings
from errors import HermitError, MalformedAdmission
from patches import AddOperation, build_patch, encode_patch
from policy_store import PolicyStore
from provision import ConfigProvisioner

LOG = logging.getLogger(__name__)

REVIEW_API_VERSION = "admission.k8s.io/v1"


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class AdmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uid: str
    kind: Optional[GroupVersionKind] = None
    operation: str
    namespace: Optional[str] = None
    name: Optional[str] = None
    obj: Optional[Dict[str, Any]] = Field(default=None, alias="object")


class NamedItem(BaseModel):
    """A container or volume entry; only the name is looked at, the rest passes through."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None


class PodMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    generate_name: Optional[str] = Field(default=None, alias="generateName")
    namespace: Optional[str] = None
    annotations: Optional[Dict[str, str]] = None


class PodSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    containers: Optional[List[NamedItem]] = None
    init_containers: Optional[List[NamedItem]] = Field(default=None, alias="initContainers")
    volumes: Optional[List[NamedItem]] = None


class PodObject(BaseModel):
    metadata: Optional[PodMeta] = None
    spec: Optional[PodSpec] = None


class AdmissionReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=REVIEW_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    request: AdmissionRequest


@dataclass(frozen=True)
class AdmissionDecision:
    uid: str
    allowed: bool
    reason: Optional[str] = None
    patch: Tuple[AddOperation, ...] = ()

    def to_review(self, api_version: str = REVIEW_API_VERSION) -> Dict[str, Any]:
        response: Dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if self.reason:
            response["status"] = {"code": 200 if self.allowed else 403, "message": self.reason}
        if self.patch:
            response["patchType"] = "JSONPatch"
            response["patch"] = encode_patch(self.patch)
        return {"apiVersion": api_version, "kind": "AdmissionReview", "response": response}


def parse_review(body: Any) -> AdmissionReview:
    try:
        return AdmissionReview.model_validate(body)
    except ValidationError as e:
        raise MalformedAdmission(str(e)) from e


def parse_pod(obj: Optional[Dict[str, Any]]) -> PodObject:
    """Check the parts of the Pod we read and patch. Raises MalformedAdmission."""
    try:
        return PodObject.model_validate(obj or {})
    except ValidationError as e:
        raise MalformedAdmission(f"pod object is malformed: {e}") from e


class AdmissionMutator:
    """Decides sidecar injection for one admission request at a time; holds no per-request state."""

    def __init__(self, store: PolicyStore, provisioner: ConfigProvisioner, settings: Settings):
        self.store = store
        self.provisioner = provisioner
        self.settings = settings

    def mutate(self, req: AdmissionRequest) -> AdmissionDecision:
        """Raises MalformedAdmission when a Pod being created has the wrong shape."""
        if req.operation != "CREATE" or (req.kind is not None and req.kind.kind != "Pod"):
            return AdmissionDecision(uid=req.uid, allowed=True)

        obj = req.obj or {}
        meta = parse_pod(obj).metadata or PodMeta()
        pod_name = meta.name or meta.generate_name or req.name or "<unnamed>"

        annotations = meta.annotations or {}
        if self.settings.annotation not in annotations:
            return AdmissionDecision(uid=req.uid, allowed=True)

        namespace = req.namespace or meta.namespace or "default"
        policy_name = (annotations.get(self.settings.annotation) or "").strip() or self.settings.default_policy

        try:
            policy = self.store.resolve((namespace, policy_name))
            ops = build_patch(obj, self.settings.sidecar, policy_name)
            # last fallible step; a deny above leaves no artifact behind
            self.provisioner.provision(policy, namespace)
        except HermitError as e:
            LOG.warning("denied: %s on pod %s/%s (%s)", req.operation, namespace, pod_name, e)
            return AdmissionDecision(uid=req.uid, allowed=False, reason=str(e))

        LOG.info("accepted: %s on pod %s/%s with policy %s", req.operation, namespace, pod_name, policy_name)
        return AdmissionDecision(uid=req.uid, allowed=True, patch=tuple(ops))

    def review(self, body: Any) -> Dict[str, Any]:
        """AdmissionReview in, AdmissionReview out. Raises MalformedAdmission on a bad body."""
        review = parse_review(body)
        return self.mutate(review.request).to_review(review.api_version)
