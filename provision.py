# provision.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from bootstrap import render_bootstrap
from config import SidecarConfig
from k8s import ConfigMapClient
from policy_store import Policy

LOG = logging.getLogger(__name__)

POLICY_SOURCE_ANNOTATION = "hermit.io/policy-source"


@dataclass(frozen=True)
class ConfigArtifact:
    namespace: str
    name: str
    data: Dict[str, str]


class ConfigProvisioner:
    """Renders a Policy into the sidecar bootstrap and upserts it as a per-namespace ConfigMap.

    The ConfigMap name is fixed, so every admission in a namespace applies the
    same object and the latest write wins.
    """

    def __init__(self, configmaps: ConfigMapClient, sidecar: SidecarConfig):
        self.configmaps = configmaps
        self.sidecar = sidecar

    def render(self, policy: Policy, namespace: str) -> ConfigArtifact:
        text = render_bootstrap(policy, namespace, self.sidecar).to_yaml()
        return ConfigArtifact(
            namespace=namespace,
            name=self.sidecar.artifact_name,
            data={self.sidecar.artifact_key: text},
        )

    def provision(self, policy: Policy, namespace: str) -> ConfigArtifact:
        artifact = self.render(policy, namespace)
        src_ns, src_name = policy.source_ref
        self.configmaps.apply(
            namespace,
            artifact.name,
            artifact.data,
            annotations={POLICY_SOURCE_ANNOTATION: f"{src_ns}/{src_name}"},
        )
        LOG.info("applied %s/%s from policy %s/%s", namespace, artifact.name, src_ns, src_name)
        return artifact

    def current(self, namespace: str) -> Optional[str]:
        """Rendered bootstrap text currently stored for `namespace`, or None if never provisioned."""
        data = self.configmaps.read(namespace, self.sidecar.artifact_name)
        if data is None:
            return None
        return data.get(self.sidecar.artifact_key)
