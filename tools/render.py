#!/usr/bin/env python3
"""tools/render.py

Render the sidecar bootstrap (the envoy.yaml stored in the envoy-config
ConfigMap) for a local policy file, without talking to the cluster.

Usage examples:
  POLICY=./hermit.json NAMESPACE=ns1 python3 tools/render.py > /tmp/envoy.yaml

  # Same sidecar knobs as the webhook:
  HERMIT_INGRESS_PORT=8080 POLICY=./hermit.json python3 tools/render.py

Notes:
- This does NOT apply anything.
- The policy file uses the same JSON the policy ConfigMap carries.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config import load_settings  # noqa: E402
from errors import HermitError  # noqa: E402
from policy_store import parse_policy  # noqa: E402
from provision import ConfigProvisioner  # noqa: E402


def main() -> int:
    namespace = os.environ.get("NAMESPACE", "default")
    policy_path = os.environ.get("POLICY")
    if not policy_path:
        print("[render] POLICY must point at a policy JSON file", file=sys.stderr)
        return 2

    settings = load_settings()
    try:
        policy = parse_policy(Path(policy_path).read_text(), (namespace, Path(policy_path).stem))
        artifact = ConfigProvisioner(configmaps=None, sidecar=settings.sidecar).render(policy, namespace)
    except HermitError as e:
        print(f"[render] {e}", file=sys.stderr)
        return 1

    try:
        sys.stdout.write(artifact.data[settings.sidecar.artifact_key])
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
