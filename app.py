# app.py
from __future__ import annotations

import logging
import sys

import uvicorn
from kubernetes import client

from admission import AdmissionMutator
from config import Settings, load_settings
from discovery import DiscoveryService, load_seed, serve_discovery
from k8s import ConfigMapClient, load_kube
from policy_store import PolicyStore
from provision import ConfigProvisioner
from webhook import create_app

LOG = logging.getLogger("hermit")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def build(settings: Settings, core_api=None):
    """Wire both endpoints around one shared CoreV1Api."""
    configmaps = ConfigMapClient(
        core_api if core_api is not None else client.CoreV1Api(),
        timeout=settings.store_timeout,
        field_manager=settings.field_manager,
    )
    store = PolicyStore(configmaps, key=settings.policy_key)
    provisioner = ConfigProvisioner(configmaps, settings.sidecar)
    mutator = AdmissionMutator(store, provisioner, settings)
    discovery = DiscoveryService(
        provisioner,
        load_seed(settings.seed_bootstrap),
        attempts=settings.fetch_attempts,
        backoff=settings.fetch_backoff,
    )
    return create_app(mutator), discovery


def main() -> int:
    settings = load_settings()
    _setup_logging(settings.log_level)
    load_kube()

    web, discovery = build(settings)
    grpc_server, _ = serve_discovery(discovery, settings.discovery_address, settings.discovery_workers)

    LOG.info("admission server listening on %s:%d", settings.admission_host, settings.admission_port)
    try:
        uvicorn.run(
            web,
            host=settings.admission_host,
            port=settings.admission_port,
            ssl_certfile=settings.tls_cert,
            ssl_keyfile=settings.tls_key,
            log_level=settings.log_level.lower(),
        )
    finally:
        LOG.info("shutting down")
        grpc_server.stop(grace=5).wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
