# errors.py
from __future__ import annotations


class HermitError(Exception):
    """Base class for every failure the control plane reports to a caller."""


class PolicyError(HermitError):
    pass


class PolicyNotFound(PolicyError):
    def __init__(self, namespace: str, name: str, detail: str = "not found") -> None:
        super().__init__(f"policy {namespace}/{name}: {detail}")
        self.namespace = namespace
        self.name = name


class PolicyParseError(PolicyError):
    def __init__(self, namespace: str, name: str, detail: str) -> None:
        super().__init__(f"policy {namespace}/{name} is malformed: {detail}")
        self.namespace = namespace
        self.name = name


class StoreTransportError(HermitError):
    """Reading or writing the cluster configuration store failed."""


class StoreRejected(HermitError):
    """The store answered and refused the request; retrying will not help."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class RenderError(HermitError):
    pass


class PatchConflict(HermitError):
    pass


class MalformedAdmission(HermitError):
    pass
