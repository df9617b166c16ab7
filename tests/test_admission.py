from __future__ import annotations

import base64
import json
from concurrent.futures import ThreadPoolExecutor

import pytest
from kubernetes.client.rest import ApiException

from admission import AdmissionMutator, parse_review
from conftest import pod, policy_json, review
from errors import MalformedAdmission

ANNOTATION = "hermit.io/config"


@pytest.fixture()
def mutator(store, provisioner, settings) -> AdmissionMutator:
    return AdmissionMutator(store, provisioner, settings)


def _mutate(mutator, body):
    return mutator.mutate(parse_review(body).request)


def test_pod_without_annotation_is_left_alone(core, mutator) -> None:
    decision = _mutate(mutator, review(pod()))
    assert decision.allowed is True
    assert decision.patch == ()
    assert core.applies == []


def test_non_create_operations_are_left_alone(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json()})
    decision = _mutate(mutator, review(pod(annotations={ANNOTATION: "policy-a"}), operation="UPDATE"))
    assert decision.allowed is True
    assert decision.patch == ()


def test_example_scenario(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json(["10.0.0.5"], ["curl/7.81.0"])})

    decision = _mutate(mutator, review(pod(annotations={ANNOTATION: "policy-a"})))

    assert decision.allowed is True
    containers, volumes = decision.patch[0].value, decision.patch[1].value
    assert [c["name"] for c in containers] == ["app", "hermit"]
    assert len(volumes) == 2
    envoy_yaml = core.configmaps[("ns1", "envoy-config")]["data"]["envoy.yaml"]
    assert '"blockedAddresses":["10.0.0.5"]' in envoy_yaml
    assert '"blockedClientIds":["curl/7.81.0"]' in envoy_yaml


def test_empty_annotation_uses_default_policy(core, mutator) -> None:
    core.put_configmap("ns1", "hermit-config", {"hermit.json": policy_json(["10.0.0.9"])})
    decision = _mutate(mutator, review(pod(annotations={ANNOTATION: ""})))
    assert decision.allowed is True
    assert decision.patch[1].value[-1] == {"name": "hermit-policy", "configMap": {"name": "hermit-config"}}


def test_missing_policy_fails_closed(core, mutator) -> None:
    decision = _mutate(mutator, review(pod(annotations={ANNOTATION: "nope"})))
    assert decision.allowed is False
    assert "ns1/nope" in decision.reason
    assert decision.patch == ()
    assert core.applies == []


def test_malformed_policy_fails_closed(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": "{"})
    decision = _mutate(mutator, review(pod(annotations={ANNOTATION: "policy-a"})))
    assert decision.allowed is False
    assert "malformed" in decision.reason


def test_conflicting_pod_is_denied_without_provisioning(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json()})
    obj = pod(annotations={ANNOTATION: "policy-a"}, containers=[{"name": "hermit", "image": "x"}])
    decision = _mutate(mutator, review(obj))
    assert decision.allowed is False
    assert "hermit" in decision.reason
    assert core.applies == []


def test_provisioning_failure_denies(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json()})
    core.apply_error = ApiException(status=409, reason="Conflict")
    decision = _mutate(mutator, review(pod(annotations={ANNOTATION: "policy-a"})))
    assert decision.allowed is False
    assert "409" in decision.reason


def test_repeated_admissions_share_one_artifact(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json(["10.0.0.5"])})
    for name in ("web-0", "web-1"):
        assert _mutate(mutator, review(pod(name=name, annotations={ANNOTATION: "policy-a"}))).allowed

    artifacts = [k for k in core.configmaps if k[1] == "envoy-config"]
    assert artifacts == [("ns1", "envoy-config")]
    assert core.applies[0]["body"]["data"] == core.applies[1]["body"]["data"]


def test_namespace_falls_back_to_object_then_default(core, mutator) -> None:
    core.put_configmap("default", "policy-a", {"hermit.json": policy_json()})
    body = review(pod(annotations={ANNOTATION: "policy-a"}, namespace=""), namespace="")
    assert _mutate(mutator, body).allowed is True
    assert ("default", "envoy-config") in core.configmaps


def test_review_round_trip(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json()})
    out = mutator.review(review(pod(annotations={ANNOTATION: "policy-a"}), uid="abc"))

    assert out["apiVersion"] == "admission.k8s.io/v1"
    assert out["kind"] == "AdmissionReview"
    response = out["response"]
    assert response["uid"] == "abc"
    assert response["allowed"] is True
    assert response["patchType"] == "JSONPatch"
    ops = json.loads(base64.b64decode(response["patch"]))
    assert [op["path"] for op in ops] == ["/spec/containers", "/spec/volumes"]


def test_denied_review_carries_reason(mutator) -> None:
    out = mutator.review(review(pod(annotations={ANNOTATION: "nope"})))
    assert out["response"]["allowed"] is False
    assert out["response"]["status"]["code"] == 403
    assert "nope" in out["response"]["status"]["message"]
    assert "patch" not in out["response"]


@pytest.mark.parametrize("body", [None, {}, {"request": {"operation": "CREATE"}}, []])
def test_malformed_review(mutator, body) -> None:
    with pytest.raises(MalformedAdmission):
        mutator.review(body)


@pytest.mark.parametrize(
    "obj",
    [
        {"metadata": {"annotations": {ANNOTATION: 5}}},
        {"metadata": ["web-0"]},
        {"metadata": {"annotations": {ANNOTATION: "policy-a"}}, "spec": {"containers": [None]}},
        {"metadata": {"annotations": {ANNOTATION: "policy-a"}}, "spec": {"initContainers": "init"}},
    ],
)
def test_malformed_pod_object(core, mutator, obj) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json()})
    with pytest.raises(MalformedAdmission):
        _mutate(mutator, review(obj))
    assert core.applies == []


def test_malformed_object_is_ignored_when_not_creating(mutator) -> None:
    decision = _mutate(mutator, review({"metadata": "web-0"}, operation="DELETE"))
    assert decision.allowed is True


def test_concurrent_admissions_in_one_namespace(core, mutator) -> None:
    core.put_configmap("ns1", "policy-a", {"hermit.json": policy_json(["10.0.0.5"])})
    bodies = [review(pod(name=f"web-{i}", annotations={ANNOTATION: "policy-a"}), uid=f"u-{i}") for i in range(8)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        decisions = list(pool.map(lambda body: _mutate(mutator, body), bodies))

    assert [d.allowed for d in decisions] == [True] * 8
    assert [d.uid for d in decisions] == [f"u-{i}" for i in range(8)]
    assert len(core.applies) == 8
    assert [k for k in core.configmaps if k[1] == "envoy-config"] == [("ns1", "envoy-config")]
    assert len({json.dumps(a["body"], sort_keys=True) for a in core.applies}) == 1
