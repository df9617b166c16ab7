from __future__ import annotations

import json

import pytest
import yaml

from enforcement import FORBIDDEN, EnforcementContext, source_host
from policy_store import Policy


def _rendered_filter_config(provisioner) -> str:
    policy = Policy(("ns1", "policy-a"), frozenset({"10.0.0.5"}), frozenset({"curl/7.81.0"}))
    doc = yaml.safe_load(provisioner.render(policy, "ns1").data["envoy.yaml"])
    wasm = doc["static_resources"]["listeners"][0]["filter_chains"][0]["filters"][0]
    return wasm["typed_config"]["config"]["configuration"]["value"]


def test_rendered_policy_drives_enforcement(provisioner) -> None:
    text = _rendered_filter_config(provisioner)
    ctx = EnforcementContext(lambda: text)
    assert ctx.start(now=0.0) is True

    assert ctx.on_new_connection("10.0.0.5:51234") is False
    assert ctx.on_new_connection("10.0.0.6:51234") is True
    assert ctx.on_request_headers({"User-Agent": "curl/7.81.0"}) == FORBIDDEN
    assert ctx.on_request_headers({"user-agent": "Mozilla/5.0"}) is None
    assert ctx.on_request_headers({}) is None


def test_source_host() -> None:
    assert source_host("10.0.0.5:80") == "10.0.0.5"
    assert source_host("[::1]:8080") == "::1"
    assert source_host("10.0.0.5") == "10.0.0.5"
    assert source_host("fe80::1") == "fe80::1"


def test_tick_reloads_once_per_period() -> None:
    source = {"text": json.dumps({"blockedAddresses": ["10.0.0.1"]})}
    ctx = EnforcementContext(lambda: source["text"], tick_period=2.0)

    ctx.start(now=0.0)
    assert ctx.blocked_addresses == {"10.0.0.1"}

    source["text"] = json.dumps({"blockedAddresses": ["10.0.0.2"]})
    assert ctx.tick(now=1.0) is False
    assert ctx.blocked_addresses == {"10.0.0.1"}
    assert ctx.tick(now=2.0) is True
    assert ctx.blocked_addresses == {"10.0.0.2"}


def test_bad_configuration_keeps_previous_lists() -> None:
    ctx = EnforcementContext(lambda: "")
    assert ctx.configure(json.dumps({"blockedAddresses": ["10.0.0.1"]})) is True
    assert ctx.configure("{broken") is False
    assert ctx.configure("[]") is False
    assert ctx.blocked_addresses == {"10.0.0.1"}


@pytest.mark.parametrize(
    "text",
    [
        '{"blockedAddresses":"10.0.0.5"}',
        '{"blockedAddresses":["10.0.0.5", 7]}',
        '{"blockedClientIds":{"curl/7.81.0": true}}',
    ],
)
def test_lists_must_be_lists_of_strings(text) -> None:
    ctx = EnforcementContext(lambda: "")
    assert ctx.configure(json.dumps({"blockedAddresses": ["10.0.0.5"], "blockedClientIds": ["curl/7.81.0"]}))

    assert ctx.configure(text) is False
    assert ctx.blocked_addresses == {"10.0.0.5"}
    assert ctx.blocked_client_ids == {"curl/7.81.0"}
    assert ctx.on_new_connection("10.0.0.5:80") is False
