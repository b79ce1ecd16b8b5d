"""Tests for ClassificationClient against an in-memory classifier."""

from __future__ import annotations

import json

import httpx
import pytest

from cloudpack.classify import ClassificationClient
from cloudpack.core.exceptions import (
    ClassificationRequestFailed,
    ClassificationResponseInvalid,
    ClassificationUnreachable,
    CloudpackError,
    GroupNotFound,
)
from conftest import messages

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class FakeClassifier:
    """Just enough of the console's nodes/groups/memberships endpoints."""

    def __init__(self, groups: tuple[str, ...] = ("webservers",)) -> None:
        self.nodes: list[dict] = []
        self.groups = [{"id": i + 100, "name": name} for i, name in enumerate(groups)]
        self.memberships: list[dict] = []
        self.requests: list[tuple[str, str]] = []
        self.status_override: dict[tuple[str, str], int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.requests.append(key)
        if key in self.status_override:
            return httpx.Response(self.status_override[key], text="nope")

        match key:
            case ("GET", "/nodes.json"):
                return httpx.Response(200, json=self.nodes)
            case ("POST", "/nodes.json"):
                node = {"id": len(self.nodes) + 1, "name": json.loads(request.content)["node"]["name"]}
                self.nodes.append(node)
                return httpx.Response(201, json=node)
            case ("GET", "/node_groups.json"):
                return httpx.Response(200, json=self.groups)
            case ("GET", "/memberships.json"):
                return httpx.Response(200, json=self.memberships)
            case ("POST", "/memberships.json"):
                body = json.loads(request.content)
                node = next(n for n in self.nodes if n["name"] == body["node_name"])
                group = next(g for g in self.groups if g["name"] == body["group_name"])
                membership = {"node_id": node["id"], "node_group_id": group["id"]}
                self.memberships.append(membership)
                return httpx.Response(201, json=membership)
        return httpx.Response(404)


def _client(handler, **kwargs) -> ClassificationClient:
    return ClassificationClient("console.example.com", 443, transport=httpx.MockTransport(handler), **kwargs)


class TestClassify:
    def test_registers_node_and_membership(self):
        enc = FakeClassifier()
        with _client(enc) as client:
            result = client.classify("web1.example.com", "webservers")

        assert result["status"] == "complete"
        record = result["record"]
        assert record.created_node and record.created_membership
        assert enc.nodes == [{"id": 1, "name": "web1.example.com"}]
        assert enc.memberships == [{"node_id": 1, "node_group_id": 100}]
        assert enc.requests == [
            ("GET", "/nodes.json"),
            ("POST", "/nodes.json"),
            ("GET", "/node_groups.json"),
            ("GET", "/memberships.json"),
            ("POST", "/memberships.json"),
        ]

    def test_second_run_is_idempotent(self):
        enc = FakeClassifier()
        with _client(enc) as client:
            client.classify("web1.example.com", "webservers")
            enc.requests.clear()
            result = client.classify("web1.example.com", "webservers")

        assert len(enc.nodes) == 1
        assert len(enc.memberships) == 1
        assert not result["record"].created_node
        assert not result["record"].created_membership
        assert all(method == "GET" for method, _ in enc.requests)

    def test_missing_group_stops_before_memberships(self):
        enc = FakeClassifier(groups=("dbservers",))
        with _client(enc) as client, pytest.raises(GroupNotFound) as info:
            client.classify("web1.example.com", "webservers")

        assert info.value.group == "webservers"
        assert not any(path == "/memberships.json" for _, path in enc.requests)

    def test_sends_json_and_basic_auth(self):
        seen: list[httpx.Request] = []
        enc = FakeClassifier()

        def handler(request):
            seen.append(request)
            return enc(request)

        with _client(handler, auth=("admin", "secret")) as client:
            client.classify("web1.example.com", "webservers")

        post = next(r for r in seen if r.method == "POST")
        assert post.headers["content-type"] == "application/json"
        assert post.headers["authorization"].startswith("Basic ")
        assert json.loads(post.content) == {"node": {"name": "web1.example.com"}}


class TestClassifyFailures:
    def test_unexpected_status(self):
        enc = FakeClassifier()
        enc.status_override[("POST", "/nodes.json")] = 200
        with _client(enc) as client, pytest.raises(ClassificationRequestFailed) as info:
            client.classify("web1.example.com", "webservers")

        assert info.value.action == "Register Node"
        assert info.value.expected == 201
        assert info.value.actual == 200

    def test_unauthorized_logs_hint(self, log_records):
        enc = FakeClassifier()
        enc.status_override[("GET", "/nodes.json")] = 401
        with _client(enc) as client, pytest.raises(ClassificationRequestFailed):
            client.classify("web1.example.com", "webservers")

        info = messages(log_records, "INFO")
        assert any("--enc-auth-user and --enc-auth-passwd" in m for m in info)
        assert any("PUPPET_ENC_AUTH_PASSWD" in m for m in info)

    def test_connection_refused(self):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        with _client(refuse) as client, pytest.raises(ClassificationUnreachable) as info:
            client.classify("web1.example.com", "webservers")
        assert info.value.server == "console.example.com"
        assert info.value.port == 443

    def test_non_json_body_is_a_typed_failure(self):
        def proxy(request):
            return httpx.Response(200, text="<html>proxy login</html>")

        with _client(proxy) as client, pytest.raises(ClassificationResponseInvalid) as info:
            client.classify("web1", "webservers")

        assert isinstance(info.value, CloudpackError)
        assert info.value.action == "List nodes"
        assert isinstance(info.value.__cause__, ValueError)
