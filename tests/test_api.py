"""
Integration tests for the Workflow Engine API
Tests end-to-end flows using FastAPI TestClient
"""

import jwt
import pytest
from fastapi.testclient import TestClient

import workflow_core.system
from workflow_core.api import app
from workflow_core.config import WorkflowConfig
from workflow_core.storage import InMemoryStorage
from workflow_core.system import WorkflowSystem, set_workflow_system


JWT_SECRET = "test-secret"

REVIEW_GRAPH = {
    "nodes": [
        {"id": "submit", "kind": "start", "label": "Submit"},
        {"id": "review", "kind": "approval", "label": "Manager review", "assignee": "dev-user"},
        {"id": "done", "kind": "end", "label": "Done"}
    ],
    "edges": [
        {"source": "submit", "target": "review"},
        {"source": "review", "target": "done"}
    ]
}


def make_system(**overrides):
    settings = dict(auth_enabled=False, storage_backend="memory", enable_sla_scheduler=False,
                    action_service_url="", jwt_secret=JWT_SECRET)
    settings.update(overrides)
    return WorkflowSystem(config=WorkflowConfig(**settings), storage=InMemoryStorage())


@pytest.fixture
def system():
    """Swap the global workflow system for an in-memory one"""
    original = workflow_core.system._workflow_system
    test_system = make_system()
    set_workflow_system(test_system)
    yield test_system
    set_workflow_system(original)


@pytest.fixture
def client(system):
    return TestClient(app)


def create_definition(client, graph=None, **fields):
    body = {"name": "Expense review", "category": "finance", "graph": graph or REVIEW_GRAPH}
    body.update(fields)
    r = client.post("/workflows", json=body)
    assert r.status_code == 201, r.text
    return r.json()


def start_instance(client, definition_id):
    r = client.post("/workflow-instances", json={"definition_id": definition_id, "start": True})
    assert r.status_code == 201, r.text
    return r.json()


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()


class TestDefinitionEndpoints:

    def test_create_and_get(self, client):
        definition = create_definition(client)

        assert definition["owner_id"] == "dev-user"
        assert definition["version"] == 1

        r = client.get(f"/workflows/{definition['id']}")
        assert r.status_code == 200
        assert r.json()["name"] == "Expense review"

    def test_cyclic_graph_is_rejected(self, client):
        graph = {
            "nodes": [{"id": "a", "kind": "task", "label": "A"}, {"id": "b", "kind": "task", "label": "B"}],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}]
        }
        r = client.post("/workflows", json={"name": "Loop", "category": "ops", "graph": graph})

        assert r.status_code == 400
        error = r.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "cycle" in error["message"]

    def test_condition_and_delay_nodes(self, client):
        graph = {
            "nodes": [
                {"id": "check", "kind": "condition", "label": "Large amount?",
                 "config": {"field": "amount", "operator": "greater_than", "value": 1000}},
                {"id": "wait", "kind": "delay", "label": "Cooling off", "config": {"delay_minutes": 60}}
            ],
            "edges": [{"source": "check", "target": "wait"}]
        }
        definition = create_definition(client, graph=graph)
        r = client.post("/workflow-instances", json={
            "definition_id": definition["id"], "start": True, "context": {"amount": 5000}
        })
        assert r.status_code == 201
        assert [s["status"] for s in r.json()["steps"]] == ["completed", "running"]

        graph["nodes"][1]["config"] = {"delay_minutes": -1}
        r = client.post("/workflows", json={"name": "Bad delay", "category": "ops", "graph": graph})
        assert r.status_code == 400
        assert "delay_minutes" in r.json()["error"]["message"]

    def test_malformed_body(self, client):
        r = client.post("/workflows", json={"name": "No graph"})
        assert r.status_code == 422

    def test_unknown_definition(self, client):
        r = client.get("/workflows/missing")

        assert r.status_code == 404
        assert r.json()["error"]["code"] == "NOT_FOUND"

    def test_versions_and_listing(self, client):
        definition = create_definition(client)

        r = client.post(f"/workflows/{definition['id']}/versions", json={})
        assert r.status_code == 201
        assert r.json()["version"] == 2

        r = client.get("/workflows", params={"active_only": True})
        assert [d["version"] for d in r.json()["definitions"]] == [2]


class TestInstanceFlow:

    def test_approval_flow(self, client):
        definition = create_definition(client)
        instance = start_instance(client, definition["id"])

        assert instance["status"] == "running"
        assert instance["workflow"]["id"] == definition["id"]

        r = client.get("/approvals/pending")
        approvals = r.json()["approvals"]
        assert r.json()["count"] == 1
        assert approvals[0]["instance_id"] == instance["id"]

        r = client.post(f"/approvals/{approvals[0]['id']}/decide",
                        json={"decision": "approved", "comments": "ok"})
        assert r.status_code == 200
        assert r.json()["status"] == "approved"

        r = client.get(f"/workflow-instances/{instance['id']}")
        assert r.json()["status"] == "completed"
        assert r.json()["progress"] == 100.0

    def test_rejection_fails_instance(self, client):
        definition = create_definition(client)
        instance = start_instance(client, definition["id"])
        approval = client.get(f"/workflow-instances/{instance['id']}/approvals").json()["approvals"][0]

        r = client.post(f"/approvals/{approval['id']}/decide",
                        json={"decision": "rejected", "reason": "missing budget code"})
        assert r.json()["reason"] == "missing budget code"

        r = client.get(f"/workflow-instances/{instance['id']}")
        assert r.json()["status"] == "failed"

    def test_cancel(self, client):
        definition = create_definition(client)
        instance = start_instance(client, definition["id"])

        r = client.post(f"/workflow-instances/{instance['id']}/cancel", json={"reason": "duplicate"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"
        assert r.json()["cancel_reason"] == "duplicate"

        r = client.post(f"/workflow-instances/{instance['id']}/cancel", json={"reason": "again"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_start_twice(self, client):
        definition = create_definition(client)
        instance = start_instance(client, definition["id"])

        r = client.post(f"/workflow-instances/{instance['id']}/start")
        assert r.status_code == 400

    def test_list_by_status(self, client):
        definition = create_definition(client)
        start_instance(client, definition["id"])
        client.post("/workflow-instances", json={"definition_id": definition["id"]})

        r = client.get("/workflow-instances", params={"status": "pending"})
        assert r.json()["count"] == 1

    def test_unknown_instance(self, client):
        assert client.get("/workflow-instances/missing").status_code == 404


class TestApprovalEndpoints:

    def test_wrong_approver_is_forbidden(self, client):
        graph = {
            "nodes": [{"id": "review", "kind": "approval", "label": "Review", "assignee": "someone-else"}],
            "edges": []
        }
        definition = create_definition(client, graph=graph)
        instance = start_instance(client, definition["id"])
        approval = client.get(f"/workflow-instances/{instance['id']}/approvals").json()["approvals"][0]

        r = client.post(f"/approvals/{approval['id']}/decide", json={"decision": "approved"})

        assert r.status_code == 403
        assert r.json()["error"]["code"] == "FORBIDDEN"

    def test_invalid_decision_value(self, client):
        r = client.post("/approvals/anything/decide", json={"decision": "maybe"})
        assert r.status_code == 422

    def test_delegate_and_chain(self, client):
        definition = create_definition(client)
        instance = start_instance(client, definition["id"])
        approval = client.get(f"/workflow-instances/{instance['id']}/approvals").json()["approvals"][0]

        r = client.post(f"/approvals/{approval['id']}/delegate",
                        json={"new_approver_id": "carol", "reason": "holiday"})
        assert r.status_code == 200
        replacement = r.json()
        assert replacement["approver_id"] == "carol"
        assert replacement["delegated_from"] == approval["id"]

        r = client.get(f"/approvals/{replacement['id']}/chain")
        assert [a["approver_id"] for a in r.json()["chain"]] == ["dev-user", "carol"]

    def test_metrics(self, client):
        definition = create_definition(client)
        start_instance(client, definition["id"])

        r = client.get("/approvals/metrics", params={"approver_id": "dev-user"})
        assert r.json()["pending"] == 1


class TestTemplateEndpoints:

    def test_use_template(self, client):
        template = create_definition(client, is_public=True, tags=["expenses"])

        r = client.post(f"/workflow-templates/{template['id']}/use", json={"name": "Team expenses"})
        assert r.status_code == 201
        assert r.json()["source_template_id"] == template["id"]
        assert r.json()["is_public"] is False

        r = client.get("/workflow-templates", params={"is_public": True})
        assert r.json()["templates"][0]["usage_count"] == 1

        r = client.get("/workflow-templates/tags")
        assert r.json()["tags"] == ["expenses"]

    def test_stats(self, client):
        create_definition(client, is_public=True)

        r = client.get("/workflow-templates/stats")
        assert r.json()["public_templates"] == 1


class TestSLAEndpoints:

    def test_check_and_metrics(self, client):
        r = client.post("/sla/check")
        assert r.status_code == 200
        assert r.json()["breached_instances"] == []

        r = client.get("/sla/metrics", params={"period": "week"})
        assert r.json()["period"] == "week"

    def test_due_date_without_timezone(self, client):
        definition = create_definition(client)
        r = client.post("/workflow-instances", json={
            "definition_id": definition["id"], "start": True, "due_date": "2020-01-01T00:00:00"
        })
        assert r.status_code == 201
        instance = r.json()
        assert instance["due_date"] == "2020-01-01T00:00:00+00:00"

        r = client.post("/sla/check")
        assert r.status_code == 200
        assert r.json()["breached_instances"] == [instance["id"]]

        r = client.get("/sla/overdue")
        assert r.status_code == 200
        assert [i["id"] for i in r.json()["instances"]] == [instance["id"]]

    def test_invalid_period(self, client):
        assert client.get("/sla/metrics", params={"period": "year"}).status_code == 422

    def test_analytics(self, client):
        definition = create_definition(client)
        start_instance(client, definition["id"])

        r = client.get("/sla/analytics/metrics")
        assert r.json()["active_instances"] == 1

        r = client.get(f"/sla/analytics/bottlenecks/{definition['id']}")
        assert r.status_code == 200


class TestAuthentication:

    @pytest.fixture
    def secured_client(self):
        original = workflow_core.system._workflow_system
        set_workflow_system(make_system(auth_enabled=True))
        yield TestClient(app)
        set_workflow_system(original)

    def token(self, sub="alice"):
        return jwt.encode({"sub": sub}, JWT_SECRET, algorithm="HS256")

    def test_missing_token(self, secured_client):
        r = secured_client.post("/workflows", json={"name": "X", "category": "y", "graph": REVIEW_GRAPH})
        assert r.status_code == 401

    def test_invalid_token(self, secured_client):
        r = secured_client.get("/approvals/pending", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    def test_caller_identity_from_token(self, secured_client):
        r = secured_client.post(
            "/workflows",
            json={"name": "X", "category": "y", "graph": REVIEW_GRAPH},
            headers={"Authorization": f"Bearer {self.token()}"}
        )
        assert r.status_code == 201
        assert r.json()["owner_id"] == "alice"

    def test_private_definitions_are_listed_to_their_owner_only(self, secured_client):
        alice = {"Authorization": f"Bearer {self.token('alice')}"}
        bob = {"Authorization": f"Bearer {self.token('bob')}"}
        r = secured_client.post(
            "/workflows",
            json={"name": "Alice secret payroll", "category": "hr", "graph": REVIEW_GRAPH},
            headers=alice
        )
        assert r.status_code == 201

        for headers in (alice, bob, {}):
            r = secured_client.get("/workflow-templates", headers=headers)
            assert r.status_code == 200
            expected = ["Alice secret payroll"] if headers is alice else []
            assert [t["name"] for t in r.json()["templates"]] == expected

        r = secured_client.get("/workflows", headers=bob)
        assert r.json()["definitions"] == []
        r = secured_client.get("/workflow-templates/categories", headers=bob)
        assert r.json()["categories"] == []
