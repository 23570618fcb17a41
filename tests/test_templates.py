"""
Tests for template discovery, use and statistics
"""

import threading

import pytest

from workflow_core.audit import AuditTrail, AuditEventType
from workflow_core.definitions import DefinitionStore
from workflow_core.exceptions import AuthorizationError, NotFoundError
from workflow_core.graph import structural_signature
from workflow_core.models import StepKind, Visibility, WorkflowEdge, WorkflowGraph, WorkflowNode
from workflow_core.storage import InMemoryStorage
from workflow_core.templates import TemplateService


def review_graph():
    return WorkflowGraph(
        nodes=[
            WorkflowNode(id="submit", kind=StepKind.TASK, label="Submit"),
            WorkflowNode(id="review", kind=StepKind.APPROVAL, label="Review", assignee="manager"),
        ],
        edges=[WorkflowEdge(source="submit", target="review")]
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def definitions(storage, audit_trail):
    return DefinitionStore(storage, audit_trail)


@pytest.fixture
def templates(definitions, audit_trail):
    return TemplateService(definitions, audit_trail)


@pytest.fixture
def public_template(templates):
    return templates.create_template("Purchase Review", "procurement", review_graph(), "owner",
                                     industry="manufacturing", tags=["purchasing"])


@pytest.fixture
def private_template(templates):
    return templates.create_template("Secret Review", "legal", review_graph(), "owner",
                                     industry="law", tags=["contracts"], is_public=False)


class TestUseTemplate:

    def test_use_public_template(self, templates, definitions, public_template, audit_trail):
        definition = templates.use_template(public_template.id, "Our Purchases", "alice")

        assert definition.owner_id == "alice"
        assert definition.visibility == Visibility.PRIVATE
        assert definition.source_template_id == public_template.id
        assert structural_signature(definition.graph) == structural_signature(public_template.graph)
        assert definitions.get_definition(public_template.id).usage_count == 1

        events = audit_trail.get_events_by_type(AuditEventType.TEMPLATE_USED)
        assert [e.entity_id for e in events] == [public_template.id]

    def test_private_template_rejects_other_users(self, templates, definitions, private_template):
        with pytest.raises(AuthorizationError):
            templates.use_template(private_template.id, "Stolen", "alice")

        assert definitions.get_definition(private_template.id).usage_count == 0

    def test_owner_can_use_private_template(self, templates, private_template):
        definition = templates.use_template(private_template.id, "Mine", "owner")
        assert definition.owner_id == "owner"

    def test_unknown_template(self, templates):
        with pytest.raises(NotFoundError):
            templates.use_template("missing", "Copy", "alice")

    def test_concurrent_uses(self, templates, definitions, public_template):
        threads = [
            threading.Thread(target=templates.use_template, args=(public_template.id, f"Copy {n}", f"user-{n}"))
            for n in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert definitions.get_definition(public_template.id).usage_count == 8


class TestTemplateCatalog:

    def test_create_from_definition(self, templates, definitions):
        source = definitions.create_definition("Internal", "hr", review_graph(), "hr-lead",
                                               description="Internal flow", tags=["people"])

        template = templates.create_template_from_definition(source.id, "HR Template", "hr-lead",
                                                             is_public=True)

        assert template.id != source.id
        assert template.is_public
        assert template.category == "hr"
        assert template.description == "Internal flow"
        assert template.tags == ["people"]
        assert structural_signature(template.graph) == structural_signature(source.graph)

    def test_list_and_popular(self, templates, public_template, private_template):
        templates.use_template(public_template.id, "Copy", "alice")

        assert [t.id for t in templates.popular_templates()] == [public_template.id]
        assert [t.name for t in templates.list_templates(search="secret", viewer_id="owner")] == ["Secret Review"]
        assert len(templates.list_templates(limit=1)) == 1

    def test_categories_industries_and_tags(self, templates, public_template, private_template):
        assert templates.get_categories("owner") == ["legal", "procurement"]
        assert templates.get_industries("owner") == ["law", "manufacturing"]
        assert templates.get_tags("owner") == ["contracts", "purchasing"]

    def test_catalog_hides_other_users_private_templates(self, templates, public_template, private_template):
        assert templates.get_categories("alice") == ["procurement"]
        assert templates.get_industries() == ["manufacturing"]
        assert templates.get_tags("alice") == ["purchasing"]


class TestTemplateVisibility:

    def test_private_template_hidden_from_other_users(self, templates, public_template, private_template):
        assert [t.id for t in templates.list_templates(viewer_id="alice")] == [public_template.id]
        assert templates.list_templates(is_public=False, viewer_id="alice") == []
        assert templates.list_templates(search="secret", viewer_id="alice") == []

    def test_owner_sees_own_private_template(self, templates, public_template, private_template):
        visible = {t.id for t in templates.list_templates(viewer_id="owner")}
        assert visible == {public_template.id, private_template.id}
        assert [t.id for t in templates.list_templates(is_public=False, viewer_id="owner")] == [private_template.id]

    def test_anonymous_caller_sees_public_only(self, templates, public_template, private_template):
        assert [t.id for t in templates.list_templates()] == [public_template.id]
        assert templates.list_templates(is_public=False) == []

    def test_stats(self, templates, public_template, private_template):
        templates.use_template(public_template.id, "Copy", "alice")

        stats = templates.get_stats()

        # The clone is a definition too
        assert stats['total_templates'] == 3
        assert stats['public_templates'] == 1
        assert stats['total_usage'] == 1
        assert stats['top_categories'][0] == {'category': 'procurement', 'count': 2}
        assert {'industry': 'law', 'count': 1} in stats['top_industries']
