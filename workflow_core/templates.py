"""
Template Service

Public definitions double as templates. Using one clones it into a private
definition for the caller and bumps the template's usage count.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .definitions import DefinitionStore
from .exceptions import AuthorizationError
from .models import WorkflowDefinition, WorkflowGraph

logger = logging.getLogger("workflow.templates")


class TemplateService:
    """Template discovery, use and statistics on top of the Definition Store"""

    def __init__(self, definitions: DefinitionStore, audit: Optional[AuditTrail] = None,
                 default_limit: int = 50):
        self.definitions = definitions
        self.audit = audit
        self.default_limit = default_limit

    def use_template(self, template_id: str, name: str, owner_id: str) -> WorkflowDefinition:
        """
        Clone a template into a private definition owned by ``owner_id``.

        Raises:
            NotFoundError: unknown template
            AuthorizationError: the template is private and not owned by the caller
        """
        template = self.definitions.get_definition(template_id)
        if not template.is_public and template.owner_id != owner_id:
            raise AuthorizationError(
                f"Template {template_id} is not public",
                {'template_id': template_id}
            )

        definition = self.definitions.clone_definition(template_id, name, owner_id)
        if self.audit:
            self.audit.log_event(AuditEventType.TEMPLATE_USED, 'workflow_definition', template_id,
                                 {'definition_id': definition.id}, owner_id)
        logger.info(f"Template {template_id} used by {owner_id}")
        return definition

    def create_template(self, name: str, category: str, graph: Union[WorkflowGraph, Dict[str, Any]],
                        owner_id: str, description: str = "", industry: Optional[str] = None,
                        tags: Optional[List[str]] = None, is_public: bool = True) -> WorkflowDefinition:
        return self.definitions.create_definition(
            name=name, category=category, graph=graph, owner_id=owner_id,
            description=description, industry=industry, tags=tags, is_public=is_public
        )

    def create_template_from_definition(self, definition_id: str, name: str, owner_id: str,
                                        category: Optional[str] = None,
                                        description: Optional[str] = None,
                                        industry: Optional[str] = None,
                                        tags: Optional[List[str]] = None,
                                        is_public: bool = False) -> WorkflowDefinition:
        """Publish the graph of an existing definition as a new template"""
        source = self.definitions.get_definition(definition_id)
        return self.definitions.create_definition(
            name=name,
            category=category or source.category,
            graph=WorkflowGraph.from_dict(source.graph.to_dict()),
            owner_id=owner_id,
            description=description if description is not None else source.description,
            industry=industry or source.industry,
            tags=tags if tags is not None else list(source.tags),
            is_public=is_public
        )

    def list_templates(self, search: Optional[str] = None, category: Optional[str] = None,
                       is_public: Optional[bool] = None, industry: Optional[str] = None,
                       tags: Optional[List[str]] = None, limit: Optional[int] = None,
                       offset: int = 0, viewer_id: Optional[str] = None) -> List[WorkflowDefinition]:
        """
        Templates visible to ``viewer_id``: every public template plus the
        viewer's own private ones. Anonymous callers see public templates only.
        """
        if viewer_id is None:
            if is_public is False:
                return []
            is_public = True
        return self.definitions.list_templates(
            search=search, category=category, is_public=is_public, industry=industry,
            tags=tags, limit=limit or self.default_limit, offset=offset, visible_to=viewer_id
        )

    def popular_templates(self, limit: int = 10) -> List[WorkflowDefinition]:
        return self.definitions.list_templates(is_public=True, limit=limit)

    def get_categories(self, viewer_id: Optional[str] = None) -> List[str]:
        return sorted({d.category for d in self._visible(viewer_id)})

    def get_industries(self, viewer_id: Optional[str] = None) -> List[str]:
        return sorted({d.industry for d in self._visible(viewer_id) if d.industry})

    def get_tags(self, viewer_id: Optional[str] = None) -> List[str]:
        tags = set()
        for definition in self._visible(viewer_id):
            tags.update(definition.tags)
        return sorted(tags)

    def get_stats(self) -> Dict[str, Any]:
        definitions = self.definitions.list_definitions()
        categories = Counter(d.category for d in definitions)
        industries = Counter(d.industry for d in definitions if d.industry)
        return {
            'total_templates': len(definitions),
            'public_templates': sum(1 for d in definitions if d.is_public),
            'total_usage': sum(d.usage_count for d in definitions),
            'top_categories': [{'category': c, 'count': n} for c, n in categories.most_common(10)],
            'top_industries': [{'industry': i, 'count': n} for i, n in industries.most_common(10)]
        }

    def _visible(self, viewer_id: Optional[str]) -> List[WorkflowDefinition]:
        return [
            d for d in self.definitions.list_definitions()
            if d.is_public or (viewer_id is not None and d.owner_id == viewer_id)
        ]
