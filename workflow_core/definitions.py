"""
Definition Store

Persists workflow definitions (and the public ones that double as templates),
validates their graphs and produces id-remapped clones and new versions.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ConflictError, NotFoundError, ValidationError
from .graph import clone_graph, validate_graph
from .models import Visibility, WorkflowDefinition, WorkflowGraph, new_id, utcnow
from .storage import StorageInterface


logger = logging.getLogger("workflow.definitions")

# Upper bound on compare-and-set attempts for counter increments
MAX_INCREMENT_ATTEMPTS = 100


class DefinitionStore(EventPublisherMixin):
    """Workflow definition persistence and graph validation"""

    TABLE = "workflow_definitions"

    def __init__(self, storage: StorageInterface, audit: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit

    # Reads

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        data = self.storage.load(self.TABLE, definition_id)
        if not data:
            raise NotFoundError("Workflow definition", definition_id)
        return WorkflowDefinition.from_dict(data)

    def list_definitions(self, owner_id: Optional[str] = None, category: Optional[str] = None,
                         active_only: bool = False) -> List[WorkflowDefinition]:
        filters: Dict[str, Any] = {}
        if owner_id:
            filters['owner_id'] = owner_id
        if category:
            filters['category'] = category
        if active_only:
            filters['is_active'] = True

        definitions = [WorkflowDefinition.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        return sorted(definitions, key=lambda d: d.created_at, reverse=True)

    def list_templates(self, search: Optional[str] = None, category: Optional[str] = None,
                       is_public: Optional[bool] = None, industry: Optional[str] = None,
                       tags: Optional[List[str]] = None, limit: int = 50,
                       offset: int = 0, visible_to: Optional[str] = None) -> List[WorkflowDefinition]:
        """
        List definitions usable as templates.

        Ordered by usage count (desc), then newest first. ``search`` matches
        name or description case-insensitively; ``tags`` matches any overlap.
        With ``visible_to`` only public definitions and those owned by that
        user are returned.
        """
        filters: Dict[str, Any] = {}
        if category:
            filters['category'] = category
        if industry:
            filters['industry'] = industry
        if is_public is not None:
            filters['visibility'] = Visibility.PUBLIC.value if is_public else Visibility.PRIVATE.value

        definitions = [WorkflowDefinition.from_dict(d) for d in self.storage.find(self.TABLE, filters)]

        if visible_to is not None:
            definitions = [d for d in definitions if d.is_public or d.owner_id == visible_to]
        if search:
            needle = search.lower()
            definitions = [
                d for d in definitions
                if needle in d.name.lower() or needle in (d.description or "").lower()
            ]
        if tags:
            wanted = set(tags)
            definitions = [d for d in definitions if wanted.intersection(d.tags)]

        # Two stable sorts: newest first, then most used
        definitions.sort(key=lambda d: d.created_at, reverse=True)
        definitions.sort(key=lambda d: d.usage_count, reverse=True)

        return definitions[offset:offset + limit]

    # Writes

    def create_definition(self, name: str, category: str, graph: Union[WorkflowGraph, Dict[str, Any]],
                          owner_id: str, description: str = "", industry: Optional[str] = None,
                          tags: Optional[List[str]] = None, is_public: bool = False,
                          company_id: Optional[str] = None,
                          sla_hours: Optional[int] = None) -> WorkflowDefinition:
        """
        Validate and persist a new definition at version 1.

        Raises:
            ValidationError: missing required fields or a malformed/cyclic graph
        """
        if isinstance(graph, dict):
            graph = _graph_from_payload(graph)
        self._validate_fields(name, category, owner_id, sla_hours)
        validate_graph(graph)

        now = utcnow()
        definition = WorkflowDefinition(
            id=new_id(),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            category=category.strip(),
            graph=graph,
            owner_id=owner_id,
            description=description or "",
            industry=industry,
            tags=list(tags or []),
            visibility=Visibility.PUBLIC if is_public else Visibility.PRIVATE,
            company_id=company_id,
            sla_hours=sla_hours
        )
        self.storage.save(self.TABLE, definition.id, definition.to_dict())

        self._audit(AuditEventType.DEFINITION_CREATED, definition.id,
                    {'name': definition.name, 'category': definition.category,
                     'nodes': len(graph.nodes)}, owner_id)
        self.publish_event(DomainEvent.DEFINITION_CREATED, "definition", definition.id,
                           {'name': definition.name, 'owner_id': owner_id})
        logger.info(f"Created workflow definition {definition.id} ({definition.name})")
        return definition

    def clone_definition(self, template_id: str, new_name: str, owner_id: str) -> WorkflowDefinition:
        """
        Deep-copy a definition into a new private definition owned by
        ``owner_id``. Node and edge ids are regenerated; the source's usage
        count goes up by exactly one, in the same transaction as the clone.
        """
        if not new_name or not new_name.strip():
            raise ValidationError("Name is required")
        source = self.get_definition(template_id)

        graph, id_map = clone_graph(source.graph)
        now = utcnow()
        clone = WorkflowDefinition(
            id=new_id(),
            created_at=now,
            updated_at=now,
            name=new_name.strip(),
            category=source.category,
            graph=graph,
            owner_id=owner_id,
            description=source.description,
            industry=source.industry,
            tags=list(source.tags),
            visibility=Visibility.PRIVATE,
            version=1,
            usage_count=0,
            company_id=source.company_id,
            sla_hours=source.sla_hours,
            source_template_id=source.id
        )
        with self.storage.atomic():
            self.storage.save(self.TABLE, clone.id, clone.to_dict())
            self.increment_usage(source.id)

        self._audit(AuditEventType.DEFINITION_CLONED, clone.id,
                    {'source_template_id': source.id, 'node_id_map': id_map}, owner_id)
        self.publish_event(DomainEvent.DEFINITION_CLONED, "definition", clone.id,
                           {'source_template_id': source.id, 'owner_id': owner_id})
        logger.info(f"Cloned definition {source.id} into {clone.id}")
        return clone

    def increment_usage(self, definition_id: str) -> int:
        """Add one to usage_count with a compare-and-set retry loop"""
        for _ in range(MAX_INCREMENT_ATTEMPTS):
            data = self.storage.load(self.TABLE, definition_id)
            if not data:
                raise NotFoundError("Workflow definition", definition_id)
            expected = int(data.get('revision', 0))
            data['usage_count'] = int(data.get('usage_count', 0)) + 1
            data['revision'] = expected + 1
            data['updated_at'] = utcnow().isoformat()
            if self.storage.compare_and_swap(self.TABLE, definition_id, expected, data):
                return data['usage_count']
            logger.debug(f"Usage count conflict on {definition_id}, retrying")
        raise ConflictError(f"Could not update usage count of {definition_id}")

    def create_version(self, definition_id: str, graph: Optional[Union[WorkflowGraph, Dict[str, Any]]] = None,
                       updated_by: str = "system") -> WorkflowDefinition:
        """
        Create ``version + 1`` of a definition and deactivate the previous one.
        The previous record keeps its graph untouched. Both writes share one
        transaction.
        """
        previous = self.get_definition(definition_id)
        if graph is None:
            graph, _ = clone_graph(previous.graph)
        elif isinstance(graph, dict):
            graph = _graph_from_payload(graph)
        validate_graph(graph)

        now = utcnow()
        version = WorkflowDefinition(
            id=new_id(),
            created_at=now,
            updated_at=now,
            name=previous.name,
            category=previous.category,
            graph=graph,
            owner_id=previous.owner_id,
            description=previous.description,
            industry=previous.industry,
            tags=list(previous.tags),
            visibility=previous.visibility,
            version=previous.version + 1,
            company_id=previous.company_id,
            sla_hours=previous.sla_hours,
            source_template_id=previous.source_template_id,
            previous_version_id=previous.id
        )
        with self.storage.atomic():
            self.storage.save(self.TABLE, version.id, version.to_dict())
            self._set_active(previous.id, False)

        self._audit(AuditEventType.DEFINITION_VERSIONED, version.id,
                    {'previous_version_id': previous.id, 'version': version.version}, updated_by)
        return version

    def deactivate_definition(self, definition_id: str, updated_by: str = "system") -> WorkflowDefinition:
        definition = self._set_active(definition_id, False)
        self._audit(AuditEventType.DEFINITION_DEACTIVATED, definition_id, {}, updated_by)
        return definition

    def _set_active(self, definition_id: str, active: bool) -> WorkflowDefinition:
        for _ in range(MAX_INCREMENT_ATTEMPTS):
            definition = self.get_definition(definition_id)
            expected = definition.revision
            definition.is_active = active
            definition.revision = expected + 1
            definition.updated_at = utcnow()
            if self.storage.compare_and_swap(self.TABLE, definition_id, expected, definition.to_dict()):
                return definition
        raise ConflictError(f"Could not update definition {definition_id}")

    def _validate_fields(self, name: str, category: str, owner_id: str,
                         sla_hours: Optional[int]) -> None:
        if not name or not name.strip():
            raise ValidationError("Name is required")
        if not category or not category.strip():
            raise ValidationError("Category is required")
        if not owner_id:
            raise ValidationError("Owner is required")
        if sla_hours is not None and sla_hours <= 0:
            raise ValidationError("sla_hours must be positive")

    def _audit(self, event_type: AuditEventType, definition_id: str,
               metadata: Dict[str, Any], user_id: Optional[str]) -> None:
        if self.audit:
            self.audit.log_event(event_type, 'workflow_definition', definition_id, metadata, user_id)


def _graph_from_payload(payload: Dict[str, Any]) -> WorkflowGraph:
    """Parse a raw graph dict, turning shape errors into ValidationError"""
    try:
        return WorkflowGraph.from_dict(payload)
    except (KeyError, TypeError) as e:
        raise ValidationError(f"Malformed workflow graph: missing {e}")
    except ValueError as e:
        raise ValidationError(f"Malformed workflow graph: {e}")
