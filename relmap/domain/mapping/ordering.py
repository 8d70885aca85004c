"""
Execution ordering across the entity mappings of one definition.

A mapping depends on another when one of its column targets goes through a
relation whose related entity type is loaded by that other mapping (for
example ``Book`` with ``author.name`` depends on the ``Author`` mapping).
Pivot-sync mappings depend on the mappings of both endpoints.
"""

import logging
from typing import Dict, List, Optional, Set

from relmap.db.registry import EntityRegistry
from relmap.domain.loading.exceptions import CircularDependencyError
from relmap.domain.loading.relations import RelationClassifier
from relmap.domain.mapping.models import EntityMapping, MappingDefinition

logger = logging.getLogger(__name__)

# node index -> indices of the mappings it depends on
DependencyGraph = Dict[int, Set[int]]


class ExecutionOrderPlanner:
    def __init__(self, registry: EntityRegistry, classifier: Optional[RelationClassifier] = None):
        self.registry = registry
        self.classifier = classifier or RelationClassifier()

    def _entity_indices(self, definition: MappingDefinition) -> Dict[object, List[int]]:
        """Resolved entity class (or raw name when unresolvable) -> entity mapping indices."""
        indices: Dict[object, List[int]] = {}
        for index, mapping in enumerate(definition.mappings):
            if mapping.is_pivot_sync:
                continue
            key = self.registry.find(mapping.entity) or mapping.entity
            indices.setdefault(key, []).append(index)
        return indices

    def _referenced_entities(self, mapping: EntityMapping) -> List[object]:
        if mapping.is_pivot_sync:
            if not mapping.relation_path or "." not in mapping.relation_path:
                return []
            owner_name, relation_name = mapping.relation_path.split(".", 1)
            owner_cls = self.registry.find(owner_name)
            if owner_cls is None:
                return [owner_name]
            related_cls = self.classifier.related_class(owner_cls, relation_name)
            return [owner_cls] + ([related_cls] if related_cls is not None else [])

        entity_cls = self.registry.find(mapping.entity)
        if entity_cls is None:
            return []

        referenced = []
        seen = set()
        for column in mapping.columns:
            relation_name = column.relation_name
            if relation_name is None or relation_name in seen:
                continue
            seen.add(relation_name)
            related_cls = self.classifier.related_class(entity_cls, relation_name)
            if related_cls is not None:
                referenced.append(related_cls)
        return referenced

    def build_dependency_graph(self, definition: MappingDefinition) -> DependencyGraph:
        entity_indices = self._entity_indices(definition)
        graph: DependencyGraph = {index: set() for index in range(len(definition.mappings))}

        for index, mapping in enumerate(definition.mappings):
            for entity in self._referenced_entities(mapping):
                for dependency in entity_indices.get(entity, []):
                    if dependency != index:
                        graph[index].add(dependency)

        return graph

    def detect_circular_dependencies(self, graph: DependencyGraph) -> List[List[int]]:
        """Return every cycle found by DFS, each as a closed path of node indices."""
        visited: Set[int] = set()
        stack: List[int] = []
        on_stack: Set[int] = set()
        cycles: List[List[int]] = []

        def visit(node: int) -> None:
            visited.add(node)
            stack.append(node)
            on_stack.add(node)
            for dependency in sorted(graph.get(node, ())):
                if dependency in on_stack:
                    start = stack.index(dependency)
                    cycles.append(stack[start:] + [dependency])
                elif dependency not in visited:
                    visit(dependency)
            stack.pop()
            on_stack.discard(node)

        for node in sorted(graph):
            if node not in visited:
                visit(node)

        return cycles

    def _cycle_names(self, definition: MappingDefinition, cycles: List[List[int]]) -> List[List[str]]:
        return [[definition.mappings[index].entity for index in cycle] for cycle in cycles]

    def suggest_execution_order(self, definition: MappingDefinition) -> List[int]:
        """
        Topological order of mapping indices (dependencies first).

        Ties keep the current execution order, then the definition order.

        Raises:
            CircularDependencyError: if the mappings depend on each other in a cycle
        """
        graph = self.build_dependency_graph(definition)
        cycles = self.detect_circular_dependencies(graph)
        if cycles:
            raise CircularDependencyError(self._cycle_names(definition, cycles))

        def priority(index: int):
            return (definition.mappings[index].execution_order, index)

        remaining = {node: len(dependencies) for node, dependencies in graph.items()}
        dependents: Dict[int, Set[int]] = {node: set() for node in graph}
        for node, dependencies in graph.items():
            for dependency in dependencies:
                dependents[dependency].add(node)

        ready = sorted((node for node, count in remaining.items() if count == 0), key=priority)
        order: List[int] = []
        while ready:
            node = ready.pop(0)
            order.append(node)
            for dependent in dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=priority)

        return order

    def apply_execution_order(self, definition: MappingDefinition) -> MappingDefinition:
        """Return a copy of the definition with mappings reordered and numbered 1..n."""
        order = self.suggest_execution_order(definition)
        mappings = [
            definition.mappings[index].model_copy(update={"execution_order": position})
            for position, index in enumerate(order, start=1)
        ]
        logger.debug(
            "Execution order for '%s': %s",
            definition.name,
            ", ".join(f"{mapping.execution_order}:{mapping.entity}" for mapping in mappings),
        )
        return definition.model_copy(update={"mappings": mappings})

    def validate_execution_order(self, definition: MappingDefinition) -> List[str]:
        """Human-readable problems with the configured orders (empty when valid)."""
        errors: List[str] = []

        by_order: Dict[int, List[str]] = {}
        for mapping in definition.mappings:
            by_order.setdefault(mapping.execution_order, []).append(mapping.entity)
        for order, entities in sorted(by_order.items()):
            if len(entities) > 1:
                errors.append(f"Execution order {order} is used by more than one mapping: {', '.join(entities)}")

        graph = self.build_dependency_graph(definition)
        for index, dependencies in sorted(graph.items()):
            dependent = definition.mappings[index]
            for dependency_index in sorted(dependencies):
                dependency = definition.mappings[dependency_index]
                if dependency.execution_order >= dependent.execution_order:
                    errors.append(
                        f"{dependency.entity} (order {dependency.execution_order}) must run before "
                        f"{dependent.entity} (order {dependent.execution_order})"
                    )

        return errors
