"""
Tests for dependency detection and execution ordering across entity mappings.
"""

import pytest

from relmap.domain.loading.exceptions import CircularDependencyError
from relmap.domain.mapping.models import ColumnMapping, EntityMapping, MappingDefinition
from relmap.domain.mapping.ordering import ExecutionOrderPlanner


def _mapping(entity, targets, order=1, **extra):
    return EntityMapping(
        entity=entity,
        execution_order=order,
        columns=[ColumnMapping(source=target, target=target) for target in targets],
        **extra,
    )


@pytest.fixture
def planner(registry):
    return ExecutionOrderPlanner(registry)


def test_book_depends_on_author_and_category(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Book", ["title", "author.name", "category.name+"], order=1),
        _mapping("Author", ["name"], order=2),
        _mapping("categories", ["name"], order=3),
    ])

    graph = planner.build_dependency_graph(definition)

    assert graph == {0: {1, 2}, 1: set(), 2: set()}


def test_unmapped_related_entities_add_no_edges(planner):
    definition = MappingDefinition(mappings=[_mapping("Book", ["title", "tags.name"])])
    assert planner.build_dependency_graph(definition) == {0: set()}


def test_suggest_order_puts_dependencies_first(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Review", ["body", "book.isbn"], order=1),
        _mapping("Book", ["isbn", "author.name"], order=2),
        _mapping("Author", ["name"], order=3),
    ])

    order = planner.suggest_execution_order(definition)

    assert [definition.mappings[index].entity for index in order] == ["Author", "Book", "Review"]


def test_ties_keep_configured_order(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Tag", ["name"], order=5),
        _mapping("Category", ["name"], order=2),
        _mapping("Author", ["name"], order=9),
    ])
    order = planner.suggest_execution_order(definition)
    assert [definition.mappings[index].entity for index in order] == ["Category", "Tag", "Author"]


def test_cycle_is_reported(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Book", ["isbn", "author.name"]),
        _mapping("Author", ["name", "books.*"], order=2),
    ])

    graph = planner.build_dependency_graph(definition)
    assert planner.detect_circular_dependencies(graph) == [[0, 1, 0]]

    with pytest.raises(CircularDependencyError) as excinfo:
        planner.suggest_execution_order(definition)
    assert excinfo.value.cycles == [["Book", "Author", "Book"]]
    assert "Book -> Author -> Book" in str(excinfo.value)


def test_pivot_sync_depends_on_both_endpoints(planner):
    definition = MappingDefinition(mappings=[
        _mapping(
            "book_tag",
            ["owner.isbn", "related.name"],
            order=1,
            type="pivot_sync",
            relation_path="Book.tags",
        ),
        _mapping("Book", ["isbn"], order=2),
        _mapping("Tag", ["name"], order=3),
    ])

    assert planner.build_dependency_graph(definition)[0] == {1, 2}
    ordered = planner.apply_execution_order(definition)
    assert [mapping.entity for mapping in ordered.mappings] == ["Book", "Tag", "book_tag"]
    assert [mapping.execution_order for mapping in ordered.mappings] == [1, 2, 3]


def test_apply_execution_order_does_not_mutate_input(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Book", ["author.name"], order=1),
        _mapping("Author", ["name"], order=2),
    ])

    ordered = planner.apply_execution_order(definition)

    assert [mapping.entity for mapping in definition.mappings] == ["Book", "Author"]
    assert [(mapping.entity, mapping.execution_order) for mapping in ordered.mappings] == [
        ("Author", 1),
        ("Book", 2),
    ]


def test_validate_execution_order_messages(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Book", ["author.name"], order=1),
        _mapping("Author", ["name"], order=1),
    ])

    problems = planner.validate_execution_order(definition)

    assert "Execution order 1 is used by more than one mapping: Book, Author" in problems
    assert "Author (order 1) must run before Book (order 1)" in problems


def test_valid_order_has_no_problems(planner):
    definition = MappingDefinition(mappings=[
        _mapping("Author", ["name"], order=1),
        _mapping("Book", ["author.name"], order=2),
    ])
    assert planner.validate_execution_order(definition) == []
