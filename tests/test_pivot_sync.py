"""
Tests for standalone join-table synchronization (``type="pivot_sync"`` mappings).
"""

import pytest
from sqlalchemy import select

from relmap.domain.loading.pivot_sync import PivotSynchronizer
from relmap.domain.loading.relations import RelationClassifier
from relmap.domain.loading.values import ColumnValueResolver
from relmap.domain.mapping.models import ColumnMapping, EntityMapping, RelationLookup, Row
from tests.utils.catalog_models import Book, Tag, book_tag


@pytest.fixture
def synchronizer(session, registry):
    return PivotSynchronizer(session, registry, RelationClassifier(), ColumnValueResolver())


@pytest.fixture
def catalog(session):
    book = Book(isbn="111", title="Dune")
    tag = Tag(name="classic")
    session.add_all([book, tag])
    session.flush()
    return book, tag


def _pivot_mapping(columns, relation_path="Book.tags"):
    return EntityMapping(
        entity="book_tag",
        type="pivot_sync",
        relation_path=relation_path,
        columns=columns,
    )


def _links(session):
    return [tuple(row) for row in session.execute(select(book_tag.c.book_id, book_tag.c.tag_id, book_tag.c.weight))]


def test_links_existing_endpoints_with_pivot_values(session, synchronizer, catalog):
    book, tag = catalog
    mapping = _pivot_mapping([
        ColumnMapping(source="isbn", target="owner.isbn"),
        ColumnMapping(source="tag", target="related.name"),
        ColumnMapping(source="weight", target="pivot.weight", transforms=["cast:int"]),
    ])

    assert synchronizer.sync(mapping, Row({"isbn": "111", "tag": "classic", "weight": "4"})) is True
    assert _links(session) == [(book.id, tag.id, 4)]


def test_existing_link_gets_pivot_update(session, synchronizer, catalog):
    book, tag = catalog
    mapping = _pivot_mapping([
        ColumnMapping(source="isbn", target="parent.isbn"),
        ColumnMapping(source="tag", target="related.name"),
        ColumnMapping(source="weight", target="pivot_weight"),
    ])

    synchronizer.sync(mapping, Row({"isbn": "111", "tag": "classic", "weight": 1}))
    synchronizer.sync(mapping, Row({"isbn": "111", "tag": "classic", "weight": 9}))

    assert _links(session) == [(book.id, tag.id, 9)]


def test_endpoint_attributes_are_untouched(session, synchronizer, catalog):
    book, _ = catalog
    mapping = _pivot_mapping([
        ColumnMapping(source="isbn", target="owner.isbn"),
        ColumnMapping(source="tag", target="related.name"),
        ColumnMapping(source="title", target="title"),
    ])

    synchronizer.sync(mapping, Row({"isbn": "111", "tag": "classic", "title": "Ignored"}))

    session.refresh(book)
    assert book.title == "Dune"


def test_missing_endpoint_is_not_created_by_default(session, synchronizer, catalog):
    mapping = _pivot_mapping([
        ColumnMapping(source="isbn", target="owner.isbn"),
        ColumnMapping(source="tag", target="related.name"),
    ])

    assert synchronizer.sync(mapping, Row({"isbn": "111", "tag": "modern"})) is False
    assert _links(session) == []
    assert session.query(Tag).count() == 1


def test_missing_endpoint_created_when_allowed(session, synchronizer, catalog):
    mapping = _pivot_mapping([
        ColumnMapping(source="isbn", target="owner.isbn"),
        ColumnMapping(
            source="tag",
            target="related.name",
            relation_lookup=RelationLookup(create_if_missing=True),
        ),
    ])

    assert synchronizer.sync(mapping, Row({"isbn": "111", "tag": "modern"})) is True
    assert session.query(Tag).filter_by(name="modern").count() == 1


def test_empty_lookup_value_skips(synchronizer, catalog):
    mapping = _pivot_mapping([
        ColumnMapping(source="isbn", target="owner.isbn"),
        ColumnMapping(source="tag", target="related.name"),
    ])
    assert synchronizer.sync(mapping, Row({"isbn": "", "tag": "classic"})) is False


@pytest.mark.parametrize("relation_path", ["Book.reviews", "Book.publisher", "tags"])
def test_non_many_to_many_paths_are_rejected(synchronizer, catalog, relation_path):
    mapping = _pivot_mapping([ColumnMapping(source="isbn", target="owner.isbn")], relation_path=relation_path)
    assert synchronizer.sync(mapping, Row({"isbn": "111"})) is False
