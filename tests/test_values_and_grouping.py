"""
Tests for column value resolution, the length guard, lookup configuration and
grouping of a row into attributes and relation payloads.
"""

import pytest

from relmap.db.introspection import SchemaIntrospector
from relmap.domain.loading.grouping import (
    AttributeGrouper,
    RelationAccumulator,
    has_values,
    parse_field,
    pick_key,
    zip_field_arrays,
)
from relmap.domain.loading.lookup import LookupConfig, RelationLookupConfigurator
from relmap.domain.loading.relations import RelationClassifier, RelationKind
from relmap.domain.loading.values import ColumnLengthGuard, ColumnValueResolver
from relmap.domain.mapping.models import ColumnMapping, EntityMapping, RelationLookup, Row
from tests.utils.catalog_models import Author, Book, Review


@pytest.fixture
def introspector(session):
    return SchemaIntrospector(session)


@pytest.fixture
def grouper(introspector):
    values = ColumnValueResolver()
    return AttributeGrouper(
        RelationClassifier(),
        RelationLookupConfigurator(introspector),
        values,
        ColumnLengthGuard(introspector),
    )


def _group(grouper, entity_cls, columns, data):
    mapping = EntityMapping(entity=entity_cls.__name__, columns=columns)
    return grouper.group(entity_cls, mapping, Row(data, line_number=1))


class TestColumnValueResolver:
    def test_default_for_missing_values(self):
        resolver = ColumnValueResolver()
        column = ColumnMapping(source="title", target="title", default="Untitled")
        assert resolver.resolve(column, Row({"title": ""})).value == "Untitled"
        assert resolver.resolve(column, Row({"title": float("nan")})).value == "Untitled"
        assert resolver.resolve(column, Row({})).value == "Untitled"

    def test_virtual_column_returns_default(self):
        column = ColumnMapping(source="__default_status", target="status", default="draft", transforms=["upper"])
        assert ColumnValueResolver().resolve(column, Row({"__default_status": "x"})).value == "draft"

    def test_transforms_after_split_are_deferred(self):
        column = ColumnMapping(source="tags", target="tags.name", transforms=["split:,", "trim", "lower"])
        resolved = ColumnValueResolver().resolve(column, Row({"tags": "SciFi, Classic"}))
        assert resolved.value == ["SciFi", "Classic"]
        assert resolved.element_transforms == ("trim", "lower")

    def test_resolve_value_applies_element_transforms(self):
        column = ColumnMapping(source="tags", target="keywords", transforms=["split:;", "upper"])
        assert ColumnValueResolver().resolve_value(column, Row({"tags": "a;b"})) == ["A", "B"]


class TestColumnLengthGuard:
    def test_truncates_to_exact_limit(self, introspector):
        check = ColumnLengthGuard(introspector).check(Book, "title", "x" * 25)
        assert check.truncated
        assert check.value == "x" * 20
        assert check.details.as_dict() == {"field": "title", "original_length": 25, "max_length": 20}

    def test_values_within_limit_untouched(self, introspector):
        check = ColumnLengthGuard(introspector).check(Book, "title", "Dune")
        assert (check.value, check.truncated, check.details) == ("Dune", False, None)

    def test_unbounded_unknown_and_disabled(self, introspector):
        long_value = "y" * 500
        assert ColumnLengthGuard(introspector).check(Book, "summary", long_value).value == long_value
        assert ColumnLengthGuard(introspector).check(Book, "nope", long_value).value == long_value
        assert ColumnLengthGuard(introspector, enabled=False).check(Book, "title", long_value).value == long_value

    def test_non_strings_and_empty_strings_skipped(self, introspector):
        guard = ColumnLengthGuard(introspector)
        assert guard.check(Book, "title", 12345).value == 12345
        assert not guard.check(Book, "title", "").truncated


class TestLookupConfigurator:
    def _configure(self, introspector, owner, relation_name, field, target, create=False, **column_extra):
        relation = RelationClassifier().describe(owner, relation_name)
        column = ColumnMapping(source="x", target=target, **column_extra)
        return RelationLookupConfigurator(introspector).configure(relation, field, column, create_marker=create)

    def test_owning_relation_uses_mapped_field(self, introspector):
        lookup = self._configure(introspector, Book, "category", "name", "category.name+", create=True)
        assert lookup == LookupConfig(field="name", create_if_missing=True)

    def test_to_many_requires_unique_field(self, introspector):
        assert self._configure(introspector, Book, "reviews", "code", "reviews.code") == LookupConfig(
            field="code", create_if_missing=True
        )
        assert self._configure(introspector, Book, "reviews", "body", "reviews.body") is None

    def test_many_to_many_creates_only_with_marker(self, introspector):
        assert self._configure(introspector, Book, "tags", "name", "tags.name").create_if_missing is False
        assert self._configure(introspector, Book, "tags", "name", "tags.name+", create=True).create_if_missing

    def test_explicit_lookup_wins(self, introspector):
        lookup = self._configure(
            introspector, Book, "tags", "label", "tags.label",
            relation_lookup=RelationLookup(field="name", create_if_missing=True, delimiter=";"),
        )
        assert lookup == LookupConfig(field="name", create_if_missing=True, delimiter=";", explicit=True)

    def test_unclassified_relation_has_no_auto_lookup(self, introspector):
        column = ColumnMapping(source="x", target="publisher.name")
        assert RelationLookupConfigurator(introspector).configure(None, "name", column) is None


class TestFieldHelpers:
    @pytest.mark.parametrize("fragment,expected", [
        ("name", ("name", False, False)),
        ("name+", ("name", False, True)),
        ("?bio", ("bio", True, False)),
        ("?name+", ("name", True, True)),
    ])
    def test_parse_field(self, fragment, expected):
        spec = parse_field(fragment)
        assert (spec.name, spec.optional, spec.create) == expected

    @pytest.mark.parametrize("element", [
        {"reviewer_name": "Ann"},
        {"reviewerName": "Ann"},
        {"ReviewerName": "Ann"},
        {"Reviewer Name": "Ann"},
    ])
    def test_pick_key_variants(self, element):
        assert pick_key(element, "reviewer_name") == (True, "Ann")

    def test_pick_key_missing(self):
        assert pick_key({"other": 1}, "reviewer_name") == (False, None)

    def test_accumulator_is_immutable(self):
        empty = RelationAccumulator(name="tags")
        filled = empty.with_data("name", "scifi").with_pivot("weight", 2)
        assert empty.data == {} and empty.pivot == {}
        assert filled.finalize().data == {"name": "scifi"}
        assert filled.finalize().pivot == {"weight": 2}

    def test_explicit_lookup_replaces_auto_lookup(self):
        auto = LookupConfig(field="id")
        explicit = LookupConfig(field="name", explicit=True)
        accumulator = RelationAccumulator(name="tags").with_lookup(auto).with_lookup(LookupConfig(field="other"))
        assert accumulator.lookup == auto
        assert accumulator.with_lookup(explicit).lookup == explicit

    def test_zip_field_arrays_by_index(self):
        info = (
            RelationAccumulator(name="reviews")
            .with_data("reviewer", "staff")
            .with_field_array("body", ["Great", {"body": "Fine"}, None])
            .with_field_array("rating", [5, {"Rating": 3}])
            .finalize()
        )
        assert zip_field_arrays(info) == [
            {"reviewer": "staff", "body": "Great", "rating": 5},
            {"reviewer": "staff", "body": "Fine", "rating": 3},
            {"reviewer": "staff"},
        ]


class TestAttributeGrouper:
    def test_direct_attributes_and_owning_relation(self, grouper):
        grouped = _group(
            grouper,
            Book,
            [
                ColumnMapping(source="title", target="title"),
                ColumnMapping(source="cat", target="category.name+", transforms=["trim"]),
                ColumnMapping(source="cat_slug", target="category.slug"),
            ],
            {"title": "Dune", "cat": " Fiction ", "cat_slug": "fiction"},
        )

        assert grouped.attributes == {"title": "Dune"}
        category = grouped.relations["category"]
        assert category.kind == RelationKind.OWNING_TO_ONE
        assert category.data == {"name": "Fiction", "slug": "fiction"}
        assert category.lookup == LookupConfig(field="name", create_if_missing=True)

    def test_truncation_is_reported(self, grouper):
        grouped = _group(
            grouper,
            Book,
            [ColumnMapping(source="title", target="title"), ColumnMapping(source="tag", target="tags.name")],
            {"title": "A" * 30, "tag": "t" * 40},
        )
        assert grouped.attributes["title"] == "A" * 20
        assert grouped.relations["tags"].data["name"] == "t" * 30
        assert [record.field for record in grouped.truncated] == ["title", "tags.name"]

    def test_optional_null_field_is_dropped(self, grouper):
        grouped = _group(
            grouper,
            Author,
            [
                ColumnMapping(source="name", target="name"),
                ColumnMapping(source="bio", target="profile.?bio"),
                ColumnMapping(source="site", target="profile.website"),
            ],
            {"name": "Le Guin", "bio": "", "site": None},
        )
        assert grouped.relations["profile"].data == {"website": None}

    def test_optional_pivot_is_dropped(self, grouper):
        grouped = _group(
            grouper,
            Book,
            [
                ColumnMapping(source="tag", target="tags.name"),
                ColumnMapping(source="weight", target="tags.pivot.?weight"),
            ],
            {"tag": "classic", "weight": None},
        )
        assert grouped.relations["tags"].pivot == {}

    def test_list_value_on_array_relation_becomes_field_array(self, grouper):
        grouped = _group(
            grouper,
            Book,
            [ColumnMapping(source="tags", target="tags.name", transforms=["split:,", "trim", "lower"])],
            {"tags": "SciFi, Classic"},
        )
        tags = grouped.relations["tags"]
        assert tags.field_arrays == {"name": ["SciFi", "Classic"]}
        assert tags.field_transforms == {"name": ("trim", "lower")}
        assert tags.fields == ("name",)
        assert tags.lookup == LookupConfig(field="name", create_if_missing=False)

    def test_full_array_only_for_array_relations(self, grouper):
        grouped = _group(
            grouper,
            Book,
            [
                ColumnMapping(source="reviews", target="reviews.*"),
                ColumnMapping(source="cat", target="category.*"),
            ],
            {"reviews": [{"body": "Great"}], "cat": [{"name": "x"}]},
        )
        assert grouped.relations["reviews"].full_array == [{"body": "Great"}]
        assert grouped.relations["category"].is_empty()

    def test_single_dict_is_wrapped_for_full_array(self, grouper):
        grouped = _group(grouper, Book, [ColumnMapping(source="r", target="reviews.*")], {"r": {"body": "Solo"}})
        assert grouped.relations["reviews"].full_array == [{"body": "Solo"}]

    def test_too_deep_paths_are_ignored(self, grouper):
        grouped = _group(grouper, Book, [ColumnMapping(source="x", target="author.profile.bio")], {"x": "deep"})
        assert grouped.relations["author"].is_empty()

    def test_blank_relation_values_count_as_empty(self, grouper):
        grouped = _group(
            grouper,
            Book,
            [
                ColumnMapping(source="body", target="reviews.body"),
                ColumnMapping(source="who", target="reviews.reviewer"),
            ],
            {"body": "", "who": None},
        )
        info = grouped.relations["reviews"]
        assert not info.has_data
        assert info.is_empty()

    def test_has_values(self):
        assert has_values({"a": None, "b": "x"})
        assert not has_values({"a": None, "b": ""})
        assert not has_values({})

    def test_unknown_relation_keeps_values(self, grouper):
        grouped = _group(grouper, Review, [ColumnMapping(source="p", target="publisher.name")], {"p": "Ace"})
        info = grouped.relations["publisher"]
        assert info.relation is None
        assert info.data == {"name": "Ace"}
        assert info.lookup is None

    def test_many_to_many_lookup_uses_unique_name(self, grouper):
        grouped = _group(grouper, Book, [ColumnMapping(source="tag", target="tags.name")], {"tag": "x"})
        assert grouped.relations["tags"].lookup.field == "name"
