"""
Tests for the transform engine.

Covers simple transforms, parameterized ``name:arg`` transforms, call-style
transforms (``concat``/``regex_replace``), custom registration and error
reporting for unknown specs.
"""

import bcrypt
import pytest

from relmap.domain.mapping.transforms import TransformEngine, split_arguments


@pytest.fixture
def transforms():
    return TransformEngine()


class TestStringTransforms:
    @pytest.mark.parametrize("spec,value,expected", [
        ("trim", "  Dune  ", "Dune"),
        ("upper", "dune", "DUNE"),
        ("lower", "DUNE", "dune"),
        ("capitalize", "hELLO world", "Hello world"),
        ("title", "the left hand of darkness", "The Left Hand Of Darkness"),
        ("slugify", "Hello, World!  Again", "hello-world-again"),
        ("snake_case", "firstName Last", "first_name_last"),
        ("camel_case", "first_name last", "firstNameLast"),
        ("strip_tags", "<p>Fish &amp; Chips</p>", "Fish & Chips"),
        ("clean_whitespace", "  a \t b\n c ", "a b c"),
        ("normalize_multiline", "a  b\r\n\r\n\r\n\tc", "a b\n\nc"),
    ])
    def test_string_transforms(self, transforms, spec, value, expected):
        assert transforms.apply_one(value, spec) == expected

    def test_string_transforms_leave_non_strings_untouched(self, transforms):
        assert transforms.apply_one(42, "upper") == 42
        assert transforms.apply_one(None, "trim") is None

    def test_null_if_empty(self, transforms):
        assert transforms.apply_one("   ", "null_if_empty") is None
        assert transforms.apply_one(float("nan"), "null_if_empty") is None
        assert transforms.apply_one("x", "null_if_empty") == "x"


class TestNumericTransforms:
    def test_floor_ceil(self, transforms):
        assert transforms.apply_one("3.7", "floor") == 3
        assert transforms.apply_one(3.2, "ceil") == 4

    def test_cents(self, transforms):
        assert transforms.apply_one("12.34", "to_cents") == 1234
        assert transforms.apply_one(1234, "from_cents") == 12.34

    def test_round_multiply_divide(self, transforms):
        assert transforms.apply_one("3.14159", "round:2") == 3.14
        assert transforms.apply_one(3, "multiply:2.5") == 7.5
        assert transforms.apply_one(10, "divide:4") == 2.5

    def test_divide_by_zero_keeps_value(self, transforms):
        assert transforms.apply_one(10, "divide:0") == 10

    def test_non_numeric_passes_through(self, transforms):
        assert transforms.apply_one("abc", "floor") == "abc"


class TestParameterizedTransforms:
    @pytest.mark.parametrize("value,expected", [
        ("42", 42),
        ("4.0", 4),
        ("", None),
        ("abc", "abc"),
    ])
    def test_cast_int(self, transforms, value, expected):
        assert transforms.apply_one(value, "cast:int") == expected

    @pytest.mark.parametrize("value,expected", [
        ("yes", True),
        ("Off", False),
        ("1", True),
        ("0", False),
    ])
    def test_cast_bool(self, transforms, value, expected):
        assert transforms.apply_one(value, "cast:bool") is expected

    def test_cast_date(self, transforms):
        assert transforms.apply_one("2024-03-15 10:30:00", "cast:date") == "2024-03-15"
        assert transforms.apply_one("2024-03-15", "cast:datetime") == "2024-03-15 00:00:00"

    def test_default_and_coalesce(self, transforms):
        assert transforms.apply_one("", "default:n/a") == "n/a"
        assert transforms.apply_one("set", "default:n/a") == "set"
        assert transforms.apply_one("   ", "coalesce:unknown") == "unknown"

    def test_truncate(self, transforms):
        assert transforms.apply_one("Hello world", "truncate:5") == "Hello..."
        assert transforms.apply_one("Hello world", "truncate:5:") == "Hello"
        assert transforms.apply_one("Short", "truncate:10") == "Short"

    def test_prefix_suffix(self, transforms):
        assert transforms.apply_one("42", "prefix:SKU-") == "SKU-42"
        assert transforms.apply_one("42", "suffix:-EU") == "42-EU"
        assert transforms.apply_one("", "prefix:SKU-") == ""

    def test_split_produces_list(self, transforms):
        assert transforms.apply_one("a, b ,c", "split:,") == ["a", "b", "c"]
        assert transforms.apply_one("a|b", "split:|") == ["a", "b"]

    def test_hash_digest(self, transforms):
        assert transforms.apply_one("secret", "hash:md5") == "5ebe2294ecd0e0f08eab7690d2a6ee69"
        assert transforms.apply_one("", "hash:sha256") is None

    def test_hash_password_uses_bcrypt(self, transforms):
        hashed = transforms.apply_one("s3cret", "hash:password")
        assert hashed != "s3cret"
        assert bcrypt.checkpw(b"s3cret", hashed.encode("utf-8"))

    def test_parse_date_with_format(self, transforms):
        assert transforms.apply_one("15/03/2024", "parse_date:%d/%m/%Y") == "2024-03-15 00:00:00"

    def test_parse_date_inferred(self, transforms):
        assert transforms.apply_one("2024-03-15", "parse_date") == "2024-03-15 00:00:00"

    def test_parse_date_keeps_unparseable_value(self, transforms):
        assert transforms.apply_one("not a date", "parse_date") == "not a date"

    def test_date_format(self, transforms):
        assert transforms.apply_one("2024-03-15 08:00:00", "date_format:%d.%m.%Y") == "15.03.2024"

    def test_json_decode(self, transforms):
        assert transforms.apply_one('["a", "b"]', "json_decode") == ["a", "b"]
        assert transforms.apply_one("{broken", "json_decode") == "{broken"


class TestCallTransforms:
    def test_concat_uses_row_context(self, transforms):
        context = {"first_name": "Ursula", "last_name": "Le Guin", "middle": ""}
        spec = 'concat(first_name, middle, last_name, " ")'
        assert transforms.apply_one(None, spec, context) == "Ursula Le Guin"

    def test_concat_custom_separator(self, transforms):
        context = {"city": "Paris", "country": "France"}
        assert transforms.apply_one(None, "concat(city, country, ', ')", context) == "Paris, France"

    def test_regex_replace(self, transforms):
        assert transforms.apply_one("a   b", "regex_replace('\\s+', '-')") == "a-b"

    def test_regex_replace_with_flags_and_backreferences(self, transforms):
        spec = "regex_replace('/(\\w+)@EXAMPLE/i', '$1 at example')"
        assert transforms.apply_one("jane@example", spec) == "jane at example"

    def test_regex_replace_requires_two_arguments(self, transforms):
        with pytest.raises(ValueError):
            transforms.resolve("regex_replace('x')")

    def test_split_arguments_honours_quotes(self):
        assert split_arguments("a, 'b, c', \"d\"") == ["a", "'b, c'", '"d"']


class TestEngine:
    def test_apply_runs_in_order(self, transforms):
        assert transforms.apply("  Hello World ", ["trim", "lower", "slugify"]) == "hello-world"

    def test_unknown_transform_raises(self, transforms):
        with pytest.raises(ValueError, match="Unknown transform"):
            transforms.apply_one("x", "reverse")

    def test_validate_specs_reports_unknown(self, transforms):
        errors = transforms.validate_specs(["trim", "reverse", "cast:int"])
        assert errors == ["Unknown transform: reverse"]

    def test_register_custom_transform(self, transforms):
        transforms.register("reverse", lambda value, context: value[::-1])
        assert transforms.apply_one("abc", "reverse") == "cba"

    def test_custom_transform_overrides_builtin(self, transforms):
        transforms.register("upper", lambda value, context: "custom")
        assert transforms.apply_one("abc", "upper") == "custom"

    def test_register_parameterized(self, transforms):
        transforms.register_parameterized("repeat", lambda argument: lambda value, context: value * int(argument))
        assert transforms.apply_one("ab", "repeat:3") == "ababab"
