"""
Unit tests for the canonical query encoder.

Tests cover:
- The exact wire form of where/orderBy/select
- Parameter order and omission of empty clauses
- Determinism across logically identical requests
- Rejection of invalid requests before encoding
- Body and scalar parameter encoding
"""

import json
from datetime import date, datetime

import pytest

from sdk.appatonce_sdk.encoder import (
    PARAM_ORDER,
    TransportRequest,
    canonical_json,
    encode,
    encode_body,
    encode_scalar_params,
    percent_encode,
)
from sdk.appatonce_sdk.errors import ValidationError
from sdk.appatonce_sdk.filters import (
    FilterCondition,
    FilterGroup,
    Operator,
    QueryRequest,
    SelectSpec,
    SortSpec,
    and_,
    asc,
    condition,
    desc,
    or_,
)


class TestWireForm:
    """Tests for the single-JSON-parameter encoding."""

    def test_reference_example(self):
        """where/orderBy/select encode to exactly three JSON parameters."""
        request = QueryRequest(
            where=[{"field": "status", "operator": "eq", "value": "active"}],
            order_by=[{"field": "score", "direction": "desc"}],
            select=["name", "age"],
        )

        encoded = encode(request)

        assert encoded.query_string == (
            "where=%5B%7B%22field%22%3A%22status%22%2C%22operator%22%3A%22eq%22"
            "%2C%22value%22%3A%22active%22%7D%5D"
            "&orderBy=%5B%7B%22field%22%3A%22score%22%2C%22direction%22%3A%22desc%22%7D%5D"
            "&select=%5B%22name%22%2C%22age%22%5D"
        )
        assert [name for name, _ in encoded.params] == ["where", "orderBy", "select"]

    def test_no_bracket_or_repeated_keys(self):
        """Arrays never become indexed or repeated keys."""
        request = QueryRequest(
            where=[condition("role", "in", ["admin", "owner"])],
            select=["a", "b", "c"],
        )

        qs = encode(request).query_string

        assert "[" not in qs and "%5B0%5D" not in qs
        names = [part.split("=", 1)[0] for part in qs.split("&")]
        assert names == ["where", "select"]

    def test_in_list_value(self):
        """List values are carried inside the JSON text."""
        encoded = encode(QueryRequest(where=[condition("id", "in", (1, 2, 3))]))

        assert json.loads(encoded.param("where")) == [
            {"field": "id", "operator": "in", "value": [1, 2, 3]}
        ]

    def test_null_operator_has_no_value_key(self):
        """isNull/isNotNull omit the value key."""
        encoded = encode(QueryRequest(where=[condition("deleted_at", "isNull")]))

        assert json.loads(encoded.param("where")) == [
            {"field": "deleted_at", "operator": "isNull"}
        ]

    def test_nested_groups(self):
        """Nested groups use {"or": [...]} members."""
        request = QueryRequest(
            where=and_(
                condition("active", "eq", True),
                or_(condition("age", "lt", 18), condition("age", "gte", 65)),
            )
        )

        assert json.loads(encode(request).param("where")) == [
            {"field": "active", "operator": "eq", "value": True},
            {
                "or": [
                    {"field": "age", "operator": "lt", "value": 18},
                    {"field": "age", "operator": "gte", "value": 65},
                ]
            },
        ]

    def test_top_level_or_is_wrapped(self):
        """A top-level OR group is sent as a single member."""
        request = QueryRequest(where=or_(condition("a", "eq", 1), condition("b", "eq", 2)))

        assert json.loads(encode(request).param("where")) == [
            {"or": [{"field": "a", "operator": "eq", "value": 1}, {"field": "b", "operator": "eq", "value": 2}]}
        ]

    def test_limit_offset_are_plain_integers(self):
        """limit/offset are integer text, not JSON-quoted."""
        encoded = encode(QueryRequest(limit=25, offset=50))

        assert encoded.query_string == "limit=25&offset=50"

    def test_unicode_values(self):
        """Non-ASCII text is UTF-8 percent-encoded."""
        encoded = encode(QueryRequest(where=[condition("city", "eq", "Zürich")]))

        assert "Z%C3%BCrich" in encoded.query_string
        assert json.loads(encoded.param("where"))[0]["value"] == "Zürich"

    def test_dates_are_iso_strings(self):
        """Dates and datetimes encode as ISO-8601."""
        encoded = encode(
            QueryRequest(
                where=[
                    condition("day", "eq", date(2024, 3, 1)),
                    condition("at", "lt", datetime(2024, 3, 1, 12, 30)),
                ]
            )
        )

        values = [c["value"] for c in json.loads(encoded.param("where"))]
        assert values == ["2024-03-01", "2024-03-01T12:30:00"]


class TestOrderingAndOmission:
    """Tests for canonical parameter order and empty clauses."""

    def test_parameter_order(self):
        """Parameters appear as where, orderBy, select, limit, offset."""
        request = QueryRequest(
            offset=5,
            limit=10,
            select=["a"],
            order_by=[asc("a")],
            where=[condition("a", "eq", 1)],
        )

        names = [name for name, _ in encode(request).params]

        assert tuple(names) == PARAM_ORDER

    def test_empty_where_omitted(self):
        """An empty where omits the parameter entirely."""
        encoded = encode(QueryRequest(where=[], limit=1))

        assert encoded.param("where") is None
        assert "where" not in encoded.query_string

    @pytest.mark.parametrize("spec", [[], SelectSpec(), ["*"]])
    def test_all_fields_select_omitted(self, spec):
        """Selecting all fields omits the parameter."""
        assert encode(QueryRequest(select=spec)).params == ()

    def test_empty_sort_omitted(self):
        """An empty sort spec omits orderBy."""
        assert encode(QueryRequest(order_by=SortSpec())).params == ()

    def test_empty_request(self):
        """No clauses, no parameters."""
        encoded = encode(QueryRequest(), path="/data/users")

        assert encoded.query_string == ""
        assert encoded.url == "/data/users"


class TestDeterminism:
    """Tests for byte-identical output."""

    def test_same_request_twice(self):
        """Encoding is repeatable."""
        request = QueryRequest(
            where=[condition("a", "in", [3, 1, 2]), condition("b", "like", "x%")],
            order_by=[desc("c")],
            select=["a", "b"],
            limit=10,
        )

        assert encode(request) == encode(request)

    def test_shorthand_and_typed_forms_agree(self):
        """Dict shorthand and typed filters produce the same bytes."""
        typed = QueryRequest(
            where=FilterGroup(items=(FilterCondition("status", Operator.EQ, "active"),)),
            order_by=SortSpec((desc("score"),)),
            select=SelectSpec(("name",)),
        )
        shorthand = QueryRequest(
            where=[{"field": "status", "operator": "eq", "value": "active"}],
            order_by=[{"field": "score", "direction": "desc"}],
            select="name",
        )

        assert encode(typed).query_string == encode(shorthand).query_string

    def test_select_duplicates_collapse(self):
        """Repeated select names encode once."""
        assert encode(QueryRequest(select=["a", "a", "b"])).param("select") == '["a","b"]'

    def test_request_not_mutated(self):
        """The caller's request is untouched."""
        where = [condition("a", "eq", 1)]
        request = QueryRequest(where=where, select=["x"])

        encode(request)

        assert request.where is where
        assert request.select == ["x"]


class TestRejection:
    """Tests for invalid input."""

    def test_in_with_scalar(self):
        """``in`` with a scalar fails before encoding."""
        with pytest.raises(ValidationError) as exc_info:
            encode(QueryRequest(where=[{"field": "x", "operator": "in", "value": "not-an-array"}]))

        assert exc_info.value.field_name == "x"
        assert exc_info.value.operator == "in"

    def test_empty_group(self):
        """Zero-condition groups fail."""
        with pytest.raises(ValidationError):
            encode(QueryRequest(where=FilterGroup(items=())))

    def test_bad_field_name(self):
        """Typos in field grammar fail fast."""
        with pytest.raises(ValidationError):
            encode(QueryRequest(order_by=["created at"]))


class TestTransportRequest:
    """Tests for TransportRequest."""

    def test_url_and_method(self):
        """encode() carries path and upper-cased method."""
        encoded = encode(QueryRequest(limit=1), path="/data/users", method="get")

        assert encoded.method == "GET"
        assert encoded.url == "/data/users?limit=1"

    def test_param_lookup(self):
        """param() returns raw (unescaped) values."""
        encoded = encode(QueryRequest(select=["a"]))

        assert encoded.param("select") == '["a"]'
        assert encoded.param("limit") is None

    def test_percent_encode_reserved(self):
        """Reserved characters are always escaped."""
        assert percent_encode("a b&c=d/e") == "a%20b%26c%3Dd%2Fe"

    def test_manual_params(self):
        """Params are escaped on output."""
        request = TransportRequest(params=(("q", "x y"),))

        assert request.query_string == "q=x%20y"


class TestBodies:
    """Tests for JSON body encoding."""

    def test_canonical_json_compact(self):
        """No whitespace, keys in insertion order."""
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"b":1,"a":[1,2]}'

    def test_canonical_json_rejects_nan(self):
        """NaN is not valid JSON."""
        with pytest.raises(ValueError):
            canonical_json(float("nan"))

    def test_encode_body_uses_where_shape(self):
        """Bodies carry the same where structure as the query parameter."""
        request = QueryRequest(where=[condition("a", "eq", 1)])

        body = encode_body(request, data={"b": 2}, fields=None)

        assert body == {
            "where": [{"field": "a", "operator": "eq", "value": 1}],
            "data": {"b": 2},
        }
        assert json.loads(encode(request).param("where")) == body["where"]

    def test_encode_body_validates(self):
        """Invalid filters fail in bodies too."""
        with pytest.raises(ValidationError):
            encode_body(QueryRequest(where=[condition("x", "in", 1)]))

    def test_scalar_params(self):
        """Flat params: booleans lower-case, lists JSON, None dropped."""
        params = encode_scalar_params({"page": 2, "active": True, "tags": ["a", "b"], "skip": None})

        assert params == (("page", "2"), ("active", "true"), ("tags", '["a","b"]'))
