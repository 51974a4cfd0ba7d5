"""
Tests for lookup query building and UID resolution.
"""

import io
import json

import pytest

from triple_upsert.models import UID, Duple, DupleNode
from triple_upsert.query import (
    EMPTY_QUERY,
    MSG_BAD_RESPONSE,
    MSG_BUILDER_WRITING,
    MSG_NIL_UID,
    MSG_TOO_MANY_RESPONSES,
    AmbiguousMatchError,
    MalformedMatchError,
    QueryError,
    QueryRecord,
    create_query,
    decode_response,
    execute_query,
    find_decoded_uid,
    query_uid,
)

from conftest import FailingBuilder, FakeStore


@pytest.fixture
def person():
    return DupleNode("damien").add_duples(
        Duple("username", "damienstamates", is_unique=True),
        Duple("website", "github.com", is_unique=True),
        Duple("email", "damienstamates@gmail.com", is_unique=True),
        Duple("age", 19),
    )


ALICE_QUERY = '{\n  q(func: eq(<username>, "alice")) {\n    uid\n  }\n}'


class TestCreateQuery:
    """Test query text generation."""

    def test_single_unique(self, alice):
        builder = io.StringIO()
        create_query(builder, alice)
        assert builder.getvalue() == ALICE_QUERY

    def test_filters_joined_with_and(self, person):
        """Test that the first test is the root and the rest are ANDed filters."""
        builder = io.StringIO()
        create_query(builder, person)
        assert builder.getvalue() == (
            '{\n  q(func: eq(<username>, "damienstamates"))'
            ' @filter(eq(<website>, "github.com")'
            ' AND eq(<email>, "damienstamates@gmail.com")) {\n    uid\n  }\n}'
        )

    def test_non_unique_predicates_excluded(self, person):
        builder = io.StringIO()
        create_query(builder, person)
        assert "<age>" not in builder.getvalue()

    def test_none_unique_value_left_out(self):
        """Test that a unique duple without a value adds no filter."""
        node = DupleNode("x").add_duples(
            Duple("email", None, is_unique=True),
            Duple("username", "alice", is_unique=True),
        )
        builder = io.StringIO()
        create_query(builder, node)
        assert builder.getvalue() == ALICE_QUERY

    def test_only_none_unique_values_writes_nothing(self):
        node = DupleNode("x").add_duples(Duple("email", None, is_unique=True))
        builder = io.StringIO()
        create_query(builder, node)
        assert builder.getvalue() == EMPTY_QUERY

    def test_no_unique_duples_writes_nothing(self):
        builder = io.StringIO()
        create_query(builder, DupleNode("x").add_duples(Duple("age", 1)))
        assert builder.getvalue() == EMPTY_QUERY

    def test_empty_node_never_touches_builder(self):
        """Test that a failing sink is not even used for an empty node."""
        builder = FailingBuilder(fail_on=1)
        create_query(builder, DupleNode())
        assert builder.writes == 0

    def test_literal_escaping(self):
        node = DupleNode("q").add_duples(Duple("name", 'say "hi"\n\\', is_unique=True))
        builder = io.StringIO()
        create_query(builder, node)
        assert 'eq(<name>, "say \\"hi\\"\\n\\\\")' in builder.getvalue()

    def test_typed_values_use_lexical_form(self):
        node = DupleNode("q").add_duples(
            Duple("active", True, is_unique=True),
            Duple("count", 7, is_unique=True),
        )
        builder = io.StringIO()
        create_query(builder, node)
        text = builder.getvalue()
        assert 'eq(<active>, "true")' in text
        assert 'eq(<count>, "7")' in text

    def test_header_failure_propagates_raw(self, alice):
        with pytest.raises(OSError, match="write 1 failed"):
            create_query(FailingBuilder(fail_on=1), alice)

    def test_pair_failure_wrapped(self, person):
        """Test that a failed predicate write names the predicate and value."""
        with pytest.raises(QueryError) as exc_info:
            create_query(FailingBuilder(fail_on=2), person)

        err = exc_info.value
        assert err == QueryError(
            function="create_query",
            message=MSG_BUILDER_WRITING.format(predicate="username", value="damienstamates"),
            predicate="username",
            value="damienstamates",
            ext_err=OSError("write 2 failed"),
        )
        assert isinstance(err.__cause__, OSError)

    def test_later_pair_failure_wrapped(self, person):
        with pytest.raises(QueryError) as exc_info:
            create_query(FailingBuilder(fail_on=4), person)
        assert exc_info.value.predicate == "email"

    def test_footer_failure_propagates_raw(self, alice):
        with pytest.raises(OSError, match="write 3 failed"):
            create_query(FailingBuilder(fail_on=3), alice)

    def test_invalid_predicate(self):
        node = DupleNode("q").add_duples(Duple("bad pred", "x", is_unique=True))
        with pytest.raises(ValueError):
            create_query(io.StringIO(), node)


class TestDecodeResponse:
    """Test response decoding."""

    def test_json_text(self):
        decoded = decode_response('{"q": [{"uid": "0x1"}]}')
        assert decoded["q"][0].uid == "0x1"

    def test_bytes(self):
        decoded = decode_response(b'{"q": [{"uid": "0x1"}]}')
        assert decoded["q"][0].uid == "0x1"

    def test_mapping(self):
        decoded = decode_response({"q": [{"UID": "0x2", "name": "x"}]})
        assert decoded["q"][0].uid == "0x2"

    def test_response_object(self):
        """Test objects exposing the payload as .json."""
        class Response:
            json = '{"q": []}'

        assert decode_response(Response()) == {"q": []}

    def test_missing_uid_is_none(self):
        assert decode_response('{"q": [{}]}')["q"][0].uid is None


class TestExecuteQuery:
    """Test running the lookup through a transaction."""

    def test_valid(self, alice):
        store = FakeStore(response='{"q": [{"uid": "0x1"}]}')
        decoded = {}
        execute_query(store.new_txn(), io.StringIO(), alice, decoded)

        assert store.queries == [ALICE_QUERY]
        assert decoded == {"q": [QueryRecord(uid="0x1")]}

    def test_decoded_replaced_in_place(self, alice):
        store = FakeStore(response='{"q": []}')
        decoded = {"stale": [QueryRecord(uid="0x9")]}
        execute_query(store.new_txn(), io.StringIO(), alice, decoded)
        assert decoded == {"q": []}

    def test_empty_query_skips_store(self):
        store = FakeStore()
        decoded = {}
        execute_query(store.new_txn(), io.StringIO(), DupleNode(), decoded)

        assert store.queries == []
        assert decoded == {}

    def test_builder_failure_propagates(self, alice):
        store = FakeStore()
        with pytest.raises(OSError):
            execute_query(store.new_txn(), FailingBuilder(fail_on=1), alice, {})
        assert store.queries == []

    def test_transaction_failure_carries_query(self, alice):
        store = FakeStore(query_error=RuntimeError("QUERY_ERROR"))
        with pytest.raises(QueryError) as exc_info:
            execute_query(store.new_txn(), io.StringIO(), alice, {})

        assert exc_info.value == QueryError(
            function="execute_query",
            query=ALICE_QUERY,
            ext_err=RuntimeError("QUERY_ERROR"),
        )

    @pytest.mark.parametrize("response", ["not json", "[1, 2]", '{"q": "x"}'])
    def test_undecodable_response(self, alice, response):
        store = FakeStore(response=response)
        with pytest.raises(QueryError) as exc_info:
            execute_query(store.new_txn(), io.StringIO(), alice, {})

        assert exc_info.value.message == MSG_BAD_RESPONSE
        assert exc_info.value.query == ALICE_QUERY


class TestFindDecodedUID:
    """Test the find-or-create decision."""

    def test_empty_decode(self):
        assert find_decoded_uid({}) == ""

    def test_empty_blocks(self):
        assert find_decoded_uid({"q": [], "r": []}) == ""

    def test_single_match(self):
        assert find_decoded_uid({"q": [QueryRecord(uid="0x1")]}) == "0x1"

    def test_too_many_matches(self):
        decoded = {"a": [QueryRecord(uid=""), QueryRecord(uid="")]}
        with pytest.raises(AmbiguousMatchError) as exc_info:
            find_decoded_uid(decoded)

        assert exc_info.value == AmbiguousMatchError(
            function="find_decoded_uid", message=MSG_TOO_MANY_RESPONSES
        )

    def test_matches_counted_across_blocks(self):
        decoded = {"a": [QueryRecord(uid="0x1")], "b": [QueryRecord(uid="0x2")]}
        with pytest.raises(AmbiguousMatchError):
            find_decoded_uid(decoded)

    def test_nil_uid(self):
        with pytest.raises(MalformedMatchError) as exc_info:
            find_decoded_uid({"a": [QueryRecord()]})

        assert exc_info.value.message == MSG_NIL_UID
        assert isinstance(exc_info.value, QueryError)


class TestQueryUID:
    """Test the composed lookup."""

    def test_existing(self, alice):
        store = FakeStore(response='{"q": [{"uid": "0x1"}]}')
        assert query_uid(store.new_txn(), io.StringIO(), alice) == "0x1"

    def test_new(self, alice):
        assert query_uid(FakeStore().new_txn(), io.StringIO(), alice) == ""

    def test_node_without_unique_is_new(self):
        store = FakeStore(response='{"q": [{"uid": "0x1"}]}')
        assert query_uid(store.new_txn(), io.StringIO(), DupleNode()) == ""
        assert store.queries == []

    def test_builder_error_propagates(self, alice):
        with pytest.raises(OSError):
            query_uid(FakeStore().new_txn(), FailingBuilder(fail_on=1), alice)

    def test_ambiguous_propagates(self, alice):
        store = FakeStore(response=json.dumps({"q": [{"uid": "0x1"}, {"uid": "0x2"}]}))
        with pytest.raises(AmbiguousMatchError):
            query_uid(store.new_txn(), io.StringIO(), alice)

    def test_uid_value_as_literal(self):
        """Test that a UID used as a unique value is written as its value."""
        node = DupleNode("x").add_duples(Duple("owner", UID("0x5"), is_unique=True))
        builder = io.StringIO()
        create_query(builder, node)
        assert 'eq(<owner>, "0x5")' in builder.getvalue()
