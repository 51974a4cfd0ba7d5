"""
Lookup query building and UID resolution.

Provides:
- create_query: turn a node's unique duples into a lookup query
- execute_query: run the lookup through a transaction and decode it
- find_decoded_uid: the find-or-create decision over a decoded response
- query_uid: both stages composed

A node without unique duples yields EMPTY_QUERY and is never looked up;
it is always treated as new.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from triple_upsert.literals import format_predicate, quote_literal
from triple_upsert.models import DupleNode
from triple_upsert.storage.base import GraphTransaction

logger = logging.getLogger(__name__)

# Reserved marker for "nothing to look up"
EMPTY_QUERY = ""

QUERY_BLOCK = "q"

MSG_BUILDER_WRITING = "failed writing predicate {predicate!r} with value {value!r}"
MSG_TOO_MANY_RESPONSES = "more than one node matched the unique predicates"
MSG_NIL_UID = "matched node has no uid"
MSG_BAD_RESPONSE = "could not decode query response"


class QueryBuilder(Protocol):
    """Writer-like sink the query is built into (io.StringIO fits)."""

    def write(self, text: str) -> Any:
        ...

    def getvalue(self) -> str:
        ...


class QueryError(Exception):
    """
    Failure while building, running or decoding a lookup query.

    Attributes:
        function: Name of the function that raised
        message: What went wrong
        query: Query text that was sent, if any
        predicate: Predicate being written when the sink failed
        value: Value being written when the sink failed
        ext_err: Underlying exception
    """

    def __init__(
        self,
        function: str = "",
        message: str = "",
        query: Optional[str] = None,
        predicate: Optional[str] = None,
        value: Any = None,
        ext_err: Optional[BaseException] = None,
    ):
        self.function = function
        self.message = message
        self.query = query
        self.predicate = predicate
        self.value = value
        self.ext_err = ext_err
        super().__init__(self._describe())

    def _describe(self) -> str:
        parts = [f"{self.function}:" if self.function else "query error:"]
        if self.message:
            parts.append(self.message)
        if self.ext_err is not None:
            parts.append(f"({self.ext_err!r})")
        if self.query:
            parts.append(f"query={self.query!r}")
        return " ".join(parts)

    def _key(self) -> tuple:
        return (
            type(self),
            self.function,
            self.message,
            self.query,
            self.predicate,
            repr(self.value),
            repr(self.ext_err),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueryError):
            return NotImplemented
        return self._key() == other._key()

    __hash__ = Exception.__hash__


class AmbiguousMatchError(QueryError):
    """More than one stored node matched a node's unique predicates."""
    pass


class MalformedMatchError(QueryError):
    """A matched node came back without a uid."""
    pass


# =============================================================================
# Decoded response
# =============================================================================

class QueryRecord(BaseModel):
    """One matched record; only the uid is read."""
    model_config = ConfigDict(extra="ignore")

    uid: Optional[str] = Field(default=None, validation_alias=AliasChoices("uid", "UID"))


# Block name -> matched records
QueryDecode = dict[str, list[QueryRecord]]

_decode_adapter = TypeAdapter(QueryDecode)


def decode_response(response: Any) -> QueryDecode:
    """
    Parse a lookup response into a QueryDecode.

    Accepts JSON text or bytes, a mapping, or a client response object
    exposing the JSON payload as ``.json``.

    Raises:
        ValidationError: If the payload is not a mapping of record lists.
    """
    payload = getattr(response, "json", response)
    if isinstance(payload, (str, bytes, bytearray)):
        return _decode_adapter.validate_json(payload)
    return _decode_adapter.validate_python(payload)


# =============================================================================
# Query building
# =============================================================================

def create_query(builder: QueryBuilder, node: DupleNode) -> None:
    """
    Write the lookup query for ``node`` into ``builder``.

    The query has one block whose filter is the AND of an equality test
    per unique duple. Unique duples with a None object are never written
    by the encoder, so they are left out here too. Writes nothing when no
    unique duple remains.

    Raises:
        QueryError: If the sink fails while writing a predicate/value pair.
        Exception: Whatever the sink raised for the surrounding text.
    """
    unique = [d for d in node.unique() if d.object is not None]
    if not unique:
        return

    builder.write(f"{{\n  {QUERY_BLOCK}(func: ")

    for i, duple in enumerate(unique):
        if i == 0:
            prefix = ""
        elif i == 1:
            prefix = ") @filter("
        else:
            prefix = " AND "
        term = f"{prefix}eq({format_predicate(duple.predicate)}, {quote_literal(duple.object)})"
        try:
            builder.write(term)
        except Exception as err:
            raise QueryError(
                function="create_query",
                message=MSG_BUILDER_WRITING.format(predicate=duple.predicate, value=duple.object),
                predicate=duple.predicate,
                value=duple.object,
                ext_err=err,
            ) from err

    builder.write(") {\n    uid\n  }\n}")


# =============================================================================
# Resolution
# =============================================================================

def execute_query(
    txn: GraphTransaction,
    builder: QueryBuilder,
    node: DupleNode,
    decoded: QueryDecode,
) -> None:
    """
    Build and run the lookup for ``node``, filling ``decoded`` in place.

    Skips the store entirely when the query is EMPTY_QUERY.

    Raises:
        QueryError: On a transaction failure or an undecodable response;
            carries the literal query text.
    """
    create_query(builder, node)

    text = builder.getvalue()
    if text == EMPTY_QUERY:
        return

    try:
        response = txn.query(text)
    except Exception as err:
        raise QueryError(function="execute_query", query=text, ext_err=err) from err

    try:
        parsed = decode_response(response)
    except ValidationError as err:
        raise QueryError(
            function="execute_query",
            message=MSG_BAD_RESPONSE,
            query=text,
            ext_err=err,
        ) from err

    decoded.clear()
    decoded.update(parsed)


def find_decoded_uid(decoded: QueryDecode) -> str:
    """
    Decide existing-vs-new from a decoded response.

    Returns:
        The matched uid, or "" when nothing matched.

    Raises:
        AmbiguousMatchError: Two or more records across all blocks.
        MalformedMatchError: The single match has no uid.
    """
    records = [record for block in decoded.values() for record in block]

    if not records:
        return ""

    if len(records) > 1:
        raise AmbiguousMatchError(function="find_decoded_uid", message=MSG_TOO_MANY_RESPONSES)

    uid = records[0].uid
    if not uid:
        raise MalformedMatchError(function="find_decoded_uid", message=MSG_NIL_UID)

    return uid


def query_uid(txn: GraphTransaction, builder: QueryBuilder, node: DupleNode) -> str:
    """
    Look up the uid of the stored node matching ``node``.

    Returns:
        The existing uid, or "" when the node is new.
    """
    decoded: QueryDecode = {}
    execute_query(txn, builder, node, decoded)
    uid = find_decoded_uid(decoded)
    logger.debug(f"Lookup for {node.identifier!r} resolved to {uid or 'new node'}")
    return uid
