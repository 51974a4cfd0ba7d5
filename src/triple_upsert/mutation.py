"""
Mutation encoding.

Turns a DupleNode plus its resolved uid (or none, for a new node) into
a set of triples. The payload is written one triple per line:

    <0x1> <name> "Alice"^^<xs:string> .
    _:alice <age> "30"^^<xs:int> .
    _:alice <friend> <0x2> .

The encoder never talks to the store; callers apply the result through
a transaction.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from triple_upsert.literals import escape_string, format_predicate, lexical_form
from triple_upsert.models import UID, DataType, Duple, DupleNode

BLANK_PREFIX = "_:"
DEFAULT_BLANK_LABEL = "node"

_LABEL_RE = re.compile(r"[^A-Za-z0-9_.\-]")


@dataclass(frozen=True)
class MutationTriple:
    """One encoded triple; every term is already in wire form."""
    subject: str
    predicate: str
    object: str

    def to_line(self) -> str:
        return f"{self.subject} {self.predicate} {self.object} ."


@dataclass
class Mutation:
    """
    A set of triples for one node.

    ``blank_label`` is set when the subject is a placeholder the store
    binds to a fresh uid on commit; the assigned uid comes back under
    that label.
    """
    subject: str
    triples: list[MutationTriple] = field(default_factory=list)
    blank_label: Optional[str] = None

    @property
    def is_create(self) -> bool:
        return self.blank_label is not None

    def to_nquads(self) -> str:
        """Serialize as one line per triple."""
        return "\n".join(t.to_line() for t in self.triples)

    def __len__(self) -> int:
        return len(self.triples)


def blank_label(identifier: str) -> str:
    """Derive a placeholder label from a node identifier."""
    label = _LABEL_RE.sub("_", identifier)
    return label or DEFAULT_BLANK_LABEL


def format_uid_ref(value: Any) -> str:
    """Reference to an existing node: <0x1>."""
    uid = value.value if isinstance(value, UID) else str(value)
    if not uid:
        raise ValueError("Empty uid reference")
    return f"<{uid}>"


def format_object(duple: Duple) -> str:
    """Wire form of a duple's object."""
    if duple.data_type == DataType.UID:
        return format_uid_ref(duple.object)

    literal = f'"{escape_string(lexical_form(duple.object))}"'
    annotation = duple.data_type.annotation
    if annotation:
        return f"{literal}^^<{annotation}>"
    return literal


def encode_mutation(node: DupleNode, uid: Optional[UID] = None) -> Mutation:
    """
    Encode ``node`` as triples.

    Args:
        node: The entity to write
        uid: Resolved uid of the matching stored node, or None for a new node

    Returns:
        Mutation with one triple per duple (duples with a None object are
        skipped)
    """
    if uid is not None and uid.value:
        subject = format_uid_ref(uid)
        label = None
    else:
        label = blank_label(node.identifier)
        subject = f"{BLANK_PREFIX}{label}"

    mutation = Mutation(subject=subject, blank_label=label)
    for duple in node.duples:
        if duple.object is None:
            continue
        mutation.triples.append(MutationTriple(
            subject=subject,
            predicate=format_predicate(duple.predicate),
            object=format_object(duple),
        ))

    return mutation
