"""
Entity model for the upsert pipeline.

Provides:
- Duple: one predicate/value attribute of an entity, with a uniqueness flag
  and a type tag
- DupleNode: the full set of duples describing one entity
- UID: a store-assigned identifier tagged as new or pre-existing
- DataType: type tags and their wire annotations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional


class DataType(str, Enum):
    """Type tag carried by a Duple so the store keeps the scalar type."""
    DEFAULT = "default"    # Untyped literal
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    DATETIME = "datetime"
    UID = "uid"            # Edge to another entity

    @property
    def annotation(self) -> Optional[str]:
        """Wire annotation written after a typed literal (None if untyped)."""
        return _ANNOTATIONS.get(self)

    @classmethod
    def infer(cls, value: Any) -> "DataType":
        """Pick a type tag for a Python value."""
        if value is None:
            return cls.DEFAULT
        # bool is a subclass of int
        if isinstance(value, bool):
            return cls.BOOL
        if isinstance(value, int):
            return cls.INT
        if isinstance(value, float):
            return cls.FLOAT
        if isinstance(value, (datetime, date)):
            return cls.DATETIME
        if isinstance(value, UID):
            return cls.UID
        return cls.STRING


_ANNOTATIONS = {
    DataType.STRING: "xs:string",
    DataType.INT: "xs:int",
    DataType.FLOAT: "xs:float",
    DataType.BOOL: "xs:boolean",
    DataType.DATETIME: "xs:dateTime",
}


@dataclass(frozen=True)
class UID:
    """
    Identifier assigned by the store to a node.

    ``is_new`` tells a freshly created node apart from one that matched
    an existing record.
    """
    value: str
    is_new: bool = False

    def __str__(self) -> str:
        return self.value


@dataclass
class Duple:
    """
    One attribute of an entity.

    Attributes:
        predicate: Attribute key
        object: Attribute value (a UID for edges to other entities)
        is_unique: Part of the identity key used for find-or-create
        data_type: Type tag; inferred from ``object`` when not given
    """
    predicate: str
    object: Any
    is_unique: bool = False
    data_type: Optional[DataType] = None

    def __post_init__(self):
        if self.data_type is None:
            self.data_type = DataType.infer(self.object)
        elif not isinstance(self.data_type, DataType):
            self.data_type = DataType(self.data_type)


@dataclass
class DupleNode:
    """
    A single entity to be written.

    ``identifier`` is a caller-chosen correlation key used for cache
    lookups within one batch, not a store identifier.

    Usage:
        node = DupleNode("alice").add_duples(
            Duple("username", "alice", is_unique=True),
            Duple("age", 30),
        )
    """
    identifier: str = ""
    duples: list[Duple] = field(default_factory=list)

    def unique(self) -> list[Duple]:
        """Return the duples marked as unique, in node order."""
        return [d for d in self.duples if d.is_unique]

    def find(self, predicate: str) -> Optional[Duple]:
        """Return the live duple for ``predicate`` or None."""
        for duple in self.duples:
            if duple.predicate == predicate:
                return duple
        return None

    def set_or_add(self, duple: Duple) -> "DupleNode":
        """
        Overwrite the duple with the same predicate, or append it.

        Calling this twice with the same predicate never adds a second duple.
        """
        existing = self.find(duple.predicate)
        if existing is None:
            return self.add_duples(duple)

        existing.object = duple.object
        existing.is_unique = duple.is_unique
        existing.data_type = duple.data_type
        return self

    def add_duples(self, *duples: Duple) -> "DupleNode":
        """Append duples without checking for existing predicates."""
        self.duples.extend(duples)
        return self

    @classmethod
    def from_mapping(
        cls,
        identifier: str,
        mapping: Mapping[str, Any],
        unique: Iterable[str] = (),
    ) -> "DupleNode":
        """
        Build a node from a plain mapping of predicate to value.

        Args:
            identifier: Correlation key for the node
            mapping: Predicate -> value
            unique: Predicates that form the identity key
        """
        unique_set = set(unique)
        node = cls(identifier=identifier)
        for predicate, value in mapping.items():
            node.set_or_add(Duple(predicate, value, is_unique=predicate in unique_set))
        return node

    def __len__(self) -> int:
        return len(self.duples)
