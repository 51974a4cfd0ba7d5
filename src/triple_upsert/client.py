"""
Client facade over the upsert pipeline.

Wraps a transaction factory and a config, and accepts the operation
shapes callers usually have at hand: one node, many nodes, or plain maps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any, Iterable, Mapping, Optional

from triple_upsert.config import UpsertConfig
from triple_upsert.models import UID, DataType, Duple, DupleNode
from triple_upsert.pool import BatchReport, UpsertBatch
from triple_upsert.progress import ProgressTracker
from triple_upsert.storage.base import TransactionFactory


@dataclass
class Operation:
    """
    What to write. Exactly one field must be set.

    Map operations use the client's ``predicate_key`` as the unique
    predicate, and its value as the node identifier.
    """
    set_single_duple_node: Optional[DupleNode] = None
    set_multi_duple_node: Optional[list[DupleNode]] = None
    set_string_map: Optional[Mapping[str, str]] = None
    set_dynamic_map: Optional[Mapping[str, Any]] = None

    def selected(self) -> str:
        """Name of the one field that is set."""
        chosen = [f.name for f in fields(self) if getattr(self, f.name) is not None]
        if len(chosen) != 1:
            raise ValueError(
                f"Operation must set exactly one field, got {chosen or 'none'}"
            )
        return chosen[0]


class Client:
    """
    Upsert client bound to one store.

    Example:
        client = Client(store.new_txn, UpsertConfig(predicate_key="username"))
        uids = client.mutate(Operation(set_string_map={"username": "alice"}))
        uids["alice"].is_new  # True on first write
    """

    def __init__(
        self,
        txn_factory: TransactionFactory,
        config: Optional[UpsertConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or UpsertConfig()
        self.config.validate_or_raise()
        self._txn_factory = txn_factory
        self._logger = logger or logging.getLogger(__name__)

    def upsert_many(
        self,
        nodes: Iterable[DupleNode],
        seed: Optional[Mapping[str, UID]] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> BatchReport:
        """Run one batch over ``nodes``; failures are left in the report."""
        batch = UpsertBatch(
            self._txn_factory,
            self.config,
            logger=self._logger,
            progress=progress,
            seed=seed,
        )
        return batch.run(nodes)

    def upsert(self, node: DupleNode) -> UID:
        """
        Find-or-create a single node.

        Raises:
            Exception: The error that failed the node.
        """
        report = self.upsert_many([node])
        if report.first_error is not None:
            raise report.first_error
        return report.outcomes[0].uid

    def node_from_map(self, mapping: Mapping[str, Any], string_values: bool = False) -> DupleNode:
        """Build a node from a map keyed on ``config.predicate_key``."""
        key = self.config.predicate_key
        identifier = mapping.get(key, "") if key else ""
        node = DupleNode(identifier="" if identifier is None else str(identifier))
        for predicate, value in mapping.items():
            data_type = DataType.STRING if string_values else None
            node.set_or_add(Duple(predicate, value, is_unique=predicate == key, data_type=data_type))
        return node

    def mutate(
        self,
        operation: Operation,
        seed: Optional[Mapping[str, UID]] = None,
    ) -> dict[str, UID]:
        """
        Execute an operation.

        Returns:
            Identifier -> UID for everything resolved in the run

        Raises:
            ValueError: The operation does not set exactly one field.
            BatchFailedError: Any node of a multi-node operation failed.
        """
        kind = operation.selected()
        self._logger.debug(f"Executing operation {kind}")

        if kind == "set_single_duple_node":
            node = operation.set_single_duple_node
            return {node.identifier: self.upsert(node)}

        if kind == "set_string_map":
            node = self.node_from_map(operation.set_string_map, string_values=True)
            return {node.identifier: self.upsert(node)}

        if kind == "set_dynamic_map":
            node = self.node_from_map(operation.set_dynamic_map)
            return {node.identifier: self.upsert(node)}

        report = self.upsert_many(operation.set_multi_duple_node, seed=seed)
        report.raise_for_errors()
        return report.uids
