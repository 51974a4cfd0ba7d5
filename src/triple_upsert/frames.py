"""
Polars helpers for tabular input and batch reports.

Each row of a DataFrame becomes one DupleNode; column dtypes pick the
type tag so ints stay ints and timestamps stay timestamps in the store.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Mapping, Optional, Sequence

import polars as pl

from triple_upsert.models import DataType, Duple, DupleNode
from triple_upsert.pool import BatchReport


def dtype_to_data_type(dtype: pl.DataType) -> DataType:
    """Map a polars dtype onto a type tag (strings for anything unknown)."""
    if dtype.is_integer():
        return DataType.INT
    if dtype.is_float():
        return DataType.FLOAT
    if dtype == pl.Boolean:
        return DataType.BOOL
    if dtype == pl.Date or dtype == pl.Datetime:
        return DataType.DATETIME
    return DataType.STRING


def iter_nodes_from_frame(
    df: pl.DataFrame,
    identifier_column: str,
    unique: Iterable[str] = (),
    columns: Optional[Sequence[str]] = None,
    types: Optional[Mapping[str, DataType]] = None,
) -> Iterator[DupleNode]:
    """
    Yield one DupleNode per row.

    Args:
        df: Source rows
        identifier_column: Column whose value becomes the node identifier
        unique: Columns that form the identity key
        columns: Columns to write as predicates (default: all)
        types: Per-column type tag overrides

    Null cells are skipped.
    """
    if identifier_column not in df.columns:
        raise KeyError(f"Column '{identifier_column}' not found in data")

    columns = list(columns) if columns is not None else list(df.columns)
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"Columns not found in data: {missing}")

    unique_set = set(unique)
    overrides = dict(types or {})
    column_types = {
        c: overrides.get(c, dtype_to_data_type(df.schema[c])) for c in columns
    }

    for row in df.iter_rows(named=True):
        identifier = row[identifier_column]
        node = DupleNode(identifier="" if identifier is None else str(identifier))
        for column in columns:
            value = row[column]
            if value is None:
                continue
            node.add_duples(Duple(
                column,
                value,
                is_unique=column in unique_set,
                data_type=column_types[column],
            ))
        yield node


def nodes_from_frame(
    df: pl.DataFrame,
    identifier_column: str,
    unique: Iterable[str] = (),
    columns: Optional[Sequence[str]] = None,
    types: Optional[Mapping[str, DataType]] = None,
) -> list[DupleNode]:
    """List form of iter_nodes_from_frame."""
    return list(iter_nodes_from_frame(df, identifier_column, unique, columns, types))


def report_to_frame(report: BatchReport) -> pl.DataFrame:
    """One row per outcome, in input order."""
    schema = {
        "index": pl.Int64,
        "identifier": pl.Utf8,
        "status": pl.Utf8,
        "uid": pl.Utf8,
        "is_new": pl.Boolean,
        "error": pl.Utf8,
        "attempts": pl.Int64,
    }
    return pl.DataFrame([o.to_dict() for o in report.outcomes], schema=schema)
