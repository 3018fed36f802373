"""
Rows to upsert, as an explicit parent/child tree.

A BatchRecord holds the column values of one row plus the attribute maps of
its children, keyed by relationship name. Child foreign keys are filled in
from the parent only after the parent upsert has resolved its primary key.
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import inspect as sa_inspect, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import RelationshipDirection

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

IdGenerator = Callable[[], str]


def table_of(model):
    return model.__table__


def relationship_of(model, name: str):
    relationships = sa_inspect(model).relationships
    if name not in relationships:
        raise ConfigurationError(f"{model.__name__} has no relationship '{name}'")
    rel = relationships[name]
    if rel.direction != RelationshipDirection.ONETOMANY:
        raise ConfigurationError(
            f"{model.__name__}.{name}: only one-to-many relationships can be imported"
        )
    return rel


class BatchRecord:
    """One row to upsert, with attached child attribute maps."""

    def __init__(
        self,
        model,
        attributes: Dict[str, Any],
        bulk_import_column: Optional[str] = None,
        bulk_import_id_generator: Optional[IdGenerator] = None,
    ):
        self.model = model
        table = table_of(model)
        relationships = sa_inspect(model).relationships.keys()

        self.associations: Dict[str, Any] = {
            key: value for key, value in attributes.items() if key in relationships
        }
        self.attributes: Dict[str, Any] = {
            key: value for key, value in attributes.items() if key in table.columns
        }

        self.bulk_import_column = bulk_import_column
        self.bulk_import_id: Optional[str] = None
        if bulk_import_column and bulk_import_id_generator:
            self.bulk_import_id = bulk_import_id_generator()
            self.attributes[bulk_import_column] = self.bulk_import_id

    def sub_records(
        self,
        assoc_name: str,
        bulk_import_column: Optional[str] = None,
        bulk_import_id_generator: Optional[IdGenerator] = None,
    ) -> List["BatchRecord"]:
        """Child records of one relationship with the parent key backfilled."""
        rel = relationship_of(self.model, assoc_name)
        children = self.associations.get(assoc_name)
        if children is None:
            return []
        if isinstance(children, dict):
            children = [children]

        records = []
        for child in children:
            child_attrs = dict(child)
            for local, remote in rel.local_remote_pairs:
                child_attrs[remote.name] = self.attributes.get(local.name)
            records.append(BatchRecord(
                rel.mapper.class_,
                child_attrs,
                bulk_import_column=bulk_import_column,
                bulk_import_id_generator=bulk_import_id_generator,
            ))
        return records

    def __repr__(self) -> str:
        return f"<BatchRecord({self.model.__name__}, {self.attributes})>"


class BatchRecordList:
    """Ordered BatchRecords, usually of one model."""

    def __init__(self, batch_records: Optional[List[BatchRecord]] = None):
        self.batch_records: List[BatchRecord] = list(batch_records or [])

    def __len__(self) -> int:
        return len(self.batch_records)

    def __iter__(self) -> Iterator[BatchRecord]:
        return iter(self.batch_records)

    def __bool__(self) -> bool:
        return bool(self.batch_records)

    @property
    def model(self):
        return self.batch_records[0].model if self.batch_records else None

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [record.attributes for record in self.batch_records]

    @property
    def associations(self) -> List[str]:
        """Relationship names given by any record, in first-seen order."""
        names: Dict[str, None] = {}
        for record in self.batch_records:
            for name, value in record.associations.items():
                if value is not None:
                    names.setdefault(name, None)
        return list(names)

    def filter(self, predicate: Callable[[BatchRecord], bool]) -> "BatchRecordList":
        """Drop the records the predicate rejects, in place."""
        self.batch_records = [r for r in self.batch_records if predicate(r)]
        return self

    def group_by_model(self) -> Dict[Any, "BatchRecordList"]:
        groups: Dict[Any, BatchRecordList] = {}
        for record in self.batch_records:
            groups.setdefault(record.model, BatchRecordList()).batch_records.append(record)
        return groups

    def sub_records(
        self,
        assoc_name: str,
        bulk_import_column: Optional[str] = None,
        bulk_import_id_generator: Optional[IdGenerator] = None,
    ) -> "BatchRecordList":
        children = []
        for record in self.batch_records:
            children.extend(record.sub_records(
                assoc_name, bulk_import_column, bulk_import_id_generator
            ))
        return BatchRecordList(children)

    async def fill_primary_keys(self, session: AsyncSession) -> None:
        """
        Read back primary keys of the upserted rows via their bulk-import ids.
        """
        if not self.batch_records:
            return

        table = table_of(self.model)
        column = self.batch_records[0].bulk_import_column
        if not column or column not in table.columns:
            raise ConfigurationError(
                f"{table.name} needs a bulk import id column to import associations"
            )

        pk_columns = list(table.primary_key.columns)
        ids = [r.bulk_import_id for r in self.batch_records if r.bulk_import_id]
        result = await session.execute(
            select(table.c[column], *pk_columns).where(table.c[column].in_(ids))
        )
        key_map = {row[0]: row[1:] for row in result.all()}

        for record in self.batch_records:
            keys = key_map.get(record.bulk_import_id)
            if keys is None:
                logger.warning(
                    f"No {table.name} row found for bulk import id {record.bulk_import_id}"
                )
                continue
            for pk_column, value in zip(pk_columns, keys):
                record.attributes[pk_column.name] = value
