"""
Bulk persistence of BatchRecords.

This module provides:
- One insert-or-update-on-conflict statement per model per call
- Parent/child imports: parent keys are read back, children upserted with the
  foreign key backfilled, stale children of the same parents deleted
- One bulk delete for a list of keys

Transient contention raised by the driver becomes PersistenceConflict and is
left for DeadlockRetry to handle around the whole transaction.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, delete, insert, or_
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConfigurationError, PersistenceConflict, is_conflict_error
from ..database.models import utc_now
from ..monitoring.middleware import time_database_operation
from .batch_record import BatchRecordList, relationship_of, table_of

logger = logging.getLogger(__name__)

TIMESTAMP_COLUMNS = ("created_at", "updated_at")

ColumnProc = Callable[[Any], Optional[List[str]]]


def default_bulk_import_id() -> str:
    return str(uuid.uuid4())


def key_predicate(table, columns: Sequence[str], keys: Sequence[Sequence[Any]]):
    """
    OR of exact key matches.

    Rendered as a single IN when the key is one column, to stay clear of
    expression depth limits on long batches.
    """
    if len(columns) == 1:
        return table.c[columns[0]].in_([key[0] for key in keys])
    return or_(*[
        and_(*[table.c[column] == value for column, value in zip(columns, key)])
        for key in keys
    ])


async def _execute(session: AsyncSession, statement, params=None):
    try:
        if params is None:
            return await session.execute(statement)
        return await session.execute(statement, params)
    except DBAPIError as e:
        if is_conflict_error(e):
            raise PersistenceConflict(str(e.orig)) from e
        raise


class MassUpdater:
    """Writes a BatchRecordList with as few statements as possible."""

    def __init__(
        self,
        model,
        key_col_proc: Optional[ColumnProc] = None,
        col_proc: Optional[ColumnProc] = None,
        replace_associations: bool = True,
        bulk_import_id_generator: Callable[[], str] = default_bulk_import_id,
        bulk_import_id_column: str = "bulk_import_id",
        metrics=None,
    ):
        self.model = model
        self.key_col_proc = key_col_proc
        self.col_proc = col_proc
        self.replace_associations = replace_associations
        self.bulk_import_id_generator = bulk_import_id_generator
        self.bulk_import_id_column = bulk_import_id_column
        self.metrics = metrics

    def key_columns(self, model) -> List[str]:
        if self.key_col_proc is not None:
            columns = self.key_col_proc(model)
            if columns is not None:
                return list(columns)
        return [column.name for column in table_of(model).primary_key.columns]

    def columns(self, model) -> List[str]:
        if self.col_proc is not None:
            columns = self.col_proc(model)
            if columns is not None:
                return list(columns)
        return [
            column.name for column in table_of(model).columns
            if column.name not in TIMESTAMP_COLUMNS
        ]

    async def mass_update(self, session: AsyncSession, record_list: BatchRecordList) -> None:
        """Upsert every record, then its children."""
        for group in record_list.group_by_model().values():
            await self.save_records_to_database(session, group)
            if group.associations:
                await self.import_associations(session, group)

    def _rows(self, model, record_list: BatchRecordList) -> List[Dict[str, Any]]:
        allowed = self.columns(model)
        present = set()
        for attributes in record_list.records:
            present.update(attributes)
        columns = [column for column in allowed if column in present]

        table = table_of(model)
        now = utc_now()
        rows = []
        for attributes in record_list.records:
            row = {column: attributes.get(column) for column in columns}
            for stamp in TIMESTAMP_COLUMNS:
                if stamp in table.columns:
                    row[stamp] = now
            rows.append(row)
        return rows

    @staticmethod
    def _generated_key(table, key_columns: List[str]) -> bool:
        auto = table.autoincrement_column
        return auto is not None and list(key_columns) == [auto.name]

    def _upsert_statement(self, session: AsyncSession, model, row_columns: List[str]):
        table = table_of(model)
        key_columns = self.key_columns(model)

        if not key_columns:
            return insert(table)
        missing = [column for column in key_columns if column not in row_columns]
        if missing:
            # New rows of a table keyed by a generated id
            if self._generated_key(table, key_columns):
                return insert(table)
            raise ConfigurationError(
                f"Cannot upsert into {table.name}: key columns {missing} are not in the records"
            )

        update_columns = [
            column for column in row_columns
            if column not in key_columns and column != "created_at"
        ]
        dialect = session.get_bind().dialect.name

        if dialect == "mysql":
            stmt = mysql.insert(table)
            if not update_columns:
                return stmt.prefix_with("IGNORE")
            return stmt.on_duplicate_key_update(
                {column: stmt.inserted[column] for column in update_columns}
            )

        if dialect == "postgresql":
            stmt = postgresql.insert(table)
        elif dialect == "sqlite":
            stmt = sqlite.insert(table)
        else:
            raise ConfigurationError(f"Bulk upsert is not supported on {dialect}")

        if not update_columns:
            return stmt.on_conflict_do_nothing(index_elements=key_columns)
        return stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={column: stmt.excluded[column] for column in update_columns},
        )

    async def save_records_to_database(
        self,
        session: AsyncSession,
        record_list: BatchRecordList,
    ) -> None:
        """One bulk upsert for a list of records of the same model."""
        if not record_list:
            return

        model = record_list.model
        rows = self._rows(model, record_list)
        statement = self._upsert_statement(session, model, list(rows[0]))
        table_name = table_of(model).name

        async with time_database_operation("upsert", table_name, len(rows), self.metrics):
            await _execute(session, statement, rows)

    async def import_associations(self, session: AsyncSession, record_list: BatchRecordList) -> None:
        """
        Upsert the children of already saved parents.

        Parent primary keys are read back first so the children's foreign
        keys can be filled in. With replace_associations, children of these
        parents that were not part of this import are deleted.
        """
        await record_list.fill_primary_keys(session)

        for assoc_name in record_list.associations:
            rel = relationship_of(record_list.model, assoc_name)
            child_model = rel.mapper.class_
            child_table = table_of(child_model)

            column = self.bulk_import_id_column
            if column not in child_table.columns:
                if self.replace_associations:
                    raise ConfigurationError(
                        f"{child_table.name} needs column {column} to replace associations"
                    )
                column = None

            children = record_list.sub_records(
                assoc_name,
                bulk_import_column=column,
                bulk_import_id_generator=self.bulk_import_id_generator if column else None,
            )
            if children:
                await self.save_records_to_database(session, children)
                if children.associations:
                    await self.import_associations(session, children)

            if self.replace_associations:
                await self.delete_old_records(session, record_list, assoc_name, children)

    async def delete_old_records(
        self,
        session: AsyncSession,
        parents: BatchRecordList,
        assoc_name: str,
        children: BatchRecordList,
    ) -> None:
        """Delete children of these parents whose import id was not issued by this call."""
        rel = relationship_of(parents.model, assoc_name)
        pairs = list(rel.local_remote_pairs)
        child_table = table_of(rel.mapper.class_)
        # Parents that did not mention the relationship keep their children.
        parent_keys = [
            [record.attributes.get(local.name) for local, _ in pairs]
            for record in parents
            if record.associations.get(assoc_name) is not None
        ]
        parent_keys = [key for key in parent_keys if all(v is not None for v in key)]
        if not parent_keys:
            return

        column = child_table.c[self.bulk_import_id_column]
        issued = [child.bulk_import_id for child in children]
        predicate = key_predicate(child_table, [remote.name for _, remote in pairs], parent_keys)
        if issued:
            predicate = and_(predicate, or_(column.is_(None), column.notin_(issued)))

        async with time_database_operation("delete_old", child_table.name, len(parent_keys), self.metrics):
            await _execute(session, delete(child_table).where(predicate))

    async def delete_records(
        self,
        session: AsyncSession,
        keys: Sequence[Dict[str, Any]],
    ) -> None:
        """One bulk delete of the rows matching any of the given key maps."""
        if not keys:
            return

        table = table_of(self.model)
        columns = list(keys[0])
        if any(list(key) != columns for key in keys):
            raise ValueError("All delete keys must use the same columns")

        values = [[key[column] for column in columns] for key in keys]
        async with time_database_operation("delete", table.name, len(values), self.metrics):
            await _execute(session, delete(table).where(key_predicate(table, columns, values)))
