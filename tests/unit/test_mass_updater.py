"""
Unit tests for bulk persistence.

Tests cover:
- Insert-or-update in one statement
- Timestamp columns
- Child imports with foreign key backfill and stale child deletion
- Bulk deletes on single and composite keys
- Translation of driver contention errors
"""

import pytest
from unittest.mock import AsyncMock, Mock

from sqlalchemy.exc import OperationalError

from dbstream.consumer import BatchRecord, BatchRecordList, MassUpdater, default_bulk_import_id
from dbstream.consumer.mass_updater import key_predicate
from dbstream.core import ConfigurationError, PersistenceConflict
from dbstream.monitoring import MockMetrics

from factories import count_rows, fetch_all
from support_models import Detail, Gadget, Part, Sku, Widget


def widget_records(*payloads, column="bulk_import_id"):
    return BatchRecordList([
        BatchRecord(Widget, payload, bulk_import_column=column,
                    bulk_import_id_generator=default_bulk_import_id)
        for payload in payloads
    ])


@pytest.mark.unit
class TestMassUpdaterUpsert:
    """Test cases for MassUpdater.save_records_to_database."""

    async def test_inserts_then_updates(self, database):
        updater = MassUpdater(Widget)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records(
                {"id": 1, "name": "bolt", "quantity": 3},
                {"id": 2, "name": "nut", "quantity": 5},
            ))
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records(
                {"id": 1, "name": "big bolt", "quantity": 4},
            ))

        widgets = await fetch_all(database, Widget, order_by=Widget.id)
        assert [(w.id, w.name, w.quantity) for w in widgets] == [
            (1, "big bolt", 4),
            (2, "nut", 5),
        ]

    async def test_one_statement_per_call(self, database):
        metrics = MockMetrics()
        updater = MassUpdater(Widget, metrics=metrics)
        payloads = [{"id": index, "name": f"w{index}"} for index in range(1, 51)]

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records(*payloads))

        upserts = [h for h in metrics.histograms if "operation:upsert" in h[2]]
        assert len(upserts) == 1
        assert await count_rows(database, Widget) == 50

    async def test_sets_timestamps_and_keeps_created_at(self, database):
        updater = MassUpdater(Widget)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "name": "bolt"}))
        first = (await fetch_all(database, Widget))[0]

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "name": "bolt v2"}))
        second = (await fetch_all(database, Widget))[0]

        assert first.created_at is not None
        assert first.updated_at is not None
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert second.name == "bolt v2"

    async def test_omitted_columns_are_not_overwritten(self, database):
        updater = MassUpdater(Widget)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "name": "bolt", "quantity": 9}))
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "name": "renamed"}))

        widget = (await fetch_all(database, Widget))[0]
        assert widget.name == "renamed"
        assert widget.quantity == 9

    async def test_column_procs_restrict_columns(self, database):
        updater = MassUpdater(Widget, col_proc=lambda model: ["id", "name"])

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "name": "bolt", "quantity": 9}))

        widget = (await fetch_all(database, Widget))[0]
        assert widget.name == "bolt"
        assert widget.quantity is None

    async def test_unknown_attributes_are_ignored(self, database):
        async with database.transaction() as session:
            await MassUpdater(Widget).mass_update(
                session, widget_records({"id": 1, "name": "bolt", "colour": "red"})
            )

        assert await count_rows(database, Widget) == 1

    async def test_natural_key_upsert(self, database):
        updater = MassUpdater(Sku, key_col_proc=lambda model: ["code"])

        for price in (1, 2):
            async with database.transaction() as session:
                await updater.mass_update(session, BatchRecordList([
                    BatchRecord(Sku, {"code": "A1", "price": price}),
                ]))

        skus = await fetch_all(database, Sku)
        assert [(s.id, s.code, s.price) for s in skus] == [(1, "A1", 2)]

    async def test_missing_key_columns_raise(self, database):
        updater = MassUpdater(Sku, key_col_proc=lambda model: ["code"])

        with pytest.raises(ConfigurationError, match="code"):
            async with database.transaction() as session:
                await updater.mass_update(session, BatchRecordList([BatchRecord(Sku, {"price": 1})]))

        assert await count_rows(database, Sku) == 0

    async def test_generated_key_rows_are_inserted(self, database):
        async with database.transaction() as session:
            await MassUpdater(Sku).mass_update(session, BatchRecordList([
                BatchRecord(Sku, {"code": "A1"}),
                BatchRecord(Sku, {"code": "B2"}),
            ]))

        assert await count_rows(database, Sku) == 2


@pytest.mark.unit
class TestMassUpdaterAssociations:
    """Test cases for parent/child imports."""

    async def test_children_get_parent_key(self, database):
        records = widget_records({
            "id": 10,
            "name": "bolt",
            "details": [{"label": "steel"}, {"label": "m8"}],
        })

        async with database.transaction() as session:
            await MassUpdater(Widget).mass_update(session, records)

        details = await fetch_all(database, Detail, order_by=Detail.label)
        assert [(d.widget_id, d.label) for d in details] == [(10, "m8"), (10, "steel")]

    async def test_reimport_replaces_children(self, database):
        updater = MassUpdater(Widget)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records(
                {"id": 1, "details": [{"label": "a"}, {"label": "b"}]},
                {"id": 2, "details": [{"label": "keep"}]},
            ))
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records(
                {"id": 1, "details": [{"label": "c"}]},
            ))

        details = await fetch_all(database, Detail, order_by=Detail.label)
        assert sorted((d.widget_id, d.label) for d in details) == [(1, "c"), (2, "keep")]

    async def test_empty_child_list_removes_children(self, database):
        updater = MassUpdater(Widget)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "details": [{"label": "a"}]}))
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "details": []}))

        assert await count_rows(database, Detail) == 0

    async def test_parent_without_association_keeps_children(self, database):
        updater = MassUpdater(Widget)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "details": [{"label": "a"}]}))
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records(
                {"id": 1, "name": "renamed"},
                {"id": 2, "details": [{"label": "b"}]},
            ))

        details = await fetch_all(database, Detail, order_by=Detail.label)
        assert [(d.widget_id, d.label) for d in details] == [(1, "a"), (2, "b")]

    async def test_without_replace_children_accumulate(self, database):
        updater = MassUpdater(Widget, replace_associations=False)

        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "details": [{"label": "a"}]}))
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1, "details": [{"label": "b"}]}))

        assert await count_rows(database, Detail) == 2

    async def test_parent_without_bulk_import_column(self, database):
        records = BatchRecordList([
            BatchRecord(Gadget, {"id": 1, "parts": [{"label": "x"}]}),
        ])

        with pytest.raises(ConfigurationError):
            async with database.transaction() as session:
                await MassUpdater(Gadget).mass_update(session, records)

        assert await count_rows(database, Part) == 0


@pytest.mark.unit
class TestMassUpdaterDelete:
    """Test cases for MassUpdater.delete_records."""

    async def test_delete_by_primary_key(self, database):
        updater = MassUpdater(Widget)
        async with database.transaction() as session:
            await updater.mass_update(session, widget_records({"id": 1}, {"id": 2}, {"id": 3}))

        async with database.transaction() as session:
            await updater.delete_records(session, [{"id": 1}, {"id": 3}])

        assert [w.id for w in await fetch_all(database, Widget)] == [2]

    async def test_delete_by_composite_key(self, database):
        async with database.transaction() as session:
            await MassUpdater(Widget).mass_update(session, widget_records(
                {"id": 1, "details": [{"label": "a"}, {"label": "b"}]},
                {"id": 2, "details": [{"label": "a"}]},
            ))

        async with database.transaction() as session:
            await MassUpdater(Detail).delete_records(session, [
                {"widget_id": 1, "label": "a"},
                {"widget_id": 2, "label": "a"},
            ])

        details = await fetch_all(database, Detail)
        assert [(d.widget_id, d.label) for d in details] == [(1, "b")]

    async def test_delete_keys_must_share_columns(self, database):
        async with database.transaction() as session:
            with pytest.raises(ValueError):
                await MassUpdater(Detail).delete_records(session, [
                    {"widget_id": 1, "label": "a"},
                    {"id": 4},
                ])

    async def test_empty_delete_is_noop(self, database):
        async with database.transaction() as session:
            await MassUpdater(Widget).delete_records(session, [])


@pytest.mark.unit
class TestKeyPredicate:
    """Test cases for key_predicate rendering."""

    def test_single_column_uses_in(self):
        predicate = key_predicate(Widget.__table__, ["id"], [[1], [2]])

        assert " IN " in str(predicate)

    def test_composite_key_uses_or_of_and(self):
        predicate = key_predicate(Detail.__table__, ["widget_id", "label"], [[1, "a"], [2, "b"]])

        rendered = str(predicate)
        assert " OR " in rendered
        assert " AND " in rendered


@pytest.mark.unit
class TestConflictTranslation:
    """Driver contention errors become PersistenceConflict."""

    async def test_locked_database_raises_conflict(self):
        session = AsyncMock()
        session.get_bind = Mock(return_value=Mock(dialect=Mock()))
        session.get_bind.return_value.dialect.name = "sqlite"
        error = OperationalError("INSERT", {}, Exception("database is locked"))
        session.execute.side_effect = error

        with pytest.raises(PersistenceConflict) as exc_info:
            await MassUpdater(Widget).save_records_to_database(
                session, widget_records({"id": 1})
            )

        assert exc_info.value.__cause__ is error

    async def test_other_driver_errors_propagate(self):
        session = AsyncMock()
        session.get_bind = Mock(return_value=Mock(dialect=Mock()))
        session.get_bind.return_value.dialect.name = "sqlite"
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("no such table"))

        with pytest.raises(OperationalError):
            await MassUpdater(Widget).save_records_to_database(
                session, widget_records({"id": 1})
            )

    async def test_unsupported_dialect(self):
        session = AsyncMock()
        session.get_bind = Mock(return_value=Mock(dialect=Mock()))
        session.get_bind.return_value.dialect.name = "oracle"

        with pytest.raises(ConfigurationError):
            await MassUpdater(Widget).save_records_to_database(
                session, widget_records({"id": 1})
            )
