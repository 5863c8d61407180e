"""
Tests for audit log querying: filter compilation, pagination and data sources.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from packages.audit_query import (
    AuditDataSource,
    AuditDataSourceFactory,
    AuditReader,
    DataFormatError,
    FilterCompiler,
    PaginatedResult,
    clamp_page,
    namespace_to_param,
    normalize_sort,
    parse_bound,
    run_pipeline,
)
from packages.audit_store import AuditDatabase, AuditRecord, ChangeKind, SortDirection
from packages.correlation import CorrelationEngine

ORDER = "App\\Entity\\Order"
TAG = "App\\Entity\\Tag"
BASE = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_record(record_id: int, **overrides) -> AuditRecord:
    data = {
        "id": record_id,
        "entity_type": ORDER,
        "subject_id": str(record_id),
        "change_kind": ChangeKind.UPDATED,
        "occurred_at": BASE + timedelta(minutes=record_id),
    }
    data.update(overrides)
    return AuditRecord(**data)


@pytest.fixture
def database(tmp_path):
    """Create temporary audit database."""
    return AuditDatabase(tmp_path / "test_audit.db")


@pytest.fixture
def order_log(database):
    """Order log with five human updates."""
    log = database.log(ORDER)
    for i in range(5):
        log.append(
            str(i + 1),
            ChangeKind.UPDATED,
            {"status": {"old": "new", "new": f"state-{i + 1}"}},
            actor_id="42",
            actor_label="ops@example.com",
            occurred_at=BASE + timedelta(minutes=i),
        )
    return log


@pytest.fixture
def data_source(order_log) -> AuditDataSource:
    return AuditDataSource(order_log, FilterCompiler())


class TestPipeline:
    """Tests for the in-memory pagination pipeline."""

    def test_clamp_page(self) -> None:
        assert clamp_page(5, 10, 2) == 3
        assert clamp_page(5, 0, 2) == 1
        assert clamp_page(5, -3, 2) == 1
        assert clamp_page(0, 4, 2) == 1

    def test_pages_partition_results(self) -> None:
        records = [make_record(i) for i in range(1, 8)]

        seen = []
        for page in range(1, 4):
            result = run_pipeline(records, [], page, 3)
            assert result.total_items == 7
            seen.extend(record.id for record in result.items)

        assert seen == list(range(1, 8))

    def test_predicates_filter_before_count(self) -> None:
        records = [make_record(i) for i in range(1, 11)]

        result = run_pipeline(records, [lambda r: r.id % 2 == 0], 2, 3)

        assert result.total_items == 5
        assert [r.id for r in result.items] == [8, 10]
        assert result.total_pages == 2

    def test_empty_result(self) -> None:
        result = run_pipeline([], [], 3, 10)
        assert result.items == []
        assert result.current_page == 1
        assert result.total_pages == 0

    def test_to_dict(self) -> None:
        result = PaginatedResult(items=[make_record(1)], total_items=1, current_page=1, page_size=10)
        data = result.to_dict()
        assert data["total_pages"] == 1
        assert data["items"][0]["subject_id"] == "1"


class TestParsing:
    """Tests for date bounds and sort normalization."""

    def test_date_only_bounds(self) -> None:
        start = parse_bound("2024-03-10", timezone.utc, end_of_day=False)
        end = parse_bound("2024-03-10", timezone.utc, end_of_day=True)

        assert start == datetime(2024, 3, 10, 0, 0, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 10, 23, 59, 59, tzinfo=timezone.utc)

    def test_date_only_uses_configured_timezone(self) -> None:
        tz = ZoneInfo("Europe/Berlin")
        start = parse_bound("2024-03-10", tz, end_of_day=False)
        assert start.utcoffset() == timedelta(hours=1)

    def test_datetime_and_date_objects(self) -> None:
        assert parse_bound(BASE, timezone.utc, end_of_day=True) == BASE
        assert parse_bound(date(2024, 3, 10), timezone.utc, end_of_day=True).hour == 23

    def test_malformed_date(self) -> None:
        with pytest.raises(DataFormatError):
            parse_bound("10/03/2024", timezone.utc, end_of_day=False)

    def test_normalize_sort(self) -> None:
        assert normalize_sort("subject_id", "asc") == ("subject_id", SortDirection.ASC)
        assert normalize_sort("created_at", "ASC") == ("occurred_at", SortDirection.ASC)
        assert normalize_sort("change_set", "ASC") == ("occurred_at", SortDirection.DESC)
        assert normalize_sort(None, None) == ("occurred_at", SortDirection.DESC)
        assert normalize_sort("id", "sideways") == ("id", SortDirection.DESC)


class TestDataSourceQuery:
    """Tests for AuditDataSource.query()."""

    def test_page_beyond_last_is_clamped(self, data_source) -> None:
        result = data_source.query(page=10, page_size=2)

        assert result.current_page == 3
        assert result.total_items == 5
        assert len(result.items) == 1

    def test_page_beyond_last_is_clamped_in_memory(self, data_source) -> None:
        result = data_source.query(search="ops", page=10, page_size=2)

        assert result.current_page == 3
        assert result.total_items == 5
        assert len(result.items) == 1

    def test_native_and_in_memory_paths_agree(self, data_source) -> None:
        native = data_source.query(page=2, page_size=2)
        in_memory = data_source.query(search="example.com", page=2, page_size=2)

        assert [r.id for r in native.items] == [r.id for r in in_memory.items]

    def test_invalid_page_size(self, data_source) -> None:
        with pytest.raises(DataFormatError):
            data_source.query(page_size=0)

    def test_default_page_size(self, order_log) -> None:
        data_source = AuditDataSource(order_log, FilterCompiler(), default_page_size=3)
        assert len(data_source.query().items) == 3

    def test_repeated_queries_are_identical(self, data_source) -> None:
        filters = {"change_kind": "update", "hide_system": True}
        first = data_source.query(search="state", filters=filters, page=1, page_size=2)
        second = data_source.query(search="state", filters=filters, page=1, page_size=2)
        assert first == second

    def test_sort_ascending_by_subject(self, data_source) -> None:
        result = data_source.query(sort_by="subject_id", sort_direction="ASC", page_size=10)
        assert [r.subject_id for r in result.items] == ["1", "2", "3", "4", "5"]

    def test_invalid_sort_falls_back_to_default(self, data_source) -> None:
        result = data_source.query(sort_by="change_set", sort_direction="ASC", page_size=10)
        assert [r.subject_id for r in result.items] == ["5", "4", "3", "2", "1"]

    def test_subject_filters(self, database) -> None:
        log = database.log(ORDER)
        for subject in ("abc1", "abc2", "xabc", "zzz"):
            log.append(subject, ChangeKind.UPDATED, {}, occurred_at=BASE)
        data_source = AuditDataSource(log)

        exact = data_source.query(filters={"subject_id": "abc1"})
        prefix = data_source.query(filters={"subject_id": "abc*"})
        contains = data_source.query(filters={"object_id": "*abc*"})

        assert [r.subject_id for r in exact.items] == ["abc1"]
        assert {r.subject_id for r in prefix.items} == {"abc1", "abc2"}
        assert {r.subject_id for r in contains.items} == {"abc1", "abc2", "xabc"}

    def test_change_kind_filter(self, order_log) -> None:
        order_log.append("9", ChangeKind.REMOVED, {"class": ORDER, "label": "Order#9"})
        data_source = AuditDataSource(order_log)

        removed = data_source.query(filters={"change_kind": "remove"})
        several = data_source.query(filters={"type": ["remove", "update"]}, page_size=50)
        unknown = data_source.query(filters={"change_kind": "bogus"}, page_size=50)

        assert [r.subject_id for r in removed.items] == ["9"]
        assert several.total_items == 6
        assert unknown.total_items == 6

    def test_date_range_filter(self, data_source) -> None:
        result = data_source.query(
            filters={"occurred_at": {"from": "2024-03-10T12:01:00+00:00", "to": "2024-03-10T12:03:00+00:00"}}
        )
        assert [r.subject_id for r in result.items] == ["4", "3", "2"]

    def test_date_only_to_covers_whole_day(self, data_source) -> None:
        result = data_source.query(filters={"created_at": {"to": "2024-03-10"}})
        assert result.total_items == 5

        result = data_source.query(filters={"occurred_at": {"from": "2024-03-11"}})
        assert result.total_items == 0

    def test_malformed_date_raises(self, data_source) -> None:
        with pytest.raises(DataFormatError):
            data_source.query(filters={"occurred_at": {"from": "yesterday"}})

    def test_unknown_filters_are_ignored(self, data_source) -> None:
        result = data_source.query(filters={"colour": "blue", "subject_id": None})
        assert result.total_items == 5

    def test_correlation_hash_filter(self, database) -> None:
        log = database.log(ORDER)
        log.append("1", ChangeKind.UPDATED, {}, correlation_hash="tx-1")
        log.append("2", ChangeKind.UPDATED, {}, correlation_hash="tx-2")

        result = AuditDataSource(log).query(filters={"transaction_hash": "tx-2"})
        assert [r.subject_id for r in result.items] == ["2"]

    def test_actor_search_is_case_insensitive_substring(self, order_log) -> None:
        result = AuditDataSource(order_log).query(filters={"actor_label": "OPS@"})
        assert result.total_items == 5

    def test_actor_filter_is_exact_without_actor_search(self, tmp_path) -> None:
        database = AuditDatabase(tmp_path / "audit.db", actor_search=False)
        log = database.log(ORDER)
        log.append("1", ChangeKind.UPDATED, {}, actor_label="ops@example.com")

        data_source = AuditDataSource(log)
        assert data_source.query(filters={"actor_label": "OPS@"}).total_items == 0
        assert data_source.query(filters={"actor_label": "ops@example.com"}).total_items == 1

    def test_search_matches_change_set(self, data_source) -> None:
        result = data_source.query(search="STATE-3")
        assert [r.subject_id for r in result.items] == ["3"]

    def test_search_is_exact_subject_when_text_search_disabled(self, order_log) -> None:
        data_source = AuditDataSource(order_log, FilterCompiler(text_search_enabled=False))

        assert [r.subject_id for r in data_source.query(search="3").items] == ["3"]
        assert data_source.query(search="state-3").total_items == 0


class TestHideSystem:
    """Tests for the hide automated changes filter."""

    def test_hide_system_scenario(self, database) -> None:
        log = database.log(ORDER)
        log.append("1", ChangeKind.UPDATED, {}, actor_id="automation", actor_label="nightly-reindex", occurred_at=BASE)
        log.append("2", ChangeKind.UPDATED, {}, actor_id="", actor_label="ops@example.com", occurred_at=BASE)
        data_source = AuditDataSource(log)

        visible = data_source.query(filters={"hide_system": True})
        everything = data_source.query(filters={"hide_system": False})

        assert [r.subject_id for r in visible.items] == ["2"]
        assert visible.total_items == 1
        assert everything.total_items == 2

    def test_hide_system_accepts_string_flags(self, database) -> None:
        log = database.log(ORDER)
        log.append("1", ChangeKind.UPDATED, {}, occurred_at=BASE)
        data_source = AuditDataSource(log)

        assert data_source.query(filters={"hideSystem": "1"}).total_items == 0
        assert data_source.query(filters={"hideSystem": "0"}).total_items == 1


class TestRequestIdFilter:
    """Tests for request id filtering through correlation."""

    def test_request_id_restricts_to_matches(self, database) -> None:
        orders = database.log(ORDER)
        tags = database.log(TAG)
        orders.append("1", ChangeKind.UPDATED, {"@context": {"requestId": "r-1"}})
        orders.append("2", ChangeKind.UPDATED, {"@context": {"requestId": "r-2"}})
        tags.append("3", ChangeKind.UPDATED, {"@context": {"requestId": "r-1"}})

        engine = CorrelationEngine(database.registry())
        data_source = AuditDataSource(orders, FilterCompiler(correlation=engine))

        result = data_source.query(filters={"requestId": "r-1"})

        assert [r.subject_id for r in result.items] == ["1"]
        assert result.total_items == 1

    def test_request_id_without_correlation_engine(self, database) -> None:
        log = database.log(ORDER)
        log.append("1", ChangeKind.UPDATED, {"@context": {"requestId": "r-1"}})
        log.append("2", ChangeKind.UPDATED, {})

        result = AuditDataSource(log).query(filters={"request_id": "r-1"})
        assert [r.subject_id for r in result.items] == ["1"]


class TestDataSourceFactory:
    """Tests for AuditDataSourceFactory."""

    def test_identifiers(self, database) -> None:
        database.log(ORDER)
        database.log(TAG)
        factory = AuditDataSourceFactory(database.registry())

        identifiers = [data_source.identifier for data_source in factory.create_all()]

        assert identifiers == ["audit-App-Entity-Order", "audit-App-Entity-Tag"]
        assert namespace_to_param(ORDER) == "App-Entity-Order"

    def test_get_by_identifier(self, database) -> None:
        database.log(ORDER)
        factory = AuditDataSourceFactory(database.registry(), default_page_size=25)

        data_source = factory.get("audit-App-Entity-Order")

        assert data_source.entity_type == ORDER
        assert data_source.label == "Audit: Order"
        assert data_source.default_page_size == 25
        assert factory.get("audit-App-Entity-Order/17") is data_source
        assert factory.get("audit-Unknown") is None

    def test_sources_are_cached(self, database) -> None:
        database.log(ORDER)
        factory = AuditDataSourceFactory(database.registry())

        first = factory.create_all()
        assert factory.create_all() == first

        factory.clear_cache()
        assert factory.create_all()[0] is not first[0]

    def test_create(self, database) -> None:
        database.log(ORDER)
        factory = AuditDataSourceFactory(database.registry())

        assert factory.create(ORDER).entity_type == ORDER
        assert factory.create(TAG) is None

    def test_read_only_actions(self, data_source) -> None:
        assert data_source.supports_action("index")
        assert data_source.supports_action("show")
        assert not data_source.supports_action("delete")

    def test_find(self, data_source) -> None:
        assert data_source.find("2").subject_id == "2"
        assert data_source.find("abc") is None
        assert data_source.find(999) is None


class TestAuditReader:
    """Tests for AuditReader.find_by_subjects()."""

    def test_find_by_subjects(self, database, order_log) -> None:
        reader = AuditReader(database.registry())

        records = reader.find_by_subjects(ORDER, [1, "3"])
        assert [r.subject_id for r in records] == ["3", "1"]

        records = reader.find_by_subjects(ORDER, order_by="created_at", direction="ASC")
        assert [r.subject_id for r in records] == ["1", "2", "3", "4", "5"]

    def test_find_by_time_range_and_kind(self, database, order_log) -> None:
        reader = AuditReader(database.registry())

        records = reader.find_by_subjects(ORDER, date_from=BASE + timedelta(minutes=3))
        assert [r.subject_id for r in records] == ["5", "4"]

        assert reader.find_by_subjects(ORDER, change_kind="remove") == []

    def test_unknown_entity_type(self, database) -> None:
        assert AuditReader(database.registry()).find_by_subjects("Unknown") == []
