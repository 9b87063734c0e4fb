"""Tests for the filter/search/sort/paginate pipeline."""
import pytest
from datetime import datetime, timezone

from wellpulse.shared.models import ChannelCounts, EngagementRecord, RiskLevel
from wellpulse.services.analytics_service.pipeline import (
    FilterState,
    participation_status,
    performance_bands,
    student_pipeline,
)
from wellpulse.services.analytics_service.ranking import classify_students


AS_OF = datetime(2024, 3, 15, tzinfo=timezone.utc)

STUDENTS = [
    # (id, name, class, done, total, wellbeing)
    ("s01", "Ava Patel", "7A", 10, 10, 85),
    ("s02", "Ben Okafor", "7A", 5, 10, 65),
    ("s03", "Chloe Ng", "7B", 1, 10, 80),
    ("s04", "Dev Sharma", "7B", 0, 10, 90),
    ("s05", "Ella Brown", "8A", 8, 10, 35),
    ("s06", "Finn Walsh", "8A", 0, 0, None),
    ("s07", "Grace Lee", "7A", 9, 10, 75),
    ("s08", "Hugo Silva", "7B", 6, 10, 72),
    ("s09", "Isla Kerr", "8A", 7, 10, 50),
    ("s10", "Jack Moss", "7A", 3, 10, 90),
    ("s11", "Kira Chen", "8A", 10, 10, 95),
    ("s12", "Liam Ryan", "7B", 4, 10, 60),
]


@pytest.fixture
def standings():
    records = [
        EngagementRecord(
            student_id=sid,
            class_id=f"class-{cls}",
            school_id="sch1",
            student_name=name,
            class_name=cls,
            assessments=ChannelCounts(assigned=total, completed=done),
            wellbeing_score=wellbeing,
            last_active=AS_OF,
        )
        for sid, name, cls, done, total, wellbeing in STUDENTS
    ]
    return classify_students(records, AS_OF)


@pytest.fixture
def pipeline():
    return student_pipeline()


class TestFilterState:
    """Tests for FilterState transitions."""

    def test_filter_change_resets_page(self):
        state = FilterState(page=3)
        assert state.update(search_text="ava").page == 1
        assert state.update(risk_filter={"high"}).page == 1
        assert state.update(sort_key="name").page == 1

    def test_page_change_keeps_filters(self):
        state = FilterState(search_text="a", page=1)
        moved = state.with_page(2)
        assert moved.page == 2
        assert moved.search_text == "a"

    def test_update_with_only_page(self):
        assert FilterState(page=1).update(page=4).page == 4

    def test_unchanged_values_keep_page(self):
        state = FilterState(search_text="a", page=3)
        assert state.update(search_text="a").page == 3

    def test_risk_tokens_normalized(self):
        state = FilterState(risk_filter=["High", "low"])
        assert state.risk_filter == frozenset({RiskLevel.HIGH, RiskLevel.LOW})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            FilterState(page=0)
        with pytest.raises(ValueError):
            FilterState(page_size=0)
        with pytest.raises(ValueError):
            FilterState(sort_direction="sideways")
        with pytest.raises(ValueError):
            FilterState(risk_filter={"extreme"})

    def test_reset_keeps_page_size(self):
        state = FilterState(search_text="x", page=2, page_size=25)
        assert state.reset() == FilterState(page_size=25)


class TestSearchAndFacets:
    """Tests for search and facet filtering."""

    def test_search_is_case_insensitive_substring(self, pipeline, standings):
        page = pipeline.apply(standings, FilterState(search_text="CHEN"))
        assert [s.student_id for s in page.items] == ["s11"]

    def test_search_matches_class_name(self, pipeline, standings):
        page = pipeline.apply(standings, FilterState(search_text="8a", page_size=50))
        assert page.total_count == 4

    def test_facet_or_within(self, pipeline, standings):
        state = FilterState(selected_categories={"7A", "8A"}, page_size=50)
        assert pipeline.apply(standings, state).total_count == 8

    def test_facets_and_across(self, pipeline, standings):
        state = FilterState(
            selected_categories={"7B"}, risk_filter={"high"}, page_size=50
        )
        page = pipeline.apply(standings, state)
        assert sorted(s.student_id for s in page.items) == ["s03", "s04"]

    def test_status_facet(self, pipeline, standings):
        state = FilterState(selected_statuses={"completed_all"}, page_size=50)
        page = pipeline.apply(standings, state)
        assert sorted(s.student_id for s in page.items) == ["s01", "s11"]

    def test_participation_status_values(self, standings):
        by_id = {s.student_id: participation_status(s) for s in standings}
        assert by_id["s01"] == "completed_all"
        assert by_id["s04"] == "not_started"
        assert by_id["s06"] == "no_assignments"
        assert by_id["s02"] == "partial"

    def test_has_pending_status(self, pipeline, standings):
        state = FilterState(selected_statuses={"has_pending"}, page_size=50)
        page = pipeline.apply(standings, state)

        assert page.total_count == 9
        assert {"s01", "s06", "s11"}.isdisjoint(s.student_id for s in page.items)

    @pytest.mark.parametrize("band,expected", [
        ("excellent", ["s01", "s07", "s11"]),
        ("good", ["s05", "s09"]),
        ("average", ["s02", "s08"]),
        ("needs_attention", ["s03", "s04", "s06", "s10", "s12"]),
        ("critical", ["s03", "s04", "s06"]),
    ])
    def test_performance_band_facet(self, pipeline, standings, band, expected):
        state = FilterState(performance_filter={band}, page_size=50)
        page = pipeline.apply(standings, state)
        assert [s.student_id for s in page.items] == expected

    def test_performance_band_boundaries(self):
        assert performance_bands(90.0) == ("excellent",)
        assert performance_bands(89.9) == ("good",)
        assert performance_bands(70.0) == ("good",)
        assert performance_bands(50.0) == ("average",)
        assert performance_bands(30.0) == ("needs_attention",)
        assert performance_bands(29.9) == ("needs_attention", "critical")

    def test_unknown_performance_band_rejected(self):
        with pytest.raises(ValueError):
            FilterState(performance_filter={"stellar"})

    def test_performance_change_resets_page(self):
        state = FilterState(page=4).update(performance_filter={"critical"})
        assert state.page == 1

    def test_unsupported_facet_rejected(self, standings):
        from wellpulse.services.analytics_service.pipeline import FilterPipeline

        bare = FilterPipeline(search_fields=[lambda s: s.student_name])
        with pytest.raises(ValueError):
            bare.apply(standings, FilterState(risk_filter={"high"}))


class TestSortAndPaginate:
    """Tests for ordering and page slicing."""

    def test_default_order_is_by_id(self, pipeline, standings):
        page = pipeline.apply(list(reversed(standings)), FilterState(page_size=50))
        assert [s.student_id for s in page.items] == sorted(s[0] for s in STUDENTS)

    def test_sort_descending_with_id_tiebreak(self, pipeline, standings):
        state = FilterState(sort_key="overall_rate", sort_direction="desc", page_size=3)
        page = pipeline.apply(standings, state)
        assert [s.student_id for s in page.items] == ["s01", "s11", "s07"]

    def test_missing_values_sort_last(self, pipeline, standings):
        state = FilterState(sort_key="wellbeing", page_size=50)
        page = pipeline.apply(standings, state)
        assert page.items[-1].student_id == "s06"
        assert page.items[0].student_id == "s05"

    def test_unknown_sort_key(self, pipeline, standings):
        with pytest.raises(ValueError):
            pipeline.apply(standings, FilterState(sort_key="shoe_size"))

    def test_pages_partition_result(self, pipeline, standings):
        state = FilterState(page_size=5)
        pages = [pipeline.apply(standings, state.with_page(n)) for n in (1, 2, 3)]

        assert [len(p.items) for p in pages] == [5, 5, 2]
        assert all(p.total_pages == 3 for p in pages)
        seen = [s.student_id for p in pages for s in p.items]
        assert len(seen) == len(set(seen)) == 12

    def test_page_change_keeps_totals(self, pipeline, standings):
        state = FilterState(selected_categories={"7A"}, page_size=2)
        first = pipeline.apply(standings, state)
        second = pipeline.apply(standings, state.with_page(2))

        assert first.total_count == second.total_count == 4
        assert first.total_pages == second.total_pages == 2

    def test_page_past_end_is_empty(self, pipeline, standings):
        page = pipeline.apply(standings, FilterState(page=9, page_size=5))
        assert page.items == ()
        assert page.total_count == 12

    def test_empty_result_has_one_page(self, pipeline, standings):
        page = pipeline.apply(standings, FilterState(search_text="nobody"))
        assert page.total_count == 0
        assert page.total_pages == 1

    def test_idempotent(self, pipeline, standings):
        state = FilterState(search_text="a", sort_key="streak", page_size=4)
        first = pipeline.apply(standings, state)
        again = pipeline.apply(list(first.items), FilterState(
            search_text="a", sort_key="streak", page_size=4
        ))
        assert again.items == first.items

    def test_to_dict(self, pipeline, standings):
        body = pipeline.apply(standings, FilterState(page_size=2)).to_dict()
        assert body["total_count"] == 12
        assert body["total_pages"] == 6
        assert len(body["items"]) == 2
