"""
Tests for date ranges, daily bucketing, and funnel breakdowns.
"""

import uuid
from datetime import date, datetime

import pytest

from analytics.buckets import bucket_daily
from analytics.date_range import DateRange, parse_date_range
from analytics.definitions import EventMetric, MetricGraph, RevenueMetric
from analytics.evaluator import MetricEvaluator
from analytics.event_store import EventStore
from analytics.timeseries import funnel_chart, funnel_step_counts, load_funnel, metric_chart, source_breakdown
from core.errors import NotFoundError

TODAY = date(2026, 3, 15)
MARCH_WEEK = DateRange(date(2026, 3, 1), date(2026, 3, 7))


class TestParseDateRange:
    def test_custom_range(self):
        assert parse_date_range("2026-01-05_2026-01-09", today=TODAY) == DateRange(date(2026, 1, 5), date(2026, 1, 9))

    def test_today(self):
        assert parse_date_range("today", today=TODAY) == DateRange(TODAY, TODAY)

    def test_seven_days(self):
        assert parse_date_range("7d", today=TODAY) == DateRange(date(2026, 3, 8), TODAY)

    def test_all_time(self):
        assert parse_date_range("all", today=TODAY).start == date(2020, 1, 1)

    def test_missing_and_unknown_fall_back_to_thirty_days(self):
        assert parse_date_range(None, today=TODAY) == DateRange(date(2026, 2, 13), TODAY)
        assert parse_date_range("fortnight", today=TODAY) == DateRange(date(2026, 2, 13), TODAY)

    def test_malformed_custom_range_falls_back(self):
        assert parse_date_range("2026-13-01_nope", today=TODAY).end == TODAY

    def test_inverted_range_rejected(self):
        with pytest.raises(ValueError):
            DateRange(date(2026, 3, 7), date(2026, 3, 1))

    def test_utc_bounds_follow_local_midnight(self):
        start, end = MARCH_WEEK.utc_bounds("America/New_York")
        assert start == datetime(2026, 3, 1, 5, 0)
        assert end == datetime(2026, 3, 8, 5, 0)


class TestBucketDaily:
    def test_zero_filled_and_ordered(self):
        points = bucket_daily([(datetime(2026, 3, 3, 9), 2), (datetime(2026, 3, 3, 18), 3)], MARCH_WEEK)
        assert [day for day, _ in points] == MARCH_WEEK.days()
        assert [value for _, value in points] == [0, 0, 5, 0, 0, 0, 0]

    def test_empty_input(self):
        assert bucket_daily([], MARCH_WEEK) == [(day, 0.0) for day in MARCH_WEEK.days()]

    def test_mean_ignores_none(self):
        points = bucket_daily(
            [(datetime(2026, 3, 1, 1), 10), (datetime(2026, 3, 1, 2), None), (datetime(2026, 3, 1, 3), 20)],
            MARCH_WEEK,
            how="mean",
        )
        assert points[0][1] == 15

    def test_nunique(self):
        contact = uuid.uuid4()
        points = bucket_daily(
            [(datetime(2026, 3, 2, 1), contact), (datetime(2026, 3, 2, 5), contact), (datetime(2026, 3, 2, 6), uuid.uuid4())],
            MARCH_WEEK,
            how="nunique",
        )
        assert points[1][1] == 2

    def test_local_day_boundaries(self):
        # 02:00 UTC on Mar 4 is 21:00 on Mar 3 in New York
        points = bucket_daily([(datetime(2026, 3, 4, 2), 1)], MARCH_WEEK, "America/New_York")
        assert points[2][1] == 1
        assert points[3][1] == 0

    def test_unknown_aggregation_rejected(self):
        with pytest.raises(ValueError):
            bucket_daily([], MARCH_WEEK, how="median")


# ── Funnel breakdowns ──────────────────────────────────────────────────


@pytest.fixture
async def funnel_traffic(seeded_db, make_event, make_payment):
    funnel = seeded_db["funnel"]
    landing, optin, checkout = seeded_db["steps"]
    scoped = {"funnel_id": funnel.funnel_id}

    for hour in range(10):
        await make_event(
            "PAGE_VIEW",
            datetime(2026, 3, 2, hour),
            contact_id=uuid.uuid4(),
            source="facebook" if hour < 6 else None,
            funnel_step_id=landing.funnel_step_id,
            **scoped,
        )
    for hour in range(4):
        await make_event(
            "OPT_IN",
            datetime(2026, 3, 3, hour),
            contact_id=uuid.uuid4(),
            source="facebook",
            funnel_step_id=optin.funnel_step_id,
            **scoped,
        )
    await make_event(
        "PURCHASE", datetime(2026, 3, 4, 10), source="facebook", funnel_step_id=checkout.funnel_step_id, **scoped
    )
    await make_payment(19900, datetime(2026, 3, 4, 10), source="facebook", **scoped)
    await make_payment(4900, datetime(2026, 3, 6, 8), **scoped)
    return seeded_db


class TestFunnelStepCounts:
    async def test_counts_and_rates(self, test_db, funnel_traffic):
        rows = await funnel_step_counts(
            EventStore(test_db), funnel_traffic["organization_id"], funnel_traffic["steps"], MARCH_WEEK
        )
        assert [r.name for r in rows] == ["Landing", "Opt-in", "Checkout"]
        assert [r.count for r in rows] == [10, 4, 1]
        assert [r.conversion_rate for r in rows] == pytest.approx([1.0, 0.4, 0.1])
        assert [r.dropoff_rate for r in rows] == pytest.approx([0.0, 0.6, 0.75])

    async def test_empty_funnel_has_zero_rates(self, test_db, seeded_db):
        rows = await funnel_step_counts(EventStore(test_db), seeded_db["organization_id"], seeded_db["steps"], MARCH_WEEK)
        assert all(r.count == 0 and r.conversion_rate == 0.0 and r.dropoff_rate == 0.0 for r in rows)

    async def test_steps_sorted_by_position(self, test_db, funnel_traffic):
        rows = await funnel_step_counts(
            EventStore(test_db), funnel_traffic["organization_id"], reversed(funnel_traffic["steps"]), MARCH_WEEK
        )
        assert [r.position for r in rows] == [1, 2, 3]


class TestSourceBreakdown:
    async def test_groups_by_source_with_direct_fallback(self, test_db, funnel_traffic):
        rows = await source_breakdown(EventStore(test_db), funnel_traffic["organization_id"], MARCH_WEEK)
        by_source = {r.source: r for r in rows}

        assert [r.source for r in rows] == ["facebook", "direct"]
        assert by_source["facebook"].visitors == 6
        assert by_source["facebook"].leads == 4
        assert by_source["facebook"].purchases == 1
        assert by_source["facebook"].revenue == pytest.approx(199.0)
        assert by_source["facebook"].revenue_per_lead == pytest.approx(49.75)
        assert by_source["direct"].visitors == 4
        assert by_source["direct"].revenue_per_lead == 0.0


class TestCharts:
    async def test_funnel_chart(self, test_db, funnel_traffic):
        rows = await funnel_chart(
            EventStore(test_db), funnel_traffic["organization_id"], funnel_traffic["funnel"].funnel_id, MARCH_WEEK
        )
        assert len(rows) == 7
        assert rows[0] == {"date": "2026-03-01", "events": 0, "revenue": 0.0}
        assert [r["events"] for r in rows] == [0, 10, 4, 1, 0, 0, 0]
        assert rows[3]["revenue"] == pytest.approx(199.0)
        assert rows[5]["revenue"] == pytest.approx(49.0)

    async def test_metric_chart_has_column_per_metric(self, test_db, funnel_traffic):
        leads = EventMetric(metric_id=uuid.uuid4(), name="Leads", event_type="OPT_IN")
        revenue = RevenueMetric(metric_id=uuid.uuid4(), name="Revenue")
        evaluator = MetricEvaluator(
            EventStore(test_db), MetricGraph([leads, revenue]), organization_id=funnel_traffic["organization_id"]
        )
        rows = await metric_chart(evaluator, [leads, revenue], MARCH_WEEK)
        leads_key, revenue_key = str(leads.metric_id), str(revenue.metric_id)
        assert rows[2] == {"date": "2026-03-03", leads_key: 4.0, revenue_key: 0.0}
        assert rows[3][revenue_key] == pytest.approx(199.0)

    async def test_metric_chart_keeps_metrics_sharing_a_name(self, test_db, funnel_traffic):
        leads = EventMetric(metric_id=uuid.uuid4(), name="Leads", event_type="OPT_IN")
        forms = EventMetric(metric_id=uuid.uuid4(), name="Leads", event_type="FORM_SUBMIT")
        evaluator = MetricEvaluator(
            EventStore(test_db), MetricGraph([leads, forms]), organization_id=funnel_traffic["organization_id"]
        )
        rows = await metric_chart(evaluator, [leads, forms], MARCH_WEEK)
        assert set(rows[0]) == {"date", str(leads.metric_id), str(forms.metric_id)}
        assert rows[2][str(leads.metric_id)] == 4.0


async def test_load_funnel_orders_steps(test_db, seeded_db):
    funnel = await load_funnel(test_db, seeded_db["organization_id"], seeded_db["funnel"].funnel_id)
    assert [s.position for s in funnel.steps] == [1, 2, 3]


async def test_load_funnel_scoped_to_organization(test_db, seeded_db):
    with pytest.raises(NotFoundError):
        await load_funnel(test_db, uuid.uuid4(), seeded_db["funnel"].funnel_id)
