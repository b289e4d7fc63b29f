"""
Tests for per-variant split-test results.

Covers:
  - assignment, conversion and revenue counts per variant within the range
  - conversion rate, and the 0.0 rate for variants nobody was assigned to
  - experiment ordering and the all-time assignment total
  - GET /api/v1/orgs/{org_id}/split-tests
"""

import uuid
from datetime import date, datetime

import pytest
from httpx import AsyncClient

from analytics.date_range import DateRange
from experiments.results import SplitTestReport

MARCH_WEEK = DateRange(date(2026, 3, 1), date(2026, 3, 7))


@pytest.fixture
async def split_traffic(test_db, seeded_db, make_event, make_payment):
    from db.models import Experiment, ExperimentAssignment, Variant

    org_id = seeded_db["organization_id"]
    headline = Experiment(
        organization_id=org_id,
        slug="webinar-headline",
        name="Webinar headline",
        status="ACTIVE",
        created_at=datetime(2026, 2, 15),
    )
    draft = Experiment(
        organization_id=org_id, slug="pricing-page", name="Pricing page", status="DRAFT", created_at=datetime(2026, 3, 5)
    )
    test_db.add_all([headline, draft])
    await test_db.flush()

    control, challenger, unused = (
        Variant(
            experiment_id=headline.experiment_id,
            name=name,
            url=f"https://example.com/{name.lower()}",
            weight=weight,
            position=position,
        )
        for position, (name, weight) in enumerate([("Control", 50), ("Challenger", 50), ("Holdout", 0)])
    )
    test_db.add_all([control, challenger, unused])
    await test_db.flush()

    assigned = [(control, datetime(2026, 3, day, 9)) for day in (2, 3, 3, 6)]
    assigned += [(challenger, datetime(2026, 3, day, 9)) for day in (2, 4)]
    assigned.append((control, datetime(2026, 2, 20, 9)))  # before the range
    test_db.add_all(
        [
            ExperimentAssignment(
                session_key=f"visitor-{n}",
                experiment_id=headline.experiment_id,
                variant_id=variant.variant_id,
                created_at=created_at,
            )
            for n, (variant, created_at) in enumerate(assigned)
        ]
    )
    await test_db.flush()

    for event_type, day in [("OPT_IN", 2), ("OPT_IN", 3), ("PURCHASE", 4), ("PAGE_VIEW", 2), ("PAGE_VIEW", 3)]:
        await make_event(event_type, datetime(2026, 3, day, 10), contact_id=uuid.uuid4(), variant_id=control.variant_id)
    await make_event("OPT_IN", datetime(2026, 3, 9, 10), variant_id=control.variant_id)  # after the range
    await make_event("FORM_SUBMIT", datetime(2026, 3, 4, 10), variant_id=challenger.variant_id)
    await make_event("OPT_IN", datetime(2026, 3, 4, 10))  # not attributed to a variant

    await make_payment(49700, datetime(2026, 3, 4, 11), variant_id=control.variant_id)
    await make_payment(10000, datetime(2026, 3, 4, 12), status="refunded", variant_id=control.variant_id)
    await make_payment(9700, datetime(2026, 3, 5, 11), variant_id=challenger.variant_id)
    await test_db.commit()

    return {
        "organization_id": org_id,
        "headline": headline,
        "draft": draft,
        "variants": (control, challenger, unused),
    }


async def _headline_results(test_db, split_traffic):
    results = await SplitTestReport(test_db).overview(split_traffic["organization_id"], MARCH_WEEK)
    return next(r for r in results if r.slug == "webinar-headline")


class TestSplitTestReport:
    async def test_counts_per_variant(self, test_db, split_traffic):
        headline = await _headline_results(test_db, split_traffic)
        rows = {v.name: v for v in headline.variants}

        assert rows["Control"].assignments == 4
        assert rows["Control"].conversions == 3
        assert rows["Control"].revenue == pytest.approx(497.0)
        assert rows["Challenger"].assignments == 2
        assert rows["Challenger"].conversions == 1
        assert rows["Challenger"].revenue == pytest.approx(97.0)

    async def test_conversion_rate(self, test_db, split_traffic):
        headline = await _headline_results(test_db, split_traffic)
        rates = {v.name: v.conversion_rate for v in headline.variants}
        assert rates["Control"] == pytest.approx(0.75)
        assert rates["Challenger"] == pytest.approx(0.5)

    async def test_unassigned_variant_has_zero_rate(self, test_db, split_traffic):
        headline = await _headline_results(test_db, split_traffic)
        holdout = headline.variants[2]
        assert holdout.name == "Holdout"
        assert (holdout.assignments, holdout.conversions, holdout.revenue) == (0, 0, 0.0)
        assert holdout.conversion_rate == 0.0

    async def test_variants_in_position_order(self, test_db, split_traffic):
        headline = await _headline_results(test_db, split_traffic)
        assert [v.name for v in headline.variants] == ["Control", "Challenger", "Holdout"]

    async def test_total_assignments_ignore_range(self, test_db, split_traffic):
        headline = await _headline_results(test_db, split_traffic)
        assert headline.total_assignments == 7

    async def test_newest_experiment_first(self, test_db, split_traffic):
        results = await SplitTestReport(test_db).overview(split_traffic["organization_id"], MARCH_WEEK)
        assert [r.slug for r in results] == ["pricing-page", "webinar-headline"]
        assert results[0].variants == []
        assert results[0].total_assignments == 0

    async def test_other_organization_sees_nothing(self, test_db, split_traffic):
        assert await SplitTestReport(test_db).overview(uuid.uuid4(), MARCH_WEEK) == []


@pytest.mark.asyncio
class TestSplitTestResultsApi:
    async def test_list_results(self, client: AsyncClient, split_traffic):
        resp = await client.get(
            f"/api/v1/orgs/{split_traffic['organization_id']}/split-tests",
            params={"range": "2026-03-01_2026-03-07"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert [e["slug"] for e in data] == ["pricing-page", "webinar-headline"]

        control = data[1]["variants"][0]
        assert control["variant_id"] == str(split_traffic["variants"][0].variant_id)
        assert control["assignments"] == 4
        assert control["conversions"] == 3
        assert control["revenue"] == pytest.approx(497.0)
        assert control["conversion_rate"] == pytest.approx(0.75)
        assert data[1]["variants"][2]["conversion_rate"] == 0.0

    async def test_empty_organization(self, client: AsyncClient, seeded_db):
        resp = await client.get(f"/api/v1/orgs/{seeded_db['organization_id']}/split-tests")
        assert resp.status_code == 200
        assert resp.json() == []
