"""Tests for WH-347 certified payroll."""

import re
from datetime import date, timedelta
from decimal import Decimal

import pytest

from commandx.models import Personnel, TimeEntry
from commandx.wh347 import (
    WH347Assignment,
    WH347Error,
    WH347Report,
    WH347Service,
    mask_ssn,
    organize_entries_for_wh347,
    render_wh347_pdf,
)

WEEK_ENDING = date(2024, 3, 16)
SUNDAY = date(2024, 3, 10)


def _entry(entry_id, personnel_id, day, hours, rate=None):
    return TimeEntry(
        id=entry_id,
        personnel_id=personnel_id,
        project_id="proj-a",
        entry_date=day,
        regular_hours=Decimal(hours),
        hourly_rate=Decimal(rate) if rate else None,
    )


@pytest.fixture
def crew():
    return {
        "p1": Personnel(id="p1", first_name="Ana", last_name="Lopez", ssn_last_four="1234"),
        "p2": Personnel(id="p2", first_name="Sam", last_name="Adams", hourly_rate=Decimal("20")),
    }


def test_mask_ssn():
    assert mask_ssn("1234") == "XXX-XX-1234"
    assert mask_ssn(None) == "XXX-XX-XXXX"


def test_report_week_and_filename():
    report = WH347Report(
        contractor_name="Gulf Build LLC",
        contractor_address="",
        payroll_number="3",
        week_ending=WEEK_ENDING,
        project_name="Main St. Bridge #2",
    )
    assert report.week_start == SUNDAY
    assert report.filename == "WH-347_Main_St__Bridge__2_2024-03-16.pdf"


class TestOrganizeEntries:
    def test_weekly_overtime_and_deductions(self, crew):
        entries = [
            _entry(f"a{i}", "p1", SUNDAY + timedelta(days=i), "10", rate="25")
            for i in range(1, 6)
        ]

        [row] = organize_entries_for_wh347(
            entries, crew, WEEK_ENDING, [WH347Assignment("p1", "Ironworker", 2)]
        )

        assert row.work_classification == "Ironworker"
        assert row.withholding_exemptions == 2
        assert row.regular_hours == Decimal("40")
        assert row.overtime_hours == Decimal("10")
        assert row.overtime_rate == Decimal("37.5")
        assert row.gross_earned == Decimal("1375.00")
        assert row.fica == Decimal("105.19")
        assert row.withholding == Decimal("137.50")
        assert row.net_wages == Decimal("1132.31")
        assert row.daily_hours[0].day == SUNDAY
        friday = row.daily_hours[5]
        assert (friday.straight_hours, friday.overtime_hours) == (Decimal("0"), Decimal("10"))

    def test_rate_falls_back_and_rows_sorted_by_name(self, crew):
        entries = [
            _entry("a1", "p1", SUNDAY + timedelta(days=1), "8", rate="25"),
            _entry("b1", "p2", SUNDAY, "8"),
            _entry("b2", "p2", WEEK_ENDING + timedelta(days=1), "8"),
            _entry("x1", "ghost", SUNDAY, "8"),
        ]

        rows = organize_entries_for_wh347(entries, crew, WEEK_ENDING)

        assert [r.personnel.last_name for r in rows] == ["Adams", "Lopez"]
        adams = rows[0]
        assert adams.straight_rate == Decimal("20")
        assert adams.total_hours == Decimal("8")
        assert adams.gross_earned == Decimal("160.00")
        assert adams.work_classification == ""


def _page_count(pdf: bytes) -> int:
    return len(re.findall(rb"/Type /Page\b", pdf))


def test_render_produces_pdf(crew):
    entries = [_entry(f"a{i}", "p1", SUNDAY + timedelta(days=i), "9", rate="25") for i in range(7)]
    report = WH347Report(
        contractor_name="Gulf Build LLC & Sons",
        contractor_address="1 Main St, Mobile, AL, 36602",
        payroll_number="1",
        week_ending=WEEK_ENDING,
        project_name="Main St Bridge",
        employees=organize_entries_for_wh347(entries, crew, WEEK_ENDING) * 9,
        certifier_name="Dana Cruz",
        certifier_title="Payroll Manager",
        certification_date=date(2024, 3, 18),
        fringe_paid_to_plan=True,
    )

    pdf = render_wh347_pdf(report)

    assert pdf.startswith(b"%PDF")
    # Two payroll pages of at most eight employees, then the compliance page
    assert _page_count(pdf) == 3

    report.employees = report.employees[:8]
    assert _page_count(render_wh347_pdf(report)) == 2


def test_render_empty_report():
    report = WH347Report(
        contractor_name="Gulf Build LLC",
        contractor_address="",
        payroll_number="1",
        week_ending=WEEK_ENDING,
        project_name="Idle Site",
    )
    assert render_wh347_pdf(report).startswith(b"%PDF")


@pytest.fixture
def wh347_store(store):
    store.tables.update(
        {
            "projects": [
                {"id": "proj-a", "name": "Main St Bridge", "location": "Mobile, AL",
                 "customer_po": "PO-77"}
            ],
            "company_settings": [
                {"company_name": "Gulf Build LLC", "address": "1 Main St", "city": "Mobile",
                 "state": "AL", "zip": "36602", "overtime_multiplier": 1.5,
                 "weekly_overtime_threshold": 40}
            ],
            "personnel": [
                {"id": "p1", "first_name": "Ana", "last_name": "Lopez", "hourly_rate": 25},
                {"id": "p2", "first_name": "Sam", "last_name": "Adams", "hourly_rate": 20},
            ],
            "time_entries": [
                {"id": "a1", "personnel_id": "p1", "project_id": "proj-a",
                 "entry_date": "2024-03-11", "regular_hours": 8},
                {"id": "b1", "personnel_id": "p2", "project_id": "proj-a",
                 "entry_date": "2024-03-12", "regular_hours": 6},
                {"id": "c1", "personnel_id": "p2", "project_id": "proj-b",
                 "entry_date": "2024-03-12", "regular_hours": 2},
            ],
            "personnel_project_assignments": [
                {"personnel_id": "p1", "project_id": "proj-a", "work_classification": "Laborer"},
                {"personnel_id": "p2", "project_id": "proj-a", "work_classification": "Operator"},
            ],
        }
    )
    return store


class TestWH347Service:
    @pytest.mark.asyncio
    async def test_build_report(self, wh347_store):
        report = await WH347Service(wh347_store).build_report(
            "proj-a", WEEK_ENDING, " 4 ", withholding_exemptions={"p1": 1}
        )

        assert report.contractor_name == "Gulf Build LLC"
        assert report.contractor_address == "1 Main St, Mobile, AL, 36602"
        assert report.contract_number == "PO-77"
        assert report.payroll_number == "4"
        assert report.certification_date is None
        lopez = next(e for e in report.employees if e.personnel.id == "p1")
        assert lopez.withholding_exemptions == 1
        adams = next(e for e in report.employees if e.personnel.id == "p2")
        assert adams.total_hours == Decimal("6")

    @pytest.mark.asyncio
    async def test_generate_uploads_pdf(self, wh347_store):
        export = await WH347Service(wh347_store).generate("proj-a", WEEK_ENDING, "1")

        key = "certified-payroll/proj-a/WH-347_Main_St_Bridge_2024-03-16.pdf"
        assert export.storage_path == key
        assert export.employee_count == 2
        assert wh347_store.uploads[key].startswith(b"%PDF")
        assert export.to_dict() == {
            "storage_path": key,
            "filename": "WH-347_Main_St_Bridge_2024-03-16.pdf",
            "employee_count": 2,
        }

    @pytest.mark.asyncio
    async def test_selected_personnel_only(self, wh347_store):
        report = await WH347Service(wh347_store).build_report(
            "proj-a", WEEK_ENDING, "1", personnel_ids=["p2"]
        )
        assert [e.personnel.id for e in report.employees] == ["p2"]

    @pytest.mark.asyncio
    async def test_missing_classification(self, wh347_store):
        wh347_store.tables["personnel_project_assignments"].pop()

        with pytest.raises(WH347Error, match="Work classification missing for: Sam Adams"):
            await WH347Service(wh347_store).build_report("proj-a", WEEK_ENDING, "1")

    @pytest.mark.asyncio
    async def test_requires_payroll_number(self, wh347_store):
        with pytest.raises(WH347Error, match="Payroll number is required"):
            await WH347Service(wh347_store).build_report("proj-a", WEEK_ENDING, "  ")

    @pytest.mark.asyncio
    async def test_no_entries(self, wh347_store):
        with pytest.raises(WH347Error, match="No time entries"):
            await WH347Service(wh347_store).build_report("proj-a", date(2024, 1, 6), "1")

    @pytest.mark.asyncio
    async def test_unknown_project(self, wh347_store):
        with pytest.raises(WH347Error, match="Project not found"):
            await WH347Service(wh347_store).build_report("proj-x", WEEK_ENDING, "1")
