"""WH-347 certified payroll report for prevailing-wage projects.

The report covers one Sunday-Saturday week on one project. Each employee row
shows daily straight (S) and overtime (O) hours, the rates paid, gross
earnings, estimated deductions and net wages. The PDF ends with the
Statement of Compliance the contractor signs.
"""

import io
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from xml.sax.saxutils import escape

import structlog
from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    PageBreak,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from commandx.config import get_settings
from commandx.models import ZERO, CompanySettings, Personnel, Project, TimeEntry, money
from commandx.pay_periods import split_weekly_overtime
from commandx.store import SupabaseClient, eq, gte, in_, lte, not_null

logger = structlog.get_logger(__name__)

FICA_RATE = Decimal("0.0765")
WITHHOLDING_RATE = Decimal("0.10")
EMPLOYEES_PER_PAGE = 8
STORAGE_BUCKET = "certified-payroll"
DAY_LABELS = ("S", "M", "T", "W", "T", "F", "S")


class WH347Error(Exception):
    """The report cannot be produced from the data provided."""


@dataclass
class WH347Assignment:
    personnel_id: str
    work_classification: str = ""
    withholding_exemptions: int = 0


@dataclass
class WH347DailyHours:
    day: date
    hours: Decimal
    straight_hours: Decimal
    overtime_hours: Decimal


@dataclass
class WH347EmployeeRow:
    personnel: Personnel
    work_classification: str
    withholding_exemptions: int
    daily_hours: list[WH347DailyHours]
    straight_rate: Decimal
    overtime_rate: Decimal
    gross_earned: Decimal
    fica: Decimal
    withholding: Decimal
    other_deductions: Decimal = ZERO

    @property
    def total_hours(self) -> Decimal:
        return sum((d.hours for d in self.daily_hours), ZERO)

    @property
    def regular_hours(self) -> Decimal:
        return sum((d.straight_hours for d in self.daily_hours), ZERO)

    @property
    def overtime_hours(self) -> Decimal:
        return sum((d.overtime_hours for d in self.daily_hours), ZERO)

    @property
    def total_deductions(self) -> Decimal:
        return self.fica + self.withholding + self.other_deductions

    @property
    def net_wages(self) -> Decimal:
        return self.gross_earned - self.total_deductions


@dataclass
class WH347Report:
    contractor_name: str
    contractor_address: str
    payroll_number: str
    week_ending: date
    project_name: str
    project_location: str = ""
    contract_number: str = ""
    is_subcontractor: bool = False
    employees: list[WH347EmployeeRow] = field(default_factory=list)
    certifier_name: str | None = None
    certifier_title: str | None = None
    certification_date: date | None = None
    fringe_paid_to_plan: bool = False
    fringe_paid_in_cash: bool = False

    @property
    def week_start(self) -> date:
        return self.week_ending - timedelta(days=6)

    @property
    def filename(self) -> str:
        safe = "".join(c if c.isalnum() else "_" for c in self.project_name)
        return f"WH-347_{safe}_{self.week_ending.isoformat()}.pdf"


def mask_ssn(last_four: str | None) -> str:
    return f"XXX-XX-{last_four}" if last_four else "XXX-XX-XXXX"


def organize_entries_for_wh347(
    entries: Iterable[TimeEntry],
    personnel: Mapping[str, Personnel],
    week_ending: date,
    assignments: Iterable[WH347Assignment] = (),
    overtime_multiplier: Decimal = Decimal("1.5"),
    weekly_threshold: Decimal = Decimal("40"),
) -> list[WH347EmployeeRow]:
    """Build one report row per employee who worked during the week.

    Daily hours are split into straight and overtime time by the cumulative
    weekly threshold, Sunday first. The straight rate is the first snapshotted
    entry rate of the week, else the employee's hourly rate.
    """
    week_start = week_ending - timedelta(days=6)
    week_days = [week_start + timedelta(days=i) for i in range(7)]
    by_person: dict[str, list[TimeEntry]] = {}
    for entry in entries:
        if not entry.personnel_id or entry.personnel_id not in personnel:
            continue
        if not week_start <= entry.entry_date <= week_ending:
            continue
        by_person.setdefault(entry.personnel_id, []).append(entry)

    assignment_map = {a.personnel_id: a for a in assignments}
    rows: list[WH347EmployeeRow] = []
    for personnel_id, person_entries in by_person.items():
        person = personnel[personnel_id]
        person_entries.sort(key=lambda e: e.entry_date)

        daily_totals = [
            sum((e.total_hours for e in person_entries if e.entry_date == day), ZERO)
            for day in week_days
        ]
        splits = split_weekly_overtime(daily_totals, weekly_threshold)
        daily = [
            WH347DailyHours(day=day, hours=hours, straight_hours=straight, overtime_hours=ot)
            for day, hours, (straight, ot) in zip(week_days, daily_totals, splits)
        ]

        entry_rate = next(
            (e.hourly_rate for e in person_entries if e.hourly_rate), None
        )
        straight_rate = entry_rate or person.hourly_rate or ZERO
        overtime_rate = straight_rate * overtime_multiplier
        regular = sum((d.straight_hours for d in daily), ZERO)
        overtime = sum((d.overtime_hours for d in daily), ZERO)
        gross = money(regular * straight_rate + overtime * overtime_rate)

        assignment = assignment_map.get(personnel_id)
        rows.append(
            WH347EmployeeRow(
                personnel=person,
                work_classification=assignment.work_classification if assignment else "",
                withholding_exemptions=assignment.withholding_exemptions if assignment else 0,
                daily_hours=daily,
                straight_rate=straight_rate,
                overtime_rate=overtime_rate,
                gross_earned=gross,
                fica=money(gross * FICA_RATE),
                withholding=money(gross * WITHHOLDING_RATE),
            )
        )

    rows.sort(key=lambda r: (r.personnel.last_name.lower(), r.personnel.first_name.lower()))
    return rows


# === PDF ===


def _hours(value: Decimal) -> str:
    return f"{value:.1f}" if value > 0 else ""


def _dollars(value: Decimal) -> str:
    return f"${value:,.2f}"


def _ordinal(n: int) -> str:
    suffix = "th" if 10 <= n % 100 <= 20 else {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _checkbox(checked: bool) -> str:
    return "[X]" if checked else "[ ]"


def _header_table(report: WH347Report, width: float, styles: dict[str, ParagraphStyle]) -> Table:
    contractor_kind = (
        f"{_checkbox(not report.is_subcontractor)} CONTRACTOR "
        f"{_checkbox(report.is_subcontractor)} SUBCONTRACTOR"
    )
    data = [
        [
            Paragraph("<b>U.S. Department of Labor</b><br/>WAGE AND HOUR DIVISION", styles["small"]),
            Paragraph("<b>PAYROLL</b>", styles["title"]),
            Paragraph("<b>WH-347</b><br/>OMB No.: 1235-0008", styles["small"]),
        ],
        [
            Paragraph(
                f"NAME OF {escape(contractor_kind)}<br/><b>{escape(report.contractor_name)}</b>"
                f"<br/>ADDRESS: {escape(report.contractor_address)}",
                styles["cell"],
            ),
            Paragraph(f"PAYROLL NO.<br/><b>{escape(report.payroll_number)}</b>", styles["cell"]),
            Paragraph(
                f"FOR WEEK ENDING<br/><b>{report.week_ending:%m/%d/%Y}</b>", styles["cell"]
            ),
        ],
        [
            Paragraph(
                f"PROJECT AND LOCATION<br/><b>{escape(report.project_name)}</b>"
                f"<br/>{escape(report.project_location)}",
                styles["cell"],
            ),
            Paragraph(
                f"PROJECT OR CONTRACT NO.<br/><b>{escape(report.contract_number or 'N/A')}</b>",
                styles["cell"],
            ),
            "",
        ],
    ]
    table = Table(data, colWidths=[width * 0.55, width * 0.25, width * 0.20])
    table.setStyle(
        TableStyle(
            [
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BOX", (0, 1), (-1, -1), 0.75, colors.black),
                ("INNERGRID", (0, 1), (-1, -1), 0.5, colors.black),
                ("SPAN", (1, 2), (2, 2)),
            ]
        )
    )
    return table


def _employee_table(report: WH347Report, employees: list[WH347EmployeeRow]) -> Table:
    week_days = [report.week_start + timedelta(days=i) for i in range(7)]
    header = [
        "(1) NAME, ADDRESS\nAND SSN",
        "(2)\nW/H\nEXEMP.",
        "(3)\nWORK\nCLASS.",
        *[f"{label}\n{day.month}/{day.day}" for label, day in zip(DAY_LABELS, week_days)],
        "(5)\nTOTAL\nHOURS",
        "(6)\nRATE\nOF PAY",
        "(7)\nGROSS\nEARNED",
        "(8)\nFICA",
        "(8)\nWITH-\nHOLD.",
        "(8)\nOTHER",
        "(9)\nNET\nWAGES",
    ]
    rows: list[list[Any]] = [header]
    for emp in employees:
        person = emp.personnel
        name_cell = "\n".join(
            part
            for part in (
                f"{person.last_name}, {person.first_name}",
                (person.address or "")[:28],
                " ".join(p for p in (person.city, person.state, person.zip) if p)[:28],
                mask_ssn(person.ssn_last_four),
            )
            if part
        )
        rows.append(
            [
                name_cell,
                str(emp.withholding_exemptions),
                emp.work_classification[:16],
                *[
                    f"O {_hours(d.overtime_hours)}\nS {_hours(d.straight_hours)}"
                    for d in emp.daily_hours
                ],
                f"O {_hours(emp.overtime_hours)}\nS {emp.regular_hours:.1f}",
                (
                    f"O {_dollars(emp.overtime_rate)}\nS {_dollars(emp.straight_rate)}"
                    if emp.overtime_hours > 0
                    else f"S {_dollars(emp.straight_rate)}"
                ),
                _dollars(emp.gross_earned),
                _dollars(emp.fica),
                _dollars(emp.withholding),
                _dollars(emp.other_deductions) if emp.other_deductions else "",
                _dollars(emp.net_wages),
            ]
        )

    totals: list[Any] = ["PAGE TOTALS", *[""] * 11]
    totals.extend(
        _dollars(sum((getattr(e, attr) for e in employees), ZERO))
        for attr in ("gross_earned", "fica", "withholding", "other_deductions", "net_wages")
    )
    rows.append(totals)

    widths = [1.45 * inch, 0.4 * inch, 0.8 * inch, *[0.45 * inch] * 7, 0.55 * inch,
              0.75 * inch, 0.7 * inch, 0.55 * inch, 0.55 * inch, 0.5 * inch, 0.7 * inch]
    table = Table(rows, colWidths=widths, repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 6),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f0f0f0")),
                ("ALIGN", (1, 0), (-1, -1), "CENTER"),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("SPAN", (0, -1), (2, -1)),
            ]
        )
    )
    return table


def _compliance_story(report: WH347Report, styles: dict[str, ParagraphStyle]) -> list[Any]:
    start, end = report.week_start, report.week_ending
    contractor = escape(report.contractor_name)
    project = escape(report.project_name)
    signatory = escape(report.certifier_name or "_" * 30)
    title = escape(report.certifier_title or "(Title)")
    signed_on = f"{report.certification_date:%m/%d/%Y}" if report.certification_date else "_" * 15

    statements = [
        f"(1) That I pay or supervise the payment of the persons employed by {contractor} on "
        f"the {project}; that during the payroll period commencing on the "
        f"{_ordinal(start.day)} day of {start:%B, %Y} and ending the {_ordinal(end.day)} day "
        f"of {end:%B, %Y} all persons employed on said project have been paid the full "
        "weekly wages earned, that no rebates have been or will be made either directly or "
        f"indirectly to or on behalf of said {contractor} from the full weekly wages earned "
        "by any person and that no deductions have been made either directly or indirectly "
        "from the full wages earned by any person, other than permissible deductions as "
        "defined in Regulations, Part 3 (29 C.F.R. Subtitle A), issued by the Secretary of "
        "Labor under the Copeland Act, as amended (40 U.S.C. &sect; 3145), and described below:",
        "(2) That any payrolls otherwise under this contract required to be submitted for the "
        "above period are correct and complete; that the wage rates for laborers or mechanics "
        "contained therein are not less than the applicable wage rates contained in any wage "
        "determination incorporated into the contract; that the classifications set forth "
        "therein for each laborer or mechanic conform with the work he performed.",
        "(3) That any apprentices employed in the above period are duly registered in a bona "
        "fide apprenticeship program registered with a State apprenticeship agency recognized "
        "by the Bureau of Apprenticeship and Training, United States Department of Labor, or if "
        "no such recognized agency exists in a State, are registered with the Bureau of "
        "Apprenticeship and Training, United States Department of Labor.",
        "(4) That:",
        f"{_checkbox(report.fringe_paid_to_plan)} (a) WHERE FRINGE BENEFITS ARE PAID TO "
        "APPROVED PLANS, FUNDS, OR PROGRAMS: in addition to the basic hourly wage rates paid "
        "to each laborer or mechanic listed in the above referenced payroll, payments of "
        "fringe benefits as listed in the contract have been or will be made to appropriate "
        "programs for the benefit of such employees, except as noted in section 4(c) below.",
        f"{_checkbox(report.fringe_paid_in_cash)} (b) WHERE FRINGE BENEFITS ARE PAID IN CASH: "
        "each laborer or mechanic listed in the above referenced payroll has been paid, as "
        "indicated on the payroll, an amount not less than the sum of the applicable basic "
        "hourly wage rate plus the amount of the required fringe benefits as listed in the "
        "contract, except as noted in section 4(c) below.",
        "(c) EXCEPTIONS",
    ]

    story: list[Any] = [
        Paragraph("<b>STATEMENT OF COMPLIANCE</b>", styles["title"]),
        Spacer(1, 8),
        Paragraph(f"Date: {signed_on}", styles["body"]),
        Spacer(1, 6),
        Paragraph(f"I, {signatory}, {title}, do hereby state:", styles["body"]),
        Spacer(1, 6),
    ]
    for statement in statements:
        story.append(Paragraph(statement, styles["body"]))
        story.append(Spacer(1, 4))

    exceptions = Table(
        [["EXCEPTION (CRAFT)", "EXPLANATION"], ["", ""], ["", ""], ["", ""]],
        colWidths=[4.5 * inch, 4.5 * inch],
        rowHeights=[14, 14, 14, 14],
    )
    exceptions.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
                ("FONTSIZE", (0, 0), (-1, -1), 7),
            ]
        )
    )
    story.extend(
        [
            exceptions,
            Spacer(1, 8),
            Paragraph("REMARKS:", styles["body"]),
            Spacer(1, 24),
            Paragraph(
                f"NAME AND TITLE: {escape(report.certifier_name or '')}"
                f"{', ' + escape(report.certifier_title) if report.certifier_name and report.certifier_title else ''}"
                "&nbsp;&nbsp;&nbsp;&nbsp;SIGNATURE: ______________________________",
                styles["body"],
            ),
            Spacer(1, 8),
            Paragraph(
                "<i>THE WILLFUL FALSIFICATION OF ANY OF THE ABOVE STATEMENTS MAY SUBJECT THE "
                "CONTRACTOR OR SUBCONTRACTOR TO CIVIL OR CRIMINAL PROSECUTION. SEE SECTION 1001 "
                "OF TITLE 18 AND SECTION 231 OF TITLE 31 OF THE UNITED STATES CODE.</i>",
                styles["small"],
            ),
        ]
    )
    return story


def render_wh347_pdf(report: WH347Report) -> bytes:
    """Render the report as a landscape letter PDF.

    Eight employees per payroll page, each page with its own totals row,
    followed by the Statement of Compliance.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(letter),
        leftMargin=24,
        rightMargin=24,
        topMargin=24,
        bottomMargin=24,
        title=f"WH-347 {report.project_name} {report.week_ending.isoformat()}",
    )
    base = getSampleStyleSheet()
    styles = {
        "title": ParagraphStyle("WH347Title", parent=base["Heading2"], alignment=1),
        "body": ParagraphStyle("WH347Body", parent=base["BodyText"], fontSize=8, leading=10),
        "cell": ParagraphStyle("WH347Cell", parent=base["BodyText"], fontSize=7, leading=9),
        "small": ParagraphStyle("WH347Small", parent=base["BodyText"], fontSize=6, leading=8),
    }

    pages = [
        report.employees[i : i + EMPLOYEES_PER_PAGE]
        for i in range(0, len(report.employees), EMPLOYEES_PER_PAGE)
    ] or [[]]

    story: list[Any] = []
    for number, employees in enumerate(pages, start=1):
        story.append(_header_table(report, doc.width, styles))
        story.append(Spacer(1, 6))
        story.append(_employee_table(report, employees))
        story.append(Spacer(1, 4))
        story.append(Paragraph(f"Page {number} of {len(pages)}", styles["small"]))
        story.append(PageBreak())
    story.extend(_compliance_story(report, styles))

    doc.build(story)
    return buffer.getvalue()


# === Service ===


@dataclass
class WH347Export:
    storage_path: str
    filename: str
    employee_count: int
    pdf: bytes = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage_path": self.storage_path,
            "filename": self.filename,
            "employee_count": self.employee_count,
        }


class WH347Service:
    """Assemble, render and store a week's certified payroll for a project."""

    def __init__(self, store: SupabaseClient) -> None:
        self._store = store
        self._logger = logger.bind(component="wh347")

    async def _company(self) -> tuple[dict[str, Any], CompanySettings]:
        settings = get_settings()
        defaults = CompanySettings(
            overtime_multiplier=Decimal(str(settings.default_overtime_multiplier)),
            weekly_overtime_threshold=Decimal(str(settings.default_weekly_overtime_threshold)),
            holiday_multiplier=Decimal(str(settings.default_holiday_multiplier)),
        )
        row = await self._store.select_one("company_settings") or {}
        return row, CompanySettings.from_row(row, defaults)

    async def build_report(
        self,
        project_id: str,
        week_ending: date,
        payroll_number: str,
        is_subcontractor: bool = False,
        certifier_name: str | None = None,
        certifier_title: str | None = None,
        fringe_paid_to_plan: bool = False,
        fringe_paid_in_cash: bool = False,
        withholding_exemptions: Mapping[str, int] | None = None,
        personnel_ids: Iterable[str] | None = None,
    ) -> WH347Report:
        if not payroll_number.strip():
            raise WH347Error("Payroll number is required")

        project_row = await self._store.select_one("projects", filters=[eq("id", project_id)])
        if project_row is None:
            raise WH347Error(f"Project not found: {project_id}")
        project = Project.from_row(project_row)

        week_start = week_ending - timedelta(days=6)
        filters = [
            eq("project_id", project_id),
            gte("entry_date", week_start),
            lte("entry_date", week_ending),
            not_null("personnel_id"),
        ]
        selected = set(personnel_ids) if personnel_ids else None
        if selected:
            filters.append(in_("personnel_id", sorted(selected)))
        rows = await self._store.select("time_entries", filters=filters, order="entry_date.asc")
        entries = [TimeEntry.from_row(r) for r in rows]
        ids = sorted({e.personnel_id for e in entries if e.personnel_id})
        if not ids:
            raise WH347Error("No time entries found for this project and week")

        personnel = {
            p.id: p
            for p in (
                Personnel.from_row(r)
                for r in await self._store.select("personnel", filters=[in_("id", ids)])
            )
        }
        assignment_rows = await self._store.select(
            "personnel_project_assignments",
            "personnel_id, work_classification",
            [eq("project_id", project_id), in_("personnel_id", ids)],
        )
        exemptions = withholding_exemptions or {}
        assignments = [
            WH347Assignment(
                personnel_id=str(r["personnel_id"]),
                work_classification=r.get("work_classification") or "",
                withholding_exemptions=int(exemptions.get(str(r["personnel_id"]), 0)),
            )
            for r in assignment_rows
        ]
        classified = {a.personnel_id for a in assignments if a.work_classification}
        missing = [personnel[i].full_name for i in ids if i in personnel and i not in classified]
        if missing:
            raise WH347Error(
                f"Work classification missing for: {', '.join(sorted(missing))}"
            )

        company, company_settings = await self._company()
        employees = organize_entries_for_wh347(
            entries,
            personnel,
            week_ending,
            assignments,
            company_settings.overtime_multiplier,
            company_settings.weekly_overtime_threshold,
        )
        contractor_address = ", ".join(
            str(company[k]) for k in ("address", "city", "state", "zip") if company.get(k)
        )
        return WH347Report(
            contractor_name=company.get("company_name") or "Company Name",
            contractor_address=contractor_address,
            payroll_number=payroll_number.strip(),
            week_ending=week_ending,
            project_name=project.name or "Project",
            project_location=project.location or "",
            contract_number=project.contract_number or "",
            is_subcontractor=is_subcontractor,
            employees=employees,
            certifier_name=certifier_name,
            certifier_title=certifier_title,
            certification_date=date.today() if certifier_name else None,
            fringe_paid_to_plan=fringe_paid_to_plan,
            fringe_paid_in_cash=fringe_paid_in_cash,
        )

    async def generate(
        self, project_id: str, week_ending: date, payroll_number: str, **options: Any
    ) -> WH347Export:
        """Build, render and upload the report; returns where it was stored."""
        report = await self.build_report(project_id, week_ending, payroll_number, **options)
        pdf = render_wh347_pdf(report)
        path = await self._store.upload(
            STORAGE_BUCKET,
            f"{project_id}/{report.filename}",
            pdf,
            content_type="application/pdf",
        )
        self._logger.info(
            "wh347_generated",
            project=report.project_name,
            week_ending=str(week_ending),
            employees=len(report.employees),
            path=path,
        )
        return WH347Export(
            storage_path=path,
            filename=report.filename,
            employee_count=len(report.employees),
            pdf=pdf,
        )
