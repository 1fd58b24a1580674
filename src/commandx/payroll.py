"""Weekly payroll generation from recorded time entries."""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import structlog

from commandx.config import get_settings
from commandx.models import (
    ZERO,
    CompanySettings,
    Personnel,
    Project,
    Reimbursement,
    ReimbursementStatus,
    TimeEntry,
    money,
)
from commandx.pay_periods import default_pay_period_end, next_payment_date, split_weekly_overtime
from commandx.store import StoreError, SupabaseClient, eq, gte, in_, is_null, lte, not_null

logger = structlog.get_logger(__name__)

LABOR_CATEGORY = "Direct Labor"
REIMBURSEMENT_CATEGORY = "Reimbursement"


def format_hours(hours: Decimal) -> str:
    """Render hours without trailing zeros (``40``, ``7.5``)."""
    text = f"{hours.normalize():f}"
    return text if text != "-0" else "0"


@dataclass
class ProjectHours:
    """One employee's hours and pay on one project."""

    project_id: str
    project_name: str
    regular_hours: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    amount: Decimal = ZERO

    @property
    def allocation_note(self) -> str:
        return (
            f"{format_hours(self.regular_hours)}h regular + "
            f"{format_hours(self.overtime_hours)}h OT on {self.project_name}"
        )


@dataclass
class PersonnelPayroll:
    """Aggregated pay for one employee across projects."""

    personnel_id: str
    personnel_name: str
    pay_rate: Decimal
    projects: list[ProjectHours] = field(default_factory=list)

    @property
    def regular_hours(self) -> Decimal:
        return sum((p.regular_hours for p in self.projects), ZERO)

    @property
    def overtime_hours(self) -> Decimal:
        return sum((p.overtime_hours for p in self.projects), ZERO)

    @property
    def gross_amount(self) -> Decimal:
        return sum((p.amount for p in self.projects), ZERO)


@dataclass
class PayrollRunResult:
    success: bool
    message: str
    payments_created: int = 0
    pay_period: tuple[date, date] | None = None
    payment_date: date | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "payments_created": self.payments_created,
        }
        if self.pay_period:
            data["pay_period"] = {
                "start": self.pay_period[0].isoformat(),
                "end": self.pay_period[1].isoformat(),
            }
        if self.payment_date:
            data["payment_date"] = self.payment_date.isoformat()
        if self.errors:
            data["errors"] = list(self.errors)
        return data


def aggregate_time_entries(
    entries: Iterable[TimeEntry],
    personnel: dict[str, Personnel],
    projects: dict[str, Project],
    overtime_multiplier: Decimal,
    weekly_threshold: Decimal,
) -> list[PersonnelPayroll]:
    """Group a week's entries into per-employee, per-project pay.

    Entries whose employee or project cannot be resolved are skipped. Each
    employee's recorded regular hours are walked in date order against the
    weekly overtime threshold; regular hours past it become overtime, and
    recorded overtime is added on top. Weekly overtime therefore equals the
    larger of the recorded overtime and the hours past the threshold.
    """
    by_personnel: dict[str, list[TimeEntry]] = defaultdict(list)
    for entry in entries:
        if entry.personnel_id not in personnel or entry.project_id not in projects:
            continue
        by_personnel[entry.personnel_id].append(entry)

    results: list[PersonnelPayroll] = []
    for personnel_id, person_entries in by_personnel.items():
        person = personnel[personnel_id]
        rate = person.payroll_rate
        ordered = sorted(person_entries, key=lambda e: (e.entry_date, e.id))
        splits = split_weekly_overtime([e.regular_hours for e in ordered], weekly_threshold)

        payroll = PersonnelPayroll(
            personnel_id=personnel_id, personnel_name=person.full_name, pay_rate=rate
        )
        by_project: dict[str, ProjectHours] = {}
        for entry, (regular, past_threshold) in zip(ordered, splits):
            overtime = entry.overtime_hours + past_threshold
            project_id = entry.project_id or ""
            bucket = by_project.get(project_id)
            if bucket is None:
                bucket = ProjectHours(project_id, projects[project_id].name)
                by_project[project_id] = bucket
                payroll.projects.append(bucket)
            bucket.regular_hours += regular
            bucket.overtime_hours += overtime

        for bucket in payroll.projects:
            bucket.amount = money(
                bucket.regular_hours * rate
                + bucket.overtime_hours * rate * overtime_multiplier
            )
        results.append(payroll)
    return results


class WeeklyPayrollGenerator:
    """Create personnel payments for a completed Monday-Sunday pay period."""

    def __init__(self, store: SupabaseClient, today: date | None = None) -> None:
        self._store = store
        self._today = today or date.today()
        self._logger = logger.bind(component="weekly_payroll")

    async def _load_company_settings(self) -> CompanySettings:
        settings = get_settings()
        defaults = CompanySettings(
            overtime_multiplier=Decimal(str(settings.default_overtime_multiplier)),
            weekly_overtime_threshold=Decimal(str(settings.default_weekly_overtime_threshold)),
            holiday_multiplier=Decimal(str(settings.default_holiday_multiplier)),
        )
        row = await self._store.select_one(
            "company_settings", "overtime_multiplier, weekly_overtime_threshold"
        )
        return CompanySettings.from_row(row, defaults)

    async def _category_id(self, name: str) -> str | None:
        row = await self._store.select_one("expense_categories", "id", [eq("name", name)])
        return row["id"] if row else None

    async def _already_generated(self, start: date, end: date) -> bool:
        row = await self._store.select_one(
            "personnel_payments",
            "id",
            [eq("pay_period_start", start), eq("pay_period_end", end)],
        )
        return row is not None

    async def _load_entries(
        self, start: date, end: date
    ) -> tuple[list[TimeEntry], dict[str, Personnel], dict[str, Project]]:
        rows = await self._store.select(
            "time_entries",
            "id, personnel_id, project_id, entry_date, regular_hours, overtime_hours",
            [gte("entry_date", start), lte("entry_date", end), not_null("personnel_id")],
            order="entry_date.asc",
        )
        entries = [TimeEntry.from_row(r) for r in rows]
        personnel_ids = sorted({e.personnel_id for e in entries if e.personnel_id})
        project_ids = sorted({e.project_id for e in entries if e.project_id})

        personnel: dict[str, Personnel] = {}
        if personnel_ids:
            for row in await self._store.select(
                "personnel",
                "id, first_name, last_name, hourly_rate, pay_rate",
                [in_("id", personnel_ids)],
            ):
                person = Personnel.from_row(row)
                personnel[person.id] = person

        projects: dict[str, Project] = {}
        if project_ids:
            for row in await self._store.select(
                "projects", "id, name", [in_("id", project_ids)]
            ):
                project = Project.from_row(row)
                projects[project.id] = project

        return entries, personnel, projects

    async def generate(self, pay_period_end: date | None = None) -> PayrollRunResult:
        """Generate payroll for the week ending ``pay_period_end``.

        Defaults to the most recent completed Sunday. Running twice for the
        same period creates nothing the second time.
        """
        end = pay_period_end or default_pay_period_end(self._today)
        start = end - timedelta(days=6)
        self._logger.info("payroll_generation_started", start=str(start), end=str(end))

        if await self._already_generated(start, end):
            self._logger.info("payroll_already_generated", start=str(start), end=str(end))
            return PayrollRunResult(
                success=False,
                message=f"Payroll already generated for period {start} to {end}",
                pay_period=(start, end),
            )

        company = await self._load_company_settings()
        labor_category_id = await self._category_id(LABOR_CATEGORY)
        reimbursement_category_id = await self._category_id(REIMBURSEMENT_CATEGORY)

        entries, personnel, projects = await self._load_entries(start, end)
        self._logger.info("time_entries_loaded", count=len(entries))
        if not entries:
            return PayrollRunResult(
                success=True,
                message="No time entries found for this pay period",
                pay_period=(start, end),
            )

        payrolls = aggregate_time_entries(
            entries,
            personnel,
            projects,
            company.overtime_multiplier,
            company.weekly_overtime_threshold,
        )

        payment_date = next_payment_date(self._today)
        result = PayrollRunResult(
            success=True,
            message=f"Payroll generated for {start} to {end}",
            pay_period=(start, end),
            payment_date=payment_date,
        )

        for payroll in payrolls:
            gross = payroll.gross_amount
            if gross <= 0:
                continue
            try:
                payment = await self._store.insert(
                    "personnel_payments",
                    {
                        "personnel_id": payroll.personnel_id,
                        "personnel_name": payroll.personnel_name,
                        "payment_date": payment_date,
                        "gross_amount": gross,
                        "category_id": labor_category_id,
                        "payment_type": "regular",
                        "pay_period_start": start,
                        "pay_period_end": end,
                        "regular_hours": payroll.regular_hours,
                        "overtime_hours": payroll.overtime_hours,
                        "hourly_rate": payroll.pay_rate,
                        "notes": f"Payroll for {start} to {end}",
                    },
                )
            except StoreError as e:
                self._logger.error(
                    "payment_create_failed",
                    personnel_id=payroll.personnel_id,
                    error=str(e),
                )
                result.errors.append(f"{payroll.personnel_name}: {e}")
                continue

            self._logger.info(
                "payment_created",
                number=payment.get("number"),
                personnel=payroll.personnel_name,
                gross=str(gross),
            )
            await self._create_allocations(payment["id"], payroll, result)
            await self._attach_reimbursements(
                payment["id"], payroll, gross, start, end, reimbursement_category_id, result
            )
            result.payments_created += 1

        self._logger.info(
            "payroll_generation_complete",
            payments_created=result.payments_created,
            errors=len(result.errors),
        )
        return result

    async def _create_allocations(
        self, payment_id: str, payroll: PersonnelPayroll, result: PayrollRunResult
    ) -> None:
        for project in payroll.projects:
            try:
                await self._store.insert(
                    "personnel_payment_allocations",
                    {
                        "payment_id": payment_id,
                        "project_id": project.project_id,
                        "amount": project.amount,
                        "notes": project.allocation_note,
                    },
                )
            except StoreError as e:
                self._logger.error(
                    "allocation_create_failed", payment_id=payment_id, error=str(e)
                )
                result.errors.append(f"allocation {project.project_name}: {e}")

    async def _attach_reimbursements(
        self,
        payment_id: str,
        payroll: PersonnelPayroll,
        gross: Decimal,
        start: date,
        end: date,
        category_id: str | None,
        result: PayrollRunResult,
    ) -> None:
        try:
            rows = await self._store.select(
                "reimbursements",
                filters=[
                    eq("personnel_id", payroll.personnel_id),
                    eq("status", ReimbursementStatus.APPROVED),
                    is_null("payment_id"),
                ],
            )
        except StoreError as e:
            self._logger.error("reimbursement_fetch_failed", error=str(e))
            result.errors.append(f"reimbursements for {payroll.personnel_name}: {e}")
            return

        reimbursements = [Reimbursement.from_row(r) for r in rows]
        if not reimbursements:
            return

        total = sum((r.amount for r in reimbursements), ZERO)
        for reimbursement in reimbursements:
            if not reimbursement.project_id:
                continue
            try:
                await self._store.insert(
                    "personnel_payment_allocations",
                    {
                        "payment_id": payment_id,
                        "project_id": reimbursement.project_id,
                        "amount": reimbursement.amount,
                        "category_id": category_id,
                        "notes": f"Reimbursement: {reimbursement.description}",
                    },
                )
            except StoreError as e:
                self._logger.error("reimbursement_allocation_failed", error=str(e))
                result.errors.append(f"reimbursement allocation {reimbursement.id}: {e}")

        try:
            await self._store.update(
                "reimbursements",
                {"payment_id": payment_id},
                [in_("id", [r.id for r in reimbursements])],
            )
            await self._store.update(
                "personnel_payments",
                {
                    "gross_amount": gross + total,
                    "notes": (
                        f"Payroll for {start} to {end} "
                        f"(includes ${total:.2f} reimbursements)"
                    ),
                },
                [eq("id", payment_id)],
            )
        except StoreError as e:
            self._logger.error("reimbursement_link_failed", payment_id=payment_id, error=str(e))
            result.errors.append(f"reimbursement link {payment_id}: {e}")
            return

        self._logger.info(
            "reimbursements_attached",
            payment_id=payment_id,
            count=len(reimbursements),
            total=f"{total:.2f}",
        )
