# app/core/dispatch/payouts.py
"""
Pro payout computation and the payout ledger.

A job's payout comes from the first lookup strategy that yields an amount:

1. ``line_items``        sum of the per-line pro payouts
2. ``metadata_estimate`` the estimate stored on the job, or one derived
                         from the pre-discount subtotal
3. ``category_default``  flat default for the service category

The floor/cap guardrail lives in ``clamp_payout`` and nowhere else.

Team jobs split the total between a primary and a secondary pro.  Ledger
entries are written per (job, pro), only once that pro's assignment is
``completed``, and never twice.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Callable, Optional, Sequence

from app.config import settings
from app.core.dispatch.domain import (
    AssignmentState,
    Job,
    JobLine,
    PayoutRole,
    SplitMode,
    TeamSplit,
    to_money,
)
from app.core.dispatch.errors import DispatchError, NotFoundError
from app.core.dispatch.ports import (
    AsyncAssignmentStore,
    AsyncJobStore,
    AsyncPayoutLedgerStore,
    CategoryResolver,
)
from app.infra.db_resilience_async import RetryPolicy, default_retry_policy
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

ZERO = Decimal("0.00")


# ============================================================================
# POLICY
# ============================================================================

def _dec(value: float) -> Decimal:
    return Decimal(str(value))


PAYOUT_PCT_OF_SUBTOTAL = _dec(settings.payout_pct_of_subtotal)
MIN_PAYOUT_FLOOR = _dec(settings.payout_min_floor)
MAX_PAYOUT_CAP_PCT = _dec(settings.payout_max_cap_pct)

# Per-line tier policy, keyed by variant code
MATERIALS_PCT = {"BYO": Decimal("0.00"), "BASE": Decimal("0.28"), "H2S": Decimal("0.38")}
PRO_PCT_ON_LABOR = {"BYO": Decimal("0.65"), "BASE": Decimal("0.55"), "H2S": Decimal("0.50")}

CATEGORY_DEFAULTS: dict[str, Decimal] = {
    "tv": Decimal("65.00"),
    "camera": Decimal("85.00"),
    "thermostat": Decimal("55.00"),
    "lock": Decimal("60.00"),
}
GENERIC_DEFAULT = Decimal("50.00")

# Keyword inference on service_id, most specific family first
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("camera", ("camera", "cam", "security")),
    ("lock", ("lock",)),
    ("thermostat", ("thermostat", "hvac")),
    ("tv", ("tv", "mount")),
)

# Catalog category names → payout family
_CATEGORY_ALIASES = {
    "cameras": "camera",
    "security": "camera",
    "locks": "lock",
    "smart_lock": "lock",
    "tv_mount": "tv",
    "mounting": "tv",
    "mount": "tv",
}


# ============================================================================
# PURE RULES
# ============================================================================

def clamp_payout(proposed: Decimal, reference: Decimal) -> Decimal:
    """
    Apply the payout guardrails.

    Floor at ``MIN_PAYOUT_FLOOR``, then cap at ``MAX_PAYOUT_CAP_PCT`` of
    ``reference`` (the customer price).  The cap is applied last, so it wins
    when it is below the floor.
    """
    floored = max(proposed, MIN_PAYOUT_FLOOR)
    capped = min(floored, reference * MAX_PAYOUT_CAP_PCT)
    return to_money(max(capped, ZERO))


def estimate_payout(subtotal: Any) -> Optional[Decimal]:
    """
    Pro payout estimate from an order's pre-discount subtotal.

    ``clamp(floor(subtotal × 0.60), 35, subtotal × 0.80)``.  Promotional
    discounts never reach this function: the business absorbs them.
    Returns None for a non-positive or non-finite subtotal.
    """
    subtotal = to_money(subtotal)
    if not subtotal.is_finite() or subtotal <= 0:
        return None
    base = (subtotal * PAYOUT_PCT_OF_SUBTOTAL).quantize(Decimal("1"), rounding=ROUND_FLOOR)
    return clamp_payout(base, subtotal)


def _tier(variant_code: Optional[str]) -> str:
    code = (variant_code or "").strip().upper()
    return code if code in MATERIALS_PCT else "BASE"


def line_payout(line: JobLine) -> Decimal:
    """Pro payout for one line item, from its customer total and variant tier."""
    price = to_money(line.line_total)
    if price <= 0:
        price = to_money(to_money(line.unit_price) * (line.qty or 1))
    if price <= 0:
        return ZERO

    tier = _tier(line.variant_code)
    labor = max(ZERO, price - price * MATERIALS_PCT[tier])
    return clamp_payout(labor * PRO_PCT_ON_LABOR[tier], price)


def normalize_category(category: Optional[str]) -> Optional[str]:
    if not category:
        return None
    key = category.strip().lower()
    key = _CATEGORY_ALIASES.get(key, key)
    return key if key in CATEGORY_DEFAULTS else None


def infer_category(service_id: Optional[str]) -> Optional[str]:
    text = (service_id or "").lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return None


def category_default(category: Optional[str]) -> Decimal:
    return CATEGORY_DEFAULTS.get(normalize_category(category) or "", GENERIC_DEFAULT)


def split_team_payout(total: Decimal, split: TeamSplit) -> tuple[Decimal, Decimal]:
    """
    ``(primary, secondary)`` shares of a team job.

    percent: ``primary = round(total × primary_percent) / 100`` and the
    secondary gets the remainder, so the parts always sum to the total.
    flat: each pro gets their configured amount regardless of the total.
    """
    if split.split_mode == SplitMode.FLAT:
        return to_money(split.primary_flat), to_money(split.secondary_flat)

    total = to_money(total)
    percent = Decimal(str(split.primary_percent if split.primary_percent is not None else 50))
    primary = to_money((total * percent).quantize(Decimal("1"), rounding=ROUND_HALF_UP) / 100)
    return primary, to_money(total - primary)


# ============================================================================
# LOOKUP STRATEGIES
# ============================================================================

@dataclass(frozen=True)
class PayoutResult:
    amount: Decimal
    source: str
    derived: bool = False  # metadata estimate computed here rather than read


def _from_line_items(job: Job, lines: Sequence[JobLine], category: Optional[str]) -> Optional[PayoutResult]:
    total = ZERO
    for line in lines:
        stored = to_money(line.calc_pro_payout_total) if line.calc_pro_payout_total is not None else ZERO
        total += stored if stored > 0 else line_payout(line)
    if total > 0:
        return PayoutResult(to_money(total), "line_items")
    return None


def _from_metadata(job: Job, lines: Sequence[JobLine], category: Optional[str]) -> Optional[PayoutResult]:
    metadata = job.metadata or {}

    try:
        stored = to_money(metadata.get("estimated_payout"))
        if not stored.is_finite():
            stored = ZERO
    except ArithmeticError:
        stored = ZERO
    if stored > 0:
        return PayoutResult(stored, "metadata_estimate")

    try:
        estimate = estimate_payout(metadata.get("subtotal"))
    except ArithmeticError:
        estimate = None
    if estimate is not None and estimate > 0:
        return PayoutResult(estimate, "metadata_estimate", derived=True)
    return None


def _from_category(job: Job, lines: Sequence[JobLine], category: Optional[str]) -> Optional[PayoutResult]:
    return PayoutResult(category_default(category), "category_default")


Strategy = Callable[[Job, Sequence[JobLine], Optional[str]], Optional[PayoutResult]]

PAYOUT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("line_items", _from_line_items),
    ("metadata_estimate", _from_metadata),
    ("category_default", _from_category),
)


# ============================================================================
# LEDGER OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class PayoutRecord:
    """Outcome of one ledger write attempt for a (job, pro) pair."""

    job_id: str
    pro_id: str
    status: str                     # created | exists | not_completed | no_share | zero_amount | solo_taken
    amount: Optional[Decimal] = None
    note: Optional[str] = None
    source: Optional[str] = None
    entry_id: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.status == "created"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount) if self.amount is not None else None
        return data


@dataclass
class BackfillReport:
    scanned: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# ============================================================================
# CALCULATOR
# ============================================================================

class PayoutCalculator:
    def __init__(
        self,
        jobs: AsyncJobStore,
        assignments: AsyncAssignmentStore,
        ledger: AsyncPayoutLedgerStore,
        categories: Optional[CategoryResolver] = None,
        retry: Optional[RetryPolicy] = None,
        strategies: Sequence[tuple[str, Strategy]] = PAYOUT_STRATEGIES,
    ):
        self.jobs = jobs
        self.assignments = assignments
        self.ledger = ledger
        self.categories = categories
        self.retry = retry or default_retry_policy()
        self.strategies = tuple(strategies)

    def compute(
        self,
        job: Job,
        lines: Sequence[JobLine] = (),
        category: Optional[str] = None,
    ) -> PayoutResult:
        """First strategy that yields an amount wins."""
        for name, strategy in self.strategies:
            result = strategy(job, lines, category)
            if result is not None:
                logger.debug(f"Payout strategy {name} → {result.amount}", extra={"job_id": job.job_id})
                return result
        return PayoutResult(GENERIC_DEFAULT, "category_default")

    async def compute_for_job(self, job: Job) -> PayoutResult:
        """Load lines and category, compute, and persist a derived estimate."""
        lines = await self.retry.run(lambda: self.jobs.get_lines(job.job_id), name="get_job_lines")
        service_id = job.service_id or (lines[0].service_id if lines else "")
        category = await self.resolve_category(service_id)

        result = self.compute(job, lines, category)

        if result.derived:
            try:
                await self.jobs.set_estimated_payout(job.job_id, result.amount)
            except Exception as exc:
                logger.warning(f"Could not persist estimated payout: {exc}", extra={"job_id": job.job_id})
        return result

    async def resolve_category(self, service_id: Optional[str]) -> Optional[str]:
        """Catalog category when the catalog knows the service, else keyword inference."""
        if service_id and self.categories is not None:
            try:
                category = normalize_category(await self.categories.category_for(service_id))
            except Exception as exc:
                logger.warning(f"Category lookup failed for {service_id}: {exc}")
                category = None
            if category:
                return category
        return infer_category(service_id)

    async def record_for_completion(self, job_id: str, pro_id: str) -> PayoutRecord:
        """
        Write the ledger entry owed to ``pro_id`` for ``job_id``.

        Skips (without error) when the pro's assignment is not completed,
        an entry already exists, the pro has no share of a team job,
        another pro already holds the solo entry, or the amount is zero.
        """
        context = {"job_id": job_id, "pro_id": pro_id}

        assignment = await self.retry.run(
            lambda: self.assignments.find(job_id, pro_id), name="find_assignment"
        )
        if assignment is None or assignment.state != AssignmentState.COMPLETED:
            AppMetrics.ledger_skipped("not_completed")
            logger.info("Ledger write skipped: assignment not completed", extra=context)
            return PayoutRecord(job_id, pro_id, "not_completed")

        if await self.retry.run(lambda: self.ledger.exists(job_id, pro_id), name="ledger_exists"):
            AppMetrics.ledger_skipped("exists")
            logger.debug("Ledger entry already exists", extra=context)
            return PayoutRecord(job_id, pro_id, "exists")

        job = await self.retry.run(lambda: self.jobs.get(job_id), name="get_job")
        if job is None:
            raise NotFoundError("Job not found")

        result = await self.compute_for_job(job)
        split = await self.retry.run(lambda: self.jobs.get_team_split(job_id), name="get_team_split")

        amount, role = result.amount, PayoutRole.SOLO
        if split is not None and split.is_team:
            primary, secondary = split_team_payout(result.amount, split)
            if pro_id == split.primary_pro_id:
                amount, role = primary, PayoutRole.PRIMARY
            elif pro_id == split.secondary_pro_id:
                amount, role = secondary, PayoutRole.SECONDARY
            else:
                AppMetrics.ledger_skipped("no_share")
                logger.warning("Pro completed a team job but holds no share of the split", extra=context)
                return PayoutRecord(job_id, pro_id, "no_share", source=result.source)

        if role == PayoutRole.SOLO:
            entries = await self.retry.run(lambda: self.ledger.list_for_job(job_id), name="ledger_for_job")
            holder = next((e for e in entries if e.note == PayoutRole.SOLO.value and e.pro_id != pro_id), None)
            if holder is not None:
                AppMetrics.ledger_skipped("solo_taken")
                logger.warning(
                    f"Ledger write refused: solo job already paid to {holder.pro_id}",
                    extra=context,
                )
                return PayoutRecord(job_id, pro_id, "solo_taken", source=result.source)

        if amount <= 0:
            AppMetrics.ledger_skipped("zero_amount")
            logger.info(f"Ledger write skipped: zero {role.value} amount", extra=context)
            return PayoutRecord(job_id, pro_id, "zero_amount", amount=amount, note=role.value, source=result.source)

        entry = await self.retry.run(
            lambda: self.ledger.insert(job_id, pro_id, amount, note=role.value, source=result.source),
            name="ledger_insert",
        )
        if entry is None:
            # Lost to a concurrent writer; the unique indexes kept it single
            AppMetrics.ledger_skipped("exists")
            return PayoutRecord(job_id, pro_id, "exists")

        AppMetrics.ledger_written(result.source, role.value)
        logger.info(
            f"Ledger entry created: {role.value} ${amount} via {result.source}",
            extra=context,
        )
        return PayoutRecord(
            job_id, pro_id, "created",
            amount=amount, note=role.value, source=result.source, entry_id=entry.entry_id,
        )

    async def backfill(self, pro_id: Optional[str] = None) -> BackfillReport:
        """
        Write missing ledger entries for every completed assignment.

        Safe to re-run: existing entries are skipped.  A failure on one
        assignment is counted and the walk continues.
        """
        report = BackfillReport()
        completed = await self.retry.run(
            lambda: self.assignments.list_completed(pro_id), name="list_completed"
        )

        for assignment in completed:
            report.scanned += 1
            try:
                record = await self.record_for_completion(assignment.job_id, assignment.pro_id)
            except DispatchError as exc:
                report.errors += 1
                logger.warning(
                    f"Backfill failed for assignment: {exc.detail}",
                    extra={"job_id": assignment.job_id, "pro_id": assignment.pro_id},
                )
                continue
            except Exception:
                report.errors += 1
                logger.error(
                    "Backfill failed for assignment",
                    extra={"job_id": assignment.job_id, "pro_id": assignment.pro_id},
                    exc_info=True,
                )
                continue

            if record.created:
                report.created += 1
            else:
                report.skipped += 1

        logger.info(
            f"Payout backfill done: scanned={report.scanned} created={report.created} "
            f"skipped={report.skipped} errors={report.errors}"
        )
        return report
