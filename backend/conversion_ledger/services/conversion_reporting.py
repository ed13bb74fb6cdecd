"""Ledger query and reporting service.

WHAT:
    Filtered, paginated listing, aggregate summary and CSV export over the
    conversion ledger.

WHY:
    Operators reconcile revenue against the payment provider. The listing,
    the summary and the export must agree, so they share one predicate.

HOW:
    - ConversionFilters is parsed once and applied by `_filtered()`
    - Listing orders by created_at DESC, id DESC (stable across pages)
    - Summary aggregates in SQL over the full filtered set, not the page
    - The export is rendered completely in memory before returning, so a
      store failure surfaces as an error instead of a truncated file
"""

import csv
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from ..models import ConversionRecord

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "ID",
    "Customer Email",
    "Amount (minor units)",
    "Currency",
    "Status",
    "Created At",
    "Source Event ID",
]


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite returns naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_bound(raw: str, label: str, end_of_range: bool) -> datetime:
    raw = raw.strip()
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            if end_of_range:
                # Date-only end bound covers the whole day
                day = day + timedelta(days=1)
            return datetime.combine(day, time.min, tzinfo=timezone.utc)
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError as e:
        raise ValueError(f"Invalid {label}: {raw!r}") from e


@dataclass(frozen=True)
class ConversionFilters:
    email: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    # True when end_date is the first instant after a date-only bound
    end_exclusive: bool = False

    @classmethod
    def parse(
        cls,
        email: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> "ConversionFilters":
        """Build filters from query-string values.

        Raises:
            ValueError: A date is not ISO-8601, or the range is inverted
        """
        start = _parse_bound(start_date, "startDate", end_of_range=False) if start_date else None
        end = _parse_bound(end_date, "endDate", end_of_range=True) if end_date else None
        end_exclusive = bool(end_date) and len(end_date.strip()) == 10

        if start and end and (end < start or (end_exclusive and end == start)):
            raise ValueError("startDate must not be after endDate")

        return cls(
            email=email.strip() if email and email.strip() else None,
            start_date=start,
            end_date=end,
            end_exclusive=end_exclusive,
        )


@dataclass
class LedgerSummary:
    total_amount: int
    total_conversions: int


class ConversionReportService:
    """Read side of the ledger.

    Usage:
        ```python
        reports = ConversionReportService(db)
        filters = ConversionFilters.parse(email="example.com")
        rows, total = reports.list(filters, page=1, page_size=20)
        summary = reports.summarize(filters)
        ```
    """

    def __init__(self, db: Session):
        self.db = db

    def _filtered(self, query: Query, filters: ConversionFilters) -> Query:
        if filters.email:
            query = query.filter(
                func.lower(ConversionRecord.customer_email).contains(
                    filters.email.lower(), autoescape=True
                )
            )
        if filters.start_date:
            query = query.filter(ConversionRecord.created_at >= filters.start_date)
        if filters.end_date:
            if filters.end_exclusive:
                query = query.filter(ConversionRecord.created_at < filters.end_date)
            else:
                query = query.filter(ConversionRecord.created_at <= filters.end_date)
        return query

    def _ordered(self, filters: ConversionFilters) -> Query:
        return self._filtered(self.db.query(ConversionRecord), filters).order_by(
            ConversionRecord.created_at.desc(),
            ConversionRecord.id.desc(),
        )

    def list(
        self,
        filters: ConversionFilters,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[ConversionRecord], int]:
        """One page of matching records plus the total match count."""
        page = max(page, 1)
        page_size = max(page_size, 1)

        total = self._filtered(self.db.query(ConversionRecord), filters).count()
        rows = self._ordered(filters).offset((page - 1) * page_size).limit(page_size).all()
        return rows, total

    def summarize(self, filters: ConversionFilters) -> LedgerSummary:
        """Sum and count over every matching record (0/0 when none match)."""
        query = self.db.query(
            func.coalesce(func.sum(ConversionRecord.amount), 0),
            func.count(ConversionRecord.id),
        )
        total_amount, total_conversions = self._filtered(query, filters).one()
        return LedgerSummary(
            total_amount=int(total_amount or 0),
            total_conversions=int(total_conversions or 0),
        )

    def export_csv(self, filters: ConversionFilters) -> bytes:
        """Every matching record as UTF-8 CSV with BOM, all fields quoted."""
        rows = self._ordered(filters).all()

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
        writer.writerow(CSV_HEADERS)
        for record in rows:
            writer.writerow([
                str(record.id),
                record.customer_email,
                record.amount,
                record.currency,
                record.status,
                as_utc(record.created_at).isoformat(),
                record.source_event_id,
            ])

        logger.info(f"[REPORTING] Exported {len(rows)} conversion(s)")
        # BOM so spreadsheet apps detect UTF-8
        return ("\ufeff" + buffer.getvalue()).encode("utf-8")
