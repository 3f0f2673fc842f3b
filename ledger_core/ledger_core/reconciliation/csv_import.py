"""Parse provider settlement exports in ``reference,amount,date`` form.

The first line is a header and is always skipped.  Lines are split on
bare commas: there is no quoting or escaping, so a reference containing a
comma cannot be imported.  Existing exports rely on this lenient format
(extra trailing columns are ignored), so it is kept as is.

Bad rows never abort the import.  Each one is reported with its 1-based
line number (the header is line 1) and the reason it was rejected.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation

from ledger_core.models.reconciliation import CsvImportResult, CsvRowError, ExternalTransaction

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def _parse_date(raw: str) -> datetime:
    """Parse an ISO date or datetime; naive values are taken as UTC."""
    value = raw.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = datetime.combine(date.fromisoformat(value), datetime.min.time())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_reconciliation_csv(text: str, *, provider: str | None = None) -> CsvImportResult:
    """Parse *text* into external transactions plus per-row errors.

    Parameters
    ----------
    text:
        Whole file contents.  ``\\r\\n`` and ``\\n`` line endings are accepted.
    provider:
        Optional provider name stamped onto every parsed row.

    Returns
    -------
    CsvImportResult
        Valid rows in file order and one :class:`CsvRowError` per rejected row.
    """
    result = CsvImportResult()
    seen: set[str] = set()

    lines = text.splitlines()
    for index, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue

        columns = line.split(",")
        if len(columns) < 2:
            result.errors.append(CsvRowError(row_number=index, reason="expected reference,amount[,date]", raw=line))
            continue

        reference = columns[0].strip()
        if not reference:
            result.errors.append(CsvRowError(row_number=index, reason="missing reference", raw=line))
            continue

        try:
            amount = Decimal(columns[1].strip()).quantize(_CENTS)
        except (InvalidOperation, ValueError):
            result.errors.append(
                CsvRowError(row_number=index, reason=f"invalid amount {columns[1].strip()!r}", raw=line)
            )
            continue
        if not amount.is_finite() or amount <= 0:
            result.errors.append(CsvRowError(row_number=index, reason="amount must be positive", raw=line))
            continue

        transaction_date: datetime | None = None
        if len(columns) >= 3 and columns[2].strip():
            try:
                transaction_date = _parse_date(columns[2])
            except ValueError:
                result.errors.append(
                    CsvRowError(row_number=index, reason=f"invalid date {columns[2].strip()!r}", raw=line)
                )
                continue

        if reference in seen:
            result.errors.append(CsvRowError(row_number=index, reason="duplicate reference in file", raw=line))
            continue
        seen.add(reference)

        result.rows.append(
            ExternalTransaction(
                reference=reference,
                amount=amount,
                transaction_date=transaction_date,
                provider=provider,
                raw_data={"line": index},
            )
        )

    logger.info("Parsed reconciliation CSV: %d row(s), %d error(s)", len(result.rows), len(result.errors))
    return result
