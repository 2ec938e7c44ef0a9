"""Historical backfill for a connected (subject, provider) pair.

Pulls every requested data type over a past window in one call.  The
requested fetches run concurrently; a failure in any of them fails the whole
backfill (nothing partial is returned).

Usage::

    window = resolve_window(days_back=30)
    result = await run_backfill(engine, "user-123", window, [DataType.SLEEP])
    logger.info("Backfilled %s", result.counts)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Iterable

from src.wearables.base import (
    DataType,
    DateRange,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
)

if TYPE_CHECKING:
    from src.wearables.engine import ConnectionEngine

logger = logging.getLogger("wearables.sync.backfill")

DEFAULT_DAYS_BACK = 60


@dataclass
class BackfillResult:
    """Everything fetched by one backfill run.

    Attributes:
        provider_id: Provider slug.
        subject_id:  Subject the data belongs to.
        date_range:  Window that was fetched.
        data_types:  Data types that were requested.
        activities:  Activities (empty unless requested).
        sleep:       Sleep sessions (empty unless requested).
        dailies:     Daily summaries (empty unless requested).
    """

    provider_id: str
    subject_id: str
    date_range: DateRange
    data_types: list[DataType]
    activities: list[NormalizedActivity] = field(default_factory=list)
    sleep: list[NormalizedSleep] = field(default_factory=list)
    dailies: list[NormalizedDaily] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return {
            DataType.ACTIVITIES.value: len(self.activities),
            DataType.SLEEP.value: len(self.sleep),
            DataType.DAILIES.value: len(self.dailies),
        }


def resolve_window(
    days_back: int | None = None,
    date_range: DateRange | None = None,
    default_days_back: int = DEFAULT_DAYS_BACK,
    today: date | None = None,
) -> DateRange:
    """Pick the backfill window.

    An explicit ``date_range`` wins; otherwise the last ``days_back`` days
    (falling back to ``default_days_back``) up to and including today.
    """
    if date_range is not None:
        return date_range
    return DateRange.last_days(default_days_back if days_back is None else days_back, today)


def parse_data_types(
    data_types: Iterable[DataType | str] | None,
    default: Iterable[DataType],
) -> list[DataType]:
    """Coerce requested data types, preserving order and dropping duplicates.

    Raises:
        ValueError: On an unknown data type name.
    """
    requested = list(default) if data_types is None else list(data_types)
    out: list[DataType] = []
    for item in requested:
        try:
            data_type = DataType(item)
        except ValueError:
            raise ValueError(
                f"Unknown data type {item!r}; expected one of {[t.value for t in DataType]}"
            ) from None
        if data_type not in out:
            out.append(data_type)
    return out


async def run_backfill(
    engine: "ConnectionEngine",
    subject_id: str,
    date_range: DateRange,
    data_types: list[DataType],
) -> BackfillResult:
    """Fetch every requested data type for ``date_range`` concurrently.

    Args:
        engine:     Connection engine for the provider.
        subject_id: Subject to backfill.
        date_range: Window to fetch.
        data_types: Data types to fetch.

    Returns:
        BackfillResult; unrequested types are empty lists.

    Raises:
        Whatever the first failing fetch raised (e.g. MissingTokenError,
        TokenRefreshError, ProviderAPIError).
    """
    fetchers = {
        DataType.ACTIVITIES: engine.get_activities,
        DataType.SLEEP: engine.get_sleep,
        DataType.DAILIES: engine.get_dailies,
    }

    logger.info(
        "Backfill %s for %s: %s → %s (%s)",
        engine.provider_id, subject_id, date_range.start, date_range.end,
        ", ".join(t.value for t in data_types) or "nothing",
    )

    results = await asyncio.gather(
        *(fetchers[t](subject_id, date_range) for t in data_types)
    )

    result = BackfillResult(
        provider_id=engine.provider_id,
        subject_id=subject_id,
        date_range=date_range,
        data_types=list(data_types),
    )
    for data_type, rows in zip(data_types, results):
        setattr(result, data_type.value, rows)

    logger.info("Backfill %s for %s complete: %s", engine.provider_id, subject_id, result.counts)
    return result
