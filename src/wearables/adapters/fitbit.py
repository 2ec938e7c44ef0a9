"""Fitbit Web API adapter.

OAuth 2.0 with PKCE.  Client credentials travel as HTTP Basic on the token
endpoint.

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/profile.json                              — encodedId
    /1/user/-/activities/list.json                      — Activity log list
    /1.2/user/-/sleep/date/{start}/{end}.json           — Sleep logs (≤100 days)
    /1/user/-/activities/{resource}/date/{start}/{end}.json
                                                        — steps / calories /
                                                          distance / heart series
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Any

from src.wearables.base import (
    AuthMethod,
    DateRange,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    SleepStage,
    parse_iso_datetime,
    safe_float,
    safe_int,
    utcnow,
)
from src.wearables.http_client import RetryingHttpClient

logger = logging.getLogger("wearables.fitbit")

FITBIT_AUTHORIZE_URL = "https://www.fitbit.com/oauth2/authorize"
FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"
FITBIT_API_BASE = "https://api.fitbit.com"

# Fitbit rejects sleep ranges longer than this
_DEFAULT_SLEEP_MAX_RANGE_DAYS = 100
_DEFAULT_ACTIVITY_PAGE_LIMIT = 100

_FITBIT_SLEEP_STAGE_MAP: dict[str, str] = {
    "deep": "deep",
    "light": "light",
    "rem": "rem",
    "wake": "awake",
    "awake": "awake",
    "restless": "light",
    "asleep": "light",
}

# Substring of the activity name → canonical slug, first match wins
_FITBIT_ACTIVITY_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("run",), "run"),
    (("walk",), "walk"),
    (("bike", "cycl"), "bike"),
    (("swim",), "swim"),
    (("yoga",), "yoga"),
    (("hik",), "hike"),
    (("weight", "strength"), "strength"),
    (("elliptical",), "elliptical"),
]


def map_activity_name(name: str) -> str:
    """Map a free-text Fitbit activity name to a canonical slug."""
    lower = name.lower()
    for keywords, slug in _FITBIT_ACTIVITY_KEYWORDS:
        if any(k in lower for k in keywords):
            return slug
    return "_".join(lower.split())


class FitbitAdapter:
    """Fitbit Web API adapter (OAuth 2.0 + PKCE, Basic client auth)."""

    PROVIDER_ID = "fitbit"
    DISPLAY_NAME = "Fitbit"

    authorize_url = FITBIT_AUTHORIZE_URL
    token_url = FITBIT_TOKEN_URL
    use_pkce = True
    auth_method = AuthMethod.BASIC
    default_scopes: tuple[str, ...] = ("activity", "heartrate", "sleep", "profile")

    def __init__(self, http: RetryingHttpClient, tuning: dict[str, Any] | None = None) -> None:
        """Initialize the Fitbit adapter.

        Args:
            http:   Shared retrying HTTP client.
            tuning: ``providers.fitbit`` section of sdk_config.yaml.
        """
        tuning = tuning or {}
        self._http = http
        self._api_base = str(tuning.get("api_base") or FITBIT_API_BASE).rstrip("/")
        self._sleep_max_days = int(tuning.get("sleep_max_range_days") or _DEFAULT_SLEEP_MAX_RANGE_DAYS)
        self._page_limit = int(tuning.get("activity_page_limit") or _DEFAULT_ACTIVITY_PAGE_LIMIT)

    # ------------------------------------------------------------------
    # ProviderAdapter interface
    # ------------------------------------------------------------------

    async def fetch_external_user_id(self, access_token: str) -> str | None:
        data = await self._get_json("/1/user/-/profile.json", access_token)
        user = data.get("user") or {}
        return user.get("encodedId") or None

    async def fetch_activities(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedActivity]:
        """Page through the activity log list and keep entries inside the range.

        The list endpoint only supports ``afterDate``, so the range end is
        applied client-side against the activity's local start date.
        """
        start_iso = date_range.start.isoformat()
        end_iso = date_range.end.isoformat()
        # afterDate is exclusive
        after = (date_range.start - timedelta(days=1)).isoformat()

        activities: list[NormalizedActivity] = []
        offset = 0
        while True:
            data = await self._get_json(
                "/1/user/-/activities/list.json",
                access_token,
                params={
                    "afterDate": after,
                    "sort": "asc",
                    "offset": offset,
                    "limit": self._page_limit,
                },
            )
            page = [a for a in data.get("activities") or [] if isinstance(a, dict)]

            past_end = False
            for raw in page:
                day = str(raw.get("startTime", ""))[:10]
                if day > end_iso:
                    past_end = True
                    break
                if day >= start_iso:
                    activities.append(self.normalize_activity(raw))

            if past_end or len(page) < self._page_limit:
                break
            offset += len(page)

        return activities

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedSleep]:
        sleeps: list[NormalizedSleep] = []
        for chunk in date_range.chunks(self._sleep_max_days):
            data = await self._get_json(
                f"/1.2/user/-/sleep/date/{chunk.start.isoformat()}/{chunk.end.isoformat()}.json",
                access_token,
            )
            for raw in data.get("sleep") or []:
                sleeps.append(self.normalize_sleep(raw))
        return sleeps

    async def fetch_dailies(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedDaily]:
        """Merge four per-day time series into one record per date."""
        span = f"{date_range.start.isoformat()}/{date_range.end.isoformat()}"
        steps, calories, distance, heart = await asyncio.gather(
            self._get_json(f"/1/user/-/activities/steps/date/{span}.json", access_token),
            self._get_json(f"/1/user/-/activities/calories/date/{span}.json", access_token),
            self._get_json(f"/1/user/-/activities/distance/date/{span}.json", access_token),
            self._get_json(f"/1/user/-/activities/heart/date/{span}.json", access_token),
        )

        merged: dict[str, dict[str, Any]] = {}

        def _entries(payload: dict[str, Any], key: str):
            for entry in payload.get(key) or []:
                day = entry.get("dateTime") if isinstance(entry, dict) else None
                if not day:
                    logger.warning("Skipping Fitbit %s entry without dateTime", key)
                    continue
                yield merged.setdefault(day, {}), entry

        # Zero is a real reading; only a missing or unparseable value maps to None
        for slot, entry in _entries(steps, "activities-steps"):
            slot["steps"] = safe_int(entry.get("value"))
        for slot, entry in _entries(calories, "activities-calories"):
            slot["calories"] = safe_int(entry.get("value"))
        for slot, entry in _entries(distance, "activities-distance"):
            km = safe_float(entry.get("value"))
            slot["distance_m"] = km * 1000 if km is not None else None
        for slot, entry in _entries(heart, "activities-heart"):
            value = entry.get("value") or {}
            slot["resting_hr_bpm"] = safe_int(value.get("restingHeartRate"))

        dailies: list[NormalizedDaily] = []
        for day in sorted(merged):
            fields = merged[day]
            try:
                day_date = date.fromisoformat(day)
            except ValueError:
                logger.warning("Skipping Fitbit series entry with bad date %r", day)
                continue
            dailies.append(
                NormalizedDaily(
                    id=f"fitbit-daily-{day}",
                    provider=self.PROVIDER_ID,
                    date=day_date,
                    steps=fields.get("steps"),
                    calories=fields.get("calories"),
                    distance_m=fields.get("distance_m"),
                    resting_hr_bpm=fields.get("resting_hr_bpm"),
                    raw=fields,
                )
            )
        return dailies

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_activity(self, raw: dict) -> NormalizedActivity:
        """Convert a Fitbit activity log entry to NormalizedActivity.

        Fitbit durations are milliseconds and distances kilometres.
        """
        duration_ms = safe_int(raw.get("activeDuration")) or safe_int(raw.get("duration")) or 0
        start_time = parse_iso_datetime(raw.get("startTime")) or utcnow()
        distance_km = safe_float(raw.get("distance"))
        source = raw.get("source") or {}

        return NormalizedActivity(
            id=str(raw.get("logId", "")),
            provider=self.PROVIDER_ID,
            activity_type=map_activity_name(str(raw.get("activityName") or "other")),
            start_time=start_time,
            end_time=start_time + timedelta(milliseconds=duration_ms),
            duration_seconds=round(duration_ms / 1000),
            calories=safe_int(raw.get("calories")),
            distance_m=distance_km * 1000 if distance_km is not None else None,
            steps=safe_int(raw.get("steps")),
            avg_hr_bpm=safe_int(raw.get("averageHeartRate")),
            device=source.get("name") or self.PROVIDER_ID,
            raw=raw,
        )

    def normalize_sleep(self, raw: dict) -> NormalizedSleep:
        """Convert a Fitbit sleep log to NormalizedSleep.

        Stage totals come from ``levels.summary`` (minutes); the hypnogram
        from ``levels.data``.
        """
        levels = raw.get("levels") or {}
        summary = levels.get("summary") or {}

        def _stage_seconds(key: str) -> int | None:
            minutes = safe_int((summary.get(key) or {}).get("minutes"))
            return minutes * 60 if minutes is not None else None

        stages: list[SleepStage] = []
        for entry in levels.get("data") or []:
            stage_start = parse_iso_datetime(entry.get("dateTime"))
            seconds = safe_int(entry.get("seconds")) or 0
            if stage_start is None:
                continue
            level = str(entry.get("level", "")).lower()
            stages.append(
                SleepStage(
                    stage=_FITBIT_SLEEP_STAGE_MAP.get(level, level),
                    start_time=stage_start,
                    end_time=stage_start + timedelta(seconds=seconds),
                    duration_seconds=seconds,
                )
            )

        start_time = parse_iso_datetime(raw.get("startTime")) or utcnow()
        end_time = parse_iso_datetime(raw.get("endTime")) or start_time
        try:
            sleep_date = date.fromisoformat(str(raw.get("dateOfSleep")))
        except ValueError:
            sleep_date = end_time.date()

        return NormalizedSleep(
            id=str(raw.get("logId", "")),
            provider=self.PROVIDER_ID,
            sleep_date=sleep_date,
            start_time=start_time,
            end_time=end_time,
            duration_seconds=round((safe_int(raw.get("duration")) or 0) / 1000),
            deep_seconds=_stage_seconds("deep"),
            light_seconds=_stage_seconds("light"),
            rem_seconds=_stage_seconds("rem"),
            awake_seconds=_stage_seconds("wake"),
            sleep_score=safe_int(raw.get("efficiency")),
            stages=stages,
            raw=raw,
        )

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _get_json(
        self, path: str, access_token: str, params: dict[str, Any] | None = None
    ) -> dict:
        response = await self._http.get(
            f"{self._api_base}{path}",
            headers={"Authorization": f"Bearer {access_token}"},
            params=params,
        )
        return response.data if isinstance(response.data, dict) else {}
