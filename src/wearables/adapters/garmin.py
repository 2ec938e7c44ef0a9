"""Garmin Health (Wellness) API adapter.

OAuth 2.0 with PKCE.  Client credentials travel in the token request body.

API base: https://apis.garmin.com

Endpoints used:
    /wellness-api/rest/user/id     — Garmin user identifier
    /wellness-api/rest/activities  — User activities (workouts)
    /wellness-api/rest/sleeps      — Sleep summaries
    /wellness-api/rest/dailies     — Daily activity summaries

Data endpoints take an upload window in Unix seconds
(``uploadStartTimeInSeconds`` / ``uploadEndTimeInSeconds``).
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from src.wearables.base import (
    AuthMethod,
    DateRange,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    SleepStage,
    from_epoch,
    safe_float,
    safe_int,
)
from src.wearables.http_client import RetryingHttpClient

logger = logging.getLogger("wearables.garmin")

GARMIN_AUTHORIZE_URL = "https://connect.garmin.com/oauth2Confirm"
GARMIN_TOKEN_URL = "https://diauth.garmin.com/di-oauth2-service/oauth/token"
GARMIN_API_BASE = "https://apis.garmin.com"

_USER_ID_PATH = "/wellness-api/rest/user/id"
_ACTIVITIES_PATH = "/wellness-api/rest/activities"
_SLEEPS_PATH = "/wellness-api/rest/sleeps"
_DAILIES_PATH = "/wellness-api/rest/dailies"

# Garmin activity type → canonical slug; unmapped types are lowercased
_GARMIN_ACTIVITY_TYPE_MAP: dict[str, str] = {
    "RUNNING": "run",
    "CYCLING": "bike",
    "SWIMMING": "swim",
    "WALKING": "walk",
    "HIKING": "hike",
    "STRENGTH_TRAINING": "strength",
    "YOGA": "yoga",
    "INDOOR_CYCLING": "bike_indoor",
    "TREADMILL_RUNNING": "run_indoor",
    "ELLIPTICAL": "elliptical",
}

_GARMIN_SLEEP_STAGE_MAP: dict[str, str] = {
    "deep": "deep",
    "light": "light",
    "rem": "rem",
    "awake": "awake",
}


class GarminAdapter:
    """Garmin Health API adapter (OAuth 2.0 + PKCE).

    Covers Forerunner, Fenix, Vivoactive, Vivosmart and Venu devices synced
    through Garmin Connect.
    """

    PROVIDER_ID = "garmin"
    DISPLAY_NAME = "Garmin Connect"

    authorize_url = GARMIN_AUTHORIZE_URL
    token_url = GARMIN_TOKEN_URL
    use_pkce = True
    auth_method = AuthMethod.BODY
    default_scopes: tuple[str, ...] = ("WELLNESS_READ", "ACTIVITY_READ", "SLEEP_READ")

    def __init__(self, http: RetryingHttpClient, tuning: dict[str, Any] | None = None) -> None:
        """Initialize the Garmin adapter.

        Args:
            http:   Shared retrying HTTP client.
            tuning: ``providers.garmin`` section of sdk_config.yaml.
        """
        tuning = tuning or {}
        self._http = http
        self._api_base = str(tuning.get("api_base") or GARMIN_API_BASE).rstrip("/")

    # ------------------------------------------------------------------
    # ProviderAdapter interface
    # ------------------------------------------------------------------

    async def fetch_external_user_id(self, access_token: str) -> str | None:
        response = await self._http.get(
            f"{self._api_base}{_USER_ID_PATH}", headers=_bearer(access_token)
        )
        data = response.data if isinstance(response.data, dict) else {}
        user_id = data.get("userId")
        return str(user_id) if user_id is not None else None

    async def fetch_activities(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedActivity]:
        rows = await self._get_window(_ACTIVITIES_PATH, access_token, date_range, "activities", "activityList")
        return [self.normalize_activity(row) for row in rows]

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedSleep]:
        rows = await self._get_window(_SLEEPS_PATH, access_token, date_range, "sleeps", "sleepList")
        return [self.normalize_sleep(row) for row in rows]

    async def fetch_dailies(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedDaily]:
        rows = await self._get_window(_DAILIES_PATH, access_token, date_range, "dailies", "userDailySummaries")
        return [self.normalize_daily(row) for row in rows]

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_activity(self, raw: dict) -> NormalizedActivity:
        """Convert a Garmin activity summary to NormalizedActivity.

        Args:
            raw: Single Garmin activity dict.

        Returns:
            NormalizedActivity.
        """
        start_ts = safe_int(raw.get("startTimeInSeconds")) or 0
        duration = safe_int(raw.get("durationInSeconds")) or 0

        activity_type_raw = str(raw.get("activityType") or "other")
        activity_type = _GARMIN_ACTIVITY_TYPE_MAP.get(
            activity_type_raw.upper(), activity_type_raw.lower()
        )

        return NormalizedActivity(
            id=str(raw.get("activityId", raw.get("summaryId", ""))),
            provider=self.PROVIDER_ID,
            activity_type=activity_type,
            start_time=from_epoch(start_ts),
            end_time=from_epoch(start_ts + duration),
            duration_seconds=duration,
            calories=safe_int(raw.get("activeKilocalories")),
            distance_m=safe_float(raw.get("distanceInMeters")),
            steps=safe_int(raw.get("steps")),
            avg_hr_bpm=safe_int(raw.get("averageHeartRateInBeatsPerMinute")),
            max_hr_bpm=safe_int(raw.get("maxHeartRateInBeatsPerMinute")),
            device=raw.get("deviceName") or self.PROVIDER_ID,
            raw=raw,
        )

    def normalize_sleep(self, raw: dict) -> NormalizedSleep:
        """Convert a Garmin sleep summary to NormalizedSleep.

        Stages come from ``sleepLevelsMap`` (level → list of periods) and are
        flattened into a hypnogram ordered by start time.

        Args:
            raw: Single Garmin sleep dict.

        Returns:
            NormalizedSleep.
        """
        start_ts = safe_int(raw.get("startTimeInSeconds")) or 0
        duration = safe_int(raw.get("durationInSeconds")) or 0

        stages: list[SleepStage] = []
        for level, periods in (raw.get("sleepLevelsMap") or {}).items():
            stage = _GARMIN_SLEEP_STAGE_MAP.get(level.lower(), level.lower())
            for period in periods or []:
                p_start = safe_int(period.get("startTimeInSeconds"))
                p_end = safe_int(period.get("endTimeInSeconds"))
                if p_start is None or p_end is None:
                    continue
                stages.append(
                    SleepStage(
                        stage=stage,
                        start_time=from_epoch(p_start),
                        end_time=from_epoch(p_end),
                        duration_seconds=p_end - p_start,
                    )
                )
        stages.sort(key=lambda s: s.start_time)

        score = raw.get("overallSleepScore")
        sleep_score = safe_int(score.get("value")) if isinstance(score, dict) else safe_int(score)

        calendar_date = raw.get("calendarDate")
        return NormalizedSleep(
            id=str(raw.get("summaryId") or calendar_date),
            provider=self.PROVIDER_ID,
            sleep_date=_parse_calendar_date(calendar_date, from_epoch(start_ts)),
            start_time=from_epoch(start_ts),
            end_time=from_epoch(start_ts + duration),
            duration_seconds=duration,
            deep_seconds=safe_int(raw.get("deepSleepDurationInSeconds")),
            light_seconds=safe_int(raw.get("lightSleepDurationInSeconds")),
            rem_seconds=safe_int(raw.get("remSleepInSeconds")),
            awake_seconds=safe_int(raw.get("awakeDurationInSeconds")),
            sleep_score=sleep_score,
            stages=stages,
            raw=raw,
        )

    def normalize_daily(self, raw: dict) -> NormalizedDaily:
        """Convert a Garmin daily summary to NormalizedDaily."""
        calendar_date = raw.get("calendarDate")
        start_ts = safe_int(raw.get("startTimeInSeconds")) or 0
        active_secs = safe_int(raw.get("activeTimeInSeconds"))

        return NormalizedDaily(
            id=str(raw.get("summaryId") or calendar_date),
            provider=self.PROVIDER_ID,
            date=_parse_calendar_date(calendar_date, from_epoch(start_ts)),
            steps=safe_int(raw.get("steps")),
            calories=safe_int(raw.get("activeKilocalories")),
            distance_m=safe_float(raw.get("distanceInMeters")),
            active_minutes=round(active_secs / 60) if active_secs is not None else None,
            resting_hr_bpm=safe_int(raw.get("restingHeartRateInBeatsPerMinute")),
            avg_hr_bpm=safe_int(raw.get("averageHeartRateInBeatsPerMinute")),
            max_hr_bpm=safe_int(raw.get("maxHeartRateInBeatsPerMinute")),
            stress_avg=safe_int(raw.get("averageStressLevel")),
            floors_climbed=safe_int(raw.get("floorsClimbed")),
            raw=raw,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def upload_window(date_range: DateRange) -> dict[str, int]:
        """Upload window params: start-of-day UTC to the midnight after ``end``."""
        start = datetime.combine(date_range.start, time.min, tzinfo=timezone.utc)
        end = datetime.combine(date_range.end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        return {
            "uploadStartTimeInSeconds": int(start.timestamp()),
            "uploadEndTimeInSeconds": int(end.timestamp()),
        }

    async def _get_window(
        self, path: str, access_token: str, date_range: DateRange, *list_keys: str
    ) -> list[dict]:
        """GET a windowed Wellness endpoint and return its list of summaries.

        Garmin answers with a bare list; some deployments wrap it in an
        object keyed by ``list_keys``.
        """
        response = await self._http.get(
            f"{self._api_base}{path}",
            headers=_bearer(access_token),
            params=self.upload_window(date_range),
        )
        data = response.data
        if isinstance(data, dict):
            for key in list_keys:
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
        if not isinstance(data, list):
            logger.debug("Garmin %s returned no summaries", path)
            return []
        return [row for row in data if isinstance(row, dict)]


def _bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def _parse_calendar_date(value: Any, fallback: datetime) -> date:
    if isinstance(value, str) and len(value) >= 10:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            logger.warning("Unparseable Garmin calendarDate: %r", value)
    return fallback.date()
