from __future__ import annotations

from dataclasses import dataclass

from .database import WorklogDatabase

MAX_DAILY_HOURS_KEY = "max_daily_hours"
NOTIFICATION_INTERVAL_KEY = "notification_interval"
IDLE_ALERT_ENABLED_KEY = "idle_alert_enabled"
IDLE_ALERT_INTERVAL_KEY = "idle_alert_interval_minutes"
IDLE_ALERT_START_HOUR_KEY = "idle_alert_start_hour"
IDLE_ALERT_END_HOUR_KEY = "idle_alert_end_hour"
RECENT_ISSUES_COUNT_KEY = "recent_issues_count"
TEMPO_BASE_URL_KEY = "tempo_base_url"
TEMPO_API_TOKEN_KEY = "tempo_api_token"
TEMPO_ACCOUNT_ID_KEY = "tempo_account_id"

DEFAULT_TEMPO_BASE_URL = "https://api.tempo.io/4"


@dataclass
class TrackerSettings:
    max_daily_hours: float = 7.5
    notification_interval_minutes: float = 60.0
    idle_alert_enabled: bool = True
    idle_alert_interval_minutes: float = 15.0
    idle_alert_start_hour: int = 8
    idle_alert_end_hour: int = 18
    recent_issues_count: int = 10
    tempo_base_url: str = DEFAULT_TEMPO_BASE_URL
    tempo_api_token: str = ""
    tempo_account_id: str = ""

    @property
    def cap_minutes(self) -> float:
        return self.max_daily_hours * 60

    @classmethod
    def load(cls, db: WorklogDatabase) -> TrackerSettings:
        defaults = cls()
        start_hour = _hour(db.get_setting_int(IDLE_ALERT_START_HOUR_KEY, defaults.idle_alert_start_hour))
        end_hour = _hour(db.get_setting_int(IDLE_ALERT_END_HOUR_KEY, defaults.idle_alert_end_hour))
        if start_hour is None or end_hour is None or start_hour >= end_hour:
            start_hour, end_hour = defaults.idle_alert_start_hour, defaults.idle_alert_end_hour

        return cls(
            max_daily_hours=db.get_setting_float(MAX_DAILY_HOURS_KEY, defaults.max_daily_hours),
            notification_interval_minutes=db.get_setting_float(
                NOTIFICATION_INTERVAL_KEY, defaults.notification_interval_minutes
            ),
            idle_alert_enabled=db.get_setting_bool(IDLE_ALERT_ENABLED_KEY, defaults.idle_alert_enabled),
            idle_alert_interval_minutes=db.get_setting_float(
                IDLE_ALERT_INTERVAL_KEY, defaults.idle_alert_interval_minutes
            ),
            idle_alert_start_hour=start_hour,
            idle_alert_end_hour=end_hour,
            recent_issues_count=max(1, db.get_setting_int(RECENT_ISSUES_COUNT_KEY, defaults.recent_issues_count)),
            tempo_base_url=(db.get_setting(TEMPO_BASE_URL_KEY) or defaults.tempo_base_url).strip(),
            tempo_api_token=(db.get_setting(TEMPO_API_TOKEN_KEY) or "").strip(),
            tempo_account_id=(db.get_setting(TEMPO_ACCOUNT_ID_KEY) or "").strip(),
        )

    def save(self, db: WorklogDatabase) -> None:
        db.set_setting(MAX_DAILY_HOURS_KEY, f"{self.max_daily_hours:g}")
        db.set_setting(NOTIFICATION_INTERVAL_KEY, f"{self.notification_interval_minutes:g}")
        db.set_setting(IDLE_ALERT_ENABLED_KEY, "true" if self.idle_alert_enabled else "false")
        db.set_setting(IDLE_ALERT_INTERVAL_KEY, f"{self.idle_alert_interval_minutes:g}")
        db.set_setting(IDLE_ALERT_START_HOUR_KEY, str(int(self.idle_alert_start_hour)))
        db.set_setting(IDLE_ALERT_END_HOUR_KEY, str(int(self.idle_alert_end_hour)))
        db.set_setting(RECENT_ISSUES_COUNT_KEY, str(int(self.recent_issues_count)))
        db.set_setting(TEMPO_BASE_URL_KEY, self.tempo_base_url)
        db.set_setting(TEMPO_API_TOKEN_KEY, self.tempo_api_token)
        db.set_setting(TEMPO_ACCOUNT_ID_KEY, self.tempo_account_id)


def _hour(value: int) -> int | None:
    if 0 <= value <= 24:
        return value
    return None
