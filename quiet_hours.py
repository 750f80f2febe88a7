"""
Quiet hours — decides whether a user may be notified right now.

Users carry an ISO country code in usageLocation; the table below maps it to
the IANA zone used for that country's main business hub. Countries spanning
several zones use the most populated one.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIMEZONE_BY_LOCATION = {
    # Americas
    "US": "America/New_York",
    "CA": "America/Toronto",
    "MX": "America/Mexico_City",
    "BR": "America/Sao_Paulo",
    "AR": "America/Argentina/Buenos_Aires",
    "CL": "America/Santiago",
    "CO": "America/Bogota",
    "PE": "America/Lima",
    # Europe
    "GB": "Europe/London",
    "IE": "Europe/Dublin",
    "PT": "Europe/Lisbon",
    "ES": "Europe/Madrid",
    "FR": "Europe/Paris",
    "BE": "Europe/Brussels",
    "NL": "Europe/Amsterdam",
    "DE": "Europe/Berlin",
    "CH": "Europe/Zurich",
    "AT": "Europe/Vienna",
    "IT": "Europe/Rome",
    "DK": "Europe/Copenhagen",
    "SE": "Europe/Stockholm",
    "NO": "Europe/Oslo",
    "FI": "Europe/Helsinki",
    "PL": "Europe/Warsaw",
    "CZ": "Europe/Prague",
    "GR": "Europe/Athens",
    "RO": "Europe/Bucharest",
    "TR": "Europe/Istanbul",
    "UA": "Europe/Kyiv",
    # Middle East / Africa
    "IL": "Asia/Jerusalem",
    "AE": "Asia/Dubai",
    "SA": "Asia/Riyadh",
    "EG": "Africa/Cairo",
    "ZA": "Africa/Johannesburg",
    "NG": "Africa/Lagos",
    "KE": "Africa/Nairobi",
    # Asia / Pacific
    "IN": "Asia/Kolkata",
    "PK": "Asia/Karachi",
    "SG": "Asia/Singapore",
    "MY": "Asia/Kuala_Lumpur",
    "PH": "Asia/Manila",
    "TH": "Asia/Bangkok",
    "VN": "Asia/Ho_Chi_Minh",
    "ID": "Asia/Jakarta",
    "CN": "Asia/Shanghai",
    "HK": "Asia/Hong_Kong",
    "TW": "Asia/Taipei",
    "KR": "Asia/Seoul",
    "JP": "Asia/Tokyo",
    "AU": "Australia/Sydney",
    "NZ": "Pacific/Auckland",
}


class QuietHours:
    """Local-time window [start_hour, end_hour) during which nobody is notified."""

    def __init__(self, start_hour: int = 22, end_hour: int = 7, default_timezone: str = "UTC"):
        if not (0 <= start_hour <= 23 and 0 <= end_hour <= 23):
            raise ValueError("Quiet hours must be between 0 and 23")
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.default_zone = ZoneInfo(default_timezone)

    def zone_for(self, location: Optional[str]) -> ZoneInfo:
        name = TIMEZONE_BY_LOCATION.get((location or "").upper())
        if not name:
            return self.default_zone
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            return self.default_zone

    def local_time(self, now: datetime, location: Optional[str]) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.zone_for(location))

    def _in_window(self, hour: int) -> bool:
        if self.start_hour == self.end_hour:
            return False
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        # Window wraps midnight, e.g. 22 → 7
        return hour >= self.start_hour or hour < self.end_hour

    def is_quiet(self, now: datetime, location: Optional[str]) -> bool:
        return self._in_window(self.local_time(now, location).hour)

    def next_allowed(self, now: datetime, location: Optional[str]) -> datetime:
        """UTC instant at which the user's quiet window ends (now if not quiet)."""
        local = self.local_time(now, location)
        if not self._in_window(local.hour):
            return local.astimezone(timezone.utc)

        end_date = local.date()
        if local.hour >= self.end_hour and self.start_hour > self.end_hour:
            end_date += timedelta(days=1)
        end_local = datetime.combine(end_date, time(self.end_hour), tzinfo=local.tzinfo)
        return end_local.astimezone(timezone.utc)
