from datetime import date, datetime, time
from typing import Optional, Union

from errors import ValidationError


class DateTimeValidator:
    """Parses the date/time payload shapes used by the API and CLI.
    Dates are ``YYYY-MM-DD``; times are 24-hour ``HH:MM``.
    """

    @staticmethod
    def parse_date(raw: Union[date, str, None], field: str = "date") -> date:
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        if raw is None or not str(raw).strip():
            raise ValidationError(f"{field} is required.", field=field)
        try:
            return datetime.strptime(str(raw).strip(), "%Y-%m-%d").date()
        except ValueError as e:
            raise ValidationError(
                f"{field} must be a date in YYYY-MM-DD format.", field=field, value=raw
            ) from e

    @staticmethod
    def parse_time(raw: Union[time, str, None], field: str = "time", allow_seconds: bool = False) -> time:
        """Payloads must be ``HH:MM``; ``allow_seconds`` is for values read back from storage."""
        if isinstance(raw, time):
            return raw
        if raw is None or not str(raw).strip():
            raise ValidationError(f"{field} is required.", field=field)
        s = str(raw).strip()
        formats = ("%H:%M", "%H:%M:%S") if allow_seconds else ("%H:%M",)
        for fmt in formats:
            try:
                return datetime.strptime(s, fmt).time()
            except ValueError:
                continue
        raise ValidationError(f"{field} must be a time in HH:MM format.", field=field, value=raw)


class TextValidator:
    """Normalization for optional free-text placement fields."""

    @staticmethod
    def blank_to_none(text: Optional[str]) -> Optional[str]:
        # empty strings from forms mean "not set"
        if text is None:
            return None
        t = text.strip()
        return t or None

    @staticmethod
    def require(text: Optional[str], field: str) -> str:
        t = TextValidator.blank_to_none(text)
        if t is None:
            raise ValidationError(f"{field} is required.", field=field)
        return t
