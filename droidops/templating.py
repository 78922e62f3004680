from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi.templating import Jinja2Templates

from droidops.services.storage import get_storage

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def _parse(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _localize(dt: datetime, preference: Optional[str]) -> datetime:
    if preference is None:
        preference = get_storage().get_config().get("display_timezone", "utc")
    if preference == "local":
        return dt.astimezone()
    return dt.astimezone(timezone.utc)


def _format_timestamp(value: Any, preference: Optional[str] = None) -> str:
    if value in (None, ""):
        return "—"
    dt = _parse(value)
    if dt is None:
        return str(value)
    return _localize(dt, preference).strftime("%d %b %y %H:%M:%S")


def _format_time(value: Any, preference: Optional[str] = None) -> str:
    if value in (None, ""):
        return "—"
    dt = _parse(value)
    if dt is None:
        return str(value)
    return _localize(dt, preference).strftime("%H:%M:%S")


def _format_duration(value: Any) -> str:
    if value in (None, ""):
        return "—"
    try:
        milliseconds = float(value)
    except (TypeError, ValueError):
        return str(value)
    if milliseconds >= 1000:
        return f"{milliseconds / 1000:.1f}s"
    return f"{int(milliseconds)}ms"


templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.globals.update(
    {
        "len": len,
    }
)
templates.env.filters["format_ts"] = _format_timestamp
templates.env.filters["format_time"] = _format_time
templates.env.filters["format_duration"] = _format_duration
