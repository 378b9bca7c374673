from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value) -> str | None:
    """Render a stored or client timestamp as an ISO-8601 UTC string (``...Z``)."""
    if value is None:
        return None
    if isinstance(value, str):
        parsed = parse_timestamp(value)
        if parsed is None:
            return value
        value = parsed
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif not isinstance(value, datetime):
        value = parse_timestamp(value)
        if value is None:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    rendered = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return rendered.replace("+00:00", "Z")


def utcnow_iso() -> str:
    return to_iso(utcnow())


def parse_timestamp(value) -> datetime | None:
    """Parse ISO strings, datetimes and epoch numbers into aware UTC datetimes.

    Naive values are taken as UTC. Epoch numbers above 1e11 are read as milliseconds.
    Unparseable input returns None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_newer(candidate, existing) -> bool:
    """True when ``candidate`` is strictly later than ``existing``.

    A missing or unreadable existing timestamp loses to any readable candidate.
    """
    candidate_dt = parse_timestamp(candidate)
    if candidate_dt is None:
        return False
    existing_dt = parse_timestamp(existing)
    if existing_dt is None:
        return True
    return candidate_dt > existing_dt


def days_ago_iso(days: int) -> str:
    return to_iso(utcnow() - timedelta(days=days))
