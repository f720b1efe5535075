"""Listing filters: query parameter allow-lists mapped to provider filter names.

Valid provider values: https://www.twilio.com/docs/sms/api/message-resource#read-multiple-message-resources
and https://www.twilio.com/docs/voice/api/call-resource#read-multiple-call-resources

Rules:
- Every query parameter must be in the allow-list (or be the reserved
  `next` cursor). Unknown or repeated parameters are errors, never dropped.
- Empty values are ignored; HTML forms submit empty inputs.
- Dates are YYYY-MM-DD. `start` may not precede the oldest viewable date,
  and when absent it defaults to that date.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from urllib.parse import parse_qsl, urlsplit

NEXT_PARAM = "next"

CALL_STATUSES = frozenset(
    {"queued", "ringing", "in-progress", "canceled", "completed", "failed", "busy", "no-answer"}
)

_PHONE_STRIP = re.compile(r"[\s.()\-]")
_PHONE = re.compile(r"^\+?[0-9]{2,15}$")


class FilterError(ValueError):
    """A listing query parameter is unrecognised or malformed."""

    pass


@dataclass(frozen=True)
class FilterNames:
    """Provider filter names for one list resource."""

    from_: str
    to: str
    start: str
    end: str
    status: str | None = None

    def as_mapping(self) -> dict[str, str]:
        names = {"from": self.from_, "to": self.to, "start": self.start, "end": self.end}
        if self.status is not None:
            names["status"] = self.status
        return names


MESSAGE_FILTERS = FilterNames(from_="From", to="To", start="DateSent>", end="DateSent<")
CALL_FILTERS = FilterNames(
    from_="From", to="To", start="StartTime>", end="StartTime<", status="Status"
)


def normalize_phone_number(value: str) -> str:
    """Strip formatting characters and validate a phone number filter."""
    stripped = _PHONE_STRIP.sub("", value)
    if not _PHONE.match(stripped):
        raise FilterError(f"Invalid phone number: {value!r}")
    return stripped


def parse_date(name: str, value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise FilterError(f"Invalid {name} date {value!r}, expected YYYY-MM-DD") from e


def split_query(
    items: Iterable[tuple[str, str]], names: FilterNames
) -> tuple[str | None, dict[str, str]]:
    """Validate parameter names and split out the `next` cursor.

    Returns:
        (next cursor or None, remaining non-empty parameters)

    Raises:
        FilterError: On unknown or repeated parameters.
    """
    allowed = names.as_mapping()
    seen: set[str] = set()
    opaque_next = None
    params: dict[str, str] = {}
    for key, value in items:
        if key != NEXT_PARAM and key not in allowed:
            raise FilterError(f"Unknown query parameter: {key!r}")
        if key in seen:
            raise FilterError(f"Query parameter {key!r} given more than once")
        seen.add(key)
        value = value.strip()
        if not value:
            continue
        if key == NEXT_PARAM:
            opaque_next = value
        else:
            params[key] = value
    return opaque_next, params


def build_page_filters(
    params: dict[str, str], names: FilterNames, *, page_size: int, min_date: date
) -> dict[str, str]:
    """Translate validated query parameters into provider filters.

    Raises:
        FilterError: On malformed values or a date range outside the viewable window.
    """
    filters = {"PageSize": str(page_size)}

    if "from" in params:
        filters[names.from_] = normalize_phone_number(params["from"])
    if "to" in params:
        filters[names.to] = normalize_phone_number(params["to"])

    start = parse_date("start", params["start"]) if "start" in params else None
    end = parse_date("end", params["end"]) if "end" in params else None
    if start is not None and start < min_date:
        raise FilterError(
            f"Cannot search before {min_date.isoformat()}; older resources are not viewable"
        )
    if start is not None and end is not None and start > end:
        raise FilterError("start date must not be after end date")
    filters[names.start] = (start or min_date).isoformat()
    if end is not None:
        filters[names.end] = end.isoformat()

    if "status" in params:
        if names.status is None:
            raise FilterError("Unknown query parameter: 'status'")
        status = params["status"].lower()
        if status not in CALL_STATUSES:
            raise FilterError(f"Invalid status: {params['status']!r}")
        filters[names.status] = status

    return filters


def query_from_next_page(next_uri: str, names: FilterNames) -> dict[str, str]:
    """Recover the caller-facing filters encoded in a provider next page URI."""
    reverse = {provider: param for param, provider in names.as_mapping().items()}
    query = {}
    for key, value in parse_qsl(urlsplit(next_uri).query, keep_blank_values=False):
        param = reverse.get(key)
        if param is not None:
            query[param] = value
    return query
