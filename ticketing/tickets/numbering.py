"""Human-readable ticket numbers of the form ``TKT-YYMM-NNNN``."""

from __future__ import annotations

import re
from datetime import datetime, timezone

TICKET_NUMBER_PREFIX = "TKT"

_NUMBER_RE = re.compile(rf"^{TICKET_NUMBER_PREFIX}-(?P<period>\d{{4}})-(?P<sequence>\d{{4,}})$")


def numbering_period(moment: datetime) -> str:
    """Return the ``YYMM`` counter key for a creation timestamp (UTC)."""

    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.year % 100:02d}{moment.month:02d}"


def format_ticket_number(period: str, sequence: int) -> str:
    if sequence < 1:
        raise ValueError("ticket sequence numbers start at 1")
    return f"{TICKET_NUMBER_PREFIX}-{period}-{sequence:04d}"


def parse_ticket_number(value: str) -> tuple[str, int]:
    """Split a ticket number into its period and sequence."""

    match = _NUMBER_RE.match(value)
    if match is None:
        raise ValueError(f"Malformed ticket number: {value!r}")
    return match.group("period"), int(match.group("sequence"))
