"""Timestamp normalization for incoming metric samples.

Agents send timestamps in several shapes: canonical strings, strings with
blanks where digits belong (a known device bug, e.g. ``2016-08-24T10:24:07.  6``)
and epoch milliseconds. Everything is brought to the canonical
``YYYY-MM-DDTHH:mm:ss.sss`` form where that is possible;
anything else is passed through untouched so ingestion is never blocked.
"""
from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta, tzinfo
from typing import Any

TIMESTAMP_FIELD = "@timestamp"
LEGACY_TIMESTAMP_FIELD = "Timestamp"
SERVER_TIMESTAMP_FIELD = "server_timestamp"
LOCAL_TIMESTAMP_FIELD = "local_timestamp"

_PARSE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"
_WHITESPACE = re.compile(r"\s")
_EPOCH_MS = re.compile(r"^-?\d+$")


def format_canonical(moment: datetime) -> str:
    """Render *moment* with millisecond precision, ignoring its tzinfo."""
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}"


def parse_canonical(value: str) -> datetime:
    return datetime.strptime(value, _PARSE_FORMAT)


def repair_whitespace(value: str) -> str:
    """Replace every whitespace character with ``0``."""
    return _WHITESPACE.sub("0", value)


def as_epoch_ms(value: Any) -> int | None:
    """Return *value* as integer epoch milliseconds, or None if it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _EPOCH_MS.match(value.strip()):
        return int(value.strip())
    return None


class TimestampNormalizer:
    """Stamps and repairs the timestamp fields of a metric document.

    ``tz`` selects the zone canonical strings are rendered in; ``None`` means
    the server's local time.
    """

    def __init__(
        self,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(self._tz))

    def now(self) -> str:
        return format_canonical(self._clock())

    def from_epoch_ms(self, epoch_ms: int) -> str:
        seconds, millis = divmod(epoch_ms, 1000)
        moment = datetime.fromtimestamp(seconds, self._tz) + timedelta(milliseconds=millis)
        return format_canonical(moment)

    def _from_epoch_or_keep(self, value: Any) -> Any:
        epoch_ms = as_epoch_ms(value)
        if epoch_ms is None:
            return value
        try:
            return self.from_epoch_ms(epoch_ms)
        except (OverflowError, OSError, ValueError):
            # out of the platform's range, keep what the agent sent
            return value

    def normalize(self, document: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *document* with normalized timestamp fields.

        A missing ``@timestamp`` stays missing; ``server_timestamp`` is always
        the current time and ``local_timestamp`` defaults to it. Epoch
        milliseconds in either of the agent's fields become canonical strings.
        """
        doc = dict(document)

        if LEGACY_TIMESTAMP_FIELD in doc:
            doc[TIMESTAMP_FIELD] = doc.pop(LEGACY_TIMESTAMP_FIELD)

        if TIMESTAMP_FIELD in doc:
            primary = self._from_epoch_or_keep(doc[TIMESTAMP_FIELD])
            if isinstance(primary, str):
                primary = repair_whitespace(primary)
            doc[TIMESTAMP_FIELD] = primary

        server_timestamp = self.now()
        doc[SERVER_TIMESTAMP_FIELD] = server_timestamp

        local = doc.get(LOCAL_TIMESTAMP_FIELD)
        if local is None:
            doc[LOCAL_TIMESTAMP_FIELD] = server_timestamp
        else:
            doc[LOCAL_TIMESTAMP_FIELD] = self._from_epoch_or_keep(local)

        return doc
