"""Index template applied once when a partition is created."""
from __future__ import annotations

import copy
from typing import Any

RAW_IGNORE_ABOVE = 256

TIMESTAMP_FORMAT = "date_hour_minute_second_millis"


def _keyword_raw() -> dict[str, Any]:
    return {"raw": {"type": "keyword", "ignore_above": RAW_IGNORE_ABOVE}}


_PARTITION_MAPPINGS: dict[str, Any] = {
    "dynamic_templates": [
        {
            "string_fields": {
                "match": "*",
                "match_mapping_type": "string",
                "mapping": {
                    "type": "text",
                    "norms": False,
                    "fields": _keyword_raw(),
                },
            }
        }
    ],
    "properties": {
        "@timestamp": {
            "type": "date",
            "format": TIMESTAMP_FORMAT,
            "store": True,
        },
        "host": {"type": "text", "norms": False, "fields": _keyword_raw()},
        "name": {"type": "text", "norms": False, "fields": _keyword_raw()},
        "value": {"type": "long", "fields": {"raw": {"type": "long"}}},
    },
}


def partition_mappings() -> dict[str, Any]:
    """Return a fresh copy of the partition mappings (callers may mutate it)."""
    return copy.deepcopy(_PARTITION_MAPPINGS)
