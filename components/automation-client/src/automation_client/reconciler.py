"""Merge raw result fragments into one record per appointment."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from automation_client.models import ResultDetail, ResultRecord

logger = logging.getLogger(__name__)

Fragment = Mapping[str, Any] | ResultRecord

# (record attribute, accepted fragment keys)
COUNTER_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("changes_made", ("status_1_changes_made", "changes_made")),
    (
        "condition_met_no_change",
        (
            "status_2_condition_met_no_changes",
            "condition_met_no_changes",
            "condition_met_no_change",
        ),
    ),
    ("condition_not_met", ("status_3_condition_not_met", "condition_not_met")),
    ("errors", ("status_4_errors", "errors")),
)


def appointment_key(fragment: Mapping[str, Any]) -> str | None:
    """Natural key of a fragment: ``appointment_id``, else ``appointmentid``."""
    for name in ("appointment_id", "appointmentid"):
        value = fragment.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def coerce_count(value: object) -> int:
    """Read a status counter that may arrive as int, bool or string."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, float):
        # inf and nan have no integer value
        if not math.isfinite(value):
            return 0
        return max(int(value), 0)
    return 0


def _read_counter(fragment: Mapping[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        if key in fragment:
            return coerce_count(fragment[key])
    return 0


def _text(fragment: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = fragment.get(key)
        if value is not None and value != "":
            return str(value)
    return ""


@dataclass
class _Accumulator:
    appointment_id: str
    fields: dict[str, str]
    counters: dict[str, int]
    details: list[ResultDetail] = field(default_factory=list)
    seen_rules: set[str] = field(default_factory=set)

    def add_details(self, raw_details: object) -> None:
        if not isinstance(raw_details, (list, tuple)):
            return
        for raw in raw_details:
            if isinstance(raw, ResultDetail):
                detail = raw
            elif isinstance(raw, Mapping):
                detail = ResultDetail.from_mapping(raw)
            else:
                continue
            if detail.rule_number in self.seen_rules:
                continue
            self.seen_rules.add(detail.rule_number)
            self.details.append(detail)

    def build(self) -> ResultRecord:
        return ResultRecord(
            appointment_id=self.appointment_id,
            details=tuple(self.details),
            **self.fields,
            **self.counters,
        )


def reconcile(fragments: Iterable[Fragment]) -> list[ResultRecord]:
    """Merge fragments sharing an appointment id.

    The first fragment seen for a key supplies the patient fields. Later
    fragments add their counters and contribute only details for rule numbers
    not seen yet. Fragments without a usable key are dropped.

    Args:
        fragments: Raw result mappings or already merged records.

    Returns:
        Records in order of first appearance, one per appointment id.

    Examples:
        >>> merged = reconcile([
        ...     {"appointment_id": "A1", "status_1_changes_made": 1,
        ...      "details": [{"rule_number": 5}]},
        ...     {"appointment_id": "A1", "status_1_changes_made": 2,
        ...      "details": [{"rule_number": 5}, {"rule_number": 6}]},
        ... ])
        >>> merged[0].changes_made, [d.rule_number for d in merged[0].details]
        (3, ['5', '6'])
    """
    grouped: dict[str, _Accumulator] = {}
    gaps = 0

    for fragment in fragments:
        raw = fragment.to_fragment() if isinstance(fragment, ResultRecord) else fragment
        key = appointment_key(raw)
        if key is None:
            gaps += 1
            continue

        counters = {name: _read_counter(raw, keys) for name, keys in COUNTER_FIELDS}
        existing = grouped.get(key)
        if existing is None:
            existing = _Accumulator(
                appointment_id=key,
                fields={
                    "appointment_date": _text(raw, "appointment_date", "appointmentdate"),
                    "patient_id": _text(raw, "patientid", "patient_id"),
                    "first_name": _text(raw, "first_name", "firstname"),
                    "last_name": _text(raw, "last_name", "lastname"),
                    "date_of_birth": _text(raw, "dob", "date_of_birth"),
                },
                counters=counters,
            )
            grouped[key] = existing
        else:
            for name, value in counters.items():
                existing.counters[name] += value
        existing.add_details(raw.get("details"))

    if gaps:
        logger.warning("Dropped %d result fragment(s) without an appointment id", gaps)
    return [acc.build() for acc in grouped.values()]


def to_fragments(records: Iterable[ResultRecord]) -> list[dict[str, Any]]:
    """Serialize merged records back to the backend fragment shape."""
    return [record.to_fragment() for record in records]
