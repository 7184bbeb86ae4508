"""
aggregator.py — survey submission statistics.

aggregate() is a pure function over an already-fetched list of submissions.
Fetching and the admin token check belong to the route.

Rules:
  - every submission lands in exactly one device group and one day bucket
  - day key = UTC calendar date of submitted_at (naive timestamps are UTC)
  - first/last submission of a group = min/max submitted_at, independent of
    input order
  - device groups come out in order of first appearance in the input
"""
from __future__ import annotations

from collections.abc import Iterable
from typing import Dict, List

from courseweb.survey.schemas import (
    DateRange,
    DeviceGroup,
    DeviceSummary,
    GroupedSubmission,
    SubmissionRecord,
    SurveyAggregate,
)
from courseweb.utils.datetime_helpers import ensure_utc


def day_key(record: SubmissionRecord) -> str:
    return ensure_utc(record.submitted_at).date().isoformat()


def aggregate(submissions: Iterable[SubmissionRecord]) -> SurveyAggregate:
    records = list(submissions)
    if not records:
        return SurveyAggregate()

    groups: Dict[str, List[SubmissionRecord]] = {}
    by_day: Dict[str, int] = {}
    for record in records:
        groups.setdefault(record.device_fingerprint, []).append(record)
        key = day_key(record)
        by_day[key] = by_day.get(key, 0) + 1

    device_groups = [_build_group(fingerprint, rows) for fingerprint, rows in groups.items()]
    timestamps = [ensure_utc(r.submitted_at) for r in records]

    return SurveyAggregate(
        total_count=len(records),
        unique_device_count=len(groups),
        by_day=by_day,
        device_groups=device_groups,
        date_range=DateRange(earliest=min(timestamps), latest=max(timestamps)),
    )


def _build_group(fingerprint: str, rows: List[SubmissionRecord]) -> DeviceGroup:
    # Device metadata comes from the first row seen for the fingerprint
    head = rows[0]
    stamps = [ensure_utc(r.submitted_at) for r in rows]
    summary = DeviceSummary(
        device_fingerprint=fingerprint,
        user_agent=head.user_agent,
        screen_resolution=head.screen_resolution,
        timezone=head.timezone,
        language=head.language,
        ip_address=head.ip_address,
        submission_count=len(rows),
        first_submission=min(stamps),
        last_submission=max(stamps),
    )
    return DeviceGroup(
        device_info=summary,
        submissions=[
            GroupedSubmission(
                id=r.id,
                submitted_at=ensure_utc(r.submitted_at),
                answers=r.answers,
            )
            for r in rows
        ],
    )
