"""Raw attempt record -> AttemptEvent."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from prepstate.errors import MalformedEvent
from prepstate.events.schemas import AttemptEvent, Difficulty, RawAttempt, Source
from prepstate.events.skills import parse_subject_label, subject_for_skill


SOURCE_LABELS: dict[str, Source] = {
    "quiz": Source.QUIZ,
    "marathon": Source.MARATHON,
    "timed": Source.MARATHON,
    "timed_session": Source.MARATHON,
    "timed-session": Source.MARATHON,
    "mocktest": Source.MOCK_TEST,
    "mock_test": Source.MOCK_TEST,
    "mock-test": Source.MOCK_TEST,
    "mock_exam": Source.MOCK_TEST,
    "mock-exam": Source.MOCK_TEST,
    "drill": Source.DRILL,
}

# Epoch values above this are milliseconds.
_EPOCH_MS_CUTOFF = 1e12


def parse_timestamp(value: Any) -> datetime:
    """Parse an event time. Naive values are taken as UTC.

    Raises:
        ValueError: If the value is missing or not a recognizable timestamp.
    """
    if value is None or value == "":
        msg = "occurred_at is missing"
        raise ValueError(msg)

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > _EPOCH_MS_CUTOFF else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        msg = f"Unsupported timestamp type: {type(value).__name__}"
        raise ValueError(msg)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_difficulty(label: str | None) -> Difficulty:
    if not label:
        return Difficulty.MEDIUM
    try:
        return Difficulty(label.strip().lower())
    except ValueError:
        return Difficulty.MEDIUM


def parse_source(label: str | None) -> Source:
    if not label:
        return Source.DRILL
    return SOURCE_LABELS.get(label.strip().lower(), Source.DRILL)


def derive_event_key(raw: RawAttempt, occurred_at: datetime, source: Source) -> str:
    """Stable identity for an attempt.

    Uses the record's own id when it has one; otherwise hashes the fields
    that identify one answer to one question in one session.
    """
    if raw.attempt_id is not None and str(raw.attempt_id):
        return str(raw.attempt_id)

    material = json.dumps(
        [
            str(raw.user_id or ""),
            str(raw.session_id or ""),
            str(raw.question_id or ""),
            (raw.skill or "").strip(),
            occurred_at.astimezone(timezone.utc).isoformat(),
            source.value,
        ],
        separators=(",", ":"),
    )
    return hashlib.sha1(material.encode("utf-8")).hexdigest()  # noqa: S324


def normalize(raw: Mapping[str, Any] | RawAttempt) -> AttemptEvent:
    """Convert one raw attempt record into a canonical AttemptEvent.

    Defaults difficulty to medium and subject via the shared skill table.

    Raises:
        MalformedEvent: If skill is empty/null, correctness is missing, or
            occurred_at cannot be parsed.
    """
    try:
        record = raw if isinstance(raw, RawAttempt) else RawAttempt.model_validate(raw)
    except ValidationError as e:
        raise MalformedEvent(f"invalid attempt record: {e.error_count()} errors", raw) from e

    skill = (record.skill or "").strip()
    if not skill:
        raise MalformedEvent("skill is empty", raw)

    if record.correct is None:
        raise MalformedEvent("correct is missing", raw)

    try:
        occurred_at = parse_timestamp(record.occurred_at)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedEvent(f"occurred_at unparseable: {record.occurred_at!r}", raw) from e

    source = parse_source(record.source)
    subject = parse_subject_label(record.subject) or subject_for_skill(skill)

    return AttemptEvent(
        event_key=derive_event_key(record, occurred_at, source),
        skill=skill,
        subject=subject,
        difficulty=parse_difficulty(record.difficulty),
        correct=record.correct,
        occurred_at=occurred_at,
        source=source,
    )
