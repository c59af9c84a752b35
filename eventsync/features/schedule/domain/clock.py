"""
Time-driven session candidates for the clock job.

Each candidate is a (session, kind) pair; whether it was already announced
is decided later against the dedup ledger.
"""

from collections.abc import Collection, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from eventsync.features.schedule.domain.models import ChangeKind, Session

# when one session qualifies for several kinds in the same run, the first wins
KIND_PRIORITY = (ChangeKind.START, ChangeKind.SOON, ChangeKind.SURVEY)


@dataclass(frozen=True, slots=True)
class ClockCandidate:
    session: Session
    kind: ChangeKind

    @property
    def ledger_key(self) -> str:
        return f"{self.session.id}:{self.kind.value}"


def upcoming_sessions(
    now: datetime,
    sessions: Iterable[Session],
    *,
    start_lookahead: timedelta,
    soon_lookahead: timedelta,
    soon_ids: Collection[str],
) -> list[ClockCandidate]:
    """
    Sessions starting within start_lookahead get START; sessions listed in
    soon_ids starting within soon_lookahead get SOON.
    """
    res = []
    for s in sessions:
        if s.start_time is None or s.start_time <= now:
            continue
        if s.start_time <= now + start_lookahead:
            res.append(ClockCandidate(s, ChangeKind.START))
        if s.id in soon_ids and s.start_time <= now + soon_lookahead:
            res.append(ClockCandidate(s, ChangeKind.SOON))
    return res


def upcoming_surveys(
    now: datetime,
    sessions: Iterable[Session],
    *,
    grace: timedelta,
    survey_ids: Collection[str] = (),
) -> list[ClockCandidate]:
    """Sessions that ended at least grace ago; limited to survey_ids when given."""
    res = []
    for s in sessions:
        if survey_ids and s.id not in survey_ids:
            continue
        if s.end_time is not None and s.end_time + grace <= now:
            res.append(ClockCandidate(s, ChangeKind.SURVEY))
    return res


def collapse_candidates(candidates: Iterable[ClockCandidate]) -> list[ClockCandidate]:
    """
    One candidate per session id, the highest priority kind. Lower priority
    kinds left out here are picked up by a later run while still due.
    """
    best: dict[str, ClockCandidate] = {}
    for c in candidates:
        cur = best.get(c.session.id)
        if cur is None or KIND_PRIORITY.index(c.kind) < KIND_PRIORITY.index(cur.kind):
            best[c.session.id] = c
    return list(best.values())
