"""Fixtures and helpers for allocation tests."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

import ticket_allocator as allocator

WANT_COLUMNS: Sequence[str] = (
    "ParticipantId",
    "Participant",
    "EventId",
    "EventTitle",
    "Cost",
    "Priority",
    "EventPriority",
)

ROSTER_COLUMNS: Sequence[str] = ("ParticipantId", "Participant")


def make_roster(count: int) -> List[Dict[str, str]]:
    return [
        {"participant_id": f"user{i + 1}", "participant_name": f"User {i + 1}"}
        for i in range(count)
    ]


def want_row(
    *,
    pid: str,
    eid: str,
    name: str | None = None,
    title: str | None = None,
    cost: str = "4.00",
    priority: int | None = None,
    event_priority: int | None = None,
) -> Dict[str, object]:
    """Build one wishlist row in the engine's field names."""

    row: Dict[str, object] = {
        "participant_id": pid,
        "participant_name": name if name is not None else pid.replace("user", "User "),
        "event_id": eid,
        "event_title": title if title is not None else eid.replace("event", "Event "),
        "cost": cost,
    }
    if priority is not None:
        row["priority"] = priority
    if event_priority is not None:
        row["event_priority"] = event_priority
    return row


def wants_for_events(
    event_count: int,
    people: Iterable[Dict[str, str]],
    *,
    prefix: str = "event",
    priority: int | None = None,
    event_priority: int | None = None,
) -> List[Dict[str, object]]:
    """Every listed participant wants every one of ``event_count`` events."""

    people = list(people)
    rows = []
    for i in range(event_count):
        for person in people:
            rows.append(
                want_row(
                    pid=person["participant_id"],
                    name=person["participant_name"],
                    eid=f"{prefix}{i + 1}",
                    title=f"{prefix.title()} {i + 1}",
                    priority=priority,
                    event_priority=event_priority,
                )
            )
    return rows


def buyers_by_event(result: allocator.AllocationResult) -> Dict[str, List[str]]:
    buyers: Dict[str, List[str]] = {}
    for assignment in result.assignments:
        for purchase in assignment.purchases:
            buyers.setdefault(purchase.event_id, []).append(assignment.participant_id)
    return buyers


def assert_invariants(result: allocator.AllocationResult, roster: Sequence[Dict[str, str]], cap: int = 50) -> None:
    ids = [a.participant_id for a in result.assignments]
    assert ids == [p["participant_id"] for p in roster]
    for assignment in result.assignments:
        event_ids = [p.event_id for p in assignment.purchases]
        assert assignment.total_tickets == len(assignment.purchases)
        assert assignment.total_tickets <= cap
        assert len(event_ids) == len(set(event_ids))
    buyers = buyers_by_event(result)
    for event in result.events:
        if event.id not in buyers:
            assert any(event.id in err for err in result.errors)
    assert not any("over limit" in err for err in result.errors)


def write_wants(path: Path, rows: Iterable[Dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=WANT_COLUMNS)
        writer.writeheader()
        for row in rows:
            writer.writerow(
                {
                    "ParticipantId": row.get("participant_id", ""),
                    "Participant": row.get("participant_name", ""),
                    "EventId": row.get("event_id", ""),
                    "EventTitle": row.get("event_title", ""),
                    "Cost": row.get("cost", ""),
                    "Priority": row.get("priority", "") or "",
                    "EventPriority": row.get("event_priority", "") or "",
                }
            )


def write_roster(path: Path, people: Iterable[Dict[str, str]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=ROSTER_COLUMNS)
        writer.writeheader()
        for person in people:
            writer.writerow({"ParticipantId": person["participant_id"], "Participant": person["participant_name"]})
