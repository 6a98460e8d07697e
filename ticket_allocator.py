#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Ticket purchase allocation engine.

Given a group's wishlist of convention events and a hard per-person purchase
cap, decide who in the group executes each ticket purchase.

Pipeline (single pass, in memory, no I/O):

* ``normalize_wants``     – collapse duplicate (participant, event) rows and
                            resolve each event's effective priority.
* ``build_event_index``   – one ``Event`` per id with the ordered list of
                            interested participants (first-seen order).
* ``CapacityLedger``      – remaining purchase quota per roster participant.
* ``allocate_coverage``   – priority-ordered pass; every interested participant
                            with spare capacity buys, a proxy buyer from the
                            roster steps in when nobody interested can.
* ``rebalance_fairness``  – bounded post-pass narrowing the max-min load spread.
* ``assemble_result``     – one ``Assignment`` per roster participant plus the
                            diagnostics list.

Hard rules:

* nobody exceeds ``PER_USER_CAP`` purchases
* nobody holds two purchases for the same event
* every wanted event is either bought by someone or named in a diagnostic

Capacity refusals are normal flow control and are never reported.
"""

from __future__ import annotations

import copy
import csv
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

# =============== CONFIG ===============================================
PER_USER_CAP = 50

DEFAULT_CONFIG = {
    # Maximum distinct events one participant may be asked to buy.
    "PER_USER_CAP": PER_USER_CAP,
    # Rebalancer stops once max(totalTickets) - min(totalTickets) <= this.
    "FAIRNESS_SPREAD": 2,
    "MAX_REBALANCE_PASSES": 25,
    "REBALANCE": True,
    # None = every interested participant with spare capacity buys (full
    # redundancy). An integer k stops the greedy pass after k buyers/event.
    "REDUNDANCY_LIMIT": None,
    "DEFAULT_PRIORITY": 1,
}

PRIORITY_LABELS = {1: "Normal", 2: "Important", 3: "Critical"}
PRIORITY_EMOJI = {1: "⚪", 2: "🟡", 3: "🔴"}

NO_USERS_ERROR = "No users found"

DECISION_FIELDS = ["Step", "Phase", "EventId", "Participant", "Status", "Note"]


def deep_update(dst: dict, src: dict) -> dict:
    """Recursively merge ``src`` into ``dst`` (in-place)."""

    for key, value in (src or {}).items():
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            deep_update(dst[key], value)
        else:
            dst[key] = copy.deepcopy(value)
    return dst


def build_config(overrides: dict | None = None) -> dict:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        deep_update(cfg, overrides)

    unknown = sorted(set(cfg) - set(DEFAULT_CONFIG))
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
    if int(cfg["PER_USER_CAP"]) < 0:
        raise ValueError("PER_USER_CAP must be >= 0")
    if int(cfg["FAIRNESS_SPREAD"]) < 0:
        raise ValueError("FAIRNESS_SPREAD must be >= 0")
    if int(cfg["MAX_REBALANCE_PASSES"]) < 1:
        raise ValueError("MAX_REBALANCE_PASSES must be >= 1")
    limit = cfg["REDUNDANCY_LIMIT"]
    if limit is not None and int(limit) < 1:
        raise ValueError("REDUNDANCY_LIMIT must be None or >= 1")
    if cfg["DEFAULT_PRIORITY"] not in PRIORITY_LABELS:
        raise ValueError(f"DEFAULT_PRIORITY must be one of {sorted(PRIORITY_LABELS)}")
    return cfg


# -------------------- Helpers --------------------
def trim(s: object) -> str:
    if s is None:
        return ""
    return str(s).strip()


def parse_priority(value: object) -> Optional[int]:
    """Return a priority in ``PRIORITY_LABELS``, or ``None`` when absent/unparseable."""
    raw = trim(value)
    if not raw:
        return None
    try:
        num = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return None
    return num if num in PRIORITY_LABELS else None


def get_priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, "Unknown")


def get_priority_emoji(priority: int) -> str:
    return PRIORITY_EMOJI.get(priority, "⚫")


# -------------------- Data model --------------------
@dataclass(frozen=True)
class Participant:
    id: str
    display_name: str


@dataclass
class Want:
    participant_id: str
    participant_name: str
    event_id: str
    event_title: str
    cost: str
    priority: int
    # Event-scoped override; authoritative for the event's effective priority.
    event_priority: Optional[int] = None

    def to_row(self) -> Dict[str, object]:
        return {
            "participant_id": self.participant_id,
            "participant_name": self.participant_name,
            "event_id": self.event_id,
            "event_title": self.event_title,
            "cost": self.cost,
            "priority": self.priority,
            "event_priority": self.event_priority,
        }


@dataclass
class NormalizedWants:
    wants: List[Want]
    event_priority: Dict[str, int]
    dropped: int = 0


@dataclass
class Event:
    id: str
    title: str
    cost: str
    effective_priority: int
    first_seen: int
    interested_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "event_id": self.id,
            "event_title": self.title,
            "cost": self.cost,
            "priority": self.effective_priority,
            "interested_ids": list(self.interested_ids),
        }


@dataclass
class EventPurchase:
    event_id: str
    event_title: str
    priority: int
    cost: str
    buying_for: List[str]
    proxy: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "event_id": self.event_id,
            "event_title": self.event_title,
            "priority": self.priority,
            "cost": self.cost,
            "buying_for": list(self.buying_for),
            "proxy": self.proxy,
        }


@dataclass
class Assignment:
    participant_id: str
    display_name: str
    purchases: List[EventPurchase] = field(default_factory=list)

    @property
    def total_tickets(self) -> int:
        return len(self.purchases)

    def to_dict(self) -> Dict[str, object]:
        return {
            "participant_id": self.participant_id,
            "participant_name": self.display_name,
            "purchases": [p.to_dict() for p in self.purchases],
            "total_tickets": self.total_tickets,
        }


class DecisionLogger:
    def __init__(self):
        self.rows: List[Dict[str, object]] = []
        self.step = 0

    def log(self, phase: str, event_id: str, participant: str, status: str, note: str = ""):
        self.step += 1
        self.rows.append({
            "Step": self.step, "Phase": phase, "EventId": event_id,
            "Participant": participant, "Status": status, "Note": note,
        })

    def write_csv(self, out: Path):
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=DECISION_FIELDS)
            w.writeheader()
            for r in self.rows:
                w.writerow({k: r.get(k, "") for k in DECISION_FIELDS})


@dataclass
class AllocationResult:
    assignments: List[Assignment]
    errors: List[str]
    events: List[Event] = field(default_factory=list)
    log: DecisionLogger = field(default_factory=DecisionLogger, repr=False)
    # Purchase cap the allocation ran with.
    cap: int = PER_USER_CAP

    def to_dict(self) -> Dict[str, object]:
        return {
            "assignments": [a.to_dict() for a in self.assignments],
            "errors": list(self.errors),
            "events": [e.to_dict() for e in self.events],
            "cap": self.cap,
        }


# -------------------- Roster --------------------
def resolve_roster(rows: Iterable[object]) -> List[Participant]:
    """Build the roster from ``Participant`` objects or mapping rows.

    Rows without an id are skipped; repeated ids keep their first entry.
    """
    roster: List[Participant] = []
    seen = set()
    for row in rows:
        if isinstance(row, Participant):
            pid, name = row.id, row.display_name
        elif isinstance(row, Mapping):
            pid = trim(row.get("participant_id"))
            name = trim(row.get("participant_name"))
        else:
            continue
        if not pid or pid in seen:
            continue
        seen.add(pid)
        roster.append(Participant(pid, name or pid))
    return roster


def roster_from_wants(rows: Iterable[object]) -> List[Participant]:
    derived = []
    for row in rows:
        if isinstance(row, Want):
            row = row.to_row()
        if isinstance(row, Mapping) and trim(row.get("event_id")):
            derived.append(row)
    return resolve_roster(derived)


# -------------------- Want Normalizer --------------------
def read_want(row: object, default_priority: int = 1) -> Optional[Want]:
    if isinstance(row, Want):
        row = row.to_row()
    if not isinstance(row, Mapping):
        return None
    pid = trim(row.get("participant_id"))
    eid = trim(row.get("event_id"))
    if not pid or not eid:
        return None

    event_priority = parse_priority(row.get("event_priority"))
    own_priority = parse_priority(row.get("priority"))
    if event_priority is not None:
        priority = event_priority
    elif own_priority is not None:
        priority = own_priority
    else:
        priority = default_priority

    return Want(
        participant_id=pid,
        participant_name=trim(row.get("participant_name")) or pid,
        event_id=eid,
        event_title=trim(row.get("event_title")) or eid,
        cost=trim(row.get("cost")),
        priority=priority,
        event_priority=event_priority,
    )


def normalize_wants(
    rows: Iterable[object],
    *,
    default_priority: int = 1,
    log: DecisionLogger | None = None,
) -> NormalizedWants:
    """Deduplicate (participant, event) pairs and resolve event priorities.

    Duplicates keep the first row's position and the maximum priority seen.
    An explicit ``event_priority`` on any row of an event wins over the
    max-of-wants aggregation for that event (largest override if several).
    """
    merged: Dict[Tuple[str, str], Want] = {}
    overrides: Dict[str, int] = {}
    dropped = 0

    for idx, row in enumerate(rows):
        want = read_want(row, default_priority)
        if want is None:
            dropped += 1
            if log is not None:
                log.log("normalize", "", "", "Dropped malformed want", f"row {idx}")
            continue

        if want.event_priority is not None:
            overrides[want.event_id] = max(overrides.get(want.event_id, 0), want.event_priority)

        key = (want.participant_id, want.event_id)
        existing = merged.get(key)
        if existing is None:
            merged[key] = want
            continue
        existing.priority = max(existing.priority, want.priority)
        if want.event_priority is not None:
            existing.event_priority = max(existing.event_priority or 0, want.event_priority)
        if log is not None:
            log.log("normalize", want.event_id, want.participant_id, "Merged duplicate want",
                    f"priority={existing.priority}")

    wants = list(merged.values())
    event_priority: Dict[str, int] = {}
    for want in wants:
        eid = want.event_id
        if eid in overrides:
            event_priority[eid] = overrides[eid]
        else:
            event_priority[eid] = max(event_priority.get(eid, 0), want.priority)

    return NormalizedWants(wants=wants, event_priority=event_priority, dropped=dropped)


# -------------------- Event Index --------------------
def build_event_index(normalized: NormalizedWants) -> List[Event]:
    events: Dict[str, Event] = {}
    for want in normalized.wants:
        event = events.get(want.event_id)
        if event is None:
            event = Event(
                id=want.event_id,
                title=want.event_title,
                cost=want.cost,
                effective_priority=normalized.event_priority[want.event_id],
                first_seen=len(events),
            )
            events[want.event_id] = event
        elif not event.cost and want.cost:
            event.cost = want.cost
        event.interested_ids.append(want.participant_id)
    return list(events.values())


def processing_order(events: Iterable[Event]) -> List[Event]:
    """Highest priority first, then most interest, then first-seen."""
    return sorted(events, key=lambda e: (-e.effective_priority, -len(e.interested_ids), e.first_seen))


# -------------------- Capacity Ledger --------------------
class CapacityLedger:
    """Remaining purchase quota per participant.

    Only ``try_reserve`` and ``release`` change the counts. Participants that
    were never seeded have no capacity at all.
    """

    def __init__(self, participant_ids: Iterable[str], cap: int = PER_USER_CAP):
        self.cap = cap
        self._remaining: Dict[str, int] = {pid: cap for pid in participant_ids}

    def __contains__(self, participant_id: str) -> bool:
        return participant_id in self._remaining

    def remaining(self, participant_id: str) -> int:
        return self._remaining.get(participant_id, 0)

    def used(self, participant_id: str) -> int:
        if participant_id not in self._remaining:
            return 0
        return self.cap - self._remaining[participant_id]

    def has_capacity(self, participant_id: str) -> bool:
        return self.remaining(participant_id) > 0

    def try_reserve(self, participant_id: str) -> bool:
        if self.remaining(participant_id) <= 0:
            return False
        self._remaining[participant_id] -= 1
        return True

    def release(self, participant_id: str) -> None:
        if participant_id not in self._remaining:
            raise ValueError(f"Unknown participant '{participant_id}'")
        if self._remaining[participant_id] >= self.cap:
            raise ValueError(f"Participant '{participant_id}' holds no reserved slot to release")
        self._remaining[participant_id] += 1

    def total_remaining(self) -> int:
        return sum(self._remaining.values())


# -------------------- Coverage Allocator --------------------
PurchaseBook = Dict[str, Dict[str, EventPurchase]]  # participant id -> event id -> purchase


def _unique_names(ids: Iterable[str], names: Mapping[str, str]) -> List[str]:
    return list(dict.fromkeys(names.get(pid, pid) for pid in ids))


def allocate_coverage(
    events: List[Event],
    roster: List[Participant],
    ledger: CapacityLedger,
    *,
    names: Mapping[str, str] | None = None,
    redundancy_limit: int | None = None,
    log: DecisionLogger | None = None,
) -> Tuple[PurchaseBook, List[str]]:
    """Assign buyers to every event; returns the purchase book and diagnostics."""
    if names is None:
        names = {p.id: p.display_name for p in roster}
    book: PurchaseBook = {p.id: {} for p in roster}
    errors: List[str] = []

    for event in processing_order(events):
        buyers = 0
        for pid in event.interested_ids:
            if redundancy_limit is not None and buyers >= redundancy_limit:
                break
            if not ledger.try_reserve(pid):
                continue
            book[pid][event.id] = EventPurchase(
                event_id=event.id,
                event_title=event.title,
                priority=event.effective_priority,
                cost=event.cost,
                buying_for=[names.get(pid, pid)],
            )
            buyers += 1
            if log is not None:
                log.log("allocate", event.id, pid, "Buyer")
        if buyers:
            continue

        proxy_id = None
        for participant in roster:
            if ledger.try_reserve(participant.id):
                proxy_id = participant.id
                break
        if proxy_id is None:
            errors.append(f"No buyers available for event {event.id} ({event.title})")
            if log is not None:
                log.log("fallback", event.id, "", "Uncovered", "roster has no spare capacity")
            continue

        book[proxy_id][event.id] = EventPurchase(
            event_id=event.id,
            event_title=event.title,
            priority=event.effective_priority,
            cost=event.cost,
            buying_for=_unique_names(event.interested_ids, names),
            proxy=True,
        )
        if log is not None:
            log.log("fallback", event.id, proxy_id, "Proxy buyer",
                    f"covers {len(event.interested_ids)} interested")

    return book, errors


# -------------------- Fairness Rebalancer --------------------
def rebalance_fairness(
    events: List[Event],
    roster: List[Participant],
    ledger: CapacityLedger,
    book: PurchaseBook,
    *,
    spread: int = 2,
    max_passes: int = 25,
    names: Mapping[str, str] | None = None,
    log: DecisionLogger | None = None,
) -> int:
    """Move purchases from heavy buyers to lighter, interested ones.

    A move transfers one ``EventPurchase`` from a holder to an interested
    participant who does not hold the event, has spare capacity, and carries
    at least two fewer purchases. The recipient is appended to ``buying_for``
    so the donor stays covered. A proxy purchase that is its event's only
    buyer never moves. Returns the number of moves made.
    """
    if len(roster) < 2:
        return 0
    if names is None:
        names = {p.id: p.display_name for p in roster}
    order = {p.id: idx for idx, p in enumerate(roster)}
    loads = {pid: len(book.get(pid, {})) for pid in order}

    holders: Dict[str, List[str]] = defaultdict(list)
    for participant in roster:
        for eid in book.get(participant.id, {}):
            holders[eid].append(participant.id)

    def current_spread() -> int:
        return max(loads.values()) - min(loads.values())

    ordered_events = processing_order(events)
    moves = 0
    for pass_num in range(max_passes):
        if current_spread() <= spread:
            break
        moved = False
        for event in ordered_events:
            owners = holders.get(event.id)
            if not owners:
                continue
            owned = set(owners)
            open_ids = [
                pid for pid in event.interested_ids
                if pid in loads and pid not in owned and ledger.has_capacity(pid)
            ]
            while open_ids:
                donor = max(owners, key=lambda pid: (loads[pid], -order[pid]))
                recipient = min(open_ids, key=lambda pid: (loads[pid], order[pid]))
                if loads[donor] - loads[recipient] < 2:
                    break
                purchase = book[donor][event.id]
                if purchase.proxy and len(owners) == 1:
                    break
                open_ids.remove(recipient)
                if not ledger.try_reserve(recipient):
                    continue
                ledger.release(donor)

                del book[donor][event.id]
                purchase.buying_for = list(dict.fromkeys(purchase.buying_for + [names.get(recipient, recipient)]))
                book[recipient][event.id] = purchase
                owners.remove(donor)
                owners.append(recipient)
                loads[donor] -= 1
                loads[recipient] += 1
                moves += 1
                moved = True
                if log is not None:
                    log.log("rebalance", event.id, recipient, "Moved purchase",
                            f"from {donor} (pass {pass_num + 1})")
                if current_spread() <= spread:
                    return moves
        if not moved:
            break
    return moves


# -------------------- Result Assembler --------------------
def assemble_result(
    roster: List[Participant],
    book: PurchaseBook,
    errors: Iterable[str],
    events: List[Event],
    log: DecisionLogger,
    cap: int = PER_USER_CAP,
) -> AllocationResult:
    assignments = [
        Assignment(
            participant_id=p.id,
            display_name=p.display_name,
            purchases=list(book.get(p.id, {}).values()),
        )
        for p in roster
    ]
    return AllocationResult(assignments=assignments, errors=list(errors), events=events, log=log, cap=cap)


def calculate_ticket_assignments(
    wants: Iterable[object],
    roster: Iterable[object] | None = None,
    *,
    overrides: dict | None = None,
) -> AllocationResult:
    """Plan who buys which ticket.

    ``wants`` holds mapping rows (``participant_id``, ``participant_name``,
    ``event_id``, ``event_title``, ``cost``, optional ``priority`` and
    ``event_priority``) or ``Want`` objects. When ``roster`` is ``None`` the
    participants are taken from the wants in first-seen order; an empty
    roster is the one fatal precondition.
    """
    cfg = build_config(overrides)
    log = DecisionLogger()
    want_rows = list(wants)

    participants = resolve_roster(roster) if roster is not None else roster_from_wants(want_rows)
    if not participants:
        log.log("summary", "", "", "Aborted", NO_USERS_ERROR)
        return AllocationResult(assignments=[], errors=[NO_USERS_ERROR], events=[], log=log,
                                cap=int(cfg["PER_USER_CAP"]))

    normalized = normalize_wants(want_rows, default_priority=cfg["DEFAULT_PRIORITY"], log=log)
    events = build_event_index(normalized)

    names: Dict[str, str] = {w.participant_id: w.participant_name for w in normalized.wants}
    names.update({p.id: p.display_name for p in participants})

    ledger = CapacityLedger([p.id for p in participants], int(cfg["PER_USER_CAP"]))
    limit = cfg["REDUNDANCY_LIMIT"]
    book, errors = allocate_coverage(
        events,
        participants,
        ledger,
        names=names,
        redundancy_limit=int(limit) if limit is not None else None,
        log=log,
    )

    if cfg["REBALANCE"]:
        moves = rebalance_fairness(
            events,
            participants,
            ledger,
            book,
            spread=int(cfg["FAIRNESS_SPREAD"]),
            max_passes=int(cfg["MAX_REBALANCE_PASSES"]),
            names=names,
            log=log,
        )
        log.log("summary", "", "", "Rebalanced", f"{moves} moves")

    unused = ledger.total_remaining()
    if unused > 0 and events:
        log.log("summary", "", "", "Unused capacity", f"{unused} purchase slots remain unused")

    return assemble_result(participants, book, errors, events, log, cap=ledger.cap)
