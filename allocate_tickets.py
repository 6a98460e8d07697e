#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Plan ticket purchases for a group from a wishlist export.

Inputs:
  - wants.csv        (ParticipantId, Participant, EventId, EventTitle, Cost,
                      Priority, EventPriority)
  - roster.csv       (optional; ParticipantId, Participant). Without it the
                      roster is everyone who appears in wants.csv.
  - --config x.json  (optional; overrides for ticket_allocator.DEFAULT_CONFIG)

Either CSV may instead come from a published Google Sheet (--sheet-id with
--wants-gid / --roster-gid); the export is cached next to the other inputs and
only re-downloaded with --refresh.

Outputs:
  - ticket_assignments.json   (assignments, errors, events)
  - ticket_assignments.csv    (one row per purchase)
  - decision_log.csv          (step-by-step allocator decisions)
"""

from __future__ import annotations

import argparse
import csv
import json
import ssl
import sys
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional

import certifi

import ticket_allocator as allocator

SCRIPT_DIR = Path(__file__).resolve().parent

WANT_COLUMNS = {
    "participant_id": "ParticipantId",
    "participant_name": "Participant",
    "event_id": "EventId",
    "event_title": "EventTitle",
    "cost": "Cost",
    "priority": "Priority",
    "event_priority": "EventPriority",
}
ROSTER_COLUMNS = {
    "participant_id": "ParticipantId",
    "participant_name": "Participant",
}
PURCHASE_FIELDS = [
    "Participant",
    "ParticipantId",
    "EventId",
    "EventTitle",
    "Priority",
    "PriorityLabel",
    "Cost",
    "BuyingFor",
    "Proxy",
]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Allocate ticket purchases across a group",
                                 formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    ap.add_argument("--wants", default="wants.csv", type=Path, help="Wishlist CSV (one row per participant/event)")
    ap.add_argument("--roster", type=Path, help="Optional roster CSV; defaults to everyone in the wishlist")
    ap.add_argument("--config", type=Path, help="Optional JSON file with CONFIG overrides")
    ap.add_argument("--sheet-id", help="Google Sheets document id to export CSVs from")
    ap.add_argument("--wants-gid", help="Sheet gid holding the wishlist (requires --sheet-id)")
    ap.add_argument("--roster-gid", help="Sheet gid holding the roster (requires --sheet-id)")
    ap.add_argument("--refresh", action="store_true", help="Re-download cached sheet exports")
    ap.add_argument("--out-json", default="ticket_assignments.json", type=Path)
    ap.add_argument("--out-csv", default="ticket_assignments.csv", type=Path)
    ap.add_argument("--decision-log", default="decision_log.csv", type=Path,
                    help="Where to write the decision log (set to '-' to skip)")
    return ap.parse_args(argv)


# ---------------------------- I/O ------------------------------------

def export_csv_url(doc_id: str, gid: str) -> str:
    base = f"https://docs.google.com/spreadsheets/d/{doc_id}/export"
    q = urllib.parse.urlencode({"format": "csv", "gid": gid})
    return f"{base}?{q}"


def download_if_needed(url: str, dest: Path, force: bool = False) -> Path:
    if dest.exists() and not force:
        return dest
    ctx = ssl.create_default_context(cafile=certifi.where())
    req = urllib.request.Request(url, headers={"User-Agent": "Mozilla/5.0 (TicketAllocator/1.0)"})
    with urllib.request.urlopen(req, context=ctx) as resp:
        data = resp.read()
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    return dest


def resolve_data_path(path: Path) -> Path:
    """Locate a data file relative to CWD, falling back to the script directory."""
    if path.exists():
        return path
    if not path.is_absolute():
        alt = SCRIPT_DIR / path
        if alt.exists():
            return alt
    return path


def read_rows(path: Path, columns: Dict[str, str]) -> List[Dict[str, str]]:
    """Read a CSV and rename its header columns to the engine's field names."""
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        rows = []
        for raw in csv.DictReader(handle):
            rows.append({key: (raw.get(col) or "").strip() for key, col in columns.items()})
    return rows


def load_overrides(path: Optional[Path]) -> Optional[dict]:
    if path is None:
        return None
    data = json.loads(resolve_data_path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


def purchase_rows(result: allocator.AllocationResult) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for assignment in result.assignments:
        for purchase in assignment.purchases:
            rows.append({
                "Participant": assignment.display_name,
                "ParticipantId": assignment.participant_id,
                "EventId": purchase.event_id,
                "EventTitle": purchase.event_title,
                "Priority": str(purchase.priority),
                "PriorityLabel": allocator.get_priority_label(purchase.priority),
                "Cost": purchase.cost,
                "BuyingFor": ", ".join(purchase.buying_for),
                "Proxy": "YES" if purchase.proxy else "NO",
            })
    return rows


def write_purchases(rows: List[Dict[str, str]], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=PURCHASE_FIELDS)
        writer.writeheader()
        writer.writerows(rows)


def write_json(payload: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


# ---------------------------- Run ------------------------------------

def run_allocation(
    *,
    wants: Path,
    roster: Optional[Path] = None,
    out_json: Path,
    out_csv: Path,
    decision_log: Optional[Path] = None,
    overrides: dict | None = None,
) -> allocator.AllocationResult:
    paths = [wants] + ([roster] if roster is not None else [])
    for p in paths:
        if not p.exists():
            raise SystemExit(f"Missing file: {p}")

    want_rows = read_rows(wants, WANT_COLUMNS)
    roster_rows = read_rows(roster, ROSTER_COLUMNS) if roster is not None else None

    result = allocator.calculate_ticket_assignments(want_rows, roster_rows, overrides=overrides)

    write_json(result.to_dict(), out_json)
    write_purchases(purchase_rows(result), out_csv)
    if decision_log is not None and str(decision_log) != "-":
        result.log.write_csv(decision_log)
    return result


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    wants_path = resolve_data_path(args.wants)
    roster_path = resolve_data_path(args.roster) if args.roster else None
    if args.sheet_id:
        if args.wants_gid:
            download_if_needed(export_csv_url(args.sheet_id, args.wants_gid), wants_path, args.refresh)
        if args.roster_gid:
            roster_path = roster_path or Path("roster.csv")
            download_if_needed(export_csv_url(args.sheet_id, args.roster_gid), roster_path, args.refresh)
    elif args.wants_gid or args.roster_gid:
        raise SystemExit("--wants-gid/--roster-gid require --sheet-id")

    result = run_allocation(
        wants=wants_path,
        roster=roster_path,
        out_json=args.out_json,
        out_csv=args.out_csv,
        decision_log=args.decision_log,
        overrides=load_overrides(args.config),
    )

    purchases = sum(a.total_tickets for a in result.assignments)
    print(f"Planned {purchases} purchases for {len(result.assignments)} participants "
          f"across {len(result.events)} events → {args.out_json} | {args.out_csv}")
    for err in result.errors:
        print(f"[warn] {err}", file=sys.stderr)


if __name__ == "__main__":
    main()
