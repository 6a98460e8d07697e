#!/usr/bin/env python3
"""Summarize purchase load after allocation.

Reads ``ticket_assignments.json`` and emits a per-person CSV/console summary
tracking how many purchases each participant executes, split by priority
tier, how many of those are proxy purchases or cover other people, and the
money each participant fronts. Optional plots show the load per person and a
Lorenz-style curve of how evenly the work is spread.
"""

from __future__ import annotations

import argparse
import csv
import json
import sys
from collections import defaultdict
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional

import ticket_allocator as allocator

REPORT_FIELDS = [
    "Participant",
    "TotalTickets",
    "CriticalTickets",
    "ImportantTickets",
    "NormalTickets",
    "ProxyPurchases",
    "BuyingForOthers",
    "WantedEvents",
    "TotalCost",
    "AtCap",
]


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Generate a per-person purchase report", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    ap.add_argument("--assigned", default="ticket_assignments.json", type=Path, help="JSON produced by allocate_tickets.py")
    ap.add_argument("--out", default=Path("reports") / "allocation_report.csv", type=Path, help="Where to write the per-person CSV report")
    ap.add_argument("--summary", default=Path("reports") / "allocation_report.txt", type=Path, help="Optional plaintext summary (set to '-' to skip)")
    ap.add_argument("--plots-bars", default=Path("reports") / "load_bars.png", type=Path, help="Per-person load chart (set to '-' to skip)")
    ap.add_argument("--plots-lorenz", default=Path("reports") / "load_lorenz.png", type=Path, help="Lorenz curve chart (set to '-' to skip)")
    ap.add_argument("--cap", type=int, help="Override the purchase cap used for the AtCap column (defaults to the cap stored in the JSON)")
    return ap.parse_args()


def load_payload(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def parse_cost(value: object) -> Decimal:
    text = str(value or "").replace("$", "").replace(",", "").strip()
    if not text:
        return Decimal("0")
    try:
        return Decimal(text)
    except InvalidOperation:
        return Decimal("0")


def collect_wanted(events: List[dict]) -> Dict[str, int]:
    wanted: Dict[str, int] = defaultdict(int)
    for event in events:
        for pid in event.get("interested_ids") or []:
            wanted[pid] += 1
    return wanted


def payload_cap(payload: dict, override: Optional[int] = None) -> int:
    if override is not None:
        return override
    return int(payload.get("cap") or allocator.PER_USER_CAP)


def build_report(payload: dict, cap: Optional[int] = None) -> List[Dict[str, str]]:
    """One row per participant.

    ``BuyingForOthers`` counts purchases whose ``buying_for`` names someone
    other than the buyer. The JSON only carries display names there, so two
    participants sharing a name are counted as the same person.
    """
    cap = payload_cap(payload, cap)
    wanted = collect_wanted(payload.get("events") or [])
    report: List[Dict[str, str]] = []
    for assignment in payload.get("assignments") or []:
        name = assignment.get("participant_name", "")
        purchases = assignment.get("purchases") or []
        tiers: Dict[int, int] = defaultdict(int)
        proxy = 0
        for_others = 0
        cost = Decimal("0")
        for purchase in purchases:
            tiers[int(purchase.get("priority") or 0)] += 1
            if purchase.get("proxy"):
                proxy += 1
            if any(person != name for person in purchase.get("buying_for") or []):
                for_others += 1
            cost += parse_cost(purchase.get("cost"))
        total = len(purchases)
        report.append(
            {
                "Participant": name,
                "TotalTickets": total,
                "CriticalTickets": tiers[3],
                "ImportantTickets": tiers[2],
                "NormalTickets": tiers[1],
                "ProxyPurchases": proxy,
                "BuyingForOthers": for_others,
                "WantedEvents": wanted.get(assignment.get("participant_id", ""), 0),
                "TotalCost": f"{cost:.2f}",
                "AtCap": "YES" if total >= cap else "NO",
            }
        )
    return report


def coverage_stats(payload: dict) -> Dict[str, object]:
    buyers: Dict[str, int] = defaultdict(int)
    for assignment in payload.get("assignments") or []:
        for purchase in assignment.get("purchases") or []:
            buyers[purchase.get("event_id", "")] += 1
    events = payload.get("events") or []
    uncovered = [e.get("event_id", "") for e in events if buyers.get(e.get("event_id", ""), 0) == 0]
    redundant = sum(1 for e in events if buyers.get(e.get("event_id", ""), 0) >= 2)
    return {"events": len(events), "uncovered": uncovered, "redundant": redundant}


def write_report(rows: List[Dict[str, str]], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=REPORT_FIELDS)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def write_summary(rows: List[Dict[str, str]], payload: dict, path: Path) -> None:
    if str(path) == "-":
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = ["Allocation report"]
    if not rows:
        lines.append("No participants found.")
    else:
        loads = [int(row["TotalTickets"]) for row in rows]
        lines.append(f"Participants: {len(rows)} (total purchases={sum(loads)})")
        lines.append(f"Load spread: {max(loads) - min(loads)} (min={min(loads)}, max={max(loads)})")
        at_cap = [row["Participant"] for row in rows if row["AtCap"] == "YES"]
        if at_cap:
            lines.append("At purchase cap: " + ", ".join(at_cap))
        proxies = [row for row in rows if int(row["ProxyPurchases"]) > 0]
        if proxies:
            lines.append("Proxy buyers: " + ", ".join(f"{row['Participant']} ({row['ProxyPurchases']})" for row in proxies))

    stats = coverage_stats(payload)
    lines.append(f"Events: {stats['events']} (redundant={stats['redundant']}, uncovered={len(stats['uncovered'])})")
    if stats["uncovered"]:
        lines.append("Uncovered events: " + ", ".join(stats["uncovered"]))
    for err in payload.get("errors") or []:
        lines.append(f"Diagnostic: {err}")

    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def write_plots(rows: List[Dict[str, str]], bars_path: Path, lorenz_path: Path) -> None:
    if not rows:
        return
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    ordered = sorted(rows, key=lambda r: (int(r["TotalTickets"]), r["Participant"]))
    people = [r["Participant"] for r in ordered]

    if str(bars_path) != "-":
        bars_path.parent.mkdir(parents=True, exist_ok=True)
        plt.figure(figsize=(12, 5))
        bottom = [0] * len(ordered)
        for column, label in (("CriticalTickets", "Critical"), ("ImportantTickets", "Important"), ("NormalTickets", "Normal")):
            vals = [int(r[column]) for r in ordered]
            plt.bar(people, vals, bottom=bottom, label=label)
            bottom = [b + v for b, v in zip(bottom, vals)]
        plt.xticks(rotation=60, ha="right")
        plt.ylabel("Purchases")
        plt.title("Per-person purchase load (ascending, by priority)")
        plt.legend()
        plt.tight_layout()
        plt.savefig(bars_path, dpi=160)
        plt.close("all")

    if str(lorenz_path) != "-":
        lorenz_path.parent.mkdir(parents=True, exist_ok=True)
        xs = [int(r["TotalTickets"]) for r in ordered]
        total = sum(xs) or 1
        cum = [0.0]
        running = 0
        for x in xs:
            running += x
            cum.append(running / total)
        plt.figure(figsize=(6, 5))
        plt.plot([i / len(xs) for i in range(len(cum))], cum, marker="o")
        plt.plot([0, 1], [0, 1], "--")
        plt.xlabel("Fraction of people (sorted)")
        plt.ylabel("Fraction of total purchases")
        plt.title("Purchase distribution (Lorenz-like)")
        plt.tight_layout()
        plt.savefig(lorenz_path, dpi=160)
        plt.close("all")


def main() -> None:
    args = parse_args()
    payload = load_payload(args.assigned)
    rows = build_report(payload, args.cap)
    write_report(rows, args.out)
    write_summary(rows, payload, args.summary)
    try:
        write_plots(rows, args.plots_bars, args.plots_lorenz)
    except Exception as e:
        print(f"[warn] Could not produce plots: {e}", file=sys.stderr)
    print(f"Wrote report to {args.out}")
    if str(args.summary) != "-":
        print(f"Summary saved to {args.summary}")


if __name__ == "__main__":
    main()
