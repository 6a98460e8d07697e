#!/usr/bin/env python3
"""Draw who buys what: a participant/event graph of the allocation."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Dict, List, Tuple

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.lines import Line2D
import networkx as nx

import ticket_allocator as allocator

LAYOUT_CHOICES = ("bipartite", "spring")
PRIORITY_COLORS = {3: "#d62728", 2: "#ffbf00", 1: "#c7c7c7"}
EDGE_STYLES = {
    "buy": {"style": "solid", "color": "#1f77b4", "width": 1.4},
    "proxy": {"style": "dashed", "color": "#9467bd", "width": 1.8},
    "want": {"style": "dotted", "color": "#7f7f7f", "width": 0.8},
}


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Visualize ticket purchase allocation")
    ap.add_argument("--assigned", default="ticket_assignments.json", type=Path)
    ap.add_argument(
        "--out-dir",
        dest="out_dir",
        default=Path("allocation_graphs"),
        type=Path,
        help="Directory for generated graph files",
    )
    ap.add_argument("--out-prefix", default="allocation_graph", type=str,
                    help="Base filename prefix (suffixes are added per layout)")
    ap.add_argument(
        "--layouts",
        nargs="+",
        default=list(LAYOUT_CHOICES),
        choices=LAYOUT_CHOICES,
        help="One or more layout names to render",
    )
    ap.add_argument("--hide-wants", action="store_true",
                    help="Skip edges for interest that did not become a purchase")
    ap.add_argument("--max-label-chars", type=int, default=24)
    ap.add_argument("--dpi", type=int, default=200, help="Output DPI")
    return ap.parse_args()


def _participant_node(pid: str) -> str:
    return f"p::{pid}"


def _event_node(eid: str) -> str:
    return f"e::{eid}"


def build_graph(payload: dict, *, include_wants: bool = True) -> nx.Graph:
    graph = nx.Graph()
    names: Dict[str, str] = {}
    for assignment in payload.get("assignments") or []:
        pid = assignment["participant_id"]
        names[pid] = assignment.get("participant_name") or pid
        graph.add_node(
            _participant_node(pid),
            kind="participant",
            label=names[pid],
            load=int(assignment.get("total_tickets", 0)),
        )

    for event in payload.get("events") or []:
        graph.add_node(
            _event_node(event["event_id"]),
            kind="event",
            label=event.get("event_title") or event["event_id"],
            priority=int(event.get("priority") or 0),
        )

    for assignment in payload.get("assignments") or []:
        src = _participant_node(assignment["participant_id"])
        for purchase in assignment.get("purchases") or []:
            dst = _event_node(purchase["event_id"])
            if dst not in graph:
                graph.add_node(dst, kind="event", label=purchase.get("event_title", ""),
                               priority=int(purchase.get("priority") or 0))
            graph.add_edge(src, dst, kind="proxy" if purchase.get("proxy") else "buy")

    if include_wants:
        for event in payload.get("events") or []:
            dst = _event_node(event["event_id"])
            for pid in event.get("interested_ids") or []:
                src = _participant_node(pid)
                if src in graph and not graph.has_edge(src, dst):
                    graph.add_edge(src, dst, kind="want")

    if not graph.nodes:
        raise RuntimeError("Nothing to visualize")
    return graph


def _layout_bipartite(graph: nx.Graph) -> Dict[str, Tuple[float, float]]:
    people = [n for n, data in graph.nodes(data=True) if data["kind"] == "participant"]
    if not people:
        return nx.spring_layout(graph, seed=42)
    return nx.bipartite_layout(graph, people)


def _layout_spring(graph: nx.Graph) -> Dict[str, Tuple[float, float]]:
    if len(graph.nodes) == 1:
        return {next(iter(graph.nodes)): (0.0, 0.0)}
    return nx.spring_layout(graph, seed=42)


LAYOUT_FNS = {
    "bipartite": _layout_bipartite,
    "spring": _layout_spring,
}


def _format_labels(graph: nx.Graph, max_chars: int) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for node, data in graph.nodes(data=True):
        text = data.get("label", "")
        if data["kind"] == "participant":
            text = f"{text} ({data.get('load', 0)})"
        if len(text) > max_chars:
            text = text[: max_chars - 1] + "…"
        labels[node] = text
    return labels


def render_graph(
    graph: nx.Graph,
    positions: Dict[str, Tuple[float, float]],
    out_path: Path,
    *,
    layout_name: str,
    dpi: int,
    max_label_chars: int,
) -> None:
    fig, ax = plt.subplots(figsize=(13, 9))
    people = [n for n, d in graph.nodes(data=True) if d["kind"] == "participant"]
    events = [n for n, d in graph.nodes(data=True) if d["kind"] == "event"]

    nx.draw_networkx_nodes(graph, positions, nodelist=people, node_shape="s",
                           node_color="#aec7e8", node_size=500, ax=ax)
    nx.draw_networkx_nodes(
        graph, positions, nodelist=events, node_shape="o", node_size=320, ax=ax,
        node_color=[PRIORITY_COLORS.get(graph.nodes[n].get("priority"), "#000000") for n in events],
    )
    for kind, style in EDGE_STYLES.items():
        edgelist = [(u, v) for u, v, d in graph.edges(data=True) if d["kind"] == kind]
        if edgelist:
            nx.draw_networkx_edges(graph, positions, edgelist=edgelist, style=style["style"],
                                   edge_color=style["color"], width=style["width"], ax=ax)
    nx.draw_networkx_labels(graph, positions, labels=_format_labels(graph, max_label_chars), font_size=7, ax=ax)

    handles = [
        Line2D([0], [0], color=style["color"], linestyle=style["style"], label=kind)
        for kind, style in EDGE_STYLES.items()
    ] + [
        Line2D([0], [0], marker="o", color="w", markerfacecolor=color, markersize=9,
               label=allocator.get_priority_label(priority))
        for priority, color in sorted(PRIORITY_COLORS.items(), reverse=True)
    ]
    ax.legend(handles=handles, loc="upper right", fontsize=8)
    ax.set_title(f"Ticket purchases ({layout_name} layout)")
    ax.set_axis_off()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)


def draw_graph_variants(
    graph: nx.Graph,
    out_dir: Path,
    out_prefix: str,
    *,
    layouts: List[str],
    dpi: int = 200,
    max_label_chars: int = 24,
) -> List[Path]:
    generated: List[Path] = []
    out_dir.mkdir(parents=True, exist_ok=True)
    prefix = Path(out_prefix).stem or "allocation_graph"
    for layout in layouts:
        out_path = out_dir / f"{prefix}_{layout}.png"
        positions = LAYOUT_FNS[layout](graph)
        render_graph(graph, positions, out_path, layout_name=layout, dpi=dpi, max_label_chars=max_label_chars)
        generated.append(out_path)
    return generated


def main() -> None:
    args = parse_args()
    payload = json.loads(args.assigned.read_text(encoding="utf-8"))
    graph = build_graph(payload, include_wants=not args.hide_wants)
    paths = draw_graph_variants(
        graph,
        args.out_dir,
        args.out_prefix,
        layouts=args.layouts,
        dpi=args.dpi,
        max_label_chars=args.max_label_chars,
    )
    for path in paths:
        print(f"Wrote {path}")


if __name__ == "__main__":
    main()
