"""Import and distribution report formatting.

Provides human-readable and machine-readable output:

- ``format_import_report`` -- full post-import summary.
- ``format_conflicts`` -- preview of conflict decisions before an import.
- ``format_distribution_item`` -- delivery state of one item.
- ``report_to_json`` -- structured dict for the wire and ``--json`` output.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ConflictDecision, DistributionItem, ImportReport, PreparedPost

# ------------------------------------------------------------------
# Import report
# ------------------------------------------------------------------


def format_import_report(report: ImportReport) -> str:
    """Format an import report as human-readable text.

    Sections are only included when they contain at least one result.

    Args:
        report: The completed import report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(f"Import into node {report.node_id}")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"Imported {len(report.results)} posts: "
        f"{len(report.inserted)} inserted, {len(report.replaced)} replaced, "
        f"{len(report.skipped)} skipped, {len(report.removed)} removed, "
        f"{len(report.errors)} errors"
    )
    lines.append("")

    sections = [
        ("Inserted:", report.inserted),
        ("Replaced:", report.replaced),
        ("Skipped:", report.skipped),
        ("Removed:", report.removed),
    ]
    for title, results in sections:
        if not results:
            continue
        lines.append(title)
        for r in results:
            target = f" -> {r.new_id}" if r.new_id else ""
            lines.append(f"  {r.post_type} '{r.post_name}' ({r.original_id}{target})")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.post_type} '{r.post_name}' ({r.original_id}): {r.error}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflict preview
# ------------------------------------------------------------------


def format_conflicts(
    posts: dict[int, PreparedPost], decisions: dict[int, ConflictDecision]
) -> str:
    """Format conflict decisions grouped by action.

    Each entry is shown as ``post_type 'post_name' (incoming) <-> existing``.
    """
    if not decisions:
        return "No conflicts."

    groups: dict[str, list[str]] = defaultdict(list)
    for post_id, decision in decisions.items():
        post = posts.get(post_id)
        label = f"{post.post_type} '{post.post_name}'" if post else "post"
        groups[decision.conflict_action.value].append(
            f"  {label} ({post_id}) <-> {decision.existing_post_id}"
        )

    lines: list[str] = []
    for action in ("replace", "skip", "keep"):
        if action not in groups:
            continue
        lines.append(f"[{action.upper()}]")
        lines.extend(groups[action])
        lines.append("")
    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Distribution
# ------------------------------------------------------------------


def format_distribution_item(item: DistributionItem) -> str:
    lines = [
        f"Distribution {item.id} ({item.status.value})",
        f"Root: {item.root_gid or '-'}, {len(item.posts)} posts",
    ]
    if item.origin:
        lines.append(f"Received from {item.origin} (item {item.origin_id})")
    for key, state in sorted(item.destinations.items()):
        line = f"  {key}: {state.status.value}"
        if state.error:
            line += f" ({state.error})"
        lines.append(line)
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: ImportReport) -> dict:
    """Convert an import report to a structured dict for JSON serialisation.

    Args:
        report: The import report.

    Returns:
        Dict with node id, counts, id map and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "original_id": r.original_id,
            "post_name": r.post_name,
            "post_type": r.post_type,
            "action": r.action,
            "new_id": r.new_id,
            "success": r.success,
        }
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "node_id": report.node_id,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "ok": report.ok,
        "counts": {
            "total": len(report.results),
            "inserted": len(report.inserted),
            "replaced": len(report.replaced),
            "skipped": len(report.skipped),
            "removed": len(report.removed),
            "errors": len(report.errors),
        },
        "id_map": {str(k): v for k, v in report.id_map.items()},
        "results": results_list,
    }
