"""Operator CLI for recomputing grade aggregates, retrying archive cascades and reading the audit trail.

Run it as ``python scripts/maintain_aggregates.py <command>``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import typer
from rich.console import Console
from rich.table import Table

from lmsync.runtime import ServiceContext, bootstrap_services
from lmsync.services.hierarchy import USERS

ENV_REPO_ROOT = "LMSYNC_REPO_ROOT"


def _resolve_repo_root() -> Path:
    override = os.environ.get(ENV_REPO_ROOT)
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).resolve().parents[1]


REPO_ROOT = _resolve_repo_root()

app = typer.Typer(help="Recompute derived grade fields and resolve pending archive cascades.")
console = Console()

StoreOption = typer.Option(
    None,
    "--store",
    show_default=False,
    help="SQLite document store (defaults to LMSYNC_STORE or store.sqlite_path from the config).",
)
ConfigOption = typer.Option(None, "--config", show_default=False, help="Path to lmsync.yaml.")
JsonOption = typer.Option(False, "--json", help="Emit JSON instead of a table.")


def _context(store: Path | None, config: Path | None) -> ServiceContext:
    if store is not None and not store.expanduser().exists():
        raise typer.BadParameter(f"Document store not found at {store}")
    try:
        return bootstrap_services(config, repo_root=REPO_ROOT, store_override=store)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _print_mapping(title: str, payload: Dict[str, Any]) -> None:
    table = Table("Field", "Value", title=title)
    for key, value in payload.items():
        table.add_row(str(key), str(value))
    console.print(table)


@app.command("recompute-attempt")
def recompute_attempt(
    attempt_path: str = typer.Argument(..., help="users/{uid}/quizAttempts/{quizId}/attempts/{attemptId}"),
    store: Path | None = StoreOption,
    config: Path | None = ConfigOption,
    as_json: bool = JsonOption,
) -> None:
    """Re-derive one attempt, its quiz summary, and the user's quiz average."""

    ctx = _context(store, config)
    try:
        outcome = ctx.grading().recompute_attempt(attempt_path)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    payload = outcome.to_dict()
    if as_json:
        _emit_json(payload)
        return
    console.print(f"[bold]{outcome.attempt_path}[/bold]: {outcome.status}")
    for section in ("attempt", "summary", "user"):
        if payload.get(section):
            _print_mapping(section.capitalize(), payload[section])
    for warning in outcome.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@app.command("recompute-user")
def recompute_user(
    user_id: str = typer.Argument(..., help="User document id."),
    store: Path | None = StoreOption,
    config: Path | None = ConfigOption,
    as_json: bool = JsonOption,
) -> None:
    """Rebuild every derived grade field of one user."""

    ctx = _context(store, config)
    payload = ctx.grading().recompute_user(user_id)
    if as_json:
        _emit_json(payload)
        return
    _print_mapping(f"User {user_id}", payload)


@app.command()
def backfill(
    store: Path | None = StoreOption,
    config: Path | None = ConfigOption,
    as_json: bool = JsonOption,
) -> None:
    """Recompute every user in the store."""

    ctx = _context(store, config)
    engine = ctx.grading()
    rows: List[Dict[str, Any]] = [engine.recompute_user(snap.id) for snap in ctx.store.collection(USERS).get()]
    if as_json:
        _emit_json(rows)
        return
    table = Table("User", "Avg quiz", "Avg assignment", "Graded", "Attempts updated", "Summaries updated")
    for row in rows:
        table.add_row(
            row["userId"],
            str(row["averageQuizScore"]),
            str(row["averageAssignmentGrade"]),
            str(row["gradedAssignmentsCount"]),
            str(row["attemptsUpdated"]),
            str(row["summariesUpdated"]),
        )
    console.print(table)
    console.print(f"[dim]{len(rows)} users recomputed[/dim]")


@app.command("retry-cascades")
def retry_cascades(
    store: Path | None = StoreOption,
    config: Path | None = ConfigOption,
    as_json: bool = JsonOption,
) -> None:
    """Re-run pending module archive cascades; expired records are dropped."""

    ctx = _context(store, config)
    report = ctx.archive().retry_pending_cascades()
    payload = {
        "results": {module_id: result.to_dict() for module_id, result in report["results"].items()},
        "expired": report["expired"],
    }
    if as_json:
        _emit_json(payload)
        return
    table = Table("Module", "Outcome", "Detail")
    for module_id, result in payload["results"].items():
        detail = result.get("message") or result.get("value")
        table.add_row(module_id, result["code"], str(detail))
    for module_id in payload["expired"]:
        table.add_row(module_id, "expired", "pending record dropped")
    console.print(table)


@app.command("audit-trail")
def audit_trail(
    operation: str | None = typer.Option(None, "--operation", help="Only events of this operation."),
    subject: str | None = typer.Option(None, "--subject", help="Only events about this document path."),
    unresolved: bool = typer.Option(False, "--unresolved", help="Subjects whose latest event did not succeed."),
    store: Path | None = StoreOption,
    config: Path | None = ConfigOption,
    as_json: bool = JsonOption,
) -> None:
    """Show audit events, e.g. module cascades that are still failing."""

    ctx = _context(store, config)
    if ctx.audit is None:
        raise typer.BadParameter("No audit.path configured")
    if unresolved:
        if operation is None:
            raise typer.BadParameter("--unresolved needs --operation")
        events = ctx.audit.unresolved(operation)
    else:
        events = ctx.audit.read(operation=operation, subject=subject)
    if as_json:
        _emit_json([event.model_dump(mode="json") for event in events])
        return
    table = Table("Time", "Operation", "Subject", "Outcome", "Message")
    for event in events:
        table.add_row(
            event.timestamp.isoformat(timespec="seconds"),
            event.operation,
            event.subject or "",
            event.outcome if event.error_code is None else f"{event.outcome} ({event.error_code})",
            event.message,
        )
    console.print(table)


@app.command("visible-assignments")
def visible_assignments(
    student_id: str = typer.Argument(..., help="Student user id."),
    store: Path | None = StoreOption,
    config: Path | None = ConfigOption,
    as_json: bool = JsonOption,
) -> None:
    """List the assignments a student can currently see."""

    ctx = _context(store, config)
    items = ctx.visibility().visible_assignments_for_student(student_id)
    if as_json:
        _emit_json([item.to_dict() for item in items])
        return
    table = Table("Assignment", "Title", "Course", "Module", "Publish at", "Grade")
    for item in items:
        assignment = item.assignment
        grade = item.my_submission.grade if item.my_submission else None
        table.add_row(
            assignment.id,
            str(assignment.title or ""),
            str(assignment.courseId or ""),
            str(assignment.moduleId or ""),
            str(assignment.publishAt or ""),
            "" if grade is None else str(grade),
        )
    console.print(table)


def main() -> None:  # pragma: no cover - CLI entry point
    logging.basicConfig(level=logging.INFO)
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
