import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _copy_line(c: Any) -> str:
    line = f"{c.accession_no} - copy {c.copy_no} [{c.status.value}]"
    place = " / ".join(p for p in (c.branch, c.location) if p)
    return f"{line} {place}" if place else line


def print_copies_result(copies: List[Any]) -> None:
    """Print copies in the current output mode.
    - plain: 'ACCESSION - copy N [Status] branch / location' lines, or 'No copies found.'
    - json: JSON array of copy dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not copies:
        print("No copies found.")
        return

    if mode == "json":
        print(json.dumps([c.to_dict() for c in copies], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Copies", show_lines=True, header_style="bold cyan")
        table.add_column("Accession", style="magenta", no_wrap=True)
        table.add_column("Copy", justify="right")
        table.add_column("Status")
        table.add_column("Branch")
        table.add_column("Location")
        for c in copies:
            table.add_row(c.accession_no, str(c.copy_no), c.status.value, c.branch or "", c.location or "")
        _console.print(table)
    else:
        for c in copies:
            print(_copy_line(c))


def print_requests_result(requests: List[Any], empty_message: str = "No borrow requests found.") -> None:
    """Print borrow requests in the current output mode.
    - plain: '#ID member M copy C due YYYY-MM-DD HH:MM [Status]' lines
    - json: JSON array of request dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not requests:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in requests], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Borrow Requests", header_style="bold cyan")
        table.add_column("ID", justify="right")
        table.add_column("Member", justify="right")
        table.add_column("Copy", justify="right")
        table.add_column("Due")
        table.add_column("Status")
        for r in requests:
            due = f"{r.return_date.isoformat()} {r.return_time.strftime('%H:%M')}"
            table.add_row(str(r.id), str(r.member_id), str(r.copy_id or ""), due, r.status)
        _console.print(table)
    else:
        for r in requests:
            print(f"#{r.id} member {r.member_id} copy {r.copy_id or '-'} "
                  f"due {r.return_date.isoformat()} {r.return_time.strftime('%H:%M')} [{r.status}]")


def print_history_result(history: Dict[str, Any]) -> None:
    """Print a copy's loans and reservation; plain output is one line per entry."""
    mode = get_output_mode()
    copy = history["copy"]
    entries = list(history["borrows"])
    if history.get("reservation"):
        entries.insert(0, history["reservation"])

    if mode == "json":
        print(json.dumps(history, ensure_ascii=False, default=str))
        return
    if not entries:
        print(f"No history for copy {copy['accession_no']}.")
        return
    if mode == "rich":
        table = Table(title=f"History of {copy['accession_no']}", header_style="bold cyan")
        table.add_column("Member")
        table.add_column("Borrowed")
        table.add_column("Returned")
        table.add_column("Status")
        for e in entries:
            table.add_row(e["member_name"] or "", str(e.get("date_borrowed") or e.get("reserved_at") or ""),
                          str(e.get("date_returned") or ""), e["status"])
        _console.print(table)
    else:
        for e in entries:
            when = e.get("date_borrowed") or e.get("reserved_at") or "-"
            returned = e.get("date_returned")
            line = f"{e['member_no']} {e['member_name']} {when} [{e['status']}]"
            print(f"{line} returned {returned}" if returned else line)


def print_record_result(title: str, record: Dict[str, Any]) -> None:
    """Print a single record (borrow request, return, member) as key/value pairs."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in record.items() if v is not None)
        _console.print(Panel.fit(content, title=title, border_style="green"))
    else:
        print(title)
        for k, v in record.items():
            if v is not None:
                print(f"  {k}: {v}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: totals followed by one 'Status: count' line per status
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    by_status = stats.get("by_status", {})

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        lines = [
            f"[bold]Catalog Items:[/] {stats.get('total_items', 0)}",
            f"[bold]Total Copies:[/] {stats.get('total_copies', 0)}",
        ]
        lines += [f"  {status}: {count}" for status, count in by_status.items()]
        _console.print(Panel.fit("\n".join(lines), title="Stats", border_style="blue"))
    else:
        print(f"Catalog Items: {stats.get('total_items', 0)}")
        print(f"Total Copies: {stats.get('total_copies', 0)}")
        for status, count in by_status.items():
            print(f"{status}: {count}")
