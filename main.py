import logging
import subprocess
import sys
from typing import Optional

import typer

import database
from circulation import CirculationDesk
from config import settings
from errors import CirculationError
from library import Library
from utils.ui_helpers import (
    print_copies_result,
    print_history_result,
    print_record_result,
    print_requests_result,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library Circulation CLI"

logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


class LibraryManager:
    """Process-wide Library instance, rebuilt when the database file changes."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = getattr(database, "DATABASE_FILE", None)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            # per-test databases swap DATABASE_FILE underneath us
            cls._instance = Library()
            cls._db_file_snapshot = current_db
            logger.debug(f"Library instance bound to {current_db}")
        return cls._instance

    @classmethod
    def desk(cls) -> CirculationDesk:
        return CirculationDesk(cls.get_instance())


def _fail(error: CirculationError) -> None:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME, no_args_is_help=True)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("add-item")
def cli_add_item(
    title: str,
    author: Optional[str] = typer.Option(None, "--author", "-a"),
    accession_no: Optional[str] = typer.Option(None, "--accession", help="Optional 7-digit item number"),
):
    """Register a catalog item."""
    lib = LibraryManager.get_instance()
    try:
        item = lib.add_catalog_item(title, author, accession_no)
    except CirculationError as e:
        _fail(e)
    print(f"Added catalog item {item.id}: {item.title}")


@app.command("add-member")
def cli_add_member(
    member_no: str,
    name: str,
    category: str = typer.Option("Student", "--category", "-c", help="Student or Faculty"),
    email: Optional[str] = typer.Option(None, "--email"),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Register a borrower."""
    lib = LibraryManager.get_instance()
    try:
        member = lib.add_member(member_no, name, category, email, phone)
    except CirculationError as e:
        _fail(e)
    print(f"Added member {member.id}: {member.name} ({member.borrower_category.value})")


@app.command("next-accession")
def cli_next_accession():
    """Show the accession number the next new copy would receive."""
    try:
        print(LibraryManager.get_instance().next_accession_number())
    except CirculationError as e:
        _fail(e)


@app.command("add-copy")
def cli_add_copy(
    catalog_item_id: int,
    accession_no: Optional[str] = typer.Option(None, "--accession", help="Manual 7-digit number"),
    branch: Optional[str] = typer.Option(None, "--branch"),
    location: Optional[str] = typer.Option(None, "--location"),
    status: Optional[str] = typer.Option(None, "--status"),
    member_id: Optional[int] = typer.Option(None, "--member", help="Member a Reserved copy is held for"),
):
    """Create one copy of a catalog item."""
    lib = LibraryManager.get_instance()
    try:
        copy = lib.create_copy(catalog_item_id, accession_no=accession_no, branch=branch,
                               location=location, status=status, reserved_by_member_id=member_id)
    except CirculationError as e:
        _fail(e)
    print(f"Created copy {copy.accession_no} (copy {copy.copy_no}) [{copy.status.value}]")


@app.command("bulk-add")
def cli_bulk_add(
    catalog_item_id: int,
    count: int,
    branch: Optional[str] = typer.Option(None, "--branch"),
    location: Optional[str] = typer.Option(None, "--location"),
    status: Optional[str] = typer.Option(None, "--status"),
    member_id: Optional[int] = typer.Option(None, "--member"),
):
    """Create several copies at once (all or nothing)."""
    lib = LibraryManager.get_instance()
    try:
        copies = lib.create_copies_bulk(catalog_item_id, count, branch=branch, location=location,
                                        status=status, reserved_by_member_id=member_id)
    except CirculationError as e:
        _fail(e)
    print(f"Created {len(copies)} copies: {copies[0].accession_no}..{copies[-1].accession_no}")


@app.command("list-copies")
def cli_list_copies(
    catalog_item_id: int,
    status: Optional[str] = typer.Option(None, "--status", "-s"),
):
    """List the copies of a catalog item."""
    lib = LibraryManager.get_instance()
    try:
        copies = lib.list_copies(catalog_item_id, status=status)
    except CirculationError as e:
        _fail(e)
    print_copies_result(copies)


@app.command("set-status")
def cli_set_status(
    copy_id: int,
    status: str,
    member_id: Optional[int] = typer.Option(None, "--member"),
    version: Optional[int] = typer.Option(None, "--version", help="Expected copy version"),
):
    """Change a copy's status."""
    lib = LibraryManager.get_instance()
    try:
        copy = lib.update_copy_status(copy_id, status, member_id, expected_version=version)
    except CirculationError as e:
        _fail(e)
    print(f"Copy {copy.accession_no} is now {copy.status.value}")


@app.command("delete-copy")
def cli_delete_copy(copy_id: int):
    """Delete a copy; its accession number is never reissued."""
    if LibraryManager.get_instance().delete_copy(copy_id):
        print(f"Copy {copy_id} has been deleted.")
    else:
        print(f"Copy {copy_id} not found.")
        raise typer.Exit(code=1)


@app.command("history")
def cli_history(copy_id: int):
    """Show who borrowed a copy and who holds it now."""
    try:
        history = LibraryManager.get_instance().copy_history(copy_id)
    except CirculationError as e:
        _fail(e)
    print_history_result(history)


@app.command("request")
def cli_request(
    member_id: int,
    catalog_item_id: int,
    return_date: str = typer.Argument(..., help="YYYY-MM-DD"),
    return_time: str = typer.Argument(..., help="HH:MM"),
    copy_id: Optional[int] = typer.Option(None, "--copy"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Submit a self-service borrow request."""
    try:
        request = LibraryManager.desk().submit_request(member_id, catalog_item_id, return_date,
                                                       return_time, copy_id=copy_id, notes=notes)
    except CirculationError as e:
        _fail(e)
    print_record_result(f"Borrow request {request.id} submitted", request.to_dict())


@app.command("checkout")
def cli_checkout(
    member_id: int,
    catalog_item_id: int,
    copy_id: Optional[int] = typer.Option(None, "--copy"),
    return_date: Optional[str] = typer.Option(None, "--return-date", help="Defaults to the category maximum"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Lend a copy immediately."""
    try:
        request = LibraryManager.desk().checkout(member_id, catalog_item_id, copy_id=copy_id,
                                                 return_date=return_date, notes=notes)
    except CirculationError as e:
        _fail(e)
    print_record_result(f"Checkout {request.id} recorded", request.to_dict())


@app.command("approve")
def cli_approve(request_id: int):
    """Approve a pending borrow request."""
    try:
        request = LibraryManager.desk().approve_request(request_id)
    except CirculationError as e:
        _fail(e)
    print(f"Borrow request {request.id} approved.")


@app.command("decline")
def cli_decline(request_id: int):
    """Decline a borrow request and release its copy."""
    try:
        request = LibraryManager.desk().disapprove_request(request_id)
    except CirculationError as e:
        _fail(e)
    print(f"Borrow request {request.id} disapproved.")


@app.command("reschedule")
def cli_reschedule(
    request_id: int,
    return_date: str = typer.Argument(..., help="YYYY-MM-DD"),
    return_time: Optional[str] = typer.Option(None, "--time", help="HH:MM (self-service requests only)"),
):
    """Move the return date of a pending or approved request."""
    try:
        request = LibraryManager.desk().reschedule_request(request_id, return_date, return_time)
    except CirculationError as e:
        _fail(e)
    print(f"Borrow request {request.id} now due "
          f"{request.return_date.isoformat()} {request.return_time.strftime('%H:%M')}.")


@app.command("delete-request")
def cli_delete_request(request_id: int):
    """Delete a borrow request that is not an active loan."""
    try:
        deleted = LibraryManager.desk().delete_request(request_id)
    except CirculationError as e:
        _fail(e)
    if not deleted:
        print(f"Borrow request {request_id} not found.")
        raise typer.Exit(code=1)
    print(f"Borrow request {request_id} has been deleted.")


@app.command("requests")
def cli_requests(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Pending, Approved, Disapproved or Returned"),
    member_id: Optional[int] = typer.Option(None, "--member"),
):
    """List borrow requests."""
    print_requests_result(LibraryManager.desk().list_requests(status=status, member_id=member_id))


@app.command("overdue")
def cli_overdue():
    """List lent copies past their return date."""
    print_requests_result(LibraryManager.desk().list_overdue(), empty_message="No overdue loans.")


@app.command("return")
def cli_return(
    request_id: int,
    condition: str = typer.Option("Good", "--condition", help="Good, Damaged or Lost"),
    penalty: float = typer.Option(0.0, "--penalty"),
    remarks: Optional[str] = typer.Option(None, "--remarks"),
    status: str = typer.Option("Returned", "--status", help="Returned or Pending"),
):
    """Record a returned copy."""
    try:
        record = LibraryManager.desk().process_return(request_id, condition=condition,
                                                      penalty_amount=penalty, remarks=remarks,
                                                      status=status)
    except CirculationError as e:
        _fail(e)
    print_record_result(f"Borrow request {request_id} returned", record.to_dict())


@app.command("update-return")
def cli_update_return(
    return_id: int,
    return_date: str = typer.Argument(..., help="YYYY-MM-DD"),
    return_time: str = typer.Argument(..., help="HH:MM"),
    condition: str = typer.Option("Good", "--condition", help="Good, Damaged or Lost"),
    penalty: float = typer.Option(0.0, "--penalty"),
    remarks: Optional[str] = typer.Option(None, "--remarks"),
    status: str = typer.Option("Returned", "--status", help="Returned or Pending"),
):
    """Correct a return record."""
    try:
        record = LibraryManager.desk().update_return(return_id, return_date, return_time,
                                                     condition=condition, penalty_amount=penalty,
                                                     remarks=remarks, status=status)
    except CirculationError as e:
        _fail(e)
    print_record_result(f"Return {return_id} updated", record.to_dict())


@app.command("due")
def cli_due(request_id: int):
    """Show how long until a borrowed copy is due."""
    try:
        status = LibraryManager.desk().due_status(request_id)
    except CirculationError as e:
        _fail(e)
    print(f"{status['message']} ({status['return_date']} {status['return_time']})")


@app.command("stats")
def cli_stats():
    """Show copy statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
