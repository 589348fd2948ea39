import logging
import os
from datetime import datetime
from typing import Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation import CirculationDesk
from config import settings
from database import get_db_connection
from errors import (
    CapacityError,
    CirculationError,
    DuplicateError,
    NotFoundError,
    TransitionRejectedError,
)
from library import Library

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# LIBRARY_DB_FILE is re-read here so reloading this module picks up a new database.
library = Library(db_file=os.getenv("LIBRARY_DB_FILE"))
desk = CirculationDesk(library)

app = FastAPI(title=settings.app_name, version=settings.app_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


# --- Error mapping ---
def _http_error(error: CirculationError) -> HTTPException:
    """Translate a core error into an HTTP error with the structured payload as detail."""
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, (DuplicateError, TransitionRejectedError)):
        status_code = 409
    elif isinstance(error, CapacityError):
        status_code = 507
    else:
        status_code = 422
    logger.info(f"{error.kind}: {error.message}")
    return HTTPException(status_code=status_code, detail=error.to_dict())


# --- Models ---
class CatalogItemCreateModel(BaseModel):
    title: str
    author: str | None = None
    accession_no: str | None = Field(default=None, description="Optional 7-digit item-level number")


class CatalogItemModel(BaseModel):
    id: int
    title: str
    author: str | None = None
    accession_no: str | None = None
    next_copy_no: int


class MemberCreateModel(BaseModel):
    member_no: str
    name: str
    borrower_category: str | None = Field(default="Student", description="Student or Faculty")
    email: str | None = None
    phone: str | None = None


class MemberModel(BaseModel):
    id: int
    member_no: str
    name: str
    email: str | None = None
    phone: str | None = None
    borrower_category: str
    status: str


class CopyCreateModel(BaseModel):
    accession_no: str | None = Field(default=None, description="Leave empty to allocate the next number")
    branch: str | None = None
    location: str | None = None
    status: str | None = None
    reserved_by_member_id: int | None = None


class BulkCopyCreateModel(BaseModel):
    number_of_copies: int
    branch: str | None = None
    location: str | None = None
    status: str | None = None
    reserved_by_member_id: int | None = None


class CopyUpdateModel(BaseModel):
    accession_no: str | None = None
    branch: str | None = None
    location: str | None = None


class CopyStatusUpdateModel(BaseModel):
    status: str
    reserved_by_member_id: int | None = None
    expected_version: int | None = Field(default=None, description="Reject the change if the copy has moved on")


class CopyModel(BaseModel):
    id: int
    catalog_item_id: int
    accession_no: str
    copy_no: int
    status: str
    branch: str | None = None
    location: str | None = None
    reserved_by_member_id: int | None = None
    reserved_at: str | None = None
    version: int


class AccessionCheckModel(BaseModel):
    accession_no: str
    copy_id: int | None = None


class AccessionCheckResponse(BaseModel):
    valid: bool
    message: str


class BorrowRequestCreateModel(BaseModel):
    member_id: int
    catalog_item_id: int
    copy_id: int | None = None
    return_date: str = Field(description="YYYY-MM-DD")
    return_time: str = Field(description="HH:MM, 07:00-11:00 or 13:00-16:00")
    notes: str | None = None


class CheckoutModel(BaseModel):
    member_id: int
    catalog_item_id: int
    copy_id: int | None = None
    return_date: str | None = Field(default=None, description="Defaults to the borrower category's maximum")
    notes: str | None = None


class BorrowRequestModel(BaseModel):
    id: int
    member_id: int
    catalog_item_id: int
    copy_id: int | None = None
    return_date: str
    return_time: str
    status: str
    flow: str
    notes: str | None = None


class RescheduleModel(BaseModel):
    return_date: str = Field(description="YYYY-MM-DD")
    return_time: str | None = Field(default=None, description="HH:MM; ignored for staff checkouts")


class ReturnModel(BaseModel):
    condition_on_return: str = "Good"
    penalty_amount: float = 0.0
    remarks: str | None = None
    return_date: str | None = None
    return_time: str | None = None
    status: str = Field(default="Returned", description="Returned or Pending")


class ReturnUpdateModel(BaseModel):
    return_date: str
    return_time: str
    condition_on_return: str = "Good"
    penalty_amount: float = 0.0
    remarks: str | None = None
    status: str = "Returned"


class BookReturnModel(BaseModel):
    id: int
    borrow_request_id: int
    return_date: str
    return_time: str
    condition_on_return: str
    penalty_amount: float
    remarks: str | None = None
    status: str


class DueStatusModel(BaseModel):
    request_id: int
    return_date: str
    return_time: str
    days_remaining: int
    message: str


class StatsModel(BaseModel):
    total_items: int
    total_copies: int
    by_status: Dict[str, int]


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check: pings the database."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Catalog items & members ---
@app.post("/catalog-items", response_model=CatalogItemModel, dependencies=[Depends(get_api_key)])
def create_catalog_item(payload: CatalogItemCreateModel):
    try:
        item = library.add_catalog_item(payload.title, payload.author, payload.accession_no)
    except CirculationError as e:
        raise _http_error(e)
    return CatalogItemModel(**item.to_dict())


@app.get("/catalog-items/{catalog_item_id}/copies", response_model=List[CopyModel])
def list_copies(catalog_item_id: int, status: str | None = Query(default=None)):
    """List the copies of an item, optionally filtered by status."""
    try:
        copies = library.list_copies(catalog_item_id, status=status)
    except CirculationError as e:
        raise _http_error(e)
    return [CopyModel(**c.to_dict()) for c in copies]


@app.get("/catalog-items/{catalog_item_id}/available")
def available_copies(catalog_item_id: int):
    try:
        library.get_catalog_item(catalog_item_id)
    except CirculationError as e:
        raise _http_error(e)
    return {"catalog_item_id": catalog_item_id, "available": library.available_copies_count(catalog_item_id)}


@app.post("/members", response_model=MemberModel, dependencies=[Depends(get_api_key)])
def create_member(payload: MemberCreateModel):
    try:
        member = library.add_member(payload.member_no, payload.name, payload.borrower_category,
                                    payload.email, payload.phone)
    except CirculationError as e:
        raise _http_error(e)
    return MemberModel(**member.to_dict())


@app.get("/members/{member_no}", response_model=MemberModel)
def get_member(member_no: str):
    try:
        member = library.find_member(member_no)
    except CirculationError as e:
        raise _http_error(e)
    return MemberModel(**member.to_dict())


# --- Accession numbers ---
@app.get("/accession-numbers/next")
def next_accession_number():
    """Preview the next number; nothing is reserved until a copy is created."""
    try:
        return {"accession_no": library.next_accession_number()}
    except CirculationError as e:
        raise _http_error(e)


@app.post("/accession-numbers/validate", response_model=AccessionCheckResponse)
def validate_accession_number(payload: AccessionCheckModel):
    valid, message = library.check_accession_number(payload.accession_no, payload.copy_id)
    return AccessionCheckResponse(valid=valid, message=message)


# --- Copies ---
@app.post("/catalog-items/{catalog_item_id}/copies", response_model=CopyModel,
          dependencies=[Depends(get_api_key)])
def create_copy(catalog_item_id: int, payload: CopyCreateModel):
    try:
        copy = library.create_copy(
            catalog_item_id,
            accession_no=payload.accession_no,
            branch=payload.branch,
            location=payload.location,
            status=payload.status,
            reserved_by_member_id=payload.reserved_by_member_id,
        )
    except CirculationError as e:
        raise _http_error(e)
    return CopyModel(**copy.to_dict())


@app.post("/catalog-items/{catalog_item_id}/copies/bulk", response_model=List[CopyModel],
          dependencies=[Depends(get_api_key)])
def create_copies_bulk(catalog_item_id: int, payload: BulkCopyCreateModel):
    """Create several copies at once; either all are created or none."""
    try:
        copies = library.create_copies_bulk(
            catalog_item_id,
            payload.number_of_copies,
            branch=payload.branch,
            location=payload.location,
            status=payload.status,
            reserved_by_member_id=payload.reserved_by_member_id,
        )
    except CirculationError as e:
        raise _http_error(e)
    return [CopyModel(**c.to_dict()) for c in copies]


@app.put("/copies/{copy_id}", response_model=CopyModel, dependencies=[Depends(get_api_key)])
def update_copy(copy_id: int, payload: CopyUpdateModel):
    try:
        copy = library.update_copy(copy_id, accession_no=payload.accession_no,
                                   branch=payload.branch, location=payload.location)
    except CirculationError as e:
        raise _http_error(e)
    return CopyModel(**copy.to_dict())


@app.put("/copies/{copy_id}/status", response_model=CopyModel, dependencies=[Depends(get_api_key)])
def update_copy_status(copy_id: int, payload: CopyStatusUpdateModel):
    try:
        copy = library.update_copy_status(copy_id, payload.status, payload.reserved_by_member_id,
                                          expected_version=payload.expected_version)
    except CirculationError as e:
        raise _http_error(e)
    return CopyModel(**copy.to_dict())


@app.delete("/copies/{copy_id}", dependencies=[Depends(get_api_key)])
def delete_copy(copy_id: int):
    if not library.delete_copy(copy_id):
        raise HTTPException(status_code=404, detail="Copy not found.")
    return {"message": "Copy deleted."}


@app.get("/copies/{copy_id}/history")
def copy_history(copy_id: int):
    """Loans of a copy (newest first) and its current reservation, if any."""
    try:
        return library.copy_history(copy_id)
    except CirculationError as e:
        raise _http_error(e)


# --- Borrowing ---
@app.get("/borrow-requests", response_model=List[BorrowRequestModel])
def list_borrow_requests(status: str | None = Query(default=None),
                         member_id: int | None = Query(default=None)):
    requests = desk.list_requests(status=status, member_id=member_id)
    return [BorrowRequestModel(**r.to_dict()) for r in requests]


@app.get("/borrow-requests/overdue", response_model=List[BorrowRequestModel])
def list_overdue_requests():
    """Lent copies whose return date has passed, oldest due date first."""
    return [BorrowRequestModel(**r.to_dict()) for r in desk.list_overdue()]


@app.post("/borrow-requests", response_model=BorrowRequestModel)
def submit_borrow_request(payload: BorrowRequestCreateModel):
    """Self-service borrow request (no API key). The copy is held as Reserved until reviewed."""
    try:
        request = desk.submit_request(
            payload.member_id,
            payload.catalog_item_id,
            payload.return_date,
            payload.return_time,
            copy_id=payload.copy_id,
            notes=payload.notes,
        )
    except CirculationError as e:
        raise _http_error(e)
    return BorrowRequestModel(**request.to_dict())


@app.post("/borrows", response_model=BorrowRequestModel, dependencies=[Depends(get_api_key)])
def checkout(payload: CheckoutModel):
    """Staff checkout: the copy is marked Borrowed immediately."""
    try:
        request = desk.checkout(
            payload.member_id,
            payload.catalog_item_id,
            copy_id=payload.copy_id,
            return_date=payload.return_date,
            notes=payload.notes,
        )
    except CirculationError as e:
        raise _http_error(e)
    return BorrowRequestModel(**request.to_dict())


@app.post("/borrow-requests/{request_id}/approve", response_model=BorrowRequestModel,
          dependencies=[Depends(get_api_key)])
def approve_borrow_request(request_id: int):
    try:
        request = desk.approve_request(request_id)
    except CirculationError as e:
        raise _http_error(e)
    return BorrowRequestModel(**request.to_dict())


@app.post("/borrow-requests/{request_id}/disapprove", response_model=BorrowRequestModel,
          dependencies=[Depends(get_api_key)])
def disapprove_borrow_request(request_id: int):
    try:
        request = desk.disapprove_request(request_id)
    except CirculationError as e:
        raise _http_error(e)
    return BorrowRequestModel(**request.to_dict())


@app.post("/borrow-requests/{request_id}/return", response_model=BookReturnModel,
          dependencies=[Depends(get_api_key)])
def return_borrowed_copy(request_id: int, payload: ReturnModel):
    try:
        record = desk.process_return(
            request_id,
            condition=payload.condition_on_return,
            penalty_amount=payload.penalty_amount,
            remarks=payload.remarks,
            returned_on=payload.return_date,
            returned_at=payload.return_time,
            status=payload.status,
        )
    except CirculationError as e:
        raise _http_error(e)
    return BookReturnModel(**record.to_dict())


@app.put("/borrow-requests/{request_id}", response_model=BorrowRequestModel,
         dependencies=[Depends(get_api_key)])
def reschedule_borrow_request(request_id: int, payload: RescheduleModel):
    try:
        request = desk.reschedule_request(request_id, payload.return_date, payload.return_time)
    except CirculationError as e:
        raise _http_error(e)
    return BorrowRequestModel(**request.to_dict())


@app.delete("/borrow-requests/{request_id}", dependencies=[Depends(get_api_key)])
def delete_borrow_request(request_id: int):
    try:
        deleted = desk.delete_request(request_id)
    except CirculationError as e:
        raise _http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Borrow request not found.")
    return {"message": "Borrow request deleted."}


@app.put("/returns/{return_id}", response_model=BookReturnModel, dependencies=[Depends(get_api_key)])
def update_return(return_id: int, payload: ReturnUpdateModel):
    """Correct a return record; settling a Pending return sets its status to Returned."""
    try:
        record = desk.update_return(
            return_id,
            payload.return_date,
            payload.return_time,
            condition=payload.condition_on_return,
            penalty_amount=payload.penalty_amount,
            remarks=payload.remarks,
            status=payload.status,
        )
    except CirculationError as e:
        raise _http_error(e)
    return BookReturnModel(**record.to_dict())


@app.get("/borrow-requests/{request_id}/due", response_model=DueStatusModel)
def due_status(request_id: int):
    try:
        return DueStatusModel(**desk.due_status(request_id))
    except CirculationError as e:
        raise _http_error(e)


@app.get("/stats", response_model=StatsModel)
def get_stats():
    """Copy counts overall and per status."""
    stats = library.get_statistics()
    return StatsModel(**stats)
