from __future__ import annotations

from datetime import date, time
from typing import Any, Dict, Optional

from copy_status import CopyStatus
from scheduler import BorrowerCategory
from utils.validators import DateTimeValidator


class CatalogItem:
    """A bibliographic record that owns zero or more copies."""

    def __init__(self, id: int, title: str, author: str | None = None,
                 accession_no: str | None = None, next_copy_no: int = 1,
                 created_at: str | None = None) -> None:
        self.id = id
        self.title = title
        self.author = author
        self.accession_no = accession_no
        self.next_copy_no = next_copy_no
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (#{self.id})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "accession_no": self.accession_no,
            "next_copy_no": self.next_copy_no,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CatalogItem":
        return CatalogItem(
            id=data["id"],
            title=data["title"],
            author=data.get("author"),
            accession_no=data.get("accession_no"),
            next_copy_no=data.get("next_copy_no") or 1,
            created_at=data.get("created_at"),
        )


class Copy:
    """A physical copy of a catalog item."""

    def __init__(self, id: int, catalog_item_id: int, accession_no: str, copy_no: int,
                 status: CopyStatus = CopyStatus.AVAILABLE, branch: str | None = None,
                 location: str | None = None, reserved_by_member_id: int | None = None,
                 reserved_at: str | None = None, version: int = 1,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.catalog_item_id = catalog_item_id
        self.accession_no = accession_no
        self.copy_no = copy_no
        self.status = CopyStatus.parse(status)
        self.branch = branch
        self.location = location
        self.reserved_by_member_id = reserved_by_member_id
        self.reserved_at = reserved_at
        self.version = version
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.accession_no} (copy {self.copy_no}, {self.status.value})"

    @property
    def is_available(self) -> bool:
        return self.status is CopyStatus.AVAILABLE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "catalog_item_id": self.catalog_item_id,
            "accession_no": self.accession_no,
            "copy_no": self.copy_no,
            "status": self.status.value,
            "branch": self.branch,
            "location": self.location,
            "reserved_by_member_id": self.reserved_by_member_id,
            "reserved_at": self.reserved_at,
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Copy":
        return Copy(
            id=data["id"],
            catalog_item_id=data["catalog_item_id"],
            accession_no=data["accession_no"],
            copy_no=data["copy_no"],
            status=data.get("status") or CopyStatus.AVAILABLE,
            branch=data.get("branch"),
            location=data.get("location"),
            reserved_by_member_id=data.get("reserved_by_member_id"),
            reserved_at=data.get("reserved_at"),
            version=data.get("version") or 1,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class Member:
    """A borrower. Only the category matters to the scheduler."""

    def __init__(self, id: int, member_no: str, name: str, email: str | None = None,
                 phone: str | None = None,
                 borrower_category: BorrowerCategory = BorrowerCategory.STUDENT,
                 status: str = "Active") -> None:
        self.id = id
        self.member_no = member_no
        self.name = name
        self.email = email
        self.phone = phone
        self.borrower_category = BorrowerCategory.parse(borrower_category)
        self.status = status

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_no": self.member_no,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "borrower_category": self.borrower_category.value,
            "status": self.status,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Member":
        return Member(
            id=data["id"],
            member_no=data["member_no"],
            name=data["name"],
            email=data.get("email"),
            phone=data.get("phone"),
            borrower_category=data.get("borrower_category"),
            status=data.get("status") or "Active",
        )


class BorrowRequest:
    """A borrow transaction: pending self-service request or approved checkout."""

    PENDING = "Pending"
    APPROVED = "Approved"
    DISAPPROVED = "Disapproved"
    RETURNED = "Returned"

    # Which desk flow created the request; it decides the return-window policy.
    SELF_SERVICE = "self_service"
    CHECKOUT = "checkout"

    def __init__(self, id: int, member_id: int, catalog_item_id: int, copy_id: int | None,
                 return_date: date, return_time: time, status: str = PENDING,
                 notes: str | None = None, flow: str = SELF_SERVICE,
                 created_at: str | None = None) -> None:
        self.id = id
        self.member_id = member_id
        self.catalog_item_id = catalog_item_id
        self.copy_id = copy_id
        self.return_date = DateTimeValidator.parse_date(return_date, field="return_date")
        self.return_time = DateTimeValidator.parse_time(return_time, field="return_time", allow_seconds=True)
        self.status = status
        self.notes = notes
        self.flow = flow
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "catalog_item_id": self.catalog_item_id,
            "copy_id": self.copy_id,
            "return_date": self.return_date.isoformat(),
            "return_time": self.return_time.strftime("%H:%M"),
            "status": self.status,
            "notes": self.notes,
            "flow": self.flow,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BorrowRequest":
        return BorrowRequest(
            id=data["id"],
            member_id=data["member_id"],
            catalog_item_id=data["catalog_item_id"],
            copy_id=data.get("copy_id"),
            return_date=data["return_date"],
            return_time=data["return_time"],
            status=data.get("status") or BorrowRequest.PENDING,
            notes=data.get("notes"),
            flow=data.get("flow") or BorrowRequest.SELF_SERVICE,
            created_at=data.get("created_at"),
        )


class BookReturn:
    """The record written when a borrowed copy comes back."""

    CONDITIONS = ("Good", "Damaged", "Lost")
    # Pending: copy is back but the return is not settled yet (e.g. penalty owed).
    STATUSES = ("Returned", "Pending")

    def __init__(self, id: int, borrow_request_id: int, return_date: date, return_time: time,
                 condition_on_return: str = "Good", penalty_amount: float = 0.0,
                 remarks: str | None = None, status: str = "Returned",
                 created_at: str | None = None) -> None:
        self.id = id
        self.borrow_request_id = borrow_request_id
        self.return_date = DateTimeValidator.parse_date(return_date, field="return_date")
        self.return_time = DateTimeValidator.parse_time(return_time, field="return_time", allow_seconds=True)
        self.condition_on_return = condition_on_return
        self.penalty_amount = float(penalty_amount or 0)
        self.remarks = remarks
        self.status = status
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "borrow_request_id": self.borrow_request_id,
            "return_date": self.return_date.isoformat(),
            "return_time": self.return_time.strftime("%H:%M"),
            "condition_on_return": self.condition_on_return,
            "penalty_amount": self.penalty_amount,
            "remarks": self.remarks,
            "status": self.status,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BookReturn":
        return BookReturn(
            id=data["id"],
            borrow_request_id=data["borrow_request_id"],
            return_date=data["return_date"],
            return_time=data["return_time"],
            condition_on_return=data.get("condition_on_return") or "Good",
            penalty_amount=data.get("penalty_amount") or 0.0,
            remarks=data.get("remarks"),
            status=data.get("status") or "Returned",
            created_at=data.get("created_at"),
        )
