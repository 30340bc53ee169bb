"""
Invoice Number Routes

Admin endpoints over the invoice number tracker:
- Available (recycled) numbers for the manual-selection control
- Preview of the next number
- Assign / release, called by the invoice create and delete/void workflow
- Assignment history, tracker status and integrity report
"""

from typing import Optional
from fastapi import APIRouter, Depends, Form, Query

from database import get_conn
from error_handlers import validation_error
from services.invoice_number_service import (
    assign_number,
    get_assignment_history,
    get_tracker_status,
    list_available_numbers,
    peek_next_number,
    release_number,
)
from services.tracker_integrity_service import run_tracker_integrity_check

router = APIRouter(prefix="/invoice-numbers", tags=["invoice-numbers"])


@router.get("/available")
def available_numbers(conn=Depends(get_conn)):
    """Released numbers that can be picked manually, lowest first."""
    entries = list_available_numbers(conn)
    return {"success": True, "available_numbers": [entry.to_dict() for entry in entries]}


@router.get("/next")
def next_number(conn=Depends(get_conn)):
    """Preview the next number. Not a reservation."""
    return {"success": True, "next": peek_next_number(conn).to_dict()}


@router.post("/assign")
def assign(
    conn=Depends(get_conn),
    invoice_ref: str = Form(""),
    manual_number: Optional[str] = Form(None)
):
    """Assign a number to an invoice, optionally picking one from the pool."""
    if not invoice_ref.strip():
        return validation_error("Invoice reference is required", missing_fields=["invoice_ref"])

    # Blank select means automatic assignment
    if manual_number is not None and not manual_number.strip():
        manual_number = None

    result = assign_number(conn, invoice_ref, manual_number=manual_number)
    return {"success": True, "assignment": result.to_dict()}


@router.post("/release")
def release(
    conn=Depends(get_conn),
    formatted_number: str = Form(""),
    invoice_ref: Optional[str] = Form(None)
):
    """Return a deleted or voided invoice's number to the pool."""
    if not formatted_number.strip():
        return validation_error("Invoice number is required", missing_fields=["formatted_number"])

    added = release_number(conn, formatted_number.strip(), invoice_ref=invoice_ref or None)
    return {
        "success": True,
        "formatted_number": formatted_number.strip(),
        "already_available": not added
    }


@router.get("/history")
def history(
    conn=Depends(get_conn),
    invoice_ref: Optional[str] = Query(None, description="Only assignments for this invoice"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0)
):
    """Assignment history, oldest first."""
    records = get_assignment_history(conn, invoice_ref=invoice_ref, limit=limit, offset=offset)
    return {"success": True, "history": [record.to_dict() for record in records]}


@router.get("/status")
def status(conn=Depends(get_conn)):
    """Current sequence and pool/history counts."""
    return {"success": True, "status": get_tracker_status(conn).to_dict()}


@router.get("/integrity")
def integrity(conn=Depends(get_conn)):
    """Run the tracker integrity check."""
    report = run_tracker_integrity_check(conn)
    return {"success": True, "report": report}
