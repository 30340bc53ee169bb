"""
Invoice Number Tracker Service

Hands out sale invoice numbers (B/SALE1, B/SALE2, ...), recycles the
numbers of deleted or voided invoices, and keeps a permanent record
of every assignment.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from database import init_db
from error_handlers import AppError, app_error_handler
from routes import invoice_numbers


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tracker tables
    init_db()
    yield


# Initialize FastAPI app
app = FastAPI(
    title="Invoice Number Tracker",
    description="Allocates, recycles and audits sale invoice numbers",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers
app.include_router(invoice_numbers.router)

# Error handlers: every failure leaves as the JSON error envelope
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, app_error_handler)
app.add_exception_handler(500, app_error_handler)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "Invoice Number Tracker"}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
