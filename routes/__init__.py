"""
API routes for the invoice number tracker.
"""
