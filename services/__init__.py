"""
Service layer for the invoice number tracker.
"""
