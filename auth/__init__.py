"""auth/ -- Authentication and session security package for Spend Tracker.

Layer rule: auth/ imports from core/ and audit/, stdlib and third-party
libraries. It does NOT import from api/. api/ imports from auth/, not the
other way around.
"""
