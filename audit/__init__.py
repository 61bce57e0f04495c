"""audit/ -- Login attempt auditing for Spend Tracker.

Layer rule: audit/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/ or auth/. auth/login.py writes through
audit.recorder; api/ reads through it.
"""
