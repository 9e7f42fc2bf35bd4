"""auth/ -- Accounts, login throttling, and session/reset tokens for SecureBox.

Layer rule: auth/ imports stdlib, third-party libraries, and core/ only.
It does NOT import from api/ or vault/.
api/ and vault/ import from auth/, not the other way around.
"""
