"""vault/ -- Credential storage for SecureBox.

files.py owns the on-disk payloads; store.py owns the database records that
point at them. A record's id is the only input to its filename.

Layer rule: vault/ may import from auth/ (for the shared schema metadata) and
core/. It does NOT import from api/.
"""
