"""
api/routes/v1/passwords.py -- Stored credential endpoints.

Routes:
  GET    /api/v1/passwords                                      -- caller's records (no secrets)
  GET    /api/v1/passwords/{user_id}/files                      -- zip of the user's secret files
  POST   /api/v1/passwords/{user_id}/files                      -- store a new credential
  PUT    /api/v1/passwords/{user_id}/passwords                  -- replace every secret at once
  PUT    /api/v1/passwords/{user_id}/passwords/{platform}/{login}  -- replace one secret
  DELETE /api/v1/passwords/{user_id}/passwords/{platform}/{login}  -- delete one credential

All routes require a session; {user_id} routes also require ownership.
Responses describe records only. Secrets leave the server exclusively inside
the zip export.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from api.models import (
    BulkSecretChange,
    CredentialCreate,
    CredentialResponse,
    MessageResponse,
    SecretChange,
)
from auth.dependencies import get_current_account, require_owner
from auth.models import Account
from core.errors import NotFound
from vault.files import CredentialFileStore, archive_name
from vault.models import CredentialRecord, SecretUpdate
from vault.store import CredentialRecordStore

logger = logging.getLogger("securebox.api.passwords")

router = APIRouter()


@router.get("/passwords", response_model=list[CredentialResponse])
def list_credentials(request: Request, current: Account = Depends(get_current_account)) -> list[CredentialResponse]:
    store: CredentialRecordStore = request.app.state.credential_store
    return [CredentialResponse.from_record(r) for r in store.find_by_user(current.id)]


@router.get("/passwords/{user_id}/files")
def export_files(
    request: Request,
    user_id: str,
    current: Account = Depends(get_current_account),
) -> StreamingResponse:
    """Stream the user's files as a zip attachment. Never buffered whole in memory."""
    require_owner(user_id, current)
    files: CredentialFileStore = request.app.state.file_store
    logger.info("Archive export started for user %s", user_id)
    return StreamingResponse(
        files.export_archive(user_id),
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{archive_name(user_id)}"',
            "Cache-Control": "no-store",
        },
    )


@router.post("/passwords/{user_id}/files", response_model=CredentialResponse, status_code=201)
def create_credential(
    request: Request,
    user_id: str,
    body: CredentialCreate,
    current: Account = Depends(get_current_account),
) -> CredentialResponse:
    """Store a credential. 409 if (platform, login) is already stored for this user."""
    require_owner(user_id, current)
    store: CredentialRecordStore = request.app.state.credential_store
    record = CredentialRecord(user_id=user_id, platform=body.platform, login=body.login, logo_url=body.logo_url)
    store.create(record, body.password)
    return CredentialResponse.from_record(record)


@router.put("/passwords/{user_id}/passwords", response_model=list[CredentialResponse])
def replace_all_secrets(
    request: Request,
    user_id: str,
    body: BulkSecretChange,
    current: Account = Depends(get_current_account),
) -> list[CredentialResponse]:
    """Replace the secret of every stored credential.

    The entries must name exactly the stored (platform, login) pairs. 400 and
    nothing written otherwise; 404 if the user has no credentials.
    """
    require_owner(user_id, current)
    store: CredentialRecordStore = request.app.state.credential_store
    updates = [SecretUpdate(platform=e.platform, login=e.login, secret=e.new_password) for e in body.entries]
    return [CredentialResponse.from_record(r) for r in store.replace_all(user_id, updates)]


@router.put("/passwords/{user_id}/passwords/{platform}/{login}", response_model=CredentialResponse)
def replace_secret(
    request: Request,
    user_id: str,
    platform: str,
    login: str,
    body: SecretChange,
    current: Account = Depends(get_current_account),
) -> CredentialResponse:
    require_owner(user_id, current)
    store: CredentialRecordStore = request.app.state.credential_store
    record = store.update_secret(user_id, platform, login, body.new_password)
    if record is None:
        raise NotFound("Password not found.")
    return CredentialResponse.from_record(record)


@router.delete("/passwords/{user_id}/passwords/{platform}/{login}", response_model=MessageResponse)
def delete_credential(
    request: Request,
    user_id: str,
    platform: str,
    login: str,
    current: Account = Depends(get_current_account),
) -> MessageResponse:
    require_owner(user_id, current)
    store: CredentialRecordStore = request.app.state.credential_store
    if store.delete(user_id, platform, login) is None:
        raise NotFound("Password not found.")
    return MessageResponse(message=f"Password for {platform}/{login} deleted.")
