# Vault API - REST endpoints for the credential vault
#
# - Setup / unlock / lock / change master password
# - CRUD for credentials and secure notes
# - Password generation, strength, statistics, export / import
#
# The router depends on the session guard, so every route requires the
# X-Session-Token header. VaultResult failures map onto HTTP status codes;
# successful results are returned as-is.

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..vault import ErrorKind, PasswordOptions, VaultManager, VaultResult
from ..vault.passwords import MAX_LENGTH, MIN_LENGTH
from .security import session_guard

router = APIRouter(prefix="/api/vault", tags=["vault"], dependencies=[Depends(session_guard)])

# ── Singleton ────────────────────────────────────────────────────────

_vault_manager: Optional[VaultManager] = None


def get_vault_manager() -> VaultManager:
    """Lazy singleton, created on first use."""
    global _vault_manager
    if _vault_manager is None:
        _vault_manager = VaultManager()
    return _vault_manager


def shutdown_vault_manager():
    """Lock the vault and stop its timer (server shutdown)."""
    global _vault_manager
    if _vault_manager is not None:
        _vault_manager.shutdown()
        _vault_manager = None


_STATUS_BY_ERROR = {
    ErrorKind.WEAK_PASSWORD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHENTICATION_FAILURE: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_INITIALIZED: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_INITIALIZED: status.HTTP_409_CONFLICT,
    ErrorKind.DECRYPTION_FAILURE: 422,
    ErrorKind.VAULT_LOCKED: status.HTTP_423_LOCKED,
    ErrorKind.STORAGE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _respond(result: VaultResult) -> Dict[str, Any]:
    """Return the result body, or raise the HTTPException its error maps to."""
    if result.ok:
        return result.to_dict()
    code = _STATUS_BY_ERROR.get(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
    detail: Any = result.message
    if result.value is not None:
        detail = {"message": result.message, "error": result.error.value, "value": result.value}
    raise HTTPException(status_code=code, detail=detail)


# ── Pydantic Models ──────────────────────────────────────────────────


class MasterPasswordRequest(BaseModel):
    master_password: str = Field(..., min_length=1)


class ChangeMasterPasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1)


class AddCredentialRequest(BaseModel):
    domain: str = Field(..., min_length=1, max_length=500)
    password: str = Field(..., min_length=1)
    username: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = []
    favicon: Optional[str] = None


class UpdateCredentialRequest(BaseModel):
    domain: Optional[str] = Field(None, min_length=1, max_length=500)
    password: Optional[str] = Field(None, min_length=1)
    username: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    favicon: Optional[str] = None


class GeneratePasswordRequest(BaseModel):
    length: int = Field(16, ge=MIN_LENGTH, le=MAX_LENGTH)
    uppercase: bool = True
    lowercase: bool = True
    numbers: bool = True
    symbols: bool = True
    exclude_similar: bool = False
    exclude_ambiguous: bool = False


class StrengthRequest(BaseModel):
    password: str


class NoteRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = ""


class UpdateNoteRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = None


class ImportRequest(BaseModel):
    bundle: Dict[str, Any]
    password: Optional[str] = None


class VaultStatusResponse(BaseModel):
    initialized: bool
    is_unlocked: bool
    seconds_until_lock: Optional[float] = None


# ── Session ──────────────────────────────────────────────────────────


@router.get("/status", response_model=VaultStatusResponse)
async def get_vault_status():
    """Whether the vault exists and is unlocked."""
    mgr = get_vault_manager()
    return VaultStatusResponse(
        initialized=mgr.has_master_password(),
        is_unlocked=not mgr.is_locked(),
        seconds_until_lock=mgr.session.seconds_until_lock(),
    )


@router.post("/setup")
async def setup_vault(body: MasterPasswordRequest):
    """Create the vault. PBKDF2 runs off the event loop."""
    mgr = get_vault_manager()
    return _respond(await asyncio.to_thread(mgr.setup_master_password, body.master_password))


@router.post("/unlock")
async def unlock_vault(body: MasterPasswordRequest):
    mgr = get_vault_manager()
    return _respond(await asyncio.to_thread(mgr.unlock, body.master_password))


@router.post("/lock")
async def lock_vault():
    return _respond(get_vault_manager().lock())


@router.post("/change-password")
async def change_master_password(body: ChangeMasterPasswordRequest):
    """Re-key the vault under a new master password."""
    mgr = get_vault_manager()
    return _respond(await asyncio.to_thread(
        mgr.change_master_password, body.current_password, body.new_password
    ))


@router.post("/reset")
async def reset_vault(body: MasterPasswordRequest):
    """Delete every entry and the master settings."""
    mgr = get_vault_manager()
    return _respond(await asyncio.to_thread(mgr.reset_vault, body.master_password))


# ── Credentials ──────────────────────────────────────────────────────


@router.get("/credentials")
async def list_credentials(
    domain: Optional[str] = None,
    tag: Optional[str] = None,
):
    """List credentials, optionally filtered by domain substring or tag."""
    mgr = get_vault_manager()
    if tag:
        return _respond(mgr.get_credentials_by_tag(tag))
    return _respond(mgr.get_credentials(domain))


@router.post("/credentials", status_code=status.HTTP_201_CREATED)
async def add_credential(body: AddCredentialRequest):
    return _respond(get_vault_manager().add_credential(
        domain=body.domain,
        username=body.username,
        password=body.password,
        notes=body.notes,
        tags=body.tags,
        favicon=body.favicon,
    ))


@router.get("/credentials/{credential_id}")
async def get_credential(credential_id: str):
    return _respond(get_vault_manager().get_credential(credential_id))


@router.put("/credentials/{credential_id}")
async def update_credential(credential_id: str, body: UpdateCredentialRequest):
    """Update only the fields present in the request body."""
    fields = body.model_dump(exclude_unset=True)
    return _respond(get_vault_manager().update_credential(credential_id, fields))


@router.delete("/credentials/{credential_id}")
async def delete_credential(credential_id: str):
    return _respond(get_vault_manager().delete_credential(credential_id))


@router.get("/credentials/{credential_id}/history")
async def get_password_history(credential_id: str):
    return _respond(get_vault_manager().get_password_history(credential_id))


@router.get("/search")
async def search_credentials(q: str = ""):
    return _respond(get_vault_manager().search_credentials(q))


@router.get("/duplicates")
async def find_duplicates():
    return _respond(get_vault_manager().find_duplicates())


@router.get("/tags")
async def list_tags():
    return _respond(get_vault_manager().get_all_tags())


# ── Password tools ───────────────────────────────────────────────────


@router.post("/generate")
async def generate_password(body: GeneratePasswordRequest):
    options = PasswordOptions(**body.model_dump())
    return _respond(get_vault_manager().generate_password(options))


@router.post("/strength")
async def check_strength(body: StrengthRequest):
    return _respond(get_vault_manager().check_strength(body.password))


# ── Secure notes ─────────────────────────────────────────────────────


@router.get("/notes")
async def list_notes():
    return _respond(get_vault_manager().get_notes())


@router.post("/notes", status_code=status.HTTP_201_CREATED)
async def add_note(body: NoteRequest):
    return _respond(get_vault_manager().add_note(body.title, body.content))


@router.get("/notes/{note_id}")
async def get_note(note_id: str):
    return _respond(get_vault_manager().get_note(note_id))


@router.put("/notes/{note_id}")
async def update_note(note_id: str, body: UpdateNoteRequest):
    return _respond(get_vault_manager().update_note(note_id, title=body.title, content=body.content))


@router.delete("/notes/{note_id}")
async def delete_note(note_id: str):
    return _respond(get_vault_manager().delete_note(note_id))


# ── Statistics / backup ──────────────────────────────────────────────


@router.get("/statistics")
async def get_statistics():
    return _respond(get_vault_manager().get_statistics())


@router.get("/export")
async def export_vault():
    """Encrypted export bundle (see VaultManager.export_data)."""
    return _respond(get_vault_manager().export_data())


@router.post("/import")
async def import_vault(body: ImportRequest):
    """Import a bundle; with ``password`` it may come from another vault."""
    mgr = get_vault_manager()
    return _respond(await asyncio.to_thread(mgr.import_data, body.bundle, body.password))
