from fastapi import APIRouter, Depends, Request

from app.schemas.twofa import (
    SetupRequest,
    SetupResponse,
    CodeRequest,
    BackupCodeRequest,
    UnlockRequest,
    StatusResponse,
    BackupStatusResponse,
)
from app.core.exceptions import TwoFactorError, InvalidLabel, SecureHTTPException, handle_twofa_error
from app.services.remote_verifier import device_fingerprint
from app.services.twofa_orchestrator import TwoFactorOrchestrator, get_orchestrator

router = APIRouter()


def client_fingerprint(request: Request) -> str:
    """Device fingerprint from the attributes a browser sends with every request"""
    return device_fingerprint(
        request.headers.get("user-agent", ""),
        request.headers.get("accept-language", ""),
        request.headers.get("sec-ch-ua-platform", ""),
        request.client.host if request.client else "",
    )


@router.post("/setup", response_model=SetupResponse)
def begin_setup(data: SetupRequest, orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator)):
    """Start enrollment: returns the otpauth:// URI for the QR code and the backup codes"""
    try:
        challenge = orchestrator.begin_setup(data.principal_id)
    except InvalidLabel:
        raise SecureHTTPException(status_code=422, detail="Invalid account name")
    except TwoFactorError as e:
        raise handle_twofa_error(e)
    return SetupResponse(provisioning_uri=challenge.provisioning_uri, backup_codes=challenge.backup_codes)


@router.post("/setup/confirm", response_model=StatusResponse)
def confirm_setup(data: CodeRequest, request: Request, orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator)):
    try:
        result = orchestrator.confirm_setup(data.principal_id, data.code, client_fingerprint(request))
    except TwoFactorError as e:
        raise handle_twofa_error(e)
    return StatusResponse(status=result.step.value)


@router.post("/challenge", response_model=StatusResponse)
def challenge(data: CodeRequest, request: Request, orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.challenge(data.principal_id, data.code, client_fingerprint(request))
    except TwoFactorError as e:
        raise handle_twofa_error(e)
    return StatusResponse(status="succeeded")


@router.post("/challenge/backup", response_model=BackupStatusResponse)
def challenge_with_backup_code(data: BackupCodeRequest,
                               orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator)):
    try:
        result = orchestrator.challenge_with_backup_code(data.principal_id, data.code)
    except TwoFactorError as e:
        raise handle_twofa_error(e)
    return BackupStatusResponse(status="succeeded", remaining_backup_codes=result.remaining_backup_codes)


@router.post("/disable", response_model=StatusResponse)
def disable(data: CodeRequest, request: Request, orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.disable(data.principal_id, data.code, client_fingerprint(request))
    except TwoFactorError as e:
        raise handle_twofa_error(e)
    return StatusResponse(status="disabled")


@router.post("/admin/unlock", response_model=StatusResponse)
def unlock(data: UnlockRequest, orchestrator: TwoFactorOrchestrator = Depends(get_orchestrator)):
    """Out-of-band reset of a locked-out principal. Mount behind admin auth."""
    orchestrator.unlock(data.principal_id)
    return StatusResponse(status="unlocked")
