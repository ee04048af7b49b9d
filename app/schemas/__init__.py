from .twofa import (
    SetupRequest,
    SetupResponse,
    CodeRequest,
    BackupCodeRequest,
    UnlockRequest,
    StatusResponse,
    BackupStatusResponse,
    RemoteVerifyRequest,
    RemoteVerifyResponse,
    CsrfTokenResponse,
)
