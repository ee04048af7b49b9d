from pydantic import BaseModel, Field
from typing import List


class SetupRequest(BaseModel):
    principal_id: str = Field(min_length=1, max_length=255)


class SetupResponse(BaseModel):
    provisioning_uri: str
    backup_codes: List[str]


class CodeRequest(BaseModel):
    principal_id: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=16)


class BackupCodeRequest(BaseModel):
    principal_id: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=32)


class UnlockRequest(BaseModel):
    principal_id: str = Field(min_length=1, max_length=255)


class StatusResponse(BaseModel):
    status: str


class BackupStatusResponse(StatusResponse):
    remaining_backup_codes: int


# Wire shapes for the remote verification fallback
class RemoteVerifyRequest(BaseModel):
    secret: str              # Fernet token, never the raw seed
    code: str
    username: str
    timestamp: int           # milliseconds since the epoch
    fingerprint: str = ""


class RemoteVerifyResponse(BaseModel):
    valid: bool


class CsrfTokenResponse(BaseModel):
    token: str = Field(min_length=1)
