from pydantic import BaseModel, Field
from typing import Optional


# Request schemas
class SendOTPRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100, examples=["dr.jones"])


class VerifyOTPRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100, examples=["dr.jones"])
    otp: str = Field(..., min_length=1, max_length=12, examples=["123456"])


# Response schemas
class OTPData(BaseModel):
    username: str
    expires_in: int
    otp: Optional[str] = None  # only outside production, delivery is handled by the notifier


class SendOTPResponse(BaseModel):
    status: str = "success"
    message: str
    data: OTPData


class VerifiedData(BaseModel):
    user_id: int
    username: str
    name: Optional[str] = None
    role: Optional[str] = None
    csrf_token: str
    expires_in: int
    idle_timeout: int


class VerifyOTPResponse(BaseModel):
    status: str = "success"
    message: str
    data: VerifiedData


class SessionUserData(BaseModel):
    user_id: int
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    session_id: int
    remaining_seconds: int
    idle_timeout: int


class MeResponse(BaseModel):
    status: str = "success"
    data: SessionUserData


class CsrfTokenResponse(BaseModel):
    status: str = "success"
    csrf_token: str
    expires_in: int
