from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime
from typing import Literal, Optional, List

class CodeRequest(BaseModel):
    code: str = Field(max_length=64)

class ValidateCodeResponse(BaseModel):
    valid: bool
    message: str

class PrizePublic(BaseModel):
    """Wheel-safe prize fields. No stock, no weight."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: str
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

class SpinSuccessResponse(BaseModel):
    success: Literal[True] = True
    prize: PrizePublic

class SpinFailureResponse(BaseModel):
    success: Literal[False] = False
    error: str
    code: str

class LastWinner(BaseModel):
    name: str
    prizeName: str
    prizeImage: Optional[str] = None
    wonAt: datetime

class LastWinnersResponse(BaseModel):
    winners: List[LastWinner]
    timestamp: int

class AdminLoginRequest(BaseModel):
    password: str

class AdminLoginResponse(BaseModel):
    token: str


class PrizeIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    image_url: Optional[str] = None
    quantity_total: int = Field(ge=1)
    weight: int = Field(ge=1)

class PrizeOut(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    quantity_total: int
    quantity_remaining: int
    weight: int
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class CodeEntry(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr

class GenerateCodesRequest(BaseModel):
    entries: List[CodeEntry] = Field(min_length=1, max_length=100)

class CodeOut(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    email: Optional[str] = None
    is_used: bool
    used_at: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class GenerateCodesResponse(BaseModel):
    created: int
    skipped: List[str]
    emails_sent: int
    emails_failed: int
    codes: List[CodeOut]


class WinnerUpdate(BaseModel):
    prize_sent: Optional[bool] = None
    notes: Optional[str] = None

class WinnerOut(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    email: Optional[str] = None
    prize_id: int
    prize_title: str
    won_at: datetime
    prize_sent: bool
    notes: Optional[str] = None

    @classmethod
    def from_winner(cls, w) -> "WinnerOut":
        return cls(
            id=w.id,
            code=w.code.code,
            name=w.code.name,
            email=w.code.email,
            prize_id=w.prize_id,
            prize_title=w.prize.title,
            won_at=w.won_at,
            prize_sent=w.prize_sent,
            notes=w.notes,
        )

class ClearRateLimitsResponse(BaseModel):
    ok: bool
    cleared: int


class CodeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)

class ResetRequest(BaseModel):
    reset_password: str

class ResetResponse(BaseModel):
    ok: bool
    message: str
    csv: dict[str, str]
    deleted: dict[str, int]
