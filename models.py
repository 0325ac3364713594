import uuid
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer


def _to_decimal(value: Any) -> Any:
    # Go through str so 30.73 becomes Decimal("30.73"), not its binary expansion
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def _to_json_number(value: Decimal) -> Union[int, float]:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# Balances and amounts are exact decimals that render as plain JSON numbers
Amount = Annotated[
    Decimal,
    BeforeValidator(_to_decimal),
    PlainSerializer(_to_json_number, when_used="json"),
]


def new_request_id() -> str:
    return uuid.uuid4().hex


# Persisted documents

class WithdrawalRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Legacy records without an id get one on load
    id: str = Field(default_factory=new_request_id, description="Unique request identifier")
    amount: Amount = Field(..., description="Amount debited when the request was made")
    method: Optional[str] = Field(None, description="Payout channel")
    date: str = Field(..., description="Creation timestamp (ISO 8601)")
    approved: bool = Field(False, description="Set once by an administrator")

    @property
    def status(self) -> str:
        return "approved" if self.approved else "pending"


class Account(BaseModel):
    model_config = ConfigDict(extra="allow")

    username: str
    password: str = Field(..., description="Hashed credential (legacy files may hold plaintext)")
    earnings: Amount = Decimal(0)
    screenTime: Amount = Decimal(0)
    lastLogin: Optional[str] = None
    withdrawRequests: List[WithdrawalRequest] = Field(default_factory=list)


class FeedbackEntry(BaseModel):
    name: str
    email: str
    message: str
    date: str


# Request bodies are loosely typed; the services validate them

class SignupRequest(BaseModel):
    username: Any = None
    email: Any = None
    password: Any = None


class LoginRequest(BaseModel):
    email: Any = None
    password: Any = None


class ActivityRequest(BaseModel):
    email: Any = None
    earningsEarned: Any = None


class ScreenTimeRequest(BaseModel):
    email: Any = None
    timeSpent: Any = None


class FeedbackRequest(BaseModel):
    name: Any = None
    email: Any = None
    message: Any = None


class WithdrawRequest(BaseModel):
    email: Any = None
    amount: Any = None
    method: Any = None


class WithdrawalTarget(BaseModel):
    email: Any = None
    id: Any = Field(None, description="Request identifier; preferred over date")
    date: Any = Field(None, description="Request creation timestamp")


# Responses

class MessageResponse(BaseModel):
    message: str


class SignupResponse(BaseModel):
    success: bool = True
    message: str


class LoginResponse(BaseModel):
    success: bool = True
    message: str
    username: str
    lastLogin: str
    token: str = Field(..., description="Session token for the Authorization header")


class EarningsResponse(BaseModel):
    message: str
    totalEarnings: Amount


class ScreenTimeResponse(BaseModel):
    message: str
    totalScreenTime: Amount


class WithdrawResponse(BaseModel):
    message: str
    request: Optional[WithdrawalRequest] = None


class ProfileResponse(BaseModel):
    email: str
    username: str
    earnings: Amount
    screenTime: Amount
    withdrawRequests: List[WithdrawalRequest]
    lastLogin: Optional[str] = None


class AdminWithdrawal(BaseModel):
    email: str
    username: str
    id: str
    amount: Amount
    method: Optional[str] = None
    date: str
    status: Literal["pending", "approved"]
    approved: bool


class ErrorResponse(BaseModel):
    message: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    accounts_count: int = Field(..., description="Number of registered accounts")
    feedbacks_count: int = Field(..., description="Number of submitted feedback entries")
