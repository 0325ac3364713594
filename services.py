import math
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, List, Optional

import structlog

from auth import Identity, SessionRegistry, hash_password, is_hashed, verify_password
from errors import Conflict, InvalidInput, NotFound, Unauthorized
from models import (
    Account,
    AdminWithdrawal,
    EarningsResponse,
    FeedbackEntry,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    ScreenTimeResponse,
    SignupResponse,
    WithdrawalRequest,
    WithdrawResponse,
)
from repositories import AccountRepository, FeedbackRepository

logger = structlog.get_logger()

Clock = Callable[[], datetime]

_NUMERIC = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO 8601 in UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coerce_number(value: Any) -> Optional[Decimal]:
    """Turn a loosely typed JSON value into a finite Decimal, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not _NUMERIC.match(text):
            return None
        number = Decimal(text)
        return number if number.is_finite() else None
    return None


def _is_present(value: Any) -> bool:
    return isinstance(value, str) and value != ""


async def _require_account(repo: AccountRepository, email: Any) -> Account:
    account = await repo.get_account(email) if isinstance(email, str) else None
    if account is None:
        logger.warning("Account not found", email=email)
        raise NotFound("User not found.")
    return account


class AccountService:
    def __init__(
        self,
        account_repo: AccountRepository,
        sessions: SessionRegistry,
        bcrypt_rounds: int = 12,
        clock: Clock = utc_now,
    ):
        self.account_repo = account_repo
        self.sessions = sessions
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock

    async def create(self, username: Any, email: Any, password: Any) -> SignupResponse:
        if not (_is_present(username) and _is_present(email) and _is_present(password)):
            logger.warning("Signup rejected, missing fields")
            raise InvalidInput("Username, email, and password are required.")

        if await self.account_repo.account_exists(email):
            logger.warning("Signup rejected, account exists", email=email)
            raise Conflict("User already exists.")

        account = Account(
            username=username,
            password=hash_password(password, self.bcrypt_rounds),
        )
        async with self.account_repo.mutation():
            await self.account_repo.add_account(email, account)

        logger.info("Account created", email=email)
        return SignupResponse(success=True, message="Signup successful!")

    async def authenticate(self, email: Any, password: Any) -> LoginResponse:
        account = None
        if isinstance(email, str):
            account = await self.account_repo.get_account(email)

        # Unknown email and wrong password look the same to the caller
        if account is None or not isinstance(password, str) or not verify_password(password, account.password):
            logger.warning("Login rejected", email=email)
            raise Unauthorized("Invalid credentials.")

        async with self.account_repo.mutation():
            account.lastLogin = format_timestamp(self.clock())
            if not is_hashed(account.password):
                account.password = hash_password(password, self.bcrypt_rounds)
                logger.info("Upgraded plaintext credential", email=email)

        token = self.sessions.issue(email)
        logger.info("Login succeeded", email=email)
        return LoginResponse(
            success=True,
            message="Login successful!",
            username=account.username,
            lastLogin=account.lastLogin,
            token=token,
        )

    async def record_earnings(self, identity: Identity, amount: Any) -> EarningsResponse:
        account = await _require_account(self.account_repo, identity.email)

        earned = coerce_number(amount)
        if earned is None or earned < 0:
            logger.warning("Invalid earnings value", email=identity.email, value=repr(amount))
            raise InvalidInput("Invalid earnings value.")

        async with self.account_repo.mutation():
            account.earnings += earned

        logger.info("Earnings recorded", email=identity.email, amount=str(earned), total=str(account.earnings))
        return EarningsResponse(message="Earnings updated!", totalEarnings=account.earnings)

    async def record_screen_time(self, identity: Identity, amount: Any) -> ScreenTimeResponse:
        account = await _require_account(self.account_repo, identity.email)

        spent = coerce_number(amount)
        if spent is None or spent < 0:
            logger.warning("Invalid time value", email=identity.email, value=repr(amount))
            raise InvalidInput("Invalid time value.")

        async with self.account_repo.mutation():
            account.screenTime += spent

        logger.info("Screen time recorded", email=identity.email, amount=str(spent), total=str(account.screenTime))
        return ScreenTimeResponse(message="Screen time updated!", totalScreenTime=account.screenTime)

    async def get_profile(self, email: str) -> ProfileResponse:
        account = await _require_account(self.account_repo, email)
        return ProfileResponse(
            email=email,
            username=account.username,
            earnings=account.earnings,
            screenTime=account.screenTime,
            withdrawRequests=account.withdrawRequests,
            lastLogin=account.lastLogin,
        )


class WithdrawalService:
    """Withdrawal request lifecycle.

    A request is pending until an administrator approves it. Its amount is
    debited from earnings when it is made, refunded if the owner cancels it
    while still pending, and kept if it is approved. Approved requests never
    change again.
    """

    def __init__(self, account_repo: AccountRepository, clock: Clock = utc_now, echo_request: bool = False):
        self.account_repo = account_repo
        self.clock = clock
        self.echo_request = echo_request

    async def request(self, identity: Identity, amount: Any, method: Any) -> WithdrawResponse:
        account = await _require_account(self.account_repo, identity.email)

        requested = coerce_number(amount)
        if requested is None or requested <= 0 or requested > account.earnings:
            logger.warning(
                "Invalid withdrawal amount",
                email=identity.email,
                value=repr(amount),
                earnings=str(account.earnings),
            )
            raise InvalidInput("Invalid withdrawal amount.")

        withdrawal = WithdrawalRequest(
            amount=requested,
            method=None if method is None else str(method),
            date=self._unique_date(account),
            approved=False,
        )
        async with self.account_repo.mutation():
            account.earnings -= requested
            account.withdrawRequests.append(withdrawal)

        logger.info(
            "Withdrawal requested",
            email=identity.email,
            request_id=withdrawal.id,
            amount=str(requested),
            earnings=str(account.earnings),
        )
        return WithdrawResponse(
            message="Withdrawal request submitted!",
            request=withdrawal if self.echo_request else None,
        )

    async def cancel(self, identity: Identity, request_id: Any = None, date: Any = None) -> MessageResponse:
        account = await _require_account(self.account_repo, identity.email)

        withdrawal = self._find(account, request_id, date, pending_only=True)
        if withdrawal is None:
            logger.warning("Pending request not found", email=identity.email, request_id=request_id, date=date)
            raise NotFound("Pending request not found.")

        async with self.account_repo.mutation():
            account.withdrawRequests.remove(withdrawal)
            account.earnings += withdrawal.amount

        logger.info("Withdrawal cancelled", email=identity.email, request_id=withdrawal.id, refunded=str(withdrawal.amount))
        return MessageResponse(message="Withdrawal request cancelled.")

    async def approve(self, email: Any, request_id: Any = None, date: Any = None) -> MessageResponse:
        account = await _require_account(self.account_repo, email)

        withdrawal = self._find(account, request_id, date, pending_only=False)
        if withdrawal is None:
            logger.warning("Request not found", email=email, request_id=request_id, date=date)
            raise NotFound("Request not found.")

        if withdrawal.approved:
            logger.warning("Request already approved", email=email, request_id=withdrawal.id)
            raise Conflict("Request already approved.")

        async with self.account_repo.mutation():
            withdrawal.approved = True

        logger.info("Withdrawal approved", email=email, request_id=withdrawal.id, amount=str(withdrawal.amount))
        return MessageResponse(message="Withdrawal approved.")

    async def list_for_account(self, email: str) -> List[WithdrawalRequest]:
        account = await _require_account(self.account_repo, email)
        return list(account.withdrawRequests)

    async def list_all(self) -> List[AdminWithdrawal]:
        entries = []
        for email, account in await self.account_repo.list_accounts():
            for withdrawal in account.withdrawRequests:
                entries.append(
                    AdminWithdrawal(
                        email=email,
                        username=account.username,
                        id=withdrawal.id,
                        amount=withdrawal.amount,
                        method=withdrawal.method,
                        date=withdrawal.date,
                        status=withdrawal.status,
                        approved=withdrawal.approved,
                    )
                )
        return entries

    def _unique_date(self, account: Account) -> str:
        taken = {withdrawal.date for withdrawal in account.withdrawRequests}
        moment = self.clock()
        stamp = format_timestamp(moment)
        while stamp in taken:
            moment += timedelta(milliseconds=1)
            stamp = format_timestamp(moment)
        return stamp

    def _find(
        self, account: Account, request_id: Any, date: Any, pending_only: bool
    ) -> Optional[WithdrawalRequest]:
        if request_id is not None:
            candidates = [w for w in account.withdrawRequests if w.id == request_id]
        elif date is not None:
            candidates = [w for w in account.withdrawRequests if w.date == date]
        else:
            return None

        if pending_only:
            candidates = [w for w in candidates if not w.approved]
        if len(candidates) > 1:
            # Only possible for records written before ids existed
            raise InvalidInput("Several requests share this date; address the request by id.")
        return candidates[0] if candidates else None


class FeedbackService:
    def __init__(self, feedback_repo: FeedbackRepository, clock: Clock = utc_now):
        self.feedback_repo = feedback_repo
        self.clock = clock

    async def submit(self, name: Any, email: Any, message: Any) -> MessageResponse:
        if not (_is_present(name) and _is_present(email) and _is_present(message)):
            logger.warning("Feedback rejected, missing fields")
            raise InvalidInput("Name, email, and message are required.")

        entry = FeedbackEntry(name=name, email=email, message=message, date=format_timestamp(self.clock()))
        async with self.feedback_repo.mutation():
            await self.feedback_repo.append(entry)

        logger.info("Feedback submitted", email=email)
        return MessageResponse(message="Feedback submitted. Thank you!")

    async def list_all(self) -> List[FeedbackEntry]:
        return await self.feedback_repo.list_all()
