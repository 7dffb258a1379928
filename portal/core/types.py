from pydantic import BaseModel, Field
from typing import Literal, Optional, Any, Dict, List

from portal.services.credentials import MIN_PASSWORD_LENGTH


class DiscordCodeRequest(BaseModel):
    code: str = Field(min_length=1)


class PasswordLoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class CodeRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)


class CodeVerifyRequest(BaseModel):
    code: str = Field(min_length=4, max_length=32)


class LoginAfterPaymentRequest(BaseModel):
    sessionId: Optional[str] = None
    subscriptionId: Optional[str] = None
    discordId: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None


class PasswordSetRequest(BaseModel):
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=1024)


class OnboardingUpdate(BaseModel):
    step: Optional[int] = Field(default=None, ge=0, le=100)
    completed: Optional[bool] = None


class TermsAcceptRequest(BaseModel):
    termsVersion: str = Field(min_length=1, max_length=64)
    termsVersionDate: str = Field(min_length=1, max_length=64)
    termsContent: Optional[str] = None
    contentHash: Optional[str] = None
    acceptanceMethod: Literal["checkbox", "click", "scroll", "signup", "onboarding"] = "checkbox"


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=320)


class CheckoutRequest(BaseModel):
    plan: Literal["monthly"] = "monthly"
    email: Optional[str] = Field(default=None, max_length=320)
    discordId: Optional[str] = None
    username: Optional[str] = Field(default=None, max_length=100)


class CancelRequest(BaseModel):
    cancelAtPeriodEnd: bool = True


class RefundRequest(BaseModel):
    paymentIntentId: str = Field(min_length=1)
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = None
    userId: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


class AdminUserUpdate(BaseModel):
    isAdmin: Optional[bool] = None
    isWhitelisted: Optional[bool] = None
    hasManualSubscription: Optional[bool] = None
    username: Optional[str] = Field(default=None, max_length=100)


class ConfigUpdate(BaseModel):
    value: str
    description: Optional[str] = None


class LoginResponse(BaseModel):
    token: str
    user: Dict[str, Any]
    subscription: Optional[Dict[str, Any]] = None
    canAccess: bool
    accessReason: str
    missingItems: List[str] = []
    needsDiscordOAuth: bool = False


class SubscriptionStatusResponse(BaseModel):
    hasSubscription: bool
    canAccess: bool
    subscription: Optional[Dict[str, Any]] = None


class SetupStatusResponse(BaseModel):
    setupComplete: bool
    missingItems: List[str]
    needsPassword: bool
    needsDiscord: bool
