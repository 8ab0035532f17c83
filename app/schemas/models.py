from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

CancellationMethod = Literal["api", "automation", "manual"]
PreferredMethod = Literal["auto", "api", "automation", "manual"]
Priority = Literal["low", "normal", "high"]
Timeframe = Literal["day", "week", "month"]


class NotificationPreferences(BaseModel):
    realTime: bool = True
    email: bool = True
    sms: bool = False


class UserCancellationPreferences(BaseModel):
    allowFallback: bool = True
    maxRetries: int = Field(3, ge=1, le=5)
    timeoutMinutes: int = Field(30, ge=5, le=60)
    notificationPreferences: Optional[NotificationPreferences] = None


class SchedulingOptions(BaseModel):
    scheduleFor: Optional[datetime] = None
    timezone: Optional[str] = Field(None, pattern=r"^[A-Za-z_]+/[A-Za-z_]+$")


class CancellationRequestInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    subscriptionId: int = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)
    priority: Priority = "normal"
    preferredMethod: PreferredMethod = "auto"
    userPreferences: Optional[UserCancellationPreferences] = None
    scheduling: Optional[SchedulingOptions] = None

    @model_validator(mode="after")
    def _schedule_for_required(self):
        if self.scheduling is not None and self.scheduling.scheduleFor is None:
            raise ValueError("scheduleFor is required when scheduling is provided")
        return self

    @property
    def allow_fallback(self) -> bool:
        if self.userPreferences is None:
            return True
        return self.userPreferences.allowFallback

    @property
    def real_time_updates(self) -> bool:
        prefs = self.userPreferences
        if prefs is None or prefs.notificationPreferences is None:
            return True
        return prefs.notificationPreferences.realTime


class RetryCancellationRequest(BaseModel):
    forceMethod: Optional[CancellationMethod] = None
    escalate: bool = False


class CancelCancellationRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ManualConfirmationRequest(BaseModel):
    wasSuccessful: bool
    confirmationCode: Optional[str] = Field(None, max_length=255)
    effectiveDate: Optional[datetime] = None
    refundAmount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class ProviderWebhookPayload(BaseModel):
    requestId: str
    status: Literal["completed", "failed"]
    confirmationCode: Optional[str] = None
    effectiveDate: Optional[datetime] = None
    refundAmount: Optional[float] = None
    error: Optional[str] = None
