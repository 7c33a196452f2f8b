from typing import Optional

from pydantic import BaseModel


class LinkOut(BaseModel):
    url: str


class OnboardingStatusOut(BaseModel):
    has_account: bool
    onboarding_status: Optional[str] = None
    stripe_account_status: Optional[str] = None
    is_complete: bool = False
