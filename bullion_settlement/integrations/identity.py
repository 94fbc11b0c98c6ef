"""Identity store: customer details and payout KYC fields."""
from typing import ClassVar, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from bullion_settlement.core.errors import IdentityIncomplete
from bullion_settlement.integrations.gateway import CustomerIdentity


class PayoutIdentity(BaseModel):
    """Profile of an account holder, including the fields a payout requires."""

    name: str = Field(..., description="Account holder name")
    email: str = Field(..., description="Contact email")
    phone: str = Field(..., description="Contact phone")
    bank_account_name: Optional[str] = Field(default=None, description="Name on bank account")
    bank_account_number: Optional[str] = Field(default=None, description="Bank account number")
    bank_ifsc_code: Optional[str] = Field(default=None, description="Bank IFSC code")
    pan_card_number: Optional[str] = Field(default=None, description="PAN number")
    aadhaar_card_number: Optional[str] = Field(default=None, description="Aadhaar number")

    MANDATORY_PAYOUT_FIELDS: ClassVar[tuple[str, ...]] = (
        "bank_account_name",
        "bank_account_number",
        "bank_ifsc_code",
        "pan_card_number",
        "aadhaar_card_number",
    )

    def missing_payout_fields(self) -> list[str]:
        return [
            name
            for name in self.MANDATORY_PAYOUT_FIELDS
            if not (getattr(self, name) or "").strip()
        ]


class IdentityStore(Protocol):
    async def mandatory_payout_fields_present(self, account_id: str) -> bool:
        ...

    async def customer_identity(self, account_id: str) -> CustomerIdentity:
        ...


class InMemoryIdentityStore:
    """Dictionary-backed identity store."""

    def __init__(self, profiles: Optional[Dict[str, PayoutIdentity]] = None):
        self._profiles: Dict[str, PayoutIdentity] = dict(profiles or {})

    def upsert(self, account_id: str, profile: PayoutIdentity) -> None:
        self._profiles[account_id] = profile

    async def mandatory_payout_fields_present(self, account_id: str) -> bool:
        profile = self._profiles.get(account_id)
        return profile is not None and not profile.missing_payout_fields()

    async def customer_identity(self, account_id: str) -> CustomerIdentity:
        profile = self._profiles.get(account_id)
        if profile is None:
            raise IdentityIncomplete(f"No profile on file for account {account_id}")
        return CustomerIdentity(
            customer_id=account_id,
            name=profile.name,
            email=profile.email,
            phone=profile.phone,
        )
