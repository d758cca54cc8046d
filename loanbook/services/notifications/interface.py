"""
Notification Sink Interface

The lending core only needs to ask for a message to be sent. Templates,
email providers and WhatsApp delivery live behind this interface.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

from loanbook.models.loan import PaymentType


class NotificationKind(str, Enum):
    INVITATION = "invitation"
    PAYMENT_SUBMITTED = "payment_submitted"


class InvitationPayload(BaseModel):
    """Sent to the invited borrower after a loan is created."""

    loan_id: str
    lender_name: str
    borrower_email: str
    borrower_name: str
    amount: Decimal
    description: str
    invitation_url: str


class PaymentSubmittedPayload(BaseModel):
    """Sent to the lender after the borrower reports a payment."""

    loan_id: str
    payment_id: str
    lender_email: str
    lender_name: str
    borrower_name: str
    loan_amount: Decimal
    payment_amount: Decimal
    payment_type: PaymentType
    notes: Optional[str] = None


NotificationPayload = Union[InvitationPayload, PaymentSubmittedPayload]


class NotificationResult(BaseModel):
    success: bool
    error: Optional[str] = Field(default=None, description="Why delivery failed")


class NotificationSink(ABC):
    """Anything that can deliver a notification."""

    @abstractmethod
    async def notify(
        self,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> NotificationResult:
        """
        Deliver one notification.

        Implementations may raise; the dispatcher turns exceptions
        into failed results.
        """
        pass
