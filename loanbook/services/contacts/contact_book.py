"""
Contact Book

Loans add people to each other's contact books: the borrower lands in
the lender's book when a loan is created, the lender in the borrower's
book when the loan is accepted. Both are opportunistic. Callers treat
a failure here as a warning.
"""

from typing import Optional

import structlog

from loanbook.models.loan import Contact
from loanbook.services.storage import ContactStorageInterface, DuplicateError


class ContactBook:
    """Idempotent contact creation on top of contact storage."""

    def __init__(self, storage: ContactStorageInterface):
        self._storage = storage
        self._logger = structlog.get_logger("loanbook.contacts")

    async def ensure_contact(
        self,
        owner_id: str,
        email: str,
        name: str,
        phone: Optional[str] = None,
    ) -> bool:
        """
        Add (email, name) to owner's contacts unless already there.

        Returns:
            True if a contact was created, False if it already existed
        """
        email = email.strip().lower()
        if await self._storage.get_contact(owner_id, email):
            return False

        try:
            await self._storage.save_contact(Contact(
                owner_id=owner_id,
                email=email,
                name=name,
                phone=phone,
            ))
        except DuplicateError:
            # Created concurrently by another request
            return False

        self._logger.info("contact_added", owner_id=owner_id, email=email)
        return True

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        return await self._storage.list_contacts(owner_id)
