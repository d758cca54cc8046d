"""Contact book package."""

from loanbook.services.contacts.contact_book import ContactBook

__all__ = ["ContactBook"]
