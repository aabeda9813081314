"""
Invoice Code Generation

Codes look like INV-JUAL-BS-010224/003:
- prefix and a segment for the invoice type (sales or purchase)
- initials of the contact, two letters, padded with X
- entry date as DDMMYY
- sequence number: invoices already dated that day plus one

The count is global across contacts and types, so two invoices on the
same day never share a sequence number unless one was deleted in between.
generate_invoice_code() skips forward past codes that are already taken.
"""

from datetime import date
from typing import Optional

from bookkeeping.config import get_settings
from bookkeeping.models.records import InvoiceType
from bookkeeping.services.storage import RecordStoreInterface


def contact_initials(name: Optional[str]) -> str:
    """First letters of the first two words, upper-cased, padded with X."""
    words = (name or "").split()[:2]
    return "".join(word[0] for word in words).upper().ljust(2, "X")


def format_invoice_code(
    type: InvoiceType,
    contact_name: Optional[str],
    entry_date: date,
    sequence: int,
) -> str:
    settings = get_settings().app
    segment = (
        settings.sales_code_segment
        if type is InvoiceType.SALES
        else settings.purchase_code_segment
    )
    return (
        f"{settings.invoice_code_prefix}-{segment}-{contact_initials(contact_name)}-"
        f"{entry_date:%d%m%y}/{sequence:03d}"
    )


async def generate_invoice_code(
    store: RecordStoreInterface,
    type: InvoiceType,
    contact_name: Optional[str],
    entry_date: date,
) -> str:
    """Generate the next unused code for an invoice dated entry_date."""
    sequence = await store.count_invoices_on(entry_date) + 1
    code = format_invoice_code(type, contact_name, entry_date, sequence)
    while await store.find_invoice_by_code(code) is not None:
        sequence += 1
        code = format_invoice_code(type, contact_name, entry_date, sequence)
    return code
