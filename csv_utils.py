import csv
import re
from io import StringIO
from typing import Sequence

from models import Posting


def sanitize_csv_value(value: str) -> str:
    """
    Prefix values a spreadsheet would evaluate as a formula or command with a tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^http[s]?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


def export_postings(postings: Sequence[Posting]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "BookingDate",
            "ValutaDate",
            "Amount",
            "Account",
            "Category",
            "Recipient",
            "Subject",
            "Description",
        ]
    )
    for posting in postings:
        writer.writerow(
            [
                posting.booking_date.isoformat(),
                posting.valuta_date.isoformat(),
                format_amount(posting.amount_cents),
                sanitize_csv_value(posting.account.name if posting.account else ""),
                sanitize_csv_value(posting.category.name if posting.category else ""),
                sanitize_csv_value(posting.recipient_name or ""),
                sanitize_csv_value(posting.subject or ""),
                sanitize_csv_value(posting.description or ""),
            ]
        )
    return output.getvalue()
