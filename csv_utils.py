import csv
import re
from io import StringIO
from typing import Mapping, Sequence

from models import Expense
from money import format_amount

EXPORT_HEADER = [
    "Date",
    "Type",
    "Label",
    "Amount",
    "Group",
    "CashBook",
    "PlanMonth",
    "Tags",
    "Note",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def export_expenses(
    expenses: Sequence[Expense],
    group_names: Mapping[str, str],
    cash_book_names: Mapping[str, str],
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for expense in expenses:
        writer.writerow(
            [
                expense.txn_date.isoformat(),
                expense.entry_type.value,
                sanitize_csv_value(expense.label),
                format_amount(expense.amount_cents),
                sanitize_csv_value(group_names.get(expense.group_id, "")),
                sanitize_csv_value(cash_book_names.get(expense.cash_book_id, "")),
                expense.plan_month_key or "",
                sanitize_csv_value(", ".join(expense.tag_names)),
                sanitize_csv_value(expense.note or ""),
            ]
        )
    return output.getvalue()
