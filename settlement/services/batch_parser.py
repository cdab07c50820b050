"""Bulk payout file parsing: NACHA (ACH) and CSV exports.

Format is detected from content (a NACHA file header record) or the file
extension. Output amounts are Decimal dollars built from integer cents.
Bank numbers live on the parsed lines only until they are tokenized.

NACHA entry detail (type 6) layout, 0-indexed slices:
    [1:3]   transaction code (credits: 22, 32, 33, 42, 52)
    [3:12]  receiving routing number (8 digits + check digit)
    [12:29] account number
    [29:39] amount in cents
    [39:54] individual id (reference)
    [54:76] individual name (payee)
"""

import csv
import io
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from settlement.models.batch import BatchFileType
from settlement.services.payouts import to_cents
from settlement.utils.banking import is_valid_account_number, is_valid_routing_number

NACHA_RECORD_LENGTH = 94
NACHA_CREDIT_CODES = {"22", "32", "33", "42", "52"}
NACHA_SAVINGS_CODES = {"33", "42", "52"}

_COLUMN_PATTERNS: dict[str, re.Pattern[str]] = {
    "payee_name": re.compile(r"payee|beneficiary|recipient|name|vendor"),
    "routing_number": re.compile(r"routing|aba|transit"),
    "account_number": re.compile(r"account.*(number|#|no)|acct"),
    "amount": re.compile(r"amount|payment|total|sum"),
    "reference_id": re.compile(r"reference|deal|order|file.*number|escrow.*number|transaction"),
    "account_type": re.compile(r"account.*type|type.*account"),
    "memo": re.compile(r"memo|note|description|purpose"),
}


@dataclass
class ParsedLine:
    line_number: int
    payee_name: str
    amount: Decimal
    reference_id: str
    routing_number: str = field(default="", repr=False)
    account_number: str = field(default="", repr=False)
    account_type: str = "checking"
    memo: str | None = None

    @property
    def has_bank_details(self) -> bool:
        return bool(self.routing_number and self.account_number)


@dataclass
class ParseError:
    line_number: int
    message: str

    def to_dict(self) -> dict:
        return {"line_number": self.line_number, "message": self.message}


@dataclass
class ParseResult:
    file_type: BatchFileType | None
    lines: list[ParsedLine] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal("0.00"))


class LineError(ValueError):
    pass


def _cents_to_dollars(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def _check_bank_details(routing: str, account: str) -> None:
    if routing and not is_valid_routing_number(routing):
        raise LineError("Invalid routing number (ABA checksum failed)")
    if account and not is_valid_account_number(account):
        raise LineError("Invalid account number (expected 4-17 digits)")


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def is_nacha(content: str) -> bool:
    first = content.split("\n", 1)[0].rstrip("\r")
    return len(first) >= NACHA_RECORD_LENGTH and re.match(r"^1\d{2}", first) is not None


def is_csv(content: str, file_name: str) -> bool:
    if file_name.lower().endswith(".csv"):
        return True
    header = content.split("\n", 1)[0].lower()
    return any(word in header for word in ("payee", "amount", "routing", "account", "reference", "name"))


def parse_batch_file(content: str, file_name: str) -> ParseResult:
    content = content.strip().replace("\r\n", "\n")
    if is_nacha(content):
        return parse_nacha(content)
    if is_csv(content, file_name):
        return parse_csv(content)
    return ParseResult(
        file_type=None,
        errors=[ParseError(0, "Unable to determine file format. Expected NACHA or CSV.")],
    )


# ---------------------------------------------------------------------------
# NACHA
# ---------------------------------------------------------------------------

def _parse_nacha_entry(record: str, line_number: int, batch_reference: str) -> ParsedLine | None:
    code = record[1:3]
    if code not in NACHA_CREDIT_CODES:
        return None  # debits and prenotes are not payouts

    routing = record[3:12].strip()
    if not re.fullmatch(r"\d{9}", routing):
        raise LineError(f"Invalid routing number format: {routing}")
    account = record[12:29].strip()
    if not account:
        raise LineError("Missing account number")
    _check_bank_details(routing, account)

    amount_str = record[29:39].strip()
    if not amount_str.isdigit() or int(amount_str) <= 0:
        raise LineError(f"Invalid amount: {amount_str}")

    name = record[54:76].strip()
    if not name:
        raise LineError("Missing payee name")

    return ParsedLine(
        line_number=line_number,
        payee_name=name,
        amount=_cents_to_dollars(int(amount_str)),
        reference_id=record[39:54].strip() or batch_reference or f"LINE-{line_number}",
        routing_number=routing,
        account_number=account,
        account_type="savings" if code in NACHA_SAVINGS_CODES else "checking",
    )


def parse_nacha(content: str) -> ParseResult:
    result = ParseResult(file_type=BatchFileType.NACHA)
    batch_reference = ""
    for index, record in enumerate(content.split("\n"), start=1):
        if len(record) < NACHA_RECORD_LENGTH:
            continue
        record_type = record[0]
        if record_type == "5":
            batch_reference = record[53:63].strip()
        elif record_type == "6":
            try:
                line = _parse_nacha_entry(record, index, batch_reference)
            except LineError as e:
                result.errors.append(ParseError(index, str(e)))
                continue
            if line is not None:
                result.lines.append(line)
    return result


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

def detect_csv_columns(header: list[str]) -> dict[str, int]:
    """Map logical fields to column indexes by header name. First match wins."""
    columns: dict[str, int] = {}
    for index, raw in enumerate(header):
        name = raw.strip().lower()
        for key, pattern in _COLUMN_PATTERNS.items():
            if key in columns or not pattern.search(name):
                continue
            if key == "payee_name" and "bank" in name:
                continue
            if key in ("account_number", "amount") and "type" in name:
                continue
            columns[key] = index
    return columns


def _cell(row: list[str], columns: dict[str, int], key: str) -> str:
    index = columns.get(key)
    if index is None or index >= len(row):
        return ""
    return row[index].strip()


def _parse_csv_row(row: list[str], line_number: int, columns: dict[str, int]) -> ParsedLine:
    name = _cell(row, columns, "payee_name")
    if not name:
        raise LineError("Missing payee name")

    amount_str = _cell(row, columns, "amount")
    if not amount_str:
        raise LineError("Missing amount")
    try:
        amount = Decimal(re.sub(r"[$,\s]", "", amount_str))
    except InvalidOperation:
        raise LineError(f"Invalid amount: {amount_str}")
    if not amount.is_finite() or amount <= 0:
        raise LineError(f"Invalid amount: {amount_str}")
    amount = to_cents(amount)
    if amount <= 0:
        raise LineError(f"Amount rounds to zero: {amount_str}")

    routing = re.sub(r"\D", "", _cell(row, columns, "routing_number"))
    account = re.sub(r"\D", "", _cell(row, columns, "account_number"))
    _check_bank_details(routing, account)

    account_type = "savings" if "saving" in _cell(row, columns, "account_type").lower() else "checking"
    return ParsedLine(
        line_number=line_number,
        payee_name=name,
        amount=amount,
        reference_id=_cell(row, columns, "reference_id") or f"LINE-{line_number}",
        routing_number=routing,
        account_number=account,
        account_type=account_type,
        memo=_cell(row, columns, "memo") or None,
    )


def parse_csv(content: str) -> ParseResult:
    result = ParseResult(file_type=BatchFileType.CSV)
    rows = list(csv.reader(io.StringIO(content)))
    if len(rows) < 2:
        result.errors.append(ParseError(0, "CSV file appears to be empty or missing data rows"))
        return result

    columns = detect_csv_columns(rows[0])
    if "payee_name" not in columns or "amount" not in columns:
        result.errors.append(ParseError(
            1, "Required columns not found. Expected: Payee Name, Routing, Account, Amount, Reference"
        ))
        return result

    for index, row in enumerate(rows[1:], start=2):
        if not any(cell.strip() for cell in row):
            continue
        try:
            result.lines.append(_parse_csv_row(row, index, columns))
        except LineError as e:
            result.errors.append(ParseError(index, str(e)))
    return result
