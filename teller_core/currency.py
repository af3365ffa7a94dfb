"""
Amounts & Exchange Rates Module

Decimal helpers for monetary values and the exchange-rate book. Balances
are held in the base currency; rates state how many base units one unit of
a foreign currency is worth. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
import re
import uuid

from .audit import AuditEventType, AuditTrail
from .errors import ExchangeRateNotFound, ValidationError
from .logging_config import get_logger, log_action
from .permissions import Operation, require
from .storage import StorageInterface, StorageRecord

# Set global decimal context for financial precision
getcontext().prec = 28

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


def to_decimal(value: Union[Decimal, int, str], field: str = "amount") -> Decimal:
    """
    Convert input to Decimal without passing through float.

    Raises:
        ValidationError: For floats, non-numeric strings and non-finite values
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be given as a decimal string or integer", field=field)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)
    if not result.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)
    return result


def quantize_amount(value: Decimal, precision: int = 2) -> Decimal:
    """Round to ``precision`` decimal places, half up"""
    return value.quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)


def to_amount(value: Union[Decimal, int, str], precision: int = 2, field: str = "amount") -> Decimal:
    """
    Parse a monetary amount that must already fit ``precision`` places.

    Raises:
        ValidationError: For invalid input or more decimal places than allowed
    """
    amount = to_decimal(value, field)
    quantized = quantize_amount(amount, precision)
    if amount != quantized:
        raise ValidationError(
            f"{field} has more than {precision} decimal places: {value!r}", field=field
        )
    return quantized


def normalize_currency_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if not _CURRENCY_CODE.match(normalized):
        raise ValidationError(f"Invalid currency code: {code!r}", field="currency_code")
    return normalized


@dataclass
class ExchangeRate(StorageRecord):
    """Rate of one foreign currency against the base currency"""
    currency_code: str
    currency_name: str
    rate_to_base: Decimal
    last_updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['rate_to_base'] = str(self.rate_to_base)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExchangeRate':
        data = dict(data)
        data['rate_to_base'] = Decimal(str(data['rate_to_base']))
        return super().from_dict(data)


class ExchangeRateBook:
    """Stored exchange rates keyed by upper-case currency code"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 base_currency: str = "SYP", rate_precision: int = 6,
                 amount_precision: int = 2):
        self.storage = storage
        self.audit_trail = audit_trail
        self.base_currency = base_currency.upper()
        self.rate_precision = rate_precision
        self.amount_precision = amount_precision
        self.table_name = "exchange_rates"
        self.logger = get_logger("teller_core.currency")

    def set_rate(self, ctx, currency_code: str, currency_name: str,
                 rate_to_base: Union[Decimal, int, str]) -> ExchangeRate:
        """
        Create or replace the rate for a currency.

        Args:
            ctx: RequestContext of the caller
            currency_code: Three-letter code
            currency_name: Display name
            rate_to_base: Base units per one unit of the currency

        Returns:
            Stored ExchangeRate
        """
        require(ctx.identity, Operation.MANAGE_EXCHANGE_RATES)

        code = normalize_currency_code(currency_code)
        if code == self.base_currency:
            raise ValidationError(f"{code} is the base currency", field="currency_code")
        rate = quantize_amount(to_decimal(rate_to_base, "rate_to_base"), self.rate_precision)
        if rate <= 0:
            raise ValidationError("Exchange rate must be positive", field="rate_to_base")

        now = datetime.now(timezone.utc)
        existing = self.get_rate(code)
        previous = existing.rate_to_base if existing else None
        record = ExchangeRate(
            id=existing.id if existing else str(uuid.uuid4()),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            currency_code=code,
            currency_name=(currency_name or "").strip() or code,
            rate_to_base=rate,
            last_updated_by=ctx.employee_id
        )
        self.storage.save(self.table_name, record.id, record.to_dict())

        log_action(
            self.logger, "info", f"Exchange rate for {code} set to {rate}",
            employee_id=ctx.employee_id, action="set_exchange_rate",
            resource=f"exchange_rate:{code}", correlation_id=ctx.correlation_id
        )
        self.audit_trail.log_committed_event(
            AuditEventType.EXCHANGE_RATE_UPDATED, "exchange_rate", code,
            metadata={"previous_rate": previous, "new_rate": rate},
            employee_id=ctx.employee_id, session_id=ctx.session_id
        )
        return record

    def get_rate(self, currency_code: str) -> Optional[ExchangeRate]:
        code = (currency_code or "").strip().upper()
        rows = self.storage.find(self.table_name, {"currency_code": code})
        return ExchangeRate.from_dict(rows[0]) if rows else None

    def list_rates(self) -> List[ExchangeRate]:
        rates = [ExchangeRate.from_dict(d) for d in self.storage.load_all(self.table_name)]
        return sorted(rates, key=lambda r: r.currency_code)

    def convert(self, amount: Union[Decimal, int, str], currency_code: str) -> Optional[Decimal]:
        """
        Express an amount held in ``currency_code`` in the base currency.

        Returns None when no rate is stored.
        """
        amount = to_decimal(amount)
        if (currency_code or "").strip().upper() == self.base_currency:
            return quantize_amount(amount, self.amount_precision)
        rate = self.get_rate(currency_code)
        if rate is None:
            return None
        return quantize_amount(amount * rate.rate_to_base, self.amount_precision)

    def require_rate(self, currency_code: str) -> ExchangeRate:
        rate = self.get_rate(currency_code)
        if rate is None:
            raise ExchangeRateNotFound(currency_code)
        return rate
