"""
Request and LLM output schemas (pydantic).
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

AssetType = Literal['stock', 'crypto', 'cash', 'other']
TransactionType = Literal['buy', 'sell', 'deposit', 'withdraw']


# Exchange exports that are not ISO 8601 (e.g. XTB)
FALLBACK_DATE_FORMATS = ('%d.%m.%Y %H:%M:%S', '%d.%m.%Y %H:%M', '%d.%m.%Y', '%m/%d/%Y')


def parse_date(value):
    """Parse YYYY-MM-DD or a full ISO 8601 timestamp (a trailing Z is allowed)."""
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in FALLBACK_DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        raise
    # Stored naive, in UTC
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


class TransactionPayload(BaseModel):
    """One transaction as submitted by the client form."""

    type: TransactionType
    symbol: str = Field(min_length=1, max_length=32)
    exchange: str
    instrument_type: AssetType
    amount: float = Field(gt=0)
    price: float = Field(ge=0)
    date: datetime
    notes: Optional[str] = None
    currency: str = Field(min_length=1, max_length=10)
    asset_name: str = Field(validation_alias=AliasChoices('asset_name', 'assetName'))

    @field_validator('date', mode='before')
    @classmethod
    def _parse_date(cls, value):
        return parse_date(value)

    @field_validator('symbol', 'currency')
    @classmethod
    def _upper(cls, value):
        return value.strip().upper()

    def to_model_fields(self):
        """Column values for a Transaction row."""
        return {
            'type': self.type,
            'asset_symbol': self.symbol,
            'asset_name': self.asset_name,
            'asset_type': self.instrument_type,
            'quantity': self.amount,
            'price': self.price,
            'date': self.date,
            'notes': self.notes,
            'currency': self.currency,
            'exchange': self.exchange,
        }


class TransactionsPayload(BaseModel):
    transactions: List[TransactionPayload]


class ParsedTransaction(BaseModel):
    """A transaction extracted from a broker statement."""

    model_config = ConfigDict(populate_by_name=True)

    asset_symbol: str = Field(validation_alias=AliasChoices('asset_symbol', 'assetSymbol'))
    asset_name: str = Field(validation_alias=AliasChoices('asset_name', 'assetName'))
    asset_type: AssetType = Field(validation_alias=AliasChoices('asset_type', 'assetType'))
    type: TransactionType
    quantity: float
    price: float
    date: str
    notes: Optional[str] = None
    currency: str
    exchange: str


class ParsedStatement(BaseModel):
    transactions: List[ParsedTransaction]


# Shown to the language model as the required output structure
STATEMENT_SCHEMA = """{
  "transactions": [
    {
      "asset_symbol": "string",
      "asset_name": "string",
      "asset_type": "stock" | "crypto" | "cash" | "other",
      "type": "buy" | "sell" | "deposit" | "withdraw",
      "quantity": number,
      "price": number,
      "date": "ISO 8601 date string",
      "notes": "string (optional)",
      "currency": "string",
      "exchange": "string"
    }
  ]
}"""
