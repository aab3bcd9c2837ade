"""
Column mappings for exchange CSV exports (Binance, Coinbase, XTB).
Normalizes rows into {date, type, asset, amount, price, fee} dicts.
"""

import csv
import io

SUPPORTED_TYPES = ('buy', 'sell', 'deposit', 'withdraw')

XTB_TYPE_MAP = {
    'buy': 'buy',
    'sell': 'sell',
    'deposit': 'deposit',
    'withdrawal': 'withdraw',
    'withdraw': 'withdraw',
}


def _field(row, *names):
    """First non-empty value for any of the column names (or their lower-case form)."""
    for name in names:
        for key in (name, name.lower()):
            value = row.get(key)
            if value is not None and str(value).strip() != '':
                return value
    return None


def _number(value):
    """Parse an exported number, tolerating thousands separators and blanks."""
    if value is None:
        return 0.0
    try:
        return float(str(value).replace(',', '').strip() or 0)
    except ValueError:
        return 0.0


def _text(value):
    return '' if value is None else str(value).strip()


def map_binance(rows):
    return [
        {
            'date': _text(_field(row, 'Date(UTC)')),
            'type': _text(_field(row, 'Type')).lower(),
            'asset': _text(_field(row, 'Asset')),
            'amount': _number(_field(row, 'Amount')),
            'price': None,
            'fee': _number(_field(row, 'Fee')),
        }
        for row in rows
    ]


def map_coinbase(rows):
    return [
        {
            'date': _text(_field(row, 'Timestamp')),
            'type': _text(_field(row, 'Transaction Type')).lower(),
            'asset': _text(_field(row, 'Asset')),
            'amount': _number(_field(row, 'Quantity Transacted')),
            'price': _number(_field(row, 'Spot Price at Transaction')),
            'fee': _number(_field(row, 'Total Fee')),
        }
        for row in rows
    ]


def _map_xtb_row(row):
    raw_type = _text(_field(row, 'Type')).lower()
    return {
        'date': _text(_field(row, 'Open time')),
        'type': XTB_TYPE_MAP.get(raw_type, raw_type),
        'asset': _text(_field(row, 'Symbol')),
        'amount': _number(_field(row, 'Volume')),
        'price': _number(_field(row, 'Open price')),
        'fee': _number(_field(row, 'Commission')),
    }


def map_xtb(rows):
    """
    XTB reports put a preamble above the real header, so the header row is
    located by its values. Without one, rows are mapped by their own keys.
    """
    header_idx = None
    for i, row in enumerate(rows):
        values = [_text(v) for v in row.values()]
        if 'Position' in values and 'Symbol' in values and 'Open time' in values:
            header_idx = i
            break

    if header_idx is None or header_idx + 1 >= len(rows):
        mapped = [
            _map_xtb_row(row) for row in rows
            if _field(row, 'Position') and _field(row, 'Symbol')
            and _text(_field(row, 'Position')).replace('.', '', 1).isdigit()
        ]
    else:
        header = [_text(v) for v in rows[header_idx].values()]
        mapped = []
        for row in rows[header_idx + 1:]:
            values = list(row.values())
            if not any(_text(v) for v in values):
                continue
            mapped.append(_map_xtb_row(dict(zip(header, values))))

    return [tx for tx in mapped if tx['type'] in SUPPORTED_TYPES]


EXCHANGES = {
    'binance': {
        'label': 'Binance',
        'required_columns': ['Date(UTC)', 'Type', 'Asset', 'Amount', 'Fee'],
        'map': map_binance,
    },
    'coinbase': {
        'label': 'Coinbase',
        'required_columns': ['Timestamp', 'Transaction Type', 'Asset', 'Quantity Transacted'],
        'map': map_coinbase,
    },
    'xtb': {
        'label': 'XTB',
        'required_columns': ['Position', 'Symbol', 'Type', 'Volume', 'Open time', 'Open price', 'Commission'],
        'map': map_xtb,
    },
}


def get_exchange_mappings():
    """List supported exchanges."""
    return [
        {'value': value, 'label': ex['label'], 'required_columns': ex['required_columns']}
        for value, ex in EXCHANGES.items()
    ]


def map_exchange_transactions(exchange, rows):
    """Normalize raw CSV rows for an exchange; unknown exchanges give []."""
    found = EXCHANGES.get((exchange or '').lower())
    if not found:
        return []
    return found['map'](rows)


def get_required_columns(exchange):
    found = EXCHANGES.get((exchange or '').lower())
    return found['required_columns'] if found else None


def read_csv_rows(content, required_columns=None):
    """
    Decode CSV bytes into a list of row dicts.

    The header is the first line holding every required column (compared
    case-insensitively), so preamble lines above it are skipped. Without
    required columns, or when no line matches, the first line is the header.
    """
    if isinstance(content, bytes):
        content = content.decode('utf-8-sig', errors='ignore')
    lines = list(csv.reader(io.StringIO(content)))
    if not lines:
        return []

    header_idx = 0
    if required_columns:
        wanted = {col.lower() for col in required_columns}
        for i, line in enumerate(lines):
            if wanted <= {cell.strip().lower() for cell in line}:
                header_idx = i
                break

    header = [cell.strip() for cell in lines[header_idx]]
    return [
        dict(zip(header, line))
        for line in lines[header_idx + 1:]
        if any(cell.strip() for cell in line)
    ]
