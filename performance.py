"""
Portfolio aggregation and performance math.

Folds transactions into holdings, builds a value time series from historical
prices, and derives Time-Weighted Return and CAGR. Everything here works on
plain dicts (the shape produced by Transaction.to_dict() and the market data
providers) and does no I/O.
"""

from datetime import datetime

INFLOW_TYPES = ('buy', 'deposit')
OUTFLOW_TYPES = ('sell', 'withdraw', 'withdrawal')

DAYS_PER_YEAR = 365.25


def _day(value):
    """Normalize a date, datetime or ISO string to YYYY-MM-DD."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d')
    if hasattr(value, 'isoformat'):
        return value.isoformat()[:10]
    return str(value)[:10]


def signed_quantity(tx):
    """Quantity with its sign: buys/deposits add, sells/withdrawals remove."""
    quantity = tx.get('quantity', 0) or 0
    if tx.get('type') in INFLOW_TYPES:
        return quantity
    return -quantity


# =============================================================================
# HOLDINGS
# =============================================================================

def aggregate_holdings(transactions):
    """
    Aggregate transactions into per-asset holdings.

    Returns a list of holding dicts for assets with a positive net quantity,
    in order of first appearance. Each holding tracks the dated quantity
    changes so the value series can use the quantity held on each day.
    """
    holdings = {}

    for tx in transactions:
        symbol = tx.get('asset_symbol')
        if not symbol:
            continue

        day = _day(tx.get('date'))
        holding = holdings.get(symbol)
        if holding is None:
            holding = {
                'asset_symbol': symbol,
                'asset_name': tx.get('asset_name') or symbol,
                'asset_type': tx.get('asset_type') or 'other',
                'asset_currency': tx.get('currency'),
                'exchange': tx.get('exchange'),
                'quantity': 0.0,
                'total_invested': 0.0,
                'first_date': day,
                'quantity_changes': [],
                'historical_prices': [],
                'value': {'amount': 0.0, 'currency': tx.get('currency')},
            }
            holdings[symbol] = holding

        change = signed_quantity(tx)
        holding['quantity'] += change
        holding['quantity_changes'].append((day, change))

        # Only money put in counts as invested
        if tx.get('type') in INFLOW_TYPES:
            holding['total_invested'] += (tx.get('price', 0) or 0) * (tx.get('quantity', 0) or 0)

        if day and (holding['first_date'] is None or day < holding['first_date']):
            holding['first_date'] = day

    result = []
    for holding in holdings.values():
        if holding['quantity'] <= 0:
            continue
        holding['quantity_changes'].sort(key=lambda c: c[0] or '')
        result.append(holding)

    return result


def transaction_history(transactions):
    """Flatten transactions for display, oldest first."""
    history = []
    for tx in transactions:
        history.append({
            'id': tx.get('id'),
            'portfolio_id': tx.get('portfolio_id'),
            'asset_symbol': tx.get('asset_symbol'),
            'asset_name': tx.get('asset_name'),
            'asset_type': tx.get('asset_type'),
            'type': tx.get('type'),
            'quantity': tx.get('quantity'),
            'price': tx.get('price'),
            'currency': tx.get('currency'),
            'date': _day(tx.get('date')),
        })
    history.sort(key=lambda t: t['date'] or '')
    return history


def quantity_on(holding, day):
    """Quantity of a holding held at the end of the given day."""
    changes = holding.get('quantity_changes')
    if not changes:
        return holding.get('quantity', 0) or 0
    return sum(change for change_day, change in changes if change_day is None or change_day <= day)


# =============================================================================
# PRICES & VALUATION
# =============================================================================

def convert_prices(prices, rate_for_date):
    """
    Convert a price series with a per-date exchange rate.

    Points whose rate is missing or not positive are left unchanged.
    """
    converted = []
    for point in prices:
        rate = rate_for_date(_day(point.get('datetime')))
        if rate and rate > 0:
            point = dict(point)
            for field in ('open', 'high', 'low', 'close'):
                if point.get(field) is not None:
                    point[field] = point[field] * rate
        converted.append(point)
    return converted


def latest_close(holding):
    """Return (day, close) of the most recent price point, or (None, None)."""
    prices = holding.get('historical_prices') or []
    if not prices:
        return None, None
    latest = max(prices, key=lambda p: _day(p.get('datetime')) or '')
    return _day(latest.get('datetime')), latest.get('close')


def value_series(holdings):
    """
    Build the portfolio value over time.

    Dates are the union of every holding's price dates. On each date a holding
    contributes quantity-held-that-day x its latest close on or before that
    date, and nothing before its first price. Cash holdings have no market
    prices and contribute at their unit_price (1.0 unless set) on every date.
    """
    closes = {}
    dates = set()
    for holding in holdings:
        if holding.get('asset_type') == 'cash':
            continue
        by_day = {}
        for point in holding.get('historical_prices') or []:
            day = _day(point.get('datetime'))
            if day is None or point.get('close') is None:
                continue
            by_day[day] = point['close']
        closes[holding['asset_symbol']] = sorted(by_day.items())
        dates.update(by_day)

    last_close = {}
    positions = dict.fromkeys(closes, 0)

    series = []
    for day in sorted(dates):
        # Carry each close forward over days the asset doesn't trade
        for symbol, points in closes.items():
            pos = positions[symbol]
            while pos < len(points) and points[pos][0] <= day:
                last_close[symbol] = points[pos][1]
                pos += 1
            positions[symbol] = pos

        value = 0.0
        for holding in holdings:
            if holding.get('asset_type') == 'cash':
                price = holding.get('unit_price', 1.0)
            else:
                price = last_close.get(holding['asset_symbol'])
            if price is None:
                continue
            value += quantity_on(holding, day) * price
        series.append({'date': day, 'value': value})

    return series


# =============================================================================
# RETURNS
# =============================================================================

def cash_flows(transactions, rate_for=None):
    """
    External cash flows into the portfolio, sorted by date.

    Buys and deposits bring money in (positive), sells and withdrawals take
    it out (negative). rate_for(currency, day) may convert each amount into
    the valuation currency.
    """
    flows = []
    for tx in transactions:
        tx_type = tx.get('type')
        if tx_type not in INFLOW_TYPES and tx_type not in OUTFLOW_TYPES:
            continue

        day = _day(tx.get('date'))
        amount = (tx.get('price', 0) or 0) * (tx.get('quantity', 0) or 0)
        if rate_for is not None:
            rate = rate_for(tx.get('currency'), day)
            if rate and rate > 0:
                amount *= rate

        flows.append({
            'date': day,
            'amount': amount if tx_type in INFLOW_TYPES else -amount,
            'asset_symbol': tx.get('asset_symbol'),
        })

    flows.sort(key=lambda f: f['date'] or '')
    return flows


def align_flows(holdings, flows):
    """
    Match cash flows to the dates their assets enter the value series.

    A flow is moved forward to the first priced date of its asset, so money
    spent on an asset is never subtracted before the asset is counted.
    Flows of assets that never appear in the series are dropped. Flows
    without an asset_symbol are kept as they are.
    """
    first_priced = {}
    for holding in holdings:
        symbol = holding['asset_symbol']
        if holding.get('asset_type') == 'cash':
            first_priced[symbol] = None
            continue
        days = [
            _day(p.get('datetime')) for p in holding.get('historical_prices') or []
            if p.get('datetime') and p.get('close') is not None
        ]
        if days:
            first_priced[symbol] = min(days)

    aligned = []
    for flow in flows:
        symbol = flow.get('asset_symbol')
        if symbol is not None:
            if symbol not in first_priced:
                continue
            start = first_priced[symbol]
            if start and flow['date'] and flow['date'] < start:
                flow = dict(flow, date=start)
        aligned.append(flow)

    aligned.sort(key=lambda f: f['date'] or '')
    return aligned


def time_weighted_return(series, flows):
    """
    Chain sub-period returns between consecutive valuation dates.

    Each sub-period return strips out the net flow dated after the previous
    valuation and up to the current one. Flows on or before the first
    valuation are already part of the starting value. Sub-periods starting
    from a zero value are skipped.
    """
    if len(series) < 2:
        return None

    product = 1.0
    prev_date = series[0]['date']
    prev_value = series[0]['value']

    idx = 0
    while idx < len(flows) and flows[idx]['date'] <= prev_date:
        idx += 1

    for point in series[1:]:
        net_flow = 0.0
        while idx < len(flows) and flows[idx]['date'] <= point['date']:
            net_flow += flows[idx]['amount']
            idx += 1

        if prev_value != 0:
            product *= 1 + (point['value'] - net_flow - prev_value) / prev_value

        prev_date = point['date']
        prev_value = point['value']

    return product - 1


def years_between(start, end):
    """Elapsed years between two YYYY-MM-DD dates."""
    start_dt = datetime.strptime(start, '%Y-%m-%d')
    end_dt = datetime.strptime(end, '%Y-%m-%d')
    return (end_dt - start_dt).total_seconds() / (DAYS_PER_YEAR * 24 * 60 * 60)


def cagr(series, flows):
    """
    Compound annual growth from net invested principal to the final value.

    The principal is the absolute net cash flow, or the first value when
    flows net to zero.
    """
    if len(series) < 2:
        return None

    first = series[0]
    last = series[-1]
    years = years_between(first['date'], last['date'])

    net_invested = sum(f['amount'] for f in flows)
    principal = abs(net_invested) if abs(net_invested) > 0 else first['value']

    if principal <= 0 or years <= 0 or last['value'] < 0:
        return None

    return (last['value'] / principal) ** (1 / years) - 1


def summarize(holdings, flows):
    """Value series plus rounded TWR and CAGR."""
    series = value_series(holdings)
    flows = align_flows(holdings, flows)
    twr = time_weighted_return(series, flows)
    growth = cagr(series, flows)

    return {
        'performance': [{'date': p['date'], 'value': round(p['value'], 2)} for p in series],
        'twr': round(twr, 4) if twr is not None else None,
        'cagr': round(growth, 4) if growth is not None else None,
    }
