"""
Dashboard assembly: holdings, valuation in the user's currency, and
performance, recomputed on every request.
"""

import logging

from market_data import MarketDataError
from performance import (
    aggregate_holdings, cash_flows, convert_prices, latest_close,
    summarize, transaction_history
)

logger = logging.getLogger(__name__)


class RateLookup:
    """
    Exchange rates into one target currency, memoized for a single request.

    A day without a published rate falls back to the latest rate; when that
    fails too the lookup returns None and callers leave amounts unconverted.
    """

    def __init__(self, provider, target_currency):
        self.provider = provider
        self.target = target_currency
        self._rates = {}

    def __call__(self, currency, day=None):
        if not currency or not self.target or currency.upper() == self.target.upper():
            return 1.0

        key = (currency.upper(), day)
        if key not in self._rates:
            self._rates[key] = self._fetch(currency, day)
        return self._rates[key]

    def _fetch(self, currency, day):
        try:
            return self.provider.get_exchange_rate(currency, self.target, day)
        except MarketDataError as e:
            if day is None:
                logger.warning('No exchange rate for %s/%s: %s', currency, self.target, e)
                return None
            logger.warning('No exchange rate for %s/%s on %s, using latest', currency, self.target, day)
            return self(currency, None)


def _value_holding(holding, provider, rates, currency):
    """Fetch, convert and value one holding in place."""
    if holding['asset_type'] == 'cash':
        rate = rates(holding['asset_currency'])
        holding['unit_price'] = rate if rate else 1.0
        holding['value'] = {
            'amount': holding['quantity'] * holding['unit_price'],
            'currency': currency if rate else holding['asset_currency'],
        }
        return

    try:
        prices = provider.get_historical_prices(holding['asset_symbol'], start_date=holding['first_date'])
    except MarketDataError as e:
        logger.warning('Failed to fetch prices for %s: %s', holding['asset_symbol'], e)
        holding['historical_prices'] = []
        holding['value'] = {'amount': 0.0, 'currency': holding['asset_currency']}
        return

    asset_currency = holding['asset_currency']
    if currency and asset_currency and asset_currency.upper() != currency.upper():
        prices = convert_prices(prices, lambda day: rates(asset_currency, day))

    holding['historical_prices'] = prices

    _, close = latest_close(holding)
    holding['value'] = {
        'amount': holding['quantity'] * close if close is not None else 0.0,
        'currency': currency or asset_currency,
    }


def build_dashboard(portfolios, transactions, currency, provider):
    """
    Build the dashboard payload.

    portfolios and transactions are dicts as produced by the models'
    to_dict(); currency is the user's preferred currency.
    """
    if not portfolios:
        return {
            'assets': [],
            'portfolios': [],
            'transactions': [],
            'performance': [],
            'twr': None,
            'cagr': None,
            'currency': currency,
        }

    holdings = aggregate_holdings(transactions)
    rates = RateLookup(provider, currency)

    for holding in holdings:
        _value_holding(holding, provider, rates, currency)

    # Holdings without prices are left out of the series, so their flows are too
    valued = {
        h['asset_symbol'] for h in holdings
        if h['asset_type'] == 'cash' or h['historical_prices']
    }
    flows = cash_flows([tx for tx in transactions if tx.get('asset_symbol') in valued], rate_for=rates)
    summary = summarize(holdings, flows)

    assets = []
    for holding in holdings:
        asset = {k: v for k, v in holding.items() if k not in ('quantity_changes', 'unit_price')}
        asset['value'] = dict(asset['value'], amount=round(asset['value']['amount'], 2))
        asset['total_invested'] = round(asset['total_invested'], 2)
        assets.append(asset)

    return {
        'assets': assets,
        'portfolios': [{'id': p['id'], 'name': p['name']} for p in portfolios],
        'transactions': transaction_history(transactions),
        'performance': summary['performance'],
        'twr': summary['twr'],
        'cagr': summary['cagr'],
        'currency': currency,
    }
