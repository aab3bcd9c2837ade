"""
Market data client for Wealth Tracker.
Wraps Twelve Data (or Yahoo Finance when no Twelve Data key is set) for
symbol search, quotes and price history, plus a currency conversion API.
Every call is read through a cache keyed by its parameters.
"""

import json
import logging
from datetime import datetime, timedelta

import pandas as pd
import requests
import yfinance as yf

logger = logging.getLogger(__name__)

FX_API_URL = 'https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@{date}/v1/currencies/{base}.json'
YAHOO_SEARCH_URL = 'https://query1.finance.yahoo.com/v1/finance/search'

DEFAULT_INTERVAL = '1day'
DEFAULT_LOOKBACK_DAYS = 365
REQUEST_TIMEOUT = 10

# Provider instrument types -> internal asset types
INSTRUMENT_TYPES = {
    'common stock': 'stock',
    'preferred stock': 'stock',
    'etf': 'stock',
    'reit': 'stock',
    'american depositary receipt': 'stock',
    'depositary receipt': 'stock',
    'global depositary receipt': 'stock',
    'warrant': 'stock',
    'right': 'stock',
    'unit': 'stock',
    'closed-end fund': 'stock',
    'mutual fund': 'stock',
    'bond fund': 'stock',
    'trust': 'stock',
    'structured product': 'stock',
    'limited partnership': 'stock',
    'digital currency': 'crypto',
    'physical currency': 'cash',
}

YAHOO_QUOTE_TYPES = {
    'EQUITY': 'stock',
    'ETF': 'stock',
    'MUTUALFUND': 'stock',
    'CRYPTOCURRENCY': 'crypto',
    'CURRENCY': 'cash',
}

YAHOO_INTERVALS = {
    '1min': '1m',
    '5min': '5m',
    '15min': '15m',
    '30min': '30m',
    '1h': '1h',
    '1day': '1d',
    '1week': '1wk',
    '1month': '1mo',
}


class MarketDataError(Exception):
    """Raised when a market data or currency API call fails."""


def map_instrument_type(instrument_type):
    """Map a provider instrument type to stock, crypto, cash or other."""
    return INSTRUMENT_TYPES.get((instrument_type or '').strip().lower(), 'other')


class MarketDataProvider:
    """Base provider: read-through caching and currency conversion."""

    def __init__(self, cache=None, cache_timeout=None):
        self.cache = cache
        self.cache_timeout = cache_timeout
        self.session = requests.Session()

    def _cached(self, key, fetch):
        """Return the cached value for key, or fetch and store it."""
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug('Cache hit for key: %s', key)
                return cached

        value = fetch()

        if self.cache is not None and value is not None:
            self.cache.set(key, value, timeout=self.cache_timeout)
        return value

    def _get_json(self, url, params=None, headers=None):
        """GET a JSON document, raising MarketDataError on failure."""
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise MarketDataError(f'Request to {url} failed: {e}') from e

        if not response.ok:
            logger.warning('Market data error response: %s %s (%s)', response.status_code, response.reason, url)
            raise MarketDataError(f'Request failed: {response.status_code} {response.reason}')

        try:
            return response.json()
        except ValueError as e:
            raise MarketDataError(f'Invalid JSON from {url}') from e

    def search_symbols(self, query):
        raise NotImplementedError

    def get_quote(self, symbol):
        raise NotImplementedError

    def get_historical_prices(self, symbol, exchange=None, interval=DEFAULT_INTERVAL,
                              start_date=None, end_date=None, limit=None):
        raise NotImplementedError

    def get_exchange_rate(self, from_currency, to_currency, date=None):
        """
        Get the conversion rate from one currency to another.

        Uses the fawazahmed0 currency API, which publishes one JSON document
        per base currency and day ('latest' when no date is given).
        """
        base = (from_currency or '').lower()
        target = (to_currency or '').lower()
        if not base or not target:
            raise MarketDataError('Both currencies are required')
        if base == target:
            return 1.0

        date_part = (date or 'latest')[:10]
        key = f'fx:{base}:{target}:{date_part}'

        def fetch():
            url = FX_API_URL.format(date=date_part, base=base)
            result = self._get_json(url)
            rate = (result.get(base) or {}).get(target) if isinstance(result, dict) else None
            if not isinstance(rate, (int, float)) or isinstance(rate, bool) or not rate:
                logger.warning('Invalid exchange rate result for %s/%s on %s', base, target, date_part)
                raise MarketDataError(
                    f'Invalid exchange rate response for {from_currency}/{to_currency} on {date_part}'
                )
            return float(rate)

        return self._cached(key, fetch)


def _date_range(start_date, end_date):
    """Default end to today and start to DEFAULT_LOOKBACK_DAYS before end."""
    if not end_date:
        end_date = datetime.utcnow().strftime('%Y-%m-%d')
    if not start_date:
        end = datetime.strptime(end_date[:10], '%Y-%m-%d')
        start_date = (end - timedelta(days=DEFAULT_LOOKBACK_DAYS)).strftime('%Y-%m-%d')
    return start_date[:10], end_date[:10]


def _to_float(value):
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class TwelveDataProvider(MarketDataProvider):
    """Market data from the Twelve Data REST API."""

    base_url = 'https://api.twelvedata.com'

    def __init__(self, api_key, cache=None, cache_timeout=None):
        if not api_key:
            raise ValueError('Twelve Data API key not configured')
        super().__init__(cache=cache, cache_timeout=cache_timeout)
        self.api_key = api_key

    def search_symbols(self, query):
        """Search instruments by symbol or ISIN."""
        query = (query or '').strip()
        if len(query) < 2:
            return []

        def fetch():
            result = self._get_json(f'{self.base_url}/symbol_search',
                                    params={'symbol': query, 'apikey': self.api_key})
            return [
                {
                    'symbol': item.get('symbol'),
                    'name': item.get('instrument_name'),
                    'exchange': item.get('exchange') or None,
                    'type': map_instrument_type(item.get('instrument_type')),
                    'currency': item.get('currency'),
                    'country': item.get('country'),
                    'mic_code': item.get('mic_code'),
                }
                for item in result.get('data') or []
            ]

        return self._cached(f'search:{query.upper()}', fetch)

    def get_quote(self, symbol):
        """Get the latest quote for a symbol."""
        def fetch():
            result = self._get_json(f'{self.base_url}/quote',
                                    params={'symbol': symbol, 'apikey': self.api_key})
            if not result or not result.get('symbol') or not result.get('close', result.get('price')):
                logger.warning('Invalid quote result for %s: %s', symbol, result)
                raise MarketDataError(f'Invalid quote response for symbol: {symbol}')

            price = _to_float(result.get('price', result.get('close')))
            previous_close = _to_float(result.get('previous_close'))
            return {
                'symbol': result.get('symbol'),
                'name': result.get('name') or symbol,
                'price': price,
                'previous_close': previous_close,
                'change': _to_float(result.get('change')),
                'change_percent': _to_float(result.get('percent_change')),
                'currency': result.get('currency'),
                'exchange': result.get('exchange'),
            }

        return self._cached(f'quote:{symbol}', fetch)

    def get_historical_prices(self, symbol, exchange=None, interval=DEFAULT_INTERVAL,
                              start_date=None, end_date=None, limit=None):
        """Get OHLCV history for a symbol, oldest first."""
        options = {
            'exchange': exchange,
            'interval': interval,
            'start_date': start_date,
            'end_date': end_date,
            'limit': limit,
        }
        key = f'historical:{symbol}:{json.dumps(options, sort_keys=True)}'

        def fetch():
            start, end = _date_range(start_date, end_date)
            params = {
                'symbol': symbol,
                'apikey': self.api_key,
                'interval': interval or DEFAULT_INTERVAL,
                'start_date': start,
                'end_date': end,
            }
            if exchange:
                params['exchange'] = exchange
            if limit:
                params['outputsize'] = limit

            result = self._get_json(f'{self.base_url}/time_series', params=params)
            if not result or 'values' not in result:
                logger.warning('Invalid historical prices result for %s: %s', symbol, result)
                raise MarketDataError(f'Invalid historical prices response for symbol: {symbol}')

            prices = [
                {
                    'datetime': item.get('datetime'),
                    'open': _to_float(item.get('open')),
                    'high': _to_float(item.get('high')),
                    'low': _to_float(item.get('low')),
                    'close': _to_float(item.get('close')),
                    'volume': _to_float(item.get('volume')),
                }
                for item in result['values']
            ]
            # Twelve Data returns newest first
            prices.sort(key=lambda p: p['datetime'] or '')
            return prices

        return self._cached(key, fetch)


class YahooFinanceProvider(MarketDataProvider):
    """Market data from Yahoo Finance via yfinance."""

    def search_symbols(self, query):
        """Search stocks, ETFs and crypto by name or symbol."""
        query = (query or '').strip()
        if len(query) < 2:
            return []

        def fetch():
            params = {
                'q': query,
                'quotesCount': 8,
                'newsCount': 0,
                'enableFuzzyQuery': True,
                'quotesQueryId': 'tss_match_phrase_query'
            }
            headers = {
                'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'
            }
            data = self._get_json(YAHOO_SEARCH_URL, params=params, headers=headers)

            results = []
            for quote in data.get('quotes', []):
                quote_type = quote.get('quoteType', '')
                if quote_type not in YAHOO_QUOTE_TYPES:
                    continue
                results.append({
                    'symbol': quote.get('symbol', ''),
                    'name': quote.get('shortname') or quote.get('longname', ''),
                    'exchange': quote.get('exchange') or None,
                    'type': YAHOO_QUOTE_TYPES[quote_type],
                    'currency': quote.get('currency'),
                })
            return results

        return self._cached(f'search:{query.upper()}', fetch)

    def get_quote(self, symbol):
        """Get the latest quote from the last two daily closes."""
        symbol = symbol.upper().strip()

        def fetch():
            ticker = yf.Ticker(symbol)
            hist = ticker.history(period='5d')
            if hist.empty:
                raise MarketDataError(f'Invalid quote response for symbol: {symbol}')

            current = float(hist['Close'].iloc[-1])
            previous = float(hist['Close'].iloc[-2]) if len(hist) >= 2 else current
            change = current - previous
            info = ticker.info or {}
            return {
                'symbol': symbol,
                'name': info.get('shortName') or info.get('longName') or symbol,
                'price': round(current, 4),
                'previous_close': round(previous, 4),
                'change': round(change, 4),
                'change_percent': round(change / previous * 100, 2) if previous > 0 else 0,
                'currency': info.get('currency', 'USD'),
                'exchange': info.get('exchange'),
            }

        return self._cached(f'quote:{symbol}', fetch)

    def get_historical_prices(self, symbol, exchange=None, interval=DEFAULT_INTERVAL,
                              start_date=None, end_date=None, limit=None):
        """Get OHLCV history for a symbol, oldest first."""
        options = {
            'exchange': exchange,
            'interval': interval,
            'start_date': start_date,
            'end_date': end_date,
            'limit': limit,
        }
        key = f'historical:{symbol}:{json.dumps(options, sort_keys=True)}'

        def fetch():
            start, end = _date_range(start_date, end_date)
            # yfinance treats end as exclusive
            end_exclusive = (datetime.strptime(end, '%Y-%m-%d') + timedelta(days=1)).strftime('%Y-%m-%d')
            hist = yf.Ticker(symbol).history(
                start=start,
                end=end_exclusive,
                interval=YAHOO_INTERVALS.get(interval or DEFAULT_INTERVAL, '1d'),
                auto_adjust=False,
            )
            if hist is None or hist.empty:
                raise MarketDataError(f'Invalid historical prices response for symbol: {symbol}')

            hist = hist.sort_index()
            if limit:
                hist = hist.tail(limit)

            prices = []
            for index, row in hist.iterrows():
                prices.append({
                    'datetime': index.strftime('%Y-%m-%d'),
                    'open': float(row['Open']) if pd.notna(row['Open']) else None,
                    'high': float(row['High']) if pd.notna(row['High']) else None,
                    'low': float(row['Low']) if pd.notna(row['Low']) else None,
                    'close': float(row['Close']) if pd.notna(row['Close']) else None,
                    'volume': float(row['Volume']) if pd.notna(row.get('Volume')) else None,
                })
            return prices

        return self._cached(key, fetch)


def build_provider(config, cache=None):
    """Pick Twelve Data when a key is configured, Yahoo Finance otherwise."""
    timeout = config.get('CACHE_DEFAULT_TIMEOUT')
    api_key = config.get('TWELVEDATA_API_KEY')
    if api_key:
        logger.info('Using Twelve Data market data provider')
        return TwelveDataProvider(api_key, cache=cache, cache_timeout=timeout)

    logger.info('TWELVEDATA_API_KEY not set, using Yahoo Finance market data provider')
    return YahooFinanceProvider(cache=cache, cache_timeout=timeout)
