"""Shared test fixtures for pytest.

Provides an app bound to an in-memory database, an authenticated client, and
a fake market data provider so no test talks to the network.
"""

import pytest

from app import create_app
from market_data import MarketDataError
from models import db


class FakeMarketData:
    """In-memory stand-in for a MarketDataProvider."""

    def __init__(self, prices=None, rates=None, quotes=None, symbols=None):
        self.prices = prices or {}
        self.rates = rates or {}
        self.quotes = quotes or {}
        self.symbols = symbols or []
        self.history_calls = []

    def search_symbols(self, query):
        if len(query) < 2:
            return []
        return [s for s in self.symbols if query.upper() in s['symbol']]

    def get_quote(self, symbol):
        if symbol not in self.quotes:
            raise MarketDataError(f'Invalid quote response for symbol: {symbol}')
        return self.quotes[symbol]

    def get_historical_prices(self, symbol, exchange=None, interval='1day',
                              start_date=None, end_date=None, limit=None):
        self.history_calls.append((symbol, start_date))
        if symbol not in self.prices:
            raise MarketDataError(f'Invalid historical prices response for symbol: {symbol}')
        return [
            {'datetime': day, 'open': close, 'high': close, 'low': close, 'close': close, 'volume': None}
            for day, close in self.prices[symbol]
            if start_date is None or day >= start_date
        ]

    def get_exchange_rate(self, from_currency, to_currency, date=None):
        if from_currency.upper() == to_currency.upper():
            return 1.0
        key = (from_currency.upper(), to_currency.upper())
        if key not in self.rates:
            raise MarketDataError(f'Invalid exchange rate response for {from_currency}/{to_currency}')
        return self.rates[key]


@pytest.fixture
def market():
    return FakeMarketData()


@pytest.fixture
def app(market):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'CACHE_TYPE': 'NullCache',
        'JWT_SECRET_KEY': 'test-secret-key-that-is-long-enough-for-hs256',
        'TWELVEDATA_API_KEY': None,
    })
    app.extensions['market_data'] = market

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def register(client, email='alice@example.com', password='correct-horse', **extra):
    payload = {'email': email, 'password': password, 'confirm_password': password}
    payload.update(extra)
    return client.post('/auth/register', json=payload)


@pytest.fixture
def auth_headers(client):
    response = register(client)
    token = response.get_json()['access_token']
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def portfolio_id(client, auth_headers):
    response = client.post('/portfolios', json={'name': 'Main'}, headers=auth_headers)
    return response.get_json()['portfolio']['id']
