"""Tests for holdings aggregation and TWR/CAGR math."""

import pytest

from performance import (
    aggregate_holdings, align_flows, cagr, cash_flows, convert_prices, signed_quantity,
    summarize, time_weighted_return, transaction_history, value_series
)


def tx(symbol, tx_type, quantity, price, date, asset_type='stock', currency='USD'):
    return {
        'asset_symbol': symbol,
        'asset_name': symbol,
        'asset_type': asset_type,
        'type': tx_type,
        'quantity': quantity,
        'price': price,
        'date': date,
        'currency': currency,
        'exchange': 'NASDAQ',
    }


def prices(*points):
    return [{'datetime': day, 'open': c, 'high': c, 'low': c, 'close': c} for day, c in points]


def test_signed_quantity():
    assert signed_quantity(tx('A', 'buy', 5, 1, '2024-01-01')) == 5
    assert signed_quantity(tx('A', 'deposit', 5, 1, '2024-01-01')) == 5
    assert signed_quantity(tx('A', 'sell', 5, 1, '2024-01-01')) == -5
    assert signed_quantity(tx('A', 'withdraw', 5, 1, '2024-01-01')) == -5


def test_aggregate_holdings_nets_quantities_and_tracks_invested():
    holdings = aggregate_holdings([
        tx('AAPL', 'buy', 10, 100, '2024-01-05'),
        tx('AAPL', 'buy', 5, 120, '2024-01-02'),
        tx('AAPL', 'sell', 3, 130, '2024-02-01'),
    ])

    assert len(holdings) == 1
    aapl = holdings[0]
    assert aapl['quantity'] == 12
    # Sells don't reduce money invested
    assert aapl['total_invested'] == 10 * 100 + 5 * 120
    assert aapl['first_date'] == '2024-01-02'
    assert [day for day, _ in aapl['quantity_changes']] == ['2024-01-02', '2024-01-05', '2024-02-01']


def test_aggregate_holdings_skips_closed_positions():
    holdings = aggregate_holdings([
        tx('AAPL', 'buy', 10, 100, '2024-01-01'),
        tx('AAPL', 'sell', 10, 110, '2024-01-10'),
        tx('MSFT', 'buy', 1, 300, '2024-01-01'),
        tx('TSLA', 'sell', 2, 200, '2024-01-01'),
    ])

    assert [h['asset_symbol'] for h in holdings] == ['MSFT']


def test_transaction_history_sorted_by_date():
    history = transaction_history([
        tx('B', 'buy', 1, 1, '2024-03-01T10:00:00'),
        tx('A', 'buy', 1, 1, '2024-01-01'),
    ])
    assert [h['date'] for h in history] == ['2024-01-01', '2024-03-01']


def test_convert_prices_leaves_points_without_rate():
    rates = {'2024-01-01': 2.0, '2024-01-02': None, '2024-01-03': 0}
    converted = convert_prices(prices(('2024-01-01', 10), ('2024-01-02', 10), ('2024-01-03', 10)), rates.get)

    assert [p['close'] for p in converted] == [20, 10, 10]
    assert converted[0]['open'] == 20


def test_value_series_uses_quantity_held_each_day():
    holdings = aggregate_holdings([
        tx('AAPL', 'buy', 10, 10, '2024-01-01'),
        tx('AAPL', 'buy', 5, 12, '2024-01-03'),
        tx('USD', 'deposit', 50, 1, '2024-01-01', asset_type='cash'),
    ])
    holdings[0]['historical_prices'] = prices(('2024-01-01', 10), ('2024-01-02', 11), ('2024-01-03', 12))

    series = value_series(holdings)

    assert series == [
        {'date': '2024-01-01', 'value': 150.0},
        {'date': '2024-01-02', 'value': 160.0},
        {'date': '2024-01-03', 'value': 230.0},
    ]


def test_value_series_starts_holding_at_first_price():
    holdings = aggregate_holdings([
        tx('A', 'buy', 1, 10, '2024-01-01'),
        tx('B', 'buy', 2, 10, '2024-01-01'),
    ])
    holdings[0]['historical_prices'] = prices(('2024-01-01', 10), ('2024-01-02', 12))
    holdings[1]['historical_prices'] = prices(('2024-01-02', 5))

    series = value_series(holdings)

    assert series == [
        {'date': '2024-01-01', 'value': 10.0},
        {'date': '2024-01-02', 'value': 22.0},
    ]


def test_value_series_carries_close_over_gaps():
    holdings = aggregate_holdings([
        tx('A', 'buy', 1, 10, '2024-01-01'),
        tx('B', 'buy', 2, 5, '2024-01-01'),
    ])
    holdings[0]['historical_prices'] = prices(('2024-01-01', 10), ('2024-01-02', 11), ('2024-01-03', 12))
    holdings[1]['historical_prices'] = prices(('2024-01-01', 5), ('2024-01-03', 7))

    series = value_series(holdings)

    assert [p['value'] for p in series] == [20.0, 21.0, 26.0]


def test_cash_flows_signs_and_order():
    flows = cash_flows([
        tx('A', 'sell', 1, 50, '2024-02-01'),
        tx('A', 'buy', 2, 10, '2024-01-01'),
        tx('USD', 'withdraw', 5, 1, '2024-03-01', asset_type='cash'),
    ])

    assert flows == [
        {'date': '2024-01-01', 'amount': 20, 'asset_symbol': 'A'},
        {'date': '2024-02-01', 'amount': -50, 'asset_symbol': 'A'},
        {'date': '2024-03-01', 'amount': -5, 'asset_symbol': 'USD'},
    ]


def test_cash_flows_converted_with_rate():
    flows = cash_flows([tx('A', 'buy', 2, 10, '2024-01-01', currency='EUR')],
                       rate_for=lambda currency, day: 1.5)
    assert flows[0]['amount'] == pytest.approx(30)


def test_twr_without_flows_chains_growth():
    series = [
        {'date': '2024-01-01', 'value': 100},
        {'date': '2024-01-02', 'value': 110},
        {'date': '2024-01-03', 'value': 121},
    ]
    assert time_weighted_return(series, []) == pytest.approx(0.21)


def test_twr_strips_out_deposits():
    series = [
        {'date': '2024-01-01', 'value': 100},
        {'date': '2024-01-02', 'value': 110},
        {'date': '2024-01-03', 'value': 160},
    ]
    flows = [
        {'date': '2024-01-01', 'amount': 100},
        {'date': '2024-01-03', 'amount': 50},
    ]
    # Day 3's jump is entirely the deposit
    assert time_weighted_return(series, flows) == pytest.approx(0.1)


def test_twr_skips_periods_starting_at_zero():
    series = [
        {'date': '2024-01-01', 'value': 0},
        {'date': '2024-01-02', 'value': 100},
        {'date': '2024-01-03', 'value': 110},
    ]
    flows = [{'date': '2024-01-02', 'amount': 100}]
    assert time_weighted_return(series, flows) == pytest.approx(0.1)


def test_twr_needs_two_points():
    assert time_weighted_return([], []) is None
    assert time_weighted_return([{'date': '2024-01-01', 'value': 1}], []) is None


def test_cagr_uses_net_invested_principal():
    series = [
        {'date': '2020-01-01', 'value': 90},
        {'date': '2021-01-01', 'value': 121},
    ]
    flows = [{'date': '2020-01-01', 'amount': 100}]

    expected = (121 / 100) ** (365.25 / 366) - 1
    assert cagr(series, flows) == pytest.approx(expected)


def test_cagr_falls_back_to_first_value():
    series = [
        {'date': '2020-01-01', 'value': 100},
        {'date': '2022-01-01', 'value': 121},
    ]
    flows = [{'date': '2020-06-01', 'amount': 50}, {'date': '2021-06-01', 'amount': -50}]

    expected = (121 / 100) ** (365.25 / 731) - 1
    assert cagr(series, flows) == pytest.approx(expected)


def test_cagr_undefined_cases():
    assert cagr([{'date': '2020-01-01', 'value': 100}], []) is None
    same_day = [{'date': '2020-01-01', 'value': 100}, {'date': '2020-01-01', 'value': 110}]
    assert cagr(same_day, []) is None
    zero_start = [{'date': '2020-01-01', 'value': 0}, {'date': '2021-01-01', 'value': 10}]
    assert cagr(zero_start, []) is None


def test_summarize_rounds_metrics():
    holdings = aggregate_holdings([tx('A', 'buy', 3, 10, '2024-01-01')])
    holdings[0]['historical_prices'] = prices(('2024-01-01', 10), ('2024-01-02', 11))

    summary = summarize(holdings, [])

    assert summary['performance'] == [
        {'date': '2024-01-01', 'value': 30.0},
        {'date': '2024-01-02', 'value': 33.0},
    ]
    assert summary['twr'] == 0.1
    assert summary['cagr'] is not None and summary['cagr'] > 0


def test_summarize_empty():
    assert summarize([], []) == {'performance': [], 'twr': None, 'cagr': None}


def test_align_flows_follows_first_priced_date():
    holdings = aggregate_holdings([
        tx('AAPL', 'buy', 1, 100, '2024-01-06'),
        tx('NOPE', 'buy', 1, 100, '2024-01-06'),
        tx('USD', 'deposit', 50, 1, '2024-01-01', asset_type='cash'),
    ])
    holdings[0]['historical_prices'] = prices(('2024-01-08', 100))
    flows = [
        {'date': '2024-01-06', 'amount': 100, 'asset_symbol': 'AAPL'},
        {'date': '2024-01-06', 'amount': 100, 'asset_symbol': 'NOPE'},
        {'date': '2024-01-01', 'amount': 50, 'asset_symbol': 'USD'},
        {'date': '2024-01-02', 'amount': 5},
    ]

    assert align_flows(holdings, flows) == [
        {'date': '2024-01-01', 'amount': 50, 'asset_symbol': 'USD'},
        {'date': '2024-01-02', 'amount': 5},
        {'date': '2024-01-08', 'amount': 100, 'asset_symbol': 'AAPL'},
    ]


def test_summarize_mixed_daily_and_weekday_prices():
    transactions = [
        tx('BTC', 'buy', 1, 1000, '2024-01-05', asset_type='crypto'),
        # Saturday purchase, first close on Monday
        tx('AAPL', 'buy', 10, 100, '2024-01-06'),
    ]
    holdings = aggregate_holdings(transactions)
    holdings[0]['historical_prices'] = prices(
        ('2024-01-05', 1000), ('2024-01-06', 1000), ('2024-01-07', 1000), ('2024-01-08', 1000)
    )
    holdings[1]['historical_prices'] = prices(('2024-01-08', 100))

    summary = summarize(holdings, cash_flows(transactions))

    assert [p['value'] for p in summary['performance']] == [1000.0, 1000.0, 1000.0, 2000.0]
    assert summary['twr'] == 0.0
    assert summary['cagr'] == 0.0


def test_summarize_partially_priced_series():
    transactions = [
        tx('A', 'buy', 1, 10, '2024-01-01'),
        tx('B', 'buy', 2, 10, '2024-01-01'),
    ]
    holdings = aggregate_holdings(transactions)
    holdings[0]['historical_prices'] = prices(('2024-01-01', 10), ('2024-01-02', 12))
    holdings[1]['historical_prices'] = prices(('2024-01-02', 10))

    summary = summarize(holdings, cash_flows(transactions))

    assert [p['value'] for p in summary['performance']] == [10.0, 32.0]
    # Only A's move from 10 to 12 is growth
    assert summary['twr'] == 0.2
    assert summary['cagr'] == pytest.approx((32 / 30) ** 365.25 - 1, rel=1e-6)


def test_summarize_ignores_unpriced_holding():
    transactions = [
        tx('AAPL', 'buy', 10, 100, '2024-01-02'),
        tx('UNKNOWN', 'buy', 10, 100, '2024-01-03'),
    ]
    holdings = aggregate_holdings(transactions)
    holdings[0]['historical_prices'] = prices(('2024-01-02', 100), ('2024-01-03', 100))

    summary = summarize(holdings, cash_flows(transactions))

    assert summary['twr'] == 0.0
    assert summary['cagr'] == 0.0
