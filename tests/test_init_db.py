"""Tests for the database bootstrap script."""

from app import database_url_from_env
from init_db import create_app, init_database


def test_database_url_rewrites_postgres(monkeypatch):
    monkeypatch.setenv('DATABASE_URL', 'postgres://u:p@db:5432/wealth')
    assert database_url_from_env() == 'postgresql+psycopg://u:p@db:5432/wealth'

    monkeypatch.setenv('DATABASE_URL', 'postgresql://u:p@db:5432/wealth')
    assert database_url_from_env() == 'postgresql+psycopg://u:p@db:5432/wealth'


def test_database_url_default(monkeypatch):
    monkeypatch.delenv('DATABASE_URL', raising=False)
    assert database_url_from_env() == 'sqlite:///wealth_tracker.db'


def test_init_database_creates_tables(monkeypatch, capsys):
    monkeypatch.setenv('DATABASE_URL', 'sqlite://')

    init_database()

    out = capsys.readouterr().out
    for table in ('users', 'portfolios', 'transactions'):
        assert f'  - {table}' in out


def test_create_app_binds_database(monkeypatch):
    monkeypatch.setenv('DATABASE_URL', 'sqlite://')
    app = create_app()
    assert app.config['SQLALCHEMY_DATABASE_URI'] == 'sqlite://'
    assert 'sqlalchemy' in app.extensions
