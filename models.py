"""
Database models for Wealth Tracker.
Includes User, Portfolio, and Transaction models.
"""

from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ASSET_TYPES = ('stock', 'crypto', 'cash', 'other')
TRANSACTION_TYPES = ('buy', 'sell', 'deposit', 'withdraw')


class User(db.Model):
    """User account model."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255))
    preferred_currency = db.Column(db.String(10), nullable=False, default='USD')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    portfolios = db.relationship('Portfolio', backref='user', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        """Convert user to dictionary (excluding password)."""
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'preferred_currency': self.preferred_currency,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Portfolio(db.Model):
    """Portfolio grouping a user's transactions."""
    __tablename__ = 'portfolios'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = db.relationship(
        'Transaction', backref='portfolio', lazy=True,
        cascade='all, delete-orphan', order_by='Transaction.date'
    )

    def to_dict(self, include_transactions=False):
        """Convert portfolio to dictionary."""
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'description': self.description,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }
        if include_transactions:
            data['transactions'] = [t.to_dict() for t in self.transactions]
        return data


class Transaction(db.Model):
    """A single buy/sell/deposit/withdraw movement of one asset."""
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    portfolio_id = db.Column(db.Integer, db.ForeignKey('portfolios.id', ondelete='CASCADE'), nullable=False, index=True)
    asset_symbol = db.Column(db.String(32), nullable=False, index=True)
    asset_name = db.Column(db.String(255), nullable=False)
    asset_type = db.Column(db.String(16), nullable=False)  # stock, crypto, cash, other
    type = db.Column(db.String(16), nullable=False)  # buy, sell, deposit, withdraw
    quantity = db.Column(db.Float, nullable=False)
    price = db.Column(db.Float, nullable=False)
    date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    notes = db.Column(db.Text)
    currency = db.Column(db.String(10), nullable=False)  # e.g. USD, EUR, BTC
    exchange = db.Column(db.String(64), nullable=False)  # e.g. NASDAQ, NYSE, BINANCE
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        """Convert transaction to dictionary."""
        return {
            'id': self.id,
            'portfolio_id': self.portfolio_id,
            'asset_symbol': self.asset_symbol,
            'asset_name': self.asset_name,
            'asset_type': self.asset_type,
            'type': self.type,
            'quantity': self.quantity,
            'price': self.price,
            'date': self.date.strftime('%Y-%m-%d') if self.date else None,
            'notes': self.notes,
            'currency': self.currency,
            'exchange': self.exchange
        }
