"""
Wealth Tracker API
Personal portfolio tracking: accounts, portfolios and transactions, AI-assisted
broker statement import, and a dashboard with holdings, valuation in the
user's currency, Time-Weighted Return and CAGR.
"""

import logging
import os
import re
from datetime import timedelta

import bcrypt
from flask import Blueprint, Flask, current_app, jsonify, request
from flask_caching import Cache
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager, create_access_token, get_jwt_identity, jwt_required,
    set_access_cookies, unset_jwt_cookies
)
from pydantic import ValidationError

from broker_import import (
    OllamaClient, StatementImportError, parse_broker_file,
    transactions_from_exchange_csv, validate_file, file_extension
)
from dashboard import build_dashboard
from exchange_mapping import get_exchange_mappings
from market_data import MarketDataError, build_provider
from models import db, User, Portfolio, Transaction
from schemas import TransactionsPayload

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
CURRENCY_PATTERN = re.compile(r'^[A-Za-z]{3,4}$')
MIN_PASSWORD_LENGTH = 8

jwt = JWTManager()
cache = Cache()
api = Blueprint('api', __name__)


def database_url_from_env():
    """Read DATABASE_URL, rewriting Postgres URLs for the psycopg driver."""
    database_url = os.environ.get('DATABASE_URL', 'sqlite:///wealth_tracker.db')
    # Handle Render's postgres:// URL (SQLAlchemy requires postgresql+psycopg://)
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql+psycopg://', 1)
    elif database_url.startswith('postgresql://'):
        database_url = database_url.replace('postgresql://', 'postgresql+psycopg://', 1)
    return database_url


def create_app(test_config=None):
    """Create and configure the Flask app."""
    app = Flask(__name__)

    # Database configuration
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url_from_env()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    # JWT configuration: Bearer header or httpOnly cookie
    app.config['JWT_SECRET_KEY'] = os.environ.get('JWT_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(days=7)
    app.config['JWT_TOKEN_LOCATION'] = ['headers', 'cookies']
    app.config['JWT_ACCESS_COOKIE_NAME'] = 'token'
    app.config['JWT_COOKIE_SAMESITE'] = 'Lax'
    app.config['JWT_COOKIE_SECURE'] = os.environ.get('JWT_COOKIE_SECURE', 'false').lower() == 'true'
    app.config['JWT_COOKIE_CSRF_PROTECT'] = False

    # Market data cache
    app.config['CACHE_TYPE'] = os.environ.get('CACHE_TYPE', 'FileSystemCache')
    app.config['CACHE_DIR'] = os.environ.get('CACHE_DIR', './cache')
    app.config['CACHE_DEFAULT_TIMEOUT'] = int(os.environ.get('CACHE_DEFAULT_TIMEOUT', 60 * 60))

    # External services
    app.config['TWELVEDATA_API_KEY'] = os.environ.get('TWELVEDATA_API_KEY')
    app.config['TIKA_URL'] = os.environ.get('TIKA_URL', 'http://tika:9998/tika')
    app.config['OLLAMA_URL'] = os.environ.get('OLLAMA_URL', 'http://localhost:11434')
    app.config['OLLAMA_MODEL'] = os.environ.get('OLLAMA_MODEL', 'gemma3n:e2b')
    app.config['CORS_ORIGINS'] = os.environ.get('CORS_ORIGINS', '*')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Initialize extensions
    db.init_app(app)
    jwt.init_app(app)
    cache.init_app(app)
    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'])

    app.extensions['market_data'] = build_provider(app.config, cache)
    app.extensions['statement_llm'] = OllamaClient(
        base_url=app.config['OLLAMA_URL'],
        model=app.config['OLLAMA_MODEL']
    )

    app.register_blueprint(api)

    # Create tables on startup if they don't exist
    with app.app_context():
        db.create_all()

    return app


# =============================================================================
# AUTH HELPERS
# =============================================================================

def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def check_password(password, password_hash):
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def issue_token(user):
    return create_access_token(identity=str(user.id), additional_claims={'email': user.email})


def current_user_id():
    return int(get_jwt_identity())


def json_body():
    """The request's JSON body when it is an object, else None."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def market_data():
    return current_app.extensions['market_data']


def owned_portfolio(portfolio_id, user_id):
    return Portfolio.query.filter_by(id=portfolio_id, user_id=user_id).first()


@jwt.unauthorized_loader
def missing_token(reason):
    return jsonify({'error': 'Unauthorized'}), 401


@jwt.invalid_token_loader
def invalid_token(reason):
    return jsonify({'error': 'Invalid or expired token'}), 401


@jwt.expired_token_loader
def expired_token(jwt_header, jwt_payload):
    return jsonify({'error': 'Invalid or expired token'}), 401


@api.route('/health', methods=['GET'])
def health():
    """Health check endpoint."""
    return jsonify({'status': 'ok'})


# =============================================================================
# AUTHENTICATION ENDPOINTS
# =============================================================================

@api.route('/auth/register', methods=['POST'])
def register():
    """Register a new user account."""
    try:
        data = json_body()

        if not data:
            return jsonify({'error': 'No data provided'}), 400

        email = (data.get('email') or '').strip().lower()
        password = data.get('password') or ''
        confirm_password = data.get('confirm_password') or ''
        name = (data.get('name') or '').strip()

        # Validation
        if not email or not password or not confirm_password:
            return jsonify({'error': 'All fields are required'}), 400

        if not EMAIL_PATTERN.match(email):
            return jsonify({'error': 'Invalid email address'}), 400

        if len(password) < MIN_PASSWORD_LENGTH:
            return jsonify({'error': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}), 400

        if password != confirm_password:
            return jsonify({'error': 'Passwords do not match'}), 400

        # Check if user already exists
        if User.query.filter_by(email=email).first():
            return jsonify({'error': 'Email already registered'}), 409

        user = User(
            email=email,
            password_hash=hash_password(password),
            name=name or None
        )
        db.session.add(user)
        db.session.commit()

        logger.info('Registered user %s', user.id)

        return jsonify({
            'message': 'Account created successfully',
            'user': user.to_dict(),
            'access_token': issue_token(user)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.exception('Registration failed')
        return jsonify({'error': f'Registration failed: {str(e)}'}), 500


@api.route('/auth/login', methods=['POST'])
def login():
    """Log in and get a JWT, also set as an httpOnly cookie."""
    try:
        data = json_body()

        if not data:
            return jsonify({'error': 'No data provided'}), 400

        email = (data.get('email') or '').strip().lower()
        password = data.get('password') or ''

        if not email or not password:
            return jsonify({'error': 'Email and password are required'}), 400

        user = User.query.filter_by(email=email).first()

        if not user or not check_password(password, user.password_hash):
            return jsonify({'error': 'Invalid email or password'}), 401

        access_token = issue_token(user)

        response = jsonify({
            'message': 'Login successful',
            'user': user.to_dict(),
            'access_token': access_token
        })
        set_access_cookies(response, access_token)
        return response

    except Exception as e:
        logger.exception('Login failed')
        return jsonify({'error': f'Login failed: {str(e)}'}), 500


@api.route('/auth/logout', methods=['POST'])
def logout():
    """Clear the auth cookie."""
    response = jsonify({'message': 'Logged out'})
    unset_jwt_cookies(response)
    return response


# =============================================================================
# USER ENDPOINTS
# =============================================================================

@api.route('/user/me', methods=['GET'])
@jwt_required()
def get_current_user():
    """Get the current authenticated user."""
    try:
        user = db.session.get(User, current_user_id())

        if not user:
            return jsonify({'error': 'User not found'}), 404

        return jsonify({'user': user.to_dict()})

    except Exception as e:
        return jsonify({'error': f'Failed to get user: {str(e)}'}), 500


@api.route('/user/currency', methods=['PATCH'])
@jwt_required()
def update_currency():
    """Set the currency the dashboard values holdings in."""
    try:
        data = json_body() or {}
        currency = data.get('preferred_currency')

        if not isinstance(currency, str) or not CURRENCY_PATTERN.match(currency.strip()):
            return jsonify({'error': 'Invalid currency'}), 400

        user = db.session.get(User, current_user_id())
        if not user:
            return jsonify({'error': 'User not found'}), 404

        user.preferred_currency = currency.strip().upper()
        db.session.commit()

        return jsonify({'success': True, 'preferred_currency': user.preferred_currency})

    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'Failed to update currency: {str(e)}'}), 500


# =============================================================================
# PORTFOLIO ENDPOINTS
# =============================================================================

@api.route('/portfolios', methods=['GET'])
@jwt_required()
def list_portfolios():
    """List all portfolios for the current user."""
    try:
        portfolios = Portfolio.query.filter_by(user_id=current_user_id())\
            .order_by(Portfolio.created_at.desc(), Portfolio.id.desc())\
            .all()

        return jsonify({
            'portfolios': [p.to_dict() for p in portfolios],
            'count': len(portfolios)
        })

    except Exception as e:
        return jsonify({'error': f'Failed to list portfolios: {str(e)}'}), 500


@api.route('/portfolios', methods=['POST'])
@jwt_required()
def create_portfolio():
    """Create a new portfolio."""
    try:
        data = json_body()

        if not data:
            return jsonify({'error': 'No data provided'}), 400

        name = (data.get('name') or '').strip()
        if not name:
            return jsonify({'error': 'Name is required'}), 400

        portfolio = Portfolio(
            user_id=current_user_id(),
            name=name,
            description=(data.get('description') or '').strip() or None
        )
        db.session.add(portfolio)
        db.session.commit()

        return jsonify({
            'message': 'Portfolio created successfully',
            'portfolio': portfolio.to_dict()
        }), 201

    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'Failed to create portfolio: {str(e)}'}), 500


@api.route('/portfolios/<int:portfolio_id>', methods=['GET'])
@jwt_required()
def get_portfolio(portfolio_id):
    """Get a specific portfolio with its transactions."""
    try:
        portfolio = owned_portfolio(portfolio_id, current_user_id())

        if not portfolio:
            return jsonify({'error': 'Portfolio not found'}), 404

        return jsonify({'portfolio': portfolio.to_dict(include_transactions=True)})

    except Exception as e:
        return jsonify({'error': f'Failed to get portfolio: {str(e)}'}), 500


@api.route('/portfolios/<int:portfolio_id>', methods=['PUT'])
@jwt_required()
def update_portfolio(portfolio_id):
    """Update a portfolio's name or description."""
    try:
        data = json_body()

        if not data:
            return jsonify({'error': 'No data provided'}), 400

        portfolio = owned_portfolio(portfolio_id, current_user_id())

        if not portfolio:
            return jsonify({'error': 'Portfolio not found'}), 404

        if 'name' in data:
            name = (data['name'] or '').strip()
            if name:
                portfolio.name = name

        if 'description' in data:
            portfolio.description = (data['description'] or '').strip() or None

        db.session.commit()

        return jsonify({
            'message': 'Portfolio updated successfully',
            'portfolio': portfolio.to_dict()
        })

    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'Failed to update portfolio: {str(e)}'}), 500


@api.route('/portfolios/<int:portfolio_id>', methods=['DELETE'])
@jwt_required()
def delete_portfolio(portfolio_id):
    """Delete a portfolio and its transactions."""
    try:
        portfolio = owned_portfolio(portfolio_id, current_user_id())

        if not portfolio:
            return jsonify({'error': 'Portfolio not found'}), 404

        db.session.delete(portfolio)
        db.session.commit()

        return jsonify({'message': 'Portfolio deleted successfully'})

    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'Failed to delete portfolio: {str(e)}'}), 500


# =============================================================================
# TRANSACTION ENDPOINTS
# =============================================================================

@api.route('/portfolios/<int:portfolio_id>/transactions', methods=['GET'])
@jwt_required()
def list_transactions(portfolio_id):
    """List a portfolio's transactions, oldest first."""
    try:
        portfolio = owned_portfolio(portfolio_id, current_user_id())

        if not portfolio:
            return jsonify({'error': 'Portfolio not found'}), 404

        transactions = [t.to_dict() for t in portfolio.transactions]
        return jsonify({'transactions': transactions, 'count': len(transactions)})

    except Exception as e:
        return jsonify({'error': f'Failed to list transactions: {str(e)}'}), 500


@api.route('/portfolios/<int:portfolio_id>/transactions', methods=['POST'])
@jwt_required()
def create_transactions(portfolio_id):
    """Add a batch of transactions to a portfolio, all or nothing."""
    try:
        data = json_body() or {}

        portfolio = owned_portfolio(portfolio_id, current_user_id())
        if not portfolio:
            return jsonify({'error': 'Portfolio not found'}), 404

        try:
            payload = TransactionsPayload.model_validate({'transactions': data.get('transactions')})
        except ValidationError as e:
            return jsonify({
                'error': 'Invalid payload',
                'details': e.errors(include_url=False, include_context=False, include_input=False)
            }), 400

        created = []
        for tx in payload.transactions:
            transaction = Transaction(portfolio_id=portfolio.id, **tx.to_model_fields())
            db.session.add(transaction)
            created.append(transaction)
        db.session.commit()

        logger.info('Added %d transactions to portfolio %s', len(created), portfolio.id)

        return jsonify({'transactions': [t.to_dict() for t in created]}), 201

    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'Failed to save transactions: {str(e)}'}), 500


@api.route('/transactions/<int:transaction_id>', methods=['DELETE'])
@jwt_required()
def delete_transaction(transaction_id):
    """Delete a single transaction from one of the user's portfolios."""
    try:
        transaction = Transaction.query.join(Portfolio)\
            .filter(Transaction.id == transaction_id, Portfolio.user_id == current_user_id())\
            .first()

        if not transaction:
            return jsonify({'error': 'Transaction not found'}), 404

        db.session.delete(transaction)
        db.session.commit()

        return jsonify({'message': 'Transaction deleted successfully'})

    except Exception as e:
        db.session.rollback()
        return jsonify({'error': f'Failed to delete transaction: {str(e)}'}), 500


# =============================================================================
# MARKET DATA ENDPOINTS
# =============================================================================

@api.route('/assets/search', methods=['GET'])
@jwt_required()
def search_assets():
    """Search instruments by symbol or ISIN."""
    query = request.args.get('symbol', '').strip()
    if len(query) < 2:
        return jsonify({'data': []})

    try:
        return jsonify({'data': market_data().search_symbols(query)})
    except MarketDataError as e:
        logger.warning('Asset search failed for %r: %s', query, e)
        return jsonify({'error': 'Failed to fetch assets'}), 500


@api.route('/quote/<symbol>', methods=['GET'])
@jwt_required()
def get_quote(symbol):
    """Get the latest price quote for a symbol."""
    symbol = symbol.upper().strip()
    try:
        return jsonify(market_data().get_quote(symbol))
    except MarketDataError:
        return jsonify({'error': f'Symbol {symbol} not found'}), 404
    except Exception as e:
        return jsonify({'error': str(e)}), 500


@api.route('/exchanges', methods=['GET'])
def list_exchanges():
    """Exchanges whose CSV exports can be imported without the language model."""
    return jsonify({'exchanges': get_exchange_mappings()})


# =============================================================================
# DASHBOARD
# =============================================================================

@api.route('/dashboard/assets', methods=['GET'])
@jwt_required()
def dashboard_assets():
    """Holdings, valuation and performance across all of the user's portfolios."""
    try:
        user = db.session.get(User, current_user_id())
        if not user:
            return jsonify({'error': 'User not found'}), 404

        portfolios = Portfolio.query.filter_by(user_id=user.id).order_by(Portfolio.id).all()
        portfolio_ids = [p.id for p in portfolios]

        transactions = []
        if portfolio_ids:
            transactions = Transaction.query\
                .filter(Transaction.portfolio_id.in_(portfolio_ids))\
                .order_by(Transaction.date, Transaction.id)\
                .all()

        result = build_dashboard(
            [p.to_dict() for p in portfolios],
            [t.to_dict() for t in transactions],
            user.preferred_currency,
            market_data()
        )
        return jsonify(result)

    except Exception as e:
        logger.exception('Dashboard failed')
        return jsonify({'error': f'Failed to build dashboard: {str(e)}'}), 500


# =============================================================================
# BROKER STATEMENT IMPORT
# =============================================================================

@api.route('/portfolios/<int:portfolio_id>/parse-broker-file', methods=['POST'])
@jwt_required()
def parse_statement(portfolio_id):
    """
    Parse an uploaded broker statement into transactions.

    The transactions are returned for review, not saved. With an 'exchange'
    form field and a CSV file the export is mapped by column; otherwise the
    file goes through Tika and the language model.
    """
    try:
        user_id = current_user_id()
        if not owned_portfolio(portfolio_id, user_id):
            return jsonify({'error': 'Portfolio not found'}), 404

        file = request.files.get('file')
        if file is None or not file.filename:
            raise StatementImportError(
                'NO_FILE_UPLOADED',
                'No file was uploaded. Please select a file to upload.',
                {'expected_type': 'file'}
            )

        try:
            content = file.read()
        except Exception as e:
            raise StatementImportError(
                'FILE_READ_ERROR',
                'Failed to read the uploaded file. The file may be corrupted or inaccessible.',
                {'file_name': file.filename, 'error': str(e)}
            ) from e

        logger.info('Received statement %s (%s, %d bytes)', file.filename, file.mimetype, len(content))

        exchange = (request.form.get('exchange') or '').strip().lower()
        if exchange and file_extension(file.filename) == '.csv':
            validate_file(file.filename, content, file.mimetype)
            user = db.session.get(User, user_id)
            statement = transactions_from_exchange_csv(exchange, content, currency=user.preferred_currency)
        else:
            statement = parse_broker_file(
                file.filename,
                content,
                mimetype=file.mimetype,
                llm=current_app.extensions['statement_llm'],
                tika_url=current_app.config['TIKA_URL']
            )

        return jsonify(statement.model_dump())

    except StatementImportError as e:
        logger.warning('Statement import failed: %s %s', e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    except Exception as e:
        logger.exception('Unexpected error parsing statement')
        error = StatementImportError(
            'INTERNAL_ERROR',
            'An unexpected error occurred while processing your file.',
            {
                'message': str(e),
                'suggestion': 'Please try again or contact support if the problem persists.'
            }
        )
        return jsonify(error.to_dict()), error.status_code


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
