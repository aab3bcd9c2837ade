"""
Broker statement ingestion.

Uploaded statements are validated, converted to text by an Apache Tika
server, and handed to a language model served by Ollama, which returns the
transactions as JSON. The JSON is validated against ParsedStatement before
anything is returned to the client.
"""

import json
import logging
import os
import re

import requests
from pydantic import ValidationError

from exchange_mapping import get_required_columns, map_exchange_transactions, read_csv_rows
from schemas import STATEMENT_SCHEMA, ParsedStatement, parse_date

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
SUPPORTED_EXTENSIONS = ('.csv', '.xls', '.xlsx', '.pdf', '.txt')
SUPPORTED_MIME_TYPES = (
    'text/csv',
    'application/vnd.ms-excel',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'application/pdf',
    'text/plain',
)

DEFAULT_TIKA_URL = 'http://tika:9998/tika'
DEFAULT_OLLAMA_URL = 'http://localhost:11434'
DEFAULT_OLLAMA_MODEL = 'gemma3n:e2b'

# error code -> (HTTP status, error type)
ERROR_STATUS = {
    'NO_FILE_UPLOADED': (400, 'validation_error'),
    'EMPTY_FILE': (400, 'validation_error'),
    'NO_EXTRACTABLE_CONTENT': (400, 'validation_error'),
    'FILE_TOO_LARGE': (413, 'validation_error'),
    'UNSUPPORTED_FORMAT': (415, 'validation_error'),
    'UNSUPPORTED_FILE_CONTENT': (415, 'validation_error'),
    'FILE_READ_ERROR': (422, 'validation_error'),
    'SERVICE_UNAVAILABLE': (503, 'service_error'),
    'PARSING_ERROR': (422, 'processing_error'),
    'INTERNAL_ERROR': (500, 'server_error'),
}

PROMPT_TEMPLATE = (
    "You are a precise JSON extraction assistant. Extract transaction data from the broker "
    "file content and return ONLY a valid JSON object.\n\n"
    "CRITICAL REQUIREMENTS:\n"
    "- Return ONLY valid JSON - no explanations, no markdown, no extra text\n"
    "- ONLY include transactions where asset_type is 'stock' (ignore crypto, cash, etc.)\n"
    "- Use the exact field names shown in the schema\n"
    '- If no stock transactions found, return: {{"transactions": []}}\n'
    "- All dates must be in ISO 8601 format (YYYY-MM-DD or YYYY-MM-DDTHH:mm:ss.sssZ)\n"
    "- All numbers must be valid numbers (not strings)\n\n"
    "REQUIRED JSON STRUCTURE:\n"
    "{schema}\n\n"
    "EXAMPLE OUTPUT:\n"
    '{{"transactions": [{{"asset_symbol": "AAPL", "asset_name": "Apple Inc", "asset_type": "stock", '
    '"type": "buy", "quantity": 10, "price": 150.50, "date": "2024-01-15T10:30:00.000Z", '
    '"currency": "USD", "exchange": "NASDAQ"}}]}}\n\n'
    "FILE CONTENT TO PARSE:\n{content}"
)


class StatementImportError(Exception):
    """Statement ingestion failure carrying a machine-readable code."""

    def __init__(self, code, message, details=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def status_code(self):
        return ERROR_STATUS.get(self.code, (400, 'validation_error'))[0]

    @property
    def error_type(self):
        return ERROR_STATUS.get(self.code, (400, 'validation_error'))[1]

    def to_dict(self):
        return {
            'error': self.message,
            'code': self.code,
            'details': self.details,
            'type': self.error_type,
        }


# =============================================================================
# FILE VALIDATION
# =============================================================================

def file_extension(filename):
    filename = (filename or '').lower()
    if '.' not in filename:
        return ''
    return filename[filename.rfind('.'):]


def validate_file(filename, content, mimetype=None):
    """Check size, extension and emptiness of an uploaded file."""
    size = len(content)

    if size > MAX_FILE_SIZE:
        raise StatementImportError(
            'FILE_TOO_LARGE',
            f'File size exceeds the maximum limit of {MAX_FILE_SIZE // (1024 * 1024)}MB. '
            f'Your file is {size / (1024 * 1024):.2f}MB.',
            {
                'file_size': size,
                'max_size': MAX_FILE_SIZE,
                'file_size_mb': round(size / (1024 * 1024), 2),
                'max_size_mb': MAX_FILE_SIZE // (1024 * 1024),
            }
        )

    extension = file_extension(filename)
    if extension not in SUPPORTED_EXTENSIONS:
        raise StatementImportError(
            'UNSUPPORTED_FORMAT',
            f"File format '{extension}' is not supported. "
            f"Supported formats are: {', '.join(SUPPORTED_EXTENSIONS)}.",
            {
                'file_name': filename,
                'file_extension': extension,
                'supported_extensions': list(SUPPORTED_EXTENSIONS),
                'supported_formats': 'CSV, Excel (.xls, .xlsx), PDF, and plain text files',
            }
        )

    if mimetype and mimetype not in SUPPORTED_MIME_TYPES:
        logger.warning("MIME type '%s' not in supported list, but extension '%s' is valid", mimetype, extension)

    if size == 0:
        raise StatementImportError(
            'EMPTY_FILE',
            'The uploaded file is empty. Please upload a file with transaction data.',
            {'file_name': filename, 'file_size': size}
        )


# =============================================================================
# TEXT EXTRACTION (Apache Tika)
# =============================================================================

def extract_text(content, filename, tika_url=None):
    """Send the file to Tika and return its plain text."""
    tika_url = tika_url or os.environ.get('TIKA_URL', DEFAULT_TIKA_URL)

    try:
        response = requests.put(tika_url, data=content, headers={'Accept': 'text/plain'}, timeout=60)
    except requests.RequestException as e:
        logger.error('Tika request failed: %s', e)
        raise StatementImportError(
            'SERVICE_UNAVAILABLE',
            'File processing service is unavailable. Please try again later.',
            {'suggestion': 'Please try again later or contact support if the problem persists.'}
        ) from e

    if not response.ok:
        logger.error('Tika server error: %s %s', response.status_code, response.reason)
        if response.status_code == 422:
            raise StatementImportError(
                'UNSUPPORTED_FILE_CONTENT',
                'The file content cannot be processed. The file may be corrupted, '
                'password-protected, or in an unsupported format.',
                {'file_name': filename, 'tika_status': response.status_code, 'tika_error': response.text}
            )
        if response.status_code >= 500:
            raise StatementImportError(
                'SERVICE_UNAVAILABLE',
                'File processing service is temporarily unavailable. Please try again later.',
                {'suggestion': 'Please try again later or contact support if the problem persists.'}
            )
        raise StatementImportError(
            'FILE_READ_ERROR',
            f'File processing failed with status {response.status_code}. '
            'Please ensure the file is valid and try again.',
            {'file_name': filename, 'tika_status': response.status_code}
        )

    text = response.text
    if not text or not text.strip():
        raise StatementImportError(
            'NO_EXTRACTABLE_CONTENT',
            'No readable content could be extracted from the file. '
            'Please ensure the file contains transaction data and is not corrupted.',
            {'file_name': filename, 'extracted_text_length': len(text or '')}
        )

    return text


# =============================================================================
# LANGUAGE MODEL (Ollama)
# =============================================================================

class OllamaClient:
    """Minimal client for Ollama's /api/generate endpoint."""

    def __init__(self, base_url=None, model=None, timeout=120):
        self.base_url = (base_url or os.environ.get('OLLAMA_URL', DEFAULT_OLLAMA_URL)).rstrip('/')
        self.model = model or os.environ.get('OLLAMA_MODEL', DEFAULT_OLLAMA_MODEL)
        self.timeout = timeout

    def generate(self, prompt):
        """Run a single non-streaming completion and return the response text."""
        try:
            response = requests.post(
                f'{self.base_url}/api/generate',
                json={'model': self.model, 'prompt': prompt, 'stream': False, 'format': 'json'},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error('Ollama request failed: %s', e)
            raise StatementImportError(
                'SERVICE_UNAVAILABLE',
                'Language model service is unavailable. Please try again later.',
                {'suggestion': 'Please try again later or contact support if the problem persists.'}
            ) from e

        if not response.ok:
            logger.error('Ollama error: %s %s', response.status_code, response.reason)
            raise StatementImportError(
                'SERVICE_UNAVAILABLE',
                'Language model service is temporarily unavailable. Please try again later.',
                {'status': response.status_code}
            )

        return response.json().get('response', '')


def build_prompt(content, schema=STATEMENT_SCHEMA):
    return PROMPT_TEMPLATE.format(schema=schema, content=content)


def extract_json(text):
    """Pull the JSON object out of a model reply that may carry extra text."""
    if not text:
        return None

    fenced = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL | re.IGNORECASE)
    if fenced:
        return fenced.group(1)

    start = text.find('{')
    end = text.rfind('}')
    if start != -1 and end > start:
        return text[start:end + 1]

    return None


def parse_llm_response(text):
    """Decode and validate the model output into a ParsedStatement."""
    json_text = extract_json(text)
    if json_text is None:
        logger.warning('No JSON found in LLM response')
        json_text = text

    try:
        parsed = json.loads(json_text)
    except (TypeError, ValueError) as e:
        logger.error('LLM returned invalid JSON: %s', e)
        raise _parsing_error('LLM returned invalid JSON format') from e

    try:
        return ParsedStatement.model_validate(parsed)
    except ValidationError as e:
        logger.warning('LLM output failed schema validation: %s', e)

    # Repair the container shape and try once more
    if isinstance(parsed, dict):
        if not isinstance(parsed.get('transactions'), list):
            parsed['transactions'] = []
        try:
            return ParsedStatement.model_validate(parsed)
        except ValidationError as e:
            logger.error('LLM output still invalid after repair: %s', e)

    raise _parsing_error("LLM returned JSON that doesn't match expected schema")


def _parsing_error(original_error):
    return StatementImportError(
        'PARSING_ERROR',
        'Failed to parse the file content. The file format may not be supported '
        'or the content may be unclear.',
        {
            'original_error': original_error,
            'suggestion': 'Please ensure the file contains clear transaction data in a supported format.',
        }
    )


# =============================================================================
# ENTRY POINTS
# =============================================================================

def transactions_from_exchange_csv(exchange, content, currency='USD'):
    """Map an exchange CSV export straight to parsed transactions."""
    try:
        rows = read_csv_rows(content, required_columns=get_required_columns(exchange))
    except Exception as e:
        raise StatementImportError(
            'FILE_READ_ERROR',
            'Failed to read the uploaded file. The file may be corrupted or inaccessible.',
            {'error': str(e)}
        ) from e

    asset_type = 'stock' if exchange.lower() == 'xtb' else 'crypto'
    transactions = []
    for tx in map_exchange_transactions(exchange, rows):
        if tx['type'] not in ('buy', 'sell', 'deposit', 'withdraw') or not tx['asset']:
            continue
        try:
            date = parse_date(tx['date']).strftime('%Y-%m-%d')
        except ValueError:
            logger.warning('Skipping %s row with unreadable date %r', exchange, tx['date'])
            continue
        transactions.append({
            'asset_symbol': tx['asset'].upper(),
            'asset_name': tx['asset'],
            'asset_type': asset_type,
            'type': tx['type'],
            'quantity': abs(tx['amount']),
            'price': tx['price'] or 0.0,
            'date': date,
            'notes': f"fee {tx['fee']}" if tx['fee'] else None,
            'currency': currency,
            'exchange': exchange.upper(),
        })

    return ParsedStatement.model_validate({'transactions': transactions})


def parse_broker_file(filename, content, mimetype=None, llm=None, tika_url=None):
    """Validate, extract and structure a broker statement."""
    validate_file(filename, content, mimetype)

    text = extract_text(content, filename, tika_url=tika_url)
    logger.info('Extracted %d characters from %s', len(text), filename)

    llm = llm or OllamaClient()
    reply = llm.generate(build_prompt(text))
    statement = parse_llm_response(reply)
    logger.info('LLM returned %d transactions for %s', len(statement.transactions), filename)

    return statement
