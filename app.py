#!/usr/bin/env python3
"""
TestGate Platform - Timed Test Application
SECTION 1: Core Foundation and Setup
"""

import os
import json
import logging
import secrets
import calendar
import math
import re
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Any, Tuple, Iterable
from functools import wraps
from dataclasses import dataclass, fields
from datetime import datetime as dt, timedelta, timezone

# Flask and Extensions
from flask import (Flask, render_template_string, request, jsonify, session, redirect, url_for,
                   flash, g, has_request_context)
from werkzeug.security import generate_password_hash, check_password_hash
import requests

# Configuration Class
class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'testgate-' + secrets.token_hex(32))
    DATA_DIR = os.environ.get('DATA_DIR', 'data')
    STORE_BACKEND = os.environ.get('STORE_BACKEND', 'json')  # json or rest
    SUPABASE_URL = os.environ.get('SUPABASE_URL', '')
    SUPABASE_ANON_KEY = os.environ.get('SUPABASE_ANON_KEY', '')
    REQUEST_TIMEOUT = float(os.environ.get('REQUEST_TIMEOUT', '10'))
    TRIAL_DAYS = int(os.environ.get('TRIAL_DAYS', '3'))
    AUTH_SESSION_DAYS = int(os.environ.get('AUTH_SESSION_DAYS', '7'))
    ADMIN_EMAILS = [e.strip().lower() for e in os.environ.get('ADMIN_EMAILS', '').split(',') if e.strip()]
    PASS_THRESHOLD = 70
    DEFAULT_TELEGRAM_USERNAME = os.environ.get('DEFAULT_TELEGRAM_USERNAME', 'youradmin')
    LOG_FILE = os.environ.get('LOG_FILE', 'testgate.log')

# Initialize Flask App
app = Flask(__name__)
app.config.from_object(Config)

# Logging Configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(app.config['LOG_FILE']),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Security Headers Middleware
@app.after_request
def add_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Content-Security-Policy'] = "default-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net https://cdnjs.cloudflare.com; img-src 'self' data: https:; font-src 'self' https://cdnjs.cloudflare.com; style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net https://cdnjs.cloudflare.com"
    return response

# Rate Limiting Store
rate_limit_store = {}

def rate_limit(max_requests: int, window_seconds: int):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if request.method != 'POST':
                return f(*args, **kwargs)

            client_ip = request.environ.get('HTTP_X_FORWARDED_FOR', request.remote_addr)
            current_time = time.time()
            key = f"{client_ip}:{f.__name__}"

            if key not in rate_limit_store:
                rate_limit_store[key] = []

            # Clean old requests
            rate_limit_store[key] = [req_time for req_time in rate_limit_store[key]
                                   if current_time - req_time < window_seconds]

            if len(rate_limit_store[key]) >= max_requests:
                flash('Too many attempts. Please wait a few minutes and try again.', 'danger')
                return redirect(request.path)

            rate_limit_store[key].append(current_time)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

# Time Helpers
def utcnow() -> dt:
    return dt.now(timezone.utc)

def to_iso(value: dt) -> str:
    return value.astimezone(timezone.utc).isoformat()

def parse_timestamp(value: Any) -> Optional[dt]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC. Raises ValueError on garbage."""
    if value is None or value == '':
        return None
    if isinstance(value, dt):
        parsed = value
    else:
        parsed = dt.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

def _from_row(cls, row: Dict[str, Any]):
    """Build a dataclass from a store row, ignoring columns the model does not know"""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in known})

# Data Models
@dataclass
class Identity:
    id: str
    email: str = ''

@dataclass
class AuthSession:
    access_token: str
    identity: Identity

@dataclass
class Account:
    id: str
    email: str = ''
    is_admin: bool = False
    trial_ends_at: Optional[str] = None
    subscription_ends_at: Optional[str] = None
    created_at: str = ''

@dataclass
class Category:
    id: str
    name: str
    description: str = ''
    time_limit: int = 1800  # seconds
    created_at: str = ''

@dataclass
class Test:
    id: str
    title: str
    category_id: str
    created_at: str = ''

@dataclass
class Question:
    id: str
    test_id: str
    question_text: str
    answer_0: str
    answer_1: str
    answer_2: str
    answer_3: str
    correct_answer: int
    order_index: int = 0
    image_url: Optional[str] = None
    created_at: str = ''

    @property
    def answers(self) -> List[str]:
        return [self.answer_0, self.answer_1, self.answer_2, self.answer_3]

ATTEMPT_OPEN = 'open'
ATTEMPT_FINALIZED = 'finalized'

@dataclass
class Attempt:
    id: str
    account_id: str
    test_id: str
    started_at: str
    completed_at: Optional[str] = None
    time_spent: Optional[int] = None
    score: Optional[int] = None
    passed: Optional[bool] = None
    selected_answers: Optional[Dict[str, int]] = None

    @property
    def state(self) -> str:
        return ATTEMPT_FINALIZED if self.completed_at else ATTEMPT_OPEN

@dataclass
class AnswerRecord:
    id: str
    attempt_id: str
    question_id: str
    selected_answer: int
    is_correct: bool
    created_at: str = ''

@dataclass
class AccessStatus:
    has_access: bool = False
    is_admin: bool = False
    is_trial_active: bool = False
    is_subscribed: bool = False
    trial_ends_at: Optional[str] = None
    subscription_ends_at: Optional[str] = None
    time_remaining_ms: Optional[int] = None

TELEGRAM_SETTING_KEY = 'telegram_admin_username'

@dataclass
class SiteSettings:
    telegram_admin_username: str = Config.DEFAULT_TELEGRAM_USERNAME

    @classmethod
    def from_rows(cls, rows: Iterable[Dict[str, Any]], default_username: str) -> 'SiteSettings':
        values = {row.get('key'): row.get('value') for row in rows}
        return cls(telegram_admin_username=values.get(TELEGRAM_SETTING_KEY) or default_username)

# Health Check Routes
@app.route('/health')
@app.route('/healthz')
@app.route('/ready')
def health_check():
    """Health check endpoint for deployment"""
    return jsonify({
        'status': 'healthy',
        'timestamp': utcnow().isoformat(),
        'service': 'TestGate Platform',
        'store_backend': app.config['STORE_BACKEND'],
        'version': '1.0.0'
    })

"""
END OF SECTION 1: Core Foundation and Setup
"""

"""
TestGate Platform - Timed Test Application
SECTION 2: Data Store (query interface, JSON file backend, REST backend)
"""

class StoreError(Exception):
    """A failed query or auth call against the data service"""

    def __init__(self, message: str, details: str = '', hint: str = '', code: str = ''):
        super().__init__(message)
        self.message = message
        self.details = details
        self.hint = hint
        self.code = code

    def as_dict(self) -> Dict[str, str]:
        return {
            'message': self.message or 'Unknown error',
            'details': self.details or 'No details available',
            'hint': self.hint or 'No hint available',
            'code': self.code or 'No code available',
        }


def log_store_error(context: str, error: StoreError):
    logger.error(f"{context}: {error.as_dict()}")


class _NotNull:
    def __repr__(self):
        return 'NOT_NULL'

# Filter value matching any non-null column value; None matches only nulls
NOT_NULL = _NotNull()


class DataStore:
    """Query interface over named collections plus the auth subsystem.

    Filters are ``{column: value}`` dicts combined with AND. A value of ``None``
    means "is null" and ``NOT_NULL`` means "is not null".
    """

    def select(self, collection: str, filters: Optional[Dict[str, Any]] = None,
               columns: Optional[Iterable[str]] = None, order: Optional[str] = None,
               descending: bool = False, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get(self, collection: str, filters: Dict[str, Any],
            columns: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
        """Fetch a single row or None"""
        rows = self.select(collection, filters, columns=columns, limit=1)
        return rows[0] if rows else None

    def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert_many(collection, [row])[0]

    def insert_many(self, collection: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def update(self, collection: str, values: Dict[str, Any],
               filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Update matching rows and return them; an empty list means nothing matched"""
        raise NotImplementedError

    def upsert(self, collection: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        raise NotImplementedError

    def delete(self, collection: str, filters: Dict[str, Any]) -> int:
        raise NotImplementedError

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return len(self.select(collection, filters))

    # Auth subsystem
    def sign_up(self, email: str, password: str) -> Identity:
        raise NotImplementedError

    def sign_in(self, email: str, password: str) -> AuthSession:
        raise NotImplementedError

    def get_identity(self, access_token: Optional[str]) -> Optional[Identity]:
        raise NotImplementedError

    def sign_out(self, access_token: Optional[str]):
        raise NotImplementedError


# Schema shared by the JSON backend; mirrors the hosted tables
COLLECTION_COLUMNS = {
    'accounts': ('id', 'email', 'is_admin', 'trial_ends_at', 'subscription_ends_at', 'created_at'),
    'categories': ('id', 'name', 'description', 'time_limit', 'created_at'),
    'tests': ('id', 'title', 'category_id', 'created_at'),
    'questions': ('id', 'test_id', 'question_text', 'image_url', 'answer_0', 'answer_1', 'answer_2',
                  'answer_3', 'correct_answer', 'order_index', 'created_at'),
    'attempts': ('id', 'account_id', 'test_id', 'started_at', 'completed_at', 'time_spent', 'score',
                 'passed', 'selected_answers'),
    'answer_records': ('id', 'attempt_id', 'question_id', 'selected_answer', 'is_correct', 'created_at'),
    'settings': ('key', 'value', 'updated_by', 'updated_at'),
}

PRIMARY_KEYS = {'settings': 'key'}

COLUMN_DEFAULTS = {
    'accounts': {'is_admin': False},
    'categories': {'description': ''},
}

UNIQUE_CONSTRAINTS = {
    'accounts': [('email',)],
    'questions': [('test_id', 'order_index')],
}

# Every foreign key cascades on delete
FOREIGN_KEYS = {
    'tests': [('category_id', 'categories')],
    'questions': [('test_id', 'tests')],
    'attempts': [('account_id', 'accounts'), ('test_id', 'tests')],
    'answer_records': [('attempt_id', 'attempts'), ('question_id', 'questions')],
}

ADMIN_WRITE_COLLECTIONS = ('accounts', 'categories', 'tests', 'questions', 'settings')


class JsonFileStore(DataStore):
    """Local data service kept in JSON files, one file per collection.

    Emulates the hosted service closely enough to develop and test against:
    foreign keys with cascading deletes, unique constraints, conditional
    updates and admin-only writes. When ``token_provider`` is None the store
    runs with service privileges and skips the write policies.
    """

    def __init__(self, data_dir: str, token_provider: Optional[Callable[[], Optional[str]]] = None,
                 trial_days: int = 3, admin_emails: Iterable[str] = (), session_days: int = 7):
        self.data_dir = data_dir
        self.session_ttl = timedelta(days=session_days)
        self.token_provider = token_provider
        self.trial_days = trial_days
        self.admin_emails = {e.lower() for e in admin_emails}
        self._lock = threading.RLock()
        os.makedirs(data_dir, exist_ok=True)
        self._init_data_files()

    def _init_data_files(self):
        """Initialize data files if they don't exist"""
        filenames = [f'{name}.json' for name in COLLECTION_COLUMNS] + ['auth_users.json', 'auth_sessions.json']
        for filename in filenames:
            filepath = os.path.join(self.data_dir, filename)
            if not os.path.exists(filepath):
                self._save_data(filename, {})

    def _save_data(self, filename: str, data: Any):
        """Atomically save data to file"""
        filepath = os.path.join(self.data_dir, filename)
        temp_filepath = filepath + '.tmp'

        try:
            with open(temp_filepath, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(temp_filepath, filepath)
        except OSError as e:
            logger.error(f"Error saving {filename}: {e}")
            if os.path.exists(temp_filepath):
                os.remove(temp_filepath)
            raise StoreError(f'Could not write {filename}', details=str(e), code='io_error')

    def _load_data(self, filename: str) -> Any:
        """Load data from file"""
        filepath = os.path.join(self.data_dir, filename)
        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            logger.warning(f"File {filename} not found, returning empty dict")
            return {}
        except (OSError, ValueError) as e:
            logger.error(f"Error loading {filename}: {e}")
            raise StoreError(f'Could not read {filename}', details=str(e), code='io_error')

    def _load_collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._load_data(f'{collection}.json')

    def _save_collection(self, collection: str, rows: Dict[str, Dict[str, Any]]):
        self._save_data(f'{collection}.json', rows)

    # Validation helpers
    @staticmethod
    def _check_collection(collection: str):
        if collection not in COLLECTION_COLUMNS:
            raise StoreError(f'relation "{collection}" does not exist', code='42P01')

    @staticmethod
    def _check_columns(collection: str, names: Iterable[str]):
        known = COLLECTION_COLUMNS[collection]
        for name in names:
            if name not in known:
                raise StoreError(f'column {collection}.{name} does not exist', code='42703',
                                 hint='Check the column name against the table definition.')

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        for name, expected in (filters or {}).items():
            value = row.get(name)
            if expected is NOT_NULL:
                if value is None:
                    return False
            elif expected is None:
                if value is not None:
                    return False
            elif value != expected:
                return False
        return True

    def _check_foreign_keys(self, collection: str, rows: Iterable[Dict[str, Any]]):
        for column, target in FOREIGN_KEYS.get(collection, []):
            target_rows = self._load_collection(target)
            for row in rows:
                value = row.get(column)
                if value is not None and value not in target_rows:
                    raise StoreError(
                        f'insert or update on table "{collection}" violates foreign key constraint',
                        details=f'Key ({column})=({value}) is not present in table "{target}".',
                        code='23503')

    @staticmethod
    def _check_unique(collection: str, existing: Dict[str, Dict[str, Any]], candidates: List[Dict[str, Any]]):
        pk = PRIMARY_KEYS.get(collection, 'id')
        for columns in UNIQUE_CONSTRAINTS.get(collection, []):
            seen = {}
            for row in list(existing.values()) + candidates:
                key = tuple(row.get(c) for c in columns)
                if any(part is None for part in key):
                    continue
                if key in seen and seen[key] != row[pk]:
                    raise StoreError(
                        f'duplicate key value violates unique constraint on {collection}',
                        details=f'Key ({", ".join(columns)})=({", ".join(str(p) for p in key)}) already exists.',
                        code='23505')
                seen[key] = row[pk]

    # Row-level policies
    def _policy_account(self) -> Optional[Dict[str, Any]]:
        """Account of the caller, or None for anonymous callers"""
        token = self.token_provider() if self.token_provider else None
        identity = self.get_identity(token)
        if identity is None:
            return None
        return self._load_collection('accounts').get(identity.id)

    def _enforce_write_policy(self, collection: str, rows: List[Dict[str, Any]]):
        if self.token_provider is None:
            return
        caller = self._policy_account()
        if caller is not None and caller.get('is_admin') is True:
            return

        allowed = caller is not None
        if allowed and collection in ADMIN_WRITE_COLLECTIONS:
            allowed = False
        elif allowed and collection == 'attempts':
            allowed = all(row.get('account_id') == caller['id'] for row in rows)
        elif allowed and collection == 'answer_records':
            attempts = self._load_collection('attempts')
            allowed = all(attempts.get(row.get('attempt_id'), {}).get('account_id') == caller['id']
                          for row in rows)

        if not allowed:
            raise StoreError(f'new row violates row-level security policy for table "{collection}"',
                             code='42501')

    def _new_row(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check_columns(collection, row.keys())
        pk = PRIMARY_KEYS.get(collection, 'id')
        new_row = {name: None for name in COLLECTION_COLUMNS[collection]}
        new_row.update(COLUMN_DEFAULTS.get(collection, {}))
        new_row.update(row)
        if pk == 'id' and not new_row.get('id'):
            new_row['id'] = str(uuid.uuid4())
        if 'created_at' in new_row and not new_row['created_at']:
            new_row['created_at'] = to_iso(utcnow())
        if collection == 'attempts' and not new_row['started_at']:
            new_row['started_at'] = to_iso(utcnow())
        if new_row[pk] in (None, ''):
            raise StoreError(f'null value in column "{pk}" violates not-null constraint', code='23502')
        return new_row

    # Query interface
    def select(self, collection, filters=None, columns=None, order=None, descending=False, limit=None):
        self._check_collection(collection)
        self._check_columns(collection, (filters or {}).keys())
        columns = list(columns) if columns else None
        if columns:
            self._check_columns(collection, columns)
        if order:
            self._check_columns(collection, [order])

        with self._lock:
            rows = [row for row in self._load_collection(collection).values() if self._matches(row, filters)]

        if order:
            # Nulls sort last ascending and first descending, as in Postgres
            rows.sort(key=lambda r: (r.get(order) is None, r.get(order)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns:
            rows = [{name: row.get(name) for name in columns} for row in rows]
        return [dict(row) for row in rows]

    def insert_many(self, collection, rows):
        self._check_collection(collection)
        with self._lock:
            new_rows = [self._new_row(collection, row) for row in rows]
            self._enforce_write_policy(collection, new_rows)
            self._check_foreign_keys(collection, new_rows)

            pk = PRIMARY_KEYS.get(collection, 'id')
            existing = self._load_collection(collection)
            for row in new_rows:
                if row[pk] in existing:
                    raise StoreError(f'duplicate key value violates unique constraint "{collection}_pkey"',
                                     code='23505')
            self._check_unique(collection, existing, new_rows)

            for row in new_rows:
                existing[row[pk]] = row
            self._save_collection(collection, existing)
        return [dict(row) for row in new_rows]

    def update(self, collection, values, filters):
        self._check_collection(collection)
        self._check_columns(collection, values.keys())
        self._check_columns(collection, (filters or {}).keys())
        if not filters:
            raise StoreError('UPDATE requires a WHERE clause', code='21000')

        pk = PRIMARY_KEYS.get(collection, 'id')
        with self._lock:
            existing = self._load_collection(collection)
            matched = [row for row in existing.values() if self._matches(row, filters)]
            if not matched:
                return []
            self._enforce_write_policy(collection, matched)

            updated = [{**row, **values} for row in matched]
            self._enforce_write_policy(collection, updated)
            self._check_foreign_keys(collection, updated)
            others = {k: v for k, v in existing.items() if k not in {row[pk] for row in matched}}
            self._check_unique(collection, others, updated)

            for row in updated:
                existing[row[pk]] = row
            self._save_collection(collection, existing)
        return [dict(row) for row in updated]

    def upsert(self, collection, row, on_conflict):
        self._check_collection(collection)
        self._check_columns(collection, [on_conflict])
        with self._lock:
            current = [r for r in self._load_collection(collection).values()
                       if r.get(on_conflict) == row.get(on_conflict)]
            if current:
                pk = PRIMARY_KEYS.get(collection, 'id')
                return self.update(collection, row, {pk: current[0][pk]})[0]
            return self.insert(collection, row)

    def delete(self, collection, filters):
        self._check_collection(collection)
        self._check_columns(collection, (filters or {}).keys())
        if not filters:
            raise StoreError('DELETE requires a WHERE clause', code='21000')

        with self._lock:
            existing = self._load_collection(collection)
            matched = [row for row in existing.values() if self._matches(row, filters)]
            if not matched:
                return 0
            self._enforce_write_policy(collection, matched)

            pk = PRIMARY_KEYS.get(collection, 'id')
            self._delete_rows(collection, {row[pk] for row in matched})
        logger.info(f"Deleted {len(matched)} row(s) from {collection}")
        return len(matched)

    def _delete_rows(self, collection: str, keys: set):
        """Delete rows by primary key and cascade to every referencing collection"""
        rows = self._load_collection(collection)
        for key in keys:
            rows.pop(key, None)
        self._save_collection(collection, rows)

        for child, references in FOREIGN_KEYS.items():
            for column, target in references:
                if target != collection:
                    continue
                child_rows = self._load_collection(child)
                child_pk = PRIMARY_KEYS.get(child, 'id')
                orphaned = {r[child_pk] for r in child_rows.values() if r.get(column) in keys}
                if orphaned:
                    self._delete_rows(child, orphaned)

    # Auth subsystem
    def sign_up(self, email, password):
        email = (email or '').strip().lower()
        with self._lock:
            users = self._load_data('auth_users.json')
            if any(u['email'] == email for u in users.values()):
                raise StoreError('User already registered', code='user_already_exists')

            user_id = str(uuid.uuid4())
            users[user_id] = {
                'id': user_id,
                'email': email,
                'password_hash': generate_password_hash(password),
                'created_at': to_iso(utcnow()),
            }
            self._save_data('auth_users.json', users)

            accounts = self._load_collection('accounts')
            accounts[user_id] = self._new_row('accounts', {
                'id': user_id,
                'email': email,
                'is_admin': email in self.admin_emails,
                'trial_ends_at': to_iso(utcnow() + timedelta(days=self.trial_days)) if self.trial_days > 0 else None,
            })
            self._save_collection('accounts', accounts)
        return Identity(id=user_id, email=email)

    def sign_in(self, email, password):
        email = (email or '').strip().lower()
        with self._lock:
            users = self._load_data('auth_users.json')
            user = next((u for u in users.values() if u['email'] == email), None)
            if not user or not check_password_hash(user['password_hash'], password or ''):
                raise StoreError('Invalid login credentials', code='invalid_credentials')

            token = secrets.token_urlsafe(32)
            sessions = {t: entry for t, entry in self._load_data('auth_sessions.json').items()
                        if not self._session_expired(entry)}
            sessions[token] = {'user_id': user['id'], 'created_at': to_iso(utcnow())}
            self._save_data('auth_sessions.json', sessions)
        return AuthSession(access_token=token, identity=Identity(id=user['id'], email=user['email']))

    def _session_expired(self, entry: Dict[str, Any]) -> bool:
        try:
            created_at = parse_timestamp(entry.get('created_at'))
        except ValueError:
            return True
        return created_at is None or created_at + self.session_ttl <= utcnow()

    def get_identity(self, access_token):
        if not access_token:
            return None
        sessions = self._load_data('auth_sessions.json')
        entry = sessions.get(access_token)
        if not entry or self._session_expired(entry):
            return None
        user = self._load_data('auth_users.json').get(entry['user_id'])
        if not user:
            return None
        return Identity(id=user['id'], email=user['email'])

    def sign_out(self, access_token):
        if not access_token:
            return
        with self._lock:
            sessions = self._load_data('auth_sessions.json')
            if sessions.pop(access_token, None) is not None:
                self._save_data('auth_sessions.json', sessions)


class RestStore(DataStore):
    """Client for a hosted PostgREST + GoTrue data service (e.g. Supabase).

    Every request carries the signed-in user's access token so the service's
    row-level policies decide what the caller may read and write.
    """

    def __init__(self, base_url: str, api_key: str,
                 token_provider: Optional[Callable[[], Optional[str]]] = None,
                 timeout: float = 10, http_session: Optional[requests.Session] = None):
        if not base_url or not api_key:
            raise ValueError('RestStore needs SUPABASE_URL and SUPABASE_ANON_KEY')
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.token_provider = token_provider
        self.timeout = timeout
        self.http = http_session or requests.Session()

    def _headers(self, prefer: Optional[str] = None, token: Optional[str] = None) -> Dict[str, str]:
        if token is None and self.token_provider:
            token = self.token_provider()
        headers = {
            'apikey': self.api_key,
            'Authorization': f'Bearer {token or self.api_key}',
            'Content-Type': 'application/json',
        }
        if prefer:
            headers['Prefer'] = prefer
        return headers

    @staticmethod
    def _error_from_response(response: requests.Response) -> StoreError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = (body.get('message') or body.get('msg') or body.get('error_description')
                   or body.get('error') or response.text or f'HTTP {response.status_code}')
        return StoreError(
            message,
            details=body.get('details') or '',
            hint=body.get('hint') or '',
            code=str(body.get('code') or body.get('error_code') or response.status_code),
        )

    def _request(self, method: str, path: str, params=None, json_body=None,
                 headers: Optional[Dict[str, str]] = None) -> requests.Response:
        url = f'{self.base_url}{path}'
        try:
            response = self.http.request(method, url, params=params, json=json_body,
                                         headers=headers or self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreError('Could not reach the data service', details=str(e), code='network_error')
        if not response.ok:
            raise self._error_from_response(response)
        return response

    @staticmethod
    def _filter_params(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
        params = {}
        for name, expected in (filters or {}).items():
            if expected is NOT_NULL:
                params[name] = 'not.is.null'
            elif expected is None:
                params[name] = 'is.null'
            elif isinstance(expected, bool):
                params[name] = f'eq.{str(expected).lower()}'
            else:
                params[name] = f'eq.{expected}'
        return params

    # Query interface
    def select(self, collection, filters=None, columns=None, order=None, descending=False, limit=None):
        params = self._filter_params(filters)
        params['select'] = ','.join(columns) if columns else '*'
        if order:
            params['order'] = f"{order}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params['limit'] = str(limit)
        return self._request('GET', f'/rest/v1/{collection}', params=params).json()

    def insert_many(self, collection, rows):
        response = self._request('POST', f'/rest/v1/{collection}', json_body=rows,
                                 headers=self._headers(prefer='return=representation'))
        return response.json()

    def update(self, collection, values, filters):
        if not filters:
            raise StoreError('UPDATE requires a WHERE clause', code='21000')
        response = self._request('PATCH', f'/rest/v1/{collection}', params=self._filter_params(filters),
                                 json_body=values, headers=self._headers(prefer='return=representation'))
        return response.json()

    def upsert(self, collection, row, on_conflict):
        response = self._request('POST', f'/rest/v1/{collection}', params={'on_conflict': on_conflict},
                                 json_body=[row],
                                 headers=self._headers(prefer='resolution=merge-duplicates,return=representation'))
        return response.json()[0]

    def delete(self, collection, filters):
        if not filters:
            raise StoreError('DELETE requires a WHERE clause', code='21000')
        response = self._request('DELETE', f'/rest/v1/{collection}', params=self._filter_params(filters),
                                 headers=self._headers(prefer='return=representation'))
        return len(response.json())

    def count(self, collection, filters=None):
        params = self._filter_params(filters)
        params['select'] = '*'
        response = self._request('HEAD', f'/rest/v1/{collection}', params=params,
                                 headers=self._headers(prefer='count=exact'))
        content_range = response.headers.get('Content-Range', '*/0')
        total = content_range.rsplit('/', 1)[-1]
        return int(total) if total.isdigit() else 0

    # Auth subsystem
    def sign_up(self, email, password):
        response = self._request('POST', '/auth/v1/signup', json_body={'email': email, 'password': password},
                                 headers=self._headers(token=self.api_key))
        data = response.json()
        user = data.get('user') or data
        return Identity(id=user['id'], email=user.get('email', email))

    def sign_in(self, email, password):
        response = self._request('POST', '/auth/v1/token', params={'grant_type': 'password'},
                                 json_body={'email': email, 'password': password},
                                 headers=self._headers(token=self.api_key))
        data = response.json()
        user = data['user']
        return AuthSession(access_token=data['access_token'],
                           identity=Identity(id=user['id'], email=user.get('email', email)))

    def get_identity(self, access_token):
        if not access_token:
            return None
        try:
            response = self._request('GET', '/auth/v1/user', headers=self._headers(token=access_token))
        except StoreError as e:
            if e.code not in ('401', '403', 'bad_jwt'):
                log_store_error('Error resolving signed-in user', e)
            return None
        user = response.json()
        return Identity(id=user['id'], email=user.get('email', ''))

    def sign_out(self, access_token):
        if not access_token:
            return
        self._request('POST', '/auth/v1/logout', headers=self._headers(token=access_token))


def current_access_token() -> Optional[str]:
    """Access token of the signed-in user for the current request"""
    if not has_request_context():
        return None
    return session.get('access_token')


def create_store(config) -> DataStore:
    """Build the configured data store backend"""
    if config['STORE_BACKEND'] == 'rest':
        logger.info(f"Using REST data service at {config['SUPABASE_URL']}")
        return RestStore(config['SUPABASE_URL'], config['SUPABASE_ANON_KEY'],
                         token_provider=current_access_token, timeout=config['REQUEST_TIMEOUT'])

    logger.info(f"Using JSON file store in {config['DATA_DIR']}")
    return JsonFileStore(config['DATA_DIR'], token_provider=current_access_token,
                         trial_days=config['TRIAL_DAYS'], admin_emails=config['ADMIN_EMAILS'],
                         session_days=config['AUTH_SESSION_DAYS'])

# Initialize Data Store
store = create_store(app.config)

"""
END OF SECTION 2: Data Store
"""

"""
TestGate Platform - Timed Test Application
SECTION 3: Core Systems (access, scoring, attempts, subscriptions)
"""

# Access Evaluator
def evaluate_access(is_admin: bool, trial_ends_at: Optional[dt], subscription_ends_at: Optional[dt],
                    now: dt) -> AccessStatus:
    """Derive a user's entitlement from the stored timestamps.

    A trial or subscription counts only while its end lies strictly in the
    future. ``time_remaining_ms`` follows the active trial first, then the
    active subscription.
    """
    is_admin = is_admin is True
    is_trial_active = trial_ends_at is not None and trial_ends_at > now
    is_subscribed = subscription_ends_at is not None and subscription_ends_at > now

    time_remaining_ms = None
    if is_trial_active:
        time_remaining_ms = int((trial_ends_at - now).total_seconds() * 1000)
    elif is_subscribed:
        time_remaining_ms = int((subscription_ends_at - now).total_seconds() * 1000)

    return AccessStatus(
        has_access=is_admin or is_trial_active or is_subscribed,
        is_admin=is_admin,
        is_trial_active=is_trial_active,
        is_subscribed=is_subscribed,
        trial_ends_at=to_iso(trial_ends_at) if trial_ends_at else None,
        subscription_ends_at=to_iso(subscription_ends_at) if subscription_ends_at else None,
        time_remaining_ms=time_remaining_ms,
    )


def _admin_only_access(account_id: str) -> AccessStatus:
    """Fallback when the entitlement columns cannot be read: admins keep access, nobody else"""
    try:
        row = store.get('accounts', {'id': account_id}, columns=('is_admin',))
    except StoreError as e:
        log_store_error('Error loading admin flag', e)
        return AccessStatus()
    is_admin = bool(row) and row.get('is_admin') is True
    return AccessStatus(has_access=is_admin, is_admin=is_admin)


def load_access_status(identity: Identity, now: Optional[dt] = None) -> AccessStatus:
    """Read one account and evaluate its access; never grants more than admin status on failure"""
    now = now or utcnow()
    try:
        row = store.get('accounts', {'id': identity.id},
                        columns=('is_admin', 'trial_ends_at', 'subscription_ends_at'))
    except StoreError as e:
        log_store_error('Error loading account access fields', e)
        return _admin_only_access(identity.id)

    if row is None:
        logger.warning(f"No account row for user {identity.id}")
        return AccessStatus()

    try:
        return evaluate_access(row['is_admin'], parse_timestamp(row['trial_ends_at']),
                               parse_timestamp(row['subscription_ends_at']), now)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Unreadable access fields for user {identity.id}: {e}")
        is_admin = row.get('is_admin') is True
        return AccessStatus(has_access=is_admin, is_admin=is_admin)


def describe_account_status(account: Account, now: dt) -> Tuple[str, str]:
    """Status label and badge colour for the admin user list"""
    try:
        trial_end = parse_timestamp(account.trial_ends_at)
        sub_end = parse_timestamp(account.subscription_ends_at)
    except ValueError:
        trial_end = sub_end = None

    if account.is_admin:
        return 'Admin (Full Access)', 'primary'
    if sub_end and sub_end > now:
        return 'Active Subscription', 'success'
    if trial_end and trial_end > now:
        return 'Trial Active', 'info'
    if sub_end or trial_end:
        return 'Expired', 'danger'
    return 'No Access', 'secondary'


# Scoring Function
UNANSWERED = -1

@dataclass
class AnswerResult:
    question_id: str
    selected_answer: int
    correct_answer: int
    is_correct: bool

@dataclass
class ScoreResult:
    score: int
    passed: bool
    correct_count: int
    total_questions: int
    answers: List[AnswerResult]


def is_answer_correct(selected: int, correct_answer: int) -> bool:
    return selected != UNANSWERED and selected == correct_answer


def score_single_answer(selected: int, correct_answer: int) -> Tuple[int, bool]:
    """One question, all or nothing: (100, True) or (0, False)"""
    is_correct = is_answer_correct(selected, correct_answer)
    return (100 if is_correct else 0), is_correct


def round_half_up_percent(correct: int, total: int) -> int:
    """round(100 * correct / total) with halves rounded up, in integer arithmetic"""
    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


def normalize_selection(value: Any) -> int:
    """Map a submitted answer to 0-3, or UNANSWERED"""
    try:
        index = int(value)
    except (TypeError, ValueError):
        return UNANSWERED
    return index if 0 <= index <= 3 else UNANSWERED


def score_answers(questions: List[Question], selections: Dict[str, int],
                  pass_threshold: int = Config.PASS_THRESHOLD) -> ScoreResult:
    """Score a multi-question attempt; unanswered questions count as wrong"""
    answers = []
    for question in questions:
        selected = normalize_selection(selections.get(question.id, UNANSWERED))
        answers.append(AnswerResult(
            question_id=question.id,
            selected_answer=selected,
            correct_answer=question.correct_answer,
            is_correct=is_answer_correct(selected, question.correct_answer),
        ))

    correct_count = len([a for a in answers if a.is_correct])
    score = round_half_up_percent(correct_count, len(questions))
    return ScoreResult(
        score=score,
        passed=bool(questions) and score >= pass_threshold,
        correct_count=correct_count,
        total_questions=len(questions),
        answers=answers,
    )


# Countdown
def seconds_remaining(started_at: dt, time_limit: int, now: dt) -> int:
    """Seconds left on an attempt's clock, clamped to [0, time_limit]"""
    elapsed = (now - started_at).total_seconds()
    return int(max(0, min(time_limit, math.ceil(time_limit - elapsed))))


# Attempt Recorder
class AttemptError(Exception):
    pass


class AttemptRecorder:
    """Opens and finalizes test attempts.

    NotStarted -> Open: ``open`` writes the attempt row.
    Open -> Finalized: ``finalize`` writes score, timing and answers once.
    The finalizing update only matches while ``completed_at`` is still null,
    so a timer-driven submit racing a manual submit cannot both land.
    """

    def __init__(self, data_store: DataStore, clock: Optional[Callable[[], dt]] = None):
        self.store = data_store
        self._clock = clock

    def now(self) -> dt:
        return self._clock() if self._clock else utcnow()

    def open(self, account_id: str, test_id: str) -> Attempt:
        try:
            row = self.store.insert('attempts', {
                'account_id': account_id,
                'test_id': test_id,
                'started_at': to_iso(self.now()),
                'completed_at': None,
            })
        except StoreError as e:
            log_store_error('Error creating attempt', e)
            raise AttemptError('Could not start the test. Please try again.') from e

        attempt = _from_row(Attempt, row)
        logger.info(f"Attempt {attempt.id} opened for test {test_id} by {account_id}")
        return attempt

    def finalize(self, attempt_id: str, questions: List[Question], selections: Dict[str, int]) -> Attempt:
        row = self.store.get('attempts', {'id': attempt_id})
        if row is None:
            raise AttemptError('Test attempt not found.')

        attempt = _from_row(Attempt, row)
        if attempt.state == ATTEMPT_FINALIZED:
            logger.info(f"Attempt {attempt_id} already finalized, keeping stored result")
            return attempt

        completed_at = self.now()
        try:
            started_at = parse_timestamp(attempt.started_at)
        except ValueError:
            started_at = None
        time_spent = max(0, int((completed_at - started_at).total_seconds())) if started_at else 0
        result = score_answers(questions, selections)

        updated = self.store.update('attempts', {
            'completed_at': to_iso(completed_at),
            'time_spent': time_spent,
            'score': result.score,
            'passed': result.passed,
            'selected_answers': {a.question_id: a.selected_answer for a in result.answers},
        }, {'id': attempt_id, 'completed_at': None})

        if not updated:
            logger.warning(f"Attempt {attempt_id} was finalized concurrently, keeping stored result")
            current = self.store.get('attempts', {'id': attempt_id})
            if current is None:
                raise AttemptError('Test attempt not found.')
            return _from_row(Attempt, current)

        if result.answers:
            try:
                self.store.insert_many('answer_records', [{
                    'attempt_id': attempt_id,
                    'question_id': a.question_id,
                    'selected_answer': a.selected_answer,
                    'is_correct': a.is_correct,
                } for a in result.answers])
            except StoreError as e:
                # The attempt itself is final; results fall back to selected_answers
                log_store_error(f'Error saving answer records for attempt {attempt_id}', e)

        attempt = _from_row(Attempt, updated[0])
        logger.info(f"Attempt {attempt_id} finalized: {result.correct_count}/{result.total_questions} "
                    f"({result.score}%) in {time_spent}s")
        return attempt


# Subscription Grants
def add_months(value: dt, months: int) -> dt:
    """Calendar month arithmetic; the day is clamped to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_subscription_end(current_end: Optional[dt], months: int, now: dt) -> dt:
    """Extend from the current end while it is still running, otherwise from now"""
    start = current_end if current_end and current_end > now else now
    return add_months(start, months)


# Utility Functions
def validate_email(email: str) -> bool:
    """Validate email format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def format_time_duration(seconds: Optional[int]) -> str:
    """Format time duration in human readable format"""
    seconds = int(seconds or 0)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        minutes = seconds // 60
        return f"{minutes}m {seconds % 60}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m"


def format_time_remaining(ms: Optional[int]) -> str:
    total_seconds = max(0, int(ms or 0) // 1000)
    days, rest = divmod(total_seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m {seconds}s"
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


@app.template_filter('duration')
def duration_filter(seconds):
    return format_time_duration(seconds)


@app.template_filter('datetime')
def datetime_filter(value):
    try:
        parsed = parse_timestamp(value)
    except ValueError:
        return value
    return parsed.strftime('%b %d, %Y %H:%M') if parsed else 'N/A'


# Data access helpers for pages: failures are logged and read as "nothing found"
def fetch_rows(collection: str, description: str, **query) -> List[Dict[str, Any]]:
    try:
        return store.select(collection, **query)
    except StoreError as e:
        log_store_error(f'Error fetching {description}', e)
        return []


def fetch_row(collection: str, filters: Dict[str, Any], description: str) -> Optional[Dict[str, Any]]:
    try:
        return store.get(collection, filters)
    except StoreError as e:
        log_store_error(f'Error fetching {description}', e)
        return None


def load_questions(test_id: str) -> List[Question]:
    rows = fetch_rows('questions', 'questions', filters={'test_id': test_id}, order='order_index')
    return [_from_row(Question, row) for row in rows]


def load_site_settings() -> SiteSettings:
    rows = fetch_rows('settings', 'settings')
    return SiteSettings.from_rows(rows, app.config['DEFAULT_TELEGRAM_USERNAME'])


# Authentication and Capability Checks
CAPABILITY_AUTHENTICATED = 'authenticated'
CAPABILITY_ACCESS = 'access'
CAPABILITY_ADMIN = 'admin'


def get_current_identity() -> Optional[Identity]:
    """Signed-in identity for this request, resolved once"""
    if 'identity' not in g:
        token = session.get('access_token')
        try:
            g.identity = store.get_identity(token) if token else None
        except StoreError as e:
            log_store_error('Error resolving signed-in user', e)
            g.identity = None
    return g.identity


def current_access() -> AccessStatus:
    if 'access' not in g:
        identity = get_current_identity()
        g.access = load_access_status(identity) if identity else AccessStatus()
    return g.access


def check_capability(capability: str) -> Tuple[bool, Optional[str]]:
    """Single authorization check used by pages, API routes and the route guard.

    Returns (allowed, reason) where reason is 'unauthenticated' or 'forbidden'.
    """
    if get_current_identity() is None:
        return False, 'unauthenticated'
    if capability == CAPABILITY_AUTHENTICATED:
        return True, None

    access = current_access()
    if capability == CAPABILITY_ADMIN and not access.is_admin:
        return False, 'forbidden'
    if capability == CAPABILITY_ACCESS and not access.has_access:
        return False, 'forbidden'
    return True, None


def capability_required(capability: str, api: bool = False):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            allowed, reason = check_capability(capability)
            if allowed:
                return f(*args, **kwargs)

            if api:
                if reason == 'unauthenticated':
                    return jsonify({'error': 'Unauthorized'}), 401
                return jsonify({'error': 'Unauthorized: Admin access required'}), 403

            if reason == 'unauthenticated':
                flash('Please sign in to access this page.', 'warning')
                return redirect(url_for('login'))
            if capability == CAPABILITY_ACCESS:
                flash('An active trial or subscription is required to take tests.', 'warning')
            return redirect(url_for('dashboard'))
        return decorated_function
    return decorator


login_required = capability_required(CAPABILITY_AUTHENTICATED)
access_required = capability_required(CAPABILITY_ACCESS)
admin_required = capability_required(CAPABILITY_ADMIN)
api_admin_required = capability_required(CAPABILITY_ADMIN, api=True)


@app.before_request
def guard_routes():
    """Route-level access control"""
    path = request.path
    if path.startswith('/admin'):
        allowed, reason = check_capability(CAPABILITY_ADMIN)
        if reason == 'unauthenticated':
            return redirect(url_for('login'))
        if not allowed:
            return redirect(url_for('dashboard'))
    elif path.startswith('/dashboard') or path.startswith('/test/'):
        if get_current_identity() is None:
            return redirect(url_for('login'))
    elif path.startswith('/auth/') and path not in ('/auth/sign-up-success', '/auth/error'):
        if get_current_identity() is not None:
            return redirect(url_for('dashboard'))
    return None

"""
END OF SECTION 3: Core Systems
"""

"""
TestGate Platform - Timed Test Application
SECTION 4: Template Engine and User Interface System
"""

class TemplateEngine:
    """Page templates rendered through Jinja, composed into one base layout"""

    BASE = '''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{{ title }}</title>
    <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.2/dist/css/bootstrap.min.css" rel="stylesheet">
    <link href="https://cdnjs.cloudflare.com/ajax/libs/font-awesome/6.5.1/css/all.min.css" rel="stylesheet">
    <style>
        body { background: linear-gradient(135deg, #eef2ff 0%, #f5f3ff 100%); min-height: 100vh; }
        .card-custom { background: #fff; border: 2px solid #e5e7eb; border-radius: 12px; }
        .timer-display { font-family: monospace; font-size: 1.5rem; font-weight: 700; padding: .5rem 1rem;
                         border-radius: 8px; background: #e0e7ff; color: #4f46e5; }
        .timer-display.running-out { background: #fee2e2; color: #dc2626; }
        .answer-option { border: 2px solid #e5e7eb; border-radius: 8px; padding: .75rem 1rem; cursor: pointer; }
        .answer-option:hover { border-color: #a5b4fc; }
        .score-big { font-size: 3rem; font-weight: 700; color: #4f46e5; }
    </style>
</head>
<body>
    {% if show_nav %}
    <nav class="navbar navbar-expand bg-white border-bottom mb-4">
        <div class="container">
            <a class="navbar-brand fw-bold" href="{{ url_for('index') }}"><i class="fas fa-stopwatch text-primary me-2"></i>TestGate</a>
            <div class="navbar-nav ms-auto align-items-center">
                {% if user %}
                    <a class="nav-link" href="{{ url_for('dashboard') }}">Dashboard</a>
                    <a class="nav-link" href="{{ url_for('results_history') }}">My Results</a>
                    {% if access and access.is_admin %}
                    <a class="nav-link" href="{{ url_for('admin_dashboard') }}"><i class="fas fa-shield-alt me-1"></i>Admin</a>
                    {% endif %}
                    <span class="navbar-text mx-3 small text-muted">{{ user.email }}</span>
                    <form method="POST" action="{{ url_for('logout') }}" class="d-inline">
                        <button type="submit" class="btn btn-outline-secondary btn-sm"><i class="fas fa-sign-out-alt me-1"></i>Sign Out</button>
                    </form>
                {% else %}
                    <a class="nav-link" href="{{ url_for('login') }}">Sign In</a>
                    <a class="btn btn-primary btn-sm ms-2" href="{{ url_for('sign_up') }}">Get Started</a>
                {% endif %}
            </div>
        </div>
    </nav>
    {% endif %}
    <main class="container pb-5">
        {% with messages = get_flashed_messages(with_categories=true) %}
            {% for category, message in messages %}
            <div class="alert alert-{{ category }} alert-dismissible fade show" role="alert">
                {{ message }}
                <button type="button" class="btn-close" data-bs-dismiss="alert"></button>
            </div>
            {% endfor %}
        {% endwith %}
        {{ content|safe }}
    </main>
    <script src="https://cdn.jsdelivr.net/npm/bootstrap@5.3.2/dist/js/bootstrap.bundle.min.js"></script>
</body>
</html>
'''

    @staticmethod
    def _landing_template() -> dict:
        return {'title': 'TestGate - Timed Tests', 'content': '''
        <section class="text-center py-5">
            <h1 class="display-5 fw-bold">Master Your Skills with <span class="text-primary">Timed Tests</span></h1>
            <p class="lead text-muted mx-auto" style="max-width: 640px;">
                Challenge yourself with timed tests across multiple topics. Track your progress and improve your knowledge.
            </p>
            <a href="{{ url_for('sign_up') }}" class="btn btn-primary btn-lg me-2">Start Free Trial</a>
            <a href="{{ url_for('login') }}" class="btn btn-outline-primary btn-lg">Sign In</a>
        </section>
        <section class="row g-4">
            <div class="col-md-4"><div class="card-custom p-4 h-100">
                <h5><i class="fas fa-clock text-primary me-2"></i>Timed Tests</h5>
                <p class="text-muted mb-0">Race against the clock to complete tests and improve your speed.</p>
            </div></div>
            <div class="col-md-4"><div class="card-custom p-4 h-100">
                <h5><i class="fas fa-trophy text-primary me-2"></i>Track Progress</h5>
                <p class="text-muted mb-0">View detailed results and see how you improve over time.</p>
            </div></div>
            <div class="col-md-4"><div class="card-custom p-4 h-100">
                <h5><i class="fas fa-book-open text-primary me-2"></i>Many Categories</h5>
                <p class="text-muted mb-0">Choose from test categories prepared by our instructors.</p>
            </div></div>
        </section>
        '''}

    @staticmethod
    def _login_template() -> dict:
        return {'title': 'Sign In - TestGate', 'content': '''
        <div class="row justify-content-center">
            <div class="col-md-6 col-lg-5">
                <div class="card-custom p-5">
                    <div class="text-center mb-4">
                        <h2 class="mb-1">Welcome Back</h2>
                        <p class="text-muted">Sign in to continue</p>
                    </div>
                    <form method="POST">
                        <div class="mb-3">
                            <label for="email" class="form-label fw-semibold">Email</label>
                            <input type="email" class="form-control" id="email" name="email" value="{{ email or '' }}" required>
                        </div>
                        <div class="mb-4">
                            <label for="password" class="form-label fw-semibold">Password</label>
                            <input type="password" class="form-control" id="password" name="password" required>
                        </div>
                        <div class="d-grid mb-3">
                            <button type="submit" class="btn btn-primary"><i class="fas fa-sign-in-alt me-2"></i>Sign In</button>
                        </div>
                        <p class="text-center mb-0">Don't have an account?
                            <a href="{{ url_for('sign_up') }}" class="fw-semibold">Sign up</a>
                        </p>
                    </form>
                </div>
            </div>
        </div>
        '''}

    @staticmethod
    def _sign_up_template() -> dict:
        return {'title': 'Sign Up - TestGate', 'content': '''
        <div class="row justify-content-center">
            <div class="col-md-6 col-lg-5">
                <div class="card-custom p-5">
                    <div class="text-center mb-4">
                        <h2 class="mb-1">Create Account</h2>
                        <p class="text-muted">New accounts start with a free trial</p>
                    </div>
                    {% for error in errors or [] %}
                    <div class="alert alert-danger py-2">{{ error }}</div>
                    {% endfor %}
                    <form method="POST">
                        <div class="mb-3">
                            <label for="email" class="form-label fw-semibold">Email</label>
                            <input type="email" class="form-control" id="email" name="email" value="{{ email or '' }}" required>
                        </div>
                        <div class="mb-3">
                            <label for="password" class="form-label fw-semibold">Password</label>
                            <input type="password" class="form-control" id="password" name="password" minlength="8" required>
                        </div>
                        <div class="mb-4">
                            <label for="confirm_password" class="form-label fw-semibold">Repeat Password</label>
                            <input type="password" class="form-control" id="confirm_password" name="confirm_password" minlength="8" required>
                        </div>
                        <div class="d-grid mb-3">
                            <button type="submit" class="btn btn-primary">Sign Up</button>
                        </div>
                        <p class="text-center mb-0">Already have an account?
                            <a href="{{ url_for('login') }}" class="fw-semibold">Sign in</a>
                        </p>
                    </form>
                </div>
            </div>
        </div>
        '''}

    @staticmethod
    def _sign_up_success_template() -> dict:
        return {'title': 'Thank You - TestGate', 'content': '''
        <div class="row justify-content-center"><div class="col-md-6">
            <div class="card-custom p-5 text-center">
                <i class="fas fa-check-circle text-success" style="font-size: 3rem;"></i>
                <h2 class="mt-3">Thank you for signing up!</h2>
                <p class="text-muted">Your account is ready. If email confirmation is enabled, follow the link we sent before signing in.</p>
                <a href="{{ url_for('login') }}" class="btn btn-primary">Go to Sign In</a>
            </div>
        </div></div>
        '''}

    @staticmethod
    def _auth_error_template() -> dict:
        return {'title': 'Authentication Error - TestGate', 'content': '''
        <div class="row justify-content-center"><div class="col-md-6">
            <div class="card-custom p-5 text-center">
                <i class="fas fa-exclamation-circle text-danger" style="font-size: 3rem;"></i>
                <h2 class="mt-3">Authentication Error</h2>
                <p class="text-muted">Something went wrong during authentication. Please try again.</p>
                <a href="{{ url_for('login') }}" class="btn btn-primary">Back to Sign In</a>
            </div>
        </div></div>
        '''}

    @staticmethod
    def _subscription_banner() -> str:
        return '''
        {% if access.is_admin %}
        {% elif access.has_access %}
        <div class="alert {{ 'alert-info' if access.is_trial_active else 'alert-success' }} d-flex justify-content-between align-items-center">
            <div>
                <i class="fas fa-clock me-2"></i>
                <strong>{{ 'Free trial' if access.is_trial_active else 'Subscription' }}</strong> ends in
                <span id="accessRemaining" data-ms="{{ access.time_remaining_ms }}">{{ access_remaining }}</span>
            </div>
            <a class="btn btn-sm btn-outline-dark" href="https://t.me/{{ settings.telegram_admin_username }}" target="_blank" rel="noopener noreferrer">
                <i class="fab fa-telegram me-1"></i>Extend</a>
        </div>
        <script>
            (function () {
                const el = document.getElementById('accessRemaining');
                let left = parseInt(el.dataset.ms, 10);
                function format(ms) {
                    const total = Math.floor(ms / 1000);
                    const d = Math.floor(total / 86400), h = Math.floor((total % 86400) / 3600);
                    const m = Math.floor((total % 3600) / 60), s = total % 60;
                    if (d > 0) return d + 'd ' + h + 'h ' + m + 'm ' + s + 's';
                    if (h > 0) return h + 'h ' + m + 'm ' + s + 's';
                    if (m > 0) return m + 'm ' + s + 's';
                    return s + 's';
                }
                if (!left || left <= 0) return;
                const interval = setInterval(function () {
                    left -= 1000;
                    if (left <= 0) {
                        clearInterval(interval);
                        window.location.reload();
                        return;
                    }
                    el.textContent = format(left);
                }, 1000);
            })();
        </script>
        {% else %}
        <div class="alert alert-warning">
            <h5 class="alert-heading"><i class="fas fa-lock me-2"></i>Your access has expired</h5>
            <p class="mb-2">Contact the administrator on Telegram to purchase a subscription.</p>
            <a class="btn btn-warning btn-sm" href="https://t.me/{{ settings.telegram_admin_username }}" target="_blank" rel="noopener noreferrer">
                <i class="fab fa-telegram me-1"></i>@{{ settings.telegram_admin_username }}</a>
        </div>
        {% endif %}
        '''

    @staticmethod
    def _dashboard_template() -> dict:
        return {'title': 'Dashboard - TestGate', 'content': TemplateEngine._subscription_banner() + '''
        <div class="d-flex justify-content-between align-items-center mb-4">
            <div>
                <h1 class="h3 mb-0">Test Categories</h1>
                <p class="text-muted mb-0">Choose a test to begin</p>
            </div>
            <a href="{{ url_for('results_history') }}" class="btn btn-outline-primary"><i class="fas fa-trophy me-2"></i>My Results</a>
        </div>
        {% if not categories %}
        <div class="card-custom p-5 text-center text-muted">No test categories available yet.</div>
        {% endif %}
        <div class="row g-4">
            {% for category in categories %}
            <div class="col-md-6 col-lg-4">
                <div class="card-custom p-4 h-100">
                    <h5 class="mb-1">{{ category.name }}</h5>
                    <p class="text-muted small">{{ category.description }}</p>
                    <p class="small mb-3"><i class="fas fa-clock me-1 text-primary"></i>{{ category.time_limit|duration }}</p>
                    {% for test in tests_by_category.get(category.id, []) %}
                    <div class="d-flex justify-content-between align-items-center border-top py-2">
                        <span>{{ test.title }} <span class="text-muted small">({{ question_counts.get(test.id, 0) }} questions)</span></span>
                        {% if access.has_access and question_counts.get(test.id, 0) > 0 %}
                        <a href="{{ url_for('take_test', test_id=test.id) }}" class="btn btn-primary btn-sm">Start</a>
                        {% else %}
                        <button class="btn btn-secondary btn-sm" disabled><i class="fas fa-lock"></i></button>
                        {% endif %}
                    </div>
                    {% else %}
                    <p class="text-muted small mb-0">No tests in this category yet.</p>
                    {% endfor %}
                </div>
            </div>
            {% endfor %}
        </div>
        '''}

    @staticmethod
    def _results_history_template() -> dict:
        return {'title': 'My Results - TestGate', 'content': '''
        <h1 class="h3 mb-4">My Results</h1>
        <div class="row g-4 mb-4">
            <div class="col-md-4"><div class="card-custom p-4"><div class="text-muted">Tests Taken</div><div class="score-big">{{ stats.total }}</div></div></div>
            <div class="col-md-4"><div class="card-custom p-4"><div class="text-muted">Passed</div><div class="score-big">{{ stats.passed }}</div></div></div>
            <div class="col-md-4"><div class="card-custom p-4"><div class="text-muted">Average Score</div><div class="score-big">{{ stats.average }}%</div></div></div>
        </div>
        {% if not attempts %}
        <div class="card-custom p-5 text-center">
            <p class="text-muted">You haven't completed any tests yet.</p>
            <a href="{{ url_for('dashboard') }}" class="btn btn-primary">Take a Test</a>
        </div>
        {% else %}
        <div class="card-custom p-0">
            <table class="table mb-0 align-middle">
                <thead><tr><th>Test</th><th>Category</th><th>Score</th><th>Time</th><th>Result</th><th>Completed</th><th></th></tr></thead>
                <tbody>
                {% for item in attempts %}
                <tr>
                    <td>{{ item.test_title }}</td>
                    <td>{{ item.category_name }}</td>
                    <td>{{ item.attempt.score }}%</td>
                    <td>{{ item.attempt.time_spent|duration }}</td>
                    <td>{% if item.attempt.passed %}<span class="badge bg-success">Passed</span>{% else %}<span class="badge bg-danger">Failed</span>{% endif %}</td>
                    <td class="small text-muted">{{ item.attempt.completed_at|datetime }}</td>
                    <td><a href="{{ url_for('test_results', test_id=item.attempt.test_id, attempt_id=item.attempt.id) }}" class="btn btn-sm btn-outline-primary">View</a></td>
                </tr>
                {% endfor %}
                </tbody>
            </table>
        </div>
        {% endif %}
        '''}

    @staticmethod
    def _take_test_template() -> dict:
        return {'title': 'Test in Progress - TestGate', 'content': '''
        <div class="d-flex justify-content-between align-items-center mb-4 sticky-top bg-white p-3 border rounded">
            <div>
                <h1 class="h4 mb-0">{{ test.title }}</h1>
                <p class="text-muted small mb-0">{{ category.name }} &middot; Answer all questions before time runs out</p>
            </div>
            <div class="timer-display" id="timer"><i class="fas fa-clock me-2"></i><span id="timeDisplay">{{ time_display }}</span></div>
        </div>
        <form id="testForm" method="POST" action="{{ url_for('submit_test', test_id=test.id, attempt_id=attempt.id) }}">
            {% for question in questions %}
            <div class="card-custom p-4 mb-4">
                <h5 class="mb-3"><span class="text-muted">{{ loop.index }}.</span> {{ question.question_text }}</h5>
                {% if question.image_url %}
                <img src="{{ question.image_url }}" alt="Question illustration" class="img-fluid rounded mb-3">
                {% endif %}
                {% for answer in question.answers %}
                <label class="answer-option d-flex align-items-center mb-2">
                    <input class="form-check-input me-3" type="radio" name="answer_{{ question.id }}" value="{{ loop.index0 }}">
                    <strong class="me-2">{{ 'ABCD'[loop.index0] }}.</strong> {{ answer }}
                </label>
                {% endfor %}
            </div>
            {% endfor %}
            <div class="text-center">
                <button type="submit" id="submitButton" class="btn btn-success btn-lg px-5"><i class="fas fa-check me-2"></i>Submit Answers</button>
            </div>
        </form>
        <script>
            (function () {
                let timeRemaining = {{ time_remaining|int }};
                let submitted = false;
                const form = document.getElementById('testForm');
                const display = document.getElementById('timeDisplay');
                const timerBox = document.getElementById('timer');

                function finish() {
                    if (submitted) return;
                    submitted = true;
                    clearInterval(timer);
                    document.getElementById('submitButton').disabled = true;
                    form.submit();
                }

                function updateTimer() {
                    if (timeRemaining <= 0) {
                        display.textContent = '0:00';
                        finish();
                        return;
                    }
                    const minutes = Math.floor(timeRemaining / 60);
                    const seconds = timeRemaining % 60;
                    display.textContent = minutes + ':' + seconds.toString().padStart(2, '0');
                    timerBox.classList.toggle('running-out', timeRemaining < 60);
                    timeRemaining--;
                }

                const timer = setInterval(updateTimer, 1000);
                updateTimer();

                form.addEventListener('submit', function (e) {
                    if (submitted) {
                        e.preventDefault();
                        return;
                    }
                    submitted = true;
                    clearInterval(timer);
                    document.getElementById('submitButton').disabled = true;
                });
                window.addEventListener('pagehide', function () { clearInterval(timer); });
            })();
        </script>
        '''}

    @staticmethod
    def _test_results_template() -> dict:
        return {'title': 'Test Results - TestGate', 'content': '''
        <div class="text-center mb-4">
            {% if attempt.passed %}
            <i class="fas fa-trophy text-success" style="font-size: 4rem;"></i>
            <h1 class="mt-3">Congratulations!</h1>
            {% else %}
            <i class="fas fa-times-circle text-danger" style="font-size: 4rem;"></i>
            <h1 class="mt-3">Keep Practicing!</h1>
            {% endif %}
            <p class="lead text-muted">{{ test.title }} &middot; {{ category.name if category else '' }}</p>
        </div>
        <div class="row g-4 mb-4">
            <div class="col-md-4"><div class="card-custom p-4">
                <div class="text-muted">Score</div>
                <div class="score-big">{{ attempt.score }}%</div>
                <div class="progress mt-2"><div class="progress-bar" style="width: {{ attempt.score }}%"></div></div>
                <div class="small text-muted mt-2">{{ correct_count }} of {{ review|length }} correct</div>
            </div></div>
            <div class="col-md-4"><div class="card-custom p-4">
                <div class="text-muted">Time Spent</div>
                <div class="score-big"><i class="fas fa-clock me-2"></i>{{ attempt.time_spent|duration }}</div>
            </div></div>
            <div class="col-md-4"><div class="card-custom p-4">
                <div class="text-muted">Result</div>
                <div class="score-big {{ 'text-success' if attempt.passed else 'text-danger' }}">{{ 'Passed' if attempt.passed else 'Failed' }}</div>
                <div class="small text-muted">Pass mark {{ pass_threshold }}%</div>
            </div></div>
        </div>
        <div class="card-custom p-4 mb-4">
            <h2 class="h4 mb-3">Question Review</h2>
            {% for item in review %}
            <div class="border rounded p-3 mb-3 {{ 'border-success bg-success-subtle' if item.is_correct else 'border-danger bg-danger-subtle' }}">
                <div class="d-flex justify-content-between">
                    <h6 class="fw-semibold">{{ loop.index }}. {{ item.question.question_text }}</h6>
                    <i class="fas {{ 'fa-check-circle text-success' if item.is_correct else 'fa-times-circle text-danger' }}"></i>
                </div>
                {% if item.question.image_url %}
                <img src="{{ item.question.image_url }}" alt="Question illustration" class="img-fluid rounded mb-2">
                {% endif %}
                <div><span class="text-muted small">Your answer: </span>
                    {% if item.selected_answer == -1 %}<em>No answer selected</em>{% else %}{{ item.question.answers[item.selected_answer] }}{% endif %}
                </div>
                {% if not item.is_correct %}
                <div><span class="text-muted small">Correct answer: </span><strong class="text-success">{{ item.question.answers[item.question.correct_answer] }}</strong></div>
                {% endif %}
            </div>
            {% endfor %}
        </div>
        <div class="text-center">
            <a href="{{ url_for('take_test', test_id=test.id) }}" class="btn btn-primary btn-lg me-2"><i class="fas fa-redo me-2"></i>Retake Test</a>
            <a href="{{ url_for('results_history') }}" class="btn btn-outline-primary btn-lg me-2">View All Results</a>
            <a href="{{ url_for('dashboard') }}" class="btn btn-outline-secondary btn-lg">Back to Dashboard</a>
        </div>
        '''}

    @staticmethod
    def _admin_dashboard_template() -> dict:
        return {'title': 'Admin - TestGate', 'content': '''
        <h1 class="h3 mb-4"><i class="fas fa-shield-alt text-primary me-2"></i>Admin Panel</h1>
        <div class="row g-4 mb-4">
            <div class="col-md-3"><div class="card-custom p-4"><div class="text-muted">Users</div><div class="score-big">{{ stats.total_users }}</div></div></div>
            <div class="col-md-3"><div class="card-custom p-4"><div class="text-muted">Categories</div><div class="score-big">{{ stats.total_categories }}</div></div></div>
            <div class="col-md-3"><div class="card-custom p-4"><div class="text-muted">Tests</div><div class="score-big">{{ stats.total_tests }}</div></div></div>
            <div class="col-md-3"><div class="card-custom p-4"><div class="text-muted">Completed Attempts</div><div class="score-big">{{ stats.total_attempts }}</div></div></div>
        </div>
        <div class="d-flex flex-wrap gap-2 mb-4">
            <a href="{{ url_for('admin_categories') }}" class="btn btn-primary"><i class="fas fa-folder me-2"></i>Categories</a>
            <a href="{{ url_for('admin_tests') }}" class="btn btn-primary"><i class="fas fa-list me-2"></i>Tests</a>
            <a href="{{ url_for('admin_users') }}" class="btn btn-primary"><i class="fas fa-users me-2"></i>Users</a>
            <a href="{{ url_for('admin_settings') }}" class="btn btn-primary"><i class="fas fa-cog me-2"></i>Settings</a>
        </div>
        <div class="card-custom p-4">
            <h2 class="h5">Recent Attempts</h2>
            {% if not recent_attempts %}
            <p class="text-muted mb-0">No completed attempts yet.</p>
            {% else %}
            <table class="table mb-0">
                <thead><tr><th>User</th><th>Test</th><th>Score</th><th>Result</th><th>Completed</th></tr></thead>
                <tbody>
                {% for item in recent_attempts %}
                <tr>
                    <td>{{ item.email }}</td>
                    <td>{{ item.test_title }}</td>
                    <td>{{ item.attempt.score }}%</td>
                    <td>{% if item.attempt.passed %}<span class="badge bg-success">Passed</span>{% else %}<span class="badge bg-danger">Failed</span>{% endif %}</td>
                    <td class="small text-muted">{{ item.attempt.completed_at|datetime }}</td>
                </tr>
                {% endfor %}
                </tbody>
            </table>
            {% endif %}
        </div>
        '''}

    @staticmethod
    def _admin_categories_template() -> dict:
        return {'title': 'Categories - Admin', 'content': '''
        <div class="d-flex justify-content-between align-items-center mb-4">
            <div>
                <a href="{{ url_for('admin_dashboard') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Admin</a>
                <h1 class="h3 mb-0">Test Categories</h1>
            </div>
            <a href="{{ url_for('admin_category_create') }}" class="btn btn-primary"><i class="fas fa-plus me-2"></i>Create Category</a>
        </div>
        {% for category in categories %}
        <div class="card-custom p-4 mb-3 d-flex justify-content-between align-items-center">
            <div>
                <h5 class="mb-1">{{ category.name }}</h5>
                <p class="text-muted small mb-0">{{ category.description }} &middot; {{ category.time_limit|duration }}</p>
            </div>
            <div class="d-flex gap-2">
                <a href="{{ url_for('admin_category_edit', category_id=category.id) }}" class="btn btn-outline-primary btn-sm"><i class="fas fa-pen me-1"></i>Edit</a>
                <form method="POST" action="{{ url_for('admin_category_delete', category_id=category.id) }}"
                      onsubmit='return confirm({{ ("Are you sure you want to delete '" ~ category.name ~ "'? This will delete all associated tests and questions.")|tojson }})'>
                    <button type="submit" class="btn btn-outline-danger btn-sm"><i class="fas fa-trash me-1"></i>Delete</button>
                </form>
            </div>
        </div>
        {% else %}
        <div class="card-custom p-5 text-center text-muted">No categories yet. Create the first one.</div>
        {% endfor %}
        '''}

    @staticmethod
    def _admin_category_form_template() -> dict:
        return {'title': 'Category - Admin', 'content': '''
        <div class="row justify-content-center"><div class="col-lg-7">
            <a href="{{ url_for('admin_categories') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Categories</a>
            <div class="card-custom p-4 mt-2">
                <h1 class="h4">{{ 'Edit Category' if category else 'Create Category' }}</h1>
                <p class="text-muted">{{ 'Update the category details' if category else 'Add a new test category' }}</p>
                {% for error in errors or [] %}<div class="alert alert-danger py-2">{{ error }}</div>{% endfor %}
                <form method="POST">
                    <div class="mb-3">
                        <label for="name" class="form-label">Name</label>
                        <input type="text" class="form-control" id="name" name="name" value="{{ form.name }}" placeholder="e.g., Mathematics" required>
                    </div>
                    <div class="mb-3">
                        <label for="description" class="form-label">Description</label>
                        <textarea class="form-control" id="description" name="description" rows="3" required>{{ form.description }}</textarea>
                    </div>
                    <div class="mb-3">
                        <label for="time_limit" class="form-label">Time Limit (minutes)</label>
                        <input type="number" class="form-control" id="time_limit" name="time_limit" min="1" value="{{ form.time_limit }}" required>
                    </div>
                    <button type="submit" class="btn btn-primary">{{ 'Update Category' if category else 'Create Category' }}</button>
                    <a href="{{ url_for('admin_categories') }}" class="btn btn-outline-secondary">Cancel</a>
                </form>
            </div>
        </div></div>
        '''}

    @staticmethod
    def _admin_tests_template() -> dict:
        return {'title': 'Tests - Admin', 'content': '''
        <div class="d-flex justify-content-between align-items-center mb-4">
            <div>
                <a href="{{ url_for('admin_dashboard') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Admin</a>
                <h1 class="h3 mb-0">Tests</h1>
            </div>
            <a href="{{ url_for('admin_test_create') }}" class="btn btn-primary"><i class="fas fa-plus me-2"></i>Create Test</a>
        </div>
        {% for item in tests %}
        <div class="card-custom p-4 mb-3 d-flex justify-content-between align-items-center">
            <div>
                <h5 class="mb-1">{{ item.test.title }}</h5>
                <p class="text-muted small mb-0">{{ item.category_name }} &middot; {{ item.question_count }} questions</p>
            </div>
            <div class="d-flex gap-2">
                <a href="{{ url_for('admin_questions', test_id=item.test.id) }}" class="btn btn-outline-secondary btn-sm"><i class="fas fa-list me-1"></i>Questions</a>
                <a href="{{ url_for('admin_test_edit', test_id=item.test.id) }}" class="btn btn-outline-primary btn-sm"><i class="fas fa-pen me-1"></i>Edit</a>
                <form method="POST" action="{{ url_for('admin_test_delete', test_id=item.test.id) }}"
                      onsubmit='return confirm({{ ("Are you sure you want to delete '" ~ item.test.title ~ "'? All of its questions and results will be deleted.")|tojson }})'>
                    <button type="submit" class="btn btn-outline-danger btn-sm"><i class="fas fa-trash me-1"></i>Delete</button>
                </form>
            </div>
        </div>
        {% else %}
        <div class="card-custom p-5 text-center text-muted">No tests yet.</div>
        {% endfor %}
        '''}

    @staticmethod
    def _admin_test_form_template() -> dict:
        return {'title': 'Test - Admin', 'content': '''
        <div class="row justify-content-center"><div class="col-lg-7">
            <a href="{{ url_for('admin_tests') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Tests</a>
            <div class="card-custom p-4 mt-2">
                <h1 class="h4">{{ 'Edit Test' if test else 'Create Test' }}</h1>
                {% for error in errors or [] %}<div class="alert alert-danger py-2">{{ error }}</div>{% endfor %}
                <form method="POST">
                    <div class="mb-3">
                        <label for="title" class="form-label">Title</label>
                        <input type="text" class="form-control" id="title" name="title" value="{{ form.title }}" placeholder="e.g., Algebra Basics Quiz" required>
                    </div>
                    <div class="mb-3">
                        <label for="category_id" class="form-label">Category</label>
                        <select class="form-select" id="category_id" name="category_id" required>
                            <option value="">Select a category</option>
                            {% for category in categories %}
                            <option value="{{ category.id }}" {{ 'selected' if category.id == form.category_id else '' }}>{{ category.name }}</option>
                            {% endfor %}
                        </select>
                    </div>
                    <button type="submit" class="btn btn-primary">{{ 'Update Test' if test else 'Create Test' }}</button>
                    <a href="{{ url_for('admin_tests') }}" class="btn btn-outline-secondary">Cancel</a>
                </form>
            </div>
        </div></div>
        '''}

    @staticmethod
    def _admin_questions_template() -> dict:
        return {'title': 'Questions - Admin', 'content': '''
        <div class="d-flex justify-content-between align-items-center mb-4">
            <div>
                <a href="{{ url_for('admin_tests') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Tests</a>
                <h1 class="h3 mb-0">{{ test.title }}</h1>
                <p class="text-muted mb-0">{{ category_name }} &middot; {{ questions|length }} questions</p>
            </div>
            <a href="{{ url_for('admin_question_create', test_id=test.id) }}" class="btn btn-primary"><i class="fas fa-plus me-2"></i>Add Question</a>
        </div>
        {% for question in questions %}
        <div class="card-custom p-4 mb-3">
            <div class="d-flex justify-content-between">
                <div>
                    <span class="text-muted small">Question {{ loop.index }}</span>
                    <h5>{{ question.question_text }}{% if question.image_url %} <i class="fas fa-image text-muted"></i>{% endif %}</h5>
                </div>
                <div class="d-flex gap-2 align-items-start">
                    <a href="{{ url_for('admin_question_edit', test_id=test.id, question_id=question.id) }}" class="btn btn-outline-primary btn-sm"><i class="fas fa-pen me-1"></i>Edit</a>
                    <form method="POST" action="{{ url_for('admin_question_delete', test_id=test.id, question_id=question.id) }}"
                          onsubmit='return confirm("Are you sure you want to delete this question?")'>
                        <button type="submit" class="btn btn-outline-danger btn-sm"><i class="fas fa-trash"></i></button>
                    </form>
                </div>
            </div>
            <div class="row small">
                {% for answer in question.answers %}
                <div class="col-md-6 {{ 'fw-bold text-success' if loop.index0 == question.correct_answer else '' }}">{{ 'ABCD'[loop.index0] }}: {{ answer }}</div>
                {% endfor %}
            </div>
        </div>
        {% else %}
        <div class="card-custom p-5 text-center text-muted">No questions yet. Add the first one.</div>
        {% endfor %}
        '''}

    @staticmethod
    def _admin_question_form_template() -> dict:
        return {'title': 'Question - Admin', 'content': '''
        <div class="row justify-content-center"><div class="col-lg-8">
            <a href="{{ url_for('admin_questions', test_id=test.id) }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Questions</a>
            <div class="card-custom p-4 mt-2">
                <h1 class="h4">{{ 'Edit Question' if question else 'Add Question' }}</h1>
                <p class="text-muted">{{ 'Update the question details' if question else 'Create a new question for this test' }}</p>
                {% for error in errors or [] %}<div class="alert alert-danger py-2">{{ error }}</div>{% endfor %}
                <form method="POST">
                    <div class="mb-3">
                        <label for="question_text" class="form-label">Question</label>
                        <textarea class="form-control" id="question_text" name="question_text" rows="3" placeholder="Enter the question" required>{{ form.question_text }}</textarea>
                    </div>
                    <div class="mb-3">
                        <label for="image_url" class="form-label">Image URL (optional)</label>
                        <input type="url" class="form-control" id="image_url" name="image_url" value="{{ form.image_url }}" placeholder="https://example.com/image.jpg">
                    </div>
                    <label class="form-label">Answers (select the correct one)</label>
                    {% for i in range(4) %}
                    <div class="input-group mb-2">
                        <div class="input-group-text">
                            <input class="form-check-input mt-0" type="radio" name="correct_answer" value="{{ i }}" {{ 'checked' if form.correct_answer == i else '' }} aria-label="Answer {{ 'ABCD'[i] }} is correct">
                        </div>
                        <input type="text" class="form-control" name="answer_{{ i }}" value="{{ form['answer_' ~ i] }}" placeholder="Answer {{ 'ABCD'[i] }}" required>
                    </div>
                    {% endfor %}
                    <div class="mt-3">
                        <button type="submit" class="btn btn-primary">{{ 'Update Question' if question else 'Add Question' }}</button>
                        <a href="{{ url_for('admin_questions', test_id=test.id) }}" class="btn btn-outline-secondary">Cancel</a>
                    </div>
                </form>
            </div>
        </div></div>
        '''}

    @staticmethod
    def _admin_users_template() -> dict:
        return {'title': 'Users - Admin', 'content': '''
        <a href="{{ url_for('admin_dashboard') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Admin</a>
        <h1 class="h3 mb-4">Users</h1>
        <div class="card-custom p-0">
            <table class="table mb-0 align-middle">
                <thead><tr><th>Email</th><th>Status</th><th>Trial Ends</th><th>Subscription Ends</th><th>Attempts</th><th>Passed</th><th>Avg</th><th>Actions</th></tr></thead>
                <tbody>
                {% for item in users %}
                <tr>
                    <td>{{ item.account.email }}{% if item.account.id == user.id %} <span class="badge bg-light text-dark">you</span>{% endif %}</td>
                    <td><span class="badge bg-{{ item.status_color }}">{{ item.status_text }}</span></td>
                    <td class="small">{{ item.account.trial_ends_at|datetime }}</td>
                    <td class="small">{{ item.account.subscription_ends_at|datetime }}</td>
                    <td>{{ item.stats.total_attempts }}</td>
                    <td>{{ item.stats.passed_attempts }}</td>
                    <td>{{ item.stats.average_score }}%</td>
                    <td>
                        <div class="input-group input-group-sm mb-1" style="max-width: 220px;">
                            <select class="form-select" id="months-{{ item.account.id }}">
                                <option value="1">1 month</option>
                                <option value="3">3 months</option>
                                <option value="6">6 months</option>
                                <option value="12">12 months</option>
                            </select>
                            <button class="btn btn-outline-success grant-button" data-user-id="{{ item.account.id }}" data-email="{{ item.account.email }}">Grant</button>
                        </div>
                        <button class="btn btn-sm {{ 'btn-outline-danger' if item.account.is_admin else 'btn-outline-primary' }} toggle-admin-button"
                                data-user-id="{{ item.account.id }}" data-email="{{ item.account.email }}" data-is-admin="{{ 'true' if item.account.is_admin else 'false' }}">
                            <i class="fas {{ 'fa-user-slash' if item.account.is_admin else 'fa-user-shield' }} me-1"></i>{{ 'Revoke Admin' if item.account.is_admin else 'Make Admin' }}
                        </button>
                    </td>
                </tr>
                {% else %}
                <tr><td colspan="8" class="text-center text-muted p-4">No users yet.</td></tr>
                {% endfor %}
                </tbody>
            </table>
        </div>
        <script>
            function postJson(url, payload) {
                return fetch(url, {
                    method: 'POST',
                    headers: {'Content-Type': 'application/json'},
                    body: JSON.stringify(payload)
                }).then(function (response) {
                    return response.json().then(function (result) {
                        if (!response.ok) throw new Error(result.error || 'Request failed');
                        return result;
                    });
                });
            }
            document.querySelectorAll('.grant-button').forEach(function (button) {
                button.addEventListener('click', function () {
                    const months = parseInt(document.getElementById('months-' + button.dataset.userId).value, 10);
                    if (!confirm('Grant ' + months + ' month subscription to ' + button.dataset.email + '?')) return;
                    button.disabled = true;
                    postJson('{{ url_for("api_grant_subscription") }}', {userId: button.dataset.userId, months: months})
                        .then(function () { window.location.reload(); })
                        .catch(function (error) { alert('Error: ' + error.message); button.disabled = false; });
                });
            });
            document.querySelectorAll('.toggle-admin-button').forEach(function (button) {
                button.addEventListener('click', function () {
                    const isAdmin = button.dataset.isAdmin === 'true';
                    const action = isAdmin ? 'revoke admin access from' : 'grant admin access to';
                    if (!confirm('Are you sure you want to ' + action + ' ' + button.dataset.email + '?')) return;
                    button.disabled = true;
                    postJson('{{ url_for("api_toggle_admin") }}', {userId: button.dataset.userId, isAdmin: !isAdmin})
                        .then(function () { window.location.reload(); })
                        .catch(function (error) { alert('Error: ' + error.message); button.disabled = false; });
                });
            });
        </script>
        '''}

    @staticmethod
    def _admin_settings_template() -> dict:
        return {'title': 'Settings - Admin', 'content': '''
        <div class="row justify-content-center"><div class="col-lg-7">
            <a href="{{ url_for('admin_dashboard') }}" class="small"><i class="fas fa-arrow-left me-1"></i>Back to Admin</a>
            <div class="card-custom p-4 mt-2">
                <h1 class="h4"><i class="fab fa-telegram text-primary me-2"></i>Telegram Contact</h1>
                <form id="telegramForm">
                    <div class="input-group mb-2">
                        <span class="input-group-text">@</span>
                        <input type="text" class="form-control" id="telegram" value="{{ settings.telegram_admin_username }}" placeholder="yourusername">
                    </div>
                    <p class="small text-muted">Enter your Telegram username without the @ symbol. Users will see this when their trial expires.</p>
                    <p class="small">Preview link: <a id="telegramPreview" href="https://t.me/{{ settings.telegram_admin_username }}" target="_blank" rel="noopener noreferrer">https://t.me/{{ settings.telegram_admin_username }}</a></p>
                    <button type="submit" class="btn btn-primary" id="saveButton">Save</button>
                </form>
            </div>
        </div></div>
        <script>
            const input = document.getElementById('telegram');
            const preview = document.getElementById('telegramPreview');
            input.addEventListener('input', function () {
                const link = 'https://t.me/' + input.value.replace('@', '');
                preview.href = link;
                preview.textContent = link;
            });
            document.getElementById('telegramForm').addEventListener('submit', function (e) {
                e.preventDefault();
                const username = input.value.trim().replace('@', '');
                if (!username) {
                    alert('Please enter a Telegram username');
                    return;
                }
                const button = document.getElementById('saveButton');
                button.disabled = true;
                fetch('{{ url_for("api_update_settings") }}', {
                    method: 'POST',
                    headers: {'Content-Type': 'application/json'},
                    body: JSON.stringify({key: '{{ telegram_key }}', value: username})
                }).then(function (response) {
                    if (!response.ok) throw new Error('Failed to update settings');
                    alert('Telegram username updated successfully!');
                    window.location.reload();
                }).catch(function (error) {
                    alert('Failed to update settings: ' + error.message);
                }).finally(function () { button.disabled = false; });
            });
        </script>
        '''}

    @staticmethod
    def render_template(template_name: str, **context) -> str:
        """Render template with context variables"""
        template_map = {
            'landing': TemplateEngine._landing_template,
            'login': TemplateEngine._login_template,
            'sign_up': TemplateEngine._sign_up_template,
            'sign_up_success': TemplateEngine._sign_up_success_template,
            'auth_error': TemplateEngine._auth_error_template,
            'dashboard': TemplateEngine._dashboard_template,
            'results_history': TemplateEngine._results_history_template,
            'take_test': TemplateEngine._take_test_template,
            'test_results': TemplateEngine._test_results_template,
            'admin_dashboard': TemplateEngine._admin_dashboard_template,
            'admin_categories': TemplateEngine._admin_categories_template,
            'admin_category_form': TemplateEngine._admin_category_form_template,
            'admin_tests': TemplateEngine._admin_tests_template,
            'admin_test_form': TemplateEngine._admin_test_form_template,
            'admin_questions': TemplateEngine._admin_questions_template,
            'admin_question_form': TemplateEngine._admin_question_form_template,
            'admin_users': TemplateEngine._admin_users_template,
            'admin_settings': TemplateEngine._admin_settings_template,
        }

        page = template_map[template_name]()
        context.setdefault('user', get_current_identity())
        context.setdefault('access', current_access())
        context.setdefault('show_nav', True)
        content = render_template_string(page['content'], **context)
        return render_template_string(TemplateEngine.BASE, title=page['title'], content=content, **context)

"""
END OF SECTION 4: Template Engine and User Interface System
"""

"""
TestGate Platform - Timed Test Application
SECTION 5: Routes (authentication, dashboard, tests, admin screens, admin API)
"""

INVALID_CREDENTIAL_CODES = ('invalid_credentials', 'invalid_grant')

# Public and Authentication Routes
@app.route('/')
def index():
    """Landing page"""
    return TemplateEngine.render_template('landing')

@app.route('/auth/login', methods=['GET', 'POST'])
@rate_limit(5, 300)  # 5 attempts per 5 minutes
def login():
    """User sign in"""
    if request.method == 'POST':
        email = request.form.get('email', '').strip().lower()
        password = request.form.get('password', '')

        if not email or not password:
            flash('Please provide both email and password.', 'danger')
            return TemplateEngine.render_template('login', email=email)

        try:
            auth_session = store.sign_in(email, password)
        except StoreError as e:
            if e.code in INVALID_CREDENTIAL_CODES:
                logger.warning(f"Failed sign in attempt for {email}")
                flash('Invalid email or password. Please try again.', 'danger')
                return TemplateEngine.render_template('login', email=email)
            log_store_error(f'Error signing in {email}', e)
            return redirect(url_for('auth_error'))

        session.clear()
        session['access_token'] = auth_session.access_token
        session['login_time'] = time.time()
        logger.info(f"User {auth_session.identity.email} signed in")
        return redirect(url_for('dashboard'))

    return TemplateEngine.render_template('login', email='')

@app.route('/auth/sign-up', methods=['GET', 'POST'])
@rate_limit(3, 300)  # 3 attempts per 5 minutes
def sign_up():
    """User registration"""
    if request.method == 'POST':
        email = request.form.get('email', '').strip().lower()
        password = request.form.get('password', '')
        confirm_password = request.form.get('confirm_password', '')

        errors = []
        if not validate_email(email):
            errors.append('Please enter a valid email address.')
        if len(password) < 8:
            errors.append('Password must be at least 8 characters long.')
        if password != confirm_password:
            errors.append('Passwords do not match.')

        if errors:
            return TemplateEngine.render_template('sign_up', email=email, errors=errors)

        try:
            identity = store.sign_up(email, password)
        except StoreError as e:
            if e.code in ('user_already_exists', '422'):
                return TemplateEngine.render_template(
                    'sign_up', email=email, errors=['An account with this email already exists.'])
            log_store_error(f'Error signing up {email}', e)
            return redirect(url_for('auth_error'))

        logger.info(f"New user registered: {identity.email}")
        return redirect(url_for('sign_up_success'))

    return TemplateEngine.render_template('sign_up', email='', errors=[])

@app.route('/auth/sign-up-success')
def sign_up_success():
    return TemplateEngine.render_template('sign_up_success')

@app.route('/auth/error')
def auth_error():
    return TemplateEngine.render_template('auth_error')

@app.route('/logout', methods=['GET', 'POST'])
def logout():
    """User sign out"""
    identity = get_current_identity()
    token = session.get('access_token')
    if token:
        try:
            store.sign_out(token)
        except StoreError as e:
            log_store_error('Error signing out', e)
    if identity:
        logger.info(f"User {identity.email} signed out")

    session.clear()
    return redirect(url_for('index'))

# Dashboard Routes
@app.route('/dashboard')
@login_required
def dashboard():
    """Categories, tests and the user's access banner"""
    access = current_access()
    categories = [_from_row(Category, row) for row in fetch_rows('categories', 'categories', order='name')]
    tests = [_from_row(Test, row) for row in fetch_rows('tests', 'tests', order='created_at')]

    tests_by_category = {}
    for test in tests:
        tests_by_category.setdefault(test.category_id, []).append(test)

    question_counts = {}
    for row in fetch_rows('questions', 'question counts', columns=('test_id',)):
        question_counts[row['test_id']] = question_counts.get(row['test_id'], 0) + 1

    return TemplateEngine.render_template(
        'dashboard',
        access=access,
        access_remaining=format_time_remaining(access.time_remaining_ms),
        settings=load_site_settings(),
        categories=categories,
        tests_by_category=tests_by_category,
        question_counts=question_counts,
    )

@app.route('/dashboard/results')
@login_required
def results_history():
    """Completed attempts of the signed-in user"""
    identity = get_current_identity()
    rows = fetch_rows('attempts', 'attempts',
                      filters={'account_id': identity.id, 'completed_at': NOT_NULL},
                      order='completed_at', descending=True)
    attempts = [_from_row(Attempt, row) for row in rows]

    tests = {row['id']: row for row in fetch_rows('tests', 'tests')}
    categories = {row['id']: row for row in fetch_rows('categories', 'categories')}

    items = []
    for attempt in attempts:
        test = tests.get(attempt.test_id, {})
        category = categories.get(test.get('category_id'), {})
        items.append({
            'attempt': attempt,
            'test_title': test.get('title', 'Deleted test'),
            'category_name': category.get('name', ''),
        })

    scores = [a.score or 0 for a in attempts]
    stats = {
        'total': len(attempts),
        'passed': len([a for a in attempts if a.passed]),
        'average': round(sum(scores) / len(scores)) if scores else 0,
    }
    return TemplateEngine.render_template('results_history', attempts=items, stats=stats)

# Test Routes
@app.route('/test/<test_id>')
@access_required
def take_test(test_id):
    """Open an attempt and show every question with the countdown"""
    test_row = fetch_row('tests', {'id': test_id}, 'test')
    if test_row is None:
        flash('Test not found.', 'danger')
        return redirect(url_for('dashboard'))
    test = _from_row(Test, test_row)

    category_row = fetch_row('categories', {'id': test.category_id}, 'category')
    if category_row is None:
        flash('Test category not found.', 'danger')
        return redirect(url_for('dashboard'))
    category = _from_row(Category, category_row)

    questions = load_questions(test_id)
    if not questions:
        flash('This test has no questions yet.', 'warning')
        return redirect(url_for('dashboard'))

    identity = get_current_identity()
    try:
        attempt = AttemptRecorder(store).open(identity.id, test.id)
    except AttemptError as e:
        flash(str(e), 'danger')
        return redirect(url_for('dashboard'))

    time_remaining = seconds_remaining(parse_timestamp(attempt.started_at), category.time_limit, utcnow())
    return TemplateEngine.render_template(
        'take_test',
        test=test,
        category=category,
        questions=questions,
        attempt=attempt,
        time_remaining=time_remaining,
        time_display=f"{time_remaining // 60}:{time_remaining % 60:02d}",
    )

@app.route('/test/<test_id>/attempts/<attempt_id>/submit', methods=['POST'])
@login_required
def submit_test(test_id, attempt_id):
    """Finalize an attempt; a repeated submit keeps the first result"""
    identity = get_current_identity()
    row = fetch_row('attempts', {'id': attempt_id, 'account_id': identity.id}, 'attempt')
    if row is None or row.get('test_id') != test_id:
        flash('Test attempt not found.', 'danger')
        return redirect(url_for('dashboard'))

    if row.get('completed_at'):
        return redirect(url_for('test_results', test_id=test_id, attempt_id=attempt_id))

    questions = load_questions(test_id)
    if not questions:
        flash('Failed to load the test questions. Please try again.', 'danger')
        return redirect(url_for('dashboard'))

    selections = {q.id: normalize_selection(request.form.get(f'answer_{q.id}')) for q in questions}
    try:
        AttemptRecorder(store).finalize(attempt_id, questions, selections)
    except (AttemptError, StoreError) as e:
        if isinstance(e, StoreError):
            log_store_error(f'Error finalizing attempt {attempt_id}', e)
        flash('Failed to submit test. Please try again.', 'danger')
        return redirect(url_for('dashboard'))

    return redirect(url_for('test_results', test_id=test_id, attempt_id=attempt_id))

@app.route('/test/<test_id>/results/<attempt_id>')
@login_required
def test_results(test_id, attempt_id):
    """Score, time spent and per-question review of one finalized attempt"""
    identity = get_current_identity()
    row = fetch_row('attempts', {'id': attempt_id, 'account_id': identity.id}, 'attempt')
    if row is None or row.get('test_id') != test_id:
        flash('Test results not found.', 'danger')
        return redirect(url_for('dashboard'))

    attempt = _from_row(Attempt, row)
    if attempt.state != ATTEMPT_FINALIZED:
        flash('This test has not been submitted yet.', 'warning')
        return redirect(url_for('dashboard'))

    test_row = fetch_row('tests', {'id': test_id}, 'test')
    if test_row is None:
        flash('Test not found.', 'danger')
        return redirect(url_for('dashboard'))
    test = _from_row(Test, test_row)
    category_row = fetch_row('categories', {'id': test.category_id}, 'category')

    questions = load_questions(test_id)
    records = {r['question_id']: r for r in
               fetch_rows('answer_records', 'answer records', filters={'attempt_id': attempt_id})}

    # Answer records keep the correctness decided at finalization
    review = []
    for question in questions:
        if records:
            record = records.get(question.id)
            if record is None:
                continue
            review.append({
                'question': question,
                'selected_answer': normalize_selection(record['selected_answer']),
                'is_correct': record['is_correct'] is True,
            })
        elif question.id in (attempt.selected_answers or {}):
            choice = normalize_selection(attempt.selected_answers[question.id])
            review.append({
                'question': question,
                'selected_answer': choice,
                'is_correct': is_answer_correct(choice, question.correct_answer),
            })

    return TemplateEngine.render_template(
        'test_results',
        test=test,
        category=_from_row(Category, category_row) if category_row else None,
        attempt=attempt,
        review=review,
        correct_count=len([item for item in review if item['is_correct']]),
        pass_threshold=app.config['PASS_THRESHOLD'],
    )

# Admin Routes
def count_rows(collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
    try:
        return store.count(collection, filters)
    except StoreError as e:
        log_store_error(f'Error counting {collection}', e)
        return 0

@app.route('/admin')
@admin_required
def admin_dashboard():
    """Admin overview"""
    stats = {
        'total_users': count_rows('accounts'),
        'total_tests': count_rows('tests'),
        'total_categories': count_rows('categories'),
        'total_attempts': count_rows('attempts', {'completed_at': NOT_NULL}),
    }

    rows = fetch_rows('attempts', 'recent attempts', filters={'completed_at': NOT_NULL},
                      order='completed_at', descending=True, limit=10)
    emails = {r['id']: r['email'] for r in fetch_rows('accounts', 'accounts', columns=('id', 'email'))}
    titles = {r['id']: r['title'] for r in fetch_rows('tests', 'tests', columns=('id', 'title'))}
    recent_attempts = [{
        'attempt': _from_row(Attempt, row),
        'email': emails.get(row['account_id'], 'Unknown'),
        'test_title': titles.get(row['test_id'], 'Deleted test'),
    } for row in rows]

    return TemplateEngine.render_template('admin_dashboard', stats=stats, recent_attempts=recent_attempts)

# Categories
def _category_form_errors(form: Dict[str, str]) -> List[str]:
    errors = []
    if not form['name']:
        errors.append('Name is required.')
    if not form['description']:
        errors.append('Description is required.')
    try:
        if int(form['time_limit']) <= 0:
            errors.append('Time limit must be at least 1 minute.')
    except ValueError:
        errors.append('Time limit must be a whole number of minutes.')
    return errors

def _read_category_form() -> Dict[str, str]:
    return {
        'name': request.form.get('name', '').strip(),
        'description': request.form.get('description', '').strip(),
        'time_limit': request.form.get('time_limit', '').strip(),
    }

@app.route('/admin/categories')
@admin_required
def admin_categories():
    categories = [_from_row(Category, row) for row in fetch_rows('categories', 'categories', order='name')]
    return TemplateEngine.render_template('admin_categories', categories=categories)

@app.route('/admin/categories/new', methods=['GET', 'POST'])
@admin_required
def admin_category_create():
    form = {'name': '', 'description': '', 'time_limit': '30'}
    if request.method == 'POST':
        form = _read_category_form()
        errors = _category_form_errors(form)
        if errors:
            return TemplateEngine.render_template('admin_category_form', category=None, form=form, errors=errors)

        try:
            store.insert('categories', {
                'name': form['name'],
                'description': form['description'],
                'time_limit': int(form['time_limit']) * 60,
            })
        except StoreError as e:
            log_store_error('Error creating category', e)
            flash('Failed to create category.', 'danger')
            return TemplateEngine.render_template('admin_category_form', category=None, form=form, errors=[])

        logger.info(f"Category '{form['name']}' created")
        flash('Category created successfully.', 'success')
        return redirect(url_for('admin_categories'))

    return TemplateEngine.render_template('admin_category_form', category=None, form=form, errors=[])

@app.route('/admin/categories/<category_id>/edit', methods=['GET', 'POST'])
@admin_required
def admin_category_edit(category_id):
    row = fetch_row('categories', {'id': category_id}, 'category')
    if row is None:
        flash('Category not found.', 'danger')
        return redirect(url_for('admin_categories'))
    category = _from_row(Category, row)

    form = {'name': category.name, 'description': category.description,
            'time_limit': str(category.time_limit // 60)}
    if request.method == 'POST':
        form = _read_category_form()
        errors = _category_form_errors(form)
        if errors:
            return TemplateEngine.render_template('admin_category_form', category=category, form=form, errors=errors)

        try:
            store.update('categories', {
                'name': form['name'],
                'description': form['description'],
                'time_limit': int(form['time_limit']) * 60,
            }, {'id': category_id})
        except StoreError as e:
            log_store_error('Error updating category', e)
            flash('Failed to update category.', 'danger')
            return TemplateEngine.render_template('admin_category_form', category=category, form=form, errors=[])

        flash('Category updated successfully.', 'success')
        return redirect(url_for('admin_categories'))

    return TemplateEngine.render_template('admin_category_form', category=category, form=form, errors=[])

@app.route('/admin/categories/<category_id>/delete', methods=['POST'])
@admin_required
def admin_category_delete(category_id):
    try:
        store.delete('categories', {'id': category_id})
    except StoreError as e:
        log_store_error('Error deleting category', e)
        flash('Failed to delete category.', 'danger')
        return redirect(url_for('admin_categories'))

    flash('Category deleted.', 'success')
    return redirect(url_for('admin_categories'))

# Tests
def _read_test_form() -> Dict[str, str]:
    return {
        'title': request.form.get('title', '').strip(),
        'category_id': request.form.get('category_id', '').strip(),
    }

def _test_form_errors(form: Dict[str, str], categories: List[Category]) -> List[str]:
    errors = []
    if not form['title']:
        errors.append('Title is required.')
    if form['category_id'] not in {c.id for c in categories}:
        errors.append('Please select a category.')
    return errors

@app.route('/admin/tests')
@admin_required
def admin_tests():
    tests = [_from_row(Test, row) for row in fetch_rows('tests', 'tests', order='created_at', descending=True)]
    categories = {row['id']: row['name'] for row in fetch_rows('categories', 'categories', columns=('id', 'name'))}
    question_counts = {}
    for row in fetch_rows('questions', 'question counts', columns=('test_id',)):
        question_counts[row['test_id']] = question_counts.get(row['test_id'], 0) + 1

    items = [{
        'test': test,
        'category_name': categories.get(test.category_id, 'Unknown'),
        'question_count': question_counts.get(test.id, 0),
    } for test in tests]
    return TemplateEngine.render_template('admin_tests', tests=items)

@app.route('/admin/tests/new', methods=['GET', 'POST'])
@admin_required
def admin_test_create():
    categories = [_from_row(Category, row) for row in fetch_rows('categories', 'categories', order='name')]
    form = {'title': '', 'category_id': ''}
    if request.method == 'POST':
        form = _read_test_form()
        errors = _test_form_errors(form, categories)
        if errors:
            return TemplateEngine.render_template('admin_test_form', test=None, form=form,
                                                  categories=categories, errors=errors)
        try:
            row = store.insert('tests', {'title': form['title'], 'category_id': form['category_id']})
        except StoreError as e:
            log_store_error('Error creating test', e)
            flash('Failed to create test.', 'danger')
            return TemplateEngine.render_template('admin_test_form', test=None, form=form,
                                                  categories=categories, errors=[])

        logger.info(f"Test '{form['title']}' created")
        flash('Test created. Now add some questions.', 'success')
        return redirect(url_for('admin_questions', test_id=row['id']))

    return TemplateEngine.render_template('admin_test_form', test=None, form=form, categories=categories, errors=[])

@app.route('/admin/tests/<test_id>/edit', methods=['GET', 'POST'])
@admin_required
def admin_test_edit(test_id):
    row = fetch_row('tests', {'id': test_id}, 'test')
    if row is None:
        flash('Test not found.', 'danger')
        return redirect(url_for('admin_tests'))
    test = _from_row(Test, row)
    categories = [_from_row(Category, r) for r in fetch_rows('categories', 'categories', order='name')]

    form = {'title': test.title, 'category_id': test.category_id}
    if request.method == 'POST':
        form = _read_test_form()
        errors = _test_form_errors(form, categories)
        if errors:
            return TemplateEngine.render_template('admin_test_form', test=test, form=form,
                                                  categories=categories, errors=errors)
        try:
            store.update('tests', {'title': form['title'], 'category_id': form['category_id']}, {'id': test_id})
        except StoreError as e:
            log_store_error('Error updating test', e)
            flash('Failed to update test.', 'danger')
            return TemplateEngine.render_template('admin_test_form', test=test, form=form,
                                                  categories=categories, errors=[])

        flash('Test updated successfully.', 'success')
        return redirect(url_for('admin_tests'))

    return TemplateEngine.render_template('admin_test_form', test=test, form=form, categories=categories, errors=[])

@app.route('/admin/tests/<test_id>/delete', methods=['POST'])
@admin_required
def admin_test_delete(test_id):
    try:
        store.delete('tests', {'id': test_id})
    except StoreError as e:
        log_store_error('Error deleting test', e)
        flash('Failed to delete test.', 'danger')
        return redirect(url_for('admin_tests'))

    flash('Test deleted.', 'success')
    return redirect(url_for('admin_tests'))

# Questions
def _read_question_form() -> Dict[str, Any]:
    form = {
        'question_text': request.form.get('question_text', '').strip(),
        'image_url': request.form.get('image_url', '').strip(),
        'correct_answer': normalize_selection(request.form.get('correct_answer')),
    }
    for i in range(4):
        form[f'answer_{i}'] = request.form.get(f'answer_{i}', '').strip()
    return form

def _question_form_errors(form: Dict[str, Any]) -> List[str]:
    errors = []
    if not form['question_text']:
        errors.append('Question text is required.')
    if not all(form[f'answer_{i}'] for i in range(4)):
        errors.append('All four answers are required.')
    if form['correct_answer'] == UNANSWERED:
        errors.append('Select the correct answer.')
    return errors

def _question_values(form: Dict[str, Any]) -> Dict[str, Any]:
    values = {key: form[key] for key in ('question_text', 'answer_0', 'answer_1', 'answer_2', 'answer_3',
                                         'correct_answer')}
    values['image_url'] = form['image_url'] or None
    return values

def _load_admin_test(test_id: str) -> Optional[Test]:
    row = fetch_row('tests', {'id': test_id}, 'test')
    return _from_row(Test, row) if row else None

@app.route('/admin/tests/<test_id>/questions')
@admin_required
def admin_questions(test_id):
    test = _load_admin_test(test_id)
    if test is None:
        flash('Test not found.', 'danger')
        return redirect(url_for('admin_tests'))
    category = fetch_row('categories', {'id': test.category_id}, 'category')
    return TemplateEngine.render_template('admin_questions', test=test, questions=load_questions(test_id),
                                          category_name=category['name'] if category else '')

@app.route('/admin/tests/<test_id>/questions/new', methods=['GET', 'POST'])
@admin_required
def admin_question_create(test_id):
    test = _load_admin_test(test_id)
    if test is None:
        flash('Test not found.', 'danger')
        return redirect(url_for('admin_tests'))

    form = {'question_text': '', 'image_url': '', 'correct_answer': 0,
            'answer_0': '', 'answer_1': '', 'answer_2': '', 'answer_3': ''}
    if request.method == 'POST':
        form = _read_question_form()
        errors = _question_form_errors(form)
        if errors:
            return TemplateEngine.render_template('admin_question_form', test=test, question=None,
                                                  form=form, errors=errors)

        existing = fetch_rows('questions', 'questions', filters={'test_id': test_id}, columns=('order_index',))
        next_index = max([r['order_index'] for r in existing], default=-1) + 1
        try:
            store.insert('questions', {**_question_values(form), 'test_id': test_id, 'order_index': next_index})
        except StoreError as e:
            log_store_error('Error creating question', e)
            flash('Failed to add question.', 'danger')
            return TemplateEngine.render_template('admin_question_form', test=test, question=None,
                                                  form=form, errors=[])

        flash('Question added.', 'success')
        return redirect(url_for('admin_questions', test_id=test_id))

    return TemplateEngine.render_template('admin_question_form', test=test, question=None, form=form, errors=[])

@app.route('/admin/tests/<test_id>/questions/<question_id>/edit', methods=['GET', 'POST'])
@admin_required
def admin_question_edit(test_id, question_id):
    test = _load_admin_test(test_id)
    row = fetch_row('questions', {'id': question_id, 'test_id': test_id}, 'question')
    if test is None or row is None:
        flash('Question not found.', 'danger')
        return redirect(url_for('admin_tests'))
    question = _from_row(Question, row)

    form = {key: row.get(key) for key in ('question_text', 'correct_answer', 'answer_0', 'answer_1',
                                          'answer_2', 'answer_3')}
    form['image_url'] = question.image_url or ''
    if request.method == 'POST':
        form = _read_question_form()
        errors = _question_form_errors(form)
        if errors:
            return TemplateEngine.render_template('admin_question_form', test=test, question=question,
                                                  form=form, errors=errors)
        try:
            store.update('questions', _question_values(form), {'id': question_id})
        except StoreError as e:
            log_store_error('Error updating question', e)
            flash('Failed to update question.', 'danger')
            return TemplateEngine.render_template('admin_question_form', test=test, question=question,
                                                  form=form, errors=[])

        flash('Question updated.', 'success')
        return redirect(url_for('admin_questions', test_id=test_id))

    return TemplateEngine.render_template('admin_question_form', test=test, question=question,
                                          form=form, errors=[])

@app.route('/admin/tests/<test_id>/questions/<question_id>/delete', methods=['POST'])
@admin_required
def admin_question_delete(test_id, question_id):
    try:
        store.delete('questions', {'id': question_id, 'test_id': test_id})
    except StoreError as e:
        log_store_error('Error deleting question', e)
        flash('Failed to delete question.', 'danger')
        return redirect(url_for('admin_questions', test_id=test_id))

    flash('Question deleted.', 'success')
    return redirect(url_for('admin_questions', test_id=test_id))

# Users and Settings
@app.route('/admin/users')
@admin_required
def admin_users():
    """Accounts with status and per-user attempt statistics"""
    now = utcnow()
    accounts = [_from_row(Account, row)
                for row in fetch_rows('accounts', 'accounts', order='created_at', descending=True)]
    completed = fetch_rows('attempts', 'attempts', filters={'completed_at': NOT_NULL},
                           columns=('account_id', 'score', 'passed'))

    users = []
    for account in accounts:
        own = [a for a in completed if a['account_id'] == account.id]
        scores = [a['score'] or 0 for a in own]
        status_text, status_color = describe_account_status(account, now)
        users.append({
            'account': account,
            'status_text': status_text,
            'status_color': status_color,
            'stats': {
                'total_attempts': len(own),
                'passed_attempts': len([a for a in own if a['passed']]),
                'average_score': round(sum(scores) / len(scores)) if scores else 0,
            },
        })
    return TemplateEngine.render_template('admin_users', users=users)

@app.route('/admin/settings')
@admin_required
def admin_settings():
    return TemplateEngine.render_template('admin_settings', settings=load_site_settings(),
                                          telegram_key=TELEGRAM_SETTING_KEY)

# Admin API Routes
MAX_GRANT_MONTHS = 120

@app.route('/api/admin/grant-subscription', methods=['POST'])
@api_admin_required
def api_grant_subscription():
    """Extend a user's subscription by whole calendar months"""
    try:
        data = request.get_json(silent=True) or {}
        user_id = data.get('userId')
        months = data.get('months')
        if not isinstance(user_id, str) or not user_id or isinstance(months, bool) \
                or not isinstance(months, int) or not 0 < months <= MAX_GRANT_MONTHS:
            return jsonify({'error': f'Invalid request: userId and between 1 and {MAX_GRANT_MONTHS} months are required'}), 400

        account = store.get('accounts', {'id': user_id}, columns=('id', 'email', 'subscription_ends_at'))
        if account is None:
            return jsonify({'error': 'User not found'}), 404

        try:
            current_end = parse_timestamp(account.get('subscription_ends_at'))
        except ValueError:
            current_end = None
        new_end = compute_subscription_end(current_end, months, utcnow())

        store.update('accounts', {'subscription_ends_at': to_iso(new_end)}, {'id': user_id})
        logger.info(f"Granted {months} month(s) to {account.get('email')}, subscription ends {to_iso(new_end)}")
        return jsonify({'success': True, 'subscriptionEndsAt': to_iso(new_end)})

    except StoreError as e:
        log_store_error('Error granting subscription', e)
        return jsonify({'error': f'Failed to update subscription: {e.message}'}), 500
    except Exception:
        logger.exception('Error in grant-subscription')
        return jsonify({'error': 'Internal server error'}), 500

@app.route('/api/admin/toggle-admin', methods=['POST'])
@api_admin_required
def api_toggle_admin():
    """Grant or revoke the admin flag; admins cannot demote themselves"""
    try:
        data = request.get_json(silent=True) or {}
        user_id = data.get('userId')
        is_admin = data.get('isAdmin')
        if not isinstance(user_id, str) or not user_id or not isinstance(is_admin, bool):
            return jsonify({'error': 'Invalid request: userId and isAdmin are required'}), 400

        identity = get_current_identity()
        if user_id == identity.id and not is_admin:
            return jsonify({'error': 'Cannot remove your own admin status. Ask another admin to do it.'}), 400

        updated = store.update('accounts', {'is_admin': is_admin}, {'id': user_id})
        if not updated:
            return jsonify({'error': 'User not found'}), 404

        logger.info(f"Admin flag for {user_id} set to {is_admin} by {identity.email}")
        return jsonify({'success': True, 'isAdmin': is_admin})

    except StoreError as e:
        log_store_error('Error toggling admin status', e)
        return jsonify({'error': f'Failed to update admin status: {e.message}'}), 500
    except Exception:
        logger.exception('Error in toggle-admin')
        return jsonify({'error': 'Internal server error'}), 500

@app.route('/api/admin/update-settings', methods=['POST'])
@api_admin_required
def api_update_settings():
    """Upsert one settings row"""
    try:
        data = request.get_json(silent=True) or {}
        key = data.get('key')
        value = data.get('value')
        if not isinstance(key, str) or not key or not isinstance(value, str) or not value:
            return jsonify({'error': 'Invalid request: key and value are required'}), 400

        identity = get_current_identity()
        if key == TELEGRAM_SETTING_KEY:
            value = value.strip().lstrip('@')

        store.upsert('settings', {
            'key': key,
            'value': value,
            'updated_by': identity.id,
            'updated_at': to_iso(utcnow()),
        }, on_conflict='key')
        logger.info(f"Setting '{key}' updated by {identity.email}")
        return jsonify({'success': True})

    except StoreError as e:
        log_store_error('Error updating settings', e)
        return jsonify({'error': f'Failed to update settings: {e.message}'}), 500
    except Exception:
        logger.exception('Error in update-settings')
        return jsonify({'error': 'Internal server error'}), 500

"""
END OF SECTION 5: Routes
"""

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    app.run(host='0.0.0.0', port=port, debug=debug)
