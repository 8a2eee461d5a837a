# tests/conftest.py
"""
Shared pytest configuration and fixtures for the auth client test suite.

``FakeBackend`` is a small stateful stand-in for the Prayantra auth API,
served through ``httpx.MockTransport`` so concurrent requests interleave the
same way they would against a real server.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
import pytest

from prayantra_auth.client import AuthClient
from prayantra_auth.config import AuthConfig
from prayantra_auth.device import DeviceMetadata
from prayantra_auth.storage import InMemoryKeyValueStore

logging.basicConfig(level=logging.INFO)

API_PREFIX = '/api/v1'
BASE_URL = 'http://auth.test'


def _ok(data: Optional[Dict[str, Any]] = None, message: Optional[str] = None) -> httpx.Response:
    return httpx.Response(200, json={'success': True, 'data': data or {}, 'message': message})


def _fail(status_code: int, message: str, **extra) -> httpx.Response:
    return httpx.Response(status_code, json={'success': False, 'message': message, **extra})


class FakeBackend:
    """In-memory auth backend with single-use refresh tokens."""

    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.otp_code = '123456'
        self.access_tokens: Set[str] = set()
        self.refresh_tokens: Set[str] = set()
        self.pairable_sessions: Set[str] = set()
        self.requests: List[httpx.Request] = []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.reject_refresh = False
        self.delays: Dict[str, float] = {}
        self.overrides: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self._ids = itertools.count(1)

    def add_account(
        self,
        phone_number: str,
        subject_id: str = 'admin-1',
        mpin: Optional[str] = None,
        trusted_devices: Optional[Set[str]] = None,
    ) -> Dict[str, Any]:
        account = {'id': subject_id, 'mpin': mpin, 'trusted': set(trusted_devices or ())}
        self.accounts[phone_number] = account
        return account

    def issue_tokens(self) -> Dict[str, Any]:
        n = next(self._ids)
        tokens = {'access_token': f'access-{n}', 'refresh_token': f'refresh-{n}', 'expires_in': 300}
        self.access_tokens = {tokens['access_token']}
        self.refresh_tokens.add(tokens['refresh_token'])
        return tokens

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == API_PREFIX + path]

    def _account_by_id(self, subject_id: str) -> Optional[Dict[str, Any]]:
        for account in self.accounts.values():
            if account['id'] == subject_id:
                return account
        return None

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get('authorization', '')
        return header.startswith('Bearer ') and header[len('Bearer ') :] in self.access_tokens

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len(API_PREFIX) :]
        body = json.loads(request.content) if request.content else {}
        role_id = 'admin_id' if path.startswith('/admin-auth') else 'user_id'

        if path in self.delays:
            await asyncio.sleep(self.delays[path])
        if path in self.overrides:
            status_code, payload = self.overrides[path]
            return httpx.Response(status_code, json=payload)

        if path.endswith('/login/initiate'):
            account = self.accounts.get(body['phone_number'])
            if account is None:
                return _ok({'user_exists': False, 'has_mpin': False, 'device_trusted': False})
            return _ok(
                {
                    'user_exists': True,
                    'has_mpin': account['mpin'] is not None,
                    'device_trusted': body.get('device_id') in account['trusted'],
                    role_id: account['id'],
                }
            )

        if path == '/otp/send':
            return _ok(message='OTP sent')

        if path.endswith('/login/verify-otp'):
            if body.get('otp') != self.otp_code:
                return _fail(401, 'Invalid OTP')
            account = self.accounts.setdefault(
                body['phone_number'], {'id': f'new-{next(self._ids)}', 'mpin': None, 'trusted': set()}
            )
            account['trusted'].add(body.get('device_id'))
            return _ok({role_id: account['id'], 'has_mpin': account['mpin'] is not None})

        if path.endswith('/mpin/setup'):
            account = self._account_by_id(body.get(role_id))
            if account is None:
                return _fail(404, 'Account not found')
            account['mpin'] = body['mpin']
            return _ok(message='MPIN set')

        if path.endswith('/login/verify-mpin'):
            account = self._account_by_id(body.get(role_id))
            if account is None or account['mpin'] != body.get('mpin'):
                return _fail(401, 'Invalid MPIN')
            return _ok(
                {
                    'tokens': self.issue_tokens(),
                    'admin': {'id': account['id']},
                    'company_context': {'company_id': 'c-1'},
                }
            )

        if path.endswith('/refresh'):
            self.refresh_calls += 1
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            token = body.get('refresh_token')
            if self.reject_refresh or token not in self.refresh_tokens:
                return _fail(401, 'Invalid refresh token')
            self.refresh_tokens.discard(token)
            return _ok({'tokens': self.issue_tokens()})

        if path.endswith('/mpin/forgot'):
            return _ok(message='Reset OTP sent')

        if path.endswith('/mpin/forgot/verify'):
            if body.get('otp_code') != self.otp_code:
                return _fail(400, 'Invalid OTP')
            account = self.accounts.get(body['phone_number'])
            account['mpin'] = body['new_mpin']
            return _ok({role_id: account['id']}, message='MPIN reset')

        if path.endswith('/logout'):
            return _ok(message='Logged out')

        if not self._authorized(request):
            return _fail(401, 'Token expired')

        if path == '/auth/validate':
            return _ok({'valid': True})
        if path == '/web/login/pair':
            if body.get('session_id') not in self.pairable_sessions:
                return _fail(400, 'Session expired')
            return _ok({'paired': True})
        if path.endswith('/mpin/change'):
            account = self._account_by_id(body.get(role_id))
            if account is None or account['mpin'] != body.get('current_mpin'):
                return _fail(400, 'Current MPIN is incorrect')
            account['mpin'] = body['new_mpin']
            return _ok(message='MPIN changed')
        if path == '/admin-auth/device/trust-status':
            device_id = request.url.params.get('device_id')
            trusted = any(device_id in account['trusted'] for account in self.accounts.values())
            return _ok({'device_id': device_id, 'trusted': trusted})
        if path == '/admin-auth/device/revoke-trust':
            for account in self.accounts.values():
                account['trusted'].discard(body.get('device_id'))
            return _ok({'revoked': True})
        if path == '/companies':
            return _ok({'companies': []})

        return _fail(404, f'No route for {path}')


@pytest.fixture
def config(tmp_path):
    """Client config with storage under a temporary directory"""
    return AuthConfig(base_url=BASE_URL, data_dir=tmp_path)


@pytest.fixture
def metadata():
    return DeviceMetadata(model='Pixel 8', brand='Google', platform='android', os_version='14')


@pytest.fixture
def cache():
    return InMemoryKeyValueStore()


@pytest.fixture
def vault():
    return InMemoryKeyValueStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(config, cache, vault, metadata, backend):
    """AuthClient wired to the fake backend and in-memory stores"""
    return AuthClient(
        config,
        cache=cache,
        vault=vault,
        metadata=metadata,
        http_transport=httpx.MockTransport(backend.handler),
    )


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line('markers', 'unit: Unit tests (fast, no external dependencies)')
    config.addinivalue_line('markers', 'integration: Integration tests against a stubbed backend')
    config.addinivalue_line('markers', 'lmdb: Tests requiring LMDB')
