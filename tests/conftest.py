"""Pytest configuration and fixtures."""

import threading
from contextlib import contextmanager

import pytest
import requests
from fastapi.testclient import TestClient
from passlib.context import CryptContext
from sqlalchemy import event
from sqlmodel import SQLModel

import security
from accounts import AccountService
from app import create_app
from config import Settings
from database import Database
from errors import GatewayError
from gateway import GatewayResponse, PaymentGateway, RESULT_SUCCESS
from payments import PaymentService
from subusers import SubuserService


class FakeGateway(PaymentGateway):
    """Deterministic gateway double.

    mode: accept | reject | timeout | unreachable
    """
    def __init__(self, settings, mode='accept'):
        super().__init__(settings)
        self.mode = mode
        self.calls = []
        self.on_initiate = None

    def initiate(self, order_ref, amount, account_ref, order_info, redirect_url, notify_url):
        self.calls.append({
            'order_ref': order_ref, 'amount': amount, 'account_ref': account_ref,
            'redirect_url': redirect_url, 'notify_url': notify_url,
        })
        if self.on_initiate is not None:
            self.on_initiate()
        request_id = f"REQ-{len(self.calls)}"
        if self.mode == 'accept':
            return GatewayResponse(RESULT_SUCCESS, 'Success', pay_url=f"https://pay.test/{order_ref}",
                                   correlation_id=request_id, raw={'requestId': request_id})
        if self.mode == 'reject':
            return GatewayResponse(1001, 'Momo processing failed, please try again.')
        if self.mode == 'timeout':
            return GatewayResponse(-1, 'Payment gateway timed out.')
        raise GatewayError("Payment gateway is unreachable.", detail=str(requests.ConnectionError()))


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    """Use cheap bcrypt rounds so tests stay fast."""
    monkeypatch.setattr(security, 'pwd_context', CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url='sqlite://',
        environment='development',
        jwt_secret='test-secret',
        momo_mode='mock',
        momo_access_key='test-access',
        momo_secret_key='test-secret-key',
        momo_partner_code='MOMOTEST',
        momo_verify_signature=True,
        upload_dir=tmp_path / 'uploads',
    )


@pytest.fixture
def db(settings):
    database = Database(settings)
    database.init_db()
    try:
        yield database
    finally:
        SQLModel.metadata.drop_all(database.engine)
        database.dispose()


@pytest.fixture
def file_db(settings, tmp_path):
    """File-backed SQLite database, so separate threads get separate connections."""
    settings.database_url = f"sqlite:///{tmp_path / 'fmcarer.db'}"
    database = Database(settings)
    database.init_db()
    try:
        yield database
    finally:
        database.dispose()


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings)


@pytest.fixture
def accounts(db, settings):
    return AccountService(db, settings)


@pytest.fixture
def subusers(db, settings):
    return SubuserService(db, settings)


@pytest.fixture
def payments(db, gateway, settings):
    return PaymentService(db, gateway, settings)


@pytest.fixture
def parent(accounts):
    return accounts.register_primary('parent@example.com', 'parent-pw', 'Parent One')


@pytest.fixture
def client(settings, db, gateway):
    return TestClient(create_app(settings, db, gateway))


def signed_ipn(gateway, payment, result_code=0, trans_id='TXN-1', message='Successful.', amount=None):
    """Build a Momo IPN payload for a payment, signed with the shared secret."""
    payload = {
        'orderId': payment.order_ref,
        'requestId': payment.gateway_ref,
        'amount': int(payment.amount) if amount is None else amount,
        'resultCode': result_code,
        'message': message,
        'transId': trans_id,
    }
    payload['signature'] = gateway.callback_signature(payload)
    return payload


@contextmanager
def interleave(engine, statement_prefix, action):
    """Run `action` once on another thread right before this thread's first
    statement starting with `statement_prefix`, and wait for it to finish.

    The outcome of the other thread is collected in the yielded dict under
    'result' or 'error'.
    """
    outcome = {}
    owner = threading.get_ident()

    def run():
        try:
            outcome['result'] = action()
        except Exception as exc:  # reported back to the test
            outcome['error'] = exc

    def before_execute(conn, cursor, statement, parameters, context, executemany):
        if outcome.get('started') or threading.get_ident() != owner:
            return
        if statement.lstrip().upper().startswith(statement_prefix.upper()):
            outcome['started'] = True
            worker = threading.Thread(target=run)
            worker.start()
            worker.join(timeout=30)

    event.listen(engine, 'before_cursor_execute', before_execute)
    try:
        yield outcome
    finally:
        event.remove(engine, 'before_cursor_execute', before_execute)
