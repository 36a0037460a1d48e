"""
HTTP tests for the access, transaction and admin blueprints.
"""
import base64
import json
import uuid

import pytest

from qr_gate.errors import StorageUnavailable
from qr_gate.models import AccessLog, Transaction
from qr_gate.services import signing
from qr_gate.services.transactions import TransactionStore

L1 = str(uuid.uuid4())
L2 = str(uuid.uuid4())


def _verify(client, qr_data, location_id=L1, **extra):
    return client.post('/access/verify-qr', json={'qr_data': qr_data, 'location_id': location_id, **extra})


def test_health(client):
    res = client.get('/health')
    assert res.status_code == 200
    assert res.get_json() == {'ok': True}


def test_request_id_is_echoed(client):
    res = client.get('/health', headers={'X-Request-ID': 'abc-123'})
    assert res.headers['X-Request-ID'] == 'abc-123'
    assert client.get('/health').headers['X-Request-ID']


class TestVerifyQR:
    def test_scan_then_rescan(self, client, db_session, profile, transaction, qr_for):
        qr = qr_for(transaction, profile.qr_secret)

        res = _verify(client, qr, L1)
        assert res.status_code == 200
        body = res.get_json()
        assert body['valid'] is True
        assert body['validation_result'] == 'valid'
        assert body['transaction']['id'] == transaction.id
        assert body['transaction']['total'] == 5.0

        res = _verify(client, qr, L2)
        assert res.status_code == 200
        body = res.get_json()
        assert body['valid'] is False
        assert body['validation_result'] == 'already_used'

        txn = TransactionStore(db_session).get(transaction.id)
        assert txn.qr_used is True
        assert txn.qr_used_location == L1

    def test_malformed_qr_is_a_business_outcome(self, client, db_session):
        res = _verify(client, 'bm90IGpzb24=')
        assert res.status_code == 200
        assert res.get_json()['validation_result'] == 'invalid'
        assert res.get_json()['transaction'] is None

    def test_forged_qr(self, client, db_session, transaction, qr_for):
        res = _verify(client, qr_for(transaction, 'not-the-users-secret'))
        assert res.get_json()['validation_result'] == 'falsified'

    def test_expired_qr(self, client, db_session, profile, transaction, qr_for):
        res = _verify(client, qr_for(transaction, profile.qr_secret, timestamp=1_000_000_000_000))
        assert res.get_json()['validation_result'] == 'expired'

    @pytest.mark.parametrize('body, field', [
        ({'location_id': L1}, 'qr_data'),
        ({'qr_data': 'abc'}, 'location_id'),
        ({'qr_data': 'abc', 'location_id': 'front-desk'}, 'location_id'),
        ({'qr_data': 'abc', 'location_id': L1, 'scanned_by': 'bob'}, 'scanned_by'),
    ])
    def test_bad_request(self, client, db_session, body, field):
        res = client.post('/access/verify-qr', json=body)
        assert res.status_code == 400
        assert field in res.get_json()['details']

    def test_oversized_number_is_invalid_and_logged(self, client, db_session, profile, transaction, qr_for):
        obj = json.loads(base64.b64decode(qr_for(transaction, profile.qr_secret)))
        obj['items'][0]['price'] = 10 ** 400
        qr = base64.b64encode(json.dumps(obj).encode()).decode()

        res = _verify(client, qr)

        assert res.status_code == 200
        assert res.get_json()['validation_result'] == 'invalid'
        logs = db_session.query(AccessLog).all()
        assert [row.validation_result for row in logs] == ['invalid']

    def test_store_failure_is_503(self, client, db_session, profile, transaction, qr_for, monkeypatch):
        def unavailable(self, transaction_id):
            raise StorageUnavailable('connection refused')

        monkeypatch.setattr(TransactionStore, 'get', unavailable)
        res = _verify(client, qr_for(transaction, profile.qr_secret))
        assert res.status_code == 503

    def test_rate_limit(self, app, client, db_session, monkeypatch):
        monkeypatch.setitem(app.config, 'VERIFY_RATE_LIMIT', 2)
        env = {'REMOTE_ADDR': '203.0.113.%d' % (uuid.uuid4().int % 250)}
        codes = [
            client.post('/access/verify-qr', json={'qr_data': 'x', 'location_id': L1}, environ_base=env).status_code
            for _ in range(3)
        ]
        assert codes[:2] == [200, 200]
        assert codes[2] == 429


class TestAccessLogs:
    def test_every_scan_is_logged(self, client, db_session, profile, transaction, qr_for):
        qr = qr_for(transaction, profile.qr_secret)
        outcomes = [_verify(client, q).get_json()['validation_result'] for q in ('garbage', qr, qr)]

        res = client.get('/access/logs', query_string={'transaction_id': transaction.id})
        body = res.get_json()
        assert res.status_code == 200
        assert body['pagination'] == {'page': 1, 'limit': 20, 'total': 2, 'totalPages': 1}
        assert [e['validation_result'] for e in body['data']] == ['already_used', 'valid']

        everything = client.get('/access/logs').get_json()
        assert everything['pagination']['total'] == 3
        assert sorted(e['validation_result'] for e in everything['data']) == sorted(outcomes)

    def test_pagination_metadata(self, client, db_session):
        for _ in range(5):
            _verify(client, 'garbage')
        body = client.get('/access/logs?page=2&limit=2').get_json()
        assert len(body['data']) == 2
        assert body['pagination'] == {'page': 2, 'limit': 2, 'total': 5, 'totalPages': 3}

    def test_invalid_query(self, client, db_session):
        res = client.get('/access/logs?limit=1000')
        assert res.status_code == 400
        assert 'limit' in res.get_json()['details']

    def test_page_beyond_any_offset(self, client, db_session):
        res = client.get('/access/logs?page=' + '9' * 30)
        assert res.status_code == 400
        assert 'page' in res.get_json()['details']

    def test_stats(self, client, db_session, transaction, qr_for):
        _verify(client, 'garbage')
        _verify(client, qr_for(transaction, 'wrong'))
        assert client.get('/access/stats').get_json() == {'data': {'invalid': 1, 'falsified': 1}}


def _transaction_body(user_id, **overrides):
    body = {
        'user_id': user_id,
        'items': [{'type': 'product', 'id': str(uuid.uuid4()), 'name': 'Bocadillo', 'quantity': 1, 'price': 3.5}],
        'total': 3.5,
    }
    body.update(overrides)
    return body


class TestTransactions:
    def test_sync_then_resync(self, client, db_session, profile):
        body = _transaction_body(profile.id, transaction_id=str(uuid.uuid4()), created_at='2024-06-10T07:00:00Z')
        first = client.post('/transactions/sync', json=body)
        again = client.post('/transactions/sync', json=body)

        assert first.status_code == 201 and first.get_json()['accepted'] is True
        assert again.status_code == 200 and again.get_json()['accepted'] is False
        assert again.get_json()['data']['id'] == body['transaction_id']
        assert db_session.query(Transaction).count() == 1

    def test_sync_unknown_user(self, client, db_session):
        body = _transaction_body(str(uuid.uuid4()), transaction_id=str(uuid.uuid4()), created_at='2024-06-10T07:00:00Z')
        assert client.post('/transactions/sync', json=body).status_code == 404

    def test_create_and_fetch(self, client, db_session, profile):
        txn_id = str(uuid.uuid4())
        res = client.post('/transactions', json=_transaction_body(profile.id, id=txn_id))
        assert res.status_code == 201
        data = res.get_json()['data']
        assert data['status'] == 'completed'
        assert data['qr_used'] is False

        fetched = client.get(f'/transactions/{txn_id.upper()}')
        assert fetched.status_code == 200
        assert fetched.get_json()['data']['total'] == 3.5

    def test_create_duplicate(self, client, db_session, profile):
        body = _transaction_body(profile.id, id=str(uuid.uuid4()))
        client.post('/transactions', json=body)
        assert client.post('/transactions', json=body).status_code == 409

    def test_create_with_oversized_total(self, client, db_session, profile):
        res = client.post('/transactions', json=_transaction_body(profile.id, id=str(uuid.uuid4()), total=10 ** 400))
        assert res.status_code == 400
        assert 'total' in res.get_json()['details']

    def test_create_with_wrong_total(self, client, db_session, profile):
        res = client.post('/transactions', json=_transaction_body(profile.id, id=str(uuid.uuid4()), total=1))
        assert res.status_code == 400
        assert 'total' in res.get_json()['details']

    def test_fetch_unknown(self, client, db_session):
        assert client.get('/transactions/not-a-uuid').status_code == 404
        assert client.get(f'/transactions/{uuid.uuid4()}').status_code == 404


class TestReturns:
    def test_return_after_redemption(self, client, db_session, profile, transaction, qr_for):
        qr = qr_for(transaction, profile.qr_secret)
        _verify(client, qr)
        agua = next(i['id'] for i in transaction.items if i['name'] == 'Agua')

        res = client.post('/returns', json={
            'original_transaction_id': transaction.id,
            'returned_items': [{'item_id': agua, 'quantity': 2}],
            'reason': 'customer changed mind',
        })
        assert res.status_code == 201
        data = res.get_json()['data']
        assert data['refund_amount'] == 3.0
        assert data['new_transaction_id']

        # the old QR is dead for good
        assert _verify(client, qr, L2).get_json()['validation_result'] == 'invalid'

    def test_return_before_redemption(self, client, db_session, transaction):
        agua = next(i['id'] for i in transaction.items if i['name'] == 'Agua')
        res = client.post('/returns', json={
            'original_transaction_id': transaction.id,
            'returned_items': [{'item_id': agua, 'quantity': 1}],
        })
        assert res.status_code == 400


class TestAdmin:
    def test_requires_key(self, client, db_session, transaction):
        res = client.post('/admin/issue-qr', json={'transaction_id': transaction.id})
        assert res.status_code == 401
        res = client.post('/admin/issue-qr', json={'transaction_id': transaction.id}, headers={'X-Admin-Key': 'nope'})
        assert res.status_code == 401

    def test_create_profile(self, client, db_session, admin_headers):
        res = client.post('/admin/profiles', json={'display_name': 'Carla'}, headers=admin_headers)
        assert res.status_code == 201
        body = res.get_json()
        assert body['display_name'] == 'Carla'
        assert len(body['qr_secret']) == 64

    def test_issued_qr_verifies(self, client, db_session, profile, transaction, admin_headers):
        res = client.post('/admin/issue-qr', json={'transaction_id': transaction.id}, headers=admin_headers)
        assert res.status_code == 200
        body = res.get_json()
        assert base64.b64decode(body['qr_png_b64']).startswith(b'\x89PNG')

        payload = signing.decode(body['qr_data'])
        assert signing.verify(profile.qr_secret, payload)
        assert _verify(client, body['qr_data']).get_json()['valid'] is True

    def test_issue_qr_as_png(self, client, db_session, transaction, admin_headers):
        res = client.post(
            '/admin/issue-qr',
            json={'transaction_id': transaction.id},
            headers={**admin_headers, 'Accept': 'image/png'},
        )
        assert res.status_code == 200
        assert res.mimetype == 'image/png'
        assert res.data.startswith(b'\x89PNG')

    def test_issue_qr_unknown_transaction(self, client, db_session, admin_headers):
        res = client.post('/admin/issue-qr', json={'transaction_id': str(uuid.uuid4())}, headers=admin_headers)
        assert res.status_code == 404

    def test_invalidate(self, client, db_session, profile, transaction, qr_for, admin_headers):
        qr = qr_for(transaction, profile.qr_secret)
        url = f'/admin/transactions/{transaction.id}/invalidate'

        res = client.post(url, json={'reason': 'chargeback'}, headers=admin_headers)
        assert res.status_code == 200
        assert res.get_json()['data']['qr_invalidated_reason'] == 'chargeback'

        again = client.post(url, json={'reason': 'other'}, headers=admin_headers)
        assert again.get_json()['data']['qr_invalidated_reason'] == 'chargeback'

        body = _verify(client, qr).get_json()
        assert body['validation_result'] == 'invalid'
        assert 'chargeback' in body['message']
