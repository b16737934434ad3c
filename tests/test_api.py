"""
HTTP and WebSocket endpoint tests
"""
import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

import camerpulse_api
import sentiment_engine
from realtime_relay import RelayHub


class FakeWebSocket:

    def __init__(self):
        self.sent = []

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    def last(self):
        return self.sent[-1]


def _offline(request):
    return httpx.Response(404)


@pytest.fixture
def client(monkeypatch):
    """TestClient without lifespan, so no real database pool is opened."""
    monkeypatch.setattr(camerpulse_api, 'db_pool', None)
    monkeypatch.setattr(camerpulse_api, 'hub', RelayHub())
    monkeypatch.setattr(camerpulse_api, 'http_client', httpx.AsyncClient(transport=httpx.MockTransport(_offline)))
    monkeypatch.setattr(sentiment_engine, 'OPENAI_API_KEY', '')
    camerpulse_api.context_cache.invalidate()
    return TestClient(camerpulse_api.app)


@pytest.fixture
def use_pool(monkeypatch, make_pool):
    def _use(responses=None):
        pool = make_pool(responses)
        monkeypatch.setattr(camerpulse_api, 'db_pool', pool)
        return pool
    return _use


class TestInfo:

    def test_root(self, client):
        data = client.get('/').json()
        assert data['service'] == 'CamerPulse Civic Intelligence'
        assert data['database'] == 'disconnected'
        assert data['endpoints']['realtime'] == '/ws/notifications'

    def test_health_degraded_without_database(self, client):
        assert client.get('/health').json()['status'] == 'degraded'

    def test_health_with_database(self, client, use_pool):
        use_pool()
        data = client.get('/health').json()
        assert data['status'] == 'healthy'
        assert data['database'] is True

    @pytest.mark.parametrize("path,body", [
        ('/api/signals', {'action': 'analyze_signals'}),
        ('/api/daily-report', {'action': 'get_schedule'}),
        ('/api/narrative', {'action': 'list_reports'}),
        ('/api/senate/scrape', {}),
        ('/api/local-sentiment', {'action': 'generate_local_sentiment'}),
    ])
    def test_database_required(self, client, path, body):
        response = client.post(path, json=body)
        assert response.status_code == 503
        assert response.json() == {'detail': 'Database not available'}


class TestProcessor:

    def test_analyze_without_database(self, client):
        response = client.post('/api/processor', json={'action': 'analyze_sentiment',
                                                       'content': 'I love this great country'})
        data = response.json()
        assert response.status_code == 200
        assert data['stored'] is False
        assert data['alert_id'] is None
        assert data['result']['polarity'] == 'positive'

    def test_threat_is_stored_and_published(self, client, use_pool):
        use_pool({'INSERT INTO camerpulse_intelligence_alerts': 'alert-1'})
        listener = FakeWebSocket()
        camerpulse_api.hub.connect(listener)
        camerpulse_api.hub.connections[listener].channels.add('alerts')

        data = client.post('/api/processor', json={
            'action': 'analyze_sentiment',
            'content': 'They will attack and burn the market in Bamenda',
            'platform': 'twitter',
        }).json()

        assert data['result']['threat_level'] == 'high'
        assert data['alert_id'] == 'alert-1'
        assert listener.last()['payload'] == {'alert_id': 'alert-1', 'severity': 'high',
                                              'region': 'Northwest', 'platform': 'twitter'}

    def test_content_required(self, client):
        response = client.post('/api/processor', json={'action': 'analyze_sentiment'})
        assert response.status_code == 400

    def test_bulk_analyze_reports_each_item(self, client):
        data = client.post('/api/processor', json={'action': 'bulk_analyze', 'items': [
            {'content': 'Happy day in Douala', 'content_id': 'a'},
            {'content_id': 'b'},
        ]}).json()

        assert data['processed'] == 2
        assert data['succeeded'] == 1
        assert data['results'][1] == {'success': False, 'error': 'content is required', 'content_id': 'b'}

    def test_stats(self, client, use_pool):
        use_pool({'FROM camerpulse_intelligence_sentiment_logs': 5})
        assert client.post('/api/processor', json={'action': 'get_stats'}).json()['total_analyzed'] == 5

    def test_unknown_action(self, client):
        response = client.post('/api/processor', json={'action': 'explode'})
        assert response.status_code == 400
        assert response.json()['detail'] == 'Unknown action: explode'


class TestLocalSentiment:

    def test_detect_location(self, client):
        data = client.post('/api/local-sentiment', json={'action': 'detect_location',
                                                         'content': 'Flooding in Garoua'}).json()
        assert data['location']['city'] == 'Garoua'
        assert data['location']['region'] == 'North'

    def test_enhance(self, client):
        data = client.post('/api/local-sentiment', json={
            'action': 'enhance_location_detection',
            'content_data': {'content': 'Market fire in Kumba', 'platform': 'facebook'},
        }).json()
        assert data['enhanced_data']['city_detected'] == 'Kumba'
        assert data['enhanced_data']['platform'] == 'facebook'


class TestSignals:

    def test_update_thresholds_requires_drift(self, client, use_pool):
        use_pool()
        response = client.post('/api/signals', json={'action': 'update_thresholds'})
        assert response.status_code == 400

    def test_update_thresholds(self, client, use_pool):
        use_pool()
        data = client.post('/api/signals', json={'action': 'update_thresholds', 'drift': 0.6}).json()
        assert data['thresholds']['urgency_threshold'] == pytest.approx(0.56)

    def test_detect_trends(self, client, use_pool):
        use_pool()
        data = client.post('/api/signals', json={'action': 'detect_trends'}).json()
        assert data == {'success': True, 'trending_topics': []}


class TestDailyReport:

    def test_html_export(self, client, use_pool):
        use_pool()
        data = client.post('/api/daily-report', json={'action': 'export_report', 'date': '2024-05-20',
                                                      'format': 'html'}).json()
        assert data['format'] == 'html'
        assert '2024-05-20' in data['content']

    def test_pdf_export_is_base64(self, client, use_pool):
        use_pool()
        data = client.post('/api/daily-report', json={'action': 'export_report', 'date': '2024-05-20',
                                                      'format': 'pdf'}).json()
        assert data['filename'] == 'camerpulse-report-2024-05-20.pdf'
        assert base64.b64decode(data['content_base64']).startswith(b'%PDF')

    def test_pdf_download(self, client, use_pool):
        use_pool()
        response = client.get('/api/daily-report/2024-05-20.pdf')
        assert response.status_code == 200
        assert response.headers['content-type'] == 'application/pdf'
        assert response.content.startswith(b'%PDF')

    def test_invalid_date(self, client, use_pool):
        use_pool()
        response = client.post('/api/daily-report', json={'action': 'generate_daily_report', 'date': '20/05/2024'})
        assert response.status_code == 400

    def test_unsupported_format(self, client, use_pool):
        use_pool()
        response = client.post('/api/daily-report', json={'action': 'export_report', 'format': 'docx'})
        assert response.status_code == 400


class TestNarrative:

    REPORT = {'id': 'abc12345-report', 'date': '2024-05-20', 'type': 'daily', 'title': 'Calm day',
              'summary': 'Nothing to report.', 'narrative': 'All quiet.', 'key_insights': ['Quiet'],
              'quotable_quotes': [], 'tone': 'analyst', 'metadata': {}, 'generated_at': '2024-05-20T23:00:00+00:00'}

    def test_generate_without_key(self, client, use_pool):
        pool = use_pool()
        data = client.post('/api/narrative', json={'action': 'generate_narrative', 'date': '2024-05-20',
                                                   'type': 'weekly', 'settings': {'focus': 'security'}}).json()
        assert data['report']['source'] == 'rule_based'
        assert data['report']['type'] == 'weekly'
        assert data['report']['title'] == 'Weekly Civic Intelligence Report - 2024-05-20'
        assert pool.conn.queries('execute', 'INSERT INTO camerpulse_intelligence_config')

    def test_invalid_settings(self, client, use_pool):
        use_pool()
        response = client.post('/api/narrative', json={'action': 'generate_narrative',
                                                       'settings': {'tone': 'sarcastic'}})
        assert response.status_code == 400
        assert response.json()['detail'][0]['loc'] == ['tone']

    def test_unknown_type(self, client, use_pool):
        use_pool()
        response = client.post('/api/narrative', json={'action': 'generate_narrative', 'type': 'monthly'})
        assert response.status_code == 400

    def test_list_reports(self, client, use_pool):
        use_pool({'ORDER BY updated_at DESC': [{'config_value': json.dumps(self.REPORT)}]})
        data = client.post('/api/narrative', json={'action': 'list_reports', 'limit': 5}).json()
        assert data['reports'] == [self.REPORT]

    @pytest.mark.parametrize("fmt,marker", [('html', '<h1>Calm day</h1>'), ('txt', 'CALM DAY')])
    def test_export(self, client, use_pool, fmt, marker):
        use_pool({'WHERE config_key = $1 AND config_type': json.dumps(self.REPORT)})
        data = client.post('/api/narrative', json={'action': 'export_narrative', 'report_id': 'abc12345-report',
                                                   'format': fmt}).json()
        assert data['format'] == fmt
        assert marker in data['content']

    def test_export_pdf(self, client, use_pool):
        use_pool({'WHERE config_key = $1 AND config_type': json.dumps(self.REPORT)})
        data = client.post('/api/narrative', json={'action': 'export_narrative', 'report_id': 'abc12345-report',
                                                   'format': 'pdf'}).json()
        assert data['filename'] == 'camerpulse-narrative-2024-05-20-abc12345.pdf'
        assert base64.b64decode(data['content_base64']).startswith(b'%PDF')

    def test_missing_report(self, client, use_pool):
        use_pool()
        response = client.post('/api/narrative', json={'action': 'export_narrative', 'report_id': 'gone'})
        assert response.status_code == 404

    def test_report_id_required(self, client, use_pool):
        use_pool()
        response = client.post('/api/narrative', json={'action': 'send_narrative'})
        assert response.status_code == 400

    def test_send_reports_failed_delivery(self, client, use_pool):
        use_pool({'WHERE config_key = $1 AND config_type': json.dumps(self.REPORT)})
        data = client.post('/api/narrative', json={
            'action': 'send_narrative', 'report_id': 'abc12345-report',
            'config': {'telegram_enabled': True, 'telegram_bot_token': '123456:token', 'telegram_admin_chat_id': '42'}
        }).json()
        assert data['recipient_count'] == 1
        assert data['success_count'] == 0

    def test_unknown_action(self, client, use_pool):
        use_pool()
        response = client.post('/api/narrative', json={'action': 'translate'})
        assert response.status_code == 400


class TestPayments:

    PAYMENT = {'order_id': 'ORD-1', 'amount': 5000, 'phone': '237670000000', 'payment_method': 'MTN'}

    def test_rate_limited(self, client, use_pool):
        use_pool({'FROM payment_rate_limits': {'id': 1, 'request_count': 10, 'blocked_until': None}})

        response = client.post('/api/payments/pay', json=self.PAYMENT)

        assert response.status_code == 429
        assert response.headers['retry-after'] == '3600'
        assert response.json()['error'] == 'Rate limit exceeded'

    def test_amount_out_of_range(self, client, use_pool):
        use_pool()
        response = client.post('/api/payments/pay', json={**self.PAYMENT, 'amount': 10})
        assert response.status_code == 400
        assert response.json() == {'error': 'Amount must be between 100 and 1,000,000 XAF'}

    def test_callback_for_unknown_order(self, client, use_pool):
        use_pool()
        response = client.post('/api/payments/callback', json={'order_id': 'nope', 'status': 'SUCCESS'})
        assert response.status_code == 404
        assert response.json() == {'error': 'Transaction not found'}

    def test_callback_publishes_payment_event(self, client, use_pool):
        use_pool({'SELECT * FROM nokash_transactions WHERE order_id': {
            'id': 'tx-1', 'order_id': 'ORD-1', 'status': 'PENDING', 'amount': 5000,
            'notification_sent': False, 'user_id': None,
        }})
        listener = FakeWebSocket()
        camerpulse_api.hub.connect(listener)
        camerpulse_api.hub.connections[listener].channels.add('payments')

        response = client.post('/api/payments/callback', json={'order_id': 'ORD-1', 'status': 'SUCCESS'})

        assert response.json() == {'success': True, 'message': 'Callback processed'}
        assert listener.last()['channel'] == 'payments'
        assert listener.last()['payload'] == {'order_id': 'ORD-1', 'status': 'SUCCESS', 'amount': 5000}

    def test_action_endpoint(self, client, use_pool):
        use_pool()
        assert client.post('/api/payments', json={'action': 'refund'}).status_code == 400
        assert client.post('/api/payments', json={'action': 'pay', 'amount': 'lots'}).status_code == 400
        assert client.post('/api/payments', json={'action': 'status'}).status_code == 400
        assert client.post('/api/payments', json={'action': 'history'}).json() == {'success': True,
                                                                                   'transactions': []}

    def test_analytics_days_must_be_positive(self, client, use_pool):
        use_pool()
        assert client.get('/api/payments/analytics', params={'days': 0}).status_code == 400
        assert client.get('/api/payments/analytics').json()['analytics']['total_transactions'] == 0


class TestAlertBot:

    def test_status_without_credentials(self, client, monkeypatch):
        monkeypatch.setattr('alert_bot.TELEGRAM_BOT_TOKEN', '')
        monkeypatch.setattr('alert_bot.WHATSAPP_ACCESS_TOKEN', '')
        data = client.post('/api/alert-bot', json={'action': 'status'}).json()
        assert data['telegram']['connected'] is False
        assert data['whatsapp']['connected'] is False

    def test_broadcast_unknown_alert(self, client, use_pool):
        use_pool()
        response = client.post('/api/alert-bot', json={'action': 'broadcast_alert', 'alert_id': 'missing'})
        assert response.status_code == 404

    @pytest.mark.parametrize("action", ['broadcast_alert', 'send_digest'])
    def test_malformed_config(self, client, use_pool, action):
        use_pool()
        response = client.post('/api/alert-bot', json={'action': action, 'alert_id': 'a-1',
                                                      'config': {'whatsapp_admin_groups': 'abc'}})
        assert response.status_code == 400
        assert response.json()['detail'][0]['loc'] == ['whatsapp_admin_groups']

    def test_unknown_action(self, client):
        assert client.post('/api/alert-bot', json={'action': 'dance'}).status_code == 400


def test_senate_scrape_falls_back_when_site_is_down(client, use_pool):
    pool = use_pool()
    data = client.post('/api/senate/scrape', json={}).json()

    assert data['processed'] == 75
    assert data['created'] == 75
    assert len(pool.conn.queries('execute', 'INSERT INTO politicians')) == 75


class TestRealtime:

    def test_notification_is_stored_and_pushed(self, client, use_pool):
        use_pool({'INSERT INTO notifications': 'n-1'})
        listener = FakeWebSocket()
        camerpulse_api.hub.connect(listener)
        camerpulse_api.hub.connections[listener].user_id = 'user-1'

        data = client.post('/api/notifications', json={'user_id': 'user-1', 'title': 'Hello',
                                                       'message': 'Welcome'}).json()

        assert data == {'success': True, 'id': 'n-1', 'delivered': 1}
        assert listener.last()['type'] == 'notification'
        assert listener.last()['payload']['title'] == 'Hello'

    def test_notification_without_database(self, client):
        data = client.post('/api/notifications', json={'user_id': 'user-1', 'title': 'Hi', 'message': 'x'}).json()
        assert data == {'success': True, 'id': None, 'delivered': 0}

    def test_tender_event(self, client):
        listener = FakeWebSocket()
        camerpulse_api.hub.connect(listener)
        camerpulse_api.hub.connections[listener].tenders.add('T-9')

        data = client.post('/api/tenders/T-9/events', json={'event_type': 'deadline_extended',
                                                             'data': {'days': 7}}).json()

        assert data['delivered'] == 1
        assert listener.last()['payload'] == {'event_type': 'deadline_extended', 'days': 7}

    def test_websocket_session(self, client):
        with client.websocket_connect('/ws/notifications') as ws:
            assert ws.receive_json()['type'] == 'connected'

            ws.send_text('{"type": "ping"}')
            assert ws.receive_json()['type'] == 'pong'

            ws.send_text('{"type": "subscribe", "channel": "alerts"}')
            assert ws.receive_json() == {'type': 'subscribed', 'channel': 'alerts'}

            ws.send_text('oops')
            assert ws.receive_json() == {'type': 'error', 'error': 'Invalid JSON'}

            stats = client.get('/api/realtime/stats').json()
            assert stats['connections'] == 1
            assert stats['channels'] == {'alerts': 1}

    def test_binary_frame_keeps_session_and_socket_is_released(self, client):
        with client.websocket_connect('/ws/notifications') as ws:
            assert ws.receive_json()['type'] == 'connected'

            ws.send_bytes(b'\x00\x01')
            assert ws.receive_json() == {'type': 'error', 'error': 'Binary frames are not supported'}

            ws.send_text('{"type": "ping"}')
            assert ws.receive_json()['type'] == 'pong'

        assert camerpulse_api.hub.connections == {}
        assert client.get('/api/realtime/stats').json()['connections'] == 0
