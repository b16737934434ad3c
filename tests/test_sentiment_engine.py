"""
Sentiment processor tests
"""
import json

import httpx
import pytest

import sentiment_engine
from sentiment_engine import (
    LocalContextCache,
    analyze_with_ai,
    basic_sentiment_analysis,
    get_processor_stats,
    normalize_result,
    record_learning,
    store_sentiment_result,
    threat_from_score,
)


class TestBasicAnalysis:

    def test_positive_english(self):
        result = basic_sentiment_analysis("I love this great country, very happy")
        assert result.polarity == 'positive'
        assert result.score == pytest.approx(0.5)
        assert result.language == 'en'
        assert 'joy' in result.emotions
        assert result.threat_level == 'none'
        assert result.region is None

    def test_threat_keywords_and_region(self):
        result = basic_sentiment_analysis("They will attack and burn the market in Bamenda")
        assert result.threat_level == 'high'
        assert result.region == 'Northwest'

    def test_pidgin_detection(self):
        assert basic_sentiment_analysis("How far my people, na so the thing dey").language == 'pidgin'

    def test_french_detection(self):
        assert basic_sentiment_analysis("Le gouvernement et les élections").language == 'fr'

    def test_sarcasm_inverts_polarity(self):
        result = basic_sentiment_analysis("Yeah right, this is great")
        assert result.polarity == 'negative'
        assert result.score < 0

    def test_categories_hashtags_and_mentions(self):
        result = basic_sentiment_analysis("Paul Biya and the CPDM #CameroonDecides @PresidenceCM")
        assert result.categories == ['governance', 'election']
        assert result.hashtags == ['CameroonDecides']
        assert result.mentions == ['PresidenceCM']
        assert 'governance' in result.keywords

    def test_regional_crisis_keywords_add_security(self):
        result = basic_sentiment_analysis("Another ghost town announced")
        assert 'security' in result.categories
        assert 'fear' in result.emotions

    def test_score_is_clamped(self):
        result = basic_sentiment_analysis("hate hate hate hate hate hate hate hate")
        assert result.score == -1.0


@pytest.mark.parametrize("score,level", [
    (0, 'none'), (1, 'low'), (2, 'medium'), (4, 'high'), (6, 'critical'), (9, 'critical'),
])
def test_threat_from_score(score, level):
    assert threat_from_score(score) == level


class TestNormalizeResult:

    def test_fills_defaults(self):
        result = normalize_result({'polarity': 'negative'})
        assert result.score == 0.0
        assert result.confidence == 0.5
        assert result.emotions == []
        assert result.threat_level == 'none'

    def test_clamps_score_and_rejects_unknown_threat(self):
        result = normalize_result({'score': 5, 'threat_level': 'extreme'})
        assert result.score == 1.0
        assert result.threat_level == 'none'

    def test_accepts_camel_case_threat(self):
        assert normalize_result({'threatLevel': 'high'}).threat_level == 'high'

    def test_non_numeric_score(self):
        assert normalize_result({'score': 'very bad'}).score == 0.0

    def test_scalar_list_fields_are_coerced(self):
        result = normalize_result({'emotions': 5, 'hashtags': 'fuel', 'keywords': None,
                                   'polarity': 'furious', 'confidence': 'high', 'region': 3})
        assert result.emotions == []
        assert result.hashtags == ['fuel']
        assert result.keywords == []
        assert result.polarity == 'neutral'
        assert result.confidence == 0.5
        assert result.region is None

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            normalize_result(['negative'])


class TestAnalyzeWithAI:

    @pytest.mark.asyncio
    async def test_without_key_uses_rules(self, mock_client):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        async with mock_client(handler) as client:
            result = await analyze_with_ai("I love Douala", client=client, api_key='')

        assert calls == []
        assert result.confidence == 0.85

    @pytest.mark.asyncio
    async def test_parses_openai_verdict(self, mock_client):
        verdict = {'polarity': 'negative', 'score': -0.7, 'emotions': ['anger'],
                   'threat_level': 'medium', 'region': 'Centre'}

        def handler(request):
            assert request.url == httpx.URL(sentiment_engine.OPENAI_URL)
            assert request.headers['Authorization'] == 'Bearer sk-test'
            body = json.loads(request.content)
            assert body['messages'][1]['content'] == "Fuel prices again"
            assert body['response_format'] == {'type': 'json_object'}
            return httpx.Response(200, json={'choices': [{'message': {'content': json.dumps(verdict)}}]})

        async with mock_client(handler) as client:
            result = await analyze_with_ai("Fuel prices again", client=client, api_key='sk-test')

        assert result.polarity == 'negative'
        assert result.score == -0.7
        assert result.emotions == ['anger']
        assert result.threat_level == 'medium'
        assert result.region == 'Centre'

    @pytest.mark.asyncio
    async def test_api_error_falls_back(self, mock_client):
        async with mock_client(lambda request: httpx.Response(429)) as client:
            result = await analyze_with_ai("I love this great country", client=client, api_key='sk-test')
        assert result.polarity == 'positive'
        assert result.confidence == 0.85

    @pytest.mark.asyncio
    async def test_malformed_answer_falls_back(self, mock_client):
        def handler(request):
            return httpx.Response(200, json={'choices': [{'message': {'content': 'not json'}}]})

        async with mock_client(handler) as client:
            result = await analyze_with_ai("calm day", client=client, api_key='sk-test')
        assert result.confidence == 0.85

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [
        '["negative"]',
        '{"polarity": "negative", "emotions": 5, "categories": {"a": 1}}',
        '42',
        None,
    ])
    async def test_unexpected_answer_shapes(self, mock_client, content):
        def handler(request):
            return httpx.Response(200, json={'choices': [{'message': {'content': content}}]})

        async with mock_client(handler) as client:
            result = await analyze_with_ai("I love this great country", client=client, api_key='sk-test')

        assert result.polarity in ('positive', 'negative')
        assert isinstance(result.emotions, list)
        assert isinstance(result.categories, list)

    @pytest.mark.asyncio
    async def test_unexpected_envelope_falls_back(self, mock_client):
        async with mock_client(lambda request: httpx.Response(200, json=['choices'])) as client:
            result = await analyze_with_ai("I love this great country", client=client, api_key='sk-test')
        assert result.confidence == 0.85


class TestLocalContextCache:

    @pytest.mark.asyncio
    async def test_loads_and_caches(self, make_pool):
        rows = [{'config_key': 'cameroon_slang_patterns', 'config_value': '{"pidgin": {"greetings": ["how now"]}}'}]
        pool = make_pool({'FROM camerpulse_intelligence_config': rows})
        now = [0.0]
        cache = LocalContextCache(ttl=60, clock=lambda: now[0])

        context = await cache.get(pool)
        assert context == {'cameroon_slang_patterns': {'pidgin': {'greetings': ['how now']}}}

        now[0] = 30.0
        await cache.get(pool)
        assert len(pool.conn.queries('fetch')) == 1

        now[0] = 61.0
        await cache.get(pool)
        assert len(pool.conn.queries('fetch')) == 2

        cache.invalidate()
        await cache.get(pool)
        assert len(pool.conn.queries('fetch')) == 3

    @pytest.mark.asyncio
    async def test_defaults_without_rows_or_pool(self, make_pool):
        cache = LocalContextCache()
        assert 'political_figures_dynamic' in await cache.get(None)
        assert 'political_figures_dynamic' in await cache.get(make_pool())

    @pytest.mark.asyncio
    async def test_database_error_returns_defaults(self, make_pool):
        pool = make_pool({'FROM camerpulse_intelligence_config': OSError('connection refused')})
        context = await LocalContextCache().get(pool)
        assert 'sentiment_enhancement_rules' in context


class TestStorage:

    @pytest.mark.asyncio
    async def test_high_threat_raises_alert(self, make_pool):
        pool = make_pool({
            'INSERT INTO camerpulse_intelligence_sentiment_logs': 'log-1',
            'INSERT INTO camerpulse_intelligence_alerts': 'alert-1',
        })
        request = {'content': 'They will attack Bamenda tonight', 'platform': 'twitter'}
        result = normalize_result({'threat_level': 'critical', 'region': 'Northwest', 'score': -0.9})

        alert_id = await store_sentiment_result(pool, request, result)

        assert alert_id == 'alert-1'
        (_, log_args), = pool.conn.queries('fetchval', 'INSERT INTO camerpulse_intelligence_sentiment_logs')
        assert log_args[0] == 'twitter'
        assert log_args[13] == 'Bamenda'
        (_, alert_args), = pool.conn.queries('fetchval', 'INSERT INTO camerpulse_intelligence_alerts')
        assert alert_args[0] == 'threat'
        assert alert_args[1] == 'critical'
        assert alert_args[4] == ['Northwest']
        assert alert_args[6] == ['log-1']

    @pytest.mark.asyncio
    async def test_low_threat_only_logs(self, make_pool):
        pool = make_pool({'INSERT INTO camerpulse_intelligence_sentiment_logs': 'log-2'})
        result = normalize_result({'threat_level': 'low'})

        assert await store_sentiment_result(pool, {'content': 'hello'}, result) is None
        assert pool.conn.queries(fragment='camerpulse_intelligence_alerts') == []

    @pytest.mark.asyncio
    async def test_record_learning_merges_new_figure(self, make_pool):
        pool = make_pool({
            'SELECT config_value FROM camerpulse_intelligence_config': '{"current_officials": {}}',
        })

        await record_learning(pool, {'newFigure': 'Cabral Libii'}, 'new_political_figure', 0.1)

        assert len(pool.conn.queries('execute', 'INSERT INTO camerpulse_intelligence_learning_logs')) == 1
        (_, args), = pool.conn.queries('execute', 'UPDATE camerpulse_intelligence_config')
        assert args[0] == 'political_figures_dynamic'
        merged = json.loads(args[1])
        assert merged['current_officials'] == {}
        assert merged['detected_figures'][0]['name'] == 'Cabral Libii'

    @pytest.mark.asyncio
    async def test_record_learning_skips_missing_config(self, make_pool):
        pool = make_pool()
        await record_learning(pool, {'newPattern': 'sotay'}, 'new_slang_pattern', 0.1)
        assert pool.conn.queries('execute', 'UPDATE camerpulse_intelligence_config') == []

    @pytest.mark.asyncio
    async def test_processor_stats(self, make_pool):
        pool = make_pool({
            'FROM camerpulse_intelligence_sentiment_logs': 12,
            'FROM camerpulse_intelligence_alerts': 3,
        })
        stats = await get_processor_stats(pool)
        assert stats == {'total_analyzed': 12, 'active_alerts': 3, 'trending_topics': 0, 'status': 'operational'}
