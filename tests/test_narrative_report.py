"""
Narrative report tests
"""
import json
from datetime import date, datetime, timezone

import httpx
import pytest

import sentiment_engine
from daily_report import build_daily_report
from narrative_report import (
    NarrativeNotFoundError,
    NarrativeSettings,
    build_data_prompt,
    compose_narrative,
    format_narrative_message,
    generate_narrative_report,
    get_narrative_report,
    list_narrative_reports,
    normalize_narrative,
    party_mentions,
    render_narrative_html,
    render_narrative_pdf,
    render_narrative_text,
    report_window,
)

DAY = date(2024, 5, 20)


def _logs():
    return [
        {'platform': 'twitter', 'sentiment_polarity': 'negative', 'sentiment_score': -0.8,
         'threat_level': 'critical', 'region_detected': 'Northwest', 'emotional_tone': ['fear'],
         'mentions': ['PaulBiya'], 'content_text': 'Gunfire heard in Bamenda tonight',
         'created_at': datetime(2024, 5, 20, 21, 0, tzinfo=timezone.utc)},
        {'platform': 'facebook', 'sentiment_polarity': 'positive', 'sentiment_score': 0.6,
         'threat_level': 'none', 'region_detected': 'Centre', 'emotional_tone': ['joy'],
         'content_text': 'CPDM rally fills the stadium in Yaoundé',
         'created_at': datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)},
        {'platform': 'twitter', 'sentiment_polarity': 'negative', 'sentiment_score': -0.5,
         'threat_level': 'low', 'region_detected': 'Centre', 'emotional_tone': ['anger'],
         'content_text': 'MRC supporters say the count was rigged'},
    ]


TRENDS = [{'topic_text': 'Bamenda lockdown', 'volume_score': 120, 'sentiment_score': -0.6, 'growth_rate': 35}]
ALERTS = [{'alert_type': 'security', 'severity': 'critical', 'title': 'Gunfire in Bamenda',
           'affected_regions': ['Northwest'], 'created_at': datetime(2024, 5, 20, 21, 5, tzinfo=timezone.utc)}]


def _data(report_type='daily'):
    start, end = report_window(DAY, report_type)
    return {'sentiment_logs': _logs(), 'trending_topics': TRENDS, 'alerts': ALERTS,
            'timeframe': {'start': start.isoformat(), 'end': end.isoformat()}, 'type': report_type}


def _compose(**settings):
    data = _data()
    summary = build_daily_report(DAY, data['sentiment_logs'], data['trending_topics'])
    return compose_narrative(data, summary, NarrativeSettings(**settings), DAY)


def _pool(make_pool):
    return make_pool({
        'FROM camerpulse_intelligence_sentiment_logs': _logs(),
        'FROM camerpulse_intelligence_trending_topics': TRENDS,
        'FROM camerpulse_intelligence_alerts': ALERTS,
    })


def _stored_report():
    return {
        'id': '3f2c9a10-0000-4000-8000-000000000001', 'date': '2024-05-20', 'type': 'daily',
        'title': 'Civic <Report>', 'summary': 'Tension & calm', 'narrative': 'First.\n\nSecond.',
        'key_insights': ['Fear dominates'], 'quotable_quotes': ['Gunfire heard'], 'tone': 'analyst',
        'metadata': {
            'emotional_shifts': [{'region': 'Northwest', 'shift': 'negative', 'analysis': '1 posts'}],
            'danger_spikes': [{'location': 'Northwest', 'level': 'critical', 'context': 'Gunfire'}],
            'party_momentum': [{'party': 'CPDM', 'trend': 'rising', 'analysis': '1 mentions'}],
            'trending_issues': [{'issue': 'Bamenda lockdown', 'volume': 120, 'sentiment': 'negative',
                                 'analysis': 'Volume 120'}],
        },
        'generated_at': '2024-05-20T23:00:00+00:00',
    }


class TestWindow:

    def test_daily_covers_the_day(self):
        assert report_window(DAY, 'daily') == (
            datetime(2024, 5, 20, tzinfo=timezone.utc), datetime(2024, 5, 21, tzinfo=timezone.utc)
        )

    def test_weekly_covers_the_week_before(self):
        assert report_window(DAY, 'weekly') == (
            datetime(2024, 5, 13, tzinfo=timezone.utc), datetime(2024, 5, 20, tzinfo=timezone.utc)
        )


class TestCompose:

    def test_default_report(self):
        composed = _compose()

        assert composed['title'] == 'Civic Intelligence Report - 2024-05-20'
        assert composed['summary'].startswith('3 posts were analyzed between 2024-05-20 and 2024-05-21.')
        assert len(composed['narrative'].split('\n\n')) == 4
        assert composed['key_insights'][0].startswith('Civic danger index:')
        assert 'Highest alert level in Northwest (critical)' in composed['key_insights']
        assert composed['quotable_quotes'] == ['Gunfire heard in Bamenda tonight']

    def test_security_focus_leads_with_alerts(self):
        first = _compose(focus='security')['narrative'].split('\n\n')[0]
        assert first == '1 alerts were raised, including 1 critical and 0 high severity.'

    def test_brief_with_predictions(self):
        paragraphs = _compose(length='brief', include_predictions=True)['narrative'].split('\n\n')
        assert len(paragraphs) == 3
        assert 'coming days' in paragraphs[-1]

    def test_quotes_can_be_left_out(self):
        assert _compose(include_quotes=False)['quotable_quotes'] == []

    def test_french(self):
        composed = _compose(language='french')
        assert composed['title'] == 'Rapport de renseignement civique - 2024-05-20'
        assert composed['summary'].startswith('3 publications ont été analysées')

    def test_danger_spikes_from_regions_and_alerts(self):
        spikes = _compose()['danger_spikes']
        assert {'location': 'Northwest', 'level': 'critical', 'context': 'Gunfire in Bamenda'} in spikes
        assert spikes[0]['location'] == 'Northwest'

    def test_party_momentum(self):
        momentum = {p['party']: p['trend'] for p in _compose()['party_momentum']}
        assert momentum == {'CPDM': 'rising', 'MRC': 'falling'}

    def test_trending_issues(self):
        issue, = _compose()['trending_issues']
        assert issue['issue'] == 'Bamenda lockdown'
        assert issue['sentiment'] == 'negative'

    def test_empty_period(self):
        data = {**_data(), 'sentiment_logs': [], 'trending_topics': [], 'alerts': []}
        summary = build_daily_report(DAY, [], [])
        composed = compose_narrative(data, summary, NarrativeSettings(), DAY)
        assert composed['summary'] == 'No civic activity was recorded between 2024-05-20 and 2024-05-21.'
        assert composed['narrative'].endswith('No alerts were raised during the period.')


def test_party_mentions_match_whole_words():
    scores = party_mentions([{'content_text': 'SDF and sdfoo', 'sentiment_score': 0.2}], ['sdf', 'upc'])
    assert dict(scores) == {'sdf': [0.2]}


def test_data_prompt_lists_alerts_and_regions():
    data = _data()
    summary = build_daily_report(DAY, data['sentiment_logs'], data['trending_topics'])
    prompt = build_data_prompt(data, summary['regions'])
    assert 'Generate a daily civic intelligence narrative report' in prompt
    assert '- security: "Gunfire in Bamenda" | Severity: critical | Regions: Northwest' in prompt
    assert 'SENTIMENT DATA (3 posts analyzed)' in prompt


class TestNormalize:

    def test_camel_case_answer(self):
        answer = normalize_narrative({
            'title': ' Tense week ', 'keyInsights': 'one insight',
            'dangerSpikes': [{'location': 'Far North', 'level': 'high', 'context': 'kidnapping'}, 'junk'],
            'partyMomentum': {'party': 'CPDM'},
        })
        assert answer['title'] == 'Tense week'
        assert answer['key_insights'] == ['one insight']
        assert answer['danger_spikes'] == [{'location': 'Far North', 'level': 'high', 'context': 'kidnapping'}]
        assert answer['party_momentum'] == []

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            normalize_narrative(['title'])


class TestGenerate:

    @pytest.mark.asyncio
    async def test_rule_based_report_is_stored(self, make_pool, monkeypatch):
        monkeypatch.setattr(sentiment_engine, 'OPENAI_API_KEY', '')
        pool = _pool(make_pool)

        report = await generate_narrative_report(pool, DAY, 'daily')

        assert report['source'] == 'rule_based'
        assert report['stats'] == {'total_posts': 3, 'danger_index': 53, 'threat_level': 'high', 'alerts': 1}
        assert report['metadata']['party_momentum']
        (_, args), = pool.conn.queries('execute', 'INSERT INTO camerpulse_intelligence_config')
        assert args[0] == f"narrative_report_{report['id']}"
        assert args[1] == 'narrative_report'
        assert json.loads(args[2])['title'] == report['title']
        assert args[3] == 'daily narrative report for 2024-05-20'

    @pytest.mark.asyncio
    async def test_weekly_queries_the_week(self, make_pool):
        pool = _pool(make_pool)

        await generate_narrative_report(pool, DAY, 'weekly', api_key='')

        (_, args), = pool.conn.queries('fetch', 'FROM camerpulse_intelligence_sentiment_logs')
        assert args == (datetime(2024, 5, 13, tzinfo=timezone.utc), datetime(2024, 5, 20, tzinfo=timezone.utc), 1000)
        (_, args), = pool.conn.queries('fetch', 'FROM camerpulse_intelligence_trending_topics')
        assert args == (datetime(2024, 5, 13, tzinfo=timezone.utc), 20)

    @pytest.mark.asyncio
    async def test_unknown_type(self, make_pool):
        with pytest.raises(ValueError):
            await generate_narrative_report(make_pool(), DAY, 'monthly')

    @pytest.mark.asyncio
    async def test_ai_answer_overrides_composed_text(self, make_pool, mock_client):
        answer = {'title': 'Bamenda on edge', 'summary': 'Violence returns.', 'narrative': '',
                  'keyInsights': ['Northwest tension rising'],
                  'trendingIssues': [{'issue': 'lockdown', 'volume': 120, 'sentiment': 'negative', 'analysis': 'x'}]}

        def handler(request):
            assert request.headers['Authorization'] == 'Bearer sk-test'
            body = json.loads(request.content)
            assert body['model'] == 'gpt-4o'
            assert body['response_format'] == {'type': 'json_object'}
            assert 'LANGUAGE: Generate the report in French.' in body['messages'][0]['content']
            return httpx.Response(200, json={'choices': [{'message': {'content': json.dumps(answer)}}]})

        async with mock_client(handler) as client:
            report = await generate_narrative_report(
                _pool(make_pool), DAY, 'daily', NarrativeSettings(language='french', tone='journalistic'),
                client=client, api_key='sk-test'
            )

        assert report['source'] == 'ai'
        assert report['title'] == 'Bamenda on edge'
        assert report['key_insights'] == ['Northwest tension rising']
        assert report['narrative']
        assert report['metadata']['trending_issues'][0]['issue'] == 'lockdown'
        assert report['tone'] == 'journalistic'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.Response(200, json={'choices': [{'message': {'content': '["not", "an", "object"]'}}]}),
        httpx.Response(200, json={'choices': []}),
    ])
    async def test_unusable_answer_falls_back(self, make_pool, mock_client, response):
        async with mock_client(lambda request: response) as client:
            report = await generate_narrative_report(_pool(make_pool), DAY, client=client, api_key='sk-test')
        assert report['source'] == 'rule_based'
        assert report['title'] == 'Civic Intelligence Report - 2024-05-20'


class TestStorage:

    @pytest.mark.asyncio
    async def test_list_reports(self, make_pool):
        pool = make_pool({'ORDER BY updated_at DESC': [{'config_value': json.dumps(_stored_report())}]})

        reports = await list_narrative_reports(pool, 5)

        assert reports[0]['title'] == 'Civic <Report>'
        (_, args), = pool.conn.queries('fetch', 'FROM camerpulse_intelligence_config')
        assert args == ('narrative_report', 5)

    @pytest.mark.asyncio
    async def test_get_report(self, make_pool):
        report = _stored_report()
        pool = make_pool({'WHERE config_key = $1 AND config_type = $2': json.dumps(report)})

        assert await get_narrative_report(pool, report['id']) == report
        (_, args), = pool.conn.queries('fetchval')
        assert args == (f"narrative_report_{report['id']}", 'narrative_report')

    @pytest.mark.asyncio
    async def test_missing_report(self, make_pool):
        with pytest.raises(NarrativeNotFoundError):
            await get_narrative_report(make_pool(), 'nope')


class TestExport:

    def test_html_is_escaped(self):
        content = render_narrative_html(_stored_report())
        assert '<h1>Civic &lt;Report&gt;</h1>' in content
        assert 'Tension &amp; calm' in content
        assert '<p>First.</p><p>Second.</p>' in content
        assert '<h2>Civic Danger Assessment</h2>' in content
        assert 'Report ID: 3f2c9a10-0000-4000-8000-000000000001' in content

    def test_empty_sections_are_skipped(self):
        report = {**_stored_report(), 'quotable_quotes': [], 'metadata': {}}
        content = render_narrative_html(report)
        assert 'Notable Statements' not in content
        assert 'Political Momentum' not in content

    def test_text(self):
        content = render_narrative_text(_stored_report())
        assert content.startswith('CIVIC <REPORT>\n')
        assert 'EXECUTIVE SUMMARY\nTension & calm' in content
        assert '- Northwest [CRITICAL] Gunfire' in content
        assert content.endswith('Report ID: 3f2c9a10-0000-4000-8000-000000000001')

    def test_pdf(self):
        assert render_narrative_pdf(_stored_report()).startswith(b'%PDF')

    def test_message(self):
        message = format_narrative_message(_stored_report(), 'https://camerpulse.cm/camerpulse')
        assert message.startswith('📰 <b>Civic &lt;Report&gt;</b>')
        assert '• Fear dominates' in message
        assert message.endswith('https://camerpulse.cm/camerpulse')
