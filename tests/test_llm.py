import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from botmeter.exceptions import ExternalToolError
from botmeter.llm import (
    AnomalyLookupTool, BulkLLMClassifier, ChatCompletionsBackend, ExaWebSearch, Tool,
    parse_json_object,
)
from botmeter.models import AnomalyRecord, AnomalyType


def http_response(body):
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = body
    return response


def chat_reply(content=None, tool_calls=None):
    message = {'role': 'assistant', 'content': content}
    if tool_calls:
        message['tool_calls'] = tool_calls
    return http_response({'choices': [{'message': message}]})


class EchoTool(Tool):
    name = 'echo'

    def __init__(self):
        self.calls = []

    def run(self, **kwargs):
        self.calls.append(kwargs)
        return {'echo': kwargs}


class TestParseJsonObject:

    def test_plain_object(self):
        assert parse_json_object('{"a": 1}') == {'a': 1}

    def test_code_fence_is_stripped(self):
        assert parse_json_object('```json\n{"a": {"isBot": true}}\n```') == {'a': {'isBot': True}}

    @pytest.mark.parametrize("text", ["", "   ", "not json", "[1, 2]"])
    def test_invalid_payloads(self, text):
        with pytest.raises(ExternalToolError):
            parse_json_object(text)


class TestExaWebSearch:

    @patch('botmeter.llm.requests.post')
    def test_request_and_results(self, mock_post):
        mock_post.return_value = http_response({'results': [
            {'title': 'GPTBot', 'url': 'https://openai.com/gptbot', 'text': 'x' * 5000, 'publishedDate': '2024-01-01'},
        ]})

        results = ExaWebSearch(api_key='exa-key', url='https://search.test/search').run(query='  GPTBot docs ', limit=50)

        args, kwargs = mock_post.call_args
        assert args[0] == 'https://search.test/search'
        assert kwargs['headers']['x-api-key'] == 'exa-key'
        assert kwargs['json']['query'] == 'GPTBot docs'
        assert kwargs['json']['numResults'] == 10
        assert results[0]['url'] == 'https://openai.com/gptbot'
        assert results[0]['published_date'] == '2024-01-01'
        assert len(results[0]['content']) < 5000

    def test_missing_key(self):
        tool = ExaWebSearch(api_key='')

        assert tool.is_configured() is False
        with pytest.raises(ExternalToolError, match="EXA_API_KEY"):
            tool.run(query='anything')

    def test_empty_query(self):
        with pytest.raises(ExternalToolError, match="empty"):
            ExaWebSearch(api_key='exa-key').run(query='   ')

    @patch('botmeter.llm.requests.post')
    def test_http_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ExternalToolError, match="refused"):
            ExaWebSearch(api_key='exa-key').run(query='GPTBot')


class TestAnomalyLookupTool:

    def setup_method(self):
        self.tool = AnomalyLookupTool([
            AnomalyRecord(AnomalyType.BURST_SPIKE, '1.1.1.1', {'ratio': 9.1}),
            AnomalyRecord(AnomalyType.HIGH_404_RATE, '1.1.1.1', {'rate': 0.5}),
            AnomalyRecord(AnomalyType.BURST_SPIKE, '2.2.2.2', {'ratio': 6.0}),
        ])

    def test_no_filter_returns_everything(self):
        assert self.tool.run()['total'] == 3

    def test_filter_by_ip_and_type(self):
        result = self.tool.run(ips=['1.1.1.1'], types=['burst_spike'])

        assert result['total'] == 1
        assert result['anomalies'][0] == {'type': 'BURST_SPIKE', 'ip': '1.1.1.1', 'ratio': 9.1}

    def test_results_are_capped(self):
        tool = AnomalyLookupTool([AnomalyRecord(AnomalyType.BURST_SPIKE, f"10.0.0.{i}") for i in range(30)])
        result = tool.run()

        assert result['total'] == 30
        assert len(result['anomalies']) == 20

    def test_schema(self):
        schema = self.tool.schema()
        assert schema['type'] == 'function'
        assert schema['function']['name'] == 'anomaly_lookup'


class TestChatCompletionsBackend:

    def setup_method(self):
        self.backend = ChatCompletionsBackend(api_key='test-key', base_url='https://llm.test/v1/',
                                              model='test-model', max_tool_steps=2)

    @patch('botmeter.llm.requests.post')
    def test_classify_batch(self, mock_post):
        mock_post.return_value = chat_reply('{"Frob/1.0": {"isBot": true, "confidence": 0.8}}')

        result = self.backend.classify_batch([{'ua': 'Frob/1.0'}], instructions='Classify.')

        assert result == {'Frob/1.0': {'isBot': True, 'confidence': 0.8}}
        args, kwargs = mock_post.call_args
        assert args[0] == 'https://llm.test/v1/chat/completions'
        assert kwargs['headers']['Authorization'] == 'Bearer test-key'
        assert kwargs['json']['model'] == 'test-model'
        assert kwargs['json']['response_format'] == {'type': 'json_object'}
        assert 'tools' not in kwargs['json']
        assert 'Frob/1.0' in kwargs['json']['messages'][1]['content']

    @patch('botmeter.llm.requests.post')
    def test_fenced_reply(self, mock_post):
        mock_post.return_value = chat_reply('```json\n{"ua": {"isBot": false, "confidence": 0.6}}\n```')
        assert self.backend.classify_batch([{'ua': 'ua'}])['ua']['isBot'] is False

    @patch('botmeter.llm.requests.post')
    def test_tool_loop(self, mock_post):
        tool = EchoTool()
        call = {'id': 'call_1', 'type': 'function',
                'function': {'name': 'echo', 'arguments': json.dumps({'query': 'Frob bot'})}}
        mock_post.side_effect = [
            chat_reply(tool_calls=[call]),
            chat_reply('{"Frob/1.0": {"isBot": true, "confidence": 0.9}}'),
        ]

        result = self.backend.classify_batch([{'ua': 'Frob/1.0'}], allow_tools=True, extra_tools=[tool])

        assert result['Frob/1.0']['confidence'] == 0.9
        assert tool.calls == [{'query': 'Frob bot'}]
        first, second = [c.kwargs['json'] for c in mock_post.call_args_list]
        assert first['tools'][0]['function']['name'] == 'echo'
        tool_message = second['messages'][-1]
        assert tool_message['role'] == 'tool'
        assert tool_message['tool_call_id'] == 'call_1'
        assert json.loads(tool_message['content']) == {'echo': {'query': 'Frob bot'}}

    @patch('botmeter.llm.requests.post')
    def test_last_step_is_sent_without_tools(self, mock_post):
        call = {'id': 'c', 'function': {'name': 'echo', 'arguments': '{}'}}
        mock_post.side_effect = [
            chat_reply(tool_calls=[call]),
            chat_reply(tool_calls=[call]),
            chat_reply('{}'),
        ]

        self.backend.classify_batch([{'ua': 'x'}], allow_tools=True, extra_tools=[EchoTool()])

        assert 'tools' not in mock_post.call_args_list[-1].kwargs['json']

    @patch('botmeter.llm.requests.post')
    def test_unknown_tool_is_reported_to_model(self, mock_post):
        call = {'id': 'c', 'function': {'name': 'nope', 'arguments': '{}'}}
        mock_post.side_effect = [chat_reply(tool_calls=[call]), chat_reply('{}')]

        self.backend.classify_batch([{'ua': 'x'}], allow_tools=True)

        content = json.loads(mock_post.call_args_list[-1].kwargs['json']['messages'][-1]['content'])
        assert 'Unknown tool' in content['error']

    @pytest.mark.parametrize("arguments,expected", [
        ('{"ips": 5}', 'Invalid arguments for anomaly_lookup'),
        ('{"types": [7]}', 'Invalid arguments for anomaly_lookup'),
        ('[1, 2]', 'Tool arguments must be a JSON object'),
        ('"ips"', 'Tool arguments must be a JSON object'),
        ('{not json', 'Tool arguments were not valid JSON'),
    ])
    @patch('botmeter.llm.requests.post')
    def test_bad_tool_arguments_are_reported_to_model(self, mock_post, arguments, expected):
        call = {'id': 'c', 'function': {'name': 'anomaly_lookup', 'arguments': arguments}}
        mock_post.side_effect = [
            chat_reply(tool_calls=[call]),
            chat_reply('{"x": {"isBot": true, "confidence": 0.7}}'),
        ]
        lookup = AnomalyLookupTool([AnomalyRecord(AnomalyType.BURST_SPIKE, '1.2.3.4')])

        result = self.backend.classify_batch([{'ua': 'x'}], allow_tools=True, extra_tools=[lookup])

        assert result['x']['confidence'] == 0.7
        content = json.loads(mock_post.call_args_list[-1].kwargs['json']['messages'][-1]['content'])
        assert content['error'].startswith(expected)

    @patch('botmeter.llm.requests.post')
    def test_bad_web_search_limit_is_reported_to_model(self, mock_post):
        call = {'id': 'c', 'function': {'name': 'web_search', 'arguments': '{"query": "Frob", "limit": "five"}'}}
        mock_post.side_effect = [chat_reply(tool_calls=[call]), chat_reply('{}')]
        search = ExaWebSearch(api_key='exa-key')

        self.backend.classify_batch([{'ua': 'x'}], allow_tools=True, extra_tools=[search])

        assert mock_post.call_count == 2
        content = json.loads(mock_post.call_args_list[-1].kwargs['json']['messages'][-1]['content'])
        assert 'Invalid arguments for web_search' in content['error']

    @patch('botmeter.llm.requests.post')
    def test_tools_ignored_when_not_allowed(self, mock_post):
        mock_post.return_value = chat_reply('{}')
        backend = ChatCompletionsBackend(api_key='k', tools=[EchoTool()])

        backend.classify_batch([{'ua': 'x'}], allow_tools=False, extra_tools=[EchoTool()])

        assert 'tools' not in mock_post.call_args.kwargs['json']

    def test_not_configured(self):
        backend = ChatCompletionsBackend(api_key='')

        assert backend.is_configured() is False
        with pytest.raises(ExternalToolError, match="OPENAI_API_KEY"):
            backend.classify_batch([{'ua': 'x'}])

    @patch('botmeter.llm.requests.post')
    def test_http_error(self, mock_post):
        mock_post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("500 Server Error")

        with pytest.raises(ExternalToolError, match="500"):
            self.backend.classify_batch([{'ua': 'x'}])

    @patch('botmeter.llm.requests.post')
    def test_unexpected_structure(self, mock_post):
        mock_post.return_value = http_response({'choices': []})

        with pytest.raises(ExternalToolError):
            self.backend.classify_batch([{'ua': 'x'}])


class TestBulkLLMClassifier:

    def test_sends_plain_ua_items_without_tools(self):
        backend = MagicMock()
        backend.classify_batch.return_value = {'a': {}}

        assert BulkLLMClassifier(backend).classify_batch(['a', 'b']) == {'a': {}}

        args, kwargs = backend.classify_batch.call_args
        assert args[0] == [{'ua': 'a'}, {'ua': 'b'}]
        assert kwargs['allow_tools'] is False
