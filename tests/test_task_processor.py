"""
Tests for hub-side task processing (services/task_processor.py).
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.errors import ProcessingError, ProcessingTimeout
from services.task_processor import TaskProcessor


def _processor():
    return TaskProcessor(base_url='https://llm.example.com/v1', api_key='test-key', model='test-model', timeout=5)


def _completion(content):
    resp = MagicMock()
    resp.ok = True
    resp.status_code = 200
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


class TestTaskProcessor:
    def test_run_returns_output(self):
        with patch('services.task_processor.requests.post', return_value=_completion('  1. Idea  ')) as mock_post:
            output = _processor().run('brainstorm', {"prompt": "coffee shop names"})

        assert output["type"] == 'text'
        assert output["content"] == '1. Idea'
        assert output["service_key"] == 'brainstorm'
        assert output["model"] == 'test-model'
        kwargs = mock_post.call_args.kwargs
        assert mock_post.call_args.args[0] == 'https://llm.example.com/v1/chat/completions'
        assert kwargs['timeout'] == 5
        assert kwargs['headers']['Authorization'] == 'Bearer test-key'
        assert kwargs['json']['messages'][1]['content'] == 'coffee shop names'

    def test_unknown_service(self):
        with pytest.raises(ProcessingError):
            _processor().run('paint', {"prompt": "x"})

    def test_timeout(self):
        with patch('services.task_processor.requests.post', side_effect=requests.exceptions.Timeout()):
            with pytest.raises(ProcessingTimeout) as exc:
                _processor().run('write', "a slogan")
        assert exc.value.status_code == 504

    def test_connection_error(self):
        with patch('services.task_processor.requests.post',
                   side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(ProcessingError) as exc:
                _processor().run('write', "a slogan")
        assert not isinstance(exc.value, ProcessingTimeout)

    def test_http_error(self):
        resp = MagicMock()
        resp.ok = False
        resp.status_code = 500
        resp.text = 'upstream exploded'
        with patch('services.task_processor.requests.post', return_value=resp):
            with pytest.raises(ProcessingError) as exc:
                _processor().run('research', {"prompt": "x"})
        assert '500' in exc.value.message

    def test_malformed_response(self):
        resp = MagicMock()
        resp.ok = True
        resp.json.return_value = {"choices": []}
        with patch('services.task_processor.requests.post', return_value=resp):
            with pytest.raises(ProcessingError):
                _processor().run('brief', {"prompt": "x"})

    def test_prompt_from_input(self):
        assert TaskProcessor.prompt_from_input({"prompt": "p"}) == 'p'
        assert TaskProcessor.prompt_from_input("plain") == 'plain'
        assert TaskProcessor.prompt_from_input({"topic": "t"}) == '{"topic": "t"}'
