"""
Tests for message splitting, transports and the send action.
"""

from unittest.mock import Mock

import pytest
import requests

from conftest import make_definition
from content_source import ContentGenerationError
from messaging import InvalidPayloadError, MessageAction
from transport import (
    HttpSmsTransport,
    LogTransport,
    PermissionDeniedError,
    TransportError,
    split_message,
)


def _response(status_code):
    response = Mock(status_code=status_code)
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Error", response=response
        )
    return response


def test_short_message_is_one_part():
    assert split_message("  Good morning!  ") == ["Good morning!"]


def test_long_message_breaks_on_words():
    parts = split_message("one two three four five", max_length=9)

    assert parts == ["one two", "three", "four five"]
    assert all(len(part) <= 9 for part in parts)


def test_oversized_word_is_hard_split():
    assert split_message("hi abcdefghij", max_length=4) == ["hi", "abcd", "efgh", "ij"]


def test_invalid_part_length():
    with pytest.raises(ValueError):
        split_message("hello", max_length=0)


def test_gateway_posts_each_part():
    transport = HttpSmsTransport("https://sms.example/send", api_key="token",
                                 sender="Cadence", max_part_length=9)
    transport.session = Mock()
    transport.session.post.return_value = _response(200)

    result = transport.send("+15550100", "one two three")

    assert result.parts == 2
    calls = transport.session.post.call_args_list
    assert [c.kwargs['json']['body'] for c in calls] == ["one two", "three"]
    assert calls[1].kwargs['json'] == {
        "to": "+15550100", "from": "Cadence", "body": "three", "part": 2, "parts": 2
    }
    assert calls[0].kwargs['headers']['Authorization'] == "Bearer token"


@pytest.mark.parametrize("status", [401, 403])
def test_gateway_auth_failure_is_permission_denied(status):
    transport = HttpSmsTransport("https://sms.example/send")
    transport.session = Mock()
    transport.session.post.return_value = _response(status)

    with pytest.raises(PermissionDeniedError):
        transport.send("+15550100", "hello")


def test_gateway_server_error_is_transport_error():
    transport = HttpSmsTransport("https://sms.example/send")
    transport.session = Mock()
    transport.session.post.return_value = _response(500)

    with pytest.raises(TransportError) as excinfo:
        transport.send("+15550100", "hello")
    assert not isinstance(excinfo.value, PermissionDeniedError)


def test_unreachable_gateway_is_transport_error():
    transport = HttpSmsTransport("https://sms.example/send")
    transport.session = Mock()
    transport.session.post.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(TransportError):
        transport.send("+15550100", "hello")


def test_action_sends_static_message():
    action = MessageAction(LogTransport())
    definition = make_definition(message="Good morning!")

    result = action.perform(definition)

    assert result.destination == "+15550100"
    assert result.parts == 1


def test_action_rejects_empty_destination_and_content():
    action = MessageAction(LogTransport())

    with pytest.raises(InvalidPayloadError):
        action.perform(make_definition(recipient=" "))
    with pytest.raises(InvalidPayloadError):
        action.perform(make_definition(message=""))


def test_generated_content_falls_back_to_static_message():
    source = Mock()
    source.has_api_key.return_value = True
    source.generate.side_effect = ContentGenerationError("Rate limited by API (429)")
    action = MessageAction(LogTransport(), content_source=source)
    definition = make_definition(message="Fallback")
    definition.payload.ai_generated = True

    assert action.resolve_content(definition) == "Fallback"


def test_generated_content_is_used():
    source = Mock()
    source.has_api_key.return_value = True
    source.generate.return_value = "Hey Sam, have a great day!"
    action = MessageAction(LogTransport(), content_source=source, max_generated_length=80)
    definition = make_definition(message="Fallback")
    definition.payload.ai_generated = True
    definition.payload.message_context = "first day at work"

    assert action.resolve_content(definition) == "Hey Sam, have a great day!"
    source.generate.assert_called_once_with(
        "Sam", message_type="friendly", context="first day at work", max_length=80
    )


def test_generated_content_without_source_uses_static_message():
    action = MessageAction(LogTransport())
    definition = make_definition(message="Fallback")
    definition.payload.ai_generated = True

    assert action.resolve_content(definition) == "Fallback"
