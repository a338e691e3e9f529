"""Tests for the media processing task (recovery + analysis)."""

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests

from chatdesk.domain.messages import Message, get_message, store_message
from chatdesk.errors import AnalysisFailure
from chatdesk.media.analysis import (
    HttpAnalyzer,
    analysis_placeholder,
    analyzer_from_env,
    media_task_id,
    process_media_message,
)
from chatdesk.media.cache import MediaCache
from chatdesk.media.recovery import MediaRecoveryEngine
from chatdesk.whatsapp.models import MediaRef

INSTANCE = "acme-01"
AUDIO = b"OggS-audio"


def _store_media_message(store, provider_message_id="AUD1", inline=True):
    ref = MediaRef(
        "audio",
        "audio/ogg",
        inline_base64=base64.b64encode(AUDIO).decode() if inline else None,
    )
    store_message(
        store,
        None,
        Message(
            ticket_id="t1",
            instance_id=INSTANCE,
            provider_message_id=provider_message_id,
            from_me=False,
            sender_name="Maria",
            content="[Audio]",
            message_type="audio",
            timestamp=1714560000000,
            media_ref=ref.to_dict(include_inline=True),
        ),
    )


def _engine():
    return MediaRecoveryEngine(None, MediaCache(ttl_seconds=60))


class StubAnalyzer:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def analyze(self, data, content_type, mime_type):
        self.calls.append((data, content_type, mime_type))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestProcessMediaMessage:
    def test_analyzed(self, store, controller):
        _store_media_message(store)
        analyzer = StubAnalyzer(["hello, this is Maria"])

        outcome = process_media_message(store, _engine(), analyzer, INSTANCE, "AUD1", controller=controller)

        row = get_message(store, INSTANCE, "AUD1")
        assert outcome == "analyzed"
        assert row["processing_status"] == "analyzed"
        assert row["media_annotation"] == "hello, this is Maria"
        assert row["content"] == "[Audio]"
        assert analyzer.calls == [(AUDIO, "audio", "audio/ogg")]

    def test_processed_without_analyzer(self, store):
        _store_media_message(store)
        assert process_media_message(store, _engine(), None, INSTANCE, "AUD1") == "processed"
        assert get_message(store, INSTANCE, "AUD1")["processing_status"] == "processed"

    def test_analysis_retried_once(self, store, controller):
        _store_media_message(store)
        analyzer = StubAnalyzer([AnalysisFailure("timeout"), "transcript"])
        outcome = process_media_message(store, _engine(), analyzer, INSTANCE, "AUD1", controller=controller)
        assert outcome == "analyzed"
        assert len(analyzer.calls) == 2

    def test_analysis_failure_stores_placeholder(self, store, controller):
        _store_media_message(store)
        analyzer = StubAnalyzer([AnalysisFailure("a"), AnalysisFailure("b")])

        outcome = process_media_message(store, _engine(), analyzer, INSTANCE, "AUD1", controller=controller)

        row = get_message(store, INSTANCE, "AUD1")
        assert outcome == "analysis_failed"
        assert row["processing_status"] == "failed"
        assert row["media_annotation"] == analysis_placeholder("audio")
        assert row["content"] == "[Audio]"

    def test_unrecoverable_media(self, store):
        _store_media_message(store, inline=False)
        outcome = process_media_message(store, _engine(), StubAnalyzer([]), INSTANCE, "AUD1")

        row = get_message(store, INSTANCE, "AUD1")
        assert outcome == "unavailable"
        assert row["processing_status"] == "failed"
        assert row["media_annotation"] is None

    def test_unknown_message(self, store):
        assert process_media_message(store, _engine(), None, INSTANCE, "NOPE") == "not_found"

    def test_text_message_has_no_media(self, store):
        store_message(
            store,
            None,
            Message("t1", INSTANCE, "TXT1", False, "Maria", "Oi", "text", 1714560000000),
        )
        assert process_media_message(store, _engine(), None, INSTANCE, "TXT1") == "no_media"


class TestHttpAnalyzer:
    def test_posts_base64_and_returns_text(self):
        response = MagicMock()
        response.json.return_value = {"text": " a receipt "}
        with patch("chatdesk.media.analysis.requests.post", return_value=response) as mock_post:
            text = HttpAnalyzer("https://analyzer.example/run").analyze(b"abc", "image", "image/png")

        assert text == "a receipt"
        body = mock_post.call_args[1]["json"]
        assert body == {"contentType": "image", "mimeType": "image/png", "base64": "YWJj"}

    def test_http_error_is_analysis_failure(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("500")
        with patch("chatdesk.media.analysis.requests.post", return_value=response):
            with pytest.raises(AnalysisFailure):
                HttpAnalyzer("https://analyzer.example/run").analyze(b"abc", "image", "image/png")

    def test_empty_text_is_analysis_failure(self):
        response = MagicMock()
        response.json.return_value = {"text": ""}
        with patch("chatdesk.media.analysis.requests.post", return_value=response):
            with pytest.raises(AnalysisFailure):
                HttpAnalyzer("https://analyzer.example/run").analyze(b"abc", "image", "image/png")

    def test_from_env(self, monkeypatch):
        monkeypatch.delenv("ANALYZER_URL", raising=False)
        assert analyzer_from_env() is None
        monkeypatch.setenv("ANALYZER_URL", "https://analyzer.example/run")
        assert isinstance(analyzer_from_env(), HttpAnalyzer)


def test_media_task_id_is_stable():
    assert media_task_id("acme-01", "MSG1") == "media:acme-01:MSG1"
