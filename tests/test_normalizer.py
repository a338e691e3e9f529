"""Tests for dialect detection and batch normalization."""

import pytest

from chatdesk.errors import NormalizationError
from chatdesk.whatsapp import normalizer
from chatdesk.whatsapp.models import Dialect, MessageReceived, Skipped
from helpers import codechat_message, evolution_message, flat_message


class TestDetectDialect:
    @pytest.mark.parametrize(
        "payload,name",
        [
            (evolution_message(), "evolution"),
            (codechat_message(), "codechat"),
            (flat_message(), "flat"),
        ],
    )
    def test_detects_by_shape(self, payload, name):
        assert normalizer.detect_dialect(payload).name == name

    def test_hint_bypasses_detection(self):
        assert normalizer.detect_dialect(flat_message(), "flat").name == "flat"

    def test_unknown_hint_raises(self):
        with pytest.raises(NormalizationError, match="unknown source format"):
            normalizer.detect_dialect(evolution_message(), "telegram")

    def test_unrecognized_shape_raises(self):
        with pytest.raises(NormalizationError, match="unrecognized"):
            normalizer.detect_dialect({"hello": "world"})


class TestNormalize:
    def test_same_message_in_every_dialect(self):
        events = [
            normalizer.normalize(evolution_message()),
            normalizer.normalize(codechat_message()),
            normalizer.normalize(flat_message()),
        ]
        assert all(isinstance(e, MessageReceived) for e in events)
        assert {(e.instance_id, e.provider_message_id, e.chat_id, e.body) for e in events} == {
            ("acme-01", "MSG1", "5511999999999", "Oi")
        }

    def test_non_object_raises(self):
        with pytest.raises(NormalizationError):
            normalizer.normalize(["not", "a", "dict"])

    def test_multi_event_payload_raises(self):
        payload = evolution_message()
        payload["data"] = [payload["data"], payload["data"]]
        with pytest.raises(NormalizationError, match="normalize_batch"):
            normalizer.normalize(payload)

    def test_empty_list_data_skipped(self):
        payload = {"event": "chats.set", "instance": "acme-01", "data": []}
        result = normalizer.normalize(payload)
        assert isinstance(result, Skipped)
        assert result.reason == "empty delivery"

    def test_error_carries_raw_payload(self):
        payload = evolution_message()
        del payload["data"]["key"]["remoteJid"]
        with pytest.raises(NormalizationError) as exc_info:
            normalizer.normalize(payload)
        assert exc_info.value.raw is payload


class TestNormalizeBatch:
    def test_list_of_envelopes_isolates_failures(self):
        bad = evolution_message("MSG2")
        del bad["data"]["key"]["remoteJid"]
        outcomes = list(
            normalizer.normalize_batch([evolution_message("MSG1"), bad, "junk", {"x": 1}])
        )

        assert isinstance(outcomes[0], MessageReceived)
        assert all(isinstance(o, NormalizationError) for o in outcomes[1:])
        assert len(outcomes) == 4

    def test_records_in_data_are_split(self):
        payload = evolution_message()
        record = payload["data"]
        payload["data"] = [record, {**record, "key": {**record["key"], "id": "MSG2"}}]
        outcomes = list(normalizer.normalize_batch(payload))
        assert [o.provider_message_id for o in outcomes] == ["MSG1", "MSG2"]


class TestRegisterDialect:
    @pytest.fixture(autouse=True)
    def _restore_registry(self):
        saved = list(normalizer.DIALECTS)
        yield
        normalizer.DIALECTS[:] = saved

    def test_new_dialect_needs_no_pipeline_change(self):
        custom = Dialect(
            name="custom",
            matches=lambda raw: raw.get("vendor") == "custom",
            split=lambda raw: [raw],
            to_event=lambda raw: Skipped("custom event", "custom"),
        )
        normalizer.register_dialect(custom)

        result = normalizer.normalize({"vendor": "custom"})
        assert result == Skipped("custom event", "custom")

    def test_first_takes_precedence(self):
        custom = Dialect(
            name="greedy",
            matches=lambda raw: True,
            split=lambda raw: [raw],
            to_event=lambda raw: Skipped("greedy", None),
        )
        normalizer.register_dialect(custom, first=True)
        assert normalizer.detect_dialect(evolution_message()).name == "greedy"

    def test_unexpected_field_error_becomes_normalization_error(self):
        def explode(raw):
            return int(raw["n"])

        normalizer.register_dialect(
            Dialect(
                name="fragile",
                matches=lambda raw: "n" in raw,
                split=lambda raw: [raw],
                to_event=explode,
            ),
            first=True,
        )
        outcomes = list(normalizer.normalize_batch([{"n": "x"}, evolution_message("MSG2")]))

        assert isinstance(outcomes[0], NormalizationError)
        assert outcomes[0].raw == {"n": "x"}
        assert isinstance(outcomes[1], MessageReceived)

    def test_register_replaces_same_name(self):
        before = len(normalizer.DIALECTS)
        replacement = Dialect(
            name="flat",
            matches=lambda raw: False,
            split=lambda raw: [raw],
            to_event=lambda raw: Skipped("x", None),
        )
        normalizer.register_dialect(replacement)
        assert len(normalizer.DIALECTS) == before
